"""API tests for the admin dashboard."""

import pytest

from iaiaz.db.models import UserModel
from iaiaz.db.repository import UsageRepository

from conftest import auth_headers

ADMIN = auth_headers("admin-1")


@pytest.fixture
async def admin(make_user):
    return await make_user("admin-1", is_admin=True)


async def test_non_admin_is_forbidden(client, make_user):
    await make_user("alice")

    response = await client.get("/api/v1/admin/models", headers=auth_headers("alice"))

    assert response.status_code == 403


async def test_create_model_infers_tier_and_refreshes_catalogue(client, admin):
    response = await client.post(
        "/api/v1/admin/models",
        json={
            "id": "mistral-small-latest",
            "name": "Mistral Small",
            "provider": "mistral",
            "input_price": 0.2,
            "output_price": 0.6,
        },
        headers=ADMIN,
    )
    assert response.status_code == 200
    assert response.json()["rate_limit_tier"] == "economy"

    duplicate = await client.post(
        "/api/v1/admin/models",
        json={"id": "mistral-small-latest", "name": "Dup", "provider": "mistral", "input_price": 0, "output_price": 0},
        headers=ADMIN,
    )
    assert duplicate.status_code == 400

    pricing = (await client.get("/api/v1/pricing")).json()
    assert "mistral-small-latest" in {m["id"] for m in pricing["models"]}

    await client.delete("/api/v1/admin/models/mistral-small-latest", headers=ADMIN)
    pricing = (await client.get("/api/v1/pricing")).json()
    assert "mistral-small-latest" not in {m["id"] for m in pricing["models"]}


async def test_markup_setting_changes_prices(client, admin):
    invalid = await client.put("/api/v1/admin/settings/markup", json={"value": {"percentage": -5}}, headers=ADMIN)
    assert invalid.status_code == 400

    response = await client.put("/api/v1/admin/settings/markup", json={"value": {"percentage": 100}}, headers=ADMIN)
    assert response.status_code == 200

    pricing = (await client.get("/api/v1/pricing")).json()
    sonnet = next(m for m in pricing["models"] if m["id"] == "claude-sonnet-4-20250514")
    assert sonnet["input_price"] == 6.0


async def test_credit_adjustments_are_audited(client, db, admin, make_user):
    await make_user("alice", balance=1.0)

    grant = await client.post(
        "/api/v1/admin/users/alice/credits", json={"amount": 5.0, "reason": "Geste commercial"}, headers=ADMIN
    )
    assert grant.json()["new_balance"] == 6.0

    overdraft = await client.post(
        "/api/v1/admin/users/alice/credits", json={"amount": -10.0, "reason": "Correction"}, headers=ADMIN
    )
    assert overdraft.status_code == 400

    debit = await client.post(
        "/api/v1/admin/users/alice/credits", json={"amount": -2.0, "reason": "Correction"}, headers=ADMIN
    )
    assert debit.json()["new_balance"] == 4.0

    missing = await client.post(
        "/api/v1/admin/users/ghost/credits", json={"amount": 1.0, "reason": "Test"}, headers=ADMIN
    )
    assert missing.status_code == 404

    user = await db.get(UserModel, "alice", populate_existing=True)
    assert user.credits_balance == pytest.approx(4.0)

    log = (await client.get("/api/v1/admin/audit-log?action=user_credits_adjusted", headers=ADMIN)).json()
    assert len(log["entries"]) == 2
    assert all(e["target_user_id"] == "alice" for e in log["entries"])


async def test_org_credit_adjustment(client, admin, make_user, make_org):
    await make_user("owner-1")
    org = await make_org("owner-1", balance=10.0)

    response = await client.post(
        f"/api/v1/admin/organizations/{org.id}/credits", json={"amount": 15.0, "reason": "Partenariat"}, headers=ADMIN
    )
    assert response.status_code == 200

    refused = await client.post(
        f"/api/v1/admin/organizations/{org.id}/credits", json={"amount": -100.0, "reason": "Erreur"}, headers=ADMIN
    )
    assert refused.status_code == 400


async def test_income_report(client, db, admin, make_user):
    await make_user("alice", balance=1.0)
    await UsageRepository(db).record(
        user_id="alice",
        model="gpt-4o-mini",
        provider="openai",
        tokens_input=1000,
        tokens_output=500,
        cost_eur=0.3,
        provider_cost_eur=0.2,
        co2_grams=0.001,
    )

    response = await client.get("/api/v1/admin/income?group_by=day&days=7", headers=ADMIN)
    assert response.status_code == 200
    totals = response.json()["totals"]
    assert totals["usage_revenue"] == 0.3
    assert totals["provider_costs"]["openai"] == 0.2
    assert totals["net_margin"] == 0.1

    invalid = await client.get("/api/v1/admin/income?group_by=quarter", headers=ADMIN)
    assert invalid.status_code == 400


async def test_budget_alerts_flow(client, db, admin):
    await UsageRepository(db).record(
        user_id="admin-1",
        model="claude-sonnet-4-20250514",
        provider="anthropic",
        tokens_input=1000,
        tokens_output=500,
        cost_eur=9.0,
        provider_cost_eur=6.0,
        co2_grams=0.001,
    )

    updated = await client.put(
        "/api/v1/admin/budgets/anthropic",
        json={"monthly_budget_eur": 10.0, "alert_threshold_75": False},
        headers=ADMIN,
    )
    assert updated.json()["monthly_budget_eur"] == 10.0

    overview = (await client.get("/api/v1/admin/budgets", headers=ADMIN)).json()["budgets"]
    assert overview[0]["percent_used"] == 60.0

    created = (await client.post("/api/v1/admin/budgets/evaluate", headers=ADMIN)).json()["created"]
    assert [a["threshold"] for a in created] == [50]

    alert_id = created[0]["id"]
    acknowledged = await client.post(f"/api/v1/admin/alerts/{alert_id}/acknowledge", headers=ADMIN)
    assert acknowledged.json()["acknowledged"] is True

    open_alerts = (await client.get("/api/v1/admin/alerts?acknowledged=false", headers=ADMIN)).json()
    assert open_alerts["alerts"] == []
