"""Tests for Stripe checkout and webhook handling."""

import json
from datetime import datetime, timedelta, timezone
from types import SimpleNamespace

import pytest
import stripe

from iaiaz.db.models import OrganizationModel, UserModel
from iaiaz.db.repository import CreditRepository, OrganizationRepository

from conftest import auth_headers


@pytest.fixture
def checkout_calls(monkeypatch):
    calls = []

    def fake_create(**params):
        calls.append(params)
        return SimpleNamespace(id="cs_test_123", url="https://checkout.stripe.test/cs_test_123")

    monkeypatch.setattr(stripe.checkout.Session, "create", fake_create)
    return calls


def webhook_event(monkeypatch, session: dict, event_type: str = "checkout.session.completed"):
    event = {"type": event_type, "data": {"object": session}}
    monkeypatch.setattr(stripe.Webhook, "construct_event", lambda payload, signature, secret: event)
    return event


async def post_webhook(client):
    return await client.post(
        "/api/v1/webhooks/stripe",
        content=json.dumps({"id": "evt_test"}),
        headers={"Stripe-Signature": "t=1,v1=fake"},
    )


async def test_list_packs(client):
    data = (await client.get("/api/v1/billing/packs")).json()
    assert [p["id"] for p in data["packs"]] == ["starter", "regular", "power"]
    assert data["custom"] == {"min": 1, "max": 100}


async def test_checkout_with_pack(client, make_user, checkout_calls):
    await make_user("alice")

    response = await client.post(
        "/api/v1/billing/checkout", json={"pack_id": "regular"}, headers=auth_headers("alice")
    )

    assert response.status_code == 200
    assert response.json()["session_id"] == "cs_test_123"
    params = checkout_calls[0]
    assert params["client_reference_id"] == "alice"
    assert params["metadata"]["credits"] == "10.0"
    assert params["line_items"][0]["price_data"]["unit_amount"] == 1000
    assert params["customer_email"] == "alice@example.com"


async def test_checkout_custom_amount(client, make_user, checkout_calls):
    await make_user("alice")

    response = await client.post(
        "/api/v1/billing/checkout", json={"custom_amount": 25}, headers=auth_headers("alice")
    )

    assert response.status_code == 200
    assert checkout_calls[0]["metadata"]["pack_id"] == "custom"
    assert checkout_calls[0]["line_items"][0]["price_data"]["unit_amount"] == 2500


async def test_checkout_rejects_unknown_pack(client, make_user, checkout_calls):
    await make_user("alice")

    response = await client.post(
        "/api/v1/billing/checkout", json={"pack_id": "mega"}, headers=auth_headers("alice")
    )

    assert response.status_code == 400
    assert checkout_calls == []


async def test_org_checkout_requires_manager(client, db, make_user, make_org, checkout_calls):
    await make_user("owner-1")
    await make_user("teacher-1")
    org = await make_org("owner-1")
    await OrganizationRepository(db).add_member(org, "teacher-1", "teacher")

    refused = await client.post(
        f"/api/v1/billing/organizations/{org.id}/checkout", json={"amount": 50}, headers=auth_headers("teacher-1")
    )
    assert refused.status_code == 403

    accepted = await client.post(
        f"/api/v1/billing/organizations/{org.id}/checkout", json={"amount": 50}, headers=auth_headers("owner-1")
    )
    assert accepted.status_code == 200
    assert checkout_calls[0]["metadata"]["type"] == "organization_credits"


async def test_webhook_grants_personal_credits_once(client, db, make_user, monkeypatch):
    await make_user("alice")
    webhook_event(monkeypatch, {
        "id": "cs_test_123",
        "payment_intent": "pi_123",
        "payment_status": "paid",
        "client_reference_id": "alice",
        "customer": "cus_123",
        "metadata": {"user_id": "alice", "pack_id": "regular", "credits": "10.0", "type": "personal_credits"},
    })

    assert (await post_webhook(client)).status_code == 200
    assert (await post_webhook(client)).status_code == 200

    user = await db.get(UserModel, "alice", populate_existing=True)
    assert user.credits_balance == 10.0
    assert user.stripe_customer_id == "cus_123"
    purchases = await CreditRepository(db).get_transactions("alice", transaction_type="purchase")
    assert len(purchases) == 1


async def test_webhook_credits_organization(client, db, make_user, make_org, monkeypatch):
    await make_user("owner-1")
    org = await make_org("owner-1", balance=5.0)
    org_id = org.id
    webhook_event(monkeypatch, {
        "id": "cs_org",
        "payment_intent": "pi_org",
        "payment_status": "paid",
        "metadata": {"organization_id": org_id, "user_id": "owner-1", "credits": "100", "type": "organization_credits"},
    })

    await post_webhook(client)
    await post_webhook(client)

    org = await db.get(OrganizationModel, org_id, populate_existing=True)
    assert org.credit_balance == 105.0


async def test_webhook_ignores_unpaid_sessions(client, db, make_user, monkeypatch):
    await make_user("alice")
    webhook_event(monkeypatch, {
        "id": "cs_unpaid",
        "payment_status": "unpaid",
        "client_reference_id": "alice",
        "metadata": {"credits": "10.0"},
    })

    assert (await post_webhook(client)).status_code == 200
    user = await db.get(UserModel, "alice", populate_existing=True)
    assert user.credits_balance == 0.0


async def test_webhook_invalid_payload(client, monkeypatch):
    def reject(payload, signature, secret):
        raise ValueError("bad payload")

    monkeypatch.setattr(stripe.Webhook, "construct_event", reject)

    assert (await post_webhook(client)).status_code == 400


# ============ Family subscription ============


async def family_with_child(db, make_user, make_org, **fields):
    await make_user("parent-1")
    await make_user("kid-1", balance=1.0)
    org = await make_org("parent-1", org_type="family", **fields)
    await OrganizationRepository(db).add_member(org, "kid-1", "student", supervision_mode="trusted")
    return org.id


async def chat_as_kid(client):
    return await client.post(
        "/api/v1/chat",
        json={"message": "Bonjour", "model": "claude-sonnet-4-20250514"},
        headers=auth_headers("kid-1"),
    )


async def test_family_subscription_checkout_prices_per_child(client, db, make_user, make_org, checkout_calls):
    org_id = await family_with_child(db, make_user, make_org, subscription_status="trialing")

    refused = await client.post(
        f"/api/v1/billing/organizations/{org_id}/family-subscription",
        json={"child_count": 3},
        headers=auth_headers("kid-1"),
    )
    assert refused.status_code == 403

    response = await client.post(
        f"/api/v1/billing/organizations/{org_id}/family-subscription",
        json={"child_count": 3},
        headers=auth_headers("parent-1"),
    )

    assert response.status_code == 200
    params = checkout_calls[0]
    assert params["mode"] == "subscription"
    seats, extra = params["line_items"]
    assert (seats["quantity"], seats["price_data"]["unit_amount"]) == (2, 990)
    assert (extra["quantity"], extra["price_data"]["unit_amount"]) == (1, 500)
    assert seats["price_data"]["recurring"] == {"interval": "month"}
    assert params["metadata"]["type"] == "family_subscription"
    assert params["subscription_data"]["metadata"]["credits"] == "15.0"


async def test_family_subscription_checkout_refuses_schools_and_active_plans(
    client, db, make_user, make_org, checkout_calls
):
    await make_user("owner-1")
    school = await make_org("owner-1")
    org_id = await family_with_child(db, make_user, make_org, subscription_status="active", slug="famille")

    not_family = await client.post(
        f"/api/v1/billing/organizations/{school.id}/family-subscription",
        json={"child_count": 1},
        headers=auth_headers("owner-1"),
    )
    already_active = await client.post(
        f"/api/v1/billing/organizations/{org_id}/family-subscription",
        json={"child_count": 1},
        headers=auth_headers("parent-1"),
    )

    assert not_family.status_code == 400
    assert already_active.status_code == 400
    assert checkout_calls == []


async def test_webhook_activates_family_after_trial(client, db, make_user, make_org, monkeypatch, fake_provider):
    org_id = await family_with_child(
        db,
        make_user,
        make_org,
        subscription_status="trialing",
        trial_end=datetime.now(timezone.utc) - timedelta(days=1),
    )
    assert (await chat_as_kid(client)).json()["detail"]["reason"] == "trial_expired"

    webhook_event(monkeypatch, {
        "id": "cs_family",
        "mode": "subscription",
        "payment_status": "paid",
        "subscription": "sub_123",
        "customer": "cus_family",
        "metadata": {
            "organization_id": org_id,
            "user_id": "parent-1",
            "child_count": "2",
            "credits": "10.0",
            "type": "family_subscription",
        },
    })
    await post_webhook(client)
    await post_webhook(client)

    org = await db.get(OrganizationModel, org_id, populate_existing=True)
    assert org.subscription_status == "active"
    assert org.stripe_subscription_id == "sub_123"
    assert org.stripe_customer_id == "cus_family"
    assert org.credit_balance == 10.0
    assert (await chat_as_kid(client)).status_code == 200


async def test_webhook_mirrors_subscription_updates_and_cancellation(
    client, db, make_user, make_org, monkeypatch, fake_provider
):
    org_id = await family_with_child(db, make_user, make_org)
    await OrganizationRepository(db).update_subscription(org_id, "active", stripe_subscription_id="sub_123")

    webhook_event(monkeypatch, {
        "id": "sub_123",
        "status": "past_due",
        "cancel_at_period_end": True,
        "current_period_end": 1775000000,
        "metadata": {},
    }, event_type="customer.subscription.updated")
    await post_webhook(client)

    org = await db.get(OrganizationModel, org_id, populate_existing=True)
    assert org.subscription_status == "past_due"
    assert org.subscription_cancel_at_period_end is True
    assert org.subscription_current_period_end is not None
    assert (await chat_as_kid(client)).status_code == 200

    subscription = (
        await client.get(f"/api/v1/billing/organizations/{org_id}/subscription", headers=auth_headers("parent-1"))
    ).json()
    assert subscription["status"] == "past_due"
    assert subscription["is_active"] is False
    assert subscription["cancel_at_period_end"] is True

    webhook_event(monkeypatch, {"id": "sub_123", "status": "canceled", "metadata": {"organization_id": org_id}},
                  event_type="customer.subscription.deleted")
    await post_webhook(client)

    org = await db.get(OrganizationModel, org_id, populate_existing=True)
    assert org.subscription_status == "canceled"
    blocked = await chat_as_kid(client)
    assert blocked.status_code == 403
    assert blocked.json()["detail"]["reason"] == "subscription_inactive"


async def test_webhook_renewal_and_failed_payment(client, db, make_user, make_org, monkeypatch):
    org_id = await family_with_child(db, make_user, make_org)
    await OrganizationRepository(db).update_subscription(org_id, "active", stripe_subscription_id="sub_123")

    webhook_event(monkeypatch, {
        "id": "in_first",
        "billing_reason": "subscription_create",
        "subscription": "sub_123",
        "subscription_details": {"metadata": {"credits": "10.0"}},
    }, event_type="invoice.paid")
    await post_webhook(client)

    webhook_event(monkeypatch, {
        "id": "in_renewal",
        "billing_reason": "subscription_cycle",
        "subscription": "sub_123",
        "subscription_details": {"metadata": {"credits": "10.0"}},
    }, event_type="invoice.paid")
    await post_webhook(client)
    await post_webhook(client)

    org = await db.get(OrganizationModel, org_id, populate_existing=True)
    assert org.credit_balance == 10.0

    webhook_event(monkeypatch, {"id": "in_failed", "subscription": "sub_123"}, event_type="invoice.payment_failed")
    await post_webhook(client)

    org = await db.get(OrganizationModel, org_id, populate_existing=True)
    assert org.subscription_status == "past_due"
