"""Tests for organizations, classes, invites, families and parental controls."""

from datetime import date, datetime, timedelta, timezone

import pytest

from iaiaz.core.organizations import (
    can_manage,
    can_transfer,
    family_max_members,
    family_welcome_credit,
    intersect_allowed_models,
    is_model_allowed,
    slugify,
    validate_family_request,
)
from iaiaz.db.models import OrganizationModel, UserModel
from iaiaz.db.repository import OrganizationRepository

from conftest import auth_headers


@pytest.fixture(autouse=True)
def sent_invites(monkeypatch):
    sent = []

    def fake_send(to_email, organization_name, role, token, inviter_name=None):
        sent.append({"to": to_email, "organization": organization_name, "role": role, "token": token})
        return True

    monkeypatch.setattr("iaiaz.api.organizations.send_invite_email", fake_send)
    return sent


def birthdate_for_age(years: int) -> str:
    # January 1st, so the age is exactly `years` whatever today is
    return date(date.today().year - years, 1, 1).isoformat()


# ============ Rules ============


class TestRules:
    def test_slugify(self):
        assert slugify("Lycée Victor Hugo", "abc123") == "lycee-victor-hugo-abc123"
        assert slugify("!!!", "x") == "org-x"
        assert slugify("École") != slugify("École")

    def test_managers(self):
        assert can_manage("owner")
        assert can_manage("admin")
        assert not can_manage("teacher")
        assert not can_manage(None)

    def test_transfer_permissions(self):
        assert can_transfer("school", "admin", False)
        assert can_transfer("business", "student", True)
        assert not can_transfer("business", "student", False)
        assert can_transfer("training_center", "owner", True)
        assert not can_transfer("training_center", "admin", True)

    def test_model_restrictions(self):
        assert intersect_allowed_models(None, None) is None
        assert intersect_allowed_models(["a", "b"], None) == ["a", "b"]
        assert intersect_allowed_models(None, ["b"]) == ["b"]
        assert intersect_allowed_models(["a", "b"], ["b", "c"]) == ["b"]
        assert is_model_allowed("a", None)
        assert not is_model_allowed("a", [])

    @pytest.mark.parametrize("children,parents,valid", [
        (1, 0, True),
        (6, 2, True),
        (0, 0, False),
        (7, 0, False),
        (2, 3, False),
    ])
    def test_family_validation(self, children, parents, valid):
        assert (validate_family_request(children, parents) is None) == valid

    def test_family_sizing(self):
        assert family_max_members(2, 1) == 4
        assert family_welcome_credit(3) == 3.0


# ============ School flow ============


async def create_school(client, owner="owner-1"):
    response = await client.post(
        "/api/v1/organizations",
        json={"name": "Lycée Hugo", "type": "school"},
        headers=auth_headers(owner),
    )
    assert response.status_code == 200
    return response.json()


async def test_create_organization_makes_owner(client, make_user):
    await make_user("owner-1")

    org = await create_school(client)

    assert org["role"] == "owner"
    assert org["slug"].startswith("lycee-hugo-")
    assert org["contact_email"] == "owner-1@example.com"
    mine = (await client.get("/api/v1/organizations", headers=auth_headers("owner-1"))).json()
    assert [o["id"] for o in mine["organizations"]] == [org["id"]]
    assert (await client.get(f"/api/v1/organizations/{org['id']}", headers=auth_headers("stranger"))).status_code == 404


async def test_school_invite_join_allocate_and_remove(client, db, make_user, sent_invites):
    await make_user("owner-1", balance=20.0)
    org_id = (await create_school(client))["id"]
    owner = auth_headers("owner-1")

    transfer = await client.post(
        f"/api/v1/organizations/{org_id}/transfer", json={"direction": "to_org", "amount": 10}, headers=owner
    )
    assert transfer.status_code == 200

    org_class = (await client.post(
        f"/api/v1/organizations/{org_id}/classes", json={"name": "Terminale B"}, headers=owner
    )).json()

    invite = await client.post(
        f"/api/v1/organizations/{org_id}/invites",
        json={"email": "Student@Example.com", "role": "student", "credit_amount": 2.0, "class_id": org_class["id"]},
        headers=owner,
    )
    assert invite.status_code == 200
    token = invite.json()["token"]
    assert invite.json()["email"] == "student@example.com"
    assert invite.json()["email_sent"] is True
    assert sent_invites[0]["token"] == token

    duplicate = await client.post(
        f"/api/v1/organizations/{org_id}/invites", json={"email": "student@example.com"}, headers=owner
    )
    assert duplicate.status_code == 400

    preview = (await client.get(f"/api/v1/invites/{token}")).json()
    assert preview["organization_name"] == "Lycée Hugo"
    assert preview["expired"] is False

    student = auth_headers("student-1", email="student@example.com")
    joined = await client.post("/api/v1/join", json={"token": token}, headers=student)
    assert joined.status_code == 200
    member_id = joined.json()["member_id"]
    assert (await client.post("/api/v1/join", json={"token": token}, headers=student)).status_code == 404

    members = (await client.get(f"/api/v1/organizations/{org_id}/members", headers=owner)).json()["members"]
    student_row = next(m for m in members if m["user_id"] == "student-1")
    assert student_row["credit_allocated"] == 2.0
    assert student_row["class_id"] == org_class["id"]

    allocated = await client.post(
        f"/api/v1/organizations/{org_id}/allocate", json={"member_id": member_id, "amount": 1.0}, headers=owner
    )
    assert allocated.json()["credit_remaining"] == 3.0
    too_much = await client.post(
        f"/api/v1/organizations/{org_id}/allocate", json={"member_id": member_id, "amount": 100.0}, headers=owner
    )
    assert too_much.status_code == 400

    assert (await client.get(f"/api/v1/organizations/{org_id}/members", headers=student)).status_code == 403

    promote = await client.patch(
        f"/api/v1/organizations/{org_id}/members/{member_id}", json={"role": "owner"}, headers=owner
    )
    assert promote.status_code == 400

    removed = await client.delete(f"/api/v1/organizations/{org_id}/members/{member_id}", headers=owner)
    assert removed.status_code == 200

    org = await db.get(OrganizationModel, org_id, populate_existing=True)
    assert org.credit_balance == pytest.approx(10.0)
    assert org.credit_allocated == pytest.approx(0.0)
    owner_user = await db.get(UserModel, "owner-1", populate_existing=True)
    assert owner_user.credits_balance == pytest.approx(10.0)


async def test_allocation_beyond_free_pool_is_refused(client, db, make_user, make_org):
    await make_user("owner-1")
    await make_user("student-1")
    org = await make_org("owner-1", balance=5.0)
    org_id = org.id
    member = await OrganizationRepository(db).add_member(org, "student-1", "student")
    member_id = member.id

    response = await client.post(
        f"/api/v1/organizations/{org_id}/allocate",
        json={"member_id": member_id, "amount": 100.0},
        headers=auth_headers("owner-1"),
    )

    assert response.status_code == 400
    org = await db.get(OrganizationModel, org_id, populate_existing=True)
    assert org.credit_allocated == pytest.approx(0.0)

    # The pool still works after the refusal
    accepted = await client.post(
        f"/api/v1/organizations/{org_id}/allocate",
        json={"member_id": member_id, "amount": 5.0},
        headers=auth_headers("owner-1"),
    )
    assert accepted.status_code == 200
    assert accepted.json()["credit_remaining"] == 5.0


async def test_expired_invite_is_refused(client, db, make_user, make_org):
    await make_user("owner-1")
    org = await make_org("owner-1")
    invite = await OrganizationRepository(db).create_invite(
        org.id,
        "late@example.com",
        "student",
        invited_by="owner-1",
        expires_at=datetime.now(timezone.utc) - timedelta(days=1),
    )

    response = await client.post("/api/v1/join", json={"token": invite.token}, headers=auth_headers("late"))

    assert response.status_code == 400


async def test_settings_limit_students(client, db, make_user, make_org):
    await make_user("owner-1")
    await make_user("student-1")
    org = await make_org("owner-1", balance=10.0)
    org_id = org.id

    response = await client.patch(
        f"/api/v1/organizations/{org_id}/settings",
        json={"allowed_models": ["gpt-4o-mini"], "daily_limit_per_student": 0.5},
        headers=auth_headers("owner-1"),
    )
    assert response.status_code == 200
    assert response.json()["settings"] == {"allowed_models": ["gpt-4o-mini"], "daily_limit_per_student": 0.5}

    await OrganizationRepository(db).add_member(org, "student-1", "student")
    restrictions = (await client.get("/api/v1/model-restrictions", headers=auth_headers("student-1"))).json()
    assert restrictions == {"restricted": True, "allowed_models": ["gpt-4o-mini"]}


async def test_class_analytics_and_bulk_allocation(client, db, make_user, make_org):
    await make_user("owner-1")
    await make_user("student-1")
    await make_user("student-2")
    org = await make_org("owner-1", balance=10.0)
    org_id = org.id
    repo = OrganizationRepository(db)
    org_class = await repo.create_class(org_id, "Seconde A", created_by="owner-1")
    class_id = org_class.id
    for user_id in ("student-1", "student-2"):
        await repo.add_member(org, user_id, "student", class_id=class_id)
    owner = auth_headers("owner-1")

    bulk = await client.post(f"/api/v1/classes/{class_id}/allocate", json={"amount_each": 1.5}, headers=owner)
    assert bulk.json() == {"students": 2, "amount_each": 1.5, "total": 3.0}

    analytics = await client.get(f"/api/v1/classes/{class_id}/analytics?days=7&save=true", headers=owner)
    assert analytics.status_code == 200
    metrics = analytics.json()["metrics"]
    assert metrics["unique_students"] == 2
    assert metrics["total_messages"] == 0

    history = (await client.get(f"/api/v1/classes/{class_id}/analytics/history", headers=owner)).json()
    assert len(history["snapshots"]) == 1
    assert history["snapshots"][0]["period_type"] == "custom"

    denied = await client.get(f"/api/v1/classes/{class_id}/analytics", headers=auth_headers("student-1"))
    assert denied.status_code == 403

    closed = await client.patch(f"/api/v1/classes/{class_id}", json={"status": "closed"}, headers=owner)
    assert closed.json()["status"] == "closed"


async def test_class_join_link(client, db, make_user, make_org):
    for user_id in ("owner-1", "teacher-1", "student-1", "student-2"):
        await make_user(user_id)
    org = await make_org("owner-1")
    org_id = org.id
    repo = OrganizationRepository(db)
    await repo.add_member(org, "teacher-1", "teacher")
    await repo.add_member(org, "student-2", "student")
    class_id = (await repo.create_class(org_id, "BTS 1", created_by="owner-1")).id
    owner = auth_headers("owner-1")

    link = (await client.get(f"/api/v1/classes/{class_id}/join-link", headers=owner)).json()
    token = link["join_token"]
    assert link["joinable"] is True
    assert link["join_url"].endswith(f"/join/class?token={token}")
    denied = await client.get(f"/api/v1/classes/{class_id}/join-link", headers=auth_headers("student-2"))
    assert denied.status_code == 403

    preview = (await client.get(f"/api/v1/class-links/{token}")).json()
    assert preview == {
        "class_name": "BTS 1",
        "organization_name": "Lycée Test",
        "organization_type": "school",
        "joinable": True,
    }

    join = "/api/v1/class-links/join"
    newcomer = (await client.post(join, json={"token": token}, headers=auth_headers("student-1"))).json()
    assert newcomer["already_member"] is False
    assert newcomer["class_id"] == class_id
    assert newcomer["organization"]["role"] == "student"

    moved = (await client.post(join, json={"token": token}, headers=auth_headers("student-2"))).json()
    assert (moved["already_member"], moved["class_id"]) == (True, class_id)

    staff = (await client.post(join, json={"token": token}, headers=auth_headers("teacher-1"))).json()
    assert staff["organization"]["role"] == "teacher"
    assert staff["class_id"] is None

    rotated = (await client.post(f"/api/v1/classes/{class_id}/join-link/rotate", headers=owner)).json()
    assert rotated["join_token"] != token
    stale = await client.post(join, json={"token": token}, headers=auth_headers("student-1"))
    assert stale.status_code == 404

    await client.patch(f"/api/v1/classes/{class_id}", json={"status": "closed"}, headers=owner)
    closed = await client.post(join, json={"token": rotated["join_token"]}, headers=auth_headers("student-1"))
    assert closed.status_code == 400


async def test_training_center_admin_cannot_transfer(client, db, make_user, make_org):
    await make_user("owner-1")
    await make_user("admin-1", balance=5.0)
    org = await make_org("owner-1", org_type="training_center")
    org_id = org.id
    await OrganizationRepository(db).add_member(org, "admin-1", "admin")

    response = await client.post(
        f"/api/v1/organizations/{org_id}/transfer",
        json={"direction": "to_org", "amount": 1},
        headers=auth_headers("admin-1"),
    )

    assert response.status_code == 403


# ============ Family flow ============


async def create_family(client, parent="parent-1", children=2):
    response = await client.post(
        "/api/v1/family",
        json={"family_name": "Les Martin", "child_count": children},
        headers=auth_headers(parent),
    )
    assert response.status_code == 200
    return response.json()


async def invite_child(client, org_id, email, years, parent="parent-1"):
    return await client.post(
        f"/api/v1/organizations/{org_id}/invites",
        json={"email": email, "role": "student", "birthdate": birthdate_for_age(years)},
        headers=auth_headers(parent),
    )


async def test_create_family(client, make_user):
    await make_user("parent-1")

    family = await create_family(client, children=2)

    assert family["type"] == "family"
    assert family["credit_balance"] == 2.0
    assert family["max_family_members"] == 3
    assert family["subscription_status"] == "trialing"

    again = await client.post(
        "/api/v1/family", json={"family_name": "Encore", "child_count": 1}, headers=auth_headers("parent-1")
    )
    assert again.status_code == 400

    invalid = await client.post(
        "/api/v1/family", json={"family_name": "Trop", "child_count": 7}, headers=auth_headers("parent-2")
    )
    assert invalid.status_code == 400


async def test_family_child_lifecycle(client, db, make_user):
    await make_user("parent-1")
    org_id = (await create_family(client, children=2))["id"]
    parent = auth_headers("parent-1")
    kid = auth_headers("kid-1", email="kid@example.com")

    missing_birthdate = await client.post(
        f"/api/v1/organizations/{org_id}/invites", json={"email": "kid@example.com"}, headers=parent
    )
    assert missing_birthdate.status_code == 400

    token = (await invite_child(client, org_id, "kid@example.com", 13)).json()["token"]
    joined = await client.post("/api/v1/join", json={"token": token}, headers=kid)
    assert joined.status_code == 200
    assert joined.json()["supervision_mode"] == "guided"

    controls = (await client.get(f"/api/v1/organizations/{org_id}/children/kid-1/controls", headers=parent)).json()
    assert controls["daily_credit_limit"] == 0.5
    assert controls["quiet_hours_start"] == "22:00"
    own = await client.get(f"/api/v1/organizations/{org_id}/children/kid-1/controls", headers=kid)
    assert own.status_code == 200

    updated = await client.put(
        f"/api/v1/organizations/{org_id}/children/kid-1/controls",
        json={"daily_credit_limit": 2.0, "quiet_hours_start": "21:00", "supervision_mode": "trusted"},
        headers=parent,
    )
    assert updated.json()["daily_credit_limit"] == 2.0
    assert updated.json()["supervision_mode"] == "trusted"
    refused = await client.put(
        f"/api/v1/organizations/{org_id}/children/kid-1/controls", json={"daily_credit_limit": 9.0}, headers=kid
    )
    assert refused.status_code == 403

    transfer = await client.post(
        f"/api/v1/organizations/{org_id}/family-transfer",
        json={"allocations": [{"child_user_id": "kid-1", "amount": 1.5}]},
        headers=parent,
    )
    assert transfer.json()["remaining_balance"] == pytest.approx(0.5)

    credit_request = await client.post(
        f"/api/v1/organizations/{org_id}/credit-requests", json={"amount": 0.4, "reason": "Exposé"}, headers=kid
    )
    assert credit_request.status_code == 200
    request_id = credit_request.json()["id"]

    pending = (await client.get(f"/api/v1/organizations/{org_id}/credit-requests?status=pending", headers=parent)).json()
    assert [r["id"] for r in pending["requests"]] == [request_id]

    approved = await client.post(
        f"/api/v1/organizations/{org_id}/credit-requests/{request_id}/review", json={"approve": True}, headers=parent
    )
    assert approved.json()["status"] == "approved"
    again = await client.post(
        f"/api/v1/organizations/{org_id}/credit-requests/{request_id}/review", json={"approve": False}, headers=parent
    )
    assert again.status_code == 400

    # 1.0 welcome credits + 1.5 transferred + 0.4 approved
    child = await db.get(UserModel, "kid-1", populate_existing=True)
    assert child.credits_balance == pytest.approx(2.9)
    family = await db.get(OrganizationModel, org_id, populate_existing=True)
    assert family.credit_balance == pytest.approx(0.1)


async def test_family_rejects_young_children_and_full_families(client, make_user):
    await make_user("parent-1")
    org_id = (await create_family(client, children=1))["id"]

    token = (await invite_child(client, org_id, "toddler@example.com", 9)).json()["token"]
    too_young = await client.post(
        "/api/v1/join", json={"token": token}, headers=auth_headers("toddler", email="toddler@example.com")
    )
    assert too_young.status_code == 400

    # One child plus the owner: the pending invite already takes the last seat
    full = await invite_child(client, org_id, "second@example.com", 14)
    assert full.status_code == 400


async def test_only_family_children_request_credits(client, db, make_user, make_org):
    await make_user("owner-1")
    await make_user("student-1")
    org = await make_org("owner-1")
    org_id = org.id
    await OrganizationRepository(db).add_member(org, "student-1", "student")

    response = await client.post(
        f"/api/v1/organizations/{org_id}/credit-requests", json={"amount": 1.0}, headers=auth_headers("student-1")
    )

    assert response.status_code == 403
