"""Tests for the dual credit system (personal vs organization credits)."""

from datetime import datetime, timezone

import pytest

from iaiaz.core.credits import (
    CreditPreference,
    CreditService,
    LimitStatus,
    OrgContext,
    build_limit_statuses,
    check_member_limits,
    decide_spend,
    effective_balance,
    parse_preference,
    period_reset,
    period_start,
    select_source,
    spending_order,
)
from iaiaz.db.models import OrganizationMemberModel, OrganizationModel, UserModel
from iaiaz.db.repository import CreditRepository, OrganizationRepository

NOW = datetime(2026, 3, 11, 15, 30, tzinfo=timezone.utc)  # a Wednesday


def org_context(role="student", balance=5.0, active=True, limits=None):
    return OrgContext(
        organization_id="org-1",
        organization_name="Lycée Test",
        organization_type="school",
        member_id="member-1",
        role=role,
        org_active=active,
        balance=balance,
        limits=limits or [],
    )


class TestPreference:
    def test_parse(self):
        assert parse_preference("personal_first") == CreditPreference.PERSONAL_FIRST
        assert parse_preference(None) == CreditPreference.AUTO
        assert parse_preference("bogus") == CreditPreference.AUTO


class TestPeriods:
    def test_daily(self):
        assert period_start("daily", NOW) == datetime(2026, 3, 11, tzinfo=timezone.utc)
        assert period_reset("daily", NOW) == datetime(2026, 3, 12, tzinfo=timezone.utc)

    def test_weekly_starts_monday(self):
        assert period_start("weekly", NOW) == datetime(2026, 3, 9, tzinfo=timezone.utc)
        assert period_reset("weekly", NOW) == datetime(2026, 3, 16, tzinfo=timezone.utc)

    def test_monthly_rolls_over_year(self):
        december = datetime(2026, 12, 20, tzinfo=timezone.utc)
        assert period_start("monthly", december) == datetime(2026, 12, 1, tzinfo=timezone.utc)
        assert period_reset("monthly", december) == datetime(2027, 1, 1, tzinfo=timezone.utc)

    def test_unknown_period(self):
        with pytest.raises(ValueError):
            period_start("hourly", NOW)

    def test_only_configured_limits_are_reported(self):
        statuses = build_limit_statuses({"daily_limit_per_student": 1.0}, {"daily": 0.25}, NOW)
        assert len(statuses) == 1
        assert statuses[0].period == "daily"
        assert statuses[0].remaining == 0.75


class TestSpendingOrder:
    @pytest.mark.parametrize("preference,expected", [
        (CreditPreference.AUTO, ["organization", "personal"]),
        (CreditPreference.ORG_FIRST, ["organization", "personal"]),
        (CreditPreference.PERSONAL_FIRST, ["personal", "organization"]),
        (CreditPreference.ORG_ONLY, ["organization"]),
        (CreditPreference.PERSONAL_ONLY, ["personal"]),
    ])
    def test_student_follows_preference(self, preference, expected):
        assert spending_order(preference, org_context()) == expected

    @pytest.mark.parametrize("role", ["owner", "admin", "teacher"])
    def test_trainers_only_spend_org_credits(self, role):
        org = org_context(role=role)
        assert spending_order(CreditPreference.PERSONAL_ONLY, org) == ["organization"]
        assert spending_order(CreditPreference.AUTO, org) == ["organization"]

    def test_non_member_spends_personal(self):
        assert spending_order(CreditPreference.ORG_FIRST, None) == ["personal"]


class TestDecideSpend:
    def test_org_covers_student(self):
        result = decide_spend(0.0, CreditPreference.AUTO, org_context(balance=1.0), 0.5)
        assert result.allowed
        assert result.source == "organization"

    def test_falls_back_to_personal(self):
        result = decide_spend(2.0, CreditPreference.AUTO, org_context(balance=0.1), 0.5)
        assert result.source == "personal"

    def test_personal_first(self):
        result = decide_spend(2.0, CreditPreference.PERSONAL_FIRST, org_context(balance=5.0), 0.5)
        assert result.source == "personal"

    def test_trainer_never_uses_personal(self):
        result = decide_spend(100.0, CreditPreference.AUTO, org_context(role="teacher", balance=0.1), 0.5)
        assert not result.allowed
        assert result.reason == "insufficient_org_credits"

    def test_org_reason_is_reported_when_all_fail(self):
        result = decide_spend(0.0, CreditPreference.AUTO, org_context(balance=0.1), 0.5)
        assert result.reason == "insufficient_allocation"

    def test_period_limit_reports_reset(self):
        limit = LimitStatus("daily", 1.0, 0.8, period_reset("daily", NOW))
        result = decide_spend(0.0, CreditPreference.ORG_ONLY, org_context(balance=5.0, limits=[limit]), 0.5)
        assert result.reason == "daily_limit"
        assert result.resets_at == datetime(2026, 3, 12, tzinfo=timezone.utc)

    def test_inactive_org(self):
        check = check_member_limits(org_context(active=False), 0.01)
        assert check.reason == "org_inactive"

    def test_org_only_without_org(self):
        result = decide_spend(10.0, CreditPreference.ORG_ONLY, None, 0.5)
        assert result.reason == "not_org_member"

    def test_personal_only(self):
        assert decide_spend(0.4, CreditPreference.PERSONAL_ONLY, None, 0.5).reason == "insufficient_credits"


class TestSelectSource:
    def test_auto_prefers_org_with_balance(self):
        source = select_source(3.0, CreditPreference.AUTO, org_context(balance=1.0))
        assert source.source == "organization"
        assert source.balance == 1.0
        assert source.personal_balance == 3.0

    def test_auto_uses_personal_when_org_is_empty(self):
        assert select_source(3.0, CreditPreference.AUTO, org_context(balance=0.0)).source == "personal"

    def test_effective_balance_bounded_by_limits(self):
        limit = LimitStatus("weekly", 2.0, 1.6, NOW)
        source = select_source(3.0, CreditPreference.ORG_ONLY, org_context(balance=1.0, limits=[limit]))
        assert effective_balance(source) == pytest.approx(0.4)

    def test_effective_balance_personal(self):
        assert effective_balance(select_source(3.0, CreditPreference.AUTO, None)) == 3.0


class TestCreditRepository:
    async def test_deduct_records_transaction(self, db, make_user):
        await make_user("user-1", balance=1.0)
        repo = CreditRepository(db)

        assert await repo.deduct("user-1", 0.25, description="Chat") == 0.75
        transactions = await repo.get_transactions("user-1")
        assert {t.type for t in transactions} == {"initial_grant", "usage"}

    async def test_deduct_refuses_overdraft(self, db, make_user):
        await make_user("user-1", balance=0.1)
        repo = CreditRepository(db)

        assert await repo.deduct("user-1", 0.5) is None
        assert await repo.get_balance("user-1") == pytest.approx(0.1)

    async def test_grant_is_idempotent_on_payment_id(self, db, make_user):
        await make_user("user-1")
        repo = CreditRepository(db)

        assert await repo.grant("user-1", 10.0, "purchase", stripe_payment_id="pi_123") == 10.0
        assert await repo.grant("user-1", 10.0, "purchase", stripe_payment_id="pi_123") == 10.0
        assert len(await repo.get_transactions("user-1", transaction_type="purchase")) == 1

    async def test_grant_unknown_user(self, db):
        assert await CreditRepository(db).grant("ghost", 1.0, "admin_grant") is None


class TestCreditService:
    async def _student(self, db, make_user, make_org, allocation=2.0, personal=0.0, settings=None):
        await make_user("owner-1", balance=0.0)
        await make_user("student-1", balance=personal)
        org = await make_org("owner-1", balance=10.0, settings=settings)
        member = await OrganizationRepository(db).add_member(org, "student-1", "student", credit_allocated=allocation)
        return org.id, member.id

    async def test_student_charge_consumes_allocation(self, db, make_user, make_org):
        org_id, member_id = await self._student(db, make_user, make_org)

        result = await CreditService(db).deduct_credits("student-1", 0.5, "Chat")

        assert result.success
        assert result.source == "organization"
        assert result.remaining == pytest.approx(1.5)
        member = await db.get(OrganizationMemberModel, member_id, populate_existing=True)
        org = await db.get(OrganizationModel, org_id, populate_existing=True)
        assert member.credit_used == pytest.approx(0.5)
        assert org.credit_balance == pytest.approx(9.5)
        assert org.credit_allocated == pytest.approx(1.5)

    async def test_student_limit_falls_back_to_personal(self, db, make_user, make_org):
        await self._student(db, make_user, make_org, personal=1.0, settings={"daily_limit_per_student": 0.3})

        result = await CreditService(db).deduct_credits("student-1", 0.5)

        assert result.success
        assert result.source == "personal"
        user = await db.get(UserModel, "student-1", populate_existing=True)
        assert user.credits_balance == pytest.approx(0.5)

    async def test_student_limit_without_personal_credits(self, db, make_user, make_org):
        await self._student(db, make_user, make_org, settings={"daily_limit_per_student": 0.3})

        result = await CreditService(db).deduct_credits("student-1", 0.5)

        assert not result.success
        assert result.error == "daily_limit"

    async def test_trainer_draws_on_free_pool(self, db, make_user, make_org):
        await make_user("owner-1", balance=5.0)
        org = await make_org("owner-1", balance=1.0)
        org_id = org.id

        service = CreditService(db)
        source = await service.get_user_credits("owner-1")
        assert source.source == "organization"
        assert source.is_trainer

        assert (await service.deduct_credits("owner-1", 0.4)).source == "organization"
        failed = await service.deduct_credits("owner-1", 1.0)
        assert not failed.success
        assert failed.error == "insufficient_org_credits"

        org = await db.get(OrganizationModel, org_id, populate_existing=True)
        user = await db.get(UserModel, "owner-1", populate_existing=True)
        assert org.credit_balance == pytest.approx(0.6)
        assert user.credits_balance == pytest.approx(5.0)

    async def test_check_can_spend_for_non_member(self, db, make_user):
        await make_user("user-1", balance=0.2)
        service = CreditService(db)

        assert (await service.check_can_spend("user-1", 0.1)).source == "personal"
        assert (await service.check_can_spend("user-1", 0.3)).reason == "insufficient_credits"

    async def test_org_member_limits_for_non_member(self, db, make_user):
        await make_user("user-1", balance=5.0)

        check = await CreditService(db).check_org_member_limits("user-1", 0.1)

        assert not check.allowed
        assert check.reason == "not_member"

    async def test_org_member_limits_when_org_inactive(self, db, make_user, make_org):
        org_id, _ = await self._student(db, make_user, make_org)
        org = await db.get(OrganizationModel, org_id)
        org.status = "suspended"
        await db.commit()

        check = await CreditService(db).check_org_member_limits("student-1", 0.1)

        assert (check.allowed, check.reason) == (False, "org_inactive")

    async def test_org_member_limits_within_allocation(self, db, make_user, make_org):
        await self._student(db, make_user, make_org, allocation=2.0)
        service = CreditService(db)

        assert (await service.check_org_member_limits("student-1", 1.5)).allowed
        refused = await service.check_org_member_limits("student-1", 3.0)
        assert refused.reason == "insufficient_allocation"
        assert not refused.is_trainer

    async def test_org_member_limits_count_todays_usage(self, db, make_user, make_org):
        await self._student(db, make_user, make_org, settings={"daily_limit_per_student": 0.3})
        service = CreditService(db)
        assert (await service.deduct_credits("student-1", 0.2)).source == "organization"

        refused = await service.check_org_member_limits("student-1", 0.2)
        assert refused.reason == "daily_limit"
        assert refused.resets_at is not None
        assert (await service.check_org_member_limits("student-1", 0.1)).allowed
