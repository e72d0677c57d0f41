"""Dual credit system: personal balance vs organization credits.

A user can pay for AI usage from their personal balance or, when they are
an active member of an organization, from organization credits. Which
source is used depends on the member's role and the user's credit
preference:

- Trainers (owner, admin, teacher) always spend from the organization's
  free pool and never fall back to personal credits.
- Students spend their allocation remainder (allocated - used), bounded
  by the organization's daily/weekly/monthly per-student limits.
- Everyone else spends personal credits.

The decision functions are pure; `CreditService` loads the state from
the database and applies charges under row locks.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncSession

from ..db.repository import CreditRepository, OrganizationRepository, UserRepository

logger = logging.getLogger(__name__)

TRAINER_ROLES = frozenset({"owner", "admin", "teacher"})

# Organization settings keys for per-student spending limits
LIMIT_SETTINGS = {
    "daily": "daily_limit_per_student",
    "weekly": "weekly_limit_per_student",
    "monthly": "monthly_limit_per_student",
}

EPSILON = 1e-9


class CreditPreference(str, Enum):
    """Which balance a user wants to spend first."""
    AUTO = "auto"
    ORG_FIRST = "org_first"
    PERSONAL_FIRST = "personal_first"
    ORG_ONLY = "org_only"
    PERSONAL_ONLY = "personal_only"


def parse_preference(value: Optional[str]) -> CreditPreference:
    try:
        return CreditPreference(value or CreditPreference.AUTO.value)
    except ValueError:
        logger.warning(f"Unknown credit preference {value!r}, using auto")
        return CreditPreference.AUTO


# ============ Limit periods ============


def period_start(period: str, now: datetime) -> datetime:
    """Start of the current limit period (UTC midnight, Monday, 1st of month)."""
    midnight = now.astimezone(timezone.utc).replace(hour=0, minute=0, second=0, microsecond=0)
    if period == "daily":
        return midnight
    if period == "weekly":
        return midnight - timedelta(days=midnight.weekday())
    if period == "monthly":
        return midnight.replace(day=1)
    raise ValueError(f"Unknown limit period: {period}")


def period_reset(period: str, now: datetime) -> datetime:
    """When the current limit period ends."""
    start = period_start(period, now)
    if period == "daily":
        return start + timedelta(days=1)
    if period == "weekly":
        return start + timedelta(days=7)
    if start.month == 12:
        return start.replace(year=start.year + 1, month=1)
    return start.replace(month=start.month + 1)


@dataclass
class LimitStatus:
    """Usage against one per-student limit."""
    period: str
    limit: float
    used: float
    resets_at: datetime

    @property
    def remaining(self) -> float:
        return round(max(self.limit - self.used, 0.0), 6)


def build_limit_statuses(
    org_settings: Optional[dict],
    usage_by_period: dict[str, float],
    now: datetime,
) -> list[LimitStatus]:
    """Limits configured on the organization, with the member's usage in each period."""
    org_settings = org_settings or {}
    statuses = []
    for period, key in LIMIT_SETTINGS.items():
        limit = org_settings.get(key)
        if limit is None:
            continue
        statuses.append(
            LimitStatus(
                period=period,
                limit=float(limit),
                used=round(usage_by_period.get(period, 0.0), 6),
                resets_at=period_reset(period, now),
            )
        )
    return statuses


# ============ Decision types ============


@dataclass
class OrgContext:
    """A user's active organization membership, as seen by the credit system."""
    organization_id: str
    organization_name: str
    organization_type: str
    member_id: str
    role: str
    org_active: bool
    # Free pool for trainers, allocation remainder for students
    balance: float
    limits: list[LimitStatus] = field(default_factory=list)

    @property
    def is_trainer(self) -> bool:
        return self.role in TRAINER_ROLES


@dataclass
class OrgLimitCheck:
    allowed: bool
    reason: Optional[str] = None
    resets_at: Optional[datetime] = None
    is_trainer: bool = False


@dataclass
class CreditSource:
    """The balance a user will spend from, and everything needed to show it."""
    source: str  # personal, organization
    balance: float
    preference: CreditPreference
    personal_balance: float
    org: Optional[OrgContext] = None

    @property
    def is_trainer(self) -> bool:
        return bool(self.org and self.org.is_trainer)


@dataclass
class SpendCheck:
    allowed: bool
    reason: Optional[str] = None
    resets_at: Optional[datetime] = None
    source: Optional[str] = None


@dataclass
class DeductResult:
    success: bool
    error: Optional[str] = None
    remaining: Optional[float] = None
    source: Optional[str] = None


def build_org_context(member, organization, usage_by_period: dict[str, float], now: datetime) -> OrgContext:
    """Build the credit view of a membership from its member and organization rows."""
    is_trainer = member.role in TRAINER_ROLES
    if is_trainer:
        balance = organization.credit_available
        limits = []
    else:
        balance = member.credit_remaining
        limits = build_limit_statuses(organization.settings, usage_by_period, now)
    return OrgContext(
        organization_id=organization.id,
        organization_name=organization.name,
        organization_type=organization.type,
        member_id=member.id,
        role=member.role,
        org_active=organization.status == "active",
        balance=round(max(balance, 0.0), 6),
        limits=limits,
    )


def check_member_limits(org: OrgContext, amount: float) -> OrgLimitCheck:
    """Whether a member may spend `amount` of organization credits."""
    if not org.org_active:
        return OrgLimitCheck(False, "org_inactive", is_trainer=org.is_trainer)

    if amount > org.balance + EPSILON:
        reason = "insufficient_org_credits" if org.is_trainer else "insufficient_allocation"
        return OrgLimitCheck(False, reason, is_trainer=org.is_trainer)

    for status in org.limits:
        if status.used + amount > status.limit + EPSILON:
            return OrgLimitCheck(
                False,
                f"{status.period}_limit",
                resets_at=status.resets_at,
                is_trainer=org.is_trainer,
            )

    return OrgLimitCheck(True, is_trainer=org.is_trainer)


def effective_preference(preference: CreditPreference, org: Optional[OrgContext]) -> CreditPreference:
    if org is not None and org.is_trainer:
        return CreditPreference.ORG_ONLY
    if preference == CreditPreference.ORG_FIRST:
        return CreditPreference.AUTO
    return preference


def select_source(
    personal_balance: float,
    preference: CreditPreference,
    org: Optional[OrgContext],
) -> CreditSource:
    """Pick the balance shown to the user and used by default."""
    pref = effective_preference(preference, org)

    def personal() -> CreditSource:
        return CreditSource("personal", personal_balance, pref, personal_balance, org)

    def organization() -> CreditSource:
        return CreditSource("organization", org.balance, pref, personal_balance, org)

    if org is None or pref == CreditPreference.PERSONAL_ONLY:
        return personal()
    if pref == CreditPreference.ORG_ONLY:
        return organization()
    if pref == CreditPreference.PERSONAL_FIRST:
        return personal() if personal_balance > 0 else organization()
    return organization() if org.balance > 0 else personal()


def spending_order(preference: CreditPreference, org: Optional[OrgContext]) -> list[str]:
    """Sources to try, in order, when charging a user."""
    if org is None:
        return ["personal"]
    pref = effective_preference(preference, org)
    if pref == CreditPreference.ORG_ONLY:
        return ["organization"]
    if pref == CreditPreference.PERSONAL_ONLY:
        return ["personal"]
    if pref == CreditPreference.PERSONAL_FIRST:
        return ["personal", "organization"]
    return ["organization", "personal"]


def decide_spend(
    personal_balance: float,
    preference: CreditPreference,
    org: Optional[OrgContext],
    amount: float,
) -> SpendCheck:
    """
    Decide whether `amount` can be spent and from which source.

    When every source fails, the organization's reason is reported if an
    organization was tried, since it is the more specific one.
    """
    if org is None and preference == CreditPreference.ORG_ONLY:
        return SpendCheck(False, "not_org_member")

    org_check: Optional[OrgLimitCheck] = None
    for source in spending_order(preference, org):
        if source == "personal":
            if personal_balance + EPSILON >= amount:
                return SpendCheck(True, source="personal")
        else:
            org_check = check_member_limits(org, amount)
            if org_check.allowed:
                return SpendCheck(True, source="organization")

    if org_check is not None:
        return SpendCheck(False, org_check.reason, org_check.resets_at)
    return SpendCheck(False, "insufficient_credits")


def effective_balance(source: CreditSource) -> float:
    """What the user can actually spend right now from the selected source."""
    if source.source == "personal" or source.org is None:
        return round(source.personal_balance, 6)
    values = [source.org.balance] + [status.remaining for status in source.org.limits]
    return round(max(min(values), 0.0), 6)


# ============ Database-backed service ============


class CreditService:
    """Loads credit state for a user and applies charges."""

    def __init__(self, db: AsyncSession):
        self.db = db
        self.users = UserRepository(db)
        self.credits = CreditRepository(db)
        self.orgs = OrganizationRepository(db)

    async def _usage_by_period(self, member_id: str, now: datetime) -> dict[str, float]:
        return {
            period: await self.orgs.sum_member_usage_since(member_id, period_start(period, now))
            for period in LIMIT_SETTINGS
        }

    async def load_org_context(self, user_id: str) -> Optional[OrgContext]:
        member = await self.orgs.get_active_membership(user_id)
        if not member:
            return None
        now = datetime.now(timezone.utc)
        usage = await self._usage_by_period(member.id, now)
        return build_org_context(member, member.organization, usage, now)

    async def get_user_credits(self, user_id: str) -> CreditSource:
        user = await self.users.get(user_id)
        personal_balance = user.credits_balance if user else 0.0
        preference = parse_preference(user.credit_preference if user else None)
        org = await self.load_org_context(user_id)
        return select_source(personal_balance, preference, org)

    async def check_can_spend(self, user_id: str, amount: float) -> SpendCheck:
        user = await self.users.get(user_id)
        personal_balance = user.credits_balance if user else 0.0
        preference = parse_preference(user.credit_preference if user else None)
        org = await self.load_org_context(user_id)
        return decide_spend(personal_balance, preference, org, amount)

    async def check_org_member_limits(self, user_id: str, amount: float) -> OrgLimitCheck:
        org = await self.load_org_context(user_id)
        if org is None:
            return OrgLimitCheck(False, "not_member")
        return check_member_limits(org, amount)

    async def record_org_member_usage(
        self,
        user_id: str,
        amount: float,
        description: Optional[str] = None,
    ) -> OrgLimitCheck:
        """
        Charge organization credits for a member.

        Trainers draw on the organization balance directly. Students consume
        their allocation: the amount moves from allocated to used, and the
        organization balance and allocated total both shrink by it.
        """
        membership = await self.orgs.get_active_membership(user_id)
        if not membership:
            return OrgLimitCheck(False, "not_member")

        member = await self.orgs.get_member_for_update(membership.id)
        organization = await self.orgs.get_for_update(membership.organization_id)
        if not member or not organization:
            await self.db.rollback()
            return OrgLimitCheck(False, "not_member")

        now = datetime.now(timezone.utc)
        usage = await self._usage_by_period(member.id, now)
        context = build_org_context(member, organization, usage, now)
        check = check_member_limits(context, amount)
        if not check.allowed:
            await self.db.rollback()  # Release the locks
            logger.info(f"Organization charge refused for user {user_id}: {check.reason}")
            return check

        organization.credit_balance = round(organization.credit_balance - amount, 6)
        if not context.is_trainer:
            member.credit_used = round(member.credit_used + amount, 6)
            organization.credit_allocated = round(organization.credit_allocated - amount, 6)

        self.orgs.add_transaction(
            organization,
            "usage",
            -amount,
            member_id=member.id,
            user_id=user_id,
            description=description or "AI usage",
        )
        await self.db.commit()

        logger.info(
            f"Charged {amount:.6f} EUR to organization {organization.id} for member {member.id} "
            f"({'trainer' if context.is_trainer else 'student'})"
        )
        return check

    async def deduct_personal(self, user_id: str, amount: float, description: Optional[str] = None) -> Optional[float]:
        return await self.credits.deduct(user_id, amount, description=description)

    async def deduct_credits(
        self,
        user_id: str,
        amount: float,
        description: Optional[str] = None,
    ) -> DeductResult:
        """Charge a user following their role and credit preference."""
        user = await self.users.get(user_id)
        if not user:
            return DeductResult(False, "user_not_found")

        preference = parse_preference(user.credit_preference)
        org = await self.load_org_context(user_id)

        if org is None and preference == CreditPreference.ORG_ONLY:
            return DeductResult(False, "not_org_member")

        org_reason: Optional[str] = None
        for source in spending_order(preference, org):
            if source == "organization":
                check = await self.record_org_member_usage(user_id, amount, description)
                if check.allowed:
                    refreshed = await self.load_org_context(user_id)
                    remaining = refreshed.balance if refreshed else 0.0
                    return DeductResult(True, remaining=remaining, source="organization")
                org_reason = check.reason
            else:
                new_balance = await self.deduct_personal(user_id, amount, description)
                if new_balance is not None:
                    return DeductResult(True, remaining=new_balance, source="personal")

        return DeductResult(False, org_reason or "insufficient_credits")
