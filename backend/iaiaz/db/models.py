"""SQLAlchemy database models."""

import uuid
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import (
    Column,
    String,
    Text,
    Integer,
    Float,
    Boolean,
    Date,
    DateTime,
    ForeignKey,
    JSON,
    Index,
    Numeric,
    UniqueConstraint,
)
from sqlalchemy.orm import relationship

from .database import Base

# EUR amounts: exact storage, float arithmetic in Python
MONEY = Numeric(12, 6, asdecimal=False)


def generate_uuid() -> str:
    """Generate a UUID string."""
    return str(uuid.uuid4())


def utc_now() -> datetime:
    """Get current UTC timestamp."""
    return datetime.now(timezone.utc)


def ensure_utc(value: Optional[datetime]) -> Optional[datetime]:
    """SQLite hands back naive datetimes; treat them as UTC."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


class UserModel(Base):
    """
    Database model for authenticated users (profiles).

    Users are synced from Supabase Auth on first authentication.
    The ID is the Supabase user id (the JWT `sub` claim).
    """

    __tablename__ = "users"

    id = Column(String(100), primary_key=True)

    email = Column(String(255), nullable=False, unique=True, index=True)
    display_name = Column(String(200), nullable=True)
    birthdate = Column(Date, nullable=True)

    is_admin = Column(Boolean, nullable=False, default=False)

    # Personal credits (EUR)
    credits_balance = Column(MONEY, nullable=False, default=0.0)
    # Credits received from a family organization, for parental reporting
    credits_allocated = Column(MONEY, nullable=False, default=0.0)
    # auto, org_first, personal_first, org_only, personal_only
    credit_preference = Column(String(20), nullable=False, default="auto")

    stripe_customer_id = Column(String(100), nullable=True, index=True)

    created_at = Column(DateTime(timezone=True), default=utc_now, nullable=False)
    updated_at = Column(DateTime(timezone=True), default=utc_now, onupdate=utc_now, nullable=False)

    credit_transactions = relationship(
        "CreditTransactionModel",
        back_populates="user",
        cascade="all, delete-orphan",
        order_by="desc(CreditTransactionModel.created_at)",
    )
    conversations = relationship(
        "ConversationModel",
        back_populates="user",
        cascade="all, delete-orphan",
    )
    memberships = relationship(
        "OrganizationMemberModel",
        back_populates="user",
        cascade="all, delete-orphan",
    )

    def __repr__(self) -> str:
        return f"<User(id={self.id}, email={self.email})>"


class CreditTransactionModel(Base):
    """
    Personal credit ledger.

    Amount is positive for grants and purchases, negative for usage and
    debits. `stripe_payment_id` makes webhook grants idempotent.
    """

    __tablename__ = "credit_transactions"

    id = Column(String(36), primary_key=True, default=generate_uuid)
    user_id = Column(
        String(100),
        ForeignKey("users.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )

    amount = Column(MONEY, nullable=False)
    # initial_grant, purchase, usage, refund, admin_grant, admin_debit,
    # transfer_in, transfer_out, family_allocation
    type = Column(String(30), nullable=False, index=True)
    description = Column(Text, nullable=True)
    balance_after = Column(MONEY, nullable=False)

    stripe_payment_id = Column(String(255), nullable=True, unique=True, index=True)

    created_at = Column(DateTime(timezone=True), default=utc_now, nullable=False, index=True)

    user = relationship("UserModel", back_populates="credit_transactions")

    def __repr__(self) -> str:
        return f"<CreditTransaction(id={self.id}, type={self.type}, amount={self.amount})>"


class AIModelModel(Base):
    """Catalogue entry for a chat model, with per-million-token prices."""

    __tablename__ = "ai_models"

    id = Column(String(100), primary_key=True)
    name = Column(String(200), nullable=False)
    provider = Column(String(50), nullable=False, index=True)

    input_price = Column(Float, nullable=False)
    output_price = Column(Float, nullable=False)

    description = Column(Text, nullable=True)
    category = Column(String(50), nullable=False, default="balanced")
    is_recommended = Column(Boolean, nullable=False, default=False)
    is_active = Column(Boolean, nullable=False, default=True, index=True)
    max_tokens = Column(Integer, nullable=False, default=4096)
    # economy, standard, premium
    rate_limit_tier = Column(String(20), nullable=False, default="standard")
    # {"images": bool, "pdf": bool}
    capabilities = Column(JSON, default=dict)
    system_role = Column(String(50), nullable=True)
    display_order = Column(Integer, nullable=False, default=100)
    co2_per_million_tokens = Column(Float, nullable=False, default=0.5)

    created_at = Column(DateTime(timezone=True), default=utc_now, nullable=False)
    updated_at = Column(DateTime(timezone=True), default=utc_now, onupdate=utc_now, nullable=False)

    def __repr__(self) -> str:
        return f"<AIModel(id={self.id}, provider={self.provider})>"


class AppSettingModel(Base):
    """Key/value application setting editable from the admin panel."""

    __tablename__ = "app_settings"

    key = Column(String(100), primary_key=True)
    value = Column(JSON, nullable=False)
    description = Column(Text, nullable=True)
    updated_by = Column(String(100), nullable=True)
    updated_at = Column(DateTime(timezone=True), default=utc_now, onupdate=utc_now, nullable=False)

    def __repr__(self) -> str:
        return f"<AppSetting(key={self.key})>"


class ConversationModel(Base):
    """A chat conversation owned by one user."""

    __tablename__ = "conversations"

    id = Column(String(36), primary_key=True, default=generate_uuid)
    user_id = Column(
        String(100),
        ForeignKey("users.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    title = Column(String(200), nullable=False, default="Nouvelle conversation")
    model = Column(String(100), nullable=False)

    created_at = Column(DateTime(timezone=True), default=utc_now, nullable=False)
    updated_at = Column(DateTime(timezone=True), default=utc_now, onupdate=utc_now, nullable=False)

    user = relationship("UserModel", back_populates="conversations")
    messages = relationship(
        "MessageModel",
        back_populates="conversation",
        cascade="all, delete-orphan",
        order_by="MessageModel.created_at",
    )

    def __repr__(self) -> str:
        return f"<Conversation(id={self.id}, user_id={self.user_id})>"


class MessageModel(Base):
    """A single message within a conversation."""

    __tablename__ = "messages"

    id = Column(String(36), primary_key=True, default=generate_uuid)
    conversation_id = Column(
        String(36),
        ForeignKey("conversations.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    role = Column(String(20), nullable=False)  # user, assistant
    content = Column(Text, nullable=False)
    model = Column(String(100), nullable=True)
    tokens_input = Column(Integer, nullable=False, default=0)
    tokens_output = Column(Integer, nullable=False, default=0)
    cost = Column(MONEY, nullable=False, default=0.0)

    created_at = Column(DateTime(timezone=True), default=utc_now, nullable=False, index=True)

    conversation = relationship("ConversationModel", back_populates="messages")

    def __repr__(self) -> str:
        return f"<Message(id={self.id}, role={self.role})>"


class ApiUsageModel(Base):
    """
    One row per completed provider call.

    `cost_eur` is what the user was charged (markup included);
    `provider_cost_eur` is the raw provider cost used for margin reporting.
    """

    __tablename__ = "api_usage"

    id = Column(String(36), primary_key=True, default=generate_uuid)
    user_id = Column(
        String(100),
        ForeignKey("users.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    conversation_id = Column(
        String(36),
        ForeignKey("conversations.id", ondelete="SET NULL"),
        nullable=True,
    )
    organization_id = Column(String(36), nullable=True, index=True)

    model = Column(String(100), nullable=False)
    provider = Column(String(50), nullable=False)
    tokens_input = Column(Integer, nullable=False, default=0)
    tokens_output = Column(Integer, nullable=False, default=0)
    cost_eur = Column(MONEY, nullable=False, default=0.0)
    provider_cost_eur = Column(MONEY, nullable=False, default=0.0)
    co2_grams = Column(Float, nullable=False, default=0.0)
    credit_source = Column(String(20), nullable=True)  # personal, organization

    created_at = Column(DateTime(timezone=True), default=utc_now, nullable=False, index=True)

    __table_args__ = (
        Index("ix_api_usage_user_created", "user_id", "created_at"),
    )

    def __repr__(self) -> str:
        return f"<ApiUsage(id={self.id}, model={self.model}, cost={self.cost_eur})>"


# ============ Organizations ============


class OrganizationModel(Base):
    """
    A tenant with a pooled credit balance.

    `credit_balance` is the total pool; `credit_allocated` is the part of
    it already promised to students. The free pool is the difference.
    """

    __tablename__ = "organizations"

    id = Column(String(36), primary_key=True, default=generate_uuid)
    name = Column(String(200), nullable=False)
    slug = Column(String(120), nullable=False, unique=True, index=True)
    # family, school, business, training_center
    type = Column(String(30), nullable=False, default="school")
    status = Column(String(20), nullable=False, default="active")
    contact_email = Column(String(255), nullable=True)

    owner_id = Column(
        String(100),
        ForeignKey("users.id", ondelete="SET NULL"),
        nullable=True,
        index=True,
    )

    credit_balance = Column(MONEY, nullable=False, default=0.0)
    credit_allocated = Column(MONEY, nullable=False, default=0.0)

    # {"allowed_models": [...] | null, "daily_limit_per_student": float, ...}
    settings = Column(JSON, default=dict)

    # Family plans
    max_family_members = Column(Integer, nullable=True)
    # trialing, active, past_due, unpaid, canceled
    subscription_status = Column(String(20), nullable=True)
    trial_end = Column(DateTime(timezone=True), nullable=True)
    subscription_cancel_at_period_end = Column(Boolean, nullable=False, default=False)
    subscription_current_period_end = Column(DateTime(timezone=True), nullable=True)

    stripe_customer_id = Column(String(100), nullable=True)
    stripe_subscription_id = Column(String(100), nullable=True, unique=True)

    created_at = Column(DateTime(timezone=True), default=utc_now, nullable=False)
    updated_at = Column(DateTime(timezone=True), default=utc_now, onupdate=utc_now, nullable=False)

    members = relationship(
        "OrganizationMemberModel",
        back_populates="organization",
        cascade="all, delete-orphan",
    )
    classes = relationship(
        "OrganizationClassModel",
        back_populates="organization",
        cascade="all, delete-orphan",
    )

    @property
    def credit_available(self) -> float:
        return round((self.credit_balance or 0.0) - (self.credit_allocated or 0.0), 6)

    def __repr__(self) -> str:
        return f"<Organization(id={self.id}, type={self.type}, name={self.name})>"


class OrganizationMemberModel(Base):
    """Membership of a user in an organization."""

    __tablename__ = "organization_members"

    id = Column(String(36), primary_key=True, default=generate_uuid)
    organization_id = Column(
        String(36),
        ForeignKey("organizations.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    user_id = Column(
        String(100),
        ForeignKey("users.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    class_id = Column(
        String(36),
        ForeignKey("organization_classes.id", ondelete="SET NULL"),
        nullable=True,
        index=True,
    )

    role = Column(String(20), nullable=False, default="student")  # owner, admin, teacher, student
    status = Column(String(20), nullable=False, default="active")  # active, removed

    credit_allocated = Column(MONEY, nullable=False, default=0.0)
    credit_used = Column(MONEY, nullable=False, default=0.0)
    can_manage_credits = Column(Boolean, nullable=False, default=False)

    # Family children
    supervision_mode = Column(String(20), nullable=True)  # guided, trusted, adult
    birthdate = Column(Date, nullable=True)

    joined_at = Column(DateTime(timezone=True), default=utc_now, nullable=False)

    organization = relationship("OrganizationModel", back_populates="members")
    user = relationship("UserModel", back_populates="memberships")

    __table_args__ = (
        UniqueConstraint("organization_id", "user_id", name="uq_org_member"),
    )

    @property
    def credit_remaining(self) -> float:
        return round((self.credit_allocated or 0.0) - (self.credit_used or 0.0), 6)

    def __repr__(self) -> str:
        return f"<OrganizationMember(org={self.organization_id}, user={self.user_id}, role={self.role})>"


class OrganizationClassModel(Base):
    """A class (cohort) inside a school or training centre."""

    __tablename__ = "organization_classes"

    id = Column(String(36), primary_key=True, default=generate_uuid)
    organization_id = Column(
        String(36),
        ForeignKey("organizations.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    name = Column(String(200), nullable=False)
    description = Column(Text, nullable=True)
    status = Column(String(20), nullable=False, default="active")  # active, closed
    # {"allowed_models": [...] | null}
    settings = Column(JSON, default=dict)
    created_by = Column(String(100), nullable=True)
    join_token = Column(String(64), nullable=True, unique=True)

    created_at = Column(DateTime(timezone=True), default=utc_now, nullable=False)
    updated_at = Column(DateTime(timezone=True), default=utc_now, onupdate=utc_now, nullable=False)
    closed_at = Column(DateTime(timezone=True), nullable=True)

    organization = relationship("OrganizationModel", back_populates="classes")

    def __repr__(self) -> str:
        return f"<OrganizationClass(id={self.id}, name={self.name})>"


class OrganizationTransactionModel(Base):
    """Organization credit ledger (purchases, allocations, usage, transfers)."""

    __tablename__ = "organization_transactions"

    id = Column(String(36), primary_key=True, default=generate_uuid)
    organization_id = Column(
        String(36),
        ForeignKey("organizations.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    member_id = Column(
        String(36),
        ForeignKey("organization_members.id", ondelete="SET NULL"),
        nullable=True,
        index=True,
    )
    user_id = Column(String(100), nullable=True)

    # purchase, credit_allocated, usage, transfer_in, transfer_out,
    # family_allocation, admin_adjustment, allocation_returned
    type = Column(String(30), nullable=False, index=True)
    amount = Column(MONEY, nullable=False)
    balance_after = Column(MONEY, nullable=False)
    description = Column(Text, nullable=True)
    stripe_payment_id = Column(String(255), nullable=True, unique=True)

    created_at = Column(DateTime(timezone=True), default=utc_now, nullable=False, index=True)

    def __repr__(self) -> str:
        return f"<OrganizationTransaction(org={self.organization_id}, type={self.type}, amount={self.amount})>"


class OrganizationInviteModel(Base):
    """Email invitation to join an organization."""

    __tablename__ = "organization_invites"

    id = Column(String(36), primary_key=True, default=generate_uuid)
    organization_id = Column(
        String(36),
        ForeignKey("organizations.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    email = Column(String(255), nullable=False, index=True)
    role = Column(String(20), nullable=False, default="student")
    token = Column(String(64), nullable=False, unique=True, index=True)
    credit_amount = Column(MONEY, nullable=False, default=0.0)
    class_id = Column(String(36), nullable=True)
    birthdate = Column(Date, nullable=True)
    status = Column(String(20), nullable=False, default="pending")  # pending, accepted, revoked
    invited_by = Column(String(100), nullable=True)

    expires_at = Column(DateTime(timezone=True), nullable=False)
    accepted_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), default=utc_now, nullable=False)

    def __repr__(self) -> str:
        return f"<OrganizationInvite(org={self.organization_id}, email={self.email}, status={self.status})>"


class CreditTransferModel(Base):
    """Transfer between a member's personal balance and an organization pool."""

    __tablename__ = "credit_transfers"

    id = Column(String(36), primary_key=True, default=generate_uuid)
    user_id = Column(
        String(100),
        ForeignKey("users.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    organization_id = Column(
        String(36),
        ForeignKey("organizations.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    direction = Column(String(20), nullable=False)  # to_org, to_personal
    amount = Column(MONEY, nullable=False)

    created_at = Column(DateTime(timezone=True), default=utc_now, nullable=False)

    def __repr__(self) -> str:
        return f"<CreditTransfer(user={self.user_id}, direction={self.direction}, amount={self.amount})>"


class ClassAnalyticsModel(Base):
    """Stored snapshot of class metrics for a period."""

    __tablename__ = "class_analytics"

    id = Column(String(36), primary_key=True, default=generate_uuid)
    class_id = Column(
        String(36),
        ForeignKey("organization_classes.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    period_type = Column(String(20), nullable=False)  # day, week, month, custom
    period_start = Column(Date, nullable=False)
    metrics = Column(JSON, nullable=False, default=dict)

    created_at = Column(DateTime(timezone=True), default=utc_now, nullable=False)

    __table_args__ = (
        UniqueConstraint("class_id", "period_type", "period_start", name="uq_class_analytics_period"),
    )


# ============ Family ============


class ParentalControlModel(Base):
    """Per-child settings inside a family organization."""

    __tablename__ = "parental_controls"

    id = Column(String(36), primary_key=True, default=generate_uuid)
    organization_id = Column(
        String(36),
        ForeignKey("organizations.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    child_user_id = Column(
        String(100),
        ForeignKey("users.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    supervision_mode = Column(String(20), nullable=False, default="guided")
    daily_time_limit_minutes = Column(Integer, nullable=True)
    daily_credit_limit = Column(MONEY, nullable=True)
    cumulative_credits = Column(Boolean, nullable=False, default=False)
    quiet_hours_start = Column(String(5), nullable=True)  # "HH:MM"
    quiet_hours_end = Column(String(5), nullable=True)
    updated_by = Column(String(100), nullable=True)

    created_at = Column(DateTime(timezone=True), default=utc_now, nullable=False)
    updated_at = Column(DateTime(timezone=True), default=utc_now, onupdate=utc_now, nullable=False)

    __table_args__ = (
        UniqueConstraint("organization_id", "child_user_id", name="uq_parental_control_child"),
    )


class CreditRequestModel(Base):
    """A child's request for more credits, reviewed by a parent."""

    __tablename__ = "credit_requests"

    id = Column(String(36), primary_key=True, default=generate_uuid)
    organization_id = Column(
        String(36),
        ForeignKey("organizations.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    child_user_id = Column(
        String(100),
        ForeignKey("users.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    amount = Column(MONEY, nullable=False)
    reason = Column(Text, nullable=True)
    status = Column(String(20), nullable=False, default="pending")  # pending, approved, denied
    reviewed_by = Column(String(100), nullable=True)
    reviewed_at = Column(DateTime(timezone=True), nullable=True)

    created_at = Column(DateTime(timezone=True), default=utc_now, nullable=False)


# ============ Rate limits, budgets, audit ============


class RateLimitEventModel(Base):
    """One accepted chat request, used for the per-tier sliding window."""

    __tablename__ = "rate_limit_events"

    id = Column(String(36), primary_key=True, default=generate_uuid)
    user_id = Column(String(100), nullable=False)
    model_tier = Column(String(20), nullable=False)
    created_at = Column(DateTime(timezone=True), default=utc_now, nullable=False)

    __table_args__ = (
        Index("ix_rate_limit_user_tier_created", "user_id", "model_tier", "created_at"),
    )


class ProviderBudgetModel(Base):
    """Monthly spend budget and alert configuration for one AI provider."""

    __tablename__ = "provider_budgets"

    provider = Column(String(50), primary_key=True)
    monthly_budget_eur = Column(MONEY, nullable=False, default=0.0)
    alert_threshold_50 = Column(Boolean, nullable=False, default=True)
    alert_threshold_75 = Column(Boolean, nullable=False, default=True)
    alert_threshold_90 = Column(Boolean, nullable=False, default=True)
    alert_threshold_100 = Column(Boolean, nullable=False, default=True)
    notes = Column(Text, nullable=True)
    manual_balance = Column(MONEY, nullable=True)
    manual_balance_updated_at = Column(DateTime(timezone=True), nullable=True)

    updated_at = Column(DateTime(timezone=True), default=utc_now, onupdate=utc_now, nullable=False)


class ProviderAlertModel(Base):
    """A budget threshold crossed by a provider in a given month."""

    __tablename__ = "provider_alerts"

    id = Column(String(36), primary_key=True, default=generate_uuid)
    provider = Column(String(50), nullable=False, index=True)
    threshold = Column(Integer, nullable=False)
    period = Column(String(7), nullable=False)  # YYYY-MM
    spend_eur = Column(MONEY, nullable=False)
    budget_eur = Column(MONEY, nullable=False)
    acknowledged = Column(Boolean, nullable=False, default=False)
    acknowledged_by = Column(String(100), nullable=True)
    acknowledged_at = Column(DateTime(timezone=True), nullable=True)

    created_at = Column(DateTime(timezone=True), default=utc_now, nullable=False)

    __table_args__ = (
        UniqueConstraint("provider", "period", "threshold", name="uq_provider_alert_period"),
    )


class AdminAuditLogModel(Base):
    """Record of an admin action touching user or organization data."""

    __tablename__ = "admin_audit_log"

    id = Column(String(36), primary_key=True, default=generate_uuid)
    admin_id = Column(String(100), nullable=False, index=True)
    action = Column(String(50), nullable=False, index=True)
    target_user_id = Column(String(100), nullable=True, index=True)
    target_organization_id = Column(String(36), nullable=True)
    details = Column(JSON, default=dict)
    ip_address = Column(String(64), nullable=True)
    user_agent = Column(Text, nullable=True)

    created_at = Column(DateTime(timezone=True), default=utc_now, nullable=False, index=True)

    def __repr__(self) -> str:
        return f"<AdminAuditLog(admin={self.admin_id}, action={self.action})>"
