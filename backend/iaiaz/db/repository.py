"""Repository pattern for database operations."""

import logging
import secrets
from datetime import date, datetime, timedelta, timezone as tz
from typing import Any, Optional

from sqlalchemy import select, update, delete, func
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from .models import (
    UserModel,
    CreditTransactionModel,
    AIModelModel,
    AppSettingModel,
    ConversationModel,
    MessageModel,
    ApiUsageModel,
    OrganizationModel,
    OrganizationMemberModel,
    OrganizationClassModel,
    OrganizationTransactionModel,
    OrganizationInviteModel,
    CreditTransferModel,
    ClassAnalyticsModel,
    ParentalControlModel,
    CreditRequestModel,
    RateLimitEventModel,
    ProviderBudgetModel,
    ProviderAlertModel,
    AdminAuditLogModel,
)
from ..core.analytics import ClassMessageRow, ClassMemberRow, UsageRow

logger = logging.getLogger(__name__)


def _round(value: float) -> float:
    return round(value, 6)


class UserRepository:
    """Repository for user (profile) operations."""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def get(self, user_id: str) -> Optional[UserModel]:
        result = await self.db.execute(
            select(UserModel).where(UserModel.id == user_id)
        )
        return result.scalar_one_or_none()

    async def get_by_email(self, email: str) -> Optional[UserModel]:
        result = await self.db.execute(
            select(UserModel).where(func.lower(UserModel.email) == email.lower())
        )
        return result.scalar_one_or_none()

    async def get_for_update(self, user_id: str) -> Optional[UserModel]:
        """
        Get a user with a row-level lock for atomic balance updates.

        Uses SELECT ... FOR UPDATE to prevent race conditions during
        concurrent credit operations.
        """
        result = await self.db.execute(
            select(UserModel)
            .where(UserModel.id == user_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def create(
        self,
        user_id: str,
        email: str,
        display_name: Optional[str] = None,
        welcome_credits: float = 0.0,
    ) -> UserModel:
        """
        Create a user and record their welcome credit grant.

        Args:
            user_id: Supabase user id
            email: Email address
            display_name: Optional display name
            welcome_credits: Free credits granted at signup (EUR)

        Returns:
            The new UserModel
        """
        user = UserModel(
            id=user_id,
            email=email,
            display_name=display_name,
            credits_balance=welcome_credits,
        )
        self.db.add(user)

        if welcome_credits > 0:
            self.db.add(
                CreditTransactionModel(
                    user_id=user_id,
                    amount=welcome_credits,
                    type="initial_grant",
                    description="Crédits de bienvenue",
                    balance_after=welcome_credits,
                )
            )

        await self.db.commit()
        await self.db.refresh(user)

        logger.info(f"Created new user {user.id} ({user.email}) with {welcome_credits} EUR welcome credits")
        return user

    async def update_profile(
        self,
        user: UserModel,
        email: Optional[str] = None,
        display_name: Optional[str] = None,
        birthdate: Optional[date] = None,
    ) -> UserModel:
        changed = False
        if birthdate and user.birthdate != birthdate:
            user.birthdate = birthdate
            changed = True
        if email and user.email != email:
            user.email = email
            changed = True
        if display_name and user.display_name != display_name:
            user.display_name = display_name
            changed = True
        if changed:
            await self.db.commit()
            logger.info(f"Updated user {user.id}")
        return user

    async def set_stripe_customer_id(self, user_id: str, customer_id: str) -> None:
        user = await self.get(user_id)
        if user and user.stripe_customer_id != customer_id:
            user.stripe_customer_id = customer_id
            await self.db.commit()

    async def set_credit_preference(self, user_id: str, preference: str) -> Optional[UserModel]:
        user = await self.get(user_id)
        if not user:
            return None
        user.credit_preference = preference
        await self.db.commit()
        await self.db.refresh(user)
        logger.info(f"User {user_id} credit preference set to {preference}")
        return user


class CreditRepository:
    """
    Repository for personal credit operations.

    Balances are EUR amounts stored on the user row; every change is
    mirrored by a CreditTransactionModel.
    """

    def __init__(self, db: AsyncSession):
        self.db = db
        self.users = UserRepository(db)

    # ============ Balance Operations ============

    async def get_balance(self, user_id: str) -> Optional[float]:
        result = await self.db.execute(
            select(UserModel.credits_balance).where(UserModel.id == user_id)
        )
        return result.scalar_one_or_none()

    async def is_stripe_payment_processed(self, stripe_payment_id: str) -> bool:
        """
        Check if a Stripe payment has already been credited.

        Used to prevent duplicate credit grants from webhook retries.
        """
        result = await self.db.execute(
            select(CreditTransactionModel.id)
            .where(CreditTransactionModel.stripe_payment_id == stripe_payment_id)
        )
        return result.scalar_one_or_none() is not None

    # ============ Credit Operations ============

    async def deduct(
        self,
        user_id: str,
        amount: float,
        description: Optional[str] = None,
        transaction_type: str = "usage",
    ) -> Optional[float]:
        """
        Deduct credits from a user's personal balance atomically.

        Args:
            user_id: User ID string
            amount: EUR to deduct (positive number)
            description: Optional transaction description
            transaction_type: usage, admin_debit or transfer_out

        Returns:
            New balance, or None if the user is missing or the balance is too low
        """
        user = await self.users.get_for_update(user_id)
        if not user:
            await self.db.rollback()
            return None

        if user.credits_balance < amount:
            logger.warning(
                f"Insufficient credits for user {user_id}: has {user.credits_balance:.6f}, needs {amount:.6f}"
            )
            await self.db.rollback()  # Release the lock
            return None

        new_balance = _round(user.credits_balance - amount)
        user.credits_balance = new_balance

        self.db.add(
            CreditTransactionModel(
                user_id=user_id,
                amount=-amount,  # Negative for deductions
                type=transaction_type,
                description=description or "AI usage",
                balance_after=new_balance,
            )
        )

        await self.db.commit()

        logger.info(f"Deducted {amount:.6f} EUR from user {user_id}, new balance: {new_balance:.6f}")
        return new_balance

    async def grant(
        self,
        user_id: str,
        amount: float,
        grant_type: str,
        description: Optional[str] = None,
        stripe_payment_id: Optional[str] = None,
    ) -> Optional[float]:
        """
        Grant credits to a user.

        Args:
            user_id: User ID string
            amount: EUR to add (positive number)
            grant_type: purchase, admin_grant, refund, transfer_in, family_allocation
            description: Optional transaction description
            stripe_payment_id: Stripe payment intent or session id for idempotency

        Returns:
            New balance (unchanged if the payment was already processed),
            or None if the user does not exist
        """
        if stripe_payment_id and await self.is_stripe_payment_processed(stripe_payment_id):
            logger.info(f"Stripe payment {stripe_payment_id} already processed, skipping grant")
            return await self.get_balance(user_id)

        user = await self.users.get_for_update(user_id)
        if not user:
            await self.db.rollback()
            logger.error(f"Cannot grant credits: user {user_id} not found")
            return None

        new_balance = _round(user.credits_balance + amount)
        user.credits_balance = new_balance

        self.db.add(
            CreditTransactionModel(
                user_id=user_id,
                amount=amount,  # Positive for grants
                type=grant_type,
                description=description,
                balance_after=new_balance,
                stripe_payment_id=stripe_payment_id,
            )
        )

        await self.db.commit()

        logger.info(f"Granted {amount:.6f} EUR to user {user_id}, new balance: {new_balance:.6f}")
        return new_balance

    # ============ Transaction History ============

    async def get_transactions(
        self,
        user_id: str,
        limit: int = 50,
        offset: int = 0,
        transaction_type: Optional[str] = None,
    ) -> list[CreditTransactionModel]:
        query = select(CreditTransactionModel).where(
            CreditTransactionModel.user_id == user_id
        )

        if transaction_type:
            query = query.where(CreditTransactionModel.type == transaction_type)

        query = (
            query
            .order_by(CreditTransactionModel.created_at.desc())
            .limit(limit)
            .offset(offset)
        )

        result = await self.db.execute(query)
        return list(result.scalars().all())


class ModelRepository:
    """Repository for the AI model catalogue."""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def list_active(self) -> list[AIModelModel]:
        result = await self.db.execute(
            select(AIModelModel)
            .where(AIModelModel.is_active.is_(True))
            .order_by(AIModelModel.display_order, AIModelModel.name)
        )
        return list(result.scalars().all())

    async def list_all(self) -> list[AIModelModel]:
        result = await self.db.execute(
            select(AIModelModel).order_by(AIModelModel.display_order, AIModelModel.name)
        )
        return list(result.scalars().all())

    async def get(self, model_id: str) -> Optional[AIModelModel]:
        result = await self.db.execute(
            select(AIModelModel).where(AIModelModel.id == model_id)
        )
        return result.scalar_one_or_none()

    async def create(self, **fields: Any) -> AIModelModel:
        model = AIModelModel(**fields)
        self.db.add(model)
        await self.db.commit()
        await self.db.refresh(model)
        logger.info(f"Created AI model {model.id}")
        return model

    async def update(self, model_id: str, fields: dict) -> Optional[AIModelModel]:
        model = await self.get(model_id)
        if not model:
            return None
        for key, value in fields.items():
            setattr(model, key, value)
        await self.db.commit()
        await self.db.refresh(model)
        logger.info(f"Updated AI model {model_id}: {sorted(fields)}")
        return model

    async def deactivate(self, model_id: str) -> Optional[AIModelModel]:
        return await self.update(model_id, {"is_active": False})


class SettingsRepository:
    """Repository for key/value application settings."""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def get_all(self) -> list[AppSettingModel]:
        result = await self.db.execute(select(AppSettingModel).order_by(AppSettingModel.key))
        return list(result.scalars().all())

    async def get(self, key: str) -> Optional[AppSettingModel]:
        result = await self.db.execute(
            select(AppSettingModel).where(AppSettingModel.key == key)
        )
        return result.scalar_one_or_none()

    async def set(
        self,
        key: str,
        value: dict,
        updated_by: Optional[str] = None,
        description: Optional[str] = None,
    ) -> AppSettingModel:
        setting = await self.get(key)
        if setting is None:
            setting = AppSettingModel(key=key, value=value, description=description, updated_by=updated_by)
            self.db.add(setting)
        else:
            setting.value = value
            setting.updated_by = updated_by
            if description is not None:
                setting.description = description
        await self.db.commit()
        await self.db.refresh(setting)
        logger.info(f"App setting {key} updated by {updated_by}")
        return setting


class ConversationRepository:
    """Repository for conversations and their messages."""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def create(self, user_id: str, model: str, title: str) -> ConversationModel:
        conversation = ConversationModel(user_id=user_id, model=model, title=title)
        self.db.add(conversation)
        await self.db.commit()
        await self.db.refresh(conversation)
        return conversation

    async def get_for_user(
        self,
        conversation_id: str,
        user_id: str,
        with_messages: bool = False,
    ) -> Optional[ConversationModel]:
        """Get a conversation only if it belongs to the user."""
        query = select(ConversationModel).where(
            ConversationModel.id == conversation_id,
            ConversationModel.user_id == user_id,
        )
        if with_messages:
            query = query.options(selectinload(ConversationModel.messages))
        result = await self.db.execute(query)
        return result.scalar_one_or_none()

    async def list_for_user(self, user_id: str, limit: int = 50, offset: int = 0) -> list[ConversationModel]:
        result = await self.db.execute(
            select(ConversationModel)
            .where(ConversationModel.user_id == user_id)
            .order_by(ConversationModel.updated_at.desc())
            .limit(limit)
            .offset(offset)
        )
        return list(result.scalars().all())

    async def count_for_user(self, user_id: str) -> int:
        result = await self.db.execute(
            select(func.count(ConversationModel.id)).where(ConversationModel.user_id == user_id)
        )
        return result.scalar() or 0

    async def get_history(self, conversation_id: str) -> list[MessageModel]:
        result = await self.db.execute(
            select(MessageModel)
            .where(MessageModel.conversation_id == conversation_id)
            .order_by(MessageModel.created_at)
        )
        return list(result.scalars().all())

    async def rename(self, conversation_id: str, user_id: str, title: str) -> Optional[ConversationModel]:
        conversation = await self.get_for_user(conversation_id, user_id)
        if not conversation:
            return None
        conversation.title = title
        await self.db.commit()
        await self.db.refresh(conversation)
        return conversation

    async def delete(self, conversation_id: str, user_id: str) -> bool:
        result = await self.db.execute(
            delete(ConversationModel).where(
                ConversationModel.id == conversation_id,
                ConversationModel.user_id == user_id,
            )
        )
        await self.db.commit()
        return result.rowcount > 0

    async def delete_all_for_user(self, user_id: str) -> int:
        # Delete messages explicitly: SQLite does not enforce ON DELETE CASCADE by default
        conversation_ids = select(ConversationModel.id).where(ConversationModel.user_id == user_id)
        await self.db.execute(
            delete(MessageModel).where(MessageModel.conversation_id.in_(conversation_ids))
        )
        result = await self.db.execute(
            delete(ConversationModel).where(ConversationModel.user_id == user_id)
        )
        await self.db.commit()
        logger.info(f"Deleted {result.rowcount} conversations for user {user_id}")
        return result.rowcount

    async def add_exchange(
        self,
        conversation_id: str,
        user_content: str,
        assistant_content: str,
        model: str,
        tokens_input: int,
        tokens_output: int,
        cost: float,
    ) -> MessageModel:
        """Store a user message and the assistant reply that answered it."""
        now = datetime.now(tz.utc)
        self.db.add(
            MessageModel(
                conversation_id=conversation_id,
                role="user",
                content=user_content,
                created_at=now,
            )
        )
        reply = MessageModel(
            conversation_id=conversation_id,
            role="assistant",
            content=assistant_content,
            model=model,
            tokens_input=tokens_input,
            tokens_output=tokens_output,
            cost=cost,
            created_at=now + timedelta(microseconds=1),
        )
        self.db.add(reply)
        await self.db.execute(
            update(ConversationModel)
            .where(ConversationModel.id == conversation_id)
            .values(model=model, updated_at=now)
        )
        await self.db.commit()
        await self.db.refresh(reply)
        return reply


class UsageRepository:
    """Repository for api_usage rows."""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def record(
        self,
        user_id: str,
        model: str,
        provider: str,
        tokens_input: int,
        tokens_output: int,
        cost_eur: float,
        provider_cost_eur: float,
        co2_grams: float,
        conversation_id: Optional[str] = None,
        organization_id: Optional[str] = None,
        credit_source: Optional[str] = None,
    ) -> ApiUsageModel:
        usage = ApiUsageModel(
            user_id=user_id,
            conversation_id=conversation_id,
            organization_id=organization_id,
            model=model,
            provider=provider,
            tokens_input=tokens_input,
            tokens_output=tokens_output,
            cost_eur=cost_eur,
            provider_cost_eur=provider_cost_eur,
            co2_grams=co2_grams,
            credit_source=credit_source,
        )
        self.db.add(usage)
        await self.db.commit()
        return usage

    async def rows_since(self, user_id: str, since: datetime) -> list[UsageRow]:
        result = await self.db.execute(
            select(ApiUsageModel)
            .where(ApiUsageModel.user_id == user_id, ApiUsageModel.created_at >= since)
            .order_by(ApiUsageModel.created_at)
        )
        return [_usage_row(u) for u in result.scalars().all()]

    async def all_time_totals(self, user_id: str) -> dict:
        result = await self.db.execute(
            select(
                func.coalesce(func.sum(ApiUsageModel.cost_eur), 0),
                func.coalesce(func.sum(ApiUsageModel.co2_grams), 0),
                func.coalesce(func.sum(ApiUsageModel.tokens_input), 0),
                func.coalesce(func.sum(ApiUsageModel.tokens_output), 0),
                func.count(ApiUsageModel.id),
            ).where(ApiUsageModel.user_id == user_id)
        )
        cost, co2, tokens_in, tokens_out, count = result.one()
        return {
            "cost": round(float(cost), 6),
            "co2_grams": round(float(co2), 6),
            "tokens_input": int(tokens_in),
            "tokens_output": int(tokens_out),
            "messages": int(count),
        }

    async def cost_since(self, user_id: str, since: datetime) -> float:
        result = await self.db.execute(
            select(func.coalesce(func.sum(ApiUsageModel.cost_eur), 0))
            .where(ApiUsageModel.user_id == user_id, ApiUsageModel.created_at >= since)
        )
        return round(float(result.scalar() or 0), 6)

    async def provider_costs_since(self, since: datetime) -> dict[str, float]:
        """Raw provider spend per provider since a date."""
        result = await self.db.execute(
            select(ApiUsageModel.provider, func.coalesce(func.sum(ApiUsageModel.provider_cost_eur), 0))
            .where(ApiUsageModel.created_at >= since)
            .group_by(ApiUsageModel.provider)
        )
        return {provider: round(float(total), 6) for provider, total in result.all()}

    async def usage_rows_between(self, start: datetime, end: datetime) -> list[UsageRow]:
        result = await self.db.execute(
            select(ApiUsageModel)
            .where(ApiUsageModel.created_at >= start, ApiUsageModel.created_at <= end)
        )
        return [_usage_row(u) for u in result.scalars().all()]

    async def recent_for_user(self, user_id: str, limit: int = 20) -> list[ApiUsageModel]:
        result = await self.db.execute(
            select(ApiUsageModel)
            .where(ApiUsageModel.user_id == user_id)
            .order_by(ApiUsageModel.created_at.desc())
            .limit(limit)
        )
        return list(result.scalars().all())


def _usage_row(usage: ApiUsageModel) -> UsageRow:
    return UsageRow(
        created_at=usage.created_at,
        model=usage.model,
        provider=usage.provider,
        tokens_input=usage.tokens_input or 0,
        tokens_output=usage.tokens_output or 0,
        cost_eur=usage.cost_eur or 0.0,
        co2_grams=usage.co2_grams or 0.0,
        provider_cost_eur=usage.provider_cost_eur or 0.0,
    )


class OrganizationRepository:
    """
    Repository for organizations, members, classes, invites and the
    organization credit ledger.
    """

    def __init__(self, db: AsyncSession):
        self.db = db

    # ============ Organizations ============

    async def create(
        self,
        name: str,
        org_type: str,
        owner_id: str,
        slug: str,
        contact_email: Optional[str] = None,
        settings: Optional[dict] = None,
        credit_balance: float = 0.0,
        max_family_members: Optional[int] = None,
        subscription_status: Optional[str] = None,
        trial_end: Optional[datetime] = None,
        welcome_description: Optional[str] = None,
    ) -> OrganizationModel:
        """Create an organization with its creator as owner."""
        organization = OrganizationModel(
            name=name,
            slug=slug,
            type=org_type,
            owner_id=owner_id,
            contact_email=contact_email,
            settings=settings or {},
            credit_balance=credit_balance,
            credit_allocated=0.0,
            max_family_members=max_family_members,
            subscription_status=subscription_status,
            trial_end=trial_end,
        )
        self.db.add(organization)
        await self.db.flush()

        self.db.add(
            OrganizationMemberModel(
                organization_id=organization.id,
                user_id=owner_id,
                role="owner",
                can_manage_credits=True,
            )
        )
        if credit_balance > 0:
            self.add_transaction(
                organization,
                "purchase",
                credit_balance,
                user_id=owner_id,
                description=welcome_description or "Crédits de bienvenue",
            )

        await self.db.commit()
        await self.db.refresh(organization)

        logger.info(f"Created {org_type} organization {organization.id} ({name}) owned by {owner_id}")
        return organization

    async def get(self, org_id: str) -> Optional[OrganizationModel]:
        result = await self.db.execute(
            select(OrganizationModel).where(OrganizationModel.id == org_id)
        )
        return result.scalar_one_or_none()

    async def get_for_update(self, org_id: str) -> Optional[OrganizationModel]:
        result = await self.db.execute(
            select(OrganizationModel)
            .where(OrganizationModel.id == org_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def list_all(self, limit: int = 100, offset: int = 0, search: Optional[str] = None) -> list[OrganizationModel]:
        query = select(OrganizationModel).order_by(OrganizationModel.created_at.desc())
        if search:
            query = query.where(OrganizationModel.name.ilike(f"%{search}%"))
        result = await self.db.execute(query.limit(limit).offset(offset))
        return list(result.scalars().all())

    async def update_settings(self, org_id: str, updates: dict) -> Optional[OrganizationModel]:
        """Merge keys into the organization's settings JSON."""
        organization = await self.get(org_id)
        if not organization:
            return None
        # Reassign so SQLAlchemy sees the JSON change
        organization.settings = {**(organization.settings or {}), **updates}
        await self.db.commit()
        await self.db.refresh(organization)
        logger.info(f"Updated settings of organization {org_id}: {sorted(updates)}")
        return organization

    async def get_by_stripe_subscription(self, subscription_id: str) -> Optional[OrganizationModel]:
        result = await self.db.execute(
            select(OrganizationModel).where(OrganizationModel.stripe_subscription_id == subscription_id)
        )
        return result.scalar_one_or_none()

    async def update_subscription(
        self,
        org_id: str,
        status: str,
        stripe_subscription_id: Optional[str] = None,
        stripe_customer_id: Optional[str] = None,
        cancel_at_period_end: Optional[bool] = None,
        current_period_end: Optional[datetime] = None,
    ) -> Optional[OrganizationModel]:
        """Mirror the Stripe subscription state on a family organization."""
        organization = await self.get(org_id)
        if not organization:
            return None

        previous = organization.subscription_status
        organization.subscription_status = status
        if stripe_subscription_id:
            organization.stripe_subscription_id = stripe_subscription_id
        if stripe_customer_id:
            organization.stripe_customer_id = stripe_customer_id
        if cancel_at_period_end is not None:
            organization.subscription_cancel_at_period_end = cancel_at_period_end
        if current_period_end is not None:
            organization.subscription_current_period_end = current_period_end

        await self.db.commit()
        await self.db.refresh(organization)
        logger.info(f"Organization {org_id} subscription {previous} -> {status}")
        return organization

    async def find_owned_family(self, user_id: str) -> Optional[OrganizationModel]:
        result = await self.db.execute(
            select(OrganizationModel)
            .where(
                OrganizationModel.owner_id == user_id,
                OrganizationModel.type == "family",
                OrganizationModel.status == "active",
            )
        )
        return result.scalars().first()

    def add_transaction(
        self,
        organization: OrganizationModel,
        transaction_type: str,
        amount: float,
        member_id: Optional[str] = None,
        user_id: Optional[str] = None,
        description: Optional[str] = None,
        stripe_payment_id: Optional[str] = None,
    ) -> OrganizationTransactionModel:
        """Stage a ledger entry; the caller commits with the balance change."""
        transaction = OrganizationTransactionModel(
            organization_id=organization.id,
            member_id=member_id,
            user_id=user_id,
            type=transaction_type,
            amount=amount,
            balance_after=organization.credit_balance,
            description=description,
            stripe_payment_id=stripe_payment_id,
        )
        self.db.add(transaction)
        return transaction

    async def get_transactions(self, org_id: str, limit: int = 50, offset: int = 0) -> list[OrganizationTransactionModel]:
        result = await self.db.execute(
            select(OrganizationTransactionModel)
            .where(OrganizationTransactionModel.organization_id == org_id)
            .order_by(OrganizationTransactionModel.created_at.desc())
            .limit(limit)
            .offset(offset)
        )
        return list(result.scalars().all())

    async def is_stripe_payment_processed(self, stripe_payment_id: str) -> bool:
        result = await self.db.execute(
            select(OrganizationTransactionModel.id)
            .where(OrganizationTransactionModel.stripe_payment_id == stripe_payment_id)
        )
        return result.scalar_one_or_none() is not None

    async def add_credits(
        self,
        org_id: str,
        amount: float,
        transaction_type: str = "purchase",
        user_id: Optional[str] = None,
        description: Optional[str] = None,
        stripe_payment_id: Optional[str] = None,
    ) -> Optional[OrganizationModel]:
        """
        Add (or, with a negative amount, remove) credits from the pool.

        Stripe purchases are idempotent on `stripe_payment_id`. A removal
        that would eat into allocated credits is refused.
        """
        if stripe_payment_id and await self.is_stripe_payment_processed(stripe_payment_id):
            logger.info(f"Stripe payment {stripe_payment_id} already credited to organization {org_id}")
            return await self.get(org_id)

        organization = await self.get_for_update(org_id)
        if not organization:
            await self.db.rollback()
            return None

        if amount < 0 and organization.credit_available + amount < -1e-9:
            await self.db.rollback()
            logger.warning(f"Refused debit of {-amount:.2f} EUR on organization {org_id}: insufficient free credits")
            return None

        organization.credit_balance = _round(organization.credit_balance + amount)
        self.add_transaction(
            organization,
            transaction_type,
            amount,
            user_id=user_id,
            description=description,
            stripe_payment_id=stripe_payment_id,
        )
        await self.db.commit()
        await self.db.refresh(organization)

        logger.info(f"Organization {org_id} credits changed by {amount:.2f} EUR ({transaction_type})")
        return organization

    async def get_stats(self, org_id: str, days: int = 30) -> dict:
        organization = await self.get(org_id)
        if not organization:
            return {}

        member_count = await self.count_active_members(org_id)
        since = datetime.now(tz.utc) - timedelta(days=days)
        usage_result = await self.db.execute(
            select(
                func.coalesce(func.sum(func.abs(OrganizationTransactionModel.amount)), 0),
                func.count(OrganizationTransactionModel.id),
            )
            .where(
                OrganizationTransactionModel.organization_id == org_id,
                OrganizationTransactionModel.type == "usage",
                OrganizationTransactionModel.created_at >= since,
            )
        )
        used, requests = usage_result.one()

        return {
            "organization_id": org_id,
            "credit_balance": round(organization.credit_balance, 2),
            "credit_allocated": round(organization.credit_allocated, 2),
            "credit_available": round(organization.credit_available, 2),
            "member_count": member_count,
            "usage_period_days": days,
            "credits_used": round(float(used), 2),
            "requests": int(requests),
        }

    # ============ Members ============

    async def get_active_membership(self, user_id: str) -> Optional[OrganizationMemberModel]:
        """The user's first active membership in an organization, with the organization loaded."""
        result = await self.db.execute(
            select(OrganizationMemberModel)
            .options(selectinload(OrganizationMemberModel.organization))
            .where(
                OrganizationMemberModel.user_id == user_id,
                OrganizationMemberModel.status == "active",
            )
            .order_by(OrganizationMemberModel.joined_at)
        )
        return result.scalars().first()

    async def get_membership(self, org_id: str, user_id: str) -> Optional[OrganizationMemberModel]:
        result = await self.db.execute(
            select(OrganizationMemberModel)
            .options(selectinload(OrganizationMemberModel.organization))
            .where(
                OrganizationMemberModel.organization_id == org_id,
                OrganizationMemberModel.user_id == user_id,
                OrganizationMemberModel.status == "active",
            )
        )
        return result.scalar_one_or_none()

    async def get_member(self, member_id: str) -> Optional[OrganizationMemberModel]:
        result = await self.db.execute(
            select(OrganizationMemberModel)
            .options(selectinload(OrganizationMemberModel.user))
            .where(OrganizationMemberModel.id == member_id)
        )
        return result.scalar_one_or_none()

    async def get_member_for_update(self, member_id: str) -> Optional[OrganizationMemberModel]:
        result = await self.db.execute(
            select(OrganizationMemberModel)
            .where(OrganizationMemberModel.id == member_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def list_members(self, org_id: str, include_removed: bool = False) -> list[OrganizationMemberModel]:
        query = (
            select(OrganizationMemberModel)
            .options(selectinload(OrganizationMemberModel.user))
            .where(OrganizationMemberModel.organization_id == org_id)
            .order_by(OrganizationMemberModel.joined_at)
        )
        if not include_removed:
            query = query.where(OrganizationMemberModel.status == "active")
        result = await self.db.execute(query)
        return list(result.scalars().all())

    async def count_active_members(self, org_id: str) -> int:
        result = await self.db.execute(
            select(func.count(OrganizationMemberModel.id))
            .where(
                OrganizationMemberModel.organization_id == org_id,
                OrganizationMemberModel.status == "active",
            )
        )
        return result.scalar() or 0

    async def sum_member_usage_since(self, member_id: str, since: datetime) -> float:
        result = await self.db.execute(
            select(func.coalesce(func.sum(func.abs(OrganizationTransactionModel.amount)), 0))
            .where(
                OrganizationTransactionModel.member_id == member_id,
                OrganizationTransactionModel.type == "usage",
                OrganizationTransactionModel.created_at >= since,
            )
        )
        return round(float(result.scalar() or 0), 6)

    async def add_member(
        self,
        organization: OrganizationModel,
        user_id: str,
        role: str,
        credit_allocated: float = 0.0,
        class_id: Optional[str] = None,
        supervision_mode: Optional[str] = None,
        birthdate: Optional[date] = None,
    ) -> OrganizationMemberModel:
        """
        Add a user to an organization, or reactivate a removed membership.

        A starting allocation is taken from the free pool when available.
        """
        result = await self.db.execute(
            select(OrganizationMemberModel).where(
                OrganizationMemberModel.organization_id == organization.id,
                OrganizationMemberModel.user_id == user_id,
            )
        )
        member = result.scalar_one_or_none()
        if member is None:
            member = OrganizationMemberModel(organization_id=organization.id, user_id=user_id)
            self.db.add(member)
        member.role = role
        member.status = "active"
        member.class_id = class_id
        member.supervision_mode = supervision_mode
        member.birthdate = birthdate
        member.credit_allocated = member.credit_allocated or 0.0
        member.credit_used = member.credit_used or 0.0
        await self.db.flush()

        if credit_allocated > 0 and organization.credit_available >= credit_allocated:
            member.credit_allocated = _round(member.credit_allocated + credit_allocated)
            organization.credit_allocated = _round(organization.credit_allocated + credit_allocated)
            self.add_transaction(
                organization,
                "credit_allocated",
                -credit_allocated,
                member_id=member.id,
                user_id=user_id,
                description="Allocation à l'inscription",
            )
        elif credit_allocated > 0:
            logger.warning(
                f"Organization {organization.id} cannot cover the {credit_allocated:.2f} EUR invite allocation"
            )

        await self.db.commit()
        await self.db.refresh(member)
        logger.info(f"User {user_id} joined organization {organization.id} as {role}")
        return member

    async def update_member_role(self, member: OrganizationMemberModel, role: str) -> OrganizationMemberModel:
        member.role = role
        await self.db.commit()
        await self.db.refresh(member)
        return member

    async def remove_member(self, member_id: str) -> Optional[OrganizationMemberModel]:
        """Deactivate a membership and return its unused allocation to the pool."""
        member = await self.get_member_for_update(member_id)
        if not member:
            await self.db.rollback()
            return None
        organization = await self.get_for_update(member.organization_id)

        unused = max(member.credit_remaining, 0.0)
        if unused > 0:
            organization.credit_allocated = _round(max(organization.credit_allocated - unused, 0.0))
            member.credit_allocated = _round(member.credit_allocated - unused)
            self.add_transaction(
                organization,
                "allocation_returned",
                unused,
                member_id=member.id,
                user_id=member.user_id,
                description="Allocation non utilisée rendue",
            )
        member.status = "removed"
        await self.db.commit()
        await self.db.refresh(member)
        logger.info(f"Removed member {member_id} from organization {organization.id}, returned {unused:.2f} EUR")
        return member

    async def allocate_to_member(
        self,
        org_id: str,
        member_id: str,
        amount: float,
        allocated_by: str,
    ) -> Optional[OrganizationMemberModel]:
        """
        Allocate pool credits to a member atomically.

        Returns None if the organization's free pool cannot cover the amount.
        """
        organization = await self.get_for_update(org_id)
        member = await self.get_member_for_update(member_id)
        if not organization or not member or member.organization_id != org_id:
            await self.db.rollback()
            return None

        available = organization.credit_available
        if amount > available + 1e-9:
            await self.db.rollback()
            logger.warning(
                f"Allocation of {amount:.2f} EUR refused for organization {org_id}: "
                f"only {available:.2f} EUR available"
            )
            return None

        member.credit_allocated = _round(member.credit_allocated + amount)
        organization.credit_allocated = _round(organization.credit_allocated + amount)
        self.add_transaction(
            organization,
            "credit_allocated",
            -amount,
            member_id=member.id,
            user_id=allocated_by,
            description=f"Allocation de {amount:.2f} EUR",
        )
        await self.db.commit()
        await self.db.refresh(member)

        logger.info(f"Allocated {amount:.2f} EUR to member {member_id} in organization {org_id}")
        return member

    async def bulk_allocate(
        self,
        org_id: str,
        members: list[OrganizationMemberModel],
        amount_each: float,
        allocated_by: str,
    ) -> bool:
        """Allocate the same amount to several members in one transaction."""
        organization = await self.get_for_update(org_id)
        total = amount_each * len(members)
        if not organization or total > organization.credit_available + 1e-9:
            await self.db.rollback()
            return False

        for member in members:
            member.credit_allocated = _round(member.credit_allocated + amount_each)
            self.add_transaction(
                organization,
                "credit_allocated",
                -amount_each,
                member_id=member.id,
                user_id=allocated_by,
                description=f"Allocation de classe de {amount_each:.2f} EUR",
            )
        organization.credit_allocated = _round(organization.credit_allocated + total)
        await self.db.commit()

        logger.info(f"Bulk allocated {amount_each:.2f} EUR to {len(members)} members of organization {org_id}")
        return True

    # ============ Transfers ============

    async def transfer(
        self,
        user_id: str,
        org_id: str,
        direction: str,
        amount: float,
        member_id: Optional[str] = None,
    ) -> Optional[CreditTransferModel]:
        """
        Move credits between a user's personal balance and an organization pool.

        `to_org` needs the personal balance to cover the amount; `to_personal`
        needs the organization's free pool to cover it.
        """
        user = await UserRepository(self.db).get_for_update(user_id)
        organization = await self.get_for_update(org_id)
        if not user or not organization:
            await self.db.rollback()
            return None

        if direction == "to_org":
            if user.credits_balance + 1e-9 < amount:
                await self.db.rollback()
                return None
            user.credits_balance = _round(user.credits_balance - amount)
            organization.credit_balance = _round(organization.credit_balance + amount)
            org_type, personal_type, personal_amount = "transfer_in", "transfer_out", -amount
        else:
            if organization.credit_available + 1e-9 < amount:
                await self.db.rollback()
                return None
            organization.credit_balance = _round(organization.credit_balance - amount)
            user.credits_balance = _round(user.credits_balance + amount)
            org_type, personal_type, personal_amount = "transfer_out", "transfer_in", amount

        transfer = CreditTransferModel(
            user_id=user_id,
            organization_id=org_id,
            direction=direction,
            amount=amount,
        )
        self.db.add(transfer)
        self.add_transaction(
            organization,
            org_type,
            amount if direction == "to_org" else -amount,
            member_id=member_id,
            user_id=user_id,
            description=f"Transfert {'vers' if direction == 'to_org' else 'depuis'} l'organisation",
        )
        self.db.add(
            CreditTransactionModel(
                user_id=user_id,
                amount=personal_amount,
                type=personal_type,
                description=f"Transfert avec {organization.name}",
                balance_after=user.credits_balance,
            )
        )
        await self.db.commit()
        await self.db.refresh(transfer)

        logger.info(f"Transferred {amount:.2f} EUR {direction} between user {user_id} and organization {org_id}")
        return transfer

    async def family_transfer(
        self,
        org_id: str,
        allocations: list[tuple[str, float]],
        transferred_by: str,
    ) -> Optional[float]:
        """
        Move family pool credits to children's personal balances.

        Args:
            org_id: Family organization id
            allocations: (child user id, amount) pairs
            transferred_by: Parent performing the transfer

        Returns:
            The family's remaining balance, or None if the pool is too small
        """
        organization = await self.get_for_update(org_id)
        total = sum(amount for _, amount in allocations)
        if not organization or total > organization.credit_available + 1e-9:
            await self.db.rollback()
            return None

        users = UserRepository(self.db)
        for child_id, amount in allocations:
            child = await users.get_for_update(child_id)
            if child is None:
                await self.db.rollback()
                return None
            child.credits_balance = _round(child.credits_balance + amount)
            child.credits_allocated = _round((child.credits_allocated or 0.0) + amount)
            organization.credit_balance = _round(organization.credit_balance - amount)
            self.db.add(
                CreditTransactionModel(
                    user_id=child_id,
                    amount=amount,
                    type="family_allocation",
                    description=f"Crédits reçus de {organization.name}",
                    balance_after=child.credits_balance,
                )
            )
            self.add_transaction(
                organization,
                "family_allocation",
                -amount,
                user_id=child_id,
                description=f"Transfert par {transferred_by}",
            )

        await self.db.commit()
        logger.info(f"Family {org_id} transferred {total:.2f} EUR to {len(allocations)} children")
        return organization.credit_balance

    # ============ Invites ============

    async def create_invite(
        self,
        org_id: str,
        email: str,
        role: str,
        invited_by: str,
        expires_at: datetime,
        credit_amount: float = 0.0,
        class_id: Optional[str] = None,
        birthdate: Optional[date] = None,
    ) -> OrganizationInviteModel:
        invite = OrganizationInviteModel(
            organization_id=org_id,
            email=email.lower(),
            role=role,
            token=secrets.token_urlsafe(32),
            credit_amount=credit_amount,
            class_id=class_id,
            birthdate=birthdate,
            invited_by=invited_by,
            expires_at=expires_at,
        )
        self.db.add(invite)
        await self.db.commit()
        await self.db.refresh(invite)
        logger.info(f"Created invite {invite.id} to organization {org_id} for {email}")
        return invite

    async def get_invite_by_token(self, token: str) -> Optional[OrganizationInviteModel]:
        result = await self.db.execute(
            select(OrganizationInviteModel).where(OrganizationInviteModel.token == token)
        )
        return result.scalar_one_or_none()

    async def get_invite(self, invite_id: str) -> Optional[OrganizationInviteModel]:
        result = await self.db.execute(
            select(OrganizationInviteModel).where(OrganizationInviteModel.id == invite_id)
        )
        return result.scalar_one_or_none()

    async def list_pending_invites(self, org_id: str) -> list[OrganizationInviteModel]:
        result = await self.db.execute(
            select(OrganizationInviteModel)
            .where(
                OrganizationInviteModel.organization_id == org_id,
                OrganizationInviteModel.status == "pending",
                OrganizationInviteModel.expires_at > datetime.now(tz.utc),
            )
            .order_by(OrganizationInviteModel.created_at.desc())
        )
        return list(result.scalars().all())

    async def count_pending_invites(self, org_id: str) -> int:
        result = await self.db.execute(
            select(func.count(OrganizationInviteModel.id))
            .where(
                OrganizationInviteModel.organization_id == org_id,
                OrganizationInviteModel.status == "pending",
                OrganizationInviteModel.expires_at > datetime.now(tz.utc),
            )
        )
        return result.scalar() or 0

    async def has_pending_invite(self, org_id: str, email: str) -> bool:
        result = await self.db.execute(
            select(OrganizationInviteModel.id)
            .where(
                OrganizationInviteModel.organization_id == org_id,
                func.lower(OrganizationInviteModel.email) == email.lower(),
                OrganizationInviteModel.status == "pending",
                OrganizationInviteModel.expires_at > datetime.now(tz.utc),
            )
        )
        return result.first() is not None

    async def set_invite_status(self, invite: OrganizationInviteModel, status: str) -> OrganizationInviteModel:
        invite.status = status
        if status == "accepted":
            invite.accepted_at = datetime.now(tz.utc)
        await self.db.commit()
        await self.db.refresh(invite)
        return invite

    # ============ Classes ============

    async def create_class(
        self,
        org_id: str,
        name: str,
        created_by: str,
        description: Optional[str] = None,
        settings: Optional[dict] = None,
    ) -> OrganizationClassModel:
        org_class = OrganizationClassModel(
            organization_id=org_id,
            name=name,
            description=description,
            settings=settings or {},
            created_by=created_by,
            join_token=secrets.token_urlsafe(16),
        )
        self.db.add(org_class)
        await self.db.commit()
        await self.db.refresh(org_class)
        logger.info(f"Created class {org_class.id} ({name}) in organization {org_id}")
        return org_class

    async def get_class(self, class_id: str) -> Optional[OrganizationClassModel]:
        result = await self.db.execute(
            select(OrganizationClassModel).where(OrganizationClassModel.id == class_id)
        )
        return result.scalar_one_or_none()

    async def get_class_by_join_token(self, token: str) -> Optional[OrganizationClassModel]:
        result = await self.db.execute(
            select(OrganizationClassModel)
            .options(selectinload(OrganizationClassModel.organization))
            .where(OrganizationClassModel.join_token == token)
        )
        return result.scalar_one_or_none()

    async def rotate_class_join_token(self, org_class: OrganizationClassModel) -> OrganizationClassModel:
        """Issue a new join link; the previous one stops working."""
        org_class.join_token = secrets.token_urlsafe(16)
        await self.db.commit()
        await self.db.refresh(org_class)
        logger.info(f"Rotated join link of class {org_class.id}")
        return org_class

    async def list_classes(self, org_id: str) -> list[OrganizationClassModel]:
        result = await self.db.execute(
            select(OrganizationClassModel)
            .where(OrganizationClassModel.organization_id == org_id)
            .order_by(OrganizationClassModel.created_at)
        )
        return list(result.scalars().all())

    async def update_class(self, org_class: OrganizationClassModel, fields: dict) -> OrganizationClassModel:
        for key, value in fields.items():
            setattr(org_class, key, value)
        if "status" in fields:
            org_class.closed_at = datetime.now(tz.utc) if fields["status"] == "closed" else None
        await self.db.commit()
        await self.db.refresh(org_class)
        return org_class

    async def set_member_class(
        self,
        member: OrganizationMemberModel,
        class_id: Optional[str],
    ) -> OrganizationMemberModel:
        member.class_id = class_id
        await self.db.commit()
        await self.db.refresh(member)
        return member

    async def list_class_students(self, class_id: str) -> list[OrganizationMemberModel]:
        result = await self.db.execute(
            select(OrganizationMemberModel)
            .options(selectinload(OrganizationMemberModel.user))
            .where(
                OrganizationMemberModel.class_id == class_id,
                OrganizationMemberModel.role == "student",
                OrganizationMemberModel.status == "active",
            )
        )
        return list(result.scalars().all())

    async def class_activity(
        self,
        class_id: str,
        start: datetime,
        end: datetime,
    ) -> tuple[list[ClassMessageRow], list[ClassMemberRow]]:
        """Messages written in the class's students' conversations over a window."""
        students = await self.list_class_students(class_id)
        members = [
            ClassMemberRow(
                user_id=s.user_id,
                display_name=s.user.display_name if s.user else None,
                email=s.user.email if s.user else None,
            )
            for s in students
        ]
        if not students:
            return [], members

        result = await self.db.execute(
            select(
                ConversationModel.user_id,
                ConversationModel.id,
                ConversationModel.model,
                MessageModel.role,
                MessageModel.cost,
                MessageModel.created_at,
            )
            .join(MessageModel, MessageModel.conversation_id == ConversationModel.id)
            .where(
                ConversationModel.user_id.in_([s.user_id for s in students]),
                MessageModel.created_at >= start,
                MessageModel.created_at <= end,
            )
        )
        rows = [
            ClassMessageRow(
                user_id=user_id,
                conversation_id=conversation_id,
                conversation_model=model,
                role=role,
                cost=cost or 0.0,
                created_at=created_at,
            )
            for user_id, conversation_id, model, role, cost, created_at in result.all()
        ]
        return rows, members

    async def save_class_snapshot(
        self,
        class_id: str,
        period_type: str,
        period_start: date,
        metrics: dict,
    ) -> ClassAnalyticsModel:
        """Insert or replace the stored metrics for a class period."""
        result = await self.db.execute(
            select(ClassAnalyticsModel).where(
                ClassAnalyticsModel.class_id == class_id,
                ClassAnalyticsModel.period_type == period_type,
                ClassAnalyticsModel.period_start == period_start,
            )
        )
        snapshot = result.scalar_one_or_none()
        if snapshot is None:
            snapshot = ClassAnalyticsModel(
                class_id=class_id,
                period_type=period_type,
                period_start=period_start,
            )
            self.db.add(snapshot)
        snapshot.metrics = metrics
        await self.db.commit()
        await self.db.refresh(snapshot)
        return snapshot

    async def list_class_snapshots(self, class_id: str, limit: int = 30) -> list[ClassAnalyticsModel]:
        result = await self.db.execute(
            select(ClassAnalyticsModel)
            .where(ClassAnalyticsModel.class_id == class_id)
            .order_by(ClassAnalyticsModel.period_start.desc())
            .limit(limit)
        )
        return list(result.scalars().all())


class ParentalControlRepository:
    """Repository for family parental controls and credit requests."""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def get(self, org_id: str, child_user_id: str) -> Optional[ParentalControlModel]:
        result = await self.db.execute(
            select(ParentalControlModel).where(
                ParentalControlModel.organization_id == org_id,
                ParentalControlModel.child_user_id == child_user_id,
            )
        )
        return result.scalar_one_or_none()

    async def upsert(
        self,
        org_id: str,
        child_user_id: str,
        fields: dict,
        updated_by: Optional[str] = None,
        commit: bool = True,
    ) -> ParentalControlModel:
        controls = await self.get(org_id, child_user_id)
        if controls is None:
            controls = ParentalControlModel(organization_id=org_id, child_user_id=child_user_id)
            self.db.add(controls)
        for key, value in fields.items():
            setattr(controls, key, value)
        controls.updated_by = updated_by
        if commit:
            await self.db.commit()
            await self.db.refresh(controls)
        return controls

    async def create_request(
        self,
        org_id: str,
        child_user_id: str,
        amount: float,
        reason: Optional[str] = None,
    ) -> CreditRequestModel:
        request = CreditRequestModel(
            organization_id=org_id,
            child_user_id=child_user_id,
            amount=amount,
            reason=reason,
        )
        self.db.add(request)
        await self.db.commit()
        await self.db.refresh(request)
        logger.info(f"Child {child_user_id} requested {amount:.2f} EUR from family {org_id}")
        return request

    async def get_request(self, request_id: str) -> Optional[CreditRequestModel]:
        result = await self.db.execute(
            select(CreditRequestModel).where(CreditRequestModel.id == request_id)
        )
        return result.scalar_one_or_none()

    async def list_requests(self, org_id: str, status: Optional[str] = None) -> list[CreditRequestModel]:
        query = (
            select(CreditRequestModel)
            .where(CreditRequestModel.organization_id == org_id)
            .order_by(CreditRequestModel.created_at.desc())
        )
        if status:
            query = query.where(CreditRequestModel.status == status)
        result = await self.db.execute(query)
        return list(result.scalars().all())

    async def review_request(
        self,
        request: CreditRequestModel,
        status: str,
        reviewed_by: str,
    ) -> CreditRequestModel:
        request.status = status
        request.reviewed_by = reviewed_by
        request.reviewed_at = datetime.now(tz.utc)
        await self.db.commit()
        await self.db.refresh(request)
        return request


class RateLimitRepository:
    """Repository for the sliding window rate limit events."""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def events_since(self, user_id: str, tier: str, since: datetime) -> list[datetime]:
        result = await self.db.execute(
            select(RateLimitEventModel.created_at)
            .where(
                RateLimitEventModel.user_id == user_id,
                RateLimitEventModel.model_tier == tier,
                RateLimitEventModel.created_at > since,
            )
            .order_by(RateLimitEventModel.created_at)
        )
        return list(result.scalars().all())

    async def record(self, user_id: str, tier: str, at: Optional[datetime] = None) -> None:
        self.db.add(RateLimitEventModel(user_id=user_id, model_tier=tier, created_at=at or datetime.now(tz.utc)))
        await self.db.commit()

    async def purge_before(self, cutoff: datetime, user_id: Optional[str] = None) -> int:
        """Delete events that have left the window, for one user or for everyone."""
        query = delete(RateLimitEventModel).where(RateLimitEventModel.created_at <= cutoff)
        if user_id is not None:
            query = query.where(RateLimitEventModel.user_id == user_id)
        result = await self.db.execute(query)
        await self.db.commit()
        return result.rowcount


class AuditRepository:
    """Repository for the admin audit log."""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def create(
        self,
        admin_id: str,
        action: str,
        target_user_id: Optional[str] = None,
        target_organization_id: Optional[str] = None,
        details: Optional[dict] = None,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> AdminAuditLogModel:
        entry = AdminAuditLogModel(
            admin_id=admin_id,
            action=action,
            target_user_id=target_user_id,
            target_organization_id=target_organization_id,
            details=details or {},
            ip_address=ip_address,
            user_agent=user_agent,
        )
        self.db.add(entry)
        await self.db.commit()
        return entry

    async def list_entries(
        self,
        admin_id: Optional[str] = None,
        action: Optional[str] = None,
        target_user_id: Optional[str] = None,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
        limit: int = 100,
        offset: int = 0,
    ) -> list[AdminAuditLogModel]:
        query = select(AdminAuditLogModel).order_by(AdminAuditLogModel.created_at.desc())
        if admin_id:
            query = query.where(AdminAuditLogModel.admin_id == admin_id)
        if action:
            query = query.where(AdminAuditLogModel.action == action)
        if target_user_id:
            query = query.where(AdminAuditLogModel.target_user_id == target_user_id)
        if start:
            query = query.where(AdminAuditLogModel.created_at >= start)
        if end:
            query = query.where(AdminAuditLogModel.created_at <= end)
        result = await self.db.execute(query.limit(limit).offset(offset))
        return list(result.scalars().all())


class ProviderBudgetRepository:
    """Repository for provider budgets and budget alerts."""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def list_budgets(self) -> list[ProviderBudgetModel]:
        result = await self.db.execute(select(ProviderBudgetModel).order_by(ProviderBudgetModel.provider))
        return list(result.scalars().all())

    async def get(self, provider: str) -> Optional[ProviderBudgetModel]:
        result = await self.db.execute(
            select(ProviderBudgetModel).where(ProviderBudgetModel.provider == provider)
        )
        return result.scalar_one_or_none()

    async def upsert(self, provider: str, fields: dict) -> ProviderBudgetModel:
        budget = await self.get(provider)
        if budget is None:
            budget = ProviderBudgetModel(provider=provider)
            self.db.add(budget)
        for key, value in fields.items():
            setattr(budget, key, value)
        if "manual_balance" in fields:
            budget.manual_balance_updated_at = datetime.now(tz.utc)
        await self.db.commit()
        await self.db.refresh(budget)
        logger.info(f"Updated budget for provider {provider}: {sorted(fields)}")
        return budget

    async def alert_exists(self, provider: str, period: str, threshold: int) -> bool:
        result = await self.db.execute(
            select(ProviderAlertModel.id).where(
                ProviderAlertModel.provider == provider,
                ProviderAlertModel.period == period,
                ProviderAlertModel.threshold == threshold,
            )
        )
        return result.first() is not None

    async def create_alert(
        self,
        provider: str,
        period: str,
        threshold: int,
        spend_eur: float,
        budget_eur: float,
    ) -> ProviderAlertModel:
        alert = ProviderAlertModel(
            provider=provider,
            period=period,
            threshold=threshold,
            spend_eur=spend_eur,
            budget_eur=budget_eur,
        )
        self.db.add(alert)
        await self.db.commit()
        await self.db.refresh(alert)
        logger.warning(
            f"Provider {provider} crossed {threshold}% of its budget: {spend_eur:.2f}/{budget_eur:.2f} EUR"
        )
        return alert

    async def list_alerts(self, acknowledged: Optional[bool] = None, limit: int = 100) -> list[ProviderAlertModel]:
        query = select(ProviderAlertModel).order_by(ProviderAlertModel.created_at.desc())
        if acknowledged is not None:
            query = query.where(ProviderAlertModel.acknowledged.is_(acknowledged))
        result = await self.db.execute(query.limit(limit))
        return list(result.scalars().all())

    async def acknowledge(self, alert_id: str, admin_id: str) -> Optional[ProviderAlertModel]:
        result = await self.db.execute(
            select(ProviderAlertModel).where(ProviderAlertModel.id == alert_id)
        )
        alert = result.scalar_one_or_none()
        if not alert:
            return None
        alert.acknowledged = True
        alert.acknowledged_by = admin_id
        alert.acknowledged_at = datetime.now(tz.utc)
        await self.db.commit()
        await self.db.refresh(alert)
        return alert


class AdminRepository:
    """
    Repository for admin dashboard operations.

    Provides user listings and the raw rows behind income reporting.
    """

    def __init__(self, db: AsyncSession):
        self.db = db

    # ============ Users ============

    async def get_all_users(
        self,
        limit: int = 100,
        offset: int = 0,
        search: Optional[str] = None,
    ) -> list[dict]:
        query = select(UserModel).order_by(UserModel.created_at.desc())

        if search:
            search_pattern = f"%{search}%"
            query = query.where(
                (UserModel.email.ilike(search_pattern)) |
                (UserModel.display_name.ilike(search_pattern))
            )

        result = await self.db.execute(query.limit(limit).offset(offset))
        users = list(result.scalars().all())

        user_list = []
        for user in users:
            usage_result = await self.db.execute(
                select(func.coalesce(func.sum(ApiUsageModel.cost_eur), 0), func.count(ApiUsageModel.id))
                .where(ApiUsageModel.user_id == user.id)
            )
            total_spent, request_count = usage_result.one()
            user_list.append({
                "id": user.id,
                "email": user.email,
                "display_name": user.display_name,
                "is_admin": user.is_admin,
                "credits_balance": round(user.credits_balance, 6),
                "credit_preference": user.credit_preference,
                "total_spent": round(float(total_spent), 6),
                "request_count": int(request_count),
                "created_at": user.created_at.isoformat() if user.created_at else None,
            })

        return user_list

    async def get_user_count(self, search: Optional[str] = None) -> int:
        query = select(func.count(UserModel.id))
        if search:
            search_pattern = f"%{search}%"
            query = query.where(
                (UserModel.email.ilike(search_pattern)) |
                (UserModel.display_name.ilike(search_pattern))
            )
        result = await self.db.execute(query)
        return result.scalar() or 0

    async def get_user_details(self, user_id: str) -> Optional[dict]:
        user = await UserRepository(self.db).get(user_id)
        if not user:
            return None

        transactions = await CreditRepository(self.db).get_transactions(user_id, limit=20)
        usage = await UsageRepository(self.db).recent_for_user(user_id, limit=20)
        totals = await UsageRepository(self.db).all_time_totals(user_id)
        membership = await OrganizationRepository(self.db).get_active_membership(user_id)

        return {
            "id": user.id,
            "email": user.email,
            "display_name": user.display_name,
            "is_admin": user.is_admin,
            "credits_balance": round(user.credits_balance, 6),
            "credit_preference": user.credit_preference,
            "created_at": user.created_at.isoformat() if user.created_at else None,
            "organization": {
                "id": membership.organization.id,
                "name": membership.organization.name,
                "role": membership.role,
            } if membership else None,
            "usage_totals": totals,
            "recent_transactions": [
                {
                    "id": t.id,
                    "amount": t.amount,
                    "type": t.type,
                    "description": t.description,
                    "balance_after": t.balance_after,
                    "created_at": t.created_at.isoformat() if t.created_at else None,
                }
                for t in transactions
            ],
            "recent_usage": [
                {
                    "model": u.model,
                    "provider": u.provider,
                    "tokens_input": u.tokens_input,
                    "tokens_output": u.tokens_output,
                    "cost_eur": u.cost_eur,
                    "created_at": u.created_at.isoformat() if u.created_at else None,
                }
                for u in usage
            ],
        }

    # ============ Income ============

    async def personal_purchases_between(self, start: datetime, end: datetime) -> list[tuple[datetime, float]]:
        result = await self.db.execute(
            select(CreditTransactionModel.created_at, CreditTransactionModel.amount)
            .where(
                CreditTransactionModel.type == "purchase",
                CreditTransactionModel.created_at >= start,
                CreditTransactionModel.created_at <= end,
            )
        )
        return [(created_at, amount) for created_at, amount in result.all()]

    async def org_purchases_between(self, start: datetime, end: datetime) -> list[tuple[datetime, float]]:
        result = await self.db.execute(
            select(OrganizationTransactionModel.created_at, OrganizationTransactionModel.amount)
            .where(
                OrganizationTransactionModel.type == "purchase",
                OrganizationTransactionModel.stripe_payment_id.is_not(None),
                OrganizationTransactionModel.created_at >= start,
                OrganizationTransactionModel.created_at <= end,
            )
        )
        return [(created_at, amount) for created_at, amount in result.all()]
