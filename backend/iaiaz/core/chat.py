"""Chat request pipeline.

A chat request goes through, in order: model lookup, organization model
restrictions, family preconditions, the per-tier rate limit and a credit
pre-check on the estimated cost. The provider is then called, the
exchange and usage are stored and the actual cost is charged.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Optional
from zoneinfo import ZoneInfo

from sqlalchemy.ext.asyncio import AsyncSession

from .config import get_settings
from .credits import CreditService
from .model_catalog import CatalogModel, catalog
from .organizations import intersect_allowed_models, is_model_allowed
from .parental import PreconditionResult, evaluate_preconditions
from .pricing import calculate_co2, calculate_cost, calculate_provider_cost, estimate_cost
from .rate_limits import RateLimiter, RateLimitResult, rate_limit_headers, rate_limit_message
from ..db.repository import (
    ConversationRepository,
    OrganizationRepository,
    ParentalControlRepository,
    UsageRepository,
)
from ..providers import ProviderError, get_provider

logger = logging.getLogger(__name__)

TITLE_LENGTH = 100

CREDIT_ERROR_MESSAGES = {
    "insufficient_credits": "Crédits insuffisants. Rechargez votre compte pour continuer.",
    "not_org_member": "Vous n'êtes membre d'aucune organisation.",
    "org_inactive": "Votre organisation est inactive.",
    "insufficient_org_credits": "Crédits de l'organisation insuffisants.",
    "insufficient_allocation": "Votre allocation de crédits est épuisée.",
    "daily_limit": "Limite quotidienne de crédits atteinte.",
    "weekly_limit": "Limite hebdomadaire de crédits atteinte.",
    "monthly_limit": "Limite mensuelle de crédits atteinte.",
}


class ChatRejected(Exception):
    """A chat request refused before or while calling the provider."""

    def __init__(self, status_code: int, detail, headers: Optional[dict] = None):
        self.status_code = status_code
        self.detail = detail
        self.headers = headers
        super().__init__(str(detail))


@dataclass
class ChatResult:
    content: str
    model: str
    conversation_id: str
    tokens_input: int
    tokens_output: int
    cost: float
    co2_grams: float
    credit_source: Optional[str]
    remaining_balance: Optional[float]
    rate_limit: RateLimitResult
    headers: dict = field(default_factory=dict)


def local_midnight(now: datetime, tz_name: str) -> datetime:
    """Start of the current day in the configured timezone, as UTC."""
    local = now.astimezone(ZoneInfo(tz_name))
    return local.replace(hour=0, minute=0, second=0, microsecond=0).astimezone(timezone.utc)


class ChatService:
    """Runs chat requests for one database session."""

    def __init__(self, db: AsyncSession):
        self.db = db
        self.credits = CreditService(db)
        self.orgs = OrganizationRepository(db)
        self.conversations = ConversationRepository(db)
        self.usage = UsageRepository(db)
        self.parental = ParentalControlRepository(db)

    # ============ Restrictions ============

    async def get_model_restrictions(self, user_id: str) -> Optional[list[str]]:
        """Models the user may use, or None when unrestricted."""
        member = await self.orgs.get_active_membership(user_id)
        if not member:
            return None
        org_models = (member.organization.settings or {}).get("allowed_models")
        class_models = None
        if member.class_id:
            org_class = await self.orgs.get_class(member.class_id)
            if org_class and org_class.status == "active":
                class_models = (org_class.settings or {}).get("allowed_models")
        return intersect_allowed_models(org_models, class_models)

    async def is_model_allowed(self, user_id: str, model_id: str) -> bool:
        return is_model_allowed(model_id, await self.get_model_restrictions(user_id))

    async def check_family_preconditions(self, user_id: str, now: Optional[datetime] = None) -> PreconditionResult:
        """Quiet hours, daily credit limit and subscription state, for family children only."""
        member = await self.orgs.get_active_membership(user_id)
        if not member or member.organization.type != "family" or member.role != "student":
            return PreconditionResult(True)

        settings = get_settings()
        now = now or datetime.now(timezone.utc)
        organization = member.organization
        controls = await self.parental.get(organization.id, user_id)
        spent_today = await self.usage.cost_since(user_id, local_midnight(now, settings.timezone))

        return evaluate_preconditions(
            controls,
            spent_today,
            now,
            settings.timezone,
            organization.subscription_status,
            organization.trial_end,
        )

    # ============ Chat ============

    async def _load_history(
        self,
        user_id: str,
        conversation_id: Optional[str],
        client_messages: Optional[list[dict]],
    ) -> list[dict]:
        if conversation_id:
            conversation = await self.conversations.get_for_user(conversation_id, user_id)
            if not conversation:
                raise ChatRejected(404, "Conversation not found")
            return [
                {"role": m.role, "content": m.content}
                for m in await self.conversations.get_history(conversation_id)
            ]
        return [
            {"role": m["role"], "content": m["content"]}
            for m in (client_messages or [])
            if m.get("role") in ("user", "assistant") and m.get("content")
        ]

    async def _resolve_model(self, user_id: str, model_id: str) -> CatalogModel:
        model = await catalog.get_model(self.db, model_id)
        if model is None:
            raise ChatRejected(400, f"Unknown or inactive model: {model_id}")
        if not await self.is_model_allowed(user_id, model_id):
            raise ChatRejected(403, "Ce modèle n'est pas autorisé par votre organisation.")
        return model

    async def send(
        self,
        user_id: str,
        message: str,
        model_id: str,
        conversation_id: Optional[str] = None,
        client_messages: Optional[list[dict]] = None,
    ) -> ChatResult:
        """
        Run one chat turn.

        Raises:
            ChatRejected with the HTTP status to return
        """
        if not message or not message.strip():
            raise ChatRejected(400, "Message is required")

        model = await self._resolve_model(user_id, model_id)

        preconditions = await self.check_family_preconditions(user_id)
        if not preconditions.allowed:
            raise ChatRejected(403, {"reason": preconditions.reason, "message": preconditions.message})

        now = datetime.now(timezone.utc)
        rate = await RateLimiter(self.db).check(user_id, model.rate_limit_tier)
        if not rate.allowed:
            raise ChatRejected(429, rate_limit_message(rate, now), rate_limit_headers(rate, now))

        history = await self._load_history(user_id, conversation_id, client_messages)
        messages = history + [{"role": "user", "content": message}]

        markup = await catalog.get_markup(self.db)
        estimated = estimate_cost(model.price, "".join(m["content"] for m in messages), markup)
        spend = await self.credits.check_can_spend(user_id, estimated)
        if not spend.allowed:
            raise ChatRejected(
                402,
                {
                    "reason": spend.reason,
                    "message": CREDIT_ERROR_MESSAGES.get(spend.reason, "Crédits insuffisants."),
                    "estimated_cost": estimated,
                    "resets_at": spend.resets_at.isoformat() if spend.resets_at else None,
                },
            )

        provider = get_provider(model.provider)
        if provider is None:
            raise ChatRejected(503, f"Provider {model.provider} is not configured")

        try:
            response = await provider.generate(
                messages,
                model.id,
                max_tokens=model.max_tokens,
                system_prompt=model.system_role,
            )
        except ProviderError as e:
            logger.error(f"Provider call failed for user {user_id} on {model.id}: {e}")
            raise ChatRejected(502, "Le fournisseur d'IA a renvoyé une erreur. Réessayez.")

        cost = calculate_cost(
            model.input_price, model.output_price, response.input_tokens, response.output_tokens, markup
        )
        provider_cost = calculate_provider_cost(
            model.input_price, model.output_price, response.input_tokens, response.output_tokens
        )
        co2 = calculate_co2(response.input_tokens + response.output_tokens, model.co2_per_million_tokens)

        if not conversation_id:
            conversation = await self.conversations.create(user_id, model.id, message.strip()[:TITLE_LENGTH])
            conversation_id = conversation.id

        await self.conversations.add_exchange(
            conversation_id,
            message,
            response.content,
            model.id,
            response.input_tokens,
            response.output_tokens,
            cost,
        )

        org = await self.credits.load_org_context(user_id) if spend.source == "organization" else None
        await self.usage.record(
            user_id=user_id,
            model=model.id,
            provider=model.provider,
            tokens_input=response.input_tokens,
            tokens_output=response.output_tokens,
            cost_eur=cost,
            provider_cost_eur=provider_cost,
            co2_grams=co2,
            conversation_id=conversation_id,
            organization_id=org.organization_id if org else None,
            credit_source=spend.source,
        )

        deduction = await self.credits.deduct_credits(user_id, cost, description=f"Chat {model.id}")
        if not deduction.success:
            # The answer was already produced; the shortfall is recorded, not refused
            logger.error(
                f"Failed to charge {cost:.6f} EUR to user {user_id} after completion: {deduction.error}"
            )

        return ChatResult(
            content=response.content,
            model=model.id,
            conversation_id=conversation_id,
            tokens_input=response.input_tokens,
            tokens_output=response.output_tokens,
            cost=cost,
            co2_grams=co2,
            credit_source=deduction.source if deduction.success else spend.source,
            remaining_balance=deduction.remaining,
            rate_limit=rate,
            headers=rate_limit_headers(rate, now),
        )
