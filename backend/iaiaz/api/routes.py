"""API routes for chat, conversations, credits and user analytics."""

import logging
from datetime import datetime, timedelta, timezone

from fastapi import APIRouter, HTTPException, Depends, Query, Request, Response
from sqlalchemy.ext.asyncio import AsyncSession

from ..core.analytics import aggregate_user_usage
from ..core.auth import get_current_user
from ..core.chat import ChatRejected, ChatService
from ..core.credits import CreditService, effective_balance
from ..core.model_catalog import catalog
from ..core.pricing import (
    CREDIT_PACKS,
    ESTIMATED_OUTPUT_TOKENS,
    estimate_cost,
    estimate_tokens,
    price_with_markup,
)
from ..core.rate_limits import RATE_LIMITS, RateLimiter, WINDOW_SECONDS
from ..core.security import limiter
from ..db.database import get_db
from ..db.models import UserModel
from ..db.repository import ConversationRepository, CreditRepository, UsageRepository, UserRepository
from ..models.chat import (
    ChatRequest,
    ChatResponse,
    ConversationRename,
    CostEstimateRequest,
    CostEstimateResponse,
    ConversationResponse,
    MessageResponse,
    RateLimitInfo,
)
from ..models.credits import CreditsResponse, CreditTransaction, LimitInfo, PreferenceUpdate
from ..models.user import UserProfile, UserProfileUpdate

router = APIRouter()
logger = logging.getLogger(__name__)


# ============ Profile ============


@router.get("/me", response_model=UserProfile)
async def get_me(user: UserModel = Depends(get_current_user)):
    """Get the authenticated user's profile."""
    return UserProfile.model_validate(user)


@router.patch("/me", response_model=UserProfile)
async def update_me(
    request: UserProfileUpdate,
    user: UserModel = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    """Update display name or birthdate."""
    user = await UserRepository(db).update_profile(
        user,
        display_name=request.display_name,
        birthdate=request.birthdate,
    )
    return UserProfile.model_validate(user)


# ============ Models & Pricing ============


@router.get("/models")
async def list_models(
    user: UserModel = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
) -> dict:
    """Active models with prices (markup included), flagged when the user's organization forbids them."""
    user_id = user.id
    models = await catalog.list_models(db)
    markup = await catalog.get_markup(db)
    allowed = await ChatService(db).get_model_restrictions(user_id)

    return {
        "models": [
            {
                "id": m.id,
                "name": m.name,
                "provider": m.provider,
                "description": m.description,
                "category": m.category,
                "is_recommended": m.is_recommended,
                "max_tokens": m.max_tokens,
                "rate_limit_tier": m.rate_limit_tier,
                "capabilities": m.capabilities,
                "input_price": price_with_markup(m.input_price, markup),
                "output_price": price_with_markup(m.output_price, markup),
                "co2_per_million_tokens": m.co2_per_million_tokens,
                "allowed": allowed is None or m.id in allowed,
            }
            for m in models
        ],
        "default_model": (await catalog.get_setting(db, "default_chat_model")).get("model_id"),
    }


@router.get("/pricing")
async def get_pricing(db: AsyncSession = Depends(get_db)) -> dict:
    """Public pricing: per-million prices with markup, and the credit packs."""
    models = await catalog.list_models(db)
    markup = await catalog.get_markup(db)
    return {
        "currency": "EUR",
        "models": [
            {
                "id": m.id,
                "name": m.name,
                "provider": m.provider,
                "input_price": price_with_markup(m.input_price, markup),
                "output_price": price_with_markup(m.output_price, markup),
            }
            for m in models
        ],
        "packs": [
            {"id": p.id, "name": p.name, "credits": p.credits, "price_cents": p.price_cents, "popular": p.popular}
            for p in CREDIT_PACKS.values()
        ],
        "free_credits": await catalog.get_free_credits(db),
    }


@router.post("/estimate", response_model=CostEstimateResponse)
async def estimate_message_cost(
    body: CostEstimateRequest,
    user: UserModel = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    """Live cost preview for the chat input, markup included."""
    price = await catalog.get_price(db, body.model)
    markup = await catalog.get_markup(db)
    return CostEstimateResponse(
        model=body.model,
        input_tokens=estimate_tokens(body.text),
        output_tokens=ESTIMATED_OUTPUT_TOKENS,
        estimated_cost=estimate_cost(price, body.text, markup),
        default_pricing=await catalog.get_model(db, body.model) is None,
    )


# ============ Chat ============


@router.post("/chat", response_model=ChatResponse)
@limiter.limit("60/minute")
async def chat(
    request: Request,
    body: ChatRequest,
    response: Response,
    user: UserModel = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    """
    Send a message to a model and get the reply.

    Errors: 400 invalid message or model, 402 insufficient credits,
    403 model or family restriction, 404 unknown conversation,
    429 rate limited, 502 provider error, 503 provider not configured.
    """
    user_id = user.id

    try:
        result = await ChatService(db).send(
            user_id,
            body.message,
            body.model,
            conversation_id=body.conversation_id,
            client_messages=[m.model_dump() for m in body.messages] if body.messages else None,
        )
    except ChatRejected as e:
        raise HTTPException(status_code=e.status_code, detail=e.detail, headers=e.headers)

    for name, value in result.headers.items():
        response.headers[name] = value

    return ChatResponse(
        content=result.content,
        model=result.model,
        conversation_id=result.conversation_id,
        tokens_input=result.tokens_input,
        tokens_output=result.tokens_output,
        cost=result.cost,
        co2_grams=result.co2_grams,
        credit_source=result.credit_source,
        remaining_balance=result.remaining_balance,
        rate_limit=RateLimitInfo(
            tier=result.rate_limit.tier,
            limit=result.rate_limit.limit,
            remaining=result.rate_limit.remaining,
            reset_at=result.rate_limit.reset_at,
        ),
    )


@router.get("/rate-limit")
async def get_rate_limit_status(
    model: str = Query(..., description="Model id"),
    user: UserModel = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
) -> dict:
    """Current rate limit window for the tier of a model, without consuming a request."""
    user_id = user.id
    catalog_model = await catalog.get_model(db, model)
    if catalog_model is None:
        raise HTTPException(status_code=404, detail="Model not found")

    status = await RateLimiter(db).status(user_id, catalog_model.rate_limit_tier)
    return {
        "tier": status.tier,
        "limit": status.limit,
        "remaining": status.remaining,
        "reset_at": status.reset_at.isoformat(),
        "window_seconds": WINDOW_SECONDS,
        "tiers": RATE_LIMITS,
    }


# ============ Conversations ============


def _conversation_response(conversation, messages=None) -> ConversationResponse:
    return ConversationResponse(
        id=conversation.id,
        title=conversation.title,
        model=conversation.model,
        created_at=conversation.created_at,
        updated_at=conversation.updated_at,
        messages=[
            MessageResponse(
                id=m.id,
                role=m.role,
                content=m.content,
                model=m.model,
                tokens_input=m.tokens_input or 0,
                tokens_output=m.tokens_output or 0,
                cost=m.cost or 0.0,
                created_at=m.created_at,
            )
            for m in messages
        ] if messages is not None else None,
    )


@router.get("/conversations")
async def list_conversations(
    limit: int = Query(default=50, ge=1, le=200),
    offset: int = Query(default=0, ge=0),
    user: UserModel = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
) -> dict:
    """List the user's conversations, most recent first."""
    repo = ConversationRepository(db)
    conversations = await repo.list_for_user(user.id, limit=limit, offset=offset)
    return {
        "conversations": [_conversation_response(c) for c in conversations],
        "total": await repo.count_for_user(user.id),
    }


@router.get("/conversations/{conversation_id}", response_model=ConversationResponse)
async def get_conversation(
    conversation_id: str,
    user: UserModel = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    """Get a conversation with its messages."""
    repo = ConversationRepository(db)
    conversation = await repo.get_for_user(conversation_id, user.id)
    if not conversation:
        raise HTTPException(status_code=404, detail="Conversation not found")
    return _conversation_response(conversation, await repo.get_history(conversation_id))


@router.patch("/conversations/{conversation_id}", response_model=ConversationResponse)
async def rename_conversation(
    conversation_id: str,
    request: ConversationRename,
    user: UserModel = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    """Rename a conversation."""
    title = request.title.strip()
    if not title:
        raise HTTPException(status_code=400, detail="Title is required")

    conversation = await ConversationRepository(db).rename(conversation_id, user.id, title)
    if not conversation:
        raise HTTPException(status_code=404, detail="Conversation not found")
    return _conversation_response(conversation)


@router.delete("/conversations/{conversation_id}")
async def delete_conversation(
    conversation_id: str,
    user: UserModel = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
) -> dict:
    """Delete a conversation and its messages."""
    if not await ConversationRepository(db).delete(conversation_id, user.id):
        raise HTTPException(status_code=404, detail="Conversation not found")
    return {"deleted": True}


@router.delete("/conversations")
async def delete_all_conversations(
    user: UserModel = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
) -> dict:
    """Delete every conversation of the user."""
    count = await ConversationRepository(db).delete_all_for_user(user.id)
    return {"deleted": count}


# ============ Credits ============


@router.get("/credits", response_model=CreditsResponse)
async def get_credits(
    user: UserModel = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    """Active credit source, both balances and per-student limits."""
    source = await CreditService(db).get_user_credits(user.id)
    org = source.org

    return CreditsResponse(
        source=source.source,
        balance=round(source.balance, 6),
        effective_balance=effective_balance(source),
        preference=source.preference,
        personal_balance=round(source.personal_balance, 6),
        org_balance=org.balance if org else None,
        organization_id=org.organization_id if org else None,
        organization_name=org.organization_name if org else None,
        member_id=org.member_id if org else None,
        role=org.role if org else None,
        is_trainer=source.is_trainer,
        limits=[
            LimitInfo(
                period=status.period,
                limit=status.limit,
                used=status.used,
                remaining=status.remaining,
                resets_at=status.resets_at,
            )
            for status in (org.limits if org else [])
        ],
        min_balance_warning=await catalog.get_min_balance_warning(db),
    )


@router.put("/credits/preference")
async def set_credit_preference(
    request: PreferenceUpdate,
    user: UserModel = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
) -> dict:
    """Choose which balance is spent first."""
    await UserRepository(db).set_credit_preference(user.id, request.preference.value)
    return {"preference": request.preference.value}


@router.get("/credits/transactions")
async def get_credit_transactions(
    limit: int = Query(default=50, ge=1, le=200),
    offset: int = Query(default=0, ge=0),
    user: UserModel = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
) -> dict:
    """Personal credit history."""
    transactions = await CreditRepository(db).get_transactions(user.id, limit=limit, offset=offset)
    return {
        "transactions": [
            CreditTransaction(
                id=t.id,
                amount=t.amount,
                type=t.type,
                description=t.description,
                balance_after=t.balance_after,
                created_at=t.created_at,
            )
            for t in transactions
        ],
    }


# ============ Analytics ============


@router.get("/analytics")
async def get_user_analytics(
    days: int = Query(default=30, ge=1, le=365),
    user: UserModel = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
) -> dict:
    """Usage, cost and CO2 over the last `days` days."""
    usage = UsageRepository(db)
    since = datetime.now(timezone.utc) - timedelta(days=days)

    return aggregate_user_usage(
        await usage.rows_since(user.id, since),
        days,
        all_time=await usage.all_time_totals(user.id),
        conversation_count=await ConversationRepository(db).count_for_user(user.id),
    )
