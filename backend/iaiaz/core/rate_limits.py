"""Per-model-tier chat rate limiting.

Each model belongs to a tier (economy, standard, premium) with its own
requests-per-minute budget. Accepted requests are stored as events and
counted over a sliding 60 second window.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Optional, Sequence

from sqlalchemy.ext.asyncio import AsyncSession

from ..db.models import ensure_utc
from ..db.repository import RateLimitRepository

logger = logging.getLogger(__name__)

WINDOW_SECONDS = 60

RATE_LIMITS = {
    "economy": 20,
    "standard": 10,
    "premium": 3,
}
DEFAULT_TIER = "standard"

# Used to suggest a tier for catalogue entries created without one
PREMIUM_MODEL_PREFIXES = ("claude-opus", "gpt-5", "o1", "o3")
ECONOMY_MODEL_MARKERS = ("mini", "haiku", "flash", "small", "nano")


@dataclass
class RateLimitResult:
    allowed: bool
    tier: str
    limit: int
    remaining: int
    reset_at: datetime


def normalize_tier(tier: Optional[str]) -> str:
    return tier if tier in RATE_LIMITS else DEFAULT_TIER


def infer_tier(model_id: str) -> str:
    """Guess a rate limit tier from a model id."""
    model_id = model_id.lower()
    if model_id.startswith(PREMIUM_MODEL_PREFIXES):
        return "premium"
    if any(marker in model_id for marker in ECONOMY_MODEL_MARKERS):
        return "economy"
    return DEFAULT_TIER


def evaluate_window(
    tier: str,
    events: Sequence[datetime],
    now: datetime,
    consume: bool = True,
) -> RateLimitResult:
    """
    Apply the sliding window to the request timestamps of the last minute.

    `events` must be sorted oldest first. When `consume` is set the
    current request counts against the remaining budget.
    """
    tier = normalize_tier(tier)
    limit = RATE_LIMITS[tier]
    window_start = now - timedelta(seconds=WINDOW_SECONDS)
    recent = [ensure_utc(e) for e in events if ensure_utc(e) > window_start]
    count = len(recent)

    if count >= limit:
        reset_at = recent[0] + timedelta(seconds=WINDOW_SECONDS)
        return RateLimitResult(False, tier, limit, 0, reset_at)

    remaining = limit - count - (1 if consume else 0)
    reset_at = recent[0] + timedelta(seconds=WINDOW_SECONDS) if recent else now + timedelta(seconds=WINDOW_SECONDS)
    return RateLimitResult(True, tier, limit, max(remaining, 0), reset_at)


def seconds_until(reset_at: datetime, now: datetime) -> int:
    return max(int((reset_at - now).total_seconds() + 0.999), 1)


def format_wait_time(seconds: int) -> str:
    if seconds < 60:
        return f"{seconds} seconde{'s' if seconds > 1 else ''}"
    minutes = (seconds + 59) // 60
    return f"{minutes} minute{'s' if minutes > 1 else ''}"


def rate_limit_message(result: RateLimitResult, now: datetime) -> str:
    wait = format_wait_time(seconds_until(result.reset_at, now))
    return (
        f"Limite de requêtes atteinte pour les modèles {result.tier} "
        f"({result.limit} par minute). Réessayez dans {wait}."
    )


def rate_limit_headers(result: RateLimitResult, now: datetime) -> dict[str, str]:
    headers = {
        "X-RateLimit-Limit": str(result.limit),
        "X-RateLimit-Remaining": str(result.remaining),
        "X-RateLimit-Reset": str(int(result.reset_at.timestamp())),
    }
    if not result.allowed:
        headers["Retry-After"] = str(seconds_until(result.reset_at, now))
    return headers


class RateLimiter:
    """Database-backed sliding window limiter."""

    def __init__(self, db: AsyncSession):
        self.repo = RateLimitRepository(db)

    async def check(self, user_id: str, tier: str) -> RateLimitResult:
        """Check the limit and record the request when it is allowed.

        Events that have left the window are dropped first, so the table
        holds at most one window of rows per user and tier.
        """
        now = datetime.now(timezone.utc)
        tier = normalize_tier(tier)
        cutoff = now - timedelta(seconds=WINDOW_SECONDS)
        await self.repo.purge_before(cutoff, user_id=user_id)
        events = await self.repo.events_since(user_id, tier, cutoff)
        result = evaluate_window(tier, events, now)
        if result.allowed:
            await self.repo.record(user_id, tier, now)
        else:
            logger.warning(f"Rate limit hit for user {user_id} on {tier} tier")
        return result

    async def status(self, user_id: str, tier: str) -> RateLimitResult:
        now = datetime.now(timezone.utc)
        tier = normalize_tier(tier)
        events = await self.repo.events_since(user_id, tier, now - timedelta(seconds=WINDOW_SECONDS))
        return evaluate_window(tier, events, now, consume=False)
