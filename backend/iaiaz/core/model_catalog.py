"""Cached view of the AI model catalogue and app settings.

Both tables change rarely (admin edits) but are read on every chat
request, so they are cached in-process for a few minutes. If the database
is unreachable when the cache expires, the stale snapshot keeps serving.
"""

import logging
import time
from dataclasses import dataclass, field
from typing import Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from .pricing import ModelPrice, markup_from_percentage, price_for_model
from .rate_limits import normalize_tier
from ..db.repository import ModelRepository, SettingsRepository

logger = logging.getLogger(__name__)

CACHE_TTL_SECONDS = 300

DEFAULT_APP_SETTINGS = {
    "markup": {"percentage": 50},
    "free_credits": {"amount": 1.0},
    "min_balance_warning": {"amount": 0.5},
    "default_chat_model": {"model_id": "claude-sonnet-4-20250514"},
    "analytics_model": {"model_id": "claude-sonnet-4-20250514"},
    "economy_model": {"model_id": "gpt-4o-mini"},
}

# Prefix rules for catalogue rows without a provider
PROVIDER_PREFIXES = (
    ("claude-", "anthropic"),
    ("gpt-", "openai"),
    ("o1", "openai"),
    ("o3", "openai"),
    ("gemini-", "google"),
    ("mistral-", "mistral"),
    ("codestral-", "mistral"),
)


def provider_from_model_id(model_id: str) -> Optional[str]:
    model_id = model_id.lower()
    for prefix, provider in PROVIDER_PREFIXES:
        if model_id.startswith(prefix):
            return provider
    return None


@dataclass(frozen=True)
class CatalogModel:
    """Detached snapshot of an `ai_models` row."""
    id: str
    name: str
    provider: str
    input_price: float
    output_price: float
    description: Optional[str] = None
    category: str = "balanced"
    is_recommended: bool = False
    max_tokens: int = 4096
    rate_limit_tier: str = "standard"
    capabilities: dict = field(default_factory=dict)
    system_role: Optional[str] = None
    display_order: int = 100
    co2_per_million_tokens: float = 0.5

    @property
    def price(self) -> ModelPrice:
        return ModelPrice(self.input_price, self.output_price, self.co2_per_million_tokens)

    @classmethod
    def from_row(cls, row) -> "CatalogModel":
        return cls(
            id=row.id,
            name=row.name,
            provider=row.provider or provider_from_model_id(row.id) or "openai",
            input_price=row.input_price,
            output_price=row.output_price,
            description=row.description,
            category=row.category or "balanced",
            is_recommended=bool(row.is_recommended),
            max_tokens=row.max_tokens or 4096,
            rate_limit_tier=normalize_tier(row.rate_limit_tier),
            capabilities=dict(row.capabilities or {}),
            system_role=row.system_role,
            display_order=row.display_order if row.display_order is not None else 100,
            co2_per_million_tokens=row.co2_per_million_tokens if row.co2_per_million_tokens is not None else 0.5,
        )


class ModelCatalog:
    """In-process TTL cache over `ai_models` and `app_settings`."""

    def __init__(self, ttl: float = CACHE_TTL_SECONDS):
        self.ttl = ttl
        self._models: Optional[dict[str, CatalogModel]] = None
        self._settings: Optional[dict[str, dict]] = None
        self._loaded_at = 0.0

    def invalidate(self) -> None:
        self._models = None
        self._settings = None
        self._loaded_at = 0.0
        logger.info("Model catalogue cache invalidated")

    def _is_fresh(self) -> bool:
        return self._models is not None and (time.monotonic() - self._loaded_at) < self.ttl

    async def _refresh(self, db: AsyncSession) -> None:
        if self._is_fresh():
            return
        try:
            rows = await ModelRepository(db).list_active()
            settings_rows = await SettingsRepository(db).get_all()
        except SQLAlchemyError as e:
            if self._models is None:
                raise
            logger.error(f"Failed to refresh model catalogue, serving stale data: {e}")
            return

        self._models = {row.id: CatalogModel.from_row(row) for row in rows}
        self._settings = {row.key: row.value for row in settings_rows}
        self._loaded_at = time.monotonic()
        logger.debug(f"Loaded {len(self._models)} active models into the catalogue cache")

    # ============ Models ============

    async def list_models(self, db: AsyncSession) -> list[CatalogModel]:
        await self._refresh(db)
        return sorted(self._models.values(), key=lambda m: (m.display_order, m.name))

    async def get_model(self, db: AsyncSession, model_id: str) -> Optional[CatalogModel]:
        await self._refresh(db)
        return self._models.get(model_id)

    async def get_price(self, db: AsyncSession, model_id: str) -> ModelPrice:
        """Price of an active model, or the default pricing for anything else."""
        await self._refresh(db)
        prices = {mid: model.price for mid, model in self._models.items()}
        return price_for_model(prices, model_id)

    # ============ Settings ============

    async def get_setting(self, db: AsyncSession, key: str) -> dict:
        await self._refresh(db)
        value = self._settings.get(key)
        if value is None:
            return dict(DEFAULT_APP_SETTINGS.get(key, {}))
        return value

    async def get_markup(self, db: AsyncSession) -> float:
        setting = await self.get_setting(db, "markup")
        return markup_from_percentage(setting.get("percentage"))

    async def get_free_credits(self, db: AsyncSession) -> float:
        setting = await self.get_setting(db, "free_credits")
        return float(setting.get("amount", 0.0))

    async def get_min_balance_warning(self, db: AsyncSession) -> float:
        setting = await self.get_setting(db, "min_balance_warning")
        return float(setting.get("amount", 0.0))


# Process-wide catalogue cache
catalog = ModelCatalog()
