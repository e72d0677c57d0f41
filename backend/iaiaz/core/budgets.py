"""Provider budget monitoring.

Each provider can carry a monthly budget in EUR. Spend is the raw
provider cost recorded on api_usage rows for the current month; an alert
row is raised once per provider, month and enabled threshold.
"""

import logging
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncSession

from ..db.repository import ProviderBudgetRepository, UsageRepository

logger = logging.getLogger(__name__)

ALERT_THRESHOLDS = (50, 75, 90, 100)


def month_start(now: datetime) -> datetime:
    return now.astimezone(timezone.utc).replace(day=1, hour=0, minute=0, second=0, microsecond=0)


def period_label(now: datetime) -> str:
    return now.astimezone(timezone.utc).strftime("%Y-%m")


def percent_used(spend: float, budget: Optional[float]) -> Optional[float]:
    if not budget or budget <= 0:
        return None
    return round(spend / budget * 100, 2)


def enabled_thresholds(budget) -> list[int]:
    return [t for t in ALERT_THRESHOLDS if getattr(budget, f"alert_threshold_{t}", False)]


def crossed_thresholds(spend: float, budget_eur: Optional[float], enabled: list[int]) -> list[int]:
    """Enabled thresholds (in percent) reached by the current spend."""
    pct = percent_used(spend, budget_eur)
    if pct is None:
        return []
    return [t for t in enabled if pct >= t]


async def budget_overview(db: AsyncSession, now: Optional[datetime] = None) -> list[dict]:
    """Budgets with their current-month spend, one entry per provider seen."""
    now = now or datetime.now(timezone.utc)
    budgets = {b.provider: b for b in await ProviderBudgetRepository(db).list_budgets()}
    spend = await UsageRepository(db).provider_costs_since(month_start(now))

    overview = []
    for provider in sorted(set(budgets) | set(spend)):
        budget = budgets.get(provider)
        monthly = budget.monthly_budget_eur if budget else None
        current = spend.get(provider, 0.0)
        overview.append({
            "provider": provider,
            "monthly_budget_eur": monthly,
            "current_spend_eur": round(current, 2),
            "percent_used": percent_used(current, monthly),
            "thresholds": enabled_thresholds(budget) if budget else [],
            "notes": budget.notes if budget else None,
            "manual_balance": budget.manual_balance if budget else None,
            "manual_balance_updated_at": (
                budget.manual_balance_updated_at.isoformat()
                if budget and budget.manual_balance_updated_at else None
            ),
        })
    return overview


async def evaluate_budgets(db: AsyncSession, now: Optional[datetime] = None) -> list:
    """
    Raise alerts for every newly crossed threshold.

    Returns:
        The alert rows created by this call
    """
    now = now or datetime.now(timezone.utc)
    repo = ProviderBudgetRepository(db)
    period = period_label(now)
    spend = await UsageRepository(db).provider_costs_since(month_start(now))

    created = []
    for budget in await repo.list_budgets():
        current = spend.get(budget.provider, 0.0)
        for threshold in crossed_thresholds(current, budget.monthly_budget_eur, enabled_thresholds(budget)):
            if await repo.alert_exists(budget.provider, period, threshold):
                continue
            created.append(
                await repo.create_alert(budget.provider, period, threshold, round(current, 6), budget.monthly_budget_eur)
            )

    if created:
        logger.info(f"Raised {len(created)} provider budget alerts for {period}")
    return created
