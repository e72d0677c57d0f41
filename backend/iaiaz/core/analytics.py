"""Usage analytics.

Everything here is plain aggregation over rows the repositories have
already fetched: grouping by day, hour, model, provider or student.
"""

from collections import defaultdict
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Iterable, Optional

PROVIDERS = ("anthropic", "openai", "google", "mistral")
GROUP_BY_OPTIONS = ("day", "week", "month", "year")

TOP_STUDENTS_LIMIT = 10
PEAK_HOURS_LIMIT = 3


@dataclass
class UsageRow:
    created_at: datetime
    model: str
    provider: str
    tokens_input: int
    tokens_output: int
    cost_eur: float
    co2_grams: float = 0.0
    provider_cost_eur: float = 0.0


@dataclass
class ClassMessageRow:
    user_id: str
    conversation_id: str
    conversation_model: str
    role: str
    cost: float
    created_at: datetime


@dataclass
class ClassMemberRow:
    user_id: str
    display_name: Optional[str]
    email: Optional[str]

    @property
    def label(self) -> str:
        if self.display_name:
            return self.display_name
        if self.email:
            return self.email.split("@")[0]
        return "Anonymous"


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _money(value: float, digits: int = 6) -> float:
    return round(value, digits)


# ============ User analytics ============


def aggregate_user_usage(
    rows: Iterable[UsageRow],
    days: int,
    all_time: Optional[dict] = None,
    conversation_count: int = 0,
) -> dict:
    """
    Summarize a user's API usage over a window of days.

    Returns totals for the window, a daily series sorted by date, and
    per-model and per-provider breakdowns sorted by cost (highest first).
    """
    totals = {"cost": 0.0, "co2_grams": 0.0, "tokens_input": 0, "tokens_output": 0, "messages": 0}
    daily: dict[str, dict] = defaultdict(lambda: {"cost": 0.0, "co2_grams": 0.0, "messages": 0})
    by_model: dict[str, dict] = defaultdict(
        lambda: {"cost": 0.0, "messages": 0, "tokens_input": 0, "tokens_output": 0}
    )
    by_provider: dict[str, dict] = defaultdict(lambda: {"cost": 0.0, "messages": 0})

    for row in rows:
        cost = row.cost_eur or 0.0
        co2 = row.co2_grams or 0.0

        totals["cost"] += cost
        totals["co2_grams"] += co2
        totals["tokens_input"] += row.tokens_input or 0
        totals["tokens_output"] += row.tokens_output or 0
        totals["messages"] += 1

        day = daily[_as_utc(row.created_at).date().isoformat()]
        day["cost"] += cost
        day["co2_grams"] += co2
        day["messages"] += 1

        model = by_model[row.model]
        model["cost"] += cost
        model["messages"] += 1
        model["tokens_input"] += row.tokens_input or 0
        model["tokens_output"] += row.tokens_output or 0

        provider = by_provider[row.provider]
        provider["cost"] += cost
        provider["messages"] += 1

    totals["cost"] = _money(totals["cost"])
    totals["co2_grams"] = _money(totals["co2_grams"])

    return {
        "period_days": days,
        "totals": totals,
        "all_time": all_time or {},
        "conversation_count": conversation_count,
        "daily": [
            {"date": date, "cost": _money(v["cost"]), "co2_grams": _money(v["co2_grams"]), "messages": v["messages"]}
            for date, v in sorted(daily.items())
        ],
        "by_model": sorted(
            ({"model": name, **v, "cost": _money(v["cost"])} for name, v in by_model.items()),
            key=lambda item: item["cost"],
            reverse=True,
        ),
        "by_provider": sorted(
            ({"provider": name, **v, "cost": _money(v["cost"])} for name, v in by_provider.items()),
            key=lambda item: item["cost"],
            reverse=True,
        ),
    }


# ============ Class analytics ============


def default_class_window(now: Optional[datetime] = None, days: int = 30) -> tuple[datetime, datetime]:
    end = now or datetime.now(timezone.utc)
    return end - timedelta(days=days), end


def compute_class_metrics(
    messages: Iterable[ClassMessageRow],
    members: Iterable[ClassMemberRow],
    start: datetime,
    end: datetime,
) -> dict:
    """
    Aggregate classroom activity for teachers.

    `messages` are the messages of conversations owned by the class's
    active students; rows outside [start, end] are ignored. Costs are
    rounded to cents.
    """
    start, end = _as_utc(start), _as_utc(end)
    members = list(members)
    member_labels = {m.user_id: m.label for m in members}

    total_messages = 0
    total_cost = 0.0
    conversations: set[str] = set()
    model_usage: dict[str, int] = defaultdict(int)
    active_students: set[str] = set()
    hours: dict[int, int] = defaultdict(int)
    daily: dict[str, dict] = defaultdict(lambda: {"messages": 0, "cost": 0.0})
    per_student: dict[str, dict] = defaultdict(lambda: {"messages": 0, "cost": 0.0})

    for row in messages:
        created = _as_utc(row.created_at)
        if created < start or created > end:
            continue

        conversations.add(row.conversation_id)
        active_students.add(row.user_id)
        hours[created.hour] += 1
        if row.conversation_model:
            model_usage[row.conversation_model] += 1
        day = daily[created.date().isoformat()]
        cost = row.cost or 0.0
        total_cost += cost
        day["cost"] += cost
        per_student[row.user_id]["cost"] += cost

        if row.role == "user":
            total_messages += 1
            day["messages"] += 1
            per_student[row.user_id]["messages"] += 1

    peak_hours = sorted(hours.items(), key=lambda item: (-item[1], item[0]))[:PEAK_HOURS_LIMIT]

    top_students = sorted(
        (
            {
                "user_id": user_id,
                "name": member_labels.get(user_id, "Anonymous"),
                "messages": stats["messages"],
                "cost": round(stats["cost"], 2),
            }
            for user_id, stats in per_student.items()
            if stats["messages"] > 0
        ),
        key=lambda item: item["messages"],
        reverse=True,
    )[:TOP_STUDENTS_LIMIT]

    return {
        "period": {"start": start.isoformat(), "end": end.isoformat()},
        "total_messages": total_messages,
        "total_conversations": len(conversations),
        "total_cost": round(total_cost, 2),
        "unique_students": len(members),
        "active_students": len(active_students),
        "model_usage": dict(sorted(model_usage.items(), key=lambda item: item[1], reverse=True)),
        "peak_hours": [{"hour": hour, "count": count} for hour, count in peak_hours],
        "daily_usage": [
            {"date": date, "messages": v["messages"], "cost": round(v["cost"], 2)}
            for date, v in sorted(daily.items())
        ],
        "top_students": top_students,
    }


# ============ Admin income ============


def period_key(value: datetime, group_by: str) -> str:
    """Bucket label for a timestamp: day, ISO week start (Monday), month or year."""
    value = _as_utc(value)
    if group_by == "day":
        return value.date().isoformat()
    if group_by == "week":
        return (value.date() - timedelta(days=value.weekday())).isoformat()
    if group_by == "month":
        return value.strftime("%Y-%m")
    if group_by == "year":
        return value.strftime("%Y")
    raise ValueError(f"Invalid group_by: {group_by}")


def _empty_income_period(period: str) -> dict:
    return {
        "period": period,
        "personal_purchases": 0.0,
        "org_purchases": 0.0,
        "total_revenue": 0.0,
        "usage_revenue": 0.0,
        "provider_costs": {provider: 0.0 for provider in PROVIDERS},
        "total_cost": 0.0,
        "net_margin": 0.0,
    }


def group_income(
    personal_purchases: Iterable[tuple[datetime, float]],
    org_purchases: Iterable[tuple[datetime, float]],
    usage: Iterable[UsageRow],
    group_by: str = "month",
) -> dict:
    """
    Revenue and provider cost per period.

    Revenue is money received (personal and organization purchases);
    net margin is usage revenue (what users were charged) minus what the
    providers cost.
    """
    if group_by not in GROUP_BY_OPTIONS:
        raise ValueError(f"Invalid group_by: {group_by}")

    periods: dict[str, dict] = {}

    def bucket(ts: datetime) -> dict:
        key = period_key(ts, group_by)
        if key not in periods:
            periods[key] = _empty_income_period(key)
        return periods[key]

    for created_at, amount in personal_purchases:
        bucket(created_at)["personal_purchases"] += amount or 0.0
    for created_at, amount in org_purchases:
        bucket(created_at)["org_purchases"] += amount or 0.0
    for row in usage:
        entry = bucket(row.created_at)
        entry["usage_revenue"] += row.cost_eur or 0.0
        costs = entry["provider_costs"]
        costs[row.provider] = costs.get(row.provider, 0.0) + (row.provider_cost_eur or 0.0)

    totals = _empty_income_period("total")
    for entry in periods.values():
        entry["total_revenue"] = entry["personal_purchases"] + entry["org_purchases"]
        entry["total_cost"] = sum(entry["provider_costs"].values())
        entry["net_margin"] = entry["usage_revenue"] - entry["total_cost"]
        for key in ("personal_purchases", "org_purchases", "total_revenue", "usage_revenue", "total_cost", "net_margin"):
            totals[key] += entry[key]
            entry[key] = round(entry[key], 2)
        for provider, cost in entry["provider_costs"].items():
            totals["provider_costs"][provider] = totals["provider_costs"].get(provider, 0.0) + cost
            entry["provider_costs"][provider] = round(cost, 2)

    usage_revenue = totals["usage_revenue"]
    margin_percent = round(totals["net_margin"] / usage_revenue * 100, 2) if usage_revenue > 0 else 0.0

    totals.pop("period")
    for key in ("personal_purchases", "org_purchases", "total_revenue", "usage_revenue", "total_cost", "net_margin"):
        totals[key] = round(totals[key], 2)
    totals["provider_costs"] = {p: round(c, 2) for p, c in totals["provider_costs"].items()}
    totals["margin_percent"] = margin_percent

    return {
        "group_by": group_by,
        "periods": [periods[key] for key in sorted(periods)],
        "totals": totals,
    }
