"""Tests for usage, class and income aggregation."""

from datetime import datetime, timedelta, timezone

import pytest

from iaiaz.core.analytics import (
    ClassMemberRow,
    ClassMessageRow,
    UsageRow,
    aggregate_user_usage,
    compute_class_metrics,
    group_income,
    period_key,
)

T0 = datetime(2026, 3, 10, 9, 0, tzinfo=timezone.utc)


def usage(offset_hours=0, model="gpt-4o-mini", provider="openai", cost=0.01, provider_cost=0.005):
    return UsageRow(
        created_at=T0 + timedelta(hours=offset_hours),
        model=model,
        provider=provider,
        tokens_input=100,
        tokens_output=50,
        cost_eur=cost,
        co2_grams=0.1,
        provider_cost_eur=provider_cost,
    )


class TestUserUsage:
    def test_totals_and_breakdowns(self):
        rows = [
            usage(0),
            usage(1, model="claude-sonnet-4-20250514", provider="anthropic", cost=0.05),
            usage(25),
        ]
        result = aggregate_user_usage(rows, days=30, conversation_count=2)

        assert result["period_days"] == 30
        assert result["conversation_count"] == 2
        assert result["totals"]["messages"] == 3
        assert result["totals"]["cost"] == pytest.approx(0.07)
        assert result["totals"]["tokens_input"] == 300
        assert [d["date"] for d in result["daily"]] == ["2026-03-10", "2026-03-11"]
        assert result["by_model"][0]["model"] == "claude-sonnet-4-20250514"
        assert result["by_provider"][0] == {"provider": "anthropic", "cost": 0.05, "messages": 1}

    def test_empty(self):
        result = aggregate_user_usage([], days=7)
        assert result["totals"]["messages"] == 0
        assert result["daily"] == []
        assert result["all_time"] == {}


class TestClassMetrics:
    def message(self, user_id, conversation_id, role="user", cost=0.0, hours=0, model="gpt-4o-mini"):
        return ClassMessageRow(
            user_id=user_id,
            conversation_id=conversation_id,
            conversation_model=model,
            role=role,
            cost=cost,
            created_at=T0 + timedelta(hours=hours),
        )

    def test_metrics(self):
        members = [
            ClassMemberRow("alice", "Alice", "alice@example.com"),
            ClassMemberRow("bob", None, "bob@example.com"),
            ClassMemberRow("carol", None, None),
        ]
        messages = [
            self.message("alice", "c1"),
            self.message("alice", "c1", role="assistant", cost=0.123),
            self.message("alice", "c2", hours=1, model="claude-sonnet-4-20250514"),
            self.message("bob", "c3"),
            self.message("bob", "c3", role="assistant", cost=0.2),
        ]
        result = compute_class_metrics(messages, members, T0 - timedelta(days=1), T0 + timedelta(days=1))

        assert result["total_messages"] == 3
        assert result["total_conversations"] == 3
        assert result["total_cost"] == 0.32
        assert result["unique_students"] == 3
        assert result["active_students"] == 2
        assert result["model_usage"] == {"gpt-4o-mini": 4, "claude-sonnet-4-20250514": 1}
        assert result["peak_hours"] == [{"hour": 9, "count": 4}, {"hour": 10, "count": 1}]
        assert result["top_students"][0]["name"] == "Alice"
        assert result["top_students"][1]["name"] == "bob"

    def test_assistant_replies_count_towards_models_and_hours(self):
        rows = [
            self.message("alice", "c1", hours=-2),
            self.message("alice", "c1", role="assistant", cost=0.01, hours=-2),
            self.message("alice", "c1", hours=-2),
            self.message("alice", "c1", role="assistant", cost=0.01, hours=-2),
        ]
        result = compute_class_metrics(rows, [], T0 - timedelta(days=1), T0 + timedelta(days=1))

        assert result["total_messages"] == 2
        assert result["model_usage"] == {"gpt-4o-mini": 4}
        assert result["peak_hours"] == [{"hour": 7, "count": 4}]
        assert result["daily_usage"] == [{"date": "2026-03-10", "messages": 2, "cost": 0.02}]

    def test_rows_outside_window_are_ignored(self):
        rows = [self.message("alice", "c1", hours=-48)]
        result = compute_class_metrics(rows, [], T0 - timedelta(days=1), T0 + timedelta(days=1))
        assert result["total_messages"] == 0
        assert result["daily_usage"] == []


class TestIncome:
    def test_group_by_month(self):
        personal = [(T0, 10.0), (T0 + timedelta(days=30), 5.0)]
        org = [(T0, 100.0)]
        rows = [usage(0, cost=0.03, provider_cost=0.02), usage(1, provider="anthropic", cost=0.06, provider_cost=0.04)]

        result = group_income(personal, org, rows, "month")

        assert [p["period"] for p in result["periods"]] == ["2026-03", "2026-04"]
        march = result["periods"][0]
        assert march["total_revenue"] == 110.0
        assert march["usage_revenue"] == 0.09
        assert march["provider_costs"]["openai"] == 0.02
        assert march["provider_costs"]["google"] == 0.0
        assert result["totals"]["total_revenue"] == 115.0
        assert result["totals"]["net_margin"] == 0.03
        assert result["totals"]["margin_percent"] == pytest.approx(33.33)

    def test_no_usage_has_zero_margin(self):
        assert group_income([], [], [], "day")["totals"]["margin_percent"] == 0.0

    def test_week_key_is_monday(self):
        assert period_key(T0, "week") == "2026-03-09"
        assert period_key(T0, "year") == "2026"

    def test_invalid_group_by(self):
        with pytest.raises(ValueError):
            group_income([], [], [], "quarter")
