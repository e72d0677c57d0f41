"""Tests for family parental controls."""

from datetime import date, datetime, time, timedelta, timezone
from types import SimpleNamespace

import pytest

from iaiaz.core.parental import (
    calculate_age,
    default_controls,
    evaluate_preconditions,
    in_quiet_hours,
    is_trial_expired,
    supervision_mode_for_age,
)

PARIS = "Europe/Paris"


def controls(**fields):
    values = {
        "quiet_hours_start": None,
        "quiet_hours_end": None,
        "daily_credit_limit": None,
    }
    values.update(fields)
    return SimpleNamespace(**values)


class TestAge:
    def test_birthday_not_reached(self):
        assert calculate_age(date(2012, 6, 15), date(2026, 6, 14)) == 13

    def test_birthday_today(self):
        assert calculate_age(date(2012, 6, 15), date(2026, 6, 15)) == 14

    @pytest.mark.parametrize("age,mode", [
        (11, None),
        (12, "guided"),
        (14, "guided"),
        (15, "trusted"),
        (17, "trusted"),
        (18, "adult"),
        (40, "adult"),
    ])
    def test_supervision_mode(self, age, mode):
        assert supervision_mode_for_age(age) == mode

    def test_guided_defaults_are_stricter(self):
        guided = default_controls("guided")
        trusted = default_controls("trusted")
        assert guided["supervision_mode"] == "guided"
        assert guided["daily_credit_limit"] < trusted["daily_credit_limit"]
        assert guided["daily_time_limit_minutes"] == 60
        assert trusted["daily_time_limit_minutes"] is None


class TestQuietHours:
    def test_range_wrapping_midnight(self):
        assert in_quiet_hours(time(23, 0), "22:00", "07:00")
        assert in_quiet_hours(time(6, 59), "22:00", "07:00")
        assert not in_quiet_hours(time(7, 0), "22:00", "07:00")
        assert not in_quiet_hours(time(12, 0), "22:00", "07:00")

    def test_same_day_range(self):
        assert in_quiet_hours(time(13, 30), "13:00", "14:00")
        assert not in_quiet_hours(time(14, 0), "13:00", "14:00")

    def test_unset_or_empty_range(self):
        assert not in_quiet_hours(time(23, 0), None, "07:00")
        assert not in_quiet_hours(time(23, 0), "10:00", "10:00")


class TestPreconditions:
    # 21:30 UTC in March is 22:30 in Paris
    LATE = datetime(2026, 3, 10, 21, 30, tzinfo=timezone.utc)
    NOON = datetime(2026, 3, 10, 11, 0, tzinfo=timezone.utc)

    def test_no_controls_allows(self):
        assert evaluate_preconditions(None, 10.0, self.LATE, PARIS).allowed

    def test_quiet_hours_use_local_time(self):
        result = evaluate_preconditions(controls(quiet_hours_start="22:00", quiet_hours_end="07:00"), 0, self.LATE, PARIS)
        assert not result.allowed
        assert result.reason == "quiet_hours"
        assert result.message

        assert evaluate_preconditions(
            controls(quiet_hours_start="22:00", quiet_hours_end="07:00"), 0, self.LATE, "UTC"
        ).allowed

    def test_daily_limit(self):
        result = evaluate_preconditions(controls(daily_credit_limit=0.5), 0.5, self.NOON, PARIS)
        assert result.reason == "daily_limit"
        assert evaluate_preconditions(controls(daily_credit_limit=0.5), 0.49, self.NOON, PARIS).allowed

    def test_trial_expired_checked_first(self):
        result = evaluate_preconditions(
            None, 0, self.NOON, PARIS,
            subscription_status="trialing",
            trial_end=self.NOON - timedelta(days=1),
        )
        assert result.reason == "trial_expired"

    def test_trial_only_applies_while_trialing(self):
        past = self.NOON - timedelta(days=1)
        assert is_trial_expired("trialing", past, self.NOON)
        assert not is_trial_expired("active", past, self.NOON)
        assert not is_trial_expired("trialing", None, self.NOON)
        assert is_trial_expired("trialing", past.replace(tzinfo=None), self.NOON)

    @pytest.mark.parametrize("status,reason", [
        ("canceled", "subscription_inactive"),
        ("unpaid", "subscription_inactive"),
        ("past_due", None),
        ("active", None),
    ])
    def test_lapsed_subscription_blocks_children(self, status, reason):
        result = evaluate_preconditions(None, 0, self.NOON, PARIS, subscription_status=status)
        assert result.reason == reason
        assert result.allowed is (reason is None)
