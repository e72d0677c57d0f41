"""Family plan parental controls.

Children join a family with a supervision mode derived from their age.
Before each chat request we check quiet hours, the child's daily credit
limit and whether the family trial has expired or the subscription lapsed.
"""

from dataclasses import dataclass
from datetime import date, datetime, time, timezone
from typing import Optional
from zoneinfo import ZoneInfo

MIN_CHILD_AGE = 12

DEFAULT_QUIET_HOURS_START = "22:00"
DEFAULT_QUIET_HOURS_END = "07:00"

SUPERVISION_MODES = ("guided", "trusted", "adult")

# Stripe statuses after which children can no longer chat. past_due keeps
# access while Stripe retries the payment.
LAPSED_SUBSCRIPTION_STATUSES = ("canceled", "unpaid", "incomplete_expired")

PRECONDITION_MESSAGES = {
    "quiet_hours": "Les heures calmes sont actives. Reviens plus tard !",
    "daily_limit": "Tu as atteint ta limite de crédits pour aujourd'hui.",
    "trial_expired": "La période d'essai de la famille est terminée. Demande à tes parents de s'abonner.",
    "subscription_inactive": "L'abonnement de la famille n'est plus actif. Demande à tes parents de le renouveler.",
}


@dataclass
class PreconditionResult:
    allowed: bool
    reason: Optional[str] = None

    @property
    def message(self) -> Optional[str]:
        return PRECONDITION_MESSAGES.get(self.reason) if self.reason else None


def calculate_age(birthdate: date, today: Optional[date] = None) -> int:
    today = today or date.today()
    age = today.year - birthdate.year
    if (today.month, today.day) < (birthdate.month, birthdate.day):
        age -= 1
    return age


def supervision_mode_for_age(age: int) -> Optional[str]:
    """guided for 12-14, trusted for 15-17, adult from 18. None below 12."""
    if age < MIN_CHILD_AGE:
        return None
    if age <= 14:
        return "guided"
    if age <= 17:
        return "trusted"
    return "adult"


def default_controls(mode: str) -> dict:
    """Initial parental control settings for a supervision mode."""
    return {
        "supervision_mode": mode,
        "daily_time_limit_minutes": 60 if mode == "guided" else None,
        "daily_credit_limit": 0.5 if mode == "guided" else 1.0,
        "cumulative_credits": False,
        "quiet_hours_start": DEFAULT_QUIET_HOURS_START,
        "quiet_hours_end": DEFAULT_QUIET_HOURS_END,
    }


def parse_hhmm(value: str) -> time:
    hours, minutes = value.split(":", 1)
    return time(int(hours), int(minutes))


def in_quiet_hours(current: time, start: Optional[str], end: Optional[str]) -> bool:
    """Whether `current` falls in [start, end); ranges may wrap past midnight."""
    if not start or not end:
        return False
    start_t, end_t = parse_hhmm(start), parse_hhmm(end)
    if start_t == end_t:
        return False
    if start_t < end_t:
        return start_t <= current < end_t
    return current >= start_t or current < end_t


def local_time(now: datetime, tz_name: str) -> time:
    return now.astimezone(ZoneInfo(tz_name)).time()


def is_trial_expired(subscription_status: Optional[str], trial_end: Optional[datetime], now: datetime) -> bool:
    if subscription_status != "trialing" or trial_end is None:
        return False
    if trial_end.tzinfo is None:
        trial_end = trial_end.replace(tzinfo=timezone.utc)
    return trial_end < now


def evaluate_preconditions(
    controls,
    spent_today: float,
    now: datetime,
    tz_name: str,
    subscription_status: Optional[str] = None,
    trial_end: Optional[datetime] = None,
) -> PreconditionResult:
    """
    Check a family child's chat preconditions.

    `controls` is a parental control row (or None when no controls are
    set); `spent_today` is what the child has been charged since midnight.
    """
    if is_trial_expired(subscription_status, trial_end, now):
        return PreconditionResult(False, "trial_expired")
    if subscription_status in LAPSED_SUBSCRIPTION_STATUSES:
        return PreconditionResult(False, "subscription_inactive")

    if controls is None:
        return PreconditionResult(True)

    if in_quiet_hours(local_time(now, tz_name), controls.quiet_hours_start, controls.quiet_hours_end):
        return PreconditionResult(False, "quiet_hours")

    limit = controls.daily_credit_limit
    if limit is not None and spent_today >= limit:
        return PreconditionResult(False, "daily_limit")

    return PreconditionResult(True)
