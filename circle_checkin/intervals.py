"""Minimum gap between check-ins for each cadence, and the wait messages shown to users."""
import math
from datetime import datetime, timezone, tzinfo
from typing import NamedTuple, Optional

from .models import Cadence

CADENCE_HOURS = {
    Cadence.HOURLY: 1,
    Cadence.TWICE_DAILY: 12,
    Cadence.DAILY: 24,
    Cadence.WEEKLY: 168,
}
DEFAULT_CUSTOM_HOURS = 24
MIN_CUSTOM_HOURS = 1
MAX_CUSTOM_HOURS = 168


class IntervalDecision(NamedTuple):
    allowed: bool
    wait_reason: Optional[str] = None


def as_cadence(value) -> Cadence:
    """Coerce stored cadence values; anything unknown behaves as daily."""
    if isinstance(value, Cadence):
        return value
    try:
        return Cadence(value)
    except ValueError:
        return Cadence.DAILY


def required_hours(cadence, custom_hours: Optional[int] = None) -> int:
    cadence = as_cadence(cadence)
    if cadence is Cadence.CUSTOM:
        if not custom_hours:
            return DEFAULT_CUSTOM_HOURS
        return max(MIN_CUSTOM_HOURS, min(MAX_CUSTOM_HOURS, int(custom_hours)))
    return CADENCE_HOURS[cadence]


def _plural(count: int, unit: str) -> str:
    return f"{count} {unit}{'' if count == 1 else 's'}"


def wait_message(cadence, hours_required: int, hours_remaining: float) -> str:
    cadence = as_cadence(cadence)
    minutes = math.ceil(hours_remaining * 60)
    hours = math.ceil(hours_remaining)

    if cadence is Cadence.HOURLY or hours_required <= 1 or hours_remaining < 1:
        return f"Please wait {_plural(minutes, 'more minute')} before checking in again."
    if cadence is Cadence.TWICE_DAILY:
        return f"Please wait {_plural(hours, 'more hour')} before checking in again."
    return f"You've already checked in. Next check-in available in {_plural(hours, 'hour')}."


def can_check_in(
    last_check_in: Optional[datetime],
    cadence=Cadence.DAILY,
    custom_hours: Optional[int] = None,
    now: Optional[datetime] = None,
) -> IntervalDecision:
    """
    Decide whether a new check-in is allowed at `now`.

    Elapsed time is measured exactly (not in whole hours), so a check-in becomes
    allowed the moment the full gap has passed.
    """
    if last_check_in is None:
        return IntervalDecision(True)

    now = now or datetime.now(timezone.utc)
    hours_required = required_hours(cadence, custom_hours)
    hours_elapsed = (now - last_check_in).total_seconds() / 3600

    if hours_elapsed >= hours_required:
        return IntervalDecision(True)

    reason = wait_message(cadence, hours_required, hours_required - hours_elapsed)
    return IntervalDecision(False, reason)


def is_within_interval(
    check_in_time: datetime,
    cadence=Cadence.DAILY,
    reference: Optional[datetime] = None,
    custom_hours: Optional[int] = None,
    tz: tzinfo = timezone.utc,
) -> bool:
    """True when `check_in_time` still covers the cadence period that contains `reference`."""
    cadence = as_cadence(cadence)
    reference = reference or datetime.now(timezone.utc)

    if cadence is Cadence.DAILY:
        return check_in_time.astimezone(tz).date() == reference.astimezone(tz).date()
    if cadence is Cadence.WEEKLY:
        days = (reference.astimezone(tz).date() - check_in_time.astimezone(tz).date()).days
        return days < 7

    hours_elapsed = (reference - check_in_time).total_seconds() / 3600
    return hours_elapsed < required_hours(cadence, custom_hours)
