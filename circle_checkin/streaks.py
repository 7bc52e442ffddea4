"""Streak arithmetic. Streaks count calendar days, whatever the cadence."""
from datetime import datetime, timezone, tzinfo
from typing import Optional

from .intervals import as_cadence
from .models import Cadence


def calendar_day_difference(earlier: datetime, later: datetime, tz: tzinfo = timezone.utc) -> int:
    return (later.astimezone(tz).date() - earlier.astimezone(tz).date()).days


def next_streak(
    previous_check_in: Optional[datetime],
    now: datetime,
    cadence,
    current_streak: int,
    tz: tzinfo = timezone.utc,
) -> int:
    """
    Streak value after a check-in at `now`.

    - first ever check-in starts at 1
    - daily: next calendar day increments, a gap resets, same day keeps
    - weekly: 1..7 days later increments (elapsed days, not calendar weeks),
      same day keeps, more than 7 resets
    - hourly / twice-daily / custom: same day keeps, next day increments,
      anything else resets
    """
    if previous_check_in is None:
        return 1

    cadence = as_cadence(cadence)
    days = calendar_day_difference(previous_check_in, now, tz)

    # clock skew: never punish or reward a check-in that lands before the last one
    if days <= 0:
        return current_streak

    if cadence is Cadence.WEEKLY:
        return current_streak + 1 if days <= 7 else 1

    return current_streak + 1 if days == 1 else 1
