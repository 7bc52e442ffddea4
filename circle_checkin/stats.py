from datetime import datetime, timedelta, timezone, tzinfo
from typing import Iterable, Optional

from .models import CheckIn, CheckInStats


def calculate_check_in_stats(
    check_ins: Iterable[CheckIn],
    current_streak: int = 0,
    now: Optional[datetime] = None,
    tz: tzinfo = timezone.utc,
) -> CheckInStats:
    """Totals for this week (from Monday), this month, and the longest run of consecutive days."""
    now = (now or datetime.now(timezone.utc)).astimezone(tz)
    local_times = sorted((ci.timestamp.astimezone(tz) for ci in check_ins), reverse=True)
    if not local_times:
        return CheckInStats(current_streak=current_streak or 0)

    today = now.date()
    week_start = today - timedelta(days=today.weekday())
    month_start = today.replace(day=1)

    days = sorted({t.date() for t in local_times}, reverse=True)
    longest = run = 1
    for newer, older in zip(days, days[1:]):
        if (newer - older).days == 1:
            run += 1
        else:
            run = 1
        longest = max(longest, run)

    return CheckInStats(
        total_check_ins=len(local_times),
        this_week=sum(1 for t in local_times if t.date() >= week_start),
        this_month=sum(1 for t in local_times if t.date() >= month_start),
        current_streak=current_streak or 0,
        longest_streak=longest,
    )
