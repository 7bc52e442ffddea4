from datetime import datetime, timedelta, timezone
from zoneinfo import ZoneInfo

from circle_checkin.models import Cadence
from circle_checkin.streaks import calendar_day_difference, next_streak

NOW = datetime(2024, 5, 14, 12, 0, tzinfo=timezone.utc)


def test_first_check_in_starts_streak():
    assert next_streak(None, NOW, Cadence.DAILY, 0) == 1


def test_daily_streak():
    assert next_streak(NOW - timedelta(days=1), NOW, Cadence.DAILY, 4) == 5
    assert next_streak(NOW - timedelta(hours=2), NOW, Cadence.DAILY, 4) == 4
    assert next_streak(NOW - timedelta(days=2), NOW, Cadence.DAILY, 4) == 1


def test_weekly_streak_counts_elapsed_days():
    assert next_streak(NOW - timedelta(days=3), NOW, Cadence.WEEKLY, 2) == 3
    assert next_streak(NOW - timedelta(days=7), NOW, Cadence.WEEKLY, 2) == 3
    assert next_streak(NOW - timedelta(days=8), NOW, Cadence.WEEKLY, 2) == 1


def test_hourly_streak_counts_days_not_hours():
    assert next_streak(NOW - timedelta(hours=1), NOW, Cadence.HOURLY, 3) == 3
    assert next_streak(NOW - timedelta(days=1), NOW, Cadence.HOURLY, 3) == 4


def test_check_in_before_previous_keeps_streak():
    assert next_streak(NOW + timedelta(days=1), NOW, Cadence.DAILY, 6) == 6


def test_day_boundary_follows_time_zone():
    earlier = datetime(2024, 5, 14, 23, 30, tzinfo=timezone.utc)
    later = datetime(2024, 5, 15, 0, 30, tzinfo=timezone.utc)
    new_york = ZoneInfo("America/New_York")

    assert calendar_day_difference(earlier, later) == 1
    assert calendar_day_difference(earlier, later, new_york) == 0
    assert next_streak(earlier, later, Cadence.DAILY, 2) == 3
    assert next_streak(earlier, later, Cadence.DAILY, 2, new_york) == 2
