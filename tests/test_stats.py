from datetime import datetime, timezone

from circle_checkin.models import CheckIn
from circle_checkin.stats import calculate_check_in_stats

# a Wednesday
NOW = datetime(2024, 5, 15, 12, 0, tzinfo=timezone.utc)


def _checkins(*days):
    return [CheckIn(id=str(i), user_id="u1", timestamp=datetime(2024, m, d, 9, 0, tzinfo=timezone.utc))
            for i, (m, d) in enumerate(days)]


def test_no_check_ins():
    stats = calculate_check_in_stats([], current_streak=2, now=NOW)
    assert stats.total_check_ins == 0
    assert stats.longest_streak == 0
    assert stats.current_streak == 2


def test_week_month_and_longest_run():
    check_ins = _checkins((5, 15), (5, 14), (5, 13), (5, 12), (5, 1), (4, 30))
    stats = calculate_check_in_stats(check_ins, current_streak=4, now=NOW)

    assert stats.total_check_ins == 6
    assert stats.this_week == 3  # Monday 13th onwards
    assert stats.this_month == 5
    assert stats.longest_streak == 4
    assert stats.current_streak == 4


def test_same_day_check_ins_count_once_for_longest_run():
    check_ins = _checkins((5, 15), (5, 14), (5, 14), (5, 10))
    stats = calculate_check_in_stats(check_ins, now=NOW)

    assert stats.total_check_ins == 4
    assert stats.this_week == 3
    assert stats.longest_streak == 2
