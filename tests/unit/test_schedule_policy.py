"""
Unit Tests for SchedulePolicy

All times below are Asia/Tehran local time (UTC+03:30).
Days: 0 = Sunday ... 6 = Saturday. Peak days Mon-Wed 08:00-14:00,
weekend Thursday/Friday.

Run with:
    pytest tests/unit/test_schedule_policy.py -v
"""

from datetime import datetime, timedelta

import pytest

from core.utils.time import ensure_utc, get_timezone
from services.schedule_policy import NORMAL_HOURS, PEAK_HOURS, WEEKEND, SchedulePolicy


TZ = "Asia/Tehran"


def tehran(year, month, day, hour, minute=0) -> datetime:
    return ensure_utc(datetime(year, month, day, hour, minute, tzinfo=get_timezone(TZ)))


@pytest.fixture
def policy():
    return SchedulePolicy(
        peak_days=[1, 2, 3],
        peak_hours_start=8,
        peak_hours_end=14,
        peak_interval=10,
        normal_days=[1, 2, 3],
        normal_interval=60,
        weekend_days=[4, 5],
        weekend_interval=120,
        tz_name=TZ,
    )


class TestIntervals:
    """Tests for get_current_interval / get_current_period"""

    @pytest.mark.parametrize(
        "at, interval, period",
        [
            (tehran(2024, 1, 1, 10), 10, PEAK_HOURS),       # Monday peak
            (tehran(2024, 1, 1, 8), 10, PEAK_HOURS),        # peak start is inclusive
            (tehran(2024, 1, 1, 14), 60, NORMAL_HOURS),     # peak end is exclusive
            (tehran(2024, 1, 1, 7, 59), 60, NORMAL_HOURS),
            (tehran(2024, 1, 3, 13, 30), 10, PEAK_HOURS),   # Wednesday
            (tehran(2024, 1, 4, 10), 120, WEEKEND),         # Thursday
            (tehran(2024, 1, 5, 23), 120, WEEKEND),         # Friday
            (tehran(2024, 1, 6, 10), 60, NORMAL_HOURS),     # Saturday
            (tehran(2024, 1, 7, 10), 60, NORMAL_HOURS),     # Sunday
        ],
    )
    def test_rules(self, policy, at, interval, period):
        assert policy.get_current_interval(at) == interval
        assert policy.get_current_period(at) == period

    def test_local_time_is_used(self, policy):
        # 05:00 UTC Monday is 08:30 in Tehran
        at = datetime(2024, 1, 1, 5, 0, tzinfo=get_timezone("UTC"))
        assert policy.is_peak_hours(at)

    def test_weekend_beats_peak(self):
        policy = SchedulePolicy(peak_days=[4], weekend_days=[4], tz_name=TZ)
        assert policy.get_current_period(tehran(2024, 1, 4, 10)) == WEEKEND

    def test_clock_is_used_by_default(self):
        policy = SchedulePolicy(tz_name=TZ, clock=lambda: tehran(2024, 1, 4, 10))
        assert policy.is_weekend()


class TestPlanning:
    """Tests for next run and period change estimates"""

    def test_next_scheduled_time(self, policy):
        at = tehran(2024, 1, 1, 10)
        assert policy.get_next_scheduled_time(at) == at + timedelta(minutes=10)

    def test_minutes_until_peak_ends(self, policy):
        assert policy.minutes_until_next_period_change(tehran(2024, 1, 1, 10)) == 240
        assert policy.minutes_until_next_period_change(tehran(2024, 1, 1, 10, 15)) == 225

    def test_minutes_until_weekend(self, policy):
        assert policy.minutes_until_next_period_change(tehran(2024, 1, 3, 15)) == 9 * 60

    def test_never_changes(self):
        policy = SchedulePolicy(weekend_days=list(range(7)), tz_name=TZ)
        assert policy.minutes_until_next_period_change(tehran(2024, 1, 1, 10)) is None

    def test_describe(self, policy):
        summary = policy.describe(tehran(2024, 1, 1, 10))
        assert summary["period"] == PEAK_HOURS
        assert summary["interval_minutes"] == 10
        assert summary["local_time"] == "2024-01-01 10:00"
        assert summary["timezone"] == TZ
