"""
Schedule Policy

Decides how often the scheduler refreshes market data, based on the local
day of week and hour (Asia/Tehran by default):

    Weekend days                          -> weekend interval (120 min)
    Peak days, peak_start <= hour < end   -> peak interval    (10 min)
    Anything else                         -> normal interval  (60 min)

Days are numbered 0 = Sunday ... 6 = Saturday. All values come from
``settings`` and can be overridden through environment variables.
"""

from datetime import datetime, timedelta
from typing import Callable, List, Optional

from core.config import settings
from core.utils.time import current_utc_datetime, js_weekday, to_local


WEEKEND = "Weekend"
PEAK_HOURS = "Peak Hours"
NORMAL_HOURS = "Normal Hours"


class SchedulePolicy:
    """Maps a point in time to a refresh interval."""

    def __init__(
        self,
        peak_days: Optional[List[int]] = None,
        peak_hours_start: Optional[int] = None,
        peak_hours_end: Optional[int] = None,
        peak_interval: Optional[int] = None,
        normal_days: Optional[List[int]] = None,
        normal_interval: Optional[int] = None,
        weekend_days: Optional[List[int]] = None,
        weekend_interval: Optional[int] = None,
        tz_name: Optional[str] = None,
        clock: Callable[[], datetime] = current_utc_datetime,
    ) -> None:
        self.peak_days = peak_days if peak_days is not None else settings.peak_days_list
        self.peak_hours_start = peak_hours_start if peak_hours_start is not None else settings.schedule_peak_hours_start
        self.peak_hours_end = peak_hours_end if peak_hours_end is not None else settings.schedule_peak_hours_end
        self.peak_interval = peak_interval or settings.schedule_peak_interval
        self.normal_days = normal_days if normal_days is not None else settings.normal_days_list
        self.normal_interval = normal_interval or settings.schedule_normal_interval
        self.weekend_days = weekend_days if weekend_days is not None else settings.weekend_days_list
        self.weekend_interval = weekend_interval or settings.schedule_weekend_interval
        self.tz_name = tz_name or settings.local_timezone
        self._clock = clock

    def _local(self, at: Optional[datetime]) -> datetime:
        return to_local(at or self._clock(), self.tz_name)

    def is_weekend(self, at: Optional[datetime] = None) -> bool:
        return js_weekday(self._local(at)) in self.weekend_days

    def is_peak_hours(self, at: Optional[datetime] = None) -> bool:
        local = self._local(at)
        return (
            js_weekday(local) in self.peak_days
            and self.peak_hours_start <= local.hour < self.peak_hours_end
        )

    def get_current_period(self, at: Optional[datetime] = None) -> str:
        if self.is_weekend(at):
            return WEEKEND
        if self.is_peak_hours(at):
            return PEAK_HOURS
        return NORMAL_HOURS

    def get_current_interval(self, at: Optional[datetime] = None) -> int:
        """
        Refresh interval in minutes for ``at`` (default: now).

        Example:
            >>> policy.get_current_interval()   # Monday 10:00 Tehran
            10
        """
        period = self.get_current_period(at)
        if period == WEEKEND:
            return self.weekend_interval
        if period == PEAK_HOURS:
            return self.peak_interval
        return self.normal_interval

    def get_next_scheduled_time(self, at: Optional[datetime] = None) -> datetime:
        now = at or self._clock()
        return now + timedelta(minutes=self.get_current_interval(now))

    def minutes_until_next_period_change(self, at: Optional[datetime] = None) -> Optional[int]:
        """
        Minutes until the period label next changes, scanning hour boundaries
        up to eight days ahead. None if the period never changes.
        """
        now = at or self._clock()
        current = self.get_current_period(now)
        local = self._local(now)
        boundary = local.replace(minute=0, second=0, microsecond=0) + timedelta(hours=1)
        for _ in range(24 * 8):
            if self.get_current_period(boundary) != current:
                return max(0, int((boundary - local).total_seconds() // 60))
            boundary += timedelta(hours=1)
        return None

    def describe(self, at: Optional[datetime] = None) -> dict:
        now = at or self._clock()
        return {
            "period": self.get_current_period(now),
            "interval_minutes": self.get_current_interval(now),
            "next_scheduled_time": self.get_next_scheduled_time(now),
            "minutes_until_period_change": self.minutes_until_next_period_change(now),
            "local_time": self._local(now).strftime("%Y-%m-%d %H:%M"),
            "timezone": self.tz_name,
        }
