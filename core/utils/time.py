"""
Time Utilities

This module provides the time handling shared by every component:

- Normalizing epoch timestamps (seconds or milliseconds) to UTC datetimes
- Converting between UTC and the local trading timezone (Asia/Tehran by default)
- Bucketing timestamps (hour buckets for snapshots, local day bounds for OHLC)
- Parsing requested dates, including Jalali (Persian calendar) dates

All functions return timezone-aware datetimes.
"""

from datetime import date, datetime, time, timedelta, timezone, tzinfo
from typing import Tuple, Union

import jdatetime
from dateutil import parser as dateparser
from dateutil import tz


def to_utc_datetime(timestamp: Union[int, float]) -> datetime:
    """
    Convert a timestamp (seconds or milliseconds) to UTC datetime.

    Detection Logic:
        - If timestamp > 1e12: Assumed to be milliseconds
        - Otherwise: Assumed to be seconds

    Raises:
        ValueError: If timestamp is negative or invalid

    Examples:
        >>> to_utc_datetime(1704110400000)
        datetime.datetime(2024, 1, 1, 12, 0, tzinfo=datetime.timezone.utc)
        >>> to_utc_datetime(1704110400)
        datetime.datetime(2024, 1, 1, 12, 0, tzinfo=datetime.timezone.utc)
    """
    if timestamp < 0:
        raise ValueError(f"Timestamp cannot be negative: {timestamp}")

    if timestamp > 1e12:
        timestamp = timestamp / 1000.0

    try:
        return datetime.fromtimestamp(timestamp, tz=timezone.utc)
    except (OSError, OverflowError, ValueError) as e:
        raise ValueError(f"Invalid timestamp: {timestamp}. Error: {e}")


def ensure_utc(dt: datetime) -> datetime:
    """Attach UTC to naive datetimes, convert aware ones to UTC."""
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def current_utc_datetime() -> datetime:
    """Get current time as timezone-aware datetime in UTC."""
    return datetime.now(timezone.utc)


# ============================================
# Local Trading Timezone
# ============================================

def get_timezone(name: str) -> tzinfo:
    """
    Resolve an IANA timezone name.

    Raises:
        ValueError: If the name is unknown
    """
    zone = tz.gettz(name)
    if zone is None:
        raise ValueError(f"Unknown timezone: {name}")
    return zone


def to_local(dt: datetime, tz_name: str) -> datetime:
    return ensure_utc(dt).astimezone(get_timezone(tz_name))


def local_date_str(dt: datetime, tz_name: str) -> str:
    """Local calendar date of ``dt`` as YYYY-MM-DD."""
    return to_local(dt, tz_name).strftime("%Y-%m-%d")


def local_time_str(dt: datetime, tz_name: str) -> str:
    """Local wall-clock time of ``dt`` as HH:MM."""
    return to_local(dt, tz_name).strftime("%H:%M")


def js_weekday(dt: datetime) -> int:
    """Day of week with 0 = Sunday ... 6 = Saturday."""
    return (dt.weekday() + 1) % 7


def local_day_bounds(day: date, tz_name: str) -> Tuple[datetime, datetime]:
    """
    UTC instants at which a local calendar day starts and ends.

    Returns:
        (start, end) where end is the start of the next local day
    """
    zone = get_timezone(tz_name)
    start = datetime.combine(day, time.min).replace(tzinfo=zone)
    end = datetime.combine(day + timedelta(days=1), time.min).replace(tzinfo=zone)
    return start.astimezone(timezone.utc), end.astimezone(timezone.utc)


# ============================================
# Buckets
# ============================================

def hour_bucket(dt: datetime) -> datetime:
    """
    Truncate a datetime to the start of its UTC hour.

    Example:
        >>> hour_bucket(datetime(2024, 1, 1, 12, 34, 56, tzinfo=timezone.utc))
        datetime.datetime(2024, 1, 1, 12, 0, tzinfo=datetime.timezone.utc)
    """
    return ensure_utc(dt).replace(minute=0, second=0, microsecond=0)


# ============================================
# Date Parsing (Gregorian and Jalali)
# ============================================

def jalali_to_gregorian(year: int, month: int, day: int) -> date:
    """
    Convert a Jalali (Solar Hijri) date to its Gregorian equivalent.

    Example:
        >>> jalali_to_gregorian(1403, 1, 1)
        datetime.date(2024, 3, 20)
    """
    return jdatetime.date(year, month, day).togregorian()


def gregorian_to_jalali(day: date) -> str:
    """
    Format a Gregorian date as a Jalali YYYY/MM/DD string.

    Example:
        >>> gregorian_to_jalali(date(2024, 3, 20))
        '1403/01/01'
    """
    return jdatetime.date.fromgregorian(date=day).strftime("%Y/%m/%d")


def parse_date(value: Union[str, date, datetime]) -> date:
    """
    Parse a requested calendar date.

    Accepts date/datetime objects, ISO strings ("2024-03-20",
    "2024-03-20T10:00:00Z") and Jalali strings ("1403/01/01" or
    "1403-01-01"). A year below 1700 marks a Jalali date.

    Raises:
        ValueError: If the value cannot be parsed
    """
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value

    text = value.strip()
    parts = text.replace("/", "-").split("-")
    if len(parts) == 3 and all(p.isdigit() for p in parts) and int(parts[0]) < 1700:
        try:
            return jalali_to_gregorian(int(parts[0]), int(parts[1]), int(parts[2]))
        except ValueError as e:
            raise ValueError(f"Invalid Jalali date: {value}. Error: {e}")

    try:
        return dateparser.isoparse(text).date()
    except ValueError as e:
        raise ValueError(f"Invalid date: {value}. Error: {e}")


def parse_timestamp(value: Union[str, int, float, datetime]) -> datetime:
    """
    Normalize a provider timestamp (ISO string, epoch seconds/ms, datetime)
    to an aware UTC datetime.
    """
    if isinstance(value, datetime):
        return ensure_utc(value)
    if isinstance(value, (int, float)):
        return to_utc_datetime(value)
    text = str(value).strip()
    if text.isdigit():
        return to_utc_datetime(int(text))
    return ensure_utc(dateparser.isoparse(text))
