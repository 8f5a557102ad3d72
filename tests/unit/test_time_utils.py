"""
Unit Tests for Time Utilities

Run with:
    pytest tests/unit/test_time_utils.py -v
"""

from datetime import date, datetime, timezone

import pytest

from core.utils.time import (
    gregorian_to_jalali,
    hour_bucket,
    jalali_to_gregorian,
    js_weekday,
    local_date_str,
    local_day_bounds,
    local_time_str,
    parse_date,
    parse_timestamp,
    to_utc_datetime,
)


class TestTimestamps:
    """Tests for timestamp normalization"""

    def test_milliseconds_and_seconds_agree(self):
        assert to_utc_datetime(1704110400000) == to_utc_datetime(1704110400)

    def test_negative_timestamp_rejected(self):
        with pytest.raises(ValueError):
            to_utc_datetime(-1)

    def test_parse_timestamp_iso_string(self):
        parsed = parse_timestamp("2024-01-01T12:00:00Z")
        assert parsed == datetime(2024, 1, 1, 12, 0, tzinfo=timezone.utc)

    def test_parse_timestamp_digit_string(self):
        assert parse_timestamp("1704110400") == datetime(2024, 1, 1, 12, 0, tzinfo=timezone.utc)


class TestLocalTime:
    """Tests for the Asia/Tehran helpers (UTC+03:30, no DST since 2022)"""

    def test_local_date_and_time(self):
        dt = datetime(2024, 1, 1, 21, 0, tzinfo=timezone.utc)
        assert local_date_str(dt, "Asia/Tehran") == "2024-01-02"
        assert local_time_str(dt, "Asia/Tehran") == "00:30"

    def test_local_day_bounds(self):
        start, end = local_day_bounds(date(2024, 1, 2), "Asia/Tehran")
        assert start == datetime(2024, 1, 1, 20, 30, tzinfo=timezone.utc)
        assert end == datetime(2024, 1, 2, 20, 30, tzinfo=timezone.utc)

    def test_unknown_timezone(self):
        with pytest.raises(ValueError, match="Unknown timezone"):
            local_date_str(datetime(2024, 1, 1, tzinfo=timezone.utc), "Mars/Olympus")

    def test_js_weekday_sunday_is_zero(self):
        assert js_weekday(datetime(2024, 1, 7)) == 0   # Sunday
        assert js_weekday(datetime(2024, 1, 6)) == 6   # Saturday

    def test_hour_bucket(self):
        assert hour_bucket(datetime(2024, 1, 1, 12, 34, 56, tzinfo=timezone.utc)) == datetime(
            2024, 1, 1, 12, 0, tzinfo=timezone.utc
        )


class TestDateParsing:
    """Tests for Gregorian and Jalali date parsing"""

    def test_nowruz_1403(self):
        assert jalali_to_gregorian(1403, 1, 1) == date(2024, 3, 20)
        assert gregorian_to_jalali(date(2024, 3, 20)) == "1403/01/01"

    def test_parse_jalali_string(self):
        assert parse_date("1403/01/01") == date(2024, 3, 20)
        assert parse_date("1402-10-11") == date(2024, 1, 1)

    def test_parse_iso_string(self):
        assert parse_date("2024-03-20") == date(2024, 3, 20)
        assert parse_date("2024-03-20T10:00:00Z") == date(2024, 3, 20)

    def test_parse_date_objects(self):
        assert parse_date(date(2024, 3, 20)) == date(2024, 3, 20)
        assert parse_date(datetime(2024, 3, 20, 23, 0)) == date(2024, 3, 20)

    @pytest.mark.parametrize("value", ["not-a-date", "1403/13/01", "2024-02-30"])
    def test_invalid_dates(self, value):
        with pytest.raises(ValueError):
            parse_date(value)
