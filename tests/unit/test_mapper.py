"""
Unit Tests for the Vendor Payload Mapper

Run with:
    pytest tests/unit/test_mapper.py -v
"""

from datetime import datetime, timezone

import pytest

from core.error_tracker import ErrorTracker
from core.errors import CircuitBreakerError, MappingError, ValidationError
from providers.mapper import FieldMapper, parse_number


@pytest.fixture
def mapper():
    return FieldMapper(multipliers={"SEKKEH": 1000}, error_tracker=ErrorTracker(threshold=3))


class TestParseNumber:
    """Tests for vendor number parsing"""

    @pytest.mark.parametrize(
        "raw, expected",
        [
            (615000, 615000.0),
            ("615,000", 615000.0),
            ("۶۱۵۰۰۰", 615000.0),
            (" 12.5 ", 12.5),
        ],
    )
    def test_numeric_formats(self, raw, expected):
        assert parse_number(raw) == expected

    def test_empty_is_none(self):
        assert parse_number("") is None
        assert parse_number(None) is None

    @pytest.mark.parametrize("raw", ["abc", "nan", True])
    def test_invalid_numbers(self, raw):
        with pytest.raises(MappingError):
            parse_number(raw)


class TestMapItem:
    """Tests for single-record mapping"""

    def test_aliases_resolved(self, mapper):
        item = mapper.map_item(
            {"key": "usd_sell", "title": "US Dollar", "value": "615,000", "d": "-500", "timestamp": 1704110400}
        )
        assert item.code == "USD_SELL"
        assert item.name == "US Dollar"
        assert item.price == 615000.0
        assert item.change == -500.0
        assert item.updated_at == datetime(2024, 1, 1, 12, 0, tzinfo=timezone.utc)

    def test_multiplier_applied(self, mapper):
        item = mapper.map_item({"code": "SEKKEH", "price": 42500, "high": 43000})
        assert item.price == 42_500_000
        assert item.high == 43_000_000

    def test_multiplier_not_applied_to_other_codes(self, mapper):
        assert mapper.map_item({"code": "EUR", "price": 700000}).price == 700000

    def test_missing_price(self, mapper):
        with pytest.raises(MappingError, match="no price"):
            mapper.map_item({"code": "EUR"})

    def test_missing_code(self, mapper):
        with pytest.raises(MappingError, match="no code"):
            mapper.map_item({"price": 1})

    def test_negative_price_rejected(self, mapper):
        with pytest.raises(MappingError, match="failed validation"):
            mapper.map_item({"code": "EUR", "price": -1})


class TestMapItems:
    """Tests for whole-payload mapping"""

    def test_wrapped_payload(self, mapper):
        items = mapper.map_items("currencies", {"data": [{"code": "EUR", "price": 1}, {"code": "GBP", "price": 2}]})
        assert [i.code for i in items] == ["EUR", "GBP"]

    def test_bad_records_skipped_and_tracked(self, mapper):
        items = mapper.map_items("gold", [{"code": "NIM", "price": 1}, {"code": "ROB"}])
        assert [i.code for i in items] == ["NIM"]
        # A successful batch resets the context
        assert mapper.error_tracker.get_error_count("mapping:gold") == 0

    def test_unknown_shape_raises_validation_error(self, mapper):
        with pytest.raises(ValidationError) as exc_info:
            mapper.map_items("gold", {"message": "maintenance"})
        assert "message" in exc_info.value.payload_shape

    def test_repeated_failures_trip_breaker(self, mapper):
        with pytest.raises(CircuitBreakerError):
            mapper.map_items("coins", [{"code": "A"}, {"code": "B"}, {"code": "C"}])
