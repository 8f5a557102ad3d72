"""
Vendor Payload Mapper

Turns vendor-specific records into canonical ``Item`` objects. The core of
the pipeline never sees vendor field names: providers hand raw payloads to a
``Mapper`` and get ``Item`` lists back.

FieldMapper is driven entirely by configuration:
    - aliases: canonical field -> vendor keys to try, in order
    - multipliers: item code -> factor applied to price-like fields
      (the default vendor reports gold coins in thousands)

Mapping failures raise ``MappingError`` per record; they are fed into the
error tracker under ``mapping:<category>`` and the record is skipped. When a
category keeps failing, the tracker raises ``CircuitBreakerError`` and the
whole fetch fails, which lets the orchestrator fall back to another provider.
"""

import math
from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional, Sequence

from pydantic import ValidationError as PydanticValidationError

from core.error_tracker import ErrorTracker
from core.errors import MappingError, ValidationError
from core.logging import get_logger
from core.schemas import Item
from core.utils.time import current_utc_datetime, parse_timestamp


DEFAULT_ALIASES: Dict[str, Sequence[str]] = {
    "code": ("code", "key", "symbol", "slug"),
    "name": ("name", "title", "fa_name", "label"),
    "price": ("price", "value", "p", "close", "last"),
    "updated_at": ("updated_at", "updatedAt", "timestamp", "time", "date"),
    "change": ("change", "d"),
    "change_percent": ("change_percent", "changePercent", "dp"),
    "change_1h": ("change_1h", "percent_change_1h"),
    "change_24h": ("change_24h", "percent_change_24h"),
    "change_7d": ("change_7d", "percent_change_7d"),
    "high": ("high", "h", "max"),
    "low": ("low", "l", "min"),
    "high_24h": ("high_24h",),
    "low_24h": ("low_24h",),
    "market_cap": ("market_cap", "marketCap"),
    "volume_24h": ("volume_24h", "volume"),
    "price_irt": ("price_irt", "priceIrt", "irt"),
}

SCALED_FIELDS = ("price", "high", "low", "high_24h", "low_24h", "price_irt")

PAYLOAD_LIST_KEYS = ("data", "result", "items")

_PERSIAN_DIGITS = str.maketrans("۰۱۲۳۴۵۶۷۸۹٠١٢٣٤٥٦٧٨٩", "01234567890123456789")


def parse_number(value: Any) -> Optional[float]:
    """
    Parse a vendor number: ints/floats, "615,000", Persian digits.

    Returns:
        float, or None if the value is empty

    Raises:
        MappingError: If the value is not numeric
    """
    if value is None or value == "":
        return None
    if isinstance(value, bool):
        raise MappingError(f"Boolean is not a number: {value}")
    if isinstance(value, (int, float)):
        number = float(value)
    else:
        text = str(value).translate(_PERSIAN_DIGITS).replace(",", "").replace("٬", "").strip()
        try:
            number = float(text)
        except ValueError:
            raise MappingError(f"Not a number: {value!r}")
    if math.isnan(number) or math.isinf(number):
        raise MappingError(f"Not a finite number: {value!r}")
    return number


class Mapper(ABC):
    """Contract between providers and the vendor normalization layer."""

    @abstractmethod
    def map_item(self, raw: Dict[str, Any]) -> Item:
        ...

    @abstractmethod
    def map_items(self, category: str, payload: Any) -> List[Item]:
        ...


class FieldMapper(Mapper):
    """
    Alias-table mapper with per-code multipliers.

    Args:
        aliases: Overrides merged over DEFAULT_ALIASES
        multipliers: Item code -> factor (e.g. {"SEKKEH": 1000})
        error_tracker: Tracker fed with mapping failures
    """

    def __init__(
        self,
        aliases: Optional[Dict[str, Sequence[str]]] = None,
        multipliers: Optional[Dict[str, float]] = None,
        error_tracker: Optional[ErrorTracker] = None,
    ) -> None:
        self.aliases = {**DEFAULT_ALIASES, **(aliases or {})}
        self.multipliers = {k.upper(): v for k, v in (multipliers or {}).items()}
        self.error_tracker = error_tracker or ErrorTracker()
        self._logger = get_logger(__name__)

    def _pick(self, raw: Dict[str, Any], field: str) -> Any:
        for key in self.aliases.get(field, (field,)):
            if key in raw and raw[key] not in (None, ""):
                return raw[key]
        return None

    def map_item(self, raw: Dict[str, Any]) -> Item:
        """
        Map one vendor record.

        Raises:
            MappingError: Missing code/price, non-numeric values, or a record
                that fails Item validation
        """
        if not isinstance(raw, dict):
            raise MappingError(f"Expected an object, got {type(raw).__name__}")

        code = self._pick(raw, "code")
        if code is None:
            raise MappingError(f"Record has no code: keys={sorted(raw)[:10]}")
        code = str(code).strip().upper()

        fields: Dict[str, Any] = {"code": code}
        for field in self.aliases:
            if field in ("code", "name", "updated_at"):
                continue
            value = self._pick(raw, field)
            if value is not None:
                fields[field] = parse_number(value)

        if fields.get("price") is None:
            raise MappingError(f"Record {code} has no price")

        factor = self.multipliers.get(code)
        if factor:
            for field in SCALED_FIELDS:
                if fields.get(field) is not None:
                    fields[field] = fields[field] * factor

        name = self._pick(raw, "name")
        fields["name"] = str(name) if name is not None else code

        updated = self._pick(raw, "updated_at")
        try:
            fields["updated_at"] = parse_timestamp(updated) if updated is not None else current_utc_datetime()
        except (ValueError, OverflowError) as e:
            raise MappingError(f"Record {code} has an invalid timestamp {updated!r}: {e}")

        try:
            return Item(**fields)
        except PydanticValidationError as e:
            raise MappingError(f"Record {code} failed validation: {e.error_count()} error(s)")

    def map_items(self, category: str, payload: Any) -> List[Item]:
        """
        Map a whole vendor payload for ``category``.

        Accepts a list of records or an object wrapping one under
        "data"/"result"/"items". Records that fail to map are skipped and
        tracked.

        Raises:
            ValidationError: The payload has no recognizable record list
            CircuitBreakerError: Too many mapping failures for this category
        """
        records = payload
        if isinstance(payload, dict):
            for key in PAYLOAD_LIST_KEYS:
                if isinstance(payload.get(key), list):
                    records = payload[key]
                    break
        if not isinstance(records, list):
            shape = type(payload).__name__
            if isinstance(payload, dict):
                shape = f"dict(keys={sorted(payload)[:10]})"
            self._logger.error(f"Unexpected {category} payload shape: {shape}")
            raise ValidationError(f"Unexpected payload for {category}", payload_shape=shape)

        context = f"mapping:{category}"
        items: List[Item] = []
        for raw in records:
            try:
                items.append(self.map_item(raw))
            except MappingError as e:
                self._logger.warning(f"Skipping unmappable {category} record: {e}")
                self.error_tracker.track_error(context, e)

        if items:
            self.error_tracker.reset_error(context)
        return items
