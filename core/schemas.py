"""
Normalized Data Schemas

This module defines Pydantic models for every record the pipeline produces,
stores, or exchanges with its collaborators.

Key Principle:
    Regardless of which provider the data comes from, it gets normalized into
    these standardized schemas. Caches, OHLC records and API responses only
    ever hold these shapes.

Models:
    - Item: Canonical upstream item (what a provider returns after mapping)
    - PriceItem: A single cached price for one item code
    - CacheEntry: One tier (fresh/stale/archived) of a category's prices
    - PermanentSnapshot: Hourly, never-deleted copy of a category's prices
    - OHLCRecord: Open/High/Low/Close summary for one item and one period
    - UpdateLog: Audit record written for every OHLC write job
    - ProviderRegistration: A registered provider plus its routing metadata
    - ApiResponse / ResponseMetadata: What readers of the cache receive

All timestamps are timezone-aware UTC datetimes.
"""

from datetime import datetime, timezone
from typing import Any, Dict, List, Literal, Optional, Set
from pydantic import BaseModel, Field, field_validator, model_validator, ConfigDict


DataType = Literal["currencies", "crypto", "gold", "coins", "all"]
CacheTier = Literal["fresh", "stale", "archived"]
Timeframe = Literal["minute", "day", "week", "month"]
UpdateType = Literal["backfill", "realtime", "correction", "aggregation"]
UpdateStatus = Literal["success", "partial", "failed"]
ResponseSource = Literal["cache", "api", "fallback", "snapshot", "ohlc"]
MergeStrategy = Literal["override", "newest", "average"]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ============================================
# Upstream Items
# ============================================

class Item(BaseModel):
    """
    Canonical market item returned by a provider.

    Only ``code``, ``name``, ``price`` and ``updated_at`` are required. The
    optional numeric fields are the ones the ``average`` merge strategy knows
    how to combine. Vendor-specific extras are kept (``extra="allow"``).

    Example:
        >>> Item(code="USD_SELL", name="US Dollar", price=615000,
        ...      updated_at=datetime(2024, 1, 1, tzinfo=timezone.utc))
    """

    code: str = Field(..., description="Item code in uppercase", examples=["USD_SELL", "BTC", "SEKKEH"])
    name: str = Field(default="", description="Display name")
    price: float = Field(..., ge=0, description="Current price")
    updated_at: datetime = Field(..., description="When the provider last updated this item")

    price_irt: Optional[float] = None
    change: Optional[float] = None
    change_percent: Optional[float] = None
    change_1h: Optional[float] = None
    change_24h: Optional[float] = None
    change_7d: Optional[float] = None
    high: Optional[float] = None
    low: Optional[float] = None
    high_24h: Optional[float] = None
    low_24h: Optional[float] = None
    market_cap: Optional[float] = None
    volume_24h: Optional[float] = None

    model_config = ConfigDict(extra="allow")

    @field_validator("code")
    @classmethod
    def validate_code(cls, v: str) -> str:
        """Ensure item code is uppercase and non-empty"""
        v = v.strip().upper()
        if not v:
            raise ValueError("Item code cannot be empty")
        return v


# Numeric fields combined by the "average" merge strategy
AVERAGE_FIELDS = (
    "price",
    "price_irt",
    "change",
    "change_percent",
    "change_1h",
    "change_24h",
    "change_7d",
    "high",
    "low",
    "high_24h",
    "low_24h",
    "market_cap",
    "volume_24h",
)


class FetchParams(BaseModel):
    """Optional pagination/format parameters forwarded to providers."""

    limit: Optional[int] = Field(default=None, ge=1)
    page: Optional[int] = Field(default=None, ge=1)
    format: Optional[str] = None

    def as_query(self) -> Dict[str, Any]:
        return self.model_dump(exclude_none=True)


class ProviderMetadata(BaseModel):
    name: str
    version: str = "1.0"
    base_url: str
    requires_auth: bool = True
    rate_limit_per_second: float


class RateLimitStatus(BaseModel):
    remaining: int
    reset: datetime
    total: int


# ============================================
# Cache Records
# ============================================

class PriceItem(BaseModel):
    """
    A single cached price.

    Attributes:
        value: Price (never negative)
        change: Signed change since the previous close, if known
        captured_at_utc: When the pipeline captured this price
        local_date: Capture date in the local trading timezone (YYYY-MM-DD)
        local_time: Capture time in the local trading timezone (HH:MM)
    """

    value: float = Field(..., ge=0, description="Price value")
    change: Optional[float] = Field(default=None, description="Signed delta")
    name: Optional[str] = None
    captured_at_utc: datetime
    local_date: str
    local_time: str


class CacheEntry(BaseModel):
    """
    One cache tier for one category.

    At most one ``fresh`` and one ``stale`` entry exist per category; they are
    written by atomic upsert on (category, tier). ``archived`` entries are
    append-only.
    """

    category: str
    tier: CacheTier
    payload: Dict[str, PriceItem] = Field(default_factory=dict)
    captured_at: datetime = Field(default_factory=_utcnow)
    expires_at: Optional[datetime] = None
    is_fallback: bool = False
    last_error: Optional[str] = None
    error_count: int = Field(default=0, ge=0)
    source: Optional[str] = Field(default=None, description="Provider that produced the payload")

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        if self.expires_at is None:
            return False
        return (now or _utcnow()) >= self.expires_at


class PermanentSnapshot(BaseModel):
    """Hourly copy of a category's prices. Never deleted, one per hour bucket."""

    category: str
    payload: Dict[str, PriceItem] = Field(default_factory=dict)
    hour_bucket: datetime
    source: str = "api"
    created_at: datetime = Field(default_factory=_utcnow)


# ============================================
# OHLC Records
# ============================================

class IntradayPoint(BaseModel):
    time: str = Field(..., description="Local time HH:MM")
    price: float = Field(..., ge=0)


class OHLCRecord(BaseModel):
    """
    Open-High-Low-Close summary for one item over one period.

    Minute-timeframe records are the live intraday records: one per item and
    local date, updated on every recorded price and carrying a ring buffer of
    recent points for charting. Day records are derived from them exactly once
    and are authoritative afterwards. Week/Month records are rollups of Day
    records.

    Example:
        >>> OHLCRecord(item_code="USD_SELL", timeframe="day", open=100, high=105,
        ...            low=95, close=102, period_start=..., period_end=...,
        ...            data_point_count=4)
    """

    item_code: str
    timeframe: Timeframe
    open: float = Field(..., ge=0)
    high: float = Field(..., ge=0)
    low: float = Field(..., ge=0)
    close: float = Field(..., ge=0)
    period_start: datetime
    period_end: datetime
    data_point_count: int = Field(default=1, ge=0)

    # Intraday-only fields
    local_date: Optional[str] = None
    points: List[IntradayPoint] = Field(default_factory=list)
    update_count: int = Field(default=0, ge=0)
    first_update: Optional[datetime] = None
    last_update: Optional[datetime] = None

    @model_validator(mode="after")
    def check_consistency(self) -> "OHLCRecord":
        validate_ohlc_consistency(self)
        return self

    @property
    def key(self) -> tuple:
        return (self.item_code, self.timeframe, self.period_start)


class UpdateLog(BaseModel):
    """Audit record for an OHLC write job."""

    item_code: str
    item_type: Optional[str] = None
    timeframe: Timeframe
    window_start: datetime
    window_end: datetime
    update_type: UpdateType
    records_affected: int = Field(default=0, ge=0)
    status: UpdateStatus
    duration_ms: int = Field(default=0, ge=0)
    error_details: Optional[str] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=_utcnow)


# ============================================
# Providers
# ============================================

class ProviderRegistration(BaseModel):
    """
    A provider registered with the orchestrator.

    Lives in memory only and is rebuilt at startup.
    """

    name: str
    priority: int = 10
    capabilities: Set[str] = Field(default_factory=lambda: {"all"})
    enabled: bool = True
    provider: Any = Field(default=None, exclude=True)

    model_config = ConfigDict(arbitrary_types_allowed=True)

    def supports(self, data_type: str) -> bool:
        return data_type in self.capabilities or "all" in self.capabilities


class FallbackResult(BaseModel):
    data: Any
    used_fallback: bool = False
    attempts: int = 0
    errors: Dict[str, str] = Field(default_factory=dict)
    primary_provider: Optional[str] = None
    fallback_provider: Optional[str] = None
    duration_ms: int = 0


# ============================================
# Responses
# ============================================

class Completeness(BaseModel):
    success_count: int
    total_count: int
    percentage: float


class ResponseMetadata(BaseModel):
    source: ResponseSource
    is_fresh: bool = False
    is_stale: bool = False
    data_age: Optional[int] = Field(default=None, description="Age of the data in minutes")
    last_updated: Optional[datetime] = None
    warning: Optional[str] = None
    is_historical: bool = False
    historical_date: Optional[str] = None
    historical_date_jalali: Optional[str] = Field(default=None, description="Jalali form, YYYY/MM/DD")
    completeness: Optional[Completeness] = None
    provider: Optional[str] = None


class ApiResponse(BaseModel):
    data: Dict[str, PriceItem]
    metadata: ResponseMetadata


class RefreshResult(BaseModel):
    success: bool
    error: Optional[str] = None


# ============================================
# Category Catalogue
# ============================================

CATEGORY_ITEM_CODES: Dict[str, List[str]] = {
    "currencies": [
        "USD_SELL", "USD_BUY", "EUR", "GBP", "CAD", "AUD", "AED", "AED_SELL",
        "DIRHAM_DUBAI", "CNY", "TRY", "CHF", "JPY", "RUB", "INR", "PKR",
        "IQD", "KWD", "SAR", "QAR", "OMR", "BHD",
    ],
    "crypto": ["USDT", "BTC", "ETH", "BNB", "XRP", "ADA", "DOGE", "SOL", "MATIC", "DOT", "LTC"],
    "gold": ["SEKKEH", "BAHAR", "NIM", "ROB", "GERAMI", "18AYAR", "ABSHODEH"],
    "coins": ["SEKKEH", "BAHAR", "NIM", "ROB", "GERAMI"],
}


# ============================================
# Helper Functions
# ============================================

def validate_ohlc_consistency(record: OHLCRecord) -> bool:
    """
    Validate that an OHLC record is logically consistent.

    Checks:
        - high >= low
        - high >= open and close
        - low <= open and close

    Raises:
        ValueError: If data is inconsistent
    """
    if record.high < record.low:
        raise ValueError(f"High ({record.high}) cannot be less than Low ({record.low})")

    if record.high < record.open or record.high < record.close:
        raise ValueError(f"High ({record.high}) must be >= Open ({record.open}) and Close ({record.close})")

    if record.low > record.open or record.low > record.close:
        raise ValueError(f"Low ({record.low}) must be <= Open ({record.open}) and Close ({record.close})")

    return True
