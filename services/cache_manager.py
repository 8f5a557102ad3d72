"""
Tiered Cache Manager

Serves market data for a category from the best source available:

    1. Fresh tier   (TTL ``fresh_cache_ttl_minutes``, default 5 min)
    2. Live fetch   through the provider orchestrator
    3. Stale tier   (TTL ``stale_cache_ttl_hours``, default 168 h), flagged
                    with a warning explaining why live data is missing
    4. NoDataAvailable

Every successful fetch is written to the fresh and stale tiers (atomic upsert
per (category, tier)), to the hourly permanent snapshot, and to the OHLC
engine. Write failures are logged; they never fail the read that triggered
them.

History is served from OHLC records (``read_historical``) or, for the
previous day, from the closest permanent snapshot (``read_yesterday``).

Usage:
    cache = TieredCacheManager(orchestrator, repository, snapshots, ohlc)
    response = await cache.read("gold")
    response.metadata.source   # "cache" | "api" | "fallback"
"""

from datetime import date, datetime, timedelta
from typing import Any, Callable, Dict, List, Optional, Tuple, Union

from core.config import VALID_CATEGORIES, settings
from core.errors import AllProvidersFailedError, AuthError, NoDataAvailable, UpstreamError
from core.logging import get_logger
from core.schemas import (
    CATEGORY_ITEM_CODES,
    ApiResponse,
    CacheEntry,
    CacheTier,
    Completeness,
    Item,
    PriceItem,
    RefreshResult,
    ResponseMetadata,
)
from core.utils.time import (
    current_utc_datetime,
    gregorian_to_jalali,
    local_date_str,
    local_time_str,
    parse_date,
    to_local,
)
from services.ohlc_engine import OHLCEngine
from services.orchestrator import ProviderOrchestrator
from services.snapshots import SnapshotService
from storage.repository import Repository


CACHE_ENTRIES = "cache_entries"
AUTH_KEYWORDS = ("token", "unauthorized", "api key", "authentication")

AUTH_WARNING = "API token expired. Showing data from {age} ago."
UNAVAILABLE_WARNING = "API temporarily unavailable. Showing data from {age} ago."
AUTH_NO_DATA = "API authentication failed and no cached data is available. Please check the API token."
UNAVAILABLE_NO_DATA = "Market data is temporarily unavailable and no cached data exists. Please try again later."


def is_auth_error(error: BaseException) -> bool:
    """
    True if ``error`` (or any provider error inside it) is a credential failure.

    Matches AuthError, HTTP 401/403, or a message mentioning a token,
    unauthorized access, an API key or authentication.
    """
    candidates: List[BaseException] = [error]
    if isinstance(error, AllProvidersFailedError):
        candidates.extend(err for _, err in error.errors)

    for candidate in candidates:
        if isinstance(candidate, AuthError):
            return True
        if getattr(candidate, "status_code", None) in (401, 403):
            return True
        message = str(candidate).lower()
        if any(keyword in message for keyword in AUTH_KEYWORDS):
            return True
    return False


def format_age(minutes: int) -> str:
    """
    Example:
        >>> format_age(120)
        '2 hours'
        >>> format_age(45)
        '45 minutes'
    """
    if minutes >= 60:
        hours = minutes // 60
        return f"{hours} hour{'s' if hours != 1 else ''}"
    return f"{minutes} minute{'s' if minutes != 1 else ''}"


class TieredCacheManager:
    """
    Fresh/stale/permanent cache in front of the provider orchestrator.

    Args:
        orchestrator: Routes live fetches to providers
        repository: Storage for cache entries
        snapshots: Permanent hourly snapshot service
        ohlc: OHLC engine (receives every fetched price, serves history)
        fresh_ttl: Fresh tier lifetime
        stale_ttl: Stale tier lifetime
        tz_name: Local trading timezone for captured dates
        clock: Returns the current UTC datetime (injectable for tests)
    """

    def __init__(
        self,
        orchestrator: ProviderOrchestrator,
        repository: Repository,
        snapshots: SnapshotService,
        ohlc: Optional[OHLCEngine] = None,
        fresh_ttl: Optional[timedelta] = None,
        stale_ttl: Optional[timedelta] = None,
        tz_name: Optional[str] = None,
        clock: Callable[[], datetime] = current_utc_datetime,
    ) -> None:
        self.orchestrator = orchestrator
        self.repository = repository
        self.snapshots = snapshots
        self.ohlc = ohlc
        self.fresh_ttl = fresh_ttl or timedelta(minutes=settings.fresh_cache_ttl_minutes)
        self.stale_ttl = stale_ttl or timedelta(hours=settings.stale_cache_ttl_hours)
        self.tz_name = tz_name or settings.local_timezone
        self._clock = clock
        self._logger = get_logger(__name__)

    # ============================================
    # Read Path
    # ============================================

    async def read(self, category: str) -> ApiResponse:
        """
        Read a category: fresh tier, then live fetch, then stale tier.

        Raises:
            ValueError: Unknown category
            NoDataAvailable: Live fetch failed and no stale entry exists
        """
        self._check_category(category)
        now = self._clock()

        fresh = await self._get_entry(category, "fresh")
        if fresh is not None and not fresh.is_expired(now):
            self._logger.debug(f"Fresh cache hit for {category}")
            return ApiResponse(
                data=fresh.payload,
                metadata=ResponseMetadata(
                    source="cache",
                    is_fresh=True,
                    data_age=self._age_minutes(fresh.captured_at, now),
                    last_updated=fresh.captured_at,
                    provider=fresh.source,
                ),
            )

        try:
            items, provider = await self._fetch(category)
        except Exception as e:
            self._logger.warning(f"Live fetch failed for {category}: {e}")
            return await self._serve_stale(category, e)

        payload = await self._store(category, items, provider)
        return ApiResponse(
            data=payload,
            metadata=ResponseMetadata(
                source="api",
                is_fresh=True,
                data_age=0,
                last_updated=self._clock(),
                provider=provider,
            ),
        )

    async def force_refresh(self, category: str) -> RefreshResult:
        """
        Bypass the fresh tier and fetch now. Never raises on upstream failure.

        Returns:
            RefreshResult with success=False and the error message on failure
        """
        self._check_category(category)
        try:
            items, provider = await self._fetch(category)
        except Exception as e:
            self._logger.error(f"Refresh failed for {category}: {e}")
            return RefreshResult(success=False, error=str(e))

        await self._store(category, items, provider)
        self._logger.info(f"Refreshed {category}: {len(items)} items from {provider}")
        return RefreshResult(success=True)

    async def _fetch(self, category: str) -> Tuple[List[Item], str]:
        if self.orchestrator.config.enable_parallel_fetch:
            items = await self.orchestrator.fetch_parallel(category, lambda p: p.fetch(category))
            provider = "merged"
        else:
            result = await self.orchestrator.fetch_with_fallback(category, lambda p: p.fetch(category))
            items = result.data
            provider = result.fallback_provider or result.primary_provider

        if not items:
            raise UpstreamError(f"Empty response for {category}", provider=provider)
        return items, provider

    async def _serve_stale(self, category: str, error: Exception) -> ApiResponse:
        now = self._clock()
        auth_failure = is_auth_error(error)
        stale = await self._get_entry(category, "stale")

        if stale is None or stale.is_expired(now):
            self._logger.error(f"No cached data for {category}; live fetch failed: {error}")
            message = AUTH_NO_DATA if auth_failure else UNAVAILABLE_NO_DATA
            raise NoDataAvailable(message, category=category, auth_failure=auth_failure) from error

        age = self._age_minutes(stale.captured_at, now)
        template = AUTH_WARNING if auth_failure else UNAVAILABLE_WARNING
        warning = template.format(age=format_age(age))

        def mark_fallback(current: Optional[CacheEntry]) -> CacheEntry:
            base = current or stale
            return base.model_copy(
                update={
                    "is_fallback": True,
                    "last_error": str(error),
                    "error_count": base.error_count + 1,
                }
            )

        try:
            await self.repository.upsert_atomic(CACHE_ENTRIES, (category, "stale"), mark_fallback)
        except Exception as e:
            self._logger.error(f"Failed to mark stale {category} entry as fallback: {e}")

        self._logger.warning(f"Serving stale {category} data ({format_age(age)} old)")
        return ApiResponse(
            data=stale.payload,
            metadata=ResponseMetadata(
                source="fallback",
                is_fresh=False,
                is_stale=True,
                data_age=age,
                last_updated=stale.captured_at,
                warning=warning,
                provider=stale.source,
            ),
        )

    # ============================================
    # Write Path
    # ============================================

    async def _store(self, category: str, items: List[Item], provider: str) -> Dict[str, PriceItem]:
        now = self._clock()
        payload = self.build_payload(items, now)

        try:
            await self._write_tier(category, "fresh", payload, provider, now)
        except Exception as e:
            self._logger.error(f"Failed to write fresh cache for {category}: {e}")

        for attempt in (1, 2):
            try:
                await self._write_tier(category, "stale", payload, provider, now)
                break
            except Exception as e:
                if attempt == 1:
                    self._logger.warning(f"Stale cache write for {category} failed, retrying: {e}")
                else:
                    self._logger.error(f"Failed to write stale cache for {category}: {e}")

        try:
            await self.snapshots.save_snapshot(category, payload, source=provider, at=now)
        except Exception as e:
            self._logger.error(f"Failed to save {category} snapshot: {e}")

        if self.ohlc is not None:
            try:
                await self.ohlc.record_items(items, now)
            except Exception as e:
                self._logger.error(f"Failed to record OHLC points for {category}: {e}")

        return payload

    async def _write_tier(
        self,
        category: str,
        tier: CacheTier,
        payload: Dict[str, PriceItem],
        provider: str,
        now: datetime,
    ) -> CacheEntry:
        ttl = self.fresh_ttl if tier == "fresh" else self.stale_ttl
        entry = CacheEntry(
            category=category,
            tier=tier,
            payload=payload,
            captured_at=now,
            expires_at=now + ttl,
            source=provider,
        )
        return await self.repository.upsert_atomic(CACHE_ENTRIES, (category, tier), lambda _: entry)

    def build_payload(self, items: List[Item], captured_at: datetime) -> Dict[str, PriceItem]:
        """Convert provider items into cached prices keyed by item code."""
        local_date = local_date_str(captured_at, self.tz_name)
        local_time = local_time_str(captured_at, self.tz_name)
        return {
            item.code: PriceItem(
                value=item.price,
                change=item.change,
                name=item.name or None,
                captured_at_utc=captured_at,
                local_date=local_date,
                local_time=local_time,
            )
            for item in items
        }

    # ============================================
    # Maintenance
    # ============================================

    async def invalidate(self, category: str) -> None:
        """
        Drop the fresh and stale tiers of a category.

        The stale payload is kept as an archived entry first.
        """
        self._check_category(category)
        stale = await self._get_entry(category, "stale")
        if stale is not None:
            await self.repository.append(
                CACHE_ENTRIES, stale.model_copy(update={"tier": "archived", "expires_at": None})
            )
        for tier in ("fresh", "stale"):
            await self.repository.delete(CACHE_ENTRIES, (category, tier))
        self._logger.info(f"Invalidated cache for {category}")

    async def get_cache_status(self, category: str) -> Dict[str, Any]:
        self._check_category(category)
        now = self._clock()
        status: Dict[str, Any] = {"category": category}
        for tier in ("fresh", "stale"):
            entry = await self._get_entry(category, tier)
            status[tier] = None if entry is None else {
                "captured_at": entry.captured_at,
                "expires_at": entry.expires_at,
                "expired": entry.is_expired(now),
                "age_minutes": self._age_minutes(entry.captured_at, now),
                "items": len(entry.payload),
                "is_fallback": entry.is_fallback,
                "error_count": entry.error_count,
                "last_error": entry.last_error,
            }
        latest = await self.snapshots.get_latest_snapshot(category)
        status["latest_snapshot"] = latest.hour_bucket if latest else None
        return status

    # ============================================
    # History
    # ============================================

    async def read_historical(self, category: str, requested: Union[str, date, datetime]) -> ApiResponse:
        """
        Prices of a category for a past day, from OHLC records.

        Args:
            category: Category name
            requested: Gregorian ISO date, Jalali date (YYYY/MM/DD) or date

        Raises:
            ValueError: Unknown category, unparseable or future date
            NoDataAvailable: No OHLC data for that day
        """
        self._check_category(category)
        if self.ohlc is None:
            raise NoDataAvailable("Historical data is not available", category=category)

        day = parse_date(requested)
        if day > to_local(self._clock(), self.tz_name).date():
            raise ValueError(f"Date {day.isoformat()} is in the future")

        codes = CATEGORY_ITEM_CODES[category]
        records = await self.ohlc.aggregate_day(codes, day)
        if not records:
            raise NoDataAvailable(f"No historical data for {category} on {day.isoformat()}", category=category)

        data = {
            code: PriceItem(
                value=record.close,
                change=record.close - record.open,
                captured_at_utc=record.period_end,
                local_date=day.isoformat(),
                local_time=local_time_str(record.period_end, self.tz_name),
            )
            for code, record in records.items()
        }
        last_updated = max(r.period_end for r in records.values())
        return ApiResponse(
            data=data,
            metadata=ResponseMetadata(
                source="ohlc",
                data_age=self._age_minutes(last_updated, self._clock()),
                last_updated=last_updated,
                is_historical=True,
                historical_date=day.isoformat(),
                historical_date_jalali=gregorian_to_jalali(day),
                completeness=Completeness(
                    success_count=len(data),
                    total_count=len(codes),
                    percentage=round(len(data) / len(codes) * 100, 1),
                ),
            ),
        )

    async def read_yesterday(self, category: str) -> ApiResponse:
        """
        Prices from roughly 24 hours ago: closest permanent snapshot first,
        OHLC history for the previous local day otherwise.
        """
        self._check_category(category)
        now = self._clock()
        snapshot = await self.snapshots.find_closest_snapshot(category, now - timedelta(hours=24))
        if snapshot is not None:
            return ApiResponse(
                data=snapshot.payload,
                metadata=ResponseMetadata(
                    source="snapshot",
                    data_age=self._age_minutes(snapshot.hour_bucket, now),
                    last_updated=snapshot.hour_bucket,
                    is_historical=True,
                    historical_date=local_date_str(snapshot.hour_bucket, self.tz_name),
                    provider=snapshot.source,
                ),
            )
        yesterday = to_local(now, self.tz_name).date() - timedelta(days=1)
        return await self.read_historical(category, yesterday)

    # ============================================
    # Helpers
    # ============================================

    async def _get_entry(self, category: str, tier: CacheTier) -> Optional[CacheEntry]:
        return await self.repository.get(CACHE_ENTRIES, (category, tier))

    @staticmethod
    def _age_minutes(since: datetime, now: datetime) -> int:
        return max(0, int((now - since).total_seconds() // 60))

    @staticmethod
    def _check_category(category: str) -> None:
        if category not in VALID_CATEGORIES:
            raise ValueError(f"Unknown category '{category}'. Must be one of: {', '.join(VALID_CATEGORIES)}")
