"""
Unit Tests for the Tiered Cache Manager

These tests verify:
- Fresh hits, live fetches and fresh-tier expiry
- Stale fallback with age and warning when upstream fails
- Auth vs. connectivity failure reporting
- NoDataAvailable when nothing can be served
- Write failures never fail a read
- Historical and "yesterday" reads

Run with:
    pytest tests/unit/test_cache_manager.py -v
"""

from datetime import date

import pytest

from core.errors import AllProvidersFailedError, AuthError, NoDataAvailable, UpstreamError
from core.provider_registry import ProviderRegistry
from services.cache_manager import CACHE_ENTRIES, TieredCacheManager, format_age, is_auth_error
from services.ohlc_engine import OHLCEngine
from services.orchestrator import OrchestrationConfig, ProviderOrchestrator
from services.snapshots import SNAPSHOTS, SnapshotService
from storage.repository import InMemoryRepository
from tests.fakes import FakeClock, FakeProvider, make_item


TZ = "Asia/Tehran"
GOLD = [make_item("NIM", 25_000_000, change=100_000), make_item("ROB", 14_000_000)]


class FlakyRepository(InMemoryRepository):
    """Fails the next N upserts of a given cache tier."""

    def __init__(self):
        super().__init__()
        self.failures = {}

    async def upsert_atomic(self, collection, key, mutator):
        if collection == CACHE_ENTRIES and self.failures.get(key[1], 0) > 0:
            self.failures[key[1]] -= 1
            raise ConnectionError(f"write failed for {key}")
        return await super().upsert_atomic(collection, key, mutator)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def repository():
    return FlakyRepository()


@pytest.fixture
def provider():
    return FakeProvider("vendor", {"gold": list(GOLD)})


@pytest.fixture
def cache(repository, provider, clock):
    registry = ProviderRegistry()
    registry.register_provider(provider, priority=1)
    orchestrator = ProviderOrchestrator(registry, OrchestrationConfig(breaker_threshold=100))
    snapshots = SnapshotService(repository, clock=clock)
    ohlc = OHLCEngine(repository, tz_name=TZ, clock=clock)
    return TieredCacheManager(orchestrator, repository, snapshots, ohlc, tz_name=TZ, clock=clock)


# ============================================
# Read Path
# ============================================

class TestRead:
    """Tests for fresh hits and live fetches"""

    @pytest.mark.asyncio
    async def test_miss_fetches_and_stores_everywhere(self, cache, repository, provider):
        response = await cache.read("gold")

        assert response.metadata.source == "api"
        assert response.metadata.is_fresh is True
        assert response.metadata.data_age == 0
        assert response.metadata.provider == "vendor"
        assert response.data["NIM"].value == 25_000_000
        assert response.data["NIM"].change == 100_000
        assert response.data["NIM"].local_date == "2024-01-01"
        assert response.data["NIM"].local_time == "15:30"

        assert await repository.get(CACHE_ENTRIES, ("gold", "fresh")) is not None
        assert await repository.get(CACHE_ENTRIES, ("gold", "stale")) is not None
        assert repository.count(SNAPSHOTS) == 1
        assert (await cache.ohlc.get_today("NIM")).close == 25_000_000

    @pytest.mark.asyncio
    async def test_fresh_hit_within_ttl(self, cache, provider, clock):
        await cache.read("gold")
        clock.advance(minutes=3)

        response = await cache.read("gold")

        assert response.metadata.source == "cache"
        assert response.metadata.data_age == 3
        assert provider.calls == ["gold"]

    @pytest.mark.asyncio
    async def test_fresh_expiry_refetches(self, cache, provider, clock):
        await cache.read("gold")
        clock.advance(minutes=5)

        response = await cache.read("gold")

        assert response.metadata.source == "api"
        assert provider.calls == ["gold", "gold"]

    @pytest.mark.asyncio
    async def test_unknown_category(self, cache):
        with pytest.raises(ValueError, match="Unknown category"):
            await cache.read("stocks")


# ============================================
# Stale Fallback
# ============================================

class TestStaleFallback:
    """Tests for serving the stale tier"""

    @pytest.mark.asyncio
    async def test_stale_served_with_age_and_warning(self, cache, provider, repository, clock):
        await cache.read("gold")
        clock.advance(hours=2)
        provider.responses["gold"] = UpstreamError("HTTP 503", status_code=503)

        response = await cache.read("gold")

        assert response.metadata.source == "fallback"
        assert response.metadata.is_stale is True
        assert response.metadata.is_fresh is False
        assert response.metadata.data_age == 120
        assert response.metadata.warning == "API temporarily unavailable. Showing data from 2 hours ago."
        assert response.data["NIM"].value == 25_000_000

        stale = await repository.get(CACHE_ENTRIES, ("gold", "stale"))
        assert stale.is_fallback is True
        assert stale.error_count == 1
        assert "HTTP 503" in stale.last_error

    @pytest.mark.asyncio
    async def test_auth_failure_warning(self, cache, provider, clock):
        await cache.read("gold")
        clock.advance(hours=5)
        provider.responses["gold"] = AuthError("Authentication failed (HTTP 401)", status_code=401)

        response = await cache.read("gold")

        assert response.metadata.warning == "API token expired. Showing data from 5 hours ago."

    @pytest.mark.asyncio
    async def test_repeated_failures_count_up(self, cache, provider, repository, clock):
        await cache.read("gold")
        provider.responses["gold"] = UpstreamError("down")
        for _ in range(3):
            clock.advance(minutes=10)
            await cache.read("gold")

        stale = await repository.get(CACHE_ENTRIES, ("gold", "stale"))
        assert stale.error_count == 3

    @pytest.mark.asyncio
    async def test_no_stale_raises_no_data(self, cache, provider):
        provider.responses["gold"] = UpstreamError("connection reset by peer")

        with pytest.raises(NoDataAvailable) as exc_info:
            await cache.read("gold")

        assert exc_info.value.auth_failure is False
        assert "connection reset" not in str(exc_info.value)

    @pytest.mark.asyncio
    async def test_no_stale_auth_failure(self, cache, provider):
        provider.responses["gold"] = AuthError("expired", status_code=403)

        with pytest.raises(NoDataAvailable) as exc_info:
            await cache.read("gold")

        assert exc_info.value.auth_failure is True
        assert "authentication" in str(exc_info.value).lower()

    @pytest.mark.asyncio
    async def test_expired_stale_not_served(self, cache, provider, clock):
        await cache.read("gold")
        clock.advance(hours=169)
        provider.responses["gold"] = UpstreamError("down")

        with pytest.raises(NoDataAvailable):
            await cache.read("gold")

    @pytest.mark.asyncio
    async def test_empty_upstream_response_falls_back(self, cache, provider, clock):
        await cache.read("gold")
        clock.advance(minutes=10)
        provider.responses["gold"] = []

        response = await cache.read("gold")

        assert response.metadata.source == "fallback"


# ============================================
# Write Failures
# ============================================

class TestWriteFailures:
    """Cache writes never fail the triggering read"""

    @pytest.mark.asyncio
    async def test_fresh_write_failure_swallowed(self, cache, repository):
        repository.failures["fresh"] = 1

        response = await cache.read("gold")

        assert response.metadata.source == "api"
        assert await repository.get(CACHE_ENTRIES, ("gold", "fresh")) is None
        assert await repository.get(CACHE_ENTRIES, ("gold", "stale")) is not None

    @pytest.mark.asyncio
    async def test_stale_write_retried_once(self, cache, repository):
        repository.failures["stale"] = 1

        await cache.read("gold")

        assert await repository.get(CACHE_ENTRIES, ("gold", "stale")) is not None

    @pytest.mark.asyncio
    async def test_stale_write_gives_up_after_retry(self, cache, repository):
        repository.failures["stale"] = 2

        response = await cache.read("gold")

        assert response.metadata.source == "api"
        assert await repository.get(CACHE_ENTRIES, ("gold", "stale")) is None


# ============================================
# Refresh / Invalidate / Status
# ============================================

class TestRefresh:
    """Tests for force_refresh, invalidate and status"""

    @pytest.mark.asyncio
    async def test_force_refresh_bypasses_fresh(self, cache, provider):
        await cache.read("gold")
        result = await cache.force_refresh("gold")

        assert result.success is True
        assert provider.calls == ["gold", "gold"]

    @pytest.mark.asyncio
    async def test_force_refresh_failure(self, cache, provider):
        provider.responses["gold"] = UpstreamError("down")

        result = await cache.force_refresh("gold")

        assert result.success is False
        assert "down" in result.error

    @pytest.mark.asyncio
    async def test_invalidate_archives_stale(self, cache, repository):
        await cache.read("gold")

        await cache.invalidate("gold")

        assert await repository.get(CACHE_ENTRIES, ("gold", "fresh")) is None
        assert await repository.get(CACHE_ENTRIES, ("gold", "stale")) is None
        archived = await repository.find(CACHE_ENTRIES, lambda e: e.tier == "archived")
        assert len(archived) == 1
        assert archived[0].expires_at is None

    @pytest.mark.asyncio
    async def test_cache_status(self, cache, clock):
        await cache.read("gold")
        clock.advance(minutes=7)

        status = await cache.get_cache_status("gold")

        assert status["fresh"]["expired"] is True
        assert status["stale"]["expired"] is False
        assert status["stale"]["age_minutes"] == 7
        assert status["stale"]["items"] == 2
        assert status["latest_snapshot"] is not None


# ============================================
# History
# ============================================

class TestHistory:
    """Tests for read_historical and read_yesterday"""

    @pytest.mark.asyncio
    async def test_read_historical_from_intraday(self, cache, clock):
        await cache.read("gold")
        clock.advance(days=1)

        response = await cache.read_historical("gold", "2024-01-01")

        assert response.metadata.source == "ohlc"
        assert response.metadata.is_historical is True
        assert response.metadata.historical_date == "2024-01-01"
        assert response.metadata.historical_date_jalali == "1402/10/11"
        assert response.metadata.completeness.success_count == 2
        assert response.metadata.completeness.total_count == 7
        assert response.metadata.completeness.percentage == 28.6
        assert response.data["NIM"].value == 25_000_000

    @pytest.mark.asyncio
    async def test_read_historical_jalali(self, cache, clock):
        await cache.read("gold")
        clock.advance(days=1)

        response = await cache.read_historical("gold", "1402/10/11")

        assert response.metadata.historical_date == "2024-01-01"

    @pytest.mark.asyncio
    async def test_read_historical_no_data(self, cache):
        with pytest.raises(NoDataAvailable):
            await cache.read_historical("gold", date(2023, 12, 1))

    @pytest.mark.asyncio
    async def test_read_historical_future_date(self, cache):
        with pytest.raises(ValueError, match="future"):
            await cache.read_historical("gold", "2024-01-05")

    @pytest.mark.asyncio
    async def test_read_yesterday_uses_snapshot(self, cache, provider, clock):
        await cache.read("gold")
        clock.advance(hours=24)
        provider.responses["gold"] = UpstreamError("down")

        response = await cache.read_yesterday("gold")

        assert response.metadata.source == "snapshot"
        assert response.metadata.data_age == 24 * 60
        assert response.data["ROB"].value == 14_000_000

    @pytest.mark.asyncio
    async def test_read_yesterday_falls_back_to_ohlc(self, cache, clock):
        await cache.ohlc.record_point("NIM", 25_000_000)
        clock.advance(hours=24)

        response = await cache.read_yesterday("gold")

        assert response.metadata.source == "ohlc"
        assert list(response.data) == ["NIM"]


class TestHelpers:
    """Tests for auth detection and age formatting"""

    @pytest.mark.parametrize(
        "error, expected",
        [
            (AuthError("nope"), True),
            (UpstreamError("HTTP 403", status_code=403), True),
            (UpstreamError("Invalid API key supplied"), True),
            (RuntimeError("Unauthorized"), True),
            (UpstreamError("HTTP 500", status_code=500), False),
            (AllProvidersFailedError("gold", [("a", UpstreamError("x", status_code=401))]), True),
            (AllProvidersFailedError("gold", [("a", UpstreamError("timeout"))]), False),
        ],
    )
    def test_is_auth_error(self, error, expected):
        assert is_auth_error(error) is expected

    def test_format_age(self):
        assert format_age(120) == "2 hours"
        assert format_age(60) == "1 hour"
        assert format_age(1) == "1 minute"
        assert format_age(45) == "45 minutes"
