"""
Unit Tests for the Rate-Limited Fetch Client

These tests verify that RateLimitedFetchClient:
- Throttles requests through the token bucket
- Coalesces identical concurrent requests into one upstream call
- Retries retryable failures with exponential backoff
- Propagates non-retryable failures immediately
- Maps HTTP statuses, network errors and malformed bodies to typed errors

Most tests replace the network layer (``_get``) with monkeypatch; the HTTP
mapping tests run against a local aiohttp TestServer. Time is driven by a
fake clock whose sleep advances the clock.

Run with:
    pytest tests/unit/test_fetch_client.py -v
"""

import asyncio

import pytest
import pytest_asyncio
from aiohttp import web
from aiohttp import test_utils

from core.errors import AuthError, RateLimitExceeded, UpstreamError, ValidationError
from providers.fetch_client import RateLimitedFetchClient, TokenBucket


class FakeTime:
    """Monotonic clock plus a sleep that advances it instantly."""

    def __init__(self):
        self.now = 0.0
        self.sleeps = []

    def clock(self) -> float:
        return self.now

    async def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds


# ============================================
# Fixtures
# ============================================

@pytest.fixture
def fake_time():
    return FakeTime()


@pytest_asyncio.fixture
async def client(fake_time):
    """Client with a 5s token bucket and 1s/2s/4s backoff, driven by fake time"""
    client = RateLimitedFetchClient(
        "https://api.example.com",
        api_key="secret",
        provider_name="test",
        rate_limit_interval_ms=5000,
        coalesce_ttl_ms=5000,
        max_retries=3,
        retry_base_delay_ms=1000,
        retry_max_delay_ms=10000,
        clock=fake_time.clock,
        sleep=fake_time.sleep,
    )
    yield client
    client.clear_pending()


# ============================================
# Token Bucket
# ============================================

class TestTokenBucket:
    """Tests for the token bucket"""

    @pytest.mark.asyncio
    async def test_first_token_is_immediate(self, fake_time):
        bucket = TokenBucket(5000, clock=fake_time.clock, sleep=fake_time.sleep)
        await bucket.acquire()
        assert fake_time.sleeps == []

    @pytest.mark.asyncio
    async def test_n_requests_take_n_minus_one_intervals(self, fake_time):
        """Four acquisitions need at least three refill intervals"""
        bucket = TokenBucket(5000, clock=fake_time.clock, sleep=fake_time.sleep)
        for _ in range(4):
            await bucket.acquire()
        assert fake_time.now >= 15.0
        assert sum(fake_time.sleeps) == pytest.approx(15.0)

    @pytest.mark.asyncio
    async def test_partial_refill(self, fake_time):
        bucket = TokenBucket(5000, clock=fake_time.clock, sleep=fake_time.sleep)
        await bucket.acquire()
        fake_time.now += 2.0
        assert bucket.seconds_until_available() == pytest.approx(3.0)
        assert bucket.available == 0

    @pytest.mark.asyncio
    async def test_capacity_caps_tokens(self, fake_time):
        bucket = TokenBucket(1000, capacity=1, clock=fake_time.clock, sleep=fake_time.sleep)
        fake_time.now += 60.0
        assert bucket.available == 1


# ============================================
# Coalescing
# ============================================

class TestCoalescing:
    """Tests for request coalescing"""

    @pytest.mark.asyncio
    async def test_concurrent_identical_requests_share_one_call(self, client, monkeypatch):
        calls = []

        async def mock_get(endpoint, params=None):
            calls.append((endpoint, params))
            await asyncio.sleep(0)
            return {"data": [1, 2, 3]}

        monkeypatch.setattr(client, "_get", mock_get)

        results = await asyncio.gather(*(client.fetch("/gold", {"limit": 10}) for _ in range(5)))

        assert len(calls) == 1
        assert all(r == {"data": [1, 2, 3]} for r in results)

    @pytest.mark.asyncio
    async def test_different_params_are_not_coalesced(self, client, monkeypatch):
        calls = []

        async def mock_get(endpoint, params=None):
            calls.append(params)
            return []

        monkeypatch.setattr(client, "_get", mock_get)

        await asyncio.gather(client.fetch("/gold", {"page": 1}), client.fetch("/gold", {"page": 2}))

        assert len(calls) == 2

    @pytest.mark.asyncio
    async def test_failure_is_evicted_immediately(self, client, monkeypatch):
        calls = []

        async def mock_get(endpoint, params=None):
            calls.append(endpoint)
            if len(calls) == 1:
                raise AuthError("expired", provider="test")
            return ["ok"]

        monkeypatch.setattr(client, "_get", mock_get)

        with pytest.raises(AuthError):
            await client.fetch("/gold")
        assert await client.fetch("/gold") == ["ok"]
        assert len(calls) == 2

    @pytest.mark.asyncio
    async def test_success_is_evicted_after_ttl(self, fake_time, monkeypatch):
        """A settled result is reused until coalesce_ttl passes, then refetched"""
        client = RateLimitedFetchClient(
            "https://api.example.com",
            coalesce_ttl_ms=50,
            clock=fake_time.clock,
            sleep=fake_time.sleep,
        )
        calls = []

        async def mock_get(endpoint, params=None):
            calls.append(endpoint)
            return len(calls)

        monkeypatch.setattr(client, "_get", mock_get)

        assert await client.fetch("/gold") == 1
        assert await client.fetch("/gold") == 1
        assert len(calls) == 1

        await asyncio.sleep(0.2)

        assert await client.fetch("/gold") == 2
        assert len(calls) == 2
        client.clear_pending()

    def test_cache_key_is_order_independent(self):
        a = RateLimitedFetchClient.cache_key("/gold", {"a": 1, "b": 2})
        b = RateLimitedFetchClient.cache_key("/gold", {"b": 2, "a": 1})
        assert a == b
        assert a.startswith("/gold-")


# ============================================
# Retry
# ============================================

class TestRetry:
    """Tests for retry and error propagation"""

    @pytest.mark.asyncio
    async def test_retryable_error_retried_up_to_max(self, client, monkeypatch, fake_time):
        calls = []

        async def mock_get(endpoint, params=None):
            calls.append(endpoint)
            raise UpstreamError("HTTP 503", status_code=503, provider="test")

        monkeypatch.setattr(client, "_get", mock_get)

        with pytest.raises(UpstreamError):
            await client.fetch("/crypto")

        assert len(calls) == 4
        # Backoff delays are interleaved with token-bucket waits
        for delay in (1.0, 2.0, 4.0):
            assert delay in fake_time.sleeps

    @pytest.mark.asyncio
    async def test_recovers_after_transient_failures(self, client, monkeypatch):
        calls = []

        async def mock_get(endpoint, params=None):
            calls.append(endpoint)
            if len(calls) < 3:
                raise UpstreamError("network", status_code=500, retryable=True)
            return {"data": []}

        monkeypatch.setattr(client, "_get", mock_get)

        assert await client.fetch("/crypto") == {"data": []}
        assert len(calls) == 3

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "error",
        [
            AuthError("bad token", status_code=401),
            RateLimitExceeded("slow down"),
            UpstreamError("HTTP 404", status_code=404),
        ],
    )
    async def test_non_retryable_errors_fail_fast(self, client, monkeypatch, error):
        calls = []

        async def mock_get(endpoint, params=None):
            calls.append(endpoint)
            raise error

        monkeypatch.setattr(client, "_get", mock_get)

        with pytest.raises(type(error)):
            await client.fetch("/currencies")
        assert len(calls) == 1

    @pytest.mark.asyncio
    async def test_backoff_is_capped(self, client):
        assert client.backoff_delay(0) == 1.0
        assert client.backoff_delay(1) == 2.0
        assert client.backoff_delay(2) == 4.0
        assert client.backoff_delay(10) == 10.0


class TestSession:
    """Tests for session handling and status"""

    @pytest.mark.asyncio
    async def test_get_without_session_raises(self, client):
        with pytest.raises(RuntimeError, match="session not initialized"):
            await client._get("/gold")

    @pytest.mark.asyncio
    async def test_context_manager_opens_and_closes(self):
        async with RateLimitedFetchClient("https://api.example.com") as client:
            assert client.session is not None
        assert client.session is None

    @pytest.mark.asyncio
    async def test_rate_limit_status(self, client):
        status = client.get_rate_limit_status()
        assert status.remaining == 1
        assert status.total == 720


# ============================================
# HTTP Error Mapping
# ============================================

@pytest_asyncio.fixture
async def upstream():
    """Local HTTP server; each path answers with a fixed status or body."""
    hits = {}

    async def handler(request: web.Request) -> web.Response:
        path = request.path
        hits[path] = hits.get(path, 0) + 1
        if path == "/gold":
            return web.json_response({"data": [{"code": "SEKKEH", "price": 42}]})
        if path == "/auth-header":
            return web.json_response({"authorization": request.headers.get("Authorization")})
        if path == "/not-json":
            return web.Response(text="<html>maintenance</html>", content_type="text/html")
        if path == "/bad-bytes":
            return web.Response(body=b'{"data": "\xff\xfe bad"}', content_type="application/json")
        status = int(path.strip("/"))
        return web.Response(status=status, body=b"\xff error \xfe")

    app = web.Application()
    app.router.add_route("GET", "/{tail:.*}", handler)
    server = test_utils.TestServer(app)
    await server.start_server()
    server.hits = hits
    yield server
    await server.close()


@pytest_asyncio.fixture
async def live_client(upstream, fake_time):
    client = RateLimitedFetchClient(
        str(upstream.make_url("/")),
        api_key="secret",
        provider_name="test",
        max_retries=2,
        retry_base_delay_ms=1000,
        clock=fake_time.clock,
        sleep=fake_time.sleep,
    )
    async with client:
        yield client
    client.clear_pending()


class TestHttpErrorMapping:
    """Tests for _get against a real HTTP server"""

    @pytest.mark.asyncio
    async def test_success_returns_json(self, live_client):
        assert await live_client.fetch("/gold") == {"data": [{"code": "SEKKEH", "price": 42}]}

    @pytest.mark.asyncio
    async def test_api_key_sent_as_bearer(self, live_client):
        body = await live_client.fetch("/auth-header")
        assert body == {"authorization": "Bearer secret"}

    @pytest.mark.asyncio
    @pytest.mark.parametrize("status", [401, 403])
    async def test_auth_statuses_raise_auth_error(self, live_client, upstream, status):
        with pytest.raises(AuthError) as exc_info:
            await live_client.fetch(f"/{status}")
        assert exc_info.value.status_code == status
        assert exc_info.value.retryable is False
        assert upstream.hits[f"/{status}"] == 1

    @pytest.mark.asyncio
    async def test_429_raises_rate_limit_exceeded(self, live_client, upstream):
        with pytest.raises(RateLimitExceeded):
            await live_client.fetch("/429")
        assert upstream.hits["/429"] == 1

    @pytest.mark.asyncio
    async def test_5xx_is_retried_then_raised(self, live_client, upstream, fake_time):
        with pytest.raises(UpstreamError) as exc_info:
            await live_client.fetch("/503")
        assert exc_info.value.retryable is True
        assert exc_info.value.status_code == 503
        assert upstream.hits["/503"] == 3
        assert 1.0 in fake_time.sleeps and 2.0 in fake_time.sleeps

    @pytest.mark.asyncio
    async def test_4xx_is_not_retried(self, live_client, upstream):
        with pytest.raises(UpstreamError) as exc_info:
            await live_client.fetch("/404")
        assert exc_info.value.retryable is False
        assert upstream.hits["/404"] == 1

    @pytest.mark.asyncio
    async def test_non_json_body_raises_validation_error(self, live_client):
        with pytest.raises(ValidationError):
            await live_client.fetch("/not-json")

    @pytest.mark.asyncio
    async def test_undecodable_body_raises_validation_error(self, live_client, upstream):
        with pytest.raises(ValidationError):
            await live_client.fetch("/bad-bytes")
        assert upstream.hits["/bad-bytes"] == 1

    @pytest.mark.asyncio
    async def test_network_error_is_retryable(self, fake_time):
        client = RateLimitedFetchClient(
            "http://127.0.0.1:1",
            max_retries=1,
            retry_base_delay_ms=1000,
            request_timeout=2,
            clock=fake_time.clock,
            sleep=fake_time.sleep,
        )
        async with client:
            with pytest.raises(UpstreamError) as exc_info:
                await client.fetch("/gold")
        assert exc_info.value.retryable is True
        assert fake_time.sleeps[0] == 1.0
