"""
Rate-Limited Fetch Client

This module provides the async HTTP client every upstream provider uses.
It handles:
- Token-bucket throttling (capacity 1, one token per refill interval)
- Request coalescing (identical in-flight requests share one upstream call)
- Retry with exponential backoff for retryable failures
- Mapping HTTP/network failures to the pipeline's error taxonomy

Rate Limits:
    The default upstream allows one request every 5 seconds (720 per hour).
    Callers never sleep on their own: ``fetch`` suspends cooperatively until
    the bucket has a token.

Retry Policy:
    Retryable failures (network errors, HTTP >= 500) are retried up to
    ``max_retries`` times with delay = min(base * 2^attempt, max_delay).
    401/403 (AuthError), 429 (RateLimitExceeded) and malformed bodies
    (ValidationError) propagate immediately.

Usage:
    async with RateLimitedFetchClient(base_url, api_key=key) as client:
        payload = await client.fetch("/currencies", {"limit": 50})
"""

import asyncio
import json
import time
from datetime import timedelta
from typing import Any, Awaitable, Callable, Dict, Optional

import aiohttp

from core.config import settings
from core.errors import AuthError, RateLimitExceeded, UpstreamError, ValidationError
from core.logging import get_logger, log_api_request, log_api_response
from core.schemas import RateLimitStatus
from core.utils.time import current_utc_datetime


class TokenBucket:
    """
    Token bucket with fractional, time-proportional refill.

    Args:
        refill_interval_ms: Time to regain one token
        capacity: Maximum tokens held (1 means no bursts)
        clock: Monotonic clock in seconds
        sleep: Coroutine used to wait for tokens

    The bucket starts full. Waiters are served one at a time in arrival order
    because ``acquire`` holds a lock while it waits.
    """

    def __init__(
        self,
        refill_interval_ms: int,
        capacity: int = 1,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.capacity = capacity
        self.refill_interval = refill_interval_ms / 1000.0
        self._clock = clock
        self._sleep = sleep
        self._tokens = float(capacity)
        self._last_refill = clock()
        self._lock = asyncio.Lock()

    def _refill(self) -> None:
        now = self._clock()
        elapsed = now - self._last_refill
        if elapsed > 0:
            self._tokens = min(self.capacity, self._tokens + elapsed / self.refill_interval)
            self._last_refill = now

    def seconds_until_available(self) -> float:
        self._refill()
        if self._tokens >= 1:
            return 0.0
        return (1 - self._tokens) * self.refill_interval

    @property
    def available(self) -> int:
        self._refill()
        return int(self._tokens)

    async def acquire(self) -> None:
        """Wait until a token is available, then consume it."""
        async with self._lock:
            while True:
                wait = self.seconds_until_available()
                if wait <= 0:
                    self._tokens -= 1
                    return
                await self._sleep(wait)


class RateLimitedFetchClient:
    """
    Async HTTP client with throttling, coalescing and retry.

    Attributes:
        base_url: Upstream base URL
        provider_name: Used in logs and error context
        bucket: The process-wide token bucket for this upstream
        session: aiohttp ClientSession (created in ``__aenter__``/``open``)

    Example:
        >>> async with RateLimitedFetchClient("https://api.example.com", api_key="k") as client:
        ...     data = await client.fetch("/gold")
    """

    def __init__(
        self,
        base_url: str,
        api_key: Optional[str] = None,
        provider_name: str = "upstream",
        rate_limit_interval_ms: int = None,
        coalesce_ttl_ms: int = None,
        max_retries: int = None,
        retry_base_delay_ms: int = None,
        retry_max_delay_ms: int = None,
        request_timeout: int = None,
        requests_per_hour: int = None,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.provider_name = provider_name
        self.coalesce_ttl = (coalesce_ttl_ms if coalesce_ttl_ms is not None else settings.coalesce_ttl_ms) / 1000.0
        self.max_retries = max_retries if max_retries is not None else settings.max_retries
        self.retry_base_delay_ms = retry_base_delay_ms if retry_base_delay_ms is not None else settings.retry_base_delay_ms
        self.retry_max_delay_ms = retry_max_delay_ms if retry_max_delay_ms is not None else settings.retry_max_delay_ms
        self.request_timeout = request_timeout or settings.request_timeout
        self.requests_per_hour = requests_per_hour or settings.provider_requests_per_hour
        self.bucket = TokenBucket(
            rate_limit_interval_ms or settings.rate_limit_interval_ms,
            clock=clock,
            sleep=sleep,
        )
        self._sleep = sleep
        self._pending: Dict[str, asyncio.Task] = {}
        self.logger = get_logger(__name__)
        self.session: Optional[aiohttp.ClientSession] = None

    # ============================================
    # Session Management
    # ============================================

    async def open(self) -> None:
        if self.session is None or self.session.closed:
            self.session = aiohttp.ClientSession()
            self.logger.debug(f"{self.provider_name} fetch client session created")

    async def close(self) -> None:
        if self.session:
            await self.session.close()
            self.session = None
            self.logger.debug(f"{self.provider_name} fetch client session closed")

    async def __aenter__(self):
        await self.open()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()

    # ============================================
    # Public API
    # ============================================

    async def fetch(self, endpoint: str, params: Optional[Dict[str, Any]] = None) -> Any:
        """
        Fetch ``endpoint`` with throttling, coalescing and retry.

        Concurrent calls with the same endpoint and params share one upstream
        request. The shared result stays available for ``coalesce_ttl``
        seconds after it settles; a failure is evicted immediately so the
        next caller retries.

        Raises:
            UpstreamError: Network/HTTP failure (after retries if retryable)
            AuthError: 401/403
            RateLimitExceeded: 429
            ValidationError: Body is not valid JSON
        """
        key = self.cache_key(endpoint, params)
        task = self._pending.get(key)

        if task is not None:
            self.logger.debug(f"Coalescing request {key}")
        else:
            task = asyncio.ensure_future(self._fetch_with_retry(endpoint, params))
            self._pending[key] = task
            task.add_done_callback(lambda t: self._on_settled(key, t))

        # Shielded so one caller's cancellation does not abort the shared request
        return await asyncio.shield(task)

    def get_rate_limit_status(self) -> RateLimitStatus:
        wait = self.bucket.seconds_until_available()
        return RateLimitStatus(
            remaining=1 if wait <= 0 else 0,
            reset=current_utc_datetime() + timedelta(seconds=wait),
            total=self.requests_per_hour,
        )

    def clear_pending(self) -> None:
        self._pending.clear()

    @staticmethod
    def cache_key(endpoint: str, params: Optional[Dict[str, Any]]) -> str:
        return f"{endpoint}-{json.dumps(params or {}, sort_keys=True, default=str)}"

    # ============================================
    # Internals
    # ============================================

    def _on_settled(self, key: str, task: asyncio.Task) -> None:
        if task.cancelled() or task.exception() is not None:
            self._evict(key, task)
            return
        asyncio.get_running_loop().call_later(self.coalesce_ttl, self._evict, key, task)

    def _evict(self, key: str, task: asyncio.Task) -> None:
        if self._pending.get(key) is task:
            del self._pending[key]

    def backoff_delay(self, attempt: int) -> float:
        """Delay in seconds before retry number ``attempt`` (0-based)."""
        return min(self.retry_base_delay_ms * (2 ** attempt), self.retry_max_delay_ms) / 1000.0

    async def _fetch_with_retry(self, endpoint: str, params: Optional[Dict[str, Any]]) -> Any:
        attempt = 0
        while True:
            await self.bucket.acquire()
            try:
                return await self._get(endpoint, params)
            except UpstreamError as e:
                if not e.retryable or attempt >= self.max_retries:
                    raise
                delay = self.backoff_delay(attempt)
                self.logger.warning(
                    f"{self.provider_name} {endpoint} failed ({e}). "
                    f"Retrying in {delay:.1f}s... (retry {attempt + 1}/{self.max_retries})"
                )
                await self._sleep(delay)
                attempt += 1

    async def _get(self, endpoint: str, params: Optional[Dict[str, Any]] = None) -> Any:
        """
        Perform a single GET against the upstream.

        Raises:
            RuntimeError: If the session was never opened
            UpstreamError / AuthError / RateLimitExceeded / ValidationError
        """
        if not self.session:
            raise RuntimeError("Client session not initialized. Use 'async with' statement.")

        url = f"{self.base_url}{endpoint}"
        headers = {"Accept": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"

        log_api_request(self.provider_name, endpoint, params)
        started = time.monotonic()

        try:
            async with self.session.get(
                url,
                params=params,
                headers=headers,
                timeout=aiohttp.ClientTimeout(total=self.request_timeout)
            ) as resp:
                log_api_response(self.provider_name, endpoint, resp.status, time.monotonic() - started)

                if resp.status == 200:
                    try:
                        return await resp.json(content_type=None)
                    except ValueError as e:
                        # UnicodeDecodeError is a ValueError too
                        text = await self._body_preview(resp)
                        self.logger.error(f"Malformed response from {endpoint}: {text[:200]}")
                        raise ValidationError(
                            f"Malformed JSON from {self.provider_name} {endpoint}: {e}",
                            payload_shape=f"text[{len(text)}]",
                        )

                text = await self._body_preview(resp)
                if resp.status in (401, 403):
                    raise AuthError(
                        f"Authentication failed for {self.provider_name} (HTTP {resp.status})",
                        status_code=resp.status,
                        provider=self.provider_name,
                    )
                if resp.status == 429:
                    raise RateLimitExceeded(
                        f"Rate limit exceeded for {self.provider_name}",
                        provider=self.provider_name,
                    )
                self.logger.error(f"HTTP {resp.status} on {endpoint}: {text[:200]}")
                raise UpstreamError(
                    f"HTTP {resp.status} from {self.provider_name} {endpoint}",
                    status_code=resp.status,
                    provider=self.provider_name,
                    retryable=resp.status >= 500,
                )

        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            self.logger.error(f"Request failed on {endpoint}: {e!r}")
            raise UpstreamError(
                f"Network error from {self.provider_name} {endpoint}: {e!r}",
                status_code=500,
                provider=self.provider_name,
                retryable=True,
            )

    @staticmethod
    async def _body_preview(resp: aiohttp.ClientResponse) -> str:
        """Response body decoded for logs; undecodable bytes are replaced."""
        raw = await resp.read()
        return raw.decode("utf-8", errors="replace")
