"""
Error Taxonomy

Every failure the pipeline can surface is one of the exceptions below. They
carry enough structured context (status code, provider, retryability) for the
layer above to decide whether to retry, fall back to another provider, fall
back to an older cache tier, or give up.

Propagation:
    - UpstreamError (retryable) is retried inside the fetch client
    - Anything that escapes the fetch client triggers provider fallback
    - AllProvidersFailedError triggers cache-tier fallback
    - NoDataAvailable is the only error a reader of the cache ever sees
"""

from typing import Dict, List, Optional, Tuple


class MarketFeedError(Exception):
    """Base class for all pipeline errors."""


# ============================================
# Upstream / Transport Errors
# ============================================

class UpstreamError(MarketFeedError):
    """
    Network or HTTP failure talking to an upstream provider.

    Attributes:
        retryable: Whether the fetch client may retry the call
        status_code: HTTP status (500 for network-level failures)
        provider: Name of the provider that failed
    """

    def __init__(
        self,
        message: str,
        status_code: Optional[int] = None,
        provider: Optional[str] = None,
        retryable: bool = False,
    ) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.provider = provider
        self.retryable = retryable or (status_code is not None and status_code >= 500)


class AuthError(UpstreamError):
    """401/403 from upstream. Never retried; signals credential expiry."""

    def __init__(self, message: str, status_code: int = 401, provider: Optional[str] = None) -> None:
        super().__init__(message, status_code=status_code, provider=provider, retryable=False)


class RateLimitExceeded(UpstreamError):
    """429 from upstream. Not retried; the token bucket should prevent it."""

    def __init__(self, message: str, provider: Optional[str] = None) -> None:
        super().__init__(message, status_code=429, provider=provider, retryable=False)


class ValidationError(MarketFeedError):
    """Upstream returned a payload whose shape we do not understand."""

    def __init__(self, message: str, payload_shape: Optional[str] = None) -> None:
        super().__init__(message)
        self.payload_shape = payload_shape


class MappingError(MarketFeedError):
    """The mapper could not turn a vendor record into a canonical Item."""


# ============================================
# Resilience Errors
# ============================================

class CircuitOpenError(MarketFeedError):
    """A provider's circuit is open; the call was not attempted."""

    def __init__(self, provider: str, retry_in_ms: int = 0) -> None:
        super().__init__(f"Circuit breaker open for provider {provider}")
        self.provider = provider
        self.retry_in_ms = retry_in_ms


class CircuitBreakerError(MarketFeedError):
    """Raised by the error tracker when a context reaches its error threshold."""

    def __init__(self, context: str, count: int, threshold: int) -> None:
        super().__init__(
            f"Circuit breaker triggered for {context}: {count} errors (threshold {threshold})"
        )
        self.context = context
        self.count = count
        self.threshold = threshold


class AllProvidersFailedError(MarketFeedError):
    """
    Every provider tried for a data type failed.

    Attributes:
        data_type: The data type being fetched
        errors: (provider, exception) pairs in the order they were tried
    """

    def __init__(self, data_type: str, errors: List[Tuple[str, Exception]]) -> None:
        if errors:
            details = "; ".join(f"{name}: {err}" for name, err in errors)
            message = f"All providers failed for {data_type}. Errors: {details}"
        else:
            message = f"No providers available for {data_type}"
        super().__init__(message)
        self.data_type = data_type
        self.errors = errors

    @property
    def last_error(self) -> Optional[Exception]:
        return self.errors[-1][1] if self.errors else None

    def as_dict(self) -> Dict[str, str]:
        return {name: str(err) for name, err in self.errors}


class NoDataAvailable(MarketFeedError):
    """
    Neither a live fetch nor any cache tier could serve the request.

    Attributes:
        category: Category that was requested
        auth_failure: True if the live fetch failed on credentials
    """

    def __init__(self, message: str, category: Optional[str] = None, auth_failure: bool = False) -> None:
        super().__init__(message)
        self.category = category
        self.auth_failure = auth_failure
