"""
Provider Orchestrator

Routes every fetch through the registered providers with three layers of
protection:

1. Per-provider circuit breakers
   A failure increments the provider's counter, a success decrements it
   (floor 0). At ``breaker_threshold`` the circuit opens and calls fail fast
   with ``CircuitOpenError``. Once ``breaker_reset_ms`` has passed since the
   last failure the counter is reset, the circuit closes and the provider is
   tried again.

2. Priority-ordered fallback (``fetch_with_fallback``)
   Try the primary, then up to ``max_fallback_attempts`` fallbacks. If every
   attempt fails, raise ``AllProvidersFailedError`` listing each error.

3. Parallel fan-out with merge (``fetch_parallel``)
   Call every capable provider concurrently and merge their item lists by
   ``code`` using one of three strategies:
       override - first successful (highest priority) result verbatim
       newest   - per code, the item with the latest ``updated_at``
       average  - per code, mean of each numeric field reported by more than
                  one provider, newest ``updated_at``

Every provider call races ``request_timeout_ms``. A call that loses the race
is abandoned: it keeps running, but its result is discarded.

Usage:
    orchestrator = ProviderOrchestrator(registry)
    result = await orchestrator.fetch_with_fallback("gold", lambda p: p.fetch_gold())
    merged = await orchestrator.fetch_parallel("crypto", lambda p: p.fetch_crypto(), "newest")
"""

import asyncio
import time
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple

from pydantic import BaseModel, Field

from core.config import settings
from core.errors import AllProvidersFailedError, CircuitOpenError, UpstreamError
from core.logging import get_logger, log_provider_event
from core.provider_interface import MarketDataProvider
from core.provider_registry import ProviderRegistry
from core.schemas import AVERAGE_FIELDS, FallbackResult, Item, MergeStrategy, ProviderRegistration


FetchFn = Callable[[MarketDataProvider], Awaitable[Any]]


class OrchestrationConfig(BaseModel):
    enable_fallback: bool = True
    max_fallback_attempts: int = Field(default=2, ge=0)
    request_timeout_ms: int = Field(default=15000, gt=0)
    enable_parallel_fetch: bool = False
    breaker_threshold: int = Field(default=5, gt=0)
    breaker_reset_ms: int = Field(default=60000, gt=0)
    merge_strategies: Dict[str, MergeStrategy] = Field(
        default_factory=lambda: {
            "currencies": "override",
            "crypto": "newest",
            "gold": "average",
            "coins": "override",
        }
    )

    @classmethod
    def from_settings(cls) -> "OrchestrationConfig":
        return cls(
            enable_fallback=settings.enable_fallback,
            max_fallback_attempts=settings.max_fallback_attempts,
            request_timeout_ms=settings.provider_request_timeout_ms,
            enable_parallel_fetch=settings.enable_parallel_fetch,
            breaker_threshold=settings.circuit_breaker_threshold,
            breaker_reset_ms=settings.circuit_breaker_reset_ms,
        )


class CircuitState(BaseModel):
    failures: int = 0
    last_failure: Optional[float] = None
    is_open: bool = False


class ProviderOrchestrator:
    """
    Fallback and fan-out across registered providers.

    Args:
        registry: Provider registry to route through
        config: Orchestration settings (defaults from ``settings``)
        clock: Monotonic clock in seconds (injectable for tests)
    """

    def __init__(
        self,
        registry: ProviderRegistry,
        config: Optional[OrchestrationConfig] = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.registry = registry
        self.config = config or OrchestrationConfig.from_settings()
        self._clock = clock
        self._breakers: Dict[str, CircuitState] = {}
        self._logger = get_logger(__name__)

    # ============================================
    # Fallback
    # ============================================

    async def fetch_with_fallback(self, data_type: str, fetch_fn: FetchFn) -> FallbackResult:
        """
        Fetch ``data_type`` from the primary provider, falling back by priority.

        Raises:
            AllProvidersFailedError: No provider available or every attempt failed
        """
        started = self._clock()
        providers = self.registry.get_providers_by_capability(data_type)
        if not providers:
            raise AllProvidersFailedError(data_type, [])

        limit = 1 + self.config.max_fallback_attempts if self.config.enable_fallback else 1
        primary = providers[0].name
        errors: List[Tuple[str, Exception]] = []

        for index, registration in enumerate(providers[:limit]):
            try:
                data = await self._try_provider(registration, fetch_fn)
            except Exception as e:
                errors.append((registration.name, e))
                self._logger.warning(
                    f"Provider {registration.name} failed for {data_type} "
                    f"(attempt {index + 1}/{min(limit, len(providers))}): {e}"
                )
                continue

            if index > 0:
                log_provider_event(registration.name, "fallback_used", data_type, f"primary {primary} failed")
            return FallbackResult(
                data=data,
                used_fallback=index > 0,
                attempts=index + 1,
                errors={name: str(err) for name, err in errors},
                primary_provider=primary,
                fallback_provider=registration.name if index > 0 else None,
                duration_ms=int((self._clock() - started) * 1000),
            )

        self._logger.error(f"All providers failed for {data_type} after {len(errors)} attempt(s)")
        raise AllProvidersFailedError(data_type, errors)

    # ============================================
    # Parallel Fetch + Merge
    # ============================================

    async def fetch_parallel(
        self,
        data_type: str,
        fetch_fn: FetchFn,
        merge_strategy: Optional[MergeStrategy] = None,
    ) -> Any:
        """
        Fetch from every capable provider concurrently and merge.

        Falls back to ``fetch_with_fallback`` when parallel fetch is disabled.
        All calls race one shared ``request_timeout_ms`` deadline; providers
        still running when it passes count as failed. A single successful
        result is returned unmodified.

        Raises:
            AllProvidersFailedError: Every provider failed
        """
        if not self.config.enable_parallel_fetch:
            return (await self.fetch_with_fallback(data_type, fetch_fn)).data

        providers = self.registry.get_providers_by_capability(data_type)
        if not providers:
            raise AllProvidersFailedError(data_type, [])

        # One deadline for the whole fan-out
        deadline = asyncio.get_running_loop().time() + self.config.request_timeout_ms / 1000.0
        outcomes = await asyncio.gather(
            *(self._try_provider(r, fetch_fn, deadline) for r in providers),
            return_exceptions=True,
        )

        successes: List[Any] = []
        errors: List[Tuple[str, Exception]] = []
        for registration, outcome in zip(providers, outcomes):
            if isinstance(outcome, BaseException):
                errors.append((registration.name, outcome))
            else:
                successes.append(outcome)

        if not successes:
            raise AllProvidersFailedError(data_type, errors)
        if errors:
            self._logger.warning(
                f"Parallel fetch for {data_type}: {len(successes)}/{len(providers)} providers succeeded"
            )
        if len(successes) == 1:
            return successes[0]

        strategy = merge_strategy or self.config.merge_strategies.get(data_type, "override")
        return self.merge_results(successes, strategy)

    def merge_results(self, results: List[Any], strategy: MergeStrategy) -> Any:
        """
        Merge provider results (ordered by priority) with ``strategy``.

        Raises:
            ValueError: If the strategy is unknown
        """
        if len(results) == 1:
            return results[0]
        if strategy == "override":
            return results[0]
        if not all(isinstance(r, list) for r in results):
            self._logger.warning(f"Cannot merge non-list results with '{strategy}', using override")
            return results[0]
        if strategy == "newest":
            return merge_newest(results)
        if strategy == "average":
            return merge_average(results)
        raise ValueError(f"Unknown merge strategy: {strategy}")

    # ============================================
    # Single Provider Call
    # ============================================

    async def _try_provider(
        self,
        registration: ProviderRegistration,
        fetch_fn: FetchFn,
        deadline: Optional[float] = None,
    ) -> Any:
        name = registration.name
        self._check_circuit(name)
        try:
            result = await self._with_timeout(name, fetch_fn(registration.provider), deadline)
        except Exception:
            self._record_failure(name)
            raise
        self._record_success(name)
        return result

    async def _with_timeout(self, name: str, call: Awaitable[Any], deadline: Optional[float] = None) -> Any:
        """Await ``call`` until ``deadline`` (loop time), or request_timeout_ms from now."""
        task = asyncio.ensure_future(call)
        if deadline is None:
            timeout = self.config.request_timeout_ms / 1000.0
        else:
            timeout = max(0.0, deadline - asyncio.get_running_loop().time())
        try:
            return await asyncio.wait_for(asyncio.shield(task), timeout)
        except asyncio.TimeoutError:
            task.add_done_callback(_discard_result)
            raise UpstreamError(
                f"Request timeout after {self.config.request_timeout_ms}ms",
                provider=name,
                retryable=True,
            )

    # ============================================
    # Circuit Breakers
    # ============================================

    def _check_circuit(self, name: str) -> None:
        state = self._breakers.setdefault(name, CircuitState())
        if not state.is_open:
            return
        elapsed_ms = (self._clock() - (state.last_failure or 0)) * 1000
        if elapsed_ms >= self.config.breaker_reset_ms:
            state.failures = 0
            state.is_open = False
            log_provider_event(name, "circuit_closed", details="reset timeout elapsed, retrying")
            return
        raise CircuitOpenError(name, retry_in_ms=int(self.config.breaker_reset_ms - elapsed_ms))

    def _record_failure(self, name: str) -> None:
        state = self._breakers.setdefault(name, CircuitState())
        state.failures += 1
        state.last_failure = self._clock()
        if state.failures >= self.config.breaker_threshold and not state.is_open:
            state.is_open = True
            log_provider_event(name, "circuit_open", details=f"{state.failures} failures")

    def _record_success(self, name: str) -> None:
        state = self._breakers.setdefault(name, CircuitState())
        if state.failures > 0:
            state.failures -= 1

    def get_circuit_breaker_status(self) -> Dict[str, CircuitState]:
        return {name: state.model_copy() for name, state in self._breakers.items()}

    def reset_circuit_breaker(self, name: Optional[str] = None) -> None:
        """Reset one provider's breaker, or all of them when ``name`` is None."""
        if name is None:
            self._breakers.clear()
            self._logger.info("All circuit breakers reset")
        else:
            self._breakers.pop(name, None)
            self._logger.info(f"Circuit breaker reset for {name}")

    # ============================================
    # Configuration
    # ============================================

    def get_config(self) -> OrchestrationConfig:
        return self.config.model_copy(deep=True)

    def update_config(self, **changes: Any) -> OrchestrationConfig:
        """
        Apply runtime configuration changes (validated).

        Example:
            >>> orchestrator.update_config(enable_parallel_fetch=True)
        """
        self.config = OrchestrationConfig(**{**self.config.model_dump(), **changes})
        self._logger.info(f"Orchestration config updated: {changes}")
        return self.get_config()


# ============================================
# Merge Strategies
# ============================================

def merge_newest(results: List[List[Item]]) -> List[Item]:
    merged: Dict[str, Item] = {}
    for items in results:
        for item in items:
            existing = merged.get(item.code)
            if existing is None or item.updated_at > existing.updated_at:
                merged[item.code] = item
    return list(merged.values())


def merge_average(results: List[List[Item]]) -> List[Item]:
    groups: Dict[str, List[Item]] = {}
    for items in results:
        for item in items:
            groups.setdefault(item.code, []).append(item)

    merged: List[Item] = []
    for code, group in groups.items():
        if len(group) == 1:
            merged.append(group[0])
            continue
        newest = max(group, key=lambda i: i.updated_at)
        update: Dict[str, Any] = {}
        for field in AVERAGE_FIELDS:
            values = [getattr(i, field) for i in group if getattr(i, field) is not None]
            if len(values) > 1:
                update[field] = sum(values) / len(values)
            elif values:
                update[field] = values[0]
        merged.append(newest.model_copy(update=update))
    return merged


def _discard_result(task: asyncio.Task) -> None:
    if not task.cancelled():
        task.exception()
