"""
Error / Circuit Tracker

A generic sliding-window failure counter keyed by an arbitrary context string
(e.g. "mapping:gold", "provider:persianapi"). Once a context accumulates
``threshold`` errors inside the window, ``track_error`` raises
``CircuitBreakerError`` so the caller can stop hammering the failing path.

Window semantics:
    The window is anchored at the first error of the current run. When an
    error arrives more than ``window_ms`` after that first error, the run is
    forgotten and counting restarts at 1.

Usage:
    tracker = ErrorTracker(threshold=5, window_ms=60_000)
    try:
        item = mapper.map(raw)
        tracker.reset_error("mapping:gold")
    except MappingError as e:
        tracker.track_error("mapping:gold", e)   # may raise CircuitBreakerError
"""

import time
from typing import Callable, Dict, List, Optional

from pydantic import BaseModel

from core.errors import CircuitBreakerError
from core.logging import get_logger


class ErrorStats(BaseModel):
    context: str
    count: int
    last_error: str
    error_type: str
    first_occurrence: float
    last_occurrence: float


class ErrorSummary(BaseModel):
    total_contexts: int
    total_errors: int
    critical_contexts: List[str]
    recent_errors: List[ErrorStats]


class ErrorTracker:
    """
    Sliding-window error counter with a circuit-breaker threshold.

    Args:
        threshold: Errors within the window that trip the breaker
        window_ms: Window length in milliseconds
        clock: Monotonic clock in seconds (injectable for tests)
    """

    WARNING_COUNT = 3

    def __init__(
        self,
        threshold: int = 5,
        window_ms: int = 60_000,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.threshold = threshold
        self.window_ms = window_ms
        self._clock = clock
        self._errors: Dict[str, ErrorStats] = {}
        self._logger = get_logger(__name__)

    def track_error(self, context: str, error: Exception) -> None:
        """
        Record an error for ``context``.

        Raises:
            CircuitBreakerError: When the context reaches the threshold
        """
        now = self._clock()
        existing = self._errors.get(context)

        if existing is None or (now - existing.first_occurrence) * 1000 > self.window_ms:
            stats = ErrorStats(
                context=context,
                count=1,
                last_error=str(error),
                error_type=type(error).__name__,
                first_occurrence=now,
                last_occurrence=now,
            )
            self._errors[context] = stats
        else:
            stats = existing
            stats.count += 1
            stats.last_error = str(error)
            stats.error_type = type(error).__name__
            stats.last_occurrence = now

        if stats.count >= self.threshold:
            elapsed_ms = int((now - stats.first_occurrence) * 1000)
            self._logger.error(
                f"Circuit breaker triggered for '{context}': {stats.count} errors "
                f"in {elapsed_ms}ms (threshold {self.threshold})"
            )
            raise CircuitBreakerError(context, stats.count, self.threshold)

        if stats.count >= self.WARNING_COUNT:
            self._logger.warning(
                f"Multiple errors for '{context}': {stats.count} errors, last: {error}"
            )

    def reset_error(self, context: str) -> None:
        """Forget all errors for ``context`` (call after a success)."""
        existing = self._errors.pop(context, None)
        if existing and existing.count > 1:
            self._logger.info(f"Recovered from errors in '{context}' (had {existing.count} errors)")

    def get_error_stats(self, context: str) -> Optional[ErrorStats]:
        return self._errors.get(context)

    def get_all_error_stats(self) -> List[ErrorStats]:
        return list(self._errors.values())

    def get_summary(self) -> ErrorSummary:
        all_stats = self.get_all_error_stats()
        return ErrorSummary(
            total_contexts=len(all_stats),
            total_errors=sum(s.count for s in all_stats),
            critical_contexts=[s.context for s in all_stats if s.count >= self.WARNING_COUNT],
            recent_errors=sorted(all_stats, key=lambda s: s.last_occurrence, reverse=True)[:5],
        )

    def has_errors(self, context: str) -> bool:
        return context in self._errors

    def get_error_count(self, context: str) -> int:
        stats = self._errors.get(context)
        return stats.count if stats else 0

    def clear(self) -> None:
        self._errors.clear()
        self._logger.debug("Error tracking data cleared")
