"""
Dynamic Scheduler

Background service that keeps the cache warm. Each cycle refreshes every
configured category, then asks the ``SchedulePolicy`` how long to sleep before
the next cycle, so the cadence follows market hours (10 min at peak, 60 min
normally, 120 min on weekends).

Only one refresh cycle runs at a time. A manual trigger that arrives while a
cycle is in progress is dropped, not queued.

After each cycle the optional ``OHLCRollupJob`` checks whether the local
calendar has moved on and, if so, rolls up the previous day, week and month
and purges expired records.
"""

import asyncio
from datetime import date, datetime
from typing import Any, Awaitable, Callable, Dict, List, Optional

from core.config import settings
from core.logging import get_logger
from core.schemas import RefreshResult
from core.utils.time import current_utc_datetime
from services.cache_manager import TieredCacheManager
from services.ohlc_engine import OHLCEngine, month_start, week_start
from services.retention import RetentionService
from services.schedule_policy import SchedulePolicy


class OHLCRollupJob:
    """
    Runs OHLC rollups and retention once per local day.

    Rollups are idempotent, so running on the first cycle after a restart is
    harmless.
    """

    def __init__(self, ohlc: OHLCEngine, retention: Optional[RetentionService] = None) -> None:
        self.ohlc = ohlc
        self.retention = retention
        self._last_day: Optional[date] = None
        self._logger = get_logger(__name__)

    async def run_if_due(self) -> bool:
        today = self.ohlc.local_today()
        if self._last_day == today:
            return False
        previous, self._last_day = self._last_day, today

        await self._step("daily rollup", self.ohlc.rollup_daily())
        if previous is None or week_start(previous) != week_start(today):
            await self._step("weekly rollup", self.ohlc.rollup_previous_week())
        if previous is None or month_start(previous) != month_start(today):
            await self._step("monthly rollup", self.ohlc.rollup_previous_month())
        if self.retention is not None:
            await self._step("retention", self.retention.run())
        return True

    async def _step(self, label: str, job: Awaitable[Any]) -> None:
        try:
            result = await job
            self._logger.info(f"Maintenance {label} done: {result}")
        except Exception as e:
            self._logger.error(f"Maintenance {label} failed: {e}")


class DynamicScheduler:
    """
    Self-rescheduling refresh loop.

    Args:
        cache_manager: Cache to refresh
        policy: Interval policy (defaults from ``settings``)
        categories: Categories refreshed each cycle
        enabled: If False, ``start()`` is a no-op (manual triggers still work)
        rollup_job: Optional maintenance hook run after each cycle
        sleep: Awaitable sleep (injectable for tests)
        clock: Returns the current UTC datetime
    """

    def __init__(
        self,
        cache_manager: TieredCacheManager,
        policy: Optional[SchedulePolicy] = None,
        categories: Optional[List[str]] = None,
        enabled: Optional[bool] = None,
        rollup_job: Optional[OHLCRollupJob] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        clock: Callable[[], datetime] = current_utc_datetime,
    ) -> None:
        self.cache_manager = cache_manager
        self.policy = policy or SchedulePolicy()
        self.categories = categories or settings.categories_list
        self.enabled = settings.scheduler_enabled if enabled is None else enabled
        self.rollup_job = rollup_job
        self._sleep = sleep
        self._clock = clock
        self._logger = get_logger(__name__)

        self._running = asyncio.Event()
        self._task: Optional[asyncio.Task] = None
        self._is_fetching = False

        self.run_count = 0
        self.last_run: Optional[datetime] = None
        self.next_run: Optional[datetime] = None
        self.last_results: Dict[str, bool] = {}

    # ============================================
    # Lifecycle
    # ============================================

    async def start(self) -> None:
        if not self.enabled:
            self._logger.info("Scheduler disabled; not starting")
            return
        if self._running.is_set():
            return
        self._running.set()
        self._logger.info(f"Starting scheduler for {', '.join(self.categories)}...")
        self._task = asyncio.create_task(self._run(), name="market_scheduler")

    async def stop(self) -> None:
        if not self._running.is_set():
            return
        self._logger.info("Stopping scheduler...")
        self._running.clear()
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None

    @property
    def is_running(self) -> bool:
        return self._running.is_set()

    # ============================================
    # Core Loop
    # ============================================

    async def _run(self) -> None:
        while self._running.is_set():
            try:
                await self.run_once()
            except Exception as e:
                self._logger.error(f"Scheduler cycle error: {e}")

            interval = self.policy.get_current_interval()
            self.next_run = self.policy.get_next_scheduled_time()
            self._logger.info(
                f"Next refresh in {interval} min ({self.policy.get_current_period()}) "
                f"at {self.next_run.isoformat()}"
            )
            await self._sleep(interval * 60)

    async def run_once(self) -> Optional[Dict[str, bool]]:
        """
        Refresh every category concurrently.

        Returns:
            Category -> success, or None if a cycle was already in progress
        """
        if self._is_fetching:
            self._logger.warning("Refresh already in progress, skipping this trigger")
            return None

        self._is_fetching = True
        try:
            outcomes = await asyncio.gather(
                *(self.cache_manager.force_refresh(c) for c in self.categories),
                return_exceptions=True,
            )
            results: Dict[str, bool] = {}
            for category, outcome in zip(self.categories, outcomes):
                if isinstance(outcome, BaseException):
                    self._logger.error(f"Refresh of {category} raised: {outcome}")
                    results[category] = False
                elif isinstance(outcome, RefreshResult):
                    results[category] = outcome.success
                else:
                    results[category] = bool(outcome)

            succeeded = sum(results.values())
            self.run_count += 1
            self.last_run = self._clock()
            self.last_results = results
            if succeeded == 0:
                self._logger.critical(f"All {len(results)} category refreshes failed")
            else:
                self._logger.info(f"Refresh cycle complete: {succeeded}/{len(results)} categories succeeded")

            if self.rollup_job is not None:
                try:
                    await self.rollup_job.run_if_due()
                except Exception as e:
                    self._logger.error(f"OHLC rollup job failed: {e}")
            return results
        finally:
            self._is_fetching = False

    # ============================================
    # Manual Control / Status
    # ============================================

    async def trigger_manual_fetch(self) -> Dict[str, Any]:
        """
        Run a refresh cycle now.

        Returns:
            {"success": bool, "message": str}
        """
        self._logger.info("Manual refresh triggered")
        results = await self.run_once()
        if results is None:
            return {"success": False, "message": "A refresh is already in progress"}
        succeeded = sum(results.values())
        return {
            "success": succeeded > 0,
            "message": f"Refreshed {succeeded}/{len(results)} categories",
        }

    def get_status(self) -> Dict[str, Any]:
        return {
            "enabled": self.enabled,
            "running": self.is_running,
            "is_fetching": self._is_fetching,
            "categories": list(self.categories),
            "run_count": self.run_count,
            "last_run": self.last_run,
            "next_run": self.next_run,
            "last_results": dict(self.last_results),
            **self.policy.describe(),
        }
