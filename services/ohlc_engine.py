"""
OHLC Aggregation Engine

Owns every ``OHLCRecord`` and ``UpdateLog`` in the system.

Timeframes:
    minute - Live intraday record, one per (item, local trading day). Every
             recorded price updates it: open is set on insert only, high/low
             track the extremes, close is always the latest price. A ring
             buffer of the last ``max_points`` samples feeds intraday charts.
    day    - Derived from the finished intraday record exactly once. Once a
             Day record exists it is authoritative and never recomputed.
    week   - Rollup of Day records (weeks start on Saturday, local time).
    month  - Rollup of Day records for a calendar month (local time).

Rollups are idempotent: a period that already has a rollup is skipped, and a
period with no Day records logs a warning and does nothing (markets closed).

Usage:
    engine = OHLCEngine(repository)
    await engine.record_point("USD_SELL", 615000)
    today = await engine.get_today("USD_SELL")
    await engine.rollup("week", date(2024, 1, 6))
"""

import math
import time
from datetime import date, datetime, timedelta
from typing import Callable, Dict, List, Optional, Tuple

from core.config import settings
from core.logging import get_logger
from core.schemas import IntradayPoint, Item, OHLCRecord, Timeframe, UpdateLog, UpdateStatus
from core.utils.time import (
    current_utc_datetime,
    ensure_utc,
    local_day_bounds,
    local_time_str,
    to_local,
)
from storage.repository import Repository


OHLC = "ohlc"
UPDATE_LOGS = "update_logs"
ROLLUP_TIMEFRAMES = ("week", "month")


def week_start(day: date) -> date:
    """Saturday on or before ``day``."""
    return day - timedelta(days=(day.weekday() - 5) % 7)


def month_start(day: date) -> date:
    return day.replace(day=1)


def next_month(day: date) -> date:
    return (day.replace(day=28) + timedelta(days=4)).replace(day=1)


class OHLCEngine:
    """
    Intraday recorder plus daily/weekly/monthly rollups.

    Args:
        repository: Storage for "ohlc" and "update_logs"
        tz_name: Timezone that defines the trading day
        max_points: Intraday ring buffer size
        clock: Returns the current UTC datetime (injectable for tests)
    """

    def __init__(
        self,
        repository: Repository,
        tz_name: str = None,
        max_points: int = None,
        clock: Callable[[], datetime] = current_utc_datetime,
    ) -> None:
        self.repository = repository
        self.tz_name = tz_name or settings.local_timezone
        self.max_points = max_points or settings.intraday_max_points
        self._clock = clock
        self._logger = get_logger(__name__)

    # ============================================
    # Intraday Recording
    # ============================================

    def local_today(self) -> date:
        return to_local(self._clock(), self.tz_name).date()

    async def record_point(
        self,
        item_code: str,
        price: float,
        timestamp: Optional[datetime] = None,
    ) -> Optional[OHLCRecord]:
        """
        Fold one price into the item's intraday record for its local day.

        Non-positive and NaN prices are ignored.

        Returns:
            The updated intraday record, or None if the price was skipped
        """
        if price is None or math.isnan(price) or math.isinf(price) or price <= 0:
            self._logger.debug(f"Skipping invalid price {price!r} for {item_code}")
            return None

        ts = ensure_utc(timestamp) if timestamp else self._clock()
        local_day = to_local(ts, self.tz_name).date()
        start, end = local_day_bounds(local_day, self.tz_name)
        point = IntradayPoint(time=local_time_str(ts, self.tz_name), price=price)
        code = item_code.upper()

        def mutate(current: Optional[OHLCRecord]) -> OHLCRecord:
            if current is None:
                return OHLCRecord(
                    item_code=code,
                    timeframe="minute",
                    open=price,
                    high=price,
                    low=price,
                    close=price,
                    period_start=start,
                    period_end=end,
                    data_point_count=1,
                    local_date=local_day.isoformat(),
                    points=[point],
                    update_count=1,
                    first_update=ts,
                    last_update=ts,
                )
            return OHLCRecord(
                **{
                    **current.model_dump(),
                    "high": max(current.high, price),
                    "low": min(current.low, price),
                    "close": price,
                    "points": (current.points + [point])[-self.max_points:],
                    "data_point_count": current.data_point_count + 1,
                    "update_count": current.update_count + 1,
                    "last_update": ts,
                }
            )

        return await self.repository.upsert_atomic(OHLC, (code, "minute", start), mutate)

    async def record_items(self, items: List[Item], timestamp: Optional[datetime] = None) -> int:
        """
        Record the price of every item and write one realtime UpdateLog.

        Returns:
            Number of prices recorded
        """
        started = time.monotonic()
        ts = ensure_utc(timestamp) if timestamp else self._clock()
        recorded = 0
        for item in items:
            if await self.record_point(item.code, item.price, ts) is not None:
                recorded += 1

        if items:
            start, end = local_day_bounds(to_local(ts, self.tz_name).date(), self.tz_name)
            await self._log_update(
                item_code="*",
                timeframe="minute",
                window=(start, end),
                update_type="realtime",
                records_affected=recorded,
                status="success" if recorded == len(items) else "partial",
                started=started,
                metadata={"items": len(items)},
            )
        self._logger.debug(f"Recorded {recorded}/{len(items)} intraday prices")
        return recorded

    # ============================================
    # Queries
    # ============================================

    async def get_by_date(self, item_code: str, day: date) -> Optional[OHLCRecord]:
        """Intraday record of ``item_code`` for a local trading day."""
        start, _ = local_day_bounds(day, self.tz_name)
        return await self.repository.get(OHLC, (item_code.upper(), "minute", start))

    async def get_today(self, item_code: str) -> Optional[OHLCRecord]:
        return await self.get_by_date(item_code, self.local_today())

    async def get_yesterday(self, item_code: str) -> Optional[OHLCRecord]:
        return await self.get_by_date(item_code, self.local_today() - timedelta(days=1))

    async def get_all_today(self) -> List[OHLCRecord]:
        start, _ = local_day_bounds(self.local_today(), self.tz_name)
        return await self.repository.find(
            OHLC,
            lambda r: r.timeframe == "minute" and r.period_start == start,
            sort_key=lambda r: r.item_code,
        )

    async def get_daily_change_percent(self, item_code: str) -> Optional[float]:
        """((close - open) / open) * 100 for today, rounded to 2 decimals."""
        record = await self.get_today(item_code)
        if record is None or record.open == 0:
            return None
        return round((record.close - record.open) / record.open * 100, 2)

    async def get_historical(self, item_code: str, day: date) -> Optional[OHLCRecord]:
        """
        OHLC for one item and local day: the Day record if one exists,
        otherwise the intraday record.
        """
        start, _ = local_day_bounds(day, self.tz_name)
        record = await self.repository.get(OHLC, (item_code.upper(), "day", start))
        if record is not None:
            return record
        return await self.get_by_date(item_code, day)

    async def find_records(
        self,
        timeframe: Timeframe,
        item_codes: List[str],
        start: datetime,
        end: datetime,
    ) -> List[OHLCRecord]:
        """Records of ``timeframe`` for ``item_codes`` with start <= period_start < end."""
        codes = {c.upper() for c in item_codes}
        return await self.repository.find(
            OHLC,
            lambda r: r.timeframe == timeframe and r.item_code in codes and start <= r.period_start < end,
            sort_key=lambda r: (r.item_code, r.period_start),
        )

    async def aggregate_day(self, item_codes: List[str], day: date) -> Dict[str, OHLCRecord]:
        """
        Day-level OHLC for ``item_codes`` on a local day.

        Each code uses its Day record when one exists; codes without one fold
        their Minute-level records inside the day (open first, high max, low
        min, close last).
        """
        start, end = local_day_bounds(day, self.tz_name)
        result = {r.item_code: r for r in await self.find_records("day", item_codes, start, end)}

        missing = [c for c in item_codes if c.upper() not in result]
        if not missing:
            return result

        grouped: Dict[str, List[OHLCRecord]] = {}
        for record in await self.find_records("minute", missing, start, end):
            grouped.setdefault(record.item_code, []).append(record)
        for code, records in grouped.items():
            result[code] = _fold(code, "day", records, start, end)
        return result

    async def get_statistics(self) -> Dict[str, object]:
        records = await self.repository.find(OHLC)
        by_timeframe: Dict[str, int] = {}
        for record in records:
            by_timeframe[record.timeframe] = by_timeframe.get(record.timeframe, 0) + 1
        dates = sorted({r.local_date for r in records if r.local_date})
        return {
            "total_records": len(records),
            "by_timeframe": by_timeframe,
            "unique_items": len({r.item_code for r in records}),
            "oldest_date": dates[0] if dates else None,
            "newest_date": dates[-1] if dates else None,
        }

    # ============================================
    # Rollups
    # ============================================

    async def rollup_daily(self, day: Optional[date] = None) -> int:
        """
        Derive Day records from the intraday records of a finished local day.

        Existing Day records are left untouched.

        Raises:
            ValueError: If ``day`` is today or in the future
        """
        day = day or self.local_today() - timedelta(days=1)
        if day >= self.local_today():
            raise ValueError(f"Cannot roll up unfinished day {day.isoformat()}")

        started = time.monotonic()
        start, end = local_day_bounds(day, self.tz_name)
        minute_records = await self.repository.find(
            OHLC, lambda r: r.timeframe == "minute" and r.period_start == start
        )
        if not minute_records:
            self._logger.warning(f"No intraday data to roll up for {day.isoformat()}")
            return 0

        day_records = [
            (
                (r.item_code, "day", start),
                OHLCRecord(
                    item_code=r.item_code,
                    timeframe="day",
                    open=r.open,
                    high=r.high,
                    low=r.low,
                    close=r.close,
                    period_start=start,
                    period_end=end,
                    data_point_count=r.data_point_count,
                    local_date=day.isoformat(),
                ),
            )
            for r in minute_records
        ]
        inserted = await self.repository.insert_many_unordered(OHLC, day_records)
        await self._log_update(
            item_code="*",
            timeframe="day",
            window=(start, end),
            update_type="aggregation",
            records_affected=inserted,
            status="success",
            started=started,
            metadata={"candidates": len(day_records), "skipped_existing": len(day_records) - inserted},
        )
        self._logger.info(f"Daily rollup {day.isoformat()}: {inserted} new Day record(s)")
        return inserted

    def period_bounds(self, timeframe: Timeframe, anchor: date) -> Tuple[date, date]:
        """
        Local calendar period containing ``anchor``.

        Returns:
            (first_day, first_day_of_next_period)

        Raises:
            ValueError: For timeframes that are not rolled up
        """
        if timeframe == "week":
            first = week_start(anchor)
            return first, first + timedelta(days=7)
        if timeframe == "month":
            first = month_start(anchor)
            return first, next_month(first)
        raise ValueError(f"Cannot roll up timeframe '{timeframe}'. Must be one of: {', '.join(ROLLUP_TIMEFRAMES)}")

    async def rollup(self, timeframe: Timeframe, period: date) -> int:
        """
        Aggregate the Day records of the week/month containing ``period``.

        Returns:
            Number of rollup records written (0 if the period was already
            rolled up or had no Day records)
        """
        first_day, next_first = self.period_bounds(timeframe, period)
        start = local_day_bounds(first_day, self.tz_name)[0]
        end = local_day_bounds(next_first, self.tz_name)[0]
        label = f"{timeframe} {first_day.isoformat()}..{(next_first - timedelta(days=1)).isoformat()}"
        started = time.monotonic()

        existing = await self.repository.find(
            OHLC, lambda r: r.timeframe == timeframe and r.period_start == start, limit=1
        )
        if existing:
            self._logger.info(f"Rollup for {label} already complete")
            return 0

        day_records = await self.repository.find(
            OHLC,
            lambda r: r.timeframe == "day" and start <= r.period_start < end,
            sort_key=lambda r: r.period_start,
        )
        if not day_records:
            self._logger.warning(f"No daily data found for {label}")
            return 0

        grouped: Dict[str, List[OHLCRecord]] = {}
        for record in day_records:
            grouped.setdefault(record.item_code, []).append(record)

        rollups = [
            ((code, timeframe, start), _fold(code, timeframe, records, start, end))
            for code, records in grouped.items()
        ]
        inserted = await self.repository.insert_many_unordered(OHLC, rollups)
        status: UpdateStatus = "success" if inserted == len(rollups) else "partial"
        await self._log_update(
            item_code="*",
            timeframe=timeframe,
            window=(start, end),
            update_type="aggregation",
            records_affected=inserted,
            status=status,
            started=started,
            metadata={"items": len(rollups), "days": len(day_records)},
        )
        self._logger.info(f"Rollup for {label}: {inserted} item(s) aggregated")
        return inserted

    async def rollup_previous_week(self) -> int:
        return await self.rollup("week", week_start(self.local_today()) - timedelta(days=7))

    async def rollup_previous_month(self) -> int:
        return await self.rollup("month", month_start(self.local_today()) - timedelta(days=1))

    # ============================================
    # Update Logs
    # ============================================

    async def _log_update(
        self,
        item_code: str,
        timeframe: Timeframe,
        window: Tuple[datetime, datetime],
        update_type: str,
        records_affected: int,
        status: UpdateStatus,
        started: float,
        metadata: Optional[dict] = None,
        error_details: Optional[str] = None,
    ) -> None:
        log = UpdateLog(
            item_code=item_code,
            timeframe=timeframe,
            window_start=window[0],
            window_end=window[1],
            update_type=update_type,
            records_affected=records_affected,
            status=status,
            duration_ms=int((time.monotonic() - started) * 1000),
            error_details=error_details,
            metadata=metadata or {},
            created_at=self._clock(),
        )
        await self.repository.append(UPDATE_LOGS, log)

    async def get_update_logs(self, limit: int = 50) -> List[UpdateLog]:
        return await self.repository.find(
            UPDATE_LOGS, sort_key=lambda log: log.created_at, reverse=True, limit=limit
        )


def _fold(
    item_code: str,
    timeframe: Timeframe,
    records: List[OHLCRecord],
    start: datetime,
    end: datetime,
) -> OHLCRecord:
    ordered = sorted(records, key=lambda r: r.period_start)
    return OHLCRecord(
        item_code=item_code,
        timeframe=timeframe,
        open=ordered[0].open,
        high=max(r.high for r in ordered),
        low=min(r.low for r in ordered),
        close=ordered[-1].close,
        period_start=start,
        period_end=end,
        data_point_count=len(ordered),
        local_date=ordered[0].local_date,
    )
