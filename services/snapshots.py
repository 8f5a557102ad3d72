"""
Permanent Snapshot Service

Keeps one never-deleted copy of each category's prices per UTC hour. The
first successful fetch in an hour wins; later fetches in the same hour are
ignored. Snapshots back the "yesterday" view and any history query that the
OHLC records cannot answer.
"""

from datetime import datetime, timedelta
from typing import Callable, Dict, List, Optional

from core.config import settings
from core.logging import get_logger
from core.schemas import PermanentSnapshot, PriceItem
from core.utils.time import current_utc_datetime, ensure_utc, hour_bucket
from storage.repository import Repository


SNAPSHOTS = "snapshots"


class SnapshotService:
    """Hourly permanent snapshots keyed by (category, hour_bucket)."""

    def __init__(
        self,
        repository: Repository,
        clock: Callable[[], datetime] = current_utc_datetime,
    ) -> None:
        self.repository = repository
        self._clock = clock
        self._logger = get_logger(__name__)

    async def save_snapshot(
        self,
        category: str,
        payload: Dict[str, PriceItem],
        source: str = "api",
        at: Optional[datetime] = None,
    ) -> bool:
        """
        Save a snapshot for the hour containing ``at`` (default: now).

        Returns:
            True if a new snapshot was written, False if the hour already had one
        """
        now = ensure_utc(at) if at else self._clock()
        bucket = hour_bucket(now)
        snapshot = PermanentSnapshot(
            category=category,
            payload=payload,
            hour_bucket=bucket,
            source=source,
            created_at=now,
        )
        created = await self.repository.insert_if_absent(SNAPSHOTS, (category, bucket), snapshot)
        if created:
            self._logger.info(f"Saved {category} snapshot for {bucket.isoformat()} ({len(payload)} items)")
        return created

    async def find_closest_snapshot(
        self,
        category: str,
        target: datetime,
        window_hours: Optional[int] = None,
    ) -> Optional[PermanentSnapshot]:
        """
        Snapshot nearest to ``target`` within +/- ``window_hours``.

        Ties are broken in favour of the newer snapshot.
        """
        window = timedelta(hours=window_hours if window_hours is not None else settings.snapshot_search_window_hours)
        target = ensure_utc(target)
        candidates = await self.repository.find(
            SNAPSHOTS,
            lambda s: s.category == category and abs(s.hour_bucket - target) <= window,
            sort_key=lambda s: (abs(s.hour_bucket - target), -s.hour_bucket.timestamp()),
            limit=1,
        )
        return candidates[0] if candidates else None

    async def get_latest_snapshot(self, category: str) -> Optional[PermanentSnapshot]:
        latest = await self.repository.find(
            SNAPSHOTS,
            lambda s: s.category == category,
            sort_key=lambda s: s.hour_bucket,
            reverse=True,
            limit=1,
        )
        return latest[0] if latest else None

    async def get_snapshots_in_range(self, category: str, start: datetime, end: datetime) -> List[PermanentSnapshot]:
        start, end = ensure_utc(start), ensure_utc(end)
        return await self.repository.find(
            SNAPSHOTS,
            lambda s: s.category == category and start <= s.hour_bucket < end,
            sort_key=lambda s: s.hour_bucket,
        )
