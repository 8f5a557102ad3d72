"""
Retention

Removes records that have outlived their usefulness:
- UpdateLogs older than ``update_log_retention_days`` (default 90)
- Fresh/stale cache entries past their ``expires_at``

Permanent snapshots, archived cache entries and OHLC records are never purged.
"""

from datetime import datetime, timedelta
from typing import Callable, Dict, Optional

from core.config import settings
from core.logging import get_logger
from core.utils.time import current_utc_datetime
from services.cache_manager import CACHE_ENTRIES
from services.ohlc_engine import UPDATE_LOGS
from storage.repository import Repository


class RetentionService:
    def __init__(
        self,
        repository: Repository,
        update_log_retention_days: Optional[int] = None,
        clock: Callable[[], datetime] = current_utc_datetime,
    ) -> None:
        self.repository = repository
        self.update_log_retention = timedelta(
            days=update_log_retention_days
            if update_log_retention_days is not None
            else settings.update_log_retention_days
        )
        self._clock = clock
        self._logger = get_logger(__name__)

    async def purge_update_logs(self) -> int:
        cutoff = self._clock() - self.update_log_retention
        removed = await self.repository.delete_where(UPDATE_LOGS, lambda log: log.created_at < cutoff)
        if removed:
            self._logger.info(f"Purged {removed} update log(s) older than {cutoff.date().isoformat()}")
        return removed

    async def purge_expired_cache(self) -> int:
        now = self._clock()
        removed = await self.repository.delete_where(
            CACHE_ENTRIES,
            lambda entry: entry.tier != "archived" and entry.is_expired(now),
        )
        if removed:
            self._logger.info(f"Purged {removed} expired cache entr{'y' if removed == 1 else 'ies'}")
        return removed

    async def run(self) -> Dict[str, int]:
        return {
            "update_logs": await self.purge_update_logs(),
            "cache_entries": await self.purge_expired_cache(),
        }
