"""
Repository Interface and In-Memory Implementation

The pipeline never talks to a storage engine directly. Every component that
persists records (cache manager, snapshot service, OHLC engine, retention)
goes through the narrow ``Repository`` interface below, which works on named
collections of Pydantic records addressed by tuple keys.

Operations:
    - get: Fetch one record by key
    - upsert_atomic: Read-modify-write a record under the repository lock
    - find: Filter (predicate) + sort + limit
    - insert_if_absent: Idempotent insert, returns False if the key exists
    - insert_many_unordered: Best-effort bulk insert, duplicates skipped
    - append: Insert into an append-only collection (auto key)
    - delete / delete_where: Remove records

Collections used by the pipeline:
    cache_entries  (category, tier)              [archived entries appended]
    snapshots      (category, hour_bucket)
    ohlc           (item_code, timeframe, period_start)
    update_logs    append-only

Usage:
    repo = InMemoryRepository()
    entry = await repo.upsert_atomic("cache_entries", ("gold", "fresh"), lambda old: new_entry)
"""

import asyncio
import itertools
from abc import ABC, abstractmethod
from collections import defaultdict
from typing import Callable, DefaultDict, Dict, Hashable, Iterable, List, Optional, Tuple, TypeVar

from pydantic import BaseModel

from core.logging import get_logger


RecordT = TypeVar("RecordT", bound=BaseModel)
Key = Tuple[Hashable, ...]
Predicate = Callable[[BaseModel], bool]


class Repository(ABC):
    """Abstract storage contract used by all pipeline components."""

    @abstractmethod
    async def get(self, collection: str, key: Key) -> Optional[BaseModel]:
        pass

    @abstractmethod
    async def upsert_atomic(
        self,
        collection: str,
        key: Key,
        mutator: Callable[[Optional[RecordT]], RecordT],
    ) -> RecordT:
        """
        Apply ``mutator`` to the current record (or None) and store the result.

        The read and the write happen under one lock, so concurrent upserts of
        the same key never lose an update and there is never a moment where
        the key has no record.
        """

    @abstractmethod
    async def find(
        self,
        collection: str,
        predicate: Optional[Predicate] = None,
        sort_key: Optional[Callable[[BaseModel], object]] = None,
        reverse: bool = False,
        limit: Optional[int] = None,
    ) -> List[BaseModel]:
        pass

    @abstractmethod
    async def insert_if_absent(self, collection: str, key: Key, record: BaseModel) -> bool:
        pass

    @abstractmethod
    async def insert_many_unordered(self, collection: str, records: Iterable[Tuple[Key, BaseModel]]) -> int:
        """Insert every record whose key is free. Returns the number inserted."""

    @abstractmethod
    async def append(self, collection: str, record: BaseModel) -> None:
        pass

    @abstractmethod
    async def delete(self, collection: str, key: Key) -> bool:
        pass

    @abstractmethod
    async def delete_where(self, collection: str, predicate: Predicate) -> int:
        pass


class InMemoryRepository(Repository):
    """
    Process-local repository backed by dictionaries.

    Records are deep-copied on the way in and out so callers can never mutate
    stored state behind the lock.
    """

    def __init__(self) -> None:
        self._collections: DefaultDict[str, Dict[Key, BaseModel]] = defaultdict(dict)
        self._lock = asyncio.Lock()
        self._seq = itertools.count()
        self._logger = get_logger(__name__)

    async def get(self, collection: str, key: Key) -> Optional[BaseModel]:
        record = self._collections[collection].get(key)
        return record.model_copy(deep=True) if record is not None else None

    async def upsert_atomic(self, collection, key, mutator):
        async with self._lock:
            current = self._collections[collection].get(key)
            updated = mutator(current.model_copy(deep=True) if current is not None else None)
            self._collections[collection][key] = updated.model_copy(deep=True)
            return updated

    async def find(self, collection, predicate=None, sort_key=None, reverse=False, limit=None):
        records = [r for r in self._collections[collection].values() if predicate is None or predicate(r)]
        if sort_key is not None:
            records.sort(key=sort_key, reverse=reverse)
        if limit is not None:
            records = records[:limit]
        return [r.model_copy(deep=True) for r in records]

    async def insert_if_absent(self, collection: str, key: Key, record: BaseModel) -> bool:
        async with self._lock:
            if key in self._collections[collection]:
                return False
            self._collections[collection][key] = record.model_copy(deep=True)
            return True

    async def insert_many_unordered(self, collection, records) -> int:
        inserted = 0
        async with self._lock:
            for key, record in records:
                if key in self._collections[collection]:
                    self._logger.debug(f"Skipping duplicate {collection} record {key}")
                    continue
                self._collections[collection][key] = record.model_copy(deep=True)
                inserted += 1
        return inserted

    async def append(self, collection: str, record: BaseModel) -> None:
        async with self._lock:
            self._collections[collection][("_seq", next(self._seq))] = record.model_copy(deep=True)

    async def delete(self, collection: str, key: Key) -> bool:
        async with self._lock:
            return self._collections[collection].pop(key, None) is not None

    async def delete_where(self, collection: str, predicate: Predicate) -> int:
        async with self._lock:
            doomed = [k for k, r in self._collections[collection].items() if predicate(r)]
            for k in doomed:
                del self._collections[collection][k]
            return len(doomed)

    def count(self, collection: str) -> int:
        return len(self._collections[collection])
