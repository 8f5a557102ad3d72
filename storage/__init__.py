"""
Storage Package

Handles persistence behind a narrow repository interface.

Current implementation:
- InMemoryRepository: process-local collections guarded by an asyncio.Lock

The Repository ABC is the only thing the cache manager, snapshot service and
OHLC engine depend on, so a document store can replace the in-memory backend
without touching them.
"""

from storage.repository import Repository, InMemoryRepository

__all__ = ["Repository", "InMemoryRepository"]
