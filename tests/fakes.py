"""
Test doubles shared by the unit tests.

FakeProvider implements MarketDataProvider entirely in memory: each data type
returns a configured item list, raises a configured exception, or waits for a
configured delay first.
"""

import asyncio
from datetime import datetime, timedelta, timezone
from typing import Dict, List, Optional, Union

from core.provider_interface import MarketDataProvider
from core.schemas import FetchParams, Item, ProviderMetadata, RateLimitStatus


T0 = datetime(2024, 1, 1, 12, 0, tzinfo=timezone.utc)


def make_item(code: str, price: float, updated_at: Optional[datetime] = None, **extra) -> Item:
    return Item(code=code, name=code.title(), price=price, updated_at=updated_at or T0, **extra)


class FakeClock:
    """Settable UTC clock."""

    def __init__(self, now: datetime = T0):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


class FakeProvider(MarketDataProvider):
    def __init__(
        self,
        name: str,
        responses: Optional[Dict[str, Union[List[Item], Exception]]] = None,
        capabilities=None,
        delay: float = 0.0,
        api_key_valid: bool = True,
    ):
        self.name = name
        self.responses = responses or {}
        self.capabilities = set(capabilities or {"all"})
        self.delay = delay
        self.api_key_valid = api_key_valid
        self.calls: List[str] = []
        self.initialized = False

    async def _respond(self, data_type: str) -> List[Item]:
        self.calls.append(data_type)
        if self.delay:
            await asyncio.sleep(self.delay)
        response = self.responses.get(data_type, [])
        if isinstance(response, Exception):
            raise response
        return list(response)

    def get_metadata(self) -> ProviderMetadata:
        return ProviderMetadata(name=self.name, base_url="memory://", rate_limit_per_second=1.0)

    async def fetch_currencies(self, params: Optional[FetchParams] = None) -> List[Item]:
        return await self._respond("currencies")

    async def fetch_crypto(self, params: Optional[FetchParams] = None) -> List[Item]:
        return await self._respond("crypto")

    async def fetch_gold(self, params: Optional[FetchParams] = None) -> List[Item]:
        return await self._respond("gold")

    async def fetch_coins(self, params: Optional[FetchParams] = None) -> List[Item]:
        return await self._respond("coins")

    async def validate_api_key(self) -> bool:
        return self.api_key_valid

    def get_rate_limit_status(self) -> RateLimitStatus:
        return RateLimitStatus(remaining=1, reset=T0, total=720)

    async def initialize(self) -> None:
        self.initialized = True

    async def shutdown(self) -> None:
        self.initialized = False
