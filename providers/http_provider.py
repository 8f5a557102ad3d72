"""
HTTP Market-Data Provider

A ``MarketDataProvider`` backed by the rate-limited fetch client and a
``Mapper``. One instance talks to one upstream vendor; the per-type endpoints
and the mapper configuration are the only vendor-specific parts.

Usage:
    provider = HttpMarketDataProvider(
        name="persianapi",
        base_url=settings.provider_base_url,
        api_key=settings.provider_api_key,
    )
    await provider.initialize()
    gold = await provider.fetch_gold()
"""

from typing import Dict, List, Optional

from core.config import settings
from core.errors import AuthError
from core.logging import get_logger
from core.provider_interface import MarketDataProvider
from core.schemas import FetchParams, Item, ProviderMetadata, RateLimitStatus
from providers.fetch_client import RateLimitedFetchClient
from providers.mapper import FieldMapper, Mapper


DEFAULT_ENDPOINTS: Dict[str, str] = {
    "currencies": "/currencies",
    "crypto": "/crypto",
    "gold": "/gold",
    "coins": "/coins",
}


class HttpMarketDataProvider(MarketDataProvider):
    """
    Provider that fetches JSON over HTTP and maps it to canonical items.

    Args:
        name: Provider name used for routing and logs
        base_url: Vendor base URL
        api_key: Vendor API key
        endpoints: Data type -> endpoint path
        mapper: Vendor mapper (defaults to a FieldMapper with configured multipliers)
        client: Pre-built fetch client (tests inject one)
        capabilities: Data types served
        version: Reported in metadata
    """

    def __init__(
        self,
        name: str,
        base_url: str,
        api_key: str = "",
        endpoints: Optional[Dict[str, str]] = None,
        mapper: Optional[Mapper] = None,
        client: Optional[RateLimitedFetchClient] = None,
        capabilities: Optional[set] = None,
        version: str = "1.0",
    ) -> None:
        self.name = name
        self.base_url = base_url
        self.api_key = api_key
        self.version = version
        self.endpoints = {**DEFAULT_ENDPOINTS, **(endpoints or {})}
        self.capabilities = set(capabilities or {"all"})
        self.mapper = mapper or FieldMapper(multipliers=settings.multipliers_map)
        self.client = client or RateLimitedFetchClient(base_url, api_key=api_key, provider_name=name)
        self.logger = get_logger(__name__)

    def get_metadata(self) -> ProviderMetadata:
        return ProviderMetadata(
            name=self.name,
            version=self.version,
            base_url=self.base_url,
            requires_auth=bool(self.api_key),
            rate_limit_per_second=1.0 / self.client.bucket.refill_interval,
        )

    async def _fetch_type(self, data_type: str, params: Optional[FetchParams]) -> List[Item]:
        query = params.as_query() if params else None
        payload = await self.client.fetch(self.endpoints[data_type], query)
        items = self.mapper.map_items(data_type, payload)
        self.logger.debug(f"{self.name} returned {len(items)} {data_type} items")
        return items

    async def fetch_currencies(self, params: Optional[FetchParams] = None) -> List[Item]:
        return await self._fetch_type("currencies", params)

    async def fetch_crypto(self, params: Optional[FetchParams] = None) -> List[Item]:
        return await self._fetch_type("crypto", params)

    async def fetch_gold(self, params: Optional[FetchParams] = None) -> List[Item]:
        return await self._fetch_type("gold", params)

    async def fetch_coins(self, params: Optional[FetchParams] = None) -> List[Item]:
        return await self._fetch_type("coins", params)

    async def validate_api_key(self) -> bool:
        """Probe the cheapest endpoint; False only when credentials are rejected."""
        try:
            await self.client.fetch(self.endpoints["currencies"], {"limit": 1})
        except AuthError:
            self.logger.error(f"{self.name} rejected the configured API key")
            return False
        return True

    def get_rate_limit_status(self) -> RateLimitStatus:
        return self.client.get_rate_limit_status()

    async def initialize(self) -> None:
        await self.client.open()

    async def shutdown(self) -> None:
        await self.client.close()
