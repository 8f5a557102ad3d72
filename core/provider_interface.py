"""
Provider Interface - Abstract Contract for Upstream Market-Data Providers

This module defines the abstract base class every upstream provider must
implement. The orchestrator, registry and cache manager only ever talk to
``MarketDataProvider``, so a new vendor is added by writing one subclass and
registering it.

Example:
    class PersianApiProvider(MarketDataProvider):
        name = "persianapi"

        async def fetch_currencies(self, params=None):
            raw = await self.client.fetch("/currencies", params)
            return self.mapper.map_items("currencies", raw)

    registry.register_provider(PersianApiProvider(...), priority=1)

Capabilities:
    Each provider declares the data types it can serve via ``capabilities``
    (a set of DataType values; "all" means every type). The registry uses it
    to pick providers per data type.
"""

from abc import ABC, abstractmethod
from typing import Dict, List, Optional, Set

from core.schemas import FetchParams, Item, ProviderMetadata, RateLimitStatus


DATA_TYPES = ("currencies", "crypto", "gold", "coins")


class MarketDataProvider(ABC):
    """
    Abstract Base Class for Upstream Providers

    Class Attributes:
        name: Unique identifier for the provider (lowercase)
        capabilities: Data types this provider can serve

    Abstract Methods (MUST be implemented by all providers):
        - get_metadata
        - fetch_currencies / fetch_crypto / fetch_gold / fetch_coins
        - validate_api_key
        - get_rate_limit_status

    Optional Methods (can be overridden):
        - fetch_all: default gathers the four per-type calls sequentially
        - get_available_items
        - initialize / shutdown
    """

    name: str
    """Unique provider identifier (lowercase). Example: "persianapi" """

    capabilities: Set[str] = {"all"}

    # ============================================
    # Metadata
    # ============================================

    @abstractmethod
    def get_metadata(self) -> ProviderMetadata:
        """Static description of the provider (name, base URL, rate limit)."""
        ...

    # ============================================
    # Data Fetching
    # ============================================

    @abstractmethod
    async def fetch_currencies(self, params: Optional[FetchParams] = None) -> List[Item]:
        """
        Fetch fiat currency prices.

        Returns:
            List[Item]: Canonical items. Empty list if the provider has none.

        Raises:
            UpstreamError: Network or HTTP failure
            AuthError: Credentials rejected
            ValidationError: Unexpected payload shape
        """
        ...

    @abstractmethod
    async def fetch_crypto(self, params: Optional[FetchParams] = None) -> List[Item]:
        ...

    @abstractmethod
    async def fetch_gold(self, params: Optional[FetchParams] = None) -> List[Item]:
        ...

    @abstractmethod
    async def fetch_coins(self, params: Optional[FetchParams] = None) -> List[Item]:
        ...

    async def fetch_all(self, params: Optional[FetchParams] = None) -> Dict[str, List[Item]]:
        """
        Fetch every data type.

        Calls run one after another because they share the provider's rate
        limit; running them concurrently would only queue on the token bucket.
        """
        return {
            "currencies": await self.fetch_currencies(params),
            "crypto": await self.fetch_crypto(params),
            "gold": await self.fetch_gold(params),
            "coins": await self.fetch_coins(params),
        }

    async def fetch(self, data_type: str, params: Optional[FetchParams] = None) -> List[Item]:
        """
        Dispatch to the per-type fetch method.

        Raises:
            ValueError: If ``data_type`` is unknown
        """
        if data_type not in DATA_TYPES:
            raise ValueError(f"Unknown data type: {data_type}. Must be one of: {', '.join(DATA_TYPES)}")
        return await getattr(self, f"fetch_{data_type}")(params)

    async def get_available_items(self) -> Dict[str, List[str]]:
        """Item codes per data type, derived from a full fetch."""
        data = await self.fetch_all()
        return {data_type: [item.code for item in items] for data_type, items in data.items()}

    # ============================================
    # Health / Limits
    # ============================================

    @abstractmethod
    async def validate_api_key(self) -> bool:
        """Return False if the provider rejects our credentials."""
        ...

    @abstractmethod
    def get_rate_limit_status(self) -> RateLimitStatus:
        ...

    # ============================================
    # Optional Lifecycle Methods
    # ============================================

    async def initialize(self) -> None:
        """
        Set up sessions or connections. Called by the registry on startup;
        must be idempotent.
        """
        pass

    async def shutdown(self) -> None:
        """Release sessions. Called by the registry on shutdown."""
        pass

    # ============================================
    # Helper Methods
    # ============================================

    def supports(self, data_type: str) -> bool:
        return data_type in self.capabilities or "all" in self.capabilities

    def __repr__(self) -> str:
        return f"<{self.__class__.__name__}(name='{self.name}')>"
