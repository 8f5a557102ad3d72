"""
Providers Package

Contains the upstream side of the pipeline:
- fetch_client: Rate-limited, coalescing, retrying HTTP client (aiohttp)
- mapper: Vendor payload -> canonical Item normalization
- http_provider: MarketDataProvider implementation built from the two
"""

from providers.fetch_client import RateLimitedFetchClient, TokenBucket
from providers.http_provider import HttpMarketDataProvider
from providers.mapper import FieldMapper, Mapper

__all__ = ["RateLimitedFetchClient", "TokenBucket", "HttpMarketDataProvider", "FieldMapper", "Mapper"]
