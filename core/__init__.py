"""
Core Package

Contains the provider-agnostic core of the pipeline:
- MarketDataProvider: Abstract base class every upstream provider implements
- ProviderRegistry: Registered providers with priority and capabilities
- ErrorTracker: Per-context error counting with a circuit-breaker threshold
- Schemas: Pydantic models for items, cache entries, snapshots and OHLC records
- Errors: The exception taxonomy shared by every layer

Nothing in this package knows about a specific vendor or storage engine.
"""
