"""
Test Suite

Structure:
- tests/unit/: Tests for individual components (fetch client, orchestrator,
  cache tiers, OHLC engine, scheduler, API routes)

Uses pytest with pytest-asyncio. Network calls, clocks and sleeps are
replaced with fakes so every test is deterministic.
"""
