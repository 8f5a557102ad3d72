"""
Services Package

Long-lived pipeline components built on top of core/ and providers/:
- orchestrator: Circuit breakers, provider fallback, parallel fetch + merge
- cache_manager: Fresh/stale/permanent cache tiers and historical reads
- snapshots: Hourly permanent snapshots
- ohlc_engine: Intraday OHLC recording and daily/weekly/monthly rollups
- schedule_policy / scheduler: Market-hours-aware refresh loop
- retention: Purging of expired records
"""
