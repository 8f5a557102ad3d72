"""
Configuration Management Module

This module handles loading, validating, and providing access to the pipeline
configuration from environment variables (.env file).

Uses Pydantic Settings for automatic validation and type conversion.

Key Features:
- Loads configuration from .env file
- Provides type-safe access to every tunable of the pipeline
  (rate limiting, circuit breakers, cache TTLs, OHLC, scheduling)
- Converts comma-separated strings to lists (categories, schedule days)
- Handles optional settings with sensible defaults

Usage:
    from core.config import settings

    print(settings.provider_base_url)
    print(settings.categories_list)      # ['currencies', 'crypto', 'gold', 'coins']
    print(settings.peak_days_list)       # [1, 2, 3]
"""

from typing import Dict, List
from pydantic_settings import BaseSettings, SettingsConfigDict
from pydantic import Field


# Day numbering used by every *_days setting: 0 = Sunday, 1 = Monday, ..., 6 = Saturday
VALID_CATEGORIES = ("currencies", "crypto", "gold", "coins")


class Settings(BaseSettings):
    """
    Application Settings

    Values are automatically loaded from environment variables or .env file.
    Field names map case-insensitively to environment variables, e.g.
    ``SCHEDULE_PEAK_INTERVAL=15`` overrides ``schedule_peak_interval``.
    """

    # ============================================
    # Upstream Provider Configuration
    # ============================================

    provider_name: str = Field(
        default="persianapi",
        description="Name under which the default HTTP provider is registered"
    )

    provider_base_url: str = Field(
        default="https://studio.persianapi.com/index.php/web-service",
        description="Base URL of the default upstream market-data provider"
    )

    provider_api_key: str = Field(
        default="",
        description="API key for the upstream provider (sent as a bearer token)"
    )

    provider_requests_per_hour: int = Field(
        default=720,
        description="Upstream request quota per hour, reported in rate-limit status"
    )

    mapper_multipliers: str = Field(
        default="SEKKEH:1000,BAHAR:1000,NIM:1000,ROB:1000,GERAMI:1000",
        description="CODE:factor pairs applied by the mapper (vendor reports coins in thousands)"
    )

    # ============================================
    # Application Configuration
    # ============================================

    app_host: str = Field(
        default="0.0.0.0",
        description="FastAPI server host address"
    )

    app_port: int = Field(
        default=8000,
        description="FastAPI server port"
    )

    environment: str = Field(
        default="development",
        description="Application environment (development, production)"
    )

    log_level: str = Field(
        default="INFO",
        description="Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)"
    )

    categories: str = Field(
        default="currencies,crypto,gold,coins",
        description="Comma-separated list of categories refreshed by the scheduler"
    )

    # ============================================
    # Fetch Client (Rate Limiting, Coalescing, Retry)
    # ============================================

    rate_limit_interval_ms: int = Field(
        default=5000,
        description="Token bucket refill interval (one request per interval)"
    )

    coalesce_ttl_ms: int = Field(
        default=5000,
        description="How long a settled request stays shared with identical callers"
    )

    max_retries: int = Field(
        default=3,
        description="Retries for retryable upstream failures"
    )

    retry_base_delay_ms: int = Field(
        default=1000,
        description="Base delay for exponential backoff"
    )

    retry_max_delay_ms: int = Field(
        default=10000,
        description="Upper bound for a single backoff delay"
    )

    request_timeout: int = Field(
        default=30,
        description="HTTP request timeout in seconds"
    )

    # ============================================
    # Provider Orchestration
    # ============================================

    enable_fallback: bool = Field(
        default=True,
        description="Try lower-priority providers when the primary fails"
    )

    max_fallback_attempts: int = Field(
        default=2,
        description="Number of providers tried after the primary"
    )

    provider_request_timeout_ms: int = Field(
        default=15000,
        description="Timeout for a single provider call inside the orchestrator"
    )

    enable_parallel_fetch: bool = Field(
        default=False,
        description="Fan out to all capable providers and merge the results"
    )

    circuit_breaker_threshold: int = Field(
        default=5,
        description="Consecutive provider failures that open its circuit"
    )

    circuit_breaker_reset_ms: int = Field(
        default=60000,
        description="Time since last failure before an open circuit closes again"
    )

    error_threshold: int = Field(
        default=5,
        description="Errors per context within the window that trip the error tracker"
    )

    error_window_ms: int = Field(
        default=60000,
        description="Sliding window for the error tracker"
    )

    # ============================================
    # Tiered Cache
    # ============================================

    fresh_cache_ttl_minutes: int = Field(
        default=5,
        description="TTL of the fresh cache tier"
    )

    stale_cache_ttl_hours: int = Field(
        default=168,
        description="TTL of the stale (fallback) cache tier"
    )

    snapshot_search_window_hours: int = Field(
        default=6,
        description="Window around a target time searched for the closest snapshot"
    )

    # ============================================
    # OHLC Engine
    # ============================================

    local_timezone: str = Field(
        default="Asia/Tehran",
        description="Timezone that defines the trading day"
    )

    intraday_max_points: int = Field(
        default=144,
        description="Size of the intraday chart ring buffer per item"
    )

    update_log_retention_days: int = Field(
        default=90,
        description="Days an OHLC update log entry is kept"
    )

    # ============================================
    # Dynamic Scheduler
    # ============================================

    scheduler_enabled: bool = Field(
        default=True,
        description="Run the background refresh loop"
    )

    schedule_peak_days: str = Field(
        default="1,2,3",
        description="Comma-separated peak days (0 = Sunday)"
    )

    schedule_peak_hours_start: int = Field(
        default=8,
        description="First local hour of the peak window"
    )

    schedule_peak_hours_end: int = Field(
        default=14,
        description="Local hour at which the peak window ends (exclusive)"
    )

    schedule_peak_interval: int = Field(
        default=10,
        description="Refresh interval in minutes during peak hours"
    )

    schedule_normal_days: str = Field(
        default="1,2,3",
        description="Comma-separated normal days (0 = Sunday)"
    )

    schedule_normal_interval: int = Field(
        default=60,
        description="Refresh interval in minutes outside peak hours"
    )

    schedule_weekend_days: str = Field(
        default="4,5",
        description="Comma-separated weekend days (0 = Sunday)"
    )

    schedule_weekend_interval: int = Field(
        default=120,
        description="Refresh interval in minutes on weekend days"
    )

    # ============================================
    # Pydantic Settings Configuration
    # ============================================

    model_config = SettingsConfigDict(
        env_file=".env",
        extra="ignore",
        case_sensitive=False
    )

    # ============================================
    # Custom Properties
    # ============================================

    @property
    def categories_list(self) -> List[str]:
        """
        Convert comma-separated categories string to a list.

        Example:
            >>> settings.categories_list
            ['currencies', 'crypto', 'gold', 'coins']
        """
        return [c.strip().lower() for c in self.categories.split(",") if c.strip()]

    @property
    def multipliers_map(self) -> Dict[str, float]:
        """
        Parse mapper multipliers into a dict.

        Example:
            >>> settings.multipliers_map["SEKKEH"]
            1000.0
        """
        result = {}
        for pair in self.mapper_multipliers.split(","):
            if ":" not in pair:
                continue
            code, factor = pair.split(":", 1)
            result[code.strip().upper()] = float(factor)
        return result

    @property
    def peak_days_list(self) -> List[int]:
        return _parse_days(self.schedule_peak_days)

    @property
    def normal_days_list(self) -> List[int]:
        return _parse_days(self.schedule_normal_days)

    @property
    def weekend_days_list(self) -> List[int]:
        return _parse_days(self.schedule_weekend_days)


def _parse_days(raw: str) -> List[int]:
    return [int(d.strip()) for d in raw.split(",") if d.strip()]


# ============================================
# Global Settings Instance
# ============================================

settings = Settings()


# ============================================
# Configuration Validation
# ============================================

def validate_configuration(config: Settings = None) -> None:
    """
    Validate critical configuration settings on application startup.

    Args:
        config: Settings to validate (defaults to the global ``settings``)

    Raises:
        ValueError: If required configuration is missing or invalid
    """
    # Import here to avoid circular import (logging.py imports config.py)
    from core.logging import logger

    config = config or settings

    if not config.categories_list:
        raise ValueError("CATEGORIES must contain at least one category")

    for category in config.categories_list:
        if category not in VALID_CATEGORIES:
            raise ValueError(
                f"Invalid category: '{category}'. "
                f"Must be one of: {', '.join(VALID_CATEGORIES)}"
            )

    if not (1 <= config.app_port <= 65535):
        raise ValueError(f"Invalid port number: {config.app_port}. Must be between 1 and 65535")

    valid_log_levels = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
    if config.log_level.upper() not in valid_log_levels:
        raise ValueError(
            f"Invalid LOG_LEVEL: '{config.log_level}'. "
            f"Must be one of: {', '.join(valid_log_levels)}"
        )

    for name in ("peak_days_list", "normal_days_list", "weekend_days_list"):
        for day in getattr(config, name):
            if not (0 <= day <= 6):
                raise ValueError(f"Invalid day {day} in {name}. Days run from 0 (Sunday) to 6")

    if not (0 <= config.schedule_peak_hours_start < config.schedule_peak_hours_end <= 24):
        raise ValueError(
            f"Invalid peak window {config.schedule_peak_hours_start}-{config.schedule_peak_hours_end}"
        )

    for name in (
        "schedule_peak_interval",
        "schedule_normal_interval",
        "schedule_weekend_interval",
        "rate_limit_interval_ms",
        "fresh_cache_ttl_minutes",
        "stale_cache_ttl_hours",
        "circuit_breaker_threshold",
        "error_threshold",
    ):
        if getattr(config, name) <= 0:
            raise ValueError(f"{name.upper()} must be positive")

    logger.info("Configuration validated successfully")
    logger.info(f"Categories: {', '.join(config.categories_list)}")
    logger.info(f"Provider: {config.provider_name} ({config.provider_base_url})")
    logger.info(f"Rate limit: 1 request / {config.rate_limit_interval_ms}ms")
    logger.info(
        f"Cache TTLs: fresh {config.fresh_cache_ttl_minutes}m, stale {config.stale_cache_ttl_hours}h"
    )
    logger.info(f"Scheduler: {'enabled' if config.scheduler_enabled else 'disabled'} ({config.local_timezone})")
    logger.info(f"Log level: {config.log_level.upper()}")
