"""
Unified Logging Configuration

This module sets up a centralized logging system for the whole pipeline.
Every component (fetch client, orchestrator, cache manager, OHLC engine,
scheduler) logs through a child of the ``marketfeed`` logger obtained from
``get_logger``.

Usage:
    from core.logging import logger, get_logger

    logger.info("Pipeline started")

    log = get_logger(__name__)
    log.warning("Serving stale data for currencies")

Log Levels (from most to least verbose):
    DEBUG    - Diagnostic details (e.g., "Coalesced request for /gold")
    INFO     - Normal operation (e.g., "Refreshed crypto from provider-a")
    WARNING  - Degraded operation (e.g., "Serving stale data, 3 hours old")
    ERROR    - Failed operations that the pipeline survives
    CRITICAL - Every category failed in a scheduled run

Configuration:
    Log level is controlled by the LOG_LEVEL setting in the .env file.
"""

import logging
import sys
from typing import Optional


def setup_logging(
    log_level: str = "INFO",
    log_format: Optional[str] = None,
    include_timestamp: bool = True,
    include_module: bool = True
) -> logging.Logger:
    """
    Configure and return the application logger.

    Args:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        log_format: Custom log format string (uses default if None)
        include_timestamp: Include timestamp in log messages
        include_module: Include logger name in log messages

    Returns:
        logging.Logger: Configured ``marketfeed`` logger

    Example:
        >>> logger = setup_logging(log_level="DEBUG")
        >>> logger.info("Pipeline started")
        2024-01-01 12:00:00 [INFO] marketfeed: Pipeline started
    """
    if log_format is None:
        format_parts = []

        if include_timestamp:
            format_parts.append("%(asctime)s")

        format_parts.append("[%(levelname)s]")

        if include_module:
            format_parts.append("%(name)s")

        format_parts.append("%(message)s")

        log_format = " ".join(format_parts)

    logging.basicConfig(
        level=getattr(logging, log_level.upper(), logging.INFO),
        format=log_format,
        datefmt="%Y-%m-%d %H:%M:%S",
        stream=sys.stdout,
        force=True
    )

    logger = logging.getLogger("marketfeed")
    logger.setLevel(getattr(logging, log_level.upper(), logging.INFO))

    return logger


# ============================================
# Initialize Logger with Settings
# ============================================

from core.config import settings

logger = setup_logging(log_level=settings.log_level)


# ============================================
# Convenience Functions
# ============================================

def get_logger(name: str) -> logging.Logger:
    """
    Get a child logger for a module or component.

    Args:
        name: Name for the logger (typically __name__)

    Returns:
        logging.Logger: Logger named ``marketfeed.<name>``

    Example:
        >>> from core.logging import get_logger
        >>> log = get_logger(__name__)  # "marketfeed.services.cache_manager"
    """
    return logging.getLogger(f"marketfeed.{name}")


def set_log_level(level: str) -> None:
    """
    Change the log level at runtime.

    Args:
        level: New log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
    """
    logger.setLevel(getattr(logging, level.upper(), logging.INFO))
    logging.getLogger().setLevel(getattr(logging, level.upper(), logging.INFO))


# ============================================
# Log Helper Functions
# ============================================

def log_api_request(provider: str, endpoint: str, params: dict = None) -> None:
    """
    Log an upstream request with consistent formatting.

    Example:
        >>> log_api_request("persianapi", "/currencies", {"limit": 50})
        [DEBUG] API Request: persianapi /currencies | Params: {'limit': 50}
    """
    if params:
        logger.debug(f"API Request: {provider} {endpoint} | Params: {params}")
    else:
        logger.debug(f"API Request: {provider} {endpoint}")


def log_api_response(provider: str, endpoint: str, status: int, response_time: float = None) -> None:
    """
    Log an upstream response with status and timing information.

    Example:
        >>> log_api_response("persianapi", "/currencies", 200, 0.342)
        [DEBUG] API Response: persianapi /currencies | Status: 200 | Time: 0.342s
    """
    time_str = f" | Time: {response_time:.3f}s" if response_time else ""
    logger.debug(f"API Response: {provider} {endpoint} | Status: {status}{time_str}")


def log_provider_event(provider: str, event: str, data_type: str = None, details: str = None) -> None:
    """
    Log a provider lifecycle event (failure, fallback, breaker transition).

    Events named "error" or "circuit_open" are logged at ERROR level,
    everything else at INFO.

    Example:
        >>> log_provider_event("persianapi", "circuit_open", "gold", "5 failures")
        [ERROR] Provider: persianapi circuit_open | Type: gold | 5 failures
    """
    type_str = f" | Type: {data_type}" if data_type else ""
    details_str = f" | {details}" if details else ""

    level = logging.ERROR if event in ("error", "circuit_open") else logging.INFO
    logger.log(level, f"Provider: {provider} {event}{type_str}{details_str}")


logger.debug("Logging system initialized")
