"""
Core Utilities Package

This package contains utility functions and helpers used throughout the application.

Modules:
    - time: Timestamp normalization, local-timezone helpers and Jalali date parsing
"""

from core.utils.time import to_utc_datetime, current_utc_datetime, parse_date

__all__ = ["to_utc_datetime", "current_utc_datetime", "parse_date"]
