"""
Time utilities for the tracker backend.

Single source of truth for "now", so token expiry checks, audit timestamps
and audit windows all agree on the clock.
"""

from datetime import datetime, timezone, timedelta


def utc_now() -> datetime:
    """
    Get current UTC time.

    Returns:
        timezone-aware datetime in UTC
    """
    return datetime.now(timezone.utc)


def audit_window_start(days: int) -> datetime:
    """
    Start of the audit listing window.

    Args:
        days: How many days back the window reaches

    Returns:
        timezone-aware datetime ``days`` days before now
    """
    return utc_now() - timedelta(days=days)


def from_timestamp(seconds: int) -> datetime:
    return datetime.fromtimestamp(seconds, tz=timezone.utc)
