"""Datetime helpers for timestamps read back from the database."""
from datetime import datetime, timezone
from typing import Optional


def ensure_utc(dt: Optional[datetime]) -> Optional[datetime]:
    """
    Return dt as a UTC-aware datetime.

    SQLite drops tzinfo on DateTime(timezone=True) columns, so naive values
    coming back from the store are treated as UTC. Aware values are
    converted, not relabelled.

        >>> ensure_utc(datetime(2025, 1, 1, 12)).tzinfo == timezone.utc
        True
        >>> ensure_utc(None) is None
        True
    """
    if dt is None:
        return None
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)

