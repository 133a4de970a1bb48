"""
Datetime helper utilities to ensure consistent timezone handling across the application.

All DateTime columns are timezone-naive and hold UTC. This module provides the
one sanctioned way to produce those values.
"""

from datetime import datetime, timezone


def get_naive_utc_now() -> datetime:
    """Current UTC time without timezone info"""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def to_epoch_millis(dt: datetime) -> int:
    """Milliseconds since the epoch for a naive UTC datetime"""
    return int(dt.replace(tzinfo=timezone.utc).timestamp() * 1000)
