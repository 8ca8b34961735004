"""Time source for everything that compares against stored timestamps.

Timestamps are naive UTC, matching the ``DATETIME`` columns they are
compared with.
"""
from datetime import datetime, timezone


def utcnow() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)
