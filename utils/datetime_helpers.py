"""
Timestamps are stored as naive UTC (DateTime(timezone=False)) so comparisons
behave the same on PostgreSQL and SQLite. API payloads render them with a
trailing Z.
"""

from datetime import datetime, timezone
from typing import Optional


def get_naive_utc_now() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


def isoformat_or_none(dt: Optional[datetime]) -> Optional[str]:
    """ISO-8601 UTC string for a stored timestamp, None passes through"""
    if dt is None:
        return None
    if dt.tzinfo is not None:
        dt = dt.astimezone(timezone.utc).replace(tzinfo=None)
    return dt.isoformat() + "Z"
