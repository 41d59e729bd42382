"""Time helpers.

Keep all stored timestamps timezone-aware UTC; token expiry bookkeeping uses
epoch milliseconds.
"""

from __future__ import annotations

import time
from datetime import datetime, timezone


def utcnow() -> datetime:
    """Return the current time as a timezone-aware datetime in UTC (+00:00)."""

    return datetime.now(timezone.utc)


def utcnow_sa_default() -> datetime:
    """SQLAlchemy-friendly default callable for UTC timestamps."""

    return utcnow()


def epoch_ms() -> int:
    """Current wall-clock time in milliseconds since the epoch."""

    return int(time.time() * 1000)


def isoformat_or_none(dt: datetime | None) -> str | None:
    """Serialize a (possibly naive, SQLite-loaded) datetime as UTC ISO-8601."""

    if dt is None:
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc).isoformat()
