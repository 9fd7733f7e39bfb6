"""Common helper functions for the service layer."""

from __future__ import annotations

import uuid
from datetime import UTC, datetime


def coerce_uuid(value):
    """Convert value to UUID, returning None if value is None."""
    if value is None:
        return None
    if isinstance(value, uuid.UUID):
        return value
    return uuid.UUID(str(value))


def apply_pagination(query, limit: int, offset: int):
    return query.limit(limit).offset(offset)


def from_unix(value) -> datetime | None:
    """Convert a provider epoch timestamp to an aware datetime.

    Meta sends milliseconds, Stripe sends seconds. Values that are not a
    representable instant, such as NaN or far-future epochs, give None.
    """
    if value is None or isinstance(value, bool):
        return None
    try:
        ts = float(value)
    except (TypeError, ValueError):
        return None
    if ts > 1e12:
        ts = ts / 1000
    try:
        return datetime.fromtimestamp(ts, tz=UTC)
    except (ValueError, OverflowError, OSError):
        return None


def current_period(now: datetime | None = None) -> str:
    now = now or datetime.now(UTC)
    return now.strftime("%Y-%m")
