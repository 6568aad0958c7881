"""Common helper functions for service layer.

This module provides reusable utilities for:
- UUID handling
- Pagination
- Timezone normalization of stored timestamps
- Platform timestamp parsing
- Platform id normalization
"""

from __future__ import annotations

import hashlib
import uuid
from datetime import datetime, timezone


def coerce_uuid(value):
    """Convert value to UUID, returning None if value is None."""
    if value is None:
        return None
    if isinstance(value, uuid.UUID):
        return value
    return uuid.UUID(str(value))


def try_coerce_uuid(value) -> uuid.UUID | None:
    """Like ``coerce_uuid`` but returns None for malformed values."""
    try:
        return coerce_uuid(value)
    except (TypeError, ValueError):
        return None


def apply_pagination(query, limit: int, offset: int):
    """Apply pagination to a query.

    Args:
        query: SQLAlchemy query object
        limit: Maximum number of results
        offset: Number of results to skip

    Returns:
        Query with pagination applied
    """
    return query.limit(limit).offset(offset)


def as_utc(value: datetime | None) -> datetime | None:
    """Return ``value`` as an aware UTC datetime.

    SQLite hands timezone-aware columns back naive, so every comparison
    against a stored timestamp goes through here.
    """
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def from_epoch_millis(value: int | float | None) -> datetime | None:
    """Convert a platform millisecond timestamp to an aware datetime.

    Values that already look like seconds are accepted as well.
    """
    if value is None:
        return None
    timestamp = float(value)
    if timestamp > 1_000_000_000_000:
        timestamp = timestamp / 1000
    return datetime.fromtimestamp(timestamp, tz=timezone.utc)


def parse_platform_timestamp(value) -> datetime | None:
    """Parse Graph API timestamps (``2024-01-01T10:00:00+0000``) and epochs."""
    if value is None:
        return None
    try:
        if isinstance(value, (int, float)):
            return from_epoch_millis(value)
        if isinstance(value, str):
            candidate = value.strip()
            if candidate.endswith("Z"):
                candidate = candidate.replace("Z", "+00:00")
            if candidate.endswith("+0000"):
                candidate = candidate[:-5] + "+00:00"
            parsed = datetime.fromisoformat(candidate)
            return as_utc(parsed)
    except (ValueError, OverflowError, OSError):
        return None
    return None


MAX_EXTERNAL_ID_LENGTH = 255


def bounded_external_id(value) -> str | None:
    """Return a platform id that fits the ``external_id`` columns.

    Longer ids are replaced by their sha256 hex digest, so webhook ingestion
    and sync key the same platform message identically.
    """
    if value is None or value == "":
        return None
    value = str(value)
    if len(value) <= MAX_EXTERNAL_ID_LENGTH:
        return value
    return hashlib.sha256(value.encode("utf-8")).hexdigest()
