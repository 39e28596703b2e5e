"""Serialization utilities for datetime and canonical JSON.

The canonical form is what gets signed and sent, so it must be byte-stable:
sorted keys, no insignificant whitespace, UTF-8.
"""

import json
from datetime import date, datetime, timezone
from decimal import Decimal
from typing import Any, Optional
from uuid import UUID


def utc_now() -> datetime:
    """Current time as a timezone-aware UTC datetime."""
    return datetime.now(timezone.utc)


def from_timestamp(seconds: float) -> datetime:
    """Convert epoch seconds to a UTC datetime."""
    return datetime.fromtimestamp(seconds, tz=timezone.utc)


def parse_datetime(value: Any) -> Optional[datetime]:
    """Parse a datetime value from ISO strings or pass datetimes through.

    Example:
        dt = parse_datetime("2025-01-15T10:30:00Z")
        dt = parse_datetime(existing_datetime)
        dt = parse_datetime(None)  # Returns None
    """
    if value is None:
        return None
    if isinstance(value, datetime):
        return value
    if isinstance(value, str):
        if value.endswith("Z"):
            value = value[:-1] + "+00:00"
        return datetime.fromisoformat(value)
    return None


def serialize_datetime(dt: Optional[datetime]) -> Optional[str]:
    """Serialize a datetime to ISO format string."""
    if dt is None:
        return None
    return dt.isoformat()


def _default(value: Any) -> Any:
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, UUID):
        return str(value)
    if isinstance(value, Decimal):
        return str(value)
    if isinstance(value, (set, frozenset)):
        return sorted(value, key=repr)
    raise TypeError(f"Object of type {type(value).__name__} is not JSON serializable")


def canonical_json(value: Any) -> bytes:
    """Serialize to canonical JSON bytes.

    Args:
        value: JSON-compatible structure (datetimes, UUIDs, Decimals allowed)

    Returns:
        UTF-8 bytes with sorted keys and compact separators
    """
    return json.dumps(
        value,
        sort_keys=True,
        separators=(",", ":"),
        ensure_ascii=False,
        default=_default,
    ).encode("utf-8")


def to_json(value: Any) -> str:
    """Serialize to a readable JSON string (not for signing)."""
    return json.dumps(value, default=_default, sort_keys=True)
