"""Shared timestamp parsing and formatting helpers.

All timestamps handled by agentmesh are timezone-aware UTC datetimes. They are
persisted as ISO-8601 strings with millisecond precision and a ``Z`` suffix,
which keeps them lexicographically comparable inside SQLite.
"""

import re
from datetime import datetime, timedelta, timezone
from typing import Any

_ISO_DATETIME_RE = re.compile(
    r"^\d{4}-\d{2}-\d{2}T\d{2}:\d{2}(:\d{2}(\.\d{1,9})?)?(Z|[+-]\d{2}:?\d{2})?$"
)


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def ensure_utc(value: datetime) -> datetime:
    dt = value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def to_iso(value: datetime | None) -> str | None:
    """Format a datetime as ``YYYY-MM-DDTHH:MM:SS.mmmZ``."""
    if value is None:
        return None
    return ensure_utc(value).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def is_iso_datetime(value: str) -> bool:
    """Check that a string is a full ISO-8601 date-time (date-only text is rejected)."""
    return bool(_ISO_DATETIME_RE.match(value.strip()))


def parse_iso(value: Any) -> datetime | None:
    """Parse an ISO-8601 string into an aware UTC datetime.

    Returns None for anything that is not a parseable string, so callers can
    treat bad source timestamps as absent.
    """
    if not isinstance(value, str) or not value.strip():
        return None
    token = value.strip()
    if token.endswith("Z"):
        token = token[:-1] + "+00:00"
    try:
        return ensure_utc(datetime.fromisoformat(token))
    except ValueError:
        return None


def from_epoch_ms(value: Any) -> datetime | None:
    """Convert a millisecond epoch number into an aware UTC datetime."""
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    try:
        return datetime.fromtimestamp(value / 1000, tz=timezone.utc)
    except (OverflowError, OSError, ValueError):
        return None


def lookback_start(lookback_days: int, now: datetime | None = None) -> datetime:
    current = now or utc_now()
    return current - timedelta(days=lookback_days)
