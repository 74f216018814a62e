"""
Timestamp helpers.

All persisted timestamps are tz-aware UTC. Schedules are evaluated in their
own zone, so this module is the single conversion point.
"""

from datetime import datetime, timezone
from typing import Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

_UTC = timezone.utc


def utc_now() -> datetime:
    """Current wall-clock time as a UTC-aware datetime."""
    return datetime.now(_UTC)


def ensure_utc(ts: datetime) -> datetime:
    """Validate that a datetime is tz-aware and convert to UTC.

    Raises:
        ValueError: If ts is naive (no tzinfo).
    """
    if ts.tzinfo is None:
        raise ValueError(
            "ensure_utc requires a tz-aware datetime, got naive. "
            "Hint: use datetime(..., tzinfo=timezone.utc) for UTC timestamps."
        )
    return ts.astimezone(_UTC)


def resolve_zone(name: Optional[str]) -> Optional[ZoneInfo]:
    """Return the ZoneInfo for name (UTC when empty), or None if unknown."""
    try:
        return ZoneInfo(name or "UTC")
    except (ZoneInfoNotFoundError, ValueError):
        return None


def parse_iso(value: object) -> Optional[datetime]:
    """Parse an ISO-8601 string into a UTC datetime; None on anything else."""
    if not isinstance(value, str) or not value:
        return None
    try:
        parsed = datetime.fromisoformat(value)
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=_UTC)
    return parsed.astimezone(_UTC)


def format_iso(ts: Optional[datetime]) -> Optional[str]:
    """Format a datetime as ISO-8601 with offset, passing None through."""
    return ts.isoformat() if ts is not None else None
