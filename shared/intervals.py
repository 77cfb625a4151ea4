"""
Time interval helpers: overlap arithmetic, compact duration strings
and instant parsing.
"""

from datetime import datetime, timedelta, timezone
from typing import Optional, Union
import math
import re

from shared.errors import BadRequestError

_DURATION_RE = re.compile(r"^(?:\d+(?:ms|s|m|h|d|w))+$")
_DURATION_TOKEN_RE = re.compile(r"(\d+)(ms|s|m|h|d|w)")

_UNIT_MS = {
    "ms": 1,
    "s": 1000,
    "m": 60 * 1000,
    "h": 60 * 60 * 1000,
    "d": 24 * 60 * 60 * 1000,
    "w": 7 * 24 * 60 * 60 * 1000,
}


def overlap_seconds(a_start: datetime, a_end: datetime, b_start: datetime, b_end: datetime) -> int:
    """
    Whole seconds shared by [a_start, a_end) and [b_start, b_end).

    Args:
        a_start, a_end: First interval
        b_start, b_end: Second interval

    Returns:
        int: max(0, floor(shared duration in seconds))

    Example:
        >>> t = datetime(2025, 1, 1, 10, tzinfo=timezone.utc)
        >>> overlap_seconds(t, t + timedelta(hours=2), t + timedelta(hours=1), t + timedelta(days=1))
        3600
    """
    start = max(a_start, b_start)
    end = min(a_end, b_end)
    if end <= start:
        return 0
    return math.floor((end - start).total_seconds())


def parse_duration(value: str) -> timedelta:
    """
    Parse a compact duration such as ``10m``, ``2h``, ``1h30m``, ``7d`` or ``4w``.

    Args:
        value: Duration string

    Returns:
        timedelta: Parsed duration

    Raises:
        BadRequestError: If the string is empty, malformed or zero
    """
    v = (value or "").strip()
    if not v:
        raise BadRequestError("duration is required", field="duration")
    if not _DURATION_RE.match(v):
        raise BadRequestError("invalid duration (examples: 10m, 2h, 1h30m, 7d, 4w)", field="duration")

    total_ms = 0
    for amount, unit in _DURATION_TOKEN_RE.findall(v):
        amount = int(amount)
        if amount <= 0:
            raise BadRequestError("invalid duration", field="duration")
        total_ms += amount * _UNIT_MS[unit]
    return timedelta(milliseconds=total_ms)


def ensure_utc(value: datetime, name: str = "datetime") -> datetime:
    """Reject naive instants and normalise aware ones to UTC."""
    if value.tzinfo is None or value.utcoffset() is None:
        raise BadRequestError(f"{name} must include a timezone offset", field=name)
    return value.astimezone(timezone.utc)


def parse_instant(value: Union[str, datetime, None], name: str) -> datetime:
    """
    Parse an ISO-8601 instant into an aware UTC datetime.

    Args:
        value: ISO string (``Z`` suffix accepted) or datetime
        name: Field name used in error messages

    Raises:
        BadRequestError: If missing, unparsable or without an offset
    """
    if isinstance(value, datetime):
        return ensure_utc(value, name)
    v = (value or "").strip()
    if not v:
        raise BadRequestError(f"{name} is required", field=name)
    if v.endswith("Z") or v.endswith("z"):
        v = v[:-1] + "+00:00"
    try:
        parsed = datetime.fromisoformat(v)
    except ValueError:
        raise BadRequestError(f"{name} must be an ISO-8601 timestamp", field=name)
    return ensure_utc(parsed, name)


def window_end(start: datetime, days: int) -> datetime:
    return start + timedelta(days=days)


def expiry_from(now: datetime, duration: Optional[str] = None,
                expires_at: Union[str, datetime, None] = None) -> Optional[datetime]:
    """
    Resolve a ban expiry from either a duration or an explicit instant.

    The duration wins when both are given; neither means indefinite.
    """
    if duration and duration.strip():
        return now + parse_duration(duration)
    if expires_at:
        return parse_instant(expires_at, "expires_at")
    return None
