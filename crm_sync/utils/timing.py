"""
Time helpers shared by the sync engine and the job ledger.
"""

from __future__ import annotations

import re
from datetime import datetime, timezone

# Fractional seconds of any length, padded or cut to microseconds below
_FRACTION = re.compile(r"\.(\d+)")


def utc_now() -> datetime:
    """Return the current time as an aware UTC datetime."""
    return datetime.now(timezone.utc)


def format_iso(value: datetime) -> str:
    """
    Format a datetime as ISO-8601 UTC with millisecond precision.

    Naive datetimes are assumed to already be in UTC.

    Example:
        >>> format_iso(datetime(2024, 3, 15, tzinfo=timezone.utc))
        '2024-03-15T00:00:00.000Z'
    """
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    value = value.astimezone(timezone.utc)
    return value.strftime("%Y-%m-%dT%H:%M:%S.") + f"{value.microsecond // 1000:03d}Z"


def parse_timestamp(value: str | int | float | None) -> datetime | None:
    """
    Parse a CRM or store timestamp into an aware UTC datetime.

    Accepts ISO-8601 strings with a ``Z`` suffix or an explicit offset and
    fractional seconds of any precision, and Unix epoch milliseconds given
    as a number or a digit string.

    Returns:
        The parsed datetime, or None if the value is empty or unparseable
    """
    if value is None or value == "":
        return None

    if isinstance(value, (int, float)):
        return datetime.fromtimestamp(value / 1000, tz=timezone.utc)

    text = str(value).strip()
    if text.isdigit():
        return datetime.fromtimestamp(int(text) / 1000, tz=timezone.utc)

    text = _FRACTION.sub(lambda m: "." + (m.group(1) + "000000")[:6], text, count=1)
    try:
        parsed = datetime.fromisoformat(text.replace("Z", "+00:00"))
    except ValueError:
        return None

    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def start_of_day_utc(value: datetime) -> datetime:
    """
    Round a timestamp down to 00:00:00.000 UTC of the same calendar day.

    Args:
        value: Aware datetime (naive values are treated as UTC)

    Returns:
        Aware UTC datetime at midnight of that day
    """
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    value = value.astimezone(timezone.utc)
    return value.replace(hour=0, minute=0, second=0, microsecond=0)


def to_epoch_millis(value: datetime) -> int:
    """Convert an aware datetime to Unix epoch milliseconds."""
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return int(value.timestamp() * 1000)


def format_duration(ms: float) -> str:
    """
    Format a duration in milliseconds as a short human-readable string.

    Returns:
        "1h 30m 45s", "5m 30s" or "45s"
    """
    seconds = int(ms // 1000)
    minutes = seconds // 60
    hours = minutes // 60

    if hours > 0:
        return f"{hours}h {minutes % 60}m {seconds % 60}s"
    if minutes > 0:
        return f"{minutes}m {seconds % 60}s"
    return f"{seconds}s"
