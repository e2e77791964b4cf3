"""
Timestamp helpers

The store keeps naive UTC datetimes; everything leaving the service is
ISO 8601 with a trailing 'Z'.
"""
from datetime import datetime, timezone
from typing import Any, Optional

EPOCH = datetime(1970, 1, 1)


def utcnow() -> datetime:
    """Current time as naive UTC"""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def to_iso(value: Optional[datetime]) -> Optional[str]:
    if value is None:
        return None
    if value.tzinfo:
        value = value.astimezone(timezone.utc).replace(tzinfo=None)
    return value.isoformat() + 'Z'


def parse_timestamp(value: Any) -> Optional[datetime]:
    """
    Parse an ISO 8601 string, a datetime, or a unix timestamp (seconds or
    milliseconds) into naive UTC.

    Returns None when the value cannot be parsed.
    """
    if value is None:
        return None

    parsed: Optional[datetime] = None

    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, bool):
        return None
    elif isinstance(value, (int, float)):
        parsed = _from_epoch(float(value))
    elif isinstance(value, str):
        text = value.strip()
        if not text:
            return None
        try:
            iso_text = text[:-1] + '+00:00' if text.endswith(('Z', 'z')) else text
            parsed = datetime.fromisoformat(iso_text)
        except ValueError:
            try:
                parsed = _from_epoch(float(text))
            except (ValueError, OverflowError, OSError):
                return None

    if parsed is None:
        return None

    if parsed.tzinfo:
        return parsed.astimezone(timezone.utc).replace(tzinfo=None)
    return parsed


def _from_epoch(value: float) -> Optional[datetime]:
    # millisecond timestamps
    if value > 1e12:
        value = value / 1000.0
    try:
        return datetime.fromtimestamp(value, tz=timezone.utc).replace(tzinfo=None)
    except (ValueError, OverflowError, OSError):
        return None
