from __future__ import annotations

from datetime import datetime, timezone
from typing import Optional

from .errors import ValidationError

# All timestamps are stored and compared as naive datetimes in UTC.


def utcnow() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


def as_utc_naive(dt: datetime) -> datetime:
    """Aware datetimes are shifted to UTC and stripped; naive ones are taken as UTC already."""
    if dt.tzinfo is None:
        return dt
    return dt.astimezone(timezone.utc).replace(tzinfo=None)


def epoch_millis(dt: Optional[datetime] = None) -> int:
    """Milliseconds since the epoch (default: now)."""
    dt = as_utc_naive(dt) if dt is not None else utcnow()
    return int(dt.replace(tzinfo=timezone.utc).timestamp() * 1000)


def parse_utc(value, field: str = "datetime") -> Optional[datetime]:
    """
    Read a query/body timestamp into UTC-naive form.

    Accepts datetimes, "YYYY-MM-DD", and ISO-8601 text with or without an
    offset ("Z" included). Blank input means no bound. Anything else raises
    ValidationError naming the field.
    """
    if value is None:
        return None
    if isinstance(value, datetime):
        return as_utc_naive(value)
    if not isinstance(value, str):
        raise ValidationError(f"{field} must be an ISO-8601 datetime", field)
    stamp = value.strip()
    if not stamp:
        return None
    if stamp[-1] in "zZ":
        stamp = stamp[:-1] + "+00:00"
    try:
        return as_utc_naive(datetime.fromisoformat(stamp))
    except ValueError:
        raise ValidationError(f"{field} must be an ISO-8601 datetime", field) from None


def format_utc(dt: Optional[datetime]) -> Optional[str]:
    """Whole-second ISO-8601 with a trailing Z, e.g. 2024-03-01T09:15:00Z."""
    if dt is None:
        return None
    return as_utc_naive(dt).isoformat(timespec="seconds") + "Z"
