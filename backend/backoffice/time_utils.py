from __future__ import annotations

from datetime import date, datetime, time, timedelta, timezone
from typing import Optional


def utcnow() -> datetime:
    """Server-side 'now' in UTC (naive, canonical)."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


# Business time may run slightly ahead of the server clock
MAX_CLOCK_SKEW = timedelta(minutes=2)


def is_future(dt: datetime) -> bool:
    """True when dt lies beyond now plus the tolerated clock skew."""
    return dt > utcnow() + MAX_CLOCK_SKEW


def parse_iso_datetime(value: Optional[str]) -> Optional[datetime]:
    """
    Parse an ISO-8601 datetime string and normalize to UTC-naive datetime.

    - None / "" -> None
    - "YYYY-MM-DD" is midnight UTC of that day
    - "YYYY-MM-DDTHH:MM" (naive) is interpreted as UTC
    - "...Z" or "...+/-HH:MM" is converted to UTC and tzinfo is stripped
    """
    if value is None:
        return None
    s = value.strip()
    if not s:
        return None

    # Accept trailing Z
    if s.endswith("Z"):
        s = s[:-1] + "+00:00"

    dt = datetime.fromisoformat(s)

    # Normalize to UTC-naive
    if dt.tzinfo is None:
        # interpret naive as UTC
        return dt.replace(tzinfo=None)

    return dt.astimezone(timezone.utc).replace(tzinfo=None)


def normalize_datetime(value) -> Optional[datetime]:
    """
    Coerce None / date / datetime / ISO string into a UTC-naive datetime.

    Raises ValueError for anything else.
    """
    if value is None:
        return None
    if isinstance(value, datetime):
        if value.tzinfo is not None:
            return value.astimezone(timezone.utc).replace(tzinfo=None)
        return value
    if isinstance(value, date):
        return datetime.combine(value, time.min)
    if isinstance(value, str):
        try:
            return parse_iso_datetime(value)
        except ValueError:
            raise ValueError(f"invalid datetime: {value!r}")
    raise ValueError(f"invalid datetime: {value!r}")


def start_of_day(value) -> Optional[datetime]:
    dt = normalize_datetime(value)
    if dt is None:
        return None
    return datetime.combine(dt.date(), time.min)


def end_of_day_exclusive(value) -> Optional[datetime]:
    """
    Upper bound for an end date that includes the whole day.

    A bare date (or midnight) means "through the end of that day"; a datetime
    with a time component is kept as an inclusive instant and nudged by one
    microsecond so callers can always filter with `<`.
    """
    dt = normalize_datetime(value)
    if dt is None:
        return None
    if isinstance(value, date) and not isinstance(value, datetime):
        return dt + timedelta(days=1)
    if dt.time() == time.min:
        return dt + timedelta(days=1)
    return dt + timedelta(microseconds=1)


def to_utc_z(dt: Optional[datetime]) -> Optional[str]:
    """
    Serializes datetime to ISO-8601 with trailing 'Z'.
    If dt is naive, it is treated as UTC.
    """
    if dt is None:
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    dt_utc = dt.astimezone(timezone.utc).replace(microsecond=0)
    return dt_utc.isoformat().replace("+00:00", "Z")
