"""Utilities for working with RFC3339 timestamps and UTC datetimes."""

from __future__ import annotations

from datetime import date, datetime, time, timezone
from typing import Optional, Union

UTC = timezone.utc
EPOCH = datetime(1970, 1, 1, tzinfo=UTC)


def parse_rfc3339(s: Optional[str]) -> Optional[datetime]:
    """Parse a RFC3339 string and return a timezone-aware UTC datetime."""

    if not s:
        return None

    value = s.strip()
    if not value:
        return None

    if value.endswith("Z") or value.endswith("z"):
        value = value[:-1] + "+00:00"

    if "." in value:
        head, tail = value.split(".", 1)
        if "+" in tail:
            frac, tz = tail.split("+", 1)
            sign = "+"
        elif "-" in tail:
            frac, tz = tail.split("-", 1)
            sign = "-"
        else:
            frac, tz = tail, "00:00"
            sign = "+"
        frac = (frac + "000000")[:6]
        value = f"{head}.{frac}{sign}{tz}"
    try:
        dt = datetime.fromisoformat(value)
    except ValueError:
        return None

    return ensure_utc(dt)


def to_rfc3339_utc(dt: Optional[Union[datetime, str]]) -> Optional[str]:
    """Convert a datetime (or string) to RFC3339 in UTC.

    Sub-second precision is kept so that ``updatedAt`` ordering survives a
    serialization round trip.
    """

    if dt is None:
        return None
    if isinstance(dt, str):
        dt = parse_rfc3339(dt)
    if dt is None:
        return None
    dt = ensure_utc(dt)
    if dt.microsecond:
        text = dt.isoformat(timespec="microseconds")
    else:
        text = dt.isoformat(timespec="seconds")
    return text.replace("+00:00", "Z")


def ensure_utc(dt: Optional[datetime]) -> Optional[datetime]:
    if dt is None:
        return None
    if dt.tzinfo is None:
        return dt.replace(tzinfo=UTC)
    return dt.astimezone(UTC)


def coerce_datetime(value: Union[datetime, str, None]) -> Optional[datetime]:
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return ensure_utc(value)
    if isinstance(value, date):
        return midnight_utc(value)
    parsed = parse_rfc3339(str(value))
    if parsed is None:
        raise ValueError(f"Invalid timestamp: {value!r}")
    return parsed


def utc_now() -> datetime:
    return datetime.now(UTC)


def midnight_utc(d: date) -> datetime:
    return datetime.combine(d, time.min, tzinfo=UTC)


def or_epoch(dt: Optional[datetime]) -> datetime:
    return ensure_utc(dt) if dt is not None else EPOCH


__all__ = [
    "EPOCH",
    "UTC",
    "coerce_datetime",
    "ensure_utc",
    "midnight_utc",
    "or_epoch",
    "parse_rfc3339",
    "to_rfc3339_utc",
    "utc_now",
]
