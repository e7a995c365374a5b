"""
raffle/utils/timezone.py — UTC/local timezone handling for draw timestamps
Store timestamps are UTC; operators read draw dates in the configured
local timezone.
"""
from __future__ import annotations

import re
from datetime import datetime, timedelta
from typing import Optional

import pytz

from raffle.config import get_settings

settings = get_settings()

UTC = pytz.utc
LOCAL_TZ = pytz.timezone(settings.timezone)

# Fractional seconds of any length, up to the offset or end of string
_FRACTION = re.compile(r"\.(\d+)(?=[+-]\d\d(?::\d\d)?$|$)")


def utc_now() -> datetime:
    """Return current UTC datetime (timezone-aware)."""
    return datetime.now(UTC)


def to_local(dt: datetime) -> datetime:
    """Convert a UTC datetime to the configured local timezone."""
    if dt.tzinfo is None:
        dt = UTC.localize(dt)
    return dt.astimezone(LOCAL_TZ)


def local_date_str(dt: Optional[datetime] = None) -> str:
    """Return a date string (YYYY-MM-DD) in local time for `dt` or now."""
    if dt is None:
        dt = utc_now()
    return to_local(dt).strftime("%Y-%m-%d")


def to_iso(dt: datetime) -> str:
    """Serialize a datetime for a PostgREST filter or row (UTC, ISO-8601)."""
    if dt.tzinfo is None:
        dt = UTC.localize(dt)
    return dt.astimezone(UTC).isoformat()


def parse_iso(value: str) -> datetime:
    """
    Parse a timestamp returned by the store.
    PostgREST emits `+00:00` offsets and trims trailing zeros from the
    fractional seconds (`15:20:00.12+00:00`); the fraction is padded to six
    digits so `fromisoformat` accepts it. A trailing `Z` is also accepted.
    Naive values are assumed UTC.
    """
    if value.endswith("Z"):
        value = value[:-1] + "+00:00"
    value = _FRACTION.sub(lambda m: "." + m.group(1)[:6].ljust(6, "0"), value, count=1)
    dt = datetime.fromisoformat(value)
    if dt.tzinfo is None:
        dt = UTC.localize(dt)
    return dt


def cutoff_before(days: int = 0, seconds: float = 0, now: Optional[datetime] = None) -> datetime:
    """Return `now - (days, seconds)` in UTC. Used for windows and retention."""
    if now is None:
        now = utc_now()
    return now - timedelta(days=days, seconds=seconds)
