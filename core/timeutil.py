"""
Clock and time-zone helpers.

Observation dates are wall-clock dates in the river's governing time zone,
never the process-local date and never a slice of a UTC ISO string.
"""

from __future__ import annotations

from datetime import date, datetime, timezone, tzinfo
from typing import Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError
import logging

logger = logging.getLogger("timeutil")

UTC = timezone.utc


def utc_now() -> datetime:
    return datetime.now(UTC)


def get_zone(tz_name: Optional[str], fallback: str = "America/Denver") -> tzinfo:
    """Resolve an IANA zone name, falling back when it is unknown."""
    for name in (tz_name, fallback):
        if not name:
            continue
        try:
            return ZoneInfo(name)
        except (ZoneInfoNotFoundError, ValueError):
            logger.warning("Unknown time zone %r", name)
    return UTC


def local_date(tz_name: Optional[str], now: Optional[datetime] = None) -> date:
    """Calendar date at `now` in the given zone."""
    now = now or utc_now()
    if now.tzinfo is None:
        now = now.replace(tzinfo=UTC)
    return now.astimezone(get_zone(tz_name)).date()


def parse_timestamp(raw: object, default_tz: Optional[tzinfo] = None) -> Optional[datetime]:
    """
    Parse a provider timestamp into an aware datetime.

    Handles trailing 'Z', fractional seconds and offset-less values (daily
    values come back as local midnight without an offset); naive values are
    placed in `default_tz` (UTC when not given).
    """
    if not isinstance(raw, str) or not raw.strip():
        return None
    text = raw.strip().replace("Z", "+00:00")
    try:
        dt = datetime.fromisoformat(text)
    except ValueError:
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=default_tz or UTC)
    return dt


def to_utc_iso(dt: Optional[datetime]) -> Optional[str]:
    if dt is None:
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=UTC)
    return dt.astimezone(UTC).isoformat()


def age_hours(observed_at: datetime, now: datetime) -> float:
    return (now - observed_at).total_seconds() / 3600.0
