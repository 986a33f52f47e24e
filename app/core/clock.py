"""
Time helpers.

Every timestamp the automation core writes is an aware UTC datetime.
SQLite hands DateTime(timezone=True) columns back naive, so values read from
the database go through `as_utc` before they are compared with `utcnow()`.

Calendar questions (which ISO week is "this week", is it night) are answered
in the configured automation timezone, never in UTC. Unknown zone names fall
back to UTC.
"""
from __future__ import annotations

from datetime import date, datetime, timedelta, timezone
from typing import Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def zone(name: str) -> ZoneInfo:
    try:
        return ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError):
        return ZoneInfo("UTC")


def to_local(now: datetime, tz_name: str) -> datetime:
    return as_utc(now).astimezone(zone(tz_name))


def iso_week_start(day: date) -> date:
    """Monday of the ISO week containing `day`."""
    return day - timedelta(days=day.weekday())


def local_week_start(now: datetime, tz_name: str) -> date:
    return iso_week_start(to_local(now, tz_name).date())
