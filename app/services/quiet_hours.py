"""
Quiet-hours guard.

Pure time-window predicates consulted before any WhatsApp-channel dispatch
and by the delivery sweep. Email is never suppressed. The window is given in
whole local hours: start inclusive, end exclusive; a start later than the end
spans midnight (21 → 8). start == end means no quiet hours.
"""
from __future__ import annotations

from datetime import datetime, time, timedelta, timezone

from app.core.clock import to_local
from app.services.automation_settings import QuietHoursWindow


def _local(now: datetime, window: QuietHoursWindow) -> datetime:
    return to_local(now, window.timezone)


def _is_hour_in_range(hour: int, start: int, end: int) -> bool:
    if start == end:
        return False
    if start < end:
        return start <= hour < end
    return hour >= start or hour < end


def in_quiet_hours(now: datetime, window: QuietHoursWindow) -> bool:
    if not window.enabled:
        return False
    local = _local(now, window)
    return _is_hour_in_range(local.hour, window.start_hour, window.end_hour)


def quiet_hours_end(now: datetime, window: QuietHoursWindow) -> datetime:
    """
    Next moment the window closes, as an aware UTC datetime.
    Returns `now` unchanged (in UTC) when not inside quiet hours.
    """
    local = _local(now, window)
    if not in_quiet_hours(now, window):
        return local.astimezone(timezone.utc)
    end_local = datetime.combine(local.date(), time(window.end_hour), tzinfo=local.tzinfo)
    if end_local <= local:
        end_local += timedelta(days=1)
    return end_local.astimezone(timezone.utc)
