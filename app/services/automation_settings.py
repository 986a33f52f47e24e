"""
Settings provider for the automation core.

`load_automation_settings(db)` reads the `system_settings` row and returns an
immutable `AutomationSettings` value. Callers pass that value down into the
evaluator, dispatcher and scheduler; nothing below the entry points reads
configuration on its own.
"""
from __future__ import annotations

from dataclasses import dataclass, asdict, replace
from decimal import Decimal
from typing import Any

from sqlalchemy.orm import Session

from app.core.config import settings as app_settings
from app.models.system_settings import SystemSettings

SETTINGS_ROW_ID = "default"


@dataclass(frozen=True)
class QuietHoursWindow:
    start_hour: int
    end_hour: int
    enabled: bool = True
    timezone: str = "Europe/Berlin"


@dataclass(frozen=True)
class AutomationSettings:
    timezone: str
    feedback_delay_min: int
    feedback_delay_max: int
    quiet_hours_enabled: bool
    quiet_hours_start: int
    quiet_hours_end: int
    upsell_revenue_threshold: float
    upsell_consecutive_weeks: int

    @property
    def quiet_hours(self) -> QuietHoursWindow:
        return QuietHoursWindow(
            start_hour=self.quiet_hours_start,
            end_hour=self.quiet_hours_end,
            enabled=self.quiet_hours_enabled,
            timezone=self.timezone,
        )

    def with_overrides(self, **changes: Any) -> "AutomationSettings":
        return replace(self, **changes)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


def default_settings() -> AutomationSettings:
    return AutomationSettings(
        timezone=app_settings.AUTOMATION_TIMEZONE,
        feedback_delay_min=app_settings.FEEDBACK_DELAY_MIN_MINUTES,
        feedback_delay_max=app_settings.FEEDBACK_DELAY_MAX_MINUTES,
        quiet_hours_enabled=app_settings.QUIET_HOURS_ENABLED,
        quiet_hours_start=app_settings.QUIET_HOURS_START,
        quiet_hours_end=app_settings.QUIET_HOURS_END,
        upsell_revenue_threshold=app_settings.UPSELL_REVENUE_THRESHOLD,
        upsell_consecutive_weeks=app_settings.UPSELL_CONSECUTIVE_WEEKS,
    )


def _from_row(row: SystemSettings) -> AutomationSettings:
    return AutomationSettings(
        timezone=row.timezone,
        feedback_delay_min=int(row.feedback_delay_min),
        feedback_delay_max=int(row.feedback_delay_max),
        quiet_hours_enabled=bool(row.quiet_hours_enabled),
        quiet_hours_start=int(row.quiet_hours_start),
        quiet_hours_end=int(row.quiet_hours_end),
        upsell_revenue_threshold=float(row.upsell_revenue_threshold),
        upsell_consecutive_weeks=int(row.upsell_consecutive_weeks),
    )


def load_automation_settings(db: Session) -> AutomationSettings:
    row = db.get(SystemSettings, SETTINGS_ROW_ID)
    if row is None:
        return default_settings()
    return _from_row(row)


def save_automation_settings(db: Session, values: AutomationSettings) -> AutomationSettings:
    """Upsert the settings row and return what was stored."""
    row = db.get(SystemSettings, SETTINGS_ROW_ID)
    if row is None:
        row = SystemSettings(id=SETTINGS_ROW_ID)
        db.add(row)
    row.timezone = values.timezone
    row.feedback_delay_min = values.feedback_delay_min
    row.feedback_delay_max = values.feedback_delay_max
    row.quiet_hours_enabled = values.quiet_hours_enabled
    row.quiet_hours_start = values.quiet_hours_start
    row.quiet_hours_end = values.quiet_hours_end
    row.upsell_revenue_threshold = Decimal(str(values.upsell_revenue_threshold))
    row.upsell_consecutive_weeks = values.upsell_consecutive_weeks
    db.commit()
    db.refresh(row)
    return _from_row(row)
