"""
GET /settings/automation → AutomationSettingsSchema
PUT /settings/automation   AutomationSettingsSchema → AutomationSettingsSchema
"""
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from pydantic import Field, field_validator, model_validator

from app.schemas.common import CamelModel


class AutomationSettingsSchema(CamelModel):
    timezone: str = "Europe/Berlin"
    feedback_delay_min: int = Field(ge=0, le=24 * 60)
    feedback_delay_max: int = Field(ge=0, le=24 * 60)
    quiet_hours_enabled: bool = True
    quiet_hours_start: int = Field(ge=0, le=23)
    quiet_hours_end: int = Field(ge=0, le=23)
    upsell_revenue_threshold: float = Field(ge=0)
    upsell_consecutive_weeks: int = Field(ge=4, le=52)

    @field_validator("timezone")
    @classmethod
    def known_timezone(cls, value: str) -> str:
        try:
            ZoneInfo(value)
        except (ZoneInfoNotFoundError, ValueError):
            raise ValueError(f"Unknown timezone: {value}")
        return value

    @model_validator(mode="after")
    def delay_bounds(self) -> "AutomationSettingsSchema":
        if self.feedback_delay_min > self.feedback_delay_max:
            raise ValueError("feedbackDelayMin must not exceed feedbackDelayMax")
        return self
