"""
KPI week schemas.

POST /kpi-weeks        KpiWeekCreate → KpiWeekResponse (201)
GET  /kpi-weeks/{id}   → KpiWeekResponse

Actual values are not range-checked here: implausible numbers are accepted and
then blocked by the anomaly gate with a review task.
"""
from datetime import date, datetime
from decimal import Decimal
from typing import Optional

from pydantic import Field

from app.schemas.common import CamelModel


class KpiWeekCreate(CamelModel):
    member_id: int
    week_start: Optional[date] = Field(
        default=None,
        description="Any day of the reported week; defaults to the previous ISO week.",
    )
    umsatz_ist: Optional[Decimal] = None
    kontakte_ist: Optional[int] = None
    entscheider_ist: Optional[int] = None
    termine_vereinbart_ist: Optional[int] = None
    termine_stattgefunden_ist: Optional[int] = None
    termine_abschluss_ist: Optional[int] = None
    termine_noshow_ist: Optional[int] = None
    einheiten_ist: Optional[int] = None
    empfehlungen_ist: Optional[int] = None
    feeling_score: Optional[int] = Field(default=None, ge=1, le=10)
    heldentat: Optional[str] = Field(default=None, max_length=2000)
    blockiert: Optional[str] = Field(default=None, max_length=2000)
    herausforderung: Optional[str] = Field(default=None, max_length=2000)


class KpiWeekResponse(CamelModel):
    id: int
    member_id: int
    week_start: date
    week_number: int
    year: int

    umsatz_ist: Optional[Decimal] = None
    kontakte_ist: Optional[int] = None
    entscheider_ist: Optional[int] = None
    termine_vereinbart_ist: Optional[int] = None
    termine_stattgefunden_ist: Optional[int] = None
    termine_abschluss_ist: Optional[int] = None
    termine_noshow_ist: Optional[int] = None
    einheiten_ist: Optional[int] = None
    empfehlungen_ist: Optional[int] = None
    noshow_quote: Optional[Decimal] = None
    konvertierung_termin_ist: Optional[Decimal] = None
    abschlussquote_ist: Optional[Decimal] = None

    feeling_score: Optional[int] = None
    heldentat: Optional[str] = None
    blockiert: Optional[str] = None
    herausforderung: Optional[str] = None

    performance: dict[str, Optional[int]] = Field(
        default_factory=dict,
        description="Percent of target per metric, from the goal snapshot.",
    )

    ai_feedback_generated: bool
    ai_feedback_blocked: bool
    ai_feedback_block_reason: Optional[str] = None
    ai_feedback_text: Optional[str] = None
    ai_feedback_style: Optional[str] = None
    ai_feedback_generated_at: Optional[datetime] = None
    whatsapp_scheduled_for: Optional[datetime] = None
    whatsapp_feedback_sent: bool
    whatsapp_sent_at: Optional[datetime] = None
    submitted_at: datetime
