"""
Submission intake: creates the immutable KpiWeek row.

Public API
----------
create_kpi_week(db, data, settings, now) -> KpiWeek   (commits)

Without an explicit week the submission is filed under the previous ISO week,
counted in the configured automation timezone like rule R2 counts it.

Derived on creation:
  noshow_quote             = noshow / (held + noshow)
  konvertierung_termin_ist = agreed / contacts × 100
  abschlussquote_ist       = closing / held × 100
  *_soll_snapshot          = the member's targets at this moment

Feedback generation and rule runs are started by the caller after the
commit; nothing here waits on them.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, fields
from datetime import date, datetime, timedelta
from decimal import Decimal, ROUND_HALF_UP
from typing import Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from app.core.clock import iso_week_start, local_week_start, utcnow
from app.core.errors import MemberNotFoundError, SubmissionAlreadyExistsError
from app.models.kpi_week import KpiWeek, PERFORMANCE_FIELDS
from app.models.member import Member
from app.services.automation_settings import AutomationSettings

logger = logging.getLogger(__name__)


@dataclass
class SubmissionInput:
    """Schema-agnostic submission payload."""
    member_id: int
    week_start: Optional[date] = None
    umsatz_ist: Optional[Decimal] = None
    kontakte_ist: Optional[int] = None
    entscheider_ist: Optional[int] = None
    termine_vereinbart_ist: Optional[int] = None
    termine_stattgefunden_ist: Optional[int] = None
    termine_abschluss_ist: Optional[int] = None
    termine_noshow_ist: Optional[int] = None
    einheiten_ist: Optional[int] = None
    empfehlungen_ist: Optional[int] = None
    feeling_score: Optional[int] = None
    heldentat: Optional[str] = None
    blockiert: Optional[str] = None
    herausforderung: Optional[str] = None


_ACTUAL_FIELDS = tuple(
    f.name for f in fields(SubmissionInput) if f.name not in ("member_id", "week_start")
)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _previous_week_start(now: datetime, tz_name: str) -> date:
    return local_week_start(now, tz_name) - timedelta(days=7)


def _percent(numerator: Optional[int], denominator: Optional[int]) -> Optional[Decimal]:
    if numerator is None or not denominator:
        return None
    value = Decimal(numerator) / Decimal(denominator) * 100
    return value.quantize(Decimal("0.01"), rounding=ROUND_HALF_UP)


def _noshow_quote(held: Optional[int], noshow: Optional[int]) -> Optional[Decimal]:
    if held is None or noshow is None or held + noshow <= 0:
        return None
    value = Decimal(noshow) / Decimal(held + noshow)
    return value.quantize(Decimal("0.0001"), rounding=ROUND_HALF_UP)


def _clean_text(value: Optional[str]) -> Optional[str]:
    if value is None:
        return None
    value = value.strip()
    return value or None


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------

def create_kpi_week(
    db: Session,
    data: SubmissionInput,
    settings: AutomationSettings,
    now: Optional[datetime] = None,
) -> KpiWeek:
    now = now or utcnow()
    member = db.get(Member, data.member_id)
    if member is None:
        raise MemberNotFoundError(data.member_id)

    if data.week_start is not None:
        week_start = iso_week_start(data.week_start)
    else:
        week_start = _previous_week_start(now, settings.timezone)
    iso_year, iso_week, _ = week_start.isocalendar()

    week = KpiWeek(
        member_id=member.id,
        week_start=week_start,
        week_number=iso_week,
        year=iso_year,
        submitted_at=now,
    )
    for name in _ACTUAL_FIELDS:
        setattr(week, name, getattr(data, name))
    for name in ("heldentat", "blockiert", "herausforderung"):
        setattr(week, name, _clean_text(getattr(data, name)))

    week.noshow_quote = _noshow_quote(data.termine_stattgefunden_ist, data.termine_noshow_ist)
    week.konvertierung_termin_ist = _percent(data.termine_vereinbart_ist, data.kontakte_ist)
    week.abschlussquote_ist = _percent(data.termine_abschluss_ist, data.termine_stattgefunden_ist)

    for _, snapshot_field, live_field in PERFORMANCE_FIELDS:
        setattr(week, snapshot_field, getattr(member, live_field))

    db.add(week)
    try:
        db.commit()
    except IntegrityError:
        db.rollback()
        raise SubmissionAlreadyExistsError(member.id, week_start)

    db.refresh(week)
    logger.info("KPI week %s (%s) submitted for member %s", week.id, week.week_label, member.id)
    return week
