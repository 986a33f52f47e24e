"""
KPI weeks router.

POST /kpi-weeks        — submit a week; returns immediately, rules and
                         feedback run as background work afterwards
GET  /kpi-weeks/{id}   — submission incl. feedback state and performance
"""
from __future__ import annotations

from fastapi import APIRouter, BackgroundTasks, Depends, status
from sqlalchemy.orm import Session

from app.core.errors import KpiWeekNotFoundError
from app.db.base import get_db
from app.models.kpi_week import KpiWeek
from app.schemas.kpi_week import KpiWeekCreate, KpiWeekResponse
from app.services.automation_settings import load_automation_settings
from app.services.jobs import run_submission_rules_job, submission_feedback_job
from app.services.submissions import SubmissionInput, create_kpi_week
from app.services.text_generation import FeedbackGenerator, get_feedback_generator

router = APIRouter(prefix="/kpi-weeks", tags=["kpi-weeks"])


def _week_to_response(week: KpiWeek) -> KpiWeekResponse:
    data = {column.name: getattr(week, column.name) for column in KpiWeek.__table__.columns}
    data["performance"] = week.performance()
    return KpiWeekResponse.model_validate(data)


@router.post(
    "",
    response_model=KpiWeekResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Submit weekly KPIs",
)
def submit_kpi_week(
    payload: KpiWeekCreate,
    background_tasks: BackgroundTasks,
    db: Session = Depends(get_db),
    generator: FeedbackGenerator = Depends(get_feedback_generator),
) -> KpiWeekResponse:
    settings = load_automation_settings(db)
    week = create_kpi_week(db, SubmissionInput(**payload.model_dump()), settings)
    # Rules first so a C2 block lands before feedback is generated
    background_tasks.add_task(run_submission_rules_job, week.member_id)
    background_tasks.add_task(submission_feedback_job, week.id, generator)
    return _week_to_response(week)


@router.get("/{kpi_week_id}", response_model=KpiWeekResponse, summary="Get one KPI week")
def get_kpi_week(kpi_week_id: int, db: Session = Depends(get_db)) -> KpiWeekResponse:
    week = db.get(KpiWeek, kpi_week_id)
    if week is None:
        raise KpiWeekNotFoundError(kpi_week_id)
    return _week_to_response(week)
