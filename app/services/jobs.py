"""
Background units of work started after a request has committed.

Each job opens its own session (SessionContext), loads the current automation
settings and runs one entry point of app/services/automation.py. A failing job
is logged and rolled back; it can never touch the request that scheduled it.

Scheduled through FastAPI `BackgroundTasks`:
  run_submission_rules_job(member_id)
  submission_feedback_job(kpi_week_id, generator)
  review_release_job(task_id, generator)
"""
from __future__ import annotations

import logging

from app.db.base import SessionContext
from app.services.automation import (
    on_review_task_completed,
    on_submission_created,
    run_submission_rules,
)
from app.services.automation_settings import load_automation_settings
from app.services.text_generation import FeedbackGenerator

logger = logging.getLogger(__name__)


def run_submission_rules_job(member_id: int) -> None:
    with SessionContext() as db:
        try:
            settings = load_automation_settings(db)
            results = run_submission_rules(db, member_id, settings)
        except Exception:
            db.rollback()
            logger.exception("Submission rules failed for member %s", member_id)
            return
    fired = [r.rule_id for r in results if r.triggered]
    logger.info("Submission rules for member %s: fired %s", member_id, fired or "none")


def submission_feedback_job(kpi_week_id: int, generator: FeedbackGenerator) -> None:
    with SessionContext() as db:
        try:
            settings = load_automation_settings(db)
            on_submission_created(db, kpi_week_id, generator, settings)
        except Exception:
            db.rollback()
            logger.exception("Feedback pipeline failed for KPI week %s", kpi_week_id)


def review_release_job(task_id: int, generator: FeedbackGenerator) -> None:
    with SessionContext() as db:
        try:
            settings = load_automation_settings(db)
            on_review_task_completed(db, task_id, generator, settings)
        except Exception:
            db.rollback()
            logger.exception("Feedback release failed for task %s", task_id)
