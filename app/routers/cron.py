"""
Cron router — called by an external scheduler.

POST /cron/scheduled-automations — time-based rules for all active members
POST /cron/send-feedback         — deliver due feedback and queued messages

Both require `Authorization: Bearer <CRON_SECRET>` when CRON_SECRET is set.
"""
from __future__ import annotations

from dataclasses import asdict
from typing import Optional

from fastapi import APIRouter, Depends, Header, Query
from sqlalchemy.orm import Session

from app.core.config import settings as app_settings
from app.core.errors import CronUnauthorizedError
from app.db.base import get_db
from app.schemas.automation import DeliveryCounts, DeliveryResponse, SweepResponse
from app.services.automation import run_scheduled_sweep
from app.services.automation_settings import load_automation_settings
from app.services.delivery import MessageTransport, get_transport, send_due_feedback, send_due_messages


def verify_cron_secret(authorization: Optional[str] = Header(default=None)) -> None:
    secret = app_settings.CRON_SECRET
    if secret and authorization != f"Bearer {secret}":
        raise CronUnauthorizedError()


router = APIRouter(prefix="/cron", tags=["cron"], dependencies=[Depends(verify_cron_secret)])


@router.post("/scheduled-automations", response_model=SweepResponse, summary="Run time-based rules")
def scheduled_automations(db: Session = Depends(get_db)) -> SweepResponse:
    settings = load_automation_settings(db)
    sweep = run_scheduled_sweep(db, settings)
    return SweepResponse(
        members_checked=sweep.members_checked,
        rules_fired=sweep.rules_fired,
        fired=sweep.fired,
        errors=sweep.errors,
    )


@router.post("/send-feedback", response_model=DeliveryResponse, summary="Deliver due messages")
def send_feedback(
    force: bool = Query(default=False, description="Ignore quiet hours."),
    db: Session = Depends(get_db),
    transport: MessageTransport = Depends(get_transport),
) -> DeliveryResponse:
    settings = load_automation_settings(db)
    feedback = send_due_feedback(db, transport, settings, force=force)
    messages = send_due_messages(db, transport, settings, force=force)
    return DeliveryResponse(
        feedback=DeliveryCounts(**asdict(feedback)),
        messages=DeliveryCounts(**asdict(messages)),
    )
