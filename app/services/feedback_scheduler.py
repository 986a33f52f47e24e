"""
Feedback scheduler.

  compute_feedback_delay(min_minutes, max_minutes, rng) -> minutes
  schedule_feedback(db, kpi_week_id, generator, settings, ...) -> FeedbackOutcome

On success the generated text, style and `whatsapp_scheduled_for = now + delay`
are stored with a conditional UPDATE (… WHERE ai_feedback_blocked = false), so
a block written concurrently by the anomaly gate or rule C2 always wins.
Nothing is sent here; the delivery sweep reads `whatsapp_scheduled_for`.

On failure the week is blocked with a reason and a review task is opened:
  credential missing -> "OpenAI API Key nicht konfiguriert"
  call failed/timeout -> "OpenAI Fehler: <first 200 chars of the message>"

`review=True` is the release path after a completed review task: it may
overwrite a blocked week, and on success clears the block under its own audit
id. The member's review flag is cleared only when no other review task of that
member is still open.
"""
from __future__ import annotations

import logging
import random
from concurrent.futures import ThreadPoolExecutor, TimeoutError as FutureTimeout
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional

from sqlalchemy import update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from app.core.clock import utcnow
from app.core.config import settings as app_settings
from app.core.errors import (
    AutomationError,
    ConfigurationError,
    FeedbackGenerationError,
    KpiWeekNotFoundError,
    MemberNotFoundError,
)
from app.models.kpi_week import KpiWeek
from app.models.member import Member
from app.services import audit
from app.services.automation_settings import AutomationSettings
from app.services.tasks import has_open_review_task, open_review_task
from app.services.text_generation import (
    FeedbackGenerator,
    FeedbackRequest,
    GeneratedFeedback,
    feedback_request,
)

logger = logging.getLogger(__name__)

ERROR_REASON_PREFIX = "OpenAI Fehler: "
ERROR_MESSAGE_LIMIT = 200


class FeedbackStatus:
    SCHEDULED = "scheduled"
    BLOCKED = "blocked"
    SKIPPED = "skipped"


@dataclass
class FeedbackOutcome:
    kpi_week_id: int
    status: str
    reason: Optional[str] = None
    style: Optional[str] = None
    delay_minutes: Optional[float] = None
    scheduled_for: Optional[datetime] = None


def compute_feedback_delay(min_minutes: float, max_minutes: float, rng: random.Random) -> float:
    if max_minutes <= min_minutes:
        return float(min_minutes)
    return rng.uniform(min_minutes, max_minutes)


def generate_with_timeout(
    generator: FeedbackGenerator,
    request: FeedbackRequest,
    timeout: float,
) -> GeneratedFeedback:
    """
    Run the collaborator with a deadline; a timeout is a generation failure.

    The worker only receives the detached request. A timed-out call keeps
    running in the background but has nothing bound to the caller's session.
    """
    executor = ThreadPoolExecutor(max_workers=1)
    future = executor.submit(generator.generate, request)
    try:
        return future.result(timeout=timeout)
    except FutureTimeout as exc:
        raise FeedbackGenerationError(f"Zeitüberschreitung nach {timeout:g}s") from exc
    except AutomationError:
        raise
    except Exception as exc:
        raise FeedbackGenerationError(str(exc) or type(exc).__name__) from exc
    finally:
        executor.shutdown(wait=False)


def _failure_reason(exc: AutomationError) -> str:
    if isinstance(exc, ConfigurationError):
        return exc.message
    return f"{ERROR_REASON_PREFIX}{exc.message[:ERROR_MESSAGE_LIMIT]}"


def block_feedback(
    db: Session,
    member: Member,
    week: KpiWeek,
    reason: str,
    now: datetime,
) -> FeedbackOutcome:
    """Mark the week blocked, open a review task, audit, commit."""
    week.ai_feedback_blocked = True
    week.ai_feedback_generated = False
    week.ai_feedback_block_reason = reason[:512]
    week.whatsapp_scheduled_for = None
    db.flush()

    actions = ["BLOCK_AI_FEEDBACK"]
    try:
        with db.begin_nested():
            open_review_task(db, member, week, reason, audit.FEEDBACK_BLOCK_RULE_ID, now)
        actions.append("CREATE_TASK:Review")
    except SQLAlchemyError:
        logger.warning("Review task for KPI week %s could not be written", week.id, exc_info=True)

    audit.record(
        db,
        member_id=member.id,
        rule_id=audit.FEEDBACK_BLOCK_RULE_ID,
        rule_name="KI-Feedback blockiert",
        actions=actions,
        details={"reason": reason, "kpiWeekId": week.id, "week": week.week_label},
        now=now,
    )
    db.commit()
    logger.warning("AI feedback for KPI week %s blocked: %s", week.id, reason)
    return FeedbackOutcome(kpi_week_id=week.id, status=FeedbackStatus.BLOCKED, reason=reason)


def schedule_feedback(
    db: Session,
    kpi_week_id: int,
    generator: FeedbackGenerator,
    settings: AutomationSettings,
    *,
    now: Optional[datetime] = None,
    rng: Optional[random.Random] = None,
    timeout: Optional[float] = None,
    review: bool = False,
) -> FeedbackOutcome:
    rng = rng or random.Random()
    timeout = timeout or app_settings.FEEDBACK_GENERATION_TIMEOUT_SEC

    week = db.get(KpiWeek, kpi_week_id)
    if week is None:
        raise KpiWeekNotFoundError(kpi_week_id)
    member = db.get(Member, week.member_id)
    if member is None:
        raise MemberNotFoundError(week.member_id)

    if week.whatsapp_feedback_sent:
        return FeedbackOutcome(week.id, FeedbackStatus.SKIPPED, reason="Feedback bereits versendet")
    if not review and week.ai_feedback_blocked:
        return FeedbackOutcome(week.id, FeedbackStatus.SKIPPED, reason=week.ai_feedback_block_reason)
    if not review and week.ai_feedback_generated:
        return FeedbackOutcome(week.id, FeedbackStatus.SKIPPED, reason="Feedback bereits generiert")

    try:
        generated = generate_with_timeout(generator, feedback_request(member, week), timeout)
    except (ConfigurationError, FeedbackGenerationError) as exc:
        return block_feedback(db, member, week, _failure_reason(exc), now or utcnow())

    now = now or utcnow()
    delay = compute_feedback_delay(settings.feedback_delay_min, settings.feedback_delay_max, rng)
    scheduled_for = now + timedelta(minutes=delay)

    values = {
        "ai_feedback_generated": True,
        "ai_feedback_text": generated.text,
        "ai_feedback_style": generated.style,
        "ai_feedback_generated_at": now,
        "ai_feedback_block_reason": None,
        "whatsapp_scheduled_for": scheduled_for,
    }
    conditions = [KpiWeek.id == week.id, KpiWeek.whatsapp_feedback_sent.is_(False)]
    if review:
        values["ai_feedback_blocked"] = False
    else:
        conditions.append(KpiWeek.ai_feedback_blocked.is_(False))

    updated = db.execute(
        update(KpiWeek).where(*conditions).values(**values)
        .execution_options(synchronize_session=False)
    ).rowcount
    if not updated:
        db.rollback()
        logger.info("KPI week %s was blocked while feedback was generated", week.id)
        return FeedbackOutcome(week.id, FeedbackStatus.SKIPPED, reason="Feedback blockiert")

    if review:
        rule_id, rule_name = audit.AI_FEEDBACK_RELEASE_RULE_ID, "KI-Feedback freigegeben"
        actions = ["GENERATE_AI_FEEDBACK", "UNBLOCK_AI_FEEDBACK"]
        # Other weeks of the member may still be under review
        if not has_open_review_task(db, member.id):
            member.review_flag = False
            actions.append("CLEAR_FLAG:review")
        actions.append("SCHEDULE_WHATSAPP")
    else:
        rule_id, rule_name = audit.AI_FEEDBACK_RULE_ID, "KI-Feedback generiert"
        actions = ["GENERATE_AI_FEEDBACK", "SCHEDULE_WHATSAPP"]

    audit.record(
        db,
        member_id=member.id,
        rule_id=rule_id,
        rule_name=rule_name,
        actions=actions,
        details={
            "kpiWeekId": week.id,
            "style": generated.style,
            "delayMinutes": round(delay, 1),
            "scheduledFor": scheduled_for.isoformat(),
        },
        now=now,
    )
    db.commit()
    db.refresh(week)
    logger.info(
        "AI feedback for KPI week %s scheduled for %s (%s)",
        week.id, scheduled_for.isoformat(), generated.style,
    )
    return FeedbackOutcome(
        kpi_week_id=week.id,
        status=FeedbackStatus.SCHEDULED,
        style=generated.style,
        delay_minutes=delay,
        scheduled_for=scheduled_for,
    )
