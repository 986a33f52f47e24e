"""
Action dispatcher — applies the action list of a triggered rule.

Every action runs in its own SAVEPOINT. A failing action is rolled back to its
savepoint, logged, and reported in `DispatchOutcome.errors`; the remaining
actions still run. The caller (app/services/automation.py) writes the audit
entry and commits.

Action tags (in the order the actions ran):
  SET_FLAG:<flag>           flag set (already-set flags are a no-op, tag kept)
  CREATE_TASK:<title>       task created
  TASK_EXISTS:<title>       same open task created within the last hour
  CREATE_TASK:Review        review task for the latest KpiWeek
  ADD_NOTE / ADD_NOTE:pinned
  SEND_EMAIL:<template>     message queued for the delivery sweep
  SEND_WHATSAPP:<template>
  DEFER_WHATSAPP:<template> queued for the end of quiet hours
  BLOCK_AI_FEEDBACK

Messages are only queued here; the transport is called by the delivery sweep.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Any

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from app.core.errors import ActionFailedError, AutomationError
from app.models.outbound_message import Channel, OutboundMessage
from app.models.task import Task, TaskStatus
from app.models.note import MemberNote
from app.services.quiet_hours import in_quiet_hours, quiet_hours_end
from app.services.rules import (
    Action,
    AddNote,
    BlockFeedback,
    CreateTask,
    OpenReviewTask,
    Rule,
    RuleContext,
    RuleEvaluation,
    SendMessage,
    SetFlag,
)
from app.services.tasks import OPEN_STATUSES, open_review_task

logger = logging.getLogger(__name__)

TASK_DEDUP_WINDOW = timedelta(hours=1)

MESSAGE_TEMPLATES: dict[str, str] = {
    "kpi_reminder": (
        "Hi {vorname}, deine KPIs für diese Woche fehlen noch. "
        "Trag sie kurz ein, damit wir dich gezielt unterstützen können."
    ),
    "celebration_momentum": (
        "Hi {vorname}, drei Wochen in Folge auf oder über Ziel. Starke Serie, weiter so!"
    ),
    "missing_fields": (
        "Hallo {vorname}, in deiner KPI-Abgabe ({week}) fehlen noch Angaben: {missing}. "
        "Bitte ergänze sie bei der nächsten Abgabe."
    ),
    "smart_nudge": (
        "Hallo {vorname}, für dich sind noch keine Wochenziele hinterlegt. "
        "Lass uns gemeinsam Ziele für Umsatz, Kontakte und Einheiten festlegen."
    ),
}


class _SafeDict(dict):
    def __missing__(self, key: str) -> str:
        return ""


@dataclass
class DispatchOutcome:
    actions_taken: list[str] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)


def render(template: str, values: dict[str, Any]) -> str:
    return template.format_map(_SafeDict(values))


def template_values(ctx: RuleContext, evaluation: RuleEvaluation) -> dict[str, Any]:
    member = ctx.member
    week = ctx.latest
    values: dict[str, Any] = {
        "name": member.full_name,
        "vorname": member.vorname,
        "reason": evaluation.reason,
        "missing": ", ".join(evaluation.details.get("missing", [])),
    }
    if week is not None:
        values.update({
            "week": week.week_label,
            "feeling": week.feeling_score if week.feeling_score is not None else "-",
            "heldentat": (week.heldentat or "").strip(),
            "blockiert": (week.blockiert or "").strip(),
            "noshow_pct": round(float(week.noshow_quote) * 100) if week.noshow_quote is not None else "-",
        })
    return values


# ---------------------------------------------------------------------------
# Individual actions
# ---------------------------------------------------------------------------

def _set_flag(db: Session, action: SetFlag, ctx: RuleContext) -> str:
    setattr(ctx.member, action.flag.column, True)
    db.flush()
    return f"SET_FLAG:{action.flag.value}"


def _create_task(
    db: Session, action: CreateTask, ctx: RuleContext, rule: Rule, values: dict[str, Any]
) -> str:
    duplicate = db.scalars(
        select(Task.id).where(
            Task.member_id == ctx.member.id,
            Task.rule_id == rule.id.value,
            Task.title == action.title,
            Task.status.in_(OPEN_STATUSES),
            Task.created_at >= ctx.now - TASK_DEDUP_WINDOW,
        )
    ).first()
    if duplicate is not None:
        return f"TASK_EXISTS:{action.title}"

    kpi_week_id = None
    if action.link_week:
        if ctx.latest is None:
            raise ActionFailedError("Keine KPI-Woche zum Verknüpfen")
        kpi_week_id = ctx.latest.id

    db.add(Task(
        member_id=ctx.member.id,
        kpi_week_id=kpi_week_id,
        rule_id=rule.id.value,
        title=action.title,
        description=render(action.description, values) or None,
        priority=action.priority,
        status=TaskStatus.open,
        assigned_to_id=ctx.member.assigned_coach_id,
        created_at=ctx.now,
    ))
    db.flush()
    return f"CREATE_TASK:{action.title}"


def _open_review_task(db: Session, ctx: RuleContext, rule: Rule, evaluation: RuleEvaluation) -> str:
    if ctx.latest is None:
        raise ActionFailedError("Keine KPI-Woche für Review")
    open_review_task(db, ctx.member, ctx.latest, evaluation.reason, rule.id.value, ctx.now)
    return "CREATE_TASK:Review"


def _add_note(db: Session, action: AddNote, ctx: RuleContext, rule: Rule, values: dict[str, Any]) -> str:
    db.add(MemberNote(
        member_id=ctx.member.id,
        author_name=action.author,
        content=render(action.content, values),
        is_pinned=action.pinned,
        rule_id=rule.id.value,
        created_at=ctx.now,
    ))
    db.flush()
    return "ADD_NOTE:pinned" if action.pinned else "ADD_NOTE"


def _send_message(
    db: Session,
    action: SendMessage,
    ctx: RuleContext,
    rule: Rule,
    values: dict[str, Any],
    force: bool,
) -> str:
    member = ctx.member
    if action.channel == Channel.whatsapp:
        recipient = member.whatsapp_nummer
        if not recipient:
            raise ActionFailedError("Keine WhatsApp-Nummer hinterlegt")
    else:
        recipient = member.email
        if not recipient:
            raise ActionFailedError("Keine E-Mail-Adresse hinterlegt")

    template = MESSAGE_TEMPLATES.get(action.template)
    if template is None:
        raise ActionFailedError(f"Unbekanntes Template: {action.template}")

    scheduled_for = ctx.now
    tag = f"SEND_{action.channel.value.upper()}:{action.template}"
    window = ctx.settings.quiet_hours
    if action.channel == Channel.whatsapp and not force and in_quiet_hours(ctx.now, window):
        scheduled_for = quiet_hours_end(ctx.now, window)
        tag = f"DEFER_WHATSAPP:{action.template}"

    db.add(OutboundMessage(
        member_id=member.id,
        channel=action.channel,
        template=action.template,
        recipient=recipient,
        content=render(template, values),
        rule_id=rule.id.value,
        scheduled_for=scheduled_for,
        sent=False,
        created_at=ctx.now,
    ))
    db.flush()
    return tag


def _block_feedback(db: Session, ctx: RuleContext, evaluation: RuleEvaluation) -> str:
    week = ctx.latest
    if week is None:
        raise ActionFailedError("Keine KPI-Woche zum Blockieren")
    if week.whatsapp_feedback_sent:
        raise ActionFailedError("Feedback wurde bereits versendet")
    week.ai_feedback_blocked = True
    week.ai_feedback_generated = False
    week.ai_feedback_block_reason = evaluation.reason[:512]
    week.whatsapp_scheduled_for = None
    db.flush()
    return "BLOCK_AI_FEEDBACK"


def _apply(
    db: Session,
    action: Action,
    rule: Rule,
    ctx: RuleContext,
    evaluation: RuleEvaluation,
    values: dict[str, Any],
    force: bool,
) -> str:
    if isinstance(action, SetFlag):
        return _set_flag(db, action, ctx)
    if isinstance(action, CreateTask):
        return _create_task(db, action, ctx, rule, values)
    if isinstance(action, OpenReviewTask):
        return _open_review_task(db, ctx, rule, evaluation)
    if isinstance(action, AddNote):
        return _add_note(db, action, ctx, rule, values)
    if isinstance(action, SendMessage):
        return _send_message(db, action, ctx, rule, values, force)
    if isinstance(action, BlockFeedback):
        return _block_feedback(db, ctx, evaluation)
    raise ActionFailedError(f"Unbekannte Aktion: {type(action).__name__}")


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------

def dispatch(
    db: Session,
    rule: Rule,
    ctx: RuleContext,
    evaluation: RuleEvaluation,
    *,
    force: bool = False,
) -> DispatchOutcome:
    """Run the rule's actions in order. Does not commit."""
    outcome = DispatchOutcome()
    values = template_values(ctx, evaluation)

    for action in rule.actions:
        try:
            with db.begin_nested():
                tag = _apply(db, action, rule, ctx, evaluation, values, force)
        except (AutomationError, SQLAlchemyError) as exc:
            message = exc.message if isinstance(exc, AutomationError) else str(exc)
            logger.warning(
                "Action %s of rule %s failed for member %s: %s",
                type(action).__name__, rule.id.value, ctx.member.id, message,
            )
            outcome.errors.append(f"{type(action).__name__}: {message}")
            continue
        outcome.actions_taken.append(tag)

    return outcome
