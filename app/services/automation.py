"""
Automation entry points.

Public API
----------
evaluate(db, rule_id | "all", member_id, settings)          -> list[RuleEvaluation]   (no writes)
execute(db, rule_id, member_id, settings, ...)               -> ExecutionResult
clear_cooldown(db, member_id, rule_id=None)                  -> int
apply_anomaly_gate(db, member, week, now)                    -> AnomalyResult
on_submission_created(db, kpi_week_id, generator, settings)  -> SubmissionOutcome
on_review_task_completed(db, task_id, generator, settings)   -> FeedbackOutcome | None
run_submission_rules(db, member_id, settings)                -> list[ExecutionResult]
run_scheduled_sweep(db, settings)                            -> SweepResult

Execute path
------------
  load member + recent weeks
  → optional cooldown clear
  → cooldown pre-check           (held → executed, not triggered)
  → evaluate                     (same evaluator as the dry run)
  → atomic cooldown claim        (lost race → executed, not triggered)
  → dispatch actions             (one SAVEPOINT each, best effort)
  → one audit entry
  → commit
"""
from __future__ import annotations

import logging
import random
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Optional

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from app.core.clock import utcnow
from app.core.errors import (
    AutomationError,
    KpiWeekNotFoundError,
    MemberNotFoundError,
    TaskNotFoundError,
)
from app.models.kpi_week import KpiWeek
from app.models.member import Member, MemberStatus
from app.models.task import Task
from app.services import audit, cooldowns
from app.services.anomaly import AnomalyResult, detect_anomaly
from app.services.automation_settings import AutomationSettings
from app.services.dispatcher import dispatch
from app.services.feedback_scheduler import FeedbackOutcome, schedule_feedback
from app.services.rules import (
    CATALOG,
    NO_KPI,
    SUBMISSION_RULES,
    SWEEP_RULES,
    RuleContext,
    RuleEvaluation,
    RuleId,
    evaluate_rule,
    get_rule,
    history_window,
)
from app.services.tasks import open_review_task
from app.services.text_generation import FeedbackGenerator

logger = logging.getLogger(__name__)

COOLDOWN_ACTIVE = "Cooldown aktiv"
ANOMALY_ACTIONS = ["BLOCK_AI_FEEDBACK", "SET_FLAG:review", "CREATE_TASK:Review"]


# ---------------------------------------------------------------------------
# Result types
# ---------------------------------------------------------------------------

@dataclass
class CooldownState:
    expires_at: Optional[datetime]
    is_active: bool


@dataclass
class ExecutionResult:
    rule_id: str
    rule_name: str
    member_id: int
    executed: bool
    triggered: bool
    error: Optional[str] = None
    actions_taken: list[str] = field(default_factory=list)
    cooldown: Optional[CooldownState] = None
    reason: Optional[str] = None
    details: dict[str, Any] = field(default_factory=dict)
    log_id: Optional[int] = None

    @property
    def success(self) -> bool:
        return self.executed and not self.error


@dataclass
class SubmissionOutcome:
    kpi_week_id: int
    anomaly: AnomalyResult
    feedback: Optional[FeedbackOutcome] = None


@dataclass
class SweepResult:
    members_checked: int = 0
    rules_fired: int = 0
    fired: list[dict[str, Any]] = field(default_factory=list)
    errors: list[dict[str, Any]] = field(default_factory=list)


# ---------------------------------------------------------------------------
# Loading
# ---------------------------------------------------------------------------

def load_member(db: Session, member_id: int) -> Member:
    member = db.get(Member, member_id)
    if member is None:
        raise MemberNotFoundError(member_id)
    return member


def load_recent_weeks(db: Session, member_id: int, limit: int) -> list[KpiWeek]:
    """Newest first."""
    return list(db.scalars(
        select(KpiWeek)
        .where(KpiWeek.member_id == member_id)
        .order_by(KpiWeek.week_start.desc())
        .limit(limit)
    ).all())


def build_context(
    db: Session, member: Member, settings: AutomationSettings, now: datetime
) -> RuleContext:
    weeks = load_recent_weeks(db, member.id, history_window(settings))
    return RuleContext(member=member, weeks=weeks, settings=settings, now=now)


# ---------------------------------------------------------------------------
# Dry run / execute
# ---------------------------------------------------------------------------

def evaluate(
    db: Session,
    rule_id: str,
    member_id: int,
    settings: AutomationSettings,
    now: Optional[datetime] = None,
) -> list[RuleEvaluation]:
    rules = list(CATALOG.values()) if rule_id == "all" else [get_rule(rule_id)]
    member = load_member(db, member_id)
    ctx = build_context(db, member, settings, now or utcnow())
    return [evaluate_rule(rule, ctx) for rule in rules]


def execute(
    db: Session,
    rule_id: str,
    member_id: int,
    settings: AutomationSettings,
    *,
    clear_cooldown_first: bool = False,
    force: bool = False,
    now: Optional[datetime] = None,
) -> ExecutionResult:
    rule = get_rule(rule_id)
    member = load_member(db, member_id)
    now = now or utcnow()
    key = rule.id.value

    def result(**kwargs: Any) -> ExecutionResult:
        return ExecutionResult(rule_id=key, rule_name=rule.name, member_id=member.id, **kwargs)

    if clear_cooldown_first:
        cooldowns.clear_cooldown(db, member.id, key)

    held_until = cooldowns.active_cooldown(db, member.id, key, now)
    if held_until is not None:
        db.commit()
        logger.info("Rule %s skipped for member %s: cooldown until %s", key, member.id, held_until)
        return result(
            executed=True, triggered=False, reason=COOLDOWN_ACTIVE,
            cooldown=CooldownState(held_until, True),
        )

    ctx = build_context(db, member, settings, now)
    if rule.needs_submission and ctx.latest is None:
        db.commit()
        return result(executed=False, triggered=False, error=NO_KPI, reason=NO_KPI)

    evaluation = evaluate_rule(rule, ctx)
    if not evaluation.would_trigger:
        db.commit()
        return result(
            executed=True, triggered=False,
            reason=evaluation.reason, details=evaluation.details,
        )

    expires_at = cooldowns.try_acquire(db, member.id, key, rule.cooldown, now)
    if expires_at is None:
        db.rollback()
        held_until = cooldowns.active_cooldown(db, member.id, key, now)
        return result(
            executed=True, triggered=False, reason=COOLDOWN_ACTIVE,
            cooldown=CooldownState(held_until, held_until is not None),
        )

    outcome = dispatch(db, rule, ctx, evaluation, force=force)
    details = {"reason": evaluation.reason, **evaluation.details}
    if outcome.errors:
        details["errors"] = outcome.errors
    entry = audit.record(
        db,
        member_id=member.id,
        rule_id=key,
        rule_name=rule.name,
        actions=outcome.actions_taken,
        details=details,
        now=now,
    )
    db.commit()
    logger.info(
        "Rule %s fired for member %s: %s", key, member.id, ", ".join(outcome.actions_taken) or "-"
    )
    return result(
        executed=True,
        triggered=True,
        error="; ".join(outcome.errors) or None,
        actions_taken=outcome.actions_taken,
        cooldown=CooldownState(expires_at, True),
        reason=evaluation.reason,
        details=evaluation.details,
        log_id=entry.id if entry is not None else None,
    )


def clear_cooldown(db: Session, member_id: int, rule_id: Optional[str] = None) -> int:
    member = load_member(db, member_id)
    key = get_rule(rule_id).id.value if rule_id is not None else None
    deleted = cooldowns.clear_cooldown(db, member.id, key)
    db.commit()
    return deleted


# ---------------------------------------------------------------------------
# Submission pipeline
# ---------------------------------------------------------------------------

def apply_anomaly_gate(db: Session, member: Member, week: KpiWeek, now: datetime) -> AnomalyResult:
    """Block feedback of an implausible submission. Commits only on a match."""
    anomaly = detect_anomaly(week)
    if not anomaly.has_anomaly:
        return anomaly

    week.ai_feedback_blocked = True
    week.ai_feedback_generated = False
    week.ai_feedback_block_reason = anomaly.reason
    week.whatsapp_scheduled_for = None
    member.review_flag = True
    db.flush()

    try:
        with db.begin_nested():
            open_review_task(db, member, week, anomaly.reason, audit.ANOMALY_RULE_ID, now)
    except SQLAlchemyError:
        logger.warning("Review task for KPI week %s could not be written", week.id, exc_info=True)

    audit.record(
        db,
        member_id=member.id,
        rule_id=audit.ANOMALY_RULE_ID,
        rule_name=CATALOG[RuleId.Q2].name,
        actions=ANOMALY_ACTIONS,
        details={"reason": anomaly.reason, "kpiWeekId": week.id, "week": week.week_label},
        now=now,
    )
    cooldowns.refresh(db, member.id, RuleId.Q2.value, CATALOG[RuleId.Q2].cooldown, now)
    db.commit()
    logger.warning("Anomaly in KPI week %s: %s", week.id, anomaly.reason)
    return anomaly


def on_submission_created(
    db: Session,
    kpi_week_id: int,
    generator: FeedbackGenerator,
    settings: AutomationSettings,
    *,
    now: Optional[datetime] = None,
    rng: Optional[random.Random] = None,
    timeout: Optional[float] = None,
) -> SubmissionOutcome:
    """Anomaly gate, then (clean submissions only) the feedback scheduler."""
    week = db.get(KpiWeek, kpi_week_id)
    if week is None:
        raise KpiWeekNotFoundError(kpi_week_id)
    member = load_member(db, week.member_id)
    now = now or utcnow()

    anomaly = apply_anomaly_gate(db, member, week, now)
    if anomaly.has_anomaly:
        return SubmissionOutcome(kpi_week_id=week.id, anomaly=anomaly)

    feedback = schedule_feedback(
        db, week.id, generator, settings, now=now, rng=rng, timeout=timeout,
    )
    return SubmissionOutcome(kpi_week_id=week.id, anomaly=anomaly, feedback=feedback)


def on_review_task_completed(
    db: Session,
    task_id: int,
    generator: FeedbackGenerator,
    settings: AutomationSettings,
    *,
    now: Optional[datetime] = None,
    rng: Optional[random.Random] = None,
    timeout: Optional[float] = None,
) -> Optional[FeedbackOutcome]:
    """Re-run the scheduler for the blocked week behind a completed review task."""
    task = db.get(Task, task_id)
    if task is None:
        raise TaskNotFoundError(task_id)
    if task.kpi_week_id is None:
        return None
    week = db.get(KpiWeek, task.kpi_week_id)
    if week is None or not week.ai_feedback_blocked:
        return None

    logger.info("Review task %s completed, releasing feedback for KPI week %s", task.id, week.id)
    return schedule_feedback(
        db, week.id, generator, settings, now=now, rng=rng, timeout=timeout, review=True,
    )


# ---------------------------------------------------------------------------
# Batch runs
# ---------------------------------------------------------------------------

def run_submission_rules(
    db: Session,
    member_id: int,
    settings: AutomationSettings,
    now: Optional[datetime] = None,
) -> list[ExecutionResult]:
    member = load_member(db, member_id)
    if member.status != MemberStatus.aktiv:
        return []
    now = now or utcnow()
    results = []
    for rule_id in SUBMISSION_RULES:
        try:
            results.append(execute(db, rule_id.value, member_id, settings, now=now))
        except (AutomationError, SQLAlchemyError) as exc:
            db.rollback()
            logger.warning("Submission rule %s failed for member %s: %s", rule_id.value, member_id, exc)
            results.append(ExecutionResult(
                rule_id=rule_id.value,
                rule_name=CATALOG[rule_id].name,
                member_id=member_id,
                executed=False,
                triggered=False,
                error=str(exc),
            ))
    return results


def run_scheduled_sweep(
    db: Session,
    settings: AutomationSettings,
    now: Optional[datetime] = None,
) -> SweepResult:
    """Time-based rules for every active member. One member's failure never stops the rest."""
    now = now or utcnow()
    sweep = SweepResult()
    member_ids = db.scalars(
        select(Member.id).where(Member.status == MemberStatus.aktiv).order_by(Member.id)
    ).all()

    for member_id in member_ids:
        sweep.members_checked += 1
        for rule_id in SWEEP_RULES:
            try:
                outcome = execute(db, rule_id.value, member_id, settings, now=now)
            except (AutomationError, SQLAlchemyError) as exc:
                db.rollback()
                logger.warning("Sweep rule %s failed for member %s: %s", rule_id.value, member_id, exc)
                sweep.errors.append({"memberId": member_id, "ruleId": rule_id.value, "error": str(exc)})
                continue
            if outcome.triggered:
                sweep.rules_fired += 1
                sweep.fired.append({"memberId": member_id, "ruleId": rule_id.value})

    audit.record(
        db,
        member_id=None,
        rule_id=audit.CRON_RULE_ID,
        rule_name="Geplante Automationen",
        actions=[f"{item['ruleId']}:{item['memberId']}" for item in sweep.fired],
        details={
            "membersChecked": sweep.members_checked,
            "rulesFired": sweep.rules_fired,
            "errors": sweep.errors,
        },
        triggered=sweep.rules_fired > 0,
        now=now,
    )
    db.commit()
    logger.info(
        "Scheduled sweep: %d members checked, %d rules fired, %d errors",
        sweep.members_checked, sweep.rules_fired, len(sweep.errors),
    )
    return sweep
