"""
Task helpers used by the automation core.

  open_review_task(db, member, week, reason, rule_id) -> (Task, created)
      One open review task per KpiWeek: a second block of the same week
      rewrites the existing task instead of adding another one.

  update_task(db, task_id, ...) -> TaskUpdate
      Admin edits. Completing a review task of a still-blocked week sets
      `release_feedback` so the caller can enqueue the feedback release.

  has_open_review_task(db, member_id) -> bool
      Whether the member still has a review pending; the review flag is only
      cleared once none is left.
"""
from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Optional

from sqlalchemy import select
from sqlalchemy.orm import Session

from app.core.clock import utcnow
from app.core.errors import TaskNotFoundError
from app.models.kpi_week import KpiWeek
from app.models.member import Member
from app.models.task import Task, TaskPriority, TaskStatus
from app.services.audit import ANOMALY_RULE_ID, FEEDBACK_BLOCK_RULE_ID

BLOCKADE_RULE_ID = "C2"

# Completing a task with one of these ids may release blocked feedback
REVIEW_RULE_IDS = frozenset({ANOMALY_RULE_ID, FEEDBACK_BLOCK_RULE_ID, BLOCKADE_RULE_ID})
OPEN_STATUSES = (TaskStatus.open, TaskStatus.in_progress)


@dataclass
class TaskUpdate:
    task: Task
    release_feedback: bool


def _review_description(week: KpiWeek, reason: str) -> str:
    return (
        f"KPI-Woche {week.week_number}/{week.year} - KI-Feedback blockiert: {reason}. "
        "Bitte prüfen und bei Bestätigung das KI-Feedback freigeben."
    )


def open_review_task(
    db: Session,
    member: Member,
    week: KpiWeek,
    reason: str,
    rule_id: str = FEEDBACK_BLOCK_RULE_ID,
    now: Optional[datetime] = None,
) -> tuple[Task, bool]:
    existing = db.scalars(
        select(Task).where(
            Task.kpi_week_id == week.id,
            Task.rule_id.in_((ANOMALY_RULE_ID, FEEDBACK_BLOCK_RULE_ID)),
            Task.status.in_(OPEN_STATUSES),
        )
    ).first()

    if existing is not None:
        existing.description = _review_description(week, reason)
        existing.priority = TaskPriority.high
        existing.rule_id = rule_id
        db.flush()
        return existing, False

    task = Task(
        member_id=member.id,
        kpi_week_id=week.id,
        rule_id=rule_id,
        title=f"KI-Feedback prüfen: {member.full_name} (KPI-Woche {week.week_number}/{week.year})",
        description=_review_description(week, reason),
        priority=TaskPriority.high,
        status=TaskStatus.open,
        assigned_to_id=member.assigned_coach_id,
        created_at=now or utcnow(),
    )
    db.add(task)
    db.flush()
    return task, True


def update_task(
    db: Session,
    task_id: int,
    *,
    status: Optional[TaskStatus] = None,
    priority: Optional[TaskPriority] = None,
    description: Optional[str] = None,
    now: Optional[datetime] = None,
) -> TaskUpdate:
    task = db.get(Task, task_id)
    if task is None:
        raise TaskNotFoundError(task_id)

    was_completed = task.status == TaskStatus.completed
    if priority is not None:
        task.priority = priority
    if description is not None:
        task.description = description
    if status is not None:
        task.status = status
        task.completed_at = (now or utcnow()) if status == TaskStatus.completed else None

    release = False
    if status == TaskStatus.completed and not was_completed:
        release = _blocks_feedback(db, task)

    db.commit()
    db.refresh(task)
    return TaskUpdate(task=task, release_feedback=release)


def _blocks_feedback(db: Session, task: Task) -> bool:
    if task.rule_id not in REVIEW_RULE_IDS or task.kpi_week_id is None:
        return False
    week = db.get(KpiWeek, task.kpi_week_id)
    return week is not None and week.ai_feedback_blocked


def has_open_review_task(db: Session, member_id: int) -> bool:
    """True while any review task of the member is still open."""
    found = db.scalars(
        select(Task.id).where(
            Task.member_id == member_id,
            Task.rule_id.in_(REVIEW_RULE_IDS),
            Task.status.in_(OPEN_STATUSES),
        ).limit(1)
    ).first()
    return found is not None
