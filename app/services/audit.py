"""
Audit log writer and reader.

Entries are append-only and keep the shape
  {memberId?, ruleId, ruleName, triggered, actionsTaken[], details, firedAt}.

`record` writes inside a SAVEPOINT: if the insert fails the failure is logged
and swallowed so the primary write it describes still commits.
"""
from __future__ import annotations

import json
import logging
from datetime import datetime
from typing import Any, Optional, Sequence

from sqlalchemy import func, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from app.core.clock import utcnow
from app.models.automation_log import AutomationLog

logger = logging.getLogger(__name__)

# Pseudo rule ids for entries not written by a catalog rule
ANOMALY_RULE_ID = "Q2"
FEEDBACK_BLOCK_RULE_ID = "FEEDBACK_BLOCK"
AI_FEEDBACK_RULE_ID = "AI_FEEDBACK"
AI_FEEDBACK_RELEASE_RULE_ID = "AI_FEEDBACK_RELEASE"
AI_FEEDBACK_SENT_RULE_ID = "AI_FEEDBACK_SENT"
CRON_RULE_ID = "CRON"


def record(
    db: Session,
    *,
    member_id: Optional[int],
    rule_id: str,
    rule_name: str,
    actions: Sequence[str],
    details: Optional[dict[str, Any]] = None,
    triggered: bool = True,
    now: Optional[datetime] = None,
) -> Optional[AutomationLog]:
    entry = AutomationLog(
        member_id=member_id,
        rule_id=rule_id,
        rule_name=rule_name,
        triggered=triggered,
        actions_taken=json.dumps(list(actions)),
        details=json.dumps(details, default=str) if details is not None else None,
        fired_at=now or utcnow(),
    )
    try:
        with db.begin_nested():
            db.add(entry)
            db.flush()
    except SQLAlchemyError:
        logger.warning(
            "Audit entry for %s (member %s) could not be written",
            rule_id, member_id, exc_info=True,
        )
        return None
    return entry


def decode_actions(entry: AutomationLog) -> list[str]:
    return json.loads(entry.actions_taken or "[]")


def decode_details(entry: AutomationLog) -> Optional[dict[str, Any]]:
    return json.loads(entry.details) if entry.details else None


def list_logs(
    db: Session,
    *,
    member_id: Optional[int] = None,
    rule_id: Optional[str] = None,
    limit: int = 50,
    offset: int = 0,
) -> tuple[list[AutomationLog], int]:
    """Newest first. Returns (page, total matching)."""
    stmt = select(AutomationLog)
    if member_id is not None:
        stmt = stmt.where(AutomationLog.member_id == member_id)
    if rule_id is not None:
        stmt = stmt.where(AutomationLog.rule_id == rule_id)

    total = db.scalar(select(func.count()).select_from(stmt.subquery())) or 0
    items = db.scalars(
        stmt.order_by(AutomationLog.fired_at.desc(), AutomationLog.id.desc())
        .limit(limit)
        .offset(offset)
    ).all()
    return list(items), total
