"""
Cooldown store — one row per (member, rule).

Public API
----------
  active_cooldown(db, member_id, rule_id, now)   -> expires_at | None
  is_cooling_down(db, member_id, rule_id, now)   -> bool
  try_acquire(db, member_id, rule_id, duration, now) -> expires_at | None
  refresh(db, member_id, rule_id, duration, now) -> expires_at
  clear_cooldown(db, member_id, rule_id=None)    -> rows deleted

Keys are matched exactly on rule_id. Expired rows stay in the table and are
treated as absent.

At-most-once
------------
`try_acquire` is a single INSERT ... ON CONFLICT (member_id, rule_id)
DO UPDATE ... WHERE expires_at <= now RETURNING id. A row comes back only when
the caller inserted a fresh cooldown or took over an expired one; a concurrent
caller that loses the race gets nothing back and must not dispatch.
None of these functions commit.
"""
from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Optional

from sqlalchemy import delete, select
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.orm import Session

from app.core.clock import as_utc
from app.models.cooldown import AutomationCooldown

logger = logging.getLogger(__name__)


def _insert_for(db: Session):
    dialect = db.get_bind().dialect.name
    if dialect == "postgresql":
        return postgresql.insert
    if dialect == "sqlite":
        return sqlite.insert
    raise NotImplementedError(f"Cooldown upsert not supported on {dialect}")


def active_cooldown(db: Session, member_id: int, rule_id: str, now: datetime) -> Optional[datetime]:
    expires_at = db.scalar(
        select(AutomationCooldown.expires_at).where(
            AutomationCooldown.member_id == member_id,
            AutomationCooldown.rule_id == rule_id,
        )
    )
    expires_at = as_utc(expires_at)
    if expires_at is None or expires_at <= now:
        return None
    return expires_at


def is_cooling_down(db: Session, member_id: int, rule_id: str, now: datetime) -> bool:
    return active_cooldown(db, member_id, rule_id, now) is not None


def try_acquire(
    db: Session,
    member_id: int,
    rule_id: str,
    duration: timedelta,
    now: datetime,
) -> Optional[datetime]:
    """Claim the (member, rule) cooldown. Returns the new expiry, or None if it is held."""
    expires_at = now + duration
    insert = _insert_for(db)
    stmt = insert(AutomationCooldown).values(
        member_id=member_id,
        rule_id=rule_id,
        expires_at=expires_at,
        created_at=now,
    )
    stmt = stmt.on_conflict_do_update(
        index_elements=[AutomationCooldown.member_id, AutomationCooldown.rule_id],
        set_={"expires_at": stmt.excluded.expires_at, "created_at": stmt.excluded.created_at},
        where=AutomationCooldown.expires_at <= now,
    ).returning(AutomationCooldown.id)

    claimed = db.execute(stmt).first()
    if claimed is None:
        logger.info("Cooldown %s held for member %s", rule_id, member_id)
        return None
    return expires_at


def refresh(
    db: Session,
    member_id: int,
    rule_id: str,
    duration: timedelta,
    now: datetime,
) -> datetime:
    """Unconditional upsert of the expiry to now + duration."""
    expires_at = now + duration
    insert = _insert_for(db)
    stmt = insert(AutomationCooldown).values(
        member_id=member_id,
        rule_id=rule_id,
        expires_at=expires_at,
        created_at=now,
    )
    stmt = stmt.on_conflict_do_update(
        index_elements=[AutomationCooldown.member_id, AutomationCooldown.rule_id],
        set_={"expires_at": stmt.excluded.expires_at},
    )
    db.execute(stmt)
    return expires_at


def clear_cooldown(db: Session, member_id: int, rule_id: Optional[str] = None) -> int:
    """Admin override. Without rule_id every cooldown of the member is removed."""
    stmt = delete(AutomationCooldown).where(AutomationCooldown.member_id == member_id)
    if rule_id is not None:
        stmt = stmt.where(AutomationCooldown.rule_id == rule_id)
    deleted = db.execute(stmt).rowcount or 0
    logger.info("Cleared %d cooldown(s) for member %s (rule=%s)", deleted, member_id, rule_id or "*")
    return deleted
