"""
Automations router.

POST   /automations/test                  — dry run, never writes
POST   /automations/execute               — live run of one rule
DELETE /automations/cooldowns/{member_id} — clear cooldown(s), ?ruleId= for one rule
GET    /automations/rules                 — rule catalog
GET    /automations/logs                  — audit log (paginated, newest first)
"""
from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from app.db.base import get_db
from app.models.automation_log import AutomationLog
from app.schemas.automation import (
    AutomationLogListResponse,
    AutomationLogOut,
    ClearCooldownResponse,
    CooldownOut,
    EvaluateRequest,
    EvaluateResponse,
    ExecuteRequest,
    ExecuteResponse,
    RuleEvaluationOut,
    RuleListResponse,
    RuleOut,
)
from app.services import audit, automation
from app.services.automation_settings import load_automation_settings
from app.services.rules import CATALOG, Rule

router = APIRouter(prefix="/automations", tags=["automations"])


# ---------------------------------------------------------------------------
# Serialization helpers
# ---------------------------------------------------------------------------

def _action_label(action) -> str:
    name = type(action).__name__
    for attr in ("flag", "title", "template"):
        value = getattr(action, attr, None)
        if value is not None:
            return f"{name}:{getattr(value, 'value', value)}"
    return name


def _rule_to_response(rule: Rule) -> RuleOut:
    return RuleOut(
        id=rule.id.value,
        name=rule.name,
        category=rule.category.value,
        cooldown_days=rule.cooldown.days,
        actions=[_action_label(a) for a in rule.actions],
        needs_submission=rule.needs_submission,
        on_submission=rule.on_submission,
        on_sweep=rule.on_sweep,
    )


def _log_to_response(entry: AutomationLog) -> AutomationLogOut:
    return AutomationLogOut(
        id=entry.id,
        member_id=entry.member_id,
        rule_id=entry.rule_id,
        rule_name=entry.rule_name,
        triggered=entry.triggered,
        actions_taken=audit.decode_actions(entry),
        details=audit.decode_details(entry),
        fired_at=entry.fired_at,
    )


# ---------------------------------------------------------------------------
# Endpoints
# ---------------------------------------------------------------------------

@router.post("/test", response_model=EvaluateResponse, summary="Dry-run one rule or all rules")
def test_rules(payload: EvaluateRequest, db: Session = Depends(get_db)) -> EvaluateResponse:
    settings = load_automation_settings(db)
    results = automation.evaluate(db, payload.rule_id, payload.member_id, settings)
    return EvaluateResponse(
        member_id=payload.member_id,
        results=[
            RuleEvaluationOut(
                rule_id=r.rule_id,
                rule_name=r.rule_name,
                would_trigger=r.would_trigger,
                reason=r.reason,
                details=r.details,
            )
            for r in results
        ],
    )


@router.post("/execute", response_model=ExecuteResponse, summary="Execute one rule for a member")
def execute_rule(payload: ExecuteRequest, db: Session = Depends(get_db)) -> ExecuteResponse:
    settings = load_automation_settings(db)
    result = automation.execute(
        db,
        payload.rule_id,
        payload.member_id,
        settings,
        clear_cooldown_first=payload.clear_cooldown_first,
        force=payload.force,
    )
    return ExecuteResponse(
        success=result.success,
        executed=result.executed,
        triggered=result.triggered,
        error=result.error,
        rule_id=result.rule_id,
        rule_name=result.rule_name,
        member_id=result.member_id,
        actions_taken=result.actions_taken,
        cooldown=(
            CooldownOut(expires_at=result.cooldown.expires_at, is_active=result.cooldown.is_active)
            if result.cooldown
            else None
        ),
        reason=result.reason,
        details=result.details,
        log_id=result.log_id,
    )


@router.delete(
    "/cooldowns/{member_id}",
    response_model=ClearCooldownResponse,
    summary="Clear cooldowns of a member",
)
def clear_cooldowns(
    member_id: int,
    rule_id: Optional[str] = Query(default=None, alias="ruleId"),
    db: Session = Depends(get_db),
) -> ClearCooldownResponse:
    deleted = automation.clear_cooldown(db, member_id, rule_id)
    return ClearCooldownResponse(member_id=member_id, rule_id=rule_id, deleted=deleted)


@router.get("/rules", response_model=RuleListResponse, summary="Rule catalog")
def list_rules() -> RuleListResponse:
    items = [_rule_to_response(rule) for rule in CATALOG.values()]
    return RuleListResponse(total=len(items), items=items)


@router.get("/logs", response_model=AutomationLogListResponse, summary="Audit log")
def list_logs(
    member_id: Optional[int] = Query(default=None, alias="memberId"),
    rule_id: Optional[str] = Query(default=None, alias="ruleId"),
    limit: int = Query(default=50, ge=1, le=200),
    offset: int = Query(default=0, ge=0),
    db: Session = Depends(get_db),
) -> AutomationLogListResponse:
    items, total = audit.list_logs(db, member_id=member_id, rule_id=rule_id, limit=limit, offset=offset)
    return AutomationLogListResponse(total=total, items=[_log_to_response(e) for e in items])
