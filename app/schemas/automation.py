"""
Automation API schemas.

POST   /automations/test                → EvaluateResponse
POST   /automations/execute             → ExecuteResponse
DELETE /automations/cooldowns/{id}      → ClearCooldownResponse
GET    /automations/rules               → RuleListResponse
GET    /automations/logs                → AutomationLogListResponse
POST   /cron/scheduled-automations      → SweepResponse
POST   /cron/send-feedback              → DeliveryResponse
"""
from datetime import datetime
from typing import Any, Optional

from pydantic import Field

from app.schemas.common import CamelModel


class EvaluateRequest(CamelModel):
    rule_id: str = Field(default="all", description='Catalog id (e.g. "R1") or "all".')
    member_id: int


class RuleEvaluationOut(CamelModel):
    rule_id: str
    rule_name: str
    would_trigger: bool
    reason: str
    details: dict[str, Any] = Field(default_factory=dict)


class EvaluateResponse(CamelModel):
    member_id: int
    results: list[RuleEvaluationOut]


class ExecuteRequest(CamelModel):
    rule_id: str
    member_id: int
    clear_cooldown_first: bool = False
    force: bool = Field(default=False, description="Bypass quiet hours for WhatsApp actions.")


class CooldownOut(CamelModel):
    expires_at: Optional[datetime] = None
    is_active: bool


class ExecuteResponse(CamelModel):
    success: bool
    executed: bool
    triggered: bool
    error: Optional[str] = None
    rule_id: str
    rule_name: str
    member_id: int
    actions_taken: list[str] = Field(default_factory=list)
    cooldown: Optional[CooldownOut] = None
    reason: Optional[str] = None
    details: dict[str, Any] = Field(default_factory=dict)
    log_id: Optional[int] = None


class ClearCooldownResponse(CamelModel):
    member_id: int
    rule_id: Optional[str] = None
    deleted: int


class RuleOut(CamelModel):
    id: str
    name: str
    category: str
    cooldown_days: int
    actions: list[str]
    needs_submission: bool
    on_submission: bool
    on_sweep: bool


class RuleListResponse(CamelModel):
    total: int
    items: list[RuleOut]


class AutomationLogOut(CamelModel):
    id: int
    member_id: Optional[int] = None
    rule_id: str
    rule_name: str
    triggered: bool
    actions_taken: list[str]
    details: Optional[dict[str, Any]] = None
    fired_at: datetime


class AutomationLogListResponse(CamelModel):
    total: int
    items: list[AutomationLogOut]


class SweepResponse(CamelModel):
    members_checked: int
    rules_fired: int
    fired: list[dict[str, Any]]
    errors: list[dict[str, Any]]


class DeliveryCounts(CamelModel):
    sent: int
    rescheduled: int
    failed: int
    skipped: int


class DeliveryResponse(CamelModel):
    feedback: DeliveryCounts
    messages: DeliveryCounts
