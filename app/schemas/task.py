from datetime import date, datetime
from typing import Optional

from app.models.task import TaskPriority, TaskStatus
from app.schemas.common import CamelModel


class TaskUpdateRequest(CamelModel):
    status: Optional[TaskStatus] = None
    priority: Optional[TaskPriority] = None
    description: Optional[str] = None


class TaskResponse(CamelModel):
    id: int
    member_id: Optional[int] = None
    kpi_week_id: Optional[int] = None
    rule_id: Optional[str] = None
    title: str
    description: Optional[str] = None
    status: TaskStatus
    priority: TaskPriority
    assigned_to_id: Optional[int] = None
    due_date: Optional[date] = None
    completed_at: Optional[datetime] = None
    created_at: datetime
    feedback_release_queued: bool = False
