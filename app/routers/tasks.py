"""
Tasks router.

PATCH /tasks/{id} — update status / priority / description. Completing a
review task of a blocked KPI week queues the feedback release.
"""
from __future__ import annotations

from fastapi import APIRouter, BackgroundTasks, Depends
from sqlalchemy.orm import Session

from app.db.base import get_db
from app.schemas.task import TaskResponse, TaskUpdateRequest
from app.services.jobs import review_release_job
from app.services.tasks import update_task
from app.services.text_generation import FeedbackGenerator, get_feedback_generator

router = APIRouter(prefix="/tasks", tags=["tasks"])


@router.patch("/{task_id}", response_model=TaskResponse, summary="Update a task")
def patch_task(
    task_id: int,
    payload: TaskUpdateRequest,
    background_tasks: BackgroundTasks,
    db: Session = Depends(get_db),
    generator: FeedbackGenerator = Depends(get_feedback_generator),
) -> TaskResponse:
    outcome = update_task(
        db,
        task_id,
        status=payload.status,
        priority=payload.priority,
        description=payload.description,
    )
    if outcome.release_feedback:
        background_tasks.add_task(review_release_job, outcome.task.id, generator)

    response = TaskResponse.model_validate(outcome.task)
    response.feedback_release_queued = outcome.release_feedback
    return response
