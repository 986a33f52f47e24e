"""
Custom exception hierarchy for the automation core.

Rule: every HTTP error has a machine-readable `code` string so clients
can branch on it without parsing German/English messages.

`ConfigurationError` and `FeedbackGenerationError` are collaborator errors:
they never leave the feedback scheduler, which turns them into a blocked
feedback state plus a review task.
"""
from __future__ import annotations

from datetime import date
from typing import Any

from fastapi import Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette import status


# ---------------------------------------------------------------------------
# Exception classes
# ---------------------------------------------------------------------------

class AutomationError(Exception):
    """Base class for all application-level errors."""
    http_status: int = status.HTTP_500_INTERNAL_SERVER_ERROR
    code: str = "INTERNAL_ERROR"

    def __init__(self, message: str, details: dict[str, Any] | None = None):
        self.message = message
        self.details = details or {}
        super().__init__(message)

    def to_dict(self) -> dict:
        payload: dict[str, Any] = {"code": self.code, "message": self.message}
        if self.details:
            payload["details"] = self.details
        return payload


class MemberNotFoundError(AutomationError):
    http_status = status.HTTP_404_NOT_FOUND
    code = "MEMBER_NOT_FOUND"

    def __init__(self, member_id: int):
        super().__init__(
            message=f"Member {member_id} not found.",
            details={"member_id": member_id},
        )


class KpiWeekNotFoundError(AutomationError):
    http_status = status.HTTP_404_NOT_FOUND
    code = "KPI_WEEK_NOT_FOUND"

    def __init__(self, kpi_week_id: int):
        super().__init__(
            message=f"KPI week {kpi_week_id} not found.",
            details={"kpi_week_id": kpi_week_id},
        )


class TaskNotFoundError(AutomationError):
    http_status = status.HTTP_404_NOT_FOUND
    code = "TASK_NOT_FOUND"

    def __init__(self, task_id: int):
        super().__init__(
            message=f"Task {task_id} not found.",
            details={"task_id": task_id},
        )


class UnknownRuleError(AutomationError):
    http_status = status.HTTP_404_NOT_FOUND
    code = "UNKNOWN_RULE"

    def __init__(self, rule_id: str):
        super().__init__(
            message=f"Unbekannte Regel: {rule_id}",
            details={"rule_id": rule_id},
        )


class SubmissionAlreadyExistsError(AutomationError):
    http_status = status.HTTP_409_CONFLICT
    code = "SUBMISSION_EXISTS"

    def __init__(self, member_id: int, week_start: date):
        super().__init__(
            message=f"KPIs for member {member_id} and week {week_start} were already submitted.",
            details={"member_id": member_id, "week_start": str(week_start)},
        )


class CronUnauthorizedError(AutomationError):
    http_status = status.HTTP_401_UNAUTHORIZED
    code = "UNAUTHORIZED"

    def __init__(self):
        super().__init__(message="Missing or invalid cron secret.")


class ActionFailedError(AutomationError):
    """A single dispatcher action could not be applied. Collected, never raised over HTTP."""
    code = "ACTION_FAILED"


# ---------------------------------------------------------------------------
# Collaborator errors (handled inside the feedback scheduler)
# ---------------------------------------------------------------------------

class ConfigurationError(AutomationError):
    code = "CONFIGURATION_ERROR"


class FeedbackGenerationError(AutomationError):
    http_status = status.HTTP_502_BAD_GATEWAY
    code = "FEEDBACK_GENERATION_ERROR"


# ---------------------------------------------------------------------------
# FastAPI exception handlers
# ---------------------------------------------------------------------------

async def automation_exception_handler(request: Request, exc: AutomationError) -> JSONResponse:
    return JSONResponse(
        status_code=exc.http_status,
        content=exc.to_dict(),
    )


async def validation_exception_handler(
    request: Request, exc: RequestValidationError
) -> JSONResponse:
    """Return structured 422 with machine-readable field errors."""
    field_errors = []
    for error in exc.errors():
        field_errors.append({
            "field": ".".join(str(loc) for loc in error["loc"] if loc != "body"),
            "message": error["msg"],
            "type": error["type"],
        })
    return JSONResponse(
        status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
        content={
            "code": "VALIDATION_ERROR",
            "message": "Request validation failed.",
            "details": {"errors": field_errors},
        },
    )


async def unhandled_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={
            "code": "INTERNAL_ERROR",
            "message": "An unexpected error occurred.",
        },
    )
