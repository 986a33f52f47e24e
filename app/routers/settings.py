"""
Settings router.

GET /settings/automation — current automation settings (env defaults if unset)
PUT /settings/automation — replace them
"""
from __future__ import annotations

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from app.db.base import get_db
from app.schemas.settings import AutomationSettingsSchema
from app.services.automation_settings import (
    AutomationSettings,
    load_automation_settings,
    save_automation_settings,
)

router = APIRouter(prefix="/settings", tags=["settings"])


@router.get("/automation", response_model=AutomationSettingsSchema)
def get_automation_settings(db: Session = Depends(get_db)) -> AutomationSettingsSchema:
    return AutomationSettingsSchema(**load_automation_settings(db).to_dict())


@router.put("/automation", response_model=AutomationSettingsSchema)
def put_automation_settings(
    payload: AutomationSettingsSchema,
    db: Session = Depends(get_db),
) -> AutomationSettingsSchema:
    stored = save_automation_settings(db, AutomationSettings(**payload.model_dump()))
    return AutomationSettingsSchema(**stored.to_dict())
