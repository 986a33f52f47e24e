"""
Shared pytest fixtures.

Uses a file-backed SQLite database so no Postgres is required for tests.
Background jobs open their own sessions through app.db.base.SessionLocal,
so DATABASE_URL is pointed at the test file before the app is imported.
"""
import os

os.environ["DATABASE_URL"] = "sqlite:///./test_automation.db"

from datetime import date
from decimal import Decimal

import pytest
from fastapi.testclient import TestClient

from app.db.base import Base, SessionLocal, engine, get_db
from app.main import app
from app.models import KpiWeek, Member
from app.models.kpi_week import PERFORMANCE_FIELDS
from app.services.automation_settings import AutomationSettings
from app.services.delivery import get_transport
from app.services.text_generation import GeneratedFeedback, get_feedback_generator


# ---------------------------------------------------------------------------
# Collaborator doubles
# ---------------------------------------------------------------------------

class FakeFeedbackGenerator:
    """Records every call; returns fixed text or raises `error`."""

    def __init__(self, text: str = "Starke Woche, weiter so!", style: str = "standard"):
        self.text = text
        self.style = style
        self.error: Exception | None = None
        self.calls: list[int] = []

    def generate(self, request) -> GeneratedFeedback:
        self.calls.append(request.kpi_week_id)
        if self.error is not None:
            raise self.error
        return GeneratedFeedback(text=self.text, style=self.style)


class RecordingTransport:
    def __init__(self, ok: bool = True):
        self.ok = ok
        self.sent: list[tuple[str, str, str]] = []

    def send(self, channel: str, recipient: str, content: str) -> bool:
        self.sent.append((channel, recipient, content))
        return self.ok


def override_get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


# ---------------------------------------------------------------------------
# Database
# ---------------------------------------------------------------------------

@pytest.fixture(scope="session", autouse=True)
def create_tables():
    Base.metadata.create_all(bind=engine)
    yield
    Base.metadata.drop_all(bind=engine)


@pytest.fixture(autouse=True)
def clean_tables():
    yield
    with engine.begin() as conn:
        for table in reversed(Base.metadata.sorted_tables):
            conn.execute(table.delete())


@pytest.fixture()
def db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


@pytest.fixture()
def automation_settings() -> AutomationSettings:
    return AutomationSettings(
        timezone="UTC",
        feedback_delay_min=60,
        feedback_delay_max=120,
        quiet_hours_enabled=True,
        quiet_hours_start=21,
        quiet_hours_end=8,
        upsell_revenue_threshold=20000.0,
        upsell_consecutive_weeks=12,
    )


# ---------------------------------------------------------------------------
# Factories
# ---------------------------------------------------------------------------

@pytest.fixture()
def make_member(db):
    def _make(**overrides) -> Member:
        values = {
            "vorname": "Anna",
            "nachname": "Schmidt",
            "email": "anna@example.com",
            "whatsapp_nummer": "+491701234567",
            "umsatz_soll_woche": Decimal("1000"),
            "kontakte_soll": 20,
            "termine_abschluss_soll": 2,
        }
        values.update(overrides)
        member = Member(**values)
        db.add(member)
        db.commit()
        db.refresh(member)
        return member
    return _make


@pytest.fixture()
def make_week(db):
    """Persist a KpiWeek; goal snapshot copied from the member unless given."""
    def _make(member: Member, week_start: date, **values) -> KpiWeek:
        iso_year, iso_week, _ = week_start.isocalendar()
        week = KpiWeek(
            member_id=member.id,
            week_start=week_start,
            week_number=iso_week,
            year=iso_year,
            **values,
        )
        for _, snapshot_field, live_field in PERFORMANCE_FIELDS:
            if snapshot_field not in values:
                setattr(week, snapshot_field, getattr(member, live_field))
        db.add(week)
        db.commit()
        db.refresh(week)
        return week
    return _make


# ---------------------------------------------------------------------------
# API client
# ---------------------------------------------------------------------------

@pytest.fixture()
def generator():
    return FakeFeedbackGenerator()


@pytest.fixture()
def transport():
    return RecordingTransport()


@pytest.fixture()
def client(db, generator, transport):
    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_feedback_generator] = lambda: generator
    app.dependency_overrides[get_transport] = lambda: transport
    with TestClient(app) as c:
        yield c
    app.dependency_overrides.clear()
