"""Shared test fixtures."""

from datetime import UTC, datetime, timedelta

import pytest
from fastapi.testclient import TestClient
from sqlmodel import Session, SQLModel, create_engine
from sqlmodel.pool import StaticPool

from app.calendar import client as calendar_client
from app.calendar import vault
from app.core import database
from app.core.config import settings
from app.core.database import get_session
from app.main import app
from app.models import ClinicMembership, Resource, ScheduleEvent
from app.models.event import ScheduleEventCreate
from app.scheduling import service
from tests.fakes import FakeCalendarService


@pytest.fixture(autouse=True)
def test_settings(monkeypatch):
    """Deterministic settings for every test."""
    monkeypatch.setattr(settings, "google_token_secret", "test-token-secret")
    monkeypatch.setattr(settings, "google_client_id", "client-id.apps.googleusercontent.com")
    monkeypatch.setattr(settings, "google_client_secret", "client-secret")
    monkeypatch.setattr(settings, "app_url", "https://clinic.example.com")
    monkeypatch.setattr(settings, "webhook_public_url", "https://hooks.example.com")
    monkeypatch.setattr(settings, "internal_api_key", "")
    monkeypatch.setattr(settings, "default_timezone", "UTC")


@pytest.fixture(name="engine")
def engine_fixture(monkeypatch):
    """Create an in-memory SQLite database for testing."""
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    SQLModel.metadata.create_all(engine)
    # Background tasks open their own sessions on the module engine
    monkeypatch.setattr(database, "engine", engine)
    yield engine
    SQLModel.metadata.drop_all(engine)


@pytest.fixture(name="session")
def session_fixture(engine):
    """Create a new database session for each test."""
    with Session(engine) as session:
        yield session


@pytest.fixture(name="client")
def client_fixture(session: Session):
    """Create a test client with the test database session."""

    def get_session_override():
        return session

    app.dependency_overrides[get_session] = get_session_override
    client = TestClient(app)
    yield client
    app.dependency_overrides.clear()


@pytest.fixture(name="resource")
def resource_fixture(session: Session) -> Resource:
    """A consultant with a connected calendar."""
    resource = Resource(
        id="consultant-1",
        full_name="Dr. Ana Souza",
        clinic_id="clinic-1",
        google_connected=True,
        google_calendar_id="cal-1",
        timezone="UTC",
    )
    session.add(resource)
    session.commit()
    session.refresh(resource)
    return resource


@pytest.fixture(name="member_resource")
def member_resource_fixture(session: Session) -> Resource:
    """A consultant whose clinic comes from a membership only."""
    resource = Resource(id="consultant-2", full_name="Dr. Bruno Lima", google_calendar_id="cal-2")
    session.add(resource)
    session.add(ClinicMembership(clinic_id="clinic-old", user_id="consultant-2", created_at=datetime(2025, 1, 1, tzinfo=UTC)))
    session.add(ClinicMembership(clinic_id="clinic-new", user_id="consultant-2", created_at=datetime(2026, 1, 1, tzinfo=UTC)))
    session.commit()
    return resource


@pytest.fixture(name="fake_service")
def fake_service_fixture(monkeypatch) -> FakeCalendarService:
    """Fake Calendar service returned for every access token."""
    fake = FakeCalendarService()
    monkeypatch.setattr(calendar_client, "build_calendar_service", lambda access_token: fake)
    return fake


@pytest.fixture(name="connected")
def connected_fixture(session: Session, resource: Resource, fake_service: FakeCalendarService) -> FakeCalendarService:
    """Valid stored credentials for ``resource``; Google calls hit ``fake_service``."""
    vault.store_tokens(
        session,
        resource.id,
        vault.TokenSet(
            access_token="access-1",
            refresh_token="refresh-1",
            expires_at=datetime.now(UTC) + timedelta(hours=1),
        ),
    )
    return fake_service


@pytest.fixture(name="monday")
def monday_fixture() -> datetime:
    """Midnight UTC of a Monday."""
    return datetime(2026, 3, 2, tzinfo=UTC)


@pytest.fixture(name="make_event")
def make_event_fixture(session: Session, monday: datetime):
    """Factory creating events through the scheduling service."""

    def make_event(
        start_hour: float = 10,
        hours: float = 1,
        consultant_id: str = "consultant-1",
        clinic_ids: list[str] | None = None,
        day: datetime | None = None,
        **kwargs,
    ) -> ScheduleEvent:
        start = (day or monday) + timedelta(hours=start_hour)
        data = ScheduleEventCreate(
            consultant_id=consultant_id,
            title=kwargs.pop("title", "Onboarding session"),
            start_at=start,
            end_at=start + timedelta(hours=hours),
            timezone=kwargs.pop("timezone", "UTC"),
            clinic_ids=clinic_ids or ["clinic-1"],
            **kwargs,
        )
        return service.create_event(session, data)

    return make_event
