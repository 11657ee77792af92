"""
Test configuration and fixtures.

Provides:
- In-memory SQLite engine with the full schema
- Database session with savepoint (rollback after each test)
- Owner / window / slot / integration builders
- Fake calendar provider client
- HTTPX AsyncClient with the actor and collaborators overridden
"""
import base64
import os
import uuid
from datetime import date, datetime, timedelta, timezone
from typing import AsyncGenerator, Generator

import pytest

# Settings are read at import time
os.environ["DATABASE_URL"] = "sqlite://"
os.environ["TOKEN_ENCRYPTION_KEY"] = base64.urlsafe_b64encode(
    b"medbook-test-key-0123456789abcde"
).decode()
os.environ["RATE_LIMIT_ENABLED"] = "false"
os.environ["INTERNAL_SECRET"] = ""

from httpx import ASGITransport, AsyncClient
from sqlalchemy import select
from sqlalchemy.orm import Session
from sqlalchemy.pool import StaticPool

from medbook.db.base import Base
from medbook.db.enums import SchedulingGranularity
from medbook.db.models import CalendarEvent, CalendarIntegration, Slot
from medbook.db.session import SessionLocal, create_db_engine
from medbook.schemas.availability import AvailabilityWindowCreate
from medbook.services import availability_service, calendar_sync_service
from medbook.services.calendar_provider import EventPage, EventPayload, TokenGrant
from medbook.services.errors import CalendarProviderError
from medbook.types import OrganizationLocationOwner, OwnerRef, ProviderOwner


# Wednesday; the sample windows below sit on the following Monday
NOW = datetime(2025, 1, 1, 8, 0, tzinfo=timezone.utc)
MONDAY = date(2025, 1, 6)


def at(day: date, hour: int, minute: int = 0) -> datetime:
    return datetime(day.year, day.month, day.day, hour, minute, tzinfo=timezone.utc)


def allow_all(owner: OwnerRef) -> bool:
    return True


def owner_input(owner: OwnerRef) -> dict:
    if isinstance(owner, ProviderOwner):
        return {"kind": "provider", "provider_id": str(owner.provider_id)}
    return {
        "kind": "organization_location",
        "organization_id": str(owner.organization_id),
        "location_id": str(owner.location_id),
    }


# =============================================================================
# Database Fixtures (Savepoint pattern)
# =============================================================================

@pytest.fixture(scope="session")
def engine():
    engine = create_db_engine("sqlite://", poolclass=StaticPool)
    Base.metadata.create_all(engine)
    yield engine
    engine.dispose()


@pytest.fixture(scope="function")
def db(engine) -> Generator[Session, None, None]:
    """
    Creates a database session with savepoint for test isolation.

    App code calls commit() and rollback() freely; each only ends a
    SAVEPOINT, and the outer transaction is rolled back after the test.
    """
    connection = engine.connect()
    transaction = connection.begin()
    session = SessionLocal(bind=connection, join_transaction_mode="create_savepoint")

    yield session

    session.close()
    transaction.rollback()
    connection.close()


# =============================================================================
# Domain Fixtures
# =============================================================================

@pytest.fixture
def now() -> datetime:
    return NOW


@pytest.fixture
def provider_owner() -> ProviderOwner:
    return ProviderOwner(provider_id=uuid.uuid4())


@pytest.fixture
def org_owner() -> OrganizationLocationOwner:
    return OrganizationLocationOwner(organization_id=uuid.uuid4(), location_id=uuid.uuid4())


@pytest.fixture
def service_id() -> uuid.UUID:
    return uuid.uuid4()


@pytest.fixture
def make_window(db, provider_owner, service_id):
    """Build windows through the service so slots get materialized."""

    def _make(
        start: datetime | None = None,
        end: datetime | None = None,
        *,
        owner: OwnerRef | None = None,
        services: list[dict] | None = None,
        granularity: SchedulingGranularity = SchedulingGranularity.FIXED_HOUR,
        recurrence: dict | None = None,
        requires_confirmation: bool = False,
        now: datetime = NOW,
    ):
        data = AvailabilityWindowCreate(
            owner=owner_input(owner or provider_owner),
            start_time=start or at(MONDAY, 9),
            end_time=end or at(MONDAY, 12),
            recurrence=recurrence or {"kind": "none"},
            scheduling_granularity=granularity,
            requires_confirmation=requires_confirmation,
            services=services or [{"service_id": str(service_id), "duration_minutes": 60}],
        )
        return availability_service.create_window(db, data, can_publish=allow_all, now=now)

    return _make


@pytest.fixture
def window(make_window):
    """Monday 09:00-12:00, one 60 minute service on the hour."""
    return make_window().window


def window_slots(db: Session, window_id: uuid.UUID) -> list[Slot]:
    return list(
        db.execute(
            select(Slot)
            .where(Slot.availability_window_id == window_id)
            .order_by(Slot.start_time, Slot.end_time)
        ).scalars()
    )


@pytest.fixture
def slots(db, window) -> list[Slot]:
    return window_slots(db, window.id)


@pytest.fixture
def integration(db, provider_owner) -> CalendarIntegration:
    return calendar_sync_service.connect_integration(
        db,
        provider_owner,
        TokenGrant(
            access_token="access-1",
            refresh_token="refresh-1",
            expires_at=NOW + timedelta(hours=1),
        ),
        account_email="provider@example.com",
    )


@pytest.fixture
def make_event(db, integration):
    """Insert a mirrored calendar event directly."""

    def _make(
        start: datetime,
        end: datetime,
        *,
        external_id: str | None = None,
        blocks: bool = True,
        title: str = "Busy",
        target: CalendarIntegration | None = None,
    ) -> CalendarEvent:
        event = CalendarEvent(
            calendar_integration_id=(target or integration).id,
            external_event_id=external_id or f"evt-{uuid.uuid4().hex[:8]}",
            title=title,
            start_time=start,
            end_time=end,
            blocks_availability=blocks,
            has_conflict=False,
            version=1,
        )
        db.add(event)
        db.flush()
        return event

    return _make


# =============================================================================
# Calendar Provider Fake
# =============================================================================

class FakeCalendarClient:
    """
    In-memory CalendarProviderClient.

    ``pages`` is consumed in order by list_events; an exception entry is
    raised instead of returned.
    """

    def __init__(self):
        self.pages: list[EventPage | Exception] = []
        self.list_calls: list[dict] = []
        self.refresh_result: TokenGrant | Exception | None = None
        self.refresh_calls: list[str] = []
        self.created: list[EventPayload] = []
        self.create_error: Exception | None = None
        self.deleted: list[str] = []
        self.revoked: list[str] = []

    async def list_events(
        self, access_token, calendar_id, *, time_min=None, time_max=None, sync_token=None
    ):
        self.list_calls.append(
            {
                "access_token": access_token,
                "calendar_id": calendar_id,
                "time_min": time_min,
                "time_max": time_max,
                "sync_token": sync_token,
            }
        )
        page = self.pages.pop(0)
        if isinstance(page, Exception):
            raise page
        return page

    async def create_event(self, access_token, calendar_id, payload):
        if self.create_error is not None:
            raise self.create_error
        self.created.append(payload)
        return f"exported-{len(self.created)}"

    async def update_event(self, access_token, calendar_id, event_id, payload):
        return None

    async def delete_event(self, access_token, calendar_id, event_id):
        self.deleted.append(event_id)

    async def refresh_token(self, refresh_token):
        self.refresh_calls.append(refresh_token)
        if isinstance(self.refresh_result, Exception):
            raise self.refresh_result
        if self.refresh_result is None:
            raise CalendarProviderError("refresh not configured")
        return self.refresh_result

    async def revoke_token(self, token):
        self.revoked.append(token)


@pytest.fixture
def calendar_client() -> FakeCalendarClient:
    return FakeCalendarClient()


# =============================================================================
# HTTP Client
# =============================================================================

@pytest.fixture
def actor(provider_owner):
    from medbook.core.deps import CurrentActor

    return CurrentActor(
        user_id=uuid.uuid4(), role="provider", provider_id=provider_owner.provider_id
    )


@pytest.fixture
async def client(db, actor, calendar_client) -> AsyncGenerator[AsyncClient, None]:
    """HTTPX AsyncClient wired to the test session, actor and fake calendar."""
    from medbook.core.deps import get_calendar_client, get_current_actor, get_db
    from medbook.main import app

    def override_get_db():
        yield db

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_current_actor] = lambda: actor
    app.dependency_overrides[get_calendar_client] = lambda: calendar_client

    async with AsyncClient(
        transport=ASGITransport(app=app), base_url="http://test"
    ) as ac:
        yield ac

    app.dependency_overrides.clear()
