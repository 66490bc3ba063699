"""
Pytest configuration and fixtures for testing.

This file provides reusable test fixtures for:
- Database setup/teardown
- FastAPI test client with an authenticated caller
- A scriptable fake provider standing in for Strava
- A sync engine that never really sleeps
"""

import uuid
from datetime import datetime, timedelta, timezone
from urllib.parse import urlencode

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine, event
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from app.core.database import Base, get_db
from app.core.security import create_access_token
from app.core.timeutils import utcnow
from app.crud import integration as integration_crud
from app.models.integration import IntegrationKind
from app.services.providers import (
    FitnessProvider,
    ProviderRecord,
    RecordsPage,
    TokenGrant,
    register_provider,
)
from app.services.sync_engine import SyncEngine
from main import app


# Use in-memory SQLite for testing (fast, isolated)
SQLALCHEMY_TEST_DATABASE_URL = "sqlite:///:memory:"

engine = create_engine(
    SQLALCHEMY_TEST_DATABASE_URL,
    connect_args={"check_same_thread": False},
    poolclass=StaticPool,
)


# pysqlite needs explicit BEGIN for SAVEPOINTs to nest correctly
@event.listens_for(engine, "connect")
def _sqlite_connect(dbapi_connection, connection_record):
    dbapi_connection.isolation_level = None


@event.listens_for(engine, "begin")
def _sqlite_begin(conn):
    conn.exec_driver_sql("BEGIN")


TestingSessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)


@pytest.fixture
def db_session():
    """
    Create a fresh database for each test.
    """
    Base.metadata.create_all(bind=engine)
    db = TestingSessionLocal()
    try:
        yield db
    finally:
        db.close()
        Base.metadata.drop_all(bind=engine)


@pytest.fixture
def client(db_session):
    """
    FastAPI test client with overridden database dependency.
    """
    def override_get_db():
        try:
            yield db_session
        finally:
            pass

    app.dependency_overrides[get_db] = override_get_db

    with TestClient(app) as test_client:
        yield test_client

    app.dependency_overrides.clear()


@pytest.fixture
def user_id():
    return uuid.uuid4()


@pytest.fixture
def auth_headers(user_id):
    token = create_access_token({"sub": str(user_id)})
    return {"Authorization": f"Bearer {token}"}


def make_record(external_id: str, **overrides) -> ProviderRecord:
    """A valid provider record; override fields to make it invalid."""
    start = datetime(2026, 3, 1, 7, 0, tzinfo=timezone.utc)
    data = {
        "external_id": external_id,
        "name": f"Morning Run {external_id}",
        "activity_type": "Run",
        "start_time": start,
        "end_time": start + timedelta(minutes=45),
        "duration_minutes": 45,
        "calories": 420.0,
        "distance_meters": 8000.0,
        "raw": {"id": external_id},
    }
    data.update(overrides)
    return ProviderRecord(**data)


def make_page(prefix: str, count: int, next_cursor=None) -> RecordsPage:
    return RecordsPage(
        records=[make_record(f"{prefix}-{i}") for i in range(count)],
        next_cursor=next_cursor,
    )


class FakeProvider(FitnessProvider):
    """
    In-memory provider.

    `pages` is consumed one item per fetch: a RecordsPage is returned, an
    exception is raised.
    """

    kind = IntegrationKind.STRAVA
    display_name = "Strava"

    def __init__(self):
        super().__init__()
        self.configured = True
        self.pages = []
        self.fetch_calls = []
        self.exchanged_codes = []
        self.grant = TokenGrant(
            access_token="access-1",
            refresh_token="refresh-1",
            expires_at=utcnow() + timedelta(hours=6),
            external_user_id="athlete-42",
            scopes=["read", "activity:read_all"],
            metadata={"athlete_name": "Test Athlete"},
        )
        self.exchange_error = None
        self.refresh_calls = []
        self.refresh_result = None
        self.revoked = []
        self.revoke_error = None
        self.on_fetch = None

    @property
    def is_configured(self) -> bool:
        return self.configured

    def build_authorization_url(self, state: str, redirect_uri: str) -> str:
        return "https://provider.test/authorize?" + urlencode({"state": state, "redirect_uri": redirect_uri})

    async def exchange_code(self, code: str, redirect_uri: str) -> TokenGrant:
        self.exchanged_codes.append(code)
        if self.exchange_error:
            raise self.exchange_error
        return self.grant

    async def refresh_access_token(self, refresh_token: str) -> TokenGrant:
        self.refresh_calls.append(refresh_token)
        if isinstance(self.refresh_result, Exception):
            raise self.refresh_result
        return self.refresh_result

    async def fetch_records_page(self, access_token, cursor=None, since=None) -> RecordsPage:
        self.fetch_calls.append({"access_token": access_token, "cursor": cursor, "since": since})
        if self.on_fetch:
            self.on_fetch(len(self.fetch_calls))
        item = self.pages.pop(0)
        if isinstance(item, Exception):
            raise item
        return item

    async def revoke_token(self, access_token: str) -> bool:
        self.revoked.append(access_token)
        if self.revoke_error:
            raise self.revoke_error
        return True


@pytest.fixture
def fake_provider():
    """
    Install a FakeProvider for Strava for the duration of a test.
    """
    provider = FakeProvider()
    previous = register_provider(IntegrationKind.STRAVA, provider)
    yield provider
    register_provider(IntegrationKind.STRAVA, previous)


@pytest.fixture
def integration(db_session, user_id):
    """An active Strava integration for the test user."""
    return integration_crud.create(
        db_session,
        user_id=user_id,
        kind=IntegrationKind.STRAVA,
        external_user_id="athlete-42",
        access_token="access-1",
        refresh_token="refresh-1",
        token_expires_at=utcnow() + timedelta(hours=6),
        metadata={"athlete_name": "Test Athlete"},
    )


@pytest.fixture
def sleeps():
    return []


@pytest.fixture
def engine_under_test(sleeps):
    """
    SyncEngine with three fetch attempts and recorded (not real) sleeps.
    """
    async def fake_sleep(delay):
        sleeps.append(delay)

    return SyncEngine(max_attempts=3, base_delay=0.5, max_delay=2.0, sleep=fake_sleep)


@pytest.fixture
def mock_queue(monkeypatch):
    """
    Capture tasks the API queues instead of talking to Redis.
    """
    queued = []

    def fake_queue(task, *args, **kwargs):
        queued.append((task.name, args, kwargs))
        return True

    monkeypatch.setattr("app.api.endpoints.integrations.queue_task_safely", fake_queue)
    return queued


@pytest.fixture
def record_factory():
    return make_record


@pytest.fixture
def page_factory():
    return make_page
