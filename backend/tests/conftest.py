"""Pytest configuration and fixtures."""

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from api.bank_link import get_aggregator_client
from config import settings
from database import Base, get_db
from main import app
from services.audit_service import get_audit_recorder
from services.rate_limiter import RateLimiter, get_rate_limiter
from services.token_manager import TokenManager
# Pytest fixtures - imported to make them available to tests
from tests.fixtures import (  # noqa: F401
    active_connection,
    pending_connection,
)
from tests.fixtures.mocks import OWNER_ID, MockAggregatorClient, RecordingAuditRecorder


@pytest.fixture(name="db")
def db_fixture():
    """Create an in-memory SQLite database for testing."""
    engine = create_engine(
        "sqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)

    TestingSessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)
    session = TestingSessionLocal()

    try:
        yield session
    finally:
        session.close()
        Base.metadata.drop_all(bind=engine)


@pytest.fixture(autouse=True)
def reset_token_manager():
    """Forget tokens refreshed by earlier tests."""
    TokenManager.reset()
    yield
    TokenManager.reset()


@pytest.fixture
def aggregator():
    """Aggregator mock served to the API (tests populate it per case)."""
    return MockAggregatorClient()


@pytest.fixture
def audit():
    return RecordingAuditRecorder()


@pytest.fixture
def rate_limiter():
    return RateLimiter()


@pytest.fixture
def anon_client(db, aggregator, audit, rate_limiter):
    """Test client with the test database and no session cookie."""

    def override_get_db():
        try:
            yield db
        finally:
            pass

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_aggregator_client] = lambda: aggregator
    app.dependency_overrides[get_audit_recorder] = lambda: audit
    app.dependency_overrides[get_rate_limiter] = lambda: rate_limiter
    client = TestClient(app)
    yield client
    app.dependency_overrides.clear()


@pytest.fixture(name="client")
def client_fixture(anon_client):
    """Test client signed in as OWNER_ID."""
    anon_client.cookies.set(settings.SESSION_COOKIE_NAME, OWNER_ID)
    return anon_client
