"""
Shared fixtures: an in-memory SQLite database per test, a controllable clock,
service instances wired the way deps.py wires them, and an app/TestClient bound
to the same database and clock.
"""
import os
from datetime import datetime, timedelta
from typing import Generator

# Must be set before config.settings is created
os.environ.setdefault("DATABASE_URL", "sqlite:///:memory:")
os.environ["ENVIRONMENT"] = "test"
os.environ["SESSION_COOKIE_SECURE"] = "false"
os.environ["RUN_MIGRATIONS_ON_STARTUP"] = "false"
os.environ["ENABLE_SCHEDULER"] = "false"

import pytest
from fastapi.testclient import TestClient
from sqlalchemy.orm import sessionmaker

from database import Base, build_engine
from Login_module.User.user_model import User  # noqa: F401  (registers table)
from Login_module.Device.Device_session_model import UserSession, UserPreference  # noqa: F401
from Login_module.Device.Device_session_audit_model import SessionActivityLog  # noqa: F401
from Login_module.OTP.OTP_model import OneTimePasscode  # noqa: F401
from Audit_module.Audit_model import AuditEvent  # noqa: F401
from Audit_module.Audit_crud import AuditLog
from Login_module.Device.Device_session_crud import SessionStore
from Login_module.Session.Session_guard import SessionGuard
from Login_module.User.user_session_crud import create_user
from Login_module.Utils.rate_limiter import (
    FailedAttemptTracker,
    IPRateLimiter,
    get_failed_attempt_tracker,
    get_verify_otp_limiter,
)

BROWSER_HEADERS = {
    "User-Agent": "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
                  "(KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36",
    "Accept-Language": "en-US,en;q=0.9",
}


class FakeClock:
    """Naive-UTC clock that only moves when told to."""

    def __init__(self, start: datetime):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> datetime:
        self.now = self.now + timedelta(seconds=seconds)
        return self.now


class InMemoryRedis:
    """Counter store standing in for the Redis server in tests."""

    def __init__(self):
        self.values = {}

    def get(self, key):
        return self.values.get(key)

    def set(self, key, value, ex=None):
        self.values[key] = str(value)

    def incr(self, key):
        self.values[key] = str(int(self.values.get(key, 0)) + 1)
        return int(self.values[key])

    def delete(self, key):
        self.values.pop(key, None)


@pytest.fixture
def engine():
    engine = build_engine("sqlite://")
    Base.metadata.create_all(bind=engine)
    yield engine
    Base.metadata.drop_all(bind=engine)
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(bind=engine, autocommit=False, autoflush=False, future=True)


@pytest.fixture
def db(session_factory) -> Generator:
    session = session_factory()
    yield session
    session.close()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock(datetime(2026, 3, 2, 9, 0, 0))


@pytest.fixture
def store(db, clock) -> SessionStore:
    return SessionStore(db, clock=clock)


@pytest.fixture
def audit_log(db, clock) -> AuditLog:
    return AuditLog(db, clock=clock, checksum_salt="test-salt")


@pytest.fixture
def guard(store, audit_log) -> SessionGuard:
    return SessionGuard(store, audit_log)


@pytest.fixture
def user(db):
    return create_user(db, "dr.jones", role="clinician", name="Dr Jones", email="jones@example.org")


@pytest.fixture
def other_user(db):
    return create_user(db, "dr.smith", role="clinician", name="Dr Smith")


@pytest.fixture
def officer(db):
    return create_user(db, "privacy.officer", role="privacy_officer", name="Privacy Officer")


@pytest.fixture
def redis_double() -> InMemoryRedis:
    return InMemoryRedis()


@pytest.fixture
def app(session_factory, clock, redis_double):
    from main import create_app

    app = create_app(session_factory=session_factory, clock=clock)
    app.dependency_overrides[get_verify_otp_limiter] = lambda: IPRateLimiter(client=redis_double)
    app.dependency_overrides[get_failed_attempt_tracker] = lambda: FailedAttemptTracker(client=redis_double)
    yield app
    app.dependency_overrides.clear()


@pytest.fixture
def client(app) -> TestClient:
    client = TestClient(app, raise_server_exceptions=False)
    client.headers.update(BROWSER_HEADERS)
    return client


def login(client: TestClient, username: str) -> str:
    """Run the OTP login flow and return the CSRF token."""
    response = client.post("/auth/send-otp", json={"username": username})
    assert response.status_code == 200, response.text
    code = response.json()["data"]["otp"]
    response = client.post("/auth/verify-otp", json={"username": username, "otp": code})
    assert response.status_code == 200, response.text
    return response.json()["data"]["csrf_token"]
