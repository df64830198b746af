"""
Pytest configuration and shared fixtures.

Test settings are put in the environment before any app module is imported,
so the module-level engine points at a throwaway SQLite file.
"""

import hashlib
import hmac
import json
import os
import tempfile
from datetime import datetime, timezone

import pytest

_TEST_DIR = tempfile.mkdtemp(prefix="chatcast-test-")
os.environ["DATABASE_URL"] = f"sqlite:///{os.path.join(_TEST_DIR, 'messages-test.db')}"
os.environ["WEBHOOK_SECRET"] = "test-secret"
os.environ["LOG_LEVEL"] = "WARNING"
os.environ["RECONCILE_ENABLED"] = "false"

# Clear settings cache before any app imports to ensure test env vars are used
from chatcast.config import get_settings  # noqa: E402
get_settings.cache_clear()

from chatcast import models  # noqa: E402,F401
from chatcast.storage import Base, SessionLocal, engine  # noqa: E402

TEST_WEBHOOK_SECRET = os.environ["WEBHOOK_SECRET"]
NOW = datetime(2025, 1, 15, 12, 0, 0, tzinfo=timezone.utc)


def compute_signature(body: str, secret: str = TEST_WEBHOOK_SECRET) -> str:
    """Compute HMAC-SHA256 signature for request body."""
    return hmac.new(
        secret.encode("utf-8"),
        body.encode("utf-8"),
        hashlib.sha256
    ).hexdigest()


def signed_post(client, path: str, payload=None, method: str = "post"):
    """Send a signed JSON request; payload None sends an empty body."""
    body = json.dumps(payload) if payload is not None else ""
    return client.request(
        method.upper(),
        path,
        content=body,
        headers={
            "Content-Type": "application/json",
            "X-Signature": compute_signature(body),
        },
    )


class FakeClock:
    """Settable clock for the recorder and reconciler."""

    def __init__(self, now: datetime = NOW):
        self.now = now

    def __call__(self) -> datetime:
        return self.now


@pytest.fixture
def schema():
    """Fresh tables for each test."""
    Base.metadata.create_all(bind=engine)
    yield
    Base.metadata.drop_all(bind=engine)


@pytest.fixture
def db(schema):
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def client(schema):
    """Create test client with fresh database for each test."""
    from fastapi.testclient import TestClient
    from chatcast.main import app

    with TestClient(app) as test_client:
        yield test_client
