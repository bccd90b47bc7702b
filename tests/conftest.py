import os

os.environ.setdefault("TESTING", "1")
os.environ.setdefault("DEV_AUTH_ALLOW", "1")
os.environ.setdefault("EVENTS_LEDGER", "0")
os.environ.setdefault("SECRET_KEY", "test_secret_key")
os.environ.setdefault("TEST_DATABASE_URL", "sqlite:///./test_hyvewyre.db")

import pytest
from fastapi.testclient import TestClient

from src.backend.app.db import Base, SessionLocal, engine, init_models
from src.backend.app.cache import cache_clear_memory
from src.backend.app.main import app
from src.backend.app.points import add_points, get_or_create_user

_VENDOR_ENV = (
    "OPENAI_API_KEY",
    "TWILIO_ACCOUNT_SID",
    "TWILIO_AUTH_TOKEN",
    "TWILIO_FROM_NUMBER",
    "TELNYX_API_KEY",
    "TELNYX_PUBLIC_KEY",
    "TELNYX_FROM_NUMBER",
    "STRIPE_SECRET_KEY",
    "STRIPE_WEBHOOK_SECRET",
    "GOOGLE_CLIENT_ID",
    "GOOGLE_CLIENT_SECRET",
    "CRON_SECRET",
    "REDIS_URL",
    "POSTHOG_API_KEY",
    "SMS_PROVIDER",
)

HEADERS = {"X-User-Id": "dev", "X-Role": "owner", "X-Tenant-Id": "t1"}


@pytest.fixture(autouse=True)
def _clean_state(monkeypatch):
    for name in _VENDOR_ENV:
        monkeypatch.delenv(name, raising=False)
    init_models()
    with engine.begin() as conn:
        for table in reversed(Base.metadata.sorted_tables):
            conn.execute(table.delete())
    cache_clear_memory()
    app.dependency_overrides.clear()
    yield
    app.dependency_overrides.clear()


@pytest.fixture
def db():
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def client():
    return TestClient(app)


@pytest.fixture
def headers():
    return dict(HEADERS)


@pytest.fixture
def funded(db):
    """Tenant t1 with a tenant number and 1000 points."""
    from src.backend.app import models as dbm

    get_or_create_user(db, "t1")
    db.add(dbm.PhoneNumber(tenant_id="t1", phone_number="+15550000001", provider="telnyx", status="active"))
    db.commit()
    add_points(db, "t1", 1000, "test grant", kind="grant")
    return "t1"
