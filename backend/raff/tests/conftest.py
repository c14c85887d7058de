"""Pytest configuration for webhook attribution tests

WHAT: Provides shared fixtures for engine, HTTP endpoint and database tests
WHY: Ensures consistent test setup, database isolation, and dependency overrides
REFERENCES:
    - raff/main.py: FastAPI application
    - raff/database.py: Database configuration
    - raff/deps.py: Settings and sync trigger dependencies
"""

import pytest
import os
import hashlib
import hmac
import json
import uuid
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Generator

from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker, Session
from fastapi.testclient import TestClient

# Ensure backend is in path
import sys
from pathlib import Path
BACKEND_ROOT = Path(__file__).resolve().parents[2]
if str(BACKEND_ROOT) not in sys.path:
    sys.path.insert(0, str(BACKEND_ROOT))

# Set test environment
os.environ.setdefault("DATABASE_URL", "sqlite:///:memory:")
os.environ.setdefault("ENVIRONMENT", "test")

SALLA_SECRET = "salla-test-secret"
ZID_SECRET = "zid-test-token"
SALLA_STORE_ID = "112233"
ZID_STORE_ID = "445566"


# ============================================================================
# Database Fixtures
# ============================================================================

@pytest.fixture
def test_db_engine(tmp_path):
    """Create file-backed SQLite engine.

    File-backed so that the worker thread's session and the request session
    see the same data.
    """
    engine = create_engine(
        f"sqlite:///{tmp_path / 'raff-test.db'}",
        connect_args={"check_same_thread": False}
    )

    # Create all tables
    from raff.database import Base
    Base.metadata.create_all(bind=engine)

    yield engine

    # Cleanup
    Base.metadata.drop_all(bind=engine)
    engine.dispose()


@pytest.fixture
def session_factory(test_db_engine):
    return sessionmaker(
        autocommit=False,
        autoflush=False,
        bind=test_db_engine
    )


@pytest.fixture
def test_db_session(session_factory) -> Generator[Session, None, None]:
    """Create test database session with rollback."""
    session = session_factory()
    yield session
    session.rollback()
    session.close()


# ============================================================================
# Settings & Application Fixtures
# ============================================================================

@pytest.fixture
def settings():
    """Settings with both platform secrets configured."""
    from raff.deps import Settings

    return Settings(
        _env_file=None,
        ENVIRONMENT="test",
        SALLA_WEBHOOK_SECRET=SALLA_SECRET,
        ZID_WEBHOOK_SECRET=ZID_SECRET,
        REDIS_URL=None,
    )


class RecordingEnqueuer:
    """Stands in for the ARQ enqueuer; remembers every trigger."""

    def __init__(self):
        self.jobs = []
        self.fail_with = None

    async def __call__(self, job_name, *args):
        if self.fail_with is not None:
            raise self.fail_with
        self.jobs.append((job_name, args))
        return {"job_id": f"job-{len(self.jobs)}", "status": "enqueued"}


@pytest.fixture
def enqueuer():
    return RecordingEnqueuer()


@pytest.fixture
def app(test_db_session, session_factory, settings, enqueuer):
    """Create FastAPI test application."""
    from raff.main import create_app
    from raff.database import get_db, get_session_factory
    from raff.deps import get_settings, get_sync_enqueuer

    test_app = create_app()

    # Not closed per request: tests keep using the session and its objects
    def override_get_db():
        yield test_db_session

    test_app.dependency_overrides[get_db] = override_get_db
    test_app.dependency_overrides[get_session_factory] = lambda: session_factory
    test_app.dependency_overrides[get_settings] = lambda: settings
    test_app.dependency_overrides[get_sync_enqueuer] = lambda: enqueuer

    return test_app


@pytest.fixture
def client(app) -> TestClient:
    """Create TestClient for HTTP testing."""
    return TestClient(app)


# ============================================================================
# Model Fixtures
# ============================================================================

@pytest.fixture
def test_merchant(test_db_session):
    """Create merchant linked to both platforms at the default 5% rate."""
    from raff.models import Merchant

    merchant = Merchant(
        id=uuid.uuid4(),
        name="Test Store",
        salla_store_id=SALLA_STORE_ID,
        zid_store_id=ZID_STORE_ID,
        commission_rate=Decimal("5.00"),
        is_active=True,
        created_at=datetime.utcnow()
    )

    test_db_session.add(merchant)
    test_db_session.commit()
    test_db_session.refresh(merchant)

    return merchant


@pytest.fixture
def make_click(test_db_session, test_merchant):
    """Factory for click tracking rows."""
    from raff.models import ClickTracking

    def _make(tracking_id="raff_abc123", *, merchant=None, rate=None, expires_in=timedelta(days=30), clicked_ago=timedelta(hours=1)):
        now = datetime.utcnow()
        click = ClickTracking(
            id=uuid.uuid4(),
            tracking_id=tracking_id,
            merchant_id=(merchant or test_merchant).id,
            commission_rate=rate,
            clicked_at=now - clicked_ago,
            expires_at=now + expires_in,
        )
        test_db_session.add(click)
        test_db_session.commit()
        test_db_session.refresh(click)
        return click

    return _make


@pytest.fixture
def test_click(make_click):
    return make_click()


# ============================================================================
# Payload Helpers
# ============================================================================

def salla_order_payload(order_id="9001", *, total=200, referrer="raff_abc123", payment_status="pending",
                        status="under_review", event="order.created", store_id=SALLA_STORE_ID):
    return {
        "event": event,
        "merchant": int(store_id),
        "created_at": "2026-01-05 10:00:00",
        "data": {
            "id": int(order_id),
            "referrer": referrer,
            "total": {"amount": total, "currency": "SAR"},
            "payment": {"status": payment_status},
            "status": {"slug": status, "name": status.replace("_", " ").title()},
            "customer": {"name": "Test Customer", "mobile": "+966500000000"},
        },
    }


def zid_order_payload(order_id="7001", *, total="150.00", referrer="raff_abc123", payment_status="pending",
                      status="new", event="order.create", store_id=ZID_STORE_ID):
    return {
        "event": event,
        "store_id": store_id,
        "order_id": order_id,
        "order_total": total,
        "currency_code": "SAR",
        "payment_status": payment_status,
        "order_status": status,
        "referer_code": referrer,
        "customer": {"name": "Test Customer", "email": "customer@example.com"},
    }


def sign_salla(body: bytes, secret: str = SALLA_SECRET) -> str:
    return hmac.new(secret.encode(), body, hashlib.sha256).hexdigest()


def salla_headers(payload, *, secret=SALLA_SECRET, delivery_id=None):
    body = json.dumps(payload).encode()
    headers = {
        "Content-Type": "application/json",
        "X-Salla-Signature": sign_salla(body, secret),
    }
    if delivery_id:
        headers["X-Salla-Event-Id"] = delivery_id
    return body, headers


def zid_headers(payload, *, token=ZID_SECRET, delivery_id=None):
    body = json.dumps(payload).encode()
    headers = {
        "Content-Type": "application/json",
        "X-Zid-Signature": token,
    }
    if delivery_id:
        headers["X-Zid-Webhook-Id"] = delivery_id
    return body, headers


# ============================================================================
# Notes
# ============================================================================
#
# USAGE:
#
# # HTTP test
# def test_order(client, test_click):
#     body, headers = salla_headers(salla_order_payload(payment_status="paid"))
#     response = client.post("/webhooks/salla", content=body, headers=headers)
#     assert response.json()["status"] == "APPROVED"
#
# # Engine test
# def test_engine(test_db_session, test_merchant, test_click):
#     event = get_normalizer(PlatformEnum.salla).normalize_order(payload, "order.created")
#     result = process_order_event(test_db_session, event, test_merchant)
#
# ============================================================================
