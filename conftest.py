"""
Pytest configuration and shared fixtures.

Test defaults for the required settings are set here, before any app import,
so the suite runs without a .env file. Real environment variables win.
"""

import hashlib
import hmac
import os
from datetime import datetime
from types import SimpleNamespace

import pytest

os.environ.setdefault("DATABASE_URL", "sqlite:///./test_communication_audit.db")
os.environ.setdefault("LOG_LEVEL", "WARNING")
os.environ.setdefault("WEBHOOK_SECRET", "test-webhook-secret")
os.environ.setdefault("JWT_SECRET_KEY", "test-jwt-secret")
os.environ.setdefault("EXPORT_JOB_SWEEP_SECONDS", "0")

# Clear settings cache before any app imports to ensure test env vars are used
from app.config import get_settings  # noqa: E402
get_settings.cache_clear()

from fastapi.testclient import TestClient  # noqa: E402

from app.auth import create_access_token  # noqa: E402
from app.main import app  # noqa: E402
from app.models import STAFF_ROLE, CommunicationLog, Message, Order, Organization, User  # noqa: E402
from app.storage import Base, SessionLocal, engine  # noqa: E402


def compute_signature(body: bytes, secret: str = None) -> str:
    """Compute HMAC-SHA256 signature for request body."""
    secret = secret or os.environ["WEBHOOK_SECRET"]
    return hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()


def auth_headers(user: User) -> dict:
    token = create_access_token(user.id, user.organization_id, user.role)
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture(scope="function")
def client():
    """Create test client with fresh database for each test."""
    Base.metadata.create_all(bind=engine)

    with TestClient(app) as test_client:
        yield test_client

    Base.metadata.drop_all(bind=engine)


@pytest.fixture
def db(client):
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def seed(db):
    """
    Two organizations with one order each, a member user per organization,
    a staff user and one message on organization A's order.
    """
    org_a = Organization(name="Lincoln High Drama")
    org_b = Organization(name="Riverside Dance Academy")
    db.add_all([org_a, org_b])
    db.flush()

    staff = User(name="Casey Staff", email="staff@colorgarb.test", role=STAFF_ROLE)
    user_a = User(name="Avery Director", email="avery@lincoln.test", role="Director", organization_id=org_a.id)
    user_b = User(name="Blake Director", email="blake@riverside.test", role="Director", organization_id=org_b.id)
    db.add_all([staff, user_a, user_b])
    db.flush()

    order_a = Order(order_number="CG-2025-001", description="Spring musical", organization_id=org_a.id)
    order_b = Order(order_number="CG-2025-002", description="Winter recital", organization_id=org_b.id)
    db.add_all([order_a, order_b])
    db.flush()

    message_a = Message(order_id=order_a.id, sender_id=user_a.id, content="Please confirm the sizes")
    db.add(message_a)
    db.commit()

    return SimpleNamespace(
        org_a=org_a, org_b=org_b,
        staff=staff, user_a=user_a, user_b=user_b,
        order_a=order_a, order_b=order_b,
        message_a=message_a,
    )


@pytest.fixture
def make_log(db):
    """Factory inserting a CommunicationLog directly."""

    def _make_log(order: Order, **overrides) -> CommunicationLog:
        values = {
            "order_id": order.id,
            "communication_type": "Email",
            "sender_id": "system",
            "recipient_email": "director@example.test",
            "subject": "Order update",
            "content": "Your order has moved to production.",
            "delivery_status": "Sent",
            "sent_at": datetime(2025, 1, 15, 10, 0, 0),
        }
        values.update(overrides)
        log = CommunicationLog(**values)
        db.add(log)
        db.commit()
        db.refresh(log)
        return log

    return _make_log


@pytest.fixture
def headers_for():
    """Authorization headers for a seeded user."""
    return auth_headers


@pytest.fixture
def sign():
    """X-Signature value for a raw webhook body."""
    return compute_signature
