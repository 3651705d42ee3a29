"""Shared pytest fixtures for test suite"""
import hashlib
import hmac
import json
import os
import sys
import time
import uuid
from pathlib import Path
from typing import Any, Callable, Dict, Generator, Optional
from unittest.mock import MagicMock, patch

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

# Settings are read at import time
os.environ["DATABASE_URL"] = "sqlite:///:memory:"
os.environ["ENVIRONMENT"] = "development"
os.environ["STRIPE_DUGSI_WEBHOOK_SECRET_TEST"] = "whsec_test_dugsi"
os.environ["STRIPE_MAHAD_WEBHOOK_SECRET_TEST"] = "whsec_test_mahad"

# Add backend directory to Python path
backend_dir = Path(__file__).parent.parent
if str(backend_dir) not in sys.path:
    sys.path.insert(0, str(backend_dir))

from tuition_billing.main import app
from tuition_billing.api.webhooks import get_stripe_accounts
from tuition_billing.core.config import Program
from tuition_billing.db.session import get_db
from tuition_billing.models import Base
from tuition_billing.models.student import Student
from tuition_billing.services.stripe_service import StripeAccount, WebhookVerifier

DUGSI_WEBHOOK_SECRET = "whsec_test_dugsi"
MAHAD_WEBHOOK_SECRET = "whsec_test_mahad"

# SQLite in-memory database for testing
TEST_DATABASE_URL = "sqlite:///:memory:"

# Create test engine with StaticPool for in-memory database
test_engine = create_engine(
    TEST_DATABASE_URL,
    connect_args={"check_same_thread": False},
    poolclass=StaticPool,
)

# Create test session factory
TestSessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=test_engine)


def sign_payload(payload: bytes, secret: str, timestamp: Optional[int] = None) -> str:
    """Build a stripe-signature header the way Stripe does"""
    timestamp = timestamp if timestamp is not None else int(time.time())
    signed_payload = f"{timestamp}.{payload.decode('utf-8')}".encode("utf-8")
    signature = hmac.new(secret.encode("utf-8"), signed_payload, hashlib.sha256).hexdigest()
    return f"t={timestamp},v1={signature}"


def build_event(event_type: str, obj: Dict[str, Any], event_id: Optional[str] = None) -> Dict[str, Any]:
    """Stripe event envelope around a data object"""
    return {
        "id": event_id or f"evt_{uuid.uuid4().hex[:24]}",
        "object": "event",
        "type": event_type,
        "created": int(time.time()),
        "livemode": False,
        "data": {"object": obj},
    }


def subscription_object(
    subscription_id: str = "sub_test_123",
    customer: Any = "cus_test_123",
    status: str = "active",
    current_period_start: Optional[int] = 1735689600,  # 2025-01-01
    current_period_end: Optional[int] = 1738368000,    # 2025-02-01
    unit_amount: Optional[int] = 16000,
    metadata: Optional[Dict[str, str]] = None,
) -> Dict[str, Any]:
    """Minimal Stripe subscription object"""
    obj = {
        "id": subscription_id,
        "object": "subscription",
        "customer": customer,
        "status": status,
        "metadata": metadata or {},
        "items": {
            "object": "list",
            "data": [{
                "id": "si_test_123",
                "price": {"id": "price_test_123", "unit_amount": unit_amount},
            }],
        },
    }
    if current_period_start is not None:
        obj["current_period_start"] = current_period_start
    if current_period_end is not None:
        obj["current_period_end"] = current_period_end
    return obj


def checkout_session_object(
    client_reference_id: Optional[str] = "dugsi_fam_1_2kids",
    customer: Any = "cus_test_123",
) -> Dict[str, Any]:
    """Minimal Stripe checkout session object"""
    return {
        "id": "cs_test_123",
        "object": "checkout.session",
        "mode": "setup",
        "client_reference_id": client_reference_id,
        "customer": customer,
    }


@pytest.fixture(scope="function")
def db_session() -> Generator[Session, None, None]:
    """Create a fresh SQLite in-memory database session for each test"""
    # Create all tables
    Base.metadata.create_all(bind=test_engine)

    # Create session
    session = TestSessionLocal()

    try:
        yield session
    finally:
        session.close()
        # Drop all tables after test
        Base.metadata.drop_all(bind=test_engine)


@pytest.fixture(scope="function")
def stripe_accounts() -> Dict[Program, StripeAccount]:
    """Stripe accounts with real verifiers and mocked API clients"""
    return {
        Program.DUGSI: StripeAccount(
            program=Program.DUGSI,
            client=MagicMock(),
            verifier=WebhookVerifier(DUGSI_WEBHOOK_SECRET),
        ),
        Program.MAHAD: StripeAccount(
            program=Program.MAHAD,
            client=MagicMock(),
            verifier=WebhookVerifier(MAHAD_WEBHOOK_SECRET),
        ),
    }


@pytest.fixture(scope="function")
def client(db_session: Session, stripe_accounts) -> Generator[TestClient, None, None]:
    """FastAPI test client with test database and test Stripe accounts"""

    # Override get_db dependency to use test database
    def override_get_db():
        try:
            yield db_session
        finally:
            pass  # Don't close session here, handled by fixture

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_stripe_accounts] = lambda: stripe_accounts

    try:
        # Disable OpenTelemetry and the real database in tests
        with patch('tuition_billing.main.initialize_otel', return_value=False):
            with patch('tuition_billing.main.setup_otel_logging', return_value=False):
                with patch('tuition_billing.main.instrument_sqlalchemy'):
                    with patch('tuition_billing.main.init_db'):
                        with TestClient(app) as test_client:
                            yield test_client
    finally:
        # Cleanup - always clear overrides
        app.dependency_overrides.clear()


@pytest.fixture(scope="function")
def send_webhook(client: TestClient) -> Callable:
    """Sign and POST an event to a program's webhook endpoint"""

    def _send(event: Dict[str, Any], program: str = "dugsi", secret: Optional[str] = None, headers=None):
        body = json.dumps(event).encode("utf-8")
        secret = secret or (DUGSI_WEBHOOK_SECRET if program == "dugsi" else MAHAD_WEBHOOK_SECRET)
        request_headers = {"stripe-signature": sign_payload(body, secret), "content-type": "application/json"}
        if headers is not None:
            request_headers = headers
        return client.post(f"/api/webhook/{program}", content=body, headers=request_headers)

    return _send


@pytest.fixture(scope="function")
def make_student(db_session: Session) -> Callable[..., Student]:
    """Create a student with sensible defaults"""

    def _make(**overrides) -> Student:
        values = {
            "name": "Test Student",
            "program": "DUGSI",
            "family_reference_id": "fam_1",
            "status": "registered",
            "previous_subscription_ids": [],
        }
        values.update(overrides)
        student = Student(**values)
        db_session.add(student)
        db_session.commit()
        db_session.refresh(student)
        return student

    return _make


@pytest.fixture(scope="function")
def family(make_student) -> list:
    """Two Dugsi siblings that already have a Stripe customer"""
    return [
        make_student(name="Amina Test", stripe_customer_id="cus_test_123"),
        make_student(name="Yusuf Test", stripe_customer_id="cus_test_123"),
    ]
