"""Shared pytest fixtures for test suite"""
import pytest
import hashlib
import hmac
import os
import sys
import time
import uuid
from pathlib import Path
from typing import Generator
from unittest.mock import Mock, patch
from cryptography.fernet import Fernet
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool
import fakeredis

# Add backend directory to Python path
backend_dir = Path(__file__).parent.parent
if str(backend_dir) not in sys.path:
    sys.path.insert(0, str(backend_dir))

# Settings are read at import time
STRIPE_TEST_WEBHOOK_SECRET = "whsec_test_secret"
PAYSTACK_TEST_SECRET = "sk_test_paystack"
os.environ["DATABASE_URL"] = "sqlite:///:memory:"
os.environ["ENCRYPTION_KEY"] = Fernet.generate_key().decode()
os.environ["STRIPE_WEBHOOK_SECRET"] = STRIPE_TEST_WEBHOOK_SECRET
os.environ["PAYSTACK_SECRET_KEY"] = PAYSTACK_TEST_SECRET
os.environ["PAYSTACK_WEBHOOK_SECRET"] = PAYSTACK_TEST_SECRET

from creatorpay.main import app
from creatorpay.core.config import settings
from creatorpay.db import redis as redis_module
from creatorpay.db.session import get_db
from creatorpay.models import Base
from creatorpay.models.user import User
from creatorpay.models.profile import Profile, PAYOUT_STATUS_ACTIVE
from creatorpay.schemas.paystack_events import parse_paystack_event
from creatorpay.schemas.stripe_events import parse_stripe_event
from creatorpay.services.lock_service import DistributedLock
from creatorpay.services.paystack_client import PaystackClient, TransferResult
from creatorpay.services.stripe_gateway import RecoveryCharge, StripeGateway
from creatorpay.services.webhook_services import WebhookServices, get_webhook_services
from creatorpay.utils.encryption import encrypt


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
def mock_redis():
    """Mock Redis client using fakeredis"""
    fake_redis = fakeredis.FakeStrictRedis(decode_responses=True)
    with patch.object(redis_module, "_client", fake_redis):
        yield fake_redis


@pytest.fixture(scope="function")
def lock(mock_redis) -> DistributedLock:
    return DistributedLock(mock_redis)


@pytest.fixture(scope="function")
def stripe_gateway():
    """Mock Stripe gateway - no network calls"""
    gateway = Mock(spec=StripeGateway)
    gateway.get_invoice_subscription_id.return_value = None
    gateway.get_charge_customer_id.return_value = None
    gateway.charge_platform_debit.return_value = RecoveryCharge(
        succeeded=True, payment_intent_id="pi_recovery123", status="succeeded"
    )
    return gateway


@pytest.fixture(scope="function")
def paystack_client():
    """Mock Paystack client - transfers are accepted as pending"""
    client = Mock(spec=PaystackClient)
    client.create_transfer_recipient.return_value = "RCP_test123"
    client.initiate_transfer.side_effect = lambda amount_cents, recipient_code, reason, reference: TransferResult(
        transfer_code="TRF_test123", reference=reference, status="pending"
    )
    return client


@pytest.fixture(scope="function")
def services(lock, stripe_gateway, paystack_client) -> WebhookServices:
    return WebhookServices(lock=lock, stripe=stripe_gateway, paystack=paystack_client, settings=settings)


@pytest.fixture(scope="function")
def client(db_session: Session, mock_redis) -> Generator[TestClient, None, None]:
    """FastAPI test client with test database, mocked Redis and real signature checks"""
    api_services = WebhookServices(
        lock=DistributedLock(mock_redis),
        stripe=StripeGateway("sk_test_stripe", STRIPE_TEST_WEBHOOK_SECRET),
        paystack=PaystackClient(PAYSTACK_TEST_SECRET, PAYSTACK_TEST_SECRET),
        settings=settings,
    )

    # Override get_db dependency to use test database
    def override_get_db():
        try:
            yield db_session
        finally:
            pass  # Don't close session here, handled by fixture

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_webhook_services] = lambda: api_services

    try:
        # Disable OpenTelemetry and real infrastructure in tests
        with patch('creatorpay.main.initialize_otel', return_value=False):
            with patch('creatorpay.main.init_db'):
                with patch('creatorpay.main.instrument_sqlalchemy'):
                    with patch('creatorpay.main.close_webhook_services'):
                        with TestClient(app) as test_client:
                            yield test_client
    finally:
        # Cleanup - always clear overrides
        app.dependency_overrides.clear()


# ============================================================================
# FACTORIES
# ============================================================================

@pytest.fixture(scope="function")
def make_creator(db_session: Session):
    """Factory for creators with a profile"""
    def _make(
        email: str = "creator@example.com",
        purpose: str = "personal",
        currency: str = "USD",
        **profile_fields,
    ) -> User:
        user = User(email=email, name="Test Creator")
        db_session.add(user)
        db_session.flush()
        profile = Profile(
            user_id=user.id,
            display_name="Test Creator",
            purpose=purpose,
            currency=currency,
            payout_status=PAYOUT_STATUS_ACTIVE,
            **profile_fields,
        )
        db_session.add(profile)
        db_session.commit()
        db_session.refresh(user)
        return user
    return _make


@pytest.fixture(scope="function")
def creator(make_creator) -> User:
    """USD personal creator with a Stripe Connect account"""
    return make_creator(stripe_account_id="acct_creator123")


@pytest.fixture(scope="function")
def paystack_creator(make_creator) -> User:
    """NGN creator with encrypted bank credentials"""
    return make_creator(
        email="naija@example.com",
        currency="NGN",
        country_code="NG",
        paystack_bank_code="058",
        paystack_account_number=encrypt("0123456789"),
        paystack_account_name="Ada Obi",
    )


@pytest.fixture(scope="function")
def subscriber(db_session: Session) -> User:
    user = User(email="fan@example.com", name="Test Fan")
    db_session.add(user)
    db_session.commit()
    db_session.refresh(user)
    return user


# ============================================================================
# EVENT BUILDERS
# ============================================================================

def _stripe_payload(event_type, data_object, event_id=None, created=None, account=None):
    payload = {
        "id": event_id or f"evt_{uuid.uuid4().hex[:16]}",
        "object": "event",
        "type": event_type,
        "created": created or int(time.time()),
        "livemode": False,
        "data": {"object": data_object},
    }
    if account:
        payload["account"] = account
    return payload


@pytest.fixture(scope="function")
def stripe_payload():
    """Factory for raw Stripe event payloads"""
    return _stripe_payload


@pytest.fixture(scope="function")
def stripe_event():
    """Factory for parsed Stripe events"""
    def _make(event_type, data_object, event_id=None, created=None, account=None):
        return parse_stripe_event(_stripe_payload(event_type, data_object, event_id, created, account))
    return _make


@pytest.fixture(scope="function")
def paystack_event():
    """Factory for parsed Paystack events"""
    def _make(event_name, data):
        return parse_paystack_event({"event": event_name, "data": data})
    return _make


@pytest.fixture(scope="function")
def stripe_signature():
    """Build a valid stripe-signature header for a payload"""
    def _sign(payload: bytes, secret: str = STRIPE_TEST_WEBHOOK_SECRET, timestamp: int = None) -> str:
        timestamp = timestamp or int(time.time())
        signed = f"{timestamp}.{payload.decode()}".encode()
        digest = hmac.new(secret.encode(), signed, hashlib.sha256).hexdigest()
        return f"t={timestamp},v1={digest}"
    return _sign


@pytest.fixture(scope="function")
def paystack_signature():
    """Build a valid x-paystack-signature header for a payload"""
    def _sign(payload: bytes, secret: str = PAYSTACK_TEST_SECRET) -> str:
        return hmac.new(secret.encode(), payload, hashlib.sha512).hexdigest()
    return _sign
