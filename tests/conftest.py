"""
Root conftest.py for all tests
Provides common fixtures and configuration
"""
import hashlib
import os
import sys
import threading
from datetime import datetime

# Add project root to Python path
sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), "..")))

# Settings are read on first import, so the test environment goes in first
os.environ.setdefault("ENVIRONMENT", "test")
os.environ.setdefault("TESTING", "true")
os.environ.setdefault("DATABASE_URL", "sqlite:///:memory:")
os.environ.setdefault("LOG_FORMAT", "text")
os.environ.setdefault("PAYU_MODE", "test")
os.environ.setdefault("PAYU_MERCHANT_KEY", "TESTKEY")
os.environ.setdefault("PAYU_MERCHANT_SALT", "TESTSALT")

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from core.exceptions import EmailDeliveryError
from d7_billing.deferred_tasks import DeferredTaskRunner
from d7_billing.email_client import EmailSender
from d7_billing.gateway_config import GatewayConfig
from d7_billing.models import User
from d7_billing.reconciler import CallbackReconciler
from database.base import Base
from database.session import enable_sqlite_savepoints

DOMAIN_MARKERS = {
    "core": "Configuration, logging and CLI tests",
    "d7_billing": "Payment and subscription tests",
}


def pytest_configure(config):
    """Register test type and domain markers"""
    config.addinivalue_line("markers", "unit: Fast tests without external services")
    config.addinivalue_line("markers", "critical: Tests guarding money movement or configuration")
    for marker_name, description in DOMAIN_MARKERS.items():
        config.addinivalue_line("markers", f"{marker_name}: {description}")


def pytest_collection_modifyitems(config, items):
    """Apply markers based on test location"""
    for item in items:
        parts = item.path.parts
        if "unit" in parts:
            item.add_marker(pytest.mark.unit)
        for marker_name in DOMAIN_MARKERS:
            if marker_name in parts:
                item.add_marker(getattr(pytest.mark, marker_name))


TEST_KEY = "TESTKEY"
TEST_SALT = "TESTSALT"
TEST_USER_ID = "user-1"
FIXED_NOW = datetime(2025, 1, 15, 10, 30, 0)


class RecordingEmailSender(EmailSender):
    """Keeps sent messages in memory; can be told to fail"""

    def __init__(self, fail_with=None):
        self.sent = []
        self.fail_with = fail_with
        self._lock = threading.Lock()

    def send(self, message):
        if self.fail_with is not None:
            raise self.fail_with
        with self._lock:
            self.sent.append(message)
        return {"success": True, "delivered": True}


def response_hash(fields, salt=TEST_SALT):
    """Reverse-order PayU response hash, written out independently of the codec"""
    sequence = [
        salt,
        fields["status"],
        "",
        "",
        "",
        "",
        "",
        fields.get("udf5", ""),
        fields["udf4"],
        fields["udf3"],
        fields["udf2"],
        fields["udf1"],
        fields["email"],
        fields["firstname"],
        fields["productinfo"],
        fields["amount"],
        fields["txnid"],
        fields["key"],
    ]
    return hashlib.sha512("|".join(sequence).encode("utf-8")).hexdigest()


@pytest.fixture(scope="function")
def db_engine():
    """In-memory SQLite database with all tables"""
    engine = create_engine(
        "sqlite:///:memory:",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    enable_sqlite_savepoints(engine)
    Base.metadata.create_all(engine)
    yield engine
    Base.metadata.drop_all(engine)
    engine.dispose()


@pytest.fixture
def session_factory(db_engine):
    return sessionmaker(bind=db_engine, autocommit=False, autoflush=False)


@pytest.fixture
def db_session(session_factory):
    """
    Short-lived session for arranging and asserting.

    All sessions share one SQLite connection, so close (or commit) before
    calling code that opens its own session.
    """
    session = session_factory()
    yield session
    session.close()


@pytest.fixture
def user_id(session_factory):
    """Seeded account without a subscription"""
    with session_factory() as db:
        db.add(User(id=TEST_USER_ID, email="asha@example.com", name="Asha"))
        db.commit()
    return TEST_USER_ID


@pytest.fixture
def gateway_config():
    return GatewayConfig(
        merchant_key=TEST_KEY,
        merchant_salt=TEST_SALT,
        mode="test",
        app_url="https://app.example.com",
        api_base_url="https://api.example.com",
    )


@pytest.fixture
def clock():
    return lambda: FIXED_NOW


@pytest.fixture
def email_sender():
    return RecordingEmailSender()


@pytest.fixture
def task_runner():
    runner = DeferredTaskRunner(max_queue_size=10, workers=1, name="test-deferred")
    runner.start()
    yield runner
    runner.shutdown(drain=True, timeout=5)


@pytest.fixture
def reconciler(gateway_config, session_factory, task_runner, email_sender, clock):
    return CallbackReconciler(
        gateway_config,
        session_factory,
        task_runner=task_runner,
        email_sender=email_sender,
        clock=clock,
    )


@pytest.fixture
def make_callback():
    """Build a correctly signed PayU callback payload"""

    def _make(
        status="success",
        txnid="TXN_X",
        mihpayid="403993715521937565",
        amount="299.00",
        plan="professional",
        tier="professional",
        user=TEST_USER_ID,
        order_id="ORD_20250115103000_XYZ789",
        productinfo="Professional Plan - 1 Month Subscription",
        **extra,
    ):
        fields = {
            "key": TEST_KEY,
            "txnid": txnid,
            "amount": amount,
            "productinfo": productinfo,
            "firstname": "Asha",
            "email": "asha@example.com",
            "status": status,
            "udf1": user,
            "udf2": plan,
            "udf3": order_id,
            "udf4": tier,
            "udf5": "",
            "mode": "UPI",
        }
        if mihpayid is not None:
            fields["mihpayid"] = mihpayid
        fields.update(extra)
        fields["hash"] = response_hash(fields)
        return fields

    return _make


@pytest.fixture
def failing_email_sender():
    return RecordingEmailSender(fail_with=EmailDeliveryError("SMTP down", email="asha@example.com"))
