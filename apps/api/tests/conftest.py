import threading
from decimal import Decimal

import pytest
from fastapi.testclient import TestClient
from sqlalchemy.orm import sessionmaker

import app.models  # noqa: F401
from app.config import settings
from app.db.base import Base
from app.db.session import engine as app_engine
from app.db.session import get_db
from app.integrations.email_client import LoggingEmailSender, _logging_sender
from app.integrations.mpesa_client import MockStkPushClient, _mock_gateway
from app.main import app
from app.models.coupon import Coupon, DiscountType
from app.observability import metrics_store
from app.services.cart_service import CartService
from app.services.notification_service import NotificationFanout


@pytest.fixture(scope="session", autouse=True)
def setup_test_schema():
    Base.metadata.drop_all(bind=app_engine)
    Base.metadata.create_all(bind=app_engine)
    yield
    Base.metadata.drop_all(bind=app_engine)


@pytest.fixture(autouse=True)
def reset_db():
    Base.metadata.drop_all(bind=app_engine)
    Base.metadata.create_all(bind=app_engine)
    yield


@pytest.fixture(autouse=True)
def reset_metrics_store():
    metrics_store.reset()
    yield


@pytest.fixture(autouse=True)
def reset_mock_integrations():
    _mock_gateway.requests.clear()
    _logging_sender.sent.clear()
    yield


@pytest.fixture(scope="session", autouse=True)
def enable_testing_mode():
    originals = (settings.testing, settings.mpesa_mock_mode, settings.resend_api_key)
    settings.testing = True
    settings.mpesa_mock_mode = True
    settings.resend_api_key = ""
    yield
    settings.testing, settings.mpesa_mock_mode, settings.resend_api_key = originals


@pytest.fixture
def session_factory():
    return sessionmaker(autocommit=False, autoflush=False, bind=app_engine)


@pytest.fixture
def db_session(session_factory):
    db = session_factory()
    try:
        yield db
    finally:
        db.close()


@pytest.fixture
def client(db_session, session_factory):
    db_session_lock = threading.Lock()

    def override_get_db():
        if db_session_lock.acquire(blocking=False):
            try:
                yield db_session
            finally:
                db_session_lock.release()
            return

        db = session_factory()
        try:
            yield db
        finally:
            db.close()

    app.dependency_overrides[get_db] = override_get_db
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


@pytest.fixture
def email_sender():
    return LoggingEmailSender()


@pytest.fixture
def fanout(email_sender):
    return NotificationFanout(email_sender, admin_email="admin@example.com")


@pytest.fixture
def gateway():
    return MockStkPushClient()


@pytest.fixture
def filled_cart(db_session):
    """Customer cart worth KES 5,000."""
    cart = CartService(db_session, "customer-1")
    cart.add_item("maize-90kg", "Maize 90kg bag", Decimal("3000"), 1)
    cart.add_item("beans-10kg", "Beans 10kg", Decimal("1000"), 2)
    return cart


@pytest.fixture
def make_coupon(db_session):
    def _make(code: str = "SAVE500", **overrides) -> Coupon:
        values = {
            "code": code,
            "discount_type": DiscountType.FIXED,
            "discount_value": Decimal("500"),
            "is_active": True,
        }
        values.update(overrides)
        coupon = Coupon(**values)
        db_session.add(coupon)
        db_session.commit()
        db_session.refresh(coupon)
        return coupon

    return _make
