from decimal import Decimal

import pytest
from sqlalchemy import func, select

from app.errors import GatewayError, PaymentTimeoutError, ValidationError
from app.integrations.errors import IntegrationUnavailableError
from app.observability import metrics_store
from app.models.order import Order, OrderKind, PaymentStatus
from app.services.checkout_orchestrator import CheckoutOrchestrator, CheckoutState
from app.services.checkout_service import PaymentOutcomeKind, ShippingInfo
from app.services.order_store import set_payment_result

SHIPPING = ShippingInfo(
    full_name="Wanjiru Kamau", phone="0712345678", address="Moi Avenue 12", city="Nairobi"
)


class _FlakyGateway:
    """Fails the first push, then behaves like the mock."""

    def __init__(self, delegate):
        self.delegate = delegate
        self.calls = 0

    def request_push(self, phone, amount, order_reference):
        self.calls += 1
        if self.calls == 1:
            raise IntegrationUnavailableError("mpesa", "Daraja returned 5xx")
        return self.delegate.request_push(phone, amount, order_reference)


@pytest.fixture
def make_orchestrator(filled_cart, gateway, fanout, session_factory):
    def _make(sleep=lambda _s: None, max_attempts=3, gateway_override=None):
        return CheckoutOrchestrator(
            filled_cart,
            gateway_override or gateway,
            fanout,
            session_factory=session_factory,
            poll_interval_s=0,
            max_attempts=max_attempts,
            sleep=sleep,
        )

    return _make


def _confirm_payment(session_factory, order_id, receipt="QKX1A2B3C4"):
    with session_factory() as db:
        set_payment_result(db, order_id, OrderKind.STANDARD, PaymentStatus.PAID, receipt)


def _order_count(db_session) -> int:
    return db_session.scalar(select(func.count()).select_from(Order))


def test_paid_during_polling_finalizes_and_clears_cart(
    make_orchestrator, filled_cart, session_factory, db_session
):
    ticks = []

    def sleep(_seconds):
        ticks.append(_seconds)
        if len(ticks) == 2:
            _confirm_payment(session_factory, orchestrator.order_id)

    orchestrator = make_orchestrator(sleep=sleep, max_attempts=10)
    orchestrator.create_order(SHIPPING)
    orchestrator.request_push("0712345678")
    assert orchestrator.state == CheckoutState.POLLING

    outcome = orchestrator.poll_for_confirmation()

    assert outcome.kind == PaymentOutcomeKind.PAID
    assert outcome.attempt == 3
    assert outcome.receipt == "QKX1A2B3C4"
    assert not filled_cart.is_empty()

    order = orchestrator.finalize()

    assert orchestrator.state == CheckoutState.SUCCEEDED
    assert order.finalized_at is not None
    assert filled_cart.is_empty()
    assert _order_count(db_session) == 1


def test_timeout_leaves_cart_and_refuses_to_finalize(make_orchestrator, filled_cart):
    orchestrator = make_orchestrator(max_attempts=3)
    reference = orchestrator.create_order(SHIPPING)
    orchestrator.request_push("0712345678")

    outcome = orchestrator.poll_for_confirmation()

    assert outcome.kind == PaymentOutcomeKind.TIMED_OUT
    assert orchestrator.attempts == 3
    assert orchestrator.state == CheckoutState.TIMED_OUT
    assert not filled_cart.is_empty()
    with pytest.raises(PaymentTimeoutError) as exc:
        orchestrator.finalize()
    assert f"#{reference}" in exc.value.message
    assert not filled_cart.is_empty()


def test_resend_restarts_poll_clock_without_new_order(
    make_orchestrator, gateway, db_session, session_factory
):
    orchestrator = make_orchestrator(max_attempts=2)
    orchestrator.create_order(SHIPPING)
    orchestrator.create_order(SHIPPING)
    orchestrator.request_push("0712345678")
    assert orchestrator.poll_for_confirmation().kind == PaymentOutcomeKind.TIMED_OUT

    orchestrator.resend("0712345678")

    assert orchestrator.state == CheckoutState.POLLING
    assert orchestrator.attempts == 0
    assert orchestrator.poll_cycle == 2
    assert len(gateway.requests) == 2
    assert _order_count(db_session) == 1

    _confirm_payment(session_factory, orchestrator.order_id)
    assert orchestrator.poll_once().kind == PaymentOutcomeKind.PAID


def test_gateway_error_keeps_order_and_cart(make_orchestrator, gateway, filled_cart, db_session):
    flaky = _FlakyGateway(gateway)
    orchestrator = make_orchestrator(gateway_override=flaky)
    orchestrator.create_order(SHIPPING)

    with pytest.raises(GatewayError) as exc:
        orchestrator.request_push("0712345678")

    assert exc.value.retryable is True
    assert orchestrator.state == CheckoutState.AWAITING_PUSH
    assert not filled_cart.is_empty()

    orchestrator.request_push("0712345678")
    assert orchestrator.state == CheckoutState.POLLING
    assert _order_count(db_session) == 1


def test_failed_payment_is_not_fatal(make_orchestrator, filled_cart, session_factory):
    orchestrator = make_orchestrator()
    orchestrator.create_order(SHIPPING)
    orchestrator.request_push("0712345678")
    with session_factory() as db:
        set_payment_result(db, orchestrator.order_id, OrderKind.STANDARD, PaymentStatus.FAILED)

    outcome = orchestrator.poll_for_confirmation()

    assert outcome.kind == PaymentOutcomeKind.FAILED
    assert orchestrator.state == CheckoutState.FAILED
    assert not filled_cart.is_empty()
    with pytest.raises(ValidationError):
        orchestrator.request_push("0712345678")


def test_cancel_stops_the_poll_loop(make_orchestrator):
    orchestrator = make_orchestrator(max_attempts=50)

    def sleep(_seconds):
        orchestrator.cancel()

    orchestrator._sleep = sleep
    orchestrator.create_order(SHIPPING)
    orchestrator.request_push("0712345678")

    outcome = orchestrator.poll_for_confirmation()

    assert outcome.kind == PaymentOutcomeKind.PENDING
    assert orchestrator.attempts == 1


def test_cancel_before_polling_never_reads(make_orchestrator):
    orchestrator = make_orchestrator(max_attempts=50)
    orchestrator.create_order(SHIPPING)
    orchestrator.request_push("0712345678")

    orchestrator.cancel()
    outcome = orchestrator.poll_for_confirmation()

    assert outcome.kind == PaymentOutcomeKind.PENDING
    assert outcome.attempt == 0
    assert orchestrator.attempts == 0
    assert orchestrator.last_outcome is None

    orchestrator.resend("0712345678")
    assert orchestrator.poll_once().kind == PaymentOutcomeKind.PENDING


def test_confirmation_on_sixth_tick_clears_cart_exactly_once(
    make_orchestrator, filled_cart, session_factory
):
    pending_ticks = []

    def sleep(_seconds):
        pending_ticks.append(orchestrator.last_outcome.kind)
        if len(pending_ticks) == 5:
            _confirm_payment(session_factory, orchestrator.order_id, receipt="QWE123")

    orchestrator = make_orchestrator(sleep=sleep, max_attempts=60)
    orchestrator.create_order(SHIPPING)
    orchestrator.request_push("0712345678")

    outcome = orchestrator.poll_for_confirmation()

    assert pending_ticks == [PaymentOutcomeKind.PENDING] * 5
    assert outcome.kind == PaymentOutcomeKind.PAID
    assert outcome.attempt == 6
    assert outcome.receipt == "QWE123"

    orchestrator.finalize()
    orchestrator.finalize()

    assert filled_cart.is_empty()
    assert orchestrator.state == CheckoutState.SUCCEEDED
    assert metrics_store.count("cart_cleared_total") == 1


def test_push_before_order_is_rejected(make_orchestrator):
    with pytest.raises(ValidationError) as exc:
        make_orchestrator().request_push("0712345678")
    assert exc.value.code == "NO_ORDER"


def test_push_amount_matches_order_total(make_orchestrator, gateway):
    orchestrator = make_orchestrator()
    orchestrator.create_order(SHIPPING)
    ticket = orchestrator.request_push("0712345678")
    assert ticket.amount == Decimal("5000")
    assert gateway.requests[0]["amount"] == Decimal("5000")
