import enum
import time
import uuid
from collections.abc import Callable

from app.config import settings
from app.db.session import SessionFactory, SessionLocal, session_scope
from app.errors import OrderflowError, PaymentTimeoutError, ValidationError
from app.integrations import PaymentGatewayProtocol
from app.models.order import Order, OrderKind
from app.observability import log_event
from app.services import checkout_service
from app.services.cart_service import CartService
from app.services.checkout_service import (
    PaymentOutcome,
    PaymentOutcomeKind,
    PushTicket,
    ShippingInfo,
)
from app.services.notification_service import NotificationFanout


class CheckoutState(str, enum.Enum):
    DETAILS = "details"
    AWAITING_PUSH = "awaiting_push"
    POLLING = "polling"
    SUCCEEDED = "succeeded"
    TIMED_OUT = "timed_out"
    FAILED = "failed"


_PUSHABLE_STATES = {
    CheckoutState.DETAILS,
    CheckoutState.AWAITING_PUSH,
    CheckoutState.POLLING,
    CheckoutState.TIMED_OUT,
}


class CheckoutOrchestrator:
    """Drive one customer checkout from order creation to a confirmed, finalized payment.

    The orchestrator never writes ``payment_status``; it only reads it, one short-lived
    session per poll tick, until the out-of-band confirmation lands or the attempt ceiling
    is reached. A resend starts a fresh poll cycle instead of stacking a second poller.
    """

    def __init__(
        self,
        cart: CartService,
        gateway: PaymentGatewayProtocol,
        fanout: NotificationFanout,
        *,
        session_factory: SessionFactory = SessionLocal,
        poll_interval_s: float | None = None,
        max_attempts: int | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.cart = cart
        self.gateway = gateway
        self.fanout = fanout
        self.session_factory = session_factory
        self.poll_interval_s = (
            settings.payment_poll_interval_s if poll_interval_s is None else poll_interval_s
        )
        self.max_attempts = max_attempts or settings.payment_poll_max_attempts
        self._sleep = sleep

        self.state = CheckoutState.DETAILS
        self.order_id: uuid.UUID | None = None
        self.order_reference: str | None = None
        self.attempts = 0
        self.poll_cycle = 0
        self.last_outcome: PaymentOutcome | None = None
        self._cancelled = False

    def create_order(
        self,
        shipping: ShippingInfo,
        *,
        coupon_code: str | None = None,
        notes: str | None = None,
    ) -> str:
        if self.order_id is not None:
            # resubmitting the details form must not place a second order
            return self.order_reference

        with session_scope(self.session_factory) as db:
            order = checkout_service.create_order(
                db,
                self.cart,
                shipping,
                self.fanout,
                coupon_code=coupon_code,
                notes=notes,
            )
            self.order_id = order.id
            self.order_reference = order.reference
        return self.order_reference

    def request_push(self, phone: str) -> PushTicket:
        if self.order_id is None:
            raise ValidationError("Place the order before requesting payment", code="NO_ORDER")
        if self.state not in _PUSHABLE_STATES:
            raise ValidationError(
                f"Checkout is already {self.state.value}", code="CHECKOUT_RESOLVED"
            )

        previous = self.state
        self.state = CheckoutState.AWAITING_PUSH
        try:
            with session_scope(self.session_factory) as db:
                ticket = checkout_service.request_push(
                    db, self.order_id, OrderKind.STANDARD, phone, self.gateway
                )
        except OrderflowError:
            # a failed resend keeps the live poll cycle
            if previous in (CheckoutState.POLLING, CheckoutState.TIMED_OUT):
                self.state = previous
            raise

        self._start_poll_cycle()
        return ticket

    def resend(self, phone: str) -> PushTicket:
        log_event("payment_push_resend", order_id=str(self.order_id) if self.order_id else None)
        return self.request_push(phone)

    def cancel(self) -> None:
        self._cancelled = True

    def _start_poll_cycle(self) -> None:
        self.attempts = 0
        self.poll_cycle += 1
        self._cancelled = False
        self.state = CheckoutState.POLLING

    def poll_once(self) -> PaymentOutcome:
        if self.state != CheckoutState.POLLING:
            raise ValidationError("No payment is being awaited", code="NOT_POLLING")

        self.attempts += 1
        with session_scope(self.session_factory) as db:
            outcome = checkout_service.read_payment_outcome(
                db, self.order_id, OrderKind.STANDARD, self.attempts, self.max_attempts
            )

        if outcome.kind == PaymentOutcomeKind.TIMED_OUT:
            self.state = CheckoutState.TIMED_OUT
        elif outcome.kind == PaymentOutcomeKind.FAILED:
            self.state = CheckoutState.FAILED
        self.last_outcome = outcome
        return outcome

    def poll_for_confirmation(self) -> PaymentOutcome:
        """Tick until Paid, Failed or TimedOut, or until the poll is cancelled."""
        while True:
            # checked before every read so a cancelled poll never queries again
            if self._cancelled:
                log_event("payment_poll_cancelled", order_id=str(self.order_id))
                return self._cancelled_outcome()

            cycle = self.poll_cycle
            outcome = self.poll_once()
            if outcome.kind != PaymentOutcomeKind.PENDING:
                return outcome

            self._sleep(self.poll_interval_s)

            if self.poll_cycle != cycle:
                log_event("payment_poll_cycle_reset", order_id=str(self.order_id))

    def _cancelled_outcome(self) -> PaymentOutcome:
        return PaymentOutcome(
            kind=PaymentOutcomeKind.PENDING,
            order_id=self.order_id,
            reference=self.order_reference or "",
            attempt=self.attempts,
            message="Stopped waiting for M-Pesa confirmation",
        )

    def finalize(self) -> Order:
        if self.state == CheckoutState.TIMED_OUT:
            raise PaymentTimeoutError(self.order_reference or "")
        if self.last_outcome is None or self.last_outcome.kind != PaymentOutcomeKind.PAID:
            raise ValidationError(
                "Payment has not been confirmed yet", code="PAYMENT_NOT_CONFIRMED"
            )

        with session_scope(self.session_factory) as db:
            order = checkout_service.finalize(db, self.order_id, self.cart)
        self.state = CheckoutState.SUCCEEDED
        return order
