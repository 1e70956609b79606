import enum
import logging
import uuid
from dataclasses import dataclass
from decimal import Decimal

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from app.config import settings
from app.errors import GatewayError, PaymentTimeoutError, PersistenceError, ValidationError
from app.integrations import IntegrationError, PaymentGatewayProtocol
from app.integrations.mpesa_client import normalize_phone
from app.models.custom_order import CustomOrderStatus
from app.models.order import Order, OrderKind, PaymentStatus
from app.observability import log_event, metrics_store, observe_timing
from app.services.cart_service import CartService
from app.services.coupon_service import quote_coupon
from app.services.notification_service import (
    NotificationEvent,
    NotificationFanout,
    OrderEvent,
    snapshot_order,
)
from app.services.order_store import (
    create_order_with_items,
    get_order,
    get_payable_order,
    mark_finalized,
    record_push_ticket,
)

REQUIRED_SHIPPING_FIELDS = ("full_name", "phone", "address", "city")


class PaymentOutcomeKind(str, enum.Enum):
    PENDING = "pending"
    PAID = "paid"
    TIMED_OUT = "timed_out"
    FAILED = "failed"


@dataclass(frozen=True)
class ShippingInfo:
    full_name: str
    phone: str
    address: str
    city: str
    email: str | None = None

    def as_payload(self) -> dict:
        payload = {
            "full_name": self.full_name.strip(),
            "phone": self.phone.strip(),
            "address": self.address.strip(),
            "city": self.city.strip(),
        }
        if self.email:
            payload["email"] = self.email.strip()
        return payload


@dataclass(frozen=True)
class PushTicket:
    order_id: uuid.UUID
    reference: str
    checkout_request_id: str
    phone: str
    amount: Decimal
    message: str


@dataclass(frozen=True)
class PaymentOutcome:
    kind: PaymentOutcomeKind
    order_id: uuid.UUID
    reference: str
    receipt: str | None = None
    attempt: int = 0
    message: str = ""


def validate_shipping(shipping: ShippingInfo) -> None:
    missing = [name for name in REQUIRED_SHIPPING_FIELDS if not getattr(shipping, name).strip()]
    if missing:
        raise ValidationError(
            f"Please fill all required fields: {', '.join(missing)}", code="MISSING_FIELDS"
        )


def create_order(
    db: Session,
    cart: CartService,
    shipping: ShippingInfo,
    fanout: NotificationFanout,
    *,
    coupon_code: str | None = None,
    notes: str | None = None,
    customer_email: str | None = None,
) -> Order:
    """Turn the current cart into a pending order; the cart itself is left untouched."""
    items = cart.snapshot()
    if not items:
        raise ValidationError("Your cart is empty", code="EMPTY_CART")
    validate_shipping(shipping)

    subtotal = sum((item.total_price for item in items), Decimal("0"))
    discount = Decimal("0")
    coupon_id = None
    if coupon_code and coupon_code.strip():
        quote = quote_coupon(db, coupon_code, subtotal)
        discount = quote.discount
        coupon_id = quote.coupon.id

    with observe_timing("order_create_seconds"):
        order = create_order_with_items(
            db,
            user_id=cart.user_id,
            items=items,
            shipping_address=shipping.as_payload(),
            discount_amount=discount,
            coupon_id=coupon_id,
            customer_email=customer_email or shipping.email,
            notes=notes.strip() if notes and notes.strip() else None,
        )

    event = OrderEvent(type=NotificationEvent.ORDER_PLACED, order=snapshot_order(order))
    fanout.dispatch(db, event)
    return order


def request_push(
    db: Session,
    order_id: uuid.UUID,
    kind: OrderKind,
    phone: str,
    gateway: PaymentGatewayProtocol,
) -> PushTicket:
    """Ask the gateway to prompt ``phone`` for the amount due on the persisted order.

    Every call issues a new prompt; the order is reused, never duplicated.
    """
    order = get_payable_order(db, order_id, kind)
    if order.payment_status != PaymentStatus.PENDING:
        raise ValidationError(
            f"Payment for order #{order.reference} is already {order.payment_status.value}",
            code="PAYMENT_RESOLVED",
        )
    if kind == OrderKind.CUSTOM and order.status != CustomOrderStatus.READY:
        raise ValidationError(
            f"Custom order #{order.reference} is not awaiting a deposit", code="DEPOSIT_NOT_DUE"
        )

    amount = order.amount_due
    if amount is None or amount <= 0:
        raise ValidationError("Nothing to pay on this order", code="NOTHING_DUE")

    try:
        normalized_phone = normalize_phone(phone)
    except ValueError as err:
        raise ValidationError(
            "Enter a valid M-Pesa number, e.g. 0712345678", code="INVALID_PHONE"
        ) from err

    metrics_store.increment("payment_push_total")
    try:
        with observe_timing("payment_push_seconds"):
            result = gateway.request_push(normalized_phone, amount, order.reference)
    except IntegrationError as err:
        metrics_store.increment("payment_push_failed_total")
        log_event(
            f"payment_push_failed:{err.code}",
            order_id=str(order.id),
            channel="mpesa",
            level=logging.WARNING,
        )
        raise GatewayError(
            "Could not reach M-Pesa. Please try again.", retryable=err.retryable, code=err.code
        ) from err

    if not result.success or not result.checkout_request_id:
        metrics_store.increment("payment_push_failed_total")
        log_event(
            f"payment_push_rejected:{result.response_code}",
            order_id=str(order.id),
            channel="mpesa",
            level=logging.WARNING,
        )
        raise GatewayError(
            result.customer_message or "M-Pesa did not accept the payment request",
            retryable=True,
            code="PUSH_REJECTED",
        )

    record_push_ticket(db, order, result.checkout_request_id, normalized_phone)
    log_event("payment_push_sent", order_id=str(order.id), channel="mpesa")
    return PushTicket(
        order_id=order.id,
        reference=order.reference,
        checkout_request_id=result.checkout_request_id,
        phone=normalized_phone,
        amount=amount,
        message=result.customer_message,
    )


def read_payment_outcome(
    db: Session,
    order_id: uuid.UUID,
    kind: OrderKind,
    attempt: int,
    max_attempts: int | None = None,
) -> PaymentOutcome:
    """One poll tick: read the stored payment status, never write it."""
    max_attempts = max_attempts or settings.payment_poll_max_attempts
    metrics_store.increment("payment_poll_ticks_total")

    order = get_payable_order(db, order_id, kind)
    db.refresh(order)

    if order.payment_status == PaymentStatus.PAID:
        return PaymentOutcome(
            kind=PaymentOutcomeKind.PAID,
            order_id=order.id,
            reference=order.reference,
            receipt=order.payment_reference,
            attempt=attempt,
            message="Payment confirmed",
        )
    if order.payment_status in (PaymentStatus.FAILED, PaymentStatus.TIMEOUT):
        return PaymentOutcome(
            kind=PaymentOutcomeKind.FAILED,
            order_id=order.id,
            reference=order.reference,
            attempt=attempt,
            message=f"Payment was not completed ({order.payment_status.value})",
        )
    if attempt >= max_attempts:
        metrics_store.increment("payment_poll_timed_out_total")
        log_event("payment_poll_timed_out", order_id=str(order.id))
        return PaymentOutcome(
            kind=PaymentOutcomeKind.TIMED_OUT,
            order_id=order.id,
            reference=order.reference,
            attempt=attempt,
            message=PaymentTimeoutError(order.reference).message,
        )
    return PaymentOutcome(
        kind=PaymentOutcomeKind.PENDING,
        order_id=order.id,
        reference=order.reference,
        attempt=attempt,
        message="Waiting for M-Pesa confirmation",
    )


def finalize(db: Session, order_id: uuid.UUID, cart: CartService) -> Order:
    """Clear the cart for a paid order; repeated calls leave the cart alone."""
    order = get_order(db, order_id)
    db.refresh(order)
    if order.payment_status != PaymentStatus.PAID:
        raise ValidationError(
            f"Order #{order.reference} has not been paid yet", code="PAYMENT_NOT_CONFIRMED"
        )

    # the finalized stamp and the cart delete commit together
    if mark_finalized(db, order.id, commit=False):
        lines = CartService(db, cart.user_id)
        try:
            lines.clear(reason="order_paid", order_id=str(order.id), commit=False)
            db.commit()
        except SQLAlchemyError as err:
            db.rollback()
            log_event(
                "order_finalize_failed", order_id=str(order.id), level=logging.ERROR, exc_info=True
            )
            raise PersistenceError() from err
        lines.record_cleared(reason="order_paid", order_id=str(order.id))
    else:
        db.rollback()
    db.refresh(order)
    return order
