import logging
import math
import uuid
from dataclasses import dataclass
from decimal import Decimal

from sqlalchemy.orm import Session

from app.errors import InvalidTransitionError, ValidationError
from app.models.custom_order import CustomOrderStatus
from app.models.order import OrderKind, PaymentStatus
from app.observability import log_event, metrics_store
from app.services.lifecycle_service import transition_status
from app.services.notification_service import (
    NotificationEvent,
    NotificationFanout,
    OrderEvent,
    snapshot_order,
)
from app.services.order_store import (
    find_by_checkout_request_id,
    get_payable_order,
    set_payment_result,
)

PAYMENT_ACTOR = "mpesa"
RESULT_CODE_SUCCESS = 0
RESULT_CODE_TIMEOUT = 1037


@dataclass(frozen=True)
class StkCallback:
    checkout_request_id: str
    result_code: int
    result_desc: str
    receipt: str | None = None
    amount: Decimal | None = None
    phone: str | None = None


def parse_stk_callback(payload: dict) -> StkCallback:
    """Extract the fields we act on from a Daraja ``Body.stkCallback`` payload."""
    try:
        callback = payload["Body"]["stkCallback"]
        checkout_request_id = str(callback["CheckoutRequestID"])
        result_code = int(callback["ResultCode"])
    except (KeyError, TypeError, ValueError) as err:
        raise ValidationError("Malformed STK callback payload", code="INVALID_CALLBACK") from err

    items = (callback.get("CallbackMetadata") or {}).get("Item") or []
    metadata = {item.get("Name"): item.get("Value") for item in items if isinstance(item, dict)}
    amount = metadata.get("Amount")
    phone = metadata.get("PhoneNumber")
    return StkCallback(
        checkout_request_id=checkout_request_id,
        result_code=result_code,
        result_desc=str(callback.get("ResultDesc", "")),
        receipt=metadata.get("MpesaReceiptNumber"),
        amount=Decimal(str(amount)) if amount is not None else None,
        phone=str(phone) if phone is not None else None,
    )


def payment_status_for_result_code(result_code: int) -> PaymentStatus:
    if result_code == RESULT_CODE_SUCCESS:
        return PaymentStatus.PAID
    if result_code == RESULT_CODE_TIMEOUT:
        return PaymentStatus.TIMEOUT
    return PaymentStatus.FAILED


def apply_payment_result(
    db: Session,
    order_id: uuid.UUID,
    kind: OrderKind,
    status: PaymentStatus,
    reference: str | None,
    fanout: NotificationFanout,
) -> bool:
    """Write the out-of-band payment outcome once and run its side effects.

    Only the call that wins the compare-and-set emits notifications, so duplicate or late
    confirmations are acknowledged without repeating them. The one exception is a paid
    deposit still stuck in ready, which a redelivered confirmation finishes.
    """
    if not set_payment_result(db, order_id, kind, status, reference):
        if status == PaymentStatus.PAID and kind == OrderKind.CUSTOM:
            return _reconcile_paid_deposit(db, order_id, fanout)
        return False

    order = get_payable_order(db, order_id, kind)
    db.refresh(order)

    if status == PaymentStatus.PAID:
        if kind == OrderKind.CUSTOM:
            _advance_paid_deposit(db, order, fanout)
            db.refresh(order)
        fanout.dispatch(
            db, OrderEvent(type=NotificationEvent.PAYMENT_RECEIVED, order=snapshot_order(order))
        )
    else:
        fanout.dispatch(
            db, OrderEvent(type=NotificationEvent.PAYMENT_FAILED, order=snapshot_order(order))
        )
    return True


def _reconcile_paid_deposit(db: Session, order_id: uuid.UUID, fanout: NotificationFanout) -> bool:
    # A paid deposit whose transition failed earlier is still ready; a redelivery advances it.
    order = get_payable_order(db, order_id, OrderKind.CUSTOM)
    db.refresh(order)
    if order.payment_status != PaymentStatus.PAID or order.status != CustomOrderStatus.READY:
        return False
    log_event("deposit_paid_reconciled", order_id=str(order.id), actor=PAYMENT_ACTOR)
    metrics_store.increment("deposit_reconciled_total")
    _advance_paid_deposit(db, order, fanout)
    db.refresh(order)
    fanout.dispatch(
        db, OrderEvent(type=NotificationEvent.PAYMENT_RECEIVED, order=snapshot_order(order))
    )
    return True


def _advance_paid_deposit(db: Session, order, fanout: NotificationFanout) -> None:
    if order.status != CustomOrderStatus.READY:
        log_event(
            f"deposit_paid_outside_ready:{order.status.value}",
            order_id=str(order.id),
            actor=PAYMENT_ACTOR,
            level=logging.WARNING,
        )
        return
    try:
        transition_status(
            db,
            order.id,
            OrderKind.CUSTOM,
            CustomOrderStatus.DEPOSIT_PAID.value,
            PAYMENT_ACTOR,
            fanout,
            message="Deposit confirmed by M-Pesa",
        )
    except InvalidTransitionError:
        log_event(
            "deposit_paid_transition_rejected",
            order_id=str(order.id),
            actor=PAYMENT_ACTOR,
            level=logging.WARNING,
        )


def _ensure_amount_covers_due(order, callback: StkCallback) -> None:
    # The prompt asks for the amount due rounded up to whole shillings.
    if callback.amount is None or order.amount_due is None:
        return
    expected = math.ceil(order.amount_due)
    if callback.amount >= expected:
        return
    metrics_store.increment("payment_amount_mismatch_total")
    log_event(
        f"stk_callback_amount_mismatch:{callback.amount}:{expected}:{callback.phone}",
        order_id=str(order.id),
        actor=PAYMENT_ACTOR,
        level=logging.WARNING,
    )
    raise ValidationError(
        f"Paid amount KES {callback.amount} is below the KES {expected} due",
        code="AMOUNT_MISMATCH",
    )


def handle_stk_callback(db: Session, payload: dict, fanout: NotificationFanout) -> bool:
    callback = parse_stk_callback(payload)
    order = find_by_checkout_request_id(db, callback.checkout_request_id)
    if order is None:
        log_event(
            f"stk_callback_unmatched:{callback.checkout_request_id}",
            actor=PAYMENT_ACTOR,
            level=logging.WARNING,
        )
        return False

    status = payment_status_for_result_code(callback.result_code)
    if status == PaymentStatus.PAID:
        if not callback.receipt:
            raise ValidationError(
                "Successful callback is missing MpesaReceiptNumber", code="INVALID_CALLBACK"
            )
        _ensure_amount_covers_due(order, callback)

    log_event(
        f"stk_callback_received:{callback.result_code}:{callback.result_desc}",
        order_id=str(order.id),
        actor=PAYMENT_ACTOR,
    )
    return apply_payment_result(
        db,
        order.id,
        order.kind,
        status,
        callback.receipt if status == PaymentStatus.PAID else None,
        fanout,
    )
