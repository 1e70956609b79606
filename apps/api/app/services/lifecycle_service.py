import logging
import uuid
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from app.errors import PersistenceError, ValidationError
from app.models.custom_order import CustomOrderStatus
from app.models.order import OrderKind
from app.models.order_event import OrderStatusEvent
from app.observability import log_event, metrics_store
from app.services.notification_service import (
    FanoutResult,
    NotificationEvent,
    NotificationFanout,
    OrderEvent,
    snapshot_order,
)
from app.services.order_store import PayableOrder, get_payable_order
from app.services.state_machine import ensure_valid_transition, is_terminal, parse_status


@dataclass
class TransitionResult:
    order: PayableOrder
    previous_status: str
    status: str
    changed: bool
    notification: FanoutResult | None = None


def _status_event_type(order: PayableOrder) -> NotificationEvent:
    if order.kind == OrderKind.CUSTOM and order.status == CustomOrderStatus.READY:
        return NotificationEvent.DEPOSIT_REQUIRED
    return NotificationEvent.STATUS_CHANGED


def _require_deposit(deposit_amount: Decimal | str | None) -> Decimal:
    if deposit_amount is None or deposit_amount == "":
        raise ValidationError(
            "A deposit amount is required to mark a custom order ready", code="DEPOSIT_REQUIRED"
        )
    try:
        amount = Decimal(str(deposit_amount))
    except InvalidOperation as err:
        raise ValidationError("Deposit amount must be a number", code="DEPOSIT_REQUIRED") from err
    if amount <= 0:
        raise ValidationError("Deposit amount must be greater than 0", code="DEPOSIT_REQUIRED")
    return amount.quantize(Decimal("0.01"))


def transition_status(
    db: Session,
    order_id: uuid.UUID,
    kind: OrderKind,
    new_status: str,
    actor: str,
    fanout: NotificationFanout,
    *,
    override: bool = False,
    deposit_amount: Decimal | str | None = None,
    message: str | None = None,
) -> TransitionResult:
    """Apply a staff (or payment) driven status change and fan out exactly one event.

    The status, the audit row and any deposit amount are committed together before the
    notification snapshot is taken from the refreshed order.
    """
    order = get_payable_order(db, order_id, kind)
    target = parse_status(kind, new_status)
    previous = order.status

    deposit = None
    if kind == OrderKind.CUSTOM and target == CustomOrderStatus.READY:
        deposit = _require_deposit(deposit_amount)

    if target == previous:
        return TransitionResult(
            order=order, previous_status=previous.value, status=previous.value, changed=False
        )

    ensure_valid_transition(previous, target, override=override)

    order.status = target
    if deposit is not None:
        order.deposit_amount = deposit
    db.add(
        OrderStatusEvent(
            order_id=order.id,
            order_kind=kind,
            actor=actor,
            from_status=previous.value,
            to_status=target.value,
            override=override and is_terminal(previous),
            message=message or f"Status changed from {previous.value} to {target.value}",
            payload={"deposit_amount": str(deposit)} if deposit is not None else {},
        )
    )
    try:
        db.commit()
    except SQLAlchemyError as err:
        db.rollback()
        log_event(
            f"order_transition_failed:{previous.value}->{target.value}",
            order_id=str(order_id),
            actor=actor,
            level=logging.ERROR,
            exc_info=True,
        )
        raise PersistenceError("Could not update the order, please try again") from err

    db.refresh(order)
    metrics_store.increment("order_transitions_total")
    log_event(
        f"order_transition:{previous.value}->{order.status.value}",
        order_id=str(order.id),
        actor=actor,
    )

    event = OrderEvent(type=_status_event_type(order), order=snapshot_order(order))
    notification = fanout.dispatch(db, event)
    return TransitionResult(
        order=order,
        previous_status=previous.value,
        status=order.status.value,
        changed=True,
        notification=notification,
    )


def resend_status_notification(
    db: Session, order_id: uuid.UUID, kind: OrderKind, actor: str, fanout: NotificationFanout
) -> FanoutResult:
    order = get_payable_order(db, order_id, kind)
    db.refresh(order)
    log_event("notification_manual_resend", order_id=str(order.id), actor=actor)
    event = OrderEvent(type=_status_event_type(order), order=snapshot_order(order))
    return fanout.dispatch(db, event)
