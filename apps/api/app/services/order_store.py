import logging
import uuid
from collections.abc import Sequence
from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal

from sqlalchemy import func, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from app.errors import OrderNotFoundError, PersistenceError, ValidationError
from app.models.custom_order import CustomOrder
from app.models.order import Order, OrderItem, OrderKind, PaymentStatus, StandardOrderStatus
from app.models.order_event import OrderStatusEvent
from app.observability import log_event, metrics_store
from app.services.coupon_service import redeem_coupon

PayableOrder = Order | CustomOrder

_MODELS: dict[OrderKind, type[Order] | type[CustomOrder]] = {
    OrderKind.STANDARD: Order,
    OrderKind.CUSTOM: CustomOrder,
}


@dataclass(frozen=True)
class ItemSnapshot:
    product_id: str | None
    product_name: str
    unit_price: Decimal
    quantity: int

    @property
    def total_price(self) -> Decimal:
        return self.unit_price * self.quantity


def create_order_with_items(
    db: Session,
    *,
    user_id: str,
    items: Sequence[ItemSnapshot],
    shipping_address: dict,
    discount_amount: Decimal = Decimal("0"),
    coupon_id: uuid.UUID | None = None,
    customer_email: str | None = None,
    notes: str | None = None,
) -> Order:
    """Insert the order, its items and the coupon redemption as one unit of work."""
    subtotal = sum((item.total_price for item in items), Decimal("0"))
    order = Order(
        user_id=user_id,
        customer_email=customer_email,
        total_amount=subtotal - discount_amount,
        discount_amount=discount_amount,
        coupon_id=coupon_id,
        payment_method="mpesa",
        payment_status=PaymentStatus.PENDING,
        status=StandardOrderStatus.RECEIVED,
        shipping_address=shipping_address,
        notes=notes,
        items=[
            OrderItem(
                product_id=item.product_id,
                product_name=item.product_name,
                unit_price=item.unit_price,
                quantity=item.quantity,
                total_price=item.total_price,
            )
            for item in items
        ],
    )

    try:
        db.add(order)
        db.flush()
        if coupon_id is not None:
            redeem_coupon(db, coupon_id)
        db.add(
            OrderStatusEvent(
                order_id=order.id,
                order_kind=OrderKind.STANDARD,
                actor=user_id,
                from_status=None,
                to_status=StandardOrderStatus.RECEIVED.value,
                message="Order created",
                payload={"total_amount": str(order.total_amount)},
            )
        )
        db.commit()
    except ValidationError:
        db.rollback()
        raise
    except SQLAlchemyError as err:
        db.rollback()
        metrics_store.increment("order_persistence_failed_total")
        log_event("order_create_failed", actor=user_id, level=logging.ERROR, exc_info=True)
        raise PersistenceError() from err

    db.refresh(order)
    metrics_store.increment("orders_created_total")
    log_event("order_created", order_id=str(order.id), actor=user_id)
    return order


def get_order(db: Session, order_id: uuid.UUID) -> Order:
    order = db.get(Order, order_id)
    if not order:
        raise OrderNotFoundError()
    return order


def get_custom_order(db: Session, order_id: uuid.UUID) -> CustomOrder:
    order = db.get(CustomOrder, order_id)
    if not order:
        raise OrderNotFoundError("Custom order not found")
    return order


def get_payable_order(db: Session, order_id: uuid.UUID, kind: OrderKind) -> PayableOrder:
    if kind == OrderKind.CUSTOM:
        return get_custom_order(db, order_id)
    return get_order(db, order_id)


def list_orders(
    db: Session,
    *,
    status_filter: StandardOrderStatus | None = None,
    payment_status: PaymentStatus | None = None,
    user_id: str | None = None,
    page: int = 1,
    page_size: int = 20,
) -> tuple[list[Order], int]:
    query = select(Order)
    if status_filter:
        query = query.where(Order.status == status_filter)
    if payment_status:
        query = query.where(Order.payment_status == payment_status)
    if user_id:
        query = query.where(Order.user_id == user_id)

    total = db.scalar(select(func.count()).select_from(query.subquery())) or 0
    items = db.scalars(
        query.order_by(Order.created_at.desc()).offset((page - 1) * page_size).limit(page_size)
    )
    return list(items), total


def list_status_events(db: Session, order_id: uuid.UUID) -> list[OrderStatusEvent]:
    events = db.scalars(
        select(OrderStatusEvent)
        .where(OrderStatusEvent.order_id == order_id)
        .order_by(OrderStatusEvent.created_at.asc(), OrderStatusEvent.id.asc())
    )
    return list(events)


def record_push_ticket(
    db: Session, order: PayableOrder, checkout_request_id: str, phone: str
) -> PayableOrder:
    order.checkout_request_id = checkout_request_id
    order.payment_phone = phone
    try:
        db.commit()
    except SQLAlchemyError as err:
        db.rollback()
        log_event(
            "push_ticket_save_failed", order_id=str(order.id), level=logging.ERROR, exc_info=True
        )
        raise PersistenceError() from err
    db.refresh(order)
    return order


def find_by_checkout_request_id(db: Session, checkout_request_id: str) -> PayableOrder | None:
    for model in _MODELS.values():
        order = db.scalar(select(model).where(model.checkout_request_id == checkout_request_id))
        if order is not None:
            return order
    return None


def set_payment_result(
    db: Session,
    order_id: uuid.UUID,
    kind: OrderKind,
    status: PaymentStatus,
    reference: str | None = None,
) -> bool:
    """Compare-and-set the payment outcome; only a pending payment can be resolved.

    Returns True when this call resolved the payment, False when it was already resolved.
    """
    if status == PaymentStatus.PENDING:
        raise ValidationError("Payment result must be paid, failed or timeout")
    if status == PaymentStatus.PAID and not reference:
        raise ValidationError("A paid result requires the gateway receipt")

    model = _MODELS[kind]
    values: dict = {"payment_status": status}
    if status == PaymentStatus.PAID:
        values["payment_reference"] = reference
    values["updated_at"] = datetime.now(timezone.utc)

    result = db.execute(
        update(model)
        .where(model.id == order_id, model.payment_status == PaymentStatus.PENDING)
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    db.commit()

    if result.rowcount != 1:
        metrics_store.increment("payment_result_ignored_total")
        log_event(f"payment_result_ignored:{status.value}", order_id=str(order_id))
        return False

    metrics_store.increment("payment_result_applied_total")
    log_event(f"payment_result_applied:{status.value}", order_id=str(order_id))
    return True


def mark_finalized(db: Session, order_id: uuid.UUID, *, commit: bool = True) -> bool:
    """Stamp a paid order as finalized exactly once."""
    result = db.execute(
        update(Order)
        .where(
            Order.id == order_id,
            Order.payment_status == PaymentStatus.PAID,
            Order.finalized_at.is_(None),
        )
        .values(finalized_at=datetime.now(timezone.utc))
        .execution_options(synchronize_session=False)
    )
    if commit:
        db.commit()
    return result.rowcount == 1
