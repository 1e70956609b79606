import logging
from dataclasses import dataclass
from decimal import Decimal

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from app.errors import PersistenceError, ValidationError
from app.models.custom_order import CustomOrder, CustomOrderStatus, QuantityUnit
from app.models.order import OrderKind
from app.models.order_event import OrderStatusEvent
from app.observability import log_event, metrics_store
from app.services.notification_service import (
    NotificationEvent,
    NotificationFanout,
    OrderEvent,
    snapshot_order,
)


@dataclass(frozen=True)
class CustomOrderRequest:
    full_name: str
    phone: str
    product_name: str
    quantity: Decimal
    unit: QuantityUnit
    delivery_address: str
    city: str
    email: str | None = None
    product_id: str | None = None
    notes: str | None = None


def _clean(value: str | None) -> str | None:
    if value is None:
        return None
    value = value.strip()
    return value or None


def create_custom_order(
    db: Session, user_id: str, request: CustomOrderRequest, fanout: NotificationFanout
) -> CustomOrder:
    required = {
        "full_name": request.full_name,
        "phone": request.phone,
        "product_name": request.product_name,
        "delivery_address": request.delivery_address,
        "city": request.city,
    }
    missing = [name for name, value in required.items() if not _clean(value)]
    if missing:
        raise ValidationError(
            f"Please fill all required fields: {', '.join(missing)}", code="MISSING_FIELDS"
        )
    if request.quantity <= 0:
        raise ValidationError("Quantity must be greater than 0")

    order = CustomOrder(
        user_id=user_id,
        full_name=_clean(request.full_name),
        phone=_clean(request.phone),
        email=_clean(request.email),
        product_id=_clean(request.product_id),
        product_name=_clean(request.product_name),
        quantity=request.quantity,
        unit=request.unit,
        delivery_address=_clean(request.delivery_address),
        city=_clean(request.city),
        notes=_clean(request.notes),
        status=CustomOrderStatus.PENDING,
    )
    try:
        db.add(order)
        db.flush()
        db.add(
            OrderStatusEvent(
                order_id=order.id,
                order_kind=OrderKind.CUSTOM,
                actor=user_id,
                from_status=None,
                to_status=CustomOrderStatus.PENDING.value,
                message="Custom order requested",
                payload={},
            )
        )
        db.commit()
    except SQLAlchemyError as err:
        db.rollback()
        log_event("custom_order_create_failed", actor=user_id, level=logging.ERROR, exc_info=True)
        raise PersistenceError() from err

    db.refresh(order)
    metrics_store.increment("custom_orders_created_total")
    log_event("custom_order_created", order_id=str(order.id), actor=user_id)

    event = OrderEvent(type=NotificationEvent.CUSTOM_ORDER_PLACED, order=snapshot_order(order))
    fanout.dispatch(db, event)
    return order


def list_custom_orders(
    db: Session,
    *,
    user_id: str | None = None,
    status_filter: CustomOrderStatus | None = None,
) -> list[CustomOrder]:
    query = select(CustomOrder)
    if user_id:
        query = query.where(CustomOrder.user_id == user_id)
    if status_filter:
        query = query.where(CustomOrder.status == status_filter)
    return list(db.scalars(query.order_by(CustomOrder.created_at.desc())))
