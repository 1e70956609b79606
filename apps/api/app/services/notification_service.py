import enum
import logging
import uuid
from dataclasses import dataclass, field
from decimal import Decimal

from jinja2 import TemplateError
from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from app.config import settings
from app.errors import NotFoundError, NotificationDeliveryError
from app.integrations import EmailSenderProtocol, IntegrationError, get_email_sender
from app.models.custom_order import CustomOrder
from app.models.notification import AdminNotification, OrderNotification
from app.models.order import Order, OrderKind
from app.observability import log_event, metrics_store
from app.services.email_templates import format_money, render_template
from app.services.state_machine import status_label


class NotificationEvent(str, enum.Enum):
    ORDER_PLACED = "order_placed"
    PAYMENT_RECEIVED = "payment_received"
    PAYMENT_FAILED = "payment_failed"
    STATUS_CHANGED = "order_status_update"
    CUSTOM_ORDER_PLACED = "custom_order_placed"
    DEPOSIT_REQUIRED = "custom_order_ready"


class Channel(str, enum.Enum):
    EMAIL_CUSTOMER = "email_customer"
    EMAIL_ADMIN = "email_admin"
    INAPP_CUSTOMER = "inapp_customer"
    INAPP_ADMIN = "inapp_admin"


NOTIFICATION_RULES: dict[NotificationEvent, tuple[Channel, ...]] = {
    NotificationEvent.ORDER_PLACED: (
        Channel.INAPP_CUSTOMER,
        Channel.INAPP_ADMIN,
        Channel.EMAIL_CUSTOMER,
        Channel.EMAIL_ADMIN,
    ),
    NotificationEvent.PAYMENT_RECEIVED: (
        Channel.INAPP_CUSTOMER,
        Channel.INAPP_ADMIN,
        Channel.EMAIL_CUSTOMER,
    ),
    NotificationEvent.PAYMENT_FAILED: (Channel.INAPP_CUSTOMER,),
    NotificationEvent.STATUS_CHANGED: (Channel.INAPP_CUSTOMER, Channel.EMAIL_CUSTOMER),
    NotificationEvent.CUSTOM_ORDER_PLACED: (
        Channel.INAPP_ADMIN,
        Channel.EMAIL_CUSTOMER,
        Channel.EMAIL_ADMIN,
    ),
    NotificationEvent.DEPOSIT_REQUIRED: (Channel.INAPP_CUSTOMER, Channel.EMAIL_CUSTOMER),
}

# (event, channel) -> (template, subject format)
EMAIL_TEMPLATES: dict[tuple[NotificationEvent, Channel], tuple[str, str]] = {
    (NotificationEvent.ORDER_PLACED, Channel.EMAIL_CUSTOMER): (
        "emails/order_placed_customer.html",
        "Order Received - #{reference} | {store_name}",
    ),
    (NotificationEvent.ORDER_PLACED, Channel.EMAIL_ADMIN): (
        "emails/order_placed_admin.html",
        "New Order #{reference} - KES {total}",
    ),
    (NotificationEvent.PAYMENT_RECEIVED, Channel.EMAIL_CUSTOMER): (
        "emails/payment_received.html",
        "Payment Confirmed - #{reference} | {store_name}",
    ),
    (NotificationEvent.STATUS_CHANGED, Channel.EMAIL_CUSTOMER): (
        "emails/order_status_update.html",
        "Order Update - #{reference} | {store_name}",
    ),
    (NotificationEvent.CUSTOM_ORDER_PLACED, Channel.EMAIL_CUSTOMER): (
        "emails/custom_order_placed_customer.html",
        "Custom Order Received - #{reference} | {store_name}",
    ),
    (NotificationEvent.CUSTOM_ORDER_PLACED, Channel.EMAIL_ADMIN): (
        "emails/custom_order_placed_admin.html",
        "New Custom Order #{reference} - {product_name}",
    ),
    (NotificationEvent.DEPOSIT_REQUIRED, Channel.EMAIL_CUSTOMER): (
        "emails/custom_order_ready.html",
        "Your Custom Order is Ready - #{reference} | {store_name}",
    ),
}


@dataclass(frozen=True)
class OrderSnapshot:
    """Read-only view of an order taken right after it was persisted."""

    order_id: uuid.UUID
    reference: str
    kind: OrderKind
    user_id: str
    status: str
    status_label: str
    payment_status: str
    customer_name: str | None = None
    customer_email: str | None = None
    customer_phone: str | None = None
    total_amount: Decimal | None = None
    amount_due: Decimal | None = None
    deposit_amount: Decimal | None = None
    payment_reference: str | None = None
    product_name: str | None = None
    quantity: str | None = None
    delivery: str | None = None
    notes: str | None = None


@dataclass(frozen=True)
class OrderEvent:
    type: NotificationEvent
    order: OrderSnapshot


@dataclass
class FanoutResult:
    event: NotificationEvent
    delivered: list[Channel] = field(default_factory=list)
    skipped: list[Channel] = field(default_factory=list)
    failed: dict[Channel, str] = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return not self.failed


def _plain_number(value: Decimal) -> str:
    if value == value.to_integral_value():
        return str(value.quantize(Decimal(1)))
    return str(value.normalize())


def snapshot_order(order: Order | CustomOrder) -> OrderSnapshot:
    if isinstance(order, CustomOrder):
        return OrderSnapshot(
            order_id=order.id,
            reference=order.reference,
            kind=OrderKind.CUSTOM,
            user_id=order.user_id,
            status=order.status.value,
            status_label=status_label(order.status),
            payment_status=order.payment_status.value,
            customer_name=order.full_name,
            customer_email=order.email,
            customer_phone=order.phone,
            amount_due=order.deposit_amount,
            deposit_amount=order.deposit_amount,
            payment_reference=order.payment_reference,
            product_name=order.product_name,
            quantity=f"{_plain_number(order.quantity)} {order.unit.value}",
            delivery=f"{order.delivery_address}, {order.city}",
            notes=order.notes,
        )

    shipping = order.shipping_address or {}
    delivery = ", ".join(
        part for part in (shipping.get("address"), shipping.get("city")) if part
    )
    return OrderSnapshot(
        order_id=order.id,
        reference=order.reference,
        kind=OrderKind.STANDARD,
        user_id=order.user_id,
        status=order.status.value,
        status_label=status_label(order.status),
        payment_status=order.payment_status.value,
        customer_name=shipping.get("full_name"),
        customer_email=order.customer_email or shipping.get("email"),
        customer_phone=shipping.get("phone"),
        total_amount=order.total_amount,
        amount_due=order.total_amount,
        payment_reference=order.payment_reference,
        delivery=delivery or None,
        notes=order.notes,
    )


def _customer_message(event: OrderEvent) -> str:
    order = event.order
    if event.type == NotificationEvent.ORDER_PLACED:
        return (
            f"Order #{order.reference} placed. Total KES {format_money(order.total_amount)}. "
            "Complete your M-Pesa payment to confirm it."
        )
    if event.type == NotificationEvent.PAYMENT_RECEIVED:
        return (
            f"Payment of KES {format_money(order.amount_due)} received. "
            f"Receipt: {order.payment_reference}"
        )
    if event.type == NotificationEvent.PAYMENT_FAILED:
        return (
            f"Payment for order #{order.reference} was not completed ({order.payment_status}). "
            "Check your orders or contact support."
        )
    if event.type == NotificationEvent.DEPOSIT_REQUIRED:
        return (
            f"Your custom order #{order.reference} is ready. "
            f"Deposit required: KES {format_money(order.deposit_amount)}"
        )
    return f"Order #{order.reference} status updated to {order.status_label}"


def _admin_title(event: OrderEvent) -> str:
    order = event.order
    if event.type == NotificationEvent.CUSTOM_ORDER_PLACED:
        return f"New Custom Order #{order.reference}"
    if event.type == NotificationEvent.PAYMENT_RECEIVED:
        return f"Payment received for #{order.reference}"
    if event.type == NotificationEvent.ORDER_PLACED:
        return f"New Order #{order.reference}"
    return f"Order #{order.reference} updated"


def _admin_message(event: OrderEvent) -> str:
    order = event.order
    if event.type == NotificationEvent.CUSTOM_ORDER_PLACED:
        return f"{order.product_name} x {order.quantity} for {order.customer_name}"
    if event.type == NotificationEvent.PAYMENT_RECEIVED:
        return (
            f"KES {format_money(order.amount_due)} paid via M-Pesa. "
            f"Receipt: {order.payment_reference}"
        )
    if event.type == NotificationEvent.ORDER_PLACED:
        return f"KES {format_money(order.total_amount)} from {order.customer_name}"
    return f"Status: {order.status_label}"


class NotificationFanout:
    """Deliver one order event to every channel its rule names.

    Channels fail independently: a failed email never prevents the in-app rows, and no
    failure propagates to the caller whose state change has already been committed.
    """

    def __init__(self, email_sender: EmailSenderProtocol, admin_email: str | None = None) -> None:
        self.email_sender = email_sender
        self.admin_email = admin_email

    def dispatch(self, db: Session, event: OrderEvent) -> FanoutResult:
        result = FanoutResult(event=event.type)
        metrics_store.increment("notification_events_total")
        order_id = str(event.order.order_id)

        for channel in NOTIFICATION_RULES.get(event.type, ()):
            try:
                delivered = self._deliver(db, channel, event)
            except NotificationDeliveryError as err:
                result.failed[channel] = err.message
                metrics_store.increment("notification_delivery_failed_total")
                log_event(
                    f"notification_delivery_failed:{event.type.value}:{err.message}",
                    order_id=order_id,
                    channel=channel.value,
                    level=logging.WARNING,
                )
                continue

            if delivered:
                result.delivered.append(channel)
                metrics_store.increment("notification_delivered_total")
            else:
                result.skipped.append(channel)

        log_event(f"notification_dispatched:{event.type.value}", order_id=order_id)
        return result

    def _deliver(self, db: Session, channel: Channel, event: OrderEvent) -> bool:
        order = event.order
        if channel == Channel.INAPP_CUSTOMER:
            self._write_row(
                db,
                channel,
                OrderNotification(
                    user_id=order.user_id,
                    order_id=order.order_id,
                    order_kind=order.kind,
                    type=event.type.value,
                    message=_customer_message(event),
                ),
            )
            return True

        if channel == Channel.INAPP_ADMIN:
            self._write_row(
                db,
                channel,
                AdminNotification(
                    type=event.type.value,
                    title=_admin_title(event),
                    message=_admin_message(event),
                    order_id=order.order_id,
                    metadata_json={
                        "order_kind": order.kind.value,
                        "reference": order.reference,
                        "status": order.status,
                    },
                ),
            )
            return True

        recipient = order.customer_email if channel == Channel.EMAIL_CUSTOMER else self.admin_email
        if not recipient:
            return False
        self._send_email(channel, event, recipient)
        return True

    def _write_row(
        self, db: Session, channel: Channel, row: OrderNotification | AdminNotification
    ) -> None:
        try:
            db.add(row)
            db.commit()
        except SQLAlchemyError as err:
            db.rollback()
            raise NotificationDeliveryError(channel.value, "Could not store notification") from err

    def _send_email(self, channel: Channel, event: OrderEvent, recipient: str) -> None:
        template = EMAIL_TEMPLATES.get((event.type, channel))
        if template is None:
            raise NotificationDeliveryError(channel.value, "No email template for event")

        template_path, subject_format = template
        order = event.order
        try:
            subject = subject_format.format(
                reference=order.reference,
                store_name=settings.store_name,
                total=format_money(order.total_amount),
                product_name=order.product_name,
            )
            html = render_template(template_path, order=order)
            self.email_sender.send(recipient, subject, html)
        except (IntegrationError, TemplateError) as err:
            raise NotificationDeliveryError(channel.value, str(err)) from err
        except Exception as err:  # one broken sender never blocks the other channels
            log_event(
                f"notification_sender_crashed:{type(err).__name__}",
                order_id=str(order.order_id),
                channel=channel.value,
                level=logging.ERROR,
                exc_info=True,
            )
            raise NotificationDeliveryError(
                channel.value, f"Unexpected {type(err).__name__} from email sender"
            ) from err


def get_notification_fanout() -> NotificationFanout:
    return NotificationFanout(get_email_sender(), settings.admin_email)


def list_customer_notifications(
    db: Session, user_id: str, unread_only: bool = False
) -> list[OrderNotification]:
    query = select(OrderNotification).where(OrderNotification.user_id == user_id)
    if unread_only:
        query = query.where(OrderNotification.is_read.is_(False))
    return list(db.scalars(query.order_by(OrderNotification.created_at.desc())))


def mark_customer_notification_read(
    db: Session, notification_id: uuid.UUID, user_id: str
) -> OrderNotification:
    notification = db.get(OrderNotification, notification_id)
    if notification is None or notification.user_id != user_id:
        raise NotFoundError("Notification not found")
    notification.is_read = True
    db.commit()
    db.refresh(notification)
    return notification


def list_admin_notifications(db: Session, unread_only: bool = False) -> list[AdminNotification]:
    query = select(AdminNotification)
    if unread_only:
        query = query.where(AdminNotification.is_read.is_(False))
    return list(db.scalars(query.order_by(AdminNotification.created_at.desc())))


def mark_admin_notification_read(db: Session, notification_id: uuid.UUID) -> AdminNotification:
    notification = db.get(AdminNotification, notification_id)
    if notification is None:
        raise NotFoundError("Notification not found")
    notification.is_read = True
    db.commit()
    db.refresh(notification)
    return notification
