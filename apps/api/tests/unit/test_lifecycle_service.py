from decimal import Decimal

import pytest
from sqlalchemy import func, select

from app.errors import InvalidTransitionError, ValidationError
from app.models.custom_order import CustomOrderStatus, QuantityUnit
from app.models.notification import OrderNotification
from app.models.order import OrderKind, StandardOrderStatus
from app.models.order_event import OrderStatusEvent
from app.observability import metrics_store
from app.services.custom_order_service import CustomOrderRequest, create_custom_order
from app.services.lifecycle_service import resend_status_notification, transition_status
from app.services.notification_service import NotificationEvent
from app.services.order_store import ItemSnapshot, create_order_with_items, list_status_events


@pytest.fixture
def standard_order(db_session):
    return create_order_with_items(
        db_session,
        user_id="customer-1",
        items=[ItemSnapshot("p-1", "Sugar 2kg", Decimal("250"), 4)],
        shipping_address={"full_name": "Wanjiru Kamau", "phone": "0712345678"},
        customer_email="wanjiru@example.com",
    )


@pytest.fixture
def custom_order(db_session, fanout):
    request = CustomOrderRequest(
        full_name="Otieno Farms",
        phone="0722000111",
        email="otieno@example.com",
        product_name="Yellow maize",
        quantity=Decimal("2"),
        unit=QuantityUnit.TONNES,
        delivery_address="Plot 7, Kitale Road",
        city="Eldoret",
    )
    return create_custom_order(db_session, "customer-9", request, fanout)


def _notifications(db_session, order_id) -> list[OrderNotification]:
    return list(
        db_session.scalars(select(OrderNotification).where(OrderNotification.order_id == order_id))
    )


def test_transition_commits_status_audit_row_and_one_notification(
    db_session, fanout, email_sender, standard_order
):
    result = transition_status(
        db_session,
        standard_order.id,
        OrderKind.STANDARD,
        "dispatched",
        "staff-1",
        fanout,
    )

    assert result.changed is True
    assert result.previous_status == "received"
    assert result.order.status == StandardOrderStatus.DISPATCHED
    assert result.notification.event == NotificationEvent.STATUS_CHANGED

    events = list_status_events(db_session, standard_order.id)
    assert [(e.from_status, e.to_status) for e in events] == [
        (None, "received"),
        ("received", "dispatched"),
    ]
    assert events[-1].actor == "staff-1"

    rows = _notifications(db_session, standard_order.id)
    assert len(rows) == 1
    assert rows[0].message.endswith("status updated to Dispatched")
    assert [mail["to"] for mail in email_sender.sent] == ["wanjiru@example.com"]
    assert metrics_store.count("order_transitions_total") == 1


def test_same_status_is_a_noop_without_notification(db_session, fanout, standard_order):
    result = transition_status(
        db_session, standard_order.id, OrderKind.STANDARD, "received", "staff-1", fanout
    )

    assert result.changed is False
    assert result.notification is None
    assert _notifications(db_session, standard_order.id) == []


def test_terminal_status_requires_override(db_session, fanout, standard_order):
    transition_status(
        db_session, standard_order.id, OrderKind.STANDARD, "delivered", "staff-1", fanout
    )

    with pytest.raises(InvalidTransitionError):
        transition_status(
            db_session, standard_order.id, OrderKind.STANDARD, "processing", "staff-1", fanout
        )
    db_session.refresh(standard_order)
    assert standard_order.status == StandardOrderStatus.DELIVERED

    result = transition_status(
        db_session,
        standard_order.id,
        OrderKind.STANDARD,
        "refunded",
        "admin-1",
        fanout,
        override=True,
    )
    assert result.status == "refunded"
    override_event = db_session.scalars(
        select(OrderStatusEvent).where(OrderStatusEvent.to_status == "refunded")
    ).one()
    assert override_event.override is True


def test_custom_ready_without_deposit_is_rejected_and_nothing_changes(
    db_session, fanout, custom_order
):
    rows_before = len(_notifications(db_session, custom_order.id))

    with pytest.raises(ValidationError) as exc:
        transition_status(
            db_session, custom_order.id, OrderKind.CUSTOM, "ready", "staff-1", fanout
        )

    assert exc.value.code == "DEPOSIT_REQUIRED"
    db_session.refresh(custom_order)
    assert custom_order.status == CustomOrderStatus.PENDING
    assert custom_order.deposit_amount is None
    assert len(_notifications(db_session, custom_order.id)) == rows_before


def test_custom_ready_with_deposit_emits_deposit_required(
    db_session, fanout, email_sender, custom_order
):
    result = transition_status(
        db_session,
        custom_order.id,
        OrderKind.CUSTOM,
        "ready",
        "staff-1",
        fanout,
        deposit_amount="15000",
    )

    assert result.order.status == CustomOrderStatus.READY
    assert result.order.deposit_amount == Decimal("15000.00")
    assert result.notification.event == NotificationEvent.DEPOSIT_REQUIRED

    rows = _notifications(db_session, custom_order.id)
    assert len(rows) == 1
    assert "Deposit required: KES 15,000" in rows[0].message
    assert email_sender.sent[-1]["subject"].startswith("Your Custom Order is Ready")


def test_each_transition_dispatches_exactly_one_event(db_session, fanout, standard_order):
    for status in ("processing", "confirmed", "dispatched", "out_for_delivery", "delivered"):
        transition_status(
            db_session, standard_order.id, OrderKind.STANDARD, status, "staff-1", fanout
        )

    count = db_session.scalar(
        select(func.count())
        .select_from(OrderNotification)
        .where(OrderNotification.order_id == standard_order.id)
    )
    assert count == 5
    assert metrics_store.count("notification_events_total") == 5


def test_resend_rebuilds_notification_from_persisted_order(db_session, fanout, standard_order):
    transition_status(
        db_session, standard_order.id, OrderKind.STANDARD, "dispatched", "staff-1", fanout
    )

    result = resend_status_notification(
        db_session, standard_order.id, OrderKind.STANDARD, "staff-2", fanout
    )

    assert result.ok
    messages = [row.message for row in _notifications(db_session, standard_order.id)]
    assert messages[-1] == messages[0]
