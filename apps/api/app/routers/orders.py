import uuid

from fastapi import APIRouter, Depends, HTTPException, Query, status
from sqlalchemy.orm import Session

from app.auth.dependencies import AuthContext, require_staff
from app.db.session import get_db
from app.errors import OrderflowError
from app.models.order import OrderKind, PaymentStatus
from app.routers.errors import translate_domain_error
from app.schemas.common import PaginationMeta
from app.schemas.orders import (
    NotificationSummary,
    OrderEventResponse,
    OrderEventsResponse,
    OrderResponse,
    OrdersListResponse,
    StatusTransitionRequest,
    StatusTransitionResponse,
)
from app.services.lifecycle_service import (
    TransitionResult,
    resend_status_notification,
    transition_status,
)
from app.services.notification_service import NotificationFanout, get_notification_fanout
from app.services.order_store import get_order, list_orders, list_status_events
from app.services.state_machine import parse_status

router = APIRouter(prefix="/api/v1/orders", tags=["orders"])


def transition_response(result: TransitionResult) -> StatusTransitionResponse:
    return StatusTransitionResponse(
        order_id=result.order.id,
        reference=result.order.reference,
        previous_status=result.previous_status,
        status=result.status,
        changed=result.changed,
        notification=(
            NotificationSummary.from_result(result.notification) if result.notification else None
        ),
    )


def apply_status_request(
    db: Session,
    order_id: uuid.UUID,
    kind: OrderKind,
    payload: StatusTransitionRequest,
    auth: AuthContext,
    fanout: NotificationFanout,
) -> StatusTransitionResponse:
    if payload.override and not auth.is_admin:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Only admins can override a terminal status",
        )
    try:
        result = transition_status(
            db,
            order_id,
            kind,
            payload.status,
            auth.user_id,
            fanout,
            override=payload.override,
            deposit_amount=payload.deposit_amount,
            message=payload.message,
        )
    except OrderflowError as err:
        raise translate_domain_error(err) from err
    return transition_response(result)


@router.get("", response_model=OrdersListResponse, summary="List orders for staff")
def list_orders_endpoint(
    db: Session = Depends(get_db),
    status_filter: str | None = Query(default=None, alias="status"),
    payment_status: PaymentStatus | None = Query(default=None),
    user_id: str | None = Query(default=None),
    page: int = Query(default=1, ge=1),
    page_size: int = Query(default=20, ge=1, le=100),
    _auth: AuthContext = Depends(require_staff),
) -> OrdersListResponse:
    try:
        parsed_status = parse_status(OrderKind.STANDARD, status_filter) if status_filter else None
    except OrderflowError as err:
        raise translate_domain_error(err) from err

    items, total = list_orders(
        db,
        status_filter=parsed_status,
        payment_status=payment_status,
        user_id=user_id,
        page=page,
        page_size=page_size,
    )
    return OrdersListResponse(
        items=[OrderResponse.model_validate(order) for order in items],
        pagination=PaginationMeta(page=page, page_size=page_size, total=total),
    )


@router.get("/{order_id}", response_model=OrderResponse, summary="Get order detail")
def get_order_endpoint(
    order_id: uuid.UUID,
    db: Session = Depends(get_db),
    _auth: AuthContext = Depends(require_staff),
) -> OrderResponse:
    try:
        return OrderResponse.model_validate(get_order(db, order_id))
    except OrderflowError as err:
        raise translate_domain_error(err) from err


@router.get(
    "/{order_id}/events",
    response_model=OrderEventsResponse,
    summary="Status audit trail",
)
def get_events_endpoint(
    order_id: uuid.UUID,
    db: Session = Depends(get_db),
    _auth: AuthContext = Depends(require_staff),
) -> OrderEventsResponse:
    try:
        get_order(db, order_id)
    except OrderflowError as err:
        raise translate_domain_error(err) from err
    events = list_status_events(db, order_id)
    return OrderEventsResponse(items=[OrderEventResponse.model_validate(event) for event in events])


@router.post(
    "/{order_id}/status",
    response_model=StatusTransitionResponse,
    summary="Change order status",
)
def transition_endpoint(
    order_id: uuid.UUID,
    payload: StatusTransitionRequest,
    db: Session = Depends(get_db),
    auth: AuthContext = Depends(require_staff),
    fanout: NotificationFanout = Depends(get_notification_fanout),
) -> StatusTransitionResponse:
    return apply_status_request(db, order_id, OrderKind.STANDARD, payload, auth, fanout)


@router.post(
    "/{order_id}/notifications/resend",
    response_model=NotificationSummary,
    summary="Resend the current status notification",
)
def resend_notification_endpoint(
    order_id: uuid.UUID,
    db: Session = Depends(get_db),
    auth: AuthContext = Depends(require_staff),
    fanout: NotificationFanout = Depends(get_notification_fanout),
) -> NotificationSummary:
    try:
        result = resend_status_notification(db, order_id, OrderKind.STANDARD, auth.user_id, fanout)
    except OrderflowError as err:
        raise translate_domain_error(err) from err
    return NotificationSummary.from_result(result)
