import uuid
from dataclasses import asdict

from fastapi import APIRouter, Depends, Query, status
from sqlalchemy.orm import Session

from app.auth.dependencies import (
    AuthContext,
    ensure_owner_or_staff,
    get_auth_context,
    require_staff,
)
from app.config import settings
from app.db.session import get_db
from app.errors import OrderflowError
from app.integrations import PaymentGatewayProtocol, get_payment_gateway
from app.models.custom_order import CustomOrder
from app.models.order import OrderKind
from app.routers.errors import translate_domain_error
from app.routers.orders import apply_status_request
from app.schemas.checkout import PaymentOutcomeResponse, PushRequest, PushResponse
from app.schemas.custom_orders import (
    CustomOrderCreate,
    CustomOrderResponse,
    CustomOrdersListResponse,
)
from app.schemas.orders import StatusTransitionRequest, StatusTransitionResponse
from app.services import checkout_service
from app.services.custom_order_service import (
    CustomOrderRequest,
    create_custom_order,
    list_custom_orders,
)
from app.services.notification_service import NotificationFanout, get_notification_fanout
from app.services.order_store import get_custom_order
from app.services.state_machine import parse_status

router = APIRouter(prefix="/api/v1/custom-orders", tags=["custom-orders"])


def _owned_custom_order(db: Session, auth: AuthContext, order_id: uuid.UUID) -> CustomOrder:
    try:
        order = get_custom_order(db, order_id)
    except OrderflowError as err:
        raise translate_domain_error(err) from err
    ensure_owner_or_staff(auth, order.user_id)
    return order


@router.post(
    "",
    response_model=CustomOrderResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Request a custom order",
)
def create_custom_order_endpoint(
    payload: CustomOrderCreate,
    db: Session = Depends(get_db),
    auth: AuthContext = Depends(get_auth_context),
    fanout: NotificationFanout = Depends(get_notification_fanout),
) -> CustomOrderResponse:
    request = CustomOrderRequest(**{**payload.model_dump(), "email": payload.email or auth.email})
    try:
        order = create_custom_order(db, auth.user_id, request, fanout)
    except OrderflowError as err:
        raise translate_domain_error(err) from err
    return CustomOrderResponse.model_validate(order)


@router.get("", response_model=CustomOrdersListResponse, summary="List custom orders")
def list_custom_orders_endpoint(
    status_filter: str | None = Query(default=None, alias="status"),
    db: Session = Depends(get_db),
    auth: AuthContext = Depends(get_auth_context),
) -> CustomOrdersListResponse:
    try:
        parsed_status = parse_status(OrderKind.CUSTOM, status_filter) if status_filter else None
    except OrderflowError as err:
        raise translate_domain_error(err) from err
    orders = list_custom_orders(
        db,
        user_id=None if auth.is_staff else auth.user_id,
        status_filter=parsed_status,
    )
    return CustomOrdersListResponse(
        items=[CustomOrderResponse.model_validate(order) for order in orders]
    )


@router.get("/{order_id}", response_model=CustomOrderResponse, summary="Get a custom order")
def get_custom_order_endpoint(
    order_id: uuid.UUID,
    db: Session = Depends(get_db),
    auth: AuthContext = Depends(get_auth_context),
) -> CustomOrderResponse:
    return CustomOrderResponse.model_validate(_owned_custom_order(db, auth, order_id))


@router.post(
    "/{order_id}/status",
    response_model=StatusTransitionResponse,
    summary="Change custom order status",
)
def transition_custom_order_endpoint(
    order_id: uuid.UUID,
    payload: StatusTransitionRequest,
    db: Session = Depends(get_db),
    auth: AuthContext = Depends(require_staff),
    fanout: NotificationFanout = Depends(get_notification_fanout),
) -> StatusTransitionResponse:
    return apply_status_request(db, order_id, OrderKind.CUSTOM, payload, auth, fanout)


@router.post(
    "/{order_id}/push",
    response_model=PushResponse,
    summary="Send the M-Pesa prompt for the deposit",
)
def deposit_push_endpoint(
    order_id: uuid.UUID,
    payload: PushRequest,
    db: Session = Depends(get_db),
    auth: AuthContext = Depends(get_auth_context),
    gateway: PaymentGatewayProtocol = Depends(get_payment_gateway),
) -> PushResponse:
    _owned_custom_order(db, auth, order_id)
    try:
        ticket = checkout_service.request_push(
            db, order_id, OrderKind.CUSTOM, payload.phone, gateway
        )
    except OrderflowError as err:
        raise translate_domain_error(err) from err
    return PushResponse(**asdict(ticket))


@router.get(
    "/{order_id}/payment",
    response_model=PaymentOutcomeResponse,
    summary="One deposit confirmation poll",
)
def deposit_outcome_endpoint(
    order_id: uuid.UUID,
    attempt: int = Query(default=1, ge=1),
    db: Session = Depends(get_db),
    auth: AuthContext = Depends(get_auth_context),
) -> PaymentOutcomeResponse:
    _owned_custom_order(db, auth, order_id)
    max_attempts = settings.payment_poll_max_attempts
    outcome = checkout_service.read_payment_outcome(
        db, order_id, OrderKind.CUSTOM, attempt, max_attempts
    )
    return PaymentOutcomeResponse.from_outcome(outcome, max_attempts)
