import uuid
from dataclasses import asdict

from fastapi import APIRouter, Depends, Query, status
from sqlalchemy.orm import Session

from app.auth.dependencies import AuthContext, ensure_owner_or_staff, get_auth_context
from app.config import settings
from app.db.session import get_db
from app.errors import OrderflowError
from app.integrations import PaymentGatewayProtocol, get_payment_gateway
from app.models.order import OrderKind
from app.routers.errors import translate_domain_error
from app.schemas.checkout import (
    CheckoutOrderCreate,
    CouponPreviewResponse,
    PaymentOutcomeResponse,
    PushRequest,
    PushResponse,
)
from app.schemas.orders import OrderResponse
from app.services import checkout_service
from app.services.cart_service import CartService
from app.services.checkout_service import ShippingInfo
from app.services.coupon_service import quote_coupon
from app.services.notification_service import NotificationFanout, get_notification_fanout
from app.services.order_store import get_order

router = APIRouter(prefix="/api/v1/checkout", tags=["checkout"])


def _owned_order(db: Session, auth: AuthContext, order_id: uuid.UUID):
    try:
        order = get_order(db, order_id)
    except OrderflowError as err:
        raise translate_domain_error(err) from err
    ensure_owner_or_staff(auth, order.user_id)
    return order


@router.post(
    "/orders",
    response_model=OrderResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Place an order from the current cart",
)
def create_order_endpoint(
    payload: CheckoutOrderCreate,
    db: Session = Depends(get_db),
    auth: AuthContext = Depends(get_auth_context),
    fanout: NotificationFanout = Depends(get_notification_fanout),
) -> OrderResponse:
    shipping = ShippingInfo(**payload.shipping.model_dump())
    try:
        order = checkout_service.create_order(
            db,
            CartService(db, auth.user_id),
            shipping,
            fanout,
            coupon_code=payload.coupon_code,
            notes=payload.notes,
            customer_email=shipping.email or auth.email,
        )
    except OrderflowError as err:
        raise translate_domain_error(err) from err
    return OrderResponse.model_validate(order)


@router.post(
    "/orders/{order_id}/push",
    response_model=PushResponse,
    summary="Send (or resend) the M-Pesa payment prompt",
)
def request_push_endpoint(
    order_id: uuid.UUID,
    payload: PushRequest,
    db: Session = Depends(get_db),
    auth: AuthContext = Depends(get_auth_context),
    gateway: PaymentGatewayProtocol = Depends(get_payment_gateway),
) -> PushResponse:
    _owned_order(db, auth, order_id)
    try:
        ticket = checkout_service.request_push(
            db, order_id, OrderKind.STANDARD, payload.phone, gateway
        )
    except OrderflowError as err:
        raise translate_domain_error(err) from err
    return PushResponse(**asdict(ticket))


@router.get(
    "/orders/{order_id}/payment",
    response_model=PaymentOutcomeResponse,
    summary="One payment confirmation poll",
)
def payment_outcome_endpoint(
    order_id: uuid.UUID,
    attempt: int = Query(default=1, ge=1),
    db: Session = Depends(get_db),
    auth: AuthContext = Depends(get_auth_context),
) -> PaymentOutcomeResponse:
    _owned_order(db, auth, order_id)
    max_attempts = settings.payment_poll_max_attempts
    outcome = checkout_service.read_payment_outcome(
        db, order_id, OrderKind.STANDARD, attempt, max_attempts
    )
    return PaymentOutcomeResponse.from_outcome(outcome, max_attempts)


@router.post(
    "/orders/{order_id}/finalize",
    response_model=OrderResponse,
    summary="Complete checkout once payment is confirmed",
)
def finalize_endpoint(
    order_id: uuid.UUID,
    db: Session = Depends(get_db),
    auth: AuthContext = Depends(get_auth_context),
) -> OrderResponse:
    order = _owned_order(db, auth, order_id)
    try:
        order = checkout_service.finalize(db, order_id, CartService(db, order.user_id))
    except OrderflowError as err:
        raise translate_domain_error(err) from err
    return OrderResponse.model_validate(order)


@router.get(
    "/coupons/{code}",
    response_model=CouponPreviewResponse,
    summary="Preview a coupon against the current cart",
)
def coupon_preview_endpoint(
    code: str,
    db: Session = Depends(get_db),
    auth: AuthContext = Depends(get_auth_context),
) -> CouponPreviewResponse:
    subtotal = CartService(db, auth.user_id).subtotal()
    try:
        quote = quote_coupon(db, code, subtotal)
    except OrderflowError as err:
        raise translate_domain_error(err) from err
    return CouponPreviewResponse(
        code=quote.coupon.code,
        discount_type=quote.coupon.discount_type.value,
        discount_value=quote.coupon.discount_value,
        subtotal=quote.subtotal,
        discount=quote.discount,
        total=quote.total,
    )
