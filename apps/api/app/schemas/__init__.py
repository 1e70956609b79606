from app.schemas.cart import CartItemCreate, CartItemUpdate, CartResponse
from app.schemas.checkout import (
    CheckoutOrderCreate,
    CouponPreviewResponse,
    PaymentOutcomeResponse,
    PushRequest,
    PushResponse,
)
from app.schemas.custom_orders import CustomOrderCreate, CustomOrderResponse
from app.schemas.orders import (
    OrderEventsResponse,
    OrderResponse,
    OrdersListResponse,
    StatusTransitionRequest,
    StatusTransitionResponse,
)

__all__ = [
    "CartItemCreate",
    "CartItemUpdate",
    "CartResponse",
    "CheckoutOrderCreate",
    "CouponPreviewResponse",
    "CustomOrderCreate",
    "CustomOrderResponse",
    "OrderEventsResponse",
    "OrderResponse",
    "OrdersListResponse",
    "PaymentOutcomeResponse",
    "PushRequest",
    "PushResponse",
    "StatusTransitionRequest",
    "StatusTransitionResponse",
]
