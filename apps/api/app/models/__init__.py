# Import SQLAlchemy models so they register on Base.metadata
from app.models.cart_item import CartItem  # noqa: F401
from app.models.coupon import Coupon, DiscountType  # noqa: F401
from app.models.custom_order import CustomOrder, CustomOrderStatus, QuantityUnit  # noqa: F401
from app.models.notification import AdminNotification, OrderNotification  # noqa: F401
from app.models.order import (  # noqa: F401
    Order,
    OrderItem,
    OrderKind,
    PaymentStatus,
    StandardOrderStatus,
)
from app.models.order_event import OrderStatusEvent  # noqa: F401
