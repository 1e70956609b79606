import enum
import uuid
from datetime import datetime
from decimal import Decimal

from sqlalchemy import JSON, DateTime, ForeignKey, Integer, Numeric, String, Text, Uuid, func
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.db.base import Base, utcnow, value_enum


class OrderKind(str, enum.Enum):
    STANDARD = "standard"
    CUSTOM = "custom"


class PaymentStatus(str, enum.Enum):
    PENDING = "pending"
    PAID = "paid"
    FAILED = "failed"
    TIMEOUT = "timeout"


class StandardOrderStatus(str, enum.Enum):
    RECEIVED = "received"
    PROCESSING = "processing"
    CONFIRMED = "confirmed"
    DISPATCHED = "dispatched"
    OUT_FOR_DELIVERY = "out_for_delivery"
    DELIVERED = "delivered"
    CANCELLED = "cancelled"
    REFUNDED = "refunded"


def order_reference(order_id: uuid.UUID | str) -> str:
    """Human-facing order reference: first 8 hex characters, uppercased."""
    value = order_id.hex if isinstance(order_id, uuid.UUID) else str(order_id).replace("-", "")
    return value[:8].upper()


class Order(Base):
    __tablename__ = "orders"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    user_id: Mapped[str] = mapped_column(String(128), nullable=False, index=True)
    customer_email: Mapped[str | None] = mapped_column(String(255), nullable=True)

    total_amount: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    discount_amount: Mapped[Decimal] = mapped_column(
        Numeric(12, 2), nullable=False, default=Decimal("0")
    )
    coupon_id: Mapped[uuid.UUID | None] = mapped_column(
        Uuid, ForeignKey("coupons.id", ondelete="SET NULL"), nullable=True
    )

    payment_method: Mapped[str] = mapped_column(String(32), nullable=False, default="mpesa")
    payment_status: Mapped[PaymentStatus] = mapped_column(
        value_enum(PaymentStatus, "payment_status"), nullable=False, default=PaymentStatus.PENDING
    )
    payment_reference: Mapped[str | None] = mapped_column(String(64), nullable=True)
    checkout_request_id: Mapped[str | None] = mapped_column(
        String(128), nullable=True, index=True
    )
    payment_phone: Mapped[str | None] = mapped_column(String(20), nullable=True)

    status: Mapped[StandardOrderStatus] = mapped_column(
        value_enum(StandardOrderStatus, "standard_order_status"),
        nullable=False,
        default=StandardOrderStatus.RECEIVED,
    )
    shipping_address: Mapped[dict] = mapped_column(JSON, nullable=False, default=dict)
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    finalized_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow, server_default=func.now()
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, server_default=func.now(), onupdate=func.now()
    )

    items: Mapped[list["OrderItem"]] = relationship(
        back_populates="order", cascade="all, delete-orphan", lazy="selectin"
    )

    @property
    def reference(self) -> str:
        return order_reference(self.id)

    @property
    def kind(self) -> OrderKind:
        return OrderKind.STANDARD

    @property
    def amount_due(self) -> Decimal:
        return self.total_amount


class OrderItem(Base):
    __tablename__ = "order_items"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    order_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("orders.id", ondelete="CASCADE"), nullable=False, index=True
    )
    # catalog rows may be deleted later; name and price are snapshots
    product_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    product_name: Mapped[str] = mapped_column(String(255), nullable=False)
    unit_price: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    quantity: Mapped[int] = mapped_column(Integer, nullable=False)
    total_price: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)

    order: Mapped[Order] = relationship(back_populates="items")
