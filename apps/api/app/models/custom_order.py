import enum
import uuid
from datetime import datetime
from decimal import Decimal

from sqlalchemy import DateTime, Numeric, String, Text, Uuid, func
from sqlalchemy.orm import Mapped, mapped_column

from app.db.base import Base, utcnow, value_enum
from app.models.order import OrderKind, PaymentStatus, order_reference


class CustomOrderStatus(str, enum.Enum):
    PENDING = "pending"
    REVIEWING = "reviewing"
    READY = "ready"
    DEPOSIT_PAID = "deposit_paid"
    FULFILLED = "fulfilled"
    CANCELLED = "cancelled"


class QuantityUnit(str, enum.Enum):
    KG = "kg"
    LITRES = "litres"
    BAGS = "bags"
    UNITS = "units"
    TONNES = "tonnes"


class CustomOrder(Base):
    """Bespoke order whose price and deposit are negotiated after submission."""

    __tablename__ = "custom_orders"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    user_id: Mapped[str] = mapped_column(String(128), nullable=False, index=True)

    full_name: Mapped[str] = mapped_column(String(255), nullable=False)
    phone: Mapped[str] = mapped_column(String(50), nullable=False)
    email: Mapped[str | None] = mapped_column(String(255), nullable=True)

    product_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    product_name: Mapped[str] = mapped_column(String(255), nullable=False)
    quantity: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    unit: Mapped[QuantityUnit] = mapped_column(
        value_enum(QuantityUnit, "quantity_unit"), nullable=False, default=QuantityUnit.KG
    )
    delivery_address: Mapped[str] = mapped_column(String(500), nullable=False)
    city: Mapped[str] = mapped_column(String(120), nullable=False)
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)

    status: Mapped[CustomOrderStatus] = mapped_column(
        value_enum(CustomOrderStatus, "custom_order_status"),
        nullable=False,
        default=CustomOrderStatus.PENDING,
    )
    deposit_amount: Mapped[Decimal | None] = mapped_column(Numeric(12, 2), nullable=True)

    payment_status: Mapped[PaymentStatus] = mapped_column(
        value_enum(PaymentStatus, "payment_status"), nullable=False, default=PaymentStatus.PENDING
    )
    payment_reference: Mapped[str | None] = mapped_column(String(64), nullable=True)
    checkout_request_id: Mapped[str | None] = mapped_column(
        String(128), nullable=True, index=True
    )
    payment_phone: Mapped[str | None] = mapped_column(String(20), nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow, server_default=func.now()
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, server_default=func.now(), onupdate=func.now()
    )

    @property
    def reference(self) -> str:
        return order_reference(self.id)

    @property
    def kind(self) -> OrderKind:
        return OrderKind.CUSTOM

    @property
    def amount_due(self) -> Decimal | None:
        return self.deposit_amount
