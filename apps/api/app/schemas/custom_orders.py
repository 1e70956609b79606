import uuid
from datetime import datetime
from decimal import Decimal

from pydantic import BaseModel, Field

from app.models.custom_order import CustomOrderStatus, QuantityUnit
from app.models.order import PaymentStatus
from app.schemas.common import ResponseModel


class CustomOrderCreate(BaseModel):
    full_name: str = Field(max_length=255)
    phone: str = Field(max_length=50)
    email: str | None = Field(default=None, max_length=255)
    product_id: str | None = Field(default=None, max_length=64)
    product_name: str = Field(max_length=255)
    quantity: Decimal = Field(max_digits=12, decimal_places=2)
    unit: QuantityUnit = QuantityUnit.KG
    delivery_address: str = Field(max_length=500)
    city: str = Field(max_length=120)
    notes: str | None = Field(default=None, max_length=2000)


class CustomOrderResponse(ResponseModel):
    id: uuid.UUID
    reference: str
    user_id: str
    full_name: str
    phone: str
    email: str | None
    product_id: str | None
    product_name: str
    quantity: Decimal
    unit: QuantityUnit
    delivery_address: str
    city: str
    notes: str | None
    status: CustomOrderStatus
    deposit_amount: Decimal | None
    payment_status: PaymentStatus
    payment_reference: str | None
    created_at: datetime
    updated_at: datetime


class CustomOrdersListResponse(BaseModel):
    items: list[CustomOrderResponse]
