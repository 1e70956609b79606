import uuid
from datetime import datetime
from decimal import Decimal

from pydantic import BaseModel, Field

from app.models.order import PaymentStatus, StandardOrderStatus
from app.schemas.common import PaginationMeta, ResponseModel
from app.services.notification_service import FanoutResult


class OrderItemResponse(ResponseModel):
    product_id: str | None
    product_name: str
    unit_price: Decimal
    quantity: int
    total_price: Decimal


class OrderResponse(ResponseModel):
    id: uuid.UUID
    reference: str
    user_id: str
    customer_email: str | None
    total_amount: Decimal
    discount_amount: Decimal
    payment_method: str
    payment_status: PaymentStatus
    payment_reference: str | None
    checkout_request_id: str | None
    status: StandardOrderStatus
    shipping_address: dict
    notes: str | None
    finalized_at: datetime | None
    items: list[OrderItemResponse]
    created_at: datetime
    updated_at: datetime


class OrdersListResponse(BaseModel):
    items: list[OrderResponse]
    pagination: PaginationMeta


class OrderEventResponse(ResponseModel):
    id: uuid.UUID
    actor: str
    from_status: str | None
    to_status: str
    override: bool
    message: str
    payload: dict
    created_at: datetime


class OrderEventsResponse(BaseModel):
    items: list[OrderEventResponse]


class StatusTransitionRequest(BaseModel):
    status: str = Field(min_length=1, max_length=32)
    override: bool = False
    deposit_amount: Decimal | None = Field(default=None, max_digits=12, decimal_places=2)
    message: str | None = Field(default=None, max_length=2000)


class NotificationSummary(BaseModel):
    event: str
    delivered: list[str]
    skipped: list[str]
    failed: dict[str, str]

    @classmethod
    def from_result(cls, result: FanoutResult) -> "NotificationSummary":
        return cls(
            event=result.event.value,
            delivered=[channel.value for channel in result.delivered],
            skipped=[channel.value for channel in result.skipped],
            failed={channel.value: reason for channel, reason in result.failed.items()},
        )


class StatusTransitionResponse(BaseModel):
    order_id: uuid.UUID
    reference: str
    previous_status: str
    status: str
    changed: bool
    notification: NotificationSummary | None = None
