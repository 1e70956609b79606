import uuid
from decimal import Decimal

from pydantic import BaseModel, Field

from app.services.checkout_service import PaymentOutcome, PaymentOutcomeKind


class ShippingDetails(BaseModel):
    full_name: str = Field(max_length=255)
    phone: str = Field(max_length=50)
    address: str = Field(max_length=500)
    city: str = Field(max_length=120)
    email: str | None = Field(default=None, max_length=255)


class CheckoutOrderCreate(BaseModel):
    shipping: ShippingDetails
    coupon_code: str | None = Field(default=None, max_length=64)
    notes: str | None = Field(default=None, max_length=2000)


class PushRequest(BaseModel):
    phone: str = Field(min_length=1, max_length=20)


class PushResponse(BaseModel):
    order_id: uuid.UUID
    reference: str
    checkout_request_id: str
    phone: str
    amount: Decimal
    message: str


class PaymentOutcomeResponse(BaseModel):
    outcome: PaymentOutcomeKind
    order_id: uuid.UUID
    reference: str
    receipt: str | None = None
    attempt: int
    max_attempts: int
    message: str

    @classmethod
    def from_outcome(cls, outcome: PaymentOutcome, max_attempts: int) -> "PaymentOutcomeResponse":
        return cls(
            outcome=outcome.kind,
            order_id=outcome.order_id,
            reference=outcome.reference,
            receipt=outcome.receipt,
            attempt=outcome.attempt,
            max_attempts=max_attempts,
            message=outcome.message,
        )


class CouponPreviewResponse(BaseModel):
    code: str
    discount_type: str
    discount_value: Decimal
    subtotal: Decimal
    discount: Decimal
    total: Decimal
