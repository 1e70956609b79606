from decimal import Decimal

from pydantic import BaseModel, Field, computed_field, field_validator

from app.schemas.common import ResponseModel


class CartItemCreate(BaseModel):
    product_id: str = Field(min_length=1, max_length=64)
    product_name: str = Field(min_length=1, max_length=255)
    unit_price: Decimal = Field(ge=0, max_digits=12, decimal_places=2)
    quantity: int = Field(default=1, ge=1)

    @field_validator("product_id", "product_name")
    @classmethod
    def strip_strings(cls, value: str) -> str:
        return value.strip()


class CartItemUpdate(BaseModel):
    # zero or less removes the line
    quantity: int


class CartItemResponse(ResponseModel):
    product_id: str
    product_name: str
    unit_price: Decimal
    quantity: int

    @computed_field(return_type=Decimal)
    @property
    def line_total(self) -> Decimal:
        return self.unit_price * self.quantity


class CartResponse(BaseModel):
    items: list[CartItemResponse]
    subtotal: Decimal
    item_count: int
