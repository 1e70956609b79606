import uuid
from datetime import datetime

from pydantic import BaseModel, Field

from app.models.order import OrderKind
from app.schemas.common import ResponseModel


class CustomerNotificationResponse(ResponseModel):
    id: uuid.UUID
    order_id: uuid.UUID
    order_kind: OrderKind
    type: str
    message: str
    is_read: bool
    created_at: datetime


class CustomerNotificationsResponse(BaseModel):
    items: list[CustomerNotificationResponse]
    unread: int


class AdminNotificationResponse(ResponseModel):
    id: uuid.UUID
    type: str
    title: str
    message: str | None
    order_id: uuid.UUID | None
    metadata: dict = Field(validation_alias="metadata_json")
    is_read: bool
    created_at: datetime


class AdminNotificationsResponse(BaseModel):
    items: list[AdminNotificationResponse]
    unread: int
