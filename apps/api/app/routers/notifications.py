import uuid

from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from app.auth.dependencies import AuthContext, get_auth_context, require_staff
from app.db.session import get_db
from app.errors import OrderflowError
from app.routers.errors import translate_domain_error
from app.schemas.notifications import (
    AdminNotificationResponse,
    AdminNotificationsResponse,
    CustomerNotificationResponse,
    CustomerNotificationsResponse,
)
from app.services.notification_service import (
    list_admin_notifications,
    list_customer_notifications,
    mark_admin_notification_read,
    mark_customer_notification_read,
)

router = APIRouter(prefix="/api/v1", tags=["notifications"])


@router.get(
    "/notifications",
    response_model=CustomerNotificationsResponse,
    summary="Order notifications for the signed-in customer",
)
def customer_notifications_endpoint(
    unread_only: bool = Query(default=False),
    db: Session = Depends(get_db),
    auth: AuthContext = Depends(get_auth_context),
) -> CustomerNotificationsResponse:
    items = [
        CustomerNotificationResponse.model_validate(row)
        for row in list_customer_notifications(db, auth.user_id, unread_only=unread_only)
    ]
    return CustomerNotificationsResponse(
        items=items, unread=sum(1 for item in items if not item.is_read)
    )


@router.post(
    "/notifications/{notification_id}/read",
    response_model=CustomerNotificationResponse,
    summary="Mark a customer notification read",
)
def read_customer_notification_endpoint(
    notification_id: uuid.UUID,
    db: Session = Depends(get_db),
    auth: AuthContext = Depends(get_auth_context),
) -> CustomerNotificationResponse:
    try:
        row = mark_customer_notification_read(db, notification_id, auth.user_id)
    except OrderflowError as err:
        raise translate_domain_error(err) from err
    return CustomerNotificationResponse.model_validate(row)


@router.get(
    "/admin/notifications",
    response_model=AdminNotificationsResponse,
    summary="Back-office notification inbox",
)
def admin_notifications_endpoint(
    unread_only: bool = Query(default=False),
    db: Session = Depends(get_db),
    _auth: AuthContext = Depends(require_staff),
) -> AdminNotificationsResponse:
    items = [
        AdminNotificationResponse.model_validate(row)
        for row in list_admin_notifications(db, unread_only=unread_only)
    ]
    return AdminNotificationsResponse(
        items=items, unread=sum(1 for item in items if not item.is_read)
    )


@router.post(
    "/admin/notifications/{notification_id}/read",
    response_model=AdminNotificationResponse,
    summary="Mark a back-office notification read",
)
def read_admin_notification_endpoint(
    notification_id: uuid.UUID,
    db: Session = Depends(get_db),
    _auth: AuthContext = Depends(require_staff),
) -> AdminNotificationResponse:
    try:
        row = mark_admin_notification_read(db, notification_id)
    except OrderflowError as err:
        raise translate_domain_error(err) from err
    return AdminNotificationResponse.model_validate(row)
