import hmac

from fastapi import APIRouter, Body, Depends, Header, HTTPException, Query, status
from sqlalchemy.orm import Session

from app.config import settings
from app.db.session import get_db
from app.errors import OrderflowError
from app.observability import log_event
from app.routers.errors import translate_domain_error
from app.schemas.payments import CallbackAck
from app.services.notification_service import NotificationFanout, get_notification_fanout
from app.services.payment_service import PAYMENT_ACTOR, handle_stk_callback

router = APIRouter(prefix="/api/v1/payments", tags=["payments"])


def verify_callback_token(
    x_callback_token: str | None = Header(default=None),
    token: str | None = Query(default=None),
) -> None:
    # Daraja cannot send custom headers, so the callback URL carries ?token=
    supplied = x_callback_token or token or ""
    if not hmac.compare_digest(supplied.encode(), settings.mpesa_callback_token.encode()):
        log_event("stk_callback_rejected:bad_token", actor=PAYMENT_ACTOR)
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid callback token"
        )


@router.post(
    "/mpesa/callback",
    response_model=CallbackAck,
    summary="M-Pesa STK push result callback",
    dependencies=[Depends(verify_callback_token)],
)
def mpesa_callback_endpoint(
    payload: dict = Body(...),
    db: Session = Depends(get_db),
    fanout: NotificationFanout = Depends(get_notification_fanout),
) -> CallbackAck:
    try:
        applied = handle_stk_callback(db, payload, fanout)
    except OrderflowError as err:
        raise translate_domain_error(err) from err
    return CallbackAck(ResultDesc="Accepted" if applied else "Ignored")
