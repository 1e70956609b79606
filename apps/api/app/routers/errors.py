import logging

from fastapi import HTTPException, status

from app.errors import (
    GatewayError,
    InvalidTransitionError,
    NotFoundError,
    OrderflowError,
    PaymentTimeoutError,
    PersistenceError,
    ValidationError,
)
from app.observability import log_event


def _detail(err: OrderflowError) -> dict[str, str]:
    return {"code": err.code, "message": err.message}


def translate_domain_error(err: OrderflowError) -> HTTPException:
    if isinstance(err, ValidationError):
        return HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=_detail(err))
    if isinstance(err, NotFoundError):
        return HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=_detail(err))
    if isinstance(err, InvalidTransitionError):
        return HTTPException(status_code=status.HTTP_409_CONFLICT, detail=_detail(err))
    if isinstance(err, GatewayError):
        if err.retryable:
            return HTTPException(
                status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=_detail(err)
            )
        return HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail=_detail(err))
    if isinstance(err, PaymentTimeoutError):
        return HTTPException(status_code=status.HTTP_409_CONFLICT, detail=_detail(err))
    if isinstance(err, PersistenceError):
        # the cause was logged where it was raised; the client only sees the generic message
        return HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=_detail(err)
        )

    log_event(f"unmapped_domain_error:{err.code}", level=logging.ERROR)
    return HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=_detail(err))
