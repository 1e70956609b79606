from dataclasses import dataclass


@dataclass
class OrderflowError(Exception):
    code: str
    message: str

    def __str__(self) -> str:
        return f"{self.code}:{self.message}"


class ValidationError(OrderflowError):
    """Malformed or incomplete input; the caller corrects it and resubmits."""

    def __init__(self, message: str, code: str = "VALIDATION_FAILED") -> None:
        super().__init__(code=code, message=message)


class NotFoundError(OrderflowError):
    def __init__(self, message: str = "Not found") -> None:
        super().__init__(code="NOT_FOUND", message=message)


class OrderNotFoundError(NotFoundError):
    def __init__(self, message: str = "Order not found") -> None:
        super().__init__(message)


class InvalidTransitionError(OrderflowError):
    def __init__(self, current: str, requested: str) -> None:
        super().__init__(
            code="INVALID_TRANSITION",
            message=f"Invalid state transition: {current} -> {requested}",
        )
        self.current = current
        self.requested = requested


class GatewayError(OrderflowError):
    def __init__(self, message: str, retryable: bool = True, code: str = "GATEWAY_ERROR") -> None:
        super().__init__(code=code, message=message)
        self.retryable = retryable


class PersistenceError(OrderflowError):
    def __init__(self, message: str = "Could not save your order, please try again") -> None:
        super().__init__(code="PERSISTENCE_FAILED", message=message)


class PaymentTimeoutError(OrderflowError):
    def __init__(self, order_reference: str) -> None:
        super().__init__(
            code="PAYMENT_TIMEOUT",
            message=(
                f"We have not received confirmation for order #{order_reference} yet. "
                "Check your order list for the latest status."
            ),
        )


class NotificationDeliveryError(OrderflowError):
    def __init__(self, channel: str, message: str) -> None:
        super().__init__(code="NOTIFICATION_DELIVERY_FAILED", message=message)
        self.channel = channel
