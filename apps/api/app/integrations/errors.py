from dataclasses import dataclass

PAYMENT_GATEWAY = "mpesa"
EMAIL_PROVIDER = "email"

# Upstream statuses that clear up on their own; everything else in 4xx needs a fix on our side.
_TRANSIENT_STATUSES = frozenset({408, 429})


@dataclass
class IntegrationError(Exception):
    """A provider call that did not produce a usable answer.

    ``service`` names the provider (payment gateway or email), ``retryable`` tells the
    client loop whether another attempt can help and ``status_code`` keeps the HTTP status
    when the provider answered at all.
    """

    service: str
    code: str
    message: str
    retryable: bool = False
    status_code: int | None = None

    def __str__(self) -> str:
        if self.status_code is None:
            return f"{self.service}:{self.code}:{self.message}"
        return f"{self.service}:{self.code}:{self.status_code}:{self.message}"


class IntegrationTimeoutError(IntegrationError):
    def __init__(self, service: str, message: str = "Upstream timeout") -> None:
        super().__init__(service=service, code="TIMEOUT", message=message, retryable=True)


class IntegrationUnavailableError(IntegrationError):
    def __init__(
        self, service: str, message: str = "Upstream unavailable", status_code: int | None = None
    ) -> None:
        super().__init__(
            service=service,
            code="UNAVAILABLE",
            message=message,
            retryable=True,
            status_code=status_code,
        )


class IntegrationBadGatewayError(IntegrationError):
    def __init__(
        self,
        service: str,
        message: str = "Unexpected upstream response",
        status_code: int | None = None,
    ) -> None:
        super().__init__(
            service=service,
            code="BAD_GATEWAY",
            message=message,
            retryable=False,
            status_code=status_code,
        )


def error_for_status(
    service: str, status_code: int, message: str | None = None
) -> IntegrationError | None:
    """Map a provider's HTTP status onto the error the retry loops understand."""
    if status_code < 400:
        return None
    detail = message or f"{service} returned {status_code}"
    if status_code >= 500 or status_code in _TRANSIENT_STATUSES:
        return IntegrationUnavailableError(service, detail, status_code=status_code)
    return IntegrationBadGatewayError(service, detail, status_code=status_code)
