import time
from collections import deque
from typing import Protocol

import httpx

from app.config import settings
from app.integrations.errors import (
    EMAIL_PROVIDER,
    IntegrationError,
    IntegrationTimeoutError,
    IntegrationUnavailableError,
    error_for_status,
)
from app.observability import log_event

SERVICE_NAME = EMAIL_PROVIDER
MOCK_RECORD_LIMIT = 100


class EmailSenderProtocol(Protocol):
    def send(self, to: str, subject: str, html: str) -> None: ...


class ResendEmailClient:
    def __init__(
        self,
        base_url: str,
        api_key: str,
        sender: str,
        timeout_s: float,
        max_retries: int = 1,
        backoff_s: float = 0.5,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.sender = sender
        self.timeout_s = timeout_s
        self.max_retries = max_retries
        self.backoff_s = backoff_s

    def send(self, to: str, subject: str, html: str) -> None:
        if not self.base_url:
            raise IntegrationUnavailableError(SERVICE_NAME, "Email base URL is not configured")

        body = {"from": self.sender, "to": to, "subject": subject, "html": html}
        headers = {"Authorization": f"Bearer {self.api_key}"}

        attempts = self.max_retries + 1
        for attempt in range(attempts):
            try:
                with httpx.Client(timeout=self.timeout_s) as client:
                    response = client.post(f"{self.base_url}/emails", json=body, headers=headers)

                error = error_for_status(
                    SERVICE_NAME,
                    response.status_code,
                    f"Email provider returned {response.status_code}",
                )
                if error is not None:
                    raise error
                return
            except httpx.TimeoutException:
                integration_error = IntegrationTimeoutError(SERVICE_NAME)
            except httpx.TransportError as err:
                integration_error = IntegrationUnavailableError(SERVICE_NAME, str(err))
            except IntegrationError as err:
                if not err.retryable:
                    raise
                integration_error = err

            if attempt >= self.max_retries:
                raise integration_error

            time.sleep(self.backoff_s * (2**attempt))


class LoggingEmailSender:
    """Used when no provider key is configured; records sends instead of delivering them."""

    def __init__(self, max_records: int = MOCK_RECORD_LIMIT) -> None:
        self.sent: deque[dict[str, str]] = deque(maxlen=max_records)

    def send(self, to: str, subject: str, html: str) -> None:
        self.sent.append({"to": to, "subject": subject, "html": html})
        log_event(f"mock_email_sent:{subject}", channel="email")


_logging_sender = LoggingEmailSender()


def get_email_sender() -> EmailSenderProtocol:
    if not settings.resend_api_key:
        return _logging_sender
    return ResendEmailClient(
        base_url=settings.resend_base_url,
        api_key=settings.resend_api_key,
        sender=settings.email_from,
        timeout_s=settings.email_timeout_s,
    )
