"""Outbound providers: the M-Pesa payment gateway and the transactional email sender."""

from app.integrations.email_client import EmailSenderProtocol, get_email_sender
from app.integrations.errors import (
    EMAIL_PROVIDER,
    PAYMENT_GATEWAY,
    IntegrationBadGatewayError,
    IntegrationError,
    IntegrationTimeoutError,
    IntegrationUnavailableError,
    error_for_status,
)
from app.integrations.mpesa_client import PaymentGatewayProtocol, get_payment_gateway

__all__ = [
    "EMAIL_PROVIDER",
    "PAYMENT_GATEWAY",
    "EmailSenderProtocol",
    "IntegrationBadGatewayError",
    "IntegrationError",
    "IntegrationTimeoutError",
    "IntegrationUnavailableError",
    "PaymentGatewayProtocol",
    "error_for_status",
    "get_email_sender",
    "get_payment_gateway",
]
