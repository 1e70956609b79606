import base64
import itertools
import math
import re
import time
from collections import deque
from datetime import datetime, timezone
from decimal import Decimal
from threading import Lock
from typing import Protocol

import httpx
from pydantic import BaseModel

from app.config import settings
from app.integrations.errors import (
    PAYMENT_GATEWAY,
    IntegrationBadGatewayError,
    IntegrationError,
    IntegrationTimeoutError,
    IntegrationUnavailableError,
    error_for_status,
)

SERVICE_NAME = PAYMENT_GATEWAY
MOCK_RECORD_LIMIT = 100

_PHONE_PREFIX = re.compile(r"^(\+?254|0)")
_NORMALISED_PHONE = re.compile(r"^254[17]\d{8}$")


class PushResult(BaseModel):
    success: bool
    checkout_request_id: str | None = None
    merchant_request_id: str | None = None
    response_code: str | None = None
    customer_message: str = ""


class PaymentGatewayProtocol(Protocol):
    def request_push(self, phone: str, amount: Decimal, order_reference: str) -> PushResult: ...


def normalize_phone(phone: str) -> str:
    """Normalise a Kenyan mobile number to the 2547XXXXXXXX form M-Pesa expects."""
    compact = re.sub(r"\s", "", phone or "")
    normalised = _PHONE_PREFIX.sub("254", compact, count=1)
    if not _NORMALISED_PHONE.match(normalised):
        raise ValueError(f"Invalid M-Pesa phone number: {phone!r}")
    return normalised


class DarajaStkPushClient:
    """Lipa Na M-Pesa Online (STK push) client for the Daraja API."""

    def __init__(
        self,
        base_url: str,
        consumer_key: str,
        consumer_secret: str,
        shortcode: str,
        passkey: str,
        callback_url: str,
        timeout_s: float,
        max_retries: int,
        backoff_s: float,
        token_ttl_s: float = 3000.0,
        account_prefix: str = "ORDER",
        transaction_desc: str = "Order payment",
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.consumer_key = consumer_key
        self.consumer_secret = consumer_secret
        self.shortcode = shortcode
        self.passkey = passkey
        self.callback_url = callback_url
        self.timeout_s = timeout_s
        self.max_retries = max_retries
        self.backoff_s = backoff_s
        self.token_ttl_s = token_ttl_s
        self.account_prefix = account_prefix
        self.transaction_desc = transaction_desc
        self._token_lock = Lock()
        self._token: str | None = None
        self._token_expires_at = 0.0

    def _cached_token(self) -> str | None:
        with self._token_lock:
            if self._token is None or time.monotonic() >= self._token_expires_at:
                return None
            return self._token

    def _store_token(self, token: str) -> None:
        with self._token_lock:
            self._token = token
            self._token_expires_at = time.monotonic() + self.token_ttl_s

    def _invalidate_token(self) -> None:
        with self._token_lock:
            self._token = None
            self._token_expires_at = 0.0

    def _access_token(self, client: httpx.Client) -> str:
        cached = self._cached_token()
        if cached is not None:
            return cached

        response = client.get(
            f"{self.base_url}/oauth/v1/generate",
            params={"grant_type": "client_credentials"},
            auth=(self.consumer_key, self.consumer_secret),
        )
        error = error_for_status(
            SERVICE_NAME, response.status_code, f"Daraja OAuth returned {response.status_code}"
        )
        if error is not None:
            raise error

        token = response.json().get("access_token")
        if not token:
            raise IntegrationBadGatewayError(SERVICE_NAME, "Daraja OAuth returned no access token")
        self._store_token(token)
        return token

    @staticmethod
    def _timestamp() -> str:
        return datetime.now(timezone.utc).strftime("%Y%m%d%H%M%S")

    def _password(self, timestamp: str) -> str:
        raw = f"{self.shortcode}{self.passkey}{timestamp}".encode()
        return base64.b64encode(raw).decode()

    def _build_payload(self, phone: str, amount: Decimal, order_reference: str) -> dict:
        timestamp = self._timestamp()
        return {
            "BusinessShortCode": self.shortcode,
            "Password": self._password(timestamp),
            "Timestamp": timestamp,
            "TransactionType": "CustomerPayBillOnline",
            "Amount": math.ceil(amount),
            "PartyA": phone,
            "PartyB": self.shortcode,
            "PhoneNumber": phone,
            "CallBackURL": self.callback_url,
            "AccountReference": f"{self.account_prefix}-{order_reference}",
            "TransactionDesc": self.transaction_desc,
        }

    def request_push(self, phone: str, amount: Decimal, order_reference: str) -> PushResult:
        if not self.base_url:
            raise IntegrationUnavailableError(SERVICE_NAME, "Daraja base URL is not configured")

        payload = self._build_payload(phone, amount, order_reference)

        attempts = self.max_retries + 1
        for attempt in range(attempts):
            try:
                with httpx.Client(timeout=self.timeout_s) as client:
                    token = self._access_token(client)
                    response = client.post(
                        f"{self.base_url}/mpesa/stkpush/v1/processrequest",
                        json=payload,
                        headers={"Authorization": f"Bearer {token}"},
                    )

                if response.status_code == 401:
                    self._invalidate_token()
                    raise IntegrationUnavailableError(SERVICE_NAME, "Daraja rejected access token")
                error = error_for_status(
                    SERVICE_NAME, response.status_code, _daraja_error_message(response)
                )
                if error is not None:
                    raise error

                body = response.json()
                response_code = str(body.get("ResponseCode", ""))
                return PushResult(
                    success=response_code == "0",
                    checkout_request_id=body.get("CheckoutRequestID"),
                    merchant_request_id=body.get("MerchantRequestID"),
                    response_code=response_code or None,
                    customer_message=body.get("CustomerMessage")
                    or body.get("ResponseDescription")
                    or "",
                )
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

        raise IntegrationUnavailableError(SERVICE_NAME, "STK push retry loop exhausted")


def _daraja_error_message(response: httpx.Response) -> str:
    fallback = f"Daraja returned {response.status_code}"
    if not response.content:
        return fallback
    try:
        body = response.json()
    except ValueError:
        return fallback
    if not isinstance(body, dict):
        return fallback
    return body.get("errorMessage") or fallback


class MockStkPushClient:
    """Accepts every push; confirmation still has to arrive through the callback."""

    def __init__(self, max_records: int = MOCK_RECORD_LIMIT) -> None:
        # Only the most recent pushes are kept for inspection.
        self.requests: deque[dict] = deque(maxlen=max_records)
        self._sequence = itertools.count(1)

    def request_push(self, phone: str, amount: Decimal, order_reference: str) -> PushResult:
        self.requests.append({"phone": phone, "amount": amount, "order_reference": order_reference})
        return PushResult(
            success=True,
            checkout_request_id=f"mock-{int(time.time() * 1000)}-{next(self._sequence)}",
            response_code="0",
            customer_message=f"[MOCK] STK push sent to {phone}. Enter PIN to confirm.",
        )


_mock_gateway = MockStkPushClient()


def get_payment_gateway() -> PaymentGatewayProtocol:
    if settings.mpesa_mock_mode:
        return _mock_gateway
    return DarajaStkPushClient(
        base_url=settings.mpesa_base_url,
        consumer_key=settings.mpesa_consumer_key,
        consumer_secret=settings.mpesa_consumer_secret,
        shortcode=settings.mpesa_shortcode,
        passkey=settings.mpesa_passkey,
        callback_url=settings.mpesa_callback_url,
        timeout_s=settings.mpesa_timeout_s,
        max_retries=settings.mpesa_max_retries,
        backoff_s=settings.mpesa_backoff_s,
        token_ttl_s=settings.mpesa_token_ttl_s,
        account_prefix=settings.mpesa_account_prefix,
        transaction_desc=settings.mpesa_transaction_desc,
    )
