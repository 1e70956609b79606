from decimal import Decimal

import httpx
import pytest

from app.integrations.email_client import LoggingEmailSender, ResendEmailClient
from app.integrations.errors import (
    EMAIL_PROVIDER,
    PAYMENT_GATEWAY,
    IntegrationBadGatewayError,
    IntegrationTimeoutError,
    IntegrationUnavailableError,
    error_for_status,
)
from app.integrations.mpesa_client import DarajaStkPushClient, MockStkPushClient, normalize_phone


class _Response:
    def __init__(self, status_code: int, payload=None):
        self.status_code = status_code
        self._payload = payload

    @property
    def content(self) -> bytes:
        return b"" if self._payload is None else b"{}"

    def json(self):
        return self._payload


class _ClientStub:
    def __init__(self, get_sequence=None, post_sequence=None):
        self._get_sequence = get_sequence if get_sequence is not None else []
        self._post_sequence = post_sequence if post_sequence is not None else []
        self.posted: list[dict] = []

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        return False

    def get(self, _url, params=None, auth=None):
        _ = (params, auth)
        value = self._get_sequence.pop(0)
        if isinstance(value, Exception):
            raise value
        return value

    def post(self, _url, json, headers=None):
        self.posted.append({"json": json, "headers": headers})
        value = self._post_sequence.pop(0)
        if isinstance(value, Exception):
            raise value
        return value


def _token() -> _Response:
    return _Response(200, {"access_token": "tok-1", "expires_in": "3599"})


def _accepted() -> _Response:
    return _Response(
        200,
        {
            "MerchantRequestID": "29115-34620561-1",
            "CheckoutRequestID": "ws_CO_191220191020363925",
            "ResponseCode": "0",
            "ResponseDescription": "Success. Request accepted for processing",
            "CustomerMessage": "Success. Request accepted for processing",
        },
    )


def _daraja(**overrides) -> DarajaStkPushClient:
    options = {
        "base_url": "https://daraja.test",
        "consumer_key": "key",
        "consumer_secret": "secret",
        "shortcode": "174379",
        "passkey": "passkey",
        "callback_url": "https://shop.test/api/v1/payments/mpesa/callback",
        "timeout_s": 0.1,
        "max_retries": 0,
        "backoff_s": 0,
    }
    options.update(overrides)
    return DarajaStkPushClient(**options)


@pytest.mark.parametrize(
    ("raw", "expected"),
    [
        ("0712345678", "254712345678"),
        ("+254 712 345 678", "254712345678"),
        ("254112345678", "254112345678"),
    ],
)
def test_normalize_phone_accepts_kenyan_mobile_numbers(raw, expected):
    assert normalize_phone(raw) == expected


@pytest.mark.parametrize("raw", ["", "12345", "0812345678", "07123456789"])
def test_normalize_phone_rejects_other_numbers(raw):
    with pytest.raises(ValueError):
        normalize_phone(raw)


def test_daraja_push_builds_payload_and_reads_ticket(monkeypatch):
    stub = _ClientStub(get_sequence=[_token()], post_sequence=[_accepted()])
    monkeypatch.setattr("app.integrations.mpesa_client.httpx.Client", lambda timeout: stub)

    result = _daraja().request_push("254712345678", Decimal("4500.40"), "A1B2C3D4")

    assert result.success is True
    assert result.checkout_request_id == "ws_CO_191220191020363925"
    payload = stub.posted[0]["json"]
    assert payload["Amount"] == 4501
    assert payload["PartyA"] == "254712345678"
    assert payload["AccountReference"] == "ORDER-A1B2C3D4"
    assert stub.posted[0]["headers"] == {"Authorization": "Bearer tok-1"}


def test_daraja_push_reuses_cached_token(monkeypatch):
    stub = _ClientStub(get_sequence=[_token()], post_sequence=[_accepted(), _accepted()])
    monkeypatch.setattr("app.integrations.mpesa_client.httpx.Client", lambda timeout: stub)

    client = _daraja()
    client.request_push("254712345678", Decimal("100"), "A1B2C3D4")
    client.request_push("254712345678", Decimal("100"), "A1B2C3D4")

    assert len(stub.posted) == 2


def test_daraja_push_retries_after_timeout(monkeypatch):
    stub = _ClientStub(
        get_sequence=[_token()],
        post_sequence=[httpx.ReadTimeout("timeout"), _accepted()],
    )
    monkeypatch.setattr("app.integrations.mpesa_client.httpx.Client", lambda timeout: stub)

    result = _daraja(max_retries=1).request_push("254712345678", Decimal("100"), "A1B2C3D4")

    assert result.success is True
    assert len(stub.posted) == 2


def test_daraja_push_raises_timeout_when_retries_exhausted(monkeypatch):
    stub = _ClientStub(get_sequence=[_token()], post_sequence=[httpx.ReadTimeout("timeout")])
    monkeypatch.setattr("app.integrations.mpesa_client.httpx.Client", lambda timeout: stub)

    with pytest.raises(IntegrationTimeoutError) as exc:
        _daraja().request_push("254712345678", Decimal("100"), "A1B2C3D4")
    assert exc.value.retryable is True


def test_daraja_push_maps_4xx_to_bad_gateway(monkeypatch):
    stub = _ClientStub(
        get_sequence=[_token()],
        post_sequence=[_Response(400, {"errorMessage": "Invalid PhoneNumber"})],
    )
    monkeypatch.setattr("app.integrations.mpesa_client.httpx.Client", lambda timeout: stub)

    with pytest.raises(IntegrationBadGatewayError, match="Invalid PhoneNumber"):
        _daraja(max_retries=2).request_push("254712345678", Decimal("100"), "A1B2C3D4")
    assert len(stub.posted) == 1


def test_daraja_push_refreshes_token_after_401(monkeypatch):
    stub = _ClientStub(
        get_sequence=[_token(), _Response(200, {"access_token": "tok-2"})],
        post_sequence=[_Response(401, {}), _accepted()],
    )
    monkeypatch.setattr("app.integrations.mpesa_client.httpx.Client", lambda timeout: stub)

    result = _daraja(max_retries=1).request_push("254712345678", Decimal("100"), "A1B2C3D4")

    assert result.success is True
    assert stub.posted[1]["headers"] == {"Authorization": "Bearer tok-2"}


def test_daraja_push_reports_rejected_request(monkeypatch):
    rejected = _Response(200, {"ResponseCode": "1", "ResponseDescription": "Rejected"})
    stub = _ClientStub(get_sequence=[_token()], post_sequence=[rejected])
    monkeypatch.setattr("app.integrations.mpesa_client.httpx.Client", lambda timeout: stub)

    result = _daraja().request_push("254712345678", Decimal("100"), "A1B2C3D4")

    assert result.success is False
    assert result.customer_message == "Rejected"


def test_daraja_requires_base_url():
    with pytest.raises(IntegrationUnavailableError):
        _daraja(base_url="").request_push("254712345678", Decimal("100"), "A1B2C3D4")


def test_email_client_retries_5xx_then_succeeds(monkeypatch):
    stub = _ClientStub(post_sequence=[_Response(503), _Response(200, {"id": "em_1"})])
    monkeypatch.setattr("app.integrations.email_client.httpx.Client", lambda timeout: stub)

    client = ResendEmailClient(
        "https://mail.test", "re_key", "shop@example.com", timeout_s=0.1, backoff_s=0
    )
    client.send("wanjiru@example.com", "Hello", "<p>Hi</p>")

    assert len(stub.posted) == 2
    assert stub.posted[0]["json"]["to"] == "wanjiru@example.com"


def test_email_client_maps_4xx_to_bad_gateway(monkeypatch):
    stub = _ClientStub(post_sequence=[_Response(422, {"message": "invalid"})])
    monkeypatch.setattr("app.integrations.email_client.httpx.Client", lambda timeout: stub)

    client = ResendEmailClient(
        "https://mail.test", "re_key", "shop@example.com", timeout_s=0.1, backoff_s=0
    )
    with pytest.raises(IntegrationBadGatewayError):
        client.send("wanjiru@example.com", "Hello", "<p>Hi</p>")


def test_mock_gateway_keeps_only_recent_pushes_with_unique_tickets():
    gateway = MockStkPushClient(max_records=2)

    tickets = [
        gateway.request_push("254712345678", Decimal("100"), f"ORD{n}").checkout_request_id
        for n in range(3)
    ]

    assert len(set(tickets)) == 3
    assert [request["order_reference"] for request in gateway.requests] == ["ORD1", "ORD2"]


def test_logging_sender_keeps_only_recent_emails():
    sender = LoggingEmailSender(max_records=2)

    for n in range(3):
        sender.send("wanjiru@example.com", f"Order {n}", "<p>hi</p>")

    assert [email["subject"] for email in sender.sent] == ["Order 1", "Order 2"]


@pytest.mark.parametrize(
    ("status_code", "error_type", "retryable"),
    [
        (429, IntegrationUnavailableError, True),
        (503, IntegrationUnavailableError, True),
        (404, IntegrationBadGatewayError, False),
    ],
)
def test_error_for_status_classifies_provider_answers(status_code, error_type, retryable):
    error = error_for_status(PAYMENT_GATEWAY, status_code)

    assert isinstance(error, error_type)
    assert error.retryable is retryable
    assert error.status_code == status_code
    assert str(error) == f"mpesa:{error.code}:{status_code}:mpesa returned {status_code}"


def test_error_for_status_passes_success_through():
    assert error_for_status(EMAIL_PROVIDER, 202) is None


def test_daraja_push_retries_rate_limited_request(monkeypatch):
    stub = _ClientStub(
        get_sequence=[_token()],
        post_sequence=[_Response(429, {"errorMessage": "Spike arrest violation"}), _accepted()],
    )
    monkeypatch.setattr("app.integrations.mpesa_client.httpx.Client", lambda timeout: stub)

    result = _daraja(max_retries=1).request_push("254712345678", Decimal("100"), "A1B2C3D4")

    assert result.success is True
    assert len(stub.posted) == 2


def test_daraja_push_reports_status_when_5xx_body_is_not_json(monkeypatch):
    class _HtmlResponse(_Response):
        @property
        def content(self) -> bytes:
            return b"<html>Bad Gateway</html>"

        def json(self):
            raise ValueError("not json")

    stub = _ClientStub(get_sequence=[_token()], post_sequence=[_HtmlResponse(502)])
    monkeypatch.setattr("app.integrations.mpesa_client.httpx.Client", lambda timeout: stub)

    with pytest.raises(IntegrationUnavailableError) as exc:
        _daraja().request_push("254712345678", Decimal("100"), "A1B2C3D4")
    assert exc.value.status_code == 502
    assert exc.value.message == "Daraja returned 502"
