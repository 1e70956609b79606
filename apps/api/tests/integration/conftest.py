from decimal import Decimal

import pytest

from app.auth.jwt import issue_jwt
from app.config import settings


def _headers(role: str, sub: str, email: str | None = None) -> dict[str, str]:
    claims = {"sub": sub, "role": role}
    if email:
        claims["email"] = email
    token = issue_jwt(claims, settings.jwt_secret)
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture
def auth_headers():
    return {
        "customer": _headers("CUSTOMER", "customer-1", "wanjiru@example.com"),
        "customer_b": _headers("CUSTOMER", "customer-2"),
        "staff": _headers("STAFF", "staff-1"),
        "admin": _headers("ADMIN", "admin-1"),
    }


@pytest.fixture
def shipping_payload():
    return {
        "full_name": "Wanjiru Kamau",
        "phone": "0712345678",
        "address": "Moi Avenue 12",
        "city": "Nairobi",
        "email": "wanjiru@example.com",
    }


@pytest.fixture
def cart_via_api(client, auth_headers):
    def _fill(headers: dict[str, str] | None = None) -> dict:
        headers = headers or auth_headers["customer"]
        client.post(
            "/api/v1/cart/items",
            json={
                "product_id": "maize-90kg",
                "product_name": "Maize 90kg bag",
                "unit_price": "3000",
                "quantity": 1,
            },
            headers=headers,
        )
        response = client.post(
            "/api/v1/cart/items",
            json={
                "product_id": "beans-10kg",
                "product_name": "Beans 10kg",
                "unit_price": "1000",
                "quantity": 2,
            },
            headers=headers,
        )
        assert response.status_code == 201
        assert Decimal(response.json()["subtotal"]) == Decimal("5000")
        return response.json()

    return _fill


@pytest.fixture
def callback_payload():
    def _payload(
        checkout_request_id: str,
        result_code: int = 0,
        receipt: str = "QKX1A2B3C4",
        amount: int = 5000,
    ):
        body = {
            "MerchantRequestID": "29115-34620561-1",
            "CheckoutRequestID": checkout_request_id,
            "ResultCode": result_code,
            "ResultDesc": "The service request is processed successfully.",
        }
        if result_code == 0:
            body["CallbackMetadata"] = {
                "Item": [
                    {"Name": "Amount", "Value": amount},
                    {"Name": "MpesaReceiptNumber", "Value": receipt},
                    {"Name": "PhoneNumber", "Value": 254712345678},
                ]
            }
        return {"Body": {"stkCallback": body}}

    return _payload


@pytest.fixture
def callback_url():
    return f"/api/v1/payments/mpesa/callback?token={settings.mpesa_callback_token}"
