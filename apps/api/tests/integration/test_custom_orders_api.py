from decimal import Decimal

import pytest

from app.integrations.mpesa_client import _mock_gateway


@pytest.fixture
def custom_payload():
    return {
        "full_name": "Otieno Farms",
        "phone": "0722000111",
        "product_name": "Yellow maize",
        "quantity": "2",
        "unit": "tonnes",
        "delivery_address": "Plot 7, Kitale Road",
        "city": "Eldoret",
    }


@pytest.fixture
def custom_order(client, auth_headers, custom_payload):
    response = client.post(
        "/api/v1/custom-orders", json=custom_payload, headers=auth_headers["customer"]
    )
    assert response.status_code == 201
    return response.json()


def _set_status(client, headers, order_id, status, **extra):
    return client.post(
        f"/api/v1/custom-orders/{order_id}/status",
        json={"status": status, **extra},
        headers=headers,
    )


def test_create_custom_order_defaults_email_from_token(custom_order):
    assert custom_order["status"] == "pending"
    assert custom_order["payment_status"] == "pending"
    assert custom_order["deposit_amount"] is None
    assert custom_order["email"] == "wanjiru@example.com"
    assert custom_order["user_id"] == "customer-1"


def test_create_custom_order_validates_input(client, auth_headers, custom_payload):
    blank = client.post(
        "/api/v1/custom-orders",
        json={**custom_payload, "city": ""},
        headers=auth_headers["customer"],
    )
    assert blank.status_code == 400
    assert blank.json()["detail"]["code"] == "MISSING_FIELDS"

    bad_unit = client.post(
        "/api/v1/custom-orders",
        json={**custom_payload, "unit": "crates"},
        headers=auth_headers["customer"],
    )
    assert bad_unit.status_code == 422


def test_listing_is_scoped_to_the_caller(client, auth_headers, custom_order):
    mine = client.get("/api/v1/custom-orders", headers=auth_headers["customer"]).json()
    theirs = client.get("/api/v1/custom-orders", headers=auth_headers["customer_b"]).json()
    staff = client.get("/api/v1/custom-orders?status=pending", headers=auth_headers["staff"])

    assert [item["id"] for item in mine["items"]] == [custom_order["id"]]
    assert theirs["items"] == []
    assert [item["id"] for item in staff.json()["items"]] == [custom_order["id"]]

    hidden = client.get(
        f"/api/v1/custom-orders/{custom_order['id']}", headers=auth_headers["customer_b"]
    )
    assert hidden.status_code == 404


def test_ready_without_deposit_is_rejected(client, auth_headers, custom_order):
    response = _set_status(client, auth_headers["staff"], custom_order["id"], "ready")

    assert response.status_code == 400
    assert response.json()["detail"]["code"] == "DEPOSIT_REQUIRED"


def test_deposit_cannot_be_requested_before_ready(client, auth_headers, custom_order):
    response = client.post(
        f"/api/v1/custom-orders/{custom_order['id']}/push",
        json={"phone": "0722000111"},
        headers=auth_headers["customer"],
    )

    assert response.status_code == 400
    assert response.json()["detail"]["code"] == "DEPOSIT_NOT_DUE"


def test_deposit_flow_moves_order_to_deposit_paid(
    client, auth_headers, custom_order, callback_payload, callback_url
):
    order_id = custom_order["id"]
    ready = _set_status(
        client, auth_headers["staff"], order_id, "ready", deposit_amount="15000"
    )
    assert ready.status_code == 200
    assert ready.json()["notification"]["event"] == "custom_order_ready"

    notifications = client.get("/api/v1/notifications", headers=auth_headers["customer"]).json()
    assert "Deposit required: KES 15,000" in notifications["items"][0]["message"]

    push = client.post(
        f"/api/v1/custom-orders/{order_id}/push",
        json={"phone": "0722000111"},
        headers=auth_headers["customer"],
    )
    assert push.status_code == 200
    assert Decimal(push.json()["amount"]) == Decimal("15000")
    assert _mock_gateway.requests[-1]["phone"] == "254722000111"

    paid = callback_payload(push.json()["checkout_request_id"], amount=15000)
    ack = client.post(callback_url, json=paid)
    assert ack.json()["ResultDesc"] == "Accepted"

    outcome = client.get(
        f"/api/v1/custom-orders/{order_id}/payment", headers=auth_headers["customer"]
    )
    assert outcome.json()["outcome"] == "paid"

    detail = client.get(f"/api/v1/custom-orders/{order_id}", headers=auth_headers["customer"])
    assert detail.json()["status"] == "deposit_paid"
    assert detail.json()["payment_status"] == "paid"
    assert detail.json()["payment_reference"] == "QKX1A2B3C4"


def test_customers_cannot_change_custom_order_status(client, auth_headers, custom_order):
    response = _set_status(client, auth_headers["customer"], custom_order["id"], "reviewing")

    assert response.status_code == 403
