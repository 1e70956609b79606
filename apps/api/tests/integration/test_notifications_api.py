def _place_order(client, auth_headers, shipping_payload, cart_via_api):
    cart_via_api()
    response = client.post(
        "/api/v1/checkout/orders",
        json={"shipping": shipping_payload},
        headers=auth_headers["customer"],
    )
    assert response.status_code == 201
    return response.json()


def test_customer_inbox_lists_and_marks_read(
    client, auth_headers, shipping_payload, cart_via_api
):
    order = _place_order(client, auth_headers, shipping_payload, cart_via_api)
    headers = auth_headers["customer"]

    inbox = client.get("/api/v1/notifications", headers=headers).json()
    assert inbox["unread"] == 1
    notification = inbox["items"][0]
    assert notification["order_id"] == order["id"]
    assert notification["order_kind"] == "standard"
    assert notification["type"] == "order_placed"

    read = client.post(f"/api/v1/notifications/{notification['id']}/read", headers=headers)
    assert read.status_code == 200
    assert read.json()["is_read"] is True

    unread = client.get("/api/v1/notifications?unread_only=true", headers=headers).json()
    assert unread == {"items": [], "unread": 0}


def test_customers_only_see_their_own_notifications(
    client, auth_headers, shipping_payload, cart_via_api
):
    _place_order(client, auth_headers, shipping_payload, cart_via_api)
    notification_id = client.get(
        "/api/v1/notifications", headers=auth_headers["customer"]
    ).json()["items"][0]["id"]

    other = client.get("/api/v1/notifications", headers=auth_headers["customer_b"]).json()
    steal = client.post(
        f"/api/v1/notifications/{notification_id}/read", headers=auth_headers["customer_b"]
    )

    assert other["items"] == []
    assert steal.status_code == 404


def test_admin_inbox_is_staff_only(client, auth_headers, shipping_payload, cart_via_api):
    order = _place_order(client, auth_headers, shipping_payload, cart_via_api)

    forbidden = client.get("/api/v1/admin/notifications", headers=auth_headers["customer"])
    assert forbidden.status_code == 403

    inbox = client.get("/api/v1/admin/notifications", headers=auth_headers["staff"]).json()
    assert inbox["unread"] == 1
    entry = inbox["items"][0]
    assert entry["type"] == "order_placed"
    assert entry["title"] == f"New Order #{order['reference']}"
    assert entry["metadata"]["reference"] == order["reference"]

    read = client.post(
        f"/api/v1/admin/notifications/{entry['id']}/read", headers=auth_headers["admin"]
    )
    assert read.json()["is_read"] is True
