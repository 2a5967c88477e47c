import re

import pytest

from conftest import ADDRESS, login_user, place_order
from orders import generate_order_number


@pytest.fixture
def order_id(client, restaurant, user_headers):
    return place_order(client, restaurant["id"], user_headers, price=120.25, quantity=2)


def test_order_number_format():
    assert re.fullmatch(r"ORD\d{9}", generate_order_number())


def test_health(client):
    assert client.get("/api/orders/health").json()["service"] == "Order Service"


def test_create_from_cart(client, restaurant, user_headers):
    rid = restaurant["id"]
    client.post("/api/cart/add", headers=user_headers, json={
        "restaurantId": rid, "itemId": "i2", "name": "Thali", "price": 30, "quantity": 1,
    })
    oid = place_order(client, rid, user_headers, price=120.25, quantity=2)

    order = client.get(f"/api/orders/{oid}", headers=user_headers).json()["data"]
    assert order["status"] == "pending"
    assert order["subtotal"] == 270.5
    assert order["totalAmount"] == order["subtotal"]
    assert order["itemCount"] == 3
    assert order["customerName"] == "Unknown Customer"
    assert order["restaurantName"] == "Annapurna Mess"
    assert order["deliveryAddress"]["country"] == "India"
    assert order["paymentStatus"] == "N/A"

    assert client.get(f"/api/cart/{rid}", headers=user_headers).json()["data"]["items"] == []


def test_empty_cart_cannot_be_ordered(client, restaurant, user_headers):
    res = client.post("/api/orders/create-from-cart", headers=user_headers,
                      json={"restaurantId": restaurant["id"], "deliveryAddress": ADDRESS})
    assert res.status_code == 400
    assert res.json()["message"] == "Cart is empty or not found"

    res = client.post("/api/orders/create-from-cart", headers=user_headers,
                      json={"restaurantId": restaurant["id"], "deliveryAddress": {"city": "Pune"}})
    assert res.status_code == 400
    assert res.json()["errors"][0]["field"] == "deliveryAddress.street"


def test_status_moves_forward_only(client, restaurant, order_id):
    url = f"/api/orders/{order_id}"
    headers = restaurant["headers"]
    assert client.patch(f"{url}/status", headers=headers, json={"status": "ready"}).json()["data"]["status"] == "ready"

    res = client.patch(f"{url}/status", headers=headers, json={"status": "confirmed"})
    assert res.status_code == 400
    assert res.json()["message"] == "Order cannot be moved to confirmed from its current status"
    assert client.patch(f"{url}/status", headers=headers, json={"status": "cancelled"}).status_code == 400

    assert client.patch(f"{url}/status", headers=headers, json={"status": "delivered"}).status_code == 200
    res = client.patch(f"{url}/cancel", headers=headers, json={"reason": "Customer unreachable"})
    assert res.json()["message"] == "Order cannot be cancelled in current status"


def test_customer_cancels(client, restaurant, user_headers, order_id):
    res = client.patch(f"/api/orders/{order_id}/cancel", headers=user_headers, json={"reason": "Ordered by mistake"})
    data = res.json()["data"]
    assert data["status"] == "cancelled"
    assert data["cancelledBy"] == "customer"

    res = client.patch(f"/api/orders/{order_id}/status", headers=restaurant["headers"], json={"status": "confirmed"})
    assert res.status_code == 400


def test_orders_are_scoped_to_their_parties(client, restaurant, user_headers, admin_headers, order_id):
    other = login_user(client, "9111111111")
    assert client.get(f"/api/orders/{order_id}", headers=other).status_code == 404
    assert client.patch(f"/api/orders/{order_id}/cancel", headers=other, json={"reason": "Not mine"}).status_code == 404

    me = client.get("/api/user/profile", headers=user_headers).json()["data"]["_id"]
    assert client.get(f"/api/orders/customer/{me}", headers=user_headers).json()["total"] == 1
    assert client.get(f"/api/orders/customer/{me}", headers=other).status_code == 403

    assert client.get("/api/orders/restaurant", headers=restaurant["headers"]).json()["total"] == 1
    assert client.get(f"/api/orders/restaurant/{restaurant['id']}", headers=admin_headers).json()["total"] == 1
    assert client.get("/api/orders", headers=admin_headers).json()["total"] == 1
    assert client.get("/api/orders", headers=user_headers).status_code == 403
    assert client.get("/api/orders?status=lost", headers=admin_headers).status_code == 400


def test_admin_delete_archives(client, user_headers, admin_headers, order_id):
    assert client.delete(f"/api/orders/{order_id}", headers=admin_headers).status_code == 200
    assert client.get(f"/api/orders/{order_id}", headers=user_headers).status_code == 404
    assert client.get("/api/orders", headers=admin_headers).json()["total"] == 0
    assert client.delete(f"/api/orders/{order_id}", headers=admin_headers).status_code == 404


def test_stats(client, restaurant, user_headers, order_id):
    place_order(client, restaurant["id"], user_headers, price=50)
    client.patch(f"/api/orders/{order_id}/status", headers=restaurant["headers"], json={"status": "delivered"})

    stats = client.get("/api/orders/stats/overview", headers=restaurant["headers"]).json()["data"]
    assert stats["statusCounts"] == {"delivered": 1, "pending": 1}
    assert stats["totals"] == {"totalOrders": 2, "totalRevenue": 290.5, "avgOrderValue": 145.25}
    assert stats["dailyOrders"][0]["count"] == 2


def test_custom_order(client, restaurant, user_headers, admin_headers):
    me = client.get("/api/user/profile", headers=user_headers).json()["data"]["_id"]
    body = {
        "customer": me,
        "restaurant": restaurant["id"],
        "items": [{"itemId": "i9", "name": "Special Thali", "price": 150, "quantity": 2, "itemTotal": 1}],
        "deliveryAddress": ADDRESS,
    }
    res = client.post("/api/orders/create-custom", headers=restaurant["headers"], json=body)
    assert res.status_code == 201
    assert res.json()["data"]["totalAmount"] == 300

    res = client.post("/api/orders/create-custom", headers=restaurant["headers"],
                      json={**body, "restaurant": "64b000000000000000000000"})
    assert res.status_code == 403
    res = client.post("/api/orders/create-custom", headers=admin_headers,
                      json={**body, "customer": "64b000000000000000000000"})
    assert res.json()["message"] == "Customer not found"
