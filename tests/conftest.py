import os

import mongomock
import pymongo
import pytest

os.environ.setdefault("DATABASE_URL", "mongodb://localhost:27017")
os.environ.setdefault("DATABASE_NAME", "maate_test")
os.environ.setdefault("FILE_STORAGE", "inline")
pymongo.MongoClient = mongomock.MongoClient

import database  # noqa: E402
from fastapi.testclient import TestClient  # noqa: E402
from main import app  # noqa: E402


@pytest.fixture(autouse=True)
def clean_db():
    for name in database.db.list_collection_names():
        database.db.drop_collection(name)
    database.ensure_indexes()
    yield


@pytest.fixture
def client():
    with TestClient(app) as c:
        yield c


def bearer(token):
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture
def admin_headers(client):
    res = client.post("/api/admin/register", json={"name": "Root Admin", "phone": "9000000001", "password": "secret123"})
    assert res.status_code == 201
    return bearer(res.json()["data"]["token"])


@pytest.fixture
def restaurant(client):
    res = client.post("/api/restaurant/register", json={
        "phone": "9000000002", "password": "secret123", "businessName": "Annapurna Mess", "city": "Pune",
    })
    assert res.status_code == 201
    data = res.json()["data"]
    return {"id": data["restaurant"]["_id"], "headers": bearer(data["token"])}


def otp_login(client, path_send, path_verify, phone):
    client.post(path_send, json={"phone": phone})
    return client.post(path_verify, json={"phone": phone, "otp": "123456"})


@pytest.fixture
def user_headers(client):
    return login_user(client, "9000000003")


@pytest.fixture
def driver_headers(client):
    res = otp_login(client, "/api/driver/send-otp", "/api/driver/verify-otp", "9000000004")
    assert res.status_code == 200
    return bearer(res.json()["data"]["token"])


def login_user(client, phone):
    client.post("/api/user/auth", json={"phone": phone})
    return bearer(client.post("/api/user/auth", json={"phone": phone, "otp": "123456"}).json()["data"]["token"])


ADDRESS = {"street": "12 MG Road", "city": "Pune", "postalCode": "411001"}


def place_order(client, restaurant_id, headers, item_id="i1", price=120, quantity=1):
    client.post("/api/cart/add", headers=headers, json={
        "restaurantId": restaurant_id, "itemId": item_id, "name": f"Item {item_id}", "price": price,
        "quantity": quantity,
    })
    res = client.post("/api/orders/create-from-cart", headers=headers,
                      json={"restaurantId": restaurant_id, "deliveryAddress": ADDRESS})
    assert res.status_code == 201
    return res.json()["data"]["orderId"]


@pytest.fixture
def delivered_order(client, restaurant, user_headers):
    order_id = place_order(client, restaurant["id"], user_headers)
    res = client.patch(f"/api/orders/{order_id}/status", headers=restaurant["headers"], json={"status": "delivered"})
    assert res.status_code == 200
    return order_id
