from datetime import datetime, timedelta, timezone

import jwt
from fastapi.testclient import TestClient

import database
from admins import claim_bootstrap
from auth import JWT_ALG, JWT_SECRET, hash_password, verify_password
from conftest import bearer
from main import app


def test_health(client):
    assert client.get("/").json()["status"] == "ok"
    res = client.get("/test").json()
    assert res["backend"] == "✅ Running"
    assert res["storage"] == "inline"


def test_password_hashing():
    hashed = hash_password("secret123")
    assert hashed != "secret123"
    assert verify_password("secret123", hashed)
    assert not verify_password("wrong", hashed)
    assert not verify_password("secret123", "not-a-hash")


def test_user_otp_round_trip(client):
    res = client.post("/api/user/auth", json={"phone": "9876543210"})
    assert res.status_code == 200
    assert res.json()["data"]["isNewUser"] is True

    res = client.post("/api/user/auth", json={"phone": "9876543210", "otp": "123456"})
    assert res.status_code == 200
    data = res.json()["data"]
    payload = jwt.decode(data["token"], JWT_SECRET, algorithms=[JWT_ALG])
    assert payload["sub"] == data["user"]["_id"]
    assert data["user"]["isVerified"] is True
    assert "otp" not in data["user"]
    assert data["needsProfileCompletion"] is True


def test_user_wrong_otp(client):
    client.post("/api/user/auth", json={"phone": "9876543210"})
    res = client.post("/api/user/auth", json={"phone": "9876543210", "otp": "000000"})
    assert res.status_code == 400
    assert res.json() == {"success": False, "message": "Invalid or expired OTP"}


def test_user_otp_unknown_phone(client):
    res = client.post("/api/user/auth", json={"phone": "9876543299", "otp": "123456"})
    assert res.status_code == 404


def test_invalid_phone_is_validation_error(client):
    res = client.post("/api/user/auth", json={"phone": "12345"})
    assert res.status_code == 400
    body = res.json()
    assert body["message"] == "Validation failed"
    assert body["errors"][0]["field"] == "phone"


def test_driver_otp_requires_send_first(client):
    res = client.post("/api/driver/verify-otp", json={"phone": "9123456789", "otp": "123456"})
    assert res.status_code == 404
    assert res.json()["message"] == "Driver not found. Please send OTP first."


def test_first_admin_is_super_admin(client):
    first = client.post("/api/admin/register", json={"name": "Asha", "phone": "9000000010", "password": "secret123"})
    second = client.post("/api/admin/register", json={"name": "Ravi", "phone": "9000000011", "password": "secret123"})
    assert first.json()["data"]["admin"]["role"] == "super_admin"
    assert second.json()["data"]["admin"]["role"] == "admin"
    assert "password" not in first.json()["data"]["admin"]


def test_admin_duplicate_and_login(client):
    body = {"name": "Asha", "phone": "9000000010", "password": "secret123"}
    client.post("/api/admin/register", json=body)
    assert client.post("/api/admin/register", json=body).status_code == 400

    bad = client.post("/api/admin/login", json={"phone": "9000000010", "password": "nope"})
    assert bad.status_code == 401
    assert bad.json()["message"] == "Invalid phone number or password"
    good = client.post("/api/admin/login", json={"phone": "9000000010", "password": "secret123"})
    assert good.status_code == 200
    assert client.get("/api/admin/profile", headers=bearer(good.json()["data"]["token"])).status_code == 200


def test_missing_and_bad_tokens(client):
    res = client.get("/api/admin/profile")
    assert res.status_code == 401
    assert res.json()["message"] == "No token provided"
    assert client.get("/api/admin/profile", headers=bearer("garbage")).status_code == 401


def test_role_enforcement(client, user_headers):
    res = client.get("/api/admin/dashboard", headers=user_headers)
    assert res.status_code == 403


def test_super_admin_routes(client, admin_headers):
    other = client.post("/api/admin/register", json={"name": "Ravi", "phone": "9000000011", "password": "secret123"})
    other_id = other.json()["data"]["admin"]["_id"]
    other_headers = bearer(other.json()["data"]["token"])

    assert client.get("/api/admin/all", headers=other_headers).status_code == 403
    assert client.get("/api/admin/all", headers=admin_headers).json()["count"] == 2

    res = client.put(f"/api/admin/{other_id}/status", headers=admin_headers)
    assert res.json()["data"]["isActive"] is False
    assert client.get("/api/admin/profile", headers=other_headers).json()["message"] == "Account is deactivated"

    me = client.get("/api/admin/profile", headers=admin_headers).json()["data"]["_id"]
    res = client.put(f"/api/admin/{me}/status", headers=admin_headers)
    assert res.status_code == 400


def test_change_password(client, admin_headers):
    res = client.put("/api/admin/change-password", headers=admin_headers,
                     json={"currentPassword": "wrong", "newPassword": "another1"})
    assert res.status_code == 400
    res = client.put("/api/admin/change-password", headers=admin_headers,
                     json={"currentPassword": "secret123", "newPassword": "another1"})
    assert res.status_code == 200
    assert client.post("/api/admin/login", json={"phone": "9000000001", "password": "another1"}).status_code == 200


def test_unknown_route_uses_error_envelope(client):
    res = client.get("/api/nowhere")
    assert res.status_code == 404
    assert res.json() == {"success": False, "message": "Not Found"}


def test_startup_creates_indexes():
    for name in database.db.list_collection_names():
        database.db.drop_collection(name)
    with TestClient(app):
        assert "orderNumber_1" in database.db.order.index_information()
        assert "phone_1" in database.db.admin.index_information()


def test_expired_otp_is_rejected(client):
    client.post("/api/user/auth", json={"phone": "9876543210"})
    database.db.user.update_one(
        {"phone": "9876543210"}, {"$set": {"otpExpiry": datetime.now(timezone.utc) - timedelta(seconds=1)}}
    )
    res = client.post("/api/user/auth", json={"phone": "9876543210", "otp": "123456"})
    assert res.status_code == 400
    assert res.json()["message"] == "Invalid or expired OTP"


def test_repeated_otp_requests_keep_one_account(client):
    first = client.post("/api/user/auth", json={"phone": "9876543210"})
    second = client.post("/api/user/auth", json={"phone": "9876543210"})
    assert first.status_code == second.status_code == 200
    assert database.db.user.count_documents({"phone": "9876543210"}) == 1
    assert client.post("/api/user/auth", json={"phone": "9876543210", "otp": "123456"}).status_code == 200


def test_super_admin_seat_is_claimed_once(client):
    assert claim_bootstrap("first") is True
    assert claim_bootstrap("second") is False
    res = client.post("/api/admin/register", json={"name": "Asha", "phone": "9000000010", "password": "secret123"})
    assert res.json()["data"]["admin"]["role"] == "admin"
