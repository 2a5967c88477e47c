def _driver_id(client, headers):
    return client.get("/api/driver/profile", headers=headers).json()["data"]["_id"]


def test_approve_requires_complete_registration(client, admin_headers, driver_headers):
    driver_id = _driver_id(client, driver_headers)
    res = client.put(f"/api/admin/drivers/{driver_id}/approve", headers=admin_headers)
    assert res.status_code == 400
    assert res.json()["message"] == "Driver registration is not complete"

    client.post("/api/driver/register/complete", headers=driver_headers)
    res = client.put(f"/api/admin/drivers/{driver_id}/approve", headers=admin_headers)
    assert res.status_code == 200
    assert res.json()["data"]["status"] == "approved"
    assert client.put(f"/api/admin/drivers/{driver_id}/approve", headers=admin_headers).status_code == 400
    assert client.get("/api/driver/dashboard", headers=driver_headers).status_code == 200


def test_reject_reason_length(client, admin_headers, driver_headers):
    driver_id = _driver_id(client, driver_headers)
    res = client.put(f"/api/admin/drivers/{driver_id}/reject", headers=admin_headers, json={"reason": "too short"})
    assert res.status_code == 400

    res = client.put(f"/api/admin/drivers/{driver_id}/reject", headers=admin_headers,
                     json={"reason": "Documents are not readable"})
    data = res.json()["data"]
    assert data["status"] == "rejected"
    assert data["isApproved"] is False
    assert data["isActive"] is False
    assert data["rejectionReason"] == "Documents are not readable"


def test_block_and_unblock_driver(client, admin_headers, driver_headers):
    driver_id = _driver_id(client, driver_headers)
    assert client.put(f"/api/admin/drivers/{driver_id}/unblock", headers=admin_headers).status_code == 400
    res = client.put(f"/api/admin/drivers/{driver_id}/block", headers=admin_headers,
                     json={"reason": "Repeated customer complaints"})
    assert res.json()["data"]["isBlocked"] is True
    assert client.get("/api/driver/profile", headers=driver_headers).json()["message"] == "Account is blocked"
    assert client.put(f"/api/admin/drivers/{driver_id}/unblock", headers=admin_headers).status_code == 200


def test_driver_stats_and_listing(client, admin_headers, driver_headers):
    stats = client.get("/api/admin/drivers/stats", headers=admin_headers).json()["data"]
    assert stats["totalDrivers"] == 1
    assert stats["pendingDrivers"] == 1
    assert stats["stepStats"]["step1"] == 1

    listing = client.get("/api/admin/drivers?status=pending", headers=admin_headers).json()
    assert listing["total"] == 1
    assert client.get("/api/admin/drivers?status=bogus", headers=admin_headers).status_code == 400


def test_unknown_driver(client, admin_headers):
    res = client.get("/api/admin/drivers/64b000000000000000000000", headers=admin_headers)
    assert res.status_code == 404
    assert client.get("/api/admin/drivers/nope", headers=admin_headers).status_code == 400


def test_block_user_stops_login(client, admin_headers, user_headers):
    user_id = client.get("/api/user/profile", headers=user_headers).json()["data"]["_id"]
    res = client.put(f"/api/admin/users/{user_id}/block", headers=admin_headers, json={"reason": "Abusive language"})
    assert res.status_code == 200
    res = client.post("/api/user/auth", json={"phone": "9000000003"})
    assert res.status_code == 403
    assert res.json()["message"].startswith("Account is blocked")

    stats = client.get("/api/admin/users/stats", headers=admin_headers).json()["data"]
    assert stats["blockedUsers"] == 1


def test_restaurant_approval(client, admin_headers, restaurant):
    rid = restaurant["id"]
    res = client.put(f"/api/admin/restaurants/{rid}/approve", headers=admin_headers)
    assert res.json()["data"]["status"] == "approved"
    assert client.put(f"/api/admin/restaurants/{rid}/approve", headers=admin_headers).status_code == 400
    listing = client.get("/api/admin/restaurants?search=annapurna", headers=admin_headers).json()
    assert listing["total"] == 1
