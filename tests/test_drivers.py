from datetime import datetime

import database
from common import as_utc
from drivers import registration_state


PNG = b"\x89PNG\r\n\x1a\n" + b"\x00" * 32


def test_registration_state_defaults():
    state = registration_state({})
    assert state["registrationStep"] == 1
    assert state["isRegistrationComplete"] is False
    assert state["missingSections"][0] == "personal"
    assert state["progress"] == 14


def test_personal_section_with_image(client, driver_headers):
    res = client.put(
        "/api/driver/register/personal",
        headers=driver_headers,
        data={"firstName": " Raju ", "dob": "15/08/1990", "email": "RAJU@Example.com"},
        files={"profileImage": ("me.png", PNG, "image/png")},
    )
    assert res.status_code == 200
    data = res.json()["data"]
    assert data["firstName"] == "Raju"
    assert data["email"] == "raju@example.com"
    assert data["registrationStep"] == 1
    assert data["profileImage"].startswith("data:image/png;base64,")


def test_bad_date_is_rejected(client, driver_headers):
    res = client.put("/api/driver/register/personal", headers=driver_headers, data={"dob": "31/02/1990"})
    assert res.status_code == 400
    assert "DD/MM/YYYY" in res.json()["message"]


def test_non_image_upload_is_rejected(client, driver_headers):
    res = client.put(
        "/api/driver/register/bank",
        headers=driver_headers,
        data={"bankName": "SBI"},
        files={"passbookImage": ("doc.txt", b"hello", "text/plain")},
    )
    assert res.status_code == 400
    assert res.json()["message"] == "Only image files are allowed!"


def test_complete_without_sections_is_forced(client, driver_headers):
    res = client.post("/api/driver/register/complete", headers=driver_headers)
    assert res.status_code == 200
    assert res.json()["data"]["isRegistrationComplete"] is True

    progress = client.get("/api/driver/progress", headers=driver_headers).json()["data"]
    assert progress["registrationStep"] == 7
    assert progress["forcedComplete"] is True
    assert progress["progress"] == 100
    assert len(progress["missingSections"]) == 6


def test_sections_are_tracked(client, driver_headers):
    client.put("/api/driver/register/bank", headers=driver_headers, data={"ifscCode": "sbin0001234"})
    client.put("/api/driver/register/vehicle", headers=driver_headers, data={"vehicleNumber": "mh12ab1234"})
    progress = client.get("/api/driver/progress", headers=driver_headers).json()["data"]
    assert progress["registrationStep"] == 5
    assert progress["completedSections"] == ["bank", "vehicle"]
    profile = client.get("/api/driver/profile", headers=driver_headers).json()["data"]
    assert profile["ifscCode"] == "SBIN0001234"
    assert profile["vehicleNumber"] == "MH12AB1234"


def test_dashboard_requires_approval(client, driver_headers):
    res = client.get("/api/driver/dashboard", headers=driver_headers)
    assert res.status_code == 403
    assert res.json()["message"] == "Driver is not approved yet"


def test_delete_image(client, driver_headers):
    assert client.delete("/api/driver/images/selfie", headers=driver_headers).status_code == 400
    assert client.delete("/api/driver/images/profile", headers=driver_headers).status_code == 404
    client.put("/api/driver/register/personal", headers=driver_headers,
               files={"profileImage": ("me.png", PNG, "image/png")})
    assert client.delete("/api/driver/images/profile", headers=driver_headers).status_code == 200
    assert "profileImage" not in client.get("/api/driver/profile", headers=driver_headers).json()["data"]


def test_redoing_an_earlier_section_moves_step_back(client, driver_headers):
    client.put("/api/driver/register/driving-license", headers=driver_headers, data={"dlNumber": "mh1220110012345"})
    client.put("/api/driver/register/bank", headers=driver_headers, data={"bankName": "SBI"})
    progress = client.get("/api/driver/progress", headers=driver_headers).json()["data"]
    assert progress["registrationStep"] == 2
    assert progress["completedSections"] == ["bank", "driving-license"]


def test_send_otp_is_repeatable(client):
    for _ in range(2):
        res = client.post("/api/driver/send-otp", json={"phone": "9123400000"})
        assert res.status_code == 200
        assert res.json()["data"]["isNewUser"] is True
    assert database.db.driver.count_documents({"phone": "9123400000"}) == 1

    res = client.post("/api/driver/verify-otp", json={"phone": "9123400000", "otp": "123456"})
    data = res.json()["data"]
    assert data["isNewUser"] is True
    assert data["needsProfileCompletion"] is True


def test_online_status_and_logout_touch_last_active(client, driver_headers):
    stale = datetime(2020, 1, 1)
    database.db.driver.update_one({"phone": "9000000004"}, {"$set": {"lastActive": stale}})
    res = client.put("/api/driver/online-status", headers=driver_headers, json={"isOnline": True})
    assert res.json()["message"] == "Driver is now online"
    doc = database.db.driver.find_one({"phone": "9000000004"})
    assert doc["isOnline"] is True
    assert as_utc(doc["lastActive"]).year > 2020

    database.db.driver.update_one({"phone": "9000000004"}, {"$set": {"lastActive": stale}})
    assert client.post("/api/driver/logout", headers=driver_headers).status_code == 200
    doc = database.db.driver.find_one({"phone": "9000000004"})
    assert doc["isOnline"] is False
    assert as_utc(doc["lastActive"]).year > 2020
