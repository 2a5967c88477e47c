ADDRESS = {"fullAddress": "12 MG Road", "city": "Pune", "pincode": "411001"}


def test_profile_name_too_short(client, user_headers):
    res = client.put("/api/user/profile", headers=user_headers, json={"firstName": "A"})
    assert res.status_code == 400
    assert res.json()["message"] == "Validation failed"


def test_profile_completion(client, user_headers):
    res = client.put("/api/user/profile", headers=user_headers, json={"firstName": "Asha"})
    assert res.json()["data"]["isProfile"] is False
    res = client.put("/api/user/profile", headers=user_headers,
                     json={"lastName": "Rao", "dateOfBirth": "01/01/1995", "email": "ASHA@example.com"})
    data = res.json()["data"]
    assert data["isProfile"] is True
    assert data["email"] == "asha@example.com"

    dash = client.get("/api/user/dashboard", headers=user_headers).json()["data"]
    assert dash["isNewUser"] is False
    assert dash["needsProfileCompletion"] is False


def test_profile_bad_date(client, user_headers):
    res = client.put("/api/user/profile", headers=user_headers, json={"dateOfBirth": "30/02/1995"})
    assert res.status_code == 400


def test_first_address_becomes_default(client, user_headers):
    first = client.post("/api/user/addresses", headers=user_headers, json=ADDRESS).json()["data"]
    assert first["isDefault"] is True
    second = client.post("/api/user/addresses", headers=user_headers,
                         json={**ADDRESS, "type": "work", "isDefault": True}).json()["data"]
    listing = client.get("/api/user/addresses", headers=user_headers).json()
    assert listing["count"] == 2
    defaults = [a["_id"] for a in listing["data"] if a["isDefault"]]
    assert defaults == [second["_id"]]

    client.put(f"/api/user/addresses/{first['_id']}/default", headers=user_headers)
    defaults = [a["_id"] for a in client.get("/api/user/addresses", headers=user_headers).json()["data"]
                if a["isDefault"]]
    assert defaults == [first["_id"]]


def test_delete_address_is_soft(client, user_headers):
    addr = client.post("/api/user/addresses", headers=user_headers, json=ADDRESS).json()["data"]
    assert client.delete(f"/api/user/addresses/{addr['_id']}", headers=user_headers).status_code == 200
    assert client.get("/api/user/addresses", headers=user_headers).json()["count"] == 0
    assert client.delete(f"/api/user/addresses/{addr['_id']}", headers=user_headers).status_code == 404
