import database

PLAN = {
    "name": "Weekly Veg",
    "pricePerWeek": 999,
    "features": ["  Free delivery ", "Fresh rotis"],
}


def _create(client, restaurant, **overrides):
    res = client.post("/api/restaurant/plans", headers=restaurant["headers"], json={**PLAN, **overrides})
    assert res.status_code == 201
    return res.json()["data"]


def test_create_and_read_back(client, restaurant):
    plan = _create(client, restaurant)
    assert plan["features"] == ["Free delivery", "Fresh rotis"]
    assert plan["isActive"] is True and plan["isAvailable"] is True

    fetched = client.get(f"/api/restaurant/plans/{plan['_id']}", headers=restaurant["headers"]).json()["data"]
    assert fetched["name"] == "Weekly Veg"
    assert fetched["pricePerWeek"] == 999
    assert fetched["restaurant"] == restaurant["id"]


def test_blank_feature_is_rejected(client, restaurant):
    res = client.post("/api/restaurant/plans", headers=restaurant["headers"], json={**PLAN, "features": ["  "]})
    assert res.status_code == 400


def test_duplicate_name(client, restaurant):
    _create(client, restaurant)
    res = client.post("/api/restaurant/plans", headers=restaurant["headers"], json=PLAN)
    assert res.status_code == 400
    assert res.json()["message"] == "A plan with this name already exists"


def test_meals_and_calories(client, restaurant):
    plan = _create(client, restaurant)
    url = f"/api/restaurant/plans/{plan['_id']}/meals/Monday/lunch"
    res = client.put(url, headers=restaurant["headers"],
                     json={"meals": [{"name": "Dal rice", "calories": 450}, {"name": "Salad", "calories": 40}]})
    data = res.json()["data"]
    assert data["totalWeeklyCalories"] == 490
    assert data["averageDailyCalories"] == 70
    assert client.put(f"/api/restaurant/plans/{plan['_id']}/meals/funday/lunch", headers=restaurant["headers"],
                      json={"meals": []}).status_code == 400


def test_features(client, restaurant):
    plan = _create(client, restaurant)
    url = f"/api/restaurant/plans/{plan['_id']}/features"
    client.post(url, headers=restaurant["headers"], json={"feature": "Weekend special"})
    res = client.request("DELETE", url, headers=restaurant["headers"], json={"feature": "Fresh rotis"})
    assert res.json()["data"]["features"] == ["Free delivery", "Weekend special"]
    res = client.request("DELETE", url, headers=restaurant["headers"], json={"feature": "Missing"})
    assert res.status_code == 400
    assert res.json()["message"] == "Feature not found in plan"


def test_delete_with_subscribers(client, restaurant):
    plan = _create(client, restaurant)
    database.db["plan"].update_one({"name": "Weekly Veg"}, {"$set": {"totalSubscribers": 3}})
    res = client.delete(f"/api/restaurant/plans/{plan['_id']}", headers=restaurant["headers"])
    assert res.status_code == 400
    assert res.json()["message"] == "Cannot delete plan with active subscribers"

    database.db["plan"].update_one({"name": "Weekly Veg"}, {"$set": {"totalSubscribers": 0}})
    assert client.delete(f"/api/restaurant/plans/{plan['_id']}", headers=restaurant["headers"]).status_code == 200
    assert client.get(f"/api/restaurant/plans/{plan['_id']}", headers=restaurant["headers"]).status_code == 404


def test_public_listing_hides_unavailable(client, restaurant):
    plan = _create(client, restaurant)
    _create(client, restaurant, name="Monthly Non Veg")
    client.put(f"/api/restaurant/plans/{plan['_id']}/toggle-availability", headers=restaurant["headers"])
    res = client.get(f"/api/restaurants/{restaurant['id']}/plans").json()
    assert [p["name"] for p in res["data"]] == ["Monthly Non Veg"]


def test_admin_stats(client, admin_headers, restaurant):
    _create(client, restaurant)
    stats = client.get("/api/admin/plans/stats", headers=admin_headers).json()["data"]
    assert stats["totalPlans"] == 1
    assert stats["activePlans"] == 1
