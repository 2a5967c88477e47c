from datetime import datetime, timedelta, timezone

import pytest

from conftest import login_user
from offers import calculate_discount, check_user_eligibility, validate_order


def _window(days_from=-1, days_to=30):
    at = datetime.now(timezone.utc)
    return (at + timedelta(days=days_from)).isoformat(), (at + timedelta(days=days_to)).isoformat()


def offer_body(**overrides):
    start, end = _window()
    body = {
        "title": "Festive 20",
        "couponCode": "fest20",
        "discountType": "percentage",
        "discountValue": 20,
        "minimumOrderAmount": 100,
        "maximumOrderValue": 2000,
        "startDate": start,
        "endDate": end,
        "perUserLimit": 1,
        "totalUsageLimit": 2,
    }
    body.update(overrides)
    return body


@pytest.fixture
def offer(client, restaurant):
    res = client.post("/api/restaurant/offers", headers=restaurant["headers"], json=offer_body())
    assert res.status_code == 201
    return res.json()["data"]


def test_discount_math():
    assert calculate_discount({"discountType": "flat", "discountValue": 50}, 30) == 30
    assert calculate_discount({"discountType": "percentage", "discountValue": 10}, 199) == 19.9


def test_order_bounds():
    offer = {"minimumOrderAmount": 100, "maximumOrderValue": 500, "applicableItems": ["i1"]}
    assert validate_order(offer, 50, []) == (False, "Minimum order amount required: ₹100")
    assert validate_order(offer, 600, []) == (False, "Maximum order value exceeded: ₹500")
    assert validate_order(offer, 200, [{"itemId": "i2"}])[0] is False
    assert validate_order(offer, 200, [{"itemId": "i1"}]) == (True, None)


def test_eligibility_order_of_checks():
    at = datetime.now(timezone.utc)
    base = {"isActive": True, "startDate": at - timedelta(days=1), "endDate": at + timedelta(days=1),
            "totalUsageLimit": 1, "perUserLimit": 1}
    assert check_user_eligibility({**base, "totalUsed": 1}, "u1") == (False, "Offer usage limit reached")
    assert check_user_eligibility({**base, "isActive": False}, "u1") == (False, "Offer is not valid")
    used = {**base, "totalUsageLimit": 5, "userUsage": {"u1": {"usageCount": 1}}}
    assert check_user_eligibility(used, "u1") == (False, "User usage limit reached")
    assert check_user_eligibility(used, "u2") == (True, None)


def test_create_normalizes_code(offer):
    assert offer["couponCode"] == "FEST20"
    assert offer["isValid"] is True
    assert offer["remainingUses"] == 2


def test_create_rejects_bad_input(client, restaurant, offer):
    headers = restaurant["headers"]
    res = client.post("/api/restaurant/offers", headers=headers, json=offer_body(couponCode="FEST20"))
    assert res.json()["message"] == "Coupon code already exists"
    res = client.post("/api/restaurant/offers", headers=headers, json=offer_body(couponCode="X", discountValue=150))
    assert res.json()["message"] == "Percentage discount cannot exceed 100"
    start, _ = _window()
    res = client.post("/api/restaurant/offers", headers=headers, json=offer_body(couponCode="Y", endDate=start))
    assert res.json()["message"] == "End date must be after start date"
    res = client.post("/api/restaurant/offers", headers=headers, json=offer_body(couponCode="BAD-CODE"))
    assert res.status_code == 400


def test_validate_coupon(client, restaurant, offer, user_headers):
    body = {"couponCode": "fest20", "restaurantId": restaurant["id"], "orderAmount": 500}
    res = client.post("/api/offers/validate", headers=user_headers, json=body)
    assert res.json()["data"]["discount"] == 100
    assert res.json()["data"]["finalAmount"] == 400

    res = client.post("/api/offers/validate", headers=user_headers, json={**body, "orderAmount": 50})
    assert res.status_code == 400
    res = client.post("/api/offers/validate", headers=user_headers, json={**body, "couponCode": "NOPE"})
    assert res.json()["message"] == "Invalid coupon code"


def test_redeem_limits(client, restaurant, offer, user_headers):
    body = {"couponCode": "FEST20", "restaurantId": restaurant["id"], "orderAmount": 500}
    res = client.post("/api/offers/redeem", headers=user_headers, json=body)
    assert res.status_code == 200
    assert res.json()["data"]["offer"]["totalUsed"] == 1

    res = client.post("/api/offers/redeem", headers=user_headers, json=body)
    assert res.status_code == 400
    assert res.json()["message"] == "User usage limit reached"

    assert client.post("/api/offers/redeem", headers=login_user(client, "9111111111"), json=body).status_code == 200
    res = client.post("/api/offers/redeem", headers=login_user(client, "9222222222"), json=body)
    assert res.json()["message"] == "Offer usage limit reached"

    usage = client.get(f"/api/restaurant/offers/{offer['_id']}/usage", headers=restaurant["headers"]).json()["data"]
    assert usage["totalUsed"] == 2
    assert usage["uniqueUsers"] == 2


def test_public_listing_only_valid(client, restaurant, offer):
    start, end = _window(days_from=5, days_to=10)
    client.post("/api/restaurant/offers", headers=restaurant["headers"],
                json=offer_body(couponCode="LATER", startDate=start, endDate=end))
    res = client.get(f"/api/offers/restaurant/{restaurant['id']}").json()
    assert [o["couponCode"] for o in res["data"]] == ["FEST20"]
    assert "userUsage" not in res["data"][0]


def test_admin_toggle_ends_offer(client, offer, admin_headers):
    res = client.put(f"/api/admin/offers/{offer['_id']}/toggle-status", headers=admin_headers)
    data = res.json()["data"]
    assert data["isActive"] is False
    assert data["isValid"] is False

    res = client.put(f"/api/admin/offers/{offer['_id']}/toggle-status", headers=admin_headers)
    assert res.json()["data"]["isValid"] is True
