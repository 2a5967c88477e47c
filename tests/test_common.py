from datetime import datetime, timezone

import pytest
from bson import ObjectId
from fastapi import HTTPException

import common


def test_parse_date_day_month_year():
    assert common.parse_date("15/08/1990") == datetime(1990, 8, 15, tzinfo=timezone.utc)


@pytest.mark.parametrize("value", ["31/02/2000", "32/01/2000", "01/13/2000", "01/01/1800", "aa/bb/cccc", "", None])
def test_parse_date_rejects_invalid(value):
    assert common.parse_date(value) is None


def test_parse_date_iso_fallback():
    parsed = common.parse_date("2024-03-01T10:00:00Z")
    assert parsed == datetime(2024, 3, 1, 10, tzinfo=timezone.utc)


def test_to_object_id():
    oid = ObjectId()
    assert common.to_object_id(str(oid)) == oid
    with pytest.raises(HTTPException) as exc:
        common.to_object_id("not-an-id")
    assert exc.value.status_code == 400


def test_serialize_hides_secrets_and_stringifies_ids():
    oid = ObjectId()
    out = common.serialize({"_id": oid, "password": "x", "otp": "123456", "nested": [{"ref": oid}]})
    assert out == {"_id": str(oid), "nested": [{"ref": str(oid)}]}


def test_require_reason():
    with pytest.raises(HTTPException) as exc:
        common.require_reason("too short", "Rejection")
    assert exc.value.detail == "Rejection reason must be at least 10 characters"
    assert common.require_reason("  duplicate content  ", "Block") == "duplicate content"


def test_toggle_flag_flips_and_returns_none_when_missing(client):
    db = common.get_db()
    oid = db["category"].insert_one({"restaurant": "r1", "name": "Thali", "isActive": True}).inserted_id
    assert common.toggle_flag("category", {"_id": oid}, "isActive")["isActive"] is False
    assert common.toggle_flag("category", {"_id": oid}, "isActive")["isActive"] is True
    assert common.toggle_flag("category", {"_id": ObjectId()}, "isActive") is None


def test_toggle_flag_rejects_unknown_field(client):
    with pytest.raises(ValueError):
        common.toggle_flag("category", {}, "isDeleted")
