import math
from datetime import datetime, timezone
from typing import Optional

from bson import ObjectId
from fastapi import HTTPException
from pymongo import ReturnDocument

import database

# Boolean status fields that may be flipped through toggle_flag, per collection.
TOGGLE_FIELDS = {
    "admin": {"isActive"},
    "driver": {"isActive"},
    "user": {"isActive"},
    "restaurant": {"isActive", "isOnline"},
    "category": {"isActive"},
    "item": {"isActive"},
    "plan": {"isActive", "isAvailable"},
    "offer": {"isActive"},
    "review": {"isVisible", "isFeatured"},
}

SECRET_FIELDS = ("password", "otp", "otpExpiry")


def now():
    return datetime.now(timezone.utc)


def get_db():
    if database.db is None:
        raise HTTPException(status_code=500, detail="Database not configured")
    return database.db


def to_object_id(id_str: str) -> ObjectId:
    try:
        return ObjectId(id_str)
    except Exception:
        raise HTTPException(status_code=400, detail="Invalid id format")


def canonical_id(id_str: str) -> str:
    """Validated id in the lowercase form stored on referencing documents"""
    return str(to_object_id(id_str))


def serialize(value, hidden=SECRET_FIELDS):
    """Make a Mongo document JSON friendly: ObjectIds become strings, secrets are dropped"""
    if isinstance(value, ObjectId):
        return str(value)
    if isinstance(value, dict):
        return {k: serialize(v, hidden) for k, v in value.items() if k not in hidden}
    if isinstance(value, list):
        return [serialize(v, hidden) for v in value]
    return value


def ok(data=None, message: Optional[str] = None, **extra):
    body = {"success": True}
    if message:
        body["message"] = message
    if data is not None:
        body["data"] = data
    body.update(extra)
    return body


def paginate(collection_name: str, filt: dict, page: int = 1, limit: int = 10, sort=None, transform=None):
    """Return one page of documents wrapped in the list envelope"""
    db = get_db()
    page = max(page, 1)
    limit = max(limit, 1)
    total = db[collection_name].count_documents(filt)
    docs = database.get_documents(collection_name, filt, limit=limit, skip=(page - 1) * limit, sort=sort)
    transform = transform or serialize
    data = [transform(d) for d in docs]
    return {
        "success": True,
        "count": len(data),
        "total": total,
        "totalPages": math.ceil(total / limit),
        "currentPage": page,
        "data": data,
    }


def parse_date(value: Optional[str]) -> Optional[datetime]:
    """Parse DD/MM/YYYY (or ISO-8601) into a UTC datetime; None when invalid"""
    if not value or not isinstance(value, str):
        return None
    value = value.strip()
    parts = value.split("/")
    if len(parts) == 3:
        try:
            day, month, year = (int(p) for p in parts)
        except ValueError:
            return None
        if not (1 <= day <= 31 and 1 <= month <= 12 and 1900 <= year <= 2100):
            return None
        try:
            return datetime(year, month, day, tzinfo=timezone.utc)
        except ValueError:
            # e.g. 31/02
            return None
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def as_utc(value):
    """Mongo hands back naive datetimes; treat them as UTC"""
    if isinstance(value, datetime) and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def toggle_flag(collection_name: str, filt: dict, field: str, extra_set: Optional[dict] = None):
    """Flip a boolean status field with a compare-and-swap; returns the updated document or None"""
    if field not in TOGGLE_FIELDS.get(collection_name, ()):
        raise ValueError(f"{collection_name}.{field} is not a toggleable field")
    db = get_db()
    for _ in range(3):
        doc = db[collection_name].find_one(filt)
        if not doc:
            return None
        current = bool(doc.get(field, False))
        guard = {field: True} if current else {field: {"$ne": True}}
        update = {field: not current, "updated_at": now()}
        if extra_set:
            update.update(extra_set)
        updated = db[collection_name].find_one_and_update(
            {**filt, **guard}, {"$set": update}, return_document=ReturnDocument.AFTER
        )
        if updated:
            return updated
    raise HTTPException(status_code=409, detail="Resource was modified concurrently, please retry")


def require_reason(reason: Optional[str], label: str) -> str:
    reason = (reason or "").strip()
    if len(reason) < 10:
        raise HTTPException(status_code=400, detail=f"{label} reason must be at least 10 characters")
    return reason
