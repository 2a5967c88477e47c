"""
MongoDB access for the Maate backend.

`db` is None when DATABASE_URL / DATABASE_NAME are not set; routes check for that
and answer 500 "Database not configured".
"""
import os
from datetime import datetime, timezone
from typing import Optional, Union

from pymongo import MongoClient, ASCENDING, DESCENDING
from pydantic import BaseModel

DATABASE_URL = os.getenv("DATABASE_URL")
DATABASE_NAME = os.getenv("DATABASE_NAME")

db = None
if DATABASE_URL and DATABASE_NAME:
    client = MongoClient(DATABASE_URL)
    db = client[DATABASE_NAME]


def _now():
    return datetime.now(timezone.utc)


def create_document(collection_name: str, data: Union[BaseModel, dict]) -> str:
    """Insert a document with created_at/updated_at stamps and return its id as a string"""
    if db is None:
        raise Exception("Database not available. Check DATABASE_URL and DATABASE_NAME environment variables.")

    if isinstance(data, BaseModel):
        data_dict = data.model_dump()
    else:
        data_dict = dict(data)

    data_dict["created_at"] = _now()
    data_dict["updated_at"] = _now()

    result = db[collection_name].insert_one(data_dict)
    return str(result.inserted_id)


def get_documents(collection_name: str, filter_dict: Optional[dict] = None, limit: Optional[int] = None,
                  skip: int = 0, sort: Optional[list] = None):
    """Find documents in a collection, newest first unless a sort is given"""
    if db is None:
        raise Exception("Database not available. Check DATABASE_URL and DATABASE_NAME environment variables.")

    cursor = db[collection_name].find(filter_dict or {})
    cursor = cursor.sort(sort or [("created_at", DESCENDING)])
    if skip:
        cursor = cursor.skip(skip)
    if limit:
        cursor = cursor.limit(limit)
    return list(cursor)


def ensure_indexes():
    if db is None:
        return
    for name in ("admin", "driver", "user", "restaurant"):
        db[name].create_index([("phone", ASCENDING)], unique=True)
    db.offer.create_index([("couponCode", ASCENDING)], unique=True)
    db.offer.create_index([("restaurantId", ASCENDING), ("priority", DESCENDING)])
    db.plan.create_index([("restaurant", ASCENDING), ("name", ASCENDING)], unique=True)
    db.category.create_index([("restaurant", ASCENDING), ("name", ASCENDING)], unique=True)
    db.item.create_index([("restaurant", ASCENDING), ("category", ASCENDING)])
    db.review.create_index([("restaurant", ASCENDING), ("created_at", DESCENDING)])
    db.review.create_index([("order", ASCENDING)], unique=True)
    db.cart.create_index([("userId", ASCENDING), ("restaurantId", ASCENDING)], unique=True)
    db.address.create_index([("userId", ASCENDING), ("isActive", ASCENDING)])
    db.order.create_index([("orderNumber", ASCENDING)], unique=True)
    db.order.create_index([("customer", ASCENDING), ("orderDate", DESCENDING)])
    db.order.create_index([("restaurant", ASCENDING), ("orderDate", DESCENDING)])
    db.order.create_index([("status", ASCENDING)])
