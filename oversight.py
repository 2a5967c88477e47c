import logging
import re
from datetime import datetime, time, timezone
from typing import Optional

from bson import ObjectId
from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel
from pymongo import ReturnDocument

from auth import require_roles
from common import get_db, to_object_id, serialize, ok, now, paginate, toggle_flag, require_reason
from drivers import driver_profile, registration_state, IMAGE_TYPES
from storage import storage

logger = logging.getLogger(__name__)

drivers_router = APIRouter(prefix="/api/admin/drivers", tags=["admin"])
users_router = APIRouter(prefix="/api/admin/users", tags=["admin"])
restaurants_router = APIRouter(prefix="/api/admin/restaurants", tags=["admin"])

ACCOUNT_STATUS_FILTERS = {
    "active": {"isActive": True, "isBlocked": {"$ne": True}},
    "blocked": {"isBlocked": True},
    "inactive": {"isActive": False},
}


class ReasonRequest(BaseModel):
    reason: Optional[str] = None


def _start_of_today():
    return datetime.combine(now().date(), time.min, tzinfo=timezone.utc)


def _search(fields, text):
    pattern = {"$regex": re.escape(text), "$options": "i"}
    return {"$or": [{f: pattern} for f in fields]}


def _principal_view(doc: dict) -> dict:
    return serialize(doc)


def _moderate(collection: str, target_id: str, guard: dict, changes: dict, conflict: str, label: str):
    """Conditional update on one account; 404 when absent, 400 `conflict` when the guard fails"""
    db = get_db()
    oid = to_object_id(target_id)
    updated = db[collection].find_one_and_update(
        {"_id": oid, **guard}, {"$set": {**changes, "updated_at": now()}}, return_document=ReturnDocument.AFTER
    )
    if not updated:
        if not db[collection].find_one({"_id": oid}):
            raise HTTPException(status_code=404, detail=f"{label} not found")
        raise HTTPException(status_code=400, detail=conflict)
    return updated


def _get(collection: str, target_id: str, label: str) -> dict:
    doc = get_db()[collection].find_one({"_id": to_object_id(target_id)})
    if not doc:
        raise HTTPException(status_code=404, detail=f"{label} not found")
    return doc


# -------------------- Drivers --------------------
@drivers_router.get("")
def list_drivers(status: Optional[str] = None, step: Optional[int] = None, page: int = 1, limit: int = 10,
                 admin=Depends(require_roles("admin"))):
    filt = {}
    if status in ACCOUNT_STATUS_FILTERS:
        filt.update(ACCOUNT_STATUS_FILTERS[status])
    elif status in ("pending", "approved", "rejected"):
        filt["status"] = status
    elif status:
        raise HTTPException(status_code=400, detail="Invalid status filter")
    if step:
        filt["registrationStep"] = step
    return paginate("driver", filt, page, limit, transform=driver_profile)


@drivers_router.get("/stats")
def driver_stats(admin=Depends(require_roles("admin"))):
    db = get_db()
    count = db["driver"].count_documents
    return ok({
        "totalDrivers": count({}),
        "activeDrivers": count(ACCOUNT_STATUS_FILTERS["active"]),
        "blockedDrivers": count(ACCOUNT_STATUS_FILTERS["blocked"]),
        "inactiveDrivers": count(ACCOUNT_STATUS_FILTERS["inactive"]),
        "pendingDrivers": count({"status": "pending"}),
        "approvedDrivers": count({"status": "approved"}),
        "rejectedDrivers": count({"status": "rejected"}),
        "onlineDrivers": count({"isOnline": True}),
        "newDriversToday": count({"_id": {"$gte": ObjectId.from_datetime(_start_of_today())}}),
        "stepStats": {f"step{s}": count({"registrationStep": s}) for s in range(1, 8)},
    })


@drivers_router.get("/{driver_id}")
def get_driver(driver_id: str, admin=Depends(require_roles("admin"))):
    doc = _get("driver", driver_id, "Driver")
    return ok({**driver_profile(doc), "registration": registration_state(doc)})


@drivers_router.put("/{driver_id}/approve")
def approve_driver(driver_id: str, admin=Depends(require_roles("admin"))):
    doc = _get("driver", driver_id, "Driver")
    if not doc.get("isRegistrationComplete"):
        raise HTTPException(status_code=400, detail="Driver registration is not complete")
    updated = _moderate("driver", driver_id, {"isApproved": {"$ne": True}},
                        {"isApproved": True, "isActive": True, "status": "approved",
                         "approvedBy": admin["_id"], "approvedAt": now()},
                        "Driver is already approved", "Driver")
    logger.info("Admin %s approved driver %s", admin["_id"], driver_id)
    return ok(driver_profile(updated), "Driver approved successfully")


@drivers_router.put("/{driver_id}/reject")
def reject_driver(driver_id: str, payload: ReasonRequest, admin=Depends(require_roles("admin"))):
    reason = require_reason(payload.reason, "Rejection")
    updated = _moderate("driver", driver_id, {"status": {"$ne": "rejected"}},
                        {"isApproved": False, "isActive": False, "status": "rejected", "rejectionReason": reason},
                        "Driver is already rejected", "Driver")
    return ok(driver_profile(updated), "Driver rejected successfully")


@drivers_router.put("/{driver_id}/block")
def block_driver(driver_id: str, payload: ReasonRequest, admin=Depends(require_roles("admin"))):
    reason = require_reason(payload.reason, "Block")
    updated = _moderate("driver", driver_id, {"isBlocked": {"$ne": True}},
                        {"isBlocked": True, "blockedReason": reason, "isOnline": False},
                        "Driver is already blocked", "Driver")
    return ok(driver_profile(updated), "Driver blocked successfully")


@drivers_router.put("/{driver_id}/unblock")
def unblock_driver(driver_id: str, admin=Depends(require_roles("admin"))):
    updated = _moderate("driver", driver_id, {"isBlocked": True}, {"isBlocked": False, "blockedReason": ""},
                        "Driver is not blocked", "Driver")
    return ok(driver_profile(updated), "Driver unblocked successfully")


@drivers_router.put("/{driver_id}/toggle-status")
def toggle_driver(driver_id: str, admin=Depends(require_roles("admin"))):
    doc = toggle_flag("driver", {"_id": to_object_id(driver_id)}, "isActive")
    if not doc:
        raise HTTPException(status_code=404, detail="Driver not found")
    return ok(driver_profile(doc), f"Driver {'activated' if doc['isActive'] else 'deactivated'} successfully")


@drivers_router.put("/{driver_id}/deactivate")
def deactivate_driver(driver_id: str, admin=Depends(require_roles("admin"))):
    """Revoke approval, force offline and drop every stored document image"""
    doc = _get("driver", driver_id, "Driver")
    fields = [f for f in IMAGE_TYPES.values() if doc.get(f)]
    for field in fields:
        storage.delete(doc[field])
    db = get_db()
    update = {"$set": {"isApproved": False, "isOnline": False, "status": "pending", "updated_at": now()}}
    if fields:
        update["$unset"] = {f: "" for f in fields}
    db["driver"].update_one({"_id": doc["_id"]}, update)
    logger.info("Admin %s deactivated driver %s (%d images removed)", admin["_id"], driver_id, len(fields))
    return ok(driver_profile(db["driver"].find_one({"_id": doc["_id"]})), "Driver deactivated successfully")


# -------------------- Customers --------------------
@users_router.get("")
def list_users(status: Optional[str] = None, search: Optional[str] = None, page: int = 1, limit: int = 10,
               admin=Depends(require_roles("admin"))):
    filt = {}
    if status:
        if status not in ACCOUNT_STATUS_FILTERS:
            raise HTTPException(status_code=400, detail="Invalid status filter")
        filt.update(ACCOUNT_STATUS_FILTERS[status])
    if search:
        filt.update(_search(("firstName", "lastName", "phone", "email"), search))
    return paginate("user", filt, page, limit, transform=_principal_view)


@users_router.get("/stats")
def user_stats(admin=Depends(require_roles("admin"))):
    count = get_db()["user"].count_documents
    return ok({
        "totalUsers": count({}),
        "activeUsers": count(ACCOUNT_STATUS_FILTERS["active"]),
        "blockedUsers": count(ACCOUNT_STATUS_FILTERS["blocked"]),
        "inactiveUsers": count(ACCOUNT_STATUS_FILTERS["inactive"]),
        "verifiedUsers": count({"isVerified": True}),
        "completedProfiles": count({"isProfile": True}),
        "newUsersToday": count({"_id": {"$gte": ObjectId.from_datetime(_start_of_today())}}),
    })


@users_router.get("/{user_id}")
def get_user(user_id: str, admin=Depends(require_roles("admin"))):
    return ok(_principal_view(_get("user", user_id, "User")))


@users_router.put("/{user_id}/block")
def block_user(user_id: str, payload: ReasonRequest, admin=Depends(require_roles("admin"))):
    reason = require_reason(payload.reason, "Block")
    updated = _moderate("user", user_id, {"isBlocked": {"$ne": True}},
                        {"isBlocked": True, "blockReason": reason, "blockedBy": admin["_id"], "blockedAt": now()},
                        "User is already blocked", "User")
    logger.info("Admin %s blocked user %s", admin["_id"], user_id)
    return ok(_principal_view(updated), "User blocked successfully")


@users_router.put("/{user_id}/unblock")
def unblock_user(user_id: str, admin=Depends(require_roles("admin"))):
    updated = _moderate("user", user_id, {"isBlocked": True}, {"isBlocked": False, "blockReason": None},
                        "User is not blocked", "User")
    return ok(_principal_view(updated), "User unblocked successfully")


@users_router.put("/{user_id}/toggle-status")
def toggle_user(user_id: str, admin=Depends(require_roles("admin"))):
    doc = toggle_flag("user", {"_id": to_object_id(user_id)}, "isActive")
    if not doc:
        raise HTTPException(status_code=404, detail="User not found")
    return ok(_principal_view(doc), f"User {'activated' if doc['isActive'] else 'deactivated'} successfully")


# -------------------- Restaurants --------------------
@restaurants_router.get("")
def list_restaurants(status: Optional[str] = None, search: Optional[str] = None, page: int = 1, limit: int = 10,
                     admin=Depends(require_roles("admin"))):
    filt = {}
    if status:
        filt["status"] = status
    if search:
        filt.update(_search(("businessName", "city", "phone"), search))
    return paginate("restaurant", filt, page, limit, transform=_principal_view)


@restaurants_router.get("/stats")
def restaurant_stats(admin=Depends(require_roles("admin"))):
    count = get_db()["restaurant"].count_documents
    return ok({
        "totalRestaurants": count({}),
        "activeRestaurants": count({"isActive": True}),
        "onlineRestaurants": count({"isOnline": True}),
        "pendingRestaurants": count({"status": "pending"}),
        "approvedRestaurants": count({"status": "approved"}),
        "rejectedRestaurants": count({"status": "rejected"}),
        "suspendedRestaurants": count({"status": "suspended"}),
    })


@restaurants_router.get("/{restaurant_id}")
def get_restaurant(restaurant_id: str, admin=Depends(require_roles("admin"))):
    return ok(_principal_view(_get("restaurant", restaurant_id, "Restaurant")))


@restaurants_router.put("/{restaurant_id}/approve")
def approve_restaurant(restaurant_id: str, admin=Depends(require_roles("admin"))):
    updated = _moderate("restaurant", restaurant_id, {"status": {"$ne": "approved"}},
                        {"isApproved": True, "status": "approved", "approvedBy": admin["_id"], "approvedAt": now()},
                        "Restaurant is already approved", "Restaurant")
    logger.info("Admin %s approved restaurant %s", admin["_id"], restaurant_id)
    return ok(_principal_view(updated), "Restaurant approved successfully")


@restaurants_router.put("/{restaurant_id}/reject")
def reject_restaurant(restaurant_id: str, payload: ReasonRequest, admin=Depends(require_roles("admin"))):
    reason = require_reason(payload.reason, "Rejection")
    updated = _moderate("restaurant", restaurant_id, {"status": {"$ne": "rejected"}},
                        {"isApproved": False, "status": "rejected", "rejectionReason": reason},
                        "Restaurant is already rejected", "Restaurant")
    return ok(_principal_view(updated), "Restaurant rejected successfully")


@restaurants_router.put("/{restaurant_id}/toggle-status")
def toggle_restaurant(restaurant_id: str, admin=Depends(require_roles("admin"))):
    doc = toggle_flag("restaurant", {"_id": to_object_id(restaurant_id)}, "isActive")
    if not doc:
        raise HTTPException(status_code=404, detail="Restaurant not found")
    return ok(_principal_view(doc), f"Restaurant {'activated' if doc['isActive'] else 'deactivated'} successfully")
