import logging
from typing import Literal, Optional

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, Field, EmailStr
from pymongo.errors import DuplicateKeyError

from auth import hash_password, verify_password, create_access_token, require_roles
from common import get_db, to_object_id, serialize, ok, now, toggle_flag
from database import create_document
from schemas import Admin as AdminSchema, AdminProfile, PHONE_PATTERN

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/admin", tags=["admin"])


# -------------------- Models --------------------
class AdminRegister(BaseModel):
    name: str = Field(..., min_length=2, max_length=50)
    phone: str = Field(..., pattern=PHONE_PATTERN)
    password: str = Field(..., min_length=6)
    email: Optional[EmailStr] = None


class AdminLogin(BaseModel):
    phone: str
    password: str


class AdminProfileUpdate(BaseModel):
    name: Optional[str] = Field(None, min_length=2, max_length=50)
    email: Optional[EmailStr] = None
    profile: Optional[AdminProfile] = None


class ChangePassword(BaseModel):
    currentPassword: str
    newPassword: str = Field(..., min_length=6)


class RoleUpdate(BaseModel):
    role: Literal["admin", "super_admin"]


def admin_profile(doc: dict) -> dict:
    out = serialize(doc)
    out.pop("_kind", None)
    out.pop("_role", None)
    return out


def claim_bootstrap(admin_id: str) -> bool:
    """True for exactly one caller: the admin that claims the super_admin seat"""
    try:
        result = get_db()["bootstrap"].update_one(
            {"_id": "super_admin"}, {"$setOnInsert": {"adminId": admin_id, "claimedAt": now()}}, upsert=True
        )
    except DuplicateKeyError:
        return False
    return result.upserted_id is not None


# -------------------- Auth --------------------
@router.post("/register", status_code=201)
def register(payload: AdminRegister):
    db = get_db()
    if db["admin"].find_one({"phone": payload.phone}):
        raise HTTPException(status_code=400, detail="Admin with this phone number already exists")
    admin = AdminSchema(
        name=payload.name.strip(),
        phone=payload.phone,
        password=hash_password(payload.password),
        email=payload.email,
    )
    try:
        admin_id = create_document("admin", admin)
    except DuplicateKeyError:
        raise HTTPException(status_code=400, detail="Admin with this phone number already exists")
    role = "admin"
    # the very first account bootstraps the super admin
    if not db["admin"].count_documents({"role": "super_admin"}) and claim_bootstrap(admin_id):
        role = "super_admin"
        db["admin"].update_one({"_id": to_object_id(admin_id)}, {"$set": {"role": role}})
    logger.info("Registered %s %s", role, admin_id)
    doc = db["admin"].find_one({"_id": to_object_id(admin_id)})
    return ok({"admin": admin_profile(doc), "token": create_access_token(admin_id)},
              "Admin registered successfully")


@router.post("/login")
def login(payload: AdminLogin):
    db = get_db()
    doc = db["admin"].find_one({"phone": payload.phone})
    if not doc or not doc.get("isActive", True) or not verify_password(payload.password, doc.get("password", "")):
        raise HTTPException(status_code=401, detail="Invalid phone number or password")
    db["admin"].update_one({"_id": doc["_id"]}, {"$set": {"lastLogin": now()}})
    doc["lastLogin"] = now()
    logger.info("Admin %s logged in", doc["_id"])
    return ok({"admin": admin_profile(doc), "token": create_access_token(str(doc["_id"]))}, "Login successful")


@router.post("/logout")
def logout(current=Depends(require_roles("admin"))):
    return ok(message="Logged out successfully")


# -------------------- Profile --------------------
@router.get("/profile")
def get_profile(current=Depends(require_roles("admin"))):
    return ok(admin_profile(current))


@router.put("/profile")
def update_profile(payload: AdminProfileUpdate, current=Depends(require_roles("admin"))):
    db = get_db()
    changes = {}
    if payload.name is not None:
        changes["name"] = payload.name.strip()
    if payload.email is not None:
        changes["email"] = payload.email
    if payload.profile is not None:
        for key, value in payload.profile.model_dump(exclude_unset=True).items():
            changes[f"profile.{key}"] = value
    if not changes:
        return ok(admin_profile(current), "Nothing to update")
    changes["updated_at"] = now()
    db["admin"].update_one({"_id": current["_id"]}, {"$set": changes})
    return ok(admin_profile(db["admin"].find_one({"_id": current["_id"]})), "Profile updated successfully")


@router.put("/change-password")
def change_password(payload: ChangePassword, current=Depends(require_roles("admin"))):
    if not verify_password(payload.currentPassword, current.get("password", "")):
        raise HTTPException(status_code=400, detail="Current password is incorrect")
    get_db()["admin"].update_one(
        {"_id": current["_id"]},
        {"$set": {"password": hash_password(payload.newPassword), "updated_at": now()}},
    )
    return ok(message="Password changed successfully")


@router.get("/dashboard")
def dashboard(current=Depends(require_roles("admin"))):
    db = get_db()
    data = {
        "totalUsers": db["user"].count_documents({}),
        "totalRestaurants": db["restaurant"].count_documents({}),
        "totalDrivers": db["driver"].count_documents({}),
        "pendingDrivers": db["driver"].count_documents({"status": "pending", "isRegistrationComplete": True}),
        "pendingReviews": db["review"].count_documents(
            {"isApproved": {"$ne": True}, "isRejected": {"$ne": True}, "isDeleted": {"$ne": True}}),
        "flaggedReviews": db["review"].count_documents({"isFlagged": True, "isDeleted": {"$ne": True}}),
        "activeOffers": db["offer"].count_documents({"isActive": True, "endDate": {"$gte": now()}}),
        "adminInfo": {
            "name": current.get("name"),
            "role": current.get("role"),
            "lastLogin": current.get("lastLogin"),
        },
    }
    return ok(data)


# -------------------- Super admin --------------------
@router.get("/all")
def list_admins(current=Depends(require_roles("super_admin"))):
    docs = list(get_db()["admin"].find({}).sort("created_at", -1))
    return ok([admin_profile(d) for d in docs], count=len(docs))


@router.put("/{admin_id}/role")
def update_role(admin_id: str, payload: RoleUpdate, current=Depends(require_roles("super_admin"))):
    db = get_db()
    result = db["admin"].update_one(
        {"_id": to_object_id(admin_id)}, {"$set": {"role": payload.role, "updated_at": now()}}
    )
    if result.matched_count == 0:
        raise HTTPException(status_code=404, detail="Admin not found")
    logger.info("Admin %s set role of %s to %s", current["_id"], admin_id, payload.role)
    return ok(admin_profile(db["admin"].find_one({"_id": to_object_id(admin_id)})), "Admin role updated successfully")


@router.put("/{admin_id}/status")
def toggle_status(admin_id: str, current=Depends(require_roles("super_admin"))):
    target = to_object_id(admin_id)
    if target == current["_id"]:
        raise HTTPException(status_code=400, detail="Cannot deactivate your own account")
    doc = toggle_flag("admin", {"_id": target}, "isActive")
    if not doc:
        raise HTTPException(status_code=404, detail="Admin not found")
    state = "activated" if doc["isActive"] else "deactivated"
    return ok(admin_profile(doc), f"Admin {state} successfully")
