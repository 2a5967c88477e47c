import logging
from typing import Literal, Optional

from fastapi import APIRouter, Depends, HTTPException, UploadFile, File
from pydantic import BaseModel, Field, EmailStr

from auth import issue_otp, otp_matches, mark_verified, create_access_token, require_roles
from common import get_db, to_object_id, serialize, ok, now, parse_date
from database import create_document
from schemas import User as UserSchema, Address as AddressSchema, PHONE_PATTERN, PINCODE_PATTERN
from storage import replace_attachment, storage

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/user", tags=["user"])


# -------------------- Models --------------------
class UserAuthRequest(BaseModel):
    phone: str = Field(..., pattern=PHONE_PATTERN)
    otp: Optional[str] = Field(None, pattern=r"^\d{6}$")


class UserProfileUpdate(BaseModel):
    firstName: Optional[str] = Field(None, min_length=2, max_length=50)
    lastName: Optional[str] = Field(None, min_length=2, max_length=50)
    email: Optional[EmailStr] = None
    address: Optional[str] = Field(None, max_length=500)
    pincode: Optional[str] = Field(None, pattern=PINCODE_PATTERN)
    gender: Optional[Literal["male", "female", "other"]] = None
    dateOfBirth: Optional[str] = None


class AddressCreate(BaseModel):
    type: Literal["home", "work", "other"] = "home"
    fullAddress: str = Field(..., min_length=1, max_length=500)
    landmark: Optional[str] = Field(None, max_length=100)
    city: str = Field(..., min_length=1, max_length=50)
    pincode: str = Field(..., pattern=PINCODE_PATTERN)
    isDefault: bool = False


class AddressUpdate(BaseModel):
    type: Optional[Literal["home", "work", "other"]] = None
    fullAddress: Optional[str] = Field(None, min_length=1, max_length=500)
    landmark: Optional[str] = Field(None, max_length=100)
    city: Optional[str] = Field(None, min_length=1, max_length=50)
    pincode: Optional[str] = Field(None, pattern=PINCODE_PATTERN)
    isDefault: Optional[bool] = None


def user_profile(doc: dict) -> dict:
    out = serialize(doc)
    out.pop("_kind", None)
    out.pop("_role", None)
    return out


def profile_flags(doc: dict) -> dict:
    return {
        "isNewUser": not doc.get("firstName") or not doc.get("lastName"),
        "needsProfileCompletion": not doc.get("isProfile"),
    }


# -------------------- Auth --------------------
@router.post("/auth")
def authenticate(payload: UserAuthRequest):
    """Without `otp` this requests a code; with it, verifies and signs the user in"""
    db = get_db()
    doc = db["user"].find_one({"phone": payload.phone})
    if doc and doc.get("isBlocked"):
        reason = doc.get("blockReason") or "not specified"
        raise HTTPException(status_code=403, detail=f"Account is blocked. Reason: {reason}")
    if doc and doc.get("isActive") is False:
        raise HTTPException(status_code=403, detail="Account is deactivated")

    if payload.otp is None:
        doc, _ = issue_otp("user", payload.phone, UserSchema(phone=payload.phone).model_dump())
        return ok({"phone": payload.phone, "message": "Use OTP: 123456 for testing", **profile_flags(doc)},
                  "OTP sent successfully")

    if not doc:
        raise HTTPException(status_code=404, detail="User not found. Please request an OTP first.")
    if not otp_matches(doc, payload.otp):
        raise HTTPException(status_code=400, detail="Invalid or expired OTP")
    doc = mark_verified("user", doc)
    logger.info("User %s signed in", doc["_id"])
    return ok({"user": user_profile(doc), "token": create_access_token(str(doc["_id"])), **profile_flags(doc)},
              "Login successful")


@router.post("/logout")
def logout(user=Depends(require_roles("user"))):
    get_db()["user"].update_one({"_id": user["_id"]}, {"$set": {"lastActive": now()}})
    return ok(message="Logged out successfully")


# -------------------- Profile --------------------
@router.get("/profile")
def get_profile(user=Depends(require_roles("user"))):
    return ok(user_profile(user))


@router.put("/profile")
def update_profile(payload: UserProfileUpdate, user=Depends(require_roles("user"))):
    changes = {k: v.strip() if isinstance(v, str) else v for k, v in payload.model_dump(exclude_unset=True).items()
               if v is not None}
    if "email" in changes:
        changes["email"] = changes["email"].lower()
    if "dateOfBirth" in changes:
        parsed = parse_date(changes["dateOfBirth"])
        if parsed is None:
            raise HTTPException(status_code=400, detail="Invalid date of birth")
        changes["dateOfBirth"] = parsed
    first = changes.get("firstName", user.get("firstName"))
    last = changes.get("lastName", user.get("lastName"))
    changes["isProfile"] = bool(first and last)
    changes["updated_at"] = now()
    db = get_db()
    db["user"].update_one({"_id": user["_id"]}, {"$set": changes})
    return ok(user_profile(db["user"].find_one({"_id": user["_id"]})), "Profile updated successfully")


@router.put("/profile/image")
async def upload_profile_image(image: UploadFile = File(...), user=Depends(require_roles("user"))):
    url = await replace_attachment(image, user.get("profileImage"), "user-profiles")
    if not url:
        raise HTTPException(status_code=400, detail="No image provided")
    get_db()["user"].update_one({"_id": user["_id"]}, {"$set": {"profileImage": url, "updated_at": now()}})
    return ok({"profileImage": url}, "Profile image updated successfully")


@router.delete("/profile/image")
def delete_profile_image(user=Depends(require_roles("user"))):
    if not user.get("profileImage"):
        raise HTTPException(status_code=404, detail="Image not found")
    storage.delete(user["profileImage"])
    get_db()["user"].update_one({"_id": user["_id"]}, {"$unset": {"profileImage": ""}, "$set": {"updated_at": now()}})
    return ok(message="Profile image deleted successfully")


@router.get("/dashboard")
def dashboard(user=Depends(require_roles("user"))):
    db = get_db()
    uid = str(user["_id"])
    return ok({
        "user": user_profile(user),
        "addressCount": db["address"].count_documents({"userId": uid, "isActive": True}),
        "cartCount": db["cart"].count_documents({"userId": uid, "itemCount": {"$gt": 0}}),
        "reviewCount": db["review"].count_documents({"customer": uid, "isDeleted": {"$ne": True}}),
        **profile_flags(user),
    })


# -------------------- Addresses --------------------

def _owned_address(user: dict, address_id: str) -> dict:
    doc = get_db()["address"].find_one(
        {"_id": to_object_id(address_id), "userId": str(user["_id"]), "isActive": True}
    )
    if not doc:
        raise HTTPException(status_code=404, detail="Address not found")
    return doc


def _clear_default(user: dict):
    get_db()["address"].update_many({"userId": str(user["_id"]), "isDefault": True}, {"$set": {"isDefault": False}})


@router.get("/addresses")
def list_addresses(user=Depends(require_roles("user"))):
    docs = list(get_db()["address"].find({"userId": str(user["_id"]), "isActive": True})
                .sort([("isDefault", -1), ("created_at", -1)]))
    return ok([serialize(d) for d in docs], count=len(docs))


@router.post("/addresses", status_code=201)
def add_address(payload: AddressCreate, user=Depends(require_roles("user"))):
    db = get_db()
    uid = str(user["_id"])
    is_first = db["address"].count_documents({"userId": uid, "isActive": True}) == 0
    if payload.isDefault:
        _clear_default(user)
    address = AddressSchema(userId=uid, **payload.model_dump(exclude={"isDefault"}),
                            isDefault=payload.isDefault or is_first)
    address_id = create_document("address", address)
    return ok(serialize(db["address"].find_one({"_id": to_object_id(address_id)})), "Address added successfully")


@router.put("/addresses/{address_id}")
def update_address(address_id: str, payload: AddressUpdate, user=Depends(require_roles("user"))):
    doc = _owned_address(user, address_id)
    changes = {k: v for k, v in payload.model_dump(exclude_unset=True).items() if v is not None}
    if changes.get("isDefault"):
        _clear_default(user)
    changes["updated_at"] = now()
    db = get_db()
    db["address"].update_one({"_id": doc["_id"]}, {"$set": changes})
    return ok(serialize(db["address"].find_one({"_id": doc["_id"]})), "Address updated successfully")


@router.put("/addresses/{address_id}/default")
def set_default_address(address_id: str, user=Depends(require_roles("user"))):
    doc = _owned_address(user, address_id)
    _clear_default(user)
    db = get_db()
    db["address"].update_one({"_id": doc["_id"]}, {"$set": {"isDefault": True, "updated_at": now()}})
    return ok(serialize(db["address"].find_one({"_id": doc["_id"]})), "Default address updated")


@router.delete("/addresses/{address_id}")
def delete_address(address_id: str, user=Depends(require_roles("user"))):
    doc = _owned_address(user, address_id)
    get_db()["address"].update_one(
        {"_id": doc["_id"]}, {"$set": {"isActive": False, "isDefault": False, "updated_at": now()}}
    )
    return ok(message="Address deleted successfully")
