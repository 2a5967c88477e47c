import logging
import os
from datetime import timedelta
from typing import Optional

import bcrypt
import jwt
from bson import ObjectId
from fastapi import Depends, HTTPException
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from common import get_db, now, as_utc

logger = logging.getLogger(__name__)

JWT_SECRET = os.getenv("JWT_SECRET", "dev_secret_change_me")
JWT_ALG = "HS256"
TOKEN_EXPIRE_MINUTES = int(os.getenv("JWT_EXPIRE_MINUTES", 60 * 24))

# No SMS gateway is wired in: every OTP request issues this code.
DEV_OTP = "123456"
OTP_TTL_MINUTES = 10

# Lookup order when resolving a token subject.
PRINCIPAL_COLLECTIONS = ("admin", "user", "restaurant", "driver")
ADMIN_ROLES = ("admin", "super_admin")

security = HTTPBearer(auto_error=False)


# -------------------- Passwords & tokens --------------------

def hash_password(password: str) -> str:
    return bcrypt.hashpw(password.encode(), bcrypt.gensalt()).decode()


def verify_password(password: str, hashed: str) -> bool:
    try:
        return bcrypt.checkpw(password.encode(), hashed.encode())
    except ValueError:
        return False


def create_access_token(sub: str) -> str:
    issued = now()
    payload = {
        "sub": sub,
        "exp": issued + timedelta(minutes=TOKEN_EXPIRE_MINUTES),
        "iat": issued,
    }
    return jwt.encode(payload, JWT_SECRET, algorithm=JWT_ALG)


def decode_access_token(token: str) -> str:
    try:
        payload = jwt.decode(token, JWT_SECRET, algorithms=[JWT_ALG])
    except jwt.PyJWTError:
        raise HTTPException(status_code=401, detail="Invalid or expired token")
    sub = payload.get("sub")
    if not sub or not ObjectId.is_valid(sub):
        raise HTTPException(status_code=401, detail="Invalid or expired token")
    return sub


# -------------------- OTP --------------------

def issue_otp(collection_name: str, phone: str, defaults: dict) -> tuple:
    """Store a fresh OTP on the principal, creating it on first contact. Returns (doc, created)"""
    db = get_db()
    otp_fields = {"otp": DEV_OTP, "otpExpiry": now() + timedelta(minutes=OTP_TTL_MINUTES), "updated_at": now()}
    existing = db[collection_name].find_one({"phone": phone})
    if existing:
        db[collection_name].update_one({"_id": existing["_id"]}, {"$set": otp_fields})
        existing.update(otp_fields)
        return existing, False
    doc = {"phone": phone, "isVerified": False, "isActive": True, "isBlocked": False,
           "created_at": now(), **defaults, **otp_fields}
    doc["_id"] = db[collection_name].insert_one(doc).inserted_id
    logger.info("Created %s %s on first OTP request", collection_name, doc["_id"])
    return doc, True


def otp_matches(doc: dict, otp: str) -> bool:
    expiry = as_utc(doc.get("otpExpiry"))
    if not doc.get("otp") or doc.get("otp") != otp:
        return False
    return expiry is not None and expiry > now()


def mark_verified(collection_name: str, doc: dict) -> dict:
    db = get_db()
    changes = {"isVerified": True, "lastActive": now(), "updated_at": now()}
    db[collection_name].update_one({"_id": doc["_id"]}, {"$set": changes, "$unset": {"otp": "", "otpExpiry": ""}})
    doc.update(changes)
    doc.pop("otp", None)
    doc.pop("otpExpiry", None)
    return doc


# -------------------- Principal resolution --------------------

def principal_role(collection_name: str, doc: dict) -> str:
    if collection_name == "admin":
        return doc.get("role", "admin")
    return collection_name


def get_current_principal(credentials: Optional[HTTPAuthorizationCredentials] = Depends(security)) -> dict:
    """Resolve the bearer token to a principal document annotated with `_kind` and `_role`"""
    if credentials is None or not credentials.credentials:
        raise HTTPException(status_code=401, detail="No token provided")
    sub = decode_access_token(credentials.credentials)
    db = get_db()
    for name in PRINCIPAL_COLLECTIONS:
        doc = db[name].find_one({"_id": ObjectId(sub)})
        if doc:
            break
    else:
        raise HTTPException(status_code=401, detail="Invalid or expired token")
    if doc.get("isActive") is False:
        raise HTTPException(status_code=401, detail="Account is deactivated")
    if doc.get("isBlocked"):
        raise HTTPException(status_code=401, detail="Account is blocked")
    doc["_kind"] = name
    doc["_role"] = principal_role(name, doc)
    return doc


def require_roles(*roles):
    """Dependency factory: the current principal must hold one of `roles`"""
    allowed = set(roles)
    if "admin" in allowed:
        allowed.add("super_admin")

    def dependency(principal: dict = Depends(get_current_principal)) -> dict:
        if principal["_role"] not in allowed:
            raise HTTPException(status_code=403, detail="Forbidden: insufficient role")
        return principal

    return dependency
