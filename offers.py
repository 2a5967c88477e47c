import logging
from datetime import datetime, timedelta
from typing import List, Literal, Optional

from fastapi import APIRouter, Depends, HTTPException, UploadFile, File
from pydantic import BaseModel, Field, ValidationError
from pymongo import ReturnDocument
from pymongo.errors import DuplicateKeyError

from auth import require_roles
from common import get_db, to_object_id, canonical_id, serialize, ok, now, paginate, as_utc, toggle_flag
from database import create_document
from schemas import Offer as OfferSchema
from storage import replace_attachment

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/restaurant/offers", tags=["offers"])
customer_router = APIRouter(prefix="/api/offers", tags=["offers"])
admin_router = APIRouter(prefix="/api/admin/offers", tags=["admin"])

REACTIVATION_DAYS = 30


# -------------------- Models --------------------
class OfferCreate(BaseModel):
    title: str = Field(..., min_length=1, max_length=100)
    description: Optional[str] = Field(None, max_length=500)
    backgroundColor: str = Field("#FFFFFF", pattern=r"^#[0-9A-Fa-f]{6}$")
    couponCode: str = Field(..., min_length=1, max_length=20)
    discountType: Literal["flat", "percentage"]
    discountValue: float = Field(..., ge=0)
    minimumOrderAmount: float = Field(0, ge=0)
    maximumOrderValue: float = Field(..., ge=0)
    startDate: datetime
    endDate: datetime
    perUserLimit: int = Field(1, ge=1)
    totalUsageLimit: int = Field(..., ge=1)
    applicableItems: List[str] = Field(default_factory=list)
    applicableCategories: List[str] = Field(default_factory=list)
    priority: int = Field(1, ge=1)
    isVisible: bool = True


class OfferUpdate(BaseModel):
    title: Optional[str] = Field(None, min_length=1, max_length=100)
    description: Optional[str] = Field(None, max_length=500)
    backgroundColor: Optional[str] = Field(None, pattern=r"^#[0-9A-Fa-f]{6}$")
    couponCode: Optional[str] = Field(None, min_length=1, max_length=20)
    discountType: Optional[Literal["flat", "percentage"]] = None
    discountValue: Optional[float] = Field(None, ge=0)
    minimumOrderAmount: Optional[float] = Field(None, ge=0)
    maximumOrderValue: Optional[float] = Field(None, ge=0)
    startDate: Optional[datetime] = None
    endDate: Optional[datetime] = None
    perUserLimit: Optional[int] = Field(None, ge=1)
    totalUsageLimit: Optional[int] = Field(None, ge=1)
    applicableItems: Optional[List[str]] = None
    applicableCategories: Optional[List[str]] = None
    priority: Optional[int] = Field(None, ge=1)
    isVisible: Optional[bool] = None


class OrderLine(BaseModel):
    itemId: str
    category: Optional[str] = None


class CouponRequest(BaseModel):
    couponCode: str = Field(..., min_length=1, max_length=20)
    restaurantId: str
    orderAmount: float = Field(..., ge=0)
    items: List[OrderLine] = Field(default_factory=list)


# -------------------- Evaluation --------------------

def is_offer_valid(offer: dict, at: Optional[datetime] = None) -> bool:
    at = at or now()
    return (
        bool(offer.get("isActive"))
        and bool(offer.get("isVisible", True))
        and as_utc(offer["startDate"]) <= at < as_utc(offer["endDate"])
        and offer.get("totalUsed", 0) < offer["totalUsageLimit"]
    )


def user_usage_count(offer: dict, user_id: str) -> int:
    entry = (offer.get("userUsage") or {}).get(user_id) or {}
    return entry.get("usageCount", 0)


def check_user_eligibility(offer: dict, user_id: str, at: Optional[datetime] = None):
    """Returns (allowed, reason)"""
    if offer.get("totalUsed", 0) >= offer["totalUsageLimit"]:
        return False, "Offer usage limit reached"
    if not is_offer_valid(offer, at):
        return False, "Offer is not valid"
    if user_usage_count(offer, user_id) >= offer.get("perUserLimit", 1):
        return False, "User usage limit reached"
    return True, None


def _money(value: float) -> str:
    return f"{value:g}"


def validate_order(offer: dict, amount: float, items: List[dict]):
    """Returns (valid, reason) for an order total and its lines"""
    minimum = offer.get("minimumOrderAmount", 0)
    maximum = offer.get("maximumOrderValue")
    if amount < minimum:
        return False, f"Minimum order amount required: ₹{_money(minimum)}"
    if maximum is not None and amount > maximum:
        return False, f"Maximum order value exceeded: ₹{_money(maximum)}"
    applicable_items = set(offer.get("applicableItems") or [])
    applicable_categories = set(offer.get("applicableCategories") or [])
    if applicable_items or applicable_categories:
        matched = any(
            line.get("itemId") in applicable_items or line.get("category") in applicable_categories
            for line in items
        )
        if not matched:
            return False, "No applicable items in order for this offer"
    return True, None


def calculate_discount(offer: dict, amount: float) -> float:
    if offer["discountType"] == "flat":
        discount = min(offer["discountValue"], amount)
    else:
        discount = min(amount * offer["discountValue"] / 100, amount)
    return round(discount, 2)


def evaluate(offer: dict, user_id: str, amount: float, items: List[dict]) -> dict:
    allowed, reason = check_user_eligibility(offer, user_id)
    if allowed:
        allowed, reason = validate_order(offer, amount, items)
    if not allowed:
        raise HTTPException(status_code=400, detail=reason)
    discount = calculate_discount(offer, amount)
    return {"discount": discount, "finalAmount": round(amount - discount, 2)}


def redeem(offer: dict, user_id: str) -> dict:
    """Consume one use for `user_id` in a single conditional update; re-checks on a lost race"""
    db = get_db()
    for _ in range(3):
        at = now()
        key = f"userUsage.{user_id}"
        filt = {
            "_id": offer["_id"],
            "isActive": True,
            "isVisible": {"$ne": False},
            "totalUsageLimit": offer["totalUsageLimit"],
            "perUserLimit": offer.get("perUserLimit", 1),
            "totalUsed": {"$lt": offer["totalUsageLimit"]},
            "$or": [
                {key: {"$exists": False}},
                {f"{key}.usageCount": {"$lt": offer.get("perUserLimit", 1)}},
            ],
        }
        update = {
            "$inc": {"totalUsed": 1, f"{key}.usageCount": 1},
            "$set": {f"{key}.userId": user_id, f"{key}.lastUsed": at, "updated_at": at},
        }
        updated = db["offer"].find_one_and_update(filt, update, return_document=ReturnDocument.AFTER)
        if updated:
            logger.info("Offer %s redeemed by %s (%s/%s)", offer["_id"], user_id,
                        updated["totalUsed"], updated["totalUsageLimit"])
            return updated
        offer = db["offer"].find_one({"_id": offer["_id"]})
        if not offer:
            raise HTTPException(status_code=404, detail="Offer not found")
        allowed, reason = check_user_eligibility(offer, user_id)
        if not allowed:
            raise HTTPException(status_code=400, detail=reason)
    raise HTTPException(status_code=409, detail="Offer was modified concurrently, please retry")


def offer_view(offer: dict) -> dict:
    out = serialize(offer)
    out["userUsage"] = [serialize(v) for v in (offer.get("userUsage") or {}).values()]
    out["isValid"] = is_offer_valid(offer)
    out["remainingUses"] = max(offer["totalUsageLimit"] - offer.get("totalUsed", 0), 0)
    return out


# -------------------- Helpers --------------------

def owned_offer(restaurant: dict, offer_id: str) -> dict:
    doc = get_db()["offer"].find_one({"_id": to_object_id(offer_id), "restaurantId": str(restaurant["_id"])})
    if not doc:
        raise HTTPException(status_code=404, detail="Offer not found")
    return doc


def code_taken(code: str, exclude=None) -> bool:
    filt = {"couponCode": code}
    if exclude is not None:
        filt["_id"] = {"$ne": exclude}
    return get_db()["offer"].find_one(filt) is not None


def build_offer(data: dict) -> OfferSchema:
    try:
        return OfferSchema(**data)
    except ValidationError as e:
        errors = [err["msg"].replace("Value error, ", "") for err in e.errors()]
        raise HTTPException(status_code=400, detail=errors[0] if errors else "Invalid offer")


def find_by_code(code: str, restaurant_id: str) -> dict:
    filt = {"couponCode": code.strip().upper(), "restaurantId": canonical_id(restaurant_id)}
    doc = get_db()["offer"].find_one(filt)
    if not doc:
        raise HTTPException(status_code=404, detail="Invalid coupon code")
    return doc


# -------------------- Restaurant --------------------
@router.post("", status_code=201)
def create_offer(payload: OfferCreate, restaurant=Depends(require_roles("restaurant"))):
    offer = build_offer({**payload.model_dump(), "restaurantId": str(restaurant["_id"])})
    if code_taken(offer.couponCode):
        raise HTTPException(status_code=400, detail="Coupon code already exists")
    try:
        offer_id = create_document("offer", offer)
    except DuplicateKeyError:
        raise HTTPException(status_code=400, detail="Coupon code already exists")
    logger.info("Restaurant %s created offer %s (%s)", restaurant["_id"], offer_id, offer.couponCode)
    return ok(offer_view(get_db()["offer"].find_one({"_id": to_object_id(offer_id)})), "Offer created successfully")


@router.get("")
def list_offers(isActive: Optional[bool] = None, page: int = 1, limit: int = 10,
                restaurant=Depends(require_roles("restaurant"))):
    filt = {"restaurantId": str(restaurant["_id"])}
    if isActive is not None:
        filt["isActive"] = isActive
    return paginate("offer", filt, page, limit, transform=offer_view)


@router.get("/active")
def active_offers(restaurant=Depends(require_roles("restaurant"))):
    docs = get_db()["offer"].find({"restaurantId": str(restaurant["_id"]), "isActive": True}).sort("priority", -1)
    data = [offer_view(d) for d in docs if is_offer_valid(d)]
    return ok(data, count=len(data))


@router.get("/{offer_id}")
def get_offer(offer_id: str, restaurant=Depends(require_roles("restaurant"))):
    return ok(offer_view(owned_offer(restaurant, offer_id)))


@router.put("/{offer_id}")
def update_offer(offer_id: str, payload: OfferUpdate, restaurant=Depends(require_roles("restaurant"))):
    doc = owned_offer(restaurant, offer_id)
    changes = {k: v for k, v in payload.model_dump(exclude_unset=True).items() if v is not None}
    current = {k: doc[k] for k in OfferSchema.model_fields if k in doc}
    merged = build_offer({**current, **changes})
    if merged.totalUsageLimit < doc.get("totalUsed", 0):
        raise HTTPException(status_code=400, detail="Total usage limit cannot be below current usage")
    if "couponCode" in changes:
        changes["couponCode"] = merged.couponCode
        if code_taken(merged.couponCode, exclude=doc["_id"]):
            raise HTTPException(status_code=400, detail="Coupon code already exists")
    for key in ("startDate", "endDate"):
        if key in changes:
            changes[key] = getattr(merged, key)
    changes["updated_at"] = now()
    db = get_db()
    try:
        db["offer"].update_one({"_id": doc["_id"]}, {"$set": changes})
    except DuplicateKeyError:
        raise HTTPException(status_code=400, detail="Coupon code already exists")
    return ok(offer_view(db["offer"].find_one({"_id": doc["_id"]})), "Offer updated successfully")


@router.put("/{offer_id}/image")
async def upload_offer_image(offer_id: str, image: UploadFile = File(...),
                             restaurant=Depends(require_roles("restaurant"))):
    doc = owned_offer(restaurant, offer_id)
    url = await replace_attachment(image, doc.get("image"), "offers")
    get_db()["offer"].update_one({"_id": doc["_id"]}, {"$set": {"image": url, "updated_at": now()}})
    return ok({"image": url}, "Offer image updated successfully")


@router.delete("/{offer_id}")
def delete_offer(offer_id: str, restaurant=Depends(require_roles("restaurant"))):
    doc = owned_offer(restaurant, offer_id)
    get_db()["offer"].delete_one({"_id": doc["_id"]})
    return ok(message="Offer deleted successfully")


@router.put("/{offer_id}/toggle-status")
def toggle_offer(offer_id: str, restaurant=Depends(require_roles("restaurant"))):
    doc = toggle_flag("offer", {"_id": to_object_id(offer_id), "restaurantId": str(restaurant["_id"])}, "isActive")
    if not doc:
        raise HTTPException(status_code=404, detail="Offer not found")
    return ok(offer_view(doc), f"Offer {'activated' if doc['isActive'] else 'deactivated'} successfully")


@router.get("/{offer_id}/usage")
def offer_usage(offer_id: str, restaurant=Depends(require_roles("restaurant"))):
    doc = owned_offer(restaurant, offer_id)
    usage = [serialize(v) for v in (doc.get("userUsage") or {}).values()]
    return ok({
        "totalUsed": doc.get("totalUsed", 0),
        "totalUsageLimit": doc["totalUsageLimit"],
        "remainingUses": max(doc["totalUsageLimit"] - doc.get("totalUsed", 0), 0),
        "uniqueUsers": len(usage),
        "userUsage": usage,
    })


# -------------------- Customer --------------------
@customer_router.post("/validate")
def validate_coupon(payload: CouponRequest, user=Depends(require_roles("user"))):
    offer = find_by_code(payload.couponCode, payload.restaurantId)
    result = evaluate(offer, str(user["_id"]), payload.orderAmount, [line.model_dump() for line in payload.items])
    return ok({"offer": offer_view(offer), **result}, "Coupon is valid")


@customer_router.post("/redeem")
def redeem_coupon(payload: CouponRequest, user=Depends(require_roles("user"))):
    uid = str(user["_id"])
    offer = find_by_code(payload.couponCode, payload.restaurantId)
    result = evaluate(offer, uid, payload.orderAmount, [line.model_dump() for line in payload.items])
    updated = redeem(offer, uid)
    return ok({"offer": offer_view(updated), **result}, "Coupon applied successfully")


@customer_router.get("/restaurant/{restaurant_id}")
def restaurant_offers(restaurant_id: str):
    filt = {"restaurantId": canonical_id(restaurant_id), "isActive": True, "isVisible": True}
    docs = get_db()["offer"].find(filt).sort("priority", -1)
    data = []
    for doc in docs:
        if is_offer_valid(doc):
            view = offer_view(doc)
            view.pop("userUsage", None)
            data.append(view)
    return ok(data, count=len(data))


# -------------------- Admin --------------------
@admin_router.get("")
def admin_list_offers(restaurantId: Optional[str] = None, isValid: Optional[bool] = None,
                      page: int = 1, limit: int = 10, admin=Depends(require_roles("admin"))):
    filt = {}
    if restaurantId:
        filt["restaurantId"] = canonical_id(restaurantId)
    if isValid is not None:
        at = now()
        valid = {"isActive": True, "isVisible": {"$ne": False},
                 "startDate": {"$lte": at}, "endDate": {"$gt": at}}
        if isValid:
            filt.update(valid)
        else:
            filt["$nor"] = [valid]
    return paginate("offer", filt, page, limit, transform=offer_view)


@admin_router.get("/stats")
def admin_offer_stats(admin=Depends(require_roles("admin"))):
    at = now()
    offers = list(get_db()["offer"].find({}))
    by_restaurant = {}
    for offer in offers:
        bucket = by_restaurant.setdefault(offer["restaurantId"], {"restaurantId": offer["restaurantId"],
                                                                   "total": 0, "active": 0, "totalUsed": 0})
        bucket["total"] += 1
        bucket["totalUsed"] += offer.get("totalUsed", 0)
        if is_offer_valid(offer, at):
            bucket["active"] += 1
    return ok({
        "total": len(offers),
        "active": len([o for o in offers if is_offer_valid(o, at)]),
        "expired": len([o for o in offers if as_utc(o["endDate"]) <= at]),
        "upcoming": len([o for o in offers if as_utc(o["startDate"]) > at]),
        "byRestaurant": sorted(by_restaurant.values(), key=lambda b: b["total"], reverse=True),
    })


@admin_router.put("/{offer_id}/toggle-status")
def admin_toggle_offer(offer_id: str, admin=Depends(require_roles("admin"))):
    """Activating an expired offer extends it; deactivating ends it now"""
    db = get_db()
    doc = db["offer"].find_one({"_id": to_object_id(offer_id)})
    if not doc:
        raise HTTPException(status_code=404, detail="Offer not found")
    at = now()
    activate = not doc.get("isActive")
    changes = {"isActive": activate, "updated_at": at}
    if activate and as_utc(doc["endDate"]) < at:
        changes["endDate"] = at + timedelta(days=REACTIVATION_DAYS)
    if not activate:
        changes["endDate"] = max(at, as_utc(doc["startDate"]) + timedelta(seconds=1))
    updated = db["offer"].find_one_and_update(
        {"_id": doc["_id"], "isActive": doc.get("isActive")}, {"$set": changes},
        return_document=ReturnDocument.AFTER,
    )
    if not updated:
        raise HTTPException(status_code=409, detail="Offer was modified concurrently, please retry")
    logger.info("Admin %s %s offer %s", admin["_id"], "activated" if activate else "deactivated", offer_id)
    return ok(offer_view(updated), f"Offer {'activated' if activate else 'deactivated'} successfully")
