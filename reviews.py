import logging
import re
from datetime import timedelta
from typing import Annotated, List, Literal, Optional

from bson import ObjectId
from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, Field
from pymongo import ReturnDocument
from pymongo.errors import DuplicateKeyError

from auth import require_roles
from common import get_db, to_object_id, canonical_id, serialize, ok, now, paginate, toggle_flag, require_reason, as_utc
from database import create_document
from schemas import Review as ReviewSchema

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/reviews", tags=["reviews"])
public_router = APIRouter(prefix="/api/restaurants", tags=["catalog"])
admin_router = APIRouter(prefix="/api/admin/reviews", tags=["admin"])

NOT_DELETED = {"isDeleted": {"$ne": True}}
STATUS_FILTERS = {
    "pending": {"isApproved": {"$ne": True}, "isRejected": {"$ne": True}},
    "approved": {"isApproved": True},
    "rejected": {"isRejected": True},
    "flagged": {"isFlagged": True},
}


# -------------------- Models --------------------
class ReviewCreate(BaseModel):
    restaurantId: str
    orderId: str = Field(..., min_length=1)
    rating: int = Field(..., ge=1, le=5)
    review: Optional[str] = Field(None, max_length=1000)
    tags: List[Annotated[str, Field(max_length=50)]] = Field(default_factory=list, max_length=10)


class ReportRequest(BaseModel):
    reason: str = Field(..., min_length=3, max_length=500)


class ApproveRequest(BaseModel):
    adminNote: Optional[str] = Field(None, max_length=500)


class ReasonRequest(BaseModel):
    reason: Optional[str] = None
    adminNote: Optional[str] = Field(None, max_length=500)


class ResolveRequest(BaseModel):
    action: Literal["approve", "reject", "flag", "delete"]
    reason: Optional[str] = None
    adminNote: Optional[str] = Field(None, max_length=500)


# -------------------- Moderation transitions --------------------
# Each returns the full set of fields it writes; setting one outcome always clears its siblings.

def approve_changes(admin_id, note=None) -> dict:
    return {"isApproved": True, "isRejected": False, "isFlagged": False,
            "approvedBy": admin_id, "approvedAt": now(), "adminNote": note}


def reject_changes(admin_id, reason: str, note=None) -> dict:
    return {"isRejected": True, "isApproved": False, "isFlagged": False,
            "rejectionReason": reason, "rejectedBy": admin_id, "rejectedAt": now(), "adminNote": note}


def flag_changes(admin_id, reason: str, clear_outcome=False) -> dict:
    changes = {"isFlagged": True, "flagReason": reason, "flaggedBy": admin_id, "flaggedAt": now()}
    if clear_outcome:
        changes.update({"isApproved": False, "isRejected": False})
    return changes


def unflag_changes(admin_id) -> dict:
    return {"isFlagged": False, "flagReason": None, "unflaggedBy": admin_id, "unflaggedAt": now()}


def delete_changes(admin_id, reason: str) -> dict:
    return {"isDeleted": True, "deletedBy": admin_id, "deletedAt": now(), "deletionReason": reason}


def moderation_status(review: dict) -> str:
    if review.get("isDeleted"):
        return "deleted"
    if review.get("isFlagged"):
        return "flagged"
    if review.get("isRejected"):
        return "rejected"
    if review.get("isApproved"):
        return "approved"
    return "pending"


def sentiment_for(rating: int) -> str:
    if rating >= 4:
        return "positive"
    if rating == 3:
        return "neutral"
    return "negative"


def review_view(review: dict) -> dict:
    out = serialize(review)
    out["moderationStatus"] = moderation_status(review)
    return out


# -------------------- Helpers --------------------

def _recompute_restaurant_avg(restaurant_id: str):
    """Recompute and store average rating for a restaurant from its publicly counted reviews"""
    cur = get_db()["review"].find(
        {"restaurant": restaurant_id, "isRejected": {"$ne": True}, **NOT_DELETED}, {"rating": 1}
    )
    ratings = [doc.get("rating", 0) for doc in cur]
    avg = round(sum(ratings) / len(ratings), 2) if ratings else 0
    get_db()["restaurant"].update_one(
        {"_id": to_object_id(restaurant_id)}, {"$set": {"rating": avg, "totalRatings": len(ratings)}}
    )


def transition(review_id: str, guard: dict, changes: dict, conflict: str, admin=None, action=""):
    """Apply `changes` only while `guard` holds; 404 for unknown reviews, 400 `conflict` otherwise"""
    db = get_db()
    oid = to_object_id(review_id)
    changes = {**changes, "updated_at": now()}
    updated = db["review"].find_one_and_update(
        {"_id": oid, **NOT_DELETED, **guard}, {"$set": changes}, return_document=ReturnDocument.AFTER
    )
    if not updated:
        if not db["review"].find_one({"_id": oid, **NOT_DELETED}):
            raise HTTPException(status_code=404, detail="Review not found")
        raise HTTPException(status_code=400, detail=conflict)
    if admin is not None:
        logger.info("Admin %s %s review %s", admin["_id"], action, review_id)
    return updated


def _find_review(review_id: str, include_deleted=False) -> dict:
    filt = {"_id": to_object_id(review_id)}
    if not include_deleted:
        filt.update(NOT_DELETED)
    doc = get_db()["review"].find_one(filt)
    if not doc:
        raise HTTPException(status_code=404, detail="Review not found")
    return doc


def _bump(review_id: str, field: str):
    doc = get_db()["review"].find_one_and_update(
        {"_id": to_object_id(review_id), **NOT_DELETED}, {"$inc": {field: 1}},
        return_document=ReturnDocument.AFTER,
    )
    if not doc:
        raise HTTPException(status_code=404, detail="Review not found")
    return doc


# -------------------- Customer --------------------
@router.post("", status_code=201)
def add_review(payload: ReviewCreate, user=Depends(require_roles("user"))):
    db = get_db()
    uid = str(user["_id"])
    rid = canonical_id(payload.restaurantId)
    restaurant = db["restaurant"].find_one({"_id": ObjectId(rid)})
    if not restaurant:
        raise HTTPException(status_code=404, detail="Restaurant not found")
    order = db["order"].find_one({"_id": to_object_id(payload.orderId), "customer": uid,
                                  "isArchived": {"$ne": True}})
    if not order:
        raise HTTPException(status_code=404, detail="Order not found")
    if order["restaurant"] != rid:
        raise HTTPException(status_code=400, detail="Order does not belong to this restaurant")
    if order.get("status") != "delivered":
        raise HTTPException(status_code=400, detail="Only delivered orders can be reviewed")
    order_id = str(order["_id"])
    if db["review"].find_one({"order": order_id}):
        raise HTTPException(status_code=400, detail="Review already exists for this order")
    name = " ".join(p for p in (user.get("firstName"), user.get("lastName")) if p) or None
    review = ReviewSchema(
        customer=uid,
        customerName=name,
        restaurant=rid,
        restaurantName=restaurant.get("businessName"),
        order=order_id,
        orderNumber=order.get("orderNumber"),
        rating=payload.rating,
        review=payload.review.strip() if payload.review else None,
        tags=[t.strip() for t in payload.tags if t.strip()],
        sentiment=sentiment_for(payload.rating),
    )
    data = review.model_dump()
    data["restaurantLocation"] = restaurant.get("city")
    data["orderDate"] = order.get("orderDate")
    try:
        review_id = create_document("review", data)
    except DuplicateKeyError:
        raise HTTPException(status_code=400, detail="Review already exists for this order")
    _recompute_restaurant_avg(rid)
    return ok(review_view(db["review"].find_one({"_id": to_object_id(review_id)})), "Review submitted successfully")


@router.get("/mine")
def my_reviews(page: int = 1, limit: int = 10, user=Depends(require_roles("user"))):
    return paginate("review", {"customer": str(user["_id"]), **NOT_DELETED}, page, limit, transform=review_view)


@router.post("/{review_id}/helpful")
def mark_helpful(review_id: str, user=Depends(require_roles("user"))):
    doc = _bump(review_id, "helpfulCount")
    return ok({"helpfulCount": doc["helpfulCount"]})


@router.post("/{review_id}/unhelpful")
def mark_unhelpful(review_id: str, user=Depends(require_roles("user"))):
    doc = _bump(review_id, "unhelpfulCount")
    return ok({"unhelpfulCount": doc["unhelpfulCount"]})


@router.post("/{review_id}/view")
def record_view(review_id: str):
    doc = _bump(review_id, "viewCount")
    return ok({"viewCount": doc["viewCount"]})


@router.post("/{review_id}/report")
def report_review(review_id: str, payload: ReportRequest, user=Depends(require_roles("user"))):
    uid = str(user["_id"])
    db = get_db()
    oid = to_object_id(review_id)
    entry = {"userId": uid, "reason": payload.reason.strip(), "reportedAt": now()}
    doc = db["review"].find_one_and_update(
        {"_id": oid, **NOT_DELETED, "reports.userId": {"$ne": uid}},
        {"$push": {"reports": entry}, "$inc": {"reportCount": 1}},
        return_document=ReturnDocument.AFTER,
    )
    if not doc:
        _find_review(review_id)
        raise HTTPException(status_code=400, detail="You have already reported this review")
    return ok({"reportCount": doc["reportCount"]}, "Review reported successfully")


# -------------------- Restaurant-facing --------------------

def public_filter(restaurant_id: str, rating: Optional[int] = None) -> dict:
    filt = {"restaurant": canonical_id(restaurant_id), "isVisible": True,
            "isRejected": {"$ne": True}, **NOT_DELETED}
    if rating:
        filt["rating"] = rating
    return filt


def rating_summary(restaurant_id: str) -> dict:
    ratings = [d.get("rating", 0) for d in get_db()["review"].find(public_filter(restaurant_id), {"rating": 1})]
    distribution = {str(r): 0 for r in range(1, 6)}
    for rating in ratings:
        if str(rating) in distribution:
            distribution[str(rating)] += 1
    return {
        "totalReviews": len(ratings),
        "averageRating": round(sum(ratings) / len(ratings), 2) if ratings else 0,
        "totalRating": sum(ratings),
        "ratingDistribution": distribution,
    }


@router.get("/restaurant")
def own_reviews(rating: Optional[int] = None, page: int = 1, limit: int = 10,
                restaurant=Depends(require_roles("restaurant"))):
    return paginate("review", public_filter(str(restaurant["_id"]), rating), page, limit, transform=review_view)


@router.get("/stats/restaurant")
def own_review_stats(restaurant=Depends(require_roles("restaurant"))):
    return ok(rating_summary(str(restaurant["_id"])))


@router.get("/stats/restaurant/{restaurant_id}")
def restaurant_review_stats(restaurant_id: str):
    return ok(rating_summary(restaurant_id))


@public_router.get("/{restaurant_id}/reviews")
def restaurant_reviews(restaurant_id: str, rating: Optional[int] = None, page: int = 1, limit: int = 10):
    return paginate("review", public_filter(restaurant_id, rating), page, limit, transform=review_view)


@router.get("/{review_id}")
def public_review(review_id: str):
    doc = get_db()["review"].find_one({"_id": to_object_id(review_id), "isVisible": True, **NOT_DELETED})
    if not doc:
        raise HTTPException(status_code=404, detail="Review not found")
    return ok(review_view(doc))


# -------------------- Admin moderation --------------------
@admin_router.get("")
def list_reviews(status: Optional[str] = None, rating: Optional[int] = None, search: Optional[str] = None,
                 page: int = 1, limit: int = 10, admin=Depends(require_roles("admin"))):
    filt = dict(NOT_DELETED)
    if status:
        if status not in STATUS_FILTERS:
            raise HTTPException(status_code=400, detail="Invalid status filter")
        filt.update(STATUS_FILTERS[status])
    if rating:
        filt["rating"] = rating
    if search:
        pattern = {"$regex": re.escape(search), "$options": "i"}
        filt["$or"] = [{"review": pattern}, {"customerName": pattern}, {"restaurantName": pattern}]
    return paginate("review", filt, page, limit, transform=review_view)


@admin_router.get("/stats")
def review_stats(admin=Depends(require_roles("admin"))):
    db = get_db()
    reviews = list(db["review"].find(NOT_DELETED, {"rating": 1, "created_at": 1}))
    distribution = {str(r): 0 for r in range(1, 6)}
    for review in reviews:
        key = str(review.get("rating"))
        if key in distribution:
            distribution[key] += 1
    since = now() - timedelta(days=365)
    months = {}
    for review in reviews:
        created = as_utc(review.get("created_at"))
        if created and created >= since:
            bucket = months.setdefault(created.strftime("%Y-%m"), {"count": 0, "ratingSum": 0})
            bucket["count"] += 1
            bucket["ratingSum"] += review.get("rating", 0)
    trend = [
        {"month": month, "count": b["count"], "averageRating": round(b["ratingSum"] / b["count"], 2)}
        for month, b in sorted(months.items())
    ]

    def count(extra):
        return db["review"].count_documents({**NOT_DELETED, **extra})

    return ok({
        "total": len(reviews),
        "pending": count(STATUS_FILTERS["pending"]),
        "approved": count(STATUS_FILTERS["approved"]),
        "rejected": count(STATUS_FILTERS["rejected"]),
        "flagged": count(STATUS_FILTERS["flagged"]),
        "deleted": db["review"].count_documents({"isDeleted": True}),
        "ratingDistribution": distribution,
        "monthlyTrend": trend,
    })


@admin_router.get("/flagged")
def flagged_reviews(page: int = 1, limit: int = 10, admin=Depends(require_roles("admin"))):
    return paginate("review", {**NOT_DELETED, **STATUS_FILTERS["flagged"]}, page, limit, transform=review_view)


@admin_router.get("/pending")
def pending_reviews(page: int = 1, limit: int = 10, admin=Depends(require_roles("admin"))):
    return paginate("review", {**NOT_DELETED, **STATUS_FILTERS["pending"]}, page, limit, transform=review_view)


@admin_router.get("/user/{user_id}")
def user_reviews(user_id: str, page: int = 1, limit: int = 10, admin=Depends(require_roles("admin"))):
    return paginate("review", {"customer": user_id}, page, limit, transform=review_view)


@admin_router.get("/{review_id}")
def get_review(review_id: str, admin=Depends(require_roles("admin"))):
    return ok(review_view(_find_review(review_id, include_deleted=True)))


@admin_router.put("/{review_id}/approve")
def approve_review(review_id: str, payload: Optional[ApproveRequest] = None, admin=Depends(require_roles("admin"))):
    note = payload.adminNote if payload else None
    doc = transition(review_id, {"isApproved": {"$ne": True}}, approve_changes(admin["_id"], note),
                     "Review is already approved", admin, "approved")
    _recompute_restaurant_avg(doc["restaurant"])
    return ok(review_view(doc), "Review approved successfully")


@admin_router.put("/{review_id}/reject")
def reject_review(review_id: str, payload: ReasonRequest, admin=Depends(require_roles("admin"))):
    reason = require_reason(payload.reason, "Rejection")
    doc = transition(review_id, {"isRejected": {"$ne": True}}, reject_changes(admin["_id"], reason, payload.adminNote),
                     "Review is already rejected", admin, "rejected")
    _recompute_restaurant_avg(doc["restaurant"])
    return ok(review_view(doc), "Review rejected successfully")


@admin_router.put("/{review_id}/flag")
def flag_review(review_id: str, payload: ReasonRequest, admin=Depends(require_roles("admin"))):
    reason = require_reason(payload.reason, "Flag")
    doc = transition(review_id, {}, flag_changes(admin["_id"], reason), "Review could not be flagged", admin, "flagged")
    return ok(review_view(doc), "Review flagged successfully")


@admin_router.put("/{review_id}/unflag")
def unflag_review(review_id: str, admin=Depends(require_roles("admin"))):
    doc = transition(review_id, {"isFlagged": True}, unflag_changes(admin["_id"]), "Review is not flagged",
                     admin, "unflagged")
    return ok(review_view(doc), "Review unflagged successfully")


@admin_router.put("/{review_id}/toggle-visibility")
def toggle_visibility(review_id: str, admin=Depends(require_roles("admin"))):
    audit = {"visibilityToggledBy": admin["_id"], "visibilityToggledAt": now()}
    doc = toggle_flag("review", {"_id": to_object_id(review_id), **NOT_DELETED}, "isVisible", audit)
    if not doc:
        raise HTTPException(status_code=404, detail="Review not found")
    return ok(review_view(doc), f"Review is now {'visible' if doc['isVisible'] else 'hidden'}")


@admin_router.put("/{review_id}/feature")
def toggle_feature(review_id: str, admin=Depends(require_roles("admin"))):
    audit = {"featuredBy": admin["_id"], "featuredAt": now()}
    doc = toggle_flag("review", {"_id": to_object_id(review_id), **NOT_DELETED}, "isFeatured", audit)
    if not doc:
        raise HTTPException(status_code=404, detail="Review not found")
    return ok(review_view(doc), f"Review {'featured' if doc['isFeatured'] else 'unfeatured'} successfully")


@admin_router.delete("/{review_id}")
def delete_review(review_id: str, payload: ReasonRequest, admin=Depends(require_roles("admin"))):
    reason = require_reason(payload.reason, "Deletion")
    doc = transition(review_id, {}, delete_changes(admin["_id"], reason), "Review could not be deleted",
                     admin, "deleted")
    _recompute_restaurant_avg(doc["restaurant"])
    return ok(message="Review deleted successfully")


@admin_router.get("/{review_id}/reports")
def review_reports(review_id: str, admin=Depends(require_roles("admin"))):
    doc = _find_review(review_id)
    reports = serialize(doc.get("reports", []))
    return ok(reports, count=len(reports), reportCount=doc.get("reportCount", 0))


@admin_router.put("/{review_id}/reports/resolve")
def resolve_reports(review_id: str, payload: ResolveRequest, admin=Depends(require_roles("admin"))):
    """Clear the report queue and apply the chosen moderation outcome in one write"""
    admin_id = admin["_id"]
    if payload.action == "approve":
        changes = approve_changes(admin_id, payload.adminNote)
    elif payload.action == "reject":
        changes = reject_changes(admin_id, require_reason(payload.reason, "Rejection"), payload.adminNote)
    elif payload.action == "flag":
        changes = flag_changes(admin_id, (payload.reason or "").strip() or "Flagged after user reports",
                               clear_outcome=True)
    else:
        changes = delete_changes(admin_id, require_reason(payload.reason, "Deletion"))
    changes.update({"reports": [], "reportCount": 0, "reportsResolvedBy": admin_id, "reportsResolvedAt": now()})
    doc = transition(review_id, {}, changes, "Reports could not be resolved", admin,
                     f"resolved reports ({payload.action})")
    _recompute_restaurant_avg(doc["restaurant"])
    return ok(review_view(doc), "Reports resolved successfully")
