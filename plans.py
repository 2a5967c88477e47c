import logging
from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, Field, field_validator
from pymongo.errors import DuplicateKeyError

from auth import require_roles
from common import get_db, to_object_id, canonical_id, serialize, ok, now, paginate, toggle_flag
from database import create_document
from schemas import Plan as PlanSchema, Meal, WeeklyMeals, DAYS, MEAL_TYPES, clean_features

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/restaurant/plans", tags=["plans"])
admin_router = APIRouter(prefix="/api/admin/plans", tags=["admin"])
public_router = APIRouter(prefix="/api/restaurants", tags=["catalog"])


# -------------------- Models --------------------
class PlanCreate(BaseModel):
    name: str = Field(..., min_length=2, max_length=100)
    description: Optional[str] = Field(None, max_length=500)
    pricePerWeek: float = Field(..., ge=0)
    features: List[str] = Field(default_factory=list)
    weeklyMeals: WeeklyMeals = Field(default_factory=WeeklyMeals)
    maxSubscribers: int = Field(0, ge=0)
    isRecommended: bool = False
    isPopular: bool = False

    @field_validator("features")
    @classmethod
    def check_features(cls, v):
        return clean_features(v)


class PlanUpdate(BaseModel):
    name: Optional[str] = Field(None, min_length=2, max_length=100)
    description: Optional[str] = Field(None, max_length=500)
    pricePerWeek: Optional[float] = Field(None, ge=0)
    features: Optional[List[str]] = None
    weeklyMeals: Optional[WeeklyMeals] = None
    maxSubscribers: Optional[int] = Field(None, ge=0)
    isRecommended: Optional[bool] = None
    isPopular: Optional[bool] = None

    @field_validator("features")
    @classmethod
    def check_features(cls, v):
        return clean_features(v) if v is not None else v


class MealsUpdate(BaseModel):
    meals: List[Meal]


class FeatureRequest(BaseModel):
    feature: str = Field(..., min_length=1, max_length=200)


# -------------------- Helpers --------------------

def weekly_calories(plan: dict) -> int:
    total = 0
    for day in (plan.get("weeklyMeals") or {}).values():
        for meals in (day or {}).values():
            total += sum(m.get("calories", 0) or 0 for m in meals or [])
    return total


def plan_view(plan: dict) -> dict:
    out = serialize(plan)
    total = weekly_calories(plan)
    out["totalWeeklyCalories"] = total
    out["averageDailyCalories"] = round(total / 7)
    return out


def owned_plan(restaurant: dict, plan_id: str) -> dict:
    doc = get_db()["plan"].find_one({"_id": to_object_id(plan_id), "restaurant": str(restaurant["_id"])})
    if not doc:
        raise HTTPException(status_code=404, detail="Plan not found")
    return doc


def name_taken(rid: str, name: str, exclude=None) -> bool:
    filt = {"restaurant": rid, "name": name}
    if exclude is not None:
        filt["_id"] = {"$ne": exclude}
    return get_db()["plan"].find_one(filt) is not None


def plan_stats(filt: dict) -> dict:
    plans = list(get_db()["plan"].find(filt))
    rated = [p for p in plans if p.get("totalRatings")]
    return {
        "totalPlans": len(plans),
        "activePlans": len([p for p in plans if p.get("isActive") and p.get("isAvailable")]),
        "totalSubscribers": sum(p.get("totalSubscribers", 0) for p in plans),
        "totalRevenue": sum(p.get("totalRevenue", 0) for p in plans),
        "averageRating": round(sum(p.get("averageRating", 0) for p in rated) / len(rated), 2) if rated else 0,
        "totalRatings": sum(p.get("totalRatings", 0) for p in plans),
        "recommendedPlans": len([p for p in plans if p.get("isRecommended")]),
        "popularPlans": len([p for p in plans if p.get("isPopular")]),
    }


# -------------------- Restaurant --------------------
@router.post("", status_code=201)
def create_plan(payload: PlanCreate, restaurant=Depends(require_roles("restaurant"))):
    rid = str(restaurant["_id"])
    name = payload.name.strip()
    if name_taken(rid, name):
        raise HTTPException(status_code=400, detail="A plan with this name already exists")
    plan = PlanSchema(restaurant=rid, **payload.model_dump(exclude={"name"}), name=name)
    try:
        plan_id = create_document("plan", plan)
    except DuplicateKeyError:
        raise HTTPException(status_code=400, detail="A plan with this name already exists")
    logger.info("Restaurant %s created plan %s", rid, plan_id)
    return ok(plan_view(get_db()["plan"].find_one({"_id": to_object_id(plan_id)})), "Plan created successfully")


@router.get("")
def list_plans(isActive: Optional[bool] = None, page: int = 1, limit: int = 10,
               restaurant=Depends(require_roles("restaurant"))):
    filt = {"restaurant": str(restaurant["_id"])}
    if isActive is not None:
        filt["isActive"] = isActive
    return paginate("plan", filt, page, limit, transform=plan_view)


@router.get("/stats")
def all_plan_stats(restaurant=Depends(require_roles("restaurant"))):
    return ok(plan_stats({"restaurant": str(restaurant["_id"])}))


@router.get("/{plan_id}")
def get_plan(plan_id: str, restaurant=Depends(require_roles("restaurant"))):
    return ok(plan_view(owned_plan(restaurant, plan_id)))


@router.put("/{plan_id}")
def update_plan(plan_id: str, payload: PlanUpdate, restaurant=Depends(require_roles("restaurant"))):
    doc = owned_plan(restaurant, plan_id)
    changes = {k: v for k, v in payload.model_dump(exclude_unset=True).items() if v is not None}
    if "name" in changes:
        changes["name"] = changes["name"].strip()
        if changes["name"] != doc["name"] and name_taken(doc["restaurant"], changes["name"], exclude=doc["_id"]):
            raise HTTPException(status_code=400, detail="A plan with this name already exists")
    changes["updated_at"] = now()
    db = get_db()
    try:
        db["plan"].update_one({"_id": doc["_id"]}, {"$set": changes})
    except DuplicateKeyError:
        raise HTTPException(status_code=400, detail="A plan with this name already exists")
    return ok(plan_view(db["plan"].find_one({"_id": doc["_id"]})), "Plan updated successfully")


@router.delete("/{plan_id}")
def delete_plan(plan_id: str, restaurant=Depends(require_roles("restaurant"))):
    doc = owned_plan(restaurant, plan_id)
    result = get_db()["plan"].delete_one({"_id": doc["_id"], "totalSubscribers": {"$not": {"$gt": 0}}})
    if result.deleted_count == 0:
        raise HTTPException(status_code=400, detail="Cannot delete plan with active subscribers")
    logger.info("Restaurant %s deleted plan %s", restaurant["_id"], plan_id)
    return ok(message="Plan deleted successfully")


@router.put("/{plan_id}/meals/{day}/{meal_type}")
def update_meals(plan_id: str, day: str, meal_type: str, payload: MealsUpdate,
                 restaurant=Depends(require_roles("restaurant"))):
    day = day.lower()
    meal_type = meal_type.lower()
    if day not in DAYS:
        raise HTTPException(status_code=400, detail="Invalid day")
    if meal_type not in MEAL_TYPES:
        raise HTTPException(status_code=400, detail="Invalid meal type")
    doc = owned_plan(restaurant, plan_id)
    meals = [m.model_dump() for m in payload.meals]
    db = get_db()
    db["plan"].update_one({"_id": doc["_id"]},
                          {"$set": {f"weeklyMeals.{day}.{meal_type}": meals, "updated_at": now()}})
    return ok(plan_view(db["plan"].find_one({"_id": doc["_id"]})), "Meals updated successfully")


@router.put("/{plan_id}/toggle-status")
def toggle_status(plan_id: str, restaurant=Depends(require_roles("restaurant"))):
    doc = toggle_flag("plan", {"_id": to_object_id(plan_id), "restaurant": str(restaurant["_id"])}, "isActive")
    if not doc:
        raise HTTPException(status_code=404, detail="Plan not found")
    return ok(plan_view(doc), f"Plan {'activated' if doc['isActive'] else 'deactivated'} successfully")


@router.put("/{plan_id}/toggle-availability")
def toggle_availability(plan_id: str, restaurant=Depends(require_roles("restaurant"))):
    doc = toggle_flag("plan", {"_id": to_object_id(plan_id), "restaurant": str(restaurant["_id"])}, "isAvailable")
    if not doc:
        raise HTTPException(status_code=404, detail="Plan not found")
    return ok(plan_view(doc), f"Plan is now {'available' if doc['isAvailable'] else 'unavailable'}")


@router.post("/{plan_id}/features")
def add_feature(plan_id: str, payload: FeatureRequest, restaurant=Depends(require_roles("restaurant"))):
    doc = owned_plan(restaurant, plan_id)
    feature = payload.feature.strip()
    if not feature:
        raise HTTPException(status_code=400, detail="Feature must be 1-200 characters")
    db = get_db()
    db["plan"].update_one({"_id": doc["_id"]}, {"$addToSet": {"features": feature}, "$set": {"updated_at": now()}})
    return ok(plan_view(db["plan"].find_one({"_id": doc["_id"]})), "Feature added successfully")


@router.delete("/{plan_id}/features")
def remove_feature(plan_id: str, payload: FeatureRequest, restaurant=Depends(require_roles("restaurant"))):
    doc = owned_plan(restaurant, plan_id)
    feature = payload.feature.strip()
    db = get_db()
    result = db["plan"].update_one({"_id": doc["_id"], "features": feature},
                                   {"$pull": {"features": feature}, "$set": {"updated_at": now()}})
    if result.matched_count == 0:
        raise HTTPException(status_code=400, detail="Feature not found in plan")
    return ok(plan_view(db["plan"].find_one({"_id": doc["_id"]})), "Feature removed successfully")


@router.get("/{plan_id}/stats")
def single_plan_stats(plan_id: str, restaurant=Depends(require_roles("restaurant"))):
    doc = owned_plan(restaurant, plan_id)
    limit = doc.get("maxSubscribers", 0)
    return ok({
        "planId": str(doc["_id"]),
        "name": doc["name"],
        "totalSubscribers": doc.get("totalSubscribers", 0),
        "totalRevenue": doc.get("totalRevenue", 0),
        "averageRating": doc.get("averageRating", 0),
        "totalRatings": doc.get("totalRatings", 0),
        "availableSlots": None if not limit else max(limit - doc.get("totalSubscribers", 0), 0),
        "totalWeeklyCalories": weekly_calories(doc),
        "averageDailyCalories": round(weekly_calories(doc) / 7),
    })


# -------------------- Public --------------------
@public_router.get("/{restaurant_id}/plans")
def restaurant_plans(restaurant_id: str):
    filt = {"restaurant": canonical_id(restaurant_id), "isActive": True, "isAvailable": True}
    docs = list(get_db()["plan"].find(filt)
                .sort([("isRecommended", -1), ("created_at", -1)]))
    return ok([plan_view(d) for d in docs], count=len(docs))


# -------------------- Admin --------------------
@admin_router.get("")
def admin_list_plans(restaurant: Optional[str] = None, isActive: Optional[bool] = None,
                     page: int = 1, limit: int = 10, admin=Depends(require_roles("admin"))):
    filt = {}
    if restaurant:
        filt["restaurant"] = restaurant
    if isActive is not None:
        filt["isActive"] = isActive
    return paginate("plan", filt, page, limit, transform=plan_view)


@admin_router.get("/stats")
def admin_plan_stats(admin=Depends(require_roles("admin"))):
    return ok(plan_stats({}))


@admin_router.get("/{plan_id}")
def admin_get_plan(plan_id: str, admin=Depends(require_roles("admin"))):
    doc = get_db()["plan"].find_one({"_id": to_object_id(plan_id)})
    if not doc:
        raise HTTPException(status_code=404, detail="Plan not found")
    return ok(plan_view(doc))


@admin_router.put("/{plan_id}/toggle-status")
def admin_toggle_plan(plan_id: str, admin=Depends(require_roles("admin"))):
    doc = toggle_flag("plan", {"_id": to_object_id(plan_id)}, "isActive")
    if not doc:
        raise HTTPException(status_code=404, detail="Plan not found")
    return ok(plan_view(doc), f"Plan {'activated' if doc['isActive'] else 'deactivated'} successfully")
