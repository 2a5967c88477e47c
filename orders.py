import logging
import random
from datetime import timedelta
from typing import List, Literal, Optional

from bson import ObjectId
from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, Field
from pymongo import ReturnDocument
from pymongo.errors import DuplicateKeyError

from auth import require_roles, ADMIN_ROLES
from carts import load_cart, mutate_cart, recompute
from common import get_db, to_object_id, canonical_id, serialize, ok, now, paginate, parse_date, as_utc
from database import create_document
from schemas import Order as OrderSchema, OrderItem, DeliveryAddress, ORDER_STATUSES

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/orders", tags=["orders"])

NOT_ARCHIVED = {"isArchived": {"$ne": True}}
# forward-only fulfilment path; cancellation has its own route
ORDER_FLOW = ("pending", "confirmed", "preparing", "ready", "delivered")
CLOSED_STATUSES = ("delivered", "cancelled")
CANCELLED_BY = {"user": "customer", "restaurant": "restaurant"}
MAX_ATTEMPTS = 3


# -------------------- Models --------------------
class CreateFromCartRequest(BaseModel):
    restaurantId: str
    deliveryAddress: DeliveryAddress
    specialInstructions: Optional[str] = Field(None, max_length=500)


class CustomOrderRequest(BaseModel):
    customer: str
    customerName: Optional[str] = Field(None, max_length=100)
    restaurant: str
    restaurantName: Optional[str] = Field(None, max_length=100)
    items: List[OrderItem] = Field(..., min_length=1)
    deliveryAddress: DeliveryAddress
    specialInstructions: Optional[str] = Field(None, max_length=500)
    estimatedDelivery: Optional[str] = Field(None, max_length=50)


class StatusUpdate(BaseModel):
    status: Literal["confirmed", "preparing", "ready", "delivered"]


class CancelRequest(BaseModel):
    reason: str = Field(..., min_length=1, max_length=200)


# -------------------- Helpers --------------------

def generate_order_number() -> str:
    stamp = str(int(now().timestamp() * 1000))
    return f"ORD{stamp[-6:]}{random.randint(0, 999):03d}"


def customer_name(user: dict) -> str:
    name = " ".join(p for p in (user.get("firstName"), user.get("lastName")) if p)
    return name or user.get("email") or "Unknown Customer"


def is_admin(principal: dict) -> bool:
    return principal["_role"] in ADMIN_ROLES


def access_scope(principal: dict) -> dict:
    """Orders a principal may see: customers their own, restaurants theirs, admins all"""
    if principal["_role"] == "user":
        return {"customer": str(principal["_id"])}
    if principal["_role"] == "restaurant":
        return {"restaurant": str(principal["_id"])}
    return {}


def order_view(doc: dict) -> dict:
    out = serialize(doc)
    out["itemCount"] = sum(i.get("quantity", 0) for i in doc.get("items", []))
    return out


def with_status(filt: dict, status: Optional[str]) -> dict:
    status = (status or "").strip()
    if status:
        if status not in ORDER_STATUSES:
            raise HTTPException(status_code=400, detail="Invalid status filter")
        filt["status"] = status
    return filt


def date_range(start: Optional[str], end: Optional[str]) -> dict:
    bounds = {}
    for key, value in (("$gte", start), ("$lte", end)):
        if value:
            parsed = parse_date(value)
            if parsed is None:
                raise HTTPException(status_code=400, detail="Invalid date filter")
            bounds[key] = parsed
    return bounds


def insert_order(data: dict) -> str:
    """Insert with a fresh order number, retrying the rare number collision"""
    for _ in range(MAX_ATTEMPTS):
        data["orderNumber"] = generate_order_number()
        try:
            return create_document("order", OrderSchema(**data))
        except DuplicateKeyError:
            continue
    raise HTTPException(status_code=409, detail="Could not allocate an order number, please retry")


def created(order_id: str, message="Order created successfully"):
    doc = get_db()["order"].find_one({"_id": ObjectId(order_id)})
    return ok({
        "orderId": order_id,
        "orderNumber": doc["orderNumber"],
        "status": doc["status"],
        "totalAmount": doc["totalAmount"],
    }, message)


def _find_order(order_id: str, principal: dict) -> dict:
    doc = get_db()["order"].find_one({"_id": to_object_id(order_id), **NOT_ARCHIVED, **access_scope(principal)})
    if not doc:
        raise HTTPException(status_code=404, detail="Order not found")
    return doc


def _guarded_update(order_id: str, principal: dict, guard: dict, changes: dict, conflict: str) -> dict:
    """Write `changes` only while `guard` holds; 404 outside the caller's scope, 400 `conflict` otherwise"""
    filt = {"_id": to_object_id(order_id), **NOT_ARCHIVED, **access_scope(principal)}
    updated = get_db()["order"].find_one_and_update(
        {**filt, **guard}, {"$set": {**changes, "updated_at": now()}}, return_document=ReturnDocument.AFTER
    )
    if not updated:
        _find_order(order_id, principal)
        raise HTTPException(status_code=400, detail=conflict)
    return updated


# -------------------- Create --------------------
@router.post("/create-from-cart", status_code=201)
def create_from_cart(payload: CreateFromCartRequest, user=Depends(require_roles("user"))):
    db = get_db()
    uid = str(user["_id"])
    rid = canonical_id(payload.restaurantId)
    restaurant = db["restaurant"].find_one({"_id": ObjectId(rid)})
    if not restaurant:
        raise HTTPException(status_code=404, detail="Restaurant not found")
    cart = load_cart(uid, rid)
    if not cart or not cart.get("items"):
        raise HTTPException(status_code=400, detail="Cart is empty or not found")
    totals = recompute(cart["items"])
    if totals["subtotal"] <= 0:
        raise HTTPException(status_code=400, detail="Cart total must be greater than 0")
    order_id = insert_order({
        "orderDate": now(),
        "customer": uid,
        "customerName": customer_name(user),
        "restaurant": rid,
        "restaurantName": restaurant.get("businessName") or "Restaurant",
        "items": [OrderItem(**{**line, "category": line.get("category") or "General"}) for line in totals["items"]],
        "subtotal": totals["subtotal"],
        "totalAmount": totals["total"],
        "itemCount": totals["itemCount"],
        "deliveryAddress": payload.deliveryAddress,
        "specialInstructions": payload.specialInstructions,
    })
    mutate_cart(uid, rid, lambda items: [])
    for line in totals["items"]:
        if ObjectId.is_valid(line["itemId"]):
            db["item"].update_one({"_id": ObjectId(line["itemId"]), "restaurant": rid},
                                  {"$inc": {"totalOrder": line["quantity"]}})
    logger.info("User %s placed order %s with restaurant %s", uid, order_id, rid)
    return created(order_id)


@router.post("/create-custom", status_code=201)
def create_custom(payload: CustomOrderRequest, principal=Depends(require_roles("admin", "restaurant"))):
    db = get_db()
    rid = canonical_id(payload.restaurant)
    if principal["_role"] == "restaurant" and rid != str(principal["_id"]):
        raise HTTPException(status_code=403, detail="You can only create orders for your own restaurant")
    customer = db["user"].find_one({"_id": to_object_id(payload.customer)})
    if not customer:
        raise HTTPException(status_code=404, detail="Customer not found")
    restaurant = db["restaurant"].find_one({"_id": ObjectId(rid)})
    if not restaurant:
        raise HTTPException(status_code=404, detail="Restaurant not found")
    totals = recompute([line.model_dump() for line in payload.items])
    order_id = insert_order({
        "orderDate": now(),
        "customer": str(customer["_id"]),
        "customerName": payload.customerName or customer_name(customer),
        "restaurant": rid,
        "restaurantName": payload.restaurantName or restaurant.get("businessName") or "Restaurant",
        "items": totals["items"],
        "subtotal": totals["subtotal"],
        "totalAmount": totals["total"],
        "itemCount": totals["itemCount"],
        "deliveryAddress": payload.deliveryAddress,
        "specialInstructions": payload.specialInstructions,
        "estimatedDelivery": payload.estimatedDelivery or "15-20 min",
    })
    logger.info("%s %s created custom order %s", principal["_role"], principal["_id"], order_id)
    return created(order_id)


# -------------------- Listings --------------------
@router.get("")
def list_orders(status: Optional[str] = None, customer: Optional[str] = None, restaurant: Optional[str] = None,
                startDate: Optional[str] = None, endDate: Optional[str] = None,
                sortBy: Literal["orderDate", "totalAmount", "created_at"] = "orderDate",
                sortOrder: Literal["asc", "desc"] = "desc", page: int = 1, limit: int = 10,
                admin=Depends(require_roles("admin"))):
    filt = with_status(dict(NOT_ARCHIVED), status)
    if customer:
        filt["customer"] = canonical_id(customer)
    if restaurant:
        filt["restaurant"] = canonical_id(restaurant)
    bounds = date_range(startDate, endDate)
    if bounds:
        filt["orderDate"] = bounds
    sort = [(sortBy, -1 if sortOrder == "desc" else 1)]
    return paginate("order", filt, page, limit, sort=sort, transform=order_view)


@router.get("/health")
def health():
    return {"success": True, "message": "Order service is running", "service": "Order Service",
            "timestamp": now().isoformat()}


@router.get("/restaurant")
def current_restaurant_orders(status: Optional[str] = None, page: int = 1, limit: int = 10,
                              restaurant=Depends(require_roles("restaurant"))):
    filt = with_status({"restaurant": str(restaurant["_id"]), **NOT_ARCHIVED}, status)
    return paginate("order", filt, page, limit, sort=[("orderDate", -1)], transform=order_view)


@router.get("/stats/overview")
def order_stats(customerId: Optional[str] = None, restaurantId: Optional[str] = None,
                startDate: Optional[str] = None, endDate: Optional[str] = None,
                principal=Depends(require_roles("admin", "restaurant"))):
    filt = dict(NOT_ARCHIVED)
    if customerId:
        filt["customer"] = canonical_id(customerId)
    if restaurantId and is_admin(principal):
        filt["restaurant"] = canonical_id(restaurantId)
    filt.update(access_scope(principal))
    bounds = date_range(startDate, endDate)

    orders = []
    for doc in get_db()["order"].find(filt, {"status": 1, "totalAmount": 1, "orderDate": 1}):
        placed = as_utc(doc.get("orderDate"))
        if "$gte" in bounds and (placed is None or placed < bounds["$gte"]):
            continue
        if "$lte" in bounds and (placed is None or placed > bounds["$lte"]):
            continue
        orders.append((doc, placed))

    status_counts = {}
    for doc, _ in orders:
        status_counts[doc.get("status")] = status_counts.get(doc.get("status"), 0) + 1
    revenue = round(sum(doc.get("totalAmount", 0) for doc, _ in orders), 2)

    since = now() - timedelta(days=7)
    days = {}
    for doc, placed in orders:
        if placed and placed >= since:
            bucket = days.setdefault(placed.strftime("%Y-%m-%d"), {"count": 0, "revenue": 0})
            bucket["count"] += 1
            bucket["revenue"] = round(bucket["revenue"] + doc.get("totalAmount", 0), 2)

    return ok({
        "statusCounts": status_counts,
        "totals": {
            "totalOrders": len(orders),
            "totalRevenue": revenue,
            "avgOrderValue": round(revenue / len(orders), 2) if orders else 0,
        },
        "dailyOrders": [{"date": day, **b} for day, b in sorted(days.items())],
    })


@router.get("/customer/{customer_id}")
def customer_orders(customer_id: str, status: Optional[str] = None, page: int = 1, limit: int = 10,
                    principal=Depends(require_roles("user", "admin"))):
    cid = canonical_id(customer_id)
    if not is_admin(principal) and cid != str(principal["_id"]):
        raise HTTPException(status_code=403, detail="You can only view your own orders")
    filt = with_status({"customer": cid, **NOT_ARCHIVED}, status)
    return paginate("order", filt, page, limit, sort=[("orderDate", -1)], transform=order_view)


@router.get("/restaurant/{restaurant_id}")
def restaurant_orders(restaurant_id: str, status: Optional[str] = None, page: int = 1, limit: int = 10,
                      principal=Depends(require_roles("restaurant", "admin"))):
    rid = canonical_id(restaurant_id)
    if not is_admin(principal) and rid != str(principal["_id"]):
        raise HTTPException(status_code=403, detail="You can only view your own orders")
    filt = with_status({"restaurant": rid, **NOT_ARCHIVED}, status)
    return paginate("order", filt, page, limit, sort=[("orderDate", -1)], transform=order_view)


@router.get("/{order_id}")
def get_order(order_id: str, principal=Depends(require_roles("user", "restaurant", "admin"))):
    return ok(order_view(_find_order(order_id, principal)))


# -------------------- Lifecycle --------------------
@router.patch("/{order_id}/status")
def update_status(order_id: str, payload: StatusUpdate, principal=Depends(require_roles("restaurant", "admin"))):
    earlier = list(ORDER_FLOW[:ORDER_FLOW.index(payload.status)])
    changes = {"status": payload.status}
    if payload.status == "delivered":
        changes["deliveredAt"] = now()
    doc = _guarded_update(order_id, principal, {"status": {"$in": earlier}}, changes,
                          f"Order cannot be moved to {payload.status} from its current status")
    logger.info("%s %s moved order %s to %s", principal["_role"], principal["_id"], order_id, payload.status)
    return ok({"orderId": str(doc["_id"]), "status": doc["status"], "updatedAt": doc["updated_at"]},
              "Order status updated successfully")


@router.patch("/{order_id}/cancel")
def cancel_order(order_id: str, payload: CancelRequest,
                 principal=Depends(require_roles("user", "restaurant", "admin"))):
    changes = {
        "status": "cancelled",
        "cancellationReason": payload.reason.strip(),
        "cancelledBy": CANCELLED_BY.get(principal["_role"], "system"),
        "cancellationTime": now(),
    }
    doc = _guarded_update(order_id, principal, {"status": {"$nin": list(CLOSED_STATUSES)}}, changes,
                          "Order cannot be cancelled in current status")
    logger.info("Order %s cancelled by %s %s", order_id, principal["_role"], principal["_id"])
    return ok({
        "orderId": str(doc["_id"]),
        "status": doc["status"],
        "cancellationReason": doc["cancellationReason"],
        "cancelledBy": doc["cancelledBy"],
    }, "Order cancelled successfully")


@router.delete("/{order_id}")
def delete_order(order_id: str, admin=Depends(require_roles("admin"))):
    doc = get_db()["order"].find_one_and_update(
        {"_id": to_object_id(order_id), **NOT_ARCHIVED},
        {"$set": {"isArchived": True, "archivedBy": str(admin["_id"]), "archivedAt": now(), "updated_at": now()}},
    )
    if not doc:
        raise HTTPException(status_code=404, detail="Order not found")
    logger.info("Admin %s archived order %s", admin["_id"], order_id)
    return ok(message="Order deleted successfully")
