import logging
from typing import List, Optional

from bson import ObjectId
from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, Field
from pymongo.errors import DuplicateKeyError

from auth import require_roles
from common import get_db, canonical_id, serialize, ok, now
from schemas import Cart as CartSchema, CartItem

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/cart", tags=["cart"])

MAX_ATTEMPTS = 3


# -------------------- Models --------------------
class AddItemRequest(BaseModel):
    restaurantId: str
    itemId: str
    name: str = Field(..., min_length=1)
    price: float = Field(..., gt=0)
    quantity: int = Field(1, ge=1)
    description: Optional[str] = None
    image: Optional[str] = None
    category: Optional[str] = None


class UpdateQuantityRequest(BaseModel):
    restaurantId: str
    itemId: str
    quantity: int


class RemoveItemRequest(BaseModel):
    restaurantId: str
    itemId: str


# -------------------- Totals --------------------

def recompute(items: List[dict]) -> dict:
    """Derive line totals and cart totals; lines with quantity <= 0 are dropped"""
    lines = []
    for item in items:
        if item.get("quantity", 0) <= 0:
            continue
        line = dict(item)
        line["itemTotal"] = round(line["price"] * line["quantity"], 2)
        lines.append(line)
    subtotal = round(sum(line["itemTotal"] for line in lines), 2)
    return {
        "items": lines,
        "subtotal": subtotal,
        "total": subtotal,
        "itemCount": sum(line["quantity"] for line in lines),
    }


def add_line(items: List[dict], new: dict) -> List[dict]:
    items = [dict(i) for i in items]
    for item in items:
        if item["itemId"] == new["itemId"]:
            item["quantity"] += new["quantity"]
            return items
    items.append(dict(new))
    return items


def set_quantity(items: List[dict], item_id: str, quantity: int) -> List[dict]:
    items = [dict(i) for i in items]
    for item in items:
        if item["itemId"] == item_id:
            item["quantity"] = quantity
            return items
    if quantity <= 0:
        return items
    raise HTTPException(status_code=404, detail="Item not found in cart")


def empty_cart(user_id: str, restaurant_id: str) -> dict:
    return {"_id": None, "userId": user_id, "restaurantId": restaurant_id,
            "items": [], "subtotal": 0, "total": 0, "itemCount": 0}


# -------------------- Persistence --------------------

def load_cart(user_id: str, restaurant_id: str) -> Optional[dict]:
    return get_db()["cart"].find_one({"userId": user_id, "restaurantId": restaurant_id})


def mutate_cart(user_id: str, restaurant_id: str, change, create=False) -> dict:
    """Apply `change(items) -> items` and persist with a compare-and-swap on `version`"""
    db = get_db()
    for _ in range(MAX_ATTEMPTS):
        cart = load_cart(user_id, restaurant_id)
        if cart is None:
            if not create:
                raise HTTPException(status_code=404, detail="Cart not found")
            fresh = CartSchema(userId=user_id, restaurantId=restaurant_id).model_dump()
            fresh.update(recompute(change([])))
            fresh["created_at"] = fresh["updated_at"] = now()
            try:
                fresh["_id"] = db["cart"].insert_one(fresh).inserted_id
                return fresh
            except DuplicateKeyError:
                continue
        totals = recompute(change(cart.get("items", [])))
        version = cart.get("version", 0)
        result = db["cart"].update_one(
            {"_id": cart["_id"], "version": version},
            {"$set": {**totals, "version": version + 1, "updated_at": now()}},
        )
        if result.modified_count:
            cart.update(totals)
            cart["version"] = version + 1
            return cart
    logger.warning("Cart %s/%s lost %s concurrent updates", user_id, restaurant_id, MAX_ATTEMPTS)
    raise HTTPException(status_code=409, detail="Cart was modified concurrently, please retry")


# -------------------- Routes --------------------
@router.post("/add")
def add_item(payload: AddItemRequest, user=Depends(require_roles("user"))):
    rid = canonical_id(payload.restaurantId)
    if not get_db()["restaurant"].find_one({"_id": ObjectId(rid)}):
        raise HTTPException(status_code=404, detail="Restaurant not found")
    line = CartItem(**payload.model_dump(exclude={"restaurantId"})).model_dump()
    cart = mutate_cart(str(user["_id"]), rid, lambda items: add_line(items, line), create=True)
    return ok(serialize(cart), "Item added to cart")


@router.put("/update")
def update_quantity(payload: UpdateQuantityRequest, user=Depends(require_roles("user"))):
    cart = mutate_cart(str(user["_id"]), canonical_id(payload.restaurantId),
                       lambda items: set_quantity(items, payload.itemId, payload.quantity))
    return ok(serialize(cart), "Cart updated")


@router.delete("/remove")
def remove_item(payload: RemoveItemRequest, user=Depends(require_roles("user"))):
    cart = mutate_cart(str(user["_id"]), canonical_id(payload.restaurantId),
                       lambda items: set_quantity(items, payload.itemId, 0))
    return ok(serialize(cart), "Item removed from cart")


@router.delete("/clear/{restaurant_id}")
def clear_cart(restaurant_id: str, user=Depends(require_roles("user"))):
    cart = mutate_cart(str(user["_id"]), canonical_id(restaurant_id), lambda items: [])
    return ok(serialize(cart), "Cart cleared")


@router.get("")
def all_carts(user=Depends(require_roles("user"))):
    docs = list(get_db()["cart"].find({"userId": str(user["_id"]), "itemCount": {"$gt": 0}})
                .sort("updated_at", -1))
    return ok([serialize(d) for d in docs], count=len(docs))


@router.get("/{restaurant_id}")
def get_cart(restaurant_id: str, user=Depends(require_roles("user"))):
    uid = str(user["_id"])
    rid = canonical_id(restaurant_id)
    cart = load_cart(uid, rid)
    return ok(serialize(cart) if cart else empty_cart(uid, rid))


@router.get("/{restaurant_id}/summary")
def cart_summary(restaurant_id: str, user=Depends(require_roles("user"))):
    uid, rid = str(user["_id"]), canonical_id(restaurant_id)
    cart = load_cart(uid, rid) or empty_cart(uid, rid)
    return ok({
        "itemCount": cart.get("itemCount", 0),
        "subtotal": cart.get("subtotal", 0),
        "total": cart.get("total", 0),
    })
