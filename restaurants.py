import logging
import re
from typing import List, Literal, Optional

from bson import ObjectId
from fastapi import APIRouter, Depends, HTTPException, UploadFile, File, Form
from pydantic import BaseModel, Field, EmailStr
from pymongo.errors import DuplicateKeyError

from auth import hash_password, verify_password, create_access_token, require_roles
from common import get_db, to_object_id, serialize, ok, now, paginate, parse_date, toggle_flag
from database import create_document
from schemas import (
    Restaurant as RestaurantSchema,
    Category as CategorySchema,
    Item as ItemSchema,
    PHONE_PATTERN,
    PINCODE_PATTERN,
)
from storage import save_attachments, replace_attachment, read_image, storage, check_upload_count

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/restaurant", tags=["restaurant"])
public_router = APIRouter(prefix="/api/restaurants", tags=["catalog"])

MAX_MESS_IMAGES = 5
AVAILABILITY_CYCLE = {"in-stock": "out-of-stock", "out-of-stock": "limited", "limited": "in-stock"}


# -------------------- Models --------------------
class RestaurantRegister(BaseModel):
    phone: str = Field(..., pattern=PHONE_PATTERN)
    password: str = Field(..., min_length=6)
    businessName: str = Field(..., min_length=2, max_length=100)
    firstName: Optional[str] = Field(None, max_length=50)
    lastName: Optional[str] = Field(None, max_length=50)
    email: Optional[EmailStr] = None
    city: Optional[str] = Field(None, max_length=50)


class RestaurantLogin(BaseModel):
    phone: str
    password: str


class CategoryCreate(BaseModel):
    name: str = Field(..., min_length=2, max_length=50)
    description: Optional[str] = Field(None, max_length=200)


class CategoryUpdate(BaseModel):
    name: Optional[str] = Field(None, min_length=2, max_length=50)
    description: Optional[str] = Field(None, max_length=200)


class ItemCreate(BaseModel):
    name: str = Field(..., min_length=2, max_length=100)
    description: Optional[str] = Field(None, max_length=500)
    category: str
    itemCategory: str = Field("Veg", max_length=50)
    price: float = Field(..., gt=0)
    availability: Literal["in-stock", "out-of-stock", "limited"] = "in-stock"
    isDietMeal: bool = False
    calories: int = Field(0, ge=0)


class ItemUpdate(BaseModel):
    name: Optional[str] = Field(None, min_length=2, max_length=100)
    description: Optional[str] = Field(None, max_length=500)
    category: Optional[str] = None
    itemCategory: Optional[str] = Field(None, max_length=50)
    price: Optional[float] = Field(None, gt=0)
    availability: Optional[Literal["in-stock", "out-of-stock", "limited"]] = None
    isDietMeal: Optional[bool] = None
    calories: Optional[int] = Field(None, ge=0)


def restaurant_profile(doc: dict) -> dict:
    out = serialize(doc)
    out.pop("_kind", None)
    out.pop("_role", None)
    return out


def profile_complete(doc: dict) -> bool:
    return all(doc.get(k) for k in ("businessName", "address", "city"))


# -------------------- Auth --------------------
@router.post("/register", status_code=201)
def register(payload: RestaurantRegister):
    db = get_db()
    if db["restaurant"].find_one({"phone": payload.phone}):
        raise HTTPException(status_code=400, detail="Restaurant with this phone number already exists")
    data = payload.model_dump(exclude={"password"})
    restaurant = RestaurantSchema(**data, password=hash_password(payload.password))
    restaurant.isProfile = profile_complete(restaurant.model_dump())
    try:
        rid = create_document("restaurant", restaurant)
    except DuplicateKeyError:
        raise HTTPException(status_code=400, detail="Restaurant with this phone number already exists")
    logger.info("Registered restaurant %s", rid)
    doc = db["restaurant"].find_one({"_id": to_object_id(rid)})
    return ok({"restaurant": restaurant_profile(doc), "token": create_access_token(rid)},
              "Restaurant registered successfully")


@router.post("/login")
def login(payload: RestaurantLogin):
    db = get_db()
    doc = db["restaurant"].find_one({"phone": payload.phone})
    if not doc or not doc.get("isActive", True) or not verify_password(payload.password, doc.get("password", "")):
        raise HTTPException(status_code=401, detail="Invalid phone number or password")
    db["restaurant"].update_one({"_id": doc["_id"]}, {"$set": {"lastLogin": now()}})
    return ok({"restaurant": restaurant_profile(doc), "token": create_access_token(str(doc["_id"]))},
              "Login successful")


# -------------------- Profile --------------------
@router.get("/profile")
def get_profile(restaurant=Depends(require_roles("restaurant"))):
    return ok(restaurant_profile(restaurant))


@router.put("/profile")
async def update_profile(
    firstName: Optional[str] = Form(None, max_length=50),
    lastName: Optional[str] = Form(None, max_length=50),
    dateOfBirth: Optional[str] = Form(None),
    businessName: Optional[str] = Form(None, min_length=2, max_length=100),
    email: Optional[EmailStr] = Form(None),
    address: Optional[str] = Form(None, max_length=500),
    city: Optional[str] = Form(None, max_length=50),
    pinCode: Optional[str] = Form(None, pattern=PINCODE_PATTERN),
    state: Optional[str] = Form(None, max_length=50),
    category: Optional[Literal["Veg", "Non Veg", "Mix"]] = Form(None),
    specialization: Optional[str] = Form(None, max_length=200),
    bankName: Optional[str] = Form(None),
    accountNumber: Optional[str] = Form(None),
    ifscCode: Optional[str] = Form(None),
    accountHolderName: Optional[str] = Form(None),
    profileImage: Optional[UploadFile] = File(None),
    qrCode: Optional[UploadFile] = File(None),
    passbook: Optional[UploadFile] = File(None),
    aadharCard: Optional[UploadFile] = File(None),
    panCard: Optional[UploadFile] = File(None),
    messImages: Optional[List[UploadFile]] = File(None),
    restaurant=Depends(require_roles("restaurant")),
):
    fields = dict(firstName=firstName, lastName=lastName, businessName=businessName, email=email,
                  address=address, city=city, pinCode=pinCode, state=state, category=category,
                  specialization=specialization, bankName=bankName, accountNumber=accountNumber,
                  ifscCode=ifscCode.upper() if ifscCode else None, accountHolderName=accountHolderName)
    changes = {k: v.strip() if isinstance(v, str) else v for k, v in fields.items() if v is not None}
    if dateOfBirth:
        parsed = parse_date(dateOfBirth)
        if parsed is None:
            raise HTTPException(status_code=400, detail="Invalid date of birth")
        changes["dateOfBirth"] = parsed

    singles = {"profileImage": profileImage, "qrCode": qrCode, "passbook": passbook,
               "aadharCard": aadharCard, "panCard": panCard}
    mess = [f for f in (messImages or []) if f is not None and f.filename]
    check_upload_count(list(singles.values()) + mess)
    if len(restaurant.get("messImages", [])) + len(mess) > MAX_MESS_IMAGES:
        raise HTTPException(status_code=400, detail=f"Maximum {MAX_MESS_IMAGES} mess images allowed")
    changes.update(await save_attachments(singles, restaurant, "restaurants"))

    update = {"$set": changes}
    if mess:
        urls = []
        for upload in mess:
            content = await read_image(upload)
            urls.append(storage.save(content, upload.filename, upload.content_type, "restaurants/mess"))
        update["$push"] = {"messImages": {"$each": urls}}

    merged = {**restaurant, **changes}
    changes["isProfile"] = profile_complete(merged)
    changes["updated_at"] = now()
    db = get_db()
    db["restaurant"].update_one({"_id": restaurant["_id"]}, update)
    return ok(restaurant_profile(db["restaurant"].find_one({"_id": restaurant["_id"]})),
              "Profile updated successfully")


@router.put("/toggle-online")
def toggle_online(restaurant=Depends(require_roles("restaurant"))):
    doc = toggle_flag("restaurant", {"_id": restaurant["_id"]}, "isOnline")
    state = "online" if doc["isOnline"] else "offline"
    return ok({"isOnline": doc["isOnline"]}, f"Restaurant is now {state}")


@router.get("/dashboard")
def dashboard(restaurant=Depends(require_roles("restaurant"))):
    db = get_db()
    rid = str(restaurant["_id"])
    return ok({
        "restaurant": restaurant_profile(restaurant),
        "totalItems": db["item"].count_documents({"restaurant": rid}),
        "activeItems": db["item"].count_documents({"restaurant": rid, "isActive": True}),
        "totalCategories": db["category"].count_documents({"restaurant": rid}),
        "totalPlans": db["plan"].count_documents({"restaurant": rid}),
        "totalOffers": db["offer"].count_documents({"restaurantId": rid}),
        "totalReviews": db["review"].count_documents({"restaurant": rid, "isDeleted": {"$ne": True}}),
        "rating": restaurant.get("rating", 0),
    })


# -------------------- Categories --------------------

def owned_category(restaurant: dict, category_id: str) -> dict:
    doc = get_db()["category"].find_one({"_id": to_object_id(category_id), "restaurant": str(restaurant["_id"])})
    if not doc:
        raise HTTPException(status_code=404, detail="Category not found")
    return doc


def _category_name_taken(rid: str, name: str, exclude=None) -> bool:
    filt = {"restaurant": rid, "name": {"$regex": f"^{_escape(name)}$", "$options": "i"}}
    if exclude is not None:
        filt["_id"] = {"$ne": exclude}
    return get_db()["category"].find_one(filt) is not None


def _escape(text: str) -> str:
    return re.escape(text)


@router.post("/categories", status_code=201)
def create_category(payload: CategoryCreate, restaurant=Depends(require_roles("restaurant"))):
    rid = str(restaurant["_id"])
    name = payload.name.strip()
    if _category_name_taken(rid, name):
        raise HTTPException(status_code=400, detail="Category with this name already exists")
    category = CategorySchema(restaurant=rid, name=name, description=payload.description)
    try:
        cid = create_document("category", category)
    except DuplicateKeyError:
        raise HTTPException(status_code=400, detail="Category with this name already exists")
    return ok(serialize(get_db()["category"].find_one({"_id": to_object_id(cid)})), "Category created successfully")


@router.get("/categories")
def list_categories(isActive: Optional[bool] = None, page: int = 1, limit: int = 50,
                    restaurant=Depends(require_roles("restaurant"))):
    filt = {"restaurant": str(restaurant["_id"])}
    if isActive is not None:
        filt["isActive"] = isActive
    return paginate("category", filt, page, limit, sort=[("name", 1)])


@router.get("/categories/{category_id}")
def get_category(category_id: str, restaurant=Depends(require_roles("restaurant"))):
    return ok(serialize(owned_category(restaurant, category_id)))


@router.put("/categories/{category_id}")
def update_category(category_id: str, payload: CategoryUpdate, restaurant=Depends(require_roles("restaurant"))):
    doc = owned_category(restaurant, category_id)
    changes = {k: v for k, v in payload.model_dump(exclude_unset=True).items() if v is not None}
    if "name" in changes:
        changes["name"] = changes["name"].strip()
        if _category_name_taken(str(restaurant["_id"]), changes["name"], exclude=doc["_id"]):
            raise HTTPException(status_code=400, detail="Category with this name already exists")
    changes["updated_at"] = now()
    db = get_db()
    db["category"].update_one({"_id": doc["_id"]}, {"$set": changes})
    return ok(serialize(db["category"].find_one({"_id": doc["_id"]})), "Category updated successfully")


@router.put("/categories/{category_id}/image")
async def upload_category_image(category_id: str, image: UploadFile = File(...),
                                restaurant=Depends(require_roles("restaurant"))):
    doc = owned_category(restaurant, category_id)
    url = await replace_attachment(image, doc.get("image"), "categories")
    get_db()["category"].update_one({"_id": doc["_id"]}, {"$set": {"image": url, "updated_at": now()}})
    return ok({"image": url}, "Category image updated successfully")


@router.put("/categories/{category_id}/toggle-status")
def toggle_category(category_id: str, restaurant=Depends(require_roles("restaurant"))):
    doc = toggle_flag("category", {"_id": to_object_id(category_id), "restaurant": str(restaurant["_id"])}, "isActive")
    if not doc:
        raise HTTPException(status_code=404, detail="Category not found")
    return ok(serialize(doc), f"Category {'activated' if doc['isActive'] else 'deactivated'} successfully")


@router.delete("/categories/{category_id}")
def delete_category(category_id: str, restaurant=Depends(require_roles("restaurant"))):
    doc = owned_category(restaurant, category_id)
    db = get_db()
    count = db["item"].count_documents({"category": str(doc["_id"])})
    if count:
        raise HTTPException(
            status_code=400,
            detail=f"Cannot delete category. It has {count} items. Please move or delete items first.",
        )
    storage.delete(doc.get("image"))
    db["category"].delete_one({"_id": doc["_id"]})
    return ok(message="Category deleted successfully")


# -------------------- Items --------------------

def owned_item(restaurant: dict, item_id: str) -> dict:
    doc = get_db()["item"].find_one({"_id": to_object_id(item_id), "restaurant": str(restaurant["_id"])})
    if not doc:
        raise HTTPException(status_code=404, detail="Item not found")
    return doc


def usable_category(restaurant: dict, category_id: str) -> dict:
    if not ObjectId.is_valid(category_id):
        raise HTTPException(status_code=400, detail="Invalid category selected")
    doc = get_db()["category"].find_one(
        {"_id": ObjectId(category_id), "restaurant": str(restaurant["_id"]), "isActive": True}
    )
    if not doc:
        raise HTTPException(status_code=400, detail="Invalid category selected")
    return doc


def _bump_item_count(category_id: str, delta: int):
    get_db()["category"].update_one({"_id": to_object_id(category_id)}, {"$inc": {"itemCount": delta}})


@router.post("/items", status_code=201)
def create_item(payload: ItemCreate, restaurant=Depends(require_roles("restaurant"))):
    category = usable_category(restaurant, payload.category)
    item = ItemSchema(restaurant=str(restaurant["_id"]), **payload.model_dump(exclude={"category"}),
                      category=str(category["_id"]))
    item.name = item.name.strip()
    item_id = create_document("item", item)
    _bump_item_count(item.category, 1)
    return ok(serialize(get_db()["item"].find_one({"_id": to_object_id(item_id)})), "Item created successfully")


@router.get("/items")
def list_items(category: Optional[str] = None, availability: Optional[str] = None, search: Optional[str] = None,
               page: int = 1, limit: int = 20, restaurant=Depends(require_roles("restaurant"))):
    filt = {"restaurant": str(restaurant["_id"])}
    if category:
        filt["category"] = category
    if availability:
        filt["availability"] = availability
    if search:
        filt["name"] = {"$regex": _escape(search), "$options": "i"}
    return paginate("item", filt, page, limit)


@router.get("/items/{item_id}")
def get_item(item_id: str, restaurant=Depends(require_roles("restaurant"))):
    return ok(serialize(owned_item(restaurant, item_id)))


@router.put("/items/{item_id}")
def update_item(item_id: str, payload: ItemUpdate, restaurant=Depends(require_roles("restaurant"))):
    doc = owned_item(restaurant, item_id)
    changes = {k: v for k, v in payload.model_dump(exclude_unset=True).items() if v is not None}
    moved_from = None
    if "category" in changes and changes["category"] != doc.get("category"):
        changes["category"] = str(usable_category(restaurant, changes["category"])["_id"])
        moved_from = doc.get("category")
    changes["updated_at"] = now()
    db = get_db()
    db["item"].update_one({"_id": doc["_id"]}, {"$set": changes})
    if moved_from:
        _bump_item_count(moved_from, -1)
        _bump_item_count(changes["category"], 1)
    return ok(serialize(db["item"].find_one({"_id": doc["_id"]})), "Item updated successfully")


@router.put("/items/{item_id}/image")
async def upload_item_image(item_id: str, image: UploadFile = File(...),
                            restaurant=Depends(require_roles("restaurant"))):
    doc = owned_item(restaurant, item_id)
    url = await replace_attachment(image, doc.get("image"), "items")
    get_db()["item"].update_one({"_id": doc["_id"]}, {"$set": {"image": url, "updated_at": now()}})
    return ok({"image": url}, "Item image updated successfully")


@router.put("/items/{item_id}/toggle-availability")
def toggle_availability(item_id: str, restaurant=Depends(require_roles("restaurant"))):
    doc = owned_item(restaurant, item_id)
    current = doc.get("availability", "in-stock")
    nxt = AVAILABILITY_CYCLE.get(current, "in-stock")
    db = get_db()
    result = db["item"].update_one({"_id": doc["_id"], "availability": current},
                                   {"$set": {"availability": nxt, "updated_at": now()}})
    if result.modified_count == 0:
        raise HTTPException(status_code=409, detail="Resource was modified concurrently, please retry")
    return ok({"availability": nxt}, f"Item availability changed to {nxt}")


@router.put("/items/{item_id}/toggle-status")
def toggle_item(item_id: str, restaurant=Depends(require_roles("restaurant"))):
    doc = toggle_flag("item", {"_id": to_object_id(item_id), "restaurant": str(restaurant["_id"])}, "isActive")
    if not doc:
        raise HTTPException(status_code=404, detail="Item not found")
    return ok(serialize(doc), f"Item {'activated' if doc['isActive'] else 'deactivated'} successfully")


@router.delete("/items/{item_id}")
def delete_item(item_id: str, restaurant=Depends(require_roles("restaurant"))):
    doc = owned_item(restaurant, item_id)
    storage.delete(doc.get("image"))
    get_db()["item"].delete_one({"_id": doc["_id"]})
    _bump_item_count(doc["category"], -1)
    return ok(message="Item deleted successfully")


# -------------------- Public menu --------------------
@public_router.get("/{restaurant_id}/menu")
def menu(restaurant_id: str):
    db = get_db()
    restaurant = db["restaurant"].find_one({"_id": to_object_id(restaurant_id)})
    if not restaurant:
        raise HTTPException(status_code=404, detail="Restaurant not found")
    restaurant_id = str(restaurant["_id"])
    categories = list(db["category"].find({"restaurant": restaurant_id, "isActive": True}).sort("name", 1))
    items = list(db["item"].find({"restaurant": restaurant_id, "isActive": True}).sort("name", 1))
    sections = []
    for category in categories:
        cid = str(category["_id"])
        sections.append({
            "category": serialize(category),
            "items": [serialize(i) for i in items if i.get("category") == cid],
        })
    return ok({"restaurant": {"_id": restaurant_id, "businessName": restaurant.get("businessName"),
                              "rating": restaurant.get("rating", 0)},
               "menu": sections})
