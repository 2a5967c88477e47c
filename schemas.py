"""
Database Schemas for Maate

Each Pydantic model represents a MongoDB collection. The collection name is the
lowercased class name (e.g., Driver -> "driver"). Nested models are embedded
sub-documents.
"""
import re
from datetime import datetime, timezone
from typing import List, Literal, Optional

from pydantic import BaseModel, Field, EmailStr, field_validator, model_validator

PHONE_PATTERN = r"^\d{10}$"
PINCODE_PATTERN = r"^\d{6}$"
DAYS = ("sunday", "monday", "tuesday", "wednesday", "thursday", "friday", "saturday")
MEAL_TYPES = ("breakfast", "lunch", "dinner")


def clean_features(features):
    cleaned = [f.strip() for f in features]
    if any(not 1 <= len(f) <= 200 for f in cleaned):
        raise ValueError("Each feature must be 1-200 characters")
    return cleaned


# -------------------- Principals --------------------

class AdminProfile(BaseModel):
    address: Optional[str] = Field(None, max_length=200)
    city: Optional[str] = Field(None, max_length=50)
    state: Optional[str] = Field(None, max_length=50)
    pincode: Optional[str] = Field(None, pattern=PINCODE_PATTERN)
    bio: Optional[str] = Field(None, max_length=200)


class Admin(BaseModel):
    name: str = Field(..., min_length=2, max_length=50)
    phone: str = Field(..., pattern=PHONE_PATTERN)
    password: str = Field(..., description="Hashed password (bcrypt)")
    email: Optional[EmailStr] = None
    role: Literal["admin", "super_admin"] = "admin"
    isActive: bool = True
    lastLogin: Optional[datetime] = None
    profile: AdminProfile = Field(default_factory=AdminProfile)


class Driver(BaseModel):
    phone: str = Field(..., pattern=PHONE_PATTERN)
    isVerified: bool = False
    isActive: bool = True
    isBlocked: bool = False
    isOnline: bool = False
    isApproved: bool = False
    status: Literal["pending", "approved", "rejected"] = "pending"
    registrationStep: int = Field(1, ge=1, le=7)
    isRegistrationComplete: bool = False
    completedSections: List[str] = Field(default_factory=list)
    forcedComplete: bool = False


class User(BaseModel):
    phone: str = Field(..., pattern=PHONE_PATTERN)
    firstName: Optional[str] = Field(None, min_length=2, max_length=50)
    lastName: Optional[str] = Field(None, min_length=2, max_length=50)
    email: Optional[EmailStr] = None
    address: Optional[str] = Field(None, max_length=500)
    pincode: Optional[str] = Field(None, pattern=PINCODE_PATTERN)
    gender: Optional[Literal["male", "female", "other"]] = None
    dateOfBirth: Optional[datetime] = None
    profileImage: Optional[str] = None
    isProfile: bool = False
    isVerified: bool = False
    isActive: bool = True
    isBlocked: bool = False


class Address(BaseModel):
    userId: str = Field(..., description="ObjectId as string")
    type: Literal["home", "work", "other"] = "home"
    fullAddress: str = Field(..., min_length=1, max_length=500)
    landmark: Optional[str] = Field(None, max_length=100)
    city: str = Field(..., min_length=1, max_length=50)
    pincode: str = Field(..., pattern=PINCODE_PATTERN)
    isDefault: bool = False
    isActive: bool = True


class Restaurant(BaseModel):
    phone: str = Field(..., pattern=PHONE_PATTERN)
    password: str = Field(..., description="Hashed password (bcrypt)")
    businessName: str = Field(..., min_length=2, max_length=100)
    firstName: Optional[str] = Field(None, max_length=50)
    lastName: Optional[str] = Field(None, max_length=50)
    email: Optional[EmailStr] = None
    address: Optional[str] = Field(None, max_length=500)
    city: Optional[str] = Field(None, max_length=50)
    state: Optional[str] = Field(None, max_length=50)
    pinCode: Optional[str] = Field(None, pattern=PINCODE_PATTERN)
    category: Optional[Literal["Veg", "Non Veg", "Mix"]] = None
    specialization: Optional[str] = Field(None, max_length=200)
    messImages: List[str] = Field(default_factory=list)
    isActive: bool = True
    isApproved: bool = False
    status: Literal["pending", "approved", "rejected", "suspended"] = "pending"
    isProfile: bool = False
    isOnline: bool = False
    rating: float = Field(0, ge=0, le=5)
    totalRatings: int = Field(0, ge=0)


# -------------------- Catalog --------------------

class Category(BaseModel):
    restaurant: str = Field(..., description="ObjectId as string")
    name: str = Field(..., min_length=2, max_length=50)
    description: Optional[str] = Field(None, max_length=200)
    image: Optional[str] = None
    isActive: bool = True
    itemCount: int = Field(0, ge=0)


class Item(BaseModel):
    restaurant: str = Field(..., description="ObjectId as string")
    category: str = Field(..., description="ObjectId as string")
    name: str = Field(..., min_length=2, max_length=100)
    description: Optional[str] = Field(None, max_length=500)
    image: Optional[str] = None
    itemCategory: str = Field("Veg", max_length=50)
    price: float = Field(..., gt=0)
    availability: Literal["in-stock", "out-of-stock", "limited"] = "in-stock"
    isActive: bool = True
    isDietMeal: bool = False
    calories: int = Field(0, ge=0)
    rating: float = Field(0, ge=0, le=5)
    totalRatings: int = Field(0, ge=0)
    totalReviews: int = Field(0, ge=0)
    totalOrder: int = Field(0, ge=0)


class Meal(BaseModel):
    name: str = Field(..., min_length=1, max_length=100)
    calories: int = Field(0, ge=0)


class DayMeals(BaseModel):
    breakfast: List[Meal] = Field(default_factory=list)
    lunch: List[Meal] = Field(default_factory=list)
    dinner: List[Meal] = Field(default_factory=list)


class WeeklyMeals(BaseModel):
    sunday: DayMeals = Field(default_factory=DayMeals)
    monday: DayMeals = Field(default_factory=DayMeals)
    tuesday: DayMeals = Field(default_factory=DayMeals)
    wednesday: DayMeals = Field(default_factory=DayMeals)
    thursday: DayMeals = Field(default_factory=DayMeals)
    friday: DayMeals = Field(default_factory=DayMeals)
    saturday: DayMeals = Field(default_factory=DayMeals)


class Plan(BaseModel):
    restaurant: str = Field(..., description="ObjectId as string")
    name: str = Field(..., min_length=2, max_length=100)
    description: Optional[str] = Field(None, max_length=500)
    pricePerWeek: float = Field(..., ge=0)
    features: List[str] = Field(default_factory=list)
    weeklyMeals: WeeklyMeals = Field(default_factory=WeeklyMeals)
    maxSubscribers: int = Field(0, ge=0, description="0 means unlimited")
    isRecommended: bool = False
    isPopular: bool = False
    isActive: bool = True
    isAvailable: bool = True
    totalSubscribers: int = Field(0, ge=0)
    totalRevenue: float = Field(0, ge=0)
    averageRating: float = Field(0, ge=0, le=5)
    totalRatings: int = Field(0, ge=0)

    @field_validator("features")
    @classmethod
    def check_features(cls, v):
        return clean_features(v)


class Offer(BaseModel):
    restaurantId: str = Field(..., description="ObjectId as string")
    title: str = Field(..., min_length=1, max_length=100)
    description: Optional[str] = Field(None, max_length=500)
    backgroundColor: str = Field("#FFFFFF", pattern=r"^#[0-9A-Fa-f]{6}$")
    image: Optional[str] = None
    couponCode: str = Field(..., min_length=1, max_length=20)
    discountType: Literal["flat", "percentage"]
    discountValue: float = Field(..., ge=0)
    minimumOrderAmount: float = Field(0, ge=0)
    maximumOrderValue: float = Field(..., ge=0)
    startDate: datetime
    endDate: datetime
    perUserLimit: int = Field(1, ge=1)
    totalUsageLimit: int = Field(..., ge=1)
    totalUsed: int = Field(0, ge=0)
    userUsage: dict = Field(default_factory=dict, description="userId -> {userId, usageCount, lastUsed}")
    applicableItems: List[str] = Field(default_factory=list)
    applicableCategories: List[str] = Field(default_factory=list)
    priority: int = Field(1, ge=1)
    isActive: bool = True
    isVisible: bool = True

    @field_validator("couponCode")
    @classmethod
    def normalize_code(cls, v):
        v = v.strip().upper()
        if not re.fullmatch(r"[A-Z0-9]+", v):
            raise ValueError("Coupon code can only contain letters and numbers")
        return v

    @field_validator("startDate", "endDate")
    @classmethod
    def assume_utc(cls, v):
        return v.replace(tzinfo=timezone.utc) if v.tzinfo is None else v

    @model_validator(mode="after")
    def check_rules(self):
        if self.discountType == "percentage" and self.discountValue > 100:
            raise ValueError("Percentage discount cannot exceed 100")
        if self.endDate <= self.startDate:
            raise ValueError("End date must be after start date")
        return self


# -------------------- Reviews & cart --------------------

class Review(BaseModel):
    customer: str = Field(..., description="ObjectId as string")
    customerName: Optional[str] = None
    restaurant: str = Field(..., description="ObjectId as string")
    restaurantName: Optional[str] = None
    order: str = Field(..., min_length=1, description="Order reference")
    orderNumber: Optional[str] = None
    rating: int = Field(..., ge=1, le=5)
    review: Optional[str] = Field(None, max_length=1000)
    tags: List[str] = Field(default_factory=list, max_length=10)
    sentiment: Literal["positive", "neutral", "negative"] = "neutral"
    helpfulCount: int = Field(0, ge=0)
    unhelpfulCount: int = Field(0, ge=0)
    reportCount: int = Field(0, ge=0)
    viewCount: int = Field(0, ge=0)
    reports: List[dict] = Field(default_factory=list)
    isVisible: bool = True
    isFlagged: bool = False
    isApproved: bool = False
    isRejected: bool = False
    isDeleted: bool = False
    isFeatured: bool = False

    @field_validator("tags")
    @classmethod
    def check_tags(cls, v):
        for tag in v:
            if len(tag) > 50:
                raise ValueError("Tags cannot exceed 50 characters")
        return v


class CartItem(BaseModel):
    itemId: str
    name: str = Field(..., min_length=1)
    description: Optional[str] = None
    price: float = Field(..., gt=0)
    quantity: int = Field(..., ge=1)
    image: Optional[str] = None
    category: Optional[str] = None
    itemTotal: float = 0


class Cart(BaseModel):
    userId: str
    restaurantId: str
    items: List[CartItem] = Field(default_factory=list)
    subtotal: float = 0
    total: float = 0
    itemCount: int = 0
    version: int = 0


# -------------------- Orders --------------------

ORDER_STATUSES = ("pending", "confirmed", "preparing", "ready", "delivered", "cancelled")


class DeliveryAddress(BaseModel):
    street: str = Field(..., min_length=1, max_length=200)
    city: str = Field(..., min_length=1, max_length=100)
    state: Optional[str] = Field(None, max_length=100)
    postalCode: Optional[str] = Field(None, max_length=20)
    country: str = Field("India", max_length=100)


class OrderItem(BaseModel):
    itemId: str
    name: str = Field(..., min_length=1)
    description: Optional[str] = None
    price: float = Field(..., ge=0)
    quantity: int = Field(..., ge=1)
    image: Optional[str] = None
    category: str = "General"
    itemTotal: float = 0


class Order(BaseModel):
    orderNumber: str
    orderDate: datetime
    customer: str = Field(..., description="ObjectId as string")
    customerName: str = Field(..., min_length=1, max_length=100)
    restaurant: str = Field(..., description="ObjectId as string")
    restaurantName: str = Field(..., min_length=1, max_length=100)
    items: List[OrderItem] = Field(..., min_length=1)
    subtotal: float = Field(..., ge=0)
    totalAmount: float = Field(..., ge=0)
    itemCount: int = Field(0, ge=0)
    deliveryAddress: DeliveryAddress
    estimatedDelivery: str = "15-20 min"
    status: Literal["pending", "confirmed", "preparing", "ready", "delivered", "cancelled"] = "pending"
    # tracking and payment are not integrated yet
    trackingStatus: str = "N/A"
    driverName: str = "N/A"
    driverPhone: str = "N/A"
    currentLocation: str = "N/A"
    paymentMethod: str = "N/A"
    paymentStatus: str = "N/A"
    transactionId: str = "N/A"
    specialInstructions: Optional[str] = Field(None, max_length=500)
    cancellationReason: Optional[str] = Field(None, max_length=200)
    cancelledBy: Optional[Literal["customer", "restaurant", "system"]] = None
    cancellationTime: Optional[datetime] = None
    isArchived: bool = False
