"""
Database Schemas for the HoloHaven merch store

Each Pydantic model represents a collection in MongoDB.
Collection name is the lowercase of the class name by default.

We store:
- User (includes push tokens and posted review ids)
- Product
- Cart (one per user)
- Order (immutable line-item snapshot)
- Review
- Promotion
- Notification (one per recipient)

Money is kept as integer cents in every ``*_cents`` field.
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, EmailStr, Field
from pydantic.alias_generators import to_camel


def utcnow() -> datetime:
    # Naive UTC, matching what pymongo hands back from the database
    return datetime.now(timezone.utc).replace(tzinfo=None)


def as_naive_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)


class PushToken(BaseModel):
    token: str = Field(..., description="Device push token")
    last_used_at: datetime = Field(default_factory=utcnow)


class UserAddress(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    street: Optional[str] = None
    city: Optional[str] = None
    state: Optional[str] = None
    zip_code: Optional[str] = None
    country: Optional[str] = None


class User(BaseModel):
    """
    Users collection schema
    Collection name: "user"
    """
    email: EmailStr = Field(..., description="Unique email address")
    username: Optional[str] = Field(None, description="Unique display handle")

    # Auth fields (stored in DB, but not returned in public responses)
    password_hash: Optional[str] = Field(None, description="Hashed password")
    is_admin: bool = Field(False, description="Admin flag")

    full_name: Optional[str] = None
    phone: Optional[str] = None
    bio: Optional[str] = None
    address: Optional[UserAddress] = None
    profile_picture: Optional[str] = Field(None, description="Image URL")

    google_id: Optional[str] = None
    google_email: Optional[str] = None

    push_tokens: List[PushToken] = Field(default_factory=list)
    reviews_posted: List[str] = Field(default_factory=list, description="Review ids")


class Product(BaseModel):
    """
    Products collection schema
    Collection name: "product"
    """
    name: str = Field(..., description="Product name")
    price_cents: int = Field(..., ge=0, description="Price in cents")
    category: str = Field(..., description="Product category")
    description: Optional[str] = None
    vtuber_tag: Optional[str] = Field(None, description="Featured talent")
    tags: List[str] = Field(default_factory=list, description="Search tags")
    image: Optional[str] = Field(None, description="Cover image URL")
    images: List[str] = Field(default_factory=list, description="Gallery image URLs")
    uploaded_by: Optional[str] = Field(None, description="Owner user id; None for seeded products")
    average_rating: float = Field(0, ge=0, le=5, description="Average rating 0-5")
    review_count: int = Field(0, ge=0)
    is_active: bool = Field(True, description="False once soft-deleted")


class CartItem(BaseModel):
    product_id: str = Field(..., description="Product id as string")
    quantity: int = Field(1, ge=1, description="Quantity for the product")


class Cart(BaseModel):
    """
    Carts collection schema
    Collection name: "cart"
    """
    user_id: str
    items: List[CartItem] = Field(default_factory=list)


class OrderStatus(str, Enum):
    pending = "pending"
    processing = "processing"
    shipped = "shipped"
    delivered = "delivered"
    cancelled = "cancelled"


class ShippingAddress(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    full_name: Optional[str] = None
    phone: Optional[str] = None
    address: Optional[str] = None
    city: Optional[str] = None
    state: Optional[str] = None
    zip_code: Optional[str] = None
    country: Optional[str] = None


class OrderItem(BaseModel):
    product_id: str
    name: str
    price_cents: int
    quantity: int
    image: Optional[str] = None


class Order(BaseModel):
    """
    Orders collection schema
    Collection name: "order"
    """
    model_config = ConfigDict(use_enum_values=True)

    user_id: str
    items: List[OrderItem]
    total_price_cents: int
    status: OrderStatus = OrderStatus.pending
    shipping_address: Optional[ShippingAddress] = None
    payment_method: Optional[str] = None
    transaction_id: Optional[str] = None
    notifications_sent: bool = False


class Review(BaseModel):
    """
    Reviews collection schema
    Collection name: "review"
    """
    product_id: str
    user_id: str
    order_id: str
    rating: int = Field(..., ge=1, le=5, description="Rating 1-5")
    comment: Optional[str] = None
    is_verified: bool = Field(True, description="Verified by order")


class Promotion(BaseModel):
    """
    Promotions collection schema
    Collection name: "promotion"
    """
    title: str
    description: Optional[str] = None
    image: Optional[str] = None
    discount_percent: Optional[float] = Field(None, ge=0, le=100)
    valid_from: datetime
    valid_until: datetime
    applicable_products: List[str] = Field(default_factory=list)
    applicable_categories: List[str] = Field(default_factory=list)
    is_active: bool = True


class NotificationType(str, Enum):
    order = "order"
    promotion = "promotion"
    system = "system"


class Notification(BaseModel):
    """
    Notifications collection schema
    Collection name: "notification"
    """
    model_config = ConfigDict(use_enum_values=True)

    user_id: str
    title: str
    body: str
    type: NotificationType = NotificationType.system
    data: Dict[str, Any] = Field(default_factory=dict)
    read: bool = False
