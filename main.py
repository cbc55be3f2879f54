import asyncio
import json
import random
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Any, Dict, List, Optional, Tuple
from uuid import uuid4

import structlog
from fastapi import APIRouter, Depends, FastAPI, File, Query, Request, UploadFile
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, Response
from pydantic import BaseModel, ConfigDict, EmailStr, Field, ValidationError, field_validator
from pydantic.alias_generators import to_camel
from pymongo.database import Database
from pymongo.errors import DuplicateKeyError, PyMongoError
from starlette.concurrency import run_in_threadpool
from starlette.datastructures import UploadFile as StarletteUploadFile

from cart import CartService
from catalog import CatalogService
from database import connect, create_document, doc_to_public, ensure_indexes, get_db, to_object_id, touch
from errors import Conflict, InvalidInput, NotFound, StoreError, Unauthorized, UpstreamFailure
from images import CloudinaryImageHost, ImageHost
from logging_setup import configure_logging
from money import to_cents
from notifications import Audience, NotificationFanout, deal_alert_content, product_promotion_content
from orders import OrderWorkflow
from promotions import PromotionService
from push import ExpoPushAdapter, PushDispatcher, PushPort
from reviews import ReviewService
from schemas import OrderStatus, Product, Promotion, ShippingAddress, User, UserAddress, as_naive_utc
from security import (
    create_access_token,
    get_current_admin,
    get_current_user,
    get_settings,
    hash_password,
    user_id_of,
    verify_password,
)
from seed import seed_data
from settings import Settings, load_settings
import sweeper

logger = structlog.get_logger(__name__)

MIN_PASSWORD_LENGTH = 6

router = APIRouter()


# ----------------------------------------------------------------------------
# Service accessors (initialised once in create_app, stored on app.state)
# ----------------------------------------------------------------------------

def get_cart_service(request: Request) -> CartService:
    return request.app.state.cart_service


def get_order_workflow(request: Request) -> OrderWorkflow:
    return request.app.state.order_workflow


def get_review_service(request: Request) -> ReviewService:
    return request.app.state.review_service


def get_catalog(request: Request) -> CatalogService:
    return request.app.state.catalog


def get_promotion_service(request: Request) -> PromotionService:
    return request.app.state.promotion_service


def get_fanout(request: Request) -> NotificationFanout:
    return request.app.state.fanout


def get_image_host(request: Request) -> ImageHost:
    return request.app.state.image_host


# ----------------------------------------------------------------------------
# Models (request bodies)
# ----------------------------------------------------------------------------

class RequestBody(BaseModel):
    # Mobile clients send camelCase; snake_case is accepted too
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


def list_field(value: Any) -> Any:
    """Accept a list, a JSON-encoded list, or a comma separated string."""
    if value is None or isinstance(value, list):
        return value
    if isinstance(value, str):
        text = value.strip()
        if not text:
            return []
        if text.startswith("["):
            try:
                return json.loads(text)
            except json.JSONDecodeError:
                raise ValueError("Malformed list")
        return [part.strip() for part in text.split(",") if part.strip()]
    return value


class RegisterRequest(RequestBody):
    email: EmailStr
    username: str = Field(..., min_length=1)
    password: str = Field(..., min_length=MIN_PASSWORD_LENGTH)


class LoginRequest(RequestBody):
    email: EmailStr
    password: str


class GoogleLoginRequest(RequestBody):
    google_id: str
    email: EmailStr
    full_name: Optional[str] = None
    profile_picture: Optional[str] = None


class ProfileUpdateRequest(RequestBody):
    full_name: Optional[str] = None
    phone: Optional[str] = None
    bio: Optional[str] = None
    address: Optional[UserAddress] = None
    username: Optional[str] = None
    email: Optional[EmailStr] = None
    password: Optional[str] = None
    current_password: Optional[str] = None


class PushTokenRequest(RequestBody):
    token: Optional[str] = None


class ProductCommand(RequestBody):
    name: Optional[str] = None
    price: Optional[Decimal] = Field(None, ge=0)
    category: Optional[str] = None
    description: Optional[str] = None
    vtuber_tag: Optional[str] = None
    tags: Optional[List[str]] = None
    image: Optional[str] = None

    split_tags = field_validator("tags", mode="before")(list_field)


class AddCartItemRequest(RequestBody):
    product_id: str
    quantity: int = 1


class UpdateCartItemRequest(RequestBody):
    quantity: int


class CheckoutRequest(RequestBody):
    shipping_address: Optional[ShippingAddress] = None
    payment_method: Optional[str] = None
    transaction_id: Optional[str] = None


class StatusUpdateRequest(RequestBody):
    status: OrderStatus


class ReviewCreateRequest(RequestBody):
    product_id: str
    order_id: str
    rating: int = Field(..., ge=1, le=5)
    comment: Optional[str] = None


class ReviewUpdateRequest(RequestBody):
    rating: Optional[int] = Field(None, ge=1, le=5)
    comment: Optional[str] = None


class PromotionCommand(RequestBody):
    title: Optional[str] = None
    description: Optional[str] = None
    discount_percent: Optional[float] = Field(None, ge=0, le=100)
    valid_from: Optional[datetime] = None
    valid_until: Optional[datetime] = None
    applicable_products: Optional[List[str]] = None
    applicable_categories: Optional[List[str]] = None
    is_active: Optional[bool] = None
    image: Optional[str] = None

    split_lists = field_validator("applicable_products", "applicable_categories", mode="before")(list_field)

    @field_validator("valid_from", "valid_until")
    @classmethod
    def _naive_utc(cls, value: Optional[datetime]) -> Optional[datetime]:
        return as_naive_utc(value) if value else value


class SendPromotionRequest(RequestBody):
    product_id: str
    title: Optional[str] = None
    message: Optional[str] = None
    audience: Audience = Audience.NON_ADMIN_USERS


# ----------------------------------------------------------------------------
# Utilities
# ----------------------------------------------------------------------------

def public_user(user: Dict[str, Any]) -> Dict[str, Any]:
    return {
        "id": user_id_of(user),
        "username": user.get("username"),
        "email": user.get("email"),
        "profilePicture": user.get("profile_picture"),
        "isAdmin": bool(user.get("is_admin")),
    }


def auth_response(user: Dict[str, Any], settings: Settings) -> Dict[str, Any]:
    uid = user_id_of(user)
    return {"token": create_access_token(uid, settings), "userId": uid, "user": public_user(user)}


async def read_payload(request: Request, file_field: str = "image") -> Tuple[Dict[str, Any], Optional[StarletteUploadFile]]:
    """Read a JSON or multipart body; returns the fields and the uploaded file, if any."""
    content_type = request.headers.get("content-type", "")
    if content_type.startswith(("multipart/form-data", "application/x-www-form-urlencoded")):
        form = await request.form()
        data: Dict[str, Any] = {}
        upload = None
        for key, value in form.multi_items():
            if isinstance(value, StarletteUploadFile):
                if key == file_field:
                    upload = value
                continue
            if key in data:
                existing = data[key] if isinstance(data[key], list) else [data[key]]
                data[key] = existing + [value]
            else:
                data[key] = value
        return data, upload

    body = await request.body()
    if not body:
        return {}, None
    try:
        data = json.loads(body)
    except json.JSONDecodeError:
        raise InvalidInput("Malformed JSON body")
    if not isinstance(data, dict):
        raise InvalidInput("Expected a JSON object")
    return data, None


def upload_optional(images: ImageHost, upload: Optional[StarletteUploadFile]) -> Optional[str]:
    """Upload an image that is not the point of the request; failures are logged."""
    if upload is None:
        return None
    try:
        return images.upload(upload.file, upload.filename)
    except UpstreamFailure as exc:
        logger.warning("Continuing without image", filename=upload.filename, error=exc.message)
        return None


# ----------------------------------------------------------------------------
# Health
# ----------------------------------------------------------------------------

@router.get("/")
def root():
    return {"message": "HoloHaven store API running"}


@router.get("/health")
def health():
    return {"status": "OK"}


@router.get("/test")
def test_database(db: Database = Depends(get_db)):
    try:
        collections = db.list_collection_names()
        return {"backend": "ok", "db": "ok", "collections": collections}
    except PyMongoError as e:
        return {"backend": "ok", "db": f"error: {e}"}


# ----------------------------------------------------------------------------
# Auth Endpoints
# ----------------------------------------------------------------------------

@router.post("/auth/register")
def register(body: RegisterRequest, db: Database = Depends(get_db), settings: Settings = Depends(get_settings)):
    existing = db["user"].find_one({"$or": [{"email": body.email}, {"username": body.username}]})
    if existing:
        raise Conflict("Email or username already exists")
    user = User(email=body.email, username=body.username, password_hash=hash_password(body.password))
    try:
        uid = create_document(db, "user", user)
    except DuplicateKeyError:
        raise Conflict("Email or username already exists")
    logger.info("User registered", user_id=uid)
    return auth_response(db["user"].find_one({"_id": to_object_id(uid)}), settings)


@router.post("/auth/login")
def login(body: LoginRequest, db: Database = Depends(get_db), settings: Settings = Depends(get_settings)):
    user = db["user"].find_one({"email": body.email})
    if not user or not verify_password(body.password, user.get("password_hash")):
        raise Unauthorized("Invalid credentials")
    return auth_response(user, settings)


@router.post("/auth/google")
def google_login(body: GoogleLoginRequest, db: Database = Depends(get_db), settings: Settings = Depends(get_settings)):
    user = db["user"].find_one({"$or": [{"google_id": body.google_id}, {"email": body.email}]})
    if not user:
        new_user = User(
            email=body.email,
            username=f"{body.email.split('@')[0]}{uuid4().hex[:9]}",
            google_id=body.google_id,
            google_email=body.email,
            full_name=body.full_name,
            profile_picture=body.profile_picture,
        )
        uid = create_document(db, "user", new_user)
        logger.info("User created from Google sign-in", user_id=uid)
        user = db["user"].find_one({"_id": to_object_id(uid)})
    elif not user.get("google_id"):
        link = {"google_id": body.google_id, "google_email": body.email}
        if not user.get("profile_picture") and body.profile_picture:
            link["profile_picture"] = body.profile_picture
        db["user"].update_one({"_id": user["_id"]}, {"$set": touch(link)})
        logger.info("Linked Google account", user_id=user_id_of(user))
        user = db["user"].find_one({"_id": user["_id"]})
    return auth_response(user, settings)


@router.post("/auth/verify")
def verify(current=Depends(get_current_user)):
    return doc_to_public(current)


# ----------------------------------------------------------------------------
# Profile
# ----------------------------------------------------------------------------

@router.get("/users/profile")
def get_profile(current=Depends(get_current_user)):
    return doc_to_public(current)


@router.put("/users/profile")
def update_profile(body: ProfileUpdateRequest, current=Depends(get_current_user), db: Database = Depends(get_db)):
    changes: Dict[str, Any] = {}

    # Changing the password requires the current one
    if body.password:
        if not body.current_password:
            raise InvalidInput("Current password is required to change password")
        if not verify_password(body.current_password, current.get("password_hash")):
            raise Unauthorized("Current password is incorrect")
        if len(body.password) < MIN_PASSWORD_LENGTH:
            raise InvalidInput(f"Password must be at least {MIN_PASSWORD_LENGTH} characters")
        changes["password_hash"] = hash_password(body.password)

    if body.email and body.email != current.get("email"):
        if db["user"].find_one({"email": body.email}):
            raise Conflict("Email already in use")
        changes["email"] = body.email

    if body.username and body.username != current.get("username"):
        if db["user"].find_one({"username": body.username}):
            raise Conflict("Username already taken")
        changes["username"] = body.username

    for field in ("full_name", "phone", "bio"):
        if field in body.model_fields_set:
            changes[field] = getattr(body, field) or None
    if "address" in body.model_fields_set:
        changes["address"] = body.address.model_dump() if body.address else None

    try:
        db["user"].update_one({"_id": current["_id"]}, {"$set": touch(changes)})
    except DuplicateKeyError:
        raise Conflict("Email or username already in use")
    return doc_to_public(db["user"].find_one({"_id": current["_id"]}))


@router.post("/users/profile-picture")
def upload_profile_picture(
    profile_picture: UploadFile = File(..., alias="profilePicture"),
    current=Depends(get_current_user),
    db: Database = Depends(get_db),
    images: ImageHost = Depends(get_image_host),
):
    url = images.upload(profile_picture.file, profile_picture.filename)
    db["user"].update_one({"_id": current["_id"]}, {"$set": touch({"profile_picture": url})})
    return doc_to_public(db["user"].find_one({"_id": current["_id"]}))


@router.get("/users/reviews")
def my_reviews_from_profile(current=Depends(get_current_user), reviews: ReviewService = Depends(get_review_service)):
    return [doc_to_public(r) for r in reviews.list_for_user(user_id_of(current))]


@router.post("/users/push-token")
def legacy_register_push_token(
    body: PushTokenRequest,
    current=Depends(get_current_user),
    fanout: NotificationFanout = Depends(get_fanout),
):
    fanout.register_token(user_id_of(current), body.token, validate=False)
    return {"message": "Token registered successfully"}


# ----------------------------------------------------------------------------
# Product Endpoints
# ----------------------------------------------------------------------------

@router.get("/products")
def list_products(
    search: Optional[str] = Query(None),
    category: Optional[str] = Query(None),
    min_price: Optional[str] = Query(None, alias="minPrice"),
    max_price: Optional[str] = Query(None, alias="maxPrice"),
    vtuber: Optional[str] = Query(None),
    catalog: CatalogService = Depends(get_catalog),
):
    products = catalog.list_products(search, category, min_price, max_price, vtuber)
    return [doc_to_public(p) for p in products]


@router.get("/products/categories/list")
def list_categories(catalog: CatalogService = Depends(get_catalog)):
    return catalog.categories()


@router.get("/products/featured/trending")
def trending_products(catalog: CatalogService = Depends(get_catalog)):
    return [doc_to_public(p) for p in catalog.trending()]


@router.get("/products/{product_id}")
def get_product(product_id: str, catalog: CatalogService = Depends(get_catalog)):
    return doc_to_public(catalog.get(product_id))


@router.post("/products", status_code=201)
async def create_product(
    request: Request,
    current=Depends(get_current_user),
    catalog: CatalogService = Depends(get_catalog),
    images: ImageHost = Depends(get_image_host),
):
    data, upload = await read_payload(request)
    if not all(data.get(f) for f in ("name", "price", "category")):
        raise InvalidInput("Name, price, and category are required")
    command = ProductCommand.model_validate(data)

    image = await run_in_threadpool(upload_optional, images, upload) or command.image
    product = Product(
        name=command.name,
        price_cents=to_cents(command.price),
        category=command.category,
        description=command.description,
        vtuber_tag=command.vtuber_tag,
        tags=command.tags or [],
        uploaded_by=user_id_of(current),
        image=image,
        images=[image] if image else [],
    )
    created = await run_in_threadpool(catalog.create, product)
    return doc_to_public(created)


@router.put("/products/{product_id}")
async def update_product(
    product_id: str,
    request: Request,
    current=Depends(get_current_user),
    catalog: CatalogService = Depends(get_catalog),
    images: ImageHost = Depends(get_image_host),
):
    data, upload = await read_payload(request)
    command = ProductCommand.model_validate(data)
    # Ownership is checked before anything is uploaded
    await run_in_threadpool(catalog.managed, product_id, current)

    changes = {
        "name": command.name,
        "price_cents": to_cents(command.price) if command.price is not None else None,
        "category": command.category,
        "description": command.description,
        "vtuber_tag": command.vtuber_tag,
        "tags": command.tags,
    }
    image = await run_in_threadpool(upload_optional, images, upload) or command.image
    updated = await run_in_threadpool(catalog.update, product_id, current, changes, image)
    return doc_to_public(updated)


@router.delete("/products/{product_id}", status_code=204)
def delete_product(product_id: str, current=Depends(get_current_user), catalog: CatalogService = Depends(get_catalog)):
    catalog.delete(product_id, current)
    return Response(status_code=204)


@router.post("/products/{product_id}/images")
def add_product_image(
    product_id: str,
    image: UploadFile = File(...),
    current=Depends(get_current_user),
    catalog: CatalogService = Depends(get_catalog),
    images: ImageHost = Depends(get_image_host),
):
    catalog.managed(product_id, current)
    url = images.upload(image.file, image.filename)
    return doc_to_public(catalog.add_image(product_id, current, url))


@router.post("/upload")
def upload_image(
    image: UploadFile = File(...),
    current=Depends(get_current_user),
    images: ImageHost = Depends(get_image_host),
):
    return {"url": images.upload(image.file, image.filename)}


# ----------------------------------------------------------------------------
# Cart
# ----------------------------------------------------------------------------

@router.get("/cart")
def get_cart(current=Depends(get_current_user), carts: CartService = Depends(get_cart_service)):
    return doc_to_public(carts.get_cart(user_id_of(current)))


@router.post("/cart/items")
def add_to_cart(body: AddCartItemRequest, current=Depends(get_current_user), carts: CartService = Depends(get_cart_service)):
    return doc_to_public(carts.add_item(user_id_of(current), body.product_id, body.quantity))


@router.patch("/cart/items/{product_id}")
def update_cart_item(
    product_id: str,
    body: UpdateCartItemRequest,
    current=Depends(get_current_user),
    carts: CartService = Depends(get_cart_service),
):
    return doc_to_public(carts.set_item_quantity(user_id_of(current), product_id, body.quantity))


@router.delete("/cart/items/{product_id}")
def remove_from_cart(product_id: str, current=Depends(get_current_user), carts: CartService = Depends(get_cart_service)):
    return doc_to_public(carts.remove_item(user_id_of(current), product_id))


@router.delete("/cart", status_code=204)
def clear_cart(current=Depends(get_current_user), carts: CartService = Depends(get_cart_service)):
    carts.clear_cart(user_id_of(current))
    return Response(status_code=204)


# ----------------------------------------------------------------------------
# Orders (Checkout & Tracking)
# ----------------------------------------------------------------------------

@router.get("/orders")
def list_orders(current=Depends(get_current_user), orders: OrderWorkflow = Depends(get_order_workflow)):
    return [doc_to_public(o) for o in orders.list_for_user(user_id_of(current))]


@router.get("/orders/admin/all")
def admin_orders(admin=Depends(get_current_admin), orders: OrderWorkflow = Depends(get_order_workflow)):
    return [doc_to_public(o) for o in orders.list_all()]


@router.get("/orders/{order_id}")
def get_order(order_id: str, current=Depends(get_current_user), orders: OrderWorkflow = Depends(get_order_workflow)):
    return doc_to_public(orders.get_for_user(user_id_of(current), order_id))


@router.post("/orders/checkout", status_code=201)
def checkout(body: CheckoutRequest, current=Depends(get_current_user), orders: OrderWorkflow = Depends(get_order_workflow)):
    order = orders.checkout(
        user_id_of(current),
        shipping_address=body.shipping_address,
        payment_method=body.payment_method,
        transaction_id=body.transaction_id,
    )
    return doc_to_public(order)


@router.patch("/orders/{order_id}/status")
def update_order_status(
    order_id: str,
    body: StatusUpdateRequest,
    current=Depends(get_current_user),
    orders: OrderWorkflow = Depends(get_order_workflow),
):
    return doc_to_public(orders.update_status(order_id, body.status, current))


# ----------------------------------------------------------------------------
# Reviews
# ----------------------------------------------------------------------------

@router.get("/reviews/product/{product_id}")
def product_reviews(product_id: str, reviews: ReviewService = Depends(get_review_service)):
    return [doc_to_public(r) for r in reviews.list_for_product(product_id)]


@router.get("/reviews/user/my-reviews")
def my_reviews(current=Depends(get_current_user), reviews: ReviewService = Depends(get_review_service)):
    return [doc_to_public(r) for r in reviews.list_for_user(user_id_of(current))]


@router.post("/reviews", status_code=201)
def create_review(body: ReviewCreateRequest, current=Depends(get_current_user), reviews: ReviewService = Depends(get_review_service)):
    review = reviews.create(user_id_of(current), body.product_id, body.order_id, body.rating, body.comment)
    return doc_to_public(review)


@router.put("/reviews/{review_id}")
def update_review(
    review_id: str,
    body: ReviewUpdateRequest,
    current=Depends(get_current_user),
    reviews: ReviewService = Depends(get_review_service),
):
    return doc_to_public(reviews.update(user_id_of(current), review_id, body.rating, body.comment))


@router.delete("/reviews/{review_id}", status_code=204)
def delete_review(review_id: str, current=Depends(get_current_user), reviews: ReviewService = Depends(get_review_service)):
    reviews.delete(user_id_of(current), review_id)
    return Response(status_code=204)


# ----------------------------------------------------------------------------
# Promotions
# ----------------------------------------------------------------------------

@router.get("/promotions")
def list_promotions(promotions: PromotionService = Depends(get_promotion_service)):
    return [doc_to_public(p) for p in promotions.list_current()]


@router.get("/promotions/{promotion_id}")
def get_promotion(promotion_id: str, promotions: PromotionService = Depends(get_promotion_service)):
    return doc_to_public(promotions.get(promotion_id))


@router.post("/promotions", status_code=201)
async def create_promotion(
    request: Request,
    admin=Depends(get_current_admin),
    promotions: PromotionService = Depends(get_promotion_service),
    images: ImageHost = Depends(get_image_host),
):
    data, upload = await read_payload(request)
    command = PromotionCommand.model_validate(data)
    if not command.title or not command.valid_from or not command.valid_until:
        raise InvalidInput("Title, validFrom and validUntil are required")

    image = await run_in_threadpool(upload_optional, images, upload) or command.image
    promotion = Promotion(
        title=command.title,
        description=command.description,
        image=image,
        discount_percent=command.discount_percent,
        valid_from=command.valid_from,
        valid_until=command.valid_until,
        applicable_products=command.applicable_products or [],
        applicable_categories=command.applicable_categories or [],
        is_active=True if command.is_active is None else command.is_active,
    )
    created = await run_in_threadpool(promotions.create, promotion)
    return doc_to_public(created)


@router.put("/promotions/{promotion_id}")
def update_promotion(
    promotion_id: str,
    body: PromotionCommand,
    admin=Depends(get_current_admin),
    promotions: PromotionService = Depends(get_promotion_service),
):
    changes = body.model_dump(exclude_unset=True)
    return doc_to_public(promotions.update(promotion_id, changes))


@router.delete("/promotions/{promotion_id}", status_code=204)
def delete_promotion(promotion_id: str, admin=Depends(get_current_admin), promotions: PromotionService = Depends(get_promotion_service)):
    promotions.delete(promotion_id)
    return Response(status_code=204)


# ----------------------------------------------------------------------------
# Notifications
# ----------------------------------------------------------------------------

@router.get("/notifications")
def list_notifications(current=Depends(get_current_user), fanout: NotificationFanout = Depends(get_fanout)):
    return [doc_to_public(n) for n in fanout.list_for_user(user_id_of(current))]


@router.patch("/notifications/{notification_id}/read")
def mark_notification_read(
    notification_id: str,
    current=Depends(get_current_user),
    fanout: NotificationFanout = Depends(get_fanout),
):
    return doc_to_public(fanout.mark_read(user_id_of(current), notification_id))


@router.post("/notifications/register-token")
def register_push_token(body: PushTokenRequest, current=Depends(get_current_user), fanout: NotificationFanout = Depends(get_fanout)):
    fanout.register_token(user_id_of(current), body.token)
    return {"message": "Token registered successfully"}


def _promoted_product_summary(product: Dict[str, Any]) -> Dict[str, Any]:
    public = doc_to_public(product)
    return {k: public.get(k) for k in ("id", "name", "price", "image")}


@router.post("/notifications/send-promotion")
def send_promotion(
    body: SendPromotionRequest,
    admin=Depends(get_current_admin),
    catalog: CatalogService = Depends(get_catalog),
    fanout: NotificationFanout = Depends(get_fanout),
):
    product = catalog.get(body.product_id)
    result = fanout.notify_promotion(product_promotion_content(product, body.title, body.message), body.audience)
    return {
        "message": f"Sent {result.push.sent} promotions",
        "recipients": result.recipients,
        "product": _promoted_product_summary(product),
    }


@router.post("/notifications/send-random-promotion")
def send_random_promotion(
    admin=Depends(get_current_admin),
    catalog: CatalogService = Depends(get_catalog),
    fanout: NotificationFanout = Depends(get_fanout),
):
    product = catalog.random_active(random.randrange)
    if not product:
        raise NotFound("No products available")
    result = fanout.notify_promotion(deal_alert_content(product), Audience.NON_ADMIN_USERS)
    return {
        "message": f"Sent {result.push.sent} promotion notifications for random product",
        "recipients": result.recipients,
        "product": _promoted_product_summary(product),
    }


# ----------------------------------------------------------------------------
# Admin
# ----------------------------------------------------------------------------

@router.post("/admin/seed")
def trigger_seed(admin=Depends(get_current_admin), db: Database = Depends(get_db)):
    seed_data(db)
    return {"seeded": True}


# ----------------------------------------------------------------------------
# Error handlers
# ----------------------------------------------------------------------------

def store_error_handler(request: Request, exc: StoreError):
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.message})


def validation_error_handler(request: Request, exc: Exception):
    errors = exc.errors() if isinstance(exc, (RequestValidationError, ValidationError)) else str(exc)
    return JSONResponse(status_code=400, content={"detail": jsonable_encoder(errors, custom_encoder={Exception: str})})


def database_error_handler(request: Request, exc: PyMongoError):
    logger.error("Database error", path=request.url.path, error=str(exc))
    return JSONResponse(status_code=500, content={"detail": str(exc)})


# ----------------------------------------------------------------------------
# App factory
# ----------------------------------------------------------------------------

def create_app(
    settings: Optional[Settings] = None,
    db: Optional[Database] = None,
    push: Optional[PushPort] = None,
    images: Optional[ImageHost] = None,
) -> FastAPI:
    settings = settings or load_settings()
    configure_logging(settings.environment)

    db = db if db is not None else connect(settings)
    push = push or ExpoPushAdapter(settings.expo_access_token)
    images = images or CloudinaryImageHost(settings)

    app = FastAPI(title="HoloHaven Store API")
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    fanout = NotificationFanout(db, PushDispatcher(push, db, settings.push_chunk_size))
    app.state.settings = settings
    app.state.db = db
    app.state.image_host = images
    app.state.fanout = fanout
    app.state.catalog = CatalogService(db)
    app.state.cart_service = CartService(db)
    app.state.order_workflow = OrderWorkflow(db, fanout, settings.order_transition_policy)
    app.state.review_service = ReviewService(db)
    app.state.promotion_service = PromotionService(db, fanout)
    app.state.sweeper = None

    app.include_router(router)
    app.add_exception_handler(StoreError, store_error_handler)
    app.add_exception_handler(RequestValidationError, validation_error_handler)
    app.add_exception_handler(ValidationError, validation_error_handler)
    app.add_exception_handler(PyMongoError, database_error_handler)

    @app.on_event("startup")
    async def on_startup():
        await run_in_threadpool(ensure_indexes, db)
        if settings.seed_on_startup:
            try:
                await run_in_threadpool(seed_data, db)
            except PyMongoError as exc:
                logger.warning("Seeding skipped", error=str(exc))
        if settings.token_sweep_interval_seconds > 0:
            app.state.sweeper = asyncio.create_task(
                sweeper.run_periodically(db, settings.token_sweep_interval_seconds, timedelta(days=settings.stale_token_days))
            )
        logger.info("API started", database=settings.database_name)

    @app.on_event("shutdown")
    async def on_shutdown():
        await sweeper.stop(app.state.sweeper)
        app.state.sweeper = None

    return app


if __name__ == "__main__":
    import uvicorn

    settings = load_settings()
    uvicorn.run(create_app(settings), host="0.0.0.0", port=settings.port)
