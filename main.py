import html
import logging
import re
from contextlib import asynccontextmanager
from typing import List, Optional

from fastapi import FastAPI, HTTPException, Depends, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, EmailStr, Field, field_validator
from pydantic.alias_generators import to_camel
from pymongo.errors import PyMongoError
from starlette.exceptions import HTTPException as StarletteHTTPException

import auth
import cart
import config
import database
import notifications
import orders
from auth import get_current_user, require_admin
from database import create_document, get_documents, get_document_by_id, update_document, delete_document
from errors import StoreError
from mailer import get_email_sender
from ratelimit import RateLimiter
from schemas import Product

config.configure_logging()
logger = logging.getLogger("storefront")


@asynccontextmanager
async def lifespan(app: FastAPI):
    if database.db is not None:
        database.ensure_indexes()
        auth.ensure_default_admin()
    else:
        logger.warning("Database not configured; set DATABASE_URL and DATABASE_NAME")
    yield


app = FastAPI(title="Football Supplies Store API", version="1.0.0", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=config.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

order_limiter = RateLimiter(
    config.ORDER_RATE_LIMIT,
    config.ORDER_RATE_WINDOW_SECONDS,
    message="Too many orders created from this IP, please try again after 15 minutes",
)


# ===================== Error responses =====================
@app.exception_handler(StoreError)
def store_error_handler(request: Request, exc: StoreError):
    return JSONResponse(status_code=exc.status_code, content={"message": exc.message})


@app.exception_handler(StarletteHTTPException)
def http_error_handler(request: Request, exc: StarletteHTTPException):
    return JSONResponse(status_code=exc.status_code, content={"message": str(exc.detail)}, headers=exc.headers)


@app.exception_handler(RequestValidationError)
def validation_error_handler(request: Request, exc: RequestValidationError):
    errors = [
        {"field": ".".join(str(part) for part in err["loc"][1:]), "msg": err["msg"].removeprefix("Value error, ")}
        for err in exc.errors()
    ]
    return JSONResponse(status_code=400, content={"message": errors[0]["msg"], "errors": errors})


@app.exception_handler(Exception)
def unhandled_error_handler(request: Request, exc: Exception):
    logger.exception("Unhandled error on %s %s", request.method, request.url.path)
    return JSONResponse(status_code=500, content={"message": "Internal server error"})


# ===================== Request models =====================
class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class RegisterRequest(CamelModel):
    name: str = Field(..., min_length=1)
    email: EmailStr
    password: str = Field(..., min_length=6)
    phone: Optional[str] = None


class LoginRequest(CamelModel):
    email: EmailStr
    password: str


class VerifyOtpRequest(CamelModel):
    email: EmailStr
    otp: str


class GoogleLoginRequest(CamelModel):
    email: Optional[EmailStr] = None
    name: Optional[str] = None
    google_id: Optional[str] = None
    picture: Optional[str] = None


class ProfileUpdateRequest(CamelModel):
    name: Optional[str] = None
    email: Optional[EmailStr] = None


class ChangePasswordRequest(CamelModel):
    current_password: str
    new_password: str = Field(..., min_length=6)


class ProductUpdateRequest(CamelModel):
    name: Optional[str] = None
    description: Optional[str] = None
    price: Optional[float] = Field(None, ge=0)
    original_price: Optional[float] = Field(None, ge=0)
    stock: Optional[int] = Field(None, ge=0)
    status: Optional[str] = None
    category: Optional[str] = None
    image: Optional[str] = None
    images: Optional[List[str]] = None
    sizes: Optional[List[str]] = None

    # omitted fields are left alone; an explicit null is not a value
    @field_validator("name", "price", "stock", "status", "images", "sizes", mode="before")
    @classmethod
    def not_null(cls, value, info):
        if value is None:
            raise ValueError(f"{info.field_name} cannot be null")
        return value


class ProductCreateRequest(Product):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class CartAddRequest(CamelModel):
    product_id: str
    quantity: int = Field(1, ge=1)
    size: Optional[str] = None


class CartUpdateRequest(CamelModel):
    quantity: int = Field(..., ge=1)
    size: Optional[str] = None


class ShippingAddressIn(CamelModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, validate_default=True)

    full_name: str = ""
    phone: str = ""
    address: str = ""
    city: str = ""
    postal_code: Optional[str] = None

    @field_validator("full_name", "address", "city")
    @classmethod
    def required_text(cls, value: str, info):
        value = value.strip()
        if not value:
            label = {"full_name": "Full Name", "address": "Address", "city": "City"}[info.field_name]
            raise ValueError(f"{label} is required")
        return html.escape(value)

    @field_validator("phone")
    @classmethod
    def ten_digit_phone(cls, value: str):
        value = value.strip()
        if len(value) != 10:
            raise ValueError("Phone must be 10 digits")
        if not value.isdigit():
            raise ValueError("Phone must be numeric")
        return value


class DirectItem(CamelModel):
    product: str
    quantity: int = Field(1, ge=1)
    size: Optional[str] = None
    name: Optional[str] = None


class CreateOrderRequest(CamelModel):
    shipping_address: ShippingAddressIn
    payment_method: str
    items: Optional[List[DirectItem]] = None

    @field_validator("payment_method")
    @classmethod
    def known_method(cls, value: str):
        if value not in ("cod", "online"):
            raise ValueError("Invalid payment method")
        return value


class UpdateOrderStatusRequest(CamelModel):
    order_status: str


# ===================== Public Endpoints =====================
@app.get("/")
def root():
    return {"message": "Football Supplies Store API running"}


@app.get("/api/health")
def health():
    status = {"api": "ok", "database": "not configured", "collections": []}
    if database.db is not None:
        try:
            status["collections"] = sorted(database.db.list_collection_names())
            status["database"] = "ok"
        except PyMongoError as exc:
            logger.warning("Health check could not reach the database: %s", exc)
            status["database"] = "unreachable"
    return status


# ===================== Auth =====================
@app.post("/api/auth/register", status_code=201)
def register(payload: RegisterRequest):
    return auth.register(payload.name, payload.email, payload.password, payload.phone)


@app.post("/api/auth/login")
async def login(payload: LoginRequest, send_email=Depends(get_email_sender)):
    return await auth.login(payload.email, payload.password, send_email)


@app.post("/api/auth/verify-otp")
def verify_otp(payload: VerifyOtpRequest):
    return auth.verify_otp(payload.email, payload.otp)


@app.post("/api/auth/google")
def google_login(payload: GoogleLoginRequest):
    if not payload.email:
        raise HTTPException(status_code=400, detail="Email is required")
    return auth.google_login(payload.email, payload.name, payload.google_id)


@app.get("/api/auth/me")
def me(user=Depends(get_current_user)):
    return {"user": auth.public_user(user)}


@app.put("/api/auth/update-profile")
def update_profile(payload: ProfileUpdateRequest, user=Depends(get_current_user)):
    updated = auth.update_profile(user, payload.name, payload.email)
    return {"message": "Profile updated successfully", "user": auth.public_user(updated)}


@app.put("/api/auth/change-password")
def change_password(payload: ChangePasswordRequest, user=Depends(get_current_user)):
    auth.change_password(user, payload.current_password, payload.new_password)
    return {"message": "Password updated successfully"}


@app.get("/api/auth/notifications")
def my_notifications(user=Depends(get_current_user)):
    return notifications.list_notifications(user["_id"])


@app.put("/api/auth/notifications/{notification_id}/read")
def read_my_notification(notification_id: str, user=Depends(get_current_user)):
    return notifications.mark_read(notification_id, user["_id"])


@app.delete("/api/auth/notifications/{notification_id}")
def delete_my_notification(notification_id: str, user=Depends(get_current_user)):
    notifications.delete_notification(notification_id, user["_id"])
    return {"message": "Notification deleted successfully"}


# ===================== Products =====================
@app.get("/api/products")
def list_products(q: Optional[str] = None, category: Optional[str] = None):
    filter_q = {"status": "active"}
    if category:
        filter_q["category"] = category
    if q:
        pattern = re.escape(q)
        filter_q["$or"] = [
            {"name": {"$regex": pattern, "$options": "i"}},
            {"description": {"$regex": pattern, "$options": "i"}},
        ]
    return get_documents("product", filter_q, sort=[("name", 1)])


@app.get("/api/products/{product_id}")
def get_product(product_id: str):
    product = get_document_by_id("product", product_id)
    if not product:
        raise HTTPException(404, "Product not found")
    return product


@app.post("/api/products", status_code=201)
def create_product(payload: ProductCreateRequest, admin=Depends(require_admin)):
    product_id = create_document("product", Product(**payload.model_dump()))
    return get_document_by_id("product", product_id)


@app.put("/api/products/{product_id}")
def update_product(product_id: str, payload: ProductUpdateRequest, admin=Depends(require_admin)):
    ok = update_document("product", product_id, payload.model_dump(exclude_unset=True))
    if not ok:
        raise HTTPException(404, "Product not found")
    return get_document_by_id("product", product_id)


@app.delete("/api/products/{product_id}")
def delete_product(product_id: str, admin=Depends(require_admin)):
    ok = delete_document("product", product_id)
    if not ok:
        raise HTTPException(404, "Product not found")
    return {"message": "Product deleted successfully"}


# ===================== Cart =====================
@app.get("/api/cart")
def get_cart(user=Depends(get_current_user)):
    return cart.get_cart(user["_id"])


@app.post("/api/cart")
def add_to_cart(payload: CartAddRequest, user=Depends(get_current_user)):
    return cart.add_to_cart(user["_id"], payload.product_id, payload.quantity, payload.size)


@app.put("/api/cart/{product_id}")
def update_cart(product_id: str, payload: CartUpdateRequest, user=Depends(get_current_user)):
    return cart.update_cart_line(user["_id"], product_id, payload.quantity, payload.size)


@app.delete("/api/cart/{product_id}")
def remove_from_cart(product_id: str, size: Optional[str] = None, user=Depends(get_current_user)):
    return cart.remove_from_cart(user["_id"], product_id, size)


@app.delete("/api/cart")
def clear_cart(user=Depends(get_current_user)):
    cart.clear_cart(user["_id"])
    return {"message": "Cart cleared"}


# ===================== Orders =====================
@app.post("/api/orders", status_code=201)
def create_order(payload: CreateOrderRequest, user=Depends(get_current_user), _=Depends(order_limiter)):
    items = [item.model_dump() for item in payload.items] if payload.items else None
    return orders.place_order(user, payload.shipping_address.model_dump(), payload.payment_method, items)


@app.get("/api/orders/my-orders")
def my_orders(user=Depends(get_current_user)):
    return orders.list_user_orders(user["_id"])


@app.get("/api/orders/admin/all")
def all_orders(admin=Depends(require_admin)):
    return orders.list_all_orders()


@app.get("/api/orders/{order_id}")
def get_order(order_id: str, user=Depends(get_current_user)):
    return orders.get_order(user, order_id)


@app.put("/api/orders/{order_id}/status")
def update_order_status(order_id: str, payload: UpdateOrderStatusRequest, admin=Depends(require_admin)):
    return orders.update_order_status(order_id, payload.order_status)


@app.delete("/api/orders/{order_id}")
def cancel_order(order_id: str, user=Depends(get_current_user)):
    orders.cancel_order(user, order_id)
    return {"message": "Order cancelled successfully"}


# ===================== Payments =====================
@app.get("/api/payments/{payment_id}")
def get_payment(payment_id: str, user=Depends(get_current_user)):
    return orders.get_payment(user, payment_id)


# ===================== Admin notifications =====================
@app.get("/api/admin/notifications")
def admin_notifications(admin=Depends(require_admin)):
    return notifications.list_notifications()


@app.put("/api/admin/notifications/{notification_id}/read")
def read_admin_notification(notification_id: str, admin=Depends(require_admin)):
    return notifications.mark_read(notification_id)


@app.delete("/api/admin/notifications/{notification_id}")
def delete_admin_notification(notification_id: str, admin=Depends(require_admin)):
    notifications.delete_notification(notification_id)
    return {"message": "Notification deleted successfully"}


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=config.PORT)
