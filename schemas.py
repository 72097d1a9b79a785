"""
Database Schemas for the Football Supplies storefront

Each Pydantic model below corresponds to a MongoDB collection.
The collection name is the lowercase class name (e.g., User -> "user").
References to other documents are stored as string ids.
"""
from datetime import datetime
from typing import List, Optional, Literal, Dict, Any
from pydantic import BaseModel, Field, EmailStr

Role = Literal["user", "admin"]
PaymentMethod = Literal["cod", "online"]
OrderStatus = Literal["pending", "confirmed", "processing", "shipped", "delivered"]
PaymentStatus = Literal["pending", "paid", "failed", "refunded"]


class CartLine(BaseModel):
    product: str = Field(..., description="Reference to product _id")
    quantity: int = Field(1, ge=1)
    size: Optional[str] = None


class Address(BaseModel):
    full_name: str
    phone: str
    address: str
    city: str
    postal_code: Optional[str] = None
    is_default: bool = False


class User(BaseModel):
    name: str = Field(..., description="Full name")
    email: EmailStr = Field(..., description="Unique email address, stored lowercased")
    phone: Optional[str] = None
    password_hash: str = Field(..., description="BCrypt password hash")
    role: Role = "user"
    login_attempts: int = 0
    lock_until: Optional[datetime] = None
    cart: List[CartLine] = []
    addresses: List[Address] = []


class Product(BaseModel):
    name: str = Field(..., description="Product name")
    description: Optional[str] = None
    price: float = Field(..., ge=0)
    original_price: Optional[float] = Field(None, ge=0)
    stock: int = Field(0, ge=0, description="Units on hand")
    status: str = Field("active", description="Only active products can be ordered")
    category: Optional[str] = Field(None, description="Category name")
    image: Optional[str] = None
    images: List[str] = []
    sizes: List[str] = []


class OrderItem(BaseModel):
    """Frozen copy of the product at order time."""
    product: str
    name: str
    price: float
    quantity: int = Field(..., ge=1)
    image: Optional[str] = None
    size: Optional[str] = None


class ShippingAddress(BaseModel):
    full_name: str
    phone: str
    address: str
    city: str
    postal_code: Optional[str] = None


class Order(BaseModel):
    user: str = Field(..., description="Reference to user _id")
    order_number: str = Field(..., description="Human-friendly order number")
    items: List[OrderItem]
    shipping_address: ShippingAddress
    payment_method: PaymentMethod
    subtotal: float = 0.0
    shipping_fee: float = 0.0
    total: float = 0.0
    payment_status: PaymentStatus = "pending"
    order_status: OrderStatus = "pending"
    payment: Optional[str] = None


class Payment(BaseModel):
    order: str
    user: str
    method: PaymentMethod
    amount: float = Field(..., ge=0)
    status: PaymentStatus = "pending"


class Notification(BaseModel):
    type: str = "order"
    message: str
    user: Optional[str] = Field(None, description="Owner; absent for admin notifications")
    link: Optional[str] = None
    metadata: Dict[str, Any] = {}
    read: bool = False
