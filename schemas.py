"""
Database Schemas for the bookstore

Each persisted Pydantic model maps to a MongoDB collection named after the
lowercase class name (book, order, order_item, profile). The *Out models are
the validated shapes of rows read back from the database.
"""
from datetime import datetime
from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, EmailStr, Field


class OrderStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class PaymentStatus(str, Enum):
    PENDING = "pending"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CANCELED = "canceled"


# Catalog

class Book(BaseModel):
    title: str = Field(..., min_length=1)
    short_description: str = ""
    description: str = ""
    price: int = Field(..., ge=0, description="Price in currency units")
    cover_image: Optional[str] = Field(None, description="Cover image URL")
    year: int
    pages: Optional[int] = Field(None, ge=1)
    language: Optional[str] = None
    stock: int = Field(0, ge=0)


class BookUpdate(BaseModel):
    title: Optional[str] = Field(None, min_length=1)
    short_description: Optional[str] = None
    description: Optional[str] = None
    price: Optional[int] = Field(None, ge=0)
    cover_image: Optional[str] = None
    year: Optional[int] = None
    pages: Optional[int] = Field(None, ge=1)
    language: Optional[str] = None
    stock: Optional[int] = Field(None, ge=0)


class BookOut(Book):
    id: str
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


# Profiles

class ShippingAddress(BaseModel):
    shipping_address: str = Field(..., min_length=1)
    shipping_city: str = Field(..., min_length=1)
    shipping_country: str = Field(..., min_length=1)
    shipping_postal_code: str = Field(..., min_length=1)


class Profile(BaseModel):
    email: EmailStr
    password_hash: str
    full_name: Optional[str] = None
    phone: Optional[str] = None
    is_admin: bool = False
    shipping_address: Optional[str] = None
    shipping_city: Optional[str] = None
    shipping_country: Optional[str] = None
    shipping_postal_code: Optional[str] = None


class ProfileOut(BaseModel):
    id: str
    email: EmailStr
    full_name: Optional[str] = None
    phone: Optional[str] = None
    is_admin: bool = False
    shipping_address: Optional[str] = None
    shipping_city: Optional[str] = None
    shipping_country: Optional[str] = None
    shipping_postal_code: Optional[str] = None
    created_at: Optional[datetime] = None


class ProfileUpdate(BaseModel):
    full_name: Optional[str] = None
    phone: Optional[str] = None
    shipping_address: Optional[str] = None
    shipping_city: Optional[str] = None
    shipping_country: Optional[str] = None
    shipping_postal_code: Optional[str] = None


class Register(BaseModel):
    email: EmailStr
    password: str = Field(..., min_length=6)
    full_name: Optional[str] = None


# Orders

class CartLine(BaseModel):
    book_id: str
    quantity: int = Field(1, ge=1)


class Order(ShippingAddress):
    user_id: str
    total_amount: int = Field(..., ge=0)
    status: OrderStatus = OrderStatus.PENDING
    payment_status: PaymentStatus = PaymentStatus.PENDING
    payment_intent_id: Optional[str] = None
    payment_attempts: int = 0
    stock_released: bool = False


class OrderItem(BaseModel):
    order_id: str
    book_id: str
    quantity: int = Field(..., ge=1)
    price: int = Field(..., ge=0, description="Unit price snapshotted at order time")


class OrderItemOut(OrderItem):
    id: str
    title: Optional[str] = None
    cover_image: Optional[str] = None
    created_at: Optional[datetime] = None


class OrderOut(ShippingAddress):
    id: str
    user_id: str
    total_amount: int
    status: OrderStatus
    payment_status: PaymentStatus = PaymentStatus.PENDING
    payment_intent_id: Optional[str] = None
    items: List[OrderItemOut] = []
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class CheckoutRequest(BaseModel):
    items: List[CartLine]
    shipping: ShippingAddress


class CheckoutResponse(BaseModel):
    order: OrderOut
    client_secret: Optional[str] = None
    payment_error: Optional[str] = None


class PaymentIntentRequest(BaseModel):
    amount: Optional[int] = None
    orderId: str


class OrderStatusUpdate(BaseModel):
    status: OrderStatus
