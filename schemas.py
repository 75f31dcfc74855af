"""
Store Schemas for the PTEROHUB shop

Pydantic models for the persisted collections (products, purchases, admin,
settings) and for the derived views (customers, dashboard stats).

Attributes are snake_case in Python; the JSON form (API responses and the
persisted snapshots) uses camelCase keys, e.g. Product.sales_count -> "salesCount".
"""
from datetime import datetime
from typing import List, Optional, Literal

from pydantic import BaseModel, ConfigDict, Field, EmailStr, field_validator
from pydantic.alias_generators import to_camel

PaymentMethod = Literal["QRIS", "DANA", "GOPAY"]
PurchaseStatus = Literal["pending", "paid", "processing", "completed", "cancelled"]

PAYMENT_METHODS = ("QRIS", "DANA", "GOPAY")
PURCHASE_STATUSES = ("pending", "paid", "processing", "completed", "cancelled")


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


# Core domain models

class Product(CamelModel):
    id: str
    name: str
    description: str = ""
    price: int = Field(..., gt=0, description="Price in the smallest currency unit")
    original_price: Optional[int] = Field(None, gt=0, description="Pre-discount price")
    stock: int = Field(0, ge=0)
    category: str = "Other"
    image: str
    features: List[str] = Field(default_factory=list)
    is_active: bool = True
    created_at: datetime
    updated_at: datetime
    sales_count: int = Field(0, ge=0)
    views: int = Field(0, ge=0)


class Purchase(CamelModel):
    id: str
    order_id: str = Field(..., description="Public order identifier, e.g. PTH-LZ3K9Q1A-X7Q")
    product_id: str
    product_name: str = Field(..., description="Snapshot of product name at purchase time")
    price: int = Field(..., ge=0, description="Snapshot of product price at purchase time")
    customer_name: str
    customer_email: str
    customer_phone: str
    payment_method: PaymentMethod
    status: PurchaseStatus = "pending"
    created_at: datetime
    paid_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    notes: Optional[str] = None


class AdminUser(CamelModel):
    username: str
    password: str = Field(..., description="passlib hash of the admin password")
    is_logged_in: bool = False
    email: Optional[str] = None
    phone: Optional[str] = None
    store_name: str


class StoreSettings(CamelModel):
    store_name: str
    store_description: str = ""
    contact_email: str = ""
    contact_phone: str = ""
    whatsapp_number: str = ""
    enable_qris: bool = Field(True, alias="enableQRIS")
    enable_dana: bool = Field(True, alias="enableDANA")
    enable_gopay: bool = Field(True, alias="enableGOPAY")
    maintenance_mode: bool = False

    def payment_enabled(self, method: str) -> bool:
        return bool(getattr(self, f"enable_{method.lower()}", False))


# Derived views (never persisted)

class Customer(CamelModel):
    email: str
    name: str
    phone: str
    total_orders: int
    total_spent: int
    last_order: datetime
    orders: List[Purchase] = Field(default_factory=list)


class DaySales(CamelModel):
    date: str
    amount: int


class StatusCount(CamelModel):
    status: str
    count: int


class PaymentSales(CamelModel):
    method: PaymentMethod
    amount: int


class TopProduct(CamelModel):
    name: str
    sales: int
    revenue: int


class DashboardStats(CamelModel):
    total_sales: int
    total_orders: int
    total_products: int
    low_stock_products: int
    recent_orders: List[Purchase]
    sales_by_day: List[DaySales]
    orders_by_status: List[StatusCount]
    sales_by_payment: List[PaymentSales]
    top_products: List[TopProduct]


# Request bodies

class ProductIn(CamelModel):
    name: str = Field(..., min_length=1)
    description: str = ""
    price: int = Field(..., gt=0)
    original_price: Optional[int] = Field(None, gt=0)
    stock: int = Field(..., ge=0)
    category: Optional[str] = None
    image: Optional[str] = None
    features: List[str] = Field(default_factory=list)
    is_active: bool = True


class ProductUpdate(CamelModel):
    name: Optional[str] = Field(None, min_length=1)
    description: Optional[str] = None
    price: Optional[int] = Field(None, gt=0)
    original_price: Optional[int] = Field(None, gt=0)
    stock: Optional[int] = Field(None, ge=0)
    category: Optional[str] = None
    image: Optional[str] = None
    features: Optional[List[str]] = None
    is_active: Optional[bool] = None


class RestockRequest(CamelModel):
    amount: int


class CheckoutRequest(CamelModel):
    customer_name: str = Field(..., min_length=1)
    customer_email: EmailStr
    customer_phone: str = Field(..., min_length=1)
    payment_method: PaymentMethod
    product_ids: List[str] = Field(..., min_length=1)

    @field_validator("product_ids")
    @classmethod
    def unique_products(cls, v: List[str]) -> List[str]:
        if len(set(v)) != len(v):
            raise ValueError("Each product can only appear once per order")
        return v


class StatusUpdate(CamelModel):
    status: PurchaseStatus


class BulkStatusUpdate(CamelModel):
    ids: List[str]
    status: PurchaseStatus


class LoginRequest(CamelModel):
    username: str
    password: str


class PasswordChange(CamelModel):
    current_password: str
    new_password: str = Field(..., min_length=6)
    confirm_password: str


class AdminProfileUpdate(CamelModel):
    username: Optional[str] = Field(None, min_length=1)
    email: Optional[EmailStr] = None
    phone: Optional[str] = None
    store_name: Optional[str] = None


class SettingsUpdate(CamelModel):
    store_name: Optional[str] = None
    store_description: Optional[str] = None
    contact_email: Optional[str] = None
    contact_phone: Optional[str] = None
    whatsapp_number: Optional[str] = None
    enable_qris: Optional[bool] = Field(None, alias="enableQRIS")
    enable_dana: Optional[bool] = Field(None, alias="enableDANA")
    enable_gopay: Optional[bool] = Field(None, alias="enableGOPAY")
    maintenance_mode: Optional[bool] = None


class SeedRequest(BaseModel):
    force: bool = False
