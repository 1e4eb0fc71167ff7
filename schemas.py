"""
Database Schemas for the DollersElectro storefront

Each Pydantic model represents a collection in MongoDB.
Class name snake_cased = collection name (e.g., PromoCode -> "promo_code").
Embedded models (lines, snapshots, sub-documents) are not collections.
"""
from datetime import datetime
from typing import List, Literal, Optional

from pydantic import BaseModel, Field, field_validator

PromoType = Literal["percentage", "fixed", "free_shipping"]
PaymentMethod = Literal["credit_card", "debit_card", "paypal", "stripe", "cash_on_delivery", "bank_transfer"]
DeliveryMethod = Literal["home_delivery", "store_pickup", "express_delivery"]
OrderStatus = Literal["pending", "confirmed", "processing", "ready_for_pickup", "shipped", "delivered", "cancelled", "refunded"]
PaymentStatus = Literal["pending", "processing", "completed", "failed", "refunded", "cancelled"]
DeliveryStatus = Literal["pending", "confirmed", "processing", "ready_for_pickup", "shipped", "out_for_delivery",
                         "delivered", "failed", "returned"]
AlertStatus = Literal["active", "acknowledged", "resolved", "dismissed"]
AlertPriority = Literal["low", "medium", "high", "critical"]

# ---------------------- Catalog ----------------------

class ProductImage(BaseModel):
    url: str
    alt: Optional[str] = None


class Product(BaseModel):
    sku: str = Field(..., description="Stock keeping unit (unique, uppercased)")
    name: str = Field(..., max_length=200)
    description: str = Field("", max_length=2000)
    price: float = Field(..., ge=0)
    stock: int = Field(0, ge=0, description="Units in stock")
    low_stock_threshold: int = Field(10, ge=0)
    category: str
    images: List[ProductImage] = []
    tags: List[str] = []
    is_active: bool = True
    is_featured: bool = False

    @field_validator("sku")
    @classmethod
    def _upper_sku(cls, v: str) -> str:
        return v.strip().upper()

# ---------------------- Cart ----------------------

class Variant(BaseModel):
    name: str
    value: str


class CartItem(BaseModel):
    product_id: str
    quantity: int = Field(1, ge=1)
    variant: Optional[Variant] = None
    added_at: Optional[datetime] = None


class CartPromoCode(BaseModel):
    """Snapshot of the promo attached to a cart; enough to price without a lookup."""
    promo_code_id: str
    code: str
    type: PromoType
    value: float
    maximum_discount: Optional[float] = None
    applied_at: datetime


class Cart(BaseModel):
    user_id: str
    items: List[CartItem] = []
    promo_code: Optional[CartPromoCode] = None
    last_updated: Optional[datetime] = None
    expires_at: Optional[datetime] = None

# ---------------------- Promo codes ----------------------

class UserRestrictions(BaseModel):
    new_users_only: bool = False
    existing_users_only: bool = False
    specific_users: List[str] = []


class PromoCode(BaseModel):
    code: str
    name: str
    description: Optional[str] = None
    type: PromoType
    value: float = Field(..., ge=0)
    minimum_order_amount: float = Field(0, ge=0)
    maximum_discount: Optional[float] = Field(None, ge=0)
    usage_limit: int = Field(-1, ge=-1, description="-1 means unlimited")
    used_count: int = Field(0, ge=0)
    user_usage_limit: int = Field(1, ge=1)
    valid_from: Optional[datetime] = None
    valid_until: datetime
    is_active: bool = True
    applicable_categories: List[str] = []
    excluded_categories: List[str] = []
    applicable_products: List[str] = []
    excluded_products: List[str] = []
    user_restrictions: UserRestrictions = UserRestrictions()

    @field_validator("code")
    @classmethod
    def _upper_code(cls, v: str) -> str:
        return v.strip().upper()


class PromoRedemption(BaseModel):
    promo_code_id: str
    user_id: str
    order_id: str
    slot: int = Field(0, ge=0, description="Which of the user's allowed uses this is")

# ---------------------- Orders ----------------------

class ProductSnapshot(BaseModel):
    name: str
    sku: str
    image: str = ""


class OrderItem(BaseModel):
    product_id: str
    quantity: int = Field(..., ge=1)
    price: float = Field(..., ge=0)
    total: float = Field(..., ge=0)
    category: Optional[str] = None
    product_snapshot: ProductSnapshot


class Address(BaseModel):
    street: Optional[str] = None
    city: Optional[str] = None
    state: Optional[str] = None
    zip_code: Optional[str] = None
    country: Optional[str] = None
    phone: Optional[str] = None


class Payment(BaseModel):
    method: PaymentMethod
    status: PaymentStatus = "pending"
    transaction_id: Optional[str] = None
    payment_date: Optional[datetime] = None
    amount: float


class Delivery(BaseModel):
    method: DeliveryMethod
    status: DeliveryStatus = "pending"
    address: Optional[Address] = None
    tracking_number: Optional[str] = None
    carrier: Optional[str] = None
    actual_delivery: Optional[datetime] = None
    pickup_code: Optional[str] = None


class OrderPromoCode(BaseModel):
    promo_code_id: str
    code: str
    type: PromoType


class Order(BaseModel):
    order_number: str
    customer_id: str
    items: List[OrderItem]
    subtotal: float = Field(..., ge=0)
    tax: float = Field(0, ge=0)
    shipping: float = Field(0, ge=0)
    discount: float = Field(0, ge=0)
    total: float = Field(..., ge=0)
    promo_code: Optional[OrderPromoCode] = None
    payment: Payment
    delivery: Delivery
    status: OrderStatus = "pending"
    source: Literal["website", "mobile_app", "phone", "in_store"] = "website"
    customer_notes: Optional[str] = None
    status_history: List[dict] = []
    idempotency_key: Optional[str] = None

# ---------------------- Inventory ----------------------

class LowStockAlert(BaseModel):
    product_id: str
    current_stock: int = Field(..., ge=0)
    threshold: int = Field(..., ge=0)
    status: AlertStatus = "active"
    priority: AlertPriority = "medium"
    message: str
    alert_type: Literal["low_stock", "out_of_stock"] = "low_stock"
    acknowledged_by: Optional[str] = None
    acknowledged_at: Optional[datetime] = None
    resolved_by: Optional[str] = None
    resolved_at: Optional[datetime] = None
    resolution_notes: Optional[str] = None
