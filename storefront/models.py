from datetime import datetime
from enum import Enum
from typing import Optional, List
from decimal import Decimal
from pydantic import BaseModel, Field


class Role(str, Enum):
    USER = "USER"
    ADMIN = "ADMIN"


class OrderStatus(str, Enum):
    PENDING = "PENDING"
    PROCESSING = "PROCESSING"
    SHIPPED = "SHIPPED"
    DELIVERED = "DELIVERED"
    CANCELLED = "CANCELLED"


class PaymentStatus(str, Enum):
    PENDING = "PENDING"
    PAID = "PAID"
    FAILED = "FAILED"
    REFUNDED = "REFUNDED"


class OfferType(str, Enum):
    PERCENTAGE = "PERCENTAGE"
    FIXED = "FIXED"


class UserDB(BaseModel):
    id: Optional[str] = Field(None, alias="_id")
    email: str
    password_hash: str
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    phone: Optional[str] = None
    address: Optional[str] = None
    city: Optional[str] = None
    zip_code: Optional[str] = None
    country: Optional[str] = None
    role: Role = Role.USER
    is_active: bool = True
    created_at: datetime = Field(default_factory=datetime.utcnow)
    updated_at: Optional[datetime] = None

    class Config:
        populate_by_name = True


class RefreshTokenDB(BaseModel):
    id: Optional[str] = Field(None, alias="_id")
    user_id: str
    token_hash: str
    expires_at: datetime
    created_at: datetime = Field(default_factory=datetime.utcnow)

    class Config:
        populate_by_name = True


class PasswordResetTokenDB(BaseModel):
    id: Optional[str] = Field(None, alias="_id")
    user_id: str
    token_hash: str
    expires_at: datetime
    used: bool = False
    created_at: datetime = Field(default_factory=datetime.utcnow)

    class Config:
        populate_by_name = True


class CategoryDB(BaseModel):
    id: Optional[str] = Field(None, alias="_id")
    name: str
    slug: str
    description: Optional[str] = None
    image: Optional[str] = None
    is_active: bool = True
    order: int = 0
    created_at: datetime = Field(default_factory=datetime.utcnow)

    class Config:
        populate_by_name = True


class ComboItemDB(BaseModel):
    product_id: str
    quantity: int = 1


class ProductDB(BaseModel):
    id: Optional[str] = Field(None, alias="_id")
    name: str
    slug: str
    description: Optional[str] = None
    short_description: Optional[str] = None
    sku: Optional[str] = None
    price_usd: Optional[Decimal] = None
    price_mns: Optional[Decimal] = None  # legacy local currency
    compare_price_usd: Optional[Decimal] = None
    compare_price_mns: Optional[Decimal] = None
    stock: int = 0
    category_id: str
    images: List[str] = []
    allergens: List[str] = []
    weight: Optional[float] = None
    is_active: bool = True
    is_featured: bool = False
    is_combo: bool = False
    combo_items: List[ComboItemDB] = []
    created_at: datetime = Field(default_factory=datetime.utcnow)
    updated_at: Optional[datetime] = None

    class Config:
        populate_by_name = True


class ProductVariantDB(BaseModel):
    id: Optional[str] = Field(None, alias="_id")
    product_id: str
    name: str
    price_usd: Optional[Decimal] = None
    price_mns: Optional[Decimal] = None
    compare_price_usd: Optional[Decimal] = None
    compare_price_mns: Optional[Decimal] = None
    sku: Optional[str] = None
    stock: int = 0
    unit: Optional[str] = None
    weight: Optional[float] = None
    is_active: bool = True
    order: int = 0
    created_at: datetime = Field(default_factory=datetime.utcnow)

    class Config:
        populate_by_name = True


class CartItemDB(BaseModel):
    id: Optional[str] = Field(None, alias="_id")
    user_id: str
    product_id: str
    variant_id: Optional[str] = None
    quantity: int
    created_at: datetime = Field(default_factory=datetime.utcnow)
    updated_at: datetime = Field(default_factory=datetime.utcnow)

    class Config:
        populate_by_name = True


class AddressDB(BaseModel):
    first_name: str
    last_name: str
    address: str
    city: str
    zip_code: str
    country: str
    phone: Optional[str] = None


class OrderItemDB(BaseModel):
    product_id: str
    variant_id: Optional[str] = None
    product_name: str
    variant_name: Optional[str] = None
    quantity: int
    price: Decimal  # Snapshot


class AppliedOfferDB(BaseModel):
    id: str
    code: str
    name: str
    type: OfferType
    value: Decimal


class OrderDB(BaseModel):
    id: Optional[str] = Field(None, alias="_id")
    order_number: str
    user_id: str
    items: List[OrderItemDB]
    subtotal: Decimal
    discount: Decimal = Decimal("0")
    tax: Decimal = Decimal("0")
    shipping: Decimal = Decimal("0")
    total: Decimal
    shipping_address: AddressDB
    billing_address: AddressDB
    payment_intent_id: Optional[str] = None
    notes: Optional[str] = None
    offer: Optional[AppliedOfferDB] = None
    status: OrderStatus = OrderStatus.PENDING
    payment_status: PaymentStatus = PaymentStatus.PENDING
    confirming: bool = False
    created_at: datetime = Field(default_factory=datetime.utcnow)
    updated_at: Optional[datetime] = None

    class Config:
        populate_by_name = True


class OfferDB(BaseModel):
    id: Optional[str] = Field(None, alias="_id")
    name: str
    code: str
    type: OfferType
    value: Decimal
    min_purchase: Optional[Decimal] = None
    usage_limit: Optional[int] = None
    usage_count: int = 0
    start_date: datetime
    end_date: datetime
    is_active: bool = True
    created_at: datetime = Field(default_factory=datetime.utcnow)

    class Config:
        populate_by_name = True


class WishlistItemDB(BaseModel):
    id: Optional[str] = Field(None, alias="_id")
    user_id: str
    product_id: str
    created_at: datetime = Field(default_factory=datetime.utcnow)

    class Config:
        populate_by_name = True


class ReviewDB(BaseModel):
    id: Optional[str] = Field(None, alias="_id")
    product_id: str
    user_id: Optional[str] = None
    author_name: str
    author_email: Optional[str] = None
    rating: int
    title: Optional[str] = None
    content: str
    is_approved: bool = False
    created_at: datetime = Field(default_factory=datetime.utcnow)
    updated_at: Optional[datetime] = None

    class Config:
        populate_by_name = True


class BannerDB(BaseModel):
    id: Optional[str] = Field(None, alias="_id")
    title: str
    description: Optional[str] = None
    image: str
    link: Optional[str] = None
    is_active: bool = True
    order: int = 0
    start_date: Optional[datetime] = None
    end_date: Optional[datetime] = None
    created_at: datetime = Field(default_factory=datetime.utcnow)
    updated_at: Optional[datetime] = None

    class Config:
        populate_by_name = True


def to_mongo(model: BaseModel) -> dict:
    """Dump a DB model for insertion: drop the unset id, store Decimals as floats, enums as values."""
    doc = model.model_dump(by_alias=True, exclude={"id"}, mode="python")
    return to_plain(doc)


def to_plain(value):
    if isinstance(value, Decimal):
        return float(value)
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, dict):
        return {k: to_plain(v) for k, v in value.items()}
    if isinstance(value, list):
        return [to_plain(v) for v in value]
    return value
