from pydantic import BaseModel, EmailStr, Field, field_validator, model_validator
from typing import Optional, List
from decimal import Decimal
from datetime import datetime
from shared.security_config import sanitize_input, validate_password_strength, normalize_code

from storefront.models import OfferType, OrderStatus, PaymentStatus, Role


# --- Auth ---

def check_password(value: str) -> str:
    if not validate_password_strength(value):
        raise ValueError('Password must be at least 8 characters long and contain uppercase, lowercase, and numbers')
    return value

class UserRegister(BaseModel):
    email: EmailStr
    password: str = Field(..., min_length=8)
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    phone: Optional[str] = None

    @field_validator('password')
    def password_complexity(cls, v):
        return check_password(v)

    @field_validator('first_name', 'last_name', 'phone')
    def sanitize_fields(cls, v):
        return sanitize_input(v)

class UserLogin(BaseModel):
    email: EmailStr
    password: str

class RefreshTokenRequest(BaseModel):
    refresh_token: str

class Token(BaseModel):
    access_token: str
    refresh_token: str
    token_type: str = "bearer"

class ForgotPasswordRequest(BaseModel):
    email: EmailStr

class ResetPasswordRequest(BaseModel):
    token: str
    new_password: str = Field(..., min_length=8)

    @field_validator('new_password')
    def password_complexity(cls, v):
        return check_password(v)

class UserResponse(BaseModel):
    id: str
    email: str
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    phone: Optional[str] = None
    address: Optional[str] = None
    city: Optional[str] = None
    zip_code: Optional[str] = None
    country: Optional[str] = None
    role: Role
    is_active: bool = True
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

class AuthResponse(Token):
    user: UserResponse


# --- Users ---

class UserProfileUpdate(BaseModel):
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    phone: Optional[str] = None
    address: Optional[str] = None
    city: Optional[str] = None
    zip_code: Optional[str] = None
    country: Optional[str] = None

    @field_validator('first_name', 'last_name', 'phone', 'address', 'city', 'zip_code', 'country')
    def sanitize_fields(cls, v):
        return sanitize_input(v)

class UserAdminUpdate(UserProfileUpdate):
    role: Optional[Role] = None
    is_active: Optional[bool] = None

class CustomerResponse(BaseModel):
    id: str
    email: str
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    phone: Optional[str] = None
    is_active: bool = True
    created_at: Optional[datetime] = None
    total_orders: int = 0
    total_spent: Decimal = Decimal("0")
    last_order_at: Optional[datetime] = None

class CustomerListResponse(BaseModel):
    customers: List[CustomerResponse]
    total: int
    page: int
    limit: int
    total_pages: int


# --- Catalog ---

class CategoryCreate(BaseModel):
    name: str = Field(..., min_length=1)
    slug: Optional[str] = None
    description: Optional[str] = None
    image: Optional[str] = None
    is_active: bool = True
    order: int = 0

    @field_validator('name', 'slug', 'description', 'image')
    def sanitize_fields(cls, v):
        return sanitize_input(v)

class CategoryUpdate(BaseModel):
    name: Optional[str] = None
    slug: Optional[str] = None
    description: Optional[str] = None
    image: Optional[str] = None
    is_active: Optional[bool] = None
    order: Optional[int] = None

    @field_validator('name', 'slug', 'description', 'image')
    def sanitize_fields(cls, v):
        return sanitize_input(v)

class CategoryResponse(BaseModel):
    id: str
    name: str
    slug: str
    description: Optional[str] = None
    image: Optional[str] = None
    is_active: bool
    order: int = 0
    product_count: Optional[int] = None

class ComboItem(BaseModel):
    product_id: str
    quantity: int = Field(1, ge=1)

class ProductCreate(BaseModel):
    name: str = Field(..., min_length=1)
    slug: str = Field(..., min_length=1)
    description: Optional[str] = None
    short_description: Optional[str] = None
    sku: Optional[str] = None
    price_usd: Optional[Decimal] = Field(None, ge=0)
    price_mns: Optional[Decimal] = Field(None, ge=0)
    compare_price_usd: Optional[Decimal] = Field(None, ge=0)
    compare_price_mns: Optional[Decimal] = Field(None, ge=0)
    stock: int = Field(0, ge=0)
    category_id: str
    images: List[str] = []
    allergens: List[str] = []
    weight: Optional[float] = Field(None, ge=0)
    is_active: bool = True
    is_featured: bool = False
    is_combo: bool = False
    combo_items: List[ComboItem] = []

    @field_validator('name', 'slug', 'description', 'short_description', 'sku')
    def sanitize_fields(cls, v):
        return sanitize_input(v)

class ProductUpdate(BaseModel):
    name: Optional[str] = None
    slug: Optional[str] = None
    description: Optional[str] = None
    short_description: Optional[str] = None
    sku: Optional[str] = None
    price_usd: Optional[Decimal] = Field(None, ge=0)
    price_mns: Optional[Decimal] = Field(None, ge=0)
    compare_price_usd: Optional[Decimal] = Field(None, ge=0)
    compare_price_mns: Optional[Decimal] = Field(None, ge=0)
    stock: Optional[int] = Field(None, ge=0)
    category_id: Optional[str] = None
    images: Optional[List[str]] = None
    allergens: Optional[List[str]] = None
    weight: Optional[float] = Field(None, ge=0)
    is_active: Optional[bool] = None
    is_featured: Optional[bool] = None
    is_combo: Optional[bool] = None
    combo_items: Optional[List[ComboItem]] = None

    @field_validator('name', 'slug', 'description', 'short_description', 'sku')
    def sanitize_fields(cls, v):
        return sanitize_input(v)

class VariantCreate(BaseModel):
    name: str = Field(..., min_length=1)
    price_usd: Optional[Decimal] = Field(None, ge=0)
    price_mns: Optional[Decimal] = Field(None, ge=0)
    compare_price_usd: Optional[Decimal] = Field(None, ge=0)
    compare_price_mns: Optional[Decimal] = Field(None, ge=0)
    sku: Optional[str] = None
    stock: int = Field(0, ge=0)
    unit: Optional[str] = None
    weight: Optional[float] = Field(None, ge=0)
    is_active: bool = True
    order: int = 0

    @field_validator('name', 'sku', 'unit')
    def sanitize_fields(cls, v):
        return sanitize_input(v)

class VariantUpdate(BaseModel):
    name: Optional[str] = None
    price_usd: Optional[Decimal] = Field(None, ge=0)
    price_mns: Optional[Decimal] = Field(None, ge=0)
    compare_price_usd: Optional[Decimal] = Field(None, ge=0)
    compare_price_mns: Optional[Decimal] = Field(None, ge=0)
    sku: Optional[str] = None
    stock: Optional[int] = Field(None, ge=0)
    unit: Optional[str] = None
    weight: Optional[float] = Field(None, ge=0)
    is_active: Optional[bool] = None
    order: Optional[int] = None

    @field_validator('name', 'sku', 'unit')
    def sanitize_fields(cls, v):
        return sanitize_input(v)

class VariantResponse(BaseModel):
    id: str
    product_id: str
    name: str
    price_usd: Optional[Decimal] = None
    price_mns: Optional[Decimal] = None
    compare_price_usd: Optional[Decimal] = None
    compare_price_mns: Optional[Decimal] = None
    price: Decimal = Decimal("0")
    sku: Optional[str] = None
    stock: int
    unit: Optional[str] = None
    weight: Optional[float] = None
    is_active: bool
    order: int = 0

class ComboComponentResponse(BaseModel):
    product_id: str
    quantity: int
    name: Optional[str] = None
    slug: Optional[str] = None
    price: Optional[Decimal] = None
    is_active: Optional[bool] = None

class ProductResponse(BaseModel):
    id: str
    name: str
    slug: str
    description: Optional[str] = None
    short_description: Optional[str] = None
    sku: Optional[str] = None
    price_usd: Optional[Decimal] = None
    price_mns: Optional[Decimal] = None
    compare_price_usd: Optional[Decimal] = None
    compare_price_mns: Optional[Decimal] = None
    price: Decimal = Decimal("0")
    stock: int
    category_id: str
    category: Optional[CategoryResponse] = None
    images: List[str] = []
    allergens: List[str] = []
    weight: Optional[float] = None
    is_active: bool
    is_featured: bool = False
    is_combo: bool = False
    combo_items: List[ComboComponentResponse] = []
    variants: List[VariantResponse] = []
    created_at: datetime
    updated_at: Optional[datetime] = None

class ProductListResponse(BaseModel):
    products: List[ProductResponse]
    total: int
    page: int
    limit: int
    total_pages: int


# --- Cart ---

class CartItemAdd(BaseModel):
    product_id: str
    variant_id: Optional[str] = None
    quantity: int = Field(..., gt=0)

class CartItemUpdate(BaseModel):
    quantity: int = Field(..., gt=0)

class CartProductSummary(BaseModel):
    id: str
    name: str
    slug: str
    images: List[str] = []
    stock: int
    is_active: bool
    category_id: Optional[str] = None

class CartVariantSummary(BaseModel):
    id: str
    name: str
    stock: int
    is_active: bool

class CartItemResponse(BaseModel):
    id: str
    product_id: str
    variant_id: Optional[str] = None
    quantity: int
    unit_price: Decimal
    line_total: Decimal
    product: Optional[CartProductSummary] = None
    variant: Optional[CartVariantSummary] = None

class CartResponse(BaseModel):
    items: List[CartItemResponse]
    subtotal: Decimal
    total: Decimal

class CartLineStatus(BaseModel):
    item_id: str
    product_id: str
    variant_id: Optional[str] = None
    name: str
    requested: int
    available: int
    status: str  # ok | out_of_stock | insufficient_stock | unavailable
    message: Optional[str] = None

class CartValidationResponse(BaseModel):
    valid: bool
    items: List[CartLineStatus]
    issues: List[CartLineStatus]


# --- Orders ---

class Address(BaseModel):
    first_name: str = Field(..., min_length=1)
    last_name: str = Field(..., min_length=1)
    address: str = Field(..., min_length=1)
    city: str = Field(..., min_length=1)
    zip_code: str = Field(..., min_length=1)
    country: str = Field(..., min_length=1)
    phone: Optional[str] = None

    @field_validator('first_name', 'last_name', 'address', 'city', 'zip_code', 'country', 'phone')
    def sanitize_fields(cls, v):
        return sanitize_input(v)

class OrderCreate(BaseModel):
    shipping_address: Address
    billing_address: Optional[Address] = None
    payment_intent_id: Optional[str] = None
    notes: Optional[str] = None
    offer_code: Optional[str] = None

    @field_validator('notes', 'payment_intent_id')
    def sanitize_fields(cls, v):
        return sanitize_input(v)

    @field_validator('offer_code')
    def normalize_offer_code(cls, v):
        if v is None:
            return v
        return normalize_code(v) or None

class OrderUpdate(BaseModel):
    payment_intent_id: Optional[str] = None

    @field_validator('payment_intent_id')
    def sanitize_fields(cls, v):
        return sanitize_input(v)

class OrderStatusUpdate(BaseModel):
    status: Optional[OrderStatus] = None
    payment_status: Optional[PaymentStatus] = None

class OrderItemResponse(BaseModel):
    product_id: str
    variant_id: Optional[str] = None
    product_name: str
    variant_name: Optional[str] = None
    quantity: int
    price: Decimal

class AppliedOfferResponse(BaseModel):
    id: str
    code: str
    name: str
    type: OfferType
    value: Decimal

class OrderResponse(BaseModel):
    id: str
    order_number: str
    user_id: str
    items: List[OrderItemResponse]
    subtotal: Decimal
    discount: Decimal = Decimal("0")
    tax: Decimal
    shipping: Decimal
    total: Decimal
    shipping_address: Address
    billing_address: Address
    payment_intent_id: Optional[str] = None
    notes: Optional[str] = None
    offer: Optional[AppliedOfferResponse] = None
    status: OrderStatus
    payment_status: PaymentStatus
    created_at: datetime
    updated_at: Optional[datetime] = None


# --- Offers ---

class OfferCreate(BaseModel):
    name: str = Field(..., min_length=1)
    code: str
    type: OfferType
    value: Decimal = Field(..., gt=0)
    min_purchase: Optional[Decimal] = Field(None, ge=0)
    usage_limit: Optional[int] = Field(None, ge=1)
    usage_count: int = Field(0, ge=0)
    start_date: datetime
    end_date: datetime
    is_active: bool = True

    @field_validator('name')
    def sanitize_name(cls, v):
        return sanitize_input(v)

    @field_validator('code')
    def normalize_offer_code(cls, v):
        return normalize_code(v)

    @model_validator(mode='after')
    def check_window(self):
        if self.end_date < self.start_date:
            raise ValueError('end_date must be after start_date')
        if self.type == OfferType.PERCENTAGE and self.value > 100:
            raise ValueError('Percentage offers cannot exceed 100')
        return self

class OfferUpdate(BaseModel):
    name: Optional[str] = None
    code: Optional[str] = None
    type: Optional[OfferType] = None
    value: Optional[Decimal] = Field(None, gt=0)
    min_purchase: Optional[Decimal] = Field(None, ge=0)
    usage_limit: Optional[int] = Field(None, ge=1)
    usage_count: Optional[int] = Field(None, ge=0)
    start_date: Optional[datetime] = None
    end_date: Optional[datetime] = None
    is_active: Optional[bool] = None

    @field_validator('name')
    def sanitize_name(cls, v):
        return sanitize_input(v)

    @field_validator('code')
    def normalize_offer_code(cls, v):
        if v is None:
            return v
        return normalize_code(v)

class OfferResponse(BaseModel):
    id: str
    name: str
    code: str
    type: OfferType
    value: Decimal
    min_purchase: Optional[Decimal] = None
    usage_limit: Optional[int] = None
    usage_count: int
    start_date: datetime
    end_date: datetime
    is_active: bool
    created_at: Optional[datetime] = None

class OfferListResponse(BaseModel):
    offers: List[OfferResponse]
    total: int
    page: int
    limit: int
    total_pages: int

class OfferValidateRequest(BaseModel):
    code: str
    subtotal: Decimal = Field(..., ge=0)

class OfferSummary(BaseModel):
    id: str
    name: str
    code: str
    type: OfferType
    value: Decimal

class OfferValidationResult(BaseModel):
    valid: bool
    discount: Decimal = Decimal("0")
    offer: Optional[OfferSummary] = None
    message: Optional[str] = None


# --- Wishlist ---

class WishlistItemResponse(BaseModel):
    id: str
    product_id: str
    created_at: datetime
    product: Optional[ProductResponse] = None


# --- Reviews ---

class ReviewCreate(BaseModel):
    rating: int = Field(..., ge=1, le=5)
    title: Optional[str] = None
    content: str = Field(..., min_length=1)
    author_name: Optional[str] = None

    @field_validator('title', 'content', 'author_name')
    def sanitize_fields(cls, v):
        return sanitize_input(v)

class ReviewUpdate(BaseModel):
    rating: Optional[int] = Field(None, ge=1, le=5)
    title: Optional[str] = None
    content: Optional[str] = Field(None, min_length=1)

    @field_validator('title', 'content')
    def sanitize_fields(cls, v):
        return sanitize_input(v)

class ReviewModerate(BaseModel):
    is_approved: bool

class ReviewSettings(BaseModel):
    auto_approve_reviews: bool = False

class ReviewResponse(BaseModel):
    id: str
    product_id: str
    user_id: Optional[str] = None
    author_name: str
    rating: int
    title: Optional[str] = None
    content: str
    is_approved: bool
    created_at: datetime
    updated_at: Optional[datetime] = None

class ReviewListResponse(BaseModel):
    reviews: List[ReviewResponse]
    total: int
    page: int
    limit: int
    total_pages: int


# --- Stats ---

class StatsOverview(BaseModel):
    total_users: int
    total_products: int
    total_orders: int
    total_revenue: Decimal

class RecentOrder(BaseModel):
    id: str
    order_number: str
    user_id: str
    total: Decimal
    status: OrderStatus
    payment_status: PaymentStatus
    created_at: datetime

class LowStockProduct(BaseModel):
    id: str
    name: str
    stock: int

class MonthlyRevenue(BaseModel):
    month: str
    revenue: Decimal

class DashboardStats(BaseModel):
    overview: StatsOverview
    recent_orders: List[RecentOrder]
    low_stock_products: List[LowStockProduct]
    sales_by_month: List[MonthlyRevenue]


# --- Banners ---

class BannerCreate(BaseModel):
    title: str = Field(..., min_length=1)
    description: Optional[str] = None
    image: str = Field(..., min_length=1)
    link: Optional[str] = None
    is_active: bool = True
    order: int = Field(0, ge=0)
    start_date: Optional[datetime] = None
    end_date: Optional[datetime] = None

    @field_validator('title', 'description')
    def sanitize_fields(cls, v):
        return sanitize_input(v)

    @model_validator(mode='after')
    def check_window(self):
        if self.start_date and self.end_date and self.end_date < self.start_date:
            raise ValueError('end_date must be after start_date')
        return self

class BannerUpdate(BaseModel):
    title: Optional[str] = Field(None, min_length=1)
    description: Optional[str] = None
    image: Optional[str] = Field(None, min_length=1)
    link: Optional[str] = None
    is_active: Optional[bool] = None
    order: Optional[int] = Field(None, ge=0)
    start_date: Optional[datetime] = None
    end_date: Optional[datetime] = None

    @field_validator('title', 'description')
    def sanitize_fields(cls, v):
        return sanitize_input(v)

class BannerResponse(BaseModel):
    id: str
    title: str
    description: Optional[str] = None
    image: str
    link: Optional[str] = None
    is_active: bool
    order: int = 0
    start_date: Optional[datetime] = None
    end_date: Optional[datetime] = None
    created_at: datetime
    updated_at: Optional[datetime] = None
