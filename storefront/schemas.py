from pydantic import BaseModel, Field, field_validator, model_validator
from typing import Optional, List
from datetime import datetime, timezone
from storefront.pricing import DiscountType
from storefront.shared.security_config import sanitize_input, normalize_code

# --- Categories ---
class CategoryCreate(BaseModel):
    name: str = Field(..., min_length=2, max_length=100)

    @field_validator('name')
    def sanitize_fields(cls, v):
        return sanitize_input(v)

class CategoryUpdate(CategoryCreate):
    pass

class SubCategoryCreate(CategoryCreate):
    category_id: str

class SubCategoryUpdate(CategoryCreate):
    # Omitted keeps the current parent
    category_id: Optional[str] = None

class BrandCreate(CategoryCreate):
    pass

class BrandUpdate(CategoryCreate):
    pass

class CategoryResponse(BaseModel):
    id: str
    name: str
    slug: str
    created_at: datetime
    updated_at: Optional[datetime] = None

class SubCategoryResponse(CategoryResponse):
    category_id: str

class BrandResponse(CategoryResponse):
    pass

# --- Products ---
class ProductCreate(BaseModel):
    title: str = Field(..., min_length=2, max_length=200)
    description: str = Field(..., min_length=1)
    price: float = Field(..., gt=0)
    price_after_discount: Optional[float] = Field(None, gt=0)
    quantity: int = Field(0, ge=0)
    colors: List[str] = []
    category_id: str
    subcategory_id: Optional[str] = None
    brand_id: Optional[str] = None

    @field_validator('title', 'description')
    def sanitize_fields(cls, v):
        return sanitize_input(v)

    @field_validator('colors', mode='before')
    def split_colors(cls, v):
        # Accepts ["red", "blue"] as well as "red,blue"
        if isinstance(v, str):
            return [c.strip() for c in v.split(",") if c.strip()]
        return v

    @model_validator(mode='after')
    def discount_below_price(self):
        if self.price_after_discount is not None and self.price_after_discount > self.price:
            raise ValueError("price_after_discount must not exceed price")
        return self

class ProductUpdate(BaseModel):
    title: Optional[str] = Field(None, min_length=2, max_length=200)
    description: Optional[str] = None
    price: Optional[float] = Field(None, gt=0)
    price_after_discount: Optional[float] = Field(None, gt=0)
    quantity: Optional[int] = Field(None, ge=0)
    colors: Optional[List[str]] = None
    category_id: Optional[str] = None
    subcategory_id: Optional[str] = None
    brand_id: Optional[str] = None

    @field_validator('title', 'description')
    def sanitize_fields(cls, v):
        return sanitize_input(v)

    @field_validator('colors', mode='before')
    def split_colors(cls, v):
        if isinstance(v, str):
            return [c.strip() for c in v.split(",") if c.strip()]
        return v

class ProductResponse(BaseModel):
    id: str
    title: str
    slug: str
    description: str
    price: float
    price_after_discount: Optional[float] = None
    quantity: int
    sold: int
    colors: List[str]
    category_id: str
    subcategory_id: Optional[str] = None
    brand_id: Optional[str] = None
    ratings_average: Optional[float] = None
    ratings_quantity: int = 0
    created_at: datetime
    updated_at: Optional[datetime] = None

# --- Coupons ---
DISCOUNT_TYPE_PATTERN = "^(" + "|".join(DiscountType.ALL) + ")$"

def to_naive_utc(value: Optional[datetime]) -> Optional[datetime]:
    # Stored datetimes are naive UTC
    if value is not None and value.tzinfo is not None:
        return value.astimezone(timezone.utc).replace(tzinfo=None)
    return value

class CouponCreate(BaseModel):
    code: str = Field(..., min_length=1, max_length=50)
    discount_type: str = Field(DiscountType.PERCENTAGE, pattern=DISCOUNT_TYPE_PATTERN)
    discount: float = Field(..., gt=0)
    expires: datetime

    @field_validator('code')
    def normalize(cls, v):
        return normalize_code(v)

    @field_validator('expires')
    def expires_as_utc(cls, v):
        return to_naive_utc(v)

    @model_validator(mode='after')
    def percentage_range(self):
        if self.discount_type == DiscountType.PERCENTAGE and self.discount > 100:
            raise ValueError("A percentage discount cannot exceed 100")
        return self

class CouponUpdate(BaseModel):
    code: Optional[str] = Field(None, min_length=1, max_length=50)
    discount_type: Optional[str] = Field(None, pattern=DISCOUNT_TYPE_PATTERN)
    discount: Optional[float] = Field(None, gt=0)
    expires: Optional[datetime] = None

    @field_validator('code')
    def normalize(cls, v):
        return normalize_code(v) if v is not None else v

    @field_validator('expires')
    def expires_as_utc(cls, v):
        return to_naive_utc(v)

class CouponResponse(BaseModel):
    id: str
    code: str
    discount_type: str
    discount: float
    expires: datetime
    created_at: datetime
    updated_at: Optional[datetime] = None

# --- Reviews ---
class ReviewCreate(BaseModel):
    product_id: str
    text: str = Field(..., min_length=1, max_length=2000)
    rating: int = Field(..., ge=1, le=5)

    @field_validator('text')
    def sanitize_fields(cls, v):
        return sanitize_input(v)

class ReviewUpdate(BaseModel):
    text: Optional[str] = Field(None, min_length=1, max_length=2000)
    rating: Optional[int] = Field(None, ge=1, le=5)

    @field_validator('text')
    def sanitize_fields(cls, v):
        return sanitize_input(v)

class ReviewResponse(BaseModel):
    id: str
    product_id: str
    user_id: str
    text: str
    rating: int
    created_at: datetime
    updated_at: Optional[datetime] = None

# --- Cart ---
class CartItemAdd(BaseModel):
    product_id: str
    quantity: int = Field(1, ge=1)
    color: Optional[str] = None

class CartItemUpdate(BaseModel):
    # 0 or less removes the line
    quantity: int

class ApplyCoupon(BaseModel):
    code: str = Field(..., min_length=1, max_length=50)

class CartItemResponse(BaseModel):
    id: str
    product_id: str
    color: Optional[str] = None
    quantity: int
    price: float
    price_after_discount: Optional[float] = None
    total_product_discount: float = 0

class CartResponse(BaseModel):
    id: str
    user_id: str
    cart_items: List[CartItemResponse]
    total_price: float
    total_price_after_discount: Optional[float] = None
    coupon_code: Optional[str] = None
    discount_type: Optional[str] = None
    discount: Optional[float] = None
    created_at: datetime
    updated_at: datetime

# --- Orders ---
class ShippingAddress(BaseModel):
    street: str = Field(..., min_length=1)
    city: str = Field(..., min_length=1)
    phone: str = Field(..., pattern=r"^\+?[0-9 \-]{6,20}$")

    @field_validator('phone', mode='before')
    def phone_as_text(cls, v):
        return str(v) if isinstance(v, int) else v

    @field_validator('street', 'city')
    def sanitize_fields(cls, v):
        return sanitize_input(v)

class ShippingAddressResponse(BaseModel):
    street: str
    city: str
    phone: str

class OrderCreate(BaseModel):
    shipping_address: ShippingAddress

class OrderStatusUpdate(BaseModel):
    is_paid: Optional[bool] = None
    is_delivered: Optional[bool] = None

class OrderItemResponse(BaseModel):
    product_id: str
    color: Optional[str] = None
    quantity: int
    price: float
    total_product_discount: float = 0

class OrderResponse(BaseModel):
    id: str
    user_id: str
    cart_items: List[OrderItemResponse]
    shipping_address: ShippingAddressResponse
    payment_method: str
    total_order_price: float
    is_paid: bool
    paid_at: Optional[datetime] = None
    is_delivered: bool
    delivered_at: Optional[datetime] = None
    created_at: datetime
    updated_at: Optional[datetime] = None
