from datetime import datetime
from typing import Optional, List
from pydantic import BaseModel, Field
from bson import ObjectId

# Field maps: the fields a list endpoint may filter, sort or project on, and
# the type a query-string value is coerced to before it reaches the driver.
TIMESTAMP_FIELDS = {"created_at": datetime, "updated_at": datetime}

CATEGORY_FIELDS = {"name": str, "slug": str, **TIMESTAMP_FIELDS}

SUBCATEGORY_FIELDS = {"name": str, "slug": str, "category_id": str, **TIMESTAMP_FIELDS}

BRAND_FIELDS = {"name": str, "slug": str, **TIMESTAMP_FIELDS}

PRODUCT_FIELDS = {
    "title": str,
    "slug": str,
    "description": str,
    "price": float,
    "price_after_discount": float,
    "quantity": int,
    "sold": int,
    "colors": str,
    "category_id": str,
    "subcategory_id": str,
    "brand_id": str,
    "ratings_average": float,
    "ratings_quantity": int,
    **TIMESTAMP_FIELDS,
}

COUPON_FIELDS = {"code": str, "discount_type": str, "discount": float, "expires": datetime, **TIMESTAMP_FIELDS}

REVIEW_FIELDS = {"product_id": str, "user_id": str, "rating": int, "text": str, **TIMESTAMP_FIELDS}

ORDER_FIELDS = {
    "user_id": str,
    "payment_method": str,
    "total_order_price": float,
    "is_paid": bool,
    "is_delivered": bool,
    "paid_at": datetime,
    "delivered_at": datetime,
    **TIMESTAMP_FIELDS,
}


class OrderStatus:
    PENDING = "pending"
    PLACED = "placed"


class CategoryDB(BaseModel):
    name: str
    slug: str
    created_at: datetime = Field(default_factory=datetime.utcnow)
    updated_at: datetime = Field(default_factory=datetime.utcnow)

class SubCategoryDB(CategoryDB):
    category_id: str

class BrandDB(CategoryDB):
    pass

class ProductDB(BaseModel):
    title: str
    slug: str
    description: str
    price: float
    price_after_discount: Optional[float] = None
    quantity: int
    sold: int = 0
    colors: List[str] = []
    category_id: str
    subcategory_id: Optional[str] = None
    brand_id: Optional[str] = None
    ratings_average: Optional[float] = None
    ratings_quantity: int = 0
    created_at: datetime = Field(default_factory=datetime.utcnow)
    updated_at: datetime = Field(default_factory=datetime.utcnow)

class CouponDB(BaseModel):
    code: str
    discount_type: str
    discount: float
    expires: datetime
    created_at: datetime = Field(default_factory=datetime.utcnow)
    updated_at: datetime = Field(default_factory=datetime.utcnow)

class ReviewDB(BaseModel):
    product_id: str
    user_id: str
    text: str
    rating: int
    created_at: datetime = Field(default_factory=datetime.utcnow)
    updated_at: datetime = Field(default_factory=datetime.utcnow)

class CartItemDB(BaseModel):
    id: str = Field(default_factory=lambda: str(ObjectId()), alias="_id")
    product_id: str
    color: Optional[str] = None
    quantity: int = Field(..., ge=1)
    price: float  # Snapshot
    price_after_discount: Optional[float] = None
    total_product_discount: float = 0

    class Config:
        populate_by_name = True

class CartDB(BaseModel):
    id: Optional[str] = Field(None, alias="_id")
    user_id: str
    cart_items: List[CartItemDB] = []
    total_price: float = 0
    total_price_after_discount: Optional[float] = None
    coupon_code: Optional[str] = None
    discount_type: Optional[str] = None
    discount: Optional[float] = None
    checkout_id: Optional[str] = None
    version: int = 0
    created_at: datetime = Field(default_factory=datetime.utcnow)
    updated_at: datetime = Field(default_factory=datetime.utcnow)

    class Config:
        populate_by_name = True

class ShippingAddressDB(BaseModel):
    street: str
    city: str
    phone: str

class OrderItemDB(BaseModel):
    product_id: str
    color: Optional[str] = None
    quantity: int
    price: float
    total_product_discount: float = 0

class OrderDB(BaseModel):
    user_id: str
    cart_items: List[OrderItemDB]
    shipping_address: ShippingAddressDB
    payment_method: str = "cash"
    total_order_price: float
    is_paid: bool = False
    paid_at: Optional[datetime] = None
    is_delivered: bool = False
    delivered_at: Optional[datetime] = None
    status: str = OrderStatus.PENDING
    created_at: datetime = Field(default_factory=datetime.utcnow)
    updated_at: datetime = Field(default_factory=datetime.utcnow)
