from datetime import datetime
from typing import Optional, Generic, TypeVar, Any, List
from fastapi import HTTPException, status
from motor.motor_asyncio import AsyncIOMotorClient
from pydantic import BaseModel, Field
from pydantic_settings import BaseSettings
from bson import ObjectId
from bson.errors import InvalidId
import re

# --- Configuration ---
class Settings(BaseSettings):
    SERVICE_NAME: str = "storefront-service"
    MONGO_URL: str = "mongodb://mongodb:27017"
    MONGO_DB_NAME: str = "storefront_db"
    AUTH_SERVICE_URL: str = "http://auth-service:8001"
    AUTH_TIMEOUT_SECONDS: float = 5.0
    DEFAULT_PAGE_LIMIT: int = 10
    MAX_PAGE_LIMIT: int = 100
    RATE_LIMIT: str = "60/minute"
    RATE_LIMIT_ENABLED: bool = True
    CART_UPDATE_RETRIES: int = 3
    LOG_LEVEL: str = "INFO"

    class Config:
        env_file = ".env"

settings = Settings()

# --- Database ---
def get_db_client(url: str = settings.MONGO_URL) -> AsyncIOMotorClient:
    return AsyncIOMotorClient(url)

def str_to_oid(id: str, resource: str = "Resource") -> ObjectId:
    """Parse a path/body id; malformed ids are reported as missing resources."""
    try:
        return ObjectId(id)
    except (InvalidId, TypeError):
        raise NotFoundException(f"{resource} not found")

def serialize_doc(value: Any) -> Any:
    """Make a raw Mongo document JSON friendly: `_id` -> `id`, ObjectId -> str."""
    if isinstance(value, ObjectId):
        return str(value)
    if isinstance(value, list):
        return [serialize_doc(v) for v in value]
    if isinstance(value, dict):
        doc = {}
        for k, v in value.items():
            doc["id" if k == "_id" else k] = serialize_doc(v)
        return doc
    return value

# --- Response Models ---
T = TypeVar("T")

class SuccessResponse(BaseModel, Generic[T]):
    success: bool = True
    data: Optional[T] = None
    message: Optional[str] = None

class PaginationMetadata(BaseModel):
    page: int
    limit: int
    total_pages: int
    total_documents: int

class PaginatedResponse(BaseModel, Generic[T]):
    success: bool = True
    data: List[T] = []
    pagination: PaginationMetadata
    message: Optional[str] = None

class ErrorResponse(BaseModel):
    success: bool = False
    message: str
    status_code: int = Field(..., alias="statusCode")
    details: Optional[Any] = None

    class Config:
        populate_by_name = True

class HealthResponse(BaseModel):
    service: str
    status: str
    timestamp: datetime
    version: str
    database: Optional[str] = None
    dependencies: Optional[dict] = None


# --- Exceptions ---
class AppException(HTTPException):
    def __init__(
        self,
        status_code: int = status.HTTP_400_BAD_REQUEST,
        detail: str = "An error occurred",
        headers: Optional[dict] = None
    ):
        super().__init__(status_code=status_code, detail=detail, headers=headers)

class ValidationException(AppException):
    def __init__(self, detail: str = "Invalid request"):
        super().__init__(status_code=status.HTTP_400_BAD_REQUEST, detail=detail)

class NotFoundException(AppException):
    def __init__(self, detail: str = "Resource not found"):
        super().__init__(status_code=status.HTTP_404_NOT_FOUND, detail=detail)

class UnauthorizedException(AppException):
    def __init__(self, detail: str = "Unauthorized"):
         super().__init__(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail=detail,
            headers={"WWW-Authenticate": "Bearer"}
        )

class ForbiddenException(AppException):
    def __init__(self, detail: str = "You are not allowed to access this resource"):
        super().__init__(status_code=status.HTTP_403_FORBIDDEN, detail=detail)

class ConflictException(AppException):
    def __init__(self, detail: str = "Conflict"):
        super().__init__(status_code=status.HTTP_409_CONFLICT, detail=detail)

class InsufficientStockException(ConflictException):
    def __init__(self, product_id: str, requested: Optional[int] = None, available: Optional[int] = None):
        self.product_id = product_id
        detail = f"Insufficient stock for product {product_id}"
        if requested is not None and available is not None:
            detail += f" (requested {requested}, available {available})"
        super().__init__(detail)

class CouponExpiredException(ConflictException):
    def __init__(self, code: str):
        self.code = code
        super().__init__(f"Coupon {code} has expired")

class InconsistentStateException(ConflictException):
    """Raised when a multi-document operation could not be fully rolled back."""
    def __init__(self, detail: str = "Operation left records in an inconsistent state"):
        super().__init__(detail)

def slugify(text: str) -> str:
    slug = re.sub(r"[^a-z0-9]+", "-", text.lower())
    return slug.strip("-")
