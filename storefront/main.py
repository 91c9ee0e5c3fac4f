from fastapi import FastAPI, HTTPException, Request, status
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException
from datetime import datetime
import httpx

from storefront.shared.utils import get_db_client, settings, ErrorResponse, HealthResponse
from storefront.shared.logging_config import setup_logging, RequestLoggingMiddleware
from storefront.shared.security_config import setup_rate_limiting, SecurityHeadersMiddleware
from storefront.routers import brands, cart, categories, coupons, orders, products, reviews

# Setup Logging
logger = setup_logging(settings.SERVICE_NAME, settings.LOG_LEVEL)

app = FastAPI(title="Storefront Service")

# Security Setup
setup_rate_limiting(app)
app.add_middleware(SecurityHeadersMiddleware)

# Middleware
app.add_middleware(RequestLoggingMiddleware, service_name=settings.SERVICE_NAME)

# CORS Configuration
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(products.router)
app.include_router(categories.router)
app.include_router(brands.router)
app.include_router(coupons.router)
app.include_router(reviews.router)
app.include_router(cart.router)
app.include_router(orders.router)

@app.on_event("startup")
async def startup_db_client():
    app.mongodb_client = get_db_client()
    app.mongodb = app.mongodb_client[settings.MONGO_DB_NAME]
    # Indexes
    await app.mongodb.carts.create_index("user_id", unique=True)
    await app.mongodb.products.create_index("slug", unique=True)
    await app.mongodb.categories.create_index("slug", unique=True)
    await app.mongodb.subcategories.create_index("slug", unique=True)
    await app.mongodb.brands.create_index("slug", unique=True)
    await app.mongodb.coupons.create_index("code", unique=True)
    await app.mongodb.reviews.create_index([("product_id", 1), ("user_id", 1)], unique=True)
    await app.mongodb.orders.create_index("user_id")

@app.on_event("shutdown")
async def shutdown_db_client():
    app.mongodb_client.close()

# --- Error responses ---
def error_response(status_code: int, message: str, details=None) -> JSONResponse:
    body = ErrorResponse(message=message, status_code=status_code, details=details)
    return JSONResponse(
        status_code=status_code,
        content=jsonable_encoder(body.dict(by_alias=True, exclude_none=True)),
    )

@app.exception_handler(StarletteHTTPException)
async def http_exception_handler(request: Request, exc: StarletteHTTPException):
    response = error_response(exc.status_code, str(exc.detail))
    if exc.headers:
        response.headers.update(exc.headers)
    return response

@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    details = [
        {"field": ".".join(str(p) for p in err["loc"]), "message": err["msg"]}
        for err in exc.errors()
    ]
    return error_response(status.HTTP_400_BAD_REQUEST, "Validation failed", details)

@app.exception_handler(Exception)
async def unhandled_exception_handler(request: Request, exc: Exception):
    logger.error("Unhandled error", exc_info=exc, extra={"request_id": getattr(request.state, "request_id", None)})
    return error_response(status.HTTP_500_INTERNAL_SERVER_ERROR, "Internal server error")

@app.get("/health", response_model=HealthResponse)
async def health_check():
    db_status = "unhealthy"
    auth_status = "unknown"

    # Check DB
    try:
        await app.mongodb_client.admin.command('ping')
        db_status = "connected"
    except Exception:
        db_status = "disconnected"

    # Check Auth Service
    async with httpx.AsyncClient() as client:
        try:
            resp = await client.get(f"{settings.AUTH_SERVICE_URL}/health", timeout=2.0)
            auth_status = "healthy" if resp.status_code == 200 else "unhealthy"
        except httpx.HTTPError:
            auth_status = "unreachable"

    overall_status = "healthy" if db_status == "connected" and auth_status == "healthy" else "unhealthy"

    if overall_status == "unhealthy":
        logger.error(f"Health Check Failed: DB={db_status}, Auth={auth_status}")
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail=f"Service Unhealthy: DB={db_status}, Auth={auth_status}"
        )

    return HealthResponse(
        service=settings.SERVICE_NAME,
        status=overall_status,
        timestamp=datetime.utcnow(),
        version="1.0.0",
        database=db_status,
        dependencies={
            "auth-service": auth_status
        }
    )
