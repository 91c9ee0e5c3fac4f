"""Pytest fixtures for storefront tests."""

from datetime import datetime

import pytest
from bson import ObjectId
from fastapi.testclient import TestClient
from mongomock_motor import AsyncMongoMockClient

from storefront import main
from storefront.dependencies import get_current_user
from storefront.shared.security_config import limiter
from storefront.shared.utils import settings

CUSTOMER = {"sub": "user-1", "role": "user"}
OTHER_CUSTOMER = {"sub": "user-2", "role": "user"}
ADMIN = {"sub": "admin-1", "role": "admin"}


@pytest.fixture
def db():
    """A fresh in-memory database for the async core tests."""
    return AsyncMongoMockClient()["storefront_test"]


async def insert_product(db, **overrides):
    """Insert a product document and return it with its `_id`."""
    product = {
        "title": "Desk Lamp",
        "slug": f"desk-lamp-{ObjectId()}",
        "description": "A lamp",
        "price": 100.0,
        "price_after_discount": None,
        "quantity": 10,
        "sold": 0,
        "colors": ["black", "white"],
        "category_id": str(ObjectId()),
        "created_at": datetime.utcnow(),
        "updated_at": datetime.utcnow(),
    }
    product.update(overrides)
    result = await db.products.insert_one(product)
    product["_id"] = result.inserted_id
    return product


async def insert_coupon(db, code="SAVE10", discount=10.0, discount_type="percentage", expires=None):
    coupon = {
        "code": code,
        "discount_type": discount_type,
        "discount": discount,
        "expires": expires or datetime(2999, 1, 1),
        "created_at": datetime.utcnow(),
        "updated_at": datetime.utcnow(),
    }
    await db.coupons.insert_one(coupon)
    return coupon


class Caller:
    """The identity the stubbed auth dependency returns."""

    def __init__(self):
        self.user = CUSTOMER

    def use(self, user):
        self.user = user


@pytest.fixture
def caller():
    return Caller()


@pytest.fixture
def mongo_client(monkeypatch):
    client = AsyncMongoMockClient()
    monkeypatch.setattr(main, "get_db_client", lambda: client)
    return client


@pytest.fixture
def api_db(mongo_client):
    return mongo_client[settings.MONGO_DB_NAME]


@pytest.fixture
def client(mongo_client, caller, monkeypatch):
    """Test client with the auth service stubbed out and rate limiting off."""
    monkeypatch.setattr(limiter, "enabled", False)
    main.app.dependency_overrides[get_current_user] = lambda: caller.user
    with TestClient(main.app) as test_client:
        yield test_client
    main.app.dependency_overrides.clear()
