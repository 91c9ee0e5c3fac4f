"""Tests for per-user carts."""

from datetime import datetime, timedelta

import pytest
from bson import ObjectId

from storefront.cart_store import CartStore
from storefront.pricing import PricingEngine
from storefront.shared.utils import (
    ConflictException,
    CouponExpiredException,
    InsufficientStockException,
    NotFoundException,
    ValidationException,
)

from conftest import insert_coupon, insert_product

USER = "user-1"


def assert_totals_consistent(cart):
    expected = PricingEngine().totals(dict(cart, cart_items=[dict(i) for i in cart["cart_items"]]))
    assert cart["total_price"] == expected["total_price"]
    assert cart["total_price_after_discount"] == expected["total_price_after_discount"]


@pytest.fixture
def store(db):
    return CartStore(db)


@pytest.mark.asyncio
async def test_add_creates_cart_and_captures_price(store, db):
    product = await insert_product(db, price=100.0, price_after_discount=90.0)

    cart = await store.add_item(USER, str(product["_id"]), 2, "black")

    assert cart["user_id"] == USER
    assert len(cart["cart_items"]) == 1
    line = cart["cart_items"][0]
    assert (line["price"], line["price_after_discount"], line["quantity"]) == (100.0, 90.0, 2)
    assert line["total_product_discount"] == 20.0
    assert cart["total_price"] == 200.0
    assert cart["total_price_after_discount"] == 180.0

    stored = await db.carts.find_one({"user_id": USER})
    assert stored["version"] == 1
    assert stored["total_price"] == 200.0


@pytest.mark.asyncio
async def test_same_product_and_color_merges_lines(store, db):
    product = await insert_product(db)
    pid = str(product["_id"])

    await store.add_item(USER, pid, 1, "black")
    await store.add_item(USER, pid, 2, "black")
    cart = await store.add_item(USER, pid, 1, "white")

    quantities = {i["color"]: i["quantity"] for i in cart["cart_items"]}
    assert quantities == {"black": 3, "white": 1}
    assert cart["total_price"] == 400.0
    assert cart["version"] == 3


@pytest.mark.asyncio
async def test_price_change_after_add_does_not_reprice_cart(store, db):
    product = await insert_product(db, price=100.0)
    await store.add_item(USER, str(product["_id"]), 1, "black")
    await db.products.update_one({"_id": product["_id"]}, {"$set": {"price": 500.0}})

    cart = await store.add_item(USER, str(product["_id"]), 1, "white")

    prices = sorted(i["price"] for i in cart["cart_items"])
    assert prices == [100.0, 500.0]
    assert cart["total_price"] == 600.0


@pytest.mark.asyncio
async def test_add_beyond_stock(store, db):
    product = await insert_product(db, quantity=3)
    pid = str(product["_id"])
    await store.add_item(USER, pid, 2, "black")

    with pytest.raises(InsufficientStockException):
        await store.add_item(USER, pid, 2, "white")

    cart = await store.get_cart(USER)
    assert sum(i["quantity"] for i in cart["cart_items"]) == 2


@pytest.mark.asyncio
async def test_add_unknown_or_malformed_product(store):
    with pytest.raises(NotFoundException):
        await store.add_item(USER, str(ObjectId()), 1)
    with pytest.raises(NotFoundException):
        await store.add_item(USER, "not-an-id", 1)


@pytest.mark.asyncio
async def test_add_rejects_bad_color_and_quantity(store, db):
    product = await insert_product(db)
    with pytest.raises(ValidationException):
        await store.add_item(USER, str(product["_id"]), 1, "purple")
    with pytest.raises(ValidationException):
        await store.add_item(USER, str(product["_id"]), 0, "black")


@pytest.mark.asyncio
async def test_update_quantity(store, db):
    product = await insert_product(db, quantity=5)
    cart = await store.add_item(USER, str(product["_id"]), 1, "black")
    item_id = cart["cart_items"][0]["_id"]

    cart = await store.update_quantity(USER, item_id, 4)
    assert cart["cart_items"][0]["quantity"] == 4
    assert cart["total_price"] == 400.0

    with pytest.raises(InsufficientStockException):
        await store.update_quantity(USER, item_id, 6)

    cart = await store.update_quantity(USER, item_id, 0)
    assert cart["cart_items"] == []
    assert cart["total_price"] == 0.0


@pytest.mark.asyncio
async def test_missing_item_and_missing_cart(store, db):
    with pytest.raises(NotFoundException):
        await store.get_cart(USER)
    with pytest.raises(NotFoundException):
        await store.update_quantity(USER, "nope", 2)

    product = await insert_product(db)
    await store.add_item(USER, str(product["_id"]), 1, "black")
    with pytest.raises(NotFoundException):
        await store.remove_item(USER, "nope")


@pytest.mark.asyncio
async def test_remove_last_item_keeps_empty_cart(store, db):
    product = await insert_product(db)
    cart = await store.add_item(USER, str(product["_id"]), 1, "black")

    cart = await store.remove_item(USER, cart["cart_items"][0]["_id"])

    assert cart["cart_items"] == []
    assert (await store.get_cart(USER))["total_price"] == 0.0


@pytest.mark.asyncio
async def test_totals_stay_consistent_across_mutations(store, db):
    await insert_coupon(db, code="SAVE10", discount=10)
    lamp = await insert_product(db, price=19.99, price_after_discount=17.5)
    chair = await insert_product(db, price=120.0, colors=[])

    cart = await store.add_item(USER, str(lamp["_id"]), 2, "black")
    assert_totals_consistent(cart)
    cart = await store.add_item(USER, str(chair["_id"]), 1)
    assert_totals_consistent(cart)
    cart = await store.apply_coupon(USER, "save10")
    assert_totals_consistent(cart)
    lamp_line = next(i for i in cart["cart_items"] if i["product_id"] == str(lamp["_id"]))
    cart = await store.update_quantity(USER, lamp_line["_id"], 3)
    assert_totals_consistent(cart)
    assert cart["coupon_code"] == "SAVE10"
    cart = await store.remove_item(USER, lamp_line["_id"])
    assert_totals_consistent(cart)
    assert cart["total_price_after_discount"] == 108.0

    stored = await store.get_cart(USER)
    assert_totals_consistent(stored)


@pytest.mark.asyncio
async def test_expired_coupon_keeps_cart_unchanged(store, db):
    await insert_coupon(db, code="OLD", expires=datetime.utcnow() - timedelta(minutes=1))
    product = await insert_product(db)
    before = await store.add_item(USER, str(product["_id"]), 1, "black")

    with pytest.raises(CouponExpiredException):
        await store.apply_coupon(USER, "OLD")

    after = await store.get_cart(USER)
    assert after["coupon_code"] is None
    assert after["total_price_after_discount"] is None
    assert after["version"] == before["version"]


@pytest.mark.asyncio
async def test_claimed_cart_rejects_mutations(store, db):
    product = await insert_product(db)
    cart = await store.add_item(USER, str(product["_id"]), 1, "black")
    await db.carts.update_one({"_id": cart["_id"]}, {"$set": {"checkout_id": "abc"}})

    with pytest.raises(ConflictException):
        await store.add_item(USER, str(product["_id"]), 1, "black")
    with pytest.raises(ConflictException):
        await store.clear_cart(USER)


@pytest.mark.asyncio
async def test_lost_race_is_retried(store, db):
    product = await insert_product(db)
    await store.add_item(USER, str(product["_id"]), 1, "black")
    carts = store.carts
    calls = []

    class RacingCarts:
        """Bumps the version behind the store's back on the first read."""

        def __getattr__(self, name):
            return getattr(carts, name)

        async def find_one(self, query):
            cart = await carts.find_one(query)
            if not calls:
                await carts.update_one({"_id": cart["_id"]}, {"$inc": {"version": 1}})
            calls.append(query)
            return cart

    store.carts = RacingCarts()
    cart = await store.add_item(USER, str(product["_id"]), 1, "black")

    assert len(calls) == 2
    assert cart["cart_items"][0]["quantity"] == 2
    assert (await db.carts.find_one({"user_id": USER}))["version"] == 3


@pytest.mark.asyncio
async def test_clear_cart(store, db):
    with pytest.raises(NotFoundException):
        await store.clear_cart(USER)

    product = await insert_product(db)
    await store.add_item(USER, str(product["_id"]), 1, "black")
    await store.clear_cart(USER)

    assert await db.carts.find_one({"user_id": USER}) is None
