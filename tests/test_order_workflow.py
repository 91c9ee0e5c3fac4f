"""Tests for cash-order checkout and order updates."""

import asyncio

import pytest
from bson import ObjectId
from pymongo.errors import PyMongoError

from storefront.cart_store import CartStore
from storefront.models import OrderStatus
from storefront.order_workflow import CompensationLog, OrderWorkflow
from storefront.shared.utils import (
    ConflictException,
    InconsistentStateException,
    InsufficientStockException,
    NotFoundException,
    ValidationException,
)

from conftest import insert_coupon, insert_product

ADDRESS = {"street": "12 Nile St", "city": "Cairo", "phone": "0123456789"}


@pytest.fixture
def store(db):
    return CartStore(db)


@pytest.fixture
def workflow(db):
    return OrderWorkflow(db)


async def checkout(workflow, store, user_id):
    cart = await store.get_cart(user_id)
    return await workflow.create_cash_order(user_id, str(cart["_id"]), ADDRESS)


@pytest.mark.asyncio
async def test_single_unit_checkout(db, store, workflow):
    product = await insert_product(db, price=100.0, quantity=1)
    await store.add_item("u1", str(product["_id"]), 1, "black")

    order = await checkout(workflow, store, "u1")

    assert order["status"] == OrderStatus.PLACED
    assert order["total_order_price"] == 100.0
    assert order["payment_method"] == "cash"
    assert order["is_paid"] is False and order["is_delivered"] is False
    assert order["cart_items"][0]["product_id"] == str(product["_id"])

    stored = await db.products.find_one({"_id": product["_id"]})
    assert (stored["quantity"], stored["sold"]) == (0, 1)
    assert await db.carts.find_one({"user_id": "u1"}) is None
    assert await db.orders.count_documents({"status": OrderStatus.PLACED}) == 1


@pytest.mark.asyncio
async def test_order_total_uses_coupon_price(db, store, workflow):
    await insert_coupon(db, code="SAVE10", discount=10)
    lamp = await insert_product(db, price=100.0)
    mug = await insert_product(db, price=50.0)
    await store.add_item("u1", str(lamp["_id"]), 2, "black")
    await store.add_item("u1", str(mug["_id"]), 1, "white")
    await store.apply_coupon("u1", "SAVE10")

    order = await checkout(workflow, store, "u1")

    assert order["total_order_price"] == 225.0


@pytest.mark.asyncio
async def test_order_keeps_price_captured_in_cart(db, store, workflow):
    product = await insert_product(db, price=100.0)
    await store.add_item("u1", str(product["_id"]), 1, "black")
    await db.products.update_one({"_id": product["_id"]}, {"$set": {"price": 999.0}})

    order = await checkout(workflow, store, "u1")
    fetched = await workflow.get_order("u1", str(order["_id"]))

    assert fetched["total_order_price"] == 100.0
    assert fetched["cart_items"][0]["price"] == 100.0


@pytest.mark.asyncio
async def test_unknown_or_foreign_cart(db, store, workflow):
    product = await insert_product(db)
    cart = await store.add_item("u1", str(product["_id"]), 1, "black")

    with pytest.raises(NotFoundException):
        await workflow.create_cash_order("u1", str(ObjectId()), ADDRESS)
    with pytest.raises(NotFoundException):
        await workflow.create_cash_order("u2", str(cart["_id"]), ADDRESS)
    with pytest.raises(NotFoundException):
        await workflow.create_cash_order("u1", "garbage", ADDRESS)

    assert await db.orders.count_documents({}) == 0


@pytest.mark.asyncio
async def test_empty_cart_is_rejected(db, store, workflow):
    product = await insert_product(db)
    cart = await store.add_item("u1", str(product["_id"]), 1, "black")
    await store.remove_item("u1", cart["cart_items"][0]["_id"])

    with pytest.raises(ValidationException):
        await checkout(workflow, store, "u1")


@pytest.mark.asyncio
async def test_stock_shortfall_rolls_everything_back(db, store, workflow):
    lamp = await insert_product(db, quantity=5)
    mug = await insert_product(db, quantity=5)
    await store.add_item("u1", str(lamp["_id"]), 2, "black")
    await store.add_item("u1", str(mug["_id"]), 3, "black")
    await db.products.update_one({"_id": mug["_id"]}, {"$set": {"quantity": 1}})

    with pytest.raises(InsufficientStockException):
        await checkout(workflow, store, "u1")

    restored = await db.products.find_one({"_id": lamp["_id"]})
    assert (restored["quantity"], restored["sold"]) == (5, 0)
    assert (await db.products.find_one({"_id": mug["_id"]}))["quantity"] == 1
    assert await db.orders.count_documents({}) == 0

    cart = await db.carts.find_one({"user_id": "u1"})
    assert cart["checkout_id"] is None
    assert len(cart["cart_items"]) == 2


@pytest.mark.asyncio
async def test_concurrent_checkouts_for_last_unit(db, store, workflow):
    product = await insert_product(db, quantity=1)
    await store.add_item("u1", str(product["_id"]), 1, "black")
    await store.add_item("u2", str(product["_id"]), 1, "black")

    results = await asyncio.gather(
        checkout(workflow, store, "u1"),
        checkout(workflow, store, "u2"),
        return_exceptions=True,
    )

    orders = [r for r in results if isinstance(r, dict)]
    failures = [r for r in results if isinstance(r, Exception)]
    assert len(orders) == 1
    assert len(failures) == 1
    assert isinstance(failures[0], InsufficientStockException)

    stored = await db.products.find_one({"_id": product["_id"]})
    assert (stored["quantity"], stored["sold"]) == (0, 1)
    assert await db.orders.count_documents({}) == 1
    assert await db.carts.count_documents({}) == 1


@pytest.mark.asyncio
async def test_claimed_cart_cannot_be_checked_out_again(db, store, workflow):
    product = await insert_product(db)
    cart = await store.add_item("u1", str(product["_id"]), 1, "black")
    await db.carts.update_one({"_id": cart["_id"]}, {"$set": {"checkout_id": "other"}})

    with pytest.raises(ConflictException):
        await workflow.create_cash_order("u1", str(cart["_id"]), ADDRESS)

    assert (await db.products.find_one({"_id": product["_id"]}))["quantity"] == 10


@pytest.mark.asyncio
async def test_failed_compensation_is_reported(db, store, workflow):
    lamp = await insert_product(db, quantity=5)
    mug = await insert_product(db, quantity=5)
    await store.add_item("u1", str(lamp["_id"]), 1, "black")
    await store.add_item("u1", str(mug["_id"]), 1, "black")
    await db.products.update_one({"_id": mug["_id"]}, {"$set": {"quantity": 0}})
    products = workflow.products

    class BrokenBulkWrites:
        def __getattr__(self, name):
            return getattr(products, name)

        async def bulk_write(self, *args, **kwargs):
            raise PyMongoError("connection reset")

    workflow.products = BrokenBulkWrites()

    with pytest.raises(InconsistentStateException) as exc_info:
        await checkout(workflow, store, "u1")

    assert exc_info.value.status_code == 409
    # Restore runs first and fails, so the reservation and pending order remain
    assert (await db.products.find_one({"_id": lamp["_id"]}))["quantity"] == 4
    assert await db.orders.count_documents({"status": OrderStatus.PENDING}) == 1


@pytest.mark.asyncio
async def test_update_order_flags_are_monotonic(db, store, workflow):
    product = await insert_product(db)
    await store.add_item("u1", str(product["_id"]), 1, "black")
    order = await checkout(workflow, store, "u1")
    order_id = str(order["_id"])

    paid = await workflow.update_order(order_id, is_paid=True)
    assert paid["is_paid"] is True
    assert paid["paid_at"] is not None
    assert paid["is_delivered"] is False

    again = await workflow.update_order(order_id, is_paid=True)
    assert again["paid_at"] == paid["paid_at"]

    with pytest.raises(ConflictException):
        await workflow.update_order(order_id, is_paid=False)

    delivered = await workflow.update_order(order_id, is_delivered=True)
    assert delivered["is_delivered"] is True
    assert delivered["delivered_at"] is not None


@pytest.mark.asyncio
async def test_update_unknown_order(workflow):
    with pytest.raises(NotFoundException):
        await workflow.update_order(str(ObjectId()), is_paid=True)


@pytest.mark.asyncio
async def test_orders_are_scoped_to_owner_and_placed_status(db, store, workflow):
    product = await insert_product(db)
    for user in ("u1", "u2"):
        await store.add_item(user, str(product["_id"]), 1, "black")
        await checkout(workflow, store, user)
    await db.orders.insert_one({"user_id": "u1", "status": OrderStatus.PENDING, "cart_items": []})

    mine = await workflow.list_orders({}, user_id="u1").to_list()
    everything = await workflow.list_orders({}).to_list()

    assert [o["user_id"] for o in mine] == ["u1"]
    assert sorted(o["user_id"] for o in everything) == ["u1", "u2"]

    u2_order = next(o for o in everything if o["user_id"] == "u2")
    with pytest.raises(NotFoundException):
        await workflow.get_order("u1", str(u2_order["_id"]))


@pytest.mark.asyncio
async def test_cart_emptied_before_claim_is_rejected(db, store, workflow):
    product = await insert_product(db)
    cart = await store.add_item("u1", str(product["_id"]), 1, "black")
    item_id = cart["cart_items"][0]["_id"]
    carts = workflow.carts

    class EmptiedBeforeClaim:
        """Removes the only line right before the checkout claims the cart."""

        def __getattr__(self, name):
            return getattr(carts, name)

        async def find_one_and_update(self, *args, **kwargs):
            await store.remove_item("u1", item_id)
            return await carts.find_one_and_update(*args, **kwargs)

    workflow.carts = EmptiedBeforeClaim()

    with pytest.raises(ValidationException):
        await workflow.create_cash_order("u1", str(cart["_id"]), ADDRESS)

    assert await db.orders.count_documents({}) == 0
    stored = await db.carts.find_one({"user_id": "u1"})
    assert stored["checkout_id"] is None
    assert (await db.products.find_one({"_id": product["_id"]}))["quantity"] == 10


@pytest.mark.asyncio
async def test_unwind_reports_any_failing_step():
    undone = []

    async def release():
        undone.append("release")

    async def broken():
        raise RuntimeError("boom")

    log = CompensationLog("order-1")
    log.push("release cart", release)
    log.push("restore stock", broken)

    with pytest.raises(InconsistentStateException):
        await log.unwind()

    assert undone == []
    assert [name for name, _ in log.steps] == ["release cart", "restore stock"]
