"""Cart-to-order checkout and order status updates.

Checkout touches three collections (orders, products, carts) and runs as a
saga: every applied step pushes its undo onto a compensation log, and any
failure unwinds the log in reverse before the error is re-raised. Stock is
only ever taken with a guarded ``$inc`` whose filter requires enough
quantity, so concurrent checkouts cannot drive a product below zero.

    1. claim the cart        undo: release the claim
    2. insert pending order  undo: delete the order
    3. reserve stock         undo: give the stock back (one bulk write)
    4. mark order placed
    5. delete the cart
"""

import logging
import uuid
from datetime import datetime
from typing import Any, Awaitable, Callable, Dict, List, Mapping, Optional, Tuple

from pymongo import ReturnDocument, UpdateOne
from pymongo.errors import PyMongoError

from storefront.api_features import ApiFeatures
from storefront.models import ORDER_FIELDS, OrderDB, OrderItemDB, OrderStatus, ShippingAddressDB
from storefront.pricing import PricingEngine
from storefront.shared.utils import (
    ConflictException,
    InconsistentStateException,
    InsufficientStockException,
    NotFoundException,
    ValidationException,
    str_to_oid,
)

logger = logging.getLogger(__name__)

Compensation = Tuple[str, Callable[[], Awaitable[Any]]]


class CompensationLog:
    def __init__(self, order_ref: str):
        self.order_ref = order_ref
        self.steps: List[Compensation] = []

    def push(self, name: str, undo: Callable[[], Awaitable[Any]]) -> None:
        self.steps.append((name, undo))

    async def unwind(self) -> None:
        while self.steps:
            name, undo = self.steps[-1]
            try:
                await undo()
            except Exception:
                outstanding = [n for n, _ in self.steps]
                logger.exception(
                    "Checkout compensation failed, outstanding steps: %s", outstanding,
                    extra={"order_id": self.order_ref},
                )
                raise InconsistentStateException(
                    f"Checkout could not be rolled back (failed at {name}); manual reconciliation required"
                )
            self.steps.pop()


class OrderWorkflow:
    def __init__(self, db, pricing: Optional[PricingEngine] = None):
        self.orders = db.orders
        self.carts = db.carts
        self.products = db.products
        self.pricing = pricing or PricingEngine()

    async def create_cash_order(self, user_id: str, cart_id: str, shipping_address: Mapping[str, Any]) -> Dict[str, Any]:
        cart_oid = str_to_oid(cart_id, "Cart")
        cart = await self.carts.find_one({"_id": cart_oid, "user_id": user_id})
        if not cart:
            raise NotFoundException("Cart not found")
        if not cart.get("cart_items"):
            raise ValidationException("Cart is empty")
        address = ShippingAddressDB(**shipping_address)

        checkout_id = uuid.uuid4().hex
        log = CompensationLog(checkout_id)
        extra = {"cart_id": cart_id, "user_id": user_id, "order_id": checkout_id}

        # 1. claim the cart so it cannot change or be checked out twice
        cart = await self.carts.find_one_and_update(
            {"_id": cart_oid, "checkout_id": None},
            {"$set": {"checkout_id": checkout_id}},
            return_document=ReturnDocument.AFTER,
        )
        if not cart:
            raise ConflictException("Cart is already being checked out")
        log.push("release cart", lambda: self.carts.update_one(
            {"_id": cart_oid, "checkout_id": checkout_id}, {"$set": {"checkout_id": None}}
        ))
        # the cart may have been emptied between the read and the claim
        if not cart.get("cart_items"):
            await log.unwind()
            raise ValidationException("Cart is empty")
        logger.info("Checkout started", extra=extra)

        try:
            order = await self._insert_pending_order(user_id, cart, address, log)
            extra["order_id"] = str(order["_id"])
            await self._reserve_stock(cart["cart_items"], log)

            now = datetime.utcnow()
            await self.orders.update_one(
                {"_id": order["_id"]},
                {"$set": {"status": OrderStatus.PLACED, "updated_at": now}},
            )
            order["status"] = OrderStatus.PLACED
            order["updated_at"] = now

            result = await self.carts.delete_one({"_id": cart_oid, "checkout_id": checkout_id})
            if not result.deleted_count:
                raise ConflictException("Cart changed during checkout")
        except Exception as exc:
            logger.warning("Checkout failed, rolling back: %s", exc, extra=extra)
            await log.unwind()
            if isinstance(exc, PyMongoError):
                raise ConflictException("Checkout failed, no changes were made") from exc
            raise

        logger.info("Checkout committed", extra=extra)
        return order

    async def _insert_pending_order(self, user_id, cart, address: ShippingAddressDB, log: CompensationLog) -> Dict[str, Any]:
        order_db = OrderDB(
            user_id=user_id,
            cart_items=[OrderItemDB(**item) for item in cart["cart_items"]],
            shipping_address=address,
            payment_method="cash",
            total_order_price=self.pricing.order_total(cart),
            status=OrderStatus.PENDING,
        )
        order = order_db.dict()
        result = await self.orders.insert_one(order)
        order["_id"] = result.inserted_id
        log.push("delete pending order", lambda: self.orders.delete_one({"_id": result.inserted_id}))
        return order

    async def _reserve_stock(self, items: List[Dict[str, Any]], log: CompensationLog) -> None:
        reserved: List[Tuple[Any, int]] = []

        async def restore():
            if not reserved:
                return
            await self.products.bulk_write(
                [UpdateOne({"_id": oid}, {"$inc": {"quantity": qty, "sold": -qty}}) for oid, qty in reserved],
                ordered=False,
            )

        log.push("restore stock", restore)
        for item in items:
            oid = str_to_oid(item["product_id"], "Product")
            qty = item["quantity"]
            result = await self.products.update_one(
                {"_id": oid, "quantity": {"$gte": qty}},
                {"$inc": {"quantity": -qty, "sold": qty}, "$set": {"updated_at": datetime.utcnow()}},
            )
            if not result.matched_count:
                raise InsufficientStockException(item["product_id"])
            reserved.append((oid, qty))

    async def _get_order(self, order_id: str, user_id: Optional[str] = None) -> Dict[str, Any]:
        query: Dict[str, Any] = {"_id": str_to_oid(order_id, "Order"), "status": OrderStatus.PLACED}
        if user_id is not None:
            query["user_id"] = user_id
        order = await self.orders.find_one(query)
        if not order:
            raise NotFoundException("Order not found")
        return order

    async def get_order(self, user_id: str, order_id: str) -> Dict[str, Any]:
        return await self._get_order(order_id, user_id)

    def list_orders(self, params: Mapping[str, Any], user_id: Optional[str] = None) -> ApiFeatures:
        base_filter: Dict[str, Any] = {"status": OrderStatus.PLACED}
        if user_id is not None:
            base_filter["user_id"] = user_id
        return (
            ApiFeatures(self.orders, params, ORDER_FIELDS, base_filter=base_filter)
            .pagination()
            .fields()
            .filtration()
            .sort()
        )

    async def update_order(self, order_id: str, is_paid: Optional[bool] = None, is_delivered: Optional[bool] = None) -> Dict[str, Any]:
        order = await self._get_order(order_id)
        now = datetime.utcnow()
        changes: Dict[str, Any] = {}

        for flag, stamp, value in (("is_paid", "paid_at", is_paid), ("is_delivered", "delivered_at", is_delivered)):
            if value is None:
                continue
            if order.get(flag) and not value:
                raise ConflictException(f"{flag} cannot be reverted once set")
            if value and not order.get(flag):
                changes[flag] = True
                changes[stamp] = now

        if changes:
            changes["updated_at"] = now
            order = await self.orders.find_one_and_update(
                {"_id": order["_id"]},
                {"$set": changes},
                return_document=ReturnDocument.AFTER,
            )
        return order
