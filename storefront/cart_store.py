"""Per-user shopping carts.

Carts are single documents. Every mutation re-reads the cart, applies the
change in memory, reprices it and writes it back with a compare-and-set on
``version``; a lost race is retried a bounded number of times. A cart claimed
by a running checkout (``checkout_id`` set) cannot be mutated.
"""

import logging
from datetime import datetime
from typing import Any, Awaitable, Callable, Dict, Optional

from pymongo.errors import DuplicateKeyError

from storefront.models import CartDB, CartItemDB
from storefront.pricing import PricingEngine
from storefront.shared.utils import (
    ConflictException,
    InsufficientStockException,
    NotFoundException,
    ValidationException,
    settings,
    str_to_oid,
)

logger = logging.getLogger(__name__)

Mutation = Callable[[Dict[str, Any]], Awaitable[None]]

# Fields written back on every mutation
CART_STATE_FIELDS = (
    "cart_items",
    "total_price",
    "total_price_after_discount",
    "coupon_code",
    "discount_type",
    "discount",
)


class CartStore:
    def __init__(self, db, pricing: Optional[PricingEngine] = None, retries: Optional[int] = None):
        self.carts = db.carts
        self.products = db.products
        self.coupons = db.coupons
        self.pricing = pricing or PricingEngine()
        self.retries = retries or settings.CART_UPDATE_RETRIES

    async def get_cart(self, user_id: str) -> Dict[str, Any]:
        cart = await self.carts.find_one({"user_id": user_id})
        if not cart:
            raise NotFoundException("Cart not found")
        return cart

    async def _get_or_create(self, user_id: str) -> Dict[str, Any]:
        cart = await self.carts.find_one({"user_id": user_id})
        if cart:
            return cart
        try:
            await self.carts.insert_one(CartDB(user_id=user_id).dict(by_alias=True, exclude={"id"}))
        except DuplicateKeyError:
            # Another request created it first
            pass
        return await self.get_cart(user_id)

    async def _fetch_product(self, product_id: str) -> Dict[str, Any]:
        product = await self.products.find_one({"_id": str_to_oid(product_id, "Product")})
        if not product:
            raise NotFoundException("Product not found")
        return product

    async def _mutate(self, user_id: str, mutation: Mutation, create: bool = False) -> Dict[str, Any]:
        for _ in range(self.retries):
            cart = await (self._get_or_create(user_id) if create else self.get_cart(user_id))
            if cart.get("checkout_id"):
                raise ConflictException("Cart is being checked out")

            await mutation(cart)
            self.pricing.recompute(cart)

            now = datetime.utcnow()
            changes = {field: cart.get(field) for field in CART_STATE_FIELDS}
            changes["updated_at"] = now
            result = await self.carts.update_one(
                {"_id": cart["_id"], "version": cart.get("version", 0), "checkout_id": None},
                {"$set": changes, "$inc": {"version": 1}},
            )
            if result.matched_count:
                cart["version"] = cart.get("version", 0) + 1
                cart["updated_at"] = now
                return cart
            logger.warning("Cart changed concurrently, retrying", extra={"cart_id": str(cart["_id"]), "user_id": user_id})
        raise ConflictException("Cart was modified concurrently, please retry")

    @staticmethod
    def _find_item(cart: Dict[str, Any], item_id: str) -> Dict[str, Any]:
        item = next((i for i in cart["cart_items"] if i["_id"] == item_id), None)
        if item is None:
            raise NotFoundException("Item not found in cart")
        return item

    @staticmethod
    def _quantity_in_cart(cart: Dict[str, Any], product_id: str, exclude_item: Optional[str] = None) -> int:
        return sum(
            i["quantity"]
            for i in cart["cart_items"]
            if i["product_id"] == product_id and i["_id"] != exclude_item
        )

    async def add_item(self, user_id: str, product_id: str, quantity: int = 1, color: Optional[str] = None) -> Dict[str, Any]:
        if quantity < 1:
            raise ValidationException("Quantity must be at least 1")
        product = await self._fetch_product(product_id)
        product_id = str(product["_id"])

        colors = product.get("colors") or []
        if colors and color not in colors:
            raise ValidationException(f"Color {color} is not available for this product")

        async def add(cart: Dict[str, Any]) -> None:
            wanted = self._quantity_in_cart(cart, product_id) + quantity
            if wanted > product["quantity"]:
                raise InsufficientStockException(product_id, wanted, product["quantity"])

            existing = next(
                (i for i in cart["cart_items"] if i["product_id"] == product_id and i.get("color") == color),
                None,
            )
            if existing:
                existing["quantity"] += quantity
            else:
                cart["cart_items"].append(
                    CartItemDB(
                        product_id=product_id,
                        color=color,
                        quantity=quantity,
                        price=product["price"],
                        price_after_discount=product.get("price_after_discount"),
                    ).dict(by_alias=True)
                )

        return await self._mutate(user_id, add, create=True)

    async def update_quantity(self, user_id: str, item_id: str, quantity: int) -> Dict[str, Any]:
        async def update(cart: Dict[str, Any]) -> None:
            item = self._find_item(cart, item_id)
            if quantity < 1:
                cart["cart_items"].remove(item)
                return
            if quantity > item["quantity"]:
                product = await self._fetch_product(item["product_id"])
                wanted = self._quantity_in_cart(cart, item["product_id"], exclude_item=item_id) + quantity
                if wanted > product["quantity"]:
                    raise InsufficientStockException(item["product_id"], wanted, product["quantity"])
            item["quantity"] = quantity

        return await self._mutate(user_id, update)

    async def remove_item(self, user_id: str, item_id: str) -> Dict[str, Any]:
        async def remove(cart: Dict[str, Any]) -> None:
            cart["cart_items"].remove(self._find_item(cart, item_id))

        return await self._mutate(user_id, remove)

    async def apply_coupon(self, user_id: str, code: str) -> Dict[str, Any]:
        async def apply(cart: Dict[str, Any]) -> None:
            await self.pricing.apply_coupon(self.coupons, code, cart)

        return await self._mutate(user_id, apply)

    async def clear_cart(self, user_id: str) -> None:
        result = await self.carts.delete_one({"user_id": user_id, "checkout_id": None})
        if not result.deleted_count:
            await self.get_cart(user_id)
            raise ConflictException("Cart is being checked out")
