"""Cart pricing: line totals, item discounts and coupons.

All arithmetic is done on ``Decimal`` and rounded half-up to cents; documents
keep storing plain floats, the way the rest of the service persists money.
"""

import logging
from datetime import datetime
from decimal import Decimal, ROUND_HALF_UP
from typing import Any, Dict, Iterable, Optional

from storefront.shared.security_config import normalize_code
from storefront.shared.utils import CouponExpiredException, NotFoundException, ValidationException

logger = logging.getLogger(__name__)

CENT = Decimal("0.01")


class DiscountType:
    PERCENTAGE = "percentage"
    FIXED = "fixed"

    ALL = (PERCENTAGE, FIXED)


def to_money(value: Any) -> Decimal:
    return Decimal(str(value)).quantize(CENT, rounding=ROUND_HALF_UP)


def line_discount(item: Dict[str, Any]) -> Decimal:
    """Discount of one cart line: the captured unit markdown times the quantity."""
    after = item.get("price_after_discount")
    if after is None:
        return Decimal(0)
    unit = to_money(item["price"]) - to_money(after)
    if unit <= 0:
        return Decimal(0)
    return to_money(unit * item["quantity"])


def apply_discount(subtotal: Decimal, discount_type: str, discount: Any) -> Decimal:
    amount = Decimal(str(discount))
    if discount_type == DiscountType.PERCENTAGE:
        discounted = subtotal * (Decimal(1) - amount / Decimal(100))
    elif discount_type == DiscountType.FIXED:
        discounted = subtotal - amount
    else:
        raise ValidationException(f"Unknown discount type: {discount_type}")
    return to_money(max(discounted, Decimal(0)))


class PricingEngine:
    def price_items(self, items: Iterable[Dict[str, Any]]) -> None:
        for item in items:
            item["total_product_discount"] = float(line_discount(item))

    def totals(self, cart: Dict[str, Any]) -> Dict[str, Optional[float]]:
        """Recompute the derived price fields of a cart document.

        ``total_price`` is the undiscounted sum of the lines. Item markdowns are
        taken off first, then the applied coupon (if any) is taken off the rest.
        ``total_price_after_discount`` stays ``None`` when nothing is discounted.
        """
        items = cart.get("cart_items", [])
        self.price_items(items)

        total = sum((to_money(i["price"]) * i["quantity"] for i in items), Decimal(0))
        total = to_money(total)
        item_discounts = sum((Decimal(str(i["total_product_discount"])) for i in items), Decimal(0))

        after: Optional[Decimal] = None
        if item_discounts > 0:
            after = to_money(total - item_discounts)
        if cart.get("coupon_code"):
            after = apply_discount(after if after is not None else total, cart["discount_type"], cart["discount"])

        return {
            "total_price": float(total),
            "total_price_after_discount": float(after) if after is not None else None,
        }

    def recompute(self, cart: Dict[str, Any]) -> Dict[str, Any]:
        cart.update(self.totals(cart))
        return cart

    async def apply_coupon(self, coupons, code: str, cart: Dict[str, Any]) -> Dict[str, Any]:
        """Look a coupon up and apply it to ``cart`` in place, replacing any earlier one."""
        normalized = normalize_code(code)
        coupon = await coupons.find_one({"code": normalized})
        if not coupon:
            raise NotFoundException(f"Coupon {normalized} not found")
        if coupon["expires"] <= datetime.utcnow():
            raise CouponExpiredException(normalized)

        cart["coupon_code"] = coupon["code"]
        cart["discount_type"] = coupon["discount_type"]
        cart["discount"] = coupon["discount"]
        logger.info("Coupon applied", extra={"coupon_code": coupon["code"], "cart_id": str(cart.get("_id"))})
        return self.recompute(cart)

    def order_total(self, cart: Dict[str, Any]) -> float:
        after = cart.get("total_price_after_discount")
        return after if after is not None else cart["total_price"]
