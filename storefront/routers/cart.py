from fastapi import APIRouter, Depends

from storefront.cart_store import CartStore
from storefront.dependencies import get_db, get_current_user
from storefront.schemas import ApplyCoupon, CartItemAdd, CartItemUpdate, CartResponse
from storefront.shared.utils import SuccessResponse, serialize_doc

router = APIRouter(prefix="/cart", tags=["cart"])


def get_cart_store(db=Depends(get_db)) -> CartStore:
    return CartStore(db)


def cart_response(cart: dict, message: str = None) -> SuccessResponse[CartResponse]:
    return SuccessResponse(data=CartResponse(**serialize_doc(cart)), message=message)


@router.get("", response_model=SuccessResponse[CartResponse])
async def get_cart(store: CartStore = Depends(get_cart_store), user: dict = Depends(get_current_user)):
    return cart_response(await store.get_cart(user["sub"]))


@router.post("", response_model=SuccessResponse[CartResponse])
async def add_to_cart(item: CartItemAdd, store: CartStore = Depends(get_cart_store), user: dict = Depends(get_current_user)):
    cart = await store.add_item(user["sub"], item.product_id, item.quantity, item.color)
    return cart_response(cart, "Product added to cart")


@router.delete("", response_model=SuccessResponse[dict])
async def clear_cart(store: CartStore = Depends(get_cart_store), user: dict = Depends(get_current_user)):
    await store.clear_cart(user["sub"])
    return SuccessResponse(message="Cart cleared")


@router.post("/apply-coupon", response_model=SuccessResponse[CartResponse])
async def apply_coupon(body: ApplyCoupon, store: CartStore = Depends(get_cart_store), user: dict = Depends(get_current_user)):
    cart = await store.apply_coupon(user["sub"], body.code)
    return cart_response(cart, "Coupon applied")


@router.put("/{item_id}", response_model=SuccessResponse[CartResponse])
async def update_cart_item(item_id: str, update: CartItemUpdate, store: CartStore = Depends(get_cart_store), user: dict = Depends(get_current_user)):
    cart = await store.update_quantity(user["sub"], item_id, update.quantity)
    return cart_response(cart, "Cart updated")


@router.delete("/{item_id}", response_model=SuccessResponse[CartResponse])
async def remove_cart_item(item_id: str, store: CartStore = Depends(get_cart_store), user: dict = Depends(get_current_user)):
    cart = await store.remove_item(user["sub"], item_id)
    return cart_response(cart, "Item removed from cart")
