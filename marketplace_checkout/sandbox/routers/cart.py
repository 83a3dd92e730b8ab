import logging

from fastapi import APIRouter, Depends, Request

from marketplace_checkout.sandbox.dependencies import get_current_user, get_store
from marketplace_checkout.sandbox.models import CartItemDB, SandboxStore, UserDB
from marketplace_checkout.sandbox.schemas import (
    CartItemAdd,
    CartItemUpdate,
    CartResponse,
    CouponApply,
    CouponValidate,
)
from marketplace_checkout.sandbox.services import cart_response, check_coupon, check_stock
from marketplace_checkout.engine.models import CouponDescriptor
from marketplace_checkout.shared.security_config import limiter
from marketplace_checkout.shared.utils import NotFoundException, SuccessResponse

logger = logging.getLogger("checkout-sandbox")

router = APIRouter(tags=["cart"])


def _items_changed(cart):
    # An applied coupon was validated against the old items
    if cart.coupon_code:
        logger.info("Coupon dropped after cart change", extra={"cart_id": cart.id})
    cart.coupon_code = None
    cart.touch()


@router.get("/cart", response_model=SuccessResponse[CartResponse])
@limiter.limit("60/minute")
async def get_cart(request: Request, user: UserDB = Depends(get_current_user), store: SandboxStore = Depends(get_store)):
    return SuccessResponse(data=cart_response(store, store.cart_for(user.id)))


@router.post("/cart/items", response_model=SuccessResponse[CartResponse])
async def add_to_cart(
    item: CartItemAdd,
    user: UserDB = Depends(get_current_user),
    store: SandboxStore = Depends(get_store),
):
    cart = store.cart_for(user.id)

    existing = None
    for cart_item in cart.items:
        if cart_item.product_id == item.product_id and cart_item.variant == item.variant:
            existing = cart_item
            break

    wanted = item.quantity + (existing.quantity if existing else 0)
    product = check_stock(store, item.product_id, wanted)

    if existing:
        existing.quantity = wanted
    else:
        cart.items.append(CartItemDB(
            product_id=product.id,
            variant=item.variant,
            unit_price=product.price,
            quantity=item.quantity,
            name=product.name,
        ))

    _items_changed(cart)
    return SuccessResponse(data=cart_response(store, cart), message="Item added to cart")


@router.put("/cart/items/{item_id}", response_model=SuccessResponse[CartResponse])
async def update_cart_item(
    item_id: str,
    update: CartItemUpdate,
    user: UserDB = Depends(get_current_user),
    store: SandboxStore = Depends(get_store),
):
    cart = store.cart_for(user.id)
    cart_item = cart.find(item_id)
    if cart_item is None:
        raise NotFoundException("Item not in cart")

    if cart_item.quantity != update.quantity:
        check_stock(store, cart_item.product_id, update.quantity)
        cart_item.quantity = update.quantity
        _items_changed(cart)
    return SuccessResponse(data=cart_response(store, cart))


@router.delete("/cart/items/{item_id}", response_model=SuccessResponse[CartResponse])
async def remove_cart_item(
    item_id: str,
    user: UserDB = Depends(get_current_user),
    store: SandboxStore = Depends(get_store),
):
    cart = store.cart_for(user.id)
    cart_item = cart.find(item_id)
    # Removing an item that is already gone is not an error
    if cart_item is not None:
        cart.items.remove(cart_item)
        _items_changed(cart)
    return SuccessResponse(data=cart_response(store, cart))


@router.delete("/cart", response_model=SuccessResponse[CartResponse])
async def clear_cart(user: UserDB = Depends(get_current_user), store: SandboxStore = Depends(get_store)):
    cart = store.cart_for(user.id)
    if cart.items or cart.coupon_code:
        cart.items = []
        cart.coupon_code = None
        cart.touch()
    return SuccessResponse(data=cart_response(store, cart), message="Cart cleared")


@router.put("/cart/coupon", response_model=SuccessResponse[CartResponse])
async def apply_coupon(
    payload: CouponApply,
    request: Request,
    user: UserDB = Depends(get_current_user),
    store: SandboxStore = Depends(get_store),
):
    cart = store.cart_for(user.id)
    # PUT of the coupon already held is a no-op
    coupon = check_coupon(store, payload.code, cart, request.app.state.pricing, allow_applied=True)
    if cart.coupon_code != coupon.code:
        cart.coupon_code = coupon.code
        cart.touch()
    return SuccessResponse(data=cart_response(store, cart), message="Coupon applied")


@router.delete("/cart/coupon", response_model=SuccessResponse[CartResponse])
async def remove_coupon(user: UserDB = Depends(get_current_user), store: SandboxStore = Depends(get_store)):
    cart = store.cart_for(user.id)
    if cart.coupon_code:
        cart.coupon_code = None
        cart.touch()
    return SuccessResponse(data=cart_response(store, cart), message="Coupon removed")


@router.post("/coupons/validate", response_model=SuccessResponse[CouponDescriptor])
@limiter.limit("30/minute")
async def validate_coupon(
    payload: CouponValidate,
    request: Request,
    user: UserDB = Depends(get_current_user),
    store: SandboxStore = Depends(get_store),
):
    cart = store.cart_for(user.id)
    coupon = check_coupon(store, payload.code, cart, request.app.state.pricing)
    return SuccessResponse(data=coupon.descriptor(), message="Coupon is valid")
