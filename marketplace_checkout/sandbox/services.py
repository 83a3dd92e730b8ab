"""Business rules shared by the sandbox routers."""
from typing import Optional

from marketplace_checkout.sandbox.models import CartDB, CouponDB, SandboxStore, utcnow
from marketplace_checkout.sandbox.schemas import CartItemResponse, CartResponse
from marketplace_checkout.shared.utils import AppException, ConflictException, NotFoundException

COUPON_MESSAGES = {
    "NOT_FOUND": "Coupon not found",
    "EXPIRED": "Coupon has expired",
    "USAGE_LIMIT_REACHED": "Coupon usage limit reached",
    "MINIMUM_ORDER_NOT_MET": "Order total is below the coupon minimum",
    "ALREADY_APPLIED": "Coupon already applied",
}


def coupon_rejection(reason: str) -> AppException:
    status_code = 404 if reason == "NOT_FOUND" else 400
    return AppException(status_code=status_code, detail=COUPON_MESSAGES[reason], code=f"COUPON_{reason}")


def check_coupon(store: SandboxStore, code: str, cart: CartDB, pricing, allow_applied: bool = False) -> CouponDB:
    """Apply the coupon rules to `cart`; raise the matching COUPON_* rejection."""
    coupon = store.coupons.get(code)
    if coupon is None or not coupon.is_active:
        raise coupon_rejection("NOT_FOUND")
    if coupon.expires_at is not None and coupon.expires_at < utcnow():
        raise coupon_rejection("EXPIRED")
    if coupon.usage_limit is not None and coupon.used_count >= coupon.usage_limit:
        raise coupon_rejection("USAGE_LIMIT_REACHED")
    if cart.coupon_code == code and not allow_applied:
        raise coupon_rejection("ALREADY_APPLIED")

    subtotal = pricing.price(cart.line_items()).subtotal
    if coupon.minimum_order_amount is not None and subtotal < coupon.minimum_order_amount:
        raise coupon_rejection("MINIMUM_ORDER_NOT_MET")
    return coupon


def cart_response(store: SandboxStore, cart: CartDB) -> CartResponse:
    coupon: Optional[CouponDB] = store.coupons.get(cart.coupon_code) if cart.coupon_code else None
    return CartResponse(
        id=cart.id,
        user_id=cart.user_id,
        items=[CartItemResponse(**item.model_dump()) for item in cart.items],
        applied_coupon=coupon.descriptor() if coupon else None,
        version=cart.version,
        updated_at=cart.updated_at,
    )


def check_stock(store: SandboxStore, product_id: str, quantity: int):
    """Check a product can be sold in `quantity`; does not decrement."""
    product = store.products.get(product_id)
    if product is None:
        raise NotFoundException(f"Product {product_id} not found")
    if not product.is_active:
        raise AppException(detail="Product is not active", code="PRODUCT_UNAVAILABLE")
    if product.stock < quantity:
        raise ConflictException("Insufficient stock", code="OUT_OF_STOCK")
    return product
