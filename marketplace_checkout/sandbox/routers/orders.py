import logging
import secrets
import string
from datetime import timedelta

from fastapi import APIRouter, Depends, Request, status

from marketplace_checkout.engine.models import PaymentMethod
from marketplace_checkout.engine.pricing import to_minor_units
from marketplace_checkout.sandbox.dependencies import get_current_user, get_store, idempotency_key
from marketplace_checkout.sandbox.models import OrderDB, SandboxStore, UserDB, utcnow
from marketplace_checkout.sandbox.schemas import CartItemResponse, OrderCreate, OrderResponse
from marketplace_checkout.sandbox.services import check_coupon, check_stock
from marketplace_checkout.shared.security_config import limiter
from marketplace_checkout.shared.utils import (
    AppException,
    ConflictException,
    NotFoundException,
    SuccessResponse,
)

logger = logging.getLogger("checkout-sandbox")

router = APIRouter(prefix="/orders", tags=["orders"])

ORDER_NUMBER_ALPHABET = string.ascii_uppercase + string.digits


def generate_order_number() -> str:
    suffix = "".join(secrets.choice(ORDER_NUMBER_ALPHABET) for _ in range(6))
    return f"ORD-{utcnow():%Y%m%d}-{suffix}"


def order_response(order: OrderDB) -> OrderResponse:
    fields = dict(order)
    fields["items"] = [CartItemResponse(**item.model_dump()) for item in order.items]
    return OrderResponse(**fields)


def _line_key(product_id, variant, quantity, unit_price):
    return (product_id, variant.model_dump_json() if variant else "", quantity, unit_price)


@router.post("", response_model=SuccessResponse[OrderResponse])
@limiter.limit("10/minute")
async def create_order(
    payload: OrderCreate,
    request: Request,
    key: str = Depends(idempotency_key),
    user: UserDB = Depends(get_current_user),
    store: SandboxStore = Depends(get_store),
):
    # Idempotency Check
    existing_id = store.orders_by_key.get((user.id, key))
    if existing_id:
        return SuccessResponse(data=order_response(store.orders[existing_id]), message="Order already created")

    pricing = request.app.state.pricing
    settings = request.app.state.settings
    cart = store.cart_for(user.id)

    # 1. The submitted items must be exactly what the server cart holds
    if not cart.items:
        raise AppException(detail="Cart is empty", code="ORDER_REJECTED")
    submitted = sorted(_line_key(i.product_id, i.variant, i.quantity, i.unit_price) for i in payload.items)
    held = sorted(_line_key(i.product_id, i.variant, i.quantity, i.unit_price) for i in cart.items)
    if submitted != held:
        raise ConflictException("Cart changed since checkout started", code="ORDER_REJECTED")

    # 2. Stock, per product across variants
    wanted = {}
    for item in cart.items:
        wanted[item.product_id] = wanted.get(item.product_id, 0) + item.quantity
    for product_id, quantity in wanted.items():
        check_stock(store, product_id, quantity)

    # 3. Coupon still valid and still the one on the cart
    coupon = None
    if payload.coupon_code:
        if payload.coupon_code != cart.coupon_code:
            raise ConflictException("Coupon is not applied to this cart", code="COUPON_INVALID")
        try:
            coupon = check_coupon(store, payload.coupon_code, cart, pricing, allow_applied=True)
        except AppException:
            raise ConflictException("Coupon is no longer valid", code="COUPON_INVALID")

    # 4. Re-price with the same rules as the client
    breakdown = pricing.price(cart.line_items(), coupon.descriptor() if coupon else None)
    if breakdown.total != payload.expected_total:
        raise ConflictException("Order total does not match", code="PAYMENT_MISMATCH")

    # 5. Card payments must be captured for exactly this amount
    intent = None
    if payload.payment_method == PaymentMethod.CARD:
        intent = store.intents.get(payload.payment_intent_id or "")
        if intent is None or intent.user_id != user.id or intent.status != "succeeded":
            raise AppException(status.HTTP_402_PAYMENT_REQUIRED, "Payment not completed", code="PAYMENT_REQUIRED")
        if intent.amount != to_minor_units(breakdown.total) or intent.order_id is not None:
            raise ConflictException("Payment does not match this order", code="PAYMENT_MISMATCH")

    # 6. Commit
    for product_id, quantity in wanted.items():
        store.products[product_id].stock -= quantity
    if coupon is not None:
        coupon.used_count += 1

    now = utcnow()
    order = OrderDB(
        order_number=generate_order_number(),
        user_id=user.id,
        idempotency_key=key,
        items=cart.line_items(),
        total_amount=breakdown.total,
        shipping_address=payload.shipping_address,
        payment_method=payload.payment_method,
        payment_reference=intent.id if intent else None,
        coupon_code=coupon.code if coupon else None,
        contact_email=payload.contact_email or user.email,
        created_at=now,
        estimated_delivery=now + timedelta(days=settings.DELIVERY_ESTIMATE_DAYS),
    )
    store.orders[order.id] = order
    store.orders_by_key[(user.id, key)] = order.id
    if intent is not None:
        intent.order_id = order.id

    logger.info("Order created", extra={"order_id": order.id, "user_id": user.id})
    return SuccessResponse(data=order_response(order), message="Order created")


@router.get("/by-key/{key}", response_model=SuccessResponse[OrderResponse])
async def get_order_by_key(
    key: str,
    user: UserDB = Depends(get_current_user),
    store: SandboxStore = Depends(get_store),
):
    order_id = store.orders_by_key.get((user.id, key))
    if order_id is None:
        raise NotFoundException("Order not found")
    return SuccessResponse(data=order_response(store.orders[order_id]))


@router.get("/{order_id}", response_model=SuccessResponse[OrderResponse])
async def get_order(
    order_id: str,
    user: UserDB = Depends(get_current_user),
    store: SandboxStore = Depends(get_store),
):
    order = store.orders.get(order_id)
    if order is None or order.user_id != user.id:
        raise NotFoundException("Order not found")
    return SuccessResponse(data=order_response(order))
