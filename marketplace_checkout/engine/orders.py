import logging
from typing import Optional

from marketplace_checkout.engine.cart_store import CartStore
from marketplace_checkout.engine.clients import OrdersServiceClient, order_payload
from marketplace_checkout.engine.errors import (
    AssemblyError,
    CheckoutError,
    PaymentNotCompleted,
    RemoteRejection,
    StepPreconditionError,
    TransientError,
)
from marketplace_checkout.engine.models import Order, OrderDraft, Session, Succeeded

logger = logging.getLogger(__name__)


class OrderAssembler:
    """
    Turns a paid draft into an Order with a single idempotent submission.

    Payment is never retried from here. If the order service cannot be reached
    after a captured payment, the caller gets an AssemblyError with
    `payment_captured=True` so the customer is told to contact support.
    """

    def __init__(self, orders: OrdersServiceClient, cart_store: CartStore):
        self.orders = orders
        self.cart_store = cart_store

    async def assemble(self, draft: OrderDraft, outcome, session: Session) -> Order:
        if draft.shipping_address is None or draft.payment is None:
            raise StepPreconditionError("Shipping address and payment method are required")

        if draft.payment.method.requires_upfront_capture and not isinstance(outcome, Succeeded):
            raise PaymentNotCompleted()

        reference = outcome.reference if isinstance(outcome, Succeeded) else None
        key = draft.order_key()
        log_extra = {"idempotency_key": key[:12], "intent_id": reference}

        try:
            order = await self.orders.create(session, order_payload(draft, reference), key)
        except TransientError as exc:
            logger.warning("Order submission failed, checking whether it landed", extra=log_extra)
            order = await self._find_existing(session, key)
            if order is None:
                logger.error("Order not confirmed", extra={**log_extra, "reason": exc.code})
                raise AssemblyError(exc, payment_captured=bool(reference)) from exc
        except RemoteRejection as exc:
            logger.error("Order rejected", extra={**log_extra, "reason": exc.code})
            raise AssemblyError(exc, payment_captured=bool(reference)) from exc

        logger.info("Order placed", extra={**log_extra, "order_id": order.id})
        await self._clear_cart(order)
        return order

    async def _find_existing(self, session: Session, key: str) -> Optional[Order]:
        try:
            return await self.orders.find_by_key(session, key)
        except CheckoutError as exc:
            logger.warning("Order lookup failed", extra={"idempotency_key": key[:12], "reason": exc.code})
            return None

    async def _clear_cart(self, order: Order):
        try:
            await self.cart_store.clear()
        except CheckoutError as exc:
            # The order stands; a stale cart is only cosmetic
            logger.warning("Cart clear after order failed", extra={"order_id": order.id, "reason": exc.code})
