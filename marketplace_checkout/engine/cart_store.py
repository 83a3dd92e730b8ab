import asyncio
import logging
from contextlib import asynccontextmanager
from typing import Optional

from marketplace_checkout.engine.clients import CartServiceClient
from marketplace_checkout.engine.coupons import CouponValidator
from marketplace_checkout.engine.errors import Busy, Unauthenticated, ValidationFailed
from marketplace_checkout.engine.models import Cart, CouponDescriptor, PricedBreakdown, Session, Variant
from marketplace_checkout.engine.pricing import PricingEngine

logger = logging.getLogger(__name__)

QUEUE = "queue"
REJECT = "reject"


class CartStore:
    """
    The session's canonical cart.

    Every mutation is one round trip to the cart service and the server's cart
    replaces the local one wholesale. Totals are never stored; `totals()` prices
    the current items each time it is called.

    Only one mutation is in flight at a time. With the "queue" policy later
    callers wait their turn; with "reject" they get Busy.
    """

    def __init__(
        self,
        client: CartServiceClient,
        validator: CouponValidator,
        pricing: PricingEngine,
        session: Session,
        policy: str = QUEUE,
    ):
        if policy not in (QUEUE, REJECT):
            raise ValueError(f"unknown cart mutation policy {policy!r}")
        self.client = client
        self.validator = validator
        self.pricing = pricing
        self.session = session
        self.policy = policy
        self.cart = Cart()
        self._lock = asyncio.Lock()
        # Fingerprint of the items the applied coupon was validated against
        self._coupon_fingerprint: Optional[str] = None

    # --- Session ---

    def use_session(self, session: Session):
        """Switch identity; the next refresh() loads the cart owned by `session`."""
        self.session = session
        self.cart = Cart()
        self._coupon_fingerprint = None

    def _require_session(self):
        if not self.session.has_token:
            raise Unauthenticated()

    # --- Serialisation ---

    @property
    def busy(self) -> bool:
        return self._lock.locked()

    @asynccontextmanager
    async def _mutation(self):
        if self.policy == REJECT and self._lock.locked():
            raise Busy()
        async with self._lock:
            yield

    def _replace(self, cart: Cart) -> Cart:
        if cart.version < self.cart.version:
            logger.warning("Discarding stale cart response", extra={
                "cart_id": cart.id,
                "cart_version": cart.version,
            })
            return self.cart

        if cart.applied_coupon is None:
            self._coupon_fingerprint = None
        elif self._coupon_fingerprint is None:
            # Coupon already held server-side when we first saw this cart
            self._coupon_fingerprint = cart.fingerprint()

        self.cart = cart
        return cart

    # --- Reads ---

    async def refresh(self) -> Cart:
        self._require_session()
        return self._replace(await self.client.fetch(self.session))

    # --- Mutations ---

    async def add_item(self, product_id: str, variant: Optional[Variant] = None, quantity: int = 1) -> Cart:
        self._require_session()
        if quantity < 1:
            raise ValidationFailed({"quantity": "Quantity must be at least 1"})
        async with self._mutation():
            cart = await self.client.add_item(self.session, product_id, variant, quantity)
            logger.info("Item added to cart", extra={"cart_id": cart.id, "cart_version": cart.version})
            return self._replace(cart)

    async def set_quantity(self, item_id: str, quantity: int) -> Cart:
        if quantity < 1:
            return await self.remove_item(item_id)
        self._require_session()
        async with self._mutation():
            return self._replace(await self.client.update_item(self.session, item_id, quantity))

    async def remove_item(self, item_id: str) -> Cart:
        self._require_session()
        async with self._mutation():
            return self._replace(await self.client.remove_item(self.session, item_id))

    async def clear(self) -> Cart:
        self._require_session()
        async with self._mutation():
            cart = await self.client.clear(self.session)
            logger.info("Cart cleared", extra={"cart_id": cart.id})
            return self._replace(cart)

    async def apply_coupon(self, code: str) -> Cart:
        """Validate `code` against the current cart and store it. The cart is untouched on rejection."""
        self._require_session()
        async with self._mutation():
            descriptor = await self.validator.validate(code, self.cart, self.session)
            cart = await self.client.set_coupon(self.session, descriptor.code)
            held = self._replace(cart)
            if held is cart:
                self._coupon_fingerprint = cart.fingerprint()
            return held

    async def remove_coupon(self) -> Cart:
        self._require_session()
        async with self._mutation():
            return self._replace(await self.client.remove_coupon(self.session))

    # --- Derived ---

    @property
    def effective_coupon(self) -> Optional[CouponDescriptor]:
        """The applied coupon, or None if the items changed since it was validated."""
        coupon = self.cart.applied_coupon
        if coupon is None or self._coupon_fingerprint != self.cart.fingerprint():
            return None
        return coupon

    @property
    def coupon_needs_revalidation(self) -> bool:
        return self.cart.applied_coupon is not None and self.effective_coupon is None

    def totals(self) -> PricedBreakdown:
        return self.pricing.price(self.cart.items, self.effective_coupon)
