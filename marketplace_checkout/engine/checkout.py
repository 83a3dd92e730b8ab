"""
The checkout state machine.

    GUEST_ENTRY -> CART_REVIEW -> SHIPPING_ADDRESS -> PAYMENT -> REVIEW_CONFIRM -> CONFIRMED

GUEST_ENTRY is only used when a guest session has not yet given an email.
Moving forward needs the current step's data in the draft; moving back is
always allowed and never clears the draft. Leaving PAYMENT charges the card,
leaving REVIEW_CONFIRM (place_order) submits the order, once per call.

Every async handler remembers the navigation generation it started in. If the
customer navigated or abandoned while the call was in flight, the result is
dropped and Superseded is raised instead.
"""
import logging
from enum import Enum
from typing import Optional, Union

from pydantic import ValidationError

from marketplace_checkout.engine.cart_store import CartStore
from marketplace_checkout.engine.clients import IdentityClient
from marketplace_checkout.engine.errors import (
    Busy,
    CheckoutError,
    EmptyCartError,
    PaymentFailed,
    PaymentNotCompleted,
    StepPreconditionError,
    Superseded,
    Unauthenticated,
    ValidationFailed,
)
from marketplace_checkout.engine.models import (
    CardDetails,
    Order,
    OrderDraft,
    PaymentMethod,
    PaymentSelection,
    PricedBreakdown,
    RequiresAction,
    SavedAddress,
    Session,
    ShippingAddress,
    Succeeded,
)
from marketplace_checkout.engine.orders import OrderAssembler
from marketplace_checkout.engine.payments import PaymentCoordinator
from marketplace_checkout.shared.security_config import is_valid_email, sanitize_input, validate_password_strength

logger = logging.getLogger(__name__)


class CheckoutStep(str, Enum):
    GUEST_ENTRY = "guest_entry"
    CART_REVIEW = "cart_review"
    SHIPPING_ADDRESS = "shipping_address"
    PAYMENT = "payment"
    REVIEW_CONFIRM = "review_confirm"
    CONFIRMED = "confirmed"
    ABANDONED = "abandoned"


NUMBERED_STEPS = [
    CheckoutStep.CART_REVIEW,
    CheckoutStep.SHIPPING_ADDRESS,
    CheckoutStep.PAYMENT,
    CheckoutStep.REVIEW_CONFIRM,
    CheckoutStep.CONFIRMED,
]

# Steps that show totals and so may change the coupon
TOTALS_STEPS = {CheckoutStep.CART_REVIEW, CheckoutStep.PAYMENT, CheckoutStep.REVIEW_CONFIRM}


class CheckoutStateMachine:
    def __init__(
        self,
        session: Session,
        cart_store: CartStore,
        identity: IdentityClient,
        payments: PaymentCoordinator,
        assembler: OrderAssembler,
    ):
        self.session = session
        self.cart_store = cart_store
        self.identity = identity
        self.payments = payments
        self.assembler = assembler

        self.step: Optional[CheckoutStep] = None
        self.draft: Optional[OrderDraft] = None
        self.order: Optional[Order] = None
        self.last_error: Optional[CheckoutError] = None
        self.pending_action: Optional[RequiresAction] = None

        self._generation = 0
        self._in_flight = False
        self._placing = False
        self._pending_snapshot: Optional[str] = None

    # --- Introspection ---

    @property
    def step_number(self) -> Optional[int]:
        if self.step in NUMBERED_STEPS:
            return NUMBERED_STEPS.index(self.step) + 1
        return None

    def totals(self) -> PricedBreakdown:
        return self.cart_store.totals()

    # --- Internals ---

    def _log_extra(self, **extra) -> dict:
        extra.update({
            "step": self.step.value if self.step else None,
            "cart_id": self.cart_store.cart.id,
            "user_id": self.session.user_id,
        })
        return extra

    def _bump(self) -> int:
        self._generation += 1
        return self._generation

    async def _guard(self, awaitable, generation: int):
        result = await awaitable
        if generation != self._generation:
            logger.info("Discarding superseded result", extra=self._log_extra())
            raise Superseded()
        return result

    def _require_step(self, *steps: CheckoutStep):
        if self.step not in steps:
            raise StepPreconditionError(step=self.step)

    def _require_idle(self):
        if self._in_flight or self._placing:
            raise Busy()

    async def _verify_session(self, generation: int):
        if not self.session.has_token:
            raise Unauthenticated()
        verified = await self._guard(self.identity.verify(self.session), generation)
        if verified.saved_addresses != self.session.saved_addresses:
            self.session = self.session.model_copy(update={"saved_addresses": verified.saved_addresses})

    async def _refresh_cart(self, generation: int):
        cart = await self._guard(self.cart_store.refresh(), generation)
        if cart.is_empty:
            logger.info("Checkout redirected to cart, cart is empty", extra=self._log_extra())
            raise EmptyCartError(redirect_to="cart")
        return cart

    def _reprice(self):
        """Bring the draft's item snapshot and pricing in line with the cart store."""
        cart = self.cart_store.cart
        items = [item.model_copy() for item in cart.items]
        pricing = self.cart_store.totals()
        coupon = self.cart_store.effective_coupon
        if self.draft is None:
            self.draft = OrderDraft(
                items=items,
                cart_fingerprint=cart.fingerprint(),
                pricing=pricing,
                coupon=coupon,
                contact_email=self.session.email,
            )
            return
        self.draft.items = items
        self.draft.cart_fingerprint = cart.fingerprint()
        self.draft.pricing = pricing
        self.draft.coupon = coupon
        if self.session.email and not self.draft.contact_email:
            self.draft.contact_email = self.session.email

    def _record(self, exc: CheckoutError):
        if not isinstance(exc, Superseded):
            self.last_error = exc

    # --- Entry ---

    async def begin(self) -> CheckoutStep:
        """Start checkout. Raises EmptyCartError, leaving the machine uninitialised, for an empty cart."""
        if not self.session.has_token:
            raise Unauthenticated()
        self._require_idle()
        generation = self._bump()
        self._in_flight = True
        try:
            await self._verify_session(generation)
            await self._refresh_cart(generation)
        finally:
            self._in_flight = False

        if self.session.is_guest and not self.session.email:
            self.step = CheckoutStep.GUEST_ENTRY
        else:
            self._reprice()
            self.step = CheckoutStep.CART_REVIEW
        self.last_error = None
        logger.info("Checkout started", extra=self._log_extra())
        return self.step

    async def submit_guest_details(
        self,
        email: str,
        create_account: bool = False,
        password: Optional[str] = None,
        confirm_password: Optional[str] = None,
        full_name: Optional[str] = None,
    ) -> CheckoutStep:
        self._require_step(CheckoutStep.GUEST_ENTRY)
        self._require_idle()

        email = (email or "").strip()
        errors = {}
        if not is_valid_email(email):
            errors["email"] = "Please enter a valid email address"
        if create_account:
            if not password or not validate_password_strength(password):
                errors["password"] = (
                    "Password must be at least 8 characters with upper and lower case letters and a digit"
                )
            elif password != confirm_password:
                errors["confirm_password"] = "Passwords do not match"
        if errors:
            exc = ValidationFailed(errors)
            self._record(exc)
            raise exc

        generation = self._bump()
        self._in_flight = True
        try:
            if create_account:
                name = sanitize_input(full_name) if full_name else None
                session = await self._guard(self.identity.register(self.session, email, password, name), generation)
            else:
                session = await self._guard(self.identity.claim_guest(self.session, email), generation)

            self.session = session
            self.cart_store.use_session(session)
            await self._refresh_cart(generation)
        except CheckoutError as exc:
            self._record(exc)
            raise
        finally:
            self._in_flight = False

        self._reprice()
        self.draft.contact_email = email
        self.step = CheckoutStep.CART_REVIEW
        self.last_error = None
        logger.info("Guest details accepted", extra=self._log_extra(reason="register" if create_account else "claim"))
        return self.step

    # --- Step data ---

    def set_shipping_address(self, data: Union[ShippingAddress, dict]) -> ShippingAddress:
        self._require_step(CheckoutStep.SHIPPING_ADDRESS)
        self._require_idle()
        try:
            address = data if isinstance(data, ShippingAddress) else ShippingAddress.model_validate(data)
        except ValidationError as e:
            exc = ValidationFailed.from_pydantic(e)
            self._record(exc)
            raise exc
        self.draft.shipping_address = address
        self.last_error = None
        return address

    def _address_from_saved(self, saved: SavedAddress) -> ShippingAddress:
        first_name, _, last_name = (self.session.name or "").strip().partition(" ")
        return ShippingAddress(first_name=first_name, last_name=last_name, **saved.shipping_fields())

    def use_saved_address(self, index: Optional[int] = None) -> ShippingAddress:
        """Ship to one of the account's saved addresses; the default one when `index` is None."""
        self._require_step(CheckoutStep.SHIPPING_ADDRESS)
        self._require_idle()
        saved = self.session.saved_addresses
        if index is None:
            chosen = self.session.default_address
        elif 0 <= index < len(saved):
            chosen = saved[index]
        else:
            chosen = None
        if chosen is None:
            exc = ValidationFailed({"address": "Please choose one of your saved addresses"})
            self._record(exc)
            raise exc
        try:
            address = self._address_from_saved(chosen)
        except ValidationError as e:
            exc = ValidationFailed.from_pydantic(e)
            self._record(exc)
            raise exc
        return self.set_shipping_address(address)

    def _prefill_shipping_address(self):
        default = self.session.default_address
        if default is None or self.draft.shipping_address is not None:
            return
        try:
            self.draft.shipping_address = self._address_from_saved(default)
        except ValidationError:
            # The account name does not split into first and last name; the buyer types the address
            logger.info("Saved address not prefilled", extra=self._log_extra())

    def select_payment(
        self,
        method: Union[PaymentMethod, str],
        card: Optional[Union[CardDetails, dict]] = None,
    ) -> PaymentSelection:
        self._require_step(CheckoutStep.PAYMENT)
        self._require_idle()
        try:
            selection = PaymentSelection(method=method, card=card)
        except ValidationError as e:
            exc = ValidationFailed.from_pydantic(e)
            if "__all__" in exc.field_errors:
                exc.field_errors["card"] = exc.field_errors.pop("__all__")
            self._record(exc)
            raise exc
        self.draft.payment = selection
        self.pending_action = None
        self.last_error = None
        return selection

    # --- Coupons ---

    def _require_coupon_change_allowed(self):
        # A captured card charge is bound to the priced snapshot; a new coupon would need a second charge
        payment = self.draft.payment if self.draft else None
        if payment and payment.method.requires_upfront_capture and self.draft.payment_is_current:
            raise StepPreconditionError(
                "Your card has already been charged for this total. Coupons must be changed before paying.",
                step=self.step,
            )

    async def apply_coupon(self, code: str) -> PricedBreakdown:
        self._require_step(*TOTALS_STEPS)
        self._require_idle()
        self._require_coupon_change_allowed()
        generation = self._generation
        self._in_flight = True
        try:
            await self._guard(self.cart_store.apply_coupon(code), generation)
        except CheckoutError as exc:
            self._record(exc)
            raise
        finally:
            self._in_flight = False
        self._reprice()
        return self.draft.pricing

    async def remove_coupon(self) -> PricedBreakdown:
        self._require_step(*TOTALS_STEPS)
        self._require_idle()
        self._require_coupon_change_allowed()
        generation = self._generation
        self._in_flight = True
        try:
            await self._guard(self.cart_store.remove_coupon(), generation)
        except CheckoutError as exc:
            self._record(exc)
            raise
        finally:
            self._in_flight = False
        self._reprice()
        return self.draft.pricing

    # --- Navigation ---

    async def next(self) -> CheckoutStep:
        self._require_step(CheckoutStep.CART_REVIEW, CheckoutStep.SHIPPING_ADDRESS, CheckoutStep.PAYMENT)
        self._require_idle()
        generation = self._generation
        self._in_flight = True
        try:
            await self._verify_session(generation)
            await self._refresh_cart(generation)
            self._reprice()

            if self.step == CheckoutStep.SHIPPING_ADDRESS and self.draft.shipping_address is None:
                raise StepPreconditionError("Please enter your shipping address", step=self.step)

            if self.step == CheckoutStep.PAYMENT:
                if self.draft.payment is None:
                    raise StepPreconditionError("Please choose a payment method", step=self.step)
                outcome = await self._pay(generation)
                if not isinstance(outcome, Succeeded):
                    return self.step
        except CheckoutError as exc:
            self._record(exc)
            raise
        finally:
            self._in_flight = False

        self.step = NUMBERED_STEPS[NUMBERED_STEPS.index(self.step) + 1]
        if self.step == CheckoutStep.SHIPPING_ADDRESS:
            self._prefill_shipping_address()
        self.last_error = None
        logger.info("Checkout step entered", extra=self._log_extra())
        return self.step

    async def _pay(self, generation: int):
        draft = self.draft
        if draft.payment.method.requires_upfront_capture and draft.payment_is_current:
            # Already paid for exactly this snapshot, e.g. after going back and forth
            return Succeeded(reference=draft.payment_outcome_token)

        snapshot = draft.snapshot_hash()
        billing_details = {
            "name": self.session.name or f"{draft.shipping_address.first_name} {draft.shipping_address.last_name}",
            "email": draft.contact_email or self.session.email,
        }
        self._pending_snapshot = snapshot
        outcome = await self._guard(
            self.payments.pay(draft.pricing.total, draft.payment, billing_details, self.session, snapshot),
            generation,
        )
        return self._apply_outcome(outcome)

    def _apply_outcome(self, outcome):
        draft = self.draft
        if isinstance(outcome, Succeeded):
            draft.payment_outcome_token = outcome.reference
            draft.paid_snapshot = self._pending_snapshot
            draft.pending_intent_id = None
            self.pending_action = None
            return outcome

        if isinstance(outcome, RequiresAction):
            draft.pending_intent_id = outcome.intent_id
            self.pending_action = outcome
            logger.info("Payment requires customer action", extra=self._log_extra(intent_id=outcome.intent_id))
            return outcome

        draft.pending_intent_id = outcome.intent_id or draft.pending_intent_id
        self.pending_action = None
        logger.warning("Payment failed", extra=self._log_extra(intent_id=outcome.intent_id, reason=outcome.reason))
        raise PaymentFailed(outcome)

    async def complete_payment_action(self) -> CheckoutStep:
        """Re-check the payment after the customer finished the processor's challenge."""
        self._require_step(CheckoutStep.PAYMENT)
        self._require_idle()
        intent_id = self.draft.pending_intent_id
        if intent_id is None:
            raise StepPreconditionError("There is no payment awaiting confirmation", step=self.step)

        generation = self._generation
        self._in_flight = True
        try:
            outcome = await self._guard(self.payments.refresh(intent_id, self.session), generation)
            outcome = self._apply_outcome(outcome)
            if not isinstance(outcome, Succeeded):
                return self.step
        except CheckoutError as exc:
            self._record(exc)
            raise
        finally:
            self._in_flight = False

        self.step = CheckoutStep.REVIEW_CONFIRM
        self.last_error = None
        logger.info("Checkout step entered", extra=self._log_extra(intent_id=intent_id))
        return self.step

    def prev(self) -> CheckoutStep:
        if self.step in (None, CheckoutStep.CONFIRMED, CheckoutStep.ABANDONED):
            raise StepPreconditionError(step=self.step)
        if self._placing:
            raise Busy()
        self._bump()
        if self.step in NUMBERED_STEPS and self.step != CheckoutStep.CART_REVIEW:
            self.step = NUMBERED_STEPS[NUMBERED_STEPS.index(self.step) - 1]
        self.pending_action = None
        return self.step

    def go_to(self, step: CheckoutStep) -> CheckoutStep:
        """Jump back to an earlier numbered step. Forward jumps must go through next()."""
        step = CheckoutStep(step)
        if self.step not in NUMBERED_STEPS or self.step == CheckoutStep.CONFIRMED:
            raise StepPreconditionError(step=self.step)
        if step not in NUMBERED_STEPS or NUMBERED_STEPS.index(step) > NUMBERED_STEPS.index(self.step):
            raise StepPreconditionError(step=self.step)
        if self._placing:
            raise Busy()
        self._bump()
        self.step = step
        self.pending_action = None
        return self.step

    def abandon(self):
        if self.step == CheckoutStep.CONFIRMED:
            raise StepPreconditionError(step=self.step)
        if self._placing:
            raise Busy()
        self._bump()
        self.step = CheckoutStep.ABANDONED
        self.pending_action = None
        logger.info("Checkout abandoned", extra=self._log_extra())

    # --- Order ---

    async def place_order(self) -> Order:
        """
        Submit the order exactly once per call. A failure leaves the machine at
        REVIEW_CONFIRM with `last_error` set; nothing is retried automatically.
        """
        if self.step == CheckoutStep.CONFIRMED:
            return self.order
        self._require_step(CheckoutStep.REVIEW_CONFIRM)
        self._require_idle()

        generation = self._generation
        self._placing = True
        try:
            await self._verify_session(generation)
            await self._refresh_cart(generation)

            reviewed = self.draft.snapshot_hash()
            self._reprice()
            if self.draft.snapshot_hash() != reviewed:
                # The draft now holds the new items; they have to be reviewed before any retry
                self._bump()
                self.step = CheckoutStep.CART_REVIEW
                self.pending_action = None
                raise StepPreconditionError(
                    "Your cart changed since you reviewed it. Please review your order again.",
                    step=CheckoutStep.CART_REVIEW,
                )
            if not self.draft.payment_is_current:
                raise PaymentNotCompleted()

            outcome = Succeeded(reference=self.draft.payment_outcome_token)
            order = await self.assembler.assemble(self.draft, outcome, self.session)
        except CheckoutError as exc:
            self._record(exc)
            logger.warning("Order placement failed", extra=self._log_extra(reason=exc.code))
            raise
        finally:
            self._placing = False

        self.order = order
        self.step = CheckoutStep.CONFIRMED
        self.last_error = None
        logger.info("Checkout confirmed", extra=self._log_extra(order_id=order.id))
        return order
