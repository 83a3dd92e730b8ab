"""
Checkout error taxonomy.

Every error carries a human-readable `message` safe to show a customer and an
internal `code` for logs. Messages come from USER_MESSAGES, never from the
backend's text, so remote error codes do not leak into the UI.
"""
from enum import Enum
from typing import Dict, Optional

from pydantic import ValidationError


USER_MESSAGES = {
    "BAD_REQUEST": "Invalid request. Please check your input.",
    "UNAUTHENTICATED": "Please log in or continue as a guest to use your cart.",
    "FORBIDDEN": "You do not have permission to perform this action.",
    "NOT_FOUND": "The requested item could not be found.",
    "CONFLICT": "This request conflicts with a previous one. Please refresh and try again.",
    "VALIDATION": "Please check the highlighted fields.",
    "OUT_OF_STOCK": "Sorry, there is not enough stock for this product.",
    "PRODUCT_UNAVAILABLE": "This product is no longer available for purchase.",
    "COUPON_NOT_FOUND": "This coupon code is not valid.",
    "COUPON_EXPIRED": "This coupon has expired.",
    "COUPON_USAGE_LIMIT_REACHED": "This coupon has reached its usage limit.",
    "COUPON_MINIMUM_ORDER_NOT_MET": "Your order does not meet the minimum amount for this coupon.",
    "COUPON_ALREADY_APPLIED": "This coupon is already applied to your cart.",
    "COUPON_INVALID": "Your coupon is no longer valid for this order. Please re-apply it.",
    "PAYMENT_DECLINED": "Your payment was declined. Please use a different card.",
    "PAYMENT_UNCONFIRMED": (
        "We could not confirm your payment yet. "
        "Please wait and check again before paying a second time."
    ),
    "PAYMENT_MISMATCH": "Your payment does not match the order total. Please review your order.",
    "PAYMENT_REQUIRED": "Payment has not been completed for this order.",
    "ORDER_REJECTED": "We could not place your order. Please review your cart and try again.",
    "SERVICE_UNAVAILABLE": "Network error. Please check your connection and try again.",
    "RATE_LIMITED": "Too many requests. Please wait a moment and try again.",
    "BUSY": "Another update is still in progress. Please wait.",
    "EMPTY_CART": "Your cart is empty.",
    "STEP_INCOMPLETE": "Please complete this step before continuing.",
    "SUPERSEDED": "This request was replaced by a newer one.",
    "ORDER_NOT_CONFIRMED": (
        "Your payment was received but your order could not be confirmed. "
        "Please contact support; do not pay again."
    ),
    "UNKNOWN": "An error occurred. Please try again.",
}


def user_message(code: str) -> str:
    return USER_MESSAGES.get(code, USER_MESSAGES["UNKNOWN"])


class CheckoutError(Exception):
    code = "UNKNOWN"

    def __init__(self, message: Optional[str] = None, code: Optional[str] = None):
        if code:
            self.code = code
        self.message = message or user_message(self.code)
        super().__init__(self.message)


# --- Local input errors ---

class ValidationFailed(CheckoutError):
    code = "VALIDATION"

    def __init__(self, field_errors: Dict[str, str]):
        super().__init__()
        self.field_errors = field_errors

    @classmethod
    def from_pydantic(cls, exc: ValidationError, prefix: Optional[str] = None) -> "ValidationFailed":
        field_errors = {}
        for error in exc.errors():
            loc = [str(part) for part in error["loc"]]
            if prefix:
                loc.insert(0, prefix)
            key = ".".join(loc) or "__all__"
            msg = error["msg"]
            if msg.startswith("Value error, "):
                msg = msg[len("Value error, "):]
            elif error["type"] == "missing":
                msg = "This field is required"
            field_errors.setdefault(key, msg)
        return cls(field_errors)


# --- Remote rejections ---

class RemoteRejection(CheckoutError):
    code = "BAD_REQUEST"


class Unauthenticated(RemoteRejection):
    code = "UNAUTHENTICATED"


class NotFound(RemoteRejection):
    code = "NOT_FOUND"


class OutOfStock(RemoteRejection):
    code = "OUT_OF_STOCK"


class ProductUnavailable(RemoteRejection):
    code = "PRODUCT_UNAVAILABLE"


class RejectionReason(str, Enum):
    NOT_FOUND = "NOT_FOUND"
    EXPIRED = "EXPIRED"
    USAGE_LIMIT_REACHED = "USAGE_LIMIT_REACHED"
    MINIMUM_ORDER_NOT_MET = "MINIMUM_ORDER_NOT_MET"
    ALREADY_APPLIED = "ALREADY_APPLIED"


class CouponRejected(RemoteRejection):
    def __init__(self, reason: RejectionReason):
        self.reason = reason
        super().__init__(code=f"COUPON_{reason.value}")


class OrderRejected(RemoteRejection):
    code = "ORDER_REJECTED"


# --- Transient errors ---

class TransientError(CheckoutError):
    code = "SERVICE_UNAVAILABLE"


class ServiceUnavailable(TransientError):
    pass


# --- Orchestration errors ---

class Busy(CheckoutError):
    code = "BUSY"


class EmptyCartError(CheckoutError):
    code = "EMPTY_CART"

    def __init__(self, redirect_to: str = "cart"):
        super().__init__()
        self.redirect_to = redirect_to


class StepPreconditionError(CheckoutError):
    code = "STEP_INCOMPLETE"

    def __init__(self, message: Optional[str] = None, step=None):
        super().__init__(message)
        self.step = step


class Superseded(CheckoutError):
    code = "SUPERSEDED"


class PaymentFailed(CheckoutError):
    def __init__(self, outcome):
        self.outcome = outcome
        if outcome.declined:
            code = "PAYMENT_DECLINED"
        elif outcome.ambiguous:
            code = "PAYMENT_UNCONFIRMED"
        else:
            code = "SERVICE_UNAVAILABLE"
        super().__init__(code=code)

    @property
    def may_have_succeeded(self) -> bool:
        return self.outcome.ambiguous


class PaymentNotCompleted(CheckoutError):
    code = "PAYMENT_REQUIRED"


class AssemblyError(CheckoutError):
    def __init__(self, cause: CheckoutError, payment_captured: bool):
        self.cause = cause
        self.payment_captured = payment_captured
        if payment_captured:
            super().__init__(code="ORDER_NOT_CONFIRMED")
        else:
            super().__init__(message=cause.message, code=cause.code)

    @property
    def retryable(self) -> bool:
        return isinstance(self.cause, TransientError)


REJECTIONS_BY_CODE = {
    "UNAUTHENTICATED": Unauthenticated,
    "NOT_FOUND": NotFound,
    "OUT_OF_STOCK": OutOfStock,
    "PRODUCT_UNAVAILABLE": ProductUnavailable,
    "ORDER_REJECTED": OrderRejected,
    "PAYMENT_MISMATCH": OrderRejected,
    "PAYMENT_REQUIRED": OrderRejected,
    "COUPON_INVALID": OrderRejected,
}


def rejection_for(code: Optional[str]) -> RemoteRejection:
    """Map a backend error code to the typed rejection raised by clients."""
    if code and code.startswith("COUPON_"):
        reason = code[len("COUPON_"):]
        if reason in RejectionReason.__members__:
            return CouponRejected(RejectionReason(reason))
    if code in REJECTIONS_BY_CODE:
        return REJECTIONS_BY_CODE[code](code=code)
    return RemoteRejection(code=code or "BAD_REQUEST")
