import logging
import re

from marketplace_checkout.engine.clients import CouponServiceClient
from marketplace_checkout.engine.errors import CouponRejected, RejectionReason, Unauthenticated, ValidationFailed
from marketplace_checkout.engine.models import Cart, CouponDescriptor, Session

logger = logging.getLogger(__name__)

COUPON_CODE_PATTERN = re.compile(r"^[A-Z0-9_-]{3,32}$")

__all__ = ["CouponValidator", "CouponRejected", "RejectionReason", "normalize_code"]


def normalize_code(code) -> str:
    """Strip and upper-case a code; raise ValidationFailed if it cannot be a coupon."""
    normalized = (code or "").strip().upper() if isinstance(code, str) else ""
    if not normalized:
        raise ValidationFailed({"coupon_code": "Please enter a coupon code"})
    if not COUPON_CODE_PATTERN.match(normalized):
        raise ValidationFailed({"coupon_code": "Coupon codes are 3-32 letters, digits, '-' or '_'"})
    return normalized


class CouponValidator:
    """
    Checks a code against a cart with the coupon service. Never mutates the cart;
    applying a validated coupon is CartStore's job.
    """

    def __init__(self, client: CouponServiceClient):
        self.client = client

    async def validate(self, code: str, cart: Cart, session: Session) -> CouponDescriptor:
        code = normalize_code(code)
        if not session.has_token:
            raise Unauthenticated()

        try:
            descriptor = await self.client.validate(session, code, cart)
        except CouponRejected as exc:
            logger.info("Coupon rejected", extra={"cart_id": cart.id, "reason": exc.reason.value})
            raise

        logger.info("Coupon validated", extra={"cart_id": cart.id, "cart_version": cart.version})
        return descriptor
