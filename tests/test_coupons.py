from decimal import Decimal

import pytest

from marketplace_checkout.engine.clients import CouponServiceClient
from marketplace_checkout.engine.coupons import CouponRejected, CouponValidator, RejectionReason, normalize_code
from marketplace_checkout.engine.errors import ServiceUnavailable, Unauthenticated, ValidationFailed, user_message
from marketplace_checkout.engine.models import DiscountKind, Session


@pytest.fixture
def validator(http, settings):
    return CouponValidator(CouponServiceClient(http, settings.API_BASE_URL))


@pytest.fixture
async def cart(make_cart_store, customer):
    cart_store = make_cart_store(customer)
    return await cart_store.add_item("p-tee", quantity=2)


async def test_valid_code_returns_descriptor(validator, cart, customer):
    descriptor = await validator.validate("SAVE20", cart, customer)

    assert descriptor.code == "SAVE20"
    assert descriptor.discount_kind == DiscountKind.PERCENTAGE
    assert descriptor.discount_value == Decimal("0.20")


async def test_code_is_normalised_before_lookup(validator, cart, customer):
    descriptor = await validator.validate("  welcome10 ", cart, customer)

    assert descriptor.code == "WELCOME10"


@pytest.mark.parametrize("code, reason", [
    ("NOPE", RejectionReason.NOT_FOUND),
    ("SUMMER21", RejectionReason.EXPIRED),
    ("ONEUSE", RejectionReason.USAGE_LIMIT_REACHED),
])
async def test_rejections_carry_reason(validator, cart, customer, code, reason):
    with pytest.raises(CouponRejected) as exc_info:
        await validator.validate(code, cart, customer)

    assert exc_info.value.reason == reason
    assert exc_info.value.code == f"COUPON_{reason.value}"


async def test_rejection_message_does_not_echo_code(validator, cart, customer):
    with pytest.raises(CouponRejected) as exc_info:
        await validator.validate("SECRET-CODE", cart, customer)

    assert exc_info.value.message == user_message("COUPON_NOT_FOUND")
    assert "SECRET-CODE" not in exc_info.value.message


async def test_validation_does_not_mutate_cart(validator, cart, customer, store):
    server_cart = store.cart_for(customer.user_id)
    version = server_cart.version

    await validator.validate("SAVE20", cart, customer)

    assert server_cart.coupon_code is None
    assert server_cart.version == version
    assert cart.applied_coupon is None


async def test_anonymous_session_is_refused(validator, cart, transport):
    with pytest.raises(Unauthenticated):
        await validator.validate("SAVE20", cart, Session.anonymous())

    assert transport.count("POST", "/coupons/validate") == 0


async def test_validation_is_not_retried(validator, cart, customer, transport):
    transport.fail("POST", "/coupons/validate", status=503)

    with pytest.raises(ServiceUnavailable):
        await validator.validate("SAVE20", cart, customer)

    assert transport.count("POST", "/coupons/validate") == 1


@pytest.mark.parametrize("raw", [None, "", "   ", "AB", "X" * 33, "SAVE 20", "SAVE20!", 20])
def test_malformed_codes(raw):
    with pytest.raises(ValidationFailed) as exc_info:
        normalize_code(raw)

    assert "coupon_code" in exc_info.value.field_errors


def test_normalize_code():
    assert normalize_code(" save-20_x ") == "SAVE-20_X"
