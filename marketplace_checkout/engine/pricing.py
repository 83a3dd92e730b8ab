"""
Pricing: turns cart lines, an optional coupon and the shipping/tax policies into
a PricedBreakdown. Pure; no I/O.

Tax is charged on the pre-discount subtotal and shipping is not taxed.
"""
from decimal import Decimal, ROUND_HALF_UP
from typing import Iterable, Optional

from marketplace_checkout.engine.models import (
    CENT,
    CartLineItem,
    CouponDescriptor,
    DiscountKind,
    PricedBreakdown,
    to_money,
)

ZERO = Decimal("0.00")


# --- Shipping policies ---

class FreeShipping:
    def __call__(self, subtotal: Decimal) -> Decimal:
        return ZERO

    def __repr__(self):
        return "FreeShipping()"


class FlatRateShipping:
    def __init__(self, fee: Decimal):
        self.fee = to_money(fee)
        if self.fee < 0:
            raise ValueError("shipping fee cannot be negative")

    def __call__(self, subtotal: Decimal) -> Decimal:
        return self.fee


class FreeShippingOver:
    """Free at or above `threshold`, `flat_fee` below it."""

    def __init__(self, threshold: Decimal, flat_fee: Decimal):
        self.threshold = to_money(threshold)
        self.flat_fee = to_money(flat_fee)
        if self.flat_fee < 0:
            raise ValueError("shipping fee cannot be negative")

    def __call__(self, subtotal: Decimal) -> Decimal:
        if subtotal >= self.threshold:
            return ZERO
        return self.flat_fee


# --- Tax policy ---

class TaxPolicy:
    def __init__(self, rate: Decimal, rounding: str = ROUND_HALF_UP):
        self.rate = Decimal(str(rate))
        self.rounding = rounding
        if self.rate < 0:
            raise ValueError("tax rate cannot be negative")

    def tax_for(self, taxable: Decimal) -> Decimal:
        return (taxable * self.rate).quantize(CENT, rounding=self.rounding)


# --- Pricing ---

def _check_items(items):
    for item in items:
        if item.quantity < 1:
            raise ValueError(f"line {item.id} has quantity {item.quantity}")
        if item.unit_price < 0:
            raise ValueError(f"line {item.id} has negative unit price")


def discount_for(subtotal: Decimal, coupon: Optional[CouponDescriptor]) -> Decimal:
    if coupon is None:
        return ZERO
    minimum = coupon.minimum_order_amount or ZERO
    if subtotal < minimum:
        return ZERO
    if coupon.discount_kind == DiscountKind.PERCENTAGE:
        return to_money(subtotal * coupon.discount_value)
    if coupon.discount_kind == DiscountKind.FIXED_AMOUNT:
        return min(to_money(coupon.discount_value), subtotal)
    raise ValueError(f"unknown discount kind {coupon.discount_kind!r}")


def price(
    items: Iterable[CartLineItem],
    coupon: Optional[CouponDescriptor],
    shipping_policy,
    tax_policy: TaxPolicy,
) -> PricedBreakdown:
    items = list(items)
    _check_items(items)

    subtotal = sum((item.unit_price * item.quantity for item in items), ZERO)
    subtotal = to_money(subtotal)
    shipping_cost = to_money(shipping_policy(subtotal))
    tax_amount = tax_policy.tax_for(subtotal)
    discount_amount = discount_for(subtotal, coupon)
    total = max(ZERO, subtotal + shipping_cost + tax_amount - discount_amount)

    return PricedBreakdown(
        subtotal=subtotal,
        shipping_cost=shipping_cost,
        tax_amount=tax_amount,
        discount_amount=discount_amount,
        total=to_money(total),
    )


def to_minor_units(amount: Decimal) -> int:
    return int((to_money(amount) * 100).to_integral_value(rounding=ROUND_HALF_UP))


class PricingEngine:
    """Binds the shipping and tax policies so callers only pass items and coupon."""

    def __init__(self, shipping_policy=None, tax_policy: Optional[TaxPolicy] = None):
        self.shipping_policy = shipping_policy or FreeShipping()
        self.tax_policy = tax_policy or TaxPolicy(Decimal("0.08"))

    @classmethod
    def from_settings(cls, config) -> "PricingEngine":
        if config.FREE_SHIPPING_THRESHOLD is not None:
            shipping = FreeShippingOver(config.FREE_SHIPPING_THRESHOLD, config.FLAT_SHIPPING_FEE)
        elif config.FLAT_SHIPPING_FEE:
            shipping = FlatRateShipping(config.FLAT_SHIPPING_FEE)
        else:
            shipping = FreeShipping()
        return cls(shipping, TaxPolicy(config.TAX_RATE))

    def price(self, items, coupon: Optional[CouponDescriptor] = None) -> PricedBreakdown:
        return price(items, coupon, self.shipping_policy, self.tax_policy)
