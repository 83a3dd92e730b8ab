import hashlib
import json
import re
from datetime import date, datetime
from decimal import Decimal, ROUND_HALF_UP
from enum import Enum
from typing import Annotated, Optional, List, Tuple, Union, Literal

from pydantic import BaseModel, ConfigDict, Field, SecretStr, field_validator, model_validator

from marketplace_checkout.shared.security_config import sanitize_input

CENT = Decimal("0.01")


def to_money(value) -> Decimal:
    """Quantise any numeric input to cents without passing through float."""
    if isinstance(value, float):
        value = repr(value)
    return Decimal(str(value)).quantize(CENT, rounding=ROUND_HALF_UP)


def _digest(payload) -> str:
    raw = json.dumps(payload, sort_keys=True, separators=(",", ":"), default=str)
    return hashlib.sha256(raw.encode("utf-8")).hexdigest()


# --- Session ---

REQUIRED_ADDRESS_MESSAGES = {
    "first_name": "First name is required",
    "last_name": "Last name is required",
    "street": "Street address is required",
    "city": "City is required",
    "state": "State is required",
    "zip_code": "ZIP code is required",
    "country": "Country is required",
}


def _required_address_field(value, field_name: str):
    value = sanitize_input(value) if isinstance(value, str) else value
    if not value:
        raise ValueError(REQUIRED_ADDRESS_MESSAGES[field_name])
    return value


class SavedAddress(BaseModel):
    """An address kept on the customer's account. Names come from the account, not the address."""
    model_config = ConfigDict(frozen=True)

    street: str
    city: str
    state: str
    zip_code: str
    country: str = "United States"
    is_default: bool = False

    @field_validator("street", "city", "state", "zip_code", "country", mode="before")
    def required_and_clean(cls, v, info):
        return _required_address_field(v, info.field_name)

    def shipping_fields(self) -> dict:
        return self.model_dump(exclude={"is_default"})


class SessionStatus(str, Enum):
    ANONYMOUS = "anonymous"
    GUEST = "guest"
    AUTHENTICATED = "authenticated"


class Session(BaseModel):
    model_config = ConfigDict(frozen=True)

    status: SessionStatus = SessionStatus.ANONYMOUS
    token: Optional[str] = None
    user_id: Optional[str] = None
    email: Optional[str] = None
    name: Optional[str] = None
    saved_addresses: Tuple[SavedAddress, ...] = ()

    @property
    def has_token(self) -> bool:
        return self.status != SessionStatus.ANONYMOUS and bool(self.token)

    @property
    def is_guest(self) -> bool:
        return self.status == SessionStatus.GUEST

    @property
    def default_address(self) -> Optional[SavedAddress]:
        for address in self.saved_addresses:
            if address.is_default:
                return address
        return self.saved_addresses[0] if self.saved_addresses else None

    @classmethod
    def anonymous(cls) -> "Session":
        return cls()


# --- Cart ---

class Variant(BaseModel):
    model_config = ConfigDict(frozen=True)

    size: Optional[str] = None
    color: Optional[str] = None


class CartLineItem(BaseModel):
    id: str
    product_id: str
    variant: Optional[Variant] = None
    unit_price: Decimal = Field(..., ge=0)
    quantity: int = Field(..., ge=1)
    name: Optional[str] = None

    @field_validator("unit_price")
    def quantise_price(cls, v):
        return to_money(v)

    def fingerprint_fields(self) -> dict:
        return {
            "id": self.id,
            "product_id": self.product_id,
            "variant": self.variant.model_dump() if self.variant else None,
            "unit_price": str(self.unit_price),
            "quantity": self.quantity,
        }


class DiscountKind(str, Enum):
    PERCENTAGE = "percentage"
    FIXED_AMOUNT = "fixed_amount"


class CouponDescriptor(BaseModel):
    model_config = ConfigDict(frozen=True)

    code: str
    discount_kind: DiscountKind
    discount_value: Decimal = Field(..., ge=0)
    minimum_order_amount: Optional[Decimal] = Field(None, ge=0)

    @model_validator(mode="after")
    def check_percentage_range(self):
        if self.discount_kind == DiscountKind.PERCENTAGE and self.discount_value > 1:
            raise ValueError("percentage discounts are fractions between 0 and 1")
        return self


class Cart(BaseModel):
    id: Optional[str] = None
    items: List[CartLineItem] = []
    applied_coupon: Optional[CouponDescriptor] = None
    version: int = 0

    @property
    def is_empty(self) -> bool:
        return not self.items

    @property
    def item_count(self) -> int:
        return sum(item.quantity for item in self.items)

    def fingerprint(self) -> str:
        return _digest([item.fingerprint_fields() for item in self.items])


# --- Checkout inputs ---

class ShippingAddress(BaseModel):
    model_config = ConfigDict(frozen=True)

    first_name: str
    last_name: str
    street: str
    city: str
    state: str
    zip_code: str
    country: str = "United States"
    phone: Optional[str] = None

    @field_validator("first_name", "last_name", "street", "city", "state", "zip_code", "country", mode="before")
    def required_and_clean(cls, v, info):
        return _required_address_field(v, info.field_name)

    @field_validator("phone")
    def clean_phone(cls, v):
        return sanitize_input(v) or None


class PaymentMethod(str, Enum):
    CARD = "card"
    CASH_ON_DELIVERY = "cash_on_delivery"
    PAYPAL = "paypal"

    @property
    def requires_upfront_capture(self) -> bool:
        return self == PaymentMethod.CARD


class CardDetails(BaseModel):
    model_config = ConfigDict(frozen=True)

    cardholder_name: str
    number: SecretStr
    exp_month: int
    exp_year: int
    cvc: SecretStr

    @field_validator("cardholder_name", mode="before")
    def name_required(cls, v):
        v = sanitize_input(v) if isinstance(v, str) else v
        if not v:
            raise ValueError("Name on card is required")
        return v

    @field_validator("number", mode="before")
    def sixteen_digits(cls, v):
        raw = v.get_secret_value() if isinstance(v, SecretStr) else str(v or "")
        digits = re.sub(r"\s", "", raw)
        if not re.fullmatch(r"\d{16}", digits):
            raise ValueError("Card number must be 16 digits")
        return digits

    @field_validator("cvc", mode="before")
    def cvc_digits(cls, v):
        raw = v.get_secret_value() if isinstance(v, SecretStr) else str(v or "")
        if not re.fullmatch(r"\d{3,4}", raw):
            raise ValueError("CVC must be 3 or 4 digits")
        return raw

    @field_validator("exp_month")
    def month_range(cls, v):
        if not 1 <= v <= 12:
            raise ValueError("Expiration month must be between 1 and 12")
        return v

    @model_validator(mode="after")
    def not_expired(self):
        today = date.today()
        if (self.exp_year, self.exp_month) < (today.year, today.month):
            raise ValueError("Card has expired")
        return self

    @property
    def last4(self) -> str:
        return self.number.get_secret_value()[-4:]

    def processor_payload(self) -> dict:
        return {
            "number": self.number.get_secret_value(),
            "exp_month": self.exp_month,
            "exp_year": self.exp_year,
            "cvc": self.cvc.get_secret_value(),
        }


class PaymentSelection(BaseModel):
    model_config = ConfigDict(frozen=True)

    method: PaymentMethod
    card: Optional[CardDetails] = None

    @model_validator(mode="after")
    def card_matches_method(self):
        if self.method == PaymentMethod.CARD and self.card is None:
            raise ValueError("Card details are required for card payments")
        if self.method != PaymentMethod.CARD and self.card is not None:
            raise ValueError("Card details are only accepted for card payments")
        return self


# --- Pricing ---

class PricedBreakdown(BaseModel):
    model_config = ConfigDict(frozen=True)

    subtotal: Decimal
    shipping_cost: Decimal
    tax_amount: Decimal
    discount_amount: Decimal
    total: Decimal


# --- Draft & Order ---

class OrderDraft(BaseModel):
    """
    In-progress accumulation of checkout inputs.

    Only the checkout state machine mutates a draft. `paid_snapshot` records the
    snapshot hash the payment token was obtained for, so a token cannot be
    reused after the cart, coupon or method changed.
    """
    model_config = ConfigDict(validate_assignment=True)

    items: List[CartLineItem]
    cart_fingerprint: str
    pricing: PricedBreakdown
    shipping_address: Optional[ShippingAddress] = None
    payment: Optional[PaymentSelection] = None
    coupon: Optional[CouponDescriptor] = None
    contact_email: Optional[str] = None
    payment_outcome_token: Optional[str] = None
    pending_intent_id: Optional[str] = None
    paid_snapshot: Optional[str] = None

    def snapshot_hash(self) -> str:
        return _digest({
            "items": [item.fingerprint_fields() for item in self.items],
            "coupon": self.coupon.code if self.coupon else None,
            "total": str(self.pricing.total),
            "method": self.payment.method.value if self.payment else None,
        })

    def order_key(self) -> str:
        return _digest({
            "snapshot": self.snapshot_hash(),
            "shipping_address": self.shipping_address.model_dump() if self.shipping_address else None,
            "payment_reference": self.payment_outcome_token,
        })

    @property
    def payment_is_current(self) -> bool:
        if self.payment is None:
            return False
        if not self.payment.method.requires_upfront_capture:
            return True
        return bool(self.payment_outcome_token) and self.paid_snapshot == self.snapshot_hash()


class Order(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    order_number: str
    items: List[CartLineItem]
    total_amount: Decimal
    shipping_address: ShippingAddress
    payment_method: PaymentMethod
    payment_reference: Optional[str] = None
    coupon_code: Optional[str] = None
    status: str = "Processing"
    created_at: datetime
    estimated_delivery: Optional[datetime] = None


# --- Payment outcome ---

class Succeeded(BaseModel):
    model_config = ConfigDict(frozen=True)

    status: Literal["succeeded"] = "succeeded"
    reference: Optional[str] = None


class RequiresAction(BaseModel):
    model_config = ConfigDict(frozen=True)

    status: Literal["requires_action"] = "requires_action"
    intent_id: str
    next_action_url: Optional[str] = None


class Failed(BaseModel):
    """
    `declined`: the processor refused the card, the customer must change input.
    `ambiguous`: the charge may have gone through remotely; reconcile before paying again.
    Neither flag: nothing was charged, retrying is safe.
    """
    model_config = ConfigDict(frozen=True)

    status: Literal["failed"] = "failed"
    reason: str
    declined: bool = False
    ambiguous: bool = False
    intent_id: Optional[str] = None


PaymentOutcome = Annotated[Union[Succeeded, RequiresAction, Failed], Field(discriminator="status")]
