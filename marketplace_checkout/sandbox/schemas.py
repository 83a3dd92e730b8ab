from pydantic import BaseModel, Field, field_validator
from typing import Optional, List
from decimal import Decimal
from datetime import datetime

from marketplace_checkout.engine.models import (
    CouponDescriptor,
    PaymentMethod,
    SavedAddress,
    ShippingAddress,
    Variant,
)
from marketplace_checkout.shared.security_config import sanitize_input

# --- Identity ---

class GuestClaim(BaseModel):
    email: str

    @field_validator('email')
    def normalize_email(cls, v):
        return sanitize_input(v).lower()

class UserRegister(BaseModel):
    email: str
    password: str
    full_name: Optional[str] = None

    @field_validator('email')
    def normalize_email(cls, v):
        return sanitize_input(v).lower()

    @field_validator('full_name')
    def sanitize_name(cls, v):
        return sanitize_input(v)

class UserLogin(BaseModel):
    email: str
    password: str

class UserResponse(BaseModel):
    id: str
    email: Optional[str] = None
    full_name: Optional[str] = None
    role: str
    addresses: List[SavedAddress] = []

class Token(BaseModel):
    access_token: str
    token_type: str = "bearer"
    user: UserResponse

# --- Cart ---

class CartItemAdd(BaseModel):
    product_id: str
    variant: Optional[Variant] = None
    quantity: int = Field(..., gt=0)

class CartItemUpdate(BaseModel):
    quantity: int = Field(..., gt=0)

class CouponApply(BaseModel):
    code: str

    @field_validator('code')
    def normalize_code(cls, v):
        return v.strip().upper()

class CouponValidate(CouponApply):
    cart_id: Optional[str] = None
    cart_version: Optional[int] = None

class CartItemResponse(BaseModel):
    id: str
    product_id: str
    variant: Optional[Variant] = None
    unit_price: Decimal
    quantity: int
    name: Optional[str] = None

class CartResponse(BaseModel):
    id: str
    user_id: str
    items: List[CartItemResponse]
    applied_coupon: Optional[CouponDescriptor] = None
    version: int
    updated_at: datetime

# --- Payments ---

class IntentCreate(BaseModel):
    amount: int = Field(..., gt=0)
    currency: str = "usd"

class IntentResponse(BaseModel):
    id: str
    amount: int
    currency: str
    status: str
    client_secret: str
    last_payment_error: Optional[dict] = None
    next_action: Optional[dict] = None
    created_at: datetime

class CardIn(BaseModel):
    number: str
    exp_month: int
    exp_year: int
    cvc: str

class PaymentMethodIn(BaseModel):
    card: CardIn
    billing_details: dict = {}

class IntentConfirm(BaseModel):
    client_secret: str
    payment_method: PaymentMethodIn

class IntentAuthenticate(BaseModel):
    client_secret: str
    approve: bool = True

# --- Orders ---

class OrderItemIn(BaseModel):
    product_id: str
    variant: Optional[Variant] = None
    quantity: int = Field(..., gt=0)
    unit_price: Decimal

class OrderCreate(BaseModel):
    items: List[OrderItemIn]
    shipping_address: ShippingAddress
    payment_method: PaymentMethod
    payment_intent_id: Optional[str] = None
    coupon_code: Optional[str] = None
    expected_total: Decimal
    contact_email: Optional[str] = None

    @field_validator('contact_email')
    def sanitize_email(cls, v):
        return sanitize_input(v)

class OrderResponse(BaseModel):
    id: str
    order_number: str
    items: List[CartItemResponse]
    total_amount: Decimal
    shipping_address: ShippingAddress
    payment_method: PaymentMethod
    payment_reference: Optional[str] = None
    coupon_code: Optional[str] = None
    status: str
    created_at: datetime
    estimated_delivery: Optional[datetime] = None
