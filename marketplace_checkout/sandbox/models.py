from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Dict, List, Optional, Tuple
import secrets
import uuid

from pydantic import BaseModel, Field

from marketplace_checkout.engine.models import (
    CartLineItem,
    CouponDescriptor,
    DiscountKind,
    PaymentMethod,
    SavedAddress,
    ShippingAddress,
    Variant,
)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_id(prefix: str = "") -> str:
    return f"{prefix}{uuid.uuid4().hex[:24]}"


class UserDB(BaseModel):
    id: str = Field(default_factory=new_id)
    email: Optional[str] = None
    password_hash: Optional[str] = None
    full_name: Optional[str] = None
    role: str = "guest"  # guest, customer
    addresses: List[SavedAddress] = []
    created_at: datetime = Field(default_factory=utcnow)


class ProductDB(BaseModel):
    id: str
    name: str
    price: Decimal
    stock: int
    is_active: bool = True


class CartItemDB(BaseModel):
    id: str = Field(default_factory=lambda: new_id("li_"))
    product_id: str
    variant: Optional[Variant] = None
    unit_price: Decimal  # Snapshot
    quantity: int
    name: Optional[str] = None

    def as_line_item(self) -> CartLineItem:
        return CartLineItem(**self.model_dump())


class CartDB(BaseModel):
    id: str = Field(default_factory=lambda: new_id("cart_"))
    user_id: str
    items: List[CartItemDB] = []
    coupon_code: Optional[str] = None
    version: int = 0
    updated_at: datetime = Field(default_factory=utcnow)

    def touch(self):
        self.version += 1
        self.updated_at = utcnow()

    def line_items(self) -> List[CartLineItem]:
        return [item.as_line_item() for item in self.items]

    def find(self, item_id: str) -> Optional[CartItemDB]:
        for item in self.items:
            if item.id == item_id:
                return item
        return None


class CouponDB(BaseModel):
    code: str
    discount_kind: DiscountKind
    discount_value: Decimal
    minimum_order_amount: Optional[Decimal] = None
    expires_at: Optional[datetime] = None
    usage_limit: Optional[int] = None
    used_count: int = 0
    is_active: bool = True

    def descriptor(self) -> CouponDescriptor:
        return CouponDescriptor(
            code=self.code,
            discount_kind=self.discount_kind,
            discount_value=self.discount_value,
            minimum_order_amount=self.minimum_order_amount,
        )


class PaymentIntentDB(BaseModel):
    id: str = Field(default_factory=lambda: new_id("pi_"))
    user_id: str
    idempotency_key: str
    amount: int  # minor units
    currency: str
    status: str = "requires_payment_method"
    client_secret: str = ""
    last_payment_error: Optional[dict] = None
    next_action: Optional[dict] = None
    card_last4: Optional[str] = None
    billing_details: Optional[dict] = None
    order_id: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)

    def model_post_init(self, __context):
        if not self.client_secret:
            self.client_secret = f"{self.id}_secret_{secrets.token_hex(8)}"


class OrderDB(BaseModel):
    id: str = Field(default_factory=new_id)
    order_number: str
    user_id: str
    idempotency_key: str
    items: List[CartLineItem]
    total_amount: Decimal
    shipping_address: ShippingAddress
    payment_method: PaymentMethod
    payment_reference: Optional[str] = None
    coupon_code: Optional[str] = None
    contact_email: Optional[str] = None
    status: str = "Processing"
    created_at: datetime = Field(default_factory=utcnow)
    estimated_delivery: Optional[datetime] = None


# --- Seed data ---

SEED_PRODUCTS = [
    ProductDB(id="p-tee", name="Classic Tee", price=Decimal("20.00"), stock=50),
    ProductDB(id="p-mug", name="Ceramic Mug", price=Decimal("12.50"), stock=100),
    ProductDB(id="p-hoodie", name="Zip Hoodie", price=Decimal("45.00"), stock=2),
    ProductDB(id="p-poster", name="Retro Poster", price=Decimal("8.99"), stock=0),
    ProductDB(id="p-vinyl", name="Limited Vinyl", price=Decimal("30.00"), stock=10, is_active=False),
]


def seed_coupons() -> List[CouponDB]:
    return [
        CouponDB(code="WELCOME10", discount_kind=DiscountKind.PERCENTAGE, discount_value=Decimal("0.10")),
        CouponDB(code="SAVE20", discount_kind=DiscountKind.PERCENTAGE, discount_value=Decimal("0.20")),
        CouponDB(
            code="FIVEOFF",
            discount_kind=DiscountKind.FIXED_AMOUNT,
            discount_value=Decimal("5.00"),
            minimum_order_amount=Decimal("25.00"),
        ),
        CouponDB(code="BIGSPENDER", discount_kind=DiscountKind.FIXED_AMOUNT, discount_value=Decimal("1000.00")),
        CouponDB(
            code="SUMMER21",
            discount_kind=DiscountKind.PERCENTAGE,
            discount_value=Decimal("0.15"),
            expires_at=utcnow() - timedelta(days=1),
        ),
        CouponDB(
            code="ONEUSE",
            discount_kind=DiscountKind.PERCENTAGE,
            discount_value=Decimal("0.50"),
            usage_limit=1,
            used_count=1,
        ),
    ]


class SandboxStore:
    """Everything the sandbox remembers. Lives as long as the app instance."""

    def __init__(self):
        self.users: Dict[str, UserDB] = {}
        self.products: Dict[str, ProductDB] = {}
        self.carts: Dict[str, CartDB] = {}
        self.coupons: Dict[str, CouponDB] = {}
        self.intents: Dict[str, PaymentIntentDB] = {}
        self.intents_by_key: Dict[Tuple[str, str], str] = {}
        self.orders: Dict[str, OrderDB] = {}
        self.orders_by_key: Dict[Tuple[str, str], str] = {}

    @classmethod
    def seeded(cls) -> "SandboxStore":
        store = cls()
        for product in SEED_PRODUCTS:
            store.products[product.id] = product.model_copy()
        for coupon in seed_coupons():
            store.coupons[coupon.code] = coupon
        return store

    def find_user_by_email(self, email: str) -> Optional[UserDB]:
        email = email.lower()
        for user in self.users.values():
            if user.email and user.email.lower() == email and user.role != "guest":
                return user
        return None

    def cart_for(self, user_id: str) -> CartDB:
        cart = self.carts.get(user_id)
        if cart is None:
            cart = CartDB(user_id=user_id)
            self.carts[user_id] = cart
        return cart

    def move_cart(self, from_user: str, to_user: str):
        cart = self.carts.pop(from_user, None)
        if cart is not None:
            cart.user_id = to_user
            self.carts[to_user] = cart
