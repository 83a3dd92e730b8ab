from typing import Optional

import httpx

from marketplace_checkout.engine.cart_store import CartStore
from marketplace_checkout.engine.checkout import CheckoutStateMachine
from marketplace_checkout.engine.clients import (
    CartServiceClient,
    CouponServiceClient,
    IdentityClient,
    OrdersServiceClient,
    PaymentsServiceClient,
    ProcessorClient,
)
from marketplace_checkout.engine.coupons import CouponValidator
from marketplace_checkout.engine.models import Session
from marketplace_checkout.engine.orders import OrderAssembler
from marketplace_checkout.engine.payments import PaymentCoordinator
from marketplace_checkout.engine.pricing import PricingEngine
from marketplace_checkout.shared.utils import Settings, settings as default_settings


def build_checkout(
    session: Session,
    settings: Optional[Settings] = None,
    http_client: Optional[httpx.AsyncClient] = None,
    processor_http_client: Optional[httpx.AsyncClient] = None,
) -> CheckoutStateMachine:
    """
    Wire a checkout for one session. The caller owns the HTTP clients and
    closes them; the processor may live behind its own client.
    """
    config = settings or default_settings
    http = http_client or httpx.AsyncClient(timeout=config.HTTP_TIMEOUT)
    processor_http = processor_http_client or http

    def client(cls, base_url):
        return cls(
            http if cls is not ProcessorClient else processor_http,
            base_url,
            read_attempts=config.READ_RETRY_ATTEMPTS,
            timeout=config.HTTP_TIMEOUT,
        )

    pricing = PricingEngine.from_settings(config)
    validator = CouponValidator(client(CouponServiceClient, config.API_BASE_URL))
    cart_store = CartStore(
        client(CartServiceClient, config.API_BASE_URL),
        validator,
        pricing,
        session,
        policy=config.CART_MUTATION_POLICY,
    )
    payments = PaymentCoordinator(
        client(PaymentsServiceClient, config.API_BASE_URL),
        client(ProcessorClient, config.PROCESSOR_BASE_URL),
        currency=config.CURRENCY,
    )
    assembler = OrderAssembler(client(OrdersServiceClient, config.API_BASE_URL), cart_store)

    return CheckoutStateMachine(
        session,
        cart_store,
        client(IdentityClient, config.API_BASE_URL),
        payments,
        assembler,
    )
