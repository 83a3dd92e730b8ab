import asyncio
from datetime import date

import httpx
import pytest
from tenacity import wait_none

from marketplace_checkout.engine.cart_store import CartStore
from marketplace_checkout.engine.clients import (
    CartServiceClient,
    CouponServiceClient,
    IdentityClient,
    PaymentsServiceClient,
    ProcessorClient,
    ServiceClient,
)
from marketplace_checkout.engine.coupons import CouponValidator
from marketplace_checkout.engine.factory import build_checkout
from marketplace_checkout.engine.pricing import PricingEngine
from marketplace_checkout.sandbox.main import create_app
from marketplace_checkout.shared.utils import Settings

BASE_URL = "http://sandbox"

ADDRESS = {
    "first_name": "Jane",
    "last_name": "Buyer",
    "street": "1 Main St",
    "city": "Springfield",
    "state": "IL",
    "zip_code": "62701",
}

GOOD_CARD = "4242424242424242"
ACTION_CARD = "4000002500003155"
DECLINED_CARD = "4000000000000002"
NO_FUNDS_CARD = "4000000000009995"
LOST_RESPONSE_CARD = "4000000000000077"


def card(number: str = GOOD_CARD) -> dict:
    return {
        "cardholder_name": "Jane Buyer",
        "number": number,
        "exp_month": 12,
        "exp_year": date.today().year + 2,
        "cvc": "123",
    }


class FlakyTransport(httpx.AsyncBaseTransport):
    """
    Routes requests to the in-process sandbox and lets a test break selected
    calls: fail before they reach the app, lose the response after the app
    handled them, or slow them down.
    """

    def __init__(self, app):
        self.inner = httpx.ASGITransport(app=app)
        self.rules = []
        self.delays = []
        self.calls = []

    def fail(self, method: str, path: str, times: int = 1, status: int = None, after_forward: bool = False):
        self.rules.append({
            "method": method,
            "path": path,
            "times": times,
            "status": status,
            "after_forward": after_forward,
        })

    def delay(self, method: str, path: str, seconds: float):
        self.delays.append((method, path, seconds))

    def count(self, method: str, path: str) -> int:
        return len([1 for m, p in self.calls if m == method and p.startswith(path)])

    def _match(self, request):
        for rule in self.rules:
            if rule["times"] > 0 and rule["method"] == request.method and request.url.path.startswith(rule["path"]):
                rule["times"] -= 1
                return rule
        return None

    async def handle_async_request(self, request):
        self.calls.append((request.method, request.url.path))

        for method, path, seconds in self.delays:
            if method == request.method and request.url.path.startswith(path):
                await asyncio.sleep(seconds)

        rule = self._match(request)
        if rule and not rule["after_forward"]:
            if rule["status"]:
                return httpx.Response(
                    rule["status"],
                    json={"success": False, "error": "Service Unavailable", "code": "SERVICE_UNAVAILABLE"},
                )
            raise httpx.ConnectError("connection refused", request=request)

        response = await self.inner.handle_async_request(request)
        if rule:
            await response.aread()
            raise httpx.ReadTimeout("response lost", request=request)
        return response


@pytest.fixture(autouse=True)
def no_retry_wait(monkeypatch):
    monkeypatch.setattr(ServiceClient, "retry_wait", wait_none())


@pytest.fixture
def settings():
    return Settings(
        API_BASE_URL=BASE_URL,
        PROCESSOR_BASE_URL=f"{BASE_URL}/processor",
        RATE_LIMIT_ENABLED=False,
        SECRET_KEY="test-secret",
        READ_RETRY_ATTEMPTS=2,
    )


@pytest.fixture
def app(settings):
    return create_app(settings)


@pytest.fixture
def store(app):
    return app.state.store


@pytest.fixture
def transport(app):
    return FlakyTransport(app)


@pytest.fixture
async def http(transport):
    async with httpx.AsyncClient(transport=transport, base_url=BASE_URL) as client:
        yield client


@pytest.fixture
def identity(http, settings):
    return IdentityClient(http, settings.API_BASE_URL, read_attempts=settings.READ_RETRY_ATTEMPTS)


@pytest.fixture
def payments_client(http, settings):
    return PaymentsServiceClient(http, settings.API_BASE_URL, read_attempts=settings.READ_RETRY_ATTEMPTS)


@pytest.fixture
def processor(http, settings):
    return ProcessorClient(http, settings.PROCESSOR_BASE_URL)


@pytest.fixture
async def customer(identity):
    return await identity.register(None, "buyer@example.com", "Passw0rd!", "Jane Buyer")


@pytest.fixture
async def guest(identity):
    return await identity.start_guest()


@pytest.fixture
def make_cart_store(http, settings):
    def factory(session, policy="queue"):
        return CartStore(
            CartServiceClient(http, settings.API_BASE_URL, read_attempts=settings.READ_RETRY_ATTEMPTS),
            CouponValidator(CouponServiceClient(http, settings.API_BASE_URL)),
            PricingEngine.from_settings(settings),
            session,
            policy=policy,
        )
    return factory


@pytest.fixture
def make_checkout(http, settings):
    def factory(session):
        return build_checkout(session, settings, http_client=http)
    return factory


@pytest.fixture
async def checkout(make_checkout, customer):
    machine = make_checkout(customer)
    await machine.cart_store.add_item("p-tee", quantity=2)
    return machine


async def advance_to_payment(machine):
    await machine.begin()
    await machine.next()
    machine.set_shipping_address(ADDRESS)
    await machine.next()
    return machine


async def advance_to_review(machine, method="card", number=GOOD_CARD):
    await advance_to_payment(machine)
    machine.select_payment(method, card(number) if method == "card" else None)
    await machine.next()
    return machine
