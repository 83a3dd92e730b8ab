"""
HTTP clients for the remote collaborators: identity, cart, coupons, payments,
the card processor and orders.

All clients speak the `{"success", "data", "message"}` envelope and translate
failures into the checkout error taxonomy:

- transport errors, timeouts, 429 and 5xx -> ServiceUnavailable
- 401 -> Unauthenticated
- any other error status -> the rejection named by the body's `code`

Only idempotent reads are retried.
"""
import logging
import time
import uuid
from typing import Any, Optional

import httpx
from tenacity import AsyncRetrying, retry_if_exception_type, stop_after_attempt, wait_exponential

from marketplace_checkout.engine.errors import (
    NotFound,
    ServiceUnavailable,
    Unauthenticated,
    rejection_for,
)
from marketplace_checkout.engine.models import (
    Cart,
    CouponDescriptor,
    Order,
    Session,
    SessionStatus,
    Variant,
)

logger = logging.getLogger(__name__)


class ServiceClient:
    name = "service"

    # Backoff between read attempts, seconds
    retry_wait = wait_exponential(multiplier=0.3, min=0.3, max=3)

    def __init__(self, http: httpx.AsyncClient, base_url: str, read_attempts: int = 3, timeout: float = 10.0):
        self.http = http
        self.base_url = base_url.rstrip("/")
        self.read_attempts = max(1, read_attempts)
        self.timeout = timeout

    def _headers(self, session: Optional[Session], extra: Optional[dict] = None) -> dict:
        headers = {"X-Request-ID": str(uuid.uuid4())}
        if session is not None and session.token:
            headers["Authorization"] = f"Bearer {session.token}"
        if extra:
            headers.update(extra)
        return headers

    async def _request(
        self,
        method: str,
        path: str,
        session: Optional[Session] = None,
        json: Optional[dict] = None,
        headers: Optional[dict] = None,
    ) -> Any:
        headers = self._headers(session, headers)
        request_id = headers["X-Request-ID"]

        start_time = time.time()
        logger.info("Calling Downstream Service", extra={
            "target": self.name,
            "path": path,
            "method": method,
            "request_id": request_id,
        })

        try:
            resp = await self.http.request(
                method,
                f"{self.base_url}{path}",
                json=json,
                headers=headers,
                timeout=self.timeout,
            )
        except httpx.RequestError as exc:
            logger.warning("Downstream Call Failed", extra={
                "target": self.name,
                "path": path,
                "request_id": request_id,
                "reason": type(exc).__name__,
            })
            raise ServiceUnavailable() from exc

        duration = (time.time() - start_time) * 1000
        logger.info("Downstream Call Completed", extra={
            "target": self.name,
            "path": path,
            "status_code": resp.status_code,
            "duration_ms": round(duration, 2),
            "request_id": request_id,
        })

        return self._unwrap(resp)

    def _unwrap(self, resp: httpx.Response) -> Any:
        if resp.status_code == 429 or resp.status_code >= 500:
            raise ServiceUnavailable()

        try:
            body = resp.json()
        except ValueError:
            body = {}

        if resp.status_code == 401:
            raise Unauthenticated()
        if resp.status_code >= 400 or not body.get("success", False):
            raise rejection_for(body.get("code"))

        return body.get("data")

    async def _read(self, path: str, session: Optional[Session] = None) -> Any:
        async for attempt in AsyncRetrying(
            reraise=True,
            stop=stop_after_attempt(self.read_attempts),
            wait=self.retry_wait,
            retry=retry_if_exception_type(ServiceUnavailable),
        ):
            with attempt:
                return await self._request("GET", path, session)


# --- Identity ---

def _session_from(data: dict) -> Session:
    user = data.get("user") or {}
    status = SessionStatus.GUEST if user.get("role") == "guest" else SessionStatus.AUTHENTICATED
    return Session(
        status=status,
        token=data.get("access_token"),
        user_id=user.get("id"),
        email=user.get("email"),
        name=user.get("full_name"),
        saved_addresses=tuple(user.get("addresses") or ()),
    )


class IdentityClient(ServiceClient):
    name = "identity"

    async def start_guest(self) -> Session:
        data = await self._request("POST", "/auth/guest")
        return _session_from(data)

    async def claim_guest(self, session: Session, email: str) -> Session:
        data = await self._request("POST", "/auth/guest/claim", session, json={"email": email})
        return _session_from(data)

    async def register(self, session: Optional[Session], email: str, password: str, full_name: Optional[str] = None) -> Session:
        payload = {"email": email, "password": password, "full_name": full_name}
        data = await self._request("POST", "/auth/register", session, json=payload)
        return _session_from(data)

    async def login(self, email: str, password: str) -> Session:
        data = await self._request("POST", "/auth/login", json={"email": email, "password": password})
        return _session_from(data)

    async def verify(self, session: Session) -> Session:
        """Confirm the token is still accepted; returns the session as the identity service sees it."""
        if not session.has_token:
            raise Unauthenticated()
        user = await self._read("/auth/verify", session)
        return _session_from({"access_token": session.token, "user": user})

    async def save_address(self, session: Session, address: dict) -> Session:
        user = await self._request("POST", "/auth/addresses", session, json=address)
        return _session_from({"access_token": session.token, "user": user})


# --- Cart ---

class CartServiceClient(ServiceClient):
    name = "cart"

    async def fetch(self, session: Session) -> Cart:
        return Cart.model_validate(await self._read("/cart", session))

    async def add_item(self, session: Session, product_id: str, variant: Optional[Variant], quantity: int) -> Cart:
        payload = {
            "product_id": product_id,
            "variant": variant.model_dump() if variant else None,
            "quantity": quantity,
        }
        return Cart.model_validate(await self._request("POST", "/cart/items", session, json=payload))

    async def update_item(self, session: Session, item_id: str, quantity: int) -> Cart:
        data = await self._request("PUT", f"/cart/items/{item_id}", session, json={"quantity": quantity})
        return Cart.model_validate(data)

    async def remove_item(self, session: Session, item_id: str) -> Cart:
        return Cart.model_validate(await self._request("DELETE", f"/cart/items/{item_id}", session))

    async def clear(self, session: Session) -> Cart:
        return Cart.model_validate(await self._request("DELETE", "/cart", session))

    async def set_coupon(self, session: Session, code: str) -> Cart:
        return Cart.model_validate(await self._request("PUT", "/cart/coupon", session, json={"code": code}))

    async def remove_coupon(self, session: Session) -> Cart:
        return Cart.model_validate(await self._request("DELETE", "/cart/coupon", session))


# --- Coupons ---

class CouponServiceClient(ServiceClient):
    name = "coupons"

    async def validate(self, session: Session, code: str, cart: Cart) -> CouponDescriptor:
        payload = {"code": code, "cart_id": cart.id, "cart_version": cart.version}
        data = await self._request("POST", "/coupons/validate", session, json=payload)
        return CouponDescriptor.model_validate(data)


# --- Payments ---

class PaymentsServiceClient(ServiceClient):
    name = "payments"

    async def create_intent(self, session: Session, amount: int, currency: str, idempotency_key: str) -> dict:
        payload = {"amount": amount, "currency": currency}
        return await self._request(
            "POST",
            "/payments/intents",
            session,
            json=payload,
            headers={"Idempotency-Key": idempotency_key},
        )

    async def get_intent(self, session: Session, intent_id: str) -> dict:
        return await self._read(f"/payments/intents/{intent_id}", session)


class ProcessorClient(ServiceClient):
    """The external card processor. Card data is only ever sent here."""
    name = "processor"

    async def confirm(self, intent_id: str, client_secret: str, card: dict, billing_details: dict) -> dict:
        payload = {
            "client_secret": client_secret,
            "payment_method": {"card": card, "billing_details": billing_details},
        }
        return await self._request("POST", f"/payment_intents/{intent_id}/confirm", json=payload)

    async def authenticate(self, intent_id: str, client_secret: str, approve: bool = True) -> dict:
        payload = {"client_secret": client_secret, "approve": approve}
        return await self._request("POST", f"/payment_intents/{intent_id}/authenticate", json=payload)


# --- Orders ---

def order_payload(draft, reference: Optional[str]) -> dict:
    return {
        "items": [
            {
                "product_id": item.product_id,
                "variant": item.variant.model_dump() if item.variant else None,
                "quantity": item.quantity,
                "unit_price": str(item.unit_price),
            }
            for item in draft.items
        ],
        "shipping_address": draft.shipping_address.model_dump(),
        "payment_method": draft.payment.method.value,
        "payment_intent_id": reference,
        "coupon_code": draft.coupon.code if draft.coupon else None,
        "expected_total": str(draft.pricing.total),
        "contact_email": draft.contact_email,
    }


class OrdersServiceClient(ServiceClient):
    name = "orders"

    async def create(self, session: Session, payload: dict, idempotency_key: str) -> Order:
        data = await self._request(
            "POST",
            "/orders",
            session,
            json=payload,
            headers={"Idempotency-Key": idempotency_key},
        )
        return Order.model_validate(data)

    async def find_by_key(self, session: Session, idempotency_key: str) -> Optional[Order]:
        try:
            data = await self._read(f"/orders/by-key/{idempotency_key}", session)
        except NotFound:
            return None
        return Order.model_validate(data)
