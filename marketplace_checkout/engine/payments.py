"""
Payment coordination: payment intent creation with the payments service and
card confirmation with the external processor.

`pay()` never raises for payment problems; the result is always one of
Succeeded, RequiresAction or Failed. Only rejections that are not about the
payment itself (an expired session, for example) propagate as exceptions.
"""
import asyncio
import functools
import logging
from decimal import Decimal

from marketplace_checkout.engine.clients import PaymentsServiceClient, ProcessorClient
from marketplace_checkout.engine.errors import RemoteRejection, TransientError
from marketplace_checkout.engine.models import (
    Failed,
    PaymentSelection,
    RequiresAction,
    Session,
    Succeeded,
)
from marketplace_checkout.engine.pricing import to_minor_units

logger = logging.getLogger(__name__)

# Intent statuses that still accept a confirmation attempt
CONFIRMABLE = {"requires_payment_method", "requires_confirmation"}


def outcome_for(intent: dict):
    """Map a payment intent, as reported by the payments service, to an outcome."""
    intent_id = intent.get("id")
    status = intent.get("status")

    if status == "succeeded":
        return Succeeded(reference=intent_id)
    if status == "requires_action":
        next_action = intent.get("next_action") or {}
        return RequiresAction(intent_id=intent_id, next_action_url=next_action.get("redirect_url"))
    if status == "processing":
        return Failed(reason="processing", ambiguous=True, intent_id=intent_id)

    error = intent.get("last_payment_error")
    if status == "requires_payment_method" and error:
        return Failed(reason=error.get("code") or "card_declined", declined=True, intent_id=intent_id)
    if status == "canceled":
        return Failed(reason="canceled", intent_id=intent_id)
    return Failed(reason="not_confirmed", intent_id=intent_id)


class PaymentCoordinator:
    def __init__(self, payments: PaymentsServiceClient, processor: ProcessorClient, currency: str = "usd"):
        self.payments = payments
        self.processor = processor
        self.currency = currency
        # Processor confirmations still running, possibly for callers that were cancelled
        self._confirmations = set()

    async def pay(
        self,
        amount: Decimal,
        selection: PaymentSelection,
        billing_details: dict,
        session: Session,
        idempotency_key: str,
    ):
        if not selection.method.requires_upfront_capture:
            return Succeeded(reference=None)

        log_extra = {"idempotency_key": idempotency_key[:12], "user_id": session.user_id}

        try:
            intent = await self.payments.create_intent(
                session, to_minor_units(amount), self.currency, idempotency_key
            )
        except TransientError as exc:
            # Nothing was sent to the processor yet
            logger.warning("Payment intent creation failed", extra={**log_extra, "reason": exc.code})
            return Failed(reason=exc.code)

        intent_id = intent["id"]
        log_extra["intent_id"] = intent_id

        if intent.get("status") not in CONFIRMABLE:
            # Same snapshot paid for (or challenged) already; do not confirm twice
            outcome = outcome_for(intent)
            logger.info("Reusing existing payment intent", extra={**log_extra, "reason": outcome.status})
            return outcome

        log_extra["card_last4"] = selection.card.last4
        confirmation = asyncio.ensure_future(self.processor.confirm(
            intent_id,
            intent.get("client_secret"),
            selection.card.processor_payload(),
            billing_details,
        ))
        self._confirmations.add(confirmation)
        confirmation.add_done_callback(functools.partial(self._confirmation_finished, dict(log_extra)))
        try:
            # The charge must run to completion even if our caller goes away
            intent = await asyncio.shield(confirmation)
        except TransientError:
            logger.warning("Processor confirmation outcome unknown, reconciling", extra=log_extra)
            return await self.refresh(intent_id, session)
        except RemoteRejection as exc:
            logger.info("Processor rejected payment", extra={**log_extra, "reason": exc.code})
            return Failed(reason=exc.code, declined=True, intent_id=intent_id)

        outcome = outcome_for(intent)
        logger.info("Payment confirmation finished", extra={**log_extra, "reason": outcome.status})
        return outcome

    def _confirmation_finished(self, log_extra: dict, task: asyncio.Future):
        self._confirmations.discard(task)
        if task.cancelled():
            logger.warning("Processor confirmation cancelled", extra=log_extra)
            return
        exc = task.exception()
        if exc is not None:
            logger.warning("Processor confirmation raised", extra={
                **log_extra,
                "reason": getattr(exc, "code", type(exc).__name__),
            })
            return
        logger.info("Processor confirmation returned", extra={**log_extra, "reason": (task.result() or {}).get("status")})

    async def refresh(self, intent_id: str, session: Session):
        """Re-query an intent; an unreachable payments service leaves the outcome ambiguous."""
        try:
            intent = await self.payments.get_intent(session, intent_id)
        except TransientError:
            logger.error("Payment status unknown", extra={"intent_id": intent_id})
            return Failed(reason="SERVICE_UNAVAILABLE", ambiguous=True, intent_id=intent_id)
        return outcome_for(intent)
