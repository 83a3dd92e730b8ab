import logging

from fastapi import APIRouter, Depends, Request, status

from marketplace_checkout.sandbox.dependencies import get_current_user, get_store, idempotency_key
from marketplace_checkout.sandbox.models import PaymentIntentDB, SandboxStore, UserDB
from marketplace_checkout.sandbox.schemas import (
    IntentAuthenticate,
    IntentConfirm,
    IntentCreate,
    IntentResponse,
)
from marketplace_checkout.shared.security_config import limiter
from marketplace_checkout.shared.utils import (
    AppException,
    ConflictException,
    NotFoundException,
    SuccessResponse,
)

logger = logging.getLogger("checkout-sandbox")

router = APIRouter(prefix="/payments", tags=["payments"])
processor_router = APIRouter(prefix="/processor", tags=["processor"])

# Test card numbers and how the processor treats them
CARD_SUCCEEDS = "4242424242424242"
CARD_REQUIRES_ACTION = "4000002500003155"
CARD_DECLINED = "4000000000000002"
CARD_INSUFFICIENT_FUNDS = "4000000000009995"
CARD_RESPONSE_LOST = "4000000000000077"

DECLINES = {
    CARD_DECLINED: ("card_declined", "Your card was declined."),
    CARD_INSUFFICIENT_FUNDS: ("insufficient_funds", "Your card has insufficient funds."),
}


def intent_response(intent: PaymentIntentDB) -> IntentResponse:
    return IntentResponse(**intent.model_dump())


# --- Payments service ---

@router.post("/intents", response_model=SuccessResponse[IntentResponse])
@limiter.limit("20/minute")
async def create_intent(
    payload: IntentCreate,
    request: Request,
    key: str = Depends(idempotency_key),
    user: UserDB = Depends(get_current_user),
    store: SandboxStore = Depends(get_store),
):
    # Idempotency Check
    existing_id = store.intents_by_key.get((user.id, key))
    if existing_id:
        intent = store.intents[existing_id]
        if intent.amount != payload.amount or intent.currency != payload.currency.lower():
            raise ConflictException("Idempotency key reused with a different amount", code="CONFLICT")
        return SuccessResponse(data=intent_response(intent), message="Existing payment intent")

    intent = PaymentIntentDB(
        user_id=user.id,
        idempotency_key=key,
        amount=payload.amount,
        currency=payload.currency.lower(),
    )
    store.intents[intent.id] = intent
    store.intents_by_key[(user.id, key)] = intent.id
    logger.info("Payment intent created", extra={"intent_id": intent.id, "user_id": user.id})
    return SuccessResponse(data=intent_response(intent), message="Payment intent created")


@router.get("/intents/{intent_id}", response_model=SuccessResponse[IntentResponse])
async def get_intent(
    intent_id: str,
    user: UserDB = Depends(get_current_user),
    store: SandboxStore = Depends(get_store),
):
    intent = store.intents.get(intent_id)
    if intent is None or intent.user_id != user.id:
        raise NotFoundException("Payment intent not found")
    return SuccessResponse(data=intent_response(intent))


# --- Card processor ---

def _intent_for_secret(store: SandboxStore, intent_id: str, client_secret: str) -> PaymentIntentDB:
    intent = store.intents.get(intent_id)
    if intent is None:
        raise NotFoundException("No such payment intent")
    if intent.client_secret != client_secret:
        raise AppException(status.HTTP_403_FORBIDDEN, "Client secret does not match", code="FORBIDDEN")
    return intent


@processor_router.post("/payment_intents/{intent_id}/confirm", response_model=SuccessResponse[IntentResponse])
@limiter.limit("20/minute")
async def confirm_intent(
    intent_id: str,
    payload: IntentConfirm,
    request: Request,
    store: SandboxStore = Depends(get_store),
):
    intent = _intent_for_secret(store, intent_id, payload.client_secret)
    if intent.status not in ("requires_payment_method", "requires_confirmation"):
        return SuccessResponse(data=intent_response(intent), message=f"Payment intent is {intent.status}")

    card = payload.payment_method.card
    number = card.number.replace(" ", "")
    intent.card_last4 = number[-4:]
    intent.billing_details = payload.payment_method.billing_details
    intent.last_payment_error = None
    intent.next_action = None

    if number in DECLINES:
        code, message = DECLINES[number]
        intent.status = "requires_payment_method"
        intent.last_payment_error = {"code": code, "message": message}
    elif number == CARD_REQUIRES_ACTION:
        intent.status = "requires_action"
        intent.next_action = {
            "type": "redirect_to_url",
            "redirect_url": f"/processor/payment_intents/{intent.id}/authenticate",
        }
    else:
        intent.status = "succeeded"

    logger.info("Payment intent confirmed", extra={"intent_id": intent.id, "reason": intent.status})

    if number == CARD_RESPONSE_LOST:
        # Charged, but the caller never hears about it
        raise AppException(status.HTTP_503_SERVICE_UNAVAILABLE, "Processor timeout", code="SERVICE_UNAVAILABLE")

    return SuccessResponse(data=intent_response(intent))


@processor_router.post("/payment_intents/{intent_id}/authenticate", response_model=SuccessResponse[IntentResponse])
async def authenticate_intent(
    intent_id: str,
    payload: IntentAuthenticate,
    store: SandboxStore = Depends(get_store),
):
    intent = _intent_for_secret(store, intent_id, payload.client_secret)
    if intent.status != "requires_action":
        raise AppException(detail=f"Payment intent is {intent.status}", code="BAD_REQUEST")

    intent.next_action = None
    if payload.approve:
        intent.status = "succeeded"
    else:
        intent.status = "requires_payment_method"
        intent.last_payment_error = {
            "code": "authentication_failed",
            "message": "The customer did not complete authentication.",
        }
    return SuccessResponse(data=intent_response(intent))
