import asyncio
from decimal import Decimal

import pytest

from conftest import ACTION_CARD, DECLINED_CARD, GOOD_CARD, LOST_RESPONSE_CARD, NO_FUNDS_CARD, card
from marketplace_checkout.engine.errors import PaymentFailed
from marketplace_checkout.engine.models import Failed, PaymentSelection, RequiresAction, Succeeded
from marketplace_checkout.engine.payments import PaymentCoordinator, outcome_for

AMOUNT = Decimal("35.20")
BILLING = {"name": "Jane Buyer", "email": "buyer@example.com"}
CONFIRM_PATH = "/processor/payment_intents"


@pytest.fixture
def coordinator(payments_client, processor):
    return PaymentCoordinator(payments_client, processor)


def card_payment(number=GOOD_CARD):
    return PaymentSelection(method="card", card=card(number))


async def test_cash_on_delivery_needs_no_remote_calls(coordinator, customer, transport):
    before = len(transport.calls)

    outcome = await coordinator.pay(AMOUNT, PaymentSelection(method="cash_on_delivery"), BILLING, customer, "snap-1")

    assert outcome == Succeeded(reference=None)
    assert len(transport.calls) == before


async def test_card_payment_succeeds(coordinator, customer, store):
    outcome = await coordinator.pay(AMOUNT, card_payment(), BILLING, customer, "snap-1")

    assert isinstance(outcome, Succeeded)
    intent = store.intents[outcome.reference]
    assert intent.amount == 3520
    assert intent.status == "succeeded"
    assert intent.card_last4 == "4242"


async def test_card_never_sent_to_payments_service(coordinator, customer, store):
    await coordinator.pay(AMOUNT, card_payment(), BILLING, customer, "snap-1")

    intent = next(iter(store.intents.values()))
    assert GOOD_CARD not in intent.model_dump_json(exclude={"card_last4"})


async def test_requires_action_then_authenticated(coordinator, processor, customer, store):
    outcome = await coordinator.pay(AMOUNT, card_payment(ACTION_CARD), BILLING, customer, "snap-1")

    assert isinstance(outcome, RequiresAction)
    assert outcome.next_action_url.endswith("/authenticate")

    # Customer completes the challenge with the processor
    await processor.authenticate(outcome.intent_id, store.intents[outcome.intent_id].client_secret)

    refreshed = await coordinator.refresh(outcome.intent_id, customer)
    assert refreshed == Succeeded(reference=outcome.intent_id)


async def test_failed_authentication_is_a_decline(coordinator, processor, customer, store):
    outcome = await coordinator.pay(AMOUNT, card_payment(ACTION_CARD), BILLING, customer, "snap-1")
    await processor.authenticate(outcome.intent_id, store.intents[outcome.intent_id].client_secret, approve=False)

    refreshed = await coordinator.refresh(outcome.intent_id, customer)

    assert isinstance(refreshed, Failed)
    assert refreshed.declined
    assert refreshed.reason == "authentication_failed"


async def test_decline_then_retry_reuses_intent(coordinator, customer, store):
    declined = await coordinator.pay(AMOUNT, card_payment(DECLINED_CARD), BILLING, customer, "snap-1")

    assert isinstance(declined, Failed)
    assert declined.declined and not declined.ambiguous
    assert declined.reason == "card_declined"
    assert PaymentFailed(declined).code == "PAYMENT_DECLINED"

    retried = await coordinator.pay(AMOUNT, card_payment(GOOD_CARD), BILLING, customer, "snap-1")

    assert retried == Succeeded(reference=declined.intent_id)
    assert len(store.intents) == 1


async def test_insufficient_funds(coordinator, customer):
    outcome = await coordinator.pay(AMOUNT, card_payment(NO_FUNDS_CARD), BILLING, customer, "snap-1")

    assert isinstance(outcome, Failed)
    assert outcome.declined
    assert outcome.reason == "insufficient_funds"


async def test_lost_confirmation_is_reconciled(coordinator, customer, transport):
    outcome = await coordinator.pay(AMOUNT, card_payment(LOST_RESPONSE_CARD), BILLING, customer, "snap-1")

    assert isinstance(outcome, Succeeded)
    assert transport.count("POST", CONFIRM_PATH) == 1
    assert transport.count("GET", "/payments/intents") == 1


async def test_unreachable_status_is_ambiguous(coordinator, customer, transport, store):
    transport.fail("POST", CONFIRM_PATH, after_forward=True)
    transport.fail("GET", "/payments/intents", times=2)

    outcome = await coordinator.pay(AMOUNT, card_payment(), BILLING, customer, "snap-1")

    assert isinstance(outcome, Failed)
    assert outcome.ambiguous
    assert not outcome.declined
    error = PaymentFailed(outcome)
    assert error.code == "PAYMENT_UNCONFIRMED"
    assert error.may_have_succeeded

    # The charge did land; a later status check finds it
    assert await coordinator.refresh(outcome.intent_id, customer) == Succeeded(reference=outcome.intent_id)


async def test_intent_creation_failure_is_safe_to_retry(coordinator, customer, transport, store):
    transport.fail("POST", "/payments/intents")

    outcome = await coordinator.pay(AMOUNT, card_payment(), BILLING, customer, "snap-1")

    assert isinstance(outcome, Failed)
    assert not outcome.declined and not outcome.ambiguous
    assert PaymentFailed(outcome).code == "SERVICE_UNAVAILABLE"
    assert not store.intents
    assert transport.count("POST", CONFIRM_PATH) == 0


async def test_paying_same_snapshot_twice_charges_once(coordinator, customer, transport, store):
    first = await coordinator.pay(AMOUNT, card_payment(), BILLING, customer, "snap-1")
    second = await coordinator.pay(AMOUNT, card_payment(), BILLING, customer, "snap-1")

    assert first == second
    assert transport.count("POST", CONFIRM_PATH) == 1
    assert len(store.intents) == 1


async def test_new_snapshot_gets_new_intent(coordinator, customer, store):
    await coordinator.pay(AMOUNT, card_payment(), BILLING, customer, "snap-1")
    await coordinator.pay(Decimal("43.20"), card_payment(), BILLING, customer, "snap-2")

    assert sorted(intent.amount for intent in store.intents.values()) == [3520, 4320]


@pytest.mark.parametrize("intent, expected", [
    ({"id": "pi_1", "status": "processing"}, Failed(reason="processing", ambiguous=True, intent_id="pi_1")),
    ({"id": "pi_1", "status": "canceled"}, Failed(reason="canceled", intent_id="pi_1")),
    ({"id": "pi_1", "status": "requires_payment_method"}, Failed(reason="not_confirmed", intent_id="pi_1")),
])
def test_outcome_for_other_statuses(intent, expected):
    assert outcome_for(intent) == expected


async def started_confirmations(coordinator):
    for _ in range(200):
        if coordinator._confirmations:
            return set(coordinator._confirmations)
        await asyncio.sleep(0.005)
    raise AssertionError("confirmation never started")


async def test_cancelled_caller_does_not_stop_the_charge(coordinator, customer, transport, store):
    transport.delay("POST", CONFIRM_PATH, 0.05)

    paying = asyncio.create_task(coordinator.pay(AMOUNT, card_payment(), BILLING, customer, "snap-1"))
    confirmations = await started_confirmations(coordinator)
    paying.cancel()
    with pytest.raises(asyncio.CancelledError):
        await paying

    await asyncio.wait(confirmations)

    assert [intent.status for intent in store.intents.values()] == ["succeeded"]
    assert not coordinator._confirmations


async def test_detached_confirmation_failure_is_logged(coordinator, customer, transport, caplog):
    transport.delay("POST", CONFIRM_PATH, 0.05)
    transport.fail("POST", CONFIRM_PATH, after_forward=True)

    paying = asyncio.create_task(coordinator.pay(AMOUNT, card_payment(), BILLING, customer, "snap-1"))
    confirmations = await started_confirmations(coordinator)
    paying.cancel()
    with pytest.raises(asyncio.CancelledError):
        await paying

    await asyncio.wait(confirmations)

    records = [record for record in caplog.records if record.getMessage() == "Processor confirmation raised"]
    assert len(records) == 1
    assert records[0].reason == "SERVICE_UNAVAILABLE"
    assert records[0].card_last4 == "4242"
