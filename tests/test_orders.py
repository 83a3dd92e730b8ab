import pytest

from conftest import advance_to_review
from marketplace_checkout.engine.errors import AssemblyError, OutOfStock, PaymentNotCompleted, StepPreconditionError
from marketplace_checkout.engine.models import Failed, PaymentMethod, RequiresAction, Succeeded


@pytest.fixture
async def reviewed(checkout):
    return await advance_to_review(checkout)


def paid(machine):
    return Succeeded(reference=machine.draft.payment_outcome_token)


async def test_card_order_requires_succeeded_payment(reviewed, transport):
    assembler = reviewed.assembler

    with pytest.raises(PaymentNotCompleted):
        await assembler.assemble(reviewed.draft, Failed(reason="card_declined", declined=True), reviewed.session)
    with pytest.raises(PaymentNotCompleted):
        await assembler.assemble(reviewed.draft, RequiresAction(intent_id="pi_x"), reviewed.session)

    assert transport.count("POST", "/orders") == 0


async def test_draft_without_address_is_refused(reviewed):
    draft = reviewed.draft.model_copy(update={"shipping_address": None})

    with pytest.raises(StepPreconditionError):
        await reviewed.assembler.assemble(draft, paid(reviewed), reviewed.session)


async def test_order_carries_payment_reference(reviewed, store):
    order = await reviewed.assembler.assemble(reviewed.draft, paid(reviewed), reviewed.session)

    assert order.payment_method == PaymentMethod.CARD
    assert order.payment_reference == reviewed.draft.payment_outcome_token
    assert store.intents[order.payment_reference].order_id == order.id
    assert store.products["p-tee"].stock == 48
    assert store.cart_for(reviewed.session.user_id).items == []


async def test_double_submission_creates_one_order(reviewed, store):
    first = await reviewed.assembler.assemble(reviewed.draft, paid(reviewed), reviewed.session)
    second = await reviewed.assembler.assemble(reviewed.draft, paid(reviewed), reviewed.session)

    assert first.id == second.id
    assert len(store.orders) == 1
    assert store.products["p-tee"].stock == 48


async def test_lost_response_is_recovered_by_key(reviewed, transport, store):
    transport.fail("POST", "/orders", after_forward=True)

    order = await reviewed.assembler.assemble(reviewed.draft, paid(reviewed), reviewed.session)

    assert len(store.orders) == 1
    assert order.id in store.orders
    assert transport.count("GET", "/orders/by-key") == 1


async def test_unreachable_order_service_after_payment(reviewed, transport, store):
    transport.fail("POST", "/orders")

    with pytest.raises(AssemblyError) as exc_info:
        await reviewed.assembler.assemble(reviewed.draft, paid(reviewed), reviewed.session)

    error = exc_info.value
    assert error.payment_captured
    assert error.code == "ORDER_NOT_CONFIRMED"
    assert error.retryable
    assert "do not pay again" in error.message
    assert not store.orders
    # The cart is kept so the order can be retried
    assert store.cart_for(reviewed.session.user_id).items


async def test_stock_change_after_card_payment(reviewed, store):
    store.products["p-tee"].stock = 1

    with pytest.raises(AssemblyError) as exc_info:
        await reviewed.assembler.assemble(reviewed.draft, paid(reviewed), reviewed.session)

    assert exc_info.value.payment_captured
    assert exc_info.value.code == "ORDER_NOT_CONFIRMED"
    assert isinstance(exc_info.value.cause, OutOfStock)
    assert not exc_info.value.retryable


async def test_stock_change_with_cash_on_delivery(checkout, store):
    machine = await advance_to_review(checkout, method="cash_on_delivery")
    store.products["p-tee"].stock = 1

    with pytest.raises(AssemblyError) as exc_info:
        await machine.assembler.assemble(machine.draft, Succeeded(reference=None), machine.session)

    assert not exc_info.value.payment_captured
    assert exc_info.value.code == "OUT_OF_STOCK"


async def test_tampered_total_is_rejected(reviewed, store):
    draft = reviewed.draft.model_copy(
        update={"pricing": reviewed.draft.pricing.model_copy(update={"total": reviewed.draft.pricing.total - 1})}
    )

    with pytest.raises(AssemblyError) as exc_info:
        await reviewed.assembler.assemble(draft, paid(reviewed), reviewed.session)

    assert exc_info.value.cause.code == "PAYMENT_MISMATCH"
    assert not store.orders


async def test_cart_clear_failure_keeps_the_order(reviewed, transport, store):
    transport.fail("DELETE", "/cart")

    order = await reviewed.assembler.assemble(reviewed.draft, paid(reviewed), reviewed.session)

    assert order.id in store.orders
    assert store.cart_for(reviewed.session.user_id).items
