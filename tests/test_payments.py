import pytest

from clients.stripe import SignatureError
from models.entities.documents.credits import CarbonCredit
from models.entities.documents.processed_events import ProcessedEvent
from models.entities.documents.transactions import Transaction
from models.entities.documents.users import User
from models.errors import (
    InvalidStateError,
    NotAuthorizedError,
    RefundNotEligibleError,
    ValidationError,
)
from models.operations import payments
from models.operations.payments import (
    payment_create_checkout_session,
    payment_get_status,
    payment_handle_webhook,
    payment_process_refund,
)
from models.operations.credits import credit_commit_purchase
from models.operations.transactions import (
    transaction_cancel,
    transaction_create,
    transaction_fulfil,
    transaction_update_status,
)

from conftest import make_event, sign_payload


async def deliver(store, gateway, event_type, obj, event_id="evt_1"):
    payload = make_event(event_type, obj, event_id)
    return await payment_handle_webhook(store, gateway, payload, sign_payload(payload))


async def pay(store, gateway, transaction, intent_id="pi_1", event_id="evt_paid"):
    return await deliver(
        store,
        gateway,
        "payment_intent.succeeded",
        {"id": intent_id, "object": "payment_intent", "metadata": {"transactionId": transaction.id}},
        event_id,
    )


@pytest.mark.asyncio
async def test_purchase_scenario(store, gateway, buyer, seller, credit):
    transaction = await transaction_create(store, buyer.id, credit.id, 100)
    assert transaction.data.total_amount == 2550.00
    assert transaction.data.fees.platform_fee == 63.75
    assert transaction.data.fees.processing_fee == 73.95
    assert transaction.data.status == "pending"
    assert transaction.data.seller_id == seller.id

    # nothing is reserved until payment succeeds
    assert (await CarbonCredit.get(store, credit.id)).data.available_credits == 800

    assert await pay(store, gateway, transaction) == {"received": True}

    listing = await CarbonCredit.get(store, credit.id)
    assert listing.data.available_credits == 700
    assert listing.data.purchase_count == 1

    completed = await Transaction.get(store, transaction.id)
    assert completed.data.status == "completed"
    assert completed.data.payment.status == "completed"
    assert completed.data.payment.stripe_payment_intent_id == "pi_1"
    assert completed.data.delivery.status == "delivered"
    assert completed.data.inventory_committed
    assert len(completed.data.certificates) == 1

    refund = await payment_process_refund(store, gateway, transaction.id, seller.id, "seller", reason="changed mind")
    assert refund["amount"] == 2550.00
    assert gateway.refunds[0]["amount"] == 255000
    assert gateway.refunds[0]["payment_intent"] == "pi_1"

    refunded = await Transaction.get(store, transaction.id)
    assert refunded.data.status == "refunded"
    assert refunded.data.payment.status == "refunded"
    assert refunded.data.payment.refund_id == refund["refund_id"]
    assert (await CarbonCredit.get(store, credit.id)).data.available_credits == 800


@pytest.mark.asyncio
async def test_overbuy_is_rejected(store, buyer, credit):
    with pytest.raises(ValidationError, match="Insufficient credits"):
        await transaction_create(store, buyer.id, credit.id, 900)
    assert await Transaction.count(store) == 0


@pytest.mark.asyncio
async def test_cannot_buy_own_listing(store, seller, credit):
    with pytest.raises(ValidationError, match="your own"):
        await transaction_create(store, seller.id, credit.id, 1)


@pytest.mark.asyncio
async def test_replayed_success_event_is_ignored(store, gateway, buyer, credit):
    transaction = await transaction_create(store, buyer.id, credit.id, 100)
    await pay(store, gateway, transaction)

    assert await pay(store, gateway, transaction) == {"received": True, "duplicate": True}
    # a different event id for the same payment must not move inventory either
    assert await pay(store, gateway, transaction, event_id="evt_paid_again") == {"received": True}

    listing = await CarbonCredit.get(store, credit.id)
    assert listing.data.available_credits == 700
    assert listing.data.purchase_count == 1


@pytest.mark.asyncio
async def test_payment_resolved_by_intent_id(store, gateway, buyer, credit):
    transaction = await transaction_create(store, buyer.id, credit.id, 10)
    await deliver(
        store,
        gateway,
        "checkout.session.completed",
        {"id": "cs_1", "payment_intent": "pi_42", "metadata": {"transactionId": transaction.id}},
        "evt_checkout",
    )
    processing = await Transaction.get(store, transaction.id)
    assert processing.data.payment.status == "processing"
    assert processing.data.payment.stripe_payment_intent_id == "pi_42"

    await deliver(store, gateway, "payment_intent.succeeded", {"id": "pi_42", "metadata": {}}, "evt_paid")
    assert (await Transaction.get(store, transaction.id)).data.status == "completed"


@pytest.mark.asyncio
async def test_payment_for_oversold_listing_fails_delivery(store, gateway, buyer, credit):
    first = await transaction_create(store, buyer.id, credit.id, 500)
    second = await transaction_create(store, buyer.id, credit.id, 500)

    await pay(store, gateway, first, intent_id="pi_1", event_id="evt_1")
    await pay(store, gateway, second, intent_id="pi_2", event_id="evt_2")

    listing = await CarbonCredit.get(store, credit.id)
    assert listing.data.available_credits == 300
    assert listing.data.purchase_count == 1

    stranded = await Transaction.get(store, second.id)
    assert stranded.data.status == "processing"
    assert stranded.data.payment.status == "completed"
    assert stranded.data.delivery.status == "failed"
    assert not stranded.data.inventory_committed

    # refunding the undelivered order leaves the listing alone
    await payment_process_refund(store, gateway, second.id, credit.data.seller_id, "seller")
    assert (await Transaction.get(store, second.id)).data.status == "refunded"
    assert (await CarbonCredit.get(store, credit.id)).data.available_credits == 300


@pytest.mark.asyncio
async def test_payment_failure_cancels(store, gateway, buyer, credit):
    transaction = await transaction_create(store, buyer.id, credit.id, 10)
    await deliver(
        store,
        gateway,
        "payment_intent.payment_failed",
        {"id": "pi_9", "metadata": {"transactionId": transaction.id}},
        "evt_failed",
    )
    failed = await Transaction.get(store, transaction.id)
    assert failed.data.status == "cancelled"
    assert failed.data.payment.status == "failed"
    assert (await CarbonCredit.get(store, credit.id)).data.available_credits == 800


@pytest.mark.asyncio
async def test_late_failure_does_not_undo_completed_payment(store, gateway, buyer, credit):
    transaction = await transaction_create(store, buyer.id, credit.id, 10)
    await pay(store, gateway, transaction)
    await deliver(
        store,
        gateway,
        "payment_intent.payment_failed",
        {"id": "pi_1", "metadata": {"transactionId": transaction.id}},
        "evt_failed",
    )
    assert (await Transaction.get(store, transaction.id)).data.status == "completed"


@pytest.mark.asyncio
async def test_dispute_falls_back_to_gateway_metadata(store, gateway, buyer, credit):
    transaction = await transaction_create(store, buyer.id, credit.id, 10)
    gateway.intents["pi_7"] = {"id": "pi_7", "metadata": {"transactionId": transaction.id}}
    await deliver(
        store,
        gateway,
        "charge.dispute.created",
        {"id": "dp_1", "payment_intent": "pi_7", "reason": "fraudulent"},
        "evt_dispute",
    )
    disputed = await Transaction.get(store, transaction.id)
    assert disputed.data.dispute.is_disputed
    assert disputed.data.dispute.dispute_reason == "fraudulent"


@pytest.mark.asyncio
async def test_unknown_event_type_is_acknowledged(store, gateway):
    assert await deliver(store, gateway, "customer.created", {"id": "cus_1"}) == {"received": True}
    assert await ProcessedEvent.get(store, "evt_1") is None


@pytest.mark.asyncio
async def test_failed_handler_releases_event_claim(store, gateway, monkeypatch):
    async def broken(*args):
        raise InvalidStateError("boom")

    monkeypatch.setitem(payments.WEBHOOK_HANDLERS, "payment_intent.succeeded", broken)
    result = await deliver(store, gateway, "payment_intent.succeeded", {"id": "pi_1"}, "evt_retry")

    assert result == {"received": True}
    # released so that the redelivery is processed again
    assert await ProcessedEvent.get(store, "evt_retry") is None


@pytest.mark.asyncio
async def test_bad_signature_is_rejected(store, gateway):
    payload = make_event("payment_intent.succeeded", {"id": "pi_1"})
    with pytest.raises(SignatureError):
        await payment_handle_webhook(store, gateway, payload, sign_payload(payload, secret="whsec_wrong"))
    with pytest.raises(SignatureError):
        await payment_handle_webhook(store, gateway, payload, None)

    tampered = payload.replace(b"pi_1", b"pi_2")
    with pytest.raises(SignatureError):
        await payment_handle_webhook(store, gateway, tampered, sign_payload(payload))

    garbage = b"not an event"
    with pytest.raises(SignatureError):
        await payment_handle_webhook(store, gateway, garbage, sign_payload(garbage))


@pytest.mark.asyncio
async def test_checkout_session(store, gateway, buyer, credit):
    transaction = await transaction_create(store, buyer.id, credit.id, 100)
    session = await payment_create_checkout_session(
        store, gateway, transaction.id, buyer.id, "http://localhost:3000"
    )
    assert session == {"session_id": "cs_test_1", "url": "https://checkout.stripe.test/1"}

    sent = gateway.sessions[0]
    credits_item, fee_item = sent["line_items"]
    assert credits_item["price_data"]["unit_amount"] == 2550
    assert credits_item["quantity"] == 100
    assert fee_item["price_data"]["unit_amount"] == 6375
    assert fee_item["quantity"] == 1
    assert sent["metadata"] == {"transactionId": transaction.id, "userId": buyer.id}
    assert sent["success_url"] == "http://localhost:3000/payment/success?session_id={CHECKOUT_SESSION_ID}"
    assert sent["cancel_url"] == f"http://localhost:3000/payment/cancel?transaction_id={transaction.id}"

    # the Stripe customer is created once and remembered
    assert sent["customer"] == "cus_1"
    assert (await User.get(store, buyer.id)).data.stripe_customer_id == "cus_1"
    await payment_create_checkout_session(store, gateway, transaction.id, buyer.id, "http://localhost:3000")
    assert len(gateway.customers) == 1

    stored = await Transaction.get(store, transaction.id)
    assert stored.data.payment.stripe_session_id == "cs_test_2"


@pytest.mark.asyncio
async def test_checkout_session_guards(store, gateway, buyer, seller, credit):
    transaction = await transaction_create(store, buyer.id, credit.id, 10)
    with pytest.raises(NotAuthorizedError):
        await payment_create_checkout_session(store, gateway, transaction.id, seller.id, "http://x")

    await pay(store, gateway, transaction)
    with pytest.raises(InvalidStateError, match="not in pending"):
        await payment_create_checkout_session(store, gateway, transaction.id, buyer.id, "http://x")


@pytest.mark.asyncio
async def test_refund_guards(store, gateway, buyer, seller, credit):
    transaction = await transaction_create(store, buyer.id, credit.id, 10)
    with pytest.raises(RefundNotEligibleError):
        await payment_process_refund(store, gateway, transaction.id, seller.id, "seller")

    await pay(store, gateway, transaction)
    with pytest.raises(NotAuthorizedError):
        await payment_process_refund(store, gateway, transaction.id, buyer.id, "buyer")
    with pytest.raises(ValidationError):
        await payment_process_refund(store, gateway, transaction.id, seller.id, "seller", amount=10_000)

    refund = await payment_process_refund(store, gateway, transaction.id, "admin-1", "admin", amount=100.004)
    assert refund["amount"] == 100.00
    assert gateway.refunds[-1]["amount"] == 10000

    with pytest.raises(RefundNotEligibleError):
        await payment_process_refund(store, gateway, transaction.id, seller.id, "seller")


@pytest.mark.asyncio
async def test_payment_status(store, gateway, buyer, seller, credit):
    transaction = await transaction_create(store, buyer.id, credit.id, 10)
    status = await payment_get_status(store, gateway, transaction.id, buyer.id)
    assert status["payment_intent"] is None
    assert status["transaction"]["payment_status"] == "pending"

    await pay(store, gateway, transaction)
    status = await payment_get_status(store, gateway, transaction.id, seller.id)
    assert status["payment_intent"]["id"] == "pi_1"
    assert status["transaction"]["status"] == "completed"

    with pytest.raises(NotAuthorizedError):
        await payment_get_status(store, gateway, transaction.id, "stranger")



@pytest.mark.asyncio
async def test_paid_transaction_is_refunded_through_gateway_only(store, gateway, buyer, seller, credit):
    transaction = await transaction_create(store, buyer.id, credit.id, 100)
    await pay(store, gateway, transaction)

    with pytest.raises(RefundNotEligibleError):
        await transaction_update_status(store, transaction.id, seller.id, "refunded")
    unchanged = await Transaction.get(store, transaction.id)
    assert unchanged.data.status == "completed"
    assert unchanged.data.payment.status == "completed"
    assert (await CarbonCredit.get(store, credit.id)).data.available_credits == 700

    refund = await payment_process_refund(store, gateway, transaction.id, seller.id, "seller")
    refunded = await Transaction.get(store, transaction.id)
    assert refunded.data.status == "refunded"
    assert refunded.data.payment.status == "refunded"
    assert refunded.data.payment.refund_id == refund["refund_id"]
    assert refunded.data.payment.refund_amount == 2550.00
    assert len(gateway.refunds) == 1
    assert (await CarbonCredit.get(store, credit.id)).data.available_credits == 800


@pytest.mark.asyncio
async def test_undelivered_paid_transaction_is_refunded_not_cancelled(store, gateway, buyer, seller, credit):
    first = await transaction_create(store, buyer.id, credit.id, 500)
    second = await transaction_create(store, buyer.id, credit.id, 500)
    await pay(store, gateway, first, intent_id="pi_1", event_id="evt_1")
    await pay(store, gateway, second, intent_id="pi_2", event_id="evt_2")

    with pytest.raises(InvalidStateError, match="refunded instead of cancelled"):
        await transaction_cancel(store, second.id, buyer.id, "no longer needed")
    stranded = await Transaction.get(store, second.id)
    assert stranded.data.status == "processing"
    assert stranded.data.payment.status == "completed"

    await payment_process_refund(store, gateway, second.id, seller.id, "seller")
    refunded = await Transaction.get(store, second.id)
    assert refunded.data.status == "refunded"
    assert refunded.data.payment.status == "refunded"
    assert [r["payment_intent"] for r in gateway.refunds] == ["pi_2"]


@pytest.mark.asyncio
async def test_terminal_transaction_is_rejected_before_gateway_refund(store, gateway, buyer, seller, credit):
    transaction = await transaction_create(store, buyer.id, credit.id, 10)
    await pay(store, gateway, transaction)

    # a cancelled record that still carries a completed payment
    def cancel(t):
        t.data.status = "cancelled"
        return True

    await Transaction.mutate(store, transaction.id, cancel)

    with pytest.raises(RefundNotEligibleError):
        await payment_process_refund(store, gateway, transaction.id, seller.id, "seller")
    assert gateway.refunds == []


@pytest.mark.asyncio
async def test_unexpected_handler_failure_keeps_event_retryable(store, gateway, buyer, credit, monkeypatch):
    transaction = await transaction_create(store, buyer.id, credit.id, 100)
    read = store.get
    failed = []

    async def timing_out_get(collection, key):
        if collection == Transaction.collection() and not failed:
            failed.append(key)
            raise TimeoutError("read timed out")
        return await read(collection, key)

    monkeypatch.setattr(store, "get", timing_out_get)

    assert await pay(store, gateway, transaction) == {"received": True}
    assert failed == [transaction.id]
    assert await ProcessedEvent.get(store, "evt_paid") is None
    assert (await Transaction.get(store, transaction.id)).data.status == "pending"

    # the redelivered event is processed
    assert await pay(store, gateway, transaction) == {"received": True}
    assert (await Transaction.get(store, transaction.id)).data.status == "completed"
    assert (await CarbonCredit.get(store, credit.id)).data.available_credits == 700


@pytest.mark.asyncio
async def test_concurrent_fulfilment_takes_inventory_once(store, buyer, credit):
    stale = await transaction_create(store, buyer.id, credit.id, 100)

    # another fulfilment has committed inventory but not completed yet
    ok, _ = await credit_commit_purchase(store, credit.id, 100)
    assert ok

    def committed(t):
        t.data.status = "processing"
        t.data.payment.status = "completed"
        t.data.inventory_committed = True
        return True

    await Transaction.mutate(store, stale.id, committed)

    completed = await transaction_fulfil(store, stale)
    assert completed.data.status == "completed"
    assert completed.data.inventory_committed

    listing = await CarbonCredit.get(store, credit.id)
    assert listing.data.available_credits == 700
    assert listing.data.purchase_count == 1
