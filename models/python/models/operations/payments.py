"""Stripe checkout, webhook reconciliation and refunds.

The gateway is passed in by the caller. Every webhook event id is claimed in
``processed_events`` before its side effects run, so a redelivered event is
acknowledged without touching the transaction or the listing again.
"""
import logging
from typing import Any, Awaitable, Callable, Dict, Optional

from clients.store import DocumentStore
from clients.stripe import PaymentGatewayError, StripeClient

from models.entities.documents.credits import CarbonCredit
from models.entities.documents.transactions import Transaction
from models.errors import (
    InvalidStateError,
    MarketplaceError,
    NotAuthorizedError,
    RefundNotEligibleError,
    ValidationError,
)
from models.lifecycle.financials import to_cents, to_minor_units
from models.lifecycle.transactions import ensure_refundable
from models.operations.processed_events import processed_event_claim, processed_event_release
from models.operations.transactions import (
    ensure_party,
    transaction_complete_payment,
    transaction_fail_payment,
    transaction_find_by_payment_intent,
    transaction_flag_dispute,
    transaction_get,
    transaction_mark_payment_processing,
    transaction_record_refund,
    transaction_set_checkout_session,
)
from models.operations.users import user_get, user_set_stripe_customer

logger = logging.getLogger(__name__)


async def payment_create_checkout_session(
    store: DocumentStore,
    gateway: StripeClient,
    transaction_id: str,
    user_id: str,
    client_url: str,
) -> Dict[str, Any]:
    transaction = await transaction_get(store, transaction_id)
    data = transaction.data
    if data.buyer_id != user_id:
        raise NotAuthorizedError("Not authorized to pay for this transaction")
    if data.status != "pending":
        raise InvalidStateError("Transaction is not in pending status")

    buyer = await user_get(store, user_id)
    customer_id = buyer.data.stripe_customer_id
    if not customer_id:
        customer_id = await gateway.create_customer(
            email=buyer.data.email,
            name=buyer.data.full_name,
            metadata={"userId": user_id},
        )
        await user_set_stripe_customer(store, user_id, customer_id)

    credit = await CarbonCredit.get(store, data.carbon_credit_id)
    title = credit.data.title if credit else "Carbon Credits"
    energy_type = credit.data.energy_type if credit else "renewable"
    currency = data.currency.lower()

    product: Dict[str, Any] = {
        "name": f"{title} - Carbon Credits",
        "description": f"Purchase of {data.quantity} carbon credits from {energy_type} project",
        "metadata": {"transactionId": transaction.id, "carbonCreditId": data.carbon_credit_id},
    }
    if credit and credit.data.images:
        product["images"] = [image.url for image in credit.data.images]

    line_items = [
        {
            "price_data": {
                "currency": currency,
                "product_data": product,
                "unit_amount": to_minor_units(data.price_per_credit),
            },
            "quantity": data.quantity,
        },
        {
            "price_data": {
                "currency": currency,
                "product_data": {"name": "Platform Fee", "description": "Carbonease platform fee"},
                "unit_amount": to_minor_units(data.fees.platform_fee),
            },
            "quantity": 1,
        },
    ]

    session = await gateway.create_checkout_session(
        line_items=line_items,
        success_url=f"{client_url}/payment/success?session_id={{CHECKOUT_SESSION_ID}}",
        cancel_url=f"{client_url}/payment/cancel?transaction_id={transaction.id}",
        metadata={"transactionId": transaction.id, "userId": user_id},
        customer=customer_id,
    )
    await transaction_set_checkout_session(store, transaction.id, session.id)
    logger.info(f"Checkout session {session.id} created for transaction {transaction.id}")
    return {"session_id": session.id, "url": session.url}


#### Webhooks ####

def _transaction_id_from(obj: Dict[str, Any]) -> Optional[str]:
    return (obj.get("metadata") or {}).get("transactionId")


async def _resolve_by_intent(store: DocumentStore, obj: Dict[str, Any]) -> Optional[str]:
    transaction_id = _transaction_id_from(obj)
    if transaction_id:
        return transaction_id
    if obj.get("id"):
        transaction = await transaction_find_by_payment_intent(store, obj["id"])
        if transaction:
            return transaction.id
    return None


async def _on_checkout_completed(store: DocumentStore, gateway: StripeClient, session: Dict[str, Any]) -> None:
    transaction_id = _transaction_id_from(session)
    if not transaction_id:
        logger.warning(f"Checkout session {session.get('id')} carries no transaction id")
        return
    if await transaction_mark_payment_processing(store, transaction_id, session.get("payment_intent")) is None:
        logger.warning(f"Checkout session {session.get('id')}: transaction {transaction_id} not found")


async def _on_payment_succeeded(store: DocumentStore, gateway: StripeClient, intent: Dict[str, Any]) -> None:
    transaction_id = await _resolve_by_intent(store, intent)
    if not transaction_id:
        logger.warning(f"Payment intent {intent.get('id')} matches no transaction")
        return
    if await transaction_complete_payment(store, transaction_id, intent.get("id")) is None:
        logger.warning(f"Payment intent {intent.get('id')}: transaction {transaction_id} not found")


async def _on_payment_failed(store: DocumentStore, gateway: StripeClient, intent: Dict[str, Any]) -> None:
    transaction_id = await _resolve_by_intent(store, intent)
    if not transaction_id:
        logger.warning(f"Payment intent {intent.get('id')} matches no transaction")
        return
    if await transaction_fail_payment(store, transaction_id, intent.get("id")) is None:
        logger.warning(f"Payment intent {intent.get('id')}: transaction {transaction_id} not found")


async def _on_dispute_created(store: DocumentStore, gateway: StripeClient, dispute: Dict[str, Any]) -> None:
    payment_intent_id = dispute.get("payment_intent")
    if not payment_intent_id:
        logger.warning(f"Dispute {dispute.get('id')} has no payment intent")
        return

    transaction = await transaction_find_by_payment_intent(store, payment_intent_id)
    transaction_id = transaction.id if transaction else None
    if transaction_id is None:
        intent = await gateway.retrieve_payment_intent(payment_intent_id)
        transaction_id = _transaction_id_from(intent)
    if not transaction_id:
        logger.warning(f"Dispute {dispute.get('id')} matches no transaction")
        return

    await transaction_flag_dispute(store, transaction_id, dispute.get("reason"))
    logger.warning(f"Transaction {transaction_id} disputed: {dispute.get('reason')}")


WebhookHandler = Callable[[DocumentStore, StripeClient, Dict[str, Any]], Awaitable[None]]

WEBHOOK_HANDLERS: Dict[str, WebhookHandler] = {
    "checkout.session.completed": _on_checkout_completed,
    "payment_intent.succeeded": _on_payment_succeeded,
    "payment_intent.payment_failed": _on_payment_failed,
    "charge.dispute.created": _on_dispute_created,
}


async def payment_handle_webhook(
    store: DocumentStore,
    gateway: StripeClient,
    payload: bytes,
    sig_header: Optional[str],
) -> Dict[str, Any]:
    """Verify and apply one webhook delivery.

    Signature failures raise SignatureError. Reconciliation failures are
    logged, the event claim is released and the delivery is still
    acknowledged.
    """
    event = gateway.construct_event(payload, sig_header)
    event_id = event.get("id")
    event_type = event["type"]
    obj = (event.get("data") or {}).get("object") or {}

    handler = WEBHOOK_HANDLERS.get(event_type)
    if handler is None:
        logger.info(f"Unhandled event type {event_type}")
        return {"received": True}

    if event_id and not await processed_event_claim(
        store, event_id, event_type, _transaction_id_from(obj)
    ):
        logger.info(f"Event {event_id} ({event_type}) already processed")
        return {"received": True, "duplicate": True}

    try:
        await handler(store, gateway, obj)
    except Exception as e:
        logger.error(f"Error handling {event_type} event {event_id}: {e}", exc_info=True)
        if event_id:
            await processed_event_release(store, event_id)
    return {"received": True}


#### Refunds and status ####

async def payment_process_refund(
    store: DocumentStore,
    gateway: StripeClient,
    transaction_id: str,
    user_id: str,
    role: str,
    amount: Optional[float] = None,
    reason: Optional[str] = None,
) -> Dict[str, Any]:
    transaction = await transaction_get(store, transaction_id)
    data = transaction.data
    if data.seller_id != user_id and role != "admin":
        raise NotAuthorizedError("Not authorized to process refund")
    ensure_refundable(transaction)
    if not data.payment.stripe_payment_intent_id:
        raise RefundNotEligibleError("Transaction has no recorded payment to refund")

    refund_amount = data.total_amount if amount is None else float(to_cents(amount))
    if refund_amount <= 0 or refund_amount > data.total_amount:
        raise ValidationError("Refund amount must be positive and cannot exceed the transaction total")

    refund = await gateway.create_refund(
        data.payment.stripe_payment_intent_id,
        amount=to_minor_units(refund_amount),
        metadata={"transactionId": transaction.id, "reason": reason or "Refund requested"},
    )
    try:
        await transaction_record_refund(store, transaction.id, refund_amount, reason, refund.id)
    except MarketplaceError:
        logger.error(
            f"Refund {refund.id} was issued for transaction {transaction.id} but could not be recorded",
            exc_info=True,
        )
        raise
    return {"refund_id": refund.id, "amount": refund_amount, "status": refund.status}


async def payment_get_status(
    store: DocumentStore, gateway: StripeClient, transaction_id: str, user_id: str
) -> Dict[str, Any]:
    transaction = await transaction_get(store, transaction_id)
    ensure_party(transaction, user_id, "view payment status of")
    return {
        "transaction": _payment_summary(transaction),
        "payment_intent": await _fetch_intent(gateway, transaction),
    }


def _payment_summary(transaction: Transaction) -> Dict[str, Any]:
    data = transaction.data
    return {
        "id": transaction.id,
        "status": data.status,
        "payment_status": data.payment.status,
        "total_amount": data.total_amount,
        "currency": data.currency,
        "fees": data.fees.model_dump(by_alias=True),
    }


async def _fetch_intent(gateway: StripeClient, transaction: Transaction) -> Optional[Dict[str, Any]]:
    payment_intent_id = transaction.data.payment.stripe_payment_intent_id
    if not payment_intent_id:
        return None
    try:
        intent = await gateway.retrieve_payment_intent(payment_intent_id)
    except PaymentGatewayError as e:
        logger.warning(f"Could not retrieve payment intent {payment_intent_id}: {e}")
        return None
    return {
        "id": intent.get("id"),
        "status": intent.get("status"),
        "amount": intent.get("amount"),
        "currency": intent.get("currency"),
        "created": intent.get("created"),
    }
