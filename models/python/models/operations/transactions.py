import logging
from datetime import datetime, timezone
from typing import Any, Callable, List, Optional, Tuple

from clients.store import Aggregate, CasMismatchError, DocumentStore, Field, Filter, Sort

from models.entities.documents.credits import CarbonCredit
from models.entities.documents.transactions import (
    Certificate,
    Delivery,
    Review,
    Transaction,
    TransactionData,
    TransactionMetadata,
)
from models.errors import (
    ConflictError,
    InvalidStateError,
    NotAuthorizedError,
    NotFoundError,
    ValidationError,
)
from models.lifecycle.transactions import (
    COMMIT_INVENTORY,
    RESTORE_INVENTORY,
    TERMINAL_STATUSES,
    mark_delivery_failed,
    record_refund,
    request_transition,
    system_transition,
)
from models.operations.credits import credit_commit_purchase, credit_restore, credit_set_rating

logger = logging.getLogger(__name__)


def ensure_party(transaction: Transaction, user_id: str, action: str = "view") -> None:
    if user_id not in (transaction.data.buyer_id, transaction.data.seller_id):
        raise NotAuthorizedError(f"Not authorized to {action} this transaction")


async def _transaction_mutate(
    store: DocumentStore, transaction_id: str, mutator: Callable[[Transaction], bool]
) -> Optional[Transaction]:
    try:
        return await Transaction.mutate(store, transaction_id, mutator)
    except CasMismatchError as e:
        raise ConflictError("Concurrent update conflict, please retry") from e


#### User operations ####

async def transaction_create(
    store: DocumentStore,
    buyer_id: str,
    carbon_credit_id: str,
    quantity: int,
    buyer_notes: Optional[str] = None,
    delivery_method: str = "digital",
) -> Transaction:
    if quantity < 1:
        raise ValidationError("Quantity must be at least 1")

    credit = await CarbonCredit.get(store, carbon_credit_id)
    if credit is None:
        raise NotFoundError("Carbon credit not found")
    if not credit.data.is_available_for_purchase(quantity):
        raise ValidationError("Insufficient credits available or credit not available for purchase")
    if credit.data.seller_id == buyer_id:
        raise ValidationError("Cannot purchase your own carbon credits")

    data = TransactionData(
        buyer_id=buyer_id,
        seller_id=credit.data.seller_id,
        carbon_credit_id=carbon_credit_id,
        quantity=quantity,
        price_per_credit=credit.data.price_per_credit,
        currency=credit.data.currency,
        delivery=Delivery(method=delivery_method),
        metadata=TransactionMetadata(buyer_notes=buyer_notes),
    )
    transaction = await Transaction.create(store, data, user_id=buyer_id)
    logger.info(
        f"Transaction {transaction.id} created: {quantity} credits of {carbon_credit_id} "
        f"for {data.total_amount} {data.currency}"
    )
    return transaction


async def transaction_get(store: DocumentStore, transaction_id: str) -> Transaction:
    transaction = await Transaction.get(store, transaction_id)
    if transaction is None:
        raise NotFoundError("Transaction not found")
    return transaction


async def transaction_get_for_party(
    store: DocumentStore, transaction_id: str, user_id: str, action: str = "view"
) -> Transaction:
    transaction = await transaction_get(store, transaction_id)
    ensure_party(transaction, user_id, action)
    return transaction


async def transaction_list(
    store: DocumentStore,
    user_id: str,
    role: str,
    status: Optional[str] = None,
    payment_status: Optional[str] = None,
    limit: int = 10,
    offset: int = 0,
) -> Tuple[List[Transaction], int]:
    """Buyers see their purchases, sellers their sales, admins everything."""
    conditions: List[Any] = []
    if role == "buyer":
        conditions.append(Filter("buyer_id", "eq", user_id))
    elif role == "seller":
        conditions.append(Filter("seller_id", "eq", user_id))
    if status:
        conditions.append(Filter("status", "eq", status))
    if payment_status:
        conditions.append(Filter("payment.status", "eq", payment_status))
    transactions = await Transaction.find(store, conditions, sort=Sort(), limit=limit, offset=offset)
    total = await Transaction.count(store, conditions)
    return transactions, total


async def _apply_inventory(store: DocumentStore, transaction: Transaction, effects: List[str]) -> None:
    data = transaction.data
    if COMMIT_INVENTORY in effects:
        ok, error = await credit_commit_purchase(store, data.carbon_credit_id, data.quantity)
        if not ok:
            raise ValidationError(error or "Insufficient credits available")
        data.inventory_committed = True
    if RESTORE_INVENTORY in effects:
        ok, error = await credit_restore(store, data.carbon_credit_id, data.quantity)
        if not ok:
            logger.error(f"Transaction {transaction.id}: could not restore credits: {error}")
        data.inventory_committed = False


async def _undo_inventory(store: DocumentStore, transaction: Transaction, effects: List[str]) -> None:
    data = transaction.data
    if COMMIT_INVENTORY in effects:
        await credit_restore(store, data.carbon_credit_id, data.quantity, revert_purchase=True)
    if RESTORE_INVENTORY in effects:
        ok, error = await credit_commit_purchase(
            store, data.carbon_credit_id, data.quantity, count_purchase=False
        )
        if not ok:
            logger.error(f"Transaction {transaction.id}: could not re-take restored credits: {error}")


async def transaction_update_status(
    store: DocumentStore, transaction_id: str, user_id: str, target: str
) -> Transaction:
    transaction = await transaction_get_for_party(store, transaction_id, user_id, "update")
    effects = request_transition(transaction, target)
    await _apply_inventory(store, transaction, effects)
    try:
        transaction = await Transaction.update(store, transaction)
    except CasMismatchError as e:
        await _undo_inventory(store, transaction, effects)
        raise ConflictError("Transaction was modified concurrently, please retry") from e
    logger.info(f"Transaction {transaction_id} moved to {target} by {user_id}")
    return transaction


async def transaction_cancel(
    store: DocumentStore, transaction_id: str, user_id: str, reason: Optional[str] = None
) -> Transaction:
    def _mutate(transaction: Transaction) -> bool:
        ensure_party(transaction, user_id, "cancel")
        if transaction.data.status not in ("pending", "processing"):
            raise InvalidStateError("Transaction cannot be cancelled in current status")
        request_transition(transaction, "cancelled")
        if transaction.data.payment.status in ("pending", "processing"):
            transaction.data.payment.status = "cancelled"
        transaction.data.metadata.internal_notes = reason
        return True

    transaction = await _transaction_mutate(store, transaction_id, _mutate)
    if transaction is None:
        raise NotFoundError("Transaction not found")
    logger.info(f"Transaction {transaction_id} cancelled by {user_id}")
    return transaction


async def transaction_add_review(
    store: DocumentStore,
    transaction_id: str,
    user_id: str,
    rating: int,
    comment: Optional[str] = None,
) -> Transaction:
    review = Review(rating=rating, comment=comment, created_at=datetime.now(timezone.utc))

    def _mutate(transaction: Transaction) -> bool:
        if transaction.data.status != "completed":
            raise InvalidStateError("Can only review completed transactions")
        ensure_party(transaction, user_id, "review")
        if user_id == transaction.data.buyer_id:
            transaction.data.reviews.buyer_review = review
        else:
            transaction.data.reviews.seller_review = review
        return True

    transaction = await _transaction_mutate(store, transaction_id, _mutate)
    if transaction is None:
        raise NotFoundError("Transaction not found")

    if user_id == transaction.data.buyer_id:
        await _refresh_credit_rating(store, transaction.data.carbon_credit_id)
    return transaction


async def _refresh_credit_rating(store: DocumentStore, carbon_credit_id: str) -> None:
    rollup = await store.aggregate(
        Transaction.collection(),
        [
            Filter("carbon_credit_id", "eq", carbon_credit_id),
            Filter("status", "eq", "completed"),
            Filter("reviews.buyer_review.rating", "gte", 1),
        ],
        {
            "average": Aggregate("avg", Field("reviews.buyer_review.rating")),
            "count": Aggregate("count"),
        },
    )
    if rollup is None:
        return
    ok, error = await credit_set_rating(
        store, carbon_credit_id, float(rollup["average"] or 0), int(rollup["count"] or 0)
    )
    if not ok:
        logger.warning(f"Could not update rating of credit {carbon_credit_id}: {error}")


async def transaction_download_certificate(
    store: DocumentStore, transaction_id: str, certificate_id: str, user_id: str
) -> Tuple[Transaction, Certificate]:
    found: Optional[Certificate] = None

    def _mutate(transaction: Transaction) -> bool:
        nonlocal found
        ensure_party(transaction, user_id, "access")
        found = next((c for c in transaction.data.certificates if c.id == certificate_id), None)
        if found is None:
            raise NotFoundError("Certificate not found")
        found.is_downloaded = True
        found.downloaded_at = datetime.now(timezone.utc)
        return True

    transaction = await _transaction_mutate(store, transaction_id, _mutate)
    if transaction is None:
        raise NotFoundError("Transaction not found")
    return transaction, found


#### Gateway driven operations ####

async def transaction_find_by_payment_intent(
    store: DocumentStore, payment_intent_id: str
) -> Optional[Transaction]:
    found = await Transaction.find(
        store, [Filter("payment.stripe_payment_intent_id", "eq", payment_intent_id)], limit=1
    )
    return found[0] if found else None


async def transaction_set_checkout_session(
    store: DocumentStore, transaction_id: str, session_id: str
) -> Transaction:
    def _mutate(transaction: Transaction) -> bool:
        transaction.data.payment.method = "stripe"
        transaction.data.payment.stripe_session_id = session_id
        return True

    transaction = await _transaction_mutate(store, transaction_id, _mutate)
    if transaction is None:
        raise NotFoundError("Transaction not found")
    return transaction


async def transaction_mark_payment_processing(
    store: DocumentStore, transaction_id: str, payment_intent_id: Optional[str]
) -> Optional[Transaction]:
    def _mutate(transaction: Transaction) -> bool:
        payment = transaction.data.payment
        if payment.status != "pending":
            # Out of order delivery; never regress a later payment state.
            return False
        payment.status = "processing"
        if payment_intent_id:
            payment.stripe_payment_intent_id = payment_intent_id
        return True

    return await _transaction_mutate(store, transaction_id, _mutate)


async def transaction_complete_payment(
    store: DocumentStore,
    transaction_id: str,
    payment_intent_id: Optional[str],
    now: Optional[datetime] = None,
) -> Optional[Transaction]:
    """Record a successful payment and fulfil the order.

    A payment that is already recorded as completed is left untouched, so
    redelivered success events never move inventory twice.
    """
    now = now or datetime.now(timezone.utc)
    recorded = False

    def _record(transaction: Transaction) -> bool:
        nonlocal recorded
        payment = transaction.data.payment
        if payment.status in ("completed", "refunded"):
            recorded = False
            return False
        payment.status = "completed"
        payment.paid_at = now
        if payment_intent_id:
            payment.stripe_payment_intent_id = payment_intent_id
        recorded = True
        return True

    transaction = await _transaction_mutate(store, transaction_id, _record)
    if transaction is None:
        return None
    if not recorded:
        data = transaction.data
        if (
            data.payment.status == "completed"
            and data.status in ("pending", "processing")
            and data.delivery.status != "failed"
        ):
            logger.info(f"Transaction {transaction_id}: resuming interrupted fulfilment")
            return await transaction_fulfil(store, transaction, now)
        logger.info(f"Transaction {transaction_id}: payment already recorded, nothing to do")
        return transaction
    return await transaction_fulfil(store, transaction, now)


async def transaction_fulfil(
    store: DocumentStore, transaction: Transaction, now: Optional[datetime] = None
) -> Transaction:
    data = transaction.data
    if data.status not in ("pending", "processing"):
        logger.error(
            f"Transaction {transaction.id} was paid while {data.status}; it needs a manual refund"
        )
        return transaction

    committed_here = False
    if not data.inventory_committed:
        ok, error = await credit_commit_purchase(store, data.carbon_credit_id, data.quantity)
        if not ok:
            logger.error(f"Transaction {transaction.id}: paid but cannot be fulfilled: {error}")

            def _fail(t: Transaction) -> bool:
                mark_delivery_failed(t, f"Credits could not be delivered: {error}")
                return True

            return await _transaction_mutate(store, transaction.id, _fail) or transaction
        committed_here = True

    # Set when a concurrent fulfilment committed inventory first; ours is then released.
    duplicate_commit = False

    def _complete(t: Transaction) -> bool:
        nonlocal duplicate_commit
        duplicate_commit = committed_here and t.data.inventory_committed
        if t.data.status == "completed":
            return False
        t.data.inventory_committed = True
        system_transition(t, "completed", now)
        return True

    try:
        completed = await _transaction_mutate(store, transaction.id, _complete)
    except (InvalidStateError, ConflictError):
        if committed_here:
            await credit_restore(store, data.carbon_credit_id, data.quantity, revert_purchase=True)
        raise
    if duplicate_commit:
        logger.warning(f"Transaction {transaction.id}: inventory already committed, releasing duplicate")
        await credit_restore(store, data.carbon_credit_id, data.quantity, revert_purchase=True)
    logger.info(f"Transaction {transaction.id} completed")
    return completed or transaction


async def transaction_fail_payment(
    store: DocumentStore, transaction_id: str, payment_intent_id: Optional[str]
) -> Optional[Transaction]:
    def _mutate(transaction: Transaction) -> bool:
        data = transaction.data
        if data.status == "completed" or data.payment.status in ("completed", "refunded"):
            logger.warning(
                f"Ignoring payment failure for transaction {transaction.id}: payment already {data.payment.status}"
            )
            return False
        if data.status in TERMINAL_STATUSES and data.payment.status == "failed":
            return False
        data.payment.status = "failed"
        if payment_intent_id:
            data.payment.stripe_payment_intent_id = payment_intent_id
        if data.status not in TERMINAL_STATUSES:
            system_transition(transaction, "cancelled")
        return True

    return await _transaction_mutate(store, transaction_id, _mutate)


async def transaction_flag_dispute(
    store: DocumentStore, transaction_id: str, reason: Optional[str], now: Optional[datetime] = None
) -> Optional[Transaction]:
    now = now or datetime.now(timezone.utc)

    def _mutate(transaction: Transaction) -> bool:
        dispute = transaction.data.dispute
        dispute.is_disputed = True
        dispute.dispute_reason = reason
        dispute.dispute_date = now
        return True

    return await _transaction_mutate(store, transaction_id, _mutate)


async def transaction_record_refund(
    store: DocumentStore,
    transaction_id: str,
    amount: float,
    reason: Optional[str],
    refund_id: Optional[str],
) -> Transaction:
    effects: List[str] = []

    def _mutate(transaction: Transaction) -> bool:
        nonlocal effects
        effects = record_refund(transaction, amount, reason, refund_id)
        if RESTORE_INVENTORY in effects:
            transaction.data.inventory_committed = False
        return True

    transaction = await _transaction_mutate(store, transaction_id, _mutate)
    if transaction is None:
        raise NotFoundError("Transaction not found")

    if RESTORE_INVENTORY in effects:
        ok, error = await credit_restore(
            store, transaction.data.carbon_credit_id, transaction.data.quantity
        )
        if not ok:
            logger.error(f"Transaction {transaction_id} refunded but credits not restored: {error}")
    logger.info(f"Transaction {transaction_id} refunded {amount} {transaction.data.currency}")
    return transaction
