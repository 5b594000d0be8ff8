"""Transaction status rules.

Two paths change a transaction's status. ``request_transition`` is what a
buyer, seller or admin asks for and follows ``USER_TRANSITIONS``.
``system_transition`` is driven by payment gateway events and checks the
payment status instead.

Both mutate the transaction in memory and return the inventory effects the
caller has to apply to the listing before persisting.
"""
import uuid
from datetime import datetime, timezone
from typing import Dict, List, Optional, Set

from models.entities.documents.transactions import Certificate, Transaction
from models.errors import InvalidStateError, InvalidTransitionError, RefundNotEligibleError

COMMIT_INVENTORY = "commit_inventory"
RESTORE_INVENTORY = "restore_inventory"

USER_TRANSITIONS: Dict[str, Set[str]] = {
    "pending": {"processing", "cancelled"},
    "processing": {"completed", "cancelled"},
    "completed": {"refunded"},
    "cancelled": set(),
    "refunded": set(),
}

TERMINAL_STATUSES = {"cancelled", "refunded"}

# Payment states where the gateway holds (or is about to hold) the buyer's money.
GATEWAY_HELD_PAYMENT = {"processing", "completed"}


def _now(now: Optional[datetime]) -> datetime:
    return now or datetime.now(timezone.utc)


def can_transition(current: str, target: str) -> bool:
    return target in USER_TRANSITIONS.get(current, set())


def _inventory_effects(transaction: Transaction, target: str) -> List[str]:
    data = transaction.data
    if target == "completed" and not data.inventory_committed:
        return [COMMIT_INVENTORY]
    if target == "refunded" and data.inventory_committed:
        return [RESTORE_INVENTORY]
    return []


def request_transition(
    transaction: Transaction, target: str, now: Optional[datetime] = None
) -> List[str]:
    """Apply a status change asked for by a buyer, seller or admin.

    Money taken through the gateway is only returned through a gateway
    refund, so a paid transaction can neither be cancelled nor marked
    refunded here.
    """
    data = transaction.data
    current = data.status
    if not can_transition(current, target):
        raise InvalidTransitionError(current, target)

    payment = data.payment
    if target == "cancelled" and payment.status == "completed":
        raise InvalidStateError("Paid transactions must be refunded instead of cancelled")
    if target == "refunded" and payment.status in GATEWAY_HELD_PAYMENT:
        raise RefundNotEligibleError("Paid transactions are refunded through the payment gateway")

    effects = _inventory_effects(transaction, target)
    if target == "completed":
        mark_completed(transaction, now)
    elif target == "refunded":
        data.status = "refunded"
        payment.status = "refunded"
        payment.refunded_at = _now(now)
        payment.refund_amount = data.total_amount
        payment.refund_reason = "Marked refunded without a gateway payment"
    else:
        data.status = target
    return effects


def ensure_refundable(transaction: Transaction) -> None:
    """Raise unless a gateway refund could be recorded on *transaction*."""
    data = transaction.data
    if data.payment.status != "completed":
        raise RefundNotEligibleError("Cannot refund transaction that was not completed")
    if data.status in TERMINAL_STATUSES:
        raise RefundNotEligibleError(f"Cannot refund a {data.status} transaction")


def system_transition(
    transaction: Transaction, target: str, now: Optional[datetime] = None
) -> List[str]:
    data = transaction.data
    if target == "completed":
        if data.payment.status != "completed":
            raise InvalidStateError("Cannot complete a transaction before payment has completed")
        if data.status not in ("pending", "processing"):
            raise InvalidStateError(f"Cannot complete a {data.status} transaction")
        effects = _inventory_effects(transaction, target)
        mark_completed(transaction, now)
        return effects

    if target == "cancelled":
        if data.status == "completed" or data.status in TERMINAL_STATUSES:
            raise InvalidStateError(f"Cannot cancel a {data.status} transaction")
        data.status = "cancelled"
        return []

    if target == "refunded":
        if data.payment.status != "refunded":
            raise InvalidStateError("Cannot mark a transaction refunded before the refund is recorded")
        if data.status in TERMINAL_STATUSES:
            raise InvalidStateError(f"Cannot refund a {data.status} transaction")
        effects = _inventory_effects(transaction, target)
        data.status = "refunded"
        return effects

    raise InvalidStateError(f"Unsupported system transition to {target}")


def mark_completed(transaction: Transaction, now: Optional[datetime] = None) -> None:
    now = _now(now)
    data = transaction.data
    data.status = "completed"
    data.delivery.status = "delivered"
    data.delivery.delivered_at = now
    if not data.certificates:
        issue_certificate(transaction, now)


def mark_delivery_failed(transaction: Transaction, note: str) -> None:
    """Leave the transaction in processing for a seller or admin to refund."""
    data = transaction.data
    if data.status == "pending":
        data.status = "processing"
    data.delivery.status = "failed"
    data.delivery.delivery_notes = note


def issue_certificate(
    transaction: Transaction,
    now: Optional[datetime] = None,
    expiry_date: Optional[datetime] = None,
) -> Certificate:
    now = _now(now)
    certificate_id = uuid.uuid4().hex
    certificate = Certificate(
        id=certificate_id,
        certificate_number=f"CERT-{now.strftime('%Y%m%d')}-{transaction.id[-8:].upper()}-{len(transaction.data.certificates) + 1}",
        issue_date=now,
        expiry_date=expiry_date,
        download_url=f"/api/transactions/{transaction.id}/certificate/{certificate_id}",
    )
    transaction.data.certificates.append(certificate)
    return certificate


def record_refund(
    transaction: Transaction,
    amount: float,
    reason: Optional[str],
    refund_id: Optional[str],
    now: Optional[datetime] = None,
) -> List[str]:
    """Record a completed gateway refund and move the transaction to refunded."""
    ensure_refundable(transaction)
    payment = transaction.data.payment
    payment.status = "refunded"
    payment.refunded_at = _now(now)
    payment.refund_amount = amount
    payment.refund_reason = reason
    payment.refund_id = refund_id
    return system_transition(transaction, "refunded", now)
