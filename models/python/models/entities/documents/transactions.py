from datetime import datetime
from typing import List, Literal, Optional

from pydantic import Field, computed_field, model_validator

from clients.store import BaseDocumentModel, BaseEntityData, IndexSpec
from models.lifecycle.financials import recompute_financials

from .credits import Currency, SubDocument

TransactionStatus = Literal["pending", "processing", "completed", "cancelled", "refunded"]
PaymentStatus = Literal["pending", "processing", "completed", "failed", "refunded", "cancelled"]
PaymentMethod = Literal["stripe", "bank_transfer", "crypto", "other"]
DeliveryMethod = Literal["digital", "certificate", "registry_transfer"]
DeliveryStatus = Literal["pending", "processing", "delivered", "failed"]


class Payment(SubDocument):
    method: PaymentMethod = "stripe"
    status: PaymentStatus = "pending"
    stripe_session_id: Optional[str] = None
    stripe_payment_intent_id: Optional[str] = None
    paid_at: Optional[datetime] = None
    refunded_at: Optional[datetime] = None
    refund_amount: Optional[float] = None
    refund_reason: Optional[str] = None
    refund_id: Optional[str] = None


class Delivery(SubDocument):
    method: DeliveryMethod = "digital"
    status: DeliveryStatus = "pending"
    delivered_at: Optional[datetime] = None
    delivery_notes: Optional[str] = None


class Certificate(SubDocument):
    id: str
    certificate_number: str
    issue_date: datetime
    expiry_date: Optional[datetime] = None
    download_url: str
    is_downloaded: bool = False
    downloaded_at: Optional[datetime] = None


class Fees(SubDocument):
    platform_fee: float = 0
    processing_fee: float = 0
    total_fees: float = 0


class Dispute(SubDocument):
    is_disputed: bool = False
    dispute_reason: Optional[str] = None
    dispute_date: Optional[datetime] = None
    resolution: Optional[str] = None
    resolved_at: Optional[datetime] = None
    resolved_by: Optional[str] = None


class Review(SubDocument):
    rating: int = Field(ge=1, le=5)
    comment: Optional[str] = Field(default=None, max_length=500)
    created_at: datetime


class Reviews(SubDocument):
    buyer_review: Optional[Review] = None
    seller_review: Optional[Review] = None


class TransactionMetadata(SubDocument):
    buyer_notes: Optional[str] = Field(default=None, max_length=500)
    seller_notes: Optional[str] = Field(default=None, max_length=500)
    internal_notes: Optional[str] = Field(default=None, max_length=1000)
    source: Literal["marketplace", "direct", "api", "admin"] = "marketplace"


class TransactionData(BaseEntityData):
    buyer_id: str
    seller_id: str
    carbon_credit_id: str
    quantity: int = Field(ge=1)
    price_per_credit: float = Field(ge=0.01)
    total_amount: float = 0
    currency: Currency = "USD"
    status: TransactionStatus = "pending"
    payment: Payment = Field(default_factory=Payment)
    delivery: Delivery = Field(default_factory=Delivery)
    certificates: List[Certificate] = []
    fees: Fees = Field(default_factory=Fees)
    dispute: Dispute = Field(default_factory=Dispute)
    reviews: Reviews = Field(default_factory=Reviews)
    metadata: TransactionMetadata = Field(default_factory=TransactionMetadata)
    inventory_committed: bool = False

    @model_validator(mode="after")
    def _derive_financials(self):
        # Client supplied totals are never trusted.
        financials = recompute_financials(self.quantity, self.price_per_credit)
        self.__dict__["total_amount"] = financials.total_amount
        self.__dict__["fees"] = Fees(
            platform_fee=financials.platform_fee,
            processing_fee=financials.processing_fee,
            total_fees=financials.total_fees,
        )
        return self

    @computed_field
    @property
    def net_amount(self) -> float:
        return round(self.total_amount - self.fees.total_fees, 2)


class Transaction(BaseDocumentModel[TransactionData]):
    _collection_name = "transactions"
    _indexes = [
        IndexSpec(name="ix_transactions_buyer_status", paths=["buyer_id", "status"]),
        IndexSpec(name="ix_transactions_seller_status", paths=["seller_id", "status"]),
        IndexSpec(name="ix_transactions_status_created", paths=["status", "created_at"]),
        IndexSpec(name="ix_transactions_payment_intent", paths=["payment.stripe_payment_intent_id"]),
        IndexSpec(name="ix_transactions_session", paths=["payment.stripe_session_id"]),
    ]

    @property
    def transaction_ref(self) -> str:
        return f"TXN-{self.id[-8:].upper()}"

    def public_dict(self) -> dict:
        return {**super().public_dict(), "transactionRef": self.transaction_ref}
