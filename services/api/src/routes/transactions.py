from typing import Literal, Optional

from fastapi import APIRouter, Depends, Query
from pydantic import Field

from clients.store import DocumentStore
from models.entities.documents.transactions import DeliveryMethod, TransactionStatus
from models.operations.stats import transaction_stats
from models.operations.transactions import (
    transaction_add_review,
    transaction_cancel,
    transaction_create,
    transaction_download_certificate,
    transaction_get_for_party,
    transaction_list,
    transaction_update_status,
)
from utils import log, response
from utils.response import RequestBody
from .dependencies import current_user_get, get_store, require_buyer

logger = log.get_logger(__name__)

router = APIRouter(prefix="/transactions", tags=["transactions"])


class CreateTransactionRequest(RequestBody):
    carbon_credit_id: str = Field(min_length=1)
    quantity: int = Field(ge=1)
    buyer_notes: Optional[str] = Field(default=None, max_length=500)
    delivery_method: DeliveryMethod = "digital"


class UpdateStatusRequest(RequestBody):
    status: TransactionStatus


class CancelRequest(RequestBody):
    reason: Optional[str] = Field(default=None, max_length=200)


class ReviewRequest(RequestBody):
    rating: int = Field(ge=1, le=5)
    comment: Optional[str] = Field(default=None, max_length=500)


@router.post("")
async def route_transaction_create(
    body: CreateTransactionRequest,
    user: dict = Depends(require_buyer),
    store: DocumentStore = Depends(get_store),
):
    transaction = await transaction_create(
        store,
        buyer_id=user["sub"],
        carbon_credit_id=body.carbon_credit_id,
        quantity=body.quantity,
        buyer_notes=body.buyer_notes,
        delivery_method=body.delivery_method,
    )
    return response.success(transaction, "Transaction created successfully", status_code=201)


@router.get("")
async def route_transactions_list(
    page: Optional[int] = Query(default=None),
    limit: Optional[int] = Query(default=None),
    status: Optional[TransactionStatus] = Query(default=None),
    payment_status: Optional[str] = Query(default=None, alias="paymentStatus"),
    user: dict = Depends(current_user_get),
    store: DocumentStore = Depends(get_store),
):
    paging = response.paginate(page, limit)
    transactions, total = await transaction_list(
        store,
        user["sub"],
        user["role"],
        status=status,
        payment_status=payment_status,
        limit=paging.limit,
        offset=paging.offset,
    )
    return response.paginated(transactions, paging, total, "Transactions retrieved successfully")


@router.get("/stats")
async def route_transaction_stats(
    user: dict = Depends(current_user_get),
    store: DocumentStore = Depends(get_store),
):
    stats = await transaction_stats(store, user["sub"], user["role"])
    return response.success(stats, "Transaction statistics retrieved successfully")


@router.get("/{transaction_id}")
async def route_transaction_get(
    transaction_id: str,
    user: dict = Depends(current_user_get),
    store: DocumentStore = Depends(get_store),
):
    transaction = await transaction_get_for_party(store, transaction_id, user["sub"])
    return response.success(transaction, "Transaction retrieved successfully")


@router.put("/{transaction_id}/status")
async def route_transaction_status(
    transaction_id: str,
    body: UpdateStatusRequest,
    user: dict = Depends(current_user_get),
    store: DocumentStore = Depends(get_store),
):
    transaction = await transaction_update_status(store, transaction_id, user["sub"], body.status)
    return response.success(transaction, "Transaction status updated successfully")


@router.put("/{transaction_id}/cancel")
async def route_transaction_cancel(
    transaction_id: str,
    body: Optional[CancelRequest] = None,
    user: dict = Depends(current_user_get),
    store: DocumentStore = Depends(get_store),
):
    reason = body.reason if body else None
    transaction = await transaction_cancel(store, transaction_id, user["sub"], reason)
    return response.success(transaction, "Transaction cancelled successfully")


@router.post("/{transaction_id}/review")
async def route_transaction_review(
    transaction_id: str,
    body: ReviewRequest,
    user: dict = Depends(current_user_get),
    store: DocumentStore = Depends(get_store),
):
    transaction = await transaction_add_review(
        store, transaction_id, user["sub"], body.rating, body.comment
    )
    return response.success(transaction, "Review added successfully")


@router.get("/{transaction_id}/certificate/{certificate_id}")
async def route_certificate_download(
    transaction_id: str,
    certificate_id: str,
    user: dict = Depends(current_user_get),
    store: DocumentStore = Depends(get_store),
):
    transaction, certificate = await transaction_download_certificate(
        store, transaction_id, certificate_id, user["sub"]
    )
    logger.info(f"Certificate {certificate.certificate_number} downloaded by {user['sub']}")
    return response.success(
        {
            "certificate": certificate,
            "transaction": {
                "id": transaction.id,
                "transaction_ref": transaction.transaction_ref,
                "quantity": transaction.data.quantity,
                "carbon_credit_id": transaction.data.carbon_credit_id,
                "buyer_id": transaction.data.buyer_id,
                "seller_id": transaction.data.seller_id,
            },
        },
        "Certificate retrieved successfully",
    )
