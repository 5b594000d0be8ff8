from typing import Optional

from fastapi import APIRouter, Depends, Header, Request
from pydantic import Field

from clients.store import DocumentStore
from clients.stripe import StripeClient
from models.operations.payments import (
    payment_create_checkout_session,
    payment_get_status,
    payment_handle_webhook,
    payment_process_refund,
)
from utils import log, response
from utils.response import RequestBody
from .dependencies import current_user_get, get_client_url, get_gateway, get_store, require_buyer

logger = log.get_logger(__name__)

router = APIRouter(prefix="/payments", tags=["payments"])


class CheckoutSessionRequest(RequestBody):
    transaction_id: str = Field(min_length=1)


class RefundRequest(RequestBody):
    transaction_id: str = Field(min_length=1)
    amount: Optional[float] = Field(default=None, ge=0.01)
    reason: Optional[str] = Field(default=None, max_length=200)


@router.post("/create-checkout-session")
async def route_create_checkout_session(
    body: CheckoutSessionRequest,
    user: dict = Depends(require_buyer),
    store: DocumentStore = Depends(get_store),
    gateway: StripeClient = Depends(get_gateway),
    client_url: str = Depends(get_client_url),
):
    session = await payment_create_checkout_session(
        store, gateway, body.transaction_id, user["sub"], client_url
    )
    return response.success(session, "Checkout session created successfully")


@router.post("/webhook")
async def route_webhook(
    request: Request,
    stripe_signature: Optional[str] = Header(default=None, alias="stripe-signature"),
    store: DocumentStore = Depends(get_store),
    gateway: StripeClient = Depends(get_gateway),
):
    """Stripe calls this with the raw event body; the signature covers those exact bytes."""
    payload = await request.body()
    result = await payment_handle_webhook(store, gateway, payload, stripe_signature)
    return result


@router.get("/status/{transaction_id}")
async def route_payment_status(
    transaction_id: str,
    user: dict = Depends(current_user_get),
    store: DocumentStore = Depends(get_store),
    gateway: StripeClient = Depends(get_gateway),
):
    status = await payment_get_status(store, gateway, transaction_id, user["sub"])
    return response.success(status, "Payment status retrieved successfully")


@router.post("/refund")
async def route_refund(
    body: RefundRequest,
    user: dict = Depends(current_user_get),
    store: DocumentStore = Depends(get_store),
    gateway: StripeClient = Depends(get_gateway),
):
    refund = await payment_process_refund(
        store,
        gateway,
        body.transaction_id,
        user["sub"],
        user["role"],
        amount=body.amount,
        reason=body.reason,
    )
    logger.info(f"Refund {refund['refund_id']} issued for transaction {body.transaction_id}")
    return response.success(refund, "Refund processed successfully")
