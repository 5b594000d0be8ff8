import asyncio
import functools
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

import stripe

from .exceptions import GatewayError, GatewayNotConfiguredError, SignatureError

DEFAULT_SIGNATURE_TOLERANCE = 300


@dataclass
class CheckoutSession:
    id: str
    url: Optional[str]


@dataclass
class Refund:
    id: str
    status: Optional[str]
    amount: int


class StripeClient:
    """Thin async wrapper around the blocking Stripe SDK.

    Only the calls the marketplace makes are exposed: customer creation,
    checkout session creation, payment intent retrieval, refund creation and
    webhook verification. SDK calls run in the default executor.
    """

    def __init__(self, secret_key: Optional[str], webhook_secret: Optional[str]):
        self.secret_key = secret_key
        self.webhook_secret = webhook_secret

    @property
    def configured(self) -> bool:
        return bool(self.secret_key)

    async def _call(self, fn, *args, **kwargs) -> Any:
        if not self.secret_key:
            raise GatewayNotConfiguredError("Stripe is not configured")
        kwargs["api_key"] = self.secret_key
        loop = asyncio.get_running_loop()
        try:
            return await loop.run_in_executor(None, functools.partial(fn, *args, **kwargs))
        except stripe.StripeError as e:
            message = getattr(e, "user_message", None) or str(e)
            raise GatewayError(f"Payment provider error: {message}") from e

    async def create_customer(self, email: str, name: str, metadata: Dict[str, str]) -> str:
        customer = await self._call(
            stripe.Customer.create, email=email, name=name, metadata=metadata
        )
        return customer.id

    async def create_checkout_session(
        self,
        line_items: List[Dict[str, Any]],
        success_url: str,
        cancel_url: str,
        metadata: Dict[str, str],
        customer: Optional[str] = None,
    ) -> CheckoutSession:
        params: Dict[str, Any] = {
            "payment_method_types": ["card"],
            "line_items": line_items,
            "mode": "payment",
            "success_url": success_url,
            "cancel_url": cancel_url,
            "metadata": metadata,
            "payment_intent_data": {"metadata": metadata},
        }
        if customer:
            params["customer"] = customer
        session = await self._call(stripe.checkout.Session.create, **params)
        return CheckoutSession(id=session.id, url=session.url)

    async def retrieve_payment_intent(self, payment_intent_id: str) -> Dict[str, Any]:
        intent = await self._call(stripe.PaymentIntent.retrieve, payment_intent_id)
        return intent.to_dict()

    async def create_refund(
        self, payment_intent_id: str, amount: int, metadata: Dict[str, str]
    ) -> Refund:
        refund = await self._call(
            stripe.Refund.create,
            payment_intent=payment_intent_id,
            amount=amount,
            reason="requested_by_customer",
            metadata=metadata,
        )
        return Refund(id=refund.id, status=refund.status, amount=amount)

    def construct_event(self, payload: bytes, sig_header: Optional[str]) -> Dict[str, Any]:
        """Verify a webhook delivery and return the decoded event.

        Fails closed: a missing secret, missing header or bad signature all
        raise SignatureError.
        """
        if not self.webhook_secret:
            raise SignatureError("Webhook secret is not configured")
        if not sig_header:
            raise SignatureError("Missing signature header")

        try:
            event = stripe.Webhook.construct_event(
                payload, sig_header, self.webhook_secret, tolerance=DEFAULT_SIGNATURE_TOLERANCE
            )
        except stripe.SignatureVerificationError as e:
            raise SignatureError(f"Webhook signature verification failed: {e}") from e
        except ValueError as e:
            raise SignatureError(f"Invalid webhook payload: {e}") from e
        return event.to_dict()
