"""
Shared pytest fixtures.

Everything runs against the in-memory document store and a fake Stripe
gateway; no Couchbase cluster or Stripe account is needed.
"""

import hashlib
import hmac
import json
import os
import time
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

import pytest
import pytest_asyncio

# Configuration is validated when main is imported.
os.environ.setdefault("JWT_SECRET_KEY", "test-secret")
os.environ["STORE_BACKEND"] = "memory"
os.environ["ENVIRONMENT"] = "test"

from clients.store import MemoryStore  # noqa: E402
from clients.stripe import CheckoutSession, Refund, StripeClient  # noqa: E402
from models.entities.documents.credits import CarbonCredit, CarbonCreditData  # noqa: E402
from models.operations.users import user_register  # noqa: E402

WEBHOOK_SECRET = "whsec_test_secret"


# ============================================================================
# GATEWAY
# ============================================================================


class FakeGateway(StripeClient):
    """StripeClient that records outward calls instead of making them.

    Webhook verification is the real Stripe signature check.
    """

    def __init__(self):
        super().__init__(secret_key="sk_test_fake", webhook_secret=WEBHOOK_SECRET)
        self.customers: List[Dict[str, Any]] = []
        self.sessions: List[Dict[str, Any]] = []
        self.refunds: List[Dict[str, Any]] = []
        self.intents: Dict[str, Dict[str, Any]] = {}

    async def create_customer(self, email: str, name: str, metadata: Dict[str, str]) -> str:
        self.customers.append({"email": email, "name": name, "metadata": metadata})
        return f"cus_{len(self.customers)}"

    async def create_checkout_session(self, line_items, success_url, cancel_url, metadata, customer=None):
        self.sessions.append(
            {
                "line_items": line_items,
                "success_url": success_url,
                "cancel_url": cancel_url,
                "metadata": metadata,
                "customer": customer,
            }
        )
        n = len(self.sessions)
        return CheckoutSession(id=f"cs_test_{n}", url=f"https://checkout.stripe.test/{n}")

    async def retrieve_payment_intent(self, payment_intent_id: str) -> Dict[str, Any]:
        return self.intents.get(payment_intent_id, {"id": payment_intent_id, "status": "succeeded"})

    async def create_refund(self, payment_intent_id: str, amount: int, metadata: Dict[str, str]) -> Refund:
        self.refunds.append({"payment_intent": payment_intent_id, "amount": amount, "metadata": metadata})
        return Refund(id=f"re_{len(self.refunds)}", status="succeeded", amount=amount)


def sign_payload(payload: bytes, secret: str = WEBHOOK_SECRET, timestamp: Optional[int] = None) -> str:
    timestamp = timestamp or int(time.time())
    signed = f"{timestamp}.{payload.decode('utf-8')}".encode("utf-8")
    signature = hmac.new(secret.encode("utf-8"), signed, hashlib.sha256).hexdigest()
    return f"t={timestamp},v1={signature}"


def make_event(event_type: str, obj: Dict[str, Any], event_id: str = "evt_1") -> bytes:
    return json.dumps({"id": event_id, "type": event_type, "data": {"object": obj}}).encode("utf-8")


# ============================================================================
# DATA
# ============================================================================


def credit_payload(**overrides) -> Dict[str, Any]:
    now = datetime.now(timezone.utc)
    payload = {
        "title": "Wind Farm Credits",
        "description": "Verified offsets from an onshore wind farm",
        "energy_type": "wind",
        "project_location": {"country": "Kenya", "city": "Marsabit"},
        "total_credits": 1000,
        "available_credits": 800,
        "price_per_credit": 25.50,
        "certification": {
            "standard": "VCS",
            "certifier": "Verra",
            "certificate_number": "VCS-1234",
            "issue_date": now - timedelta(days=30),
            "expiry_date": now + timedelta(days=365),
        },
        "project_details": {"project_name": "Lake Turkana Wind", "project_type": "renewable-energy"},
        "tags": ["Wind", " Africa "],
    }
    payload.update(overrides)
    return payload


async def make_credit(store, seller_id: str, status: str = "active", is_verified: bool = True, **overrides):
    data = CarbonCreditData(seller_id=seller_id, status=status, is_verified=is_verified, **credit_payload(**overrides))
    return await CarbonCredit.create(store, data, user_id=seller_id)


# ============================================================================
# FIXTURES
# ============================================================================


@pytest.fixture
def store() -> MemoryStore:
    return MemoryStore()


@pytest.fixture
def gateway() -> FakeGateway:
    return FakeGateway()


@pytest_asyncio.fixture
async def seller(store):
    return await user_register(
        store, email="seller@example.com", hashed_password="x", first_name="Sam", last_name="Seller", role="seller"
    )


@pytest_asyncio.fixture
async def buyer(store):
    return await user_register(
        store, email="buyer@example.com", hashed_password="x", first_name="Bea", last_name="Buyer", role="buyer"
    )


@pytest_asyncio.fixture
async def credit(store, seller):
    return await make_credit(store, seller.id)
