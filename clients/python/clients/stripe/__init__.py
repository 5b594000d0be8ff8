from .client import CheckoutSession, Refund, StripeClient
from .exceptions import (
    GatewayError,
    GatewayNotConfiguredError,
    PaymentGatewayError,
    SignatureError,
)

__all__ = [
    "CheckoutSession",
    "GatewayError",
    "GatewayNotConfiguredError",
    "PaymentGatewayError",
    "Refund",
    "SignatureError",
    "StripeClient",
]
