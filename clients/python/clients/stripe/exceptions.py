class PaymentGatewayError(Exception):
    """Base exception for the payment gateway client."""

    status_code = 502

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class GatewayError(PaymentGatewayError):
    """Raised when a call to the payment provider fails."""
    pass


class GatewayNotConfiguredError(PaymentGatewayError):
    """Raised when an outward call is attempted without an API key."""

    status_code = 503


class SignatureError(PaymentGatewayError):
    """Raised when a webhook payload fails signature verification."""

    status_code = 400
