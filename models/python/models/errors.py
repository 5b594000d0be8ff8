from typing import Any, Dict, List, Optional


class MarketplaceError(Exception):
    """Base class for errors surfaced to API clients.

    Carries the HTTP status and a client-safe message; ``errors`` holds
    optional field-level details.
    """

    status_code = 500

    def __init__(self, message: str, errors: Optional[List[Dict[str, Any]]] = None):
        super().__init__(message)
        self.message = message
        self.errors = errors


class ValidationError(MarketplaceError):
    status_code = 400


class AuthenticationError(MarketplaceError):
    status_code = 401


class NotAuthorizedError(MarketplaceError):
    status_code = 403


class NotFoundError(MarketplaceError):
    status_code = 404


class ConflictError(MarketplaceError):
    status_code = 409


class InvalidStateError(MarketplaceError):
    status_code = 400


class InvalidTransitionError(InvalidStateError):
    def __init__(self, current: str, target: str):
        super().__init__(f"Invalid status transition from {current} to {target}")
        self.current = current
        self.target = target


class RefundNotEligibleError(MarketplaceError):
    status_code = 400
