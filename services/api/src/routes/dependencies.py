from typing import Optional

from fastapi import Depends, Request
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from clients.store import DocumentStore
from clients.stripe import StripeClient
from models.entities.documents.users import User
from models.errors import AuthenticationError, NotAuthorizedError
from utils import log
from utils.auth import AuthClient

logger = log.get_logger(__name__)

security = HTTPBearer(auto_error=False)


def get_store(request: Request) -> DocumentStore:
    return request.app.state.store


def get_gateway(request: Request) -> StripeClient:
    return request.app.state.gateway


def get_auth_client(request: Request) -> AuthClient:
    return request.app.state.auth_client


def get_client_url(request: Request) -> str:
    return request.app.state.client_url


async def current_user_get(
    token: Optional[HTTPAuthorizationCredentials] = Depends(security),
    auth_client: AuthClient = Depends(get_auth_client),
    store: DocumentStore = Depends(get_store),
) -> dict:
    """Decode the bearer token and load the account it belongs to.

    The stored role wins over the role claim so demotions apply at once.
    """
    if token is None:
        raise AuthenticationError("Not authorized, no token")
    payload = auth_client.decode_jwt(token.credentials)
    if payload is None:
        raise AuthenticationError("Not authorized, token failed")

    db_user = await User.get(store, payload["sub"])
    if db_user is None:
        raise AuthenticationError("Not authorized, user not found")
    if not db_user.data.is_active:
        raise AuthenticationError("Account has been deactivated")

    payload["role"] = db_user.data.role
    payload["db_user"] = db_user
    return payload


def require_role(*roles: str):
    async def _require(user: dict = Depends(current_user_get)) -> dict:
        if user["role"] not in roles:
            logger.warning(f"User {user['sub']} ({user['role']}) denied access requiring {roles}")
            raise NotAuthorizedError(f"User role {user['role']} is not authorized to access this route")
        return user

    return _require


require_buyer = require_role("buyer")
require_seller = require_role("seller")
require_admin = require_role("admin")
