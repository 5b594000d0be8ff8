from typing import Literal, Optional

from fastapi import APIRouter, Depends
from pydantic import Field

from clients.store import DocumentStore
from models.entities.documents.users import Address
from models.errors import AuthenticationError, ValidationError
from models.operations.users import (
    user_get,
    user_get_by_email,
    user_register,
    user_set_password,
    user_update_profile,
)
from utils import log, response
from utils.auth import AuthClient, hash_password, verify_password
from utils.response import RequestBody
from .dependencies import current_user_get, get_auth_client, get_store

logger = log.get_logger(__name__)

router = APIRouter(prefix="/auth", tags=["auth"])

EMAIL_PATTERN = r"^[^@\s]+@[^@\s]+\.[^@\s]+$"
PHONE_PATTERN = r"^[\+]?[1-9][\d]{0,15}$"


class RegisterRequest(RequestBody):
    first_name: str = Field(min_length=1, max_length=50)
    last_name: str = Field(min_length=1, max_length=50)
    email: str = Field(pattern=EMAIL_PATTERN)
    password: str = Field(min_length=6)
    role: Literal["buyer", "seller"] = "buyer"
    company: Optional[str] = Field(default=None, max_length=100)
    phone: Optional[str] = Field(default=None, pattern=PHONE_PATTERN)


class LoginRequest(RequestBody):
    email: str = Field(pattern=EMAIL_PATTERN)
    password: str = Field(min_length=1)


class ProfileRequest(RequestBody):
    first_name: Optional[str] = Field(default=None, min_length=1, max_length=50)
    last_name: Optional[str] = Field(default=None, min_length=1, max_length=50)
    company: Optional[str] = Field(default=None, max_length=100)
    phone: Optional[str] = Field(default=None, pattern=PHONE_PATTERN)
    address: Optional[Address] = None


class ChangePasswordRequest(RequestBody):
    current_password: str = Field(min_length=1)
    new_password: str = Field(min_length=6)


def _token_payload(auth_client: AuthClient, user) -> dict:
    token = auth_client.create_access_token(user.id, user.data.email, user.data.role)
    return {"user": user, "token": token}


@router.post("/register")
async def route_register(
    body: RegisterRequest,
    store: DocumentStore = Depends(get_store),
    auth_client: AuthClient = Depends(get_auth_client),
):
    user = await user_register(
        store,
        email=body.email,
        hashed_password=hash_password(body.password),
        first_name=body.first_name.strip(),
        last_name=body.last_name.strip(),
        role=body.role,
        company=body.company,
        phone=body.phone,
    )
    return response.success(
        _token_payload(auth_client, user), "User registered successfully", status_code=201
    )


@router.post("/login")
async def route_login(
    body: LoginRequest,
    store: DocumentStore = Depends(get_store),
    auth_client: AuthClient = Depends(get_auth_client),
):
    user = await user_get_by_email(store, body.email)
    if user is None or not verify_password(body.password, user.data.hashed_password):
        raise AuthenticationError("Invalid credentials")
    if not user.data.is_active:
        raise AuthenticationError("Account has been deactivated")
    logger.info(f"User {user.id} logged in")
    return response.success(_token_payload(auth_client, user), "Login successful")


@router.post("/logout")
async def route_logout(user: dict = Depends(current_user_get)):
    # Tokens are stateless; the client discards its copy.
    return response.success(message="Logout successful")


@router.get("/me")
async def route_me(user: dict = Depends(current_user_get)):
    return response.success(user["db_user"], "User profile retrieved successfully")


@router.put("/profile")
async def route_update_profile(
    body: ProfileRequest,
    user: dict = Depends(current_user_get),
    store: DocumentStore = Depends(get_store),
):
    updated = await user_update_profile(store, user["sub"], body.model_dump(exclude_unset=True))
    return response.success(updated, "Profile updated successfully")


@router.put("/change-password")
async def route_change_password(
    body: ChangePasswordRequest,
    user: dict = Depends(current_user_get),
    store: DocumentStore = Depends(get_store),
):
    current = await user_get(store, user["sub"])
    if not verify_password(body.current_password, current.data.hashed_password):
        raise ValidationError("Current password is incorrect")
    await user_set_password(store, current.id, hash_password(body.new_password))
    logger.info(f"User {current.id} changed password")
    return response.success(message="Password changed successfully")
