import logging
from typing import Any, Dict, Optional

from clients.store import DocumentStore, Filter

from models.entities.documents.users import User, UserData
from models.errors import ConflictError, NotFoundError

logger = logging.getLogger(__name__)

PROFILE_FIELDS = {"first_name", "last_name", "company", "phone", "address"}


async def user_get(store: DocumentStore, user_id: str) -> User:
    user = await User.get(store, user_id)
    if user is None:
        raise NotFoundError("User not found")
    return user


async def user_get_by_email(store: DocumentStore, email: str) -> Optional[User]:
    users = await User.find(store, [Filter("email", "eq", email.strip().lower())], limit=1)
    return users[0] if users else None


async def user_register(
    store: DocumentStore,
    email: str,
    hashed_password: str,
    first_name: str,
    last_name: str,
    role: str = "buyer",
    **kwargs: Any,
) -> User:
    if await user_get_by_email(store, email):
        raise ConflictError("User already exists with this email")
    data = UserData(
        email=email,
        hashed_password=hashed_password,
        first_name=first_name,
        last_name=last_name,
        role=role,
        **kwargs,
    )
    user = await User.create(store, data)
    logger.info(f"Registered {role} {user.id}")
    return user


async def user_update_profile(store: DocumentStore, user_id: str, changes: Dict[str, Any]) -> User:
    user = await user_get(store, user_id)
    merged = User.model_dump_with_excluded_attributes(user.data)
    merged.update({k: v for k, v in changes.items() if k in PROFILE_FIELDS})
    user.data = UserData.model_validate(merged)
    return await User.update(store, user)


async def user_set_password(store: DocumentStore, user_id: str, hashed_password: str) -> User:
    user = await user_get(store, user_id)
    user.data.hashed_password = hashed_password
    return await User.update(store, user)


async def user_set_stripe_customer(store: DocumentStore, user_id: str, customer_id: str) -> User:
    user = await user_get(store, user_id)
    user.data.stripe_customer_id = customer_id
    return await User.update(store, user)
