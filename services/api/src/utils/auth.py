from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional

import bcrypt
from jose import JWTError, jwt
from pydantic import BaseModel

from utils import log

logger = log.get_logger(__name__)


class AuthClientConfig(BaseModel):
    secret_key: str
    algorithm: str = "HS256"
    expire_minutes: int = 60 * 24 * 7


def hash_password(password: str) -> str:
    return bcrypt.hashpw(password.encode("utf-8"), bcrypt.gensalt()).decode("utf-8")


def verify_password(plain_password: str, hashed_password: Optional[str]) -> bool:
    if not hashed_password:
        return False
    try:
        return bcrypt.checkpw(plain_password.encode("utf-8"), hashed_password.encode("utf-8"))
    except ValueError:
        # Stored value is not a bcrypt hash.
        return False


class AuthClient:
    """Issues and verifies the bearer tokens of the API."""

    def __init__(self, config: AuthClientConfig):
        self.config = config

    def create_access_token(self, user_id: str, email: str, role: str) -> str:
        now = datetime.now(timezone.utc)
        claims = {
            "sub": user_id,
            "email": email,
            "role": role,
            "iat": now,
            "exp": now + timedelta(minutes=self.config.expire_minutes),
        }
        return jwt.encode(claims, self.config.secret_key, algorithm=self.config.algorithm)

    def decode_jwt(self, token: str) -> Optional[Dict[str, Any]]:
        try:
            payload = jwt.decode(token, self.config.secret_key, algorithms=[self.config.algorithm])
        except JWTError as e:
            logger.info(f"Rejected bearer token: {e}")
            return None
        if not payload.get("sub"):
            return None
        return payload
