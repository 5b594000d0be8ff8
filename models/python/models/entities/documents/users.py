from typing import Literal, Optional

from pydantic import Field, field_validator

from clients.store import BaseDocumentModel, BaseEntityData, IndexSpec

from .credits import SubDocument

Role = Literal["buyer", "seller", "admin"]


class Address(SubDocument):
    street: Optional[str] = None
    city: Optional[str] = None
    state: Optional[str] = None
    country: Optional[str] = None
    postal_code: Optional[str] = None


class UserData(BaseEntityData):
    email: str
    hashed_password: Optional[str] = Field(default=None, exclude=True)
    first_name: str = Field(min_length=1, max_length=50)
    last_name: str = Field(min_length=1, max_length=50)
    role: Role = "buyer"
    company: Optional[str] = Field(default=None, max_length=100)
    phone: Optional[str] = None
    address: Address = Field(default_factory=Address)
    is_active: bool = True
    stripe_customer_id: Optional[str] = None

    @field_validator("email", mode="before")
    @classmethod
    def _normalise_email(cls, value):
        return value.strip().lower() if isinstance(value, str) else value

    @property
    def full_name(self) -> str:
        return f"{self.first_name} {self.last_name}"


class User(BaseDocumentModel[UserData]):
    _collection_name = "users"
    _indexes = [IndexSpec(name="ix_users_email", paths=["email"])]
