from typing import Optional

from pydantic import BaseModel, Field, field_validator

from schemas.auth import UserResponse
from schemas.validators import normalize_email, strip_invisible_edges


class AdminUserCreate(BaseModel):
    """
    Account created by an administrator.

    The password is generated server side and returned once in
    ``AdminUserCreated.temporary_password``.
    """

    email: str = Field(..., min_length=3, max_length=255)
    name: Optional[str] = Field(default=None, max_length=200)
    is_admin: bool = False

    @field_validator("email", mode="before")
    @classmethod
    def normalize_email_field(cls, value: str) -> str:
        return normalize_email(value)

    @field_validator("name", mode="before")
    @classmethod
    def normalize_name(cls, value: Optional[str]) -> Optional[str]:
        if isinstance(value, str):
            return strip_invisible_edges(value) or None
        return value


class AdminUserCreated(BaseModel):
    user: UserResponse
    temporary_password: str


class SessionsRevoked(BaseModel):
    user_id: int
    revoked: int
