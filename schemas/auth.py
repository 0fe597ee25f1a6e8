from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel, Field, field_validator

from schemas.validators import ensure_utf8_encodable, normalize_email, strip_invisible_edges

# bcrypt runs over a SHA-256 digest, so this only bounds request size
MAX_PASSWORD_CHARS = 256


class RegisterRequest(BaseModel):
    """Self-service registration"""

    email: str = Field(..., min_length=3, max_length=255)
    password: str = Field(..., min_length=1, max_length=MAX_PASSWORD_CHARS)
    name: Optional[str] = Field(default=None, max_length=200)

    @field_validator("email", mode="before")
    @classmethod
    def normalize_email_field(cls, value: str) -> str:
        return normalize_email(value)

    @field_validator("password")
    @classmethod
    def password_encodable(cls, value: str) -> str:
        return ensure_utf8_encodable(value)

    @field_validator("name", mode="before")
    @classmethod
    def normalize_name(cls, value: Optional[str]) -> Optional[str]:
        if value is None:
            return None
        if isinstance(value, str):
            normalized = strip_invisible_edges(value)
            return normalized or None
        return value


class LoginRequest(BaseModel):
    email: str = Field(..., min_length=3, max_length=255)
    password: str = Field(..., min_length=1, max_length=MAX_PASSWORD_CHARS)

    @field_validator("email", mode="before")
    @classmethod
    def normalize_email_field(cls, value: str) -> str:
        return normalize_email(value)

    @field_validator("password")
    @classmethod
    def password_encodable(cls, value: str) -> str:
        return ensure_utf8_encodable(value)


class UserResponse(BaseModel):
    """User info response (never includes the password hash or MFA secret)"""

    id: int
    email: str
    name: Optional[str] = None
    is_admin: bool = False
    is_active: bool = True
    mfa_enabled: bool = False
    created_at: Optional[datetime] = None
    last_login: Optional[datetime] = None

    model_config = {"from_attributes": True}


class LoginResponse(BaseModel):
    """
    Successful password login.

    ``mfa_required`` tells the client to call /api/mfa/verify before any
    MFA-gated route accepts the session.
    """

    session_token: str
    csrf_token: str
    expires_at: datetime
    mfa_required: bool
    user: UserResponse


class RefreshResponse(BaseModel):
    session_token: str
    csrf_token: str
    expires_at: datetime


class PasswordStrength(BaseModel):
    score: int
    label: str


class RegisterResponse(BaseModel):
    user: UserResponse
    password_strength: PasswordStrength


class SessionInfo(BaseModel):
    id: int
    created_at: datetime
    last_activity: datetime
    expires_at: datetime
    mfa_verified: bool
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    current: bool = False

    model_config = {"from_attributes": True}


class SessionListResponse(BaseModel):
    sessions: List[SessionInfo]


class CsrfTokenResponse(BaseModel):
    token: str
