from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel, Field, field_validator

from schemas.validators import normalize_code


class MfaSetupResponse(BaseModel):
    """Pending enrollment. The client renders ``provisioning_uri`` as a QR code."""

    secret: str
    provisioning_uri: str
    manual_entry: str


class MfaEnableRequest(BaseModel):
    secret: str = Field(..., min_length=16, max_length=64)
    code: str = Field(..., min_length=1, max_length=16)

    @field_validator("secret", mode="before")
    @classmethod
    def normalize_secret(cls, value: str) -> str:
        if isinstance(value, str):
            return value.strip().replace(" ", "").upper()
        return value

    @field_validator("code", mode="before")
    @classmethod
    def normalize_code_field(cls, value: str) -> str:
        return normalize_code(value)


class MfaVerifyRequest(BaseModel):
    code: str = Field(..., min_length=1, max_length=32)
    is_backup_code: bool = False

    @field_validator("code", mode="before")
    @classmethod
    def normalize_code_field(cls, value: str) -> str:
        return normalize_code(value)


class MfaCodeRequest(BaseModel):
    """TOTP confirmation for disable / backup-code regeneration."""

    code: str = Field(..., min_length=1, max_length=16)

    @field_validator("code", mode="before")
    @classmethod
    def normalize_code_field(cls, value: str) -> str:
        return normalize_code(value)


class BackupCodesResponse(BaseModel):
    success: bool = True
    backup_codes: List[str]


class MfaStatusResponse(BaseModel):
    enabled: bool
    backup_codes_remaining: int
    enrolled_at: Optional[datetime] = None
    last_challenge: Optional[datetime] = None
