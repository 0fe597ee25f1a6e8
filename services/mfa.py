"""TOTP multi-factor authentication with single-use backup codes.

Per-identity state machine:

    DISABLED -> PENDING_ENROLLMENT -> ENABLED -> DISABLED

PENDING_ENROLLMENT is held by the client: begin_enrollment() hands out a
secret without persisting it, and only complete_enrollment() with a valid
code against that secret stores it. Destructive operations (disable,
regenerating backup codes) require a live TOTP code, never a backup code.
"""

import binascii
import hashlib
import logging
import re
import secrets
from base64 import b32decode
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import List, Optional

import pyotp
from sqlalchemy import delete, func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from config import get_settings
from models.audit_log import SecurityAuditLog
from models.mfa_backup_code import MfaBackupCode
from models.user import User
from services.audit import AuditService, RequestInfo, SecurityEvent
from services.clock import Clock, as_utc, utc_now

logger = logging.getLogger(__name__)

GENERIC_CODE_ERROR = "Invalid verification code"
_TOTP_CODE_RE = re.compile(r"^\d+$")


class MfaState(str, Enum):
    DISABLED = "disabled"
    PENDING_ENROLLMENT = "pending_enrollment"
    ENABLED = "enabled"


@dataclass
class MfaEnrollment:
    secret: str
    provisioning_uri: str


@dataclass
class MfaResult:
    success: bool
    error: Optional[str] = None
    backup_codes: List[str] = field(default_factory=list)


@dataclass
class MfaStatus:
    enabled: bool
    backup_codes_remaining: int
    enrolled_at: Optional[datetime] = None
    last_challenge: Optional[datetime] = None


def normalize_backup_code(code: str) -> str:
    return re.sub(r"[\s-]", "", code).upper()


def hash_backup_code(code: str) -> str:
    """SHA-256 of the code with dashes and whitespace removed, upper-cased."""
    return hashlib.sha256(normalize_backup_code(code).encode("utf-8")).hexdigest()


def generate_backup_codes(count: int) -> List[str]:
    """Codes formatted XXXX-XXXX (uppercase hex)."""
    codes = []
    for _ in range(count):
        raw = secrets.token_hex(4).upper()
        codes.append(f"{raw[:4]}-{raw[4:]}")
    return codes


def _is_base32(secret: str) -> bool:
    if not secret:
        return False
    padded = secret.upper() + "=" * (-len(secret) % 8)
    try:
        b32decode(padded)
    except (binascii.Error, ValueError):
        return False
    return True


class MfaService:
    def __init__(self, db: AsyncSession, audit: AuditService, clock: Clock = utc_now):
        self.db = db
        self.audit = audit
        self._clock = clock
        settings = get_settings()
        self.issuer = settings.MFA_ISSUER
        self.digits = settings.MFA_DIGITS
        self.interval = settings.MFA_INTERVAL
        self.valid_window = settings.MFA_VALID_WINDOW
        self.backup_code_count = settings.MFA_BACKUP_CODE_COUNT

    def _totp(self, secret: str) -> pyotp.TOTP:
        return pyotp.TOTP(
            secret,
            digits=self.digits,
            digest=hashlib.sha256,
            interval=self.interval,
            issuer=self.issuer,
        )

    def verify_totp(self, secret: str, code: Optional[str]) -> bool:
        """Check ``code`` against ``secret`` allowing +/- valid_window time steps."""
        if not code or not secret:
            return False
        code = code.strip().replace(" ", "")
        if len(code) != self.digits or not _TOTP_CODE_RE.match(code):
            return False
        return self._totp(secret).verify(code, for_time=self._clock(), valid_window=self.valid_window)

    @staticmethod
    def state_of(user: User) -> MfaState:
        return MfaState.ENABLED if user.mfa_enabled else MfaState.DISABLED

    async def _get_user(self, user_id: int) -> Optional[User]:
        result = await self.db.execute(
            select(User).where(User.id == user_id).execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def _record(
        self,
        action: str,
        user_id: int,
        info: Optional[RequestInfo],
        success: bool,
        **metadata,
    ) -> None:
        if info is not None:
            event = SecurityEvent.from_request(action, "mfa", info, user_id=user_id)
        else:
            event = SecurityEvent(action=action, resource="mfa", user_id=user_id)
        event.status_code = 200 if success else 401
        event.metadata = metadata
        await self.audit.record(event)

    def begin_enrollment(self, user: User) -> MfaEnrollment:
        """
        Fresh base32 secret and otpauth:// URI for a QR renderer.

        Nothing is persisted; the caller holds the pending secret until
        complete_enrollment().
        """
        secret = pyotp.random_base32(length=32)
        uri = self._totp(secret).provisioning_uri(name=user.email, issuer_name=self.issuer)
        return MfaEnrollment(secret=secret, provisioning_uri=uri)

    async def _replace_backup_codes(self, user_id: int) -> List[str]:
        codes = generate_backup_codes(self.backup_code_count)
        await self.db.execute(delete(MfaBackupCode).where(MfaBackupCode.user_id == user_id))
        self.db.add_all(
            MfaBackupCode(user_id=user_id, code_hash=hash_backup_code(code)) for code in codes
        )
        await self.db.flush()
        return codes

    async def complete_enrollment(
        self,
        user_id: int,
        pending_secret: str,
        code: str,
        info: Optional[RequestInfo] = None,
    ) -> MfaResult:
        """Verify the first code against the pending secret and switch MFA on."""
        if not _is_base32(pending_secret):
            return MfaResult(success=False, error="Invalid MFA secret")

        user = await self._get_user(user_id)
        if user is None:
            return MfaResult(success=False, error="User not found")
        if user.mfa_enabled:
            return MfaResult(success=False, error="MFA is already enabled")

        if not self.verify_totp(pending_secret, code):
            await self._record(
                SecurityAuditLog.ACTION_MFA_VERIFY_FAILED, user_id, info, False, stage="enrollment"
            )
            return MfaResult(success=False, error=GENERIC_CODE_ERROR)

        now = self._clock()
        # Conditional on mfa_enabled so two concurrent enrollments cannot both win
        result = await self.db.execute(
            update(User)
            .where(User.id == user_id, User.mfa_enabled.is_(False))
            .values(
                mfa_enabled=True,
                mfa_secret=pending_secret.upper(),
                mfa_enrolled_at=now,
                last_mfa_challenge=now,
            )
        )
        if result.rowcount != 1:
            await self.db.commit()
            return MfaResult(success=False, error="MFA is already enabled")

        codes = await self._replace_backup_codes(user_id)
        await self.db.commit()
        logger.info(f"MFA enabled for user {user_id}")

        await self._record(SecurityAuditLog.ACTION_MFA_ENABLED, user_id, info, True)
        return MfaResult(success=True, backup_codes=codes)

    async def verify_login(
        self,
        user_id: int,
        token: str,
        is_backup_code: bool = False,
        info: Optional[RequestInfo] = None,
    ) -> MfaResult:
        """
        Second-factor check at login.

        Backup codes are consumed with a conditional DELETE: only the request
        that actually removes the row succeeds, so a code works once even
        under concurrent submission. Every attempt is audited.
        """
        method = "backup_code" if is_backup_code else "totp"
        user = await self._get_user(user_id)
        if user is None or not user.mfa_enabled or not user.mfa_secret:
            await self._record(
                SecurityAuditLog.ACTION_MFA_VERIFY_FAILED, user_id, info, False,
                method=method, reason="not_enabled",
            )
            return MfaResult(success=False, error="MFA is not enabled")

        if is_backup_code:
            result = await self.db.execute(
                delete(MfaBackupCode).where(
                    MfaBackupCode.user_id == user_id,
                    MfaBackupCode.code_hash == hash_backup_code(token or ""),
                )
            )
            verified = result.rowcount == 1
        else:
            verified = self.verify_totp(user.mfa_secret, token)

        if verified:
            await self.db.execute(
                update(User).where(User.id == user_id).values(last_mfa_challenge=self._clock())
            )
            await self.db.commit()
        else:
            # End the transaction so the audit write is not blocked by our lock
            await self.db.commit()

        await self._record(
            SecurityAuditLog.ACTION_MFA_VERIFY_SUCCESS if verified else SecurityAuditLog.ACTION_MFA_VERIFY_FAILED,
            user_id,
            info,
            verified,
            method=method,
        )
        if not verified:
            return MfaResult(success=False, error=GENERIC_CODE_ERROR)
        return MfaResult(success=True)

    async def disable(
        self,
        user_id: int,
        code: str,
        info: Optional[RequestInfo] = None,
    ) -> MfaResult:
        """Clear the secret and every backup code. Requires a live TOTP code."""
        user = await self._get_user(user_id)
        if user is None or not user.mfa_enabled or not user.mfa_secret:
            return MfaResult(success=False, error="MFA is not enabled")

        if not self.verify_totp(user.mfa_secret, code):
            await self._record(
                SecurityAuditLog.ACTION_MFA_VERIFY_FAILED, user_id, info, False, stage="disable"
            )
            return MfaResult(success=False, error=GENERIC_CODE_ERROR)

        await self.db.execute(
            update(User)
            .where(User.id == user_id)
            .values(
                mfa_enabled=False,
                mfa_secret=None,
                mfa_enrolled_at=None,
                last_mfa_challenge=None,
            )
        )
        await self.db.execute(delete(MfaBackupCode).where(MfaBackupCode.user_id == user_id))
        await self.db.commit()
        logger.info(f"MFA disabled for user {user_id}")

        await self._record(SecurityAuditLog.ACTION_MFA_DISABLED, user_id, info, True)
        return MfaResult(success=True)

    async def regenerate_backup_codes(
        self,
        user_id: int,
        code: str,
        info: Optional[RequestInfo] = None,
    ) -> MfaResult:
        """Replace the whole backup-code set in one transaction. Requires a live TOTP code."""
        user = await self._get_user(user_id)
        if user is None or not user.mfa_enabled or not user.mfa_secret:
            return MfaResult(success=False, error="MFA is not enabled")

        if not self.verify_totp(user.mfa_secret, code):
            await self._record(
                SecurityAuditLog.ACTION_MFA_VERIFY_FAILED, user_id, info, False, stage="regenerate"
            )
            return MfaResult(success=False, error=GENERIC_CODE_ERROR)

        codes = await self._replace_backup_codes(user_id)
        await self.db.commit()

        await self._record(SecurityAuditLog.ACTION_MFA_BACKUP_CODES_REGENERATED, user_id, info, True)
        return MfaResult(success=True, backup_codes=codes)

    async def get_status(self, user_id: int) -> Optional[MfaStatus]:
        """Public MFA status. Never includes the secret."""
        user = await self._get_user(user_id)
        if user is None:
            return None

        remaining = await self.db.scalar(
            select(func.count(MfaBackupCode.id)).where(MfaBackupCode.user_id == user_id)
        )
        return MfaStatus(
            enabled=bool(user.mfa_enabled),
            backup_codes_remaining=int(remaining or 0),
            enrolled_at=as_utc(user.mfa_enrolled_at),
            last_challenge=as_utc(user.last_mfa_challenge),
        )
