"""Server-side session lifecycle.

States: Active -> (Refreshed) -> Active; Active -> Expired (inactivity or
absolute ceiling); Active -> Revoked. Each transition is a single
conditional statement committed immediately, so concurrent requests on the
same session resolve as last-write-wins on last_activity and exactly one
winner on token rotation.
"""

import hashlib
import logging
import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import List, Optional

from fastapi import Request
from sqlalchemy import delete, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from config import get_settings
from models.audit_log import SecurityAuditLog
from models.session import UserSession
from services.audit import AuditService, RequestInfo, SecurityEvent
from services.clock import Clock, as_utc, utc_now

logger = logging.getLogger(__name__)

SESSION_TOKEN_BYTES = 32


def generate_session_token() -> str:
    return secrets.token_hex(SESSION_TOKEN_BYTES)


def hash_session_token(token: str) -> str:
    """SHA-256 hex digest; tokens are high-entropy so no salt is needed."""
    return hashlib.sha256(token.encode()).hexdigest()


def extract_session_token(request: Request) -> Optional[str]:
    """Session token from the cookie, the X-Session-Token header, or a Bearer header."""
    settings = get_settings()
    token = request.cookies.get(settings.SESSION_COOKIE_NAME)
    if not token:
        token = request.headers.get(settings.SESSION_HEADER_NAME)
    if not token:
        auth_header = request.headers.get("Authorization", "")
        scheme, _, credentials = auth_header.partition(" ")
        if scheme.lower() == "bearer":
            token = credentials
    token = (token or "").strip()
    return token or None


@dataclass
class IssuedSession:
    token: str
    expires_at: datetime
    session_id: int


@dataclass
class SessionValidation:
    valid: bool
    reason: Optional[str] = None
    session_id: Optional[int] = None
    user_id: Optional[int] = None
    mfa_verified: bool = False
    needs_refresh: bool = False
    expires_at: Optional[datetime] = None
    remaining_minutes: Optional[int] = None


@dataclass
class SessionRefresh:
    success: bool
    token: Optional[str] = None
    expires_at: Optional[datetime] = None
    reason: Optional[str] = None


class SessionManager:
    """Issues, validates, rotates and revokes opaque session tokens."""

    REASON_MISSING = "missing"
    REASON_NOT_FOUND = "not_found"
    REASON_EXPIRED_ABSOLUTE = "expired_absolute"
    REASON_EXPIRED_INACTIVITY = "expired_inactivity"
    REASON_ROTATED = "rotated_concurrently"

    def __init__(
        self,
        db: AsyncSession,
        audit: Optional[AuditService] = None,
        clock: Clock = utc_now,
    ):
        self.db = db
        self.audit = audit
        self._clock = clock
        settings = get_settings()
        self.inactivity_timeout = timedelta(minutes=settings.SESSION_TIMEOUT_MINUTES)
        self.absolute_timeout = timedelta(hours=settings.SESSION_ABSOLUTE_TIMEOUT_HOURS)
        self.refresh_threshold = timedelta(minutes=settings.SESSION_REFRESH_THRESHOLD_MINUTES)

    async def create(
        self,
        user_id: int,
        client: Optional[RequestInfo] = None,
        mfa_verified: bool = False,
    ) -> IssuedSession:
        token = generate_session_token()
        now = self._clock()
        expires_at = now + self.absolute_timeout

        row = UserSession(
            token_hash=hash_session_token(token),
            user_id=user_id,
            created_at=now,
            last_activity=now,
            expires_at=expires_at,
            mfa_verified=mfa_verified,
            ip_address=client.ip_address[:45] if client and client.ip_address else None,
            user_agent=client.user_agent[:500] if client and client.user_agent else None,
        )
        self.db.add(row)
        await self.db.commit()
        return IssuedSession(token=token, expires_at=expires_at, session_id=row.id)

    async def _expire(self, row_id: int, user_id: int, reason: str) -> None:
        await self.db.execute(delete(UserSession).where(UserSession.id == row_id))
        await self.db.commit()
        logger.info(f"Session {row_id} for user {user_id} expired ({reason})")
        if self.audit is not None:
            await self.audit.record(
                SecurityEvent(
                    action=SecurityAuditLog.ACTION_SESSION_EXPIRED,
                    resource="session",
                    user_id=user_id,
                    resource_id=str(row_id),
                    metadata={"reason": reason},
                )
            )

    async def validate(self, token: Optional[str]) -> SessionValidation:
        """
        Resolve a token to its identity and bump last_activity.

        Expired sessions (absolute ceiling first, then inactivity) are deleted
        and reported invalid. A session idle for exactly the timeout is still
        valid; only strictly longer idle periods expire it.
        """
        if not token:
            return SessionValidation(valid=False, reason=self.REASON_MISSING)

        token_hash = hash_session_token(token)
        result = await self.db.execute(
            select(
                UserSession.id,
                UserSession.user_id,
                UserSession.last_activity,
                UserSession.expires_at,
                UserSession.mfa_verified,
            ).where(UserSession.token_hash == token_hash)
        )
        row = result.one_or_none()
        if row is None:
            return SessionValidation(valid=False, reason=self.REASON_NOT_FOUND)

        now = self._clock()
        expires_at = as_utc(row.expires_at)
        last_activity = as_utc(row.last_activity)

        if now > expires_at:
            await self._expire(row.id, row.user_id, self.REASON_EXPIRED_ABSOLUTE)
            return SessionValidation(valid=False, reason=self.REASON_EXPIRED_ABSOLUTE)

        if now - last_activity > self.inactivity_timeout:
            await self._expire(row.id, row.user_id, self.REASON_EXPIRED_INACTIVITY)
            return SessionValidation(valid=False, reason=self.REASON_EXPIRED_INACTIVITY)

        bumped = await self.db.execute(
            update(UserSession)
            .where(UserSession.id == row.id, UserSession.token_hash == token_hash)
            .values(last_activity=now)
        )
        await self.db.commit()
        if bumped.rowcount != 1:
            # Destroyed or rotated between the read and the bump
            return SessionValidation(valid=False, reason=self.REASON_NOT_FOUND)

        remaining = expires_at - now
        return SessionValidation(
            valid=True,
            session_id=row.id,
            user_id=row.user_id,
            mfa_verified=bool(row.mfa_verified),
            needs_refresh=remaining < self.refresh_threshold,
            expires_at=expires_at,
            remaining_minutes=int(remaining.total_seconds() // 60),
        )

    async def refresh(self, token: Optional[str]) -> SessionRefresh:
        """
        Rotate the token and restart the absolute ceiling.

        The swap is conditional on the old token hash, so of two concurrent
        refreshes only one succeeds; the old token stops working immediately.
        """
        validation = await self.validate(token)
        if not validation.valid:
            return SessionRefresh(success=False, reason=validation.reason)

        new_token = generate_session_token()
        now = self._clock()
        expires_at = now + self.absolute_timeout

        result = await self.db.execute(
            update(UserSession)
            .where(UserSession.token_hash == hash_session_token(token))
            .values(
                token_hash=hash_session_token(new_token),
                created_at=now,
                last_activity=now,
                expires_at=expires_at,
            )
        )
        await self.db.commit()
        if result.rowcount != 1:
            return SessionRefresh(success=False, reason=self.REASON_ROTATED)

        if self.audit is not None:
            await self.audit.record(
                SecurityEvent(
                    action=SecurityAuditLog.ACTION_SESSION_REFRESH,
                    resource="session",
                    user_id=validation.user_id,
                    resource_id=str(validation.session_id),
                )
            )
        return SessionRefresh(success=True, token=new_token, expires_at=expires_at)

    async def destroy(self, token: Optional[str]) -> bool:
        if not token:
            return False
        result = await self.db.execute(
            delete(UserSession).where(UserSession.token_hash == hash_session_token(token))
        )
        await self.db.commit()
        return result.rowcount > 0

    async def destroy_all(self, user_id: int) -> int:
        result = await self.db.execute(delete(UserSession).where(UserSession.user_id == user_id))
        await self.db.commit()
        return result.rowcount

    async def update_mfa_flag(self, token: Optional[str], verified: bool) -> bool:
        """Flip mfa_verified on an established session (after a passed challenge)."""
        if not token:
            return False
        result = await self.db.execute(
            update(UserSession)
            .where(UserSession.token_hash == hash_session_token(token))
            .values(mfa_verified=verified)
        )
        await self.db.commit()
        return result.rowcount == 1

    async def list_user_sessions(self, user_id: int) -> List[UserSession]:
        """Live sessions for a user, most recently active first."""
        now = self._clock()
        result = await self.db.execute(
            select(UserSession)
            .where(
                UserSession.user_id == user_id,
                UserSession.expires_at > now,
                UserSession.last_activity >= now - self.inactivity_timeout,
            )
            .order_by(UserSession.last_activity.desc())
        )
        return list(result.scalars().all())

    async def cleanup_expired(self) -> int:
        """Delete sessions past either timeout. Run from the maintenance task."""
        now = self._clock()
        # Evaluated in SQL only; loaded rows may carry naive SQLite datetimes
        result = await self.db.execute(
            delete(UserSession)
            .where(
                or_(
                    UserSession.expires_at < now,
                    UserSession.last_activity < now - self.inactivity_timeout,
                )
            )
            .execution_options(synchronize_session=False)
        )
        await self.db.commit()
        return result.rowcount
