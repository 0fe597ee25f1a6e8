"""Admin authorization gate."""

import logging
from dataclasses import dataclass
from typing import Optional

from fastapi import Request, status
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from models.user import User
from services.session import SessionManager, SessionValidation, extract_session_token

logger = logging.getLogger(__name__)


@dataclass
class AdminCheck:
    allowed: bool
    status_code: int = status.HTTP_200_OK
    user: Optional[User] = None
    session: Optional[SessionValidation] = None
    error: Optional[str] = None

    @property
    def user_id(self) -> Optional[int]:
        return self.user.id if self.user is not None else None


async def resolve_active_user(db: AsyncSession, user_id: Optional[int]) -> Optional[User]:
    if user_id is None:
        return None
    result = await db.execute(
        select(User).where(User.id == user_id).execution_options(populate_existing=True)
    )
    user = result.scalar_one_or_none()
    if user is None or not user.is_active:
        return None
    return user


class AdminGate:
    """
    Resolves the caller through SessionManager and checks the typed
    ``is_admin`` flag.

    401 when no active identity can be resolved, 403 when resolved but not an
    administrator (or when MFA is required and the session has not passed
    it). Logging the admin action itself stays with the handler.
    """

    def __init__(self, db: AsyncSession, sessions: SessionManager):
        self.db = db
        self.sessions = sessions

    async def verify(self, request: Request, require_mfa: bool = False) -> AdminCheck:
        validation = await self.sessions.validate(extract_session_token(request))
        if not validation.valid:
            return AdminCheck(
                allowed=False,
                status_code=status.HTTP_401_UNAUTHORIZED,
                error="Authentication required",
            )

        user = await resolve_active_user(self.db, validation.user_id)
        if user is None:
            return AdminCheck(
                allowed=False,
                status_code=status.HTTP_401_UNAUTHORIZED,
                session=validation,
                error="Authentication required",
            )

        if not user.is_admin:
            logger.warning(f"Non-admin user {user.id} attempted admin access: {request.url.path}")
            return AdminCheck(
                allowed=False,
                status_code=status.HTTP_403_FORBIDDEN,
                user=user,
                session=validation,
                error="Admin access required",
            )

        if require_mfa and user.mfa_enabled and not validation.mfa_verified:
            return AdminCheck(
                allowed=False,
                status_code=status.HTTP_403_FORBIDDEN,
                user=user,
                session=validation,
                error="MFA verification required",
            )

        return AdminCheck(allowed=True, user=user, session=validation)
