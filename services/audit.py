"""Security audit trail and account lockout.

Audit writes are best-effort: each runs in its own short session so a
failure neither aborts nor rolls back the caller's transaction. The lockout
check is the exception: it is trust-critical, so store errors propagate.
"""

import json
import logging
import math
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Dict, Optional

from fastapi import Request
from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import async_sessionmaker

from config import get_settings
from db.database import DB_ERRORS
from middleware.rate_limit import get_client_ip
from models.audit_log import AdminAuditLog, SecurityAuditLog
from models.failed_login import FailedLoginAttempt
from services.clock import Clock, as_utc, utc_now
from services.error_sanitizer import sanitize_public_error_message

logger = logging.getLogger(__name__)

DATA_OPERATIONS = ("read", "write", "delete")


@dataclass
class RequestInfo:
    ip_address: str
    user_agent: str
    request_method: Optional[str] = None
    request_path: Optional[str] = None


@dataclass
class SecurityEvent:
    action: str
    resource: str
    user_id: Optional[int] = None
    resource_id: Optional[str] = None
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    request_method: Optional[str] = None
    request_path: Optional[str] = None
    status_code: Optional[int] = None
    error_message: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_request(cls, action: str, resource: str, info: RequestInfo, **kwargs) -> "SecurityEvent":
        return cls(
            action=action,
            resource=resource,
            ip_address=info.ip_address,
            user_agent=info.user_agent,
            request_method=info.request_method,
            request_path=info.request_path,
            **kwargs,
        )


@dataclass
class FailedLogin:
    email: str
    attempt_type: str = FailedLoginAttempt.TYPE_INVALID_CREDENTIALS
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None


@dataclass
class LockoutStatus:
    locked: bool
    remaining_seconds: Optional[int] = None
    attempts: int = 0


def extract_request_info(request: Request) -> RequestInfo:
    """Client address, user agent, method and path for audit rows."""
    return RequestInfo(
        ip_address=get_client_ip(request),
        user_agent=request.headers.get("User-Agent", "unknown"),
        request_method=request.method,
        request_path=request.url.path,
    )


def _truncate(value: Optional[str], limit: int) -> Optional[str]:
    return value[:limit] if value else None


def _normalize_email(email: str) -> str:
    return email.strip().lower()


class AuditService:
    """Writes security_audit_log, admin_audit_log and failed_login_attempts."""

    def __init__(self, session_factory: async_sessionmaker, clock: Clock = utc_now):
        self._session_factory = session_factory
        self._clock = clock

    async def _write(self, row, what: str) -> bool:
        try:
            async with self._session_factory() as db:
                db.add(row)
                await db.commit()
            return True
        except DB_ERRORS:
            logger.exception(f"Failed to write {what}")
            return False

    async def record(self, event: SecurityEvent) -> bool:
        """Append a security event. Never raises; returns False when the write failed."""
        row = SecurityAuditLog(
            user_id=event.user_id,
            action=event.action,
            resource=event.resource,
            resource_id=_truncate(event.resource_id, 100),
            ip_address=_truncate(event.ip_address, 45),
            user_agent=_truncate(event.user_agent, 500),
            request_method=event.request_method,
            request_path=_truncate(event.request_path, 500),
            status_code=event.status_code,
            error_message=sanitize_public_error_message(event.error_message),
            metadata_json=json.dumps(event.metadata, default=str) if event.metadata else None,
            created_at=self._clock(),
        )
        return await self._write(row, f"security event {event.action}")

    async def log_admin_action(
        self,
        user_id: int,
        action: str,
        resource: str,
        details: Optional[Dict[str, Any]] = None,
    ) -> bool:
        row = AdminAuditLog(
            admin_user_id=user_id,
            action=action,
            resource=resource,
            details_json=json.dumps(details, default=str) if details else None,
            created_at=self._clock(),
        )
        return await self._write(row, f"admin action {action}")

    async def log_failed_login(self, attempt: FailedLogin) -> bool:
        row = FailedLoginAttempt(
            email=_normalize_email(attempt.email),
            ip_address=_truncate(attempt.ip_address, 45),
            user_agent=_truncate(attempt.user_agent, 500),
            attempt_type=attempt.attempt_type,
            attempt_time=self._clock(),
        )
        return await self._write(row, "failed login attempt")

    async def log_suspicious_activity(
        self,
        description: str,
        info: RequestInfo,
        metadata: Optional[Dict[str, Any]] = None,
        user_id: Optional[int] = None,
    ) -> bool:
        logger.warning(
            f"Suspicious activity: {description} (ip={info.ip_address}, path={info.request_path})"
        )
        return await self.record(
            SecurityEvent.from_request(
                SecurityAuditLog.ACTION_SUSPICIOUS_ACTIVITY,
                "system",
                info,
                user_id=user_id,
                metadata={"description": description, **(metadata or {})},
            )
        )

    async def log_data_access(
        self,
        user_id: int,
        data_type: str,
        operation: str,
        record_id: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> bool:
        if operation not in DATA_OPERATIONS:
            raise ValueError(f"operation must be one of {DATA_OPERATIONS}")
        return await self.record(
            SecurityEvent(
                action=f"data_{operation}",
                resource=data_type,
                user_id=user_id,
                resource_id=record_id,
                metadata=metadata or {},
            )
        )

    async def check_account_lockout(
        self,
        email: str,
        max_attempts: Optional[int] = None,
        window_minutes: Optional[int] = None,
    ) -> LockoutStatus:
        """
        Lockout derived from failed attempts in the trailing window.

        Once ``max_attempts`` records fall inside the window, the account is
        locked until ``window_minutes`` after the most recent one, so each
        further failure pushes the lockout forward.

        Raises SQLAlchemyError when the store is unavailable.
        """
        settings = get_settings()
        max_attempts = max_attempts or settings.LOCKOUT_MAX_ATTEMPTS
        window = timedelta(minutes=window_minutes or settings.LOCKOUT_WINDOW_MINUTES)
        now = self._clock()

        async with self._session_factory() as db:
            result = await db.execute(
                select(FailedLoginAttempt.attempt_time)
                .where(
                    FailedLoginAttempt.email == _normalize_email(email),
                    FailedLoginAttempt.attempt_time >= now - window,
                )
                .order_by(FailedLoginAttempt.attempt_time.desc())
            )
            attempts = [as_utc(t) for t in result.scalars().all()]

        if len(attempts) < max_attempts:
            return LockoutStatus(locked=False, attempts=len(attempts))

        lockout_end = attempts[0] + window
        if now < lockout_end:
            remaining = math.ceil((lockout_end - now).total_seconds())
            return LockoutStatus(locked=True, remaining_seconds=remaining, attempts=len(attempts))
        return LockoutStatus(locked=False, attempts=len(attempts))

    async def purge_expired(self, now: Optional[datetime] = None) -> Dict[str, int]:
        """Retention-window deletion. Run from the maintenance task, not the request path."""
        settings = get_settings()
        now = now or self._clock()
        audit_cutoff = now - timedelta(days=settings.AUDIT_RETENTION_DAYS)
        failed_cutoff = now - timedelta(days=settings.FAILED_LOGIN_RETENTION_DAYS)

        async with self._session_factory() as db:
            audit_result = await db.execute(
                delete(SecurityAuditLog)
                .where(SecurityAuditLog.created_at < audit_cutoff)
                .execution_options(synchronize_session=False)
            )
            admin_result = await db.execute(
                delete(AdminAuditLog)
                .where(AdminAuditLog.created_at < audit_cutoff)
                .execution_options(synchronize_session=False)
            )
            failed_result = await db.execute(
                delete(FailedLoginAttempt)
                .where(FailedLoginAttempt.attempt_time < failed_cutoff)
                .execution_options(synchronize_session=False)
            )
            await db.commit()

        return {
            "security_audit_log": audit_result.rowcount,
            "admin_audit_log": admin_result.rowcount,
            "failed_login_attempts": failed_result.rowcount,
        }

