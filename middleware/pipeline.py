"""Composed security guards for request handlers.

A handler is wrapped by an ordered list of guard stages run by one
dispatcher loop:

    rate limit -> CSRF -> session / admin -> audited handler

Each stage returns None to let the request through or a Response to
short-circuit. Rate limiting runs first so floods are rejected before any
database work. Audit recording observes the final status, whether it came
from a stage or from the handler.

Failure policy: the rate limiter fails open (handled inside RateLimiter);
CSRF, session and admin checks fail closed when their store is unreachable;
audit writes are best-effort.
"""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, List, Optional, Sequence, Tuple

from fastapi import HTTPException, Request, status
from fastapi.encoders import jsonable_encoder
from redis.exceptions import RedisError
from sqlalchemy.ext.asyncio import AsyncSession
from starlette.responses import JSONResponse, Response

from config import get_settings
from db.database import DB_ERRORS
from middleware.rate_limit import (
    RateLimitResult,
    get_client_ip,
    rate_limit_headers,
    rate_limited_response,
)
from models.user import User
from services.admin import AdminGate, resolve_active_user
from services.audit import AuditService, RequestInfo, SecurityEvent, extract_request_info
from services.csrf import derive_session_identifier, is_csrf_protected, session_identifier
from services.error_sanitizer import sanitize_public_error_message
from services.registry import SecurityServices, get_services
from services.session import (
    SessionManager,
    SessionRefresh,
    SessionValidation,
    extract_session_token,
)

logger = logging.getLogger(__name__)

_STORE_ERRORS = DB_ERRORS + (RedisError,)


@dataclass
class SecurityContext:
    """Per-request state shared by the stages and the handler."""

    request: Request
    services: SecurityServices
    db: AsyncSession
    info: RequestInfo
    user: Optional[User] = None
    user_id: Optional[int] = None
    session_token: Optional[str] = None
    session: Optional[SessionValidation] = None
    rotated_session: Optional[SessionRefresh] = None
    rotated_csrf_token: Optional[str] = None
    rate_limit: Optional[RateLimitResult] = None

    def set_user(self, user: User) -> None:
        """
        Attach the resolved identity.

        user_id is kept as a plain int: it stays readable after the handler
        commits or rolls back and the ORM instance is expired.
        """
        self.user = user
        self.user_id = user.id

    @property
    def audit(self) -> AuditService:
        return self.services.audit()

    @property
    def sessions(self) -> SessionManager:
        return self.services.sessions(self.db)


Handler = Callable[[Request, SecurityContext], Awaitable[Any]]


def error_response(status_code: int, detail: str, headers: Optional[dict] = None) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"detail": detail}, headers=headers)


def set_session_cookie(response: Response, token: str, max_age: int) -> None:
    settings = get_settings()
    response.set_cookie(
        key=settings.SESSION_COOKIE_NAME,
        value=token,
        httponly=True,
        secure=settings.is_prod,
        samesite="strict",
        max_age=max_age,
        path="/",
    )


def set_csrf_cookie(response: Response, token: str) -> None:
    settings = get_settings()
    response.set_cookie(
        key=settings.CSRF_COOKIE_NAME,
        value=token,
        httponly=True,
        secure=settings.is_prod,
        samesite="strict",
        max_age=settings.CSRF_TOKEN_EXPIRY_HOURS * 3600,
        path="/",
    )


def clear_auth_cookies(response: Response) -> None:
    settings = get_settings()
    response.delete_cookie(settings.SESSION_COOKIE_NAME, path="/")
    response.delete_cookie(settings.CSRF_COOKIE_NAME, path="/")


class GuardStage(ABC):
    """One step of the pipeline."""

    name = "guard"

    @abstractmethod
    async def check(self, ctx: SecurityContext) -> Optional[Response]:
        """Return None to continue or a Response to short-circuit."""

    def finalize(self, ctx: SecurityContext, response: Response) -> None:
        """Decorate the outgoing response (called for stages that ran)."""


class RateLimitStage(GuardStage):
    name = "rate_limit"

    def __init__(self, limit_class: str, key_func: Optional[Callable[[Request], str]] = None):
        self.limit_class = limit_class
        self.key_func = key_func or get_client_ip

    async def check(self, ctx: SecurityContext) -> Optional[Response]:
        identifier = self.key_func(ctx.request)
        result = await ctx.services.rate_limiter.limit(identifier, self.limit_class)
        ctx.rate_limit = result
        if not result.allowed:
            logger.warning(
                f"Rate limit exceeded for {self.limit_class}:{identifier} "
                f"(path={ctx.request.url.path})"
            )
            return rate_limited_response(result)
        return None

    def finalize(self, ctx: SecurityContext, response: Response) -> None:
        if ctx.rate_limit is not None and ctx.rate_limit.allowed:
            response.headers.update(rate_limit_headers(ctx.rate_limit))


class CsrfStage(GuardStage):
    """Rejects unsafe requests whose X-CSRF-Token does not match the stored token."""

    name = "csrf"

    async def check(self, ctx: SecurityContext) -> Optional[Response]:
        settings = get_settings()
        request = ctx.request
        if not is_csrf_protected(request.method, request.url.path, settings.csrf_exempt_paths):
            return None

        supplied = request.headers.get(settings.CSRF_HEADER_NAME)
        try:
            valid = await ctx.services.csrf.validate(session_identifier(request), supplied)
        except _STORE_ERRORS as e:
            logger.error(f"CSRF token store unavailable, denying request: {e}")
            valid = False

        if not valid:
            logger.warning(f"CSRF validation failed (path={request.url.path}, ip={ctx.info.ip_address})")
            return error_response(status.HTTP_403_FORBIDDEN, "Forbidden")
        return None


class SessionStage(GuardStage):
    """
    Resolves the session and its user.

    With require_mfa, sessions that have not passed the MFA challenge are
    refused. Sessions close to their absolute ceiling are rotated and the new
    token is sent back in a cookie and the X-Session-Token header, together
    with a CSRF token bound to it.
    """

    name = "session"

    def __init__(self, require_mfa: bool = False, auto_refresh: bool = True):
        self.require_mfa = require_mfa
        self.auto_refresh = auto_refresh

    async def check(self, ctx: SecurityContext) -> Optional[Response]:
        token = extract_session_token(ctx.request)
        sessions = ctx.sessions
        try:
            validation = await sessions.validate(token)
            user = await resolve_active_user(ctx.db, validation.user_id) if validation.valid else None
        except _STORE_ERRORS as e:
            logger.error(f"Session store unavailable, denying request: {e}")
            return error_response(status.HTTP_401_UNAUTHORIZED, "Authentication required")

        if not validation.valid or user is None:
            response = error_response(
                status.HTTP_401_UNAUTHORIZED,
                "Authentication required",
                headers={"WWW-Authenticate": "Bearer"},
            )
            if token is not None:
                clear_auth_cookies(response)
            return response

        if self.require_mfa and not validation.mfa_verified:
            return error_response(status.HTTP_403_FORBIDDEN, "MFA verification required")

        ctx.set_user(user)
        ctx.session = validation
        ctx.session_token = token

        if self.auto_refresh and validation.needs_refresh:
            await self._rotate(ctx, sessions, token)
        return None

    async def _rotate(self, ctx: SecurityContext, sessions: SessionManager, token: str) -> None:
        try:
            refreshed = await sessions.refresh(token)
        except _STORE_ERRORS as e:
            logger.warning(f"Session rotation failed, keeping current token: {e}")
            return
        if not refreshed.success:
            return
        ctx.rotated_session = refreshed
        ctx.session_token = refreshed.token
        try:
            ctx.rotated_csrf_token = await ctx.services.csrf.issue_token(
                derive_session_identifier(refreshed.token)
            )
        except _STORE_ERRORS as e:
            logger.warning(f"Could not issue CSRF token for rotated session: {e}")

    def finalize(self, ctx: SecurityContext, response: Response) -> None:
        rotated = ctx.rotated_session
        if rotated is None or not rotated.success:
            return
        settings = get_settings()
        set_session_cookie(response, rotated.token, settings.SESSION_ABSOLUTE_TIMEOUT_HOURS * 3600)
        response.headers[settings.SESSION_HEADER_NAME] = rotated.token
        if ctx.rotated_csrf_token:
            set_csrf_cookie(response, ctx.rotated_csrf_token)
            response.headers[settings.CSRF_HEADER_NAME] = ctx.rotated_csrf_token


class AdminStage(GuardStage):
    name = "admin"

    def __init__(self, require_mfa: bool = False):
        self.require_mfa = require_mfa

    async def check(self, ctx: SecurityContext) -> Optional[Response]:
        gate = AdminGate(ctx.db, ctx.sessions)
        try:
            result = await gate.verify(ctx.request, require_mfa=self.require_mfa)
        except _STORE_ERRORS as e:
            logger.error(f"Identity store unavailable, denying admin request: {e}")
            return error_response(status.HTTP_401_UNAUTHORIZED, "Authentication required")

        if not result.allowed:
            response = error_response(result.status_code, result.error or "Forbidden")
            if result.status_code == status.HTTP_401_UNAUTHORIZED and extract_session_token(ctx.request):
                clear_auth_cookies(response)
            return response

        ctx.set_user(result.user)
        ctx.session = result.session
        ctx.session_token = extract_session_token(ctx.request)
        return None


class SecurityPipeline:
    """Runs stages in order, then the handler, then records the audit event."""

    def __init__(
        self,
        stages: Sequence[GuardStage],
        audit: Optional[Tuple[str, str]] = None,
    ):
        self.stages = list(stages)
        self.audit_action = audit

    async def _run_handler(
        self, handler: Handler, ctx: SecurityContext
    ) -> Tuple[Response, Optional[str]]:
        try:
            result = await handler(ctx.request, ctx)
        except HTTPException as e:
            detail = e.detail if isinstance(e.detail, str) else None
            return (
                JSONResponse(status_code=e.status_code, content={"detail": e.detail}, headers=e.headers),
                detail,
            )

        if isinstance(result, Response):
            return result, None
        return JSONResponse(content=jsonable_encoder(result)), None

    async def dispatch(self, request: Request, handler: Handler) -> Response:
        services = get_services()
        async with services.session_factory() as db:
            ctx = SecurityContext(
                request=request,
                services=services,
                db=db,
                info=extract_request_info(request),
            )
            ran: List[GuardStage] = []
            error_message: Optional[str] = None
            response: Optional[Response] = None

            try:
                for stage in self.stages:
                    ran.append(stage)
                    response = await stage.check(ctx)
                    if response is not None:
                        break
                if response is None:
                    response, error_message = await self._run_handler(handler, ctx)
                for stage in reversed(ran):
                    stage.finalize(ctx, response)
            except Exception as e:
                logger.exception(
                    f"Unhandled error in {request.method} {request.url.path} "
                    f"(user={ctx.user_id}, ip={ctx.info.ip_address})"
                )
                error_message = sanitize_public_error_message(str(e), fallback="Unhandled error")
                response = error_response(status.HTTP_500_INTERNAL_SERVER_ERROR, "Internal server error")

            # Drop anything the handler left uncommitted before the audit
            # session writes
            try:
                await db.rollback()
            except _STORE_ERRORS as e:
                logger.warning(f"Rollback after {request.method} {request.url.path} failed: {e}")

        if self.audit_action is not None:
            action, resource = self.audit_action
            await services.audit().record(
                SecurityEvent.from_request(
                    action,
                    resource,
                    ctx.info,
                    user_id=ctx.user_id,
                    status_code=response.status_code,
                    error_message=error_message,
                )
            )
        return response


def secure(
    *,
    rate_limit: Optional[str] = None,
    csrf: bool = False,
    session: bool = False,
    require_mfa: bool = False,
    admin: bool = False,
    auto_refresh: bool = True,
    audit: Optional[Tuple[str, str]] = None,
):
    """
    Wrap ``handler(request, ctx)`` as a FastAPI endpoint guarded by the
    requested stages.

    ``auto_refresh=False`` keeps the session stage from rotating tokens that
    are close to expiry (for handlers that rotate explicitly).

    Example:
        @router.post("/users")
        @secure(rate_limit="admin", csrf=True, admin=True, audit=("create_user", "users"))
        async def create_user(request: Request, ctx: SecurityContext):
            ...
    """
    stages: List[GuardStage] = []
    if rate_limit:
        stages.append(RateLimitStage(rate_limit))
    if csrf:
        stages.append(CsrfStage())
    if admin:
        stages.append(AdminStage(require_mfa=require_mfa))
    elif session or require_mfa:
        stages.append(SessionStage(require_mfa=require_mfa, auto_refresh=auto_refresh))
    pipeline = SecurityPipeline(stages, audit=audit)

    def decorator(handler: Handler):
        async def endpoint(request: Request) -> Response:
            return await pipeline.dispatch(request, handler)

        endpoint.__name__ = handler.__name__
        endpoint.__doc__ = handler.__doc__
        endpoint.pipeline = pipeline
        return endpoint

    return decorator
