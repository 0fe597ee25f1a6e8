"""Password login, opaque server-side sessions and their lifecycle."""

import asyncio
import logging

from fastapi import APIRouter, HTTPException, Request, status
from fastapi.encoders import jsonable_encoder
from fastapi.responses import JSONResponse
from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from api.dependencies import parse_body
from config import get_settings
from middleware.pipeline import (
    SecurityContext,
    clear_auth_cookies,
    secure,
    set_csrf_cookie,
    set_session_cookie,
)
from models.audit_log import SecurityAuditLog
from models.failed_login import FailedLoginAttempt
from models.user import User
from schemas.auth import (
    LoginRequest,
    LoginResponse,
    PasswordStrength,
    RefreshResponse,
    RegisterRequest,
    RegisterResponse,
    SessionInfo,
    SessionListResponse,
    UserResponse,
)
from schemas.common import MessageResponse
from services.audit import FailedLogin, SecurityEvent
from services.csrf import derive_session_identifier
from services.password import (
    burn_password_check,
    get_password_strength_label,
    hash_password,
    validate_password,
    verify_password,
)
from services.session import hash_session_token

router = APIRouter(prefix="/auth", tags=["auth"])
logger = logging.getLogger(__name__)

INVALID_CREDENTIALS = "Invalid email or password"


def _session_max_age() -> int:
    return get_settings().SESSION_ABSOLUTE_TIMEOUT_HOURS * 3600


@router.post("/register", status_code=status.HTTP_201_CREATED)
@secure(rate_limit="auth", csrf=True, audit=(SecurityAuditLog.ACTION_REGISTER, "auth"))
async def register(request: Request, ctx: SecurityContext):
    """Create an account. The password must satisfy the default policy."""
    body = await parse_body(request, RegisterRequest)

    check = validate_password(body.password)
    if not check.is_valid:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail={"message": "Password does not meet requirements", "errors": check.errors},
        )

    existing = await ctx.db.scalar(select(User.id).where(User.email == body.email))
    if existing is not None:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="Email already registered")

    hashed = await asyncio.to_thread(hash_password, body.password)
    user = User(email=body.email, hashed_password=hashed, name=body.name)
    ctx.db.add(user)
    try:
        await ctx.db.commit()
    except IntegrityError:
        await ctx.db.rollback()
        # Concurrent registration with the same address
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="Email already registered")
    await ctx.db.refresh(user)
    ctx.set_user(user)
    logger.info(f"Registered user {user.id}")

    payload = RegisterResponse(
        user=UserResponse.model_validate(user),
        password_strength=PasswordStrength(
            score=check.score, label=get_password_strength_label(check.score)
        ),
    )
    return JSONResponse(status_code=status.HTTP_201_CREATED, content=jsonable_encoder(payload))


@router.post("/login")
@secure(rate_limit="auth", csrf=True)
async def login(request: Request, ctx: SecurityContext):
    """
    Verify email and password and open a session.

    Locked accounts are refused before the password is checked, and every
    refusal is recorded as a failed attempt, so attempts during a lockout
    push it forward. When the account has MFA enabled the session starts
    unverified and ``mfa_required`` is true.
    """
    body = await parse_body(request, LoginRequest)
    audit = ctx.audit

    try:
        lockout = await audit.check_account_lockout(body.email)
    except SQLAlchemyError as e:
        logger.error(f"Lockout check failed, refusing login: {e}")
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Authentication temporarily unavailable",
        )

    if lockout.locked:
        await audit.log_failed_login(
            FailedLogin(
                email=body.email,
                attempt_type=FailedLoginAttempt.TYPE_ACCOUNT_LOCKED,
                ip_address=ctx.info.ip_address,
                user_agent=ctx.info.user_agent,
            )
        )
        await audit.record(
            SecurityEvent.from_request(
                SecurityAuditLog.ACTION_LOGIN_FAILED,
                "auth",
                ctx.info,
                status_code=status.HTTP_429_TOO_MANY_REQUESTS,
                metadata={"reason": "account_locked"},
            )
        )
        raise HTTPException(
            status_code=status.HTTP_429_TOO_MANY_REQUESTS,
            detail="Too many failed login attempts. Try again later.",
            headers={"Retry-After": str(lockout.remaining_seconds or 1)},
        )

    result = await ctx.db.execute(
        select(User).where(User.email == body.email).execution_options(populate_existing=True)
    )
    user = result.scalar_one_or_none()
    if user is None:
        await asyncio.to_thread(burn_password_check, body.password)
        password_ok = False
    else:
        password_ok = await asyncio.to_thread(verify_password, body.password, user.hashed_password)

    if not password_ok or not user.is_active:
        await ctx.db.commit()
        attempt_type = (
            FailedLoginAttempt.TYPE_ACCOUNT_DISABLED
            if password_ok
            else FailedLoginAttempt.TYPE_INVALID_CREDENTIALS
        )
        await audit.log_failed_login(
            FailedLogin(
                email=body.email,
                attempt_type=attempt_type,
                ip_address=ctx.info.ip_address,
                user_agent=ctx.info.user_agent,
            )
        )
        await audit.record(
            SecurityEvent.from_request(
                SecurityAuditLog.ACTION_LOGIN_FAILED,
                "auth",
                ctx.info,
                user_id=user.id if user is not None else None,
                status_code=status.HTTP_401_UNAUTHORIZED,
                metadata={"reason": attempt_type},
            )
        )
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail=INVALID_CREDENTIALS,
            headers={"WWW-Authenticate": "Bearer"},
        )

    mfa_required = bool(user.mfa_enabled)
    issued = await ctx.sessions.create(user.id, ctx.info, mfa_verified=not mfa_required)
    now = ctx.services.clock()
    await ctx.db.execute(update(User).where(User.id == user.id).values(last_login=now))
    await ctx.db.commit()
    user.last_login = now
    ctx.set_user(user)

    csrf_token = await ctx.services.csrf.issue_token(derive_session_identifier(issued.token))

    await audit.record(
        SecurityEvent.from_request(
            SecurityAuditLog.ACTION_LOGIN,
            "auth",
            ctx.info,
            user_id=user.id,
            status_code=status.HTTP_200_OK,
            metadata={"mfa_required": mfa_required},
        )
    )
    logger.info(f"User {user.id} logged in (mfa_required={mfa_required})")

    payload = LoginResponse(
        session_token=issued.token,
        csrf_token=csrf_token,
        expires_at=issued.expires_at,
        mfa_required=mfa_required,
        user=UserResponse.model_validate(user),
    )
    response = JSONResponse(content=jsonable_encoder(payload))
    set_session_cookie(response, issued.token, _session_max_age())
    set_csrf_cookie(response, csrf_token)
    return response


@router.post("/logout")
@secure(rate_limit="api", csrf=True, session=True, audit=(SecurityAuditLog.ACTION_LOGOUT, "auth"))
async def logout(request: Request, ctx: SecurityContext):
    """End the current session and its CSRF token."""
    token = ctx.session_token
    await ctx.sessions.destroy(token)
    await ctx.services.csrf.revoke(derive_session_identifier(token))
    ctx.rotated_session = None

    response = JSONResponse(content=MessageResponse(message="Logged out").model_dump())
    clear_auth_cookies(response)
    return response


@router.post("/logout-all")
@secure(rate_limit="api", csrf=True, session=True, audit=(SecurityAuditLog.ACTION_LOGOUT_ALL, "auth"))
async def logout_all(request: Request, ctx: SecurityContext):
    """End every session of the current user, this one included."""
    revoked = await ctx.sessions.destroy_all(ctx.user_id)
    await ctx.services.csrf.revoke(derive_session_identifier(ctx.session_token))
    ctx.rotated_session = None
    logger.info(f"User {ctx.user_id} revoked {revoked} sessions")

    response = JSONResponse(content={"success": True, "revoked": revoked})
    clear_auth_cookies(response)
    return response


@router.post("/refresh")
@secure(rate_limit="api", csrf=True, session=True, auto_refresh=False)
async def refresh(request: Request, ctx: SecurityContext):
    """
    Rotate the session token.

    The old token stops working immediately and a fresh 24 hour lifetime
    starts. A new CSRF token is bound to the new session.
    """
    old_token = ctx.session_token
    refreshed = await ctx.sessions.refresh(old_token)
    if not refreshed.success:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Session expired",
            headers={"WWW-Authenticate": "Bearer"},
        )

    await ctx.services.csrf.revoke(derive_session_identifier(old_token))
    csrf_token = await ctx.services.csrf.issue_token(derive_session_identifier(refreshed.token))
    ctx.session_token = refreshed.token

    payload = RefreshResponse(
        session_token=refreshed.token,
        csrf_token=csrf_token,
        expires_at=refreshed.expires_at,
    )
    response = JSONResponse(content=jsonable_encoder(payload))
    set_session_cookie(response, refreshed.token, _session_max_age())
    set_csrf_cookie(response, csrf_token)
    return response


@router.get("/sessions")
@secure(rate_limit="api", session=True)
async def list_sessions(request: Request, ctx: SecurityContext):
    """Live sessions of the current user, most recently active first."""
    current_hash = hash_session_token(ctx.session_token)
    rows = await ctx.sessions.list_user_sessions(ctx.user_id)
    sessions = []
    for row in rows:
        info = SessionInfo.model_validate(row)
        info.current = row.token_hash == current_hash
        sessions.append(info)
    return SessionListResponse(sessions=sessions)


@router.get("/me")
@secure(rate_limit="api", session=True)
async def me(request: Request, ctx: SecurityContext):
    return UserResponse.model_validate(ctx.user)
