"""TOTP enrollment, login challenge and management routes."""

import logging

from fastapi import APIRouter, HTTPException, Request, status

from api.dependencies import parse_body
from middleware.pipeline import SecurityContext, secure
from schemas.common import MessageResponse
from schemas.mfa import (
    BackupCodesResponse,
    MfaCodeRequest,
    MfaEnableRequest,
    MfaSetupResponse,
    MfaStatusResponse,
    MfaVerifyRequest,
)
from services.mfa import GENERIC_CODE_ERROR, MfaResult, MfaService

router = APIRouter(prefix="/mfa", tags=["mfa"])
logger = logging.getLogger(__name__)


def _mfa(ctx: SecurityContext) -> MfaService:
    return MfaService(ctx.db, ctx.audit, clock=ctx.services.clock)


def _raise_for_result(result: MfaResult) -> None:
    # A wrong code is an authentication failure; anything else is a bad request
    if result.error == GENERIC_CODE_ERROR:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail=result.error)
    raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=result.error or "Verification failed")


@router.get("/setup")
@secure(rate_limit="api", session=True)
async def begin_setup(request: Request, ctx: SecurityContext):
    """Start enrollment: a new secret and its otpauth:// URI. Nothing is stored yet."""
    if ctx.user.mfa_enabled:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="MFA is already enabled")

    enrollment = _mfa(ctx).begin_enrollment(ctx.user)
    return MfaSetupResponse(
        secret=enrollment.secret,
        provisioning_uri=enrollment.provisioning_uri,
        manual_entry=enrollment.secret,
    )


@router.post("/setup")
@secure(rate_limit="api", csrf=True, session=True)
async def complete_setup(request: Request, ctx: SecurityContext):
    """Enable MFA with the pending secret and a first code. Backup codes are shown once."""
    body = await parse_body(request, MfaEnableRequest)
    result = await _mfa(ctx).complete_enrollment(ctx.user_id, body.secret, body.code, ctx.info)
    if not result.success:
        _raise_for_result(result)

    # The enrolling session proved possession of the new factor
    await ctx.sessions.update_mfa_flag(ctx.session_token, True)
    return BackupCodesResponse(backup_codes=result.backup_codes)


@router.post("/verify")
@secure(rate_limit="auth", csrf=True, session=True)
async def verify(request: Request, ctx: SecurityContext):
    """
    Second step of login: a TOTP code or an unused backup code.

    On success the session is marked MFA-verified. Each attempt is audited
    by the MFA service.
    """
    body = await parse_body(request, MfaVerifyRequest)
    result = await _mfa(ctx).verify_login(
        ctx.user_id, body.code, is_backup_code=body.is_backup_code, info=ctx.info
    )
    if not result.success:
        _raise_for_result(result)

    if not await ctx.sessions.update_mfa_flag(ctx.session_token, True):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Authentication required",
            headers={"WWW-Authenticate": "Bearer"},
        )
    return MessageResponse(message="MFA verified")


@router.post("/disable")
@secure(rate_limit="api", csrf=True, require_mfa=True)
async def disable(request: Request, ctx: SecurityContext):
    body = await parse_body(request, MfaCodeRequest)
    result = await _mfa(ctx).disable(ctx.user_id, body.code, ctx.info)
    if not result.success:
        _raise_for_result(result)
    return MessageResponse(message="MFA disabled")


@router.post("/backup-codes")
@secure(rate_limit="api", csrf=True, require_mfa=True)
async def regenerate_backup_codes(request: Request, ctx: SecurityContext):
    """Replace all backup codes. Requires a live TOTP code."""
    body = await parse_body(request, MfaCodeRequest)
    result = await _mfa(ctx).regenerate_backup_codes(ctx.user_id, body.code, ctx.info)
    if not result.success:
        _raise_for_result(result)
    return BackupCodesResponse(backup_codes=result.backup_codes)


@router.get("/status")
@secure(rate_limit="api", session=True)
async def get_status(request: Request, ctx: SecurityContext):
    mfa_status = await _mfa(ctx).get_status(ctx.user_id)
    if mfa_status is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="User not found")
    return MfaStatusResponse(
        enabled=mfa_status.enabled,
        backup_codes_remaining=mfa_status.backup_codes_remaining,
        enrolled_at=mfa_status.enrolled_at,
        last_challenge=mfa_status.last_challenge,
    )
