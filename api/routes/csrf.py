"""CSRF token issuance."""

import logging

from fastapi import APIRouter, HTTPException, Request, status
from fastapi.responses import JSONResponse
from redis.exceptions import RedisError

from config import get_settings
from middleware.pipeline import SecurityContext, secure, set_csrf_cookie
from schemas.auth import CsrfTokenResponse
from services.csrf import session_identifier

router = APIRouter(tags=["csrf"])
logger = logging.getLogger(__name__)


@router.get("/csrf-token")
@secure(rate_limit="api")
async def get_csrf_token(request: Request, ctx: SecurityContext):
    """
    Issue a CSRF token bound to the caller's session (or address before login).

    Any earlier token for the same binding stops validating. The token is
    returned in the body for the X-CSRF-Token header and also set as an
    httpOnly cookie.
    """
    try:
        token = await ctx.services.csrf.issue_token(session_identifier(request))
    except (RedisError, OSError) as e:
        logger.error(f"CSRF token store unavailable: {e}")
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Service temporarily unavailable",
        )

    response = JSONResponse(content=CsrfTokenResponse(token=token).model_dump())
    response.headers[get_settings().CSRF_HEADER_NAME] = token
    set_csrf_cookie(response, token)
    return response
