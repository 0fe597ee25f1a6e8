"""Security headers middleware for HTTP response hardening."""

import logging
from typing import Callable

from fastapi import Request
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.responses import Response

from config import get_settings

logger = logging.getLogger(__name__)

# JSON-only API: nothing may be framed, scripted or embedded
API_CONTENT_SECURITY_POLICY = "default-src 'none'; frame-ancestors 'none'; base-uri 'none'"

PERMISSIONS_POLICY = (
    "accelerometer=(), "
    "camera=(), "
    "geolocation=(), "
    "gyroscope=(), "
    "magnetometer=(), "
    "microphone=(), "
    "payment=(), "
    "usb=()"
)


class SecurityHeadersMiddleware(BaseHTTPMiddleware):
    """
    Adds hardening headers to every response.

    - X-Content-Type-Options / X-Frame-Options / Referrer-Policy / Permissions-Policy
    - Content-Security-Policy locked down for a JSON API
    - Strict-Transport-Security (production only)
    - no-store caching on /api/* so tokens and MFA secrets never land in caches
    """

    def __init__(self, app):
        super().__init__(app)
        self.is_production = get_settings().is_prod

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        response = await call_next(request)

        response.headers["X-Content-Type-Options"] = "nosniff"
        response.headers["X-Frame-Options"] = "DENY"
        response.headers["Referrer-Policy"] = "strict-origin-when-cross-origin"
        response.headers["Permissions-Policy"] = PERMISSIONS_POLICY
        response.headers["Content-Security-Policy"] = API_CONTENT_SECURITY_POLICY

        if self.is_production:
            response.headers["Strict-Transport-Security"] = (
                "max-age=31536000; includeSubDomains; preload"
            )

        if request.url.path.startswith("/api/") and "Cache-Control" not in response.headers:
            response.headers["Cache-Control"] = "no-store, no-cache, must-revalidate"
            response.headers["Pragma"] = "no-cache"
            response.headers["Expires"] = "0"

        return response
