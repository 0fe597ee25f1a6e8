"""Request/response logging for development.

Only enabled in DEV. Credentials never reach the log: query parameters
with secret-looking names are masked and headers are not logged at all.
"""

import logging
import time
import uuid
from typing import Callable

from fastapi import Request
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.responses import Response

from middleware.rate_limit import get_client_ip

logger = logging.getLogger("api.requests")

EXCLUDED_PATHS = {
    "/health",
    "/docs",
    "/redoc",
    "/openapi.json",
    "/favicon.ico",
}

SENSITIVE_PARAM_MARKERS = ("token", "password", "secret", "code", "key")


def _mask_params(params: dict) -> dict:
    return {
        k: ("***" if any(marker in k.lower() for marker in SENSITIVE_PARAM_MARKERS) else v)
        for k, v in params.items()
    }


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """
    Logs one line per request: request id, method, path, masked query,
    client address, status and duration. 5xx at ERROR, 4xx at WARNING
    (so guard denials are visible), GETs at DEBUG, everything else INFO.
    """

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        if request.url.path in EXCLUDED_PATHS:
            return await call_next(request)

        request_id = str(uuid.uuid4())[:8]
        start_time = time.perf_counter()

        parts = [f"[{request_id}]", f"{request.method} {request.url.path}"]
        if request.query_params:
            parts.append(f"params={_mask_params(dict(request.query_params))}")
        parts.append(f"client={get_client_ip(request)}")
        request_desc = " ".join(parts)

        try:
            response = await call_next(request)
        except Exception as e:
            duration = time.perf_counter() - start_time
            logger.error(f"{request_desc} - ERROR ({duration:.3f}s): {type(e).__name__}")
            raise

        duration = time.perf_counter() - start_time
        status_class = response.status_code // 100
        if status_class == 5:
            log_func = logger.error
        elif status_class == 4:
            log_func = logger.warning
        elif request.method == "GET":
            log_func = logger.debug
        else:
            log_func = logger.info

        log_func(f"{request_desc} - {response.status_code} ({duration:.3f}s)")
        response.headers["X-Request-ID"] = request_id
        return response


def configure_request_logging(log_level: str = "INFO") -> None:
    """Give the api.requests logger its own handler and level."""
    request_logger = logging.getLogger("api.requests")
    request_logger.setLevel(getattr(logging, log_level.upper(), logging.INFO))
    request_logger.propagate = False

    if not request_logger.handlers:
        handler = logging.StreamHandler()
        handler.setFormatter(
            logging.Formatter("%(asctime)s - %(name)s - %(levelname)s - %(message)s")
        )
        request_logger.addHandler(handler)
