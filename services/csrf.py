"""CSRF double-submit protection.

A token is issued per session identifier and stored server-side. Unsafe
requests must echo it in the X-CSRF-Token header. The stored copy lives in
Redis when REDIS_URL is set, otherwise in process memory.
"""

import hashlib
import hmac
import logging
import secrets
import time
from abc import ABC, abstractmethod
from typing import Callable, Dict, Iterable, Optional, Tuple

from fastapi import Request

from config import get_settings
from db.redis import get_redis_client
from middleware.rate_limit import get_client_ip
from services.session import extract_session_token

logger = logging.getLogger(__name__)

SAFE_METHODS = frozenset({"GET", "HEAD", "OPTIONS"})


def _constant_time_compare(a: str, b: str) -> bool:
    return hmac.compare_digest(a.encode("utf-8"), b.encode("utf-8"))


class CsrfTokenStore(ABC):
    """Maps a session identifier to (token, expires_at epoch seconds)."""

    @abstractmethod
    async def put(self, session_id: str, token: str, expires_at: float) -> None:
        pass

    @abstractmethod
    async def get(self, session_id: str) -> Optional[Tuple[str, float]]:
        pass

    @abstractmethod
    async def delete(self, session_id: str) -> None:
        pass


class InMemoryCsrfTokenStore(CsrfTokenStore):
    """
    Process-local token map.

    WARNING: not shared between workers; a token issued by one process is
    unknown to the others. Use RedisCsrfTokenStore in production.
    """

    def __init__(self, clock: Callable[[], float] = time.time):
        self._tokens: Dict[str, Tuple[str, float]] = {}
        self._clock = clock

    async def put(self, session_id: str, token: str, expires_at: float) -> None:
        self._tokens[session_id] = (token, expires_at)

        now = self._clock()
        expired = [sid for sid, (_, exp) in list(self._tokens.items()) if exp < now]
        for sid in expired:
            self._tokens.pop(sid, None)

    async def get(self, session_id: str) -> Optional[Tuple[str, float]]:
        return self._tokens.get(session_id)

    async def delete(self, session_id: str) -> None:
        self._tokens.pop(session_id, None)


class RedisCsrfTokenStore(CsrfTokenStore):
    """Tokens under csrf:{session_id}; the key TTL matches the token expiry."""

    KEY_PREFIX = "csrf:"

    def __init__(self, redis_url: str, clock: Callable[[], float] = time.time):
        self._redis_url = redis_url
        self._clock = clock

    async def put(self, session_id: str, token: str, expires_at: float) -> None:
        ttl_ms = max(1, int((expires_at - self._clock()) * 1000))
        client = get_redis_client(self._redis_url)
        await client.set(f"{self.KEY_PREFIX}{session_id}", f"{expires_at:.3f}:{token}", px=ttl_ms)

    async def get(self, session_id: str) -> Optional[Tuple[str, float]]:
        client = get_redis_client(self._redis_url)
        raw = await client.get(f"{self.KEY_PREFIX}{session_id}")
        if not raw:
            return None
        expires_raw, _, token = raw.partition(":")
        try:
            return token, float(expires_raw)
        except ValueError:
            logger.warning("Malformed CSRF token record in Redis")
            return None

    async def delete(self, session_id: str) -> None:
        client = get_redis_client(self._redis_url)
        await client.delete(f"{self.KEY_PREFIX}{session_id}")


class CsrfService:
    """
    Issues and validates anti-forgery tokens.

    One active token per session identifier: issuing replaces the previous
    token. Validation does not consume the token. Store errors propagate so
    the calling guard can deny the request.
    """

    def __init__(
        self,
        store: Optional[CsrfTokenStore] = None,
        clock: Callable[[], float] = time.time,
    ):
        settings = get_settings()
        self._clock = clock
        self.token_bytes = settings.CSRF_TOKEN_BYTES
        self.expiry_seconds = settings.CSRF_TOKEN_EXPIRY_HOURS * 3600

        if store is not None:
            self.store = store
        elif settings.REDIS_URL:
            self.store = RedisCsrfTokenStore(settings.REDIS_URL, clock=clock)
        else:
            if settings.is_prod:
                logger.warning(
                    "Using in-memory CSRF token store. Tokens are not shared between instances."
                )
            self.store = InMemoryCsrfTokenStore(clock=clock)

    async def issue_token(self, session_id: str) -> str:
        token = secrets.token_hex(self.token_bytes)
        await self.store.put(session_id, token, self._clock() + self.expiry_seconds)
        return token

    async def validate(self, session_id: str, supplied: Optional[str]) -> bool:
        if not supplied:
            return False

        stored = await self.store.get(session_id)
        if stored is None:
            return False

        token, expires_at = stored
        if expires_at < self._clock():
            await self.store.delete(session_id)
            return False

        return _constant_time_compare(token, supplied)

    async def revoke(self, session_id: str) -> None:
        await self.store.delete(session_id)


def is_csrf_protected(method: str, path: str, exempt_prefixes: Iterable[str]) -> bool:
    """Unsafe methods are protected unless the path is a signature-authenticated callback."""
    if method.upper() in SAFE_METHODS:
        return False
    return not any(path.startswith(prefix) for prefix in exempt_prefixes)


def derive_session_identifier(credential: str) -> str:
    """Keyed digest of a client credential; the raw credential never becomes a store key."""
    key = get_settings().SECRET_KEY.encode("utf-8")
    return hmac.new(key, credential.encode("utf-8"), hashlib.sha256).hexdigest()


def session_identifier(request: Request) -> str:
    """
    Identifier a CSRF token is bound to.

    Prefers the session token (cookie, X-Session-Token header or Bearer
    credential); anonymous clients are keyed by address.
    """
    token = extract_session_token(request)
    if token:
        return derive_session_identifier(token)
    return f"ip:{get_client_ip(request)}"
