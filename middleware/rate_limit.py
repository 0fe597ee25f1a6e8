"""Rate limiting backends and client identification.

Each (limiter class, identifier) pair gets a fixed-length window that opens
on the first request and resets lazily the first time a request arrives after
its reset timestamp.

SECURITY NOTES:
- The in-memory backend is per process and lost on restart. Set REDIS_URL so
  every worker shares one set of counters.
- X-Forwarded-For is only trusted when TRUSTED_PROXIES is configured.
- Backend failures never block a request (fail-open); they are logged.
"""

import asyncio
import ipaddress
import logging
import math
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from functools import lru_cache
from typing import Callable, Dict, List, Optional, Tuple

from fastapi import Request, status
from redis.exceptions import RedisError
from starlette.responses import JSONResponse, Response

from config import AppMode, get_settings
from db.redis import get_redis_client

logger = logging.getLogger(__name__)

TimeSource = Callable[[], float]


@dataclass
class RateLimitResult:
    allowed: bool
    limit: int
    remaining: int
    reset_at: float  # epoch seconds
    retry_after: int = 0  # seconds, only meaningful when denied


class RateLimiterBackend(ABC):
    """Counter store for fixed windows."""

    @abstractmethod
    async def hit(
        self,
        key: str,
        max_requests: int,
        window_seconds: int,
    ) -> Tuple[bool, int, float]:
        """
        Record a request for ``key`` if allowed.

        Returns (allowed, count_in_window, reset_at).
        """

    @abstractmethod
    async def reset(self, key: str) -> None:
        """Forget the window for ``key``."""


class InMemoryRateLimiterBackend(RateLimiterBackend):
    """
    Process-local counters.

    WARNING - NOT PROCESS-SAFE: with N workers the effective limit is
    N * configured limit. Use RedisRateLimiterBackend in production.

    Keys above MAX_KEYS are evicted least recently used first so a flood of
    distinct client addresses cannot grow memory without bound.
    """

    MAX_KEYS = 10000

    def __init__(self, clock: TimeSource = time.time):
        self._windows: Dict[str, List[float]] = {}  # key -> [count, reset_at]
        self._last_access: Dict[str, float] = {}
        self._lock = asyncio.Lock()
        self._clock = clock
        self._cleanup_interval = 60
        self._last_cleanup = clock()

    async def hit(
        self,
        key: str,
        max_requests: int,
        window_seconds: int,
    ) -> Tuple[bool, int, float]:
        now = self._clock()

        async with self._lock:
            if now - self._last_cleanup > self._cleanup_interval:
                self._cleanup(now)
                self._last_cleanup = now

            if len(self._windows) >= self.MAX_KEYS and key not in self._windows:
                self._evict_lru()

            self._last_access[key] = now
            window = self._windows.get(key)

            if window is None or now > window[1]:
                reset_at = now + window_seconds
                self._windows[key] = [1, reset_at]
                return True, 1, reset_at

            count, reset_at = int(window[0]), window[1]
            if count >= max_requests:
                return False, count, reset_at

            window[0] = count + 1
            return True, count + 1, reset_at

    def _evict_lru(self) -> None:
        if not self._last_access:
            return

        # Evict 10% (at least 100) so eviction does not run on every new key
        num_to_evict = max(100, len(self._windows) // 10)
        oldest = sorted(self._last_access.items(), key=lambda item: item[1])[:num_to_evict]
        for key, _ in oldest:
            self._windows.pop(key, None)
            self._last_access.pop(key, None)

        logger.debug(f"Rate limiter LRU eviction: removed {len(oldest)} keys")

    def _cleanup(self, now: float) -> None:
        expired = [key for key, (_, reset_at) in self._windows.items() if now > reset_at]
        for key in expired:
            del self._windows[key]
            self._last_access.pop(key, None)

    async def reset(self, key: str) -> None:
        async with self._lock:
            self._windows.pop(key, None)
            self._last_access.pop(key, None)


class RedisRateLimiterBackend(RateLimiterBackend):
    """
    Shared counters in Redis: INCR plus a millisecond TTL equal to the window.

    The key expiring is the window reset, so every instance sees the same
    window boundaries.
    """

    KEY_PREFIX = "ratelimit:"

    def __init__(self, redis_url: str, clock: TimeSource = time.time):
        self._redis_url = redis_url
        self._clock = clock

    async def hit(
        self,
        key: str,
        max_requests: int,
        window_seconds: int,
    ) -> Tuple[bool, int, float]:
        client = get_redis_client(self._redis_url)
        redis_key = f"{self.KEY_PREFIX}{key}"
        window_ms = window_seconds * 1000

        pipe = client.pipeline(transaction=True)
        pipe.incr(redis_key)
        pipe.pttl(redis_key)
        count, ttl_ms = await pipe.execute()
        count = int(count)
        ttl_ms = int(ttl_ms)

        if count == 1 or ttl_ms < 0:
            # First hit opened the window (or a previous PEXPIRE was lost)
            await client.pexpire(redis_key, window_ms)
            ttl_ms = window_ms

        reset_at = self._clock() + ttl_ms / 1000.0
        if count > max_requests:
            return False, count, reset_at
        return True, count, reset_at

    async def reset(self, key: str) -> None:
        client = get_redis_client(self._redis_url)
        await client.delete(f"{self.KEY_PREFIX}{key}")


class RateLimiter:
    """
    Per-class request limiter.

    Classes map to (max requests, window seconds); see
    Settings.rate_limit_classes. Uses Redis when REDIS_URL is set, otherwise
    process memory.
    """

    def __init__(
        self,
        backend: Optional[RateLimiterBackend] = None,
        classes: Optional[Dict[str, Tuple[int, int]]] = None,
        clock: TimeSource = time.time,
    ):
        settings = get_settings()
        self._clock = clock
        self.classes = dict(classes or settings.rate_limit_classes)

        if backend:
            self._backend = backend
        elif settings.REDIS_URL:
            logger.info("Using Redis rate limiter backend")
            self._backend = RedisRateLimiterBackend(settings.REDIS_URL, clock=clock)
        else:
            message = (
                "Using in-memory rate limiter. Limits are per process and lost on restart. "
                "Set REDIS_URL for deployments with multiple instances."
            )
            if settings.APP_MODE == AppMode.DEV:
                logger.debug(message)
            else:
                logger.warning(message)
            self._backend = InMemoryRateLimiterBackend(clock=clock)

    @property
    def backend(self) -> RateLimiterBackend:
        return self._backend

    async def limit(self, identifier: str, limit_class: str) -> RateLimitResult:
        """
        Count a request from ``identifier`` against ``limit_class``.

        Store failures are logged and the request is allowed.
        """
        try:
            max_requests, window_seconds = self.classes[limit_class]
        except KeyError:
            raise ValueError(f"Unknown rate limit class: {limit_class}") from None

        key = f"{limit_class}:{identifier}"
        try:
            allowed, count, reset_at = await self._backend.hit(key, max_requests, window_seconds)
        except (RedisError, OSError, asyncio.TimeoutError) as e:
            logger.warning(f"Rate limiter store unavailable, allowing request for {key}: {e}")
            return RateLimitResult(
                allowed=True,
                limit=max_requests,
                remaining=max_requests,
                reset_at=self._clock() + window_seconds,
            )

        remaining = max(0, max_requests - count)
        retry_after = 0
        if not allowed:
            retry_after = max(1, math.ceil(reset_at - self._clock()))
        return RateLimitResult(
            allowed=allowed,
            limit=max_requests,
            remaining=remaining,
            reset_at=reset_at,
            retry_after=retry_after,
        )

    async def reset(self, identifier: str, limit_class: str) -> None:
        await self._backend.reset(f"{limit_class}:{identifier}")


def rate_limit_headers(result: RateLimitResult) -> Dict[str, str]:
    return {
        "X-RateLimit-Limit": str(result.limit),
        "X-RateLimit-Remaining": str(result.remaining),
        "X-RateLimit-Reset": str(int(math.ceil(result.reset_at))),
    }


def rate_limited_response(result: RateLimitResult) -> Response:
    """429 with Retry-After equal to the time left in the current window."""
    headers = rate_limit_headers(result)
    headers["Retry-After"] = str(result.retry_after)
    return JSONResponse(
        status_code=status.HTTP_429_TOO_MANY_REQUESTS,
        content={
            "detail": "Too many requests. Please try again later.",
            "retry_after": result.retry_after,
        },
        headers=headers,
    )


# Global rate limiter instance
_rate_limiter: Optional[RateLimiter] = None


def get_rate_limiter() -> RateLimiter:
    """Get the global rate limiter instance."""
    global _rate_limiter
    if _rate_limiter is None:
        _rate_limiter = RateLimiter()
    return _rate_limiter


@lru_cache(maxsize=8)
def _parse_trusted_proxies(trusted_proxies: Optional[str]) -> Tuple:
    """Parse the comma-separated TRUSTED_PROXIES setting into networks."""
    if not trusted_proxies:
        # SECURITY: never trust forwarded headers without explicit configuration
        return ()

    networks = []
    for proxy in (p.strip() for p in trusted_proxies.split(",")):
        if not proxy:
            continue
        try:
            networks.append(ipaddress.ip_network(proxy, strict=False))
        except ValueError as e:
            logger.warning(f"Invalid trusted proxy network '{proxy}': {e}")
    return tuple(networks)


def _is_ip_trusted(ip: str, trusted_networks) -> bool:
    try:
        ip_addr = ipaddress.ip_address(ip)
    except ValueError:
        return False
    return any(ip_addr in network for network in trusted_networks)


def get_client_ip(request: Request) -> str:
    """
    Client address used as the rate-limit identifier and in audit rows.

    Forwarded headers are honored only when the direct peer is a trusted
    proxy. X-Forwarded-For is walked right to left and the first address
    that is not itself a trusted proxy is the client ("rightmost untrusted").
    """
    trusted_networks = _parse_trusted_proxies(get_settings().TRUSTED_PROXIES)
    direct_ip = request.client.host if request.client else None

    if not direct_ip:
        return "unknown"

    if not _is_ip_trusted(direct_ip, trusted_networks):
        return direct_ip

    forwarded_for = request.headers.get("X-Forwarded-For")
    if not forwarded_for:
        real_ip = (request.headers.get("X-Real-IP") or "").strip()
        if real_ip:
            try:
                ipaddress.ip_address(real_ip)
                return real_ip
            except ValueError:
                logger.warning(f"Invalid X-Real-IP header: {real_ip}")
        return direct_ip

    hops = [hop.strip() for hop in forwarded_for.split(",")]
    for hop in reversed(hops):
        try:
            ipaddress.ip_address(hop)
        except ValueError:
            logger.warning(f"Invalid IP in X-Forwarded-For: {hop}")
            continue
        if not _is_ip_trusted(hop, trusted_networks):
            return hop

    # Every hop is a trusted proxy: fall back to the leftmost valid address
    try:
        ipaddress.ip_address(hops[0])
        return hops[0]
    except ValueError:
        return direct_ip
