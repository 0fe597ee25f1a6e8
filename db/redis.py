"""Lazily created Redis client shared by the rate limiter and CSRF store."""

import logging
from typing import Dict

import redis.asyncio as redis
from redis.exceptions import RedisError

logger = logging.getLogger(__name__)

_clients: Dict[str, "redis.Redis"] = {}


def get_redis_client(redis_url: str) -> "redis.Redis":
    """
    Return a process-wide client for ``redis_url``.

    No connection is opened here; the first command connects, so an outage
    surfaces as RedisError/OSError at the call site where policy decides
    between fail-open and fail-closed.
    """
    client = _clients.get(redis_url)
    if client is None:
        client = redis.from_url(
            redis_url,
            encoding="utf-8",
            decode_responses=True,
            socket_connect_timeout=2,
            socket_timeout=2,
        )
        _clients[redis_url] = client
        logger.info("Redis client created")
    return client


async def close_redis_clients() -> None:
    for url, client in list(_clients.items()):
        try:
            await client.aclose()
        except (RedisError, OSError) as e:
            logger.warning(f"Error closing Redis client: {e}")
        _clients.pop(url, None)
