"""Shared async Redis client; returns None when no REDIS_URL is configured."""

from typing import Optional

import redis.asyncio as redis_async

from app.config import settings

_redis_client: Optional[redis_async.Redis] = None
_redis_url: Optional[str] = None


def get_redis() -> Optional[redis_async.Redis]:
    global _redis_client, _redis_url

    redis_url = settings.redis_url.strip()
    if not redis_url:
        return None

    if _redis_client is None or _redis_url != redis_url:
        _redis_url = redis_url
        _redis_client = redis_async.from_url(
            redis_url,
            decode_responses=True,
            socket_connect_timeout=settings.redis_socket_timeout_seconds,
            socket_timeout=settings.redis_socket_timeout_seconds,
        )

    return _redis_client
