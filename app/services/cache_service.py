"""Two-tier read-through cache: process-local short TTL in front of Redis.

Values must be JSON-serializable so they can live in the shared tier. When
Redis is not configured or fails, only the local tier is used.
"""

import json
import time
from typing import Any, Awaitable, Callable, Optional

from app.logging_config import get_logger
from app.services.redis_client import get_redis

logger = get_logger("cache_service")


class TwoTierCache:
    def __init__(
        self,
        namespace: str,
        *,
        local_ttl: float,
        shared_ttl: int,
        redis_getter: Callable[[], Any] = get_redis,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.namespace = namespace
        self.local_ttl = local_ttl
        self.shared_ttl = shared_ttl
        self._redis_getter = redis_getter
        self._clock = clock
        self._local: dict[str, tuple[float, Any]] = {}

    def _key(self, key: str) -> str:
        return f"replydesk:cache:{self.namespace}:{key}"

    def _get_local(self, key: str) -> tuple[bool, Any]:
        entry = self._local.get(key)
        if entry is None:
            return False, None
        expires_at, value = entry
        if expires_at <= self._clock():
            self._local.pop(key, None)
            return False, None
        return True, value

    def _set_local(self, key: str, value: Any) -> None:
        if self.local_ttl > 0:
            self._local[key] = (self._clock() + self.local_ttl, value)

    async def _get_shared(self, key: str) -> tuple[bool, Any]:
        redis_client = self._redis_getter()
        if not redis_client:
            return False, None
        try:
            raw = await redis_client.get(self._key(key))
        except Exception as e:
            logger.warning(
                "Shared cache read failed",
                extra={"context": {"namespace": self.namespace, "key": key, "error": str(e)}},
            )
            return False, None
        if raw is None:
            return False, None
        try:
            return True, json.loads(raw)
        except (TypeError, ValueError):
            return False, None

    async def _set_shared(self, key: str, value: Any) -> None:
        redis_client = self._redis_getter()
        if not redis_client or self.shared_ttl <= 0:
            return
        try:
            await redis_client.set(self._key(key), json.dumps(value, ensure_ascii=False, default=str), ex=self.shared_ttl)
        except Exception as e:
            logger.warning(
                "Shared cache write failed",
                extra={"context": {"namespace": self.namespace, "key": key, "error": str(e)}},
            )

    async def get(self, key: str) -> Optional[Any]:
        found, value = self._get_local(key)
        if found:
            return value
        found, value = await self._get_shared(key)
        if found:
            self._set_local(key, value)
            return value
        return None

    async def get_or_set(self, key: str, loader: Callable[[], Awaitable[Any]]) -> Any:
        found, value = self._get_local(key)
        if found:
            return value

        found, value = await self._get_shared(key)
        if found:
            self._set_local(key, value)
            return value

        value = await loader()
        self._set_local(key, value)
        await self._set_shared(key, value)
        return value

    async def invalidate(self, key: str) -> None:
        self._local.pop(key, None)
        redis_client = self._redis_getter()
        if not redis_client:
            return
        try:
            await redis_client.delete(self._key(key))
        except Exception as e:
            logger.warning(
                "Shared cache invalidate failed",
                extra={"context": {"namespace": self.namespace, "key": key, "error": str(e)}},
            )

    async def invalidate_prefix(self, prefix: str) -> int:
        """Drop every entry whose key starts with prefix. Returns shared keys removed."""
        for key in [k for k in self._local if k.startswith(prefix)]:
            self._local.pop(key, None)

        redis_client = self._redis_getter()
        if not redis_client:
            return 0
        removed = 0
        try:
            async for full_key in redis_client.scan_iter(match=f"{self._key(prefix)}*"):
                removed += await redis_client.delete(full_key)
        except Exception as e:
            logger.warning(
                "Shared cache prefix invalidate failed",
                extra={"context": {"namespace": self.namespace, "prefix": prefix, "error": str(e)}},
            )
        return removed

    def clear_local(self) -> None:
        self._local.clear()
