"""Idempotency ledger for inbound webhook events.

An event id moves through three states in the shared store:

    (absent) --claim--> "processing" --mark_processed--> "done:<ts>"
                             |
                             +--release--> (absent)

``claim`` is a single ``SET NX EX`` so two concurrent deliveries of the same
event can never both pass the gate. The processing lease expires on its own if
the worker dies, which lets a later redelivery retry the event.
"""

import asyncio
import time
from datetime import datetime, timezone
from typing import Callable, Optional

from app.config import settings
from app.logging_config import get_logger
from app.services.alert_service import alert_warning
from app.services.background_tasks import spawn_detached
from app.services.redis_client import get_redis

logger = get_logger("idempotency")

PROCESSING = "processing"
DONE_PREFIX = "done:"

COMPLETE_LUA = """
local current = redis.call('GET', KEYS[1])
if current == false or current == ARGV[1] then
    redis.call('SET', KEYS[1], ARGV[2], 'EX', tonumber(ARGV[3]))
    return 1
end
return 0
"""

RELEASE_LUA = """
if redis.call('GET', KEYS[1]) == ARGV[1] then
    return redis.call('DEL', KEYS[1])
end
return 0
"""


def ledger_key(scope: str, event_id: str) -> str:
    return f"replydesk:event:{scope}:{event_id}"


def _done_marker() -> str:
    return f"{DONE_PREFIX}{datetime.now(timezone.utc).isoformat()}"


class MemoryIdempotencyLedger:
    """In-process ledger for local runs and tests (no REDIS_URL)."""

    def __init__(self, ttl_seconds: int, lease_seconds: int, clock: Callable[[], float] = time.monotonic):
        self.ttl_seconds = ttl_seconds
        self.lease_seconds = lease_seconds
        self._clock = clock
        self._entries: dict[str, tuple[str, float]] = {}
        self._lock = asyncio.Lock()

    def _live_value(self, key: str) -> Optional[str]:
        entry = self._entries.get(key)
        if entry is None:
            return None
        value, expires_at = entry
        if expires_at <= self._clock():
            self._entries.pop(key, None)
            return None
        return value

    async def claim(self, scope: str, event_id: str) -> bool:
        key = ledger_key(scope, event_id)
        async with self._lock:
            if self._live_value(key) is not None:
                return False
            self._entries[key] = (PROCESSING, self._clock() + self.lease_seconds)
            return True

    async def mark_processed(self, scope: str, event_id: str) -> bool:
        key = ledger_key(scope, event_id)
        async with self._lock:
            current = self._live_value(key)
            if current not in (None, PROCESSING):
                return False
            self._entries[key] = (_done_marker(), self._clock() + self.ttl_seconds)
            return True

    async def release(self, scope: str, event_id: str) -> bool:
        key = ledger_key(scope, event_id)
        async with self._lock:
            if self._live_value(key) != PROCESSING:
                return False
            self._entries.pop(key, None)
            return True

    async def is_processed(self, scope: str, event_id: str) -> bool:
        value = self._live_value(ledger_key(scope, event_id))
        return bool(value and value.startswith(DONE_PREFIX))


class RedisIdempotencyLedger:
    """Ledger backed by Redis; falls back to a local ledger while Redis is unreachable."""

    def __init__(self, redis_client, ttl_seconds: int, lease_seconds: int, fallback: MemoryIdempotencyLedger):
        self.redis = redis_client
        self.ttl_seconds = ttl_seconds
        self.lease_seconds = lease_seconds
        self.fallback = fallback
        self._warned = False

    def _degrade(self, operation: str, event_id: str, error: Exception) -> None:
        logger.warning(
            "Idempotency redis unavailable, using in-process ledger",
            extra={"context": {"operation": operation, "event_id": event_id, "error": str(error)}},
        )
        if not self._warned:
            self._warned = True
            spawn_detached(
                "alert_ledger_degraded",
                alert_warning("Idempotency ledger degraded to in-process store", {"error": str(error)}),
            )

    async def claim(self, scope: str, event_id: str) -> bool:
        try:
            was_set = await self.redis.set(
                ledger_key(scope, event_id), PROCESSING, ex=self.lease_seconds, nx=True
            )
            return bool(was_set)
        except Exception as e:
            self._degrade("claim", event_id, e)
            return await self.fallback.claim(scope, event_id)

    async def mark_processed(self, scope: str, event_id: str) -> bool:
        try:
            result = await self.redis.eval(
                COMPLETE_LUA, 1, ledger_key(scope, event_id), PROCESSING, _done_marker(), self.ttl_seconds
            )
            return bool(result)
        except Exception as e:
            self._degrade("mark_processed", event_id, e)
            return await self.fallback.mark_processed(scope, event_id)

    async def release(self, scope: str, event_id: str) -> bool:
        try:
            result = await self.redis.eval(RELEASE_LUA, 1, ledger_key(scope, event_id), PROCESSING)
            return bool(result)
        except Exception as e:
            self._degrade("release", event_id, e)
            return await self.fallback.release(scope, event_id)

    async def is_processed(self, scope: str, event_id: str) -> bool:
        try:
            value = await self.redis.get(ledger_key(scope, event_id))
        except Exception as e:
            self._degrade("is_processed", event_id, e)
            return await self.fallback.is_processed(scope, event_id)
        return bool(value and str(value).startswith(DONE_PREFIX))


_memory_ledger: Optional[MemoryIdempotencyLedger] = None
_redis_ledger: Optional[RedisIdempotencyLedger] = None


def get_ledger():
    global _memory_ledger, _redis_ledger

    if _memory_ledger is None:
        _memory_ledger = MemoryIdempotencyLedger(settings.dedup_ttl_seconds, settings.dedup_lease_seconds)

    redis_client = get_redis()
    if redis_client is None:
        return _memory_ledger
    if _redis_ledger is None or _redis_ledger.redis is not redis_client:
        _redis_ledger = RedisIdempotencyLedger(
            redis_client,
            settings.dedup_ttl_seconds,
            settings.dedup_lease_seconds,
            fallback=_memory_ledger,
        )
    return _redis_ledger
