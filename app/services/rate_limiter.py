"""Sliding-window rate limiter per sender identity.

Redis path: one Lua script per check trims the sorted set, counts, admits or
rejects, and on rejection claims a once-per-window notice flag, all atomically.
Without Redis the same algorithm runs in process.
"""

import asyncio
import time
import uuid
from collections import deque
from dataclasses import dataclass
from typing import Callable, Optional

from app.config import settings
from app.logging_config import get_logger
from app.services.redis_client import get_redis

logger = get_logger("rate_limiter")

SLIDING_WINDOW_LUA = """
local key = KEYS[1]
local notice_key = KEYS[2]
local limit = tonumber(ARGV[1])
local window_ms = tonumber(ARGV[2])
local now_ms = tonumber(ARGV[3])
local member = ARGV[4]

redis.call('ZREMRANGEBYSCORE', key, 0, now_ms - window_ms)
local count = redis.call('ZCARD', key)

if count >= limit then
    local oldest = redis.call('ZRANGE', key, 0, 0, 'WITHSCORES')
    local oldest_ms = now_ms
    if #oldest > 0 then
        oldest_ms = tonumber(oldest[2])
    end
    local notify = 0
    if redis.call('SET', notice_key, '1', 'NX', 'PX', window_ms) then
        notify = 1
    end
    return {0, count, oldest_ms, notify}
end

redis.call('ZADD', key, now_ms, member)
redis.call('PEXPIRE', key, window_ms * 2)
return {1, count + 1, 0, 0}
"""


@dataclass
class RateLimitDecision:
    allowed: bool
    limit: int
    remaining: int
    reset_at: float
    notify: bool = False


class MemoryRateLimiter:
    def __init__(self, max_requests: int, window_seconds: int, clock: Callable[[], float] = time.time):
        self.max_requests = max_requests
        self.window_seconds = window_seconds
        self._clock = clock
        self._windows: dict[str, deque] = {}
        self._notified_until: dict[str, float] = {}
        self._lock = asyncio.Lock()

    async def check(self, identity: str) -> RateLimitDecision:
        async with self._lock:
            now = self._clock()
            window = self._windows.setdefault(identity, deque())
            while window and window[0] <= now - self.window_seconds:
                window.popleft()

            if len(window) >= self.max_requests:
                reset_at = window[0] + self.window_seconds
                notify = self._notified_until.get(identity, 0.0) <= now
                if notify:
                    self._notified_until[identity] = now + self.window_seconds
                return RateLimitDecision(False, self.max_requests, 0, reset_at, notify)

            window.append(now)
            return RateLimitDecision(
                True, self.max_requests, self.max_requests - len(window), now + self.window_seconds
            )


class RedisRateLimiter:
    def __init__(self, redis_client, max_requests: int, window_seconds: int, fallback: MemoryRateLimiter):
        self.redis = redis_client
        self.max_requests = max_requests
        self.window_seconds = window_seconds
        self.fallback = fallback

    async def check(self, identity: str) -> RateLimitDecision:
        now_ms = int(time.time() * 1000)
        window_ms = self.window_seconds * 1000
        key = f"replydesk:ratelimit:{identity}"
        try:
            allowed, count, oldest_ms, notify = await self.redis.eval(
                SLIDING_WINDOW_LUA,
                2,
                key,
                f"{key}:notice",
                self.max_requests,
                window_ms,
                now_ms,
                f"{now_ms}:{uuid.uuid4().hex}",
            )
        except Exception as e:
            logger.warning(
                "Rate limiter redis error, using in-process window",
                extra={"context": {"identity": identity, "error": str(e)}},
            )
            return await self.fallback.check(identity)

        if not int(allowed):
            reset_at = (int(oldest_ms) + window_ms) / 1000
            return RateLimitDecision(False, self.max_requests, 0, reset_at, bool(int(notify)))
        return RateLimitDecision(
            True,
            self.max_requests,
            max(0, self.max_requests - int(count)),
            (now_ms + window_ms) / 1000,
        )


_memory_limiter: Optional[MemoryRateLimiter] = None
_redis_limiter: Optional[RedisRateLimiter] = None


def get_rate_limiter():
    global _memory_limiter, _redis_limiter

    if _memory_limiter is None:
        _memory_limiter = MemoryRateLimiter(settings.rate_limit_max_requests, settings.rate_limit_window_seconds)

    redis_client = get_redis()
    if redis_client is None:
        return _memory_limiter
    if _redis_limiter is None or _redis_limiter.redis is not redis_client:
        _redis_limiter = RedisRateLimiter(
            redis_client,
            settings.rate_limit_max_requests,
            settings.rate_limit_window_seconds,
            fallback=_memory_limiter,
        )
    return _redis_limiter
