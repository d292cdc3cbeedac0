import pytest

from app.services.rate_limiter import MemoryRateLimiter, RedisRateLimiter


class FakeClock:
    def __init__(self, now: float = 1000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now


class TestMemoryRateLimiter:
    @pytest.mark.asyncio
    async def test_admits_up_to_limit(self):
        limiter = MemoryRateLimiter(max_requests=3, window_seconds=60, clock=FakeClock())

        decisions = [await limiter.check("bot:1:U1") for _ in range(4)]

        assert [d.allowed for d in decisions] == [True, True, True, False]
        assert [d.remaining for d in decisions] == [2, 1, 0, 0]

    @pytest.mark.asyncio
    async def test_notice_once_per_window(self):
        clock = FakeClock()
        limiter = MemoryRateLimiter(max_requests=1, window_seconds=60, clock=clock)
        await limiter.check("U1")

        first = await limiter.check("U1")
        second = await limiter.check("U1")

        assert first.notify is True
        assert second.notify is False

        clock.now += 61
        assert (await limiter.check("U1")).allowed is True
        clock.now += 1
        assert (await limiter.check("U1")).notify is True

    @pytest.mark.asyncio
    async def test_window_slides(self):
        clock = FakeClock()
        limiter = MemoryRateLimiter(max_requests=2, window_seconds=10, clock=clock)
        await limiter.check("U1")
        clock.now += 5
        await limiter.check("U1")

        rejected = await limiter.check("U1")
        assert rejected.allowed is False
        assert rejected.reset_at == 1010.0

        clock.now += 6
        assert (await limiter.check("U1")).allowed is True

    @pytest.mark.asyncio
    async def test_identities_are_independent(self):
        limiter = MemoryRateLimiter(max_requests=1, window_seconds=60, clock=FakeClock())
        assert (await limiter.check("bot:1:U1")).allowed is True
        assert (await limiter.check("bot:2:U1")).allowed is True
        assert (await limiter.check("bot:1:U1")).allowed is False


class ScriptedRedis:
    def __init__(self, reply=None, error: Exception | None = None):
        self.reply = reply
        self.error = error
        self.calls = []

    async def eval(self, script, numkeys, *args):
        self.calls.append(args)
        if self.error:
            raise self.error
        return self.reply


class TestRedisRateLimiter:
    @pytest.mark.asyncio
    async def test_allowed(self):
        redis = ScriptedRedis(reply=[1, 3, 0, 0])
        limiter = RedisRateLimiter(redis, 20, 60, fallback=MemoryRateLimiter(20, 60))

        decision = await limiter.check("bot:1:U1")

        assert decision.allowed is True
        assert decision.remaining == 17
        assert redis.calls[0][0] == "replydesk:ratelimit:bot:1:U1"
        assert redis.calls[0][1] == "replydesk:ratelimit:bot:1:U1:notice"

    @pytest.mark.asyncio
    async def test_rejected_with_notice(self):
        redis = ScriptedRedis(reply=[0, 20, 1_000_000, 1])
        limiter = RedisRateLimiter(redis, 20, 60, fallback=MemoryRateLimiter(20, 60))

        decision = await limiter.check("U1")

        assert decision.allowed is False
        assert decision.notify is True
        assert decision.reset_at == 1060.0

    @pytest.mark.asyncio
    async def test_redis_error_uses_fallback(self):
        fallback = MemoryRateLimiter(1, 60, clock=FakeClock())
        limiter = RedisRateLimiter(ScriptedRedis(error=ConnectionError("down")), 1, 60, fallback=fallback)

        assert (await limiter.check("U1")).allowed is True
        assert (await limiter.check("U1")).allowed is False
