import asyncio
from unittest.mock import patch

import pytest

from app.services.idempotency_service import (
    DONE_PREFIX,
    PROCESSING,
    MemoryIdempotencyLedger,
    RedisIdempotencyLedger,
    ledger_key,
)


class FakeClock:
    def __init__(self, now: float = 0.0):
        self.now = now

    def __call__(self) -> float:
        return self.now


class FakeRedis:
    """Understands SET NX EX, GET and the two ledger scripts."""

    def __init__(self):
        self.data: dict[str, str] = {}
        self.expiries: dict[str, int] = {}

    async def set(self, key, value, ex=None, nx=False):
        if nx and key in self.data:
            return None
        self.data[key] = value
        self.expiries[key] = ex
        return True

    async def get(self, key):
        return self.data.get(key)

    async def eval(self, script, numkeys, key, *args):
        current = self.data.get(key)
        if "DEL" in script:
            if current == args[0]:
                del self.data[key]
                return 1
            return 0
        if current is None or current == args[0]:
            self.data[key] = args[1]
            self.expiries[key] = args[2]
            return 1
        return 0


class BrokenRedis:
    async def set(self, *args, **kwargs):
        raise ConnectionError("redis down")

    async def get(self, *args, **kwargs):
        raise ConnectionError("redis down")

    async def eval(self, *args, **kwargs):
        raise ConnectionError("redis down")


class TestMemoryLedger:
    @pytest.mark.asyncio
    async def test_claim_is_exclusive(self):
        ledger = MemoryIdempotencyLedger(ttl_seconds=100, lease_seconds=10)

        assert await ledger.claim("bot:1", "e1") is True
        assert await ledger.claim("bot:1", "e1") is False
        assert await ledger.claim("bot:2", "e1") is True

    @pytest.mark.asyncio
    async def test_concurrent_claims_single_winner(self):
        ledger = MemoryIdempotencyLedger(ttl_seconds=100, lease_seconds=10)

        results = await asyncio.gather(*(ledger.claim("bot:1", "e1") for _ in range(10)))

        assert results.count(True) == 1

    @pytest.mark.asyncio
    async def test_processed_blocks_until_ttl(self):
        clock = FakeClock()
        ledger = MemoryIdempotencyLedger(ttl_seconds=100, lease_seconds=10, clock=clock)
        await ledger.claim("bot:1", "e1")
        await ledger.mark_processed("bot:1", "e1")

        assert await ledger.is_processed("bot:1", "e1") is True
        clock.now = 50
        assert await ledger.claim("bot:1", "e1") is False

        clock.now = 101
        assert await ledger.is_processed("bot:1", "e1") is False
        assert await ledger.claim("bot:1", "e1") is True

    @pytest.mark.asyncio
    async def test_release_allows_retry(self):
        ledger = MemoryIdempotencyLedger(ttl_seconds=100, lease_seconds=10)
        await ledger.claim("bot:1", "e1")

        assert await ledger.release("bot:1", "e1") is True
        assert await ledger.claim("bot:1", "e1") is True

    @pytest.mark.asyncio
    async def test_release_does_not_remove_done_marker(self):
        ledger = MemoryIdempotencyLedger(ttl_seconds=100, lease_seconds=10)
        await ledger.claim("bot:1", "e1")
        await ledger.mark_processed("bot:1", "e1")

        assert await ledger.release("bot:1", "e1") is False
        assert await ledger.is_processed("bot:1", "e1") is True

    @pytest.mark.asyncio
    async def test_expired_lease_can_be_reclaimed(self):
        clock = FakeClock()
        ledger = MemoryIdempotencyLedger(ttl_seconds=100, lease_seconds=10, clock=clock)
        await ledger.claim("bot:1", "e1")

        clock.now = 11

        assert await ledger.claim("bot:1", "e1") is True

    @pytest.mark.asyncio
    async def test_mark_processed_twice(self):
        ledger = MemoryIdempotencyLedger(ttl_seconds=100, lease_seconds=10)
        await ledger.claim("bot:1", "e1")

        assert await ledger.mark_processed("bot:1", "e1") is True
        assert await ledger.mark_processed("bot:1", "e1") is False


class TestRedisLedger:
    @pytest.mark.asyncio
    async def test_lifecycle(self):
        redis = FakeRedis()
        ledger = RedisIdempotencyLedger(redis, 86400, 120, fallback=MemoryIdempotencyLedger(86400, 120))
        key = ledger_key("bot:1", "e1")

        assert await ledger.claim("bot:1", "e1") is True
        assert redis.data[key] == PROCESSING
        assert redis.expiries[key] == 120
        assert await ledger.claim("bot:1", "e1") is False

        assert await ledger.mark_processed("bot:1", "e1") is True
        assert redis.data[key].startswith(DONE_PREFIX)
        assert redis.expiries[key] == 86400
        assert await ledger.is_processed("bot:1", "e1") is True

    @pytest.mark.asyncio
    async def test_release_only_in_processing(self):
        redis = FakeRedis()
        ledger = RedisIdempotencyLedger(redis, 86400, 120, fallback=MemoryIdempotencyLedger(86400, 120))

        await ledger.claim("bot:1", "e1")
        assert await ledger.release("bot:1", "e1") is True
        assert await ledger.release("bot:1", "e1") is False
        assert await ledger.claim("bot:1", "e1") is True

    @pytest.mark.asyncio
    async def test_degrades_to_memory_and_alerts_once(self):
        fallback = MemoryIdempotencyLedger(86400, 120)
        ledger = RedisIdempotencyLedger(BrokenRedis(), 86400, 120, fallback=fallback)

        with patch("app.services.idempotency_service.spawn_detached") as mock_spawn:
            assert await ledger.claim("bot:1", "e1") is True
            assert await ledger.claim("bot:1", "e1") is False
            await ledger.mark_processed("bot:1", "e1")
            assert await ledger.is_processed("bot:1", "e1") is True

        assert mock_spawn.call_count == 1
        # The alert coroutine was never scheduled by the mock
        mock_spawn.call_args.args[1].close()
