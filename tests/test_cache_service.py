import json

import pytest

from app.services.cache_service import TwoTierCache


class FakeClock:
    def __init__(self, now: float = 0.0):
        self.now = now

    def __call__(self) -> float:
        return self.now


class FakeRedis:
    def __init__(self, fail: bool = False):
        self.data: dict[str, str] = {}
        self.fail = fail

    async def get(self, key):
        if self.fail:
            raise ConnectionError("redis down")
        return self.data.get(key)

    async def set(self, key, value, ex=None):
        if self.fail:
            raise ConnectionError("redis down")
        self.data[key] = value

    async def delete(self, key):
        return 1 if self.data.pop(key, None) is not None else 0

    async def scan_iter(self, match):
        prefix = match.rstrip("*")
        for key in list(self.data):
            if key.startswith(prefix):
                yield key


def counting_loader(value):
    calls = []

    async def loader():
        calls.append(1)
        return value

    return loader, calls


class TestTwoTierCache:
    @pytest.mark.asyncio
    async def test_loader_called_once(self):
        cache = TwoTierCache("settings", local_ttl=60, shared_ttl=300, redis_getter=lambda: None)
        loader, calls = counting_loader({"a": 1})

        assert await cache.get_or_set("k", loader) == {"a": 1}
        assert await cache.get_or_set("k", loader) == {"a": 1}
        assert len(calls) == 1

    @pytest.mark.asyncio
    async def test_local_expiry_falls_back_to_shared(self):
        clock = FakeClock()
        redis = FakeRedis()
        cache = TwoTierCache("settings", local_ttl=60, shared_ttl=300, redis_getter=lambda: redis, clock=clock)
        loader, calls = counting_loader({"a": 1})

        await cache.get_or_set("k", loader)
        assert json.loads(redis.data["replydesk:cache:settings:k"]) == {"a": 1}

        clock.now = 61
        assert await cache.get_or_set("k", loader) == {"a": 1}
        assert len(calls) == 1

    @pytest.mark.asyncio
    async def test_redis_failure_uses_loader(self):
        cache = TwoTierCache("settings", local_ttl=60, shared_ttl=300, redis_getter=lambda: FakeRedis(fail=True))
        loader, calls = counting_loader("value")

        assert await cache.get_or_set("k", loader) == "value"
        assert len(calls) == 1

    @pytest.mark.asyncio
    async def test_invalidate(self):
        redis = FakeRedis()
        cache = TwoTierCache("settings", local_ttl=60, shared_ttl=300, redis_getter=lambda: redis)
        loader, calls = counting_loader("value")

        await cache.get_or_set("k", loader)
        await cache.invalidate("k")
        await cache.get_or_set("k", loader)

        assert len(calls) == 2

    @pytest.mark.asyncio
    async def test_invalidate_prefix(self):
        redis = FakeRedis()
        cache = TwoTierCache("analytics", local_ttl=60, shared_ttl=300, redis_getter=lambda: redis)
        loader, _ = counting_loader(1)

        await cache.get_or_set("m1:summary", loader)
        await cache.get_or_set("m1:daily", loader)
        await cache.get_or_set("m2:summary", loader)

        removed = await cache.invalidate_prefix("m1:")

        assert removed == 2
        assert await cache.get("m1:summary") is None
        assert await cache.get("m2:summary") == 1

    @pytest.mark.asyncio
    async def test_get_missing(self):
        cache = TwoTierCache("settings", local_ttl=60, shared_ttl=300, redis_getter=lambda: None)
        assert await cache.get("nothing") is None
