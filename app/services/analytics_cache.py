from typing import Optional

from app.services.cache_service import TwoTierCache

ANALYTICS_CACHE_TTL = 600

_cache: Optional[TwoTierCache] = None


def get_analytics_cache() -> TwoTierCache:
    global _cache
    if _cache is None:
        _cache = TwoTierCache("analytics", local_ttl=ANALYTICS_CACHE_TTL, shared_ttl=ANALYTICS_CACHE_TTL)
    return _cache


async def invalidate_analytics(merchant_id: str, cache: Optional[TwoTierCache] = None) -> int:
    """Drop every cached dashboard aggregate for the merchant after new conversation rows."""
    return await (cache or get_analytics_cache()).invalidate_prefix(f"{merchant_id}:")
