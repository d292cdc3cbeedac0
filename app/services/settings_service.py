import asyncio
from dataclasses import asdict, dataclass, field
from typing import Any, Callable, Optional

from app.config import settings
from app.database import SessionLocal, session_scope
from app.logging_config import get_logger
from app.models import MerchantSettings
from app.services.cache_service import TwoTierCache

logger = get_logger("settings_service")

DEFAULT_CONFIDENCE_THRESHOLD = 0.6
DEFAULT_MEMORY_COUNT = 5
DEFAULT_MAX_REPLY_LENGTH = 500


@dataclass
class MerchantConfig:
    merchant_id: str
    system_prompt: str = ""
    ai_model: Optional[str] = None
    confidence_threshold: float = DEFAULT_CONFIDENCE_THRESHOLD
    business_hours: Optional[dict] = None
    sensitive_words: list[str] = field(default_factory=list)
    quick_replies: list[dict] = field(default_factory=list)
    memory_count: int = DEFAULT_MEMORY_COUNT
    max_reply_length: int = DEFAULT_MAX_REPLY_LENGTH
    welcome_message_enabled: bool = False
    welcome_message: Optional[str] = None
    off_hours_message: Optional[str] = None

    @classmethod
    def from_row(cls, merchant_id: str, row: Optional[MerchantSettings]) -> "MerchantConfig":
        if row is None:
            return cls(merchant_id=merchant_id)
        threshold = row.confidence_threshold
        return cls(
            merchant_id=merchant_id,
            system_prompt=row.system_prompt or "",
            ai_model=row.ai_model,
            confidence_threshold=float(threshold) if threshold is not None else DEFAULT_CONFIDENCE_THRESHOLD,
            business_hours=row.business_hours or None,
            sensitive_words=[w for w in (row.sensitive_words or []) if isinstance(w, str)],
            quick_replies=list(row.quick_replies or []),
            memory_count=row.conversation_memory_count or DEFAULT_MEMORY_COUNT,
            max_reply_length=row.max_reply_length or DEFAULT_MAX_REPLY_LENGTH,
            welcome_message_enabled=bool(row.welcome_message_enabled),
            welcome_message=row.welcome_message,
            off_hours_message=row.off_hours_message,
        )

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "MerchantConfig":
        known = {k: v for k, v in data.items() if k in cls.__dataclass_fields__}
        return cls(**known)


class SettingsProvider:
    """Per-merchant configuration behind a local + shared TTL cache."""

    def __init__(self, session_factory: Callable = SessionLocal, cache: Optional[TwoTierCache] = None):
        self.session_factory = session_factory
        self.cache = cache or TwoTierCache(
            "settings",
            local_ttl=settings.settings_cache_local_ttl,
            shared_ttl=settings.settings_cache_shared_ttl,
        )

    def _load(self, merchant_id: str) -> dict:
        with session_scope(self.session_factory) as db:
            row = db.query(MerchantSettings).filter(MerchantSettings.merchant_id == merchant_id).first()
            if row is None:
                logger.info("No merchant settings row, using defaults", extra={"context": {"merchant_id": merchant_id}})
            return asdict(MerchantConfig.from_row(merchant_id, row))

    async def get_settings(self, merchant_id: str) -> MerchantConfig:
        async def _loader() -> dict:
            return await asyncio.to_thread(self._load, merchant_id)

        data = await self.cache.get_or_set(str(merchant_id), _loader)
        return MerchantConfig.from_dict(data)

    async def invalidate(self, merchant_id: str) -> None:
        await self.cache.invalidate(str(merchant_id))
