import asyncio
import hashlib
import re
from dataclasses import asdict, dataclass, field
from typing import Callable, List, Optional

from app.config import settings
from app.database import SessionLocal, session_scope
from app.logging_config import get_logger
from app.models import KnowledgeEntry
from app.services.cache_service import TwoTierCache

logger = get_logger("knowledge_service")

SCAN_LIMIT = 50
MAX_TOKENS = 40
CJK_RE = re.compile(r"[\u4e00-\u9fff]")
SPLIT_RE = re.compile(r"[\s，。！？、；：“”‘’（）,.;:!?]+")


@dataclass
class KnowledgeSource:
    id: str
    title: str
    category: str = "general"


@dataclass
class KnowledgeSearchResult:
    text: str = ""
    sources: List[KnowledgeSource] = field(default_factory=list)

    @property
    def count(self) -> int:
        return len(self.sources)

    def to_dict(self) -> dict:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict) -> "KnowledgeSearchResult":
        return cls(
            text=data.get("text") or "",
            sources=[KnowledgeSource(**s) for s in data.get("sources") or []],
        )


def tokenize_query(query: str) -> List[str]:
    """Split on whitespace/punctuation; CJK runs also yield 2- and 3-char n-grams."""
    raw = [t for t in SPLIT_RE.split(re.sub(r"\s+", " ", (query or "").strip())) if len(t) >= 2]

    tokens: dict[str, None] = {}
    for token in raw:
        if CJK_RE.search(token):
            for n in (2, 3):
                for i in range(len(token) - n + 1):
                    tokens[token[i : i + n]] = None
        else:
            tokens[token] = None
    return list(tokens)[:MAX_TOKENS]


def rank_entries(rows: List[dict], query: str, limit: int, max_chars: int) -> KnowledgeSearchResult:
    """Keyword-overlap scoring over candidate rows, packed into a max_chars budget."""
    if not rows:
        return KnowledgeSearchResult()

    keywords = [k.lower() for k in tokenize_query(query)]
    if not keywords:
        top = rows[:limit]
    else:
        scored = []
        for row in rows:
            haystack = f"{row['title']} {row['content']}".lower()
            score = sum(1 for k in keywords if k in haystack)
            if score > 0:
                scored.append((score, row))
        scored.sort(key=lambda item: item[0], reverse=True)
        top = [row for _, row in scored[:limit]]

    parts: List[str] = []
    sources: List[KnowledgeSource] = []
    total = 0
    for row in top:
        block = f"【{row['title']}】\n{row['content']}"
        if total + len(block) > max_chars:
            break
        parts.append(block)
        sources.append(KnowledgeSource(id=str(row["id"]), title=row["title"], category=row.get("category") or "general"))
        total += len(block)

    return KnowledgeSearchResult(text="\n\n".join(parts), sources=sources)


def format_knowledge_context(result: KnowledgeSearchResult) -> str:
    """Knowledge block appended to the system prompt; instructs handoff when empty."""
    if result.text:
        return "\n\n## 以下是你可以參考的知識庫內容（只能根據以下內容回答，勿使用其他知識）：\n" + result.text
    return "\n\n注意：知識庫中沒有找到與此問題相關的內容，請回覆需要轉接專人，勿自行編造答案。"


class KnowledgeIndex:
    def __init__(self, session_factory: Callable = SessionLocal, cache: Optional[TwoTierCache] = None):
        self.session_factory = session_factory
        self.cache = cache or TwoTierCache(
            "knowledge",
            local_ttl=settings.knowledge_cache_ttl,
            shared_ttl=settings.knowledge_cache_ttl,
        )

    def _load_rows(self, merchant_id: str) -> List[dict]:
        with session_scope(self.session_factory) as db:
            entries = (
                db.query(KnowledgeEntry)
                .filter(KnowledgeEntry.merchant_id == merchant_id, KnowledgeEntry.is_active.is_(True))
                .limit(SCAN_LIMIT)
                .all()
            )
            return [
                {"id": str(e.id), "title": e.title or "", "content": e.content or "", "category": e.category}
                for e in entries
            ]

    async def search(
        self,
        merchant_id: str,
        query: str,
        limit: Optional[int] = None,
        max_chars: Optional[int] = None,
    ) -> KnowledgeSearchResult:
        limit = limit or settings.knowledge_search_limit
        max_chars = max_chars or settings.knowledge_max_chars
        digest = hashlib.md5(f"{merchant_id}:{query}:{limit}:{max_chars}".encode("utf-8")).hexdigest()[:12]

        async def _load() -> dict:
            rows = await asyncio.to_thread(self._load_rows, merchant_id)
            return rank_entries(rows, query, limit, max_chars).to_dict()

        data = await self.cache.get_or_set(f"{merchant_id}:{digest}", _load)
        result = KnowledgeSearchResult.from_dict(data)
        logger.info(
            f"Knowledge search: found {result.count} sources for '{query[:30]}'",
            extra={"context": {"merchant_id": merchant_id, "sources": [s.title for s in result.sources]}},
        )
        return result

    async def clear_cache(self, merchant_id: str) -> None:
        await self.cache.invalidate_prefix(f"{merchant_id}:")
