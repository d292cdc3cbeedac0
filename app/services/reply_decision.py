"""Reply decision engine: category, confidence and one of AUTO / SUGGEST / ASK / HANDOFF.

Pure functions, no I/O. Scoring weights live in DecisionPolicy and can be
overridden from a YAML file (DECISION_POLICY_PATH) without code changes.
"""

import re
from dataclasses import dataclass, field, fields, replace
from enum import Enum
from functools import lru_cache
from pathlib import Path
from typing import Any, Iterable, Optional

import yaml

from app.config import settings
from app.logging_config import get_logger
from app.services.risk_screener import RiskAssessment

logger = get_logger("reply_decision")


class ReplyAction(str, Enum):
    AUTO = "AUTO"
    SUGGEST = "SUGGEST"
    ASK = "ASK"
    HANDOFF = "HANDOFF"


# Order matters: first match wins.
CATEGORY_PATTERNS: tuple[tuple[str, re.Pattern], ...] = (
    ("refund", re.compile(r"(退款|退錢|賠償|取消訂單|取消交易)", re.IGNORECASE)),
    ("return_exchange", re.compile(r"(退貨|換貨|退換貨)", re.IGNORECASE)),
    ("discount", re.compile(r"(折扣|打折|優惠|折價|折數|coupon|優惠碼)", re.IGNORECASE)),
    ("payment", re.compile(r"(付款|付費|匯款|轉帳|刷卡|支付|payment)", re.IGNORECASE)),
    ("invoice", re.compile(r"(發票|統編|電子發票|紙本發票)", re.IGNORECASE)),
    ("delivery", re.compile(r"(到貨|何時到|幾天到|送達|到貨日|何時送到)", re.IGNORECASE)),
    ("shipping", re.compile(r"(運費|運送|物流|配送|寄送|宅配|shipping)", re.IGNORECASE)),
    ("warranty", re.compile(r"(保固|維修|故障|瑕疵)", re.IGNORECASE)),
    ("complaint", re.compile(r"(客訴|投訴|申訴|抱怨|不滿意|態度差)", re.IGNORECASE)),
    ("price", re.compile(r"(價格|價錢|報價|費用|多少錢)", re.IGNORECASE)),
)

SIMPLE_MESSAGE_RE = re.compile(r"^(你好|哈囉|嗨|hi|hello|感謝|謝謝|thanks|ok|好的|收到|在嗎|有人嗎)[!！。. ]*$", re.IGNORECASE)
ORDER_NUMBER_RE = re.compile(
    r"((訂單|order)\s*[#:：-]?\s*[a-z0-9-]{4,}|#[a-z0-9-]{4,}|\b[a-z]{0,2}\d{6,}\b)", re.IGNORECASE | re.ASCII
)
PRODUCT_RE = re.compile(r"(商品|產品|品項|型號|款式|名稱|sku)", re.IGNORECASE)
DATE_RE = re.compile(r"(\d{4}[/\-年]\d{1,2}[/\-月]\d{1,2}日?|\d{1,2}[/\-月]\d{1,2}日?|今天|昨日|昨天|前天|上週|上個月)")
DETAILS_RE = re.compile(r"(問題|狀況|情況|原因|內容|照片|截圖|描述)")

DEFAULT_SAFE_DRAFT = "已收到您的問題，我們會由專員確認後盡快回覆您。"
DEFAULT_HANDOFF_TEXT = "此問題需要專員協助處理，我們已為您轉交人工客服，請稍候。"
GENERIC_ASK_TEXT = "請問您想了解哪一項資訊？若有訂單編號也請一併提供，方便我們快速協助。"
NO_SOURCE_ASK_TEXT = "目前沒有足夠依據可直接回答，請提供訂單編號、商品名稱與相關日期。"
NO_SOURCE_HANDOFF_TEXT = "為避免提供錯誤承諾，此問題將轉交專員協助處理。"
MISSING_FIELDS_FALLBACK_ASK = "為了正確協助您，請再提供訂單編號、商品名稱與相關時間資訊。"


@dataclass(frozen=True)
class DecisionPolicy:
    base_score: float = 0.4
    per_source_bonus: float = 0.15
    max_source_bonus: float = 0.4
    zero_source_penalty: float = 0.25
    high_risk_penalty: float = 0.35
    medium_risk_penalty: float = 0.15
    high_risk_category_penalty: float = 0.25
    simple_message_bonus: float = 0.05
    missing_fields_penalty: float = 0.2
    default_threshold: float = 0.6
    simple_message_max_length: int = 8
    max_clarifying_questions: int = 3
    max_source_titles: int = 5
    high_risk_categories: frozenset = frozenset({"refund", "discount", "price", "shipping", "delivery", "complaint"})
    template_categories: frozenset = frozenset(
        {"refund", "return_exchange", "discount", "payment", "invoice", "shipping", "delivery", "warranty", "complaint"}
    )


@dataclass
class SourcesUsed:
    count: int
    hit: bool
    titles: list[str] = field(default_factory=list)


@dataclass
class ReplyDecision:
    action: ReplyAction
    draft_text: str
    reason: str
    confidence: float
    category: str
    sources: SourcesUsed
    ask_text: Optional[str] = None
    clarifying_questions: list[str] = field(default_factory=list)


def policy_from_mapping(data: dict[str, Any], base: Optional[DecisionPolicy] = None) -> DecisionPolicy:
    base = base or DecisionPolicy()
    known = {f.name for f in fields(DecisionPolicy)}
    overrides: dict[str, Any] = {}
    for key, value in (data or {}).items():
        if key not in known:
            logger.warning("Unknown decision policy key ignored", extra={"context": {"key": key}})
            continue
        if key in ("high_risk_categories", "template_categories"):
            value = frozenset(value or [])
        overrides[key] = value
    return replace(base, **overrides)


@lru_cache(maxsize=4)
def load_decision_policy(path: str = "") -> DecisionPolicy:
    if not path:
        return DecisionPolicy()
    policy_path = Path(path)
    if not policy_path.exists():
        logger.warning("Decision policy file not found, using defaults", extra={"context": {"path": path}})
        return DecisionPolicy()
    with policy_path.open("r", encoding="utf-8") as handle:
        data = yaml.safe_load(handle) or {}
    if not isinstance(data, dict):
        return DecisionPolicy()
    return policy_from_mapping(data.get("decision_policy", data))


def get_decision_policy() -> DecisionPolicy:
    return load_decision_policy(settings.decision_policy_path)


def _clamp(value: float, low: float = 0.0, high: float = 1.0) -> float:
    return max(low, min(high, value))


def _normalize(text: str) -> str:
    return re.sub(r"\s+", " ", (text or "").strip())


def classify_reply_category(user_message: str) -> str:
    for category, pattern in CATEGORY_PATTERNS:
        if pattern.search(user_message or ""):
            return category
    return "general"


def is_simple_message(user_message: str, policy: Optional[DecisionPolicy] = None) -> bool:
    policy = policy or DecisionPolicy()
    message = _normalize(user_message)
    if not message:
        return True
    if SIMPLE_MESSAGE_RE.match(message):
        return True
    return len(message) <= policy.simple_message_max_length


def build_clarifying_questions(category: str, user_message: str, limit: int = 3) -> list[str]:
    has_order = bool(ORDER_NUMBER_RE.search(user_message))
    has_product = bool(PRODUCT_RE.search(user_message))
    has_date = bool(DATE_RE.search(user_message))
    has_details = bool(DETAILS_RE.search(user_message))

    questions: list[str] = []
    if category in ("refund", "return_exchange"):
        if not has_order:
            questions.append("請提供訂單編號，方便我們先查核訂單狀態。")
        if not has_product:
            questions.append("請告知欲退款/退換貨的商品名稱與規格。")
        if not has_date:
            questions.append("請提供下單日期或付款日期。")
    elif category in ("discount", "price"):
        if not has_product:
            questions.append("請問您要詢問哪一個商品或方案的價格/折扣呢？")
        if not has_details:
            questions.append("請提供數量或方案需求，方便我們確認適用優惠。")
    elif category == "payment":
        if not has_order:
            questions.append("請提供訂單編號。")
        if not has_details:
            questions.append("請說明付款方式與遇到的問題（例如刷卡失敗、轉帳未入帳）。")
    elif category == "invoice":
        if not has_order:
            questions.append("請提供訂單編號。")
        questions.append("請問您需要電子發票、紙本發票，或統編發票？")
    elif category in ("shipping", "delivery"):
        if not has_order:
            questions.append("請提供訂單編號，方便我們查詢配送進度。")
        if not has_product:
            questions.append("請告知商品名稱或品項。")
    elif category == "warranty":
        if not has_product:
            questions.append("請提供商品名稱或型號。")
        if not has_date:
            questions.append("請提供購買日期。")
        if not has_details:
            questions.append("請簡述故障情況，若可附上照片更好。")
    elif category == "complaint":
        if not has_order:
            questions.append("請提供訂單編號（若有）。")
        if not has_details:
            questions.append("請描述您遇到的問題與發生時間。")

    return questions[:limit]


def format_ask_text(questions: list[str]) -> str:
    if not questions:
        return MISSING_FIELDS_FALLBACK_ASK
    numbered = "\n".join(f"{i}. {q}" for i, q in enumerate(questions, start=1))
    return f"為了更快協助您，請先補充以下資訊：\n{numbered}"


def calculate_confidence(
    *,
    category: str,
    risk_level: str,
    sources_count: int,
    simple_message: bool,
    missing_fields: bool,
    policy: DecisionPolicy,
) -> float:
    score = policy.base_score
    if sources_count > 0:
        score += min(policy.max_source_bonus, sources_count * policy.per_source_bonus)
    else:
        score -= policy.zero_source_penalty

    if risk_level == "high":
        score -= policy.high_risk_penalty
    elif risk_level == "medium":
        score -= policy.medium_risk_penalty
    if category in policy.high_risk_categories:
        score -= policy.high_risk_category_penalty
    if simple_message:
        score += policy.simple_message_bonus
    if missing_fields:
        score -= policy.missing_fields_penalty

    return _clamp(round(score, 2))


def decide_reply_action(
    user_message: str,
    risk: RiskAssessment,
    sources_count: int,
    *,
    threshold: Optional[float] = None,
    source_titles: Optional[Iterable[str]] = None,
    candidate_draft: Optional[str] = None,
    policy: Optional[DecisionPolicy] = None,
) -> ReplyDecision:
    """Pick the reply action. Risk and missing-information checks dominate confidence."""
    policy = policy or get_decision_policy()
    category = classify_reply_category(user_message)
    sources_count = max(0, int(sources_count or 0))
    simple = is_simple_message(user_message, policy)
    threshold = _clamp(float(policy.default_threshold if threshold is None else threshold))

    questions = (
        build_clarifying_questions(category, user_message, policy.max_clarifying_questions)
        if category in policy.template_categories
        else []
    )
    missing_fields = bool(questions)

    confidence = calculate_confidence(
        category=category,
        risk_level=risk.risk_level,
        sources_count=sources_count,
        simple_message=simple,
        missing_fields=missing_fields,
        policy=policy,
    )
    high_risk = category in policy.high_risk_categories or risk.risk_level == "high"
    sources = SourcesUsed(
        count=sources_count,
        hit=sources_count > 0,
        titles=list(source_titles or [])[: policy.max_source_titles],
    )
    draft = (candidate_draft or "").strip() or DEFAULT_SAFE_DRAFT

    def _decision(action: ReplyAction, text: str, reason: str, ask: bool = False) -> ReplyDecision:
        return ReplyDecision(
            action=action,
            draft_text=text,
            ask_text=text if ask else None,
            reason=reason,
            confidence=confidence,
            category=category,
            sources=sources,
            clarifying_questions=questions,
        )

    if high_risk and missing_fields:
        return _decision(ReplyAction.ASK, format_ask_text(questions), "high_risk_missing_fields", ask=True)

    if sources_count == 0:
        if not simple:
            if high_risk:
                return _decision(ReplyAction.HANDOFF, NO_SOURCE_HANDOFF_TEXT, "no_sources_high_risk")
            return _decision(ReplyAction.ASK, NO_SOURCE_ASK_TEXT, "no_sources", ask=True)
        return _decision(ReplyAction.ASK, GENERIC_ASK_TEXT, "no_sources_simple_message", ask=True)

    if confidence < threshold:
        if missing_fields:
            return _decision(ReplyAction.ASK, format_ask_text(questions), "low_confidence_missing_fields", ask=True)
        return _decision(ReplyAction.SUGGEST, draft, "low_confidence")

    if high_risk:
        return _decision(ReplyAction.SUGGEST, draft, "high_risk_requires_review")

    return _decision(ReplyAction.AUTO, draft, "grounded_low_risk")


def get_default_handoff_text() -> str:
    return DEFAULT_HANDOFF_TEXT
