"""Keyword screening of inbound text and guardrails on generated replies."""

import re
from dataclasses import dataclass, field
from typing import Iterable, Literal, Optional

from app.logging_config import get_logger

logger = get_logger("risk_screener")

RiskLevel = Literal["low", "medium", "high"]

# Money, order changes, legal liability, promises.
# 退款/退錢 are left to the reply decision layer (ASK/SUGGEST), not a hard stop.
HIGH_RISK_KEYWORDS = (
    "賠償", "折扣", "免費", "贈送", "送你", "給你",
    "打折", "優惠", "現金", "匯款", "轉帳",
    "取消訂單", "退貨", "退換貨", "換貨",
    "法律責任", "賠償金", "損害賠償", "訴訟",
    "保證", "一定會", "絕對", "承諾",
)

MEDIUM_RISK_KEYWORDS = (
    "客訴", "投訴", "申訴", "抱怨",
    "不滿意", "很生氣", "態度差",
    "找老闆", "找主管", "要人工",
    "轉接", "專員", "客服",
)

FORBIDDEN_TOPICS = (
    "醫療", "治療", "藥物", "診斷", "疾病",
    "法律", "訴訟", "律師", "官司",
    "投資", "理財", "股票", "基金",
    "密碼", "password", "帳號",
    "信用卡", "卡號", "身分證",
)

INTERNAL_KEYWORDS = (
    "openai", "api key", "secret", "token",
    "database", "資料庫", "內部文件",
    "supabase", "vercel", "環境變數",
)

FORBIDDEN_REPLY_PATTERNS = (
    re.compile(r"免費送你"),
    re.compile(r"我可以給你.*折"),
    re.compile(r"退.*全額"),
    re.compile(r"保證.*效果"),
    re.compile(r"我不是AI"),
    re.compile(r"我是真人"),
)

AMOUNT_PROMISE_PATTERNS = (
    re.compile(r"(?:將|會)?退還.*[0-9,]+.*元", re.IGNORECASE),
    re.compile(r"賠償.*[0-9,]+.*元", re.IGNORECASE),
    re.compile(r"(?:免費)?贈送.*[0-9,]+.*元", re.IGNORECASE),
    re.compile(r"打.*折|[0-9]+折", re.IGNORECASE),
    re.compile(r"(?:給你|送你).*(?:優惠|折扣|現金)", re.IGNORECASE),
)

PROFESSIONAL_ADVICE_PATTERNS = (
    re.compile(r"(?:建議你|你可以).*(?:服用|吃|用藥)", re.IGNORECASE),
    re.compile(r"(?:這是|應該是).*(?:疾病|症狀)", re.IGNORECASE),
    re.compile(r"法律上.*(?:你可以|建議)", re.IGNORECASE),
    re.compile(r"(?:買|投資).*(?:股票|基金|加密貨幣)", re.IGNORECASE),
)

ABUSIVE_PATTERNS = (
    re.compile(r"(?:笨|傻|蠢|白痴|智障)"),
    re.compile(r"(?:去死|滾|閉嘴)"),
)

SAFE_REPLY_TEXT = "感謝您的詢問！此問題需要專員處理，我已為您記錄，會盡快回覆您。"
MAX_OUTPUT_CHARS = 2000
DEFAULT_MAX_REPLY_LENGTH = 500

FILTER_SUBSTITUTES = {
    "internal_leak": "抱歉，系統發生錯誤，請稍後再試或聯繫客服人員。",
    "amount_promise": "關於您的問題，我們需要專員為您詳細處理。請稍候，客服人員會盡快與您聯繫。",
    "professional_advice": "關於這類問題，建議您諮詢專業人士的意見。如果需要協助，請聯繫我們的客服團隊。",
    "abusive_language": "抱歉，系統出現異常。請讓我重新為您服務，謝謝您的耐心。",
    "too_long": "抱歉，回覆內容過長。請讓我為您簡要說明，或者可以分次詢問。",
    "empty": "抱歉，系統暫時無法回覆。請稍後再試，或直接聯繫客服人員。",
}


@dataclass
class RiskAssessment:
    risk_level: RiskLevel = "low"
    matched_keywords: list[str] = field(default_factory=list)

    @property
    def has_keyword(self) -> bool:
        return bool(self.matched_keywords)

    @property
    def is_high(self) -> bool:
        return self.risk_level == "high"


@dataclass
class GuardrailResult:
    text: str
    triggered: bool = False
    reason: Optional[str] = None


def _found(text: str, keywords: Iterable[str]) -> list[str]:
    return [kw for kw in keywords if kw.lower() in text]


def detect_sensitive_keywords(text: str, include_internal: bool = False) -> RiskAssessment:
    """Classify text into low / medium / high risk by keyword hits."""
    normalized = (text or "").lower()

    high = _found(normalized, HIGH_RISK_KEYWORDS)
    medium = _found(normalized, MEDIUM_RISK_KEYWORDS)
    forbidden = _found(normalized, FORBIDDEN_TOPICS)
    internal = _found(normalized, INTERNAL_KEYWORDS) if include_internal else []

    matched = list(dict.fromkeys([*high, *medium, *forbidden, *internal]))

    if high or forbidden or internal:
        level: RiskLevel = "high"
    elif medium:
        level = "medium"
    else:
        level = "low"
    return RiskAssessment(risk_level=level, matched_keywords=matched)


def match_custom_words(text: str, words: Optional[Iterable[str]]) -> list[str]:
    """Merchant-configured sensitive words, case-insensitive substring match."""
    if not words:
        return []
    normalized = (text or "").lower()
    return [w for w in words if isinstance(w, str) and w.strip() and w.strip().lower() in normalized]


def filter_ai_output(reply: str) -> GuardrailResult:
    """Replace unsafe generated output with a fixed substitute."""
    text = reply or ""
    normalized = text.lower()

    leaked = next((kw for kw in INTERNAL_KEYWORDS if kw in normalized), None)
    if leaked:
        reason = "internal_leak"
    elif any(p.search(text) for p in AMOUNT_PROMISE_PATTERNS):
        reason = "amount_promise"
    elif any(p.search(text) for p in PROFESSIONAL_ADVICE_PATTERNS):
        reason = "professional_advice"
    elif any(p.search(text) for p in ABUSIVE_PATTERNS):
        reason = "abusive_language"
    elif len(text) > MAX_OUTPUT_CHARS:
        reason = "too_long"
    elif len(text.strip()) < 3:
        reason = "empty"
    else:
        return GuardrailResult(text=text)

    logger.warning(
        "Generated reply blocked by output filter",
        extra={"context": {"reason": reason, "keyword": leaked, "preview": text[:100]}},
    )
    return GuardrailResult(text=FILTER_SUBSTITUTES[reason], triggered=True, reason=reason)


def truncate_reply(text: str, max_length: int = DEFAULT_MAX_REPLY_LENGTH) -> str:
    if max_length <= 3 or len(text) <= max_length:
        return text
    return text[: max_length - 3] + "..."


def apply_reply_guardrail(reply: str, max_length: int = DEFAULT_MAX_REPLY_LENGTH) -> GuardrailResult:
    """Forbidden phrases force the safe sentence, then output filter, then truncation."""
    for pattern in FORBIDDEN_REPLY_PATTERNS:
        if pattern.search(reply or ""):
            return GuardrailResult(
                text=truncate_reply(SAFE_REPLY_TEXT, max_length), triggered=True, reason="forbidden_phrase"
            )

    filtered = filter_ai_output(reply)
    text = truncate_reply(filtered.text, max_length)
    return GuardrailResult(text=text, triggered=filtered.triggered, reason=filtered.reason)
