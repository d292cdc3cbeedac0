from dataclasses import dataclass
from enum import Enum


class LLMErrorType(str, Enum):
    RATE_LIMIT = "rate_limit"
    TIMEOUT = "timeout"
    AUTH = "auth"
    CONTEXT_LENGTH = "context_length"
    SERVER_ERROR = "server_error"
    UNKNOWN = "unknown"


@dataclass(frozen=True)
class ClassifiedError:
    type: LLMErrorType
    retryable: bool


FALLBACK_MESSAGES = {
    LLMErrorType.RATE_LIMIT: "目前使用量較大，請稍後再試。",
    LLMErrorType.TIMEOUT: "回覆生成逾時，請再試一次。",
    LLMErrorType.AUTH: "服務設定暫時有誤，請聯繫客服。",
    LLMErrorType.CONTEXT_LENGTH: "訊息過長，請簡短描述您的問題。",
    LLMErrorType.SERVER_ERROR: "AI 服務暫時忙碌，請稍後再試。",
    LLMErrorType.UNKNOWN: "抱歉，處理您的訊息時發生錯誤，請稍後再試。",
}


def classify_llm_error(error: BaseException) -> ClassifiedError:
    """Map a provider failure to an error class and whether retrying can help."""
    status = getattr(error, "status", None)
    code = getattr(error, "code", None)
    message = str(error).lower()

    if status == 429 or code == "rate_limit_exceeded":
        return ClassifiedError(LLMErrorType.RATE_LIMIT, True)
    if status in (401, 403) or code in ("invalid_api_key", "insufficient_quota"):
        return ClassifiedError(LLMErrorType.AUTH, False)
    if status == 400 and ("context_length" in message or "maximum context" in message):
        return ClassifiedError(LLMErrorType.CONTEXT_LENGTH, False)
    if isinstance(status, int) and 500 <= status < 600:
        return ClassifiedError(LLMErrorType.SERVER_ERROR, True)
    if (
        isinstance(error, TimeoutError)
        or code in ("timeout", "ETIMEDOUT", "connection_error")
        or "timeout" in message
        or "econnreset" in message
    ):
        return ClassifiedError(LLMErrorType.TIMEOUT, True)
    return ClassifiedError(LLMErrorType.UNKNOWN, False)


def get_fallback_message(error_type: LLMErrorType) -> str:
    return FALLBACK_MESSAGES.get(error_type, FALLBACK_MESSAGES[LLMErrorType.UNKNOWN])
