from app.services.llm.base import LLMError, LLMProvider, LLMResponse
from app.services.llm.errors import ClassifiedError, LLMErrorType, classify_llm_error, get_fallback_message
from app.services.llm.openai_provider import OpenAIProvider

__all__ = [
    "ClassifiedError",
    "LLMError",
    "LLMErrorType",
    "LLMProvider",
    "LLMResponse",
    "OpenAIProvider",
    "classify_llm_error",
    "get_fallback_message",
]
