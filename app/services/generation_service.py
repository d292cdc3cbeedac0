"""Text generation for replies and workflow classification tasks."""

from dataclasses import dataclass
from typing import List, Optional

from app.config import settings
from app.logging_config import get_logger
from app.services.alert_service import alert_error
from app.services.background_tasks import spawn_detached
from app.services.llm import (
    LLMErrorType,
    LLMProvider,
    OpenAIProvider,
    classify_llm_error,
    get_fallback_message,
)
from app.services.retry import retry_with_backoff

logger = get_logger("generation_service")

DEFAULT_SYSTEM_PROMPT = (
    "你是商家的 LINE 智慧客服助手，代表商家親切、專業地協助客戶。\n"
    "回覆規則：一律使用繁體中文；語氣友善專業；通常 2-4 句話；"
    "LINE 訊息不要使用 Markdown；不確定的事情請誠實說明並建議聯繫專人，永遠不要編造資訊。"
)

CLASSIFY_PROMPTS = {
    "sentiment": "分析以下客戶訊息的情緒，只回覆 positive、neutral 或 negative 其中之一。",
    "intent": "分析以下客戶訊息的意圖，只回覆以下其中一個：inquiry（詢價）、aftersales（售後）、complaint（投訴）、general（一般諮詢）。",
    "language": "偵測以下訊息的語言，只回覆語言代碼，如 zh-TW、en、ja。",
}

NON_RETRYABLE_ALERT = {LLMErrorType.AUTH, LLMErrorType.CONTEXT_LENGTH}


@dataclass
class GenerationResult:
    text: str
    error_type: Optional[LLMErrorType] = None

    @property
    def is_fallback(self) -> bool:
        return self.error_type is not None


def _is_retryable(error: BaseException) -> bool:
    return classify_llm_error(error).retryable


class ReplyGenerator:
    def __init__(self, provider: Optional[LLMProvider] = None):
        self.provider = provider or OpenAIProvider(
            api_key=settings.openai_api_key,
            default_model=settings.openai_default_model,
        )

    async def _call(self, messages: List[dict], model: Optional[str], temperature: float, max_tokens: int) -> str:
        async def _attempt() -> str:
            response = await self.provider.generate(
                messages, model=model, temperature=temperature, max_tokens=max_tokens
            )
            return response.content

        return await retry_with_backoff(
            _attempt,
            max_retries=settings.llm_max_retries,
            initial_delay=settings.llm_retry_initial_delay,
            max_delay=settings.llm_retry_max_delay,
            is_retryable=_is_retryable,
        )

    async def generate_reply(
        self,
        user_message: str,
        system_prompt: str,
        *,
        model: Optional[str] = None,
        history: Optional[List[dict]] = None,
        max_reply_length: int = 500,
        merchant_id: Optional[str] = None,
    ) -> GenerationResult:
        """Generate a customer reply; on failure return the fallback text for the error class."""
        prompt = (system_prompt or "").strip() or DEFAULT_SYSTEM_PROMPT
        prompt += f"\n\n回覆長度請控制在 {max_reply_length} 字以內。"
        messages = [{"role": "system", "content": prompt}]
        messages.extend(history or [])
        messages.append({"role": "user", "content": user_message})

        try:
            text = await self._call(messages, model, temperature=0.7, max_tokens=500)
        except Exception as e:
            classified = classify_llm_error(e)
            logger.error(
                "Reply generation failed",
                extra={
                    "context": {
                        "merchant_id": merchant_id,
                        "error_type": classified.type.value,
                        "error": str(e)[:300],
                    }
                },
            )
            if classified.type in NON_RETRYABLE_ALERT:
                spawn_detached(
                    "alert_generation_failure",
                    alert_error(
                        f"Reply generation failed: {classified.type.value}",
                        {"merchant_id": merchant_id, "error": str(e)[:200]},
                    ),
                )
            return GenerationResult(text=get_fallback_message(classified.type), error_type=classified.type)

        return GenerationResult(text=(text or "").strip())

    async def classify(self, task: str, text: str, model: Optional[str] = None) -> str:
        """Run a short labelling task (sentiment/intent/language). Errors propagate."""
        prompt = CLASSIFY_PROMPTS[task]
        messages = [
            {"role": "system", "content": prompt},
            {"role": "user", "content": text},
        ]
        result = await self._call(messages, model or settings.openai_default_model, temperature=0, max_tokens=20)
        return (result or "").strip().lower()
