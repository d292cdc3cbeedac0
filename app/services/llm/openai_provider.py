from typing import List, Optional

import httpx

from app.config import settings
from app.logging_config import get_logger
from app.services.llm.base import LLMError, LLMProvider, LLMResponse

logger = get_logger("llm.openai")


class OpenAIProvider(LLMProvider):
    """OpenAI chat completions provider."""

    def __init__(
        self,
        api_key: str,
        default_model: str = "gpt-4o-mini",
        base_url: Optional[str] = None,
        timeout_seconds: Optional[float] = None,
    ):
        self.api_key = api_key
        self.default_model = default_model
        self.base_url = base_url or settings.openai_base_url
        self.timeout_seconds = timeout_seconds if timeout_seconds is not None else settings.llm_timeout_seconds

    async def generate(
        self,
        messages: List[dict],
        model: Optional[str] = None,
        temperature: float = 0.7,
        max_tokens: int = 1000,
    ) -> LLMResponse:
        model = model or self.default_model
        payload = {
            "model": model,
            "messages": messages,
            "temperature": temperature,
            "max_tokens": max_tokens,
        }
        logger.debug(f"OpenAI request: model={model}, messages_count={len(messages)}")

        try:
            async with httpx.AsyncClient(timeout=self.timeout_seconds) as client:
                response = await client.post(
                    self.base_url,
                    headers={
                        "Authorization": f"Bearer {self.api_key}",
                        "Content-Type": "application/json",
                    },
                    json=payload,
                )
        except httpx.TimeoutException as e:
            raise LLMError(f"OpenAI request timeout: {e}", code="timeout") from e
        except httpx.TransportError as e:
            raise LLMError(f"OpenAI transport error: {e}", code="connection_error") from e

        logger.debug(f"OpenAI response status: {response.status_code}")

        if response.status_code != 200:
            code = None
            try:
                code = (response.json().get("error") or {}).get("code")
            except ValueError:
                pass
            logger.error(f"OpenAI error: {response.text[:500]}")
            raise LLMError(
                f"OpenAI API error: {response.status_code} - {response.text[:500]}",
                status=response.status_code,
                code=code,
            )

        data = response.json()
        content = ""
        if data.get("choices"):
            message = data["choices"][0].get("message", {})
            content = message.get("content") or ""
        logger.debug(f"OpenAI content: {content[:100] if content else 'EMPTY'}")

        return LLMResponse(
            content=content,
            model=data.get("model", model),
            usage=data.get("usage"),
        )
