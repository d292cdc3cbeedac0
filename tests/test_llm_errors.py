import pytest

from app.services.llm.errors import LLMErrorType, classify_llm_error, get_fallback_message
from app.services.retry import retry_with_backoff


class ProviderError(Exception):
    def __init__(self, message="", status=None, code=None):
        super().__init__(message)
        self.status = status
        self.code = code


class TestClassifyLLMError:
    @pytest.mark.parametrize(
        "error,error_type,retryable",
        [
            (ProviderError(status=429), LLMErrorType.RATE_LIMIT, True),
            (ProviderError(status=401), LLMErrorType.AUTH, False),
            (ProviderError(code="invalid_api_key"), LLMErrorType.AUTH, False),
            (ProviderError("context_length_exceeded", status=400), LLMErrorType.CONTEXT_LENGTH, False),
            (ProviderError(status=503), LLMErrorType.SERVER_ERROR, True),
            (TimeoutError(), LLMErrorType.TIMEOUT, True),
            (ProviderError(code="connection_error"), LLMErrorType.TIMEOUT, True),
            (ProviderError("read timeout"), LLMErrorType.TIMEOUT, True),
            (ValueError("bad json"), LLMErrorType.UNKNOWN, False),
        ],
    )
    def test_classification(self, error, error_type, retryable):
        classified = classify_llm_error(error)
        assert classified.type == error_type
        assert classified.retryable is retryable

    def test_plain_400_is_unknown(self):
        assert classify_llm_error(ProviderError("bad request", status=400)).type == LLMErrorType.UNKNOWN

    def test_every_type_has_fallback(self):
        for error_type in LLMErrorType:
            assert get_fallback_message(error_type)


class TestRetryWithBackoff:
    @pytest.mark.asyncio
    async def test_retries_then_succeeds(self):
        calls = []
        delays = []

        async def fn():
            calls.append(1)
            if len(calls) < 3:
                raise ProviderError(status=503)
            return "ok"

        async def sleep(delay):
            delays.append(delay)

        result = await retry_with_backoff(fn, max_retries=2, initial_delay=0.5, sleep=sleep)

        assert result == "ok"
        assert len(calls) == 3
        assert delays == [0.5, 1.0]

    @pytest.mark.asyncio
    async def test_non_retryable_raises_immediately(self):
        calls = []

        async def fn():
            calls.append(1)
            raise ProviderError(status=401)

        async def sleep(delay):
            pass

        with pytest.raises(ProviderError):
            await retry_with_backoff(
                fn, is_retryable=lambda e: classify_llm_error(e).retryable, sleep=sleep
            )
        assert len(calls) == 1

    @pytest.mark.asyncio
    async def test_exhausted_raises_last_error(self):
        calls = []
        delays = []

        async def fn():
            calls.append(1)
            raise ProviderError(f"attempt {len(calls)}", status=500)

        async def sleep(delay):
            delays.append(delay)

        with pytest.raises(ProviderError, match="attempt 4"):
            await retry_with_backoff(fn, max_retries=3, initial_delay=1.0, max_delay=1.5, sleep=sleep)
        assert delays == [1.0, 1.5, 1.5]
