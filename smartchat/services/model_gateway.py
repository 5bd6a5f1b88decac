from __future__ import annotations

from dataclasses import dataclass
import logging
import time
from typing import Any, Awaitable, Callable

from smartchat.core.config import Settings, get_settings
from smartchat.core.errors import (
    ProviderError,
    ProviderTimeoutError,
    ProviderUnavailableError,
    RateLimitedError,
)
from smartchat.providers.llm.base import ChatProvider
from smartchat.providers.llm.tokenizer import Tokenizer, count_message_tokens, trim_messages_to_budget
from smartchat.services.resilience import CircuitBreaker, RetryPolicy, retry_async
from smartchat.services.telemetry import record_external_call


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CallParams:
    temperature: float
    max_tokens: int


@dataclass(frozen=True)
class GatewayConfig:
    max_context_tokens: int
    reserved_response_tokens: int
    retry: RetryPolicy
    query: CallParams
    classify: CallParams
    synthesis: CallParams
    suggestions: CallParams

    @classmethod
    def from_settings(cls, settings: Settings | None = None) -> "GatewayConfig":
        settings = settings or get_settings()
        return cls(
            max_context_tokens=settings.max_context_tokens,
            reserved_response_tokens=settings.reserved_response_tokens,
            retry=RetryPolicy(
                timeout_ms=settings.ext_call_timeout_ms,
                max_attempts=settings.ext_retry_max_attempts,
                backoff_ms=settings.ext_retry_backoff_ms,
            ),
            query=CallParams(settings.query_temperature, settings.query_max_tokens),
            classify=CallParams(settings.classify_temperature, settings.classify_max_tokens),
            synthesis=CallParams(settings.synthesis_temperature, settings.synthesis_max_tokens),
            suggestions=CallParams(settings.suggestion_temperature, settings.suggestion_max_tokens),
        )

    @property
    def input_budget(self) -> int:
        return self.max_context_tokens - self.reserved_response_tokens

    def params_for(self, purpose: str) -> CallParams:
        return getattr(self, purpose)


def _retryable(exc: Exception) -> bool:
    return isinstance(exc, (RateLimitedError, ProviderTimeoutError, ProviderUnavailableError, TimeoutError))


class ModelGateway:
    """Single entry point for model calls: budget, retries and breaker."""

    def __init__(
        self,
        provider: ChatProvider,
        tokenizer: Tokenizer,
        config: GatewayConfig,
        *,
        breaker: CircuitBreaker | None = None,
        sleep: Callable[[float], Awaitable[Any]] | None = None,
    ) -> None:
        self._provider = provider
        self._tokenizer = tokenizer
        self._config = config
        self._breaker = breaker
        self._sleep = sleep

    @property
    def config(self) -> GatewayConfig:
        return self._config

    def fit_to_budget(self, messages: list[dict[str, str]]) -> list[dict[str, str]]:
        # Leading system messages are pinned; the conversation tail is trimmed around them.
        pinned_count = 0
        while pinned_count < len(messages) and messages[pinned_count]["role"] == "system":
            pinned_count += 1
        pinned = messages[:pinned_count]
        tail = messages[pinned_count:]
        if not tail:
            return trim_messages_to_budget(pinned, self._config.input_budget, self._tokenizer)
        pinned_cost = count_message_tokens(pinned, self._tokenizer) - count_message_tokens([], self._tokenizer)
        trimmed = trim_messages_to_budget(tail, self._config.input_budget - pinned_cost, self._tokenizer)
        return pinned + trimmed

    async def _call(self, integration: str, func: Callable[[], Awaitable[Any]]) -> Any:
        if self._breaker is not None:
            await self._breaker.before_call()
        start = time.monotonic()
        try:
            kwargs: dict[str, Any] = {"policy": self._config.retry, "retryable": _retryable}
            if self._sleep is not None:
                kwargs["sleep"] = self._sleep
            result = await retry_async(func, **kwargs)
        except TimeoutError as exc:
            await self._record_failure(integration, start)
            raise ProviderTimeoutError("model call timed out") from exc
        except ProviderError:
            await self._record_failure(integration, start)
            raise
        if self._breaker is not None:
            await self._breaker.record_success()
        record_external_call(integration=integration, latency_ms=(time.monotonic() - start) * 1000.0, success=True)
        return result

    async def _record_failure(self, integration: str, start: float) -> None:
        if self._breaker is not None:
            await self._breaker.record_failure()
        record_external_call(integration=integration, latency_ms=(time.monotonic() - start) * 1000.0, success=False)

    async def complete(self, messages: list[dict[str, str]], *, purpose: str = "query") -> str:
        params = self._config.params_for(purpose)
        fitted = self.fit_to_budget(messages)
        max_tokens = min(params.max_tokens, self._config.reserved_response_tokens)
        logger.debug("model_complete purpose=%s messages=%d", purpose, len(fitted))

        async def _run() -> str:
            return await self._provider.chat(fitted, temperature=params.temperature, max_tokens=max_tokens)

        return await self._call(f"llm.{self._provider.name}.chat", _run)

    async def embed_batch(self, texts: list[str]) -> list[list[float]]:
        async def _run() -> list[list[float]]:
            return await self._provider.embed(texts)

        return await self._call(f"llm.{self._provider.name}.embed", _run)

    async def embed(self, text: str) -> list[float]:
        vectors = await self.embed_batch([text])
        return vectors[0]
