from __future__ import annotations

from smartchat.core.config import get_settings
from smartchat.core.errors import ConfigurationError
from smartchat.providers.llm.base import ChatProvider
from smartchat.providers.llm.fake import FakeChatProvider
from smartchat.providers.llm.openai_chat import OpenAIChatProvider
from smartchat.providers.llm.tokenizer import RatioTokenizer, TiktokenTokenizer, Tokenizer


def get_chat_provider() -> ChatProvider:
    settings = get_settings()
    provider = (settings.llm_provider or "openai").lower()

    if provider == "fake":
        return FakeChatProvider()
    if provider == "openai":
        return OpenAIChatProvider()
    raise ConfigurationError(f"unknown LLM_PROVIDER: {provider}")


def get_tokenizer() -> Tokenizer:
    settings = get_settings()
    backend = (settings.tokenizer_backend or "tiktoken").lower()

    if backend == "ratio":
        return RatioTokenizer(settings.token_estimator_ratio)
    if backend == "tiktoken":
        return TiktokenTokenizer(settings.openai_chat_model)
    raise ConfigurationError(f"unknown TOKENIZER_BACKEND: {backend}")
