from __future__ import annotations

import logging
from typing import Any

import httpx

from smartchat.core.config import get_settings
from smartchat.core.errors import (
    MalformedResponseError,
    ProviderAuthError,
    ProviderError,
    ProviderTimeoutError,
    ProviderUnavailableError,
    RateLimitedError,
)


logger = logging.getLogger(__name__)


def _error_for_status(status_code: int) -> ProviderError:
    if status_code == 429:
        error: ProviderError = RateLimitedError("OpenAI rate limited the request.")
    elif status_code in {401, 403}:
        error = ProviderAuthError("OpenAI auth error: check OPENAI_API_KEY.")
    elif status_code >= 500:
        error = ProviderUnavailableError(f"OpenAI error: {status_code}")
    else:
        error = ProviderError(f"OpenAI error: {status_code}")
    setattr(error, "status_code", status_code)
    return error


class OpenAIChatProvider:
    name = "openai"

    def __init__(self, client: httpx.AsyncClient | None = None) -> None:
        self._settings = get_settings()
        self._client = client

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is not None:
            return self._client
        # Reuse a single client per provider for connection pooling.
        timeout_s = self._settings.ext_call_timeout_ms / 1000.0
        self._client = httpx.AsyncClient(base_url=self._settings.openai_base_url, timeout=timeout_s)
        return self._client

    def _headers(self) -> dict[str, str]:
        api_key = self._settings.openai_api_key
        if not api_key:
            raise ProviderAuthError("OPENAI_API_KEY is required for the OpenAI provider")
        return {"Authorization": f"Bearer {api_key}"}

    async def _post(self, path: str, payload: dict[str, Any]) -> dict[str, Any]:
        client = self._get_client()
        try:
            response = await client.post(path, json=payload, headers=self._headers())
        except httpx.TimeoutException as exc:
            raise ProviderTimeoutError("OpenAI request timed out.") from exc
        except httpx.HTTPError as exc:
            raise ProviderUnavailableError("OpenAI request failed.") from exc
        if response.status_code >= 400:
            logger.warning("openai_error path=%s status=%s", path, response.status_code)
            raise _error_for_status(response.status_code)
        try:
            body = response.json()
        except ValueError as exc:
            raise MalformedResponseError("OpenAI returned a non-JSON body.") from exc
        if not isinstance(body, dict):
            raise MalformedResponseError("OpenAI returned an unexpected body.")
        return body

    async def chat(self, messages: list[dict[str, str]], *, temperature: float, max_tokens: int) -> str:
        body = await self._post(
            "/chat/completions",
            {
                "model": self._settings.openai_chat_model,
                "messages": messages,
                "temperature": temperature,
                "max_tokens": max_tokens,
            },
        )
        try:
            content = body["choices"][0]["message"]["content"]
        except (KeyError, IndexError, TypeError) as exc:
            raise MalformedResponseError("OpenAI completion missing choices.") from exc
        if not isinstance(content, str):
            raise MalformedResponseError("OpenAI completion content is not text.")
        return content

    async def embed(self, texts: list[str]) -> list[list[float]]:
        if not texts:
            return []
        body = await self._post(
            "/embeddings",
            {"model": self._settings.openai_embedding_model, "input": texts},
        )
        try:
            data = sorted(body["data"], key=lambda item: item["index"])
            vectors = [list(map(float, item["embedding"])) for item in data]
        except (KeyError, TypeError, ValueError) as exc:
            raise MalformedResponseError("OpenAI embeddings payload malformed.") from exc
        if len(vectors) != len(texts):
            raise MalformedResponseError("OpenAI returned the wrong number of embeddings.")
        return vectors
