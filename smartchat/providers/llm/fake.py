from __future__ import annotations

from collections import deque
import json
from typing import Callable, Iterable, Union

from smartchat.providers.llm.embeddings import embed_text


Reply = Union[str, Exception]
Responder = Callable[[list[dict[str, str]]], Reply]


class FakeChatProvider:
    """Deterministic provider for local runs and tests.

    Replies are taken from ``script`` in order; once it is exhausted the
    ``responder`` (if any) or the default reply is used. Scripted exceptions
    are raised instead of returned.
    """

    name = "fake"

    def __init__(
        self,
        script: Iterable[Reply] = (),
        *,
        responder: Responder | None = None,
        default: str | None = None,
    ) -> None:
        self._script: deque[Reply] = deque(script)
        self._responder = responder
        self._default = default or json.dumps(
            {"summary": "This is a fake response.", "query": "", "is_query": False}
        )
        self.calls: list[dict] = []
        self.embed_calls = 0

    async def chat(self, messages: list[dict[str, str]], *, temperature: float, max_tokens: int) -> str:
        self.calls.append({"messages": messages, "temperature": temperature, "max_tokens": max_tokens})
        if self._script:
            reply = self._script.popleft()
        elif self._responder is not None:
            reply = self._responder(messages)
        else:
            reply = self._default
        if isinstance(reply, Exception):
            raise reply
        return reply

    async def embed(self, texts: list[str]) -> list[list[float]]:
        self.embed_calls += 1
        return [embed_text(text) for text in texts]
