from __future__ import annotations

from typing import Protocol


class ChatProvider(Protocol):
    name: str

    async def chat(self, messages: list[dict[str, str]], *, temperature: float, max_tokens: int) -> str:
        ...

    async def embed(self, texts: list[str]) -> list[list[float]]:
        ...
