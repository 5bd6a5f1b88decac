from __future__ import annotations

import logging
import re

from smartchat.agent.prompts import build_suggestion_messages
from smartchat.core.errors import ProviderError
from smartchat.services.model_gateway import ModelGateway


logger = logging.getLogger(__name__)

FALLBACK_SUGGESTIONS = ("Can you elaborate?", "What else should I know about this?")
_NUMBERED_RE = re.compile(r"1\.\s*(.+?)\s*2\.\s*(.+)", re.DOTALL)


def parse_suggestions(raw: str) -> list[str] | None:
    match = _NUMBERED_RE.search(raw or "")
    if match is None:
        return None
    first = match.group(1).strip()
    # Anything after the second line (a stray "3." etc.) is dropped.
    second = match.group(2).strip().splitlines()[0].strip() if match.group(2).strip() else ""
    if not first or not second:
        return None
    return [first, second]


class SuggestionGenerator:
    def __init__(self, gateway: ModelGateway) -> None:
        self._gateway = gateway

    async def suggest(self, user_message: str, answer: str) -> list[str]:
        try:
            raw = await self._gateway.complete(build_suggestion_messages(user_message, answer), purpose="suggestions")
        except ProviderError as exc:
            logger.warning("suggestions_fallback error=%s", type(exc).__name__)
            return list(FALLBACK_SUGGESTIONS)
        parsed = parse_suggestions(raw)
        if parsed is None:
            logger.info("suggestions_fallback error=unparseable")
            return list(FALLBACK_SUGGESTIONS)
        return parsed
