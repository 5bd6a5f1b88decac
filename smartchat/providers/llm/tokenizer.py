from __future__ import annotations

import logging
from typing import Protocol

import tiktoken

from smartchat.core.errors import TokenBudgetError


logger = logging.getLogger(__name__)

# Chat framing cost per message and for priming the reply.
MESSAGE_OVERHEAD_TOKENS = 4
REPLY_PRIMING_TOKENS = 2


class Tokenizer(Protocol):
    def count(self, text: str) -> int:
        ...


class TiktokenTokenizer:
    def __init__(self, model: str) -> None:
        try:
            self._encoding = tiktoken.encoding_for_model(model)
        except KeyError:
            logger.info("tokenizer_model_unknown model=%s fallback=cl100k_base", model)
            self._encoding = tiktoken.get_encoding("cl100k_base")

    def count(self, text: str) -> int:
        return len(self._encoding.encode(text, disallowed_special=()))


class RatioTokenizer:
    def __init__(self, ratio: float = 4.0) -> None:
        self._ratio = ratio

    def count(self, text: str) -> int:
        # Deterministically estimate token counts when no encoder is available.
        if not text:
            return 0
        return max(1, int(len(text) / max(self._ratio, 0.1)))


def count_message_tokens(messages: list[dict[str, str]], tokenizer: Tokenizer) -> int:
    total = REPLY_PRIMING_TOKENS
    for message in messages:
        total += MESSAGE_OVERHEAD_TOKENS + tokenizer.count(message["content"])
    return total


def _truncate_to_fit(message: dict[str, str], budget: int, tokenizer: Tokenizer) -> dict[str, str]:
    # Longest content prefix whose framed cost stays within budget.
    content = message["content"]
    low, high = 0, len(content)
    while low < high:
        middle = (low + high + 1) // 2
        if MESSAGE_OVERHEAD_TOKENS + tokenizer.count(content[:middle]) <= budget:
            low = middle
        else:
            high = middle - 1
    return {**message, "content": content[:low]}


def trim_messages_to_budget(
    messages: list[dict[str, str]],
    budget: int,
    tokenizer: Tokenizer,
) -> list[dict[str, str]]:
    """Keep the newest messages that fit ``budget`` tokens, in original order.

    The last message is always kept, truncated if it alone is too large; earlier
    messages are added newest first until the next one would not fit.
    """
    if not messages:
        return []
    available = budget - REPLY_PRIMING_TOKENS
    if available <= MESSAGE_OVERHEAD_TOKENS:
        raise TokenBudgetError("token budget cannot hold a single message")
    last = messages[-1]
    last_cost = MESSAGE_OVERHEAD_TOKENS + tokenizer.count(last["content"])
    if last_cost > available:
        logger.info("token_budget_truncated_last_message budget=%d", budget)
        return [_truncate_to_fit(last, available, tokenizer)]
    kept = [last]
    used = last_cost
    for message in reversed(messages[:-1]):
        cost = MESSAGE_OVERHEAD_TOKENS + tokenizer.count(message["content"])
        if used + cost > available:
            break
        kept.append(message)
        used += cost
    kept.reverse()
    return kept
