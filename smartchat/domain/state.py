from __future__ import annotations

from typing import Any, Optional, TypedDict

from smartchat.domain.chat import (
    Caller,
    ChatReply,
    ConversationTurn,
    QueryIntent,
    ResultSet,
    SchemaDescriptor,
    TenantScope,
)
from smartchat.sql.validator import Accepted


class ChatState(TypedDict, total=False):
    caller: Caller
    turns: list[ConversationTurn]
    user_message: str
    intent_label: str
    scope: TenantScope
    schema: list[SchemaDescriptor]
    ranked: list[SchemaDescriptor]
    messages: list[dict[str, str]]
    raw_completion: str
    intent: QueryIntent
    verdict: Accepted
    result: ResultSet
    answer: str
    suggestions: list[str]
    outcome: str
    # Exception from a failed step, or the rejection reason from validation.
    error: Optional[Any]
    reply: ChatReply
    timings_ms: dict[str, Any]
