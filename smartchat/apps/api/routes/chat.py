from __future__ import annotations

from datetime import datetime
import logging
from typing import Literal

from fastapi import APIRouter, Depends, Request
from pydantic import BaseModel, Field, field_validator

from smartchat.agent.graph import ChatPipeline
from smartchat.apps.api.deps import get_caller, get_chat_pipeline
from smartchat.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from smartchat.apps.api.response import SuccessEnvelope, success_response
from smartchat.core.config import get_settings
from smartchat.domain.chat import Caller, ConversationTurn


logger = logging.getLogger(__name__)
router = APIRouter(tags=["chat"], responses=DEFAULT_ERROR_RESPONSES)


class ChatMessageIn(BaseModel):
    role: Literal["user", "assistant", "system"]
    content: str = Field(min_length=1)
    timestamp: datetime | None = None
    message_id: str | None = Field(default=None, max_length=128)

    @field_validator("content")
    @classmethod
    def _content_limits(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("content must not be blank")
        if len(value) > get_settings().max_message_chars:
            raise ValueError("content is too long")
        return value


class ChatRequest(BaseModel):
    messages: list[ChatMessageIn] = Field(min_length=1)

    @field_validator("messages")
    @classmethod
    def _conversation_limits(cls, value: list[ChatMessageIn]) -> list[ChatMessageIn]:
        if len(value) > get_settings().max_conversation_turns:
            raise ValueError("too many messages")
        if not any(message.role == "user" for message in value):
            raise ValueError("at least one user message is required")
        return value


class ChatResponse(BaseModel):
    answer: str
    suggestions: list[str]


@router.post("/chat", response_model=SuccessEnvelope[ChatResponse])
async def chat(
    request: Request,
    body: ChatRequest,
    caller: Caller = Depends(get_caller),
    pipeline: ChatPipeline = Depends(get_chat_pipeline),
) -> dict:
    turns = [
        ConversationTurn(
            role=message.role,
            content=message.content,
            timestamp=message.timestamp,
            message_id=message.message_id,
        )
        for message in body.messages
    ]
    reply = await pipeline.run_turn(turns, caller)
    logger.info("chat_request team_id=%s outcome=%s", caller.team_id, reply.outcome)
    return success_response(request=request, data=ChatResponse(answer=reply.answer, suggestions=reply.suggestions))
