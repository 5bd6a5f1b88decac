from __future__ import annotations

import logging
from typing import Callable, Protocol
from uuid import uuid4

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from smartchat.domain.chat import ConversationTurn
from smartchat.domain.models import ChatLog


logger = logging.getLogger(__name__)


class ChatLogSink(Protocol):
    async def append(self, *, team_id: str, user_id: str, turns: list[ConversationTurn]) -> None:
        ...


async def add_chat_log(
    session: AsyncSession,
    *,
    team_id: str,
    user_id: str,
    turns: list[ConversationTurn],
) -> ChatLog:
    log = ChatLog(
        id=str(uuid4()),
        team_id=team_id,
        user_id=user_id,
        messages=[turn.as_message() for turn in turns],
    )
    session.add(log)
    await session.commit()
    return log


async def list_chat_logs(session: AsyncSession, *, team_id: str, user_id: str) -> list[ChatLog]:
    result = await session.execute(
        select(ChatLog)
        .where(ChatLog.team_id == team_id, ChatLog.user_id == user_id)
        .order_by(ChatLog.created_at)
    )
    return list(result.scalars().all())


class SqlChatLogSink:
    def __init__(self, session_factory: Callable[[], AsyncSession]) -> None:
        self._session_factory = session_factory

    async def append(self, *, team_id: str, user_id: str, turns: list[ConversationTurn]) -> None:
        # A lost transcript must not fail an answered turn.
        try:
            async with self._session_factory() as session:
                await add_chat_log(session, team_id=team_id, user_id=user_id, turns=turns)
        except SQLAlchemyError as exc:
            logger.warning("chat_log_write_failed team_id=%s error=%s", team_id, type(exc).__name__)
