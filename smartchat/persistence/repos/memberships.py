from __future__ import annotations

import logging

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

from smartchat.domain.chat import is_valid_tenant_id


logger = logging.getLogger(__name__)


async def list_team_ids(session: AsyncSession, user_id: str) -> list[str]:
    # Membership rows come from the host application's team_members table.
    result = await session.execute(
        text("SELECT team_id FROM team_members WHERE user_id = :user_id"),
        {"user_id": user_id},
    )
    team_ids: list[str] = []
    for (team_id,) in result.all():
        value = str(team_id) if team_id is not None else ""
        if not is_valid_tenant_id(value):
            logger.warning("membership_team_id_invalid user_id=%s", user_id)
            continue
        if value not in team_ids:
            team_ids.append(value)
    return team_ids
