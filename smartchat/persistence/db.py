from __future__ import annotations

from contextlib import asynccontextmanager
from typing import Any

from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine

from smartchat.core.config import get_settings


def _engine_kwargs(url: str) -> dict[str, Any]:
    settings = get_settings()
    kwargs: dict[str, Any] = {"pool_pre_ping": True}
    # Configure bounded asyncpg pools for predictable latency under load.
    if not url.startswith("sqlite"):
        kwargs["pool_size"] = max(1, int(settings.api_db_pool_size))
        kwargs["max_overflow"] = max(0, int(settings.api_db_max_overflow))
        kwargs["pool_timeout"] = 30
        kwargs["pool_recycle"] = 1800
    return kwargs


settings = get_settings()
engine = create_async_engine(settings.database_url, **_engine_kwargs(settings.database_url))
SessionLocal = async_sessionmaker(engine, expire_on_commit=False)

_query_url = settings.effective_query_database_url()
# Generated SQL runs on its own pool so a read-only role can be used.
query_engine: AsyncEngine = (
    engine if _query_url == settings.database_url else create_async_engine(_query_url, **_engine_kwargs(_query_url))
)


@asynccontextmanager
async def get_session() -> AsyncSession:
    async with SessionLocal() as session:
        yield session
