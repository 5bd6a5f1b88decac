from __future__ import annotations

import logging
import time
from typing import Any, Callable, Iterable

from sqlalchemy import inspect
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncEngine

from smartchat.core.errors import ConfigurationError
from smartchat.domain.chat import ColumnDescriptor, ForeignKeyRef, SchemaDescriptor


logger = logging.getLogger(__name__)


def table_alias(table: str, taken: set[str]) -> str:
    # Initials of the snake_case parts: task_comments -> tc, tasks -> t.
    base = "".join(part[0] for part in table.split("_") if part) or "t"
    alias = base
    suffix = 2
    while alias in taken:
        alias = f"{base}{suffix}"
        suffix += 1
    taken.add(alias)
    return alias


def _introspect_table(sync_conn: Any, table: str) -> list[tuple[str, str, ForeignKeyRef | None]]:
    inspector = inspect(sync_conn)
    references: dict[str, ForeignKeyRef] = {}
    for fk in inspector.get_foreign_keys(table):
        target = fk.get("referred_table")
        for local, remote in zip(fk.get("constrained_columns") or [], fk.get("referred_columns") or []):
            if target:
                references[local] = ForeignKeyRef(table=target, column=remote)
    columns = []
    for column in inspector.get_columns(table):
        name = column["name"]
        columns.append((name, str(column["type"]).lower(), references.get(name)))
    return columns


class SchemaCatalog:
    """Allow-listed table descriptors, introspected lazily and cached for ``ttl_s``."""

    def __init__(
        self,
        engine: AsyncEngine,
        allowed_tables: Iterable[str],
        *,
        ttl_s: int = 600,
        clock: Callable[[], float] | None = None,
    ) -> None:
        self._engine = engine
        self._allowed_tables = list(dict.fromkeys(allowed_tables))
        self._ttl_s = ttl_s
        self._clock = clock or time.monotonic
        self._cached: list[SchemaDescriptor] | None = None
        self._loaded_at: float | None = None

    def invalidate(self) -> None:
        self._cached = None
        self._loaded_at = None

    def _fresh(self) -> bool:
        return (
            self._cached is not None
            and self._loaded_at is not None
            and (self._clock() - self._loaded_at) < self._ttl_s
        )

    async def get_schema(self) -> list[SchemaDescriptor]:
        if self._fresh():
            return list(self._cached or [])
        # Concurrent refreshes are idempotent; the last writer wins.
        descriptors = await self._load()
        if not descriptors:
            raise ConfigurationError("no allow-listed tables could be introspected")
        self._cached = descriptors
        self._loaded_at = self._clock()
        logger.info("schema_catalog_refreshed tables=%d", len(descriptors))
        return list(descriptors)

    async def _load(self) -> list[SchemaDescriptor]:
        descriptors: list[SchemaDescriptor] = []
        taken: set[str] = set()
        async with self._engine.connect() as conn:
            for table in self._allowed_tables:
                try:
                    columns = await conn.run_sync(_introspect_table, table)
                except SQLAlchemyError as exc:
                    logger.warning("schema_table_skipped table=%s error=%s", table, type(exc).__name__)
                    continue
                if not columns:
                    logger.warning("schema_table_skipped table=%s error=no_columns", table)
                    continue
                descriptors.append(
                    SchemaDescriptor(
                        table=table,
                        alias=table_alias(table, taken),
                        columns=tuple(
                            ColumnDescriptor(name=name, type=type_name, references=ref)
                            for name, type_name, ref in columns
                        ),
                    )
                )
        return descriptors
