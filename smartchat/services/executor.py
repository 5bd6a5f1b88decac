from __future__ import annotations

from datetime import date, datetime, time as dt_time, timedelta
from decimal import Decimal
import logging
from typing import Any
from uuid import UUID

from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncEngine
from sqlglot import exp

from smartchat.core.errors import ExecutionError
from smartchat.domain.chat import ResultSet
from smartchat.sql.ast import SelectStatement
from smartchat.sql.parser import parse_select, render
from smartchat.sql.validator import Accepted


logger = logging.getLogger(__name__)


def is_aggregate(statement: SelectStatement) -> bool:
    """True when the query returns one row per group rather than raw rows."""
    if not statement.items or any(item.is_star or item.windowed for item in statement.items):
        return False
    groups = set(statement.group_by)
    if not groups and not any(item.has_aggregate for item in statement.items):
        return False
    for position, item in enumerate(statement.items, start=1):
        if item.has_aggregate:
            continue
        if item.expression in groups or (item.alias and item.alias in groups) or str(position) in groups:
            continue
        return False
    return True


def apply_row_cap(statement: SelectStatement, row_cap: int) -> tuple[str, bool]:
    # Returns (sql, capped): capped is False when the query is trusted as-is.
    tree = statement.tree
    if is_aggregate(statement):
        return render(tree), False
    if statement.has_limit and statement.limit is not None and 0 <= statement.limit <= row_cap:
        if not statement.has_fetch:
            return render(tree), False
    if not statement.has_limit and not statement.has_offset and not statement.has_fetch:
        return render(tree.copy().limit(row_cap)), True
    capped = exp.select("*").from_(tree.copy().subquery("capped")).limit(row_cap)
    return render(capped), True


def to_json_value(value: Any) -> Any:
    if value is None or isinstance(value, (bool, int, float, str)):
        return value
    if isinstance(value, Decimal):
        return int(value) if value == value.to_integral_value() else float(value)
    if isinstance(value, (datetime, date, dt_time)):
        return value.isoformat()
    if isinstance(value, timedelta):
        return value.total_seconds()
    if isinstance(value, UUID):
        return str(value)
    if isinstance(value, (bytes, bytearray, memoryview)):
        return "<binary>"
    if isinstance(value, (list, tuple)):
        return [to_json_value(item) for item in value]
    if isinstance(value, dict):
        return {str(key): to_json_value(item) for key, item in value.items()}
    return str(value)


class QueryExecutor:
    def __init__(self, engine: AsyncEngine, *, row_cap: int = 100, statement_timeout_ms: int = 8000) -> None:
        self._engine = engine
        self._row_cap = row_cap
        self._statement_timeout_ms = statement_timeout_ms

    async def execute(self, verdict: Accepted) -> ResultSet:
        if not isinstance(verdict, Accepted):
            raise TypeError("only accepted queries can be executed")
        statement = parse_select(verdict.sql)
        sql, capped = apply_row_cap(statement, self._row_cap)
        # Colons are literal SQL here, never bind parameters.
        clause = text(sql.replace(":", "\\:"))
        try:
            async with self._engine.connect() as conn:
                if conn.dialect.name == "postgresql":
                    await conn.execute(text("SET TRANSACTION READ ONLY"))
                    await conn.execute(text(f"SET LOCAL statement_timeout = {int(self._statement_timeout_ms)}"))
                result = await conn.execute(clause)
                columns = list(result.keys())
                raw_rows = result.fetchall()
                await conn.rollback()
        except SQLAlchemyError as exc:
            logger.warning("query_execution_failed error=%s", type(exc).__name__)
            logger.debug("query_execution_failed sql=%s", sql)
            raise ExecutionError("query failed") from exc
        rows = [
            {column: to_json_value(value) for column, value in zip(columns, row)}
            for row in raw_rows
        ]
        logger.info("query_executed rows=%d capped=%s", len(rows), capped)
        return ResultSet(columns=columns, rows=rows, capped=capped and len(rows) >= self._row_cap)
