from __future__ import annotations

from datetime import date
from decimal import Decimal
from uuid import UUID

import pytest
import sqlglot

from smartchat.core.errors import ExecutionError, MissingTenantScopeError
from smartchat.domain.chat import TenantScope
from smartchat.services.executor import QueryExecutor, apply_row_cap, is_aggregate, to_json_value
from smartchat.sql.parser import canonical, parse_select, render
from smartchat.sql.validator import Accepted, QueryValidator, Rejected
from smartchat.tests.utils.fakes import create_workspace_engine, make_policy


def _postgres(sql: str) -> str:
    # Rendering without validation: capped queries wrap the original in a subquery.
    return render(sqlglot.parse_one(sql, read="postgres"))


def _cap(sql: str, row_cap: int = 100) -> tuple[str, bool]:
    return apply_row_cap(parse_select(sql), row_cap)


def test_row_cap_appends_limit() -> None:
    assert _cap("SELECT p.name FROM projects p") == (canonical("SELECT p.name FROM projects p LIMIT 100"), True)


def test_row_cap_trusts_small_limit() -> None:
    sql = "SELECT p.name FROM projects p LIMIT 5"
    assert _cap(sql) == (canonical(sql), False)


def test_row_cap_wraps_large_limit() -> None:
    sql = "SELECT p.name FROM projects p LIMIT 500"
    assert _cap(sql) == (_postgres(f"SELECT * FROM ({sql}) AS capped LIMIT 100"), True)


def test_row_cap_wraps_offset_without_limit() -> None:
    sql = "SELECT p.name FROM projects p OFFSET 10"
    assert _cap(sql) == (_postgres(f"SELECT * FROM ({sql}) AS capped LIMIT 100"), True)


@pytest.mark.parametrize(
    ("sql", "expected"),
    [
        ("SELECT COUNT(*) FROM projects", True),
        ("SELECT p.status, COUNT(*) AS total FROM projects p GROUP BY p.status", True),
        ("SELECT p.name, COUNT(*) FROM projects p GROUP BY p.status", False),
        ("SELECT p.name FROM projects p", False),
        ("SELECT * FROM projects", False),
        ("SELECT p.status FROM projects p GROUP BY p.status", True),
    ],
)
def test_is_aggregate(sql: str, expected: bool) -> None:
    assert is_aggregate(parse_select(sql)) is expected


def test_aggregates_are_not_capped() -> None:
    assert _cap("SELECT COUNT(*) FROM projects") == (canonical("SELECT COUNT(*) FROM projects"), False)


def test_to_json_value() -> None:
    assert to_json_value(Decimal("3")) == 3
    assert to_json_value(Decimal("2.5")) == 2.5
    assert to_json_value(date(2024, 1, 2)) == "2024-01-02"
    assert to_json_value(UUID("12345678-1234-5678-1234-567812345678")) == "12345678-1234-5678-1234-567812345678"
    assert to_json_value(b"\x00") == "<binary>"
    assert to_json_value([Decimal("1"), None]) == [1, None]


@pytest.mark.asyncio
async def test_execute_returns_rows_as_dicts(tmp_path) -> None:
    engine = await create_workspace_engine(tmp_path / "workspace.db")
    try:
        executor = QueryExecutor(engine, row_cap=100)
        result = await executor.execute(
            Accepted("SELECT p.name, p.status FROM projects p WHERE p.team_id = 'T1' ORDER BY p.name")
        )
    finally:
        await engine.dispose()
    assert result.columns == ["name", "status"]
    assert result.rows == [{"name": "Mobile", "status": "active"}, {"name": "Website", "status": "active"}]
    assert result.capped is False


@pytest.mark.asyncio
async def test_execute_applies_row_cap(tmp_path) -> None:
    engine = await create_workspace_engine(tmp_path / "workspace.db")
    try:
        executor = QueryExecutor(engine, row_cap=1)
        result = await executor.execute(Accepted("SELECT t.name FROM tasks t ORDER BY t.name"))
    finally:
        await engine.dispose()
    assert len(result.rows) == 1
    assert result.capped is True


@pytest.mark.asyncio
async def test_execute_runs_rewritten_hop_query(tmp_path) -> None:
    verdict = QueryValidator(make_policy()).validate("SELECT t.name FROM tasks t ORDER BY t.name", TenantScope.of("T1"))
    assert isinstance(verdict, Accepted)
    engine = await create_workspace_engine(tmp_path / "workspace.db")
    try:
        result = await QueryExecutor(engine).execute(verdict)
    finally:
        await engine.dispose()
    assert [row["name"] for row in result.rows] == ["Fix login", "Launch", "Write copy"]


@pytest.mark.asyncio
async def test_execute_wraps_database_errors(tmp_path) -> None:
    engine = await create_workspace_engine(tmp_path / "workspace.db")
    try:
        with pytest.raises(ExecutionError):
            await QueryExecutor(engine).execute(Accepted("SELECT p.missing FROM projects p"))
    finally:
        await engine.dispose()


@pytest.mark.asyncio
async def test_execute_refuses_rejected_verdicts(tmp_path) -> None:
    engine = await create_workspace_engine(tmp_path / "workspace.db")
    try:
        with pytest.raises(TypeError):
            await QueryExecutor(engine).execute(Rejected(MissingTenantScopeError("no scope")))
    finally:
        await engine.dispose()


@pytest.mark.asyncio
async def test_execute_self_join_only_returns_own_team_rows(tmp_path) -> None:
    # The second projects occurrence is filtered on its own tenant column.
    verdict = QueryValidator(make_policy()).validate(
        "SELECT DISTINCT p2.name FROM projects p JOIN projects p2 ON p.status = p2.status "
        "WHERE p.team_id = 'T1' ORDER BY p2.name",
        TenantScope.of("T1"),
    )
    assert isinstance(verdict, Accepted)
    assert verdict.rewritten is True
    engine = await create_workspace_engine(tmp_path / "workspace.db")
    try:
        result = await QueryExecutor(engine).execute(verdict)
    finally:
        await engine.dispose()
    assert [row["name"] for row in result.rows] == ["Mobile", "Website"]
