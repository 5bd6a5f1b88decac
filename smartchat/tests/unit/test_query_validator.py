from __future__ import annotations

import pytest

from smartchat.core.errors import (
    DisallowedTableError,
    MissingTenantScopeError,
    MultiStatementError,
    QuerySyntaxError,
    UnsafeOperationError,
    UnsupportedConstructError,
)
from smartchat.domain.chat import TenantScope
from smartchat.services.telemetry import counter_value
from smartchat.sql.parser import canonical, parse_select
from smartchat.sql.validator import Accepted, QueryValidator, Rejected
from smartchat.tests.utils.fakes import make_policy


T1 = TenantScope.of("T1")


@pytest.fixture
def validator() -> QueryValidator:
    return QueryValidator(make_policy())


def _accepted(verdict) -> Accepted:
    assert isinstance(verdict, Accepted), verdict
    return verdict


def _rejected(verdict) -> Rejected:
    assert isinstance(verdict, Rejected), verdict
    return verdict


def test_scoped_query_is_accepted_unchanged(validator: QueryValidator) -> None:
    sql = "SELECT p.name FROM projects p WHERE p.team_id = 'T1'"
    verdict = _accepted(validator.validate(sql, T1))
    assert verdict.sql == canonical(sql)
    assert verdict.rewritten is False


def test_trailing_semicolon_and_comment_are_dropped(validator: QueryValidator) -> None:
    verdict = _accepted(validator.validate("SELECT p.name FROM projects p WHERE p.team_id = 'T1'; -- done", T1))
    assert verdict.sql == canonical("SELECT p.name FROM projects p WHERE p.team_id = 'T1'")
    assert ";" not in verdict.sql
    assert "done" not in verdict.sql


def test_missing_filter_is_added_to_direct_tenant_table(validator: QueryValidator) -> None:
    verdict = _accepted(validator.validate("SELECT p.name FROM projects p", T1))
    assert verdict.rewritten is True
    assert verdict.sql == canonical("SELECT p.name FROM projects p WHERE p.team_id = 'T1'")
    assert counter_value("query_rewritten_total") == 1


def test_filter_is_appended_to_existing_where(validator: QueryValidator) -> None:
    verdict = _accepted(
        validator.validate("SELECT p.name FROM projects p WHERE p.status = 'active' ORDER BY p.name", T1)
    )
    assert verdict.sql == canonical(
        "SELECT p.name FROM projects p WHERE p.status = 'active' AND p.team_id = 'T1' ORDER BY p.name"
    )


def test_multi_team_scope_rewrites_to_in_list(validator: QueryValidator) -> None:
    verdict = _accepted(validator.validate("SELECT p.name FROM projects p", TenantScope.of("T1", "T2")))
    assert verdict.sql == canonical("SELECT p.name FROM projects p WHERE p.team_id IN ('T1', 'T2')")


def test_or_filter_is_parenthesized_before_scoping(validator: QueryValidator) -> None:
    sql = "SELECT p.name FROM projects p WHERE p.status = 'active' OR p.status = 'paused'"
    verdict = _accepted(validator.validate(sql, T1))
    assert verdict.rewritten is True
    assert verdict.sql == canonical(
        "SELECT p.name FROM projects p WHERE (p.status = 'active' OR p.status = 'paused') AND p.team_id = 'T1'"
    )


@pytest.mark.parametrize(
    "sql",
    [
        "SELECT name FROM projects WHERE team_id = 'T1' OR status = 'x'",
        "SELECT p.name FROM projects p WHERE p.team_id = 'T1' OR p.team_id = 'T2'",
        "SELECT p.name FROM projects p WHERE p.team_id IN ('T1', 'T2')",
        "SELECT p.name FROM projects p WHERE p.team_id <> 'T2'",
    ],
)
def test_failing_tenant_filter_is_rejected_not_rewritten(validator: QueryValidator, sql: str) -> None:
    verdict = _rejected(validator.validate(sql, T1))
    assert isinstance(verdict.reason, MissingTenantScopeError)
    assert counter_value("query_rewritten_total") == 0


def test_or_with_both_branches_in_scope_is_accepted(validator: QueryValidator) -> None:
    sql = "SELECT p.name FROM projects p WHERE p.team_id = 'T1' OR p.team_id = 'T2'"
    verdict = _accepted(validator.validate(sql, TenantScope.of("T1", "T2")))
    assert verdict.rewritten is False


def test_hop_table_gets_scope_join(validator: QueryValidator) -> None:
    verdict = _accepted(validator.validate("SELECT t.name FROM tasks t", T1))
    assert verdict.rewritten is True
    assert verdict.sql == canonical(
        "SELECT t.name FROM tasks t JOIN projects AS tenant_scope ON t.project_id = tenant_scope.id "
        "WHERE tenant_scope.team_id = 'T1'"
    )


def test_hop_rewrite_keeps_existing_filter(validator: QueryValidator) -> None:
    verdict = _accepted(validator.validate("SELECT t.name FROM tasks t WHERE t.name LIKE 'Fix%' LIMIT 5", T1))
    assert verdict.sql == canonical(
        "SELECT t.name FROM tasks t JOIN projects AS tenant_scope ON t.project_id = tenant_scope.id "
        "WHERE t.name LIKE 'Fix%' AND tenant_scope.team_id = 'T1' LIMIT 5"
    )


def test_hop_joined_to_scoped_table_is_accepted(validator: QueryValidator) -> None:
    sql = "SELECT t.name FROM tasks t JOIN projects p ON t.project_id = p.id WHERE p.team_id = 'T1'"
    verdict = _accepted(validator.validate(sql, T1))
    assert verdict.rewritten is False


def test_hop_linked_in_where_is_accepted(validator: QueryValidator) -> None:
    sql = (
        "SELECT t.name FROM tasks t JOIN projects p ON t.name = p.name "
        "WHERE p.team_id = 'T1' AND p.id = t.project_id"
    )
    verdict = _accepted(validator.validate(sql, T1))
    assert verdict.rewritten is False


def test_hop_joined_to_unscoped_table_scopes_that_table(validator: QueryValidator) -> None:
    verdict = _accepted(validator.validate("SELECT t.name FROM tasks t JOIN projects p ON t.project_id = p.id", T1))
    assert verdict.sql == canonical(
        "SELECT t.name FROM tasks t JOIN projects p ON t.project_id = p.id WHERE p.team_id = 'T1'"
    )


def test_self_join_scopes_every_occurrence(validator: QueryValidator) -> None:
    sql = "SELECT p2.name FROM projects p JOIN projects p2 ON p.status = p2.status WHERE p.team_id = 'T1'"
    verdict = _accepted(validator.validate(sql, T1))
    assert verdict.rewritten is True
    assert verdict.sql == canonical(
        "SELECT p2.name FROM projects p JOIN projects p2 ON p.status = p2.status "
        "WHERE p.team_id = 'T1' AND p2.team_id = 'T1'"
    )


def test_hop_joined_on_other_columns_gets_scope_join(validator: QueryValidator) -> None:
    sql = (
        "SELECT p.name FROM projects p JOIN tasks t ON p.status = t.name OR p.name = t.name "
        "WHERE p.team_id = 'T1'"
    )
    verdict = _accepted(validator.validate(sql, T1))
    assert verdict.rewritten is True
    assert verdict.sql == canonical(
        "SELECT p.name FROM projects p JOIN tasks t ON p.status = t.name OR p.name = t.name "
        "JOIN projects AS tenant_scope ON t.project_id = tenant_scope.id "
        "WHERE p.team_id = 'T1' AND tenant_scope.team_id = 'T1'"
    )


def test_hop_equality_to_wrong_column_gets_scope_join(validator: QueryValidator) -> None:
    sql = "SELECT t.name FROM tasks t JOIN projects p ON t.project_id = p.name WHERE p.team_id = 'T1'"
    verdict = _accepted(validator.validate(sql, T1))
    assert "tenant_scope.team_id = 'T1'" in verdict.sql


def test_scope_alias_avoids_existing_names(validator: QueryValidator) -> None:
    verdict = _accepted(validator.validate("SELECT tenant_scope.name FROM tasks tenant_scope", T1))
    assert verdict.sql == canonical(
        "SELECT tenant_scope.name FROM tasks tenant_scope "
        "JOIN projects AS tenant_scope_2 ON tenant_scope.project_id = tenant_scope_2.id "
        "WHERE tenant_scope_2.team_id = 'T1'"
    )


@pytest.mark.parametrize(
    "sql",
    [
        "SELECT p.name FROM projects p WHERE p.team_id = 'T1'",
        "SELECT p.name FROM projects p",
        "SELECT t.name FROM tasks t",
        "SELECT p.name FROM projects p WHERE p.status = 'active' OR p.status = 'paused'",
        "SELECT p2.name FROM projects p JOIN projects p2 ON p.status = p2.status WHERE p.team_id = 'T1'",
    ],
)
def test_validation_is_idempotent(validator: QueryValidator, sql: str) -> None:
    first = _accepted(validator.validate(sql, T1))
    second = _accepted(validator.validate(first.sql, T1))
    assert second.sql == first.sql
    assert second.rewritten is False


def test_every_tenant_table_gets_its_own_filter(validator: QueryValidator) -> None:
    sql = "SELECT p.name FROM projects p JOIN team_members tm ON tm.team_id = p.team_id"
    verdict = _accepted(validator.validate(sql, T1))
    assert verdict.sql == canonical(
        "SELECT p.name FROM projects p JOIN team_members tm ON tm.team_id = p.team_id "
        "WHERE p.team_id = 'T1' AND tm.team_id = 'T1'"
    )


def test_unqualified_filter_with_two_tenant_tables_is_rejected(validator: QueryValidator) -> None:
    sql = "SELECT p.name FROM projects p JOIN team_members tm ON tm.team_id = p.team_id WHERE team_id = 'T1'"
    verdict = _rejected(validator.validate(sql, T1))
    assert isinstance(verdict.reason, MissingTenantScopeError)


def test_query_without_tables_is_rejected(validator: QueryValidator) -> None:
    verdict = _rejected(validator.validate("SELECT 1", T1))
    assert isinstance(verdict.reason, MissingTenantScopeError)


def test_disallowed_table_is_named(validator: QueryValidator) -> None:
    verdict = _rejected(validator.validate("SELECT * FROM secrets WHERE team_id = 'T1'", T1))
    assert isinstance(verdict.reason, DisallowedTableError)
    assert verdict.reason.table == "secrets"
    assert counter_value("query_rejected_total.disallowed_table") == 1


def test_disallowed_join_table_is_rejected(validator: QueryValidator) -> None:
    sql = "SELECT p.name FROM projects p JOIN invoices i ON i.project_id = p.id WHERE p.team_id = 'T1'"
    verdict = _rejected(validator.validate(sql, T1))
    assert isinstance(verdict.reason, DisallowedTableError)
    assert verdict.reason.table == "invoices"


def test_foreign_schema_is_rejected(validator: QueryValidator) -> None:
    verdict = _rejected(validator.validate("SELECT * FROM pg_catalog.pg_user", T1))
    assert isinstance(verdict.reason, DisallowedTableError)


def test_multiple_statements_are_rejected(validator: QueryValidator) -> None:
    verdict = _rejected(validator.validate("SELECT 1; DROP TABLE projects", T1))
    assert isinstance(verdict.reason, MultiStatementError)


@pytest.mark.parametrize(
    "sql",
    [
        "DELETE FROM projects WHERE team_id = 'T1'",
        "UPDATE projects SET name = 'x' WHERE team_id = 'T1'",
        "SELECT name INTO backup_projects FROM projects WHERE team_id = 'T1'",
        "SELECT p.name FROM projects p WHERE p.team_id = 'T1' FOR UPDATE",
        "SELECT pg_sleep(10) FROM projects p WHERE p.team_id = 'T1'",
    ],
)
def test_unsafe_operations_are_rejected(validator: QueryValidator, sql: str) -> None:
    verdict = _rejected(validator.validate(sql, T1))
    assert isinstance(verdict.reason, UnsafeOperationError)


def test_modifying_keyword_inside_string_is_rejected(validator: QueryValidator) -> None:
    sql = "SELECT p.name FROM projects p WHERE p.team_id = 'T1' AND p.name = 'delete me'"
    verdict = _rejected(validator.validate(sql, T1))
    assert isinstance(verdict.reason, UnsafeOperationError)


@pytest.mark.parametrize(
    "sql",
    [
        "SELECT p.name FROM projects p WHERE p.team_id = 'T1' AND p.id IN (SELECT project_id FROM tasks)",
        "SELECT name FROM projects WHERE team_id = 'T1' UNION SELECT name FROM users",
        "SELECT p.name FROM projects p, tasks t WHERE p.team_id = 'T1'",
        "SELECT p.name FROM projects p JOIN tasks t ON true WHERE p.team_id = 'T1'",
    ],
)
def test_unsupported_constructs_are_rejected(validator: QueryValidator, sql: str) -> None:
    verdict = _rejected(validator.validate(sql, T1))
    assert isinstance(verdict.reason, UnsupportedConstructError)


@pytest.mark.parametrize("sql", ["", "  ;  ", "-- nothing here"])
def test_empty_query_is_a_syntax_error(validator: QueryValidator, sql: str) -> None:
    verdict = _rejected(validator.validate(sql, T1))
    assert isinstance(verdict.reason, QuerySyntaxError)


@pytest.mark.parametrize(
    ("where", "expected"),
    [
        ("p.team_id = 'T1'", True),
        ("'T1' = p.team_id", True),
        ("p.team_id = 'T2'", False),
        ("p.team_id IN ('T1')", True),
        ("p.team_id IN ('T1', 'T2')", False),
        ("p.team_id NOT IN ('T2')", False),
        ("p.status = 'active' AND p.team_id = 'T1'", True),
        ("p.status = 'active' OR p.team_id = 'T1'", False),
        ("(p.team_id = 'T1' OR p.status = 'x') AND p.team_id = 'T1'", True),
        ("NOT p.team_id = 'T2'", False),
        ("p.team_id <> 'T2'", False),
        ("p.team_id = p.team_id", False),
    ],
)
def test_scoped_predicate(validator: QueryValidator, where: str, expected: bool) -> None:
    statement = parse_select(f"SELECT p.name FROM projects p WHERE {where}")
    assert validator.scoped(statement.where, T1) is expected


def test_scoped_without_where_is_false(validator: QueryValidator) -> None:
    assert validator.scoped(None, T1) is False


def test_common_table_expression_is_rejected(validator: QueryValidator) -> None:
    verdict = _rejected(validator.validate("WITH x AS (SELECT 1) SELECT * FROM x", T1))
    assert isinstance(verdict.reason, (UnsupportedConstructError, UnsafeOperationError))
