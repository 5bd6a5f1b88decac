from __future__ import annotations

from dataclasses import dataclass, field
import logging
import re
from typing import Callable, Iterator, Mapping, Optional, Union

from sqlglot import exp

from smartchat.core.config import Settings
from smartchat.core.errors import (
    DisallowedTableError,
    MissingTenantScopeError,
    UnsafeOperationError,
    UnsupportedConstructError,
    ValidationError,
)
from smartchat.domain.chat import TenantScope
from smartchat.services.telemetry import increment_counter
from smartchat.sql.ast import (
    BinaryExpr,
    ColumnRef,
    Expr,
    InList,
    Literal,
    SelectStatement,
    TableRef,
    iter_conjuncts,
    iter_joins,
    iter_tables,
)
from smartchat.sql.parser import parse_select, render


logger = logging.getLogger(__name__)

# Matched against the rendered, comment-free text, string literals included.
_UNSAFE_VERB_RE = re.compile(
    r"\b(insert|update|delete|drop|alter|create|truncate|grant|revoke|merge|copy|vacuum)\b",
    re.IGNORECASE,
)
# Functions with side effects, server file/network access, or dynamic SQL.
_DENIED_FUNCTION_RE = re.compile(
    r"^(pg_|lo_|dblink|query_to_|.*_to_xml|txid_|set_config$|current_setting$|nextval$|setval$|currval$|ts_stat$)"
)
_SCOPE_ALIAS = "tenant_scope"

ColumnMatcher = Callable[[Expr], bool]


@dataclass(frozen=True)
class TenantHop:
    column: str
    target_table: str
    target_column: str


@dataclass(frozen=True)
class TenantPolicy:
    allowed_tables: frozenset[str]
    tenant_column: str = "team_id"
    tenant_tables: frozenset[str] = frozenset()
    hops: Mapping[str, TenantHop] = field(default_factory=dict)
    allowed_schemas: frozenset[str] = frozenset({"public"})

    @classmethod
    def from_settings(cls, settings: Settings) -> "TenantPolicy":
        return cls(
            allowed_tables=frozenset(settings.allowed_table_list()),
            tenant_column=settings.tenant_column,
            tenant_tables=frozenset(settings.tenant_table_list()),
            hops={
                table: TenantHop(column=column, target_table=target, target_column=target_column)
                for table, (column, target, target_column) in settings.tenant_hops().items()
            },
            allowed_schemas=frozenset(settings.allowed_schema_list()),
        )


@dataclass(frozen=True)
class Accepted:
    """A query cleared for execution.

    ``sql`` is the canonical PostgreSQL rendering of the accepted statement:
    comments and trailing semicolons are gone and table aliases carry ``AS``.
    Validating it again yields the identical string.
    """

    sql: str
    rewritten: bool = False


@dataclass(frozen=True)
class Rejected:
    reason: ValidationError


ValidationVerdict = Union[Accepted, Rejected]


class QueryValidator:
    """Gate between model-written SQL and the database.

    A query is accepted only when it is a single plain SELECT over allow-listed
    tables in which every occurrence of a tenant-carrying table is restricted
    to the caller's tenants: directly by a WHERE filter on that occurrence, or,
    for tables one hop away, by an equality join to such a filtered occurrence.
    Missing restrictions are added when the WHERE clause does not already
    filter that occurrence's tenant column; the rewrite is then validated
    again from scratch.
    """

    def __init__(self, policy: TenantPolicy) -> None:
        self._policy = policy

    @property
    def policy(self) -> TenantPolicy:
        return self._policy

    def validate(self, sql: str, scope: TenantScope) -> ValidationVerdict:
        try:
            text, rewritten = self._validate(sql, scope, allow_rewrite=True)
        except ValidationError as exc:
            logger.info("query_rejected reason=%s", exc.reason)
            increment_counter(f"query_rejected_total.{exc.reason}")
            return Rejected(exc)
        if rewritten:
            increment_counter("query_rewritten_total")
            logger.info("query_rewritten tenants=%d", len(scope.ids))
        return Accepted(text, rewritten=rewritten)

    def _validate(self, sql: str, scope: TenantScope, *, allow_rewrite: bool) -> tuple[str, bool]:
        statement = parse_select(sql)
        text = render(statement.tree)
        if _UNSAFE_VERB_RE.search(text):
            raise UnsafeOperationError("data-modifying keyword")
        for name in statement.functions:
            if _DENIED_FUNCTION_RE.match(name):
                raise UnsafeOperationError(f"function not allowed: {name}")
        self._check_tables(statement)
        self._check_joins(statement)

        if self._fully_scoped(statement, scope):
            return text, False
        if not allow_rewrite:
            raise MissingTenantScopeError("query is not restricted to the caller's teams")
        self._rewrite(statement, scope)
        rewritten = render(statement.tree)
        logger.debug("query_rewrite_candidate sql=%s", rewritten)
        validated, _ = self._validate(rewritten, scope, allow_rewrite=False)
        return validated, True

    def _check_tables(self, statement: SelectStatement) -> None:
        for table in iter_tables(statement):
            if table.schema is not None and table.schema not in self._policy.allowed_schemas:
                raise DisallowedTableError(f"{table.schema}.{table.name}")
            if table.name not in self._policy.allowed_tables:
                raise DisallowedTableError(table.name)

    def _check_joins(self, statement: SelectStatement) -> None:
        for join in iter_joins(statement):
            if join.using:
                continue
            if not _has_column_equality(join.condition):
                raise UnsupportedConstructError("join without a column equality")

    # -- tenant scope --------------------------------------------------

    def _is_tenant_column(self, expr: Expr) -> bool:
        return isinstance(expr, ColumnRef) and expr.name == self._policy.tenant_column

    def _is_unqualified_tenant(self, expr: Expr) -> bool:
        return self._is_tenant_column(expr) and expr.qualifier is None

    @staticmethod
    def _in_scope(expr: Expr, scope: TenantScope) -> bool:
        return isinstance(expr, Literal) and expr.kind == "string" and expr.value in scope

    def scoped(self, expr: Optional[Expr], scope: TenantScope) -> bool:
        """True when every row passing ``expr`` has a tenant column value in ``scope``."""
        return self._scoped(expr, scope, self._is_tenant_column)

    def _scoped(self, expr: Optional[Expr], scope: TenantScope, is_tenant: ColumnMatcher) -> bool:
        if expr is None:
            return False
        if isinstance(expr, BinaryExpr):
            if expr.op == "AND":
                return self._scoped(expr.left, scope, is_tenant) or self._scoped(expr.right, scope, is_tenant)
            if expr.op == "OR":
                return self._scoped(expr.left, scope, is_tenant) and self._scoped(expr.right, scope, is_tenant)
            if expr.op == "=":
                return (is_tenant(expr.left) and self._in_scope(expr.right, scope)) or (
                    is_tenant(expr.right) and self._in_scope(expr.left, scope)
                )
            return False
        if isinstance(expr, InList):
            # Every listed id must be in scope; an empty or negated list never is.
            return (
                not expr.negated
                and is_tenant(expr.operand)
                and bool(expr.items)
                and all(self._in_scope(item, scope) for item in expr.items)
            )
        return False

    def _tenant_column_of(self, table: TableRef, direct: list[TableRef]) -> ColumnMatcher:
        # An unqualified tenant column belongs to the only tenant table in the query.
        def matches(expr: Expr) -> bool:
            if not isinstance(expr, ColumnRef) or expr.name != self._policy.tenant_column:
                return False
            if expr.qualifier is None:
                return len(direct) == 1 and direct[0] is table
            return expr.qualifier == table.reference

        return matches

    def _split_tables(self, statement: SelectStatement) -> tuple[list[TableRef], list[TableRef]]:
        direct: list[TableRef] = []
        hopped: list[TableRef] = []
        for table in iter_tables(statement):
            if table.name in self._policy.tenant_tables:
                direct.append(table)
            elif table.name in self._policy.hops:
                hopped.append(table)
        if not direct and not hopped:
            raise MissingTenantScopeError("no table in the query carries a tenant")
        return direct, hopped

    def _is_linked(self, statement: SelectStatement, table: TableRef, anchors: list[TableRef]) -> bool:
        # A hop table is covered by an equality from its link column to a scoped target occurrence.
        hop = self._policy.hops[table.name]
        targets = {anchor.reference for anchor in anchors if anchor.name == hop.target_table}
        for left, right in _column_equalities(statement):
            for source, target in ((left, right), (right, left)):
                if (
                    source.qualifier == table.reference
                    and source.name == hop.column
                    and target.qualifier in targets
                    and target.name == hop.target_column
                ):
                    return True
        return False

    def _fully_scoped(self, statement: SelectStatement, scope: TenantScope) -> bool:
        direct, hopped = self._split_tables(statement)
        anchors = [
            table
            for table in direct
            if self._scoped(statement.where, scope, self._tenant_column_of(table, direct))
        ]
        if len(anchors) != len(direct):
            return False
        return all(self._is_linked(statement, table, anchors) for table in hopped)

    def _predicate(self, reference: exp.Identifier, scope: TenantScope) -> exp.Expression:
        column = exp.Column(this=exp.to_identifier(self._policy.tenant_column), table=reference)
        if len(scope.ids) == 1:
            return exp.EQ(this=column, expression=exp.Literal.string(scope.ids[0]))
        return exp.In(this=column, expressions=[exp.Literal.string(tenant_id) for tenant_id in scope.ids])

    def _rewrite(self, statement: SelectStatement, scope: TenantScope) -> None:
        direct, hopped = self._split_tables(statement)
        predicates: list[exp.Expression] = []
        for table in direct:
            is_tenant = self._tenant_column_of(table, direct)
            if self._scoped(statement.where, scope, is_tenant):
                continue
            if _mentions(statement.where, lambda expr: is_tenant(expr) or self._is_unqualified_tenant(expr)):
                # An existing tenant filter that fails the check is never patched over.
                raise MissingTenantScopeError("tenant filter does not restrict every row")
            predicates.append(self._predicate(_reference_identifier(table), scope))

        # Every direct occurrence is filtered once the predicates land.
        taken = {table.reference for table in iter_tables(statement)}
        for table in hopped:
            if self._is_linked(statement, table, direct):
                continue
            hop = self._policy.hops[table.name]
            alias = _fresh_alias(taken)
            taken.add(alias)
            statement.tree.append(
                "joins",
                exp.Join(
                    this=exp.Table(
                        this=exp.to_identifier(hop.target_table),
                        alias=exp.TableAlias(this=exp.to_identifier(alias)),
                    ),
                    on=exp.EQ(
                        this=exp.Column(this=exp.to_identifier(hop.column), table=_reference_identifier(table)),
                        expression=exp.Column(
                            this=exp.to_identifier(hop.target_column), table=exp.to_identifier(alias)
                        ),
                    ),
                ),
            )
            predicates.append(self._predicate(exp.to_identifier(alias), scope))

        if not predicates:
            raise MissingTenantScopeError("tenant filter cannot be added unambiguously")
        _add_predicates(statement.tree, predicates)


def _column_equalities(statement: SelectStatement) -> Iterator[tuple[ColumnRef, ColumnRef]]:
    # Equalities every result row satisfies: WHERE conjuncts and JOIN ... ON conjuncts.
    conditions = [statement.where] + [join.condition for join in iter_joins(statement)]
    for condition in conditions:
        for conjunct in iter_conjuncts(condition):
            if (
                isinstance(conjunct, BinaryExpr)
                and conjunct.op == "="
                and isinstance(conjunct.left, ColumnRef)
                and isinstance(conjunct.right, ColumnRef)
            ):
                yield conjunct.left, conjunct.right


def _has_column_equality(expr: Optional[Expr]) -> bool:
    if isinstance(expr, BinaryExpr):
        if expr.op == "AND":
            return _has_column_equality(expr.left) or _has_column_equality(expr.right)
        if expr.op == "OR":
            return _has_column_equality(expr.left) and _has_column_equality(expr.right)
        if expr.op == "=" and isinstance(expr.left, ColumnRef) and isinstance(expr.right, ColumnRef):
            return (
                expr.left.qualifier is not None
                and expr.right.qualifier is not None
                and expr.left.qualifier != expr.right.qualifier
            )
    return False


def _mentions(expr: Optional[Expr], matches: ColumnMatcher) -> bool:
    if isinstance(expr, BinaryExpr):
        return _mentions(expr.left, matches) or _mentions(expr.right, matches)
    if isinstance(expr, InList):
        return _mentions(expr.operand, matches) or any(_mentions(item, matches) for item in expr.items)
    return isinstance(expr, ColumnRef) and matches(expr)


def _reference_identifier(table: TableRef) -> exp.Identifier:
    alias = table.node.args.get("alias")
    if alias is not None and isinstance(alias.this, exp.Identifier):
        return alias.this.copy()
    return table.node.this.copy()


def _fresh_alias(taken: set[str]) -> str:
    alias = _SCOPE_ALIAS
    suffix = 2
    while alias in taken:
        alias = f"{_SCOPE_ALIAS}_{suffix}"
        suffix += 1
    return alias


def _add_predicates(tree: exp.Select, predicates: list[exp.Expression]) -> None:
    where = tree.args.get("where")
    condition = where.this if where is not None else None
    for predicate in predicates:
        if condition is None:
            condition = predicate
            continue
        # AND binds tighter than OR, so an OR-rooted filter needs its own parentheses.
        if isinstance(condition, exp.Or):
            condition = exp.Paren(this=condition)
        condition = exp.And(this=condition, expression=predicate)
    tree.set("where", exp.Where(this=condition))
