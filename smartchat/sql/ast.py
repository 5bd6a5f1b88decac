from __future__ import annotations

from dataclasses import dataclass, field
from typing import Iterator, Optional, Union

from sqlglot import exp


@dataclass(frozen=True)
class ColumnRef:
    qualifier: Optional[str]
    name: str


@dataclass(frozen=True)
class Literal:
    value: object
    # string, number, boolean, null
    kind: str


@dataclass(frozen=True)
class InList:
    operand: "Expr"
    items: tuple["Expr", ...]
    negated: bool = False


@dataclass(frozen=True)
class BinaryExpr:
    op: str
    left: "Expr"
    right: "Expr"


@dataclass(frozen=True)
class Unsupported:
    # Anything the validator does not model: functions, NOT, CASE, casts, IS, BETWEEN.
    kind: str
    detail: str = ""


Expr = Union[ColumnRef, Literal, InList, BinaryExpr, Unsupported]


@dataclass(frozen=True)
class TableRef:
    schema: Optional[str]
    name: str
    alias: Optional[str]
    joins: tuple["JoinClause", ...] = ()
    # Parsed table node; the tenant rewrite qualifies columns with its identifiers.
    node: Optional[exp.Table] = field(default=None, compare=False, repr=False)

    @property
    def reference(self) -> str:
        # Name other clauses use to qualify this table's columns.
        return self.alias or self.name


@dataclass(frozen=True)
class JoinClause:
    kind: str
    table: TableRef
    condition: Optional[Expr] = None
    using: tuple[str, ...] = ()


@dataclass(frozen=True)
class SelectItem:
    expression: str
    alias: Optional[str]
    has_aggregate: bool
    windowed: bool
    is_star: bool


@dataclass(frozen=True)
class SelectStatement:
    items: tuple[SelectItem, ...]
    from_items: tuple[TableRef, ...]
    where: Optional[Expr]
    group_by: tuple[str, ...] = ()
    functions: tuple[str, ...] = ()
    limit: Optional[int] = None
    has_limit: bool = False
    has_offset: bool = False
    has_fetch: bool = False
    tree: Optional[exp.Select] = field(default=None, compare=False, repr=False)


def iter_tables(statement: SelectStatement) -> Iterator[TableRef]:
    # Query order: each FROM item followed by its joins.
    for item in statement.from_items:
        yield item
        for join in item.joins:
            yield join.table


def iter_joins(statement: SelectStatement) -> Iterator[JoinClause]:
    for item in statement.from_items:
        yield from item.joins


def iter_conjuncts(expr: Optional[Expr]) -> Iterator[Expr]:
    # Top-level AND operands; each one holds for every row that passes.
    if isinstance(expr, BinaryExpr) and expr.op == "AND":
        yield from iter_conjuncts(expr.left)
        yield from iter_conjuncts(expr.right)
    elif expr is not None:
        yield expr
