from __future__ import annotations

from typing import Optional

import sqlglot
from sqlglot import exp
from sqlglot.errors import SqlglotError

from smartchat.core.errors import (
    MultiStatementError,
    QuerySyntaxError,
    UnsafeOperationError,
    UnsupportedConstructError,
)
from smartchat.sql.ast import (
    BinaryExpr,
    ColumnRef,
    Expr,
    InList,
    JoinClause,
    Literal,
    SelectItem,
    SelectStatement,
    TableRef,
    Unsupported,
)


DIALECT = "postgres"

_COMPARISONS: dict[type, str] = {
    exp.EQ: "=",
    exp.NEQ: "<>",
    exp.GT: ">",
    exp.GTE: ">=",
    exp.LT: "<",
    exp.LTE: "<=",
    exp.Like: "LIKE",
    exp.ILike: "ILIKE",
}


def render(tree: exp.Expression) -> str:
    # Canonical text: PostgreSQL dialect, comments dropped.
    return tree.sql(dialect=DIALECT, comments=False)


def parse_statements(text: str) -> list[exp.Expression]:
    try:
        parsed = sqlglot.parse(text, read=DIALECT)
    except SqlglotError as exc:
        message = str(exc).splitlines()[0] if str(exc) else "query could not be parsed"
        raise QuerySyntaxError(message) from exc
    # Empty statements (stray semicolons, bare comments) parse to None.
    return [statement for statement in parsed if statement is not None]


def parse_tree(text: str) -> exp.Select:
    statements = parse_statements(text)
    if not statements:
        raise QuerySyntaxError("empty query")
    if len(statements) != 1:
        raise MultiStatementError("exactly one statement is allowed")
    tree = statements[0]
    if isinstance(tree, (exp.Union, exp.Intersect, exp.Except)):
        raise UnsupportedConstructError("set operation")
    if not isinstance(tree, exp.Select):
        raise UnsafeOperationError("only SELECT statements are allowed")
    if tree.find(exp.With) is not None or tree.find(exp.CTE) is not None:
        raise UnsupportedConstructError("common table expression")
    for node in tree.find_all(exp.Select, exp.Subquery):
        if node is not tree:
            raise UnsupportedConstructError("subquery")
    if tree.find(exp.Into) is not None:
        raise UnsafeOperationError("SELECT INTO")
    if tree.find(exp.Lock) is not None:
        raise UnsafeOperationError("row locks")
    return tree


def canonical(text: str) -> str:
    return render(parse_tree(text))


def parse_select(text: str) -> SelectStatement:
    tree = parse_tree(text)
    from_node = tree.find(exp.From)
    from_items: tuple[TableRef, ...] = ()
    if from_node is not None:
        if from_node.expressions:
            raise UnsupportedConstructError("comma-separated FROM list")
        joins = tuple(_join_clause(join) for join in tree.args.get("joins") or ())
        from_items = (_table_ref(from_node.this, joins),)
    where = tree.args.get("where")
    group = tree.args.get("group")
    limit = tree.args.get("limit")
    return SelectStatement(
        items=tuple(_select_item(item) for item in tree.expressions),
        from_items=from_items,
        where=to_expr(where.this) if where is not None else None,
        group_by=tuple(node.sql(dialect=DIALECT) for node in group.expressions) if group is not None else (),
        functions=tuple(dict.fromkeys(_function_name(node) for node in tree.find_all(exp.Func))),
        limit=_limit_value(limit),
        has_limit=isinstance(limit, exp.Limit),
        has_offset=tree.args.get("offset") is not None,
        has_fetch=isinstance(limit, exp.Fetch),
        tree=tree,
    )


def identifier_name(identifier: exp.Identifier) -> str:
    # Unquoted identifiers fold to lower case, as PostgreSQL does.
    return identifier.this if identifier.quoted else identifier.this.lower()


def _table_ref(source: Optional[exp.Expression], joins: tuple[JoinClause, ...] = ()) -> TableRef:
    if not isinstance(source, exp.Table) or not isinstance(source.this, exp.Identifier):
        raise UnsupportedConstructError("only plain tables are allowed in FROM")
    if source.args.get("catalog") is not None:
        raise UnsupportedConstructError("catalog-qualified table")
    if source.args.get("joins"):
        raise UnsupportedConstructError("nested join")
    schema = source.args.get("db")
    alias = source.args.get("alias")
    alias_name = identifier_name(alias.this) if alias is not None and isinstance(alias.this, exp.Identifier) else None
    return TableRef(
        schema=identifier_name(schema) if isinstance(schema, exp.Identifier) else None,
        name=identifier_name(source.this),
        alias=alias_name,
        joins=joins,
        node=source,
    )


def _join_clause(join: exp.Join) -> JoinClause:
    kind = " ".join(part for part in (join.side, join.kind, "JOIN") if part)
    on = join.args.get("on")
    using = join.args.get("using") or ()
    return JoinClause(
        kind=kind,
        table=_table_ref(join.this),
        condition=to_expr(on) if on is not None else None,
        using=tuple(item.name.lower() for item in using),
    )


def _select_item(item: exp.Expression) -> SelectItem:
    expression = item.unalias()
    is_star = isinstance(expression, exp.Star) or (
        isinstance(expression, exp.Column) and isinstance(expression.this, exp.Star)
    )
    return SelectItem(
        expression=expression.sql(dialect=DIALECT),
        alias=item.alias or None,
        has_aggregate=expression.find(exp.AggFunc) is not None,
        windowed=expression.find(exp.Window) is not None,
        is_star=is_star,
    )


def _function_name(node: exp.Func) -> str:
    if isinstance(node, exp.Anonymous):
        return node.name.lower()
    return node.sql_name().lower()


def _limit_value(limit: Optional[exp.Expression]) -> Optional[int]:
    if not isinstance(limit, exp.Limit):
        return None
    value = limit.args.get("expression")
    if value is None or not value.is_int:
        return None
    return int(value.name)


def _number(text: str) -> object:
    try:
        return int(text)
    except ValueError:
        try:
            return float(text)
        except ValueError:
            return text


def to_expr(node: Optional[exp.Expression]) -> Expr:
    """Map a sqlglot condition onto the validator's closed expression types."""
    if node is None:
        return Unsupported("empty")
    if isinstance(node, exp.Paren):
        return to_expr(node.this)
    if isinstance(node, exp.And):
        return BinaryExpr("AND", to_expr(node.this), to_expr(node.expression))
    if isinstance(node, exp.Or):
        return BinaryExpr("OR", to_expr(node.this), to_expr(node.expression))
    op = _COMPARISONS.get(type(node))
    if op is not None:
        return BinaryExpr(op, to_expr(node.this), to_expr(node.expression))
    if isinstance(node, exp.In):
        if any(node.args.get(key) is not None for key in ("query", "unnest", "field")):
            return Unsupported("in", "non-literal list")
        return InList(to_expr(node.this), tuple(to_expr(item) for item in node.expressions))
    if isinstance(node, exp.Not):
        inner = node.this
        while isinstance(inner, exp.Paren):
            inner = inner.this
        mapped = to_expr(inner) if isinstance(inner, exp.In) else None
        if isinstance(mapped, InList):
            return InList(mapped.operand, mapped.items, negated=True)
        return Unsupported("not")
    if isinstance(node, exp.Column):
        if not isinstance(node.this, exp.Identifier):
            return Unsupported("star")
        table = node.args.get("table")
        qualifier = identifier_name(table) if isinstance(table, exp.Identifier) else None
        return ColumnRef(qualifier, identifier_name(node.this))
    if isinstance(node, exp.Literal):
        if node.is_string:
            return Literal(node.this, "string")
        return Literal(_number(node.this), "number")
    if isinstance(node, exp.Boolean):
        return Literal(bool(node.this), "boolean")
    if isinstance(node, exp.Null):
        return Literal(None, "null")
    if isinstance(node, exp.Func):
        return Unsupported("function", _function_name(node))
    return Unsupported(type(node).__name__.lower())
