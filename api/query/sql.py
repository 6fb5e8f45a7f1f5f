"""
Render a QueryPlan as raw Postgres SQL for asyncpg.

asyncpg uses positional placeholders ($1, $2, ...). Table and field names
are never taken from callers directly: they come from declared FieldDefs and
are checked to be plain identifiers before being interpolated.
"""

from __future__ import annotations

from typing import Any

from .plan import And, Compare, FieldDef, FieldType, IsNull, Predicate, QueryPlan, is_identifier

_COMPARISONS = {
    "eq": "=",
    "ne": "<>",
    "lt": "<",
    "lte": "<=",
    "gt": ">",
    "gte": ">=",
}

_PAYLOAD_CASTS = {
    FieldType.TEXT: "",
    FieldType.ID: "",
    FieldType.NUMBER: "::float8",
    FieldType.DATETIME: "::timestamptz",
    FieldType.BOOL: "::boolean",
}


class Params:
    def __init__(self, start: int = 1) -> None:
        self.values: list[Any] = []
        self._start = start

    def add(self, value: Any) -> str:
        self.values.append(value)
        return f"${self._start + len(self.values) - 1}"


def identifier(name: str) -> str:
    if not is_identifier(name):
        raise ValueError(f"Invalid SQL identifier: {name!r}")
    return name


def field_sql(f: FieldDef) -> str:
    name = identifier(f.name)
    if f.column:
        return name
    return f"(payload->>'{name}'){_PAYLOAD_CASTS[f.type]}"


def _escape_like(value: str) -> str:
    return value.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")


def where_sql(predicate: Predicate, params: Params) -> str:
    if isinstance(predicate, And):
        if not predicate.items:
            return "TRUE"
        return " AND ".join(f"({where_sql(item, params)})" for item in predicate.items)

    if isinstance(predicate, IsNull):
        keyword = "IS NOT NULL" if predicate.negate else "IS NULL"
        return f"{field_sql(predicate.field)} {keyword}"

    if isinstance(predicate, Compare):
        target = field_sql(predicate.field)
        if predicate.op == "contains":
            placeholder = params.add(_escape_like(str(predicate.value)))
            return f"{target} ILIKE '%' || {placeholder} || '%'"
        if predicate.op == "in":
            placeholder = params.add(list(predicate.value))
            return f"{target} = ANY({placeholder})"
        operator = _COMPARISONS.get(predicate.op)
        if operator is None:
            raise ValueError(f"Unsupported operator: {predicate.op!r}")
        return f"{target} {operator} {params.add(predicate.value)}"

    raise TypeError(f"Unsupported predicate: {predicate!r}")


def order_sql(plan: QueryPlan) -> str:
    if not plan.order_by:
        return ""
    parts = [
        f"{field_sql(o.field)} {'DESC' if o.descending else 'ASC'}"
        for o in plan.order_by
    ]
    return "ORDER BY " + ", ".join(parts)


def select_sql(table: str, plan: QueryPlan) -> tuple[str, list[Any]]:
    params = Params()
    where = where_sql(plan.where, params)
    limit = params.add(plan.limit)
    offset = params.add(plan.offset)
    sql = f"""
        SELECT *
        FROM {identifier(table)}
        WHERE {where}
        {order_sql(plan)}
        LIMIT {limit}
        OFFSET {offset}
        """
    return sql, params.values


def count_sql(table: str, plan: QueryPlan) -> tuple[str, list[Any]]:
    params = Params()
    where = where_sql(plan.where, params)
    sql = f"""
        SELECT count(*) AS n
        FROM {identifier(table)}
        WHERE {where}
        """
    return sql, params.values
