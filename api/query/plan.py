"""
Field declarations, predicate tree and the validated query plan.

A `QueryPlan` is what storage backends consume. It is produced by
`query.builder.compile` from an untrusted `QuerySpec`, or built directly by
repositories for internal lookups (by email, by token hash, ...).
"""

from __future__ import annotations

import math
import re
from dataclasses import dataclass, field, replace
from datetime import datetime
from enum import Enum
from typing import Any, Union

from core.clock import as_utc

_IDENTIFIER = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")


class FieldType(str, Enum):
    TEXT = "text"
    NUMBER = "number"
    DATETIME = "datetime"
    BOOL = "bool"
    ID = "id"


_ORDERED = frozenset({"eq", "ne", "lt", "lte", "gt", "gte", "in", "from", "to"})

TYPE_OPERATORS: dict[FieldType, frozenset[str]] = {
    FieldType.TEXT: frozenset({"eq", "ne", "contains", "in"}),
    FieldType.ID: frozenset({"eq", "ne", "in"}),
    FieldType.BOOL: frozenset({"eq", "ne"}),
    FieldType.NUMBER: _ORDERED,
    FieldType.DATETIME: _ORDERED,
}

OPERATORS = frozenset().union(*TYPE_OPERATORS.values())

_TRUE = {"true", "1", "yes", "on"}
_FALSE = {"false", "0", "no", "off"}


def is_identifier(name: str) -> bool:
    return bool(_IDENTIFIER.match(name or ""))


def parse_datetime(value: Any) -> datetime:
    if isinstance(value, datetime):
        return as_utc(value)
    if isinstance(value, str) and value.strip():
        raw = value.strip()
        if raw.endswith(("Z", "z")):
            raw = raw[:-1] + "+00:00"
        return as_utc(datetime.fromisoformat(raw))
    raise ValueError(f"not a datetime: {value!r}")


@dataclass(frozen=True)
class FieldDef:
    """
    A filterable/sortable field.

    `column=True` means a real table column; otherwise the value lives under
    the `payload` document of the row.
    """

    name: str
    type: FieldType = FieldType.TEXT
    column: bool = False
    default_operator: str = "eq"

    def __post_init__(self) -> None:
        if not is_identifier(self.name):
            raise ValueError(f"Invalid field name: {self.name!r}")
        if self.default_operator not in self.operators:
            raise ValueError(
                f"Operator {self.default_operator!r} is not valid for {self.type.value} field {self.name!r}"
            )

    @property
    def operators(self) -> frozenset[str]:
        return TYPE_OPERATORS[self.type]

    def coerce(self, value: Any) -> Any:
        """
        Convert a caller/storage value to this field's Python type.

        Raises ValueError for values that cannot be converted.
        """
        if value is None:
            return None
        if self.type is FieldType.DATETIME:
            return parse_datetime(value)
        if self.type is FieldType.BOOL:
            if isinstance(value, bool):
                return value
            lowered = str(value).strip().lower()
            if lowered in _TRUE:
                return True
            if lowered in _FALSE:
                return False
            raise ValueError(f"not a boolean: {value!r}")
        if self.type is FieldType.NUMBER:
            if isinstance(value, bool):
                raise ValueError("booleans are not numbers")
            if isinstance(value, (int, float)):
                return float(value)
            return float(str(value).strip())
        if isinstance(value, (dict, list, tuple, set)):
            raise ValueError(f"not a scalar: {value!r}")
        return str(value)


def column(name: str, type_: FieldType = FieldType.ID) -> FieldDef:
    return FieldDef(name, type_, column=True)


def payload_field(name: str, type_: FieldType = FieldType.TEXT, *, default_operator: str = "eq") -> FieldDef:
    return FieldDef(name, type_, column=False, default_operator=default_operator)


# Columns every resource table carries.
ID = column("id")
TENANT_ID = column("tenant_id")
OWNER_ID = column("owner_id")
CREATED_AT = column("created_at", FieldType.DATETIME)
UPDATED_AT = column("updated_at", FieldType.DATETIME)
DELETED_AT = column("deleted_at", FieldType.DATETIME)

RESOURCE_COLUMNS: dict[str, FieldDef] = {
    f.name: f for f in (ID, TENANT_ID, OWNER_ID, CREATED_AT, UPDATED_AT, DELETED_AT)
}


@dataclass(frozen=True)
class Compare:
    field: FieldDef
    op: str
    value: Any


@dataclass(frozen=True)
class IsNull:
    field: FieldDef
    negate: bool = False


@dataclass(frozen=True)
class And:
    items: tuple["Predicate", ...] = ()


Predicate = Union[Compare, IsNull, And]


def eq(f: FieldDef, value: Any) -> Predicate:
    # SQL `= NULL` never matches, so equality with None means IS NULL.
    if value is None:
        return IsNull(f)
    return Compare(f, "eq", value)


@dataclass(frozen=True)
class OrderBy:
    field: FieldDef
    descending: bool = False


DEFAULT_ORDER = (OrderBy(CREATED_AT, descending=True), OrderBy(ID, descending=True))


@dataclass(frozen=True)
class QueryPlan:
    where: And = field(default_factory=And)
    order_by: tuple[OrderBy, ...] = DEFAULT_ORDER
    offset: int = 0
    limit: int = 20
    page: int = 1

    @classmethod
    def matching(
        cls,
        *predicates: Predicate,
        limit: int = 1,
        order_by: tuple[OrderBy, ...] = DEFAULT_ORDER,
    ) -> "QueryPlan":
        return cls(where=And(tuple(predicates)), order_by=order_by, offset=0, limit=limit, page=1)

    def scoped(self, *predicates: Predicate) -> "QueryPlan":
        """
        Return a copy whose `where` also requires all given predicates.
        """
        return replace(self, where=And(tuple(predicates) + self.where.items))


@dataclass(frozen=True)
class Pagination:
    current: int
    limit: int
    records: int
    pages: int

    @classmethod
    def for_plan(cls, plan: QueryPlan, records: int) -> "Pagination":
        return cls(
            current=plan.page,
            limit=plan.limit,
            records=records,
            pages=math.ceil(records / plan.limit) if plan.limit else 0,
        )
