"""
Compile an untrusted QuerySpec into a bounded QueryPlan.

Rules:
- filter fields must be declared; unknown fields raise InvalidField
- operators must be valid for the field type; otherwise InvalidOperator
- `from`/`to` bounds become `>=`/`<=` and are ANDed with everything else
- an undeclared or missing sort falls back to `created_at DESC`
- page < 1 becomes 1, page size is clamped to [1, max_page_size]
- soft-deleted rows are excluded unless the caller asked for them *and* is elevated
"""

from __future__ import annotations

from collections.abc import Iterable, Mapping
from typing import Any

from core.errors import InvalidField, InvalidOperator

from .plan import (
    DEFAULT_ORDER,
    DELETED_AT,
    ID,
    OPERATORS,
    RESOURCE_COLUMNS,
    And,
    Compare,
    FieldDef,
    IsNull,
    OrderBy,
    Predicate,
    QueryPlan,
)
from .request import Filter, QuerySpec

DEFAULT_PAGE_SIZE = 20
MAX_PAGE_SIZE = 100

_RANGE_OPERATORS = {"from": "gte", "to": "lte"}
_DIRECTIONS = {"asc": False, "ascending": False, "desc": True, "descending": True}

FieldsArg = Mapping[str, FieldDef] | Iterable[FieldDef | str]


def field_map(fields: FieldsArg) -> dict[str, FieldDef]:
    """
    Normalize an allow-list into {name: FieldDef}.

    Bare names resolve to the standard resource columns when they match one,
    and to text payload fields otherwise.
    """
    if isinstance(fields, Mapping):
        return dict(fields)
    out: dict[str, FieldDef] = {}
    for item in fields:
        if isinstance(item, FieldDef):
            out[item.name] = item
        else:
            out[item] = RESOURCE_COLUMNS.get(item) or FieldDef(item)
    return out


def compile(
    spec: QuerySpec,
    allowed_fields: FieldsArg,
    allowed_sort_fields: Iterable[str],
    *,
    elevated: bool = False,
    default_page_size: int = DEFAULT_PAGE_SIZE,
    max_page_size: int = MAX_PAGE_SIZE,
) -> QueryPlan:
    fields = field_map(allowed_fields)

    predicates: list[Predicate] = []
    if not (spec.include_deleted and elevated):
        predicates.append(IsNull(DELETED_AT))
    for item in spec.filters:
        predicates.append(_compile_filter(item, fields))

    page = spec.page if spec.page is not None and spec.page >= 1 else 1
    page_size = default_page_size if spec.page_size is None else spec.page_size
    page_size = max(1, min(page_size, max_page_size))

    return QueryPlan(
        where=And(tuple(predicates)),
        order_by=_compile_sort(spec.sort, fields, allowed_sort_fields),
        offset=(page - 1) * page_size,
        limit=page_size,
        page=page,
    )


def _compile_filter(item: Filter, fields: Mapping[str, FieldDef]) -> Predicate:
    definition = fields.get(item.field)
    if definition is None:
        raise InvalidField(f"Field '{item.field}' is not filterable.", field=item.field)

    operator = (item.operator or definition.default_operator).strip().lower()
    if operator not in OPERATORS:
        raise InvalidOperator(f"Unknown operator '{operator}'.", field=item.field, operator=operator)
    if operator not in definition.operators:
        raise InvalidOperator(
            f"Operator '{operator}' is not supported for field '{item.field}'.",
            field=item.field,
            operator=operator,
        )

    if operator == "in":
        values = _as_list(item.value)
        if not values:
            raise InvalidField(f"Field '{item.field}' needs at least one value for 'in'.", field=item.field)
        return Compare(definition, "in", tuple(_coerce(definition, v) for v in values))

    value = _coerce(definition, item.value)
    if value is None:
        raise InvalidField(f"Field '{item.field}' needs a value.", field=item.field)
    return Compare(definition, _RANGE_OPERATORS.get(operator, operator), value)


def _coerce(definition: FieldDef, value: Any) -> Any:
    try:
        return definition.coerce(value)
    except (TypeError, ValueError) as exc:
        raise InvalidField(
            f"Invalid value for field '{definition.name}': {value!r}",
            field=definition.name,
        ) from exc


def _as_list(value: Any) -> list[Any]:
    if isinstance(value, (list, tuple, set, frozenset)):
        return list(value)
    if isinstance(value, str):
        return [part.strip() for part in value.split(",") if part.strip()]
    return [value]


def _compile_sort(
    sort: tuple[str, str] | None,
    fields: Mapping[str, FieldDef],
    allowed_sort_fields: Iterable[str],
) -> tuple[OrderBy, ...]:
    if sort is None:
        return DEFAULT_ORDER
    name, direction = sort
    descending = _DIRECTIONS.get((direction or "").strip().lower())
    if name not in set(allowed_sort_fields) or descending is None:
        return DEFAULT_ORDER

    definition = fields.get(name) or RESOURCE_COLUMNS.get(name)
    if definition is None:
        return DEFAULT_ORDER
    if definition.name == ID.name:
        return (OrderBy(ID, descending),)
    # id keeps paging stable when the sort key has duplicates.
    return (OrderBy(definition, descending), OrderBy(ID, descending))
