"""
Caller-supplied list requests (`QuerySpec`).

Nothing here is validated against a resource kind; that is the job of
`query.builder.compile`. `QuerySpec.from_params` only turns flat request
parameters into the structured form:

- `name=board`                 -> (name, <field default>, "board")
- `created_at_from=2024-01-01` -> (created_at, from, ...)
- `created_at_to=2024-02-01`   -> (created_at, to, ...)
- `status=["open", "done"]`    -> (status, in, [...])
- `page`, `limit` / `page_size`
- `sort="created_at desc"`, `sort="-created_at"`, or `sort_by` + `sort_direction`
- `include_deleted=true`
- `filters=[{"field": ..., "operator": ..., "value": ...}]`
"""

from __future__ import annotations

from collections.abc import Collection, Mapping
from dataclasses import dataclass, field
from typing import Any

from core.errors import InvalidField

_PAGE_KEYS = ("page", "current")
_LIMIT_KEYS = ("limit", "page_size", "pageSize")
_SORT_FIELD_KEYS = ("sort_by", "sortBy")
_SORT_DIR_KEYS = ("sort_direction", "sortDirection", "sortDir", "sort_order", "order")
_RESERVED = frozenset(
    ("sort", "filters", "include_deleted", "includeDeleted")
    + _PAGE_KEYS
    + _LIMIT_KEYS
    + _SORT_FIELD_KEYS
    + _SORT_DIR_KEYS
)
_RANGE_SUFFIXES = (("_from", "from"), ("_to", "to"))


@dataclass(frozen=True)
class Filter:
    field: str
    operator: str | None
    value: Any


@dataclass(frozen=True)
class QuerySpec:
    filters: tuple[Filter, ...] = ()
    sort: tuple[str, str] | None = None
    page: int | None = None
    page_size: int | None = None
    include_deleted: bool = False

    @classmethod
    def from_params(
        cls,
        params: Mapping[str, Any],
        *,
        fields: Collection[str] = (),
    ) -> "QuerySpec":
        """
        Build a QuerySpec from flat request parameters.

        `fields` lists known field names so that a field which itself ends
        in `_from`/`_to` is not mistaken for a range bound.
        """
        filters: list[Filter] = []
        for key, value in params.items():
            if key in _RESERVED or _is_blank(value):
                continue
            filters.append(_filter_from_param(key, value, fields))

        structured = params.get("filters")
        if structured:
            filters.extend(_structured_filters(structured))

        return cls(
            filters=tuple(filters),
            sort=_parse_sort(params),
            page=_int_param(params, _PAGE_KEYS),
            page_size=_int_param(params, _LIMIT_KEYS),
            include_deleted=_bool_param(params.get("include_deleted", params.get("includeDeleted"))),
        )


def _is_blank(value: Any) -> bool:
    if value is None:
        return True
    if isinstance(value, str) and not value.strip():
        return True
    return False


def _filter_from_param(key: str, value: Any, fields: Collection[str]) -> Filter:
    if key not in fields:
        for suffix, operator in _RANGE_SUFFIXES:
            if key.endswith(suffix) and len(key) > len(suffix):
                return Filter(key[: -len(suffix)], operator, value)
    if isinstance(value, (list, tuple)):
        return Filter(key, "in", list(value))
    return Filter(key, None, value)


def _structured_filters(raw: Any) -> list[Filter]:
    if not isinstance(raw, (list, tuple)):
        raise InvalidField("filters must be a list.")
    out: list[Filter] = []
    for item in raw:
        if isinstance(item, Mapping):
            name = item.get("field")
            operator = item.get("operator", item.get("op"))
            value = item.get("value")
        elif isinstance(item, (list, tuple)) and len(item) == 3:
            name, operator, value = item
        else:
            raise InvalidField(f"Unrecognized filter entry: {item!r}")
        if not isinstance(name, str) or not name:
            raise InvalidField("Filter field name is required.")
        out.append(Filter(name, str(operator) if operator is not None else None, value))
    return out


def _parse_sort(params: Mapping[str, Any]) -> tuple[str, str] | None:
    direction = next((params[k] for k in _SORT_DIR_KEYS if not _is_blank(params.get(k))), None)
    direction = str(direction).strip().lower() if direction is not None else None

    raw = params.get("sort")
    if _is_blank(raw):
        raw = next((params[k] for k in _SORT_FIELD_KEYS if not _is_blank(params.get(k))), None)
    if raw is None:
        return None

    text = str(raw).strip()
    if text.startswith("-"):
        return text[1:], "desc"
    if text.startswith("+"):
        return text[1:], "asc"

    parts = text.split()
    if len(parts) == 2:
        return parts[0], parts[1].lower()
    return text, direction or "desc"


def _int_param(params: Mapping[str, Any], keys: tuple[str, ...]) -> int | None:
    for key in keys:
        raw = params.get(key)
        if _is_blank(raw):
            continue
        if isinstance(raw, bool):
            raise InvalidField(f"{key} must be an integer.")
        try:
            return int(raw)
        except (TypeError, ValueError) as exc:
            raise InvalidField(f"{key} must be an integer.") from exc
    return None


def _bool_param(raw: Any) -> bool:
    if isinstance(raw, bool):
        return raw
    if raw is None:
        return False
    return str(raw).strip().lower() in {"true", "1", "yes", "on"}
