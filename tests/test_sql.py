"""Rendering QueryPlans as parameterized asyncpg SQL."""

from __future__ import annotations

import pytest

from core.db import resource_table_ddl, unique_index_ddl
from core.storage import TableSpec, UniqueKey
from query import builder
from query.plan import FieldDef, FieldType, payload_field
from query.request import Filter, QuerySpec
from query.sql import Params, count_sql, field_sql, identifier, select_sql

FIELDS = {
    "name": payload_field("name", default_operator="contains"),
    "priority": payload_field("priority", FieldType.NUMBER),
    "status": payload_field("status"),
}


def _squash(sql: str) -> str:
    return " ".join(sql.split())


def test_params_number_placeholders_in_order() -> None:
    params = Params()

    assert [params.add("a"), params.add("b"), params.add("c")] == ["$1", "$2", "$3"]
    assert params.values == ["a", "b", "c"]


def test_payload_fields_are_cast_by_type() -> None:
    assert field_sql(FIELDS["name"]) == "(payload->>'name')"
    assert field_sql(FIELDS["priority"]) == "(payload->>'priority')::float8"
    assert field_sql(FieldDef("deleted_at", FieldType.DATETIME, column=True)) == "deleted_at"


def test_identifiers_are_checked() -> None:
    with pytest.raises(ValueError):
        identifier("tasks; DROP TABLE principals")


def test_select_renders_filters_sort_and_window() -> None:
    plan = builder.compile(
        QuerySpec(
            filters=(
                Filter("name", None, "50%_off"),
                Filter("priority", "from", 2),
                Filter("status", "in", ["open", "closed"]),
            ),
            sort=("priority", "asc"),
            page=2,
            page_size=10,
        ),
        FIELDS,
        ("priority",),
    )

    sql, args = select_sql("tasks", plan)

    assert _squash(sql) == (
        "SELECT * FROM tasks WHERE (deleted_at IS NULL) "
        "AND ((payload->>'name') ILIKE '%' || $1 || '%') "
        "AND ((payload->>'priority')::float8 >= $2) "
        "AND ((payload->>'status') = ANY($3)) "
        "ORDER BY (payload->>'priority')::float8 ASC, id ASC LIMIT $4 OFFSET $5"
    )
    assert args == ["50\\%\\_off", 2.0, ["open", "closed"], 10, 10]


def test_count_uses_the_same_where_without_window() -> None:
    plan = builder.compile(QuerySpec(filters=(Filter("status", "eq", "open"),)), FIELDS, ())

    sql, args = count_sql("tasks", plan)

    assert _squash(sql) == (
        "SELECT count(*) AS n FROM tasks WHERE (deleted_at IS NULL) AND ((payload->>'status') = $1)"
    )
    assert args == ["open"]


def test_resource_table_ddl_has_scope_indexes_and_partial_unique_keys() -> None:
    code = payload_field("code")
    spec = TableSpec("projects", unique=(UniqueKey("projects_code_key", (code,)),))

    statements = [_squash(s) for s in resource_table_ddl(spec)]

    assert statements[0].startswith("CREATE TABLE IF NOT EXISTS projects (")
    assert "CHECK (deleted_at IS NULL OR deleted_at >= updated_at)" in statements[0]
    assert "ON projects (tenant_id, owner_id)" in statements[1]
    assert "ON projects (deleted_at)" in statements[2]
    assert statements[3] == unique_index_ddl("projects", spec.unique[0])
    assert statements[3] == (
        "CREATE UNIQUE INDEX IF NOT EXISTS projects_code_key "
        "ON projects (coalesce(tenant_id, ''), ((payload->>'code'))) WHERE deleted_at IS NULL"
    )
