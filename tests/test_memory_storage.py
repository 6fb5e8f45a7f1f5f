"""In-process storage backend semantics."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from core.errors import StorageError, UniqueConstraintError
from core.memory import MemoryStorage, matches
from core.storage import TableSpec, UniqueKey
from query.plan import (
    CREATED_AT,
    DELETED_AT,
    And,
    Compare,
    FieldType,
    IsNull,
    OrderBy,
    QueryPlan,
    payload_field,
)

CODE = payload_field("code")
RANK = payload_field("rank", FieldType.NUMBER)
T0 = datetime(2024, 1, 1, tzinfo=timezone.utc)


def _row(row_id: str, tenant: str | None, code: str | None, *, rank: int | None = None, minutes: int = 0) -> dict:
    return {
        "id": row_id,
        "tenant_id": tenant,
        "owner_id": "p1",
        "payload": {"code": code, "rank": rank},
        "created_at": T0 + timedelta(minutes=minutes),
        "updated_at": T0 + timedelta(minutes=minutes),
        "deleted_at": None,
    }


async def _store() -> MemoryStorage:
    store = MemoryStorage()
    await store.prepare([TableSpec("things", unique=(UniqueKey("things_code_key", (CODE,)),))])
    return store


@pytest.mark.asyncio
async def test_unique_keys_are_scoped_per_tenant_and_ignore_deleted_rows() -> None:
    store = await _store()
    await store.insert("things", _row("a", "t1", "ABC"))
    await store.insert("things", _row("b", "t2", "ABC"))
    await store.insert("things", _row("c", "t1", None))
    await store.insert("things", _row("d", "t1", None))

    with pytest.raises(UniqueConstraintError):
        await store.insert("things", _row("e", "t1", "ABC"))

    await store.update("things", "a", {"deleted_at": T0})
    await store.insert("things", _row("e", "t1", "ABC"))


@pytest.mark.asyncio
async def test_conditional_update_and_delete() -> None:
    store = await _store()
    await store.insert("things", _row("a", "t1", "A"))

    assert await store.update("things", "a", {"deleted_at": T0}, where=IsNull(DELETED_AT)) is not None
    assert await store.update("things", "a", {"deleted_at": T0}, where=IsNull(DELETED_AT)) is None
    assert await store.delete("things", "a", where=IsNull(DELETED_AT)) is False
    assert await store.delete("things", "a") is True
    assert await store.fetch("things", "a") is None


@pytest.mark.asyncio
async def test_scan_filters_sorts_and_counts() -> None:
    store = await _store()
    for i, rank in enumerate([3, None, 1, 2]):
        await store.insert("things", _row(f"r{i}", "t1", f"C{i}", rank=rank, minutes=i))

    plan = QueryPlan(
        where=And((IsNull(DELETED_AT),)),
        order_by=(OrderBy(RANK),),
        offset=0,
        limit=3,
    )
    rows, total = await store.scan("things", plan)

    assert total == 4
    # NULLs sort last ascending, like Postgres.
    assert [r["payload"]["rank"] for r in rows] == [1, 2, 3]

    rows, _ = await store.scan("things", QueryPlan(order_by=(OrderBy(RANK, descending=True),), limit=10))
    assert [r["payload"]["rank"] for r in rows] == [None, 3, 2, 1]


def test_null_values_never_match_comparisons() -> None:
    row = _row("a", "t1", "A", rank=None)

    assert not matches(Compare(RANK, "ne", 1.0), row)
    assert not matches(Compare(RANK, "lt", 1.0), row)
    assert matches(IsNull(RANK), row)
    assert matches(Compare(CODE, "contains", "a"), row)
    assert matches(Compare(CREATED_AT, "lte", T0), row)


@pytest.mark.asyncio
async def test_transaction_rolls_back_everything_on_error() -> None:
    store = await _store()
    await store.insert("things", _row("a", "t1", "A"))

    with pytest.raises(RuntimeError):
        async with store.transaction():
            await store.insert("things", _row("b", "t1", "B"))
            await store.update("things", "a", {"payload": {"code": "Z"}})
            raise RuntimeError("boom")

    assert await store.fetch("things", "b") is None
    assert (await store.fetch("things", "a"))["payload"]["code"] == "A"


@pytest.mark.asyncio
async def test_rows_are_copied_in_and_out() -> None:
    store = await _store()
    row = _row("a", "t1", "A")
    await store.insert("things", row)
    row["payload"]["code"] = "mutated"

    fetched = await store.fetch("things", "a")
    fetched["payload"]["code"] = "also mutated"

    assert (await store.fetch("things", "a"))["payload"]["code"] == "A"


@pytest.mark.asyncio
async def test_unknown_tables_are_storage_errors() -> None:
    store = await _store()
    with pytest.raises(StorageError):
        await store.fetch("nope", "a")
