"""
Declarative resource kinds.

A `ResourceKind` is everything the generic repository, query builder, guard
and router need to serve one kind of record: which payload fields can be
filtered and sorted, which field combinations are unique per tenant, whether
rows are owner-scoped, and whether delete is soft or physical.
"""

from __future__ import annotations

from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from typing import TYPE_CHECKING

from pydantic import BaseModel

from access.guard import Action, Ownership
from core.storage import TableSpec, UniqueKey
from query.plan import CREATED_AT, ID, OWNER_ID, UPDATED_AT, FieldDef, is_identifier

if TYPE_CHECKING:
    from .records import Resource

# Columns every kind can filter on, in addition to its own payload fields.
_COMMON_FIELDS = (ID, OWNER_ID, CREATED_AT, UPDATED_AT)
_COMMON_SORT = ("created_at", "updated_at")

LockRule = Callable[["Resource", Action], "str | None"]


@dataclass(frozen=True)
class ResourceKind:
    name: str
    fields: tuple[FieldDef, ...] = ()
    sort_fields: tuple[str, ...] = ()
    # Each entry is a tuple of payload field names unique per tenant among active rows.
    unique: tuple[tuple[str, ...], ...] = ()
    ownership: Ownership = Ownership.TENANT
    soft_delete: bool = True
    payload_model: type[BaseModel] | None = None
    # Returns a reason string when the resource must not be mutated.
    lock_rule: LockRule | None = None
    # Roles allowed per action; a missing action means any authenticated role.
    permissions: Mapping[Action, frozenset[str]] = field(default_factory=dict)
    table: str = ""

    def __post_init__(self) -> None:
        if not is_identifier(self.name):
            raise ValueError(f"Invalid resource kind name: {self.name!r}")
        if not self.table:
            object.__setattr__(self, "table", self.name)
        known = self.filter_fields
        for key in self.unique:
            missing = [n for n in key if n not in known]
            if missing:
                raise ValueError(f"Unique key of {self.name!r} names undeclared fields: {missing}")

    @property
    def filter_fields(self) -> dict[str, FieldDef]:
        out = {f.name: f for f in _COMMON_FIELDS}
        out.update({f.name: f for f in self.fields})
        return out

    @property
    def allowed_sort_fields(self) -> tuple[str, ...]:
        return _COMMON_SORT + tuple(n for n in self.sort_fields if n not in _COMMON_SORT)

    def unique_keys(self) -> tuple[UniqueKey, ...]:
        known = self.filter_fields
        return tuple(
            UniqueKey(
                name=f"{self.table}_{'_'.join(names)}_key",
                fields=tuple(known[n] for n in names),
            )
            for names in self.unique
        )

    def table_spec(self) -> TableSpec:
        return TableSpec(self.table, unique=self.unique_keys())

    def lock_reason(self, resource: "Resource", action: Action) -> str | None:
        if self.lock_rule is None:
            return None
        return self.lock_rule(resource, action)
