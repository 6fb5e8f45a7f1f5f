"""Parsing flat request parameters into QuerySpecs."""

from __future__ import annotations

import pytest

from core.errors import InvalidField
from query.request import Filter, QuerySpec


def test_flat_params_become_filters() -> None:
    spec = QuerySpec.from_params(
        {
            "name": "board",
            "created_at_from": "2024-01-01",
            "created_at_to": "2024-02-01",
            "status": ["open", "closed"],
            "empty": "  ",
        }
    )

    assert spec.filters == (
        Filter("name", None, "board"),
        Filter("created_at", "from", "2024-01-01"),
        Filter("created_at", "to", "2024-02-01"),
        Filter("status", "in", ["open", "closed"]),
    )


def test_known_fields_ending_in_range_suffix_are_not_split() -> None:
    spec = QuerySpec.from_params({"valid_to": "2024-01-01"}, fields=("valid_to",))

    assert spec.filters == (Filter("valid_to", None, "2024-01-01"),)


def test_paging_and_flags() -> None:
    spec = QuerySpec.from_params({"page": "3", "limit": "15", "include_deleted": "true"})

    assert (spec.page, spec.page_size, spec.include_deleted) == (3, 15, True)
    assert QuerySpec.from_params({"current": 2, "pageSize": 5}).page_size == 5
    assert QuerySpec.from_params({}).include_deleted is False


def test_non_integer_paging_is_rejected() -> None:
    with pytest.raises(InvalidField):
        QuerySpec.from_params({"page": "two"})


@pytest.mark.parametrize(
    ("params", "expected"),
    [
        ({"sort": "name asc"}, ("name", "asc")),
        ({"sort": "-priority"}, ("priority", "desc")),
        ({"sort": "+priority"}, ("priority", "asc")),
        ({"sortBy": "name", "sortDirection": "ASC"}, ("name", "asc")),
        ({"sort_by": "name", "order": "desc"}, ("name", "desc")),
        ({"sort": "name"}, ("name", "desc")),
        ({}, None),
    ],
)
def test_sort_forms(params: dict, expected: tuple[str, str] | None) -> None:
    assert QuerySpec.from_params(params).sort == expected


def test_structured_filters_are_appended() -> None:
    spec = QuerySpec.from_params(
        {
            "filters": [
                {"field": "priority", "operator": "gte", "value": 2},
                ["status", "ne", "closed"],
            ]
        }
    )

    assert spec.filters == (
        Filter("priority", "gte", 2),
        Filter("status", "ne", "closed"),
    )


@pytest.mark.parametrize("filters", ["status=open", [{"operator": "eq", "value": 1}], [("a", "eq")]])
def test_malformed_structured_filters(filters: object) -> None:
    with pytest.raises(InvalidField):
        QuerySpec.from_params({"filters": filters})
