"""Unit tests for metadata filter trees."""

from datetime import datetime, timezone

import pytest

from context_engine.errors import InvalidInput
from context_engine.rag.filters import (FilterCondition, FilterExpression, SearchFilters,
                                        build_search_filter, combine)


METADATA = {
    "author": "Ada",
    "tags": ["python", "ml"],
    "year": 2021,
    "created_at": "2024-03-01T00:00:00+00:00",
}


class TestFilterCondition:
    """Tests for single conditions."""

    @pytest.mark.parametrize("condition, expected", [
        (FilterCondition("author", "eq", "Ada"), True),
        (FilterCondition("author", "ne", "Bob"), True),
        (FilterCondition("year", "gt", 2020), True),
        (FilterCondition("year", "lte", 2020), False),
        (FilterCondition("author", "in", ["Ada", "Bob"]), True),
        (FilterCondition("author", "nin", ["Ada"]), False),
        (FilterCondition("tags", "eq", "ml"), True),
        (FilterCondition("tags", "in", ["ml", "go"]), True),
        (FilterCondition("tags", "contains", "python"), True),
        (FilterCondition("author", "regex", "^A"), True),
    ])
    def test_operators(self, condition, expected):
        assert condition.matches(METADATA) is expected

    def test_missing_field_only_satisfies_negatives(self):
        assert FilterCondition("missing", "eq", 1).matches(METADATA) is False
        assert FilterCondition("missing", "gt", 1).matches(METADATA) is False
        assert FilterCondition("missing", "ne", 1).matches(METADATA) is True
        assert FilterCondition("missing", "nin", [1]).matches(METADATA) is True

    def test_content_contains_is_case_insensitive(self):
        condition = FilterCondition("content", "contains", "PYTHON")
        assert condition.matches({}, content="Learning python today")

    def test_comma_joined_lists(self):
        assert FilterCondition("tags", "in", ["ml"]).matches({"tags": "python,ml"})

    def test_datetime_comparison(self):
        start = datetime(2024, 1, 1, tzinfo=timezone.utc)
        assert FilterCondition("created_at", "gte", start).matches(METADATA)
        assert not FilterCondition("created_at", "lt", start).matches(METADATA)

    def test_naive_datetime_bounds_are_utc(self):
        assert FilterCondition("created_at", "gte", datetime(2024, 1, 1)).matches(METADATA)
        assert FilterCondition("created_at", "lte", datetime(2030, 1, 1)).matches(
            {"created_at": datetime(2024, 1, 1, tzinfo=timezone.utc)})
        assert not FilterCondition("created_at", "gt", datetime(2025, 1, 1)).matches(METADATA)

    def test_incomparable_types_do_not_match(self):
        assert FilterCondition("author", "gt", 5).matches(METADATA) is False

    def test_rejects_unknown_operator(self):
        with pytest.raises(InvalidInput):
            FilterCondition("a", "like", "x")

    def test_in_needs_a_list(self):
        with pytest.raises(InvalidInput):
            FilterCondition("a", "in", "x")


class TestFilterExpression:
    """Tests for AND/OR/NOT trees."""

    def test_and_or_not(self):
        ada = FilterCondition("author", "eq", "Ada")
        old = FilterCondition("year", "lt", 2000)
        assert FilterExpression.all_of(ada).matches(METADATA)
        assert not FilterExpression.all_of(ada, old).matches(METADATA)
        assert FilterExpression.any_of(ada, old).matches(METADATA)
        assert FilterExpression.negate(old).matches(METADATA)
        assert not FilterExpression.negate(ada).matches(METADATA)

    def test_nested(self):
        expr = FilterExpression.all_of(
            FilterCondition("author", "eq", "Ada"),
            FilterExpression.any_of(FilterCondition("year", "eq", 1999),
                                    FilterCondition("tags", "contains", "ml")),
        )
        assert expr.matches(METADATA)

    def test_empty_expressions(self):
        assert FilterExpression().matches(METADATA)
        assert not FilterExpression.any_of().matches(METADATA)
        assert FilterExpression().is_empty()

    def test_to_dict_is_json_friendly(self):
        start = datetime(2024, 1, 1, tzinfo=timezone.utc)
        expr = FilterExpression.all_of(FilterCondition("created_at", "gte", start),
                                       FilterCondition("tags", "in", ("b", "a")))
        assert expr.to_dict() == {
            "operator": "and",
            "conditions": [
                {"field": "created_at", "operator": "gte", "value": "2024-01-01T00:00:00+00:00"},
                {"field": "tags", "operator": "in", "value": ["b", "a"]},
            ],
        }


class TestBuildSearchFilter:
    """Tests for turning user filters into expressions."""

    def test_none_and_empty(self):
        assert build_search_filter(None) is None
        assert build_search_filter(SearchFilters()) is None
        assert build_search_filter(FilterExpression()) is None

    def test_single_condition_is_wrapped(self):
        condition = FilterCondition("author", "eq", "Ada")
        assert build_search_filter(condition) == FilterExpression.all_of(condition)

    def test_search_filters(self):
        start = datetime(2024, 1, 1, tzinfo=timezone.utc)
        expr = build_search_filter(SearchFilters(document_ids=["d1"], tags=["ml"], language="en",
                                                 date_range=(start, None)))
        fields = [(c.field, c.operator) for c in expr.conditions]
        assert fields == [("document_id", "in"), ("tags", "in"), ("language", "eq"),
                          ("created_at", "gte")]
        assert expr.matches({"document_id": "d1", "tags": ["ml"], "language": "en",
                             "created_at": "2024-02-01T00:00:00Z"})

    def test_naive_date_range(self):
        expr = build_search_filter(SearchFilters(date_range=(datetime(2024, 1, 1), None)))
        assert expr.matches({"created_at": "2024-06-01T00:00:00+00:00"})
        assert not expr.matches({"created_at": "2023-06-01T00:00:00+00:00"})

    def test_rejects_other_types(self):
        with pytest.raises(InvalidInput):
            build_search_filter({"author": "Ada"})

    def test_combine(self):
        a = FilterExpression.all_of(FilterCondition("a", "eq", 1))
        b = FilterExpression.all_of(FilterCondition("b", "eq", 2))
        assert combine(None, a) is a
        assert combine(None, FilterExpression()) is None
        assert combine(a, b) == FilterExpression.all_of(a, b)
