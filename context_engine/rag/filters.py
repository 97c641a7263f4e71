"""Metadata filter trees used by search and understood by vector store adapters.

A filter is a tree: FilterExpression nodes combine FilterCondition leaves
(and nested expressions) with AND, OR or NOT. NOT negates the AND of its
children. The special field ``content`` addresses a record's text rather
than its metadata.
"""

import re
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional, Sequence, Tuple, Union

from ..errors import InvalidInput
from .models import coerce_datetime


CONTENT_FIELD = "content"

OPERATORS = ("eq", "ne", "gt", "gte", "lt", "lte", "in", "nin", "contains", "regex")


class LogicalOperator(str, Enum):
    AND = "and"
    OR = "or"
    NOT = "not"


@dataclass(frozen=True)
class FilterCondition:
    field: str
    operator: str
    value: Any

    def __post_init__(self):
        if self.operator not in OPERATORS:
            raise InvalidInput(f"Unknown filter operator: {self.operator!r}")
        if self.operator in ("in", "nin") and not isinstance(self.value, (list, tuple, set, frozenset)):
            raise InvalidInput(f"'{self.operator}' filter on {self.field!r} needs a list value")

    def matches(self, metadata: Dict[str, Any], content: str = "") -> bool:
        if self.field == CONTENT_FIELD:
            actual = content
        elif self.field in metadata:
            actual = metadata[self.field]
        else:
            # A missing field only satisfies the negative operators
            return self.operator in ("ne", "nin")
        return _compare(self.operator, actual, self.value)

    def to_dict(self) -> Dict[str, Any]:
        value = self.value
        if isinstance(value, datetime):
            value = value.isoformat()
        elif isinstance(value, (set, frozenset, tuple)):
            value = sorted(value, key=str) if isinstance(value, (set, frozenset)) else list(value)
        return {"field": self.field, "operator": self.operator, "value": value}


FilterNode = Union[FilterCondition, "FilterExpression"]


@dataclass(frozen=True)
class FilterExpression:
    operator: LogicalOperator = LogicalOperator.AND
    conditions: Tuple[FilterNode, ...] = field(default_factory=tuple)

    def __post_init__(self):
        try:
            object.__setattr__(self, "operator", LogicalOperator(self.operator))
        except ValueError as e:
            raise InvalidInput(f"Unknown logical operator: {self.operator!r}") from e
        object.__setattr__(self, "conditions", tuple(self.conditions))

    @classmethod
    def all_of(cls, *conditions: FilterNode) -> "FilterExpression":
        return cls(LogicalOperator.AND, conditions)

    @classmethod
    def any_of(cls, *conditions: FilterNode) -> "FilterExpression":
        return cls(LogicalOperator.OR, conditions)

    @classmethod
    def negate(cls, *conditions: FilterNode) -> "FilterExpression":
        return cls(LogicalOperator.NOT, conditions)

    def matches(self, metadata: Dict[str, Any], content: str = "") -> bool:
        results = (c.matches(metadata, content) for c in self.conditions)
        if self.operator is LogicalOperator.AND:
            return all(results)
        if self.operator is LogicalOperator.OR:
            # An empty OR matches nothing, an empty AND everything
            return any(results)
        return not all(results)

    def to_dict(self) -> Dict[str, Any]:
        return {"operator": self.operator.value,
                "conditions": [c.to_dict() for c in self.conditions]}

    def is_empty(self) -> bool:
        return not self.conditions


@dataclass(frozen=True)
class SearchFilters:
    """Common filters, turned into a FilterExpression by :func:`build_search_filter`.

    Attributes:
        document_ids: Restrict to these documents
        document_types: Match metadata ``type``
        authors: Match metadata ``author``
        tags: Match any of these tags
        language: Exact metadata ``language``
        date_range: (start, end) on metadata ``created_at``; either end may be None
    """
    document_ids: Sequence[str] = ()
    document_types: Sequence[str] = ()
    authors: Sequence[str] = ()
    tags: Sequence[str] = ()
    language: Optional[str] = None
    date_range: Optional[Tuple[Optional[datetime], Optional[datetime]]] = None


def build_search_filter(filters) -> Optional[FilterExpression]:
    """Normalize user filters into a FilterExpression (or None when empty)."""
    if filters is None:
        return None
    if isinstance(filters, FilterExpression):
        return None if filters.is_empty() else filters
    if isinstance(filters, FilterCondition):
        return FilterExpression.all_of(filters)
    if not isinstance(filters, SearchFilters):
        raise InvalidInput(f"Unsupported filter type: {type(filters).__name__}")

    conditions = []
    if filters.document_ids:
        conditions.append(FilterCondition("document_id", "in", list(filters.document_ids)))
    if filters.document_types:
        conditions.append(FilterCondition("type", "in", list(filters.document_types)))
    if filters.authors:
        conditions.append(FilterCondition("author", "in", list(filters.authors)))
    if filters.tags:
        conditions.append(FilterCondition("tags", "in", list(filters.tags)))
    if filters.language:
        conditions.append(FilterCondition("language", "eq", filters.language))
    if filters.date_range:
        start, end = filters.date_range
        if start is not None:
            conditions.append(FilterCondition("created_at", "gte", start))
        if end is not None:
            conditions.append(FilterCondition("created_at", "lte", end))
    if not conditions:
        return None
    return FilterExpression.all_of(*conditions)


def combine(*filters: Optional[FilterExpression]) -> Optional[FilterExpression]:
    """AND together the non-empty filters."""
    present = [f for f in filters if f is not None and not f.is_empty()]
    if not present:
        return None
    if len(present) == 1:
        return present[0]
    return FilterExpression.all_of(*present)


def _as_list(value):
    if isinstance(value, (list, tuple, set, frozenset)):
        return list(value)
    if isinstance(value, str) and "," in value:
        # Vector stores that only keep scalars store lists comma-joined
        return [part.strip() for part in value.split(",")]
    return [value]


def _ordered(actual, expected):
    if isinstance(expected, datetime) or isinstance(actual, datetime):
        return coerce_datetime(actual), coerce_datetime(expected)
    return actual, expected


def _compare(operator: str, actual: Any, expected: Any) -> bool:
    if operator == "eq":
        if isinstance(actual, (list, tuple, set)):
            return expected in actual
        return actual == expected
    if operator == "ne":
        return not _compare("eq", actual, expected)
    if operator == "in":
        return any(item in expected for item in _as_list(actual))
    if operator == "nin":
        return not _compare("in", actual, expected)
    if operator == "contains":
        if isinstance(actual, str):
            return str(expected).lower() in actual.lower()
        return expected in _as_list(actual)
    if operator == "regex":
        return re.search(str(expected), str(actual)) is not None

    left, right = _ordered(actual, expected)
    if left is None or right is None:
        return False
    try:
        if operator == "gt":
            return left > right
        if operator == "gte":
            return left >= right
        if operator == "lt":
            return left < right
        return left <= right
    except TypeError:
        return False
