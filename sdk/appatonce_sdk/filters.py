"""
Filter expression types for the AppAtOnce SDK.

This module provides the structured, pre-serialization form of a data query:
- FilterCondition: one ``field operator value`` predicate
- FilterGroup: conditions (or nested groups) joined by one connective
- SortSpec: ordered sort keys
- SelectSpec: projected fields, empty meaning all fields
- QueryRequest: the aggregate handed to the encoder

These are plain frozen values. They are checked and serialized by
``validate`` and ``encoder``; nothing here talks to the network.

Invariants:
    - ``in``/``notIn`` carry a list value, ``isNull``/``isNotNull`` carry none
    - A group has exactly one connective; mixing AND/OR needs a nested group
    - Sort field names are unique within a SortSpec
    - An empty SelectSpec means "all fields", never "no fields"

Example:
    >>> request = QueryRequest(
    ...     where=and_(
    ...         condition("status", "eq", "active"),
    ...         or_(condition("age", "gte", 18), condition("verified", "eq", True)),
    ...     ),
    ...     order_by=SortSpec((desc("score"),)),
    ...     select=SelectSpec(("name", "age")),
    ...     limit=20,
    ... )
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import date, datetime
from enum import Enum
from typing import Any, Sequence

from .errors import ValidationError

Scalar = str | int | float | bool | date | datetime


class Operator(Enum):
    """Supported comparison operators (wire names)."""

    EQ = "eq"
    NEQ = "neq"
    GT = "gt"
    GTE = "gte"
    LT = "lt"
    LTE = "lte"
    IN = "in"
    NOT_IN = "notIn"
    LIKE = "like"
    IS_NULL = "isNull"
    IS_NOT_NULL = "isNotNull"

    @classmethod
    def from_str(cls, value: str) -> Operator:
        """Convert a wire name to an Operator."""
        for op in cls:
            if op.value == value:
                return op
        raise ValueError(f"Invalid operator: {value}")

    @property
    def takes_list(self) -> bool:
        return self in (Operator.IN, Operator.NOT_IN)

    @property
    def takes_no_value(self) -> bool:
        return self in (Operator.IS_NULL, Operator.IS_NOT_NULL)


class Connective(Enum):
    """Logical connective of a FilterGroup."""

    AND = "and"
    OR = "or"


class SortDirection(Enum):
    """Sort direction."""

    ASC = "asc"
    DESC = "desc"


@dataclass(frozen=True)
class FilterCondition:
    """A single predicate.

    Attributes:
        field: Column name (identifier grammar)
        operator: Comparison operator
        value: Scalar, list of scalars, or None for null checks
    """

    field: str
    operator: Operator
    value: Any = None


@dataclass(frozen=True)
class FilterGroup:
    """Conditions and nested groups combined by one connective.

    Attributes:
        items: FilterCondition or FilterGroup members, in order
        connective: AND or OR, applied uniformly to all members
    """

    items: tuple[FilterCondition | FilterGroup, ...]
    connective: Connective = Connective.AND

    def __len__(self) -> int:
        return len(self.items)


@dataclass(frozen=True)
class SortField:
    """One sort key."""

    field: str
    direction: SortDirection = SortDirection.ASC


@dataclass(frozen=True)
class SortSpec:
    """Ordered sort keys; earlier keys take precedence on ties."""

    fields: tuple[SortField, ...] = ()

    def __len__(self) -> int:
        return len(self.fields)


@dataclass(frozen=True)
class SelectSpec:
    """Projected field names. Empty (or ``*``) selects all fields."""

    fields: tuple[str, ...] = ()

    @property
    def is_all(self) -> bool:
        return not self.fields or self.fields == ("*",)


ALL_FIELDS = SelectSpec()


@dataclass(frozen=True)
class QueryRequest:
    """A complete read request.

    Created per call and owned by the caller; the encoder never mutates it.

    A plain list is accepted wherever a group or spec is expected: a list of
    conditions is an AND group, a list of SortField a SortSpec, a list of
    names a SelectSpec.

    Attributes:
        where: Filter tree, None or empty list for no filter
        order_by: Sort keys, None for server default ordering
        select: Projection, None or empty for all fields
        limit: Maximum rows, None for server default
        offset: Rows to skip, None for server default
    """

    where: FilterGroup | Sequence[FilterCondition | FilterGroup] | None = None
    order_by: SortSpec | Sequence[SortField] | None = None
    select: SelectSpec | Sequence[str] | None = None
    limit: int | None = None
    offset: int | None = None


def condition(field: str, operator: str | Operator, value: Any = None) -> FilterCondition:
    """Build a FilterCondition, accepting the operator by wire name.

    Raises:
        ValidationError: If the operator name is unknown
    """
    if isinstance(operator, str):
        try:
            operator = Operator.from_str(operator)
        except ValueError:
            raise ValidationError(
                f"Unknown operator '{operator}' for field '{field}'",
                field_name=field,
                operator=operator,
            ) from None
    return FilterCondition(field=field, operator=operator, value=value)


def and_(*items: FilterCondition | FilterGroup) -> FilterGroup:
    """Group members with AND."""
    return FilterGroup(items=tuple(items), connective=Connective.AND)


def or_(*items: FilterCondition | FilterGroup) -> FilterGroup:
    """Group members with OR."""
    return FilterGroup(items=tuple(items), connective=Connective.OR)


def asc(field: str) -> SortField:
    return SortField(field, SortDirection.ASC)


def desc(field: str) -> SortField:
    return SortField(field, SortDirection.DESC)


def select(fields: Sequence[str]) -> SelectSpec:
    """Build a SelectSpec, dropping repeated names but keeping first-seen order."""
    return SelectSpec(tuple(dict.fromkeys(fields)))
