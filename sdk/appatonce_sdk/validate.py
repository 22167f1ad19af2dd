"""
Query validation for the AppAtOnce SDK.

This module provides validation utilities run before any request is sent:
- Identifier grammar for table and field names
- Structural checks of filter conditions, groups, sort and select specs
- Normalization of caller shorthand (plain lists and dicts) into filter types
- Unknown field detection with suggestions

Invariants:
    - Validation errors are deterministic
    - Errors name the offending field and operator
    - Nothing here performs I/O
"""

from __future__ import annotations

import math
import re
from dataclasses import dataclass
from datetime import date, datetime
from difflib import get_close_matches
from typing import Any, Iterable, Mapping, Sequence

from .errors import UnknownFieldError, ValidationError
from .filters import (
    Connective,
    FilterCondition,
    FilterGroup,
    Operator,
    QueryRequest,
    SelectSpec,
    SortDirection,
    SortField,
    SortSpec,
    condition,
)

# Same grammar the schema layer applies to table and column names
IDENTIFIER_PATTERN = re.compile(r"^[A-Za-z0-9_]+$")

_SCALAR_TYPES = (str, int, float, bool, date, datetime)


@dataclass(frozen=True)
class Issue:
    """One validation problem, tied to the field/operator that caused it."""

    message: str
    field_name: str | None = None
    operator: str | None = None


def is_identifier(name: Any) -> bool:
    return isinstance(name, str) and bool(IDENTIFIER_PATTERN.match(name))


def validate_identifier(name: Any, kind: str = "field") -> None:
    """Raise ValidationError unless ``name`` is alphanumeric/underscore and non-empty."""
    if not is_identifier(name):
        raise ValidationError(
            f"Invalid {kind} name {name!r}: use letters, digits and underscores only",
            field_name=name if isinstance(name, str) else None,
        )


def normalize_request(request: QueryRequest) -> QueryRequest:
    """Coerce caller shorthand into canonical filter types.

    Lists of conditions become an AND group, ``{"field", "operator", "value"}``
    dicts become FilterConditions and ``{"or": [...]}`` / ``{"and": [...]}``
    dicts become nested groups. An empty ``where`` or ``select`` becomes None.

    Raises:
        ValidationError: If a member has an unrecognized shape
    """
    where = request.where
    if where is not None and not isinstance(where, FilterGroup):
        items = list(where)
        where = _coerce_group(items, Connective.AND) if items else None

    order_by = request.order_by
    if order_by is not None and not isinstance(order_by, SortSpec):
        order_by = SortSpec(tuple(_coerce_sort_field(item) for item in order_by))
    if order_by is not None and len(order_by) == 0:
        order_by = None

    select = request.select
    if select is not None and not isinstance(select, SelectSpec):
        if isinstance(select, str):
            select = [part.strip() for part in select.split(",") if part.strip()]
        select = SelectSpec(tuple(dict.fromkeys(select)))
    if select is not None and select.is_all:
        select = None

    return QueryRequest(
        where=where,
        order_by=order_by,
        select=select,
        limit=request.limit,
        offset=request.offset,
    )


def _coerce_member(item: Any) -> FilterCondition | FilterGroup:
    if isinstance(item, (FilterCondition, FilterGroup)):
        return item
    if isinstance(item, Mapping):
        if "field" in item:
            unknown = set(item) - {"field", "operator", "value"}
            if unknown:
                raise ValidationError(
                    f"Unexpected keys {sorted(unknown)} in condition on '{item.get('field')}'",
                    field_name=item.get("field"),
                )
            operator = item.get("operator", "eq")
            return condition(item["field"], operator, item.get("value"))
        if len(item) == 1:
            (key, members), = item.items()
            try:
                connective = Connective(str(key).lower())
            except ValueError:
                raise ValidationError(f"Unknown group connective {key!r}") from None
            if isinstance(members, (str, bytes)) or not isinstance(members, Sequence):
                raise ValidationError(f"Group '{key}' must hold a list of conditions")
            return _coerce_group(list(members), connective)
    raise ValidationError(f"Unrecognized filter member: {item!r}")


def _coerce_group(items: list[Any], connective: Connective) -> FilterGroup:
    return FilterGroup(items=tuple(_coerce_member(i) for i in items), connective=connective)


def _coerce_sort_field(item: Any) -> SortField:
    if isinstance(item, SortField):
        return item
    if isinstance(item, str):
        return SortField(item)
    if isinstance(item, Mapping) and "field" in item:
        direction = str(item.get("direction", "asc")).lower()
        try:
            return SortField(item["field"], SortDirection(direction))
        except ValueError:
            raise ValidationError(
                f"Invalid sort direction {item.get('direction')!r} for field '{item['field']}'",
                field_name=item["field"],
            ) from None
    raise ValidationError(f"Unrecognized sort key: {item!r}")


def _is_scalar(value: Any) -> bool:
    if isinstance(value, float) and not math.isfinite(value):
        return False
    return isinstance(value, _SCALAR_TYPES)


def _check_condition(cond: FilterCondition, issues: list[Issue]) -> None:
    op = cond.operator
    op_name = op.value if isinstance(op, Operator) else str(op)

    if not is_identifier(cond.field):
        issues.append(Issue(f"Invalid field name {cond.field!r}", cond.field, op_name))
        return

    if not isinstance(op, Operator):
        issues.append(Issue(f"Unknown operator {op!r} for field '{cond.field}'", cond.field, op_name))
        return

    value = cond.value
    if op.takes_no_value:
        if value is not None:
            issues.append(
                Issue(f"Operator '{op_name}' on '{cond.field}' takes no value", cond.field, op_name)
            )
    elif op.takes_list:
        if not isinstance(value, (list, tuple)):
            issues.append(
                Issue(
                    f"Operator '{op_name}' on '{cond.field}' requires a list value, "
                    f"got {type(value).__name__}",
                    cond.field,
                    op_name,
                )
            )
        elif not value:
            issues.append(
                Issue(f"Operator '{op_name}' on '{cond.field}' requires a non-empty list", cond.field, op_name)
            )
        else:
            for i, item in enumerate(value):
                if not _is_scalar(item):
                    issues.append(
                        Issue(f"'{cond.field}[{i}]' must be a scalar value", cond.field, op_name)
                    )
                    break
    elif value is None:
        issues.append(
            Issue(
                f"Operator '{op_name}' on '{cond.field}' requires a value; use isNull for null checks",
                cond.field,
                op_name,
            )
        )
    elif op is Operator.LIKE and not isinstance(value, str):
        issues.append(Issue(f"Operator 'like' on '{cond.field}' requires a string pattern", cond.field, op_name))
    elif not _is_scalar(value):
        issues.append(
            Issue(
                f"Operator '{op_name}' on '{cond.field}' requires a scalar value, "
                f"got {type(value).__name__}",
                cond.field,
                op_name,
            )
        )


def _check_group(group: FilterGroup, issues: list[Issue]) -> None:
    if not isinstance(group.connective, Connective):
        issues.append(Issue(f"Invalid group connective {group.connective!r}"))
    if not group.items:
        issues.append(Issue("Filter group must contain at least one condition"))
        return
    for item in group.items:
        if isinstance(item, FilterGroup):
            _check_group(item, issues)
        elif isinstance(item, FilterCondition):
            _check_condition(item, issues)
        else:
            issues.append(Issue(f"Unrecognized filter member: {item!r}"))


def collect_issues(request: QueryRequest) -> list[Issue]:
    """Check a normalized request and return every problem found."""
    issues: list[Issue] = []

    if request.where is not None:
        _check_group(request.where, issues)

    if request.order_by is not None:
        seen = set()
        for sort_field in request.order_by.fields:
            if not is_identifier(sort_field.field):
                issues.append(Issue(f"Invalid sort field name {sort_field.field!r}", sort_field.field))
            elif sort_field.field in seen:
                issues.append(Issue(f"Duplicate sort field '{sort_field.field}'", sort_field.field))
            seen.add(sort_field.field)
            if not isinstance(sort_field.direction, SortDirection):
                issues.append(
                    Issue(f"Invalid sort direction {sort_field.direction!r}", sort_field.field)
                )

    if request.select is not None:
        for name in request.select.fields:
            if not is_identifier(name):
                issues.append(Issue(f"Invalid select field name {name!r}", name))

    for label, value, minimum in (("limit", request.limit, 1), ("offset", request.offset, 0)):
        if value is None:
            continue
        if not isinstance(value, int) or isinstance(value, bool) or value < minimum:
            issues.append(Issue(f"'{label}' must be an integer >= {minimum}, got {value!r}", label))

    return issues


def validate_request(request: QueryRequest) -> tuple[bool, list[str]]:
    """Validate a request.

    Returns:
        Tuple of (is_valid, list_of_errors)
    """
    try:
        normalized = normalize_request(request)
    except ValidationError as e:
        return False, [e.message]
    issues = collect_issues(normalized)
    return len(issues) == 0, [issue.message for issue in issues]


def validate_or_raise(request: QueryRequest) -> QueryRequest:
    """Normalize and validate a request, raising on the first problem.

    Returns:
        The normalized request

    Raises:
        ValidationError: Naming the first offending field/operator, with
            every problem listed in ``errors``
    """
    normalized = normalize_request(request)
    issues = collect_issues(normalized)
    if issues:
        first = issues[0]
        raise ValidationError(
            first.message,
            field_name=first.field_name,
            operator=first.operator,
            errors=[issue.message for issue in issues],
        )
    return normalized


def referenced_fields(request: QueryRequest) -> list[str]:
    """All field names a normalized request mentions, in first-seen order."""
    names: list[str] = []

    def walk(group: FilterGroup) -> None:
        for item in group.items:
            if isinstance(item, FilterGroup):
                walk(item)
            else:
                names.append(item.field)

    if isinstance(request.where, FilterGroup):
        walk(request.where)
    if isinstance(request.order_by, SortSpec):
        names.extend(f.field for f in request.order_by.fields)
    if isinstance(request.select, SelectSpec):
        names.extend(request.select.fields)
    return list(dict.fromkeys(names))


def check_known_fields(
    request: QueryRequest,
    table: str,
    known_fields: Iterable[str],
) -> None:
    """Reject references to columns outside ``known_fields``.

    Raises:
        UnknownFieldError: With close-match suggestions
    """
    known = list(known_fields)
    for name in referenced_fields(normalize_request(request)):
        if name not in known:
            suggestions = get_close_matches(name, known, n=3)
            raise UnknownFieldError(name, table, suggestions)


def suggest_fields(
    partial: str,
    known_fields: Iterable[str],
    limit: int = 5,
) -> list[str]:
    """Suggest field names based on partial input.

    Args:
        partial: Partial field name
        known_fields: Candidate column names
        limit: Maximum suggestions

    Returns:
        List of suggested field names
    """
    known = list(known_fields)
    matches = get_close_matches(partial, known, n=limit)

    # Also include prefix matches
    prefix_matches = [n for n in known if n.lower().startswith(partial.lower())]

    all_matches = list(dict.fromkeys(matches + prefix_matches))
    return all_matches[:limit]
