"""
Canonical query encoding for the AppAtOnce REST API.

A flat query string has no native way to carry nested filters or typed
values, and generic serializers disagree on how to flatten them (bracket
indexes, repeated keys, JSON). This module uses one wire form and nothing
else:

    where=<json>&orderBy=<json>&select=<json>&limit=<int>&offset=<int>

- ``where``, ``orderBy`` and ``select`` are each one compact JSON text,
  percent-encoded as a single parameter value
- ``limit``/``offset`` are plain integers
- Parameters always appear in the order above; absent clauses are omitted

Wire shape of ``where``: a JSON array whose members are ANDed. A member is
either a condition ``{"field", "operator", "value"}`` (no ``value`` key for
``isNull``/``isNotNull``) or a nested group ``{"and": [...]}`` /
``{"or": [...]}``. A top-level OR group is sent as ``[{"or": [...]}]``.

Invariants:
    - encode() is deterministic: equal requests give byte-identical output
    - Invalid requests raise ValidationError before anything is built
    - The caller's request object is never mutated

Example:
    >>> encode(QueryRequest(where=[condition("status", "eq", "active")])).query_string
    'where=%5B%7B%22field%22%3A%22status%22%2C%22operator%22%3A%22eq%22%2C%22value%22%3A%22active%22%7D%5D'
"""

from __future__ import annotations

import json
from dataclasses import dataclass
from datetime import date, datetime
from typing import Any, Mapping
from urllib.parse import quote

from .filters import FilterCondition, FilterGroup, Connective, QueryRequest, SelectSpec, SortSpec
from .validate import validate_or_raise

WHERE_PARAM = "where"
ORDER_BY_PARAM = "orderBy"
SELECT_PARAM = "select"
LIMIT_PARAM = "limit"
OFFSET_PARAM = "offset"

PARAM_ORDER = (WHERE_PARAM, ORDER_BY_PARAM, SELECT_PARAM, LIMIT_PARAM, OFFSET_PARAM)


def _json_default(value: Any) -> Any:
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    raise TypeError(f"Object of type {type(value).__name__} is not JSON serializable")


def canonical_json(value: Any) -> str:
    """Compact, NaN-free JSON text used for every filter value and request body."""
    return json.dumps(
        value,
        separators=(",", ":"),
        ensure_ascii=False,
        allow_nan=False,
        default=_json_default,
    )


def percent_encode(text: str) -> str:
    """RFC 3986 percent-encoding of a whole key or value (nothing kept but unreserved chars)."""
    return quote(text, safe="")


@dataclass(frozen=True)
class TransportRequest:
    """A transport-ready request.

    Attributes:
        method: HTTP method
        path: Path relative to the API base URL
        params: Ordered (name, raw value) pairs, not yet percent-encoded
        body: JSON-compatible body, or None
    """

    method: str = "GET"
    path: str = ""
    params: tuple[tuple[str, str], ...] = ()
    body: Any = None

    @property
    def query_string(self) -> str:
        return "&".join(f"{percent_encode(k)}={percent_encode(v)}" for k, v in self.params)

    @property
    def url(self) -> str:
        qs = self.query_string
        return f"{self.path}?{qs}" if qs else self.path

    def param(self, name: str) -> str | None:
        for key, value in self.params:
            if key == name:
                return value
        return None


def condition_to_wire(cond: FilterCondition) -> dict[str, Any]:
    wire: dict[str, Any] = {"field": cond.field, "operator": cond.operator.value}
    if not cond.operator.takes_no_value:
        value = cond.value
        wire["value"] = list(value) if isinstance(value, tuple) else value
    return wire


def group_to_wire(group: FilterGroup) -> dict[str, Any]:
    return {group.connective.value: [_member_to_wire(item) for item in group.items]}


def _member_to_wire(item: FilterCondition | FilterGroup) -> dict[str, Any]:
    if isinstance(item, FilterGroup):
        return group_to_wire(item)
    return condition_to_wire(item)


def where_to_wire(group: FilterGroup) -> list[dict[str, Any]]:
    """Top-level AND members are listed directly; anything else is wrapped."""
    if group.connective is Connective.AND:
        return [_member_to_wire(item) for item in group.items]
    return [group_to_wire(group)]


def order_by_to_wire(spec: SortSpec) -> list[dict[str, str]]:
    return [{"field": f.field, "direction": f.direction.value} for f in spec.fields]


def select_to_wire(spec: SelectSpec) -> list[str]:
    return list(dict.fromkeys(spec.fields))


def _clauses(request: QueryRequest) -> list[tuple[str, Any]]:
    """Validated (name, wire value) pairs in canonical order."""
    normalized = validate_or_raise(request)
    clauses: list[tuple[str, Any]] = []
    if normalized.where is not None:
        clauses.append((WHERE_PARAM, where_to_wire(normalized.where)))
    if normalized.order_by is not None:
        clauses.append((ORDER_BY_PARAM, order_by_to_wire(normalized.order_by)))
    if normalized.select is not None:
        clauses.append((SELECT_PARAM, select_to_wire(normalized.select)))
    if normalized.limit is not None:
        clauses.append((LIMIT_PARAM, normalized.limit))
    if normalized.offset is not None:
        clauses.append((OFFSET_PARAM, normalized.offset))
    return clauses


def encode_params(request: QueryRequest) -> tuple[tuple[str, str], ...]:
    """Encode a request into ordered query parameters.

    Raises:
        ValidationError: If the request is structurally invalid
    """
    params = []
    for name, value in _clauses(request):
        if name in (LIMIT_PARAM, OFFSET_PARAM):
            params.append((name, str(value)))
        else:
            params.append((name, canonical_json(value)))
    return tuple(params)


def encode(request: QueryRequest, path: str = "", method: str = "GET") -> TransportRequest:
    """Encode a QueryRequest as a query-string request.

    Args:
        request: The query to encode
        path: API path the request targets
        method: HTTP method

    Returns:
        TransportRequest with canonical parameters

    Raises:
        ValidationError: If the request is structurally invalid
    """
    return TransportRequest(method=method.upper(), path=path, params=encode_params(request))


def encode_body(request: QueryRequest, **extra: Any) -> dict[str, Any]:
    """Encode a QueryRequest as a JSON body using the same clause shapes.

    ``extra`` keys are appended after the query clauses; None values are
    dropped.

    Raises:
        ValidationError: If the request is structurally invalid
    """
    body: dict[str, Any] = dict(_clauses(request))
    for key, value in extra.items():
        if value is not None:
            body[key] = value
    return body


def encode_scalar_params(params: Mapping[str, Any]) -> tuple[tuple[str, str], ...]:
    """Encode a flat mapping of plain parameters.

    Booleans become ``true``/``false``; lists and dicts become canonical
    JSON; None values are dropped. Keys keep their mapping order.
    """
    pairs = []
    for key, value in params.items():
        if value is None:
            continue
        if isinstance(value, bool):
            pairs.append((key, "true" if value else "false"))
        elif isinstance(value, (list, tuple, dict)):
            pairs.append((key, canonical_json(list(value) if isinstance(value, tuple) else value)))
        else:
            pairs.append((key, str(value)))
    return tuple(pairs)
