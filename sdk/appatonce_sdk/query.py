"""
Table query builder for the AppAtOnce REST API.

This module provides the fluent interface over ``/data/{table}``:
- QueryBuilder: Collects conditions, sorting, projection and paging,
  then executes reads, mutations, search and aggregation
- QueryResult: Rows plus the total count when the server reports one

Every read goes through the canonical encoder, so the same builder state
always produces the same URL. Bodies that carry filters use the same
``where`` shape as the query parameter.

Example:
    >>> users = client.table("users")
    >>> result = await (
    ...     users.select("name", "age")
    ...     .eq("status", "active")
    ...     .order_by("score", "desc")
    ...     .limit(20)
    ...     .execute()
    ... )
"""

from __future__ import annotations

import copy
import logging
from dataclasses import dataclass, field
from typing import Any, Iterable, Iterator, Sequence
from urllib.parse import quote

from .encoder import TransportRequest, encode, encode_body
from .errors import ValidationError
from .filters import (
    FilterCondition,
    FilterGroup,
    Operator,
    QueryRequest,
    SelectSpec,
    SortDirection,
    SortField,
    SortSpec,
    and_,
    condition,
    or_,
)
from .http_client import HttpClient
from .validate import check_known_fields, validate_identifier

logger = logging.getLogger(__name__)


def _unwrap(body: Any) -> Any:
    """Return the ``data`` member of an enveloped response body."""
    if isinstance(body, dict) and "data" in body:
        return body["data"]
    return body


def _to_number(value: Any) -> float:
    try:
        return float(value)
    except (TypeError, ValueError):
        return 0.0


@dataclass
class QueryResult:
    """Rows returned by a read.

    Attributes:
        data: Row dictionaries in server order
        count: Total matching rows, when the server reports it
    """

    data: list[dict[str, Any]] = field(default_factory=list)
    count: int | None = None

    def __len__(self) -> int:
        return len(self.data)

    def __iter__(self) -> Iterator[dict[str, Any]]:
        return iter(self.data)

    @classmethod
    def from_body(cls, body: Any, items_key: str = "data") -> QueryResult:
        """Parse a list body or an envelope such as ``{"data": [...], "meta": {"total": n}}``."""
        if isinstance(body, list):
            return cls(data=body)
        if not isinstance(body, dict):
            return cls()

        rows = body.get(items_key)
        if not isinstance(rows, list):
            rows = []

        count = body.get("count", body.get("total"))
        meta = body.get("meta")
        if count is None and isinstance(meta, dict):
            count = meta.get("total")
        return cls(data=rows, count=int(count) if count is not None else None)


ConditionLike = FilterCondition | FilterGroup | Sequence[Any]


class QueryBuilder:
    """Fluent query builder bound to one table.

    Builder methods return self for chaining; use clone() to branch.
    Conditions added with where() and its shortcuts are combined with AND.

    Example:
        >>> query = client.table("orders").gte("total", 100).or_where(
        ...     ("status", "eq", "paid"),
        ...     ("status", "eq", "shipped"),
        ... )
        >>> count = await query.count()
    """

    def __init__(
        self,
        http: HttpClient,
        table: str,
        *,
        columns: Iterable[str] | None = None,
    ) -> None:
        """Initialize builder.

        Args:
            http: HTTP client used for execution
            table: Table name
            columns: Known column names; when given, unknown field
                references fail with UnknownFieldError before any request

        Raises:
            ValidationError: If the table name is not a valid identifier
        """
        validate_identifier(table, "table")
        self._http = http
        self._table = table
        self._columns = list(columns) if columns is not None else None
        self._conditions: list[FilterCondition | FilterGroup] = []
        self._order: list[SortField] = []
        self._select: list[str] = []
        self._limit: int | None = None
        self._offset: int | None = None

    @property
    def table(self) -> str:
        return self._table

    @property
    def path(self) -> str:
        return f"/data/{self._table}"

    def clone(self) -> QueryBuilder:
        """Independent copy sharing the HTTP client."""
        other = copy.copy(self)
        other._conditions = list(self._conditions)
        other._order = list(self._order)
        other._select = list(self._select)
        return other

    # =========================================================================
    # Projection and conditions
    # =========================================================================

    def select(self, *fields: str) -> QueryBuilder:
        """Project columns. Accepts names or comma-separated lists; ``*`` means all."""
        for item in fields:
            self._select.extend(name.strip() for name in item.split(",") if name.strip())
        return self

    def where(self, field_name: str, operator: str | Operator = "eq", value: Any = None) -> QueryBuilder:
        """Add a condition.

        Raises:
            ValidationError: If the operator is unknown
        """
        self._conditions.append(condition(field_name, operator, value))
        return self

    def eq(self, field_name: str, value: Any) -> QueryBuilder:
        return self.where(field_name, Operator.EQ, value)

    def neq(self, field_name: str, value: Any) -> QueryBuilder:
        return self.where(field_name, Operator.NEQ, value)

    def gt(self, field_name: str, value: Any) -> QueryBuilder:
        return self.where(field_name, Operator.GT, value)

    def gte(self, field_name: str, value: Any) -> QueryBuilder:
        return self.where(field_name, Operator.GTE, value)

    def lt(self, field_name: str, value: Any) -> QueryBuilder:
        return self.where(field_name, Operator.LT, value)

    def lte(self, field_name: str, value: Any) -> QueryBuilder:
        return self.where(field_name, Operator.LTE, value)

    def like(self, field_name: str, pattern: str) -> QueryBuilder:
        return self.where(field_name, Operator.LIKE, pattern)

    def in_(self, field_name: str, values: Sequence[Any]) -> QueryBuilder:
        return self.where(field_name, Operator.IN, values)

    def not_in(self, field_name: str, values: Sequence[Any]) -> QueryBuilder:
        return self.where(field_name, Operator.NOT_IN, values)

    def is_null(self, field_name: str) -> QueryBuilder:
        return self.where(field_name, Operator.IS_NULL)

    def is_not_null(self, field_name: str) -> QueryBuilder:
        return self.where(field_name, Operator.IS_NOT_NULL)

    def between(self, field_name: str, low: Any, high: Any) -> QueryBuilder:
        """Inclusive range, expressed as gte + lte."""
        return self.gte(field_name, low).lte(field_name, high)

    def or_where(self, *conditions: ConditionLike) -> QueryBuilder:
        """Add a nested OR group.

        Each member is a FilterCondition, a FilterGroup, or a
        ``(field, operator, value)`` tuple.
        """
        members = [self._as_member(item) for item in conditions]
        self._conditions.append(or_(*members))
        return self

    def where_group(self, group: FilterGroup) -> QueryBuilder:
        """Add a prebuilt group as one AND member."""
        self._conditions.append(group)
        return self

    @staticmethod
    def _as_member(item: ConditionLike) -> FilterCondition | FilterGroup:
        if isinstance(item, (FilterCondition, FilterGroup)):
            return item
        if isinstance(item, (list, tuple)) and 2 <= len(item) <= 3:
            return condition(*item)
        raise ValidationError(f"Cannot build a condition from {item!r}")

    # =========================================================================
    # Sorting and paging
    # =========================================================================

    def order_by(self, field_name: str, direction: str | SortDirection = "asc") -> QueryBuilder:
        """Append a sort key; earlier keys take precedence.

        Raises:
            ValidationError: If the direction is not asc/desc
        """
        if isinstance(direction, str):
            try:
                direction = SortDirection(direction.lower())
            except ValueError:
                raise ValidationError(
                    f"Invalid sort direction '{direction}' for field '{field_name}'",
                    field_name=field_name,
                ) from None
        self._order.append(SortField(field_name, direction))
        return self

    def limit(self, count: int) -> QueryBuilder:
        self._limit = count
        return self

    def offset(self, count: int) -> QueryBuilder:
        self._offset = count
        return self

    def paginate(self, page: int, page_size: int = 10) -> QueryBuilder:
        """Select a 1-based page.

        Raises:
            ValidationError: If page or page_size is below 1
        """
        if page < 1 or page_size < 1:
            raise ValidationError(f"Invalid page {page} (size {page_size})")
        self._limit = page_size
        self._offset = (page - 1) * page_size
        return self

    # =========================================================================
    # Encoding
    # =========================================================================

    def build(self) -> QueryRequest:
        """Snapshot the builder as a QueryRequest."""
        return QueryRequest(
            where=and_(*self._conditions) if self._conditions else None,
            order_by=SortSpec(tuple(self._order)) if self._order else None,
            select=SelectSpec(tuple(self._select)) if self._select else None,
            limit=self._limit,
            offset=self._offset,
        )

    def _filter_only(self) -> QueryRequest:
        return QueryRequest(where=and_(*self._conditions) if self._conditions else None)

    def _checked(self, request: QueryRequest) -> QueryRequest:
        if self._columns is not None:
            check_known_fields(request, self._table, self._columns)
        return request

    def to_request(self, suffix: str = "") -> TransportRequest:
        """Encode the current state as a GET request.

        Raises:
            ValidationError: If the query is structurally invalid
            UnknownFieldError: If columns are known and a field is not among them
        """
        return encode(self._checked(self.build()), path=self.path + suffix)

    def _filter_body(self, **extra: Any) -> dict[str, Any]:
        return encode_body(self._checked(self._filter_only()), **extra)

    def _single_id(self) -> Any:
        """The id value when the only condition is ``id eq <value>``."""
        if len(self._conditions) != 1:
            return None
        only = self._conditions[0]
        if isinstance(only, FilterCondition) and only.field == "id" and only.operator is Operator.EQ:
            return only.value
        return None

    def _record_path(self, record_id: Any) -> str:
        return f"{self.path}/{quote(str(record_id), safe='')}"

    # =========================================================================
    # Reads
    # =========================================================================

    async def execute(self) -> QueryResult:
        """Run the query.

        Raises:
            ValidationError: Before any request, if the query is invalid
            TransportError: If the request could not be completed
            ServerError: If the server answered with a non-2xx status
        """
        request = self.to_request()
        response = await self._http.get(request.path, params=request)
        result = QueryResult.from_body(response.data)
        logger.debug("Query executed", extra={"table": self._table, "rows": len(result)})
        return result

    async def first(self) -> dict[str, Any] | None:
        """First matching row, or None."""
        result = await self.clone().limit(1).execute()
        return result.data[0] if result.data else None

    async def count(self) -> int:
        request = encode(self._checked(self._filter_only()), path=f"{self.path}/count")
        response = await self._http.get(request.path, params=request)
        payload = _unwrap(response.data)
        if isinstance(payload, dict):
            return int(payload.get("count") or 0)
        return int(payload or 0)

    async def exists(self) -> bool:
        return await self.count() > 0

    # =========================================================================
    # Mutations
    # =========================================================================

    async def insert(self, data: dict[str, Any]) -> dict[str, Any]:
        response = await self._http.post(self.path, data)
        return _unwrap(response.data)

    async def insert_many(self, rows: Sequence[dict[str, Any]]) -> list[dict[str, Any]]:
        response = await self._http.post(f"{self.path}/bulk", {"data": list(rows)})
        return _unwrap(response.data)

    async def update(self, data: dict[str, Any]) -> list[dict[str, Any]]:
        """Update matching rows.

        A lone ``id eq`` condition updates that record directly; anything
        else sends the filter in the body.
        """
        record_id = self._single_id()
        if record_id is not None:
            response = await self._http.patch(self._record_path(record_id), data)
            return [_unwrap(response.data)]

        response = await self._http.patch(self.path, self._filter_body(data=data))
        payload = _unwrap(response.data)
        return payload if isinstance(payload, list) else [payload]

    async def upsert(
        self,
        data: dict[str, Any],
        conflict_fields: Sequence[str] = ("id",),
    ) -> dict[str, Any]:
        for name in conflict_fields:
            validate_identifier(name)
        response = await self._http.post(
            f"{self.path}/upsert",
            {"data": data, "conflictFields": list(conflict_fields)},
        )
        return _unwrap(response.data)

    async def delete(self) -> int:
        """Delete matching rows. Returns the number deleted."""
        record_id = self._single_id()
        if record_id is not None:
            response = await self._http.delete(self._record_path(record_id))
            payload = _unwrap(response.data)
            return 1 if isinstance(payload, dict) and payload.get("deleted") else 0

        response = await self._http.delete(self.path, self._filter_body())
        payload = _unwrap(response.data)
        return int(payload.get("count") or 0) if isinstance(payload, dict) else 0

    # =========================================================================
    # Search and aggregation
    # =========================================================================

    async def search(
        self,
        query: str,
        *,
        fields: Sequence[str] | None = None,
        highlight: bool = False,
        limit: int = 10,
    ) -> QueryResult:
        """Full-text search within the current filter."""
        for name in fields or ():
            validate_identifier(name)
        body = self._filter_body(
            query=query,
            fields=list(fields) if fields else None,
            highlight=highlight,
            limit=limit,
        )
        response = await self._http.post(f"{self.path}/search", body)
        return QueryResult.from_body(_unwrap(response.data), items_key="results")

    async def aggregate(
        self,
        functions: Sequence[str],
        *,
        group_by: Sequence[str] | None = None,
    ) -> dict[str, Any]:
        """Run aggregate functions (e.g. ``count(*)``, ``sum(total)``) over the filter."""
        for name in group_by or ():
            validate_identifier(name)
        body = self._filter_body(
            functions=list(functions),
            groupBy=list(group_by) if group_by else None,
        )
        response = await self._http.post(f"{self.path}/aggregate", body)
        return _unwrap(response.data)

    async def _single_aggregate(self, function: str, field_name: str) -> Any:
        validate_identifier(field_name)
        response = await self._http.post(
            f"{self.path}/aggregate",
            self._filter_body(**{function: [field_name]}),
        )
        payload = _unwrap(response.data)
        return payload.get(f"{function}_{field_name}") if isinstance(payload, dict) else None

    async def sum(self, field_name: str) -> float:
        return _to_number(await self._single_aggregate("sum", field_name))

    async def avg(self, field_name: str) -> float:
        return _to_number(await self._single_aggregate("avg", field_name))

    async def min(self, field_name: str) -> Any:
        return await self._single_aggregate("min", field_name)

    async def max(self, field_name: str) -> Any:
        return await self._single_aggregate("max", field_name)
