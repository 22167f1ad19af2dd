"""
AppAtOnce Python SDK - Client library for the AppAtOnce data platform.

This SDK provides:
- A canonical query encoder (filters, sorting, projection, paging)
- Table query builders over the REST API
- A realtime subscription manager that survives reconnects, with
  channel pub/sub and presence

Example:
    >>> from appatonce_sdk import AppAtOnceClient
    >>>
    >>> async with AppAtOnceClient("ak_live_123") as client:
    ...     result = await (
    ...         client.table("users")
    ...         .eq("status", "active")
    ...         .order_by("score", "desc")
    ...         .select("name", "age")
    ...         .execute()
    ...     )
    ...
    ...     client.realtime.on_change(lambda event: print(event.record))
    ...     client.realtime.subscribe("users", ["INSERT", "UPDATE"])
    ...     await client.realtime.connect()

Invariants:
    - Invalid queries fail with ValidationError before any network call
    - Identical queries encode to byte-identical requests
    - Realtime delivery is at-most-once per server sequence

Version: 1.0.0
"""

__version__ = "1.0.0"

from .client import AppAtOnceClient
from .config import ClientSettings
from .encoder import TransportRequest, canonical_json, encode, encode_body
from .errors import (
    AppAtOnceError,
    AuthenticationError,
    ServerError,
    SubscriptionError,
    TransportError,
    UnknownFieldError,
    ValidationError,
)
from .events import ChangeEvent, ChannelMessage, EventType, PresenceUpdate
from .filters import (
    ALL_FIELDS,
    Connective,
    FilterCondition,
    FilterGroup,
    Operator,
    QueryRequest,
    SelectSpec,
    SortDirection,
    SortField,
    SortSpec,
    and_,
    asc,
    condition,
    desc,
    or_,
    select,
)
from .http_client import HttpClient, HttpResponse
from .logging_config import setup_logging
from .memory import InMemorySocketTransport
from .query import QueryBuilder, QueryResult
from .realtime import ConnectionState, RealtimeSubscriptionManager
from .subscriptions import SubscriptionHandle, SubscriptionRegistry, SubscriptionState
from .transport import SocketConnection, SocketIOTransport, SocketTransport
from .validate import validate_request

__all__ = [
    # Version
    "__version__",
    # Client
    "AppAtOnceClient",
    "ClientSettings",
    "HttpClient",
    "HttpResponse",
    "QueryBuilder",
    "QueryResult",
    "setup_logging",
    # Filters
    "ALL_FIELDS",
    "Connective",
    "FilterCondition",
    "FilterGroup",
    "Operator",
    "QueryRequest",
    "SelectSpec",
    "SortDirection",
    "SortField",
    "SortSpec",
    "and_",
    "asc",
    "condition",
    "desc",
    "or_",
    "select",
    # Encoding
    "TransportRequest",
    "canonical_json",
    "encode",
    "encode_body",
    "validate_request",
    # Realtime
    "ChangeEvent",
    "ChannelMessage",
    "ConnectionState",
    "EventType",
    "InMemorySocketTransport",
    "PresenceUpdate",
    "RealtimeSubscriptionManager",
    "SocketConnection",
    "SocketIOTransport",
    "SocketTransport",
    "SubscriptionHandle",
    "SubscriptionRegistry",
    "SubscriptionState",
    # Errors
    "AppAtOnceError",
    "AuthenticationError",
    "ServerError",
    "SubscriptionError",
    "TransportError",
    "UnknownFieldError",
    "ValidationError",
]
