"""
AppAtOnce client for Python SDK.

This module provides the main client interface:
- AppAtOnceClient: HTTP client, table query builders and the realtime
  manager behind one object

Example:
    >>> async with AppAtOnceClient("ak_live_123") as client:
    ...     rows = await client.table("users").eq("status", "active").execute()
    ...     client.realtime.on_change(print)
    ...     client.realtime.subscribe("users", ["INSERT"])
    ...     await client.realtime.connect()

Invariants:
    - One HttpClient and at most one realtime manager per client
    - The realtime connection is opened only when first used
    - close() releases both
"""

from __future__ import annotations

import logging
from typing import Any, Iterable

import httpx

from .config import ClientSettings
from .errors import ValidationError
from .http_client import HttpClient
from .logging_config import setup_logging
from .query import QueryBuilder
from .realtime import RealtimeSubscriptionManager
from .transport import SocketIOTransport, SocketTransport

logger = logging.getLogger(__name__)


class AppAtOnceClient:
    """Client for an AppAtOnce project.

    Settings come from ``settings`` (or the ``APPATONCE_*`` environment),
    with explicit keyword arguments taking precedence.
    """

    def __init__(
        self,
        api_key: str | None = None,
        *,
        settings: ClientSettings | None = None,
        base_url: str | None = None,
        realtime_url: str | None = None,
        timeout: float | None = None,
        http_transport: httpx.AsyncBaseTransport | None = None,
        socket_transport: SocketTransport | None = None,
    ) -> None:
        """Initialize client.

        Args:
            api_key: Project API key
            settings: Preloaded settings; read from the environment if omitted
            base_url: REST API base URL override
            realtime_url: Realtime server URL override
            timeout: HTTP timeout override in seconds
            http_transport: Optional httpx transport (tests)
            socket_transport: Optional realtime transport (tests)

        Raises:
            ValidationError: If no API key is configured
        """
        settings = settings or ClientSettings()
        overrides: dict[str, Any] = {
            "api_key": api_key,
            "base_url": base_url,
            "realtime_url": realtime_url,
            "timeout": timeout,
        }
        overrides = {k: v for k, v in overrides.items() if v is not None}
        if overrides:
            settings = settings.model_copy(update=overrides)

        if not settings.api_key:
            raise ValidationError("API key is required (pass api_key or set APPATONCE_API_KEY)")

        if settings.debug:
            setup_logging("DEBUG")

        self.settings = settings
        self.http = HttpClient(
            settings.api_key,
            settings.base_url,
            timeout=settings.timeout,
            transport=http_transport,
        )
        self._socket_transport = socket_transport
        self._realtime: RealtimeSubscriptionManager | None = None

    @classmethod
    def from_env(cls, **kwargs: Any) -> AppAtOnceClient:
        """Build a client from ``APPATONCE_*`` environment variables."""
        return cls(settings=ClientSettings(), **kwargs)

    def table(self, name: str, *, columns: Iterable[str] | None = None) -> QueryBuilder:
        """Start a query on ``name``.

        Raises:
            ValidationError: If the table name is not a valid identifier
        """
        return QueryBuilder(self.http, name, columns=columns)

    @property
    def realtime(self) -> RealtimeSubscriptionManager:
        """The realtime manager, created on first access."""
        if self._realtime is None:
            settings = self.settings
            transport = self._socket_transport or SocketIOTransport(
                path=settings.realtime_path,
                connect_timeout=settings.handshake_timeout,
            )
            self._realtime = RealtimeSubscriptionManager(
                transport,
                settings.resolved_realtime_url,
                settings.api_key,
                handshake_timeout=settings.handshake_timeout,
                subscribe_timeout=settings.subscribe_timeout,
                reconnect_initial_delay=settings.reconnect_initial_delay,
                reconnect_max_delay=settings.reconnect_max_delay,
                max_reconnect_attempts=settings.max_reconnect_attempts,
            )
            logger.debug("Realtime manager created", extra={"url": settings.resolved_realtime_url})
        return self._realtime

    def set_api_key(self, api_key: str) -> None:
        """Replace the API key for subsequent HTTP requests and new realtime managers."""
        self.settings = self.settings.model_copy(update={"api_key": api_key})
        self.http.set_api_key(api_key)

    async def close(self) -> None:
        """Close the realtime connection and the HTTP client."""
        if self._realtime is not None:
            await self._realtime.close()
            self._realtime = None
        await self.http.close()

    async def __aenter__(self) -> AppAtOnceClient:
        return self

    async def __aexit__(self, *args: Any) -> None:
        await self.close()
