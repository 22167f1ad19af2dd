"""
Socket transport protocol and the Socket.IO implementation.

This module defines the contract the realtime manager needs from a
persistent bidirectional connection, plus the production adapter built on
``python-socketio``:

    transport.connect(url, auth_params) -> connection
    connection.send(event, payload)
    connection.on(event, handler)
    connection.close()

A connection reports loss by invoking its ``disconnected`` handler with
``{"reason": ...}``. Reconnection is never done by the transport itself;
the manager owns that policy.

How to change safely:
    - Protocol changes require updating SocketIOTransport and the in-memory
      transport together
    - Handlers may be registered after connect(); early events are buffered
"""

from __future__ import annotations

import logging
from abc import abstractmethod
from collections import defaultdict
from typing import Any, Callable, Mapping, Protocol, Sequence, runtime_checkable
from urllib.parse import urlencode

import socketio
from socketio import exceptions as socketio_exceptions

from .errors import AuthenticationError, TransportError
from .events import DISCONNECTED

logger = logging.getLogger(__name__)

Handler = Callable[[Any], Any]


@runtime_checkable
class SocketConnection(Protocol):
    """One live connection."""

    @abstractmethod
    async def send(self, event: str, payload: Mapping[str, Any]) -> None:
        """Send a message.

        Raises:
            TransportError: If the connection cannot deliver it
        """
        ...

    @abstractmethod
    def on(self, event: str, handler: Handler) -> None:
        """Register the handler for an incoming message name."""
        ...

    @abstractmethod
    async def close(self) -> None:
        """Close the connection. Safe to call more than once."""
        ...


@runtime_checkable
class SocketTransport(Protocol):
    """Factory for connections."""

    @abstractmethod
    async def connect(self, url: str, auth_params: Mapping[str, str]) -> SocketConnection:
        """Open a connection, presenting ``auth_params`` in the query string.

        Raises:
            AuthenticationError: If the server refuses the credentials outright
            TransportError: If the connection cannot be established
        """
        ...


class SocketIOConnection:
    """SocketConnection over a ``socketio.AsyncClient``.

    Handlers are plain callables run on the event loop; they must not block.

    Events arriving before a handler is registered are buffered and
    replayed on registration, so nothing sent right after the handshake
    is lost.
    """

    def __init__(self, client: socketio.AsyncClient, url: str) -> None:
        self._client = client
        self._url = url
        self._handlers: dict[str, Handler] = {}
        self._buffered: dict[str, list[Any]] = defaultdict(list)
        self._closed = False

        client.on("*", self._on_any)
        client.on("disconnect", self._on_disconnect)

    async def _on_any(self, event: str, *args: Any) -> None:
        payload = args[0] if args else None
        await self._deliver(event, payload)

    async def _on_disconnect(self, *args: Any) -> None:
        reason = str(args[0]) if args else "transport closed"
        await self._deliver(DISCONNECTED, {"reason": reason})

    async def _deliver(self, event: str, payload: Any) -> None:
        handler = self._handlers.get(event)
        if handler is None:
            self._buffered[event].append(payload)
            return
        handler(payload)

    def on(self, event: str, handler: Handler) -> None:
        self._handlers[event] = handler
        for payload in self._buffered.pop(event, []):
            handler(payload)

    async def send(self, event: str, payload: Mapping[str, Any]) -> None:
        if self._closed or not self._client.connected:
            raise TransportError(f"Cannot send '{event}': not connected", address=self._url)
        try:
            await self._client.emit(event, dict(payload))
        except socketio_exceptions.SocketIOError as e:
            raise TransportError(f"Failed to send '{event}': {e}", address=self._url) from e

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        await self._client.disconnect()


class SocketIOTransport:
    """Production transport speaking Socket.IO to the realtime server.

    Example:
        >>> transport = SocketIOTransport()
        >>> connection = await transport.connect("https://api.appatonce.com", {"apiKey": key})
    """

    def __init__(
        self,
        *,
        path: str = "/socket.io/",
        transports: Sequence[str] = ("websocket", "polling"),
        connect_timeout: float = 10.0,
    ) -> None:
        """Initialize transport.

        Args:
            path: Socket.IO endpoint path
            transports: Engine.IO transports in preference order
            connect_timeout: Seconds to wait for the namespace connection
        """
        self._path = path
        self._transports: tuple[str, ...] = tuple(transports)
        self._connect_timeout = connect_timeout

    async def connect(self, url: str, auth_params: Mapping[str, str]) -> SocketIOConnection:
        client = socketio.AsyncClient(reconnection=False, logger=False, engineio_logger=False)
        connection = SocketIOConnection(client, url)
        target = f"{url}?{urlencode(dict(auth_params))}" if auth_params else url

        try:
            await client.connect(
                target,
                transports=list(self._transports),
                socketio_path=self._path,
                wait_timeout=self._connect_timeout,
            )
        except socketio_exceptions.ConnectionError as e:
            message = str(e)
            if _looks_unauthorized(message):
                raise AuthenticationError(f"Realtime server refused credentials: {message}", address=url) from e
            raise TransportError(f"Failed to connect to {url}: {message}", address=url, reason=message) from e

        logger.debug("Socket.IO connected", extra={"url": url, "transport": client.transport()})
        return connection


def _looks_unauthorized(message: str | None) -> bool:
    lowered = (message or "").lower()
    return any(marker in lowered for marker in ("401", "403", "unauthorized", "forbidden", "invalid api key"))
