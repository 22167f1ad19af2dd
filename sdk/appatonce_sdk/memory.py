"""
In-memory socket transport for testing.

This module provides a scripted stand-in for the realtime server for:
- Unit and integration tests of the realtime manager
- Local development without a running server

It plays the server side of the protocol: it answers the handshake,
confirms or rejects subscribe requests, relays channel messages and
presence changes between connections, and lets a test publish change
events or cut the connection.

How to change safely:
    - This is test-support code, changes don't affect production
    - Keep it compatible with the SocketTransport protocol
    - Server replies are scheduled with call_soon, never delivered inline,
      to mirror network asynchrony
"""

from __future__ import annotations

import asyncio
import logging
from collections import defaultdict
from typing import Any, Iterable, Mapping

from .errors import AuthenticationError, TransportError
from .events import (
    CHANNEL_MESSAGE,
    CONNECTED,
    DATABASE_CHANGE,
    DISCONNECTED,
    ERROR,
    JOIN_PRESENCE,
    LEAVE_PRESENCE,
    PRESENCE_UPDATE,
    PUBLISH_CHANNEL,
    SUBSCRIBE_CHANNEL,
    SUBSCRIBE_TABLE,
    SUBSCRIPTION_CONFIRMED,
    SUBSCRIPTION_ERROR,
    UNSUBSCRIBE_CHANNEL,
    UPDATE_PRESENCE,
)
from .transport import Handler

logger = logging.getLogger(__name__)


class InMemoryConnection:
    """One simulated connection.

    Attributes:
        url: URL passed to connect()
        auth_params: Credentials passed to connect()
        sent: Every (event, payload) the client sent, in order
        closed: Whether the connection has ended
    """

    def __init__(
        self,
        transport: InMemorySocketTransport,
        url: str,
        auth_params: dict[str, str],
    ) -> None:
        self._transport = transport
        self.url = url
        self.auth_params = auth_params
        self.sent: list[tuple[str, dict[str, Any]]] = []
        self.closed = False
        self.channels: set[str] = set()
        self.presence: dict[str, str] = {}
        self._handlers: dict[str, Handler] = {}
        self._buffered: dict[str, list[Any]] = defaultdict(list)

    def on(self, event: str, handler: Handler) -> None:
        self._handlers[event] = handler
        for payload in self._buffered.pop(event, []):
            handler(payload)

    async def send(self, event: str, payload: Mapping[str, Any]) -> None:
        if self.closed:
            raise TransportError(f"Cannot send '{event}': connection closed", address=self.url)
        if self._transport.fail_sends:
            raise TransportError(f"Cannot send '{event}': simulated failure", address=self.url)
        message = dict(payload)
        self.sent.append((event, message))
        self._transport._handle_client_message(self, event, message)

    async def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        self._transport._forget(self)
        self.emit(DISCONNECTED, {"reason": "io client disconnect"})

    def emit(self, event: str, payload: Any = None) -> None:
        """Deliver a server message to the client immediately."""
        handler = self._handlers.get(event)
        if handler is None:
            self._buffered[event].append(payload)
            return
        handler(payload)

    def emit_soon(self, event: str, payload: Any = None) -> None:
        """Deliver a server message on the next loop iteration."""
        asyncio.get_running_loop().call_soon(self._emit_if_open, event, payload)

    def _emit_if_open(self, event: str, payload: Any) -> None:
        if not self.closed:
            self.emit(event, payload)

    def drop(self, reason: str = "transport error") -> None:
        """Simulate an unexpected disconnect."""
        if self.closed:
            return
        self.closed = True
        self._transport._forget(self)
        self.emit(DISCONNECTED, {"reason": reason})

    def sent_payloads(self, event: str) -> list[dict[str, Any]]:
        return [payload for name, payload in self.sent if name == event]


class InMemorySocketTransport:
    """Scripted realtime server.

    Example:
        >>> transport = InMemorySocketTransport(reject_tables={"missing"})
        >>> manager = RealtimeSubscriptionManager(transport, "memory://", "key")
        >>> await manager.connect()
        >>> transport.publish("orders", "INSERT", {"id": 1}, sequence=1)
    """

    def __init__(
        self,
        *,
        accept_auth: bool = True,
        auto_confirm: bool = True,
        reject_tables: Iterable[str] = (),
        silent_tables: Iterable[str] = (),
        failing_connects: int = 0,
        refuse_credentials: bool = False,
    ) -> None:
        """Initialize the scripted server.

        Args:
            accept_auth: Answer the handshake with ``connected`` (else ``error``)
            auto_confirm: Answer subscribe requests automatically
            reject_tables: Tables whose subscribe requests are rejected
            silent_tables: Tables whose subscribe requests get no answer
            failing_connects: Number of upcoming connect() calls that fail
            refuse_credentials: Make connect() raise AuthenticationError
        """
        self.accept_auth = accept_auth
        self.auto_confirm = auto_confirm
        self.reject_tables = set(reject_tables)
        self.silent_tables = set(silent_tables)
        self.failing_connects = failing_connects
        self.refuse_credentials = refuse_credentials
        self.fail_sends = False
        self.connect_attempts = 0
        self.connections: list[InMemoryConnection] = []
        self.presence_members: dict[str, dict[str, dict[str, Any]]] = defaultdict(dict)

    @property
    def latest(self) -> InMemoryConnection | None:
        return self.connections[-1] if self.connections else None

    async def connect(self, url: str, auth_params: Mapping[str, str]) -> InMemoryConnection:
        self.connect_attempts += 1

        if self.refuse_credentials:
            raise AuthenticationError("Invalid API key", address=url)
        if self.failing_connects > 0:
            self.failing_connects -= 1
            raise TransportError("Connection refused", address=url, reason="connection refused")

        connection = InMemoryConnection(self, url, dict(auth_params))
        self.connections.append(connection)

        if self.accept_auth:
            connection.emit_soon(CONNECTED, {"message": "authenticated"})
        else:
            connection.emit_soon(ERROR, {"message": "Invalid API key"})

        logger.debug("InMemorySocketTransport connected", extra={"url": url})
        return connection

    def _handle_client_message(
        self,
        connection: InMemoryConnection,
        event: str,
        payload: dict[str, Any],
    ) -> None:
        if event == SUBSCRIBE_TABLE:
            self._answer_subscribe(connection, payload)
        elif event == SUBSCRIBE_CHANNEL:
            connection.channels.add(payload["channel"])
        elif event == UNSUBSCRIBE_CHANNEL:
            connection.channels.discard(payload["channel"])
        elif event == PUBLISH_CHANNEL:
            self.broadcast(payload["channel"], payload.get("message"))
        elif event in (JOIN_PRESENCE, UPDATE_PRESENCE):
            channel, user = payload["channel"], dict(payload["user"])
            user_id = str(user.get("id"))
            connection.presence[channel] = user_id
            members = self.presence_members[channel]
            joined = user_id not in members
            members[user_id] = user
            if joined:
                self.presence_event(channel, joined=[user])
            else:
                self.presence_event(channel, updated=[user])
        elif event == LEAVE_PRESENCE:
            channel = payload["channel"]
            user_id = connection.presence.pop(channel, None)
            if user_id is not None and self.presence_members[channel].pop(user_id, None) is not None:
                self.presence_event(channel, left=[user_id])

    def _forget(self, connection: InMemoryConnection) -> None:
        """Drop a closed connection's presence without telling anyone."""
        for channel, user_id in connection.presence.items():
            self.presence_members[channel].pop(user_id, None)
        connection.presence.clear()

    def _answer_subscribe(self, connection: InMemoryConnection, payload: dict[str, Any]) -> None:
        if not self.auto_confirm:
            return
        table = payload.get("table")
        if table in self.silent_tables:
            return
        reply = {"table": table, "ref": payload.get("ref")}
        if table in self.reject_tables:
            reply["message"] = f"Table '{table}' does not exist"
            connection.emit_soon(SUBSCRIPTION_ERROR, reply)
        else:
            connection.emit_soon(SUBSCRIPTION_CONFIRMED, reply)

    def publish(
        self,
        table: str,
        event_type: str,
        record: Mapping[str, Any],
        *,
        sequence: int | None = None,
        old_record: Mapping[str, Any] | None = None,
    ) -> None:
        """Send a ``database_change`` on the latest open connection."""
        connection = self.latest
        if connection is None or connection.closed:
            return
        payload: dict[str, Any] = {"table": table, "type": event_type, "record": dict(record)}
        if sequence is not None:
            payload["sequence"] = sequence
        if old_record is not None:
            payload["old_record"] = dict(old_record)
        connection.emit(DATABASE_CHANGE, payload)

    def sent(self, event: str | None = None) -> list[tuple[str, dict[str, Any]]]:
        """Every message the client sent across all connections."""
        messages = [message for connection in self.connections for message in connection.sent]
        if event is None:
            return messages
        return [message for message in messages if message[0] == event]

    def broadcast(self, channel: str, message: Any) -> None:
        """Send a ``channel_message`` to every open connection on ``channel``."""
        for connection in self.connections:
            if not connection.closed and channel in connection.channels:
                connection.emit_soon(CHANNEL_MESSAGE, {"channel": channel, "message": message})

    def presence_event(
        self,
        channel: str,
        *,
        joined: Iterable[Mapping[str, Any]] = (),
        left: Iterable[str] = (),
        updated: Iterable[Mapping[str, Any]] = (),
    ) -> None:
        """Send a ``presence_update`` to every open connection present on ``channel``."""
        payload: dict[str, Any] = {"channel": channel}
        for key, values in (("joined", list(joined)), ("left", list(left)), ("updated", list(updated))):
            if values:
                payload[key] = values
        for connection in self.connections:
            if not connection.closed and channel in connection.presence:
                connection.emit_soon(PRESENCE_UPDATE, payload)
