"""
Realtime subscription manager.

The manager keeps one persistent connection to the realtime server and
makes the application's table subscriptions survive connection loss:

    connect() -> [CONNECTING] -> [AUTHENTICATING] -> [READY]
                      ^                                  |
                      |         backoff sleep            | disconnect
                      +----------------------------------+
                                                         |
                        auth rejected / retries exhausted -> [FAILED]

The SubscriptionRegistry holds what the application wants. On every
transition to READY the manager sends one subscribe request for each
entry that is not yet confirmed (reconciliation). Change events are
delivered only for tables with a confirmed subscription, only once per
server sequence number, and always in arrival order.

Channels and presence rooms (see channels.py) are re-asserted the same
way: every READY transition re-sends ``subscribe_channel`` and
``join_presence`` for each entry, with the latest user info.

Concurrency model:
    - A single supervisor task owns the connection and all registry
      mutations driven by server messages
    - Transport callbacks only enqueue onto the supervisor's inbox
    - A separate dispatcher task runs application callbacks, so a slow
      callback never stalls the connection

How to change safely:
    - Every message carries the session number it arrived on; messages
      from an earlier connection are discarded
    - Keep subscribe() and the other intent methods synchronous
    - publish() and update_presence() send directly and surface
      TransportError to the caller; they never queue for later
    - Never deliver a change without checking registry.accepts()
"""

from __future__ import annotations

import asyncio
import functools
import inspect
import logging
from collections import deque
from enum import Enum
from typing import Any, Callable, Iterable, Mapping

from .channels import (
    Channel,
    ChannelCallback,
    PresenceCallback,
    PresenceRoom,
    validate_channel_name,
)
from .errors import (
    AppAtOnceError,
    AuthenticationError,
    SubscriptionError,
    TransportError,
    ValidationError,
)
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
    SERVER_EVENTS,
    SUBSCRIBE_CHANNEL,
    SUBSCRIBE_TABLE,
    SUBSCRIPTION_CONFIRMED,
    SUBSCRIPTION_ERROR,
    UNSUBSCRIBE_CHANNEL,
    UNSUBSCRIBE_TABLE,
    UPDATE_PRESENCE,
    ChangeEvent,
    ChannelMessage,
    PresenceUpdate,
    event_names,
    event_set,
)
from .subscriptions import (
    Subscription,
    SubscriptionHandle,
    SubscriptionRegistry,
    SubscriptionState,
)
from .transport import SocketConnection, SocketTransport
from .validate import validate_identifier

logger = logging.getLogger(__name__)

DEFAULT_DEDUPE_WINDOW = 1024

# Inbox items produced by the manager itself
_RECONCILE = "__reconcile__"
_SEND = "__send__"
_CONFIRM_TIMEOUT = "__confirm_timeout__"

ChangeCallback = Callable[[ChangeEvent], Any]
StateCallback = Callable[["ConnectionState"], Any]
ErrorCallback = Callable[[Exception], Any]


class ConnectionState(Enum):
    """Lifecycle of the realtime connection."""

    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    AUTHENTICATING = "authenticating"
    READY = "ready"
    FAILED = "failed"


def reconnect_delay(attempt: int, initial: float, maximum: float) -> float:
    """Backoff before reconnect attempt ``attempt`` (1-based)."""
    return min(initial * (2 ** max(attempt - 1, 0)), maximum)


class SequenceWindow:
    """Bounded set of recently seen server sequence numbers for one table."""

    def __init__(self, size: int = DEFAULT_DEDUPE_WINDOW) -> None:
        self._size = size
        self._order: deque[int] = deque()
        self._seen: set[int] = set()

    def __len__(self) -> int:
        return len(self._order)

    def admit(self, sequence: int) -> bool:
        """Record ``sequence``; False if it was already seen."""
        if sequence in self._seen:
            return False
        self._seen.add(sequence)
        self._order.append(sequence)
        if len(self._order) > self._size:
            self._seen.discard(self._order.popleft())
        return True


def _message(payload: Any, default: str) -> str:
    if isinstance(payload, str) and payload:
        return payload
    if isinstance(payload, dict):
        text = payload.get("message") or payload.get("error")
        if text:
            return str(text)
    return default


def _field(payload: Any, name: str) -> str | None:
    if isinstance(payload, dict):
        value = payload.get(name)
        return str(value) if value is not None else None
    return None


class RealtimeSubscriptionManager:
    """Connection lifecycle, subscription registry and change dispatch.

    Example:
        >>> manager = RealtimeSubscriptionManager(SocketIOTransport(), url, api_key)
        >>> manager.on_change(print)
        >>> handle = manager.subscribe("orders", ["INSERT"])
        >>> await manager.connect()
        >>> ...
        >>> await manager.close()
    """

    def __init__(
        self,
        transport: SocketTransport,
        url: str,
        api_key: str,
        *,
        handshake_timeout: float = 10.0,
        subscribe_timeout: float = 10.0,
        reconnect_initial_delay: float = 1.0,
        reconnect_max_delay: float = 30.0,
        max_reconnect_attempts: int = 5,
        dedupe_window: int = DEFAULT_DEDUPE_WINDOW,
    ) -> None:
        """Initialize the manager. No I/O happens until connect().

        Args:
            transport: Connection factory
            url: Realtime server URL
            api_key: Tenant API key, sent in the connection query
            handshake_timeout: Seconds to wait for the server's ``connected``
            subscribe_timeout: Seconds to wait for a subscribe answer
            reconnect_initial_delay: First backoff delay in seconds
            reconnect_max_delay: Backoff ceiling in seconds
            max_reconnect_attempts: Consecutive failed attempts before giving up
            dedupe_window: Sequence numbers remembered per table
        """
        self._transport = transport
        self._url = url
        self._api_key = api_key
        self._handshake_timeout = handshake_timeout
        self._subscribe_timeout = subscribe_timeout
        self._reconnect_initial_delay = reconnect_initial_delay
        self._reconnect_max_delay = reconnect_max_delay
        self._max_reconnect_attempts = max_reconnect_attempts
        self._dedupe_window = dedupe_window

        self._registry = SubscriptionRegistry()
        self._channels: dict[str, Channel] = {}
        self._presence: dict[str, PresenceRoom] = {}
        self._windows: dict[str, SequenceWindow] = {}
        self._state = ConnectionState.DISCONNECTED
        self._connection: SocketConnection | None = None
        self._session = 0
        self._reconnect_attempts = 0
        self._error: AppAtOnceError | None = None
        self._closed = False

        self._inbox: asyncio.Queue | None = None
        self._deliveries: asyncio.Queue | None = None
        self._settled: asyncio.Event | None = None
        self._stopping: asyncio.Event | None = None
        self._supervisor_task: asyncio.Task | None = None
        self._dispatcher_task: asyncio.Task | None = None
        self._timers: dict[str, asyncio.TimerHandle] = {}

        self._change_callbacks: list[ChangeCallback] = []
        self._state_callbacks: list[StateCallback] = []
        self._error_callbacks: list[ErrorCallback] = []

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def error(self) -> AppAtOnceError | None:
        """The fatal error, once the manager is FAILED."""
        return self._error

    @property
    def closed(self) -> bool:
        return self._closed

    # =========================================================================
    # Public API
    # =========================================================================

    async def connect(self) -> None:
        """Start the connection and wait until it is READY or FAILED.

        Raises:
            AuthenticationError: If the server rejected the API key
            TransportError: If the server could not be reached within the
                reconnect limit, or the manager is closed
        """
        if self._closed:
            raise TransportError("Realtime manager is closed", address=self._url)
        self._start()
        await self._settled.wait()
        if self._error is not None:
            raise self._error
        if self._closed:
            raise TransportError("Realtime manager is closed", address=self._url)

    def subscribe(self, table: str, events: Iterable[Any] | None = None) -> SubscriptionHandle:
        """Register interest in changes to ``table``.

        Idempotent for the same (table, events): the existing handle is
        returned and no extra subscribe request is sent. A FAILED entry is
        offered to the server again.

        Args:
            table: Table name
            events: Event types (names or EventType); None means all

        Returns:
            Handle identifying the subscription

        Raises:
            ValidationError: If the table name or event set is invalid
            TransportError: If the manager is closed or FAILED
        """
        self._ensure_running()
        validate_identifier(table, "table")
        try:
            wanted = event_set(events)
        except ValueError as e:
            raise ValidationError(str(e), field_name=table) from None

        sub, created = self._registry.add(table, wanted)
        if not created and sub.state is not SubscriptionState.FAILED:
            return sub.handle

        logger.debug(
            "Subscription registered" if created else "Retrying failed subscription",
            extra={"table": table, "events": event_names(wanted)},
        )
        if self._state is ConnectionState.READY:
            self._post(_RECONCILE)
        return sub.handle

    def unsubscribe(self, handle: SubscriptionHandle) -> None:
        """Remove a subscription. Unknown handles are ignored.

        Delivery for the handle stops immediately. The server is told only
        when no other subscription on the same table remains.
        """
        ref = None
        existing = self._registry.get(handle)
        if existing is not None:
            ref = existing.ref
        sub = self._registry.remove(handle)
        if sub is None:
            return
        if ref is not None:
            self._cancel_timer(ref)

        if self._registry.for_table(sub.table):
            return
        self._windows.pop(sub.table, None)
        logger.debug("Subscription removed", extra={"table": sub.table})
        if self._state is ConnectionState.READY:
            self._post(
                _SEND,
                (
                    UNSUBSCRIBE_TABLE,
                    {"table": sub.table, "events": event_names(sub.events), "ref": sub.handle.id},
                ),
            )

    # =========================================================================
    # Channels and presence
    # =========================================================================

    def subscribe_channel(self, channel: str, callback: ChannelCallback) -> Callable[[], None]:
        """Listen for messages published on ``channel``.

        Several callbacks may share a channel; the server is asked once.

        Returns:
            Remover for this callback; removing the last one leaves the channel

        Raises:
            ValidationError: If the channel name is invalid
            TransportError: If the manager is closed or FAILED
        """
        self._ensure_running()
        validate_channel_name(channel)
        entry = self._channels.get(channel)
        if entry is None:
            entry = self._channels[channel] = Channel(channel)
            logger.debug("Channel registered", extra={"channel": channel})
            if self._state is ConnectionState.READY:
                self._post(_RECONCILE)
        entry.callbacks.append(callback)

        def remove() -> None:
            current = self._channels.get(channel)
            if current is not entry or callback not in entry.callbacks:
                return
            entry.callbacks.remove(callback)
            if not entry.callbacks:
                self.unsubscribe_channel(channel)

        return remove

    def unsubscribe_channel(self, channel: str) -> None:
        """Stop listening on ``channel``. Unknown channels are ignored."""
        entry = self._channels.pop(channel, None)
        if entry is None:
            return
        logger.debug("Channel removed", extra={"channel": channel})
        if self._state is ConnectionState.READY and entry.session == self._session:
            self._post(_SEND, (UNSUBSCRIBE_CHANNEL, {"channel": channel}))

    def channels(self) -> list[str]:
        return list(self._channels)

    async def publish(self, channel: str, message: Any) -> None:
        """Publish ``message`` to everyone listening on ``channel``.

        Raises:
            ValidationError: If the channel name is invalid
            TransportError: If the connection is not READY or the send fails
        """
        validate_channel_name(channel)
        self._ensure_ready(f"publish to '{channel}'")
        await self._send(PUBLISH_CHANNEL, {"channel": channel, "message": message})

    def join_presence(
        self,
        channel: str,
        user: Mapping[str, Any],
        callback: PresenceCallback | None = None,
    ) -> Callable[[], None]:
        """Join a presence channel as ``user``.

        Joining a channel again replaces the user info and callback and
        re-sends the join.

        Returns:
            Remover that leaves the channel

        Raises:
            ValidationError: If the channel name or user info is invalid
            TransportError: If the manager is closed or FAILED
        """
        self._ensure_running()
        validate_channel_name(channel)
        if not isinstance(user, Mapping):
            raise ValidationError("Presence user info must be an object", field_name="user")

        room = PresenceRoom(channel=channel, user=dict(user), callback=callback)
        self._presence[channel] = room
        logger.debug("Presence joined", extra={"channel": channel})
        if self._state is ConnectionState.READY:
            self._post(_RECONCILE)

        def remove() -> None:
            if self._presence.get(channel) is room:
                self.leave_presence(channel)

        return remove

    async def update_presence(self, channel: str, user: Mapping[str, Any]) -> None:
        """Replace the user info announced on a joined presence channel.

        While disconnected the new info is kept and used for the rejoin.

        Raises:
            ValidationError: If the channel has not been joined
            TransportError: If the send fails
        """
        room = self._presence.get(channel)
        if room is None:
            raise ValidationError(f"Presence channel '{channel}' has not been joined", field_name="channel")
        room.user = dict(user)
        if self._state is ConnectionState.READY and room.session == self._session:
            await self._send(UPDATE_PRESENCE, {"channel": channel, "user": room.user})

    def leave_presence(self, channel: str) -> None:
        """Leave a presence channel. Unknown channels are ignored."""
        room = self._presence.pop(channel, None)
        if room is None:
            return
        logger.debug("Presence left", extra={"channel": channel})
        if self._state is ConnectionState.READY and room.session == self._session:
            self._post(_SEND, (LEAVE_PRESENCE, {"channel": channel}))

    def presence(self, channel: str) -> dict[str, Mapping[str, Any]]:
        """Members currently reported on a joined presence channel, by id."""
        room = self._presence.get(channel)
        return dict(room.members) if room is not None else {}

    def on_change(self, callback: ChangeCallback) -> Callable[[], None]:
        """Register a change callback (sync or async). Returns a remover."""
        return self._add_callback(self._change_callbacks, callback)

    def on_state_change(self, callback: StateCallback) -> Callable[[], None]:
        """Register a connection state callback. Returns a remover."""
        return self._add_callback(self._state_callbacks, callback)

    def on_error(self, callback: ErrorCallback) -> Callable[[], None]:
        """Register an error callback. Returns a remover."""
        return self._add_callback(self._error_callbacks, callback)

    def subscription_state(self, handle: SubscriptionHandle) -> SubscriptionState | None:
        sub = self._registry.get(handle)
        return sub.state if sub is not None else None

    def subscriptions(self) -> list[SubscriptionHandle]:
        return [sub.handle for sub in self._registry]

    def status(self) -> dict[str, Any]:
        """Snapshot of the connection for diagnostics."""
        subs = list(self._registry)
        return {
            "state": self._state.value,
            "connected": self._state is ConnectionState.READY,
            "url": self._url,
            "reconnect_attempts": self._reconnect_attempts,
            "max_reconnect_attempts": self._max_reconnect_attempts,
            "subscriptions": len(subs),
            "confirmed": sum(1 for sub in subs if sub.state is SubscriptionState.CONFIRMED),
            "channels": len(self._channels),
            "presence": len(self._presence),
            "error": self._error.message if self._error is not None else None,
        }

    async def close(self) -> None:
        """Stop everything. Idempotent; no callback runs after this returns."""
        if self._closed:
            return
        self._closed = True
        if self._stopping is not None:
            self._stopping.set()
        self._cancel_all_timers()

        current = asyncio.current_task()
        tasks = [
            task
            for task in (self._supervisor_task, self._dispatcher_task)
            if task is not None and task is not current and not task.done()
        ]
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

        await self._close_connection()

        if self._deliveries is not None:
            while not self._deliveries.empty():
                self._deliveries.get_nowait()
        self._registry.clear()
        self._windows.clear()
        self._channels.clear()
        self._presence.clear()
        if self._state is not ConnectionState.FAILED:
            self._set_state(ConnectionState.DISCONNECTED)
        if self._settled is not None:
            self._settled.set()
        logger.info("Realtime manager closed", extra={"url": self._url})

    async def __aenter__(self) -> RealtimeSubscriptionManager:
        await self.connect()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.close()

    # =========================================================================
    # Supervisor
    # =========================================================================

    def _start(self) -> None:
        if self._supervisor_task is not None:
            return
        self._inbox = asyncio.Queue()
        self._deliveries = asyncio.Queue()
        self._settled = asyncio.Event()
        self._stopping = asyncio.Event()
        self._supervisor_task = asyncio.create_task(self._supervise())
        self._supervisor_task.add_done_callback(self._on_supervisor_done)
        self._dispatcher_task = asyncio.create_task(self._dispatch_loop())

    def _on_supervisor_done(self, task: asyncio.Task) -> None:
        """Make sure connect() never waits on a supervisor that has died."""
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None and self._error is None and not self._closed:
            logger.error(
                f"Realtime supervisor crashed: {exc}",
                exc_info=exc,
                extra={"url": self._url},
            )
            self._error = TransportError(
                f"Realtime supervisor crashed: {exc}",
                address=self._url,
                reason=type(exc).__name__,
            )
            self._set_state(ConnectionState.FAILED)
            self._report(self._error)
        self._settled.set()

    async def _supervise(self) -> None:
        failures = 0
        while not self._closed:
            reason: str | None
            try:
                await self._open_session()
            except AuthenticationError as e:
                await self._fail(e)
                return
            except TransportError as e:
                reason = e.reason or e.message
                logger.warning(
                    "Realtime connection attempt failed",
                    extra={"url": self._url, "error": e.message, "attempt": failures + 1},
                )
            except Exception as e:
                # A misbehaving transport counts as a failed attempt
                reason = type(e).__name__
                logger.warning(
                    f"Realtime connection attempt failed: {e}",
                    exc_info=True,
                    extra={"url": self._url, "attempt": failures + 1},
                )
            else:
                failures = 0
                self._reconnect_attempts = 0
                reason = await self._serve()
                logger.warning("Realtime connection lost", extra={"url": self._url, "reason": reason})

            if self._closed:
                return
            await self._end_session()

            failures += 1
            self._reconnect_attempts = failures
            if failures > self._max_reconnect_attempts:
                await self._fail(
                    TransportError(
                        f"Giving up after {failures - 1} reconnect attempts",
                        address=self._url,
                        reason=reason,
                    )
                )
                return

            delay = reconnect_delay(failures, self._reconnect_initial_delay, self._reconnect_max_delay)
            logger.info(
                "Reconnecting to realtime server",
                extra={"url": self._url, "attempt": failures, "delay": delay},
            )
            await self._pause(delay)

    async def _open_session(self) -> None:
        self._session += 1
        session = self._session

        self._set_state(ConnectionState.CONNECTING)
        try:
            connection = await self._transport.connect(self._url, {"apiKey": self._api_key})
        except OSError as e:
            raise TransportError(f"Failed to connect to {self._url}: {e}", address=self._url, reason=str(e)) from e

        self._connection = connection
        for name in SERVER_EVENTS + (DISCONNECTED,):
            connection.on(name, functools.partial(self._accept, session, name))

        self._set_state(ConnectionState.AUTHENTICATING)
        try:
            await asyncio.wait_for(self._await_handshake(session), self._handshake_timeout)
        except asyncio.TimeoutError:
            raise TransportError(
                "Realtime handshake timed out",
                address=self._url,
                reason="handshake timeout",
            ) from None

        self._set_state(ConnectionState.READY)
        logger.info("Realtime connection ready", extra={"url": self._url, "session": session})
        self._settled.set()
        await self._reconcile()

    async def _await_handshake(self, session: int) -> None:
        while True:
            msg_session, name, payload = await self._inbox.get()
            if msg_session != session:
                continue
            if name == CONNECTED:
                return
            if name == ERROR:
                raise AuthenticationError(_message(payload, "Authentication failed"), address=self._url)
            if name == DISCONNECTED:
                raise TransportError(
                    "Disconnected during handshake",
                    address=self._url,
                    reason=_field(payload, "reason"),
                )

    async def _serve(self) -> str | None:
        """Process inbox items until the connection is lost. Returns the reason."""
        session = self._session
        while True:
            msg_session, name, payload = await self._inbox.get()
            if msg_session != session:
                continue
            if name == DISCONNECTED:
                return _field(payload, "reason")
            try:
                await self._handle(name, payload)
            except TransportError as e:
                return e.reason or e.message
            except Exception as e:
                logger.error(f"Failed to handle realtime message '{name}': {e}", exc_info=True)
                self._report(e)

    async def _handle(self, name: str, payload: Any) -> None:
        if name == SUBSCRIPTION_CONFIRMED:
            self._on_confirmed(payload)
        elif name == SUBSCRIPTION_ERROR:
            self._on_rejected(payload)
        elif name == DATABASE_CHANGE:
            self._on_database_change(payload)
        elif name == _CONFIRM_TIMEOUT:
            self._on_confirm_timeout(payload)
        elif name == _RECONCILE:
            await self._reconcile()
        elif name == _SEND:
            event, body = payload
            await self._send(event, body)
        elif name == CHANNEL_MESSAGE:
            self._on_channel_message(payload)
        elif name == PRESENCE_UPDATE:
            self._on_presence_update(payload)
        elif name == ERROR:
            details = payload if isinstance(payload, dict) else {"payload": payload}
            self._report(AppAtOnceError(_message(payload, "Realtime server error"), code="REALTIME_ERROR", details=details))

    async def _end_session(self) -> None:
        # connect() waits for the next READY or FAILED
        self._settled.clear()
        self._cancel_all_timers()
        self._registry.reset_for_reconnect()
        for room in self._presence.values():
            room.members.clear()
        await self._close_connection()
        self._set_state(ConnectionState.DISCONNECTED)

    async def _pause(self, delay: float) -> None:
        try:
            await asyncio.wait_for(self._stopping.wait(), delay)
        except asyncio.TimeoutError:
            return

    async def _fail(self, error: AppAtOnceError) -> None:
        self._error = error
        self._cancel_all_timers()
        self._registry.fail_all(error.message)
        await self._close_connection()
        self._set_state(ConnectionState.FAILED)
        logger.error(
            f"Realtime connection failed: {error.message}",
            extra={"url": self._url, "code": error.code},
        )
        self._report(error)
        self._settled.set()

    async def _close_connection(self) -> None:
        connection, self._connection = self._connection, None
        if connection is None:
            return
        try:
            await connection.close()
        except TransportError as e:
            logger.debug("Error closing realtime connection", extra={"error": e.message})

    # =========================================================================
    # Subscriptions
    # =========================================================================

    async def _reconcile(self) -> None:
        """Assert every subscription, channel and presence room on this connection.

        Table subscriptions wait for the server's confirmation. Channels and
        presence rooms have no acknowledgement, so a successful send counts.
        """
        for sub in self._registry.unconfirmed():
            if sub.handle not in self._registry or sub.in_flight:
                continue
            ref = self._registry.begin_request(sub)
            self._arm_timer(ref)
            try:
                await self._send(
                    SUBSCRIBE_TABLE,
                    {"table": sub.table, "events": event_names(sub.events), "ref": ref},
                )
            except Exception:
                self._cancel_timer(ref)
                self._registry.abandon_request(sub)
                raise
            logger.debug("Subscribe requested", extra={"table": sub.table, "ref": ref})

        session = self._session
        for entry in list(self._channels.values()):
            if entry.session == session or self._channels.get(entry.name) is not entry:
                continue
            await self._send(SUBSCRIBE_CHANNEL, {"channel": entry.name})
            entry.session = session
            logger.debug("Channel subscribe sent", extra={"channel": entry.name})

        for room in list(self._presence.values()):
            if room.session == session or self._presence.get(room.channel) is not room:
                continue
            await self._send(JOIN_PRESENCE, {"channel": room.channel, "user": room.user})
            room.session = session
            logger.debug("Presence join sent", extra={"channel": room.channel})

    async def _send(self, event: str, payload: dict[str, Any]) -> None:
        if self._connection is None:
            raise TransportError(f"Cannot send '{event}': not connected", address=self._url)
        await self._connection.send(event, payload)

    def _on_confirmed(self, payload: Any) -> None:
        sub = self._registry.match_reply(_field(payload, "ref"), _field(payload, "table"))
        if sub is None:
            logger.debug("Discarding unmatched confirmation", extra={"table": _field(payload, "table")})
            return
        self._cancel_timer(sub.ref)
        self._registry.confirm(sub)
        logger.info("Subscription confirmed", extra={"table": sub.table, "events": event_names(sub.events)})

    def _on_rejected(self, payload: Any) -> None:
        ref = _field(payload, "ref")
        table = _field(payload, "table")
        message = _message(payload, "Subscription rejected")

        sub = self._registry.match_reply(ref, table)
        if sub is not None:
            self._cancel_timer(sub.ref)
            self._reject(sub, message)
            return
        if ref is not None or table is None:
            logger.debug("Discarding unmatched subscription error", extra={"table": table})
            return

        # Server revoked a subscription it had already confirmed
        for confirmed in self._registry.for_table(table):
            if confirmed.state is SubscriptionState.CONFIRMED:
                self._reject(confirmed, message)

    def _on_confirm_timeout(self, payload: dict[str, str]) -> None:
        ref = payload["ref"]
        self._timers.pop(ref, None)
        sub = self._registry.match_reply(ref, None)
        if sub is None:
            return
        self._reject(sub, f"No answer within {self._subscribe_timeout}s")

    def _reject(self, sub: Subscription, message: str) -> None:
        self._registry.fail(sub, message)
        logger.warning(
            f"Subscription to '{sub.table}' failed: {message}",
            extra={"table": sub.table, "events": event_names(sub.events)},
        )
        self._report(
            SubscriptionError(
                f"Subscription to '{sub.table}' failed: {message}",
                table=sub.table,
                events=event_names(sub.events),
            )
        )

    def _arm_timer(self, ref: str) -> None:
        loop = asyncio.get_running_loop()
        self._timers[ref] = loop.call_later(
            self._subscribe_timeout,
            self._accept,
            self._session,
            _CONFIRM_TIMEOUT,
            {"ref": ref},
        )

    def _cancel_timer(self, ref: str | None) -> None:
        if ref is None:
            return
        timer = self._timers.pop(ref, None)
        if timer is not None:
            timer.cancel()

    def _cancel_all_timers(self) -> None:
        for timer in self._timers.values():
            timer.cancel()
        self._timers.clear()

    # =========================================================================
    # Change delivery
    # =========================================================================

    def _on_database_change(self, payload: Any) -> None:
        try:
            event = ChangeEvent.from_payload(payload)
        except ValueError as e:
            logger.warning(f"Dropping malformed change event: {e}")
            return

        if not self._registry.accepts(event.table, event.event_type):
            logger.debug(
                "Dropping change without confirmed subscription",
                extra={"table": event.table, "event_type": event.event_type.value},
            )
            return

        if event.server_sequence is not None:
            window = self._windows.get(event.table)
            if window is None:
                window = self._windows[event.table] = SequenceWindow(self._dedupe_window)
            if not window.admit(event.server_sequence):
                logger.debug(
                    "Dropping duplicate change",
                    extra={"table": event.table, "sequence": event.server_sequence},
                )
                return

        self._deliveries.put_nowait(event)

    def _on_channel_message(self, payload: Any) -> None:
        try:
            message = ChannelMessage.from_payload(payload)
        except ValueError as e:
            logger.warning(f"Dropping malformed channel message: {e}")
            return
        if message.channel not in self._channels:
            logger.debug("Dropping message for unknown channel", extra={"channel": message.channel})
            return
        self._deliveries.put_nowait(message)

    def _on_presence_update(self, payload: Any) -> None:
        channel = _field(payload, "channel")
        room = self._presence.get(channel) if channel is not None else None
        if room is None:
            logger.debug("Dropping presence update for unknown channel", extra={"channel": channel})
            return
        self._deliveries.put_nowait(room.apply(payload))

    def _listeners(self, item: Any) -> list[Callable] | None:
        """Callbacks for a queued item; None once nobody wants it any more."""
        if isinstance(item, ChannelMessage):
            entry = self._channels.get(item.channel)
            return list(entry.callbacks) if entry is not None else None
        if isinstance(item, PresenceUpdate):
            room = self._presence.get(item.channel)
            if room is None:
                return None
            return [room.callback] if room.callback is not None else []
        if not self._registry.accepts(item.table, item.event_type):
            return None
        return list(self._change_callbacks)

    async def _dispatch_loop(self) -> None:
        while not self._closed:
            item = await self._deliveries.get()
            callbacks = self._listeners(item)
            for callback in callbacks or ():
                if self._closed:
                    return
                # Unsubscribed after the item was queued
                if self._listeners(item) is None:
                    break
                try:
                    result = callback(item)
                    if inspect.isawaitable(result):
                        await result
                except Exception as e:
                    logger.error(f"{type(item).__name__} callback failed: {e}", exc_info=True)
                    self._report(e)

    # =========================================================================
    # Plumbing
    # =========================================================================

    def _ensure_running(self) -> None:
        if self._closed or self._state is ConnectionState.FAILED:
            raise TransportError("Realtime manager is not running", address=self._url)

    def _ensure_ready(self, action: str) -> None:
        if self._closed or self._state is not ConnectionState.READY:
            raise TransportError(
                f"Cannot {action}: realtime connection is {self._state.value}",
                address=self._url,
            )

    def _accept(self, session: int, name: str, payload: Any = None) -> None:
        """Enqueue a message for the supervisor unless it is stale."""
        if self._closed or self._inbox is None or session != self._session:
            return
        self._inbox.put_nowait((session, name, payload))

    def _post(self, name: str, payload: Any = None) -> None:
        self._accept(self._session, name, payload)

    def _set_state(self, state: ConnectionState) -> None:
        if state is self._state:
            return
        previous, self._state = self._state, state
        logger.debug(
            "Realtime state changed",
            extra={"from_state": previous.value, "to_state": state.value},
        )
        for callback in list(self._state_callbacks):
            try:
                callback(state)
            except Exception as e:
                logger.error(f"State callback failed: {e}", exc_info=True)

    def _report(self, error: Exception) -> None:
        for callback in list(self._error_callbacks):
            try:
                callback(error)
            except Exception as e:
                logger.error(f"Error callback failed: {e}", exc_info=True)

    @staticmethod
    def _add_callback(callbacks: list[Callable], callback: Callable) -> Callable[[], None]:
        callbacks.append(callback)

        def remove() -> None:
            if callback in callbacks:
                callbacks.remove(callback)

        return remove

