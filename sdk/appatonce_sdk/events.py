"""
Realtime wire vocabulary and change events.

Message names are fixed for a deployment; client and server must agree on
them exactly.

Client -> server:
    subscribe_table      {"table", "events", "ref"}
    unsubscribe_table    {"table", "events", "ref"}
    subscribe_channel    {"channel"}
    unsubscribe_channel  {"channel"}
    publish_channel      {"channel", "message"}
    join_presence        {"channel", "user"}
    update_presence      {"channel", "user"}
    leave_presence       {"channel"}

Server -> client:
    connected               handshake accepted
    error                   handshake rejected (or a server-side error once ready)
    subscription_confirmed  {"table", "ref"?}
    subscription_error      {"table", "ref"?, "message"}
    database_change         {"table", "type", "record", "old_record"?, "sequence"?, "timestamp"?}
    channel_message         {"channel", "message"}
    presence_update         {"channel", "joined"?, "left"?, "updated"?}

Local (raised by the transport, never sent by the server):
    disconnected            {"reason"}
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from types import MappingProxyType
from typing import Any, Iterable, Mapping

SUBSCRIBE_TABLE = "subscribe_table"
UNSUBSCRIBE_TABLE = "unsubscribe_table"
SUBSCRIBE_CHANNEL = "subscribe_channel"
UNSUBSCRIBE_CHANNEL = "unsubscribe_channel"
PUBLISH_CHANNEL = "publish_channel"
JOIN_PRESENCE = "join_presence"
UPDATE_PRESENCE = "update_presence"
LEAVE_PRESENCE = "leave_presence"

CONNECTED = "connected"
ERROR = "error"
SUBSCRIPTION_CONFIRMED = "subscription_confirmed"
SUBSCRIPTION_ERROR = "subscription_error"
DATABASE_CHANGE = "database_change"
CHANNEL_MESSAGE = "channel_message"
PRESENCE_UPDATE = "presence_update"

DISCONNECTED = "disconnected"

SERVER_EVENTS = (
    CONNECTED,
    ERROR,
    SUBSCRIPTION_CONFIRMED,
    SUBSCRIPTION_ERROR,
    DATABASE_CHANGE,
    CHANNEL_MESSAGE,
    PRESENCE_UPDATE,
)


class EventType(Enum):
    """Kinds of row change."""

    INSERT = "INSERT"
    UPDATE = "UPDATE"
    DELETE = "DELETE"

    @classmethod
    def from_str(cls, value: str) -> EventType:
        """Convert a case-insensitive name to an EventType."""
        try:
            return cls(value.upper())
        except (AttributeError, ValueError):
            raise ValueError(f"Invalid event type: {value!r}") from None


ALL_EVENTS = frozenset(EventType)


def event_set(events: Iterable[Any] | None) -> frozenset:
    """Normalize an iterable of names/EventTypes; None means all events."""
    if events is None:
        return ALL_EVENTS
    if isinstance(events, (str, EventType)):
        events = [events]
    result = frozenset(e if isinstance(e, EventType) else EventType.from_str(e) for e in events)
    if not result:
        raise ValueError("Event set must not be empty")
    return result


def event_names(events: Iterable[EventType]) -> list:
    """Sorted wire names for an event set."""
    return sorted(e.value for e in events)


@dataclass(frozen=True)
class ChangeEvent:
    """One row change delivered by the realtime server.

    Attributes:
        table: Table the row belongs to
        event_type: INSERT, UPDATE or DELETE
        record: New row state (old row for deletes when the server sends no record)
        old_record: Previous row state, when provided
        server_sequence: Server-assigned sequence number, when provided
        timestamp: Server timestamp string, when provided
    """

    table: str
    event_type: EventType
    record: Mapping[str, Any]
    old_record: Mapping[str, Any] | None = None
    server_sequence: int | None = None
    timestamp: str | None = None

    @classmethod
    def from_payload(cls, payload: Mapping[str, Any]) -> ChangeEvent:
        """Decode a ``database_change`` payload.

        Raises:
            ValueError: If the table or event type is missing or invalid
        """
        if not isinstance(payload, Mapping):
            raise ValueError(f"Change payload must be an object, got {type(payload).__name__}")

        table = payload.get("table")
        if not isinstance(table, str) or not table:
            raise ValueError("Change payload has no table")

        raw_type = payload.get("type", payload.get("eventType"))
        event_type = EventType.from_str(raw_type)

        record = payload.get("record", payload.get("data"))
        old_record = payload.get("old_record", payload.get("old"))
        if record is None:
            record = old_record or {}
        if not isinstance(record, Mapping) or not isinstance(old_record, (Mapping, type(None))):
            raise ValueError("Change payload record must be an object")

        sequence = payload.get("sequence")
        if sequence is not None:
            if isinstance(sequence, bool) or not isinstance(sequence, (int, str)):
                raise ValueError(f"Invalid sequence: {sequence!r}")
            sequence = int(sequence)

        timestamp = payload.get("timestamp")
        return cls(
            table=table,
            event_type=event_type,
            record=MappingProxyType(dict(record)),
            old_record=MappingProxyType(dict(old_record)) if old_record is not None else None,
            server_sequence=sequence,
            timestamp=str(timestamp) if timestamp is not None else None,
        )


@dataclass(frozen=True)
class ChannelMessage:
    """A message published on a channel."""

    channel: str
    message: Any

    @classmethod
    def from_payload(cls, payload: Mapping[str, Any]) -> ChannelMessage:
        """Decode a ``channel_message`` payload.

        Raises:
            ValueError: If the channel is missing
        """
        if not isinstance(payload, Mapping):
            raise ValueError(f"Channel payload must be an object, got {type(payload).__name__}")
        channel = payload.get("channel")
        if not isinstance(channel, str) or not channel:
            raise ValueError("Channel payload has no channel")
        return cls(channel=channel, message=payload.get("message"))


@dataclass(frozen=True)
class PresenceUpdate:
    """Membership change on a presence channel.

    Attributes:
        channel: Presence channel name
        joined: Members that joined (user objects)
        left: Ids of members that left
        updated: Members whose user info changed
    """

    channel: str
    joined: tuple[Mapping[str, Any], ...] = ()
    left: tuple[str, ...] = ()
    updated: tuple[Mapping[str, Any], ...] = ()
