"""
Subscription registry for the realtime manager.

The registry is the single source of truth for which table subscriptions
the application wants. The live connection is disposable: after every
reconnect the manager re-asserts whatever the registry holds.

Lifecycle of an entry:
    PENDING   -> CONFIRMED  server acknowledged the subscribe request
    PENDING   -> FAILED     server rejected it, or no answer in time
    CONFIRMED -> PENDING    connection lost; re-requested on next ready
    CONFIRMED -> FAILED     server dropped it
    any       -> removed    application unsubscribed or manager closed

Invariants:
    - At most one entry per (table, event set)
    - Only the owning manager mutates entries
    - ``ref`` is set only while a subscribe request is awaiting its answer
"""

from __future__ import annotations

import uuid
from collections.abc import Iterator
from dataclasses import dataclass
from enum import Enum

from .events import EventType


class SubscriptionState(Enum):
    """Confirmation state of a subscription."""

    PENDING = "pending"
    CONFIRMED = "confirmed"
    FAILED = "failed"


@dataclass(frozen=True)
class SubscriptionHandle:
    """Opaque token returned to the application for one subscription."""

    id: str
    table: str
    events: frozenset[EventType]


@dataclass
class Subscription:
    """Registry entry.

    Attributes:
        handle: Application-facing handle
        state: Confirmation state
        ref: Id of the in-flight subscribe request, if any
        error: Last rejection message, if any
    """

    handle: SubscriptionHandle
    state: SubscriptionState = SubscriptionState.PENDING
    ref: str | None = None
    error: str | None = None

    @property
    def table(self) -> str:
        return self.handle.table

    @property
    def events(self) -> frozenset[EventType]:
        return self.handle.events

    @property
    def in_flight(self) -> bool:
        return self.ref is not None


class SubscriptionRegistry:
    """Desired subscription state keyed by (table, event set).

    Example:
        >>> registry = SubscriptionRegistry()
        >>> sub, created = registry.add("orders", frozenset({EventType.INSERT}))
        >>> registry.confirm(sub)
        >>> registry.accepts("orders", EventType.INSERT)
        True
    """

    def __init__(self) -> None:
        """Initialize empty registry."""
        self._by_key: dict[tuple[str, frozenset[EventType]], Subscription] = {}
        self._by_id: dict[str, Subscription] = {}
        self._by_ref: dict[str, Subscription] = {}

    def __len__(self) -> int:
        return len(self._by_id)

    def __iter__(self) -> Iterator[Subscription]:
        return iter(list(self._by_id.values()))

    def __contains__(self, handle: object) -> bool:
        return isinstance(handle, SubscriptionHandle) and handle.id in self._by_id

    def add(self, table: str, events: frozenset[EventType]) -> tuple[Subscription, bool]:
        """Register intent, or return the existing entry for the same tuple.

        Returns:
            Tuple of (entry, created)
        """
        key = (table, frozenset(events))
        existing = self._by_key.get(key)
        if existing is not None:
            return existing, False

        handle = SubscriptionHandle(id=uuid.uuid4().hex, table=table, events=key[1])
        sub = Subscription(handle=handle)
        self._by_key[key] = sub
        self._by_id[handle.id] = sub
        return sub, True

    def get(self, handle: SubscriptionHandle) -> Subscription | None:
        return self._by_id.get(handle.id)

    def remove(self, handle: SubscriptionHandle) -> Subscription | None:
        """Drop an entry. Returns it, or None if it was already gone."""
        sub = self._by_id.pop(handle.id, None)
        if sub is None:
            return None
        self._by_key.pop((sub.table, sub.events), None)
        if sub.ref is not None:
            self._by_ref.pop(sub.ref, None)
        return sub

    def clear(self) -> None:
        self._by_key.clear()
        self._by_id.clear()
        self._by_ref.clear()

    def for_table(self, table: str) -> list[Subscription]:
        return [sub for sub in self._by_id.values() if sub.table == table]

    def unconfirmed(self) -> list[Subscription]:
        """Entries that still need a subscribe request (not confirmed, not in flight)."""
        return [
            sub
            for sub in self._by_id.values()
            if sub.state is not SubscriptionState.CONFIRMED and not sub.in_flight
        ]

    def begin_request(self, sub: Subscription) -> str:
        """Mark a subscribe request as sent and return its ref."""
        if sub.ref is not None:
            self._by_ref.pop(sub.ref, None)
        ref = uuid.uuid4().hex
        sub.ref = ref
        sub.state = SubscriptionState.PENDING
        self._by_ref[ref] = sub
        return ref

    def abandon_request(self, sub: Subscription) -> None:
        """Forget the in-flight request without changing state."""
        if sub.ref is not None:
            self._by_ref.pop(sub.ref, None)
            sub.ref = None

    def match_reply(self, ref: str | None, table: str | None) -> Subscription | None:
        """Find the entry a server reply answers.

        Matches by ``ref`` when given; otherwise the oldest in-flight request
        for ``table``. Returns None for late replies to removed entries.
        """
        if ref:
            return self._by_ref.get(ref)
        if table:
            for sub in self._by_id.values():
                if sub.table == table and sub.in_flight:
                    return sub
        return None

    def confirm(self, sub: Subscription) -> None:
        self.abandon_request(sub)
        sub.state = SubscriptionState.CONFIRMED
        sub.error = None

    def fail(self, sub: Subscription, error: str) -> None:
        self.abandon_request(sub)
        sub.state = SubscriptionState.FAILED
        sub.error = error

    def fail_all(self, error: str) -> None:
        for sub in self._by_id.values():
            self.fail(sub, error)

    def reset_for_reconnect(self) -> None:
        """Connection lost: nothing is confirmed or in flight on the new one."""
        for sub in self._by_id.values():
            self.abandon_request(sub)
            if sub.state is SubscriptionState.CONFIRMED:
                sub.state = SubscriptionState.PENDING

    def accepts(self, table: str, event_type: EventType) -> bool:
        """Whether a confirmed entry wants this (table, event type)."""
        return any(
            sub.table == table
            and sub.state is SubscriptionState.CONFIRMED
            and event_type in sub.events
            for sub in self._by_id.values()
        )
