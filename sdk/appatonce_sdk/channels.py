"""
Channel and presence intent for the realtime connection.

This module holds what the application wants beyond table changes:
- Channel: a pub/sub topic with the application's message callbacks
- PresenceRoom: a presence channel joined with the caller's user info,
  plus the member list the server has reported on this connection

Like table subscriptions, both are intent records. The manager re-sends
``subscribe_channel`` / ``join_presence`` for every entry on each READY
transition; ``session`` records the connection an entry was last sent on.

Invariants:
    - session == 0 means "not asserted on any connection yet"
    - members only reflects presence_update messages of the current session
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Any, Callable, Mapping

from .errors import ValidationError
from .events import ChannelMessage, PresenceUpdate

ChannelCallback = Callable[[ChannelMessage], Any]
PresenceCallback = Callable[[PresenceUpdate], Any]

# Channel names are free-form (``room:42``, ``team/alpha``) but never blank
_CHANNEL_PATTERN = re.compile(r"^\S{1,255}$")


def validate_channel_name(name: Any) -> str:
    """Check a channel name.

    Raises:
        ValidationError: If the name is empty, too long or contains whitespace
    """
    if not isinstance(name, str) or not _CHANNEL_PATTERN.match(name):
        raise ValidationError(f"Invalid channel name: {name!r}", field_name="channel")
    return name


@dataclass
class Channel:
    """A channel the application listens on."""

    name: str
    callbacks: list[ChannelCallback] = field(default_factory=list)
    session: int = 0


@dataclass
class PresenceRoom:
    """A presence channel the application has joined."""

    channel: str
    user: dict[str, Any]
    callback: PresenceCallback | None = None
    members: dict[str, Mapping[str, Any]] = field(default_factory=dict)
    session: int = 0

    def apply(self, payload: Mapping[str, Any]) -> PresenceUpdate:
        """Fold a ``presence_update`` payload into the member list.

        Users without an ``id`` are ignored. A ``left`` id that is not a
        known member is not reported.
        """
        joined = []
        for user in payload.get("joined") or ():
            if isinstance(user, Mapping) and user.get("id") is not None:
                self.members[str(user["id"])] = dict(user)
                joined.append(dict(user))

        left = []
        for user_id in payload.get("left") or ():
            if self.members.pop(str(user_id), None) is not None:
                left.append(str(user_id))

        updated = []
        for user in payload.get("updated") or ():
            if isinstance(user, Mapping) and user.get("id") is not None:
                self.members[str(user["id"])] = dict(user)
                updated.append(dict(user))

        return PresenceUpdate(
            channel=self.channel,
            joined=tuple(joined),
            left=tuple(left),
            updated=tuple(updated),
        )
