"""
Unit tests for channel and presence intent.

Tests cover:
- Channel name validation
- ChannelMessage decoding
- Presence member bookkeeping
- Channel relay and presence in the in-memory server
"""

import asyncio

import pytest

from sdk.appatonce_sdk.channels import PresenceRoom, validate_channel_name
from sdk.appatonce_sdk.errors import ValidationError
from sdk.appatonce_sdk.events import (
    CHANNEL_MESSAGE,
    JOIN_PRESENCE,
    LEAVE_PRESENCE,
    PRESENCE_UPDATE,
    PUBLISH_CHANNEL,
    SUBSCRIBE_CHANNEL,
    UNSUBSCRIBE_CHANNEL,
    UPDATE_PRESENCE,
    ChannelMessage,
    PresenceUpdate,
)
from sdk.appatonce_sdk.memory import InMemorySocketTransport


class TestChannelNames:
    """Tests for validate_channel_name."""

    @pytest.mark.parametrize("name", ["lobby", "room:42", "team/alpha", "a" * 255])
    def test_valid(self, name):
        """Free-form names without whitespace are accepted."""
        assert validate_channel_name(name) == name

    @pytest.mark.parametrize("name", ["", "two words", "tab\there", "a" * 256, None, 42])
    def test_invalid(self, name):
        """Blank, spaced, oversized and non-string names are rejected."""
        with pytest.raises(ValidationError) as exc_info:
            validate_channel_name(name)

        assert exc_info.value.field_name == "channel"


class TestChannelMessage:
    """Tests for ChannelMessage.from_payload."""

    def test_decodes(self):
        """Channel and message are taken from the payload."""
        message = ChannelMessage.from_payload({"channel": "lobby", "message": {"text": "hi"}})

        assert message == ChannelMessage(channel="lobby", message={"text": "hi"})

    def test_missing_message_is_none(self):
        """A payload without a message still decodes."""
        assert ChannelMessage.from_payload({"channel": "lobby"}).message is None

    @pytest.mark.parametrize("payload", [None, "lobby", {}, {"channel": ""}, {"channel": 7}])
    def test_malformed(self, payload):
        """Payloads without a channel name raise ValueError."""
        with pytest.raises(ValueError):
            ChannelMessage.from_payload(payload)


class TestPresenceRoom:
    """Tests for PresenceRoom.apply."""

    @pytest.fixture
    def room(self):
        """Create a room joined as user 1."""
        return PresenceRoom(channel="doc:7", user={"id": 1, "name": "Ada"})

    def test_join_and_update(self, room):
        """Joined and updated users are stored by string id."""
        update = room.apply({"joined": [{"id": 1, "name": "Ada"}, {"id": 2, "name": "Bo"}]})
        room.apply({"updated": [{"id": 2, "name": "Bo", "typing": True}]})

        assert update == PresenceUpdate(
            channel="doc:7",
            joined=({"id": 1, "name": "Ada"}, {"id": 2, "name": "Bo"}),
        )
        assert room.members == {
            "1": {"id": 1, "name": "Ada"},
            "2": {"id": 2, "name": "Bo", "typing": True},
        }

    def test_leave_reports_known_members_only(self, room):
        """A left id that was never a member is not reported."""
        room.apply({"joined": [{"id": 2}]})

        update = room.apply({"left": [2, 99]})

        assert update.left == ("2",)
        assert room.members == {}

    def test_users_without_id_ignored(self, room):
        """Entries without an id (or not objects) are skipped."""
        update = room.apply({"joined": [{"name": "anon"}, "garbage", None]})

        assert update.joined == ()
        assert room.members == {}

    def test_empty_payload(self, room):
        """An update with no lists changes nothing."""
        assert room.apply({}) == PresenceUpdate(channel="doc:7")


class TestInMemoryChannels:
    """Tests for channel relay and presence in the in-memory server."""

    @pytest.fixture
    def transport(self):
        """Create an accepting in-memory server."""
        return InMemorySocketTransport()

    @pytest.mark.asyncio
    async def test_publish_reaches_subscribed_connections(self, transport):
        """Published messages go to every connection on the channel."""
        first = await transport.connect("memory://", {})
        second = await transport.connect("memory://", {})
        got_first, got_second = [], []
        first.on(CHANNEL_MESSAGE, got_first.append)
        second.on(CHANNEL_MESSAGE, got_second.append)

        await first.send(SUBSCRIBE_CHANNEL, {"channel": "lobby"})
        await second.send(PUBLISH_CHANNEL, {"channel": "lobby", "message": "hello"})
        await asyncio.sleep(0)

        assert got_first == [{"channel": "lobby", "message": "hello"}]
        assert got_second == []

    @pytest.mark.asyncio
    async def test_unsubscribed_connection_gets_nothing(self, transport):
        """unsubscribe_channel stops the relay."""
        connection = await transport.connect("memory://", {})
        received = []
        connection.on(CHANNEL_MESSAGE, received.append)

        await connection.send(SUBSCRIBE_CHANNEL, {"channel": "lobby"})
        await connection.send(UNSUBSCRIBE_CHANNEL, {"channel": "lobby"})
        transport.broadcast("lobby", "hello")
        await asyncio.sleep(0)

        assert received == []
        assert connection.channels == set()

    @pytest.mark.asyncio
    async def test_presence_lifecycle(self, transport):
        """join, update and leave produce joined, updated and left."""
        watcher = await transport.connect("memory://", {})
        member = await transport.connect("memory://", {})
        updates = []
        watcher.on(PRESENCE_UPDATE, updates.append)

        await watcher.send(JOIN_PRESENCE, {"channel": "doc:7", "user": {"id": "w"}})
        await member.send(JOIN_PRESENCE, {"channel": "doc:7", "user": {"id": "m"}})
        await member.send(UPDATE_PRESENCE, {"channel": "doc:7", "user": {"id": "m", "idle": True}})
        await member.send(LEAVE_PRESENCE, {"channel": "doc:7"})
        await asyncio.sleep(0)

        assert updates == [
            {"channel": "doc:7", "joined": [{"id": "w"}]},
            {"channel": "doc:7", "joined": [{"id": "m"}]},
            {"channel": "doc:7", "updated": [{"id": "m", "idle": True}]},
            {"channel": "doc:7", "left": ["m"]},
        ]
        assert transport.presence_members["doc:7"] == {"w": {"id": "w"}}

    @pytest.mark.asyncio
    async def test_drop_forgets_presence(self, transport):
        """A dropped connection's presence entries are removed."""
        connection = await transport.connect("memory://", {})
        await connection.send(JOIN_PRESENCE, {"channel": "doc:7", "user": {"id": "m"}})

        connection.drop()

        assert transport.presence_members["doc:7"] == {}
