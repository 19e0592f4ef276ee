"""Shared fixtures: an in-memory stand-in for the mautrix client."""
from unittest.mock import AsyncMock, Mock

import pytest
from mautrix.errors import MNotFound
from mautrix.types import EventType, Membership, PowerLevelStateEventContent

from moderation.audit import ModerationLog
from moderation.channels import ChannelPermissionStore
from moderation.executor import ModerationExecutor
from moderation.resolver import PermissionResolver
from moderation.sweeper import ExpirySweeper
from moderation.types import Namespace

ROOM = "!room:example.org"
BOT = "@bot:example.org"
ADMIN = "@admin:example.org"
MOD = "@mod:example.org"
OTHER_MOD = "@othermod:example.org"
USER = "@user:example.org"
NOW = 1_700_000_000_000


class FakeHomeserver:
    """Keeps room state and account data so writes can be read back."""

    def __init__(self):
        self.state = {}
        self.account_data = {}
        self.events = {}
        self.members = {}

    def set_power_levels(self, room_id, users, **kwargs):
        self.state[(room_id, EventType.ROOM_POWER_LEVELS.t, "")] = PowerLevelStateEventContent(
            users=dict(users), **kwargs
        )

    def power_levels(self, room_id):
        return self.state[(room_id, EventType.ROOM_POWER_LEVELS.t, "")]

    def get(self, room_id, event_type, state_key=""):
        return self.state.get((room_id, str(event_type), state_key))

    @staticmethod
    def _copy(content):
        # callers get their own copy, like a fresh response from the server
        if isinstance(content, PowerLevelStateEventContent):
            return PowerLevelStateEventContent.deserialize(content.serialize())
        return content

    async def get_state_event(self, room_id, event_type, state_key=""):
        if str(event_type) == EventType.ROOM_MEMBER.t:
            if (room_id, state_key) not in self.members:
                raise MNotFound(404, "Event not found")
            return Mock(membership=self.members[(room_id, state_key)])
        key = (room_id, str(event_type), state_key)
        if key not in self.state:
            raise MNotFound(404, "Event not found")
        return self._copy(self.state[key])

    async def send_state_event(self, room_id, event_type, content, state_key=""):
        if str(event_type) == EventType.ROOM_POWER_LEVELS.t and isinstance(content, dict):
            content = PowerLevelStateEventContent.deserialize(content)
        self.state[(room_id, str(event_type), state_key)] = self._copy(content)
        return f"$state{len(self.state)}"

    async def get_state(self, room_id):
        return [
            Mock(
                type=EventType.find(event_type, EventType.Class.STATE),
                state_key=state_key,
                content=self._copy(content),
            )
            for (room, event_type, state_key), content in self.state.items()
            if room == room_id
        ]

    async def get_account_data(self, event_type, room_id=None):
        if (room_id, event_type) not in self.account_data:
            raise MNotFound(404, "Account data not found")
        return self.account_data[(room_id, event_type)]

    async def set_account_data(self, event_type, data, room_id=None):
        self.account_data[(room_id, event_type)] = data

    async def get_event(self, room_id, event_id):
        if event_id not in self.events:
            raise MNotFound(404, "Event not found")
        return self.events[event_id]

    async def ban_user(self, room_id, user_id, reason=""):
        self.members[(room_id, user_id)] = Membership.BAN

    async def unban_user(self, room_id, user_id, reason=""):
        self.members[(room_id, user_id)] = Membership.LEAVE


@pytest.fixture
def homeserver():
    server = FakeHomeserver()
    server.set_power_levels(ROOM, {ADMIN: 100, MOD: 50, OTHER_MOD: 50, BOT: 100})
    return server


@pytest.fixture
def client(homeserver):
    client = Mock()
    client.mxid = BOT
    client.get_state_event = AsyncMock(side_effect=homeserver.get_state_event)
    client.send_state_event = AsyncMock(side_effect=homeserver.send_state_event)
    client.get_state = AsyncMock(side_effect=homeserver.get_state)
    client.get_account_data = AsyncMock(side_effect=homeserver.get_account_data)
    client.set_account_data = AsyncMock(side_effect=homeserver.set_account_data)
    client.get_event = AsyncMock(side_effect=homeserver.get_event)
    client.ban_user = AsyncMock(side_effect=homeserver.ban_user)
    client.unban_user = AsyncMock(side_effect=homeserver.unban_user)
    client.kick_user = AsyncMock()
    client.redact = AsyncMock(return_value="$redaction")
    return client


@pytest.fixture
def namespace():
    return Namespace("org.example.test")


@pytest.fixture
def audit(client, namespace):
    return ModerationLog(client, namespace)


@pytest.fixture
def clock():
    now = [NOW]
    return now


@pytest.fixture
def executor(client, audit, namespace, clock):
    return ModerationExecutor(client, audit, namespace, clock=lambda: clock[0])


@pytest.fixture
def sweeper(client, executor):
    return ExpirySweeper(client, executor)


@pytest.fixture
def store(client, namespace):
    return ChannelPermissionStore(client, namespace)


@pytest.fixture
def resolver(client, store):
    return PermissionResolver(client, store)
