"""Tests for permission precedence resolution."""
import pytest

from moderation.permissions import Capability
from moderation.resolver import RoleMembership

from .conftest import MOD, ROOM, USER

MODERATORS = RoleMembership("moderators", "Moderators", 50)
HELPERS = RoleMembership("helpers", "Helpers", 25)


class TestResolve:

    @pytest.mark.asyncio
    async def test_user_override_beats_role_override(self, resolver, store):
        await store.set_role_override(ROOM, "helpers", "Helpers", {Capability.SEND_MESSAGES: True}, MOD)
        await store.set_user_override(ROOM, USER, "User", {Capability.SEND_MESSAGES: False}, MOD)

        check = await resolver.resolve(ROOM, USER, Capability.SEND_MESSAGES, [HELPERS])

        assert not check.allowed
        assert check.source == "channel-user"
        assert check.reasoning == "User-specific override in channel"

    @pytest.mark.asyncio
    async def test_user_override_for_other_capability_falls_through(self, resolver, store):
        await store.set_user_override(ROOM, USER, "User", {Capability.SPEAK: False}, MOD)

        check = await resolver.resolve(ROOM, USER, Capability.SEND_MESSAGES)

        assert check.source == "default"
        assert check.allowed

    @pytest.mark.asyncio
    async def test_highest_role_override_wins(self, resolver, store):
        await store.set_role_override(ROOM, "helpers", "Helpers", {Capability.KICK_MEMBERS: False}, MOD)
        await store.set_role_override(ROOM, "moderators", "Moderators", {Capability.KICK_MEMBERS: True}, MOD)

        check = await resolver.resolve(ROOM, USER, Capability.KICK_MEMBERS, [HELPERS, MODERATORS])

        assert check.allowed
        assert check.source == "channel-role"
        assert check.reasoning == 'Role "Moderators" override in channel'

    @pytest.mark.asyncio
    async def test_role_level(self, resolver):
        check = await resolver.resolve(ROOM, USER, Capability.KICK_MEMBERS, [HELPERS, MODERATORS])

        assert check.allowed
        assert check.source == "role"
        assert check.reasoning == "Base role permission (power level 50)"

    @pytest.mark.asyncio
    async def test_role_level_too_low(self, resolver):
        check = await resolver.resolve(ROOM, USER, Capability.BAN_MEMBERS, [HELPERS])

        assert not check.allowed
        assert check.source == "role"

    @pytest.mark.asyncio
    async def test_default_uses_room_level(self, resolver):
        assert (await resolver.resolve(ROOM, MOD, Capability.KICK_MEMBERS)).allowed
        check = await resolver.resolve(ROOM, USER, Capability.KICK_MEMBERS)
        assert not check.allowed
        assert check.source == "default"
        assert check.reasoning == "Default power level 0"

    @pytest.mark.asyncio
    async def test_default_uses_users_default(self, resolver, homeserver):
        homeserver.set_power_levels(ROOM, {}, users_default=50)

        check = await resolver.resolve(ROOM, USER, Capability.KICK_MEMBERS)

        assert check.allowed
        assert check.reasoning == "Default power level 50"

    @pytest.mark.asyncio
    async def test_room_thresholds_apply(self, resolver, homeserver):
        homeserver.set_power_levels(ROOM, {MOD: 50}, kick=75)

        check = await resolver.resolve(ROOM, MOD, Capability.KICK_MEMBERS)

        assert not check.allowed

    @pytest.mark.asyncio
    async def test_unmapped_capability_is_denied(self, resolver):
        check = await resolver.resolve(ROOM, MOD, Capability.VIEW_SERVER_INSIGHTS)

        assert not check.allowed

    @pytest.mark.asyncio
    async def test_unknown_room(self, resolver):
        check = await resolver.resolve("!missing:example.org", USER, Capability.SPEAK)

        assert not check.allowed
        assert check.reasoning == "Room not found"

    @pytest.mark.asyncio
    async def test_errors_deny(self, resolver, client):
        client.get_account_data.side_effect = RuntimeError("boom")

        check = await resolver.resolve(ROOM, MOD, Capability.SPEAK)

        assert not check.allowed
        assert check.reasoning == "Error checking permissions"


class TestBulkResolve:

    @pytest.mark.asyncio
    async def test_selected_capabilities(self, resolver, store):
        await store.set_user_override(ROOM, USER, "User", {Capability.KICK_MEMBERS: True}, MOD)

        permissions = await resolver.bulk_resolve(
            ROOM, USER, capabilities=[Capability.KICK_MEMBERS, Capability.BAN_MEMBERS]
        )

        assert permissions == {Capability.KICK_MEMBERS: True, Capability.BAN_MEMBERS: False}

    @pytest.mark.asyncio
    async def test_all_capabilities_read_power_levels_once(self, resolver, client):
        permissions = await resolver.bulk_resolve(ROOM, MOD)

        assert set(permissions) == set(Capability)
        assert permissions[Capability.MANAGE_MESSAGES]
        assert not permissions[Capability.ADMINISTRATOR]
        assert client.get_state_event.await_count == 1
