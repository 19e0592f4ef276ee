"""Tests for the room-state moderation log."""
import pytest

from moderation.types import ModerationAction, ModerationLogEntry

from .conftest import MOD, NOW, ROOM, USER


def entry(timestamp, action=ModerationAction.BAN, **kwargs):
    return ModerationLogEntry(
        action=action,
        actor_id=MOD,
        target_user_id=USER,
        room_id=ROOM,
        reason="spam",
        timestamp=timestamp,
        **kwargs,
    )


class TestModerationLog:

    @pytest.mark.asyncio
    async def test_each_entry_gets_its_own_state_key(self, audit, client):
        await audit.append(entry(NOW))
        await audit.append(entry(NOW))

        keys = [call.kwargs["state_key"] for call in client.send_state_event.await_args_list]
        assert len(set(keys)) == 2
        assert all(key.startswith(f"{NOW}-") for key in keys)

    @pytest.mark.asyncio
    async def test_query_newest_first(self, audit):
        await audit.append(entry(NOW + 1, ModerationAction.MUTE))
        await audit.append(entry(NOW + 3, ModerationAction.UNMUTE))
        await audit.append(entry(NOW + 2, ModerationAction.BAN))

        entries = await audit.query(ROOM)

        assert [e.timestamp for e in entries] == [NOW + 3, NOW + 2, NOW + 1]
        assert entries[0].action == ModerationAction.UNMUTE

    @pytest.mark.asyncio
    async def test_query_limit(self, audit):
        for offset in range(5):
            await audit.append(entry(NOW + offset))

        entries = await audit.query(ROOM, limit=2)

        assert [e.timestamp for e in entries] == [NOW + 4, NOW + 3]

    @pytest.mark.asyncio
    async def test_entry_round_trip_keeps_optional_fields(self, audit):
        await audit.append(
            entry(NOW, ModerationAction.DELETE_MESSAGE, event_id="$evt", metadata={"own_message": False})
        )

        (stored,) = await audit.query(ROOM)

        assert stored.event_id == "$evt"
        assert stored.metadata == {"own_message": False}

    @pytest.mark.asyncio
    async def test_other_state_and_malformed_entries_are_skipped(self, audit, homeserver, namespace):
        await audit.append(entry(NOW))
        homeserver.state[(ROOM, namespace.log.t, "broken")] = {"action": "explode"}
        homeserver.state[(ROOM, namespace.log.t, "empty")] = {}
        homeserver.state[(ROOM, namespace.ban.t, USER)] = {"actor_id": MOD}

        entries = await audit.query(ROOM)

        assert len(entries) == 1

    @pytest.mark.asyncio
    async def test_empty_room(self, audit):
        assert await audit.query(ROOM) == []
