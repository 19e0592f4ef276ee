from __future__ import annotations

from typing import Optional
import logging

from mautrix.client import Client
from mautrix.errors import MNotFound
from mautrix.types import EventType, Membership, RoomID, UserID
from mautrix.util.logging import TraceLogger

from .executor import ModerationExecutor
from .types import MUTED_POWER_LEVEL, ExpiryCheckResult


class ExpirySweeper:
    """Lifts timed bans and mutes whose expiry has passed.

    Sweeps are best effort: between the expiry time and the next sweep the ban
    or mute is still in force.
    """

    log: TraceLogger

    def __init__(
        self, client: Client, executor: ModerationExecutor, log: Optional[TraceLogger] = None
    ) -> None:
        self.client = client
        self.executor = executor
        self.log = log or logging.getLogger("mau.moderation.sweeper")

    @property
    def system_actor(self) -> UserID:
        return self.client.mxid

    async def _still_banned(self, room_id: RoomID, user_id: UserID) -> bool:
        try:
            member = await self.client.get_state_event(room_id, EventType.ROOM_MEMBER, user_id)
        except MNotFound:
            return False
        return member.membership == Membership.BAN

    async def _still_muted(self, room_id: RoomID, user_id: UserID) -> bool:
        power_levels = await self.client.get_state_event(room_id, EventType.ROOM_POWER_LEVELS)
        return power_levels.get_user_level(user_id) == MUTED_POWER_LEVEL

    async def check_expired_bans(self, room_id: RoomID) -> ExpiryCheckResult:
        result = ExpiryCheckResult()
        try:
            bans = await self.executor.list_bans(room_id)
        except Exception as e:
            self.log.error(f"Failed to read ban records in {room_id}: {e}")
            result.errors.append({"user_id": None, "error": str(e)})
            return result

        now = self.executor.clock()
        for user_id, record in bans.items():
            result.checked_count += 1
            if not record.is_expired(now):
                continue
            try:
                if not await self._still_banned(room_id, user_id):
                    # unbanned by someone else in the meantime, only the record is left
                    await self.executor.clear_record(room_id, self.executor.namespace.ban, user_id)
                    continue
                outcome = await self.executor.unban(
                    room_id, self.system_actor, user_id, reason="Temporary ban expired", system=True
                )
            except Exception as e:
                self.log.error(f"Failed to lift expired ban of {user_id} in {room_id}: {e}")
                result.errors.append({"user_id": user_id, "error": str(e)})
                continue
            if outcome.success:
                result.unbanned_count += 1
                self.log.info(f"Lifted expired ban of {user_id} in {room_id}")
            else:
                result.errors.append({"user_id": user_id, "error": outcome.message})

        if result.unbanned_count:
            self.log.info(
                f"Processed expired bans in {room_id}: "
                f"{result.unbanned_count}/{result.checked_count} unbanned"
            )
        return result

    async def check_expired_mutes(self, room_id: RoomID) -> ExpiryCheckResult:
        """Same as :meth:`check_expired_bans`; ``unbanned_count`` counts unmutes."""
        result = ExpiryCheckResult()
        try:
            mutes = await self.executor.list_mutes(room_id)
        except Exception as e:
            self.log.error(f"Failed to read mute records in {room_id}: {e}")
            result.errors.append({"user_id": None, "error": str(e)})
            return result

        now = self.executor.clock()
        for user_id, record in mutes.items():
            result.checked_count += 1
            if not record.is_expired(now):
                continue
            try:
                if not await self._still_muted(room_id, user_id):
                    # level was changed by hand in the meantime, keep it
                    await self.executor.clear_record(room_id, self.executor.namespace.mute, user_id)
                    continue
                outcome = await self.executor.unmute(
                    room_id, self.system_actor, user_id, reason="Temporary mute expired", system=True
                )
            except Exception as e:
                self.log.error(f"Failed to lift expired mute of {user_id} in {room_id}: {e}")
                result.errors.append({"user_id": user_id, "error": str(e)})
                continue
            if outcome.success:
                result.unbanned_count += 1
                self.log.info(f"Lifted expired mute of {user_id} in {room_id}")
            else:
                result.errors.append({"user_id": user_id, "error": outcome.message})
        return result
