"""Moderation actions against a Matrix room.

Every public action returns a :class:`ModerationResult` instead of raising.
Local preconditions (self-targeting, relative power levels, missing room or
event) are checked before any call that changes room state; remote errors are
classified by their Matrix error code.
"""
from __future__ import annotations

from typing import Any, Callable, Dict, List, Optional
import logging
import time

from mautrix.client import Client
from mautrix.errors import MNotFound
from mautrix.types import (
    EventID,
    EventType,
    Membership,
    PowerLevelStateEventContent,
    RoomID,
    UserID,
)
from mautrix.util.logging import TraceLogger

from .audit import ModerationLog
from .duration import DAY, validate_duration
from .types import (
    MUTED_POWER_LEVEL,
    BanRecord,
    BanStatus,
    BulkDeleteResult,
    CanDeleteResult,
    ModerationAction,
    ModerationError,
    ModerationFailure,
    ModerationLogEntry,
    ModerationResult,
    MuteRecord,
    MuteStatus,
    Namespace,
    RoomMember,
    content_dict,
)

ADMIN_LEVEL = 100
MODERATOR_LEVEL = 50
DEFAULT_MUTE_LEVEL = 25


def classify_error(e: Exception) -> ModerationError:
    errcode = getattr(e, "errcode", None)
    if errcode == "M_FORBIDDEN":
        return ModerationError.PERMISSION_DENIED
    if errcode == "M_NOT_FOUND":
        return ModerationError.NOT_FOUND
    return ModerationError.REMOTE_FAILURE


def _millis() -> int:
    return int(time.time() * 1000)


def role_for_level(power_level: int) -> str:
    if power_level >= ADMIN_LEVEL:
        return "admin"
    if power_level >= MODERATOR_LEVEL:
        return "moderator"
    return "member"


class ModerationExecutor:
    log: TraceLogger

    def __init__(
        self,
        client: Client,
        audit: ModerationLog,
        namespace: Namespace = Namespace(),
        mute_level: int = DEFAULT_MUTE_LEVEL,
        max_duration_ms: int = 365 * DAY,
        clock: Callable[[], int] = _millis,
        log: Optional[TraceLogger] = None,
    ) -> None:
        self.client = client
        self.audit = audit
        self.namespace = namespace
        self.mute_level = mute_level
        self.max_duration_ms = max_duration_ms
        self.clock = clock
        self.log = log or logging.getLogger("mau.moderation.executor")

    # state helpers

    async def _power_levels(self, room_id: RoomID) -> PowerLevelStateEventContent:
        try:
            return await self.client.get_state_event(room_id, EventType.ROOM_POWER_LEVELS)
        except MNotFound:
            raise ModerationFailure(ModerationError.NOT_FOUND, f"Room {room_id} not found")

    async def _set_user_level(
        self, room_id: RoomID, power_levels: PowerLevelStateEventContent, user_id: UserID, level: int
    ) -> None:
        if level == power_levels.users_default:
            power_levels.users.pop(user_id, None)
        else:
            power_levels.users[user_id] = level
        await self.client.send_state_event(room_id, EventType.ROOM_POWER_LEVELS, power_levels)

    async def _read_record(
        self, room_id: RoomID, event_type: EventType, user_id: UserID
    ) -> Optional[Dict[str, Any]]:
        try:
            content = await self.client.get_state_event(room_id, event_type, user_id)
        except MNotFound:
            return None
        return content_dict(content) or None

    async def clear_record(self, room_id: RoomID, event_type: EventType, user_id: UserID) -> None:
        # state events can't be deleted, an empty content marks the record as gone
        await self.client.send_state_event(room_id, event_type, {}, state_key=user_id)

    async def _audit(
        self,
        action: ModerationAction,
        room_id: RoomID,
        actor: UserID,
        target: UserID,
        reason: Optional[str],
        event_id: Optional[EventID] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> None:
        entry = ModerationLogEntry(
            action=action,
            actor_id=actor,
            target_user_id=target,
            room_id=room_id,
            reason=reason or "",
            timestamp=self.clock(),
            event_id=event_id,
            metadata=metadata,
        )
        try:
            await self.audit.append(entry)
        except Exception as e:
            self.log.warning(f"Failed to write {action.value} to the moderation log in {room_id}: {e}")

    def _remote_failure(
        self, what: str, e: Exception, not_found: str = "User not found in this room"
    ) -> ModerationResult:
        error = classify_error(e)
        if error == ModerationError.PERMISSION_DENIED:
            message = f"You don't have permission to {what}"
        elif error == ModerationError.NOT_FOUND:
            message = not_found
        else:
            message = getattr(e, "message", None) or str(e) or f"Failed to {what}"
        self.log.error(f"Failed to {what}: {e}")
        return ModerationResult(success=False, error=error, message=message)

    async def _check_against_target(
        self,
        room_id: RoomID,
        actor: UserID,
        target: UserID,
        threshold_name: str,
        verb: str,
    ) -> PowerLevelStateEventContent:
        if actor == target:
            raise ModerationFailure(
                ModerationError.SELF_TARGET_FORBIDDEN, f"You cannot {verb} yourself"
            )
        power_levels = await self._power_levels(room_id)
        threshold = self._threshold(power_levels, threshold_name)
        actor_level = power_levels.get_user_level(actor)
        target_level = power_levels.get_user_level(target)
        if actor_level < threshold or actor_level <= target_level:
            self.log.debug(
                f"{actor} ({actor_level}) may not {verb} {target} ({target_level}) "
                f"in {room_id}, threshold {threshold}"
            )
            raise ModerationFailure(
                ModerationError.PERMISSION_DENIED,
                f"You don't have permission to {verb} this user",
            )
        return power_levels

    async def _check_threshold(
        self, room_id: RoomID, actor: UserID, threshold_name: str, verb: str
    ) -> PowerLevelStateEventContent:
        power_levels = await self._power_levels(room_id)
        if power_levels.get_user_level(actor) < self._threshold(power_levels, threshold_name):
            raise ModerationFailure(
                ModerationError.PERMISSION_DENIED, f"You don't have permission to {verb} users"
            )
        return power_levels

    def _threshold(self, power_levels: PowerLevelStateEventContent, name: str) -> int:
        if name == "mute":
            return self.mute_level
        return getattr(power_levels, name)

    def _check_duration(self, duration_ms: int) -> None:
        errors = validate_duration(duration_ms, self.max_duration_ms)
        if errors:
            raise ModerationFailure(ModerationError.INVALID_INPUT, "; ".join(errors))

    # actions

    async def kick(
        self, room_id: RoomID, actor: UserID, target: UserID, reason: Optional[str] = None
    ) -> ModerationResult:
        try:
            await self._check_against_target(room_id, actor, target, "kick", "kick")
        except ModerationFailure as e:
            return ModerationResult.failed(e)
        except Exception as e:
            return self._remote_failure("kick this user", e)
        try:
            await self.client.kick_user(room_id, target, reason=reason or "Kicked by moderator")
        except Exception as e:
            return self._remote_failure("kick this user", e)
        self.log.info(f"{actor} kicked {target} from {room_id}: {reason or 'no reason given'}")
        return ModerationResult(success=True)

    async def ban(
        self,
        room_id: RoomID,
        actor: UserID,
        target: UserID,
        reason: Optional[str] = None,
        duration_ms: int = 0,
    ) -> ModerationResult:
        try:
            self._check_duration(duration_ms)
            await self._check_against_target(room_id, actor, target, "ban", "ban")
        except ModerationFailure as e:
            return ModerationResult.failed(e)
        except Exception as e:
            return self._remote_failure("ban this user", e)
        try:
            await self.client.ban_user(room_id, target, reason=reason or "Banned by moderator")
        except Exception as e:
            return self._remote_failure("ban this user", e)
        self.log.info(f"{actor} banned {target} from {room_id}: {reason or 'no reason given'}")

        record = BanRecord.create(actor, reason or "", self.clock(), duration_ms)
        try:
            if duration_ms > 0:
                await self.client.send_state_event(
                    room_id, self.namespace.ban, record.serialize(), state_key=target
                )
                self.log.info(f"Ban of {target} in {room_id} expires at {record.expires_at}")
            elif await self._read_record(room_id, self.namespace.ban, target):
                # an older timed ban must not lift this permanent one
                await self.clear_record(room_id, self.namespace.ban, target)
        except Exception as e:
            self.log.error(f"User {target} was banned but the ban record could not be written: {e}")
            return ModerationResult(
                success=False,
                error=classify_error(e),
                message="User was banned but the ban expiry could not be stored",
                record=record,
            )

        await self._audit(
            ModerationAction.BAN,
            room_id,
            actor,
            target,
            reason,
            metadata={"duration_ms": duration_ms, "expires_at": record.expires_at},
        )
        return ModerationResult(success=True, record=record)

    async def unban(
        self,
        room_id: RoomID,
        actor: UserID,
        target: UserID,
        reason: Optional[str] = None,
        system: bool = False,
    ) -> ModerationResult:
        """Lift a ban. ``system`` skips the actor's power level check (expiry sweeps)."""
        if not system:
            try:
                await self._check_threshold(room_id, actor, "ban", "unban")
            except ModerationFailure as e:
                return ModerationResult.failed(e)
            except Exception as e:
                return self._remote_failure("unban users", e)
        try:
            await self.client.unban_user(room_id, target, reason=reason or "")
        except Exception as e:
            return self._remote_failure("unban users", e)
        self.log.info(f"{actor} unbanned {target} in {room_id}")
        try:
            if await self._read_record(room_id, self.namespace.ban, target):
                await self.clear_record(room_id, self.namespace.ban, target)
        except Exception as e:
            self.log.warning(f"Failed to clear ban record of {target} in {room_id}: {e}")
        await self._audit(ModerationAction.UNBAN, room_id, actor, target, reason)
        return ModerationResult(success=True)

    async def mute(
        self,
        room_id: RoomID,
        actor: UserID,
        target: UserID,
        reason: Optional[str] = None,
        duration_ms: int = 0,
    ) -> ModerationResult:
        try:
            self._check_duration(duration_ms)
            power_levels = await self._check_against_target(room_id, actor, target, "mute", "mute")
        except ModerationFailure as e:
            return ModerationResult.failed(e)
        except Exception as e:
            return self._remote_failure("mute this user", e)

        try:
            original_level = power_levels.get_user_level(target)
            existing = await self._read_record(room_id, self.namespace.mute, target)
            already_muted = bool(existing) and original_level == MUTED_POWER_LEVEL
            if already_muted:
                # muting again must not lose the level from before the first mute
                original_level = MuteRecord.deserialize(existing).original_power_level
            record = MuteRecord.create(
                actor, reason or "", self.clock(), duration_ms, original_level
            )
            # record first, then the level
            await self.client.send_state_event(
                room_id, self.namespace.mute, record.serialize(), state_key=target
            )
        except Exception as e:
            return self._remote_failure("mute this user", e)

        try:
            await self._set_user_level(room_id, power_levels, target, MUTED_POWER_LEVEL)
        except Exception as e:
            if not already_muted:
                try:
                    await self.clear_record(room_id, self.namespace.mute, target)
                except Exception as clear_error:
                    self.log.warning(
                        f"Failed to clear mute record of {target} in {room_id}: {clear_error}"
                    )
            return self._remote_failure("mute this user", e)

        self.log.info(
            f"{actor} muted {target} in {room_id} (was {original_level}): {reason or 'no reason given'}"
        )
        await self._audit(
            ModerationAction.MUTE,
            room_id,
            actor,
            target,
            reason,
            metadata={
                "duration_ms": duration_ms,
                "expires_at": record.expires_at,
                "original_power_level": original_level,
            },
        )
        return ModerationResult(success=True, record=record)

    async def unmute(
        self,
        room_id: RoomID,
        actor: UserID,
        target: UserID,
        reason: Optional[str] = None,
        system: bool = False,
    ) -> ModerationResult:
        try:
            if system:
                power_levels = await self._power_levels(room_id)
            else:
                power_levels = await self._check_threshold(room_id, actor, "mute", "unmute")
        except ModerationFailure as e:
            return ModerationResult.failed(e)
        except Exception as e:
            return self._remote_failure("unmute this user", e)

        try:
            existing = await self._read_record(room_id, self.namespace.mute, target)
            current_level = power_levels.get_user_level(target)
            if existing:
                restore_level = MuteRecord.deserialize(existing).original_power_level
            elif current_level == MUTED_POWER_LEVEL:
                restore_level = 0
            else:
                # not muted, nothing to restore
                restore_level = current_level
            if restore_level != current_level:
                await self._set_user_level(room_id, power_levels, target, restore_level)
            await self.clear_record(room_id, self.namespace.mute, target)
        except Exception as e:
            return self._remote_failure("unmute this user", e)

        self.log.info(f"{actor} unmuted {target} in {room_id}, restored level {restore_level}")
        await self._audit(
            ModerationAction.UNMUTE,
            room_id,
            actor,
            target,
            reason,
            metadata={"restored_power_level": restore_level},
        )
        return ModerationResult(success=True)

    async def can_delete(
        self,
        room_id: RoomID,
        actor: UserID,
        sender: UserID,
        power_levels: Optional[PowerLevelStateEventContent] = None,
    ) -> CanDeleteResult:
        if sender == actor:
            return CanDeleteResult(True, "Own message")
        if power_levels is None:
            power_levels = await self._power_levels(room_id)
        if power_levels.get_user_level(actor) >= power_levels.redact:
            return CanDeleteResult(True, "Moderator permission")
        return CanDeleteResult(False, "Insufficient permissions")

    async def delete_message(
        self,
        room_id: RoomID,
        actor: UserID,
        event_id: EventID,
        reason: Optional[str] = None,
    ) -> ModerationResult:
        try:
            try:
                evt = await self.client.get_event(room_id, event_id)
            except MNotFound:
                raise ModerationFailure(ModerationError.NOT_FOUND, "Message not found")
            check = await self.can_delete(room_id, actor, evt.sender)
            if not check.can_delete:
                raise ModerationFailure(
                    ModerationError.PERMISSION_DENIED,
                    "You don't have permission to delete this message",
                )
        except ModerationFailure as e:
            return ModerationResult.failed(e)
        except Exception as e:
            return self._remote_failure("delete this message", e, "Message not found")

        try:
            redaction_id = await self.client.redact(room_id, event_id, reason=reason)
        except Exception as e:
            return self._remote_failure("delete this message", e, "Message not found")

        self.log.info(f"{actor} deleted {event_id} by {evt.sender} in {room_id} ({check.reason})")
        await self._audit(
            ModerationAction.DELETE_MESSAGE,
            room_id,
            actor,
            evt.sender,
            reason,
            event_id=event_id,
            metadata={"own_message": evt.sender == actor},
        )
        return ModerationResult(success=True, message=check.reason, event_id=redaction_id)

    async def bulk_delete_messages(
        self,
        room_id: RoomID,
        actor: UserID,
        event_ids: List[EventID],
        reason: Optional[str] = None,
    ) -> BulkDeleteResult:
        result = BulkDeleteResult()
        for event_id in event_ids:
            try:
                outcome = await self.delete_message(room_id, actor, event_id, reason)
            except Exception as e:
                outcome = ModerationResult(
                    success=False, error=ModerationError.REMOTE_FAILURE, message=str(e)
                )
            if outcome.success:
                result.deleted_count += 1
            else:
                result.failed_count += 1
                result.errors.append({"event_id": event_id, "error": outcome.message})
        if result.failed_count:
            self.log.warning(
                f"Bulk delete in {room_id}: {result.deleted_count} deleted, "
                f"{result.failed_count} failed"
            )
        return result

    # status queries

    async def get_ban_info(self, room_id: RoomID, user_id: UserID) -> BanStatus:
        try:
            member = await self.client.get_state_event(room_id, EventType.ROOM_MEMBER, user_id)
            is_banned = member.membership == Membership.BAN
        except MNotFound:
            is_banned = False
        data = await self._read_record(room_id, self.namespace.ban, user_id)
        return BanStatus(is_banned, BanRecord.deserialize(data) if data else None)

    async def get_mute_info(self, room_id: RoomID, user_id: UserID) -> MuteStatus:
        power_levels = await self.client.get_state_event(room_id, EventType.ROOM_POWER_LEVELS)
        data = await self._read_record(room_id, self.namespace.mute, user_id)
        record = MuteRecord.deserialize(data) if data else None
        is_muted = power_levels.get_user_level(user_id) == MUTED_POWER_LEVEL or record is not None
        return MuteStatus(is_muted, record)

    async def _list_records(self, room_id: RoomID, event_type: EventType, cls) -> Dict[UserID, Any]:
        records = {}
        for evt in await self.client.get_state(room_id):
            if evt.type.t != event_type.t:
                continue
            data = content_dict(evt.content)
            if not data:
                continue
            try:
                records[UserID(evt.state_key)] = cls.deserialize(data)
            except (KeyError, ValueError, TypeError) as e:
                self.log.warning(f"Unreadable {event_type.t} record for {evt.state_key}: {e}")
        return records

    async def list_bans(self, room_id: RoomID) -> Dict[UserID, BanRecord]:
        return await self._list_records(room_id, self.namespace.ban, BanRecord)

    async def list_mutes(self, room_id: RoomID) -> Dict[UserID, MuteRecord]:
        return await self._list_records(room_id, self.namespace.mute, MuteRecord)

    async def get_user_role(self, room_id: RoomID, user_id: UserID) -> str:
        try:
            power_levels = await self._power_levels(room_id)
        except ModerationFailure:
            return "member"
        return role_for_level(power_levels.get_user_level(user_id))

    async def get_room_members(self, room_id: RoomID) -> List[RoomMember]:
        try:
            power_levels = await self._power_levels(room_id)
            joined = await self.client.get_joined_members(room_id)
        except Exception as e:
            self.log.error(f"Failed to get members of {room_id}: {e}")
            return []
        members = []
        for user_id, member in joined.items():
            level = power_levels.get_user_level(user_id)
            members.append(
                RoomMember(user_id, member.displayname or user_id, level, role_for_level(level))
            )
        members.sort(key=lambda m: (-m.power_level, m.display_name))
        return members
