from __future__ import annotations

from dataclasses import dataclass
from typing import Any, List, Mapping, Optional, Sequence
import logging

from mautrix.client import Client
from mautrix.errors import MNotFound
from mautrix.types import EventType, RoomID, UserID
from mautrix.util.logging import TraceLogger

from .channels import ChannelPermissionStore
from .permissions import Capability, CapabilitySet, has_permission
from .types import content_dict


@dataclass
class RoleMembership:
    role_id: str
    role_name: str
    power_level: int


@dataclass
class PermissionCheck:
    allowed: bool
    # one of channel-user, channel-role, role, default
    source: str
    reasoning: str


class PermissionResolver:
    """Works out whether a user holds a capability in a channel.

    Precedence, first match wins: a user override in the channel, then a role
    override in the channel (highest power level role first), then the highest
    power level among the user's roles, then the user's own power level in the
    room.
    """

    log: TraceLogger

    def __init__(
        self,
        client: Client,
        store: ChannelPermissionStore,
        log: Optional[TraceLogger] = None,
    ) -> None:
        self.client = client
        self.store = store
        self.log = log or logging.getLogger("mau.moderation.resolver")

    async def resolve(
        self,
        channel_id: RoomID,
        user_id: UserID,
        capability: Capability,
        user_roles: Optional[Sequence[RoleMembership]] = None,
        room_power_levels: Optional[Mapping[str, Any]] = None,
    ) -> PermissionCheck:
        try:
            record = await self.store.get(channel_id)

            if record:
                user_override = record.user_override(user_id)
                if user_override and capability in user_override.permissions:
                    return PermissionCheck(
                        user_override.permissions[capability],
                        "channel-user",
                        "User-specific override in channel",
                    )

            if record and user_roles:
                by_level = sorted(user_roles, key=lambda r: r.power_level, reverse=True)
                for role in by_level:
                    role_override = record.role_override(role.role_id)
                    if role_override and capability in role_override.permissions:
                        return PermissionCheck(
                            role_override.permissions[capability],
                            "channel-role",
                            f'Role "{role.role_name}" override in channel',
                        )

            if user_roles:
                highest = max(role.power_level for role in user_roles)
                return PermissionCheck(
                    has_permission(highest, capability, room_power_levels),
                    "role",
                    f"Base role permission (power level {highest})",
                )

            if room_power_levels is None:
                try:
                    room_power_levels = content_dict(
                        await self.client.get_state_event(
                            channel_id, EventType.ROOM_POWER_LEVELS
                        )
                    )
                except MNotFound:
                    return PermissionCheck(False, "default", "Room not found")
            users = room_power_levels.get("users") or {}
            user_level = users.get(user_id, room_power_levels.get("users_default", 0))
            return PermissionCheck(
                has_permission(user_level, capability, room_power_levels),
                "default",
                f"Default power level {user_level}",
            )
        except Exception as e:
            self.log.error(f"Failed to check {capability.value} for {user_id} in {channel_id}: {e}")
            return PermissionCheck(False, "default", "Error checking permissions")

    async def bulk_resolve(
        self,
        channel_id: RoomID,
        user_id: UserID,
        user_roles: Optional[Sequence[RoleMembership]] = None,
        capabilities: Optional[List[Capability]] = None,
    ) -> CapabilitySet:
        """Effective permission view for a user, one resolution per capability."""
        room_power_levels = None
        if not user_roles:
            # read the room once instead of once per capability
            try:
                room_power_levels = content_dict(
                    await self.client.get_state_event(channel_id, EventType.ROOM_POWER_LEVELS)
                )
            except Exception as e:
                self.log.warning(f"Could not read power levels of {channel_id}: {e}")
        return {
            capability: (
                await self.resolve(
                    channel_id, user_id, capability, user_roles, room_power_levels
                )
            ).allowed
            for capability in (capabilities or list(Capability))
        }
