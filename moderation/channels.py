from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Mapping, Optional, Union
import logging
import time

from mautrix.client import Client
from mautrix.errors import MNotFound
from mautrix.types import EventType, RoomID, UserID
from mautrix.util.logging import TraceLogger

from .permissions import Capability, CapabilitySet, materialize_power_levels
from .types import Namespace, VersionConflict, content_dict


def _now() -> int:
    return int(time.time() * 1000)


@dataclass
class PermissionOverride:
    """A per-channel exception for one role or one user.

    Only the capabilities present in ``permissions`` are overridden; anything
    absent falls through to the next precedence level.
    """

    id: str
    name: str
    permissions: Dict[Capability, bool] = field(default_factory=dict)
    created_at: int = 0
    created_by: str = ""

    def get(self, capability: Capability) -> Optional[bool]:
        return self.permissions.get(capability)

    def serialize(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "permissions": {cap.value: value for cap, value in self.permissions.items()},
            "created_at": self.created_at,
            "created_by": self.created_by,
        }

    @classmethod
    def deserialize(cls, data: Dict[str, Any]) -> PermissionOverride:
        permissions = {}
        for name, value in (data.get("permissions") or {}).items():
            try:
                permissions[Capability(name)] = bool(value)
            except ValueError:
                # written by a newer version, ignore
                continue
        return cls(
            id=data["id"],
            name=data.get("name", data["id"]),
            permissions=permissions,
            created_at=int(data.get("created_at", 0)),
            created_by=data.get("created_by", ""),
        )


@dataclass
class ChannelPermissionRecord:
    channel_id: RoomID
    role_overrides: List[PermissionOverride] = field(default_factory=list)
    user_overrides: List[PermissionOverride] = field(default_factory=list)
    inherit_from_parent: bool = True
    version: int = 0
    last_updated: int = 0
    last_updated_by: str = ""

    def role_override(self, role_id: str) -> Optional[PermissionOverride]:
        return next((o for o in self.role_overrides if o.id == role_id), None)

    def user_override(self, user_id: UserID) -> Optional[PermissionOverride]:
        return next((o for o in self.user_overrides if o.id == user_id), None)

    def serialize(self) -> Dict[str, Any]:
        return {
            "channel_id": self.channel_id,
            "role_overrides": [o.serialize() for o in self.role_overrides],
            "user_overrides": [o.serialize() for o in self.user_overrides],
            "inherit_from_parent": self.inherit_from_parent,
            "version": self.version,
            "last_updated": self.last_updated,
            "last_updated_by": self.last_updated_by,
        }

    @classmethod
    def deserialize(cls, data: Dict[str, Any]) -> ChannelPermissionRecord:
        return cls(
            channel_id=data["channel_id"],
            role_overrides=[
                PermissionOverride.deserialize(o) for o in data.get("role_overrides", [])
            ],
            user_overrides=[
                PermissionOverride.deserialize(o) for o in data.get("user_overrides", [])
            ],
            inherit_from_parent=data.get("inherit_from_parent", True),
            version=int(data.get("version", 0)),
            last_updated=int(data.get("last_updated", 0)),
            last_updated_by=data.get("last_updated_by", ""),
        )


class TargetType(Enum):
    ROLE = "role"
    USER = "user"


class BulkAction(Enum):
    ALLOW = "allow"
    DENY = "deny"
    COPY = "copy"
    RESET = "reset"


@dataclass
class BulkPermissionOperation:
    action: BulkAction
    target_type: TargetType
    target_ids: List[str]
    capabilities: List[Capability] = field(default_factory=list)
    copy_from_id: Optional[str] = None


def _coerce(permissions: Mapping[Union[Capability, str], bool]) -> Dict[Capability, bool]:
    return {
        cap if isinstance(cap, Capability) else Capability(cap): bool(value)
        for cap, value in permissions.items()
    }


class ChannelPermissionStore:
    """Reads and writes channel permission overrides in room account data.

    Every write replaces the whole record. ``version`` is bumped on each write
    but the homeserver offers no conditional write, so two concurrent editors
    can still overwrite each other (last write wins).
    """

    log: TraceLogger

    def __init__(
        self,
        client: Client,
        namespace: Namespace = Namespace(),
        log: Optional[TraceLogger] = None,
    ) -> None:
        self.client = client
        self.namespace = namespace
        self.log = log or logging.getLogger("mau.moderation.channels")

    async def get(self, channel_id: RoomID) -> Optional[ChannelPermissionRecord]:
        try:
            data = await self.client.get_account_data(
                self.namespace.channel_permissions, channel_id
            )
        except MNotFound:
            return None
        if not data:
            return None
        return ChannelPermissionRecord.deserialize(data)

    async def save(
        self,
        record: ChannelPermissionRecord,
        updated_by: str,
        expected_version: Optional[int] = None,
    ) -> ChannelPermissionRecord:
        if expected_version is not None:
            current = await self.get(record.channel_id)
            current_version = current.version if current else 0
            if current_version != expected_version:
                raise VersionConflict(
                    f"Channel permissions for {record.channel_id} are at version "
                    f"{current_version}, expected {expected_version}"
                )
        record.version += 1
        record.last_updated = _now()
        record.last_updated_by = updated_by
        await self.client.set_account_data(
            self.namespace.channel_permissions, record.serialize(), record.channel_id
        )
        self.log.info(
            f"Updated channel permissions for {record.channel_id} (version {record.version})"
        )
        return record

    async def _get_or_create(self, channel_id: RoomID) -> ChannelPermissionRecord:
        return await self.get(channel_id) or ChannelPermissionRecord(channel_id=channel_id)

    @staticmethod
    def _upsert(
        overrides: List[PermissionOverride],
        target_id: str,
        name: str,
        permissions: Dict[Capability, bool],
        created_by: str,
    ) -> None:
        for i, existing in enumerate(overrides):
            if existing.id == target_id:
                overrides[i] = PermissionOverride(
                    target_id, name, permissions, existing.created_at, existing.created_by
                )
                return
        overrides.append(PermissionOverride(target_id, name, permissions, _now(), created_by))

    async def set_role_override(
        self,
        channel_id: RoomID,
        role_id: str,
        role_name: str,
        permissions: Mapping[Union[Capability, str], bool],
        created_by: str,
    ) -> ChannelPermissionRecord:
        record = await self._get_or_create(channel_id)
        self._upsert(
            record.role_overrides, role_id, role_name, _coerce(permissions), created_by
        )
        return await self.save(record, created_by)

    async def set_user_override(
        self,
        channel_id: RoomID,
        user_id: UserID,
        display_name: str,
        permissions: Mapping[Union[Capability, str], bool],
        created_by: str,
    ) -> ChannelPermissionRecord:
        record = await self._get_or_create(channel_id)
        self._upsert(
            record.user_overrides, user_id, display_name, _coerce(permissions), created_by
        )
        return await self.save(record, created_by)

    async def remove_role_override(
        self, channel_id: RoomID, role_id: str, removed_by: str
    ) -> Optional[ChannelPermissionRecord]:
        record = await self.get(channel_id)
        if not record:
            return None
        record.role_overrides = [o for o in record.role_overrides if o.id != role_id]
        return await self.save(record, removed_by)

    async def remove_user_override(
        self, channel_id: RoomID, user_id: UserID, removed_by: str
    ) -> Optional[ChannelPermissionRecord]:
        record = await self.get(channel_id)
        if not record:
            return None
        record.user_overrides = [o for o in record.user_overrides if o.id != user_id]
        return await self.save(record, removed_by)

    @staticmethod
    def _find_override(
        record: Optional[ChannelPermissionRecord], is_role: bool, override_id: Optional[str]
    ) -> Optional[PermissionOverride]:
        if not record or not override_id:
            return None
        if is_role:
            return record.role_override(override_id)
        return record.user_override(override_id)

    async def bulk_update(
        self, channel_id: RoomID, operation: BulkPermissionOperation, executed_by: str
    ) -> Dict[str, List]:
        results = {"succeeded": [], "failed": []}
        for target_id in operation.target_ids:
            try:
                if operation.action == BulkAction.RESET:
                    if operation.target_type == TargetType.ROLE:
                        await self.remove_role_override(channel_id, target_id, executed_by)
                    else:
                        await self.remove_user_override(channel_id, target_id, executed_by)
                    results["succeeded"].append(target_id)
                    continue

                record = await self.get(channel_id)
                is_role = operation.target_type == TargetType.ROLE
                existing = self._find_override(record, is_role, target_id)
                if operation.action == BulkAction.COPY:
                    source = self._find_override(record, is_role, operation.copy_from_id)
                    permissions = dict(source.permissions) if source else {}
                else:
                    # only the listed capabilities change, the rest of the override stays
                    allowed = operation.action == BulkAction.ALLOW
                    permissions = dict(existing.permissions) if existing else {}
                    permissions.update({cap: allowed for cap in operation.capabilities})

                if is_role:
                    name = existing.name if existing else f"Role {target_id}"
                    await self.set_role_override(
                        channel_id, target_id, name, permissions, executed_by
                    )
                else:
                    name = existing.name if existing else target_id
                    await self.set_user_override(
                        channel_id, target_id, name, permissions, executed_by
                    )
                results["succeeded"].append(target_id)
            except Exception as e:
                self.log.warning(f"Bulk permission update for {target_id} failed: {e}")
                results["failed"].append({"id": target_id, "error": str(e)})
        return results

    async def apply_capabilities(
        self, room_id: RoomID, capabilities: CapabilitySet
    ) -> Dict[str, Any]:
        """Raise the room's power level thresholds to match a capability set."""
        current = await self.client.get_state_event(room_id, EventType.ROOM_POWER_LEVELS)
        baseline = content_dict(current)
        power_levels = materialize_power_levels(capabilities, baseline)
        await self.client.send_state_event(
            room_id, EventType.ROOM_POWER_LEVELS, power_levels
        )
        self.log.info(f"Updated power levels for {room_id} from capability set")
        return power_levels

