"""Records, results and error taxonomy shared by the moderation components."""
from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional

from mautrix.types import EventType, UserID

DEFAULT_NAMESPACE = "org.maubot.community"

# power level a muted user is set to
MUTED_POWER_LEVEL = -1


class ModerationError(Enum):
    PERMISSION_DENIED = "permission_denied"
    SELF_TARGET_FORBIDDEN = "self_target_forbidden"
    NOT_FOUND = "not_found"
    REMOTE_FAILURE = "remote_failure"
    INVALID_INPUT = "invalid_input"


class ModerationAction(Enum):
    KICK = "kick"
    BAN = "ban"
    UNBAN = "unban"
    MUTE = "mute"
    UNMUTE = "unmute"
    DELETE_MESSAGE = "delete_message"


class ModerationFailure(Exception):
    """Raised inside the executor to short-circuit an action with a result."""

    def __init__(self, error: ModerationError, message: str) -> None:
        super().__init__(message)
        self.error = error
        self.message = message


class VersionConflict(Exception):
    pass


@dataclass(frozen=True)
class Namespace:
    """Custom event and account-data types, derived from a configurable prefix."""

    prefix: str = DEFAULT_NAMESPACE

    @property
    def mute(self) -> EventType:
        return EventType.find(f"{self.prefix}.moderation.mute", EventType.Class.STATE)

    @property
    def ban(self) -> EventType:
        return EventType.find(f"{self.prefix}.moderation.ban", EventType.Class.STATE)

    @property
    def log(self) -> EventType:
        return EventType.find(f"{self.prefix}.moderation.log", EventType.Class.STATE)

    @property
    def channel_permissions(self) -> str:
        return f"{self.prefix}.channel_permissions"


def content_dict(content: Any) -> Dict[str, Any]:
    """Turn whatever mautrix handed back for a custom event into a plain dict."""
    if content is None:
        return {}
    if hasattr(content, "serialize"):
        return content.serialize() or {}
    return dict(content)


@dataclass
class BanRecord:
    actor_id: UserID
    reason: str = ""
    created_at: int = 0
    duration_ms: int = 0
    expires_at: Optional[int] = None

    @classmethod
    def create(
        cls, actor_id: UserID, reason: str, created_at: int, duration_ms: int
    ) -> BanRecord:
        expires_at = created_at + duration_ms if duration_ms > 0 else None
        return cls(actor_id, reason, created_at, duration_ms, expires_at)

    def is_expired(self, now: int) -> bool:
        return self.expires_at is not None and self.expires_at <= now

    def serialize(self) -> Dict[str, Any]:
        data = {
            "actor_id": self.actor_id,
            "reason": self.reason,
            "created_at": self.created_at,
            "duration_ms": self.duration_ms,
        }
        if self.expires_at is not None:
            data["expires_at"] = self.expires_at
        return data

    @classmethod
    def deserialize(cls, data: Dict[str, Any]) -> BanRecord:
        return cls(
            actor_id=data["actor_id"],
            reason=data.get("reason", ""),
            created_at=int(data.get("created_at", 0)),
            duration_ms=int(data.get("duration_ms", 0)),
            expires_at=data.get("expires_at"),
        )


@dataclass
class MuteRecord(BanRecord):
    original_power_level: int = 0

    @classmethod
    def create(
        cls,
        actor_id: UserID,
        reason: str,
        created_at: int,
        duration_ms: int,
        original_power_level: int = 0,
    ) -> MuteRecord:
        expires_at = created_at + duration_ms if duration_ms > 0 else None
        return cls(
            actor_id, reason, created_at, duration_ms, expires_at, original_power_level
        )

    def serialize(self) -> Dict[str, Any]:
        data = super().serialize()
        data["original_power_level"] = self.original_power_level
        return data

    @classmethod
    def deserialize(cls, data: Dict[str, Any]) -> MuteRecord:
        base = BanRecord.deserialize(data)
        return cls(
            base.actor_id,
            base.reason,
            base.created_at,
            base.duration_ms,
            base.expires_at,
            int(data.get("original_power_level", 0)),
        )


@dataclass
class ModerationLogEntry:
    action: ModerationAction
    actor_id: UserID
    target_user_id: UserID
    room_id: str
    reason: str
    timestamp: int
    event_id: Optional[str] = None
    metadata: Optional[Dict[str, Any]] = None

    def serialize(self) -> Dict[str, Any]:
        data = {
            "action": self.action.value,
            "actor_id": self.actor_id,
            "target_user_id": self.target_user_id,
            "room_id": self.room_id,
            "reason": self.reason,
            "timestamp": self.timestamp,
        }
        if self.event_id:
            data["event_id"] = self.event_id
        if self.metadata:
            data["metadata"] = self.metadata
        return data

    @classmethod
    def deserialize(cls, data: Dict[str, Any]) -> ModerationLogEntry:
        return cls(
            action=ModerationAction(data["action"]),
            actor_id=data["actor_id"],
            target_user_id=data.get("target_user_id", ""),
            room_id=data["room_id"],
            reason=data.get("reason", ""),
            timestamp=int(data["timestamp"]),
            event_id=data.get("event_id"),
            metadata=data.get("metadata"),
        )


@dataclass
class ModerationResult:
    success: bool
    error: Optional[ModerationError] = None
    message: str = ""
    record: Optional[BanRecord] = None
    event_id: Optional[str] = None

    @classmethod
    def failed(cls, failure: ModerationFailure) -> ModerationResult:
        return cls(success=False, error=failure.error, message=failure.message)


@dataclass
class CanDeleteResult:
    can_delete: bool
    reason: str


@dataclass
class BulkDeleteResult:
    deleted_count: int = 0
    failed_count: int = 0
    errors: List[Dict[str, str]] = field(default_factory=list)

    @property
    def success(self) -> bool:
        return self.failed_count == 0


@dataclass
class ExpiryCheckResult:
    checked_count: int = 0
    unbanned_count: int = 0
    errors: List[Dict[str, Optional[str]]] = field(default_factory=list)


@dataclass
class BanStatus:
    is_banned: bool
    record: Optional[BanRecord] = None


@dataclass
class MuteStatus:
    is_muted: bool
    record: Optional[MuteRecord] = None


@dataclass
class RoomMember:
    user_id: UserID
    display_name: str
    power_level: int
    role: str
