"""Named capabilities and their mapping onto Matrix power levels.

A capability is a product-level permission ("can kick members"). Most of them
correspond to one or more power level thresholds in ``m.room.power_levels``;
the ones with an empty mapping are only enforced by this plugin.
"""
from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, List, Mapping, NamedTuple, Optional

CapabilitySet = Dict["Capability", bool]


class Capability(Enum):
    # server management
    MANAGE_SERVER = "manage_server"
    MANAGE_ROLES = "manage_roles"
    MANAGE_CHANNELS = "manage_channels"
    MANAGE_SERVER_SETTINGS = "manage_server_settings"
    VIEW_SERVER_INSIGHTS = "view_server_insights"
    # member management
    KICK_MEMBERS = "kick_members"
    BAN_MEMBERS = "ban_members"
    TIMEOUT_MEMBERS = "timeout_members"
    MOVE_MEMBERS = "move_members"
    MANAGE_MEMBER_ROLES = "manage_member_roles"
    # text
    VIEW_CHANNELS = "view_channels"
    SEND_MESSAGES = "send_messages"
    SEND_MESSAGES_IN_THREADS = "send_messages_in_threads"
    CREATE_PUBLIC_THREADS = "create_public_threads"
    CREATE_PRIVATE_THREADS = "create_private_threads"
    EMBED_LINKS = "embed_links"
    ATTACH_FILES = "attach_files"
    ADD_REACTIONS = "add_reactions"
    USE_EXTERNAL_EMOJIS = "use_external_emojis"
    READ_MESSAGE_HISTORY = "read_message_history"
    # voice
    CONNECT = "connect"
    SPEAK = "speak"
    USE_VOICE_ACTIVATION = "use_voice_activation"
    SHARE_SCREEN = "share_screen"
    USE_VIDEO = "use_video"
    # advanced
    MANAGE_MESSAGES = "manage_messages"
    PIN_MESSAGES = "pin_messages"
    MENTION_EVERYONE = "mention_everyone"
    CREATE_INVITES = "create_invites"
    USE_SLASH_COMMANDS = "use_slash_commands"
    CHANGE_NICKNAME = "change_nickname"
    MANAGE_NICKNAMES = "manage_nicknames"
    # administrative
    ADMINISTRATOR = "administrator"


class Scope(Enum):
    ROOM = "room"
    SPACE = "space"
    BOTH = "both"


class PermissionMapping(NamedTuple):
    event_type: str
    required_level: int
    is_state_event: bool
    scope: Scope


# top-level power level fields that are not keyed under "events"
SPECIAL_THRESHOLDS = ("ban", "kick", "invite", "redact")

DEFAULT_POWER_LEVELS = {
    "ban": 50,
    "kick": 50,
    "invite": 25,
    "redact": 50,
    "events_default": 0,
    "state_default": 50,
    "users_default": 0,
}

_M = PermissionMapping

CAPABILITY_MAPPINGS: Dict[Capability, List[PermissionMapping]] = {
    Capability.MANAGE_SERVER: [
        _M("m.room.name", 100, True, Scope.BOTH),
        _M("m.room.avatar", 100, True, Scope.BOTH),
        _M("m.room.topic", 100, True, Scope.BOTH),
    ],
    Capability.MANAGE_ROLES: [_M("m.room.power_levels", 100, True, Scope.BOTH)],
    Capability.MANAGE_CHANNELS: [
        _M("m.space.child", 50, True, Scope.SPACE),
        _M("m.room.create", 50, True, Scope.BOTH),
    ],
    Capability.MANAGE_SERVER_SETTINGS: [
        _M("m.room.join_rules", 100, True, Scope.BOTH),
        _M("m.room.history_visibility", 100, True, Scope.BOTH),
    ],
    Capability.VIEW_SERVER_INSIGHTS: [],
    Capability.KICK_MEMBERS: [_M("kick", 50, False, Scope.BOTH)],
    Capability.BAN_MEMBERS: [_M("ban", 50, False, Scope.BOTH)],
    Capability.TIMEOUT_MEMBERS: [],
    Capability.MOVE_MEMBERS: [],
    Capability.MANAGE_MEMBER_ROLES: [_M("m.room.power_levels", 50, True, Scope.BOTH)],
    Capability.VIEW_CHANNELS: [_M("m.room.message", 0, False, Scope.ROOM)],
    Capability.SEND_MESSAGES: [_M("m.room.message", 0, False, Scope.ROOM)],
    Capability.SEND_MESSAGES_IN_THREADS: [_M("m.room.message", 0, False, Scope.ROOM)],
    Capability.CREATE_PUBLIC_THREADS: [_M("m.room.message", 0, False, Scope.ROOM)],
    Capability.CREATE_PRIVATE_THREADS: [_M("m.room.message", 25, False, Scope.ROOM)],
    Capability.EMBED_LINKS: [_M("m.room.message", 0, False, Scope.ROOM)],
    Capability.ATTACH_FILES: [_M("m.room.message", 0, False, Scope.ROOM)],
    Capability.ADD_REACTIONS: [_M("m.reaction", 0, False, Scope.ROOM)],
    Capability.USE_EXTERNAL_EMOJIS: [],
    Capability.READ_MESSAGE_HISTORY: [_M("events_default", 0, False, Scope.ROOM)],
    Capability.CONNECT: [],
    Capability.SPEAK: [],
    Capability.USE_VOICE_ACTIVATION: [],
    Capability.SHARE_SCREEN: [],
    Capability.USE_VIDEO: [],
    Capability.MANAGE_MESSAGES: [_M("redact", 50, False, Scope.ROOM)],
    Capability.PIN_MESSAGES: [_M("m.room.pinned_events", 50, True, Scope.ROOM)],
    Capability.MENTION_EVERYONE: [],
    Capability.CREATE_INVITES: [_M("invite", 25, False, Scope.BOTH)],
    Capability.USE_SLASH_COMMANDS: [],
    Capability.CHANGE_NICKNAME: [_M("m.room.member", 0, True, Scope.ROOM)],
    Capability.MANAGE_NICKNAMES: [_M("m.room.member", 50, True, Scope.ROOM)],
    Capability.ADMINISTRATOR: [_M("state_default", 100, True, Scope.BOTH)],
}


@dataclass(frozen=True)
class PermissionCategory:
    id: str
    name: str
    description: str
    capabilities: tuple


PERMISSION_CATEGORIES = (
    PermissionCategory(
        "general",
        "General Permissions",
        "Basic server and channel access",
        (
            Capability.VIEW_CHANNELS,
            Capability.CHANGE_NICKNAME,
            Capability.USE_SLASH_COMMANDS,
            Capability.CREATE_INVITES,
        ),
    ),
    PermissionCategory(
        "text",
        "Text Permissions",
        "Text channel and messaging permissions",
        (
            Capability.SEND_MESSAGES,
            Capability.SEND_MESSAGES_IN_THREADS,
            Capability.CREATE_PUBLIC_THREADS,
            Capability.CREATE_PRIVATE_THREADS,
            Capability.EMBED_LINKS,
            Capability.ATTACH_FILES,
            Capability.ADD_REACTIONS,
            Capability.USE_EXTERNAL_EMOJIS,
            Capability.READ_MESSAGE_HISTORY,
        ),
    ),
    PermissionCategory(
        "voice",
        "Voice Permissions",
        "Voice and video channel permissions",
        (
            Capability.CONNECT,
            Capability.SPEAK,
            Capability.USE_VOICE_ACTIVATION,
            Capability.SHARE_SCREEN,
            Capability.USE_VIDEO,
        ),
    ),
    PermissionCategory(
        "moderation",
        "Moderation Permissions",
        "Member and content moderation",
        (
            Capability.KICK_MEMBERS,
            Capability.BAN_MEMBERS,
            Capability.TIMEOUT_MEMBERS,
            Capability.MOVE_MEMBERS,
            Capability.MANAGE_MESSAGES,
            Capability.PIN_MESSAGES,
            Capability.MENTION_EVERYONE,
            Capability.MANAGE_NICKNAMES,
        ),
    ),
    PermissionCategory(
        "management",
        "Management Permissions",
        "Server and role management",
        (
            Capability.MANAGE_SERVER,
            Capability.MANAGE_ROLES,
            Capability.MANAGE_CHANNELS,
            Capability.MANAGE_SERVER_SETTINGS,
            Capability.MANAGE_MEMBER_ROLES,
            Capability.VIEW_SERVER_INSIGHTS,
            Capability.ADMINISTRATOR,
        ),
    ),
)


def capability_set(*enabled: Capability) -> CapabilitySet:
    """Build a full capability set with only ``enabled`` switched on."""
    return {cap: cap in enabled for cap in Capability}


@dataclass(frozen=True)
class RoleTemplate:
    id: str
    name: str
    description: str
    power_level: int
    capabilities: Mapping[Capability, bool]


_MEMBER_CAPABILITIES = (
    Capability.VIEW_CHANNELS,
    Capability.SEND_MESSAGES,
    Capability.SEND_MESSAGES_IN_THREADS,
    Capability.CREATE_PUBLIC_THREADS,
    Capability.EMBED_LINKS,
    Capability.ATTACH_FILES,
    Capability.ADD_REACTIONS,
    Capability.USE_EXTERNAL_EMOJIS,
    Capability.READ_MESSAGE_HISTORY,
    Capability.CONNECT,
    Capability.SPEAK,
    Capability.USE_VOICE_ACTIVATION,
    Capability.USE_VIDEO,
    Capability.USE_SLASH_COMMANDS,
    Capability.CHANGE_NICKNAME,
)

_MODERATOR_CAPABILITIES = _MEMBER_CAPABILITIES + (
    Capability.MANAGE_CHANNELS,
    Capability.VIEW_SERVER_INSIGHTS,
    Capability.KICK_MEMBERS,
    Capability.BAN_MEMBERS,
    Capability.TIMEOUT_MEMBERS,
    Capability.MOVE_MEMBERS,
    Capability.CREATE_PRIVATE_THREADS,
    Capability.SHARE_SCREEN,
    Capability.MANAGE_MESSAGES,
    Capability.PIN_MESSAGES,
    Capability.MENTION_EVERYONE,
    Capability.CREATE_INVITES,
    Capability.MANAGE_NICKNAMES,
)

ROLE_TEMPLATES: Dict[str, RoleTemplate] = {
    "admin": RoleTemplate(
        "admin",
        "Administrator",
        "Full server control with all permissions",
        100,
        capability_set(*Capability),
    ),
    "moderator": RoleTemplate(
        "moderator",
        "Moderator",
        "Can moderate members and manage channels",
        50,
        capability_set(*_MODERATOR_CAPABILITIES),
    ),
    "member": RoleTemplate(
        "member",
        "Member",
        "Standard member permissions for regular users",
        0,
        capability_set(*_MEMBER_CAPABILITIES),
    ),
}


def get_template(template_id: str) -> Optional[RoleTemplate]:
    return ROLE_TEMPLATES.get(template_id)


def apply_template(template_id: str) -> CapabilitySet:
    template = ROLE_TEMPLATES.get(template_id)
    if template is None:
        raise KeyError(f"Permission template '{template_id}' not found")
    return dict(template.capabilities)


def get_mappings(capability: Capability) -> List[PermissionMapping]:
    return CAPABILITY_MAPPINGS[capability]


def required_power_level(capabilities: Mapping[Capability, bool]) -> int:
    """Return the lowest power level that satisfies every enabled capability."""
    level = 0
    for capability, enabled in capabilities.items():
        if not enabled:
            continue
        for mapping in CAPABILITY_MAPPINGS[capability]:
            level = max(level, mapping.required_level)
    return level


def materialize_power_levels(
    capabilities: Mapping[Capability, bool],
    baseline: Optional[Mapping[str, Any]] = None,
) -> Dict[str, Any]:
    """Build a full ``m.room.power_levels`` document for a capability set.

    Starts from ``baseline`` (usually the room's current document) layered over
    the protocol defaults. ``state_default`` and ``events_default`` are only
    ever raised; named event types and the ban/kick/invite/redact thresholds
    are set to the mapped level. When several enabled capabilities map the
    same name, the highest level wins.
    """
    power_levels: Dict[str, Any] = dict(DEFAULT_POWER_LEVELS)
    power_levels["events"] = {}
    if baseline:
        power_levels.update(baseline)
    power_levels["events"] = dict(power_levels.get("events") or {})

    mapped: Dict[str, int] = {}
    for capability, enabled in capabilities.items():
        if not enabled:
            continue
        for mapping in CAPABILITY_MAPPINGS[capability]:
            if mapping.event_type in ("state_default", "events_default"):
                power_levels[mapping.event_type] = max(
                    power_levels[mapping.event_type], mapping.required_level
                )
            elif mapping.event_type in SPECIAL_THRESHOLDS or mapping.is_state_event:
                mapped[mapping.event_type] = max(
                    mapped.get(mapping.event_type, mapping.required_level),
                    mapping.required_level,
                )

    for event_type, level in mapped.items():
        if event_type in SPECIAL_THRESHOLDS:
            power_levels[event_type] = level
        else:
            power_levels["events"][event_type] = level
    return power_levels


def threshold_for(
    mapping: PermissionMapping, room_power_levels: Optional[Mapping[str, Any]] = None
) -> int:
    """Level required for one mapping, honouring the room's own thresholds."""
    if not room_power_levels:
        return mapping.required_level
    events = room_power_levels.get("events") or {}
    if mapping.event_type in events:
        return events[mapping.event_type]
    if mapping.event_type in SPECIAL_THRESHOLDS:
        return room_power_levels.get(mapping.event_type, mapping.required_level)
    return mapping.required_level


def has_permission(
    user_level: int,
    capability: Capability,
    room_power_levels: Optional[Mapping[str, Any]] = None,
) -> bool:
    mappings = CAPABILITY_MAPPINGS[capability]
    # capabilities without a protocol equivalent are never granted implicitly
    if not mappings:
        return False
    return all(
        user_level >= threshold_for(mapping, room_power_levels) for mapping in mappings
    )


def user_permissions(
    user_level: int, room_power_levels: Optional[Mapping[str, Any]] = None
) -> CapabilitySet:
    return {
        capability: has_permission(user_level, capability, room_power_levels)
        for capability in Capability
    }


def validate_permissions(
    capabilities: Mapping[Capability, bool], power_level: int
) -> List[str]:
    """Check a capability set against a power level. Returns a list of problems."""
    errors = []
    required = required_power_level(capabilities)
    if power_level < required:
        errors.append(
            f"Power level {power_level} is too low for selected permissions. "
            f"Minimum required: {required}"
        )
    if capabilities.get(Capability.ADMINISTRATOR) and power_level < 100:
        errors.append("Administrator permission requires power level 100")
    if capabilities.get(Capability.MANAGE_ROLES) and power_level < 50:
        errors.append("Manage roles permission requires at least power level 50")
    if capabilities.get(Capability.SEND_MESSAGES) and not capabilities.get(
        Capability.VIEW_CHANNELS
    ):
        errors.append("Cannot send messages without view channels permission")
    return errors


def parse_capability(name: str) -> Capability:
    """Accept ``kick_members``, ``kick-members`` or ``KICK_MEMBERS``."""
    try:
        return Capability(name.strip().lower().replace("-", "_"))
    except ValueError:
        raise ValueError(f"Unknown capability: {name}") from None
