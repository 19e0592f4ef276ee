# modbot - a maubot plugin for room moderation with timed bans/mutes and channel permission overrides.

from typing import List, Type
import asyncio

from mautrix.types import (
    EventID,
    PaginationDirection,
    RoomID,
    UserID,
)
from mautrix.util.config import BaseProxyConfig, ConfigUpdateHelper
from maubot import Plugin, MessageEvent
from maubot.handlers import command

from .audit import ModerationLog
from .channels import ChannelPermissionStore
from .duration import BAN_DURATION_PRESETS, DAY, MUTE_DURATION_PRESETS, format_duration, split_duration
from .executor import ModerationExecutor
from .permissions import ROLE_TEMPLATES, Capability, apply_template, parse_capability
from .resolver import PermissionResolver
from .sweeper import ExpirySweeper
from .types import ModerationResult, Namespace


class Config(BaseProxyConfig):
    def do_update(self, helper: ConfigUpdateHelper) -> None:
        helper.copy("namespace")
        helper.copy("mute_power_level")
        helper.copy("max_duration_days")
        helper.copy("sweep_interval")
        helper.copy("sweep_rooms")
        helper.copy("notification_room")
        helper.copy("purge_limit")


class ModerationBot(Plugin):

    _sweep_task: asyncio.Task = None

    async def start(self) -> None:
        await super().start()
        self.config.load_and_update()
        self.setup_components()
        if self.config["sweep_interval"]:
            self._sweep_task = asyncio.create_task(self._sweep_loop())

    async def stop(self) -> None:
        if self._sweep_task:
            self._sweep_task.cancel()
        await super().stop()

    def on_external_config_update(self) -> None:
        self.config.load_and_update()
        self.setup_components()

    def setup_components(self) -> None:
        namespace = Namespace(self.config["namespace"])
        self.audit = ModerationLog(self.client, namespace, log=self.log.getChild("audit"))
        self.channels = ChannelPermissionStore(
            self.client, namespace, log=self.log.getChild("channels")
        )
        self.resolver = PermissionResolver(
            self.client, self.channels, log=self.log.getChild("resolver")
        )
        self.executor = ModerationExecutor(
            self.client,
            self.audit,
            namespace,
            mute_level=self.config["mute_power_level"],
            max_duration_ms=self.config["max_duration_days"] * DAY,
            log=self.log.getChild("executor"),
        )
        self.sweeper = ExpirySweeper(
            self.client, self.executor, log=self.log.getChild("sweeper")
        )

    async def _sweep_loop(self) -> None:
        while True:
            try:
                await asyncio.sleep(self.config["sweep_interval"])
                for room_id in await self.get_sweep_rooms():
                    await self.sweep_room(room_id)
            except asyncio.CancelledError:
                break
            except Exception as e:
                self.log.error(f"Error in expiry sweep loop: {e}")

    async def get_sweep_rooms(self) -> List[RoomID]:
        if self.config["sweep_rooms"]:
            return self.config["sweep_rooms"]
        return await self.client.get_joined_rooms()

    async def sweep_room(self, room_id: RoomID) -> str:
        bans = await self.sweeper.check_expired_bans(room_id)
        mutes = await self.sweeper.check_expired_mutes(room_id)
        summary = (
            f"Expiry sweep of {room_id}: {bans.unbanned_count}/{bans.checked_count} bans lifted, "
            f"{mutes.unbanned_count}/{mutes.checked_count} mutes lifted"
        )
        errors = bans.errors + mutes.errors
        if errors:
            summary += f", {len(errors)} errors: " + "; ".join(
                f"{e['user_id'] or room_id}: {e['error']}" for e in errors
            )
        if bans.unbanned_count or mutes.unbanned_count or errors:
            self.log.info(summary)
            if self.config["notification_room"]:
                try:
                    await self.client.send_notice(self.config["notification_room"], summary)
                except Exception as e:
                    self.log.warning(f"Failed to send sweep summary: {e}")
        return summary

    async def get_messages_to_redact(self, room_id: RoomID, mxid: UserID, limit: int) -> List[EventID]:
        try:
            messages = await self.client.get_messages(
                room_id,
                limit=limit,
                filter_json={"senders": [mxid], "not_types": ["m.room.redaction"]},
                direction=PaginationDirection.BACKWARD,
            )
            # already redacted events come back with empty content
            event_ids = [
                event.event_id
                for event in messages.events
                if event.content and event.content.serialize()
            ]
            self.log.debug(f"found {len(event_ids)} messages to redact in {room_id}")
            return event_ids
        except Exception as e:
            self.log.error(f"Error getting messages to redact: {e}")
            return []

    async def user_permitted(
        self, evt: MessageEvent, capability: Capability = Capability.MANAGE_ROLES
    ) -> bool:
        check = await self.resolver.resolve(evt.room_id, evt.sender, capability)
        self.log.debug(f"{evt.sender} {capability.value} in {evt.room_id}: {check.reasoning}")
        return check.allowed

    async def report(self, evt: MessageEvent, result: ModerationResult, done: str) -> None:
        if result.success:
            await evt.reply(done)
        else:
            await evt.reply(f"{result.message} ({result.error.value})")

    @command.new("mod", help="moderate the current room")
    async def mod(self) -> None:
        pass

    @mod.subcommand("kick", help="kick a user from this room")
    @command.argument("mxid", "full matrix ID", required=True)
    @command.argument("reason", pass_raw=True, required=False)
    async def kick_user(self, evt: MessageEvent, mxid: UserID, reason: str) -> None:
        await evt.mark_read()
        result = await self.executor.kick(evt.room_id, evt.sender, mxid, reason or None)
        await self.report(evt, result, f"{mxid} was kicked")

    @mod.subcommand(
        "ban", help=f"ban a user from this room, optionally for one of {', '.join(BAN_DURATION_PRESETS)}"
    )
    @command.argument("mxid", "full matrix ID", required=True)
    @command.argument("rest", "[duration] [reason]", pass_raw=True, required=False)
    async def ban_user(self, evt: MessageEvent, mxid: UserID, rest: str) -> None:
        await evt.mark_read()
        duration_ms, reason = split_duration(rest)
        result = await self.executor.ban(
            evt.room_id, evt.sender, mxid, reason or None, duration_ms
        )
        await self.report(evt, result, f"{mxid} was banned ({format_duration(duration_ms)})")

    @mod.subcommand("unban", help="lift a ban in this room")
    @command.argument("mxid", "full matrix ID", required=True)
    async def unban_user(self, evt: MessageEvent, mxid: UserID) -> None:
        await evt.mark_read()
        result = await self.executor.unban(evt.room_id, evt.sender, mxid)
        await self.report(evt, result, f"{mxid} was unbanned")

    @mod.subcommand(
        "mute", help=f"mute a user in this room, optionally for one of {', '.join(MUTE_DURATION_PRESETS)}"
    )
    @command.argument("mxid", "full matrix ID", required=True)
    @command.argument("rest", "[duration] [reason]", pass_raw=True, required=False)
    async def mute_user(self, evt: MessageEvent, mxid: UserID, rest: str) -> None:
        await evt.mark_read()
        duration_ms, reason = split_duration(rest)
        result = await self.executor.mute(
            evt.room_id, evt.sender, mxid, reason or None, duration_ms
        )
        await self.report(evt, result, f"{mxid} was muted ({format_duration(duration_ms)})")

    @mod.subcommand("unmute", help="restore a muted user's power level")
    @command.argument("mxid", "full matrix ID", required=True)
    async def unmute_user(self, evt: MessageEvent, mxid: UserID) -> None:
        await evt.mark_read()
        result = await self.executor.unmute(evt.room_id, evt.sender, mxid)
        await self.report(evt, result, f"{mxid} was unmuted")

    @mod.subcommand("redact", help="delete a single message by event ID")
    @command.argument("event_id", "event ID", required=True)
    @command.argument("reason", pass_raw=True, required=False)
    async def redact_message(self, evt: MessageEvent, event_id: EventID, reason: str) -> None:
        result = await self.executor.delete_message(
            evt.room_id, evt.sender, event_id, reason or None
        )
        await self.report(evt, result, f"message deleted ({result.message})")

    @mod.subcommand("purge", help="delete a user's recent messages in this room")
    @command.argument("mxid", "full matrix ID", required=True)
    @command.argument("count", required=False)
    async def purge_messages(self, evt: MessageEvent, mxid: UserID, count: str) -> None:
        await evt.mark_read()
        limit = self.config["purge_limit"]
        if count:
            try:
                limit = min(int(count), limit)
            except ValueError:
                await evt.reply(f"'{count}' is not a number")
                return
        msg = await evt.respond("collecting messages...")
        event_ids = await self.get_messages_to_redact(evt.room_id, mxid, limit)
        result = await self.executor.bulk_delete_messages(
            evt.room_id, evt.sender, event_ids, reason="content removed"
        )
        errors = "".join(
            f"<br />{e['event_id']}: {e['error']}" for e in result.errors
        )
        await evt.respond(
            f"deleted {result.deleted_count} messages from {mxid}, "
            f"{result.failed_count} failed{errors}",
            allow_html=True,
            edits=msg,
        )

    @mod.subcommand("log", help="show recent moderation actions in this room")
    @command.argument("limit", required=False)
    async def show_log(self, evt: MessageEvent, limit: str) -> None:
        if not await self.user_permitted(evt, Capability.MANAGE_MESSAGES):
            await evt.reply("You don't have permission to use this command")
            return
        try:
            entries = await self.audit.query(evt.room_id, int(limit) if limit else 10)
        except ValueError:
            await evt.reply(f"'{limit}' is not a number")
            return
        if not entries:
            await evt.reply("no moderation actions recorded")
            return
        lines = [
            f"{entry.action.value}: {entry.target_user_id} by {entry.actor_id}"
            + (f" ({entry.reason})" if entry.reason else "")
            for entry in entries
        ]
        await evt.respond("<br />".join(lines), allow_html=True)

    @mod.subcommand("sweep", help="lift expired bans and mutes in this room now")
    async def sweep_now(self, evt: MessageEvent) -> None:
        if not await self.user_permitted(evt, Capability.BAN_MEMBERS):
            await evt.reply("You don't have permission to use this command")
            return
        await evt.reply(await self.sweep_room(evt.room_id))

    @mod.subcommand("perms", help="show a user's effective permissions in this room")
    @command.argument("mxid", "full matrix ID", required=True)
    async def show_permissions(self, evt: MessageEvent, mxid: UserID) -> None:
        # anyone may look up their own permissions
        if mxid != evt.sender and not await self.user_permitted(evt, Capability.MANAGE_MESSAGES):
            await evt.reply("You don't have permission to use this command")
            return
        effective = await self.resolver.bulk_resolve(evt.room_id, mxid)
        allowed = [cap.value for cap, value in effective.items() if value]
        denied = [cap.value for cap, value in effective.items() if not value]
        await evt.respond(
            f"<p><b>Allowed:</b> {', '.join(allowed) or 'none'}</p>"
            f"<p><b>Denied:</b> {', '.join(denied) or 'none'}</p>",
            allow_html=True,
        )

    @mod.subcommand("override", help="allow, deny or clear a capability for a user in this room")
    @command.argument("mxid", "full matrix ID", required=True)
    @command.argument("capability", required=True)
    @command.argument("value", "allow|deny|clear", required=True)
    async def set_override(
        self, evt: MessageEvent, mxid: UserID, capability: str, value: str
    ) -> None:
        if not await self.user_permitted(evt):
            await evt.reply("You don't have permission to use this command")
            return
        try:
            cap = parse_capability(capability)
        except ValueError as e:
            await evt.reply(str(e))
            return
        value = value.lower()
        if value not in ("allow", "deny", "clear"):
            await evt.reply("value must be one of allow, deny or clear")
            return

        try:
            record = await self.channels.get(evt.room_id)
            existing = record.user_override(mxid) if record else None
            permissions = dict(existing.permissions) if existing else {}
            if value == "clear":
                permissions.pop(cap, None)
            else:
                permissions[cap] = value == "allow"
            if permissions:
                await self.channels.set_user_override(
                    evt.room_id, mxid, mxid, permissions, evt.sender
                )
            else:
                await self.channels.remove_user_override(evt.room_id, mxid, evt.sender)
        except Exception as e:
            self.log.error(f"Failed to update channel permissions in {evt.room_id}: {e}")
            await evt.reply(f"Failed to update channel permissions: {e}")
            return
        await evt.reply(f"{cap.value} for {mxid}: {value}")

    @mod.subcommand(
        "template", help=f"apply a role template ({', '.join(ROLE_TEMPLATES)}) to this room's power levels"
    )
    @command.argument("template_id", required=True)
    async def apply_role_template(self, evt: MessageEvent, template_id: str) -> None:
        if not await self.user_permitted(evt):
            await evt.reply("You don't have permission to use this command")
            return
        try:
            capabilities = apply_template(template_id)
        except KeyError as e:
            await evt.reply(e.args[0])
            return
        try:
            await self.channels.apply_capabilities(evt.room_id, capabilities)
        except Exception as e:
            self.log.error(f"Failed to apply template {template_id} to {evt.room_id}: {e}")
            await evt.reply(f"Failed to update power levels: {e}")
            return
        await evt.reply(f"power levels updated from the {ROLE_TEMPLATES[template_id].name} template")

    @classmethod
    def get_config_class(cls) -> Type[BaseProxyConfig]:
        return Config
