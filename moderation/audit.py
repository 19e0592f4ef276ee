from __future__ import annotations

from typing import List, Optional
import logging
import uuid

from mautrix.client import Client
from mautrix.types import EventID, RoomID
from mautrix.util.logging import TraceLogger

from .types import ModerationLogEntry, Namespace, content_dict


class ModerationLog:
    """Append-only moderation log kept as room state, one state key per entry."""

    log: TraceLogger

    def __init__(
        self,
        client: Client,
        namespace: Namespace = Namespace(),
        log: Optional[TraceLogger] = None,
    ) -> None:
        self.client = client
        self.namespace = namespace
        self.log = log or logging.getLogger("mau.moderation.audit")

    async def append(self, entry: ModerationLogEntry) -> EventID:
        log_id = f"{entry.timestamp}-{uuid.uuid4().hex[:12]}"
        event_id = await self.client.send_state_event(
            entry.room_id, self.namespace.log, entry.serialize(), state_key=log_id
        )
        self.log.debug(
            f"Logged {entry.action.value} of {entry.target_user_id} by {entry.actor_id} "
            f"in {entry.room_id}"
        )
        return event_id

    async def query(
        self, room_id: RoomID, limit: Optional[int] = None
    ) -> List[ModerationLogEntry]:
        entries = []
        for evt in await self.client.get_state(room_id):
            if evt.type.t != self.namespace.log.t:
                continue
            data = content_dict(evt.content)
            if not data:
                continue
            try:
                entries.append(ModerationLogEntry.deserialize(data))
            except (KeyError, ValueError, TypeError) as e:
                self.log.warning(f"Skipping malformed log entry {evt.state_key} in {room_id}: {e}")
        entries.sort(key=lambda entry: entry.timestamp, reverse=True)
        if limit is not None:
            entries = entries[:limit]
        return entries
