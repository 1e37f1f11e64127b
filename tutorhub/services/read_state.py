"""Per-user, per-conversation "last read" markers.

Each user's markers live in one key-value hash, ``lastReadTimes_{user_id}``,
with one field per conversation holding an ISO-8601 timestamp. Writing a
marker touches only its own field, so concurrent writers for the same user
never drop each other's entries. Markers never expire.
"""

import json
import logging
from datetime import datetime
from typing import Dict, Optional

from tutorhub.utils.clock import as_utc, utcnow
from tutorhub.utils.realtime_bus import user_channel

logger = logging.getLogger(__name__)


def read_times_key(user_id: str) -> str:
    return f"lastReadTimes_{user_id}"


class ReadStateNotifier:
    """Tells every open view of a user that its read markers changed."""

    def __init__(self, bus) -> None:
        self._bus = bus

    async def notify(self, user_id: str, conversation_id: str, read_at: datetime) -> None:
        payload = json.dumps({"type": "read", "conversation_id": conversation_id, "read_at": read_at.isoformat()})
        await self._bus.publish(user_channel(user_id), payload)


class ReadTimeStore:

    def __init__(self, kv_store, notifier: Optional[ReadStateNotifier] = None) -> None:
        self._kv = kv_store
        self._notifier = notifier

    async def get(self, user_id: str) -> Dict[str, datetime]:
        markers: Dict[str, datetime] = {}
        for cid, ts in (await self._kv.hgetall(read_times_key(user_id))).items():
            try:
                markers[cid] = as_utc(ts)
            except (ValueError, TypeError):
                logger.warning("Discarding malformed read marker %s for user %s: %r", cid, user_id, ts)
        return markers

    async def set(self, user_id: str, conversation_id: str, timestamp: datetime) -> None:
        await self._kv.hset(read_times_key(user_id), conversation_id, as_utc(timestamp).isoformat())

    async def mark_as_read(self, user_id: str, conversation_id: str) -> datetime:
        now = utcnow()
        await self.set(user_id, conversation_id, now)
        if self._notifier is not None:
            await self._notifier.notify(user_id, conversation_id, now)
        return now

    async def clear(self, user_id: str) -> None:
        await self._kv.delete(read_times_key(user_id))
