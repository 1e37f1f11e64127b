"""Live delivery of new messages and read-state changes.

A ``LiveUpdateListener`` owns one realtime-bus subscription and keeps it
alive: when the subscription drops it reconnects with jittered exponential
backoff and replays whatever was created while it was away.
"""

import asyncio
import json
import logging
import random
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional

from tutorhub.services.exceptions import ConversationLoadError
from tutorhub.services.read_state import ReadTimeStore
from tutorhub.utils.clock import as_utc

logger = logging.getLogger(__name__)

Event = Dict[str, Any]
OnEvent = Callable[[Event], Awaitable[None]]
FetchMissed = Callable[[Optional[datetime]], Awaitable[List[Dict[str, Any]]]]


@dataclass(frozen=True)
class BackoffPolicy:
    base: float = 0.5
    cap: float = 30.0

    def delay(self, attempt: int) -> float:
        """Full-jitter delay for the given 1-based attempt."""
        ceiling = min(self.cap, self.base * (2 ** max(attempt - 1, 0)))
        return random.uniform(0, ceiling)


class LiveUpdateListener:

    def __init__(
        self,
        bus,
        channel: str,
        on_event: OnEvent,
        fetch_missed: Optional[FetchMissed] = None,
        backoff: Optional[BackoffPolicy] = None,
        last_seen: Optional[datetime] = None,
    ) -> None:
        self._bus = bus
        self.channel = channel
        self._on_event = on_event
        self._fetch_missed = fetch_missed
        self._backoff = backoff or BackoffPolicy()
        self.last_seen = last_seen
        self.reconnects = 0
        self._subscription = None
        self._task: Optional[asyncio.Task] = None
        self._stopped = False

    async def start(self) -> None:
        try:
            await self._subscribe()
        except Exception:
            logger.warning("Initial subscription to %s failed, retrying in background", self.channel, exc_info=True)
        self._task = asyncio.create_task(self._supervise())

    async def stop(self) -> None:
        self._stopped = True
        if self._subscription is not None:
            await self._subscription.cancel()
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None

    async def _subscribe(self) -> None:
        self._subscription = await self._bus.subscribe(self.channel, self._handle_raw)

    async def _supervise(self) -> None:
        attempt = 0
        while not self._stopped:
            if self._subscription is None:
                try:
                    await self._subscribe()
                except Exception:
                    attempt += 1
                    delay = self._backoff.delay(attempt)
                    logger.warning("Resubscribing to %s failed, next try in %.2fs", self.channel, delay, exc_info=True)
                    await asyncio.sleep(delay)
                    continue
                self.reconnects += 1
                await self._replay_missed()
            attempt = 0
            subscription = self._subscription
            try:
                await subscription.run()
            except Exception:
                logger.warning("Live updates on %s dropped", self.channel, exc_info=True)
            finally:
                # a dead subscription still holds its connection until cancelled
                await self._release(subscription)
            self._subscription = None
            if self._stopped:
                break
            attempt += 1
            await asyncio.sleep(self._backoff.delay(attempt))

    async def _release(self, subscription) -> None:
        try:
            await subscription.cancel()
        except Exception:
            logger.warning("Closing subscription to %s failed", self.channel, exc_info=True)

    async def _replay_missed(self) -> None:
        if self._fetch_missed is not None:
            try:
                missed = await self._fetch_missed(self.last_seen)
            except Exception:
                logger.warning("Could not refetch messages missed on %s", self.channel, exc_info=True)
                missed = []
            for message in missed:
                await self._dispatch({"type": "message", "message": message})
        await self._dispatch({"type": "resync"})

    async def _handle_raw(self, raw: str) -> None:
        try:
            event = json.loads(raw)
        except ValueError:
            logger.warning("Ignoring undecodable event on %s: %r", self.channel, raw[:200])
            return
        await self._dispatch(event)

    async def _dispatch(self, event: Event) -> None:
        message = event.get("message") if event.get("type") == "message" else None
        if message and message.get("created_at"):
            created = as_utc(message["created_at"])
            if self.last_seen is None or created > self.last_seen:
                self.last_seen = created
        try:
            await self._on_event(event)
        except Exception:
            # a failing consumer must not tear down the subscription
            logger.exception("Live update handler failed on %s", self.channel)


class ConversationThread:
    """In-memory message list of one open chat view."""

    def __init__(
        self,
        conversation_id: str,
        user_id: str,
        read_store: ReadTimeStore,
        messages: Iterable[Dict[str, Any]] = (),
    ) -> None:
        self.conversation_id = conversation_id
        self.user_id = user_id
        self._read_store = read_store
        self.messages: List[Dict[str, Any]] = []
        self._ids = set()
        self.is_open = True
        for message in messages:
            self._append(message)

    def _append(self, message: Dict[str, Any]) -> bool:
        if message["id"] in self._ids:
            return False
        self._ids.add(message["id"])
        self.messages.append(message)
        return True

    @property
    def last_created_at(self) -> Optional[datetime]:
        if not self.messages:
            return None
        return as_utc(self.messages[-1]["created_at"])

    async def apply(self, message: Dict[str, Any]) -> bool:
        """Add a live message; returns False for duplicates."""
        if message.get("conversation_id") != self.conversation_id or not self._append(message):
            return False
        if self.is_open:
            await self._read_store.mark_as_read(self.user_id, self.conversation_id)
        return True

    def close(self) -> None:
        self.is_open = False


class UnreadBadge:
    """Keeps a navigation badge total current for one user."""

    def __init__(
        self,
        total: Callable[[], Awaitable[int]],
        push: Callable[[int], Awaitable[None]],
        on_failure: Optional[Callable[[ConversationLoadError], Awaitable[None]]] = None,
    ) -> None:
        self._total = total
        self._push = push
        self._on_failure = on_failure
        self.value: Optional[int] = None

    async def refresh(self) -> Optional[int]:
        """Recompute and push the total; on a load failure the last value is kept."""
        try:
            value = await self._total()
        except ConversationLoadError as exc:
            if self._on_failure is None:
                raise
            await self._on_failure(exc)
            return self.value
        self.value = value
        await self._push(value)
        return value

    async def on_event(self, event: Event) -> None:
        if event.get("type") in ("message", "read", "resync"):
            await self.refresh()
