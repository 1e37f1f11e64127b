import asyncio
import logging
from collections import defaultdict
from typing import Awaitable, Callable, Dict, Set

import redis.asyncio as redis

from tutorhub.config import settings

logger = logging.getLogger(__name__)

OnMessage = Callable[[str], Awaitable[None]]

_CLOSED = object()


def conversation_channel(conversation_id: str) -> str:
    return f"conversation:{conversation_id}"


def user_channel(user_id: str) -> str:
    return f"user:{user_id}"


class LocalBus:
    """In-process fan-out, used when no Redis URL is configured."""

    distributed = False

    def __init__(self) -> None:
        self._queues: Dict[str, Set[asyncio.Queue]] = defaultdict(set)

    async def publish(self, channel: str, message: str) -> None:
        for queue in list(self._queues.get(channel, ())):
            queue.put_nowait(message)

    async def subscribe(self, channel: str, on_message: OnMessage):
        queue: asyncio.Queue = asyncio.Queue()
        self._queues[channel].add(queue)
        bus = self

        class _Sub:
            _running = True

            async def run(self_inner):
                while self_inner._running:
                    msg = await queue.get()
                    if msg is _CLOSED:
                        break
                    await on_message(msg)

            async def cancel(self_inner):
                if not self_inner._running:
                    return
                self_inner._running = False
                bus._queues[channel].discard(queue)
                if not bus._queues[channel]:
                    del bus._queues[channel]
                queue.put_nowait(_CLOSED)

        return _Sub()

    def subscriber_count(self, channel: str) -> int:
        return len(self._queues.get(channel, ()))


class RedisBus:

    distributed = True

    def __init__(self, url: str) -> None:
        self._redis = redis.from_url(url)

    async def publish(self, channel: str, message: str) -> None:
        await self._redis.publish(channel, message)

    async def subscribe(self, channel: str, on_message: OnMessage):
        pubsub = self._redis.pubsub()
        await pubsub.subscribe(channel)

        class _Sub:
            _running = True

            async def run(self_inner):
                # connection errors propagate; the live update listener reconnects
                while self_inner._running:
                    msg = await pubsub.get_message(ignore_subscribe_messages=True, timeout=1.0)
                    if msg and msg.get("type") == "message":
                        data = msg.get("data")
                        if isinstance(data, bytes):
                            data = data.decode("utf-8", errors="replace")
                        await on_message(data)

            async def cancel(self_inner):
                if not self_inner._running:
                    return
                self_inner._running = False
                try:
                    await pubsub.unsubscribe(channel)
                except redis.RedisError:
                    logger.debug("Unsubscribe from %s failed", channel, exc_info=True)
                finally:
                    await pubsub.aclose()

        return _Sub()

    async def close(self) -> None:
        await self._redis.aclose()


_bus = None


async def get_bus():
    global _bus
    if _bus is not None:
        return _bus
    if settings.REDIS_URL:
        _bus = RedisBus(settings.REDIS_URL)
    else:
        _bus = LocalBus()
    return _bus


async def close_bus() -> None:
    global _bus
    if isinstance(_bus, RedisBus):
        await _bus.close()
    _bus = None
