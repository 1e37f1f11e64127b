import time
from typing import Dict, Optional, Tuple

import redis.asyncio as redis

from tutorhub.config import settings


class MemoryKeyValueStore:
    """Process-local store of strings (with optional expiry) and field hashes."""

    def __init__(self) -> None:
        self._data: Dict[str, Tuple[str, Optional[float]]] = {}
        self._hashes: Dict[str, Dict[str, str]] = {}

    async def get(self, key: str) -> Optional[str]:
        item = self._data.get(key)
        if item is None:
            return None
        value, expires_at = item
        if expires_at is not None and expires_at <= time.monotonic():
            del self._data[key]
            return None
        return value

    async def set(self, key: str, value: str, ttl_seconds: Optional[int] = None) -> None:
        expires_at = time.monotonic() + ttl_seconds if ttl_seconds else None
        self._data[key] = (value, expires_at)

    async def delete(self, key: str) -> None:
        self._data.pop(key, None)
        self._hashes.pop(key, None)

    async def exists(self, key: str) -> bool:
        return await self.get(key) is not None or key in self._hashes

    async def hset(self, key: str, field: str, value: str) -> None:
        self._hashes.setdefault(key, {})[field] = value

    async def hgetall(self, key: str) -> Dict[str, str]:
        return dict(self._hashes.get(key, {}))


class RedisKeyValueStore:

    def __init__(self, url: str) -> None:
        self._redis = redis.from_url(url, decode_responses=True)

    async def get(self, key: str) -> Optional[str]:
        return await self._redis.get(key)

    async def set(self, key: str, value: str, ttl_seconds: Optional[int] = None) -> None:
        await self._redis.set(key, value, ex=ttl_seconds)

    async def delete(self, key: str) -> None:
        await self._redis.delete(key)

    async def exists(self, key: str) -> bool:
        return bool(await self._redis.exists(key))

    async def hset(self, key: str, field: str, value: str) -> None:
        await self._redis.hset(key, field, value)

    async def hgetall(self, key: str) -> Dict[str, str]:
        return await self._redis.hgetall(key)

    async def close(self) -> None:
        await self._redis.aclose()


_store = None


async def get_kv_store():
    global _store
    if _store is not None:
        return _store
    if settings.REDIS_URL:
        _store = RedisKeyValueStore(settings.REDIS_URL)
    else:
        _store = MemoryKeyValueStore()
    return _store


async def close_kv_store() -> None:
    global _store
    if isinstance(_store, RedisKeyValueStore):
        await _store.close()
    _store = None
