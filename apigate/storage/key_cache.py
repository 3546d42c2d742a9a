from __future__ import annotations

import threading
import time
from typing import Dict, Optional, Protocol, Tuple

from apigate.storage.redis_cache import RedisCache, SyncRedisCache


class KeyCache(Protocol):
    """Short-lived cache of validated API key records."""

    async def get(self, api_key: str) -> Optional[dict]:
        ...

    async def set(self, api_key: str, user_id: int, payload: dict) -> None:
        ...

    async def invalidate(self, api_key: str) -> None:
        ...

    async def invalidate_user(self, user_id: int) -> int:
        ...


class LocalKeyCache:
    """Process-local TTL cache used when Redis is unavailable."""

    def __init__(self, ttl_seconds: int = 300, *, max_entries: int = 10000) -> None:
        self.ttl_seconds = ttl_seconds
        self.max_entries = max_entries
        self._entries: Dict[str, Tuple[float, int, dict]] = {}
        self._lock = threading.Lock()

    def _evict_expired(self, now: float) -> None:
        stale = [key for key, (deadline, _, _) in self._entries.items() if deadline <= now]
        for key in stale:
            del self._entries[key]

    async def get(self, api_key: str) -> Optional[dict]:
        now = time.monotonic()
        with self._lock:
            entry = self._entries.get(api_key)
            if not entry:
                return None
            deadline, _, payload = entry
            if deadline <= now:
                del self._entries[api_key]
                return None
            return dict(payload)

    async def set(self, api_key: str, user_id: int, payload: dict) -> None:
        now = time.monotonic()
        with self._lock:
            if len(self._entries) >= self.max_entries:
                self._evict_expired(now)
            if len(self._entries) >= self.max_entries:
                oldest = min(self._entries, key=lambda k: self._entries[k][0])
                del self._entries[oldest]
            self._entries[api_key] = (now + self.ttl_seconds, user_id, dict(payload))

    async def invalidate(self, api_key: str) -> None:
        with self._lock:
            self._entries.pop(api_key, None)

    async def invalidate_user(self, user_id: int) -> int:
        with self._lock:
            stale = [key for key, (_, owner, _) in self._entries.items() if owner == user_id]
            for key in stale:
                del self._entries[key]
            return len(stale)


class RedisKeyCache:
    """Shares validated API keys across workers through Redis."""

    def __init__(self, cache: RedisCache | SyncRedisCache, ttl_seconds: int = 300) -> None:
        self.cache = cache
        self.ttl_seconds = ttl_seconds

    async def get(self, api_key: str) -> Optional[dict]:
        return await self.cache.get_cached_api_key(api_key)

    async def set(self, api_key: str, user_id: int, payload: dict) -> None:
        await self.cache.cache_api_key(api_key, user_id, payload, self.ttl_seconds)

    async def invalidate(self, api_key: str) -> None:
        await self.cache.evict_api_key(api_key)

    async def invalidate_user(self, user_id: int) -> int:
        return await self.cache.evict_user_api_keys(user_id)
