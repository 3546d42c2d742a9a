from __future__ import annotations

import hashlib
import json
from typing import Optional, Tuple

import redis.asyncio as aioredis
from redis import Redis


class RedisCache:
    """Thin Redis wrapper for rate-limit windows and the API key cache."""

    DEFAULT_OPERATION_TIMEOUT = 5.0

    # Fixed window: first hit in a window sets the expiry, later hits only count
    _FIXED_WINDOW_SCRIPT = """
local key = KEYS[1]
local window = tonumber(ARGV[1])

local current = redis.call('INCR', key)
if current == 1 then
  redis.call('EXPIRE', key, window)
end
local ttl = redis.call('TTL', key)
if ttl < 0 then
  redis.call('EXPIRE', key, window)
  ttl = window
end
return {current, ttl}
"""

    def __init__(self, redis_url: str, *, socket_timeout: float = 5.0):
        self.redis_url = redis_url
        self.client = aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        self._fixed_window = self.client.register_script(self._FIXED_WINDOW_SCRIPT)

    def verify_connection(self) -> None:
        """Assert Redis connectivity before enabling dependent features."""

        # Short-lived sync client so the async client is not bound to a startup loop
        sync_client = Redis.from_url(self.redis_url, decode_responses=True)
        try:
            sync_client.ping()
        finally:
            sync_client.close()

    @staticmethod
    def _rate_key(key: str) -> str:
        digest = hashlib.sha256(key.encode()).hexdigest()
        return f"rate:{digest}"

    @staticmethod
    def _api_key_cache_key(api_key: str) -> str:
        digest = hashlib.sha256(api_key.encode()).hexdigest()
        return f"auth:apikey:{digest}"

    @staticmethod
    def _user_keys_set(user_id: int) -> str:
        return f"auth:apikey:user:{user_id}"

    async def hit_fixed_window(self, key: str, window_seconds: int) -> Tuple[int, int]:
        """Count one hit in the current window; returns ``(count, seconds_left)``."""

        count, ttl = await self._fixed_window(
            keys=[self._rate_key(key)], args=[max(1, int(window_seconds))]
        )
        return int(count), max(0, int(ttl))

    async def peek_fixed_window(self, key: str) -> Tuple[int, int]:
        safe_key = self._rate_key(key)
        pipe = self.client.pipeline()
        pipe.get(safe_key)
        pipe.ttl(safe_key)
        raw, ttl = await pipe.execute()
        return int(raw or 0), max(0, int(ttl or 0))

    async def reset_fixed_window(self, key: str) -> None:
        await self.client.delete(self._rate_key(key))

    async def cache_api_key(
        self, api_key: str, user_id: int, payload: dict, ttl_seconds: int
    ) -> None:
        cache_key = self._api_key_cache_key(api_key)
        pipe = self.client.pipeline()
        pipe.set(cache_key, json.dumps(payload), ex=max(1, ttl_seconds))
        pipe.sadd(self._user_keys_set(user_id), cache_key)
        pipe.expire(self._user_keys_set(user_id), max(1, ttl_seconds))
        await pipe.execute()

    async def get_cached_api_key(self, api_key: str) -> Optional[dict]:
        raw = await self.client.get(self._api_key_cache_key(api_key))
        if not raw:
            return None
        try:
            return json.loads(raw)
        except json.JSONDecodeError:
            return None

    async def evict_api_key(self, api_key: str) -> None:
        await self.client.delete(self._api_key_cache_key(api_key))

    async def evict_user_api_keys(self, user_id: int) -> int:
        members = await self.client.smembers(self._user_keys_set(user_id))
        if not members:
            return 0
        pipe = self.client.pipeline()
        for cache_key in members:
            pipe.delete(cache_key)
        pipe.delete(self._user_keys_set(user_id))
        await pipe.execute()
        return len(members)

    async def close(self) -> None:
        """Close Redis connection pool. Call when shutting down or resetting runtime."""
        await self.client.close()
        await self.client.connection_pool.disconnect()


class SyncRedisCache:
    """Synchronous Redis wrapper for use in tests.

    Uses a synchronous Redis client internally to avoid event loop binding
    issues in pytest, but exposes async methods so they can be awaited
    uniformly like RedisCache.
    """

    DEFAULT_OPERATION_TIMEOUT = 5.0

    def __init__(self, redis_url: str, *, socket_timeout: float = 5.0):
        self.redis_url = redis_url
        self.client = Redis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        self._fixed_window = self.client.register_script(
            RedisCache._FIXED_WINDOW_SCRIPT
        )

    def verify_connection(self) -> None:
        self.client.ping()

    async def hit_fixed_window(self, key: str, window_seconds: int) -> Tuple[int, int]:
        count, ttl = self._fixed_window(
            keys=[RedisCache._rate_key(key)], args=[max(1, int(window_seconds))]
        )
        return int(count), max(0, int(ttl))

    async def peek_fixed_window(self, key: str) -> Tuple[int, int]:
        safe_key = RedisCache._rate_key(key)
        pipe = self.client.pipeline()
        pipe.get(safe_key)
        pipe.ttl(safe_key)
        raw, ttl = pipe.execute()
        return int(raw or 0), max(0, int(ttl or 0))

    async def reset_fixed_window(self, key: str) -> None:
        self.client.delete(RedisCache._rate_key(key))

    async def cache_api_key(
        self, api_key: str, user_id: int, payload: dict, ttl_seconds: int
    ) -> None:
        cache_key = RedisCache._api_key_cache_key(api_key)
        user_set = RedisCache._user_keys_set(user_id)
        pipe = self.client.pipeline()
        pipe.set(cache_key, json.dumps(payload), ex=max(1, ttl_seconds))
        pipe.sadd(user_set, cache_key)
        pipe.expire(user_set, max(1, ttl_seconds))
        pipe.execute()

    async def get_cached_api_key(self, api_key: str) -> Optional[dict]:
        raw = self.client.get(RedisCache._api_key_cache_key(api_key))
        if not raw:
            return None
        try:
            return json.loads(raw)
        except json.JSONDecodeError:
            return None

    async def evict_api_key(self, api_key: str) -> None:
        self.client.delete(RedisCache._api_key_cache_key(api_key))

    async def evict_user_api_keys(self, user_id: int) -> int:
        user_set = RedisCache._user_keys_set(user_id)
        members = self.client.smembers(user_set)
        if not members:
            return 0
        pipe = self.client.pipeline()
        for cache_key in members:
            pipe.delete(cache_key)
        pipe.delete(user_set)
        pipe.execute()
        return len(members)

    async def close(self) -> None:
        """Close Redis connection."""
        self.client.close()
