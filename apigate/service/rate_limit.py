from __future__ import annotations

import asyncio
import hashlib
import ipaddress
import math
import time
from dataclasses import dataclass
from typing import Callable, Dict, Iterable, Mapping, Optional, Tuple

from apigate.logging import get_logger
from apigate.service.errors import RateLimitedError
from apigate.storage.redis_cache import RedisCache, SyncRedisCache

logger = get_logger(__name__)

# expired in-process windows are dropped at most this often
LOCAL_SWEEP_INTERVAL_SECONDS = 60.0


@dataclass(frozen=True)
class RateLimitDecision:
    allowed: bool
    limit: int
    remaining: int
    reset_at: int
    retry_after: int = 0


@dataclass(frozen=True)
class RateLimitStatus:
    remaining: int
    reset_at: int

    def to_dict(self) -> dict:
        return {"remaining": self.remaining, "reset": self.reset_at}


def identity_key(user_id: int) -> str:
    return f"ratelimit_{user_id}"


def ip_key(ip: str) -> str:
    return f"ratelimit_ip_{hashlib.md5(ip.encode()).hexdigest()}"


def auth_method_key(method: str) -> str:
    return f"ratelimit_auth_{method}"


def api_key_key(api_key: str) -> str:
    return f"ratelimit_key_{hashlib.sha256(api_key.encode()).hexdigest()[:32]}"


def _peer_is_trusted(remote_addr: Optional[str], trusted_proxies: Iterable[str]) -> bool:
    if not remote_addr:
        return False
    try:
        peer = ipaddress.ip_address(remote_addr)
    except ValueError:
        return False
    for proxy in trusted_proxies:
        try:
            if peer in ipaddress.ip_network(proxy, strict=False):
                return True
        except ValueError:
            logger.warning("trusted_proxy_invalid", proxy=proxy)
    return False


def client_ip(
    headers: Mapping[str, str],
    remote_addr: Optional[str] = None,
    trusted_proxies: Iterable[str] = (),
) -> str:
    """Resolve the caller address.

    Forwarding headers are read only when the socket peer falls inside one of
    ``trusted_proxies``; otherwise the peer address itself is the caller.
    """

    if not _peer_is_trusted(remote_addr, trusted_proxies):
        return remote_addr or "unknown"
    for name in ("CF-Connecting-IP", "X-Forwarded-For", "X-Real-IP"):
        value = headers.get(name) or headers.get(name.lower())
        if value:
            candidate = value.split(",")[0].strip()
            if candidate:
                return candidate
    return remote_addr or "unknown"


def rate_limit_headers(limit: int, status: RateLimitStatus) -> Dict[str, str]:
    return {
        "X-RateLimit-Limit": str(limit),
        "X-RateLimit-Remaining": str(max(0, status.remaining)),
        "X-RateLimit-Reset": str(status.reset_at),
    }


class RateLimiter:
    """Fixed-window counters keyed by identity, IP, auth method or API key.

    With Redis the increment and expiry happen in one Lua call. Without it the
    counters live in-process behind an ``asyncio.Lock``.
    """

    def __init__(
        self,
        cache: RedisCache | SyncRedisCache | None = None,
        *,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.cache = cache
        self._clock = clock
        self._local: Dict[str, Tuple[int, float]] = {}
        self._local_lock = asyncio.Lock()
        self._next_sweep = 0.0

    async def check(self, key: str, limit: int, window_seconds: int) -> RateLimitDecision:
        if window_seconds <= 0:
            logger.warning("rate_limit_invalid_window", key=key, window_seconds=window_seconds)
            window_seconds = 60
        now = self._clock()
        if limit <= 0:
            return RateLimitDecision(True, limit, 0, int(now))

        if self.cache is not None:
            count, ttl = await self.cache.hit_fixed_window(key, window_seconds)
            reset_at = int(now) + ttl
            if count > limit:
                return RateLimitDecision(False, limit, 0, reset_at, retry_after=max(1, ttl))
            return RateLimitDecision(True, limit, limit - count, reset_at)

        async with self._local_lock:
            if now >= self._next_sweep:
                self._sweep(now)
            count, reset_at = self._local.get(key, (0, 0.0))
            if count == 0 or now > reset_at:
                reset_at = now + window_seconds
                self._local[key] = (1, reset_at)
                return RateLimitDecision(True, limit, limit - 1, int(reset_at))
            if count >= limit:
                retry_after = max(1, math.ceil(reset_at - now))
                return RateLimitDecision(
                    False, limit, 0, int(reset_at), retry_after=retry_after
                )
            self._local[key] = (count + 1, reset_at)
            return RateLimitDecision(True, limit, limit - count - 1, int(reset_at))

    def _sweep(self, now: float) -> None:
        expired = [key for key, (_, reset_at) in self._local.items() if now > reset_at]
        for key in expired:
            del self._local[key]
        self._next_sweep = now + LOCAL_SWEEP_INTERVAL_SECONDS
        if expired:
            logger.debug("rate_limit_windows_swept", count=len(expired), remaining=len(self._local))

    async def enforce(self, key: str, limit: int, window_seconds: int) -> RateLimitDecision:
        decision = await self.check(key, limit, window_seconds)
        if not decision.allowed:
            logger.warning(
                "rate_limit_exceeded",
                key=key,
                limit=limit,
                retry_after=decision.retry_after,
            )
            raise RateLimitedError(
                "Rate limit exceeded", retry_after=decision.retry_after
            )
        return decision

    async def get_remaining(
        self, key: str, limit: int, window_seconds: int
    ) -> RateLimitStatus:
        """Read-only view of the counter for response headers."""

        now = self._clock()
        if self.cache is not None:
            count, ttl = await self.cache.peek_fixed_window(key)
            if count == 0 or ttl == 0:
                return RateLimitStatus(limit, int(now) + window_seconds)
            return RateLimitStatus(max(0, limit - count), int(now) + ttl)

        async with self._local_lock:
            count, reset_at = self._local.get(key, (0, 0.0))
        if count == 0 or now > reset_at:
            return RateLimitStatus(limit, int(now + window_seconds))
        return RateLimitStatus(max(0, limit - count), int(reset_at))

    async def reset(self, key: str) -> None:
        if self.cache is not None:
            await self.cache.reset_fixed_window(key)
            return
        async with self._local_lock:
            self._local.pop(key, None)
