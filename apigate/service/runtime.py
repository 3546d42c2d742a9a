from __future__ import annotations

import asyncio
import threading
from typing import Optional
from urllib.parse import urlparse, urlunparse

from apigate.config import Settings, get_settings, reset_settings_cache
from apigate.logging import get_logger
from apigate.service.auth_manager import AuthManager
from apigate.service.passwords import Passwords
from apigate.service.permissions import PermissionsMatrix
from apigate.service.rate_limit import RateLimiter
from apigate.service.signer import Signer
from apigate.service.strategies import (
    APIKeyStrategy,
    BasicPasswordStrategy,
    BearerTokenStrategy,
)
from apigate.service.token_manager import TokenManager
from apigate.service.token_store import TokenStore
from apigate.service.tokens import TokenCodec
from apigate.storage.key_cache import KeyCache, LocalKeyCache, RedisKeyCache
from apigate.storage.memory import MemoryStore
from apigate.storage.postgres import PostgresStore
from apigate.storage.redis_cache import RedisCache, SyncRedisCache

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Mask the password component of a URL for logging.

    Example: redis://:mypassword@localhost:6379 -> redis://:***@localhost:6379
    """
    if not url:
        return url
    try:
        parsed = urlparse(url)
        if parsed.password:
            netloc = parsed.hostname or ""
            if parsed.port:
                netloc = f"{netloc}:{parsed.port}"
            if parsed.username:
                netloc = f"{parsed.username}:***@{netloc}"
            else:
                netloc = f":***@{netloc}"
            return urlunparse((
                parsed.scheme,
                netloc,
                parsed.path,
                parsed.params,
                parsed.query,
                parsed.fragment,
            ))
        return url
    except ValueError:
        return "***url_parse_error***"


class Runtime:
    """Holds singleton service instances for the FastAPI app."""

    def __init__(self, settings: Optional[Settings] = None):
        self.settings = settings or get_settings()
        logger.info(
            "runtime_init_started",
            use_memory_store=self.settings.use_memory_store,
            test_mode=self.settings.test_mode,
        )

        try:
            self.store = (
                MemoryStore(fs_root=self.settings.shared_fs_root)
                if self.settings.use_memory_store
                else PostgresStore(
                    self.settings.database_url,
                    fs_root=self.settings.shared_fs_root,
                    retry_backoff=self.settings.storage_retry_backoff_seconds,
                    timeout=self.settings.storage_timeout_seconds,
                )
            )
            logger.info(
                "runtime_store_initialized",
                store_type="memory" if self.settings.use_memory_store else "postgres",
            )
        except Exception as exc:
            logger.error(
                "runtime_store_init_failed",
                store_type="memory" if self.settings.use_memory_store else "postgres",
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise

        self.cache: RedisCache | SyncRedisCache | None = None
        redis_error: Exception | None = None
        if self.settings.redis_url:
            try:
                # Sync client in test mode avoids binding to pytest's event loops
                if self.settings.test_mode:
                    cache = SyncRedisCache(
                        self.settings.redis_url,
                        socket_timeout=self.settings.storage_timeout_seconds,
                    )
                else:
                    cache = RedisCache(
                        self.settings.redis_url,
                        socket_timeout=self.settings.storage_timeout_seconds,
                    )
                cache.verify_connection()
                self.cache = cache
            except Exception as exc:
                redis_error = exc
                self.cache = None

        if not self.cache:
            if not self.settings.test_mode and not self.settings.allow_redis_fallback_dev:
                raise RuntimeError(
                    "Redis is required for shared rate limits and the API key cache; "
                    "start Redis or set TEST_MODE=true/ALLOW_REDIS_FALLBACK_DEV=true for local fallback."
                ) from redis_error
            fallback_mode = (
                "TEST_MODE" if self.settings.test_mode else "ALLOW_REDIS_FALLBACK_DEV"
            )
            logger.warning(
                "redis_disabled_fallback",
                redis_url=_mask_url_password(self.settings.redis_url),
                error=str(redis_error) if redis_error else "redis_url_missing",
                message=(
                    f"Running without Redis under {fallback_mode}; rate limits and the "
                    "API key cache are per-process only."
                ),
                mode=fallback_mode,
            )

        self.signer = Signer.from_settings(self.settings)
        self.codec = TokenCodec(self.signer)
        self.token_store = TokenStore(
            self.store, blacklist_ttl_seconds=self.settings.refresh_token_ttl_seconds
        )
        self.tokens = TokenManager(self.settings, self.codec, self.token_store)
        self.rate_limiter = RateLimiter(self.cache)
        self.key_cache: KeyCache = (
            RedisKeyCache(self.cache, self.settings.api_key_cache_ttl_seconds)
            if self.cache is not None
            else LocalKeyCache(self.settings.api_key_cache_ttl_seconds)
        )
        self.passwords = Passwords()
        self.permissions = PermissionsMatrix(
            self.store,
            default_limit=self.settings.default_rate_limit,
            default_window=self.settings.default_rate_limit_window,
        )

        self.bearer = BearerTokenStrategy(self.store, self.tokens, realm=self.settings.realm)
        self.api_keys = APIKeyStrategy(
            self.store, self.settings, self.key_cache, self.rate_limiter
        )
        self.app_passwords = BasicPasswordStrategy(
            self.store, self.passwords, realm=self.settings.realm
        )
        self.auth = AuthManager(self.store, self.permissions, self.passwords)
        for strategy in (self.bearer, self.api_keys, self.app_passwords):
            self.auth.register_strategy(strategy)

        logger.info(
            "runtime_initialized",
            jwt_algorithm=self.settings.jwt_algorithm.value,
            redis_enabled=self.cache is not None,
            strategies=[s.name for s in self.auth.strategies],
        )

    async def close(self) -> None:
        if self.cache is not None:
            await self.cache.close()
        close_store = getattr(self.store, "close", None)
        if callable(close_store):
            close_store()


runtime: Runtime | None = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton using double-checked locking."""

    global runtime
    if runtime is not None:
        return runtime
    with _runtime_lock:
        if runtime is None:
            runtime = Runtime()
        return runtime


def reset_runtime_for_tests() -> Runtime:
    """Reinitialize the runtime singleton for isolated test runs."""

    global runtime

    with _runtime_lock:
        if runtime is not None and runtime.cache is not None:
            if isinstance(runtime.cache, SyncRedisCache):
                runtime.cache.client.close()
            else:
                try:
                    loop = asyncio.get_running_loop()
                    loop.create_task(runtime.cache.close())
                except RuntimeError:
                    asyncio.run(runtime.cache.close())

        reset_settings_cache()
        settings = get_settings()
        if not settings.test_mode:
            raise RuntimeError("runtime reset is only allowed in TEST_MODE")
        runtime = Runtime(settings)
        return runtime
