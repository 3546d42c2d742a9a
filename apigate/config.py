from __future__ import annotations

import ipaddress
import os
import secrets
import tempfile
from enum import Enum
from pathlib import Path
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from apigate.logging import get_logger

logger = get_logger(__name__)


class SigningAlgorithm(str, Enum):
    """Asymmetric signature algorithms accepted for compact tokens."""

    RS256 = "RS256"
    RS384 = "RS384"
    RS512 = "RS512"


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings for the authentication engine."""

    database_url: str = env_field(
        "postgresql://localhost:5432/apigate", "DATABASE_URL"
    )
    redis_url: str = env_field("redis://localhost:6379/0", "REDIS_URL")
    shared_fs_root: str = env_field("/srv/apigate", "SHARED_FS_ROOT")
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    allow_redis_fallback_dev: bool = env_field(False, "ALLOW_REDIS_FALLBACK_DEV")
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Toggle deterministic testing behaviors and allow runtime resets.",
    )
    build_sha: str = env_field("dev", "BUILD_SHA")

    jwt_algorithm: SigningAlgorithm = env_field(SigningAlgorithm.RS256, "JWT_ALGORITHM")
    jwt_private_key_path: str | None = env_field(
        None,
        "JWT_PRIVATE_KEY_PATH",
        description="PEM private key; generated under SHARED_FS_ROOT/keys when unset",
    )
    jwt_public_key_path: str | None = env_field(None, "JWT_PUBLIC_KEY_PATH")
    jwt_issuer: str = env_field("apigate", "JWT_ISSUER")
    jwt_audience: str = env_field("apigate-v1", "JWT_AUDIENCE")
    access_token_ttl_seconds: int = env_field(
        3600,
        "ACCESS_TOKEN_TTL_SECONDS",
        description="Access token lifetime in seconds",
    )
    refresh_token_ttl_seconds: int = env_field(
        30 * 24 * 3600,
        "REFRESH_TOKEN_TTL_SECONDS",
        description="Refresh token lifetime in seconds; must exceed the access TTL",
    )

    server_secret: str = env_field(
        None,
        "SERVER_SECRET",
        description="Secret mixed into API key checksums",
        validate_default=True,
    )
    api_key_prefix: str = env_field("wack", "API_KEY_PREFIX")
    api_key_scope: str = env_field(
        "1",
        "API_KEY_SCOPE",
        description="Site scope segment embedded in generated API keys",
    )
    api_key_cache_ttl_seconds: int = env_field(300, "API_KEY_CACHE_TTL_SECONDS")

    default_rate_limit: int = env_field(1000, "DEFAULT_RATE_LIMIT")
    default_rate_limit_window: int = env_field(3600, "DEFAULT_RATE_LIMIT_WINDOW")
    login_rate_limit_per_minute: int = env_field(10, "LOGIN_RATE_LIMIT_PER_MINUTE")
    ip_rate_limit_per_minute: int = env_field(300, "IP_RATE_LIMIT_PER_MINUTE")

    token_cleanup_interval_seconds: int = env_field(
        3600,
        "TOKEN_CLEANUP_INTERVAL_SECONDS",
        description="Interval between expired token / blacklist sweeps",
    )
    storage_retry_backoff_seconds: float = env_field(0.2, "STORAGE_RETRY_BACKOFF_SECONDS")
    storage_timeout_seconds: float = env_field(5.0, "STORAGE_TIMEOUT_SECONDS")

    realm: str = env_field("apigate", "AUTH_REALM")
    cors_allow_origins: list[str] | None = env_field(None, "CORS_ALLOW_ORIGINS")
    trusted_proxies: list[str] | None = env_field(None, "TRUSTED_PROXIES")
    enable_hsts: bool = env_field(False, "ENABLE_HSTS")

    model_config = ConfigDict(extra="ignore")

    @classmethod
    def from_env(cls) -> "Settings":
        env_file_values = dotenv_values(".env")
        merged: dict[str, Any] = {}
        for name, field in cls.model_fields.items():
            extra = field.json_schema_extra or {}
            env_key = extra.get("env") if isinstance(extra, dict) else None
            env_name = env_key or name.upper()
            if env_name in os.environ:
                merged[name] = os.environ[env_name]
            elif env_name in env_file_values:
                merged[name] = env_file_values[env_name]
        return cls(**merged)

    @field_validator("jwt_algorithm")
    @classmethod
    def _validate_algorithm(cls, value: SigningAlgorithm) -> SigningAlgorithm:
        return SigningAlgorithm(value)

    @field_validator("cors_allow_origins", mode="before")
    @classmethod
    def _split_origins(cls, value: Any) -> Any:
        if isinstance(value, str):
            return [origin.strip() for origin in value.split(",") if origin.strip()]
        return value

    @field_validator("trusted_proxies", mode="before")
    @classmethod
    def _split_proxies(cls, value: Any) -> Any:
        if isinstance(value, str):
            return [proxy.strip() for proxy in value.split(",") if proxy.strip()]
        return value

    @field_validator("trusted_proxies")
    @classmethod
    def _validate_proxies(cls, value: list[str] | None) -> list[str] | None:
        for proxy in value or []:
            try:
                ipaddress.ip_network(proxy, strict=False)
            except ValueError as exc:
                raise ValueError(f"invalid trusted proxy {proxy!r}") from exc
        return value

    @field_validator("api_key_prefix", "api_key_scope")
    @classmethod
    def _validate_key_segment(cls, value: str) -> str:
        # segments of a generated key are joined with "_"
        if not value or "_" in value:
            raise ValueError("API key prefix and scope must be non-empty and contain no underscores")
        return value

    @field_validator("server_secret", mode="before")
    @classmethod
    def _ensure_server_secret(cls, value: str | None) -> str:
        if value:
            return value
        # Persist a generated secret so issued API keys keep verifying across restarts
        fs_root = Path(os.getenv("SHARED_FS_ROOT", "/srv/apigate"))
        secret_path = fs_root / ".server_secret"

        try:
            fs_root.mkdir(parents=True, exist_ok=True)
            os.chmod(fs_root, 0o700)
        except PermissionError:
            # Directory may already exist with different permissions (e.g., in container)
            pass
        except OSError as exc:
            logger.warning(
                "server_secret_dir_setup",
                error=str(exc),
                path=str(fs_root),
                message="Could not set directory permissions",
            )

        if secret_path.exists() and not secret_path.is_symlink():
            try:
                persisted = secret_path.read_text().strip()
                if persisted and len(persisted) >= 32:
                    return persisted
            except OSError as exc:
                logger.error(
                    "server_secret_read_failed", error=str(exc), path=str(secret_path)
                )

        generated = secrets.token_urlsafe(64)
        tmp_path = None
        try:
            # Atomic write: temp file then rename
            fd, tmp_path = tempfile.mkstemp(
                dir=str(fs_root), prefix=".server_secret_", suffix=".tmp"
            )
            try:
                os.write(fd, generated.encode())
                os.fchmod(fd, 0o600)
            finally:
                os.close(fd)
            os.rename(tmp_path, str(secret_path))
        except OSError as exc:
            if tmp_path and os.path.exists(tmp_path):
                os.unlink(tmp_path)
            logger.error(
                "server_secret_persist_failed", error=str(exc), path=str(secret_path)
            )
            raise RuntimeError(
                "Unable to persist server secret; set SERVER_SECRET or make SHARED_FS_ROOT writable"
            ) from exc
        return generated

    @model_validator(mode="after")
    def _check_token_lifetimes(self) -> "Settings":
        if self.access_token_ttl_seconds <= 0:
            raise ValueError("access_token_ttl_seconds must be positive")
        if self.refresh_token_ttl_seconds <= self.access_token_ttl_seconds:
            raise ValueError(
                "refresh_token_ttl_seconds must be strictly longer than access_token_ttl_seconds"
            )
        return self


def get_settings() -> Settings:
    global _settings_cache
    if _settings_cache is None:
        _settings_cache = Settings.from_env()
    return _settings_cache


_settings_cache: Settings | None = None


def reset_settings_cache() -> None:
    """Clear cached settings so future calls re-read the environment."""

    global _settings_cache
    _settings_cache = None
