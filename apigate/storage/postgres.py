from __future__ import annotations

import json
import time
from datetime import datetime
from pathlib import Path
from typing import Any, Callable, List, Optional, TypeVar

import psycopg
from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool

from apigate.logging import get_logger
from apigate.storage.errors import ConstraintViolation, TransientStorageError
from apigate.storage.models import (
    APIKeyRecord,
    AppPassword,
    BlacklistEntry,
    StoredToken,
    User,
    utcnow,
)

T = TypeVar("T")

_SCHEMA = (
    """
    CREATE TABLE IF NOT EXISTS app_user (
        id BIGSERIAL PRIMARY KEY,
        username TEXT NOT NULL UNIQUE,
        email TEXT NOT NULL UNIQUE,
        display_name TEXT,
        roles JSONB NOT NULL DEFAULT '[]'::jsonb,
        meta JSONB,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS user_credential (
        user_id BIGINT PRIMARY KEY REFERENCES app_user(id) ON DELETE CASCADE,
        password_hash TEXT NOT NULL,
        password_algo TEXT NOT NULL,
        updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS app_password (
        uuid TEXT PRIMARY KEY,
        user_id BIGINT NOT NULL REFERENCES app_user(id) ON DELETE CASCADE,
        name TEXT NOT NULL,
        password_hash TEXT NOT NULL,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        last_used TIMESTAMPTZ,
        last_ip TEXT
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS tokens (
        token_id TEXT PRIMARY KEY,
        user_id BIGINT NOT NULL,
        token_type TEXT NOT NULL,
        expires_at TIMESTAMPTZ NOT NULL,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    "CREATE INDEX IF NOT EXISTS tokens_user_idx ON tokens (user_id)",
    "CREATE INDEX IF NOT EXISTS tokens_expires_idx ON tokens (expires_at)",
    """
    CREATE TABLE IF NOT EXISTS token_blacklist (
        token_id TEXT PRIMARY KEY,
        blacklisted_at TIMESTAMPTZ NOT NULL,
        expires_at TIMESTAMPTZ NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS api_keys (
        api_key TEXT PRIMARY KEY,
        user_id BIGINT NOT NULL,
        name TEXT NOT NULL,
        scopes JSONB NOT NULL DEFAULT '[]'::jsonb,
        is_revoked BOOLEAN NOT NULL DEFAULT false,
        expires_at TIMESTAMPTZ,
        last_used TIMESTAMPTZ,
        last_ip TEXT,
        rate_limit INTEGER NOT NULL DEFAULT 1000,
        rate_limit_window INTEGER NOT NULL DEFAULT 3600,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    "CREATE INDEX IF NOT EXISTS api_keys_user_idx ON api_keys (user_id)",
    """
    CREATE TABLE IF NOT EXISTS auth_policy (
        name TEXT PRIMARY KEY,
        policy JSONB NOT NULL,
        updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
)

_POLICY_NAME = "permissions"


class PostgresStore:
    """Postgres-backed store for users, issued tokens, API keys and policy."""

    def __init__(
        self,
        dsn: str,
        fs_root: str,
        *,
        retry_backoff: float = 0.2,
        timeout: float = 5.0,
    ) -> None:
        self.dsn = dsn
        self.fs_root = Path(fs_root)
        self.fs_root.mkdir(parents=True, exist_ok=True)
        self.logger = get_logger(__name__)
        self.retry_backoff = retry_backoff
        self.pool = ConnectionPool(
            self.dsn,
            min_size=2,
            max_size=10,
            timeout=timeout,
            kwargs={"row_factory": dict_row, "autocommit": False},
        )
        self._ensure_schema()

    def _connect(self):
        return self.pool.connection()

    def _ensure_schema(self) -> None:
        """Create the authentication tables if they are missing."""

        with self._connect() as conn:
            for statement in _SCHEMA:
                conn.execute(statement)

    def _with_retry(self, operation: str, fn: Callable[[], T]) -> T:
        """Run ``fn`` and retry exactly once on a transient connection error."""

        try:
            return fn()
        except (psycopg.OperationalError, TimeoutError) as exc:
            self.logger.warning(
                "storage_transient_error", operation=operation, error=str(exc)
            )
        time.sleep(self.retry_backoff)
        try:
            return fn()
        except (psycopg.OperationalError, TimeoutError) as exc:
            self.logger.error(
                "storage_retry_failed", operation=operation, error=str(exc)
            )
            raise TransientStorageError(str(exc), operation=operation) from exc

    def verify_connection(self) -> None:
        with self._connect() as conn:
            conn.execute("SELECT 1")

    def close(self) -> None:
        self.pool.close()

    @staticmethod
    def _user_from_row(row: dict) -> User:
        roles = row.get("roles") or []
        if isinstance(roles, str):
            roles = json.loads(roles)
        meta = row.get("meta")
        if isinstance(meta, str):
            meta = json.loads(meta)
        return User(
            id=int(row["id"]),
            username=row["username"],
            email=row["email"],
            display_name=row.get("display_name"),
            roles=list(roles),
            created_at=row.get("created_at") or utcnow(),
            meta=meta or {},
        )

    @staticmethod
    def _app_password_from_row(row: dict) -> AppPassword:
        return AppPassword(
            uuid=row["uuid"],
            user_id=int(row["user_id"]),
            name=row["name"],
            password_hash=row["password_hash"],
            created_at=row.get("created_at") or utcnow(),
            last_used=row.get("last_used"),
            last_ip=row.get("last_ip"),
        )

    @staticmethod
    def _api_key_from_row(row: dict) -> APIKeyRecord:
        scopes = row.get("scopes") or []
        if isinstance(scopes, str):
            scopes = json.loads(scopes)
        return APIKeyRecord(
            api_key=row["api_key"],
            user_id=int(row["user_id"]),
            name=row["name"],
            scopes=list(scopes),
            is_revoked=bool(row.get("is_revoked")),
            expires_at=row.get("expires_at"),
            last_used=row.get("last_used"),
            last_ip=row.get("last_ip"),
            rate_limit=int(row.get("rate_limit") or 1000),
            rate_limit_window=int(row.get("rate_limit_window") or 3600),
            created_at=row.get("created_at") or utcnow(),
        )

    # users
    def create_user(
        self,
        username: str,
        email: str,
        *,
        roles: Optional[List[str]] = None,
        display_name: Optional[str] = None,
        meta: Optional[dict] = None,
        user_id: Optional[int] = None,
    ) -> User:
        role_list = list(roles or ["subscriber"])
        normalized_meta = dict(meta) if meta else {}

        def _write() -> dict:
            with self._connect() as conn:
                if user_id is None:
                    return conn.execute(
                        """
                        INSERT INTO app_user (username, email, display_name, roles, meta)
                        VALUES (%s, %s, %s, %s, %s)
                        RETURNING *
                        """,
                        (
                            username,
                            email,
                            display_name or username,
                            json.dumps(role_list),
                            json.dumps(normalized_meta),
                        ),
                    ).fetchone()
                return conn.execute(
                    """
                    INSERT INTO app_user (id, username, email, display_name, roles, meta)
                    VALUES (%s, %s, %s, %s, %s, %s)
                    RETURNING *
                    """,
                    (
                        user_id,
                        username,
                        email,
                        display_name or username,
                        json.dumps(role_list),
                        json.dumps(normalized_meta),
                    ),
                ).fetchone()

        try:
            row = self._with_retry("create_user", _write)
        except errors.UniqueViolation:
            raise ConstraintViolation(
                "username or email already exists", {"field": "username"}
            )
        return self._user_from_row(row)

    def get_user(self, user_id: int) -> Optional[User]:
        def _query() -> Optional[dict]:
            with self._connect() as conn:
                return conn.execute(
                    "SELECT * FROM app_user WHERE id = %s", (user_id,)
                ).fetchone()

        row = self._with_retry("get_user", _query)
        return self._user_from_row(row) if row else None

    def get_user_by_login(self, username: str) -> Optional[User]:
        def _query() -> Optional[dict]:
            with self._connect() as conn:
                return conn.execute(
                    "SELECT * FROM app_user WHERE username = %s", (username,)
                ).fetchone()

        row = self._with_retry("get_user_by_login", _query)
        return self._user_from_row(row) if row else None

    def get_user_by_email(self, email: str) -> Optional[User]:
        def _query() -> Optional[dict]:
            with self._connect() as conn:
                return conn.execute(
                    "SELECT * FROM app_user WHERE lower(email) = lower(%s)", (email,)
                ).fetchone()

        row = self._with_retry("get_user_by_email", _query)
        return self._user_from_row(row) if row else None

    def list_users(self, limit: int = 100) -> List[User]:
        def _query() -> List[dict]:
            with self._connect() as conn:
                return conn.execute(
                    "SELECT * FROM app_user ORDER BY id LIMIT %s", (limit,)
                ).fetchall()

        return [self._user_from_row(row) for row in self._with_retry("list_users", _query)]

    def update_user_roles(self, user_id: int, roles: List[str]) -> Optional[User]:
        def _write() -> Optional[dict]:
            with self._connect() as conn:
                return conn.execute(
                    "UPDATE app_user SET roles = %s WHERE id = %s RETURNING *",
                    (json.dumps(list(roles)), user_id),
                ).fetchone()

        row = self._with_retry("update_user_roles", _write)
        return self._user_from_row(row) if row else None

    def save_password(self, user_id: int, password_hash: str, password_algo: str) -> None:
        def _write() -> None:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO user_credential (user_id, password_hash, password_algo)
                    VALUES (%s, %s, %s)
                    ON CONFLICT (user_id) DO UPDATE
                    SET password_hash = EXCLUDED.password_hash,
                        password_algo = EXCLUDED.password_algo,
                        updated_at = now()
                    """,
                    (user_id, password_hash, password_algo),
                )

        try:
            self._with_retry("save_password", _write)
        except errors.ForeignKeyViolation:
            raise ConstraintViolation(
                "user not found for credentials", {"user_id": user_id}
            )

    def get_password_record(self, user_id: int) -> Optional[tuple[str, str]]:
        def _query() -> Optional[dict]:
            with self._connect() as conn:
                return conn.execute(
                    "SELECT password_hash, password_algo FROM user_credential WHERE user_id = %s",
                    (user_id,),
                ).fetchone()

        row = self._with_retry("get_password_record", _query)
        if not row:
            return None
        return row["password_hash"], row["password_algo"]

    # application passwords
    def add_app_password(self, record: AppPassword) -> AppPassword:
        def _write() -> None:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO app_password (uuid, user_id, name, password_hash, created_at)
                    VALUES (%s, %s, %s, %s, %s)
                    """,
                    (
                        record.uuid,
                        record.user_id,
                        record.name,
                        record.password_hash,
                        record.created_at,
                    ),
                )

        try:
            self._with_retry("add_app_password", _write)
        except errors.ForeignKeyViolation:
            raise ConstraintViolation("user does not exist", {"user_id": record.user_id})
        return record

    def list_app_passwords(self, user_id: int) -> List[AppPassword]:
        def _query() -> List[dict]:
            with self._connect() as conn:
                return conn.execute(
                    "SELECT * FROM app_password WHERE user_id = %s ORDER BY created_at DESC",
                    (user_id,),
                ).fetchall()

        return [self._app_password_from_row(row) for row in self._with_retry("list_app_passwords", _query)]

    def touch_app_password(
        self, uuid: str, *, used_at: datetime, ip: Optional[str] = None
    ) -> None:
        def _write() -> None:
            with self._connect() as conn:
                conn.execute(
                    "UPDATE app_password SET last_used = %s, last_ip = %s WHERE uuid = %s",
                    (used_at, ip, uuid),
                )

        self._with_retry("touch_app_password", _write)

    def delete_app_password(self, user_id: int, uuid: str) -> bool:
        def _write() -> int:
            with self._connect() as conn:
                return conn.execute(
                    "DELETE FROM app_password WHERE uuid = %s AND user_id = %s",
                    (uuid, user_id),
                ).rowcount

        return self._with_retry("delete_app_password", _write) > 0

    def delete_app_passwords(self, user_id: int) -> int:
        def _write() -> int:
            with self._connect() as conn:
                return conn.execute(
                    "DELETE FROM app_password WHERE user_id = %s", (user_id,)
                ).rowcount

        return self._with_retry("delete_app_passwords", _write)

    # issued tokens
    def store_token(self, token: StoredToken) -> None:
        def _write() -> None:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO tokens (token_id, user_id, token_type, expires_at, created_at)
                    VALUES (%s, %s, %s, %s, %s)
                    ON CONFLICT (token_id) DO UPDATE
                    SET user_id = EXCLUDED.user_id,
                        token_type = EXCLUDED.token_type,
                        expires_at = EXCLUDED.expires_at
                    """,
                    (
                        token.token_id,
                        token.user_id,
                        token.token_type,
                        token.expires_at,
                        token.created_at,
                    ),
                )

        self._with_retry("store_token", _write)

    def list_user_tokens(self, user_id: int) -> List[StoredToken]:
        def _query() -> List[dict]:
            with self._connect() as conn:
                return conn.execute(
                    "SELECT * FROM tokens WHERE user_id = %s", (user_id,)
                ).fetchall()

        return [
            StoredToken(
                token_id=row["token_id"],
                user_id=int(row["user_id"]),
                token_type=row["token_type"],
                expires_at=row["expires_at"],
                created_at=row.get("created_at") or utcnow(),
            )
            for row in self._with_retry("list_user_tokens", _query)
        ]

    def delete_user_tokens(self, user_id: int) -> int:
        def _write() -> int:
            with self._connect() as conn:
                return conn.execute(
                    "DELETE FROM tokens WHERE user_id = %s", (user_id,)
                ).rowcount

        return self._with_retry("delete_user_tokens", _write)

    def delete_expired_tokens(self, now: Optional[datetime] = None) -> int:
        cutoff = now or utcnow()

        def _write() -> int:
            with self._connect() as conn:
                return conn.execute(
                    "DELETE FROM tokens WHERE expires_at < %s", (cutoff,)
                ).rowcount

        return self._with_retry("delete_expired_tokens", _write)

    # blacklist
    def add_blacklist_entry(self, entry: BlacklistEntry) -> bool:
        """Insert ``entry`` unless a live entry for the token already exists.

        Returns ``True`` only for the caller whose row landed, so concurrent
        writers racing on one token id see exactly one winner.
        """

        def _write() -> bool:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    INSERT INTO token_blacklist (token_id, blacklisted_at, expires_at)
                    VALUES (%s, %s, %s)
                    ON CONFLICT (token_id) DO UPDATE
                    SET blacklisted_at = EXCLUDED.blacklisted_at,
                        expires_at = EXCLUDED.expires_at
                    WHERE token_blacklist.expires_at < EXCLUDED.blacklisted_at
                    RETURNING token_id
                    """,
                    (entry.token_id, entry.blacklisted_at, entry.expires_at),
                ).fetchone()
                return row is not None

        return self._with_retry("add_blacklist_entry", _write)

    def get_blacklist_entry(self, token_id: str) -> Optional[BlacklistEntry]:
        def _query() -> Optional[dict]:
            with self._connect() as conn:
                return conn.execute(
                    "SELECT * FROM token_blacklist WHERE token_id = %s", (token_id,)
                ).fetchone()

        row = self._with_retry("get_blacklist_entry", _query)
        if not row:
            return None
        return BlacklistEntry(
            token_id=row["token_id"],
            blacklisted_at=row["blacklisted_at"],
            expires_at=row["expires_at"],
        )

    def delete_blacklist_entry(self, token_id: str) -> None:
        def _write() -> None:
            with self._connect() as conn:
                conn.execute("DELETE FROM token_blacklist WHERE token_id = %s", (token_id,))

        self._with_retry("delete_blacklist_entry", _write)

    def prune_blacklist(self, now: Optional[datetime] = None) -> int:
        cutoff = now or utcnow()

        def _write() -> int:
            with self._connect() as conn:
                return conn.execute(
                    "DELETE FROM token_blacklist WHERE expires_at < %s", (cutoff,)
                ).rowcount

        return self._with_retry("prune_blacklist", _write)

    # api keys
    def create_api_key(self, record: APIKeyRecord) -> APIKeyRecord:
        def _write() -> None:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO api_keys (
                        api_key, user_id, name, scopes, is_revoked, expires_at,
                        rate_limit, rate_limit_window, created_at
                    )
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s)
                    """,
                    (
                        record.api_key,
                        record.user_id,
                        record.name,
                        json.dumps(record.scopes),
                        record.is_revoked,
                        record.expires_at,
                        record.rate_limit,
                        record.rate_limit_window,
                        record.created_at,
                    ),
                )

        try:
            self._with_retry("create_api_key", _write)
        except errors.UniqueViolation:
            raise ConstraintViolation("api key already exists", {"field": "api_key"})
        return record

    def get_api_key(self, api_key: str) -> Optional[APIKeyRecord]:
        def _query() -> Optional[dict]:
            with self._connect() as conn:
                return conn.execute(
                    "SELECT * FROM api_keys WHERE api_key = %s", (api_key,)
                ).fetchone()

        row = self._with_retry("get_api_key", _query)
        return self._api_key_from_row(row) if row else None

    def list_api_keys(self, user_id: int) -> List[APIKeyRecord]:
        def _query() -> List[dict]:
            with self._connect() as conn:
                return conn.execute(
                    "SELECT * FROM api_keys WHERE user_id = %s ORDER BY created_at DESC",
                    (user_id,),
                ).fetchall()

        return [self._api_key_from_row(row) for row in self._with_retry("list_api_keys", _query)]

    def touch_api_key(
        self, api_key: str, *, used_at: datetime, ip: Optional[str] = None
    ) -> None:
        def _write() -> None:
            with self._connect() as conn:
                conn.execute(
                    "UPDATE api_keys SET last_used = %s, last_ip = %s WHERE api_key = %s",
                    (used_at, ip, api_key),
                )

        self._with_retry("touch_api_key", _write)

    def revoke_api_key(self, api_key: str) -> bool:
        def _write() -> int:
            with self._connect() as conn:
                return conn.execute(
                    "UPDATE api_keys SET is_revoked = true WHERE api_key = %s", (api_key,)
                ).rowcount

        return self._with_retry("revoke_api_key", _write) > 0

    def revoke_user_api_keys(self, user_id: int) -> int:
        def _write() -> int:
            with self._connect() as conn:
                return conn.execute(
                    "UPDATE api_keys SET is_revoked = true WHERE user_id = %s AND NOT is_revoked",
                    (user_id,),
                ).rowcount

        return self._with_retry("revoke_user_api_keys", _write)

    # permissions policy document
    def get_permissions_policy(self) -> Optional[dict]:
        def _query() -> Optional[dict]:
            with self._connect() as conn:
                return conn.execute(
                    "SELECT policy FROM auth_policy WHERE name = %s", (_POLICY_NAME,)
                ).fetchone()

        row = self._with_retry("get_permissions_policy", _query)
        if not row:
            return None
        policy: Any = row["policy"]
        return json.loads(policy) if isinstance(policy, str) else policy

    def save_permissions_policy(self, policy: dict) -> None:
        def _write() -> None:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO auth_policy (name, policy)
                    VALUES (%s, %s)
                    ON CONFLICT (name) DO UPDATE
                    SET policy = EXCLUDED.policy, updated_at = now()
                    """,
                    (_POLICY_NAME, json.dumps(policy)),
                )

        self._with_retry("save_permissions_policy", _write)

    def delete_permissions_policy(self) -> None:
        def _write() -> None:
            with self._connect() as conn:
                conn.execute("DELETE FROM auth_policy WHERE name = %s", (_POLICY_NAME,))

        self._with_retry("delete_permissions_policy", _write)
