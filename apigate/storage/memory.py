from __future__ import annotations

import json
import threading
from dataclasses import asdict, fields
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional, Type, TypeVar

from apigate.logging import get_logger
from apigate.storage.errors import ConstraintViolation
from apigate.storage.models import (
    APIKeyRecord,
    AppPassword,
    BlacklistEntry,
    StoredToken,
    User,
    utcnow,
)

T = TypeVar("T")


class MemoryStore:
    """In-memory backing store persisted to a JSON file under ``fs_root``."""

    def __init__(self, fs_root: str = "/tmp/apigate") -> None:
        self.logger = get_logger(__name__)
        self.users: Dict[int, User] = {}
        self.credentials: Dict[int, tuple[str, str]] = {}
        self.app_passwords: Dict[str, AppPassword] = {}
        self.tokens: Dict[str, StoredToken] = {}
        self.blacklist: Dict[str, BlacklistEntry] = {}
        self.api_keys: Dict[str, APIKeyRecord] = {}
        self.policy: Optional[dict] = None
        # RLock so helpers can nest acquisitions within the same thread
        self._data_lock = threading.RLock()
        self.fs_root = Path(fs_root)
        self.fs_root.mkdir(parents=True, exist_ok=True)
        self._load_state()

    def _state_path(self) -> Path:
        state_dir = self.fs_root / "state"
        state_dir.mkdir(parents=True, exist_ok=True)
        return state_dir / "auth_store.json"

    @staticmethod
    def _serialize(obj: Any) -> dict:
        data = asdict(obj)
        for key, value in data.items():
            if isinstance(value, datetime):
                data[key] = value.isoformat()
        return data

    @staticmethod
    def _deserialize(cls: Type[T], raw: dict) -> T:
        names = {f.name for f in fields(cls)}
        values: Dict[str, Any] = {}
        for key, value in raw.items():
            if key not in names:
                continue
            if isinstance(value, str) and key in {
                "created_at",
                "expires_at",
                "blacklisted_at",
                "last_used",
            }:
                value = datetime.fromisoformat(value)
            values[key] = value
        return cls(**values)

    def _persist_state(self) -> None:
        state = {
            "users": [self._serialize(u) for u in self.users.values()],
            "credentials": [
                {"user_id": user_id, "password_hash": creds[0], "password_algo": creds[1]}
                for user_id, creds in self.credentials.items()
            ],
            "app_passwords": [self._serialize(p) for p in self.app_passwords.values()],
            "tokens": [self._serialize(t) for t in self.tokens.values()],
            "blacklist": [self._serialize(b) for b in self.blacklist.values()],
            "api_keys": [self._serialize(k) for k in self.api_keys.values()],
            "policy": self.policy,
        }
        path = self._state_path()
        tmp_path = path.with_suffix(".tmp")
        tmp_path.write_text(json.dumps(state))
        tmp_path.replace(path)

    def _load_state(self) -> bool:
        path = self._state_path()
        if not path.exists():
            return False
        try:
            state = json.loads(path.read_text())
        except (OSError, json.JSONDecodeError) as exc:
            self.logger.warning("memory_store_state_unreadable", path=str(path), error=str(exc))
            return False
        with self._data_lock:
            for raw in state.get("users", []):
                user = self._deserialize(User, raw)
                self.users[user.id] = user
            for raw in state.get("credentials", []):
                self.credentials[int(raw["user_id"])] = (
                    raw["password_hash"],
                    raw["password_algo"],
                )
            for raw in state.get("app_passwords", []):
                record = self._deserialize(AppPassword, raw)
                self.app_passwords[record.uuid] = record
            for raw in state.get("tokens", []):
                token = self._deserialize(StoredToken, raw)
                self.tokens[token.token_id] = token
            for raw in state.get("blacklist", []):
                entry = self._deserialize(BlacklistEntry, raw)
                self.blacklist[entry.token_id] = entry
            for raw in state.get("api_keys", []):
                key = self._deserialize(APIKeyRecord, raw)
                self.api_keys[key.api_key] = key
            self.policy = state.get("policy")
        return True

    def verify_connection(self) -> None:
        self._state_path()

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
        with self._data_lock:
            for existing in self.users.values():
                if existing.username == username:
                    raise ConstraintViolation("username already exists", {"field": "username"})
                if existing.email == email:
                    raise ConstraintViolation("email already exists", {"field": "email"})
            if user_id is None:
                user_id = max(self.users, default=0) + 1
            elif user_id in self.users:
                raise ConstraintViolation("user id already exists", {"field": "id"})
            user = User(
                id=user_id,
                username=username,
                email=email,
                display_name=display_name or username,
                roles=list(roles or ["subscriber"]),
                meta=dict(meta) if meta else {},
            )
            self.users[user_id] = user
            self._persist_state()
            return user

    def get_user(self, user_id: int) -> Optional[User]:
        with self._data_lock:
            return self.users.get(user_id)

    def get_user_by_login(self, username: str) -> Optional[User]:
        with self._data_lock:
            return next((u for u in self.users.values() if u.username == username), None)

    def get_user_by_email(self, email: str) -> Optional[User]:
        lowered = email.lower()
        with self._data_lock:
            return next(
                (u for u in self.users.values() if u.email.lower() == lowered), None
            )

    def list_users(self, limit: int = 100) -> List[User]:
        with self._data_lock:
            return sorted(self.users.values(), key=lambda u: u.id)[:limit]

    def update_user_roles(self, user_id: int, roles: List[str]) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            user.roles = list(roles)
            self._persist_state()
            return user

    def save_password(self, user_id: int, password_hash: str, password_algo: str) -> None:
        with self._data_lock:
            if user_id not in self.users:
                raise ConstraintViolation(
                    "user not found for credentials", {"user_id": user_id}
                )
            self.credentials[user_id] = (password_hash, password_algo)
            self._persist_state()

    def get_password_record(self, user_id: int) -> Optional[tuple[str, str]]:
        with self._data_lock:
            return self.credentials.get(user_id)

    # application passwords
    def add_app_password(self, record: AppPassword) -> AppPassword:
        with self._data_lock:
            if record.user_id not in self.users:
                raise ConstraintViolation("user does not exist", {"user_id": record.user_id})
            self.app_passwords[record.uuid] = record
            self._persist_state()
            return record

    def list_app_passwords(self, user_id: int) -> List[AppPassword]:
        with self._data_lock:
            records = [p for p in self.app_passwords.values() if p.user_id == user_id]
        return sorted(records, key=lambda p: p.created_at, reverse=True)

    def touch_app_password(
        self, uuid: str, *, used_at: datetime, ip: Optional[str] = None
    ) -> None:
        with self._data_lock:
            record = self.app_passwords.get(uuid)
            if not record:
                return
            record.last_used = used_at
            record.last_ip = ip
            self._persist_state()

    def delete_app_password(self, user_id: int, uuid: str) -> bool:
        with self._data_lock:
            record = self.app_passwords.get(uuid)
            if not record or record.user_id != user_id:
                return False
            del self.app_passwords[uuid]
            self._persist_state()
            return True

    def delete_app_passwords(self, user_id: int) -> int:
        with self._data_lock:
            stale = [u for u, p in self.app_passwords.items() if p.user_id == user_id]
            for uuid in stale:
                del self.app_passwords[uuid]
            if stale:
                self._persist_state()
            return len(stale)

    # issued tokens
    def store_token(self, token: StoredToken) -> None:
        with self._data_lock:
            self.tokens[token.token_id] = token
            self._persist_state()

    def list_user_tokens(self, user_id: int) -> List[StoredToken]:
        with self._data_lock:
            return [t for t in self.tokens.values() if t.user_id == user_id]

    def delete_user_tokens(self, user_id: int) -> int:
        with self._data_lock:
            stale = [tid for tid, t in self.tokens.items() if t.user_id == user_id]
            for tid in stale:
                del self.tokens[tid]
            if stale:
                self._persist_state()
            return len(stale)

    def delete_expired_tokens(self, now: Optional[datetime] = None) -> int:
        cutoff = now or utcnow()
        with self._data_lock:
            stale = [tid for tid, t in self.tokens.items() if t.expires_at < cutoff]
            for tid in stale:
                del self.tokens[tid]
            if stale:
                self._persist_state()
            return len(stale)

    # blacklist
    def add_blacklist_entry(self, entry: BlacklistEntry) -> bool:
        with self._data_lock:
            existing = self.blacklist.get(entry.token_id)
            if existing is not None and not existing.is_expired(entry.blacklisted_at):
                return False
            self.blacklist[entry.token_id] = entry
            self._persist_state()
            return True

    def get_blacklist_entry(self, token_id: str) -> Optional[BlacklistEntry]:
        with self._data_lock:
            return self.blacklist.get(token_id)

    def delete_blacklist_entry(self, token_id: str) -> None:
        with self._data_lock:
            if self.blacklist.pop(token_id, None) is not None:
                self._persist_state()

    def prune_blacklist(self, now: Optional[datetime] = None) -> int:
        cutoff = now or utcnow()
        with self._data_lock:
            stale = [tid for tid, e in self.blacklist.items() if e.expires_at < cutoff]
            for tid in stale:
                del self.blacklist[tid]
            if stale:
                self._persist_state()
            return len(stale)

    # api keys
    def create_api_key(self, record: APIKeyRecord) -> APIKeyRecord:
        with self._data_lock:
            if record.api_key in self.api_keys:
                raise ConstraintViolation("api key already exists", {"field": "api_key"})
            self.api_keys[record.api_key] = record
            self._persist_state()
            return record

    def get_api_key(self, api_key: str) -> Optional[APIKeyRecord]:
        with self._data_lock:
            return self.api_keys.get(api_key)

    def list_api_keys(self, user_id: int) -> List[APIKeyRecord]:
        with self._data_lock:
            records = [k for k in self.api_keys.values() if k.user_id == user_id]
        return sorted(records, key=lambda k: k.created_at, reverse=True)

    def touch_api_key(
        self, api_key: str, *, used_at: datetime, ip: Optional[str] = None
    ) -> None:
        with self._data_lock:
            record = self.api_keys.get(api_key)
            if not record:
                return
            record.last_used = used_at
            record.last_ip = ip
            self._persist_state()

    def revoke_api_key(self, api_key: str) -> bool:
        with self._data_lock:
            record = self.api_keys.get(api_key)
            if not record:
                return False
            record.is_revoked = True
            self._persist_state()
            return True

    def revoke_user_api_keys(self, user_id: int) -> int:
        with self._data_lock:
            revoked = 0
            for record in self.api_keys.values():
                if record.user_id == user_id and not record.is_revoked:
                    record.is_revoked = True
                    revoked += 1
            if revoked:
                self._persist_state()
            return revoked

    # permissions policy document
    def get_permissions_policy(self) -> Optional[dict]:
        with self._data_lock:
            return json.loads(json.dumps(self.policy)) if self.policy else None

    def save_permissions_policy(self, policy: dict) -> None:
        with self._data_lock:
            self.policy = json.loads(json.dumps(policy))
            self._persist_state()

    def delete_permissions_policy(self) -> None:
        with self._data_lock:
            self.policy = None
            self._persist_state()
