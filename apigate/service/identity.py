from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import List, Optional, Protocol

from apigate.storage.models import (
    APIKeyRecord,
    AppPassword,
    BlacklistEntry,
    StoredToken,
    User,
)


class AuthStore(Protocol):
    """Backing store operations the authentication engine relies on."""

    def get_user(self, user_id: int) -> Optional[User]: ...

    def get_user_by_login(self, username: str) -> Optional[User]: ...

    def get_user_by_email(self, email: str) -> Optional[User]: ...

    def get_password_record(self, user_id: int) -> Optional[tuple[str, str]]: ...

    def add_app_password(self, record: AppPassword) -> AppPassword: ...

    def list_app_passwords(self, user_id: int) -> List[AppPassword]: ...

    def touch_app_password(
        self, uuid: str, *, used_at: datetime, ip: Optional[str] = None
    ) -> None: ...

    def delete_app_password(self, user_id: int, uuid: str) -> bool: ...

    def delete_app_passwords(self, user_id: int) -> int: ...

    def store_token(self, token: StoredToken) -> None: ...

    def list_user_tokens(self, user_id: int) -> List[StoredToken]: ...

    def delete_user_tokens(self, user_id: int) -> int: ...

    def delete_expired_tokens(self, now: Optional[datetime] = None) -> int: ...

    def add_blacklist_entry(self, entry: BlacklistEntry) -> bool: ...

    def get_blacklist_entry(self, token_id: str) -> Optional[BlacklistEntry]: ...

    def delete_blacklist_entry(self, token_id: str) -> None: ...

    def prune_blacklist(self, now: Optional[datetime] = None) -> int: ...

    def create_api_key(self, record: APIKeyRecord) -> APIKeyRecord: ...

    def get_api_key(self, api_key: str) -> Optional[APIKeyRecord]: ...

    def list_api_keys(self, user_id: int) -> List[APIKeyRecord]: ...

    def touch_api_key(
        self, api_key: str, *, used_at: datetime, ip: Optional[str] = None
    ) -> None: ...

    def revoke_api_key(self, api_key: str) -> bool: ...

    def revoke_user_api_keys(self, user_id: int) -> int: ...

    def get_permissions_policy(self) -> Optional[dict]: ...

    def save_permissions_policy(self, policy: dict) -> None: ...

    def delete_permissions_policy(self) -> None: ...


@dataclass(frozen=True)
class Identity:
    """An authenticated actor. Never mutated after a strategy produces it."""

    id: int
    username: str
    email: str
    roles: frozenset[str] = field(default_factory=frozenset)
    capabilities: frozenset[str] = field(default_factory=frozenset)
    scopes: frozenset[str] = field(default_factory=frozenset)
    display_name: Optional[str] = None
    auth_method: Optional[str] = None
    meta: dict = field(default_factory=dict, compare=False, hash=False)

    @classmethod
    def from_user(
        cls,
        user: User,
        *,
        auth_method: Optional[str] = None,
        capabilities: frozenset[str] = frozenset(),
        scopes: frozenset[str] = frozenset(),
    ) -> "Identity":
        return cls(
            id=user.id,
            username=user.username,
            email=user.email,
            roles=frozenset(user.roles),
            capabilities=capabilities,
            scopes=scopes,
            display_name=user.display_name,
            auth_method=auth_method,
            meta=dict(user.meta or {}),
        )

    def has_role(self, role: str) -> bool:
        return role in self.roles

    def public_dict(self) -> dict:
        return {
            "id": self.id,
            "username": self.username,
            "email": self.email,
            "roles": sorted(self.roles),
        }
