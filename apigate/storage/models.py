from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Dict, List, Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class User:
    id: int
    username: str
    email: str
    display_name: Optional[str] = None
    roles: List[str] = field(default_factory=list)
    created_at: datetime = field(default_factory=utcnow)
    meta: Dict | None = None


@dataclass
class AppPassword:
    """Named secondary credential; only the argon2 hash is stored."""

    uuid: str
    user_id: int
    name: str
    password_hash: str
    created_at: datetime = field(default_factory=utcnow)
    last_used: Optional[datetime] = None
    last_ip: Optional[str] = None


@dataclass
class StoredToken:
    token_id: str
    user_id: int
    token_type: str
    expires_at: datetime
    created_at: datetime = field(default_factory=utcnow)


@dataclass
class BlacklistEntry:
    token_id: str
    blacklisted_at: datetime
    expires_at: datetime

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        return (now or utcnow()) > self.expires_at


@dataclass
class APIKeyRecord:
    api_key: str
    user_id: int
    name: str
    scopes: List[str] = field(default_factory=list)
    is_revoked: bool = False
    expires_at: Optional[datetime] = None
    last_used: Optional[datetime] = None
    last_ip: Optional[str] = None
    rate_limit: int = 1000
    rate_limit_window: int = 3600
    created_at: datetime = field(default_factory=utcnow)
