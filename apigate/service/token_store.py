from __future__ import annotations

from datetime import datetime, timedelta
from typing import List, Optional

from apigate.service.identity import AuthStore
from apigate.storage.models import BlacklistEntry, StoredToken, utcnow


class TokenStore:
    """Issued-token records plus the blacklist of revoked token ids."""

    def __init__(self, store: AuthStore, *, blacklist_ttl_seconds: int) -> None:
        self.store = store
        self.blacklist_ttl = timedelta(seconds=blacklist_ttl_seconds)

    def record(
        self,
        token_id: str,
        user_id: int,
        token_type: str,
        expires_at: datetime,
    ) -> StoredToken:
        token = StoredToken(
            token_id=token_id,
            user_id=user_id,
            token_type=token_type,
            expires_at=expires_at,
        )
        self.store.store_token(token)
        return token

    def tokens_for(self, user_id: int) -> List[StoredToken]:
        return self.store.list_user_tokens(user_id)

    def forget_user(self, user_id: int) -> int:
        return self.store.delete_user_tokens(user_id)

    def _entry(self, token_id: str, now: Optional[datetime]) -> BlacklistEntry:
        blacklisted_at = now or utcnow()
        return BlacklistEntry(
            token_id=token_id,
            blacklisted_at=blacklisted_at,
            expires_at=blacklisted_at + self.blacklist_ttl,
        )

    def add_to_blacklist(
        self, token_id: str, *, now: Optional[datetime] = None
    ) -> BlacklistEntry:
        entry = self._entry(token_id, now)
        self.store.add_blacklist_entry(entry)
        return entry

    def claim(self, token_id: str, *, now: Optional[datetime] = None) -> bool:
        """Blacklist ``token_id`` and report whether this call was the one that did."""

        return self.store.add_blacklist_entry(self._entry(token_id, now))

    def is_blacklisted(self, token_id: str, *, now: Optional[datetime] = None) -> bool:
        entry = self.store.get_blacklist_entry(token_id)
        if entry is None:
            return False
        if entry.is_expired(now):
            self.store.delete_blacklist_entry(token_id)
            return False
        return True

    def purge_expired(self, *, now: Optional[datetime] = None) -> tuple[int, int]:
        """Return ``(tokens_deleted, blacklist_entries_pruned)``."""

        cutoff = now or utcnow()
        return (
            self.store.delete_expired_tokens(cutoff),
            self.store.prune_blacklist(cutoff),
        )
