from __future__ import annotations

import hashlib
import secrets
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable, Optional

from apigate.config import Settings
from apigate.logging import get_logger
from apigate.service.errors import AuthExpiredError, AuthInvalidError
from apigate.service.token_store import TokenStore
from apigate.service.tokens import TokenClaims, TokenCodec, TokenType
from apigate.storage.models import User, utcnow

logger = get_logger(__name__)


@dataclass(frozen=True)
class TokenPair:
    access_token: str
    refresh_token: str
    expires_in: int
    token_type: str = "Bearer"

    def to_dict(self) -> dict:
        return {
            "access_token": self.access_token,
            "refresh_token": self.refresh_token,
            "token_type": self.token_type,
            "expires_in": self.expires_in,
        }


class TokenManager:
    """Issues, validates and revokes compact signed tokens."""

    def __init__(
        self,
        settings: Settings,
        codec: TokenCodec,
        token_store: TokenStore,
        *,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.settings = settings
        self.codec = codec
        self.tokens = token_store
        self._clock = clock

    def _now(self) -> datetime:
        return self._clock()

    @staticmethod
    def new_token_id() -> str:
        return secrets.token_hex(16)

    def build_claims(
        self,
        user: User,
        token_type: TokenType,
        *,
        now: Optional[datetime] = None,
    ) -> TokenClaims:
        issued = int((now or self._now()).timestamp())
        ttl = (
            self.settings.access_token_ttl_seconds
            if token_type == TokenType.ACCESS
            else self.settings.refresh_token_ttl_seconds
        )
        user_claim = None
        if token_type == TokenType.ACCESS:
            user_claim = {
                "id": user.id,
                "username": user.username,
                "email": user.email,
                "roles": list(user.roles),
            }
        return TokenClaims(
            issuer=self.settings.jwt_issuer,
            audience=self.settings.jwt_audience,
            issued_at=issued,
            expires_at=issued + ttl,
            subject_id=user.id,
            token_type=token_type,
            token_id=self.new_token_id(),
            user=user_claim,
        )

    def issue(self, claims: TokenClaims) -> str:
        token = self.codec.encode(claims)
        self.tokens.record(
            claims.token_id,
            claims.subject_id,
            claims.token_type.value,
            datetime.fromtimestamp(claims.expires_at, tz=timezone.utc),
        )
        return token

    def issue_pair(self, user: User) -> TokenPair:
        now = self._now()
        access = self.issue(self.build_claims(user, TokenType.ACCESS, now=now))
        refresh = self.issue(self.build_claims(user, TokenType.REFRESH, now=now))
        logger.info("token_pair_issued", user_id=user.id)
        return TokenPair(
            access_token=access,
            refresh_token=refresh,
            expires_in=self.settings.access_token_ttl_seconds,
        )

    def validate(self, token: str) -> TokenClaims:
        claims = self.codec.decode(token)
        if claims.issuer != self.settings.jwt_issuer:
            raise AuthInvalidError("Invalid token issuer")
        if claims.audience != self.settings.jwt_audience:
            raise AuthInvalidError("Invalid token audience")
        now = self._now().timestamp()
        if now >= claims.expires_at:
            raise AuthExpiredError("Token has expired")
        if claims.not_before is not None and now < claims.not_before:
            raise AuthInvalidError("Token not yet valid")
        return claims

    def token_id_for(self, token: str) -> str:
        """The token's ``jti``, or a hash of the raw token when none is readable."""

        return self.codec.peek_token_id(token) or hashlib.sha256(token.encode()).hexdigest()

    def blacklist(self, token: str) -> None:
        token_id = self.token_id_for(token)
        self.tokens.add_to_blacklist(token_id, now=self._now())
        logger.info("token_blacklisted", token_id=token_id)

    def blacklist_id(self, token_id: str) -> None:
        self.tokens.add_to_blacklist(token_id, now=self._now())

    def consume(self, token: str) -> bool:
        """Burn a single-use token; ``False`` when it was already spent or revoked."""

        token_id = self.token_id_for(token)
        if not self.tokens.claim(token_id, now=self._now()):
            return False
        logger.info("token_blacklisted", token_id=token_id)
        return True

    def is_blacklisted(self, token: str) -> bool:
        return self.tokens.is_blacklisted(self.token_id_for(token), now=self._now())

    def revoke_user_tokens(self, user_id: int) -> int:
        stored = self.tokens.tokens_for(user_id)
        now = self._now()
        for record in stored:
            self.tokens.add_to_blacklist(record.token_id, now=now)
        self.tokens.forget_user(user_id)
        logger.info("user_tokens_revoked", user_id=user_id, revoked_count=len(stored))
        return len(stored)

    def cleanup_expired_tokens(self) -> dict[str, int]:
        deleted, pruned = self.tokens.purge_expired(now=self._now())
        logger.info(
            "token_cleanup_completed", tokens_count=deleted, blacklist_count=pruned
        )
        return {"tokens": deleted, "blacklist": pruned}
