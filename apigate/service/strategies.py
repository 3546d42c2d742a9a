from __future__ import annotations

import hashlib
import hmac
import secrets
import uuid
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from typing import Callable, List, Optional

from apigate.config import Settings
from apigate.logging import get_logger, key_prefix
from apigate.service.credentials import Credential, CredentialKind
from apigate.service.errors import (
    AuthExpiredError,
    AuthInvalidError,
    NotFoundError,
    ValidationFailedError,
)
from apigate.service.identity import AuthStore, Identity
from apigate.service.passwords import Passwords
from apigate.service.rate_limit import RateLimiter, api_key_key
from apigate.service.token_manager import TokenManager, TokenPair
from apigate.service.tokens import TokenType
from apigate.storage.key_cache import KeyCache
from apigate.storage.models import APIKeyRecord, AppPassword, User, utcnow

logger = get_logger(__name__)

API_KEY_MIN_LENGTH = 40
API_KEY_LOG_PREFIX = 20


class AuthStrategy(ABC):
    """Recognizes and verifies one credential shape."""

    name: str = ""

    @abstractmethod
    def supports(self, credential: Credential) -> bool:
        ...

    @abstractmethod
    async def authenticate(self, credential: Credential) -> Identity:
        ...

    @abstractmethod
    def challenge(self) -> str:
        ...

    async def logout(self, identity: Identity) -> int:
        """Revoke session state for ``identity``; long-lived credentials have none."""

        return 0


class BearerTokenStrategy(AuthStrategy):
    name = "jwt"

    def __init__(self, store: AuthStore, token_manager: TokenManager, *, realm: str) -> None:
        self.store = store
        self.tokens = token_manager
        self.realm = realm

    def supports(self, credential: Credential) -> bool:
        return credential.kind == CredentialKind.BEARER and bool(credential.token)

    def challenge(self) -> str:
        return f'Bearer realm="{self.realm}"'

    async def authenticate(self, credential: Credential) -> Identity:
        token = credential.token or ""
        claims = self.tokens.validate(token)
        if claims.token_type != TokenType.ACCESS:
            raise AuthInvalidError("Invalid token type")
        if self.tokens.is_blacklisted(token):
            raise AuthExpiredError("Token has been revoked")
        user = self.store.get_user(claims.subject_id)
        if not user:
            raise AuthInvalidError("User not found")
        return Identity.from_user(user, auth_method=self.name)

    async def issue(self, user: User) -> TokenPair:
        return self.tokens.issue_pair(user)

    async def refresh(self, refresh_token: str) -> TokenPair:
        claims = self.tokens.validate(refresh_token)
        if claims.token_type != TokenType.REFRESH:
            raise AuthInvalidError("Invalid token type")
        # single use: only the caller whose blacklist insert lands may mint the next pair
        if not self.tokens.consume(refresh_token):
            raise AuthExpiredError("Token has been revoked")
        user = self.store.get_user(claims.subject_id)
        if not user:
            raise AuthInvalidError("User not found")
        logger.info("token_refreshed", user_id=user.id, token_id=claims.token_id)
        return self.tokens.issue_pair(user)

    async def logout(self, identity: Identity) -> int:
        return self.tokens.revoke_user_tokens(identity.id)


class APIKeyStrategy(AuthStrategy):
    """Structured keys ``prefix_scope_user_random_checksum`` with a verification cache."""

    name = "api_key"

    def __init__(
        self,
        store: AuthStore,
        settings: Settings,
        cache: KeyCache,
        rate_limiter: Optional[RateLimiter] = None,
        *,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.store = store
        self.settings = settings
        self.cache = cache
        self.rate_limiter = rate_limiter
        self.prefix = settings.api_key_prefix
        self.realm = settings.realm
        self._clock = clock

    def supports(self, credential: Credential) -> bool:
        return credential.kind == CredentialKind.API_KEY and bool(credential.api_key)

    def challenge(self) -> str:
        return f'Key realm="{self.realm}"'

    def is_well_formed(self, api_key: str) -> bool:
        return api_key.startswith(f"{self.prefix}_") and len(api_key) >= API_KEY_MIN_LENGTH

    def checksum(self, scope: str, user_id: int | str, random_part: str) -> str:
        material = f"{scope}{user_id}{random_part}{self.settings.server_secret}"
        return hashlib.sha256(material.encode()).hexdigest()[:8]

    def verify_checksum(self, api_key: str) -> bool:
        parts = api_key.split("_")
        if len(parts) != 5 or parts[0] != self.prefix:
            return False
        _, scope, user_id, random_part, checksum = parts
        return hmac.compare_digest(self.checksum(scope, user_id, random_part), checksum)

    @staticmethod
    def _is_expired(expires_at: Optional[datetime], now: datetime) -> bool:
        if expires_at is None:
            return False
        if expires_at.tzinfo is None:
            expires_at = expires_at.replace(tzinfo=timezone.utc)
        return now >= expires_at

    async def _resolve(self, api_key: str, now: datetime) -> dict:
        cached = await self.cache.get(api_key)
        if cached is not None:
            return cached

        record = self.store.get_api_key(api_key)
        if not record:
            logger.warning("api_key_not_found", key_prefix=key_prefix(api_key, API_KEY_LOG_PREFIX))
            raise AuthInvalidError("Invalid API key")
        if record.is_revoked:
            logger.warning("api_key_revoked_used", key_prefix=key_prefix(api_key, API_KEY_LOG_PREFIX))
            raise AuthInvalidError("API key has been revoked")
        if self._is_expired(record.expires_at, now):
            raise AuthExpiredError("API key has expired")

        entry = {
            "user_id": record.user_id,
            "scopes": list(record.scopes),
            "expires_at": record.expires_at.isoformat() if record.expires_at else None,
            "rate_limit": record.rate_limit,
            "rate_limit_window": record.rate_limit_window,
        }
        await self.cache.set(api_key, record.user_id, entry)
        return entry

    async def authenticate(self, credential: Credential) -> Identity:
        api_key = credential.api_key or ""
        if not self.is_well_formed(api_key) or not self.verify_checksum(api_key):
            raise AuthInvalidError("Invalid API key format")

        now = self._clock()
        entry = await self._resolve(api_key, now)
        expires_at = entry.get("expires_at")
        if expires_at and self._is_expired(datetime.fromisoformat(expires_at), now):
            await self.cache.invalidate(api_key)
            raise AuthExpiredError("API key has expired")

        user = self.store.get_user(int(entry["user_id"]))
        if not user:
            raise AuthInvalidError("User not found")

        if self.rate_limiter is not None:
            await self.rate_limiter.enforce(
                api_key_key(api_key),
                int(entry.get("rate_limit") or self.settings.default_rate_limit),
                int(entry.get("rate_limit_window") or self.settings.default_rate_limit_window),
            )

        self.store.touch_api_key(api_key, used_at=now, ip=credential.client_ip)
        return Identity.from_user(
            user,
            auth_method=self.name,
            scopes=frozenset(entry.get("scopes") or []),
        )

    def generate(
        self,
        user_id: int,
        name: str,
        scopes: Optional[List[str]] = None,
        expires_at: Optional[datetime] = None,
        *,
        rate_limit: Optional[int] = None,
        rate_limit_window: Optional[int] = None,
    ) -> APIKeyRecord:
        if not name or not name.strip():
            raise ValidationFailedError("API key name is required")
        if not self.store.get_user(user_id):
            raise NotFoundError("user not found", detail={"user_id": user_id})

        scope = self.settings.api_key_scope
        random_part = secrets.token_hex(16)
        checksum = self.checksum(scope, user_id, random_part)
        record = APIKeyRecord(
            api_key=f"{self.prefix}_{scope}_{user_id}_{random_part}_{checksum}",
            user_id=user_id,
            name=name.strip(),
            scopes=list(scopes or []),
            expires_at=expires_at,
            rate_limit=rate_limit or self.settings.default_rate_limit,
            rate_limit_window=rate_limit_window or self.settings.default_rate_limit_window,
        )
        self.store.create_api_key(record)
        logger.info(
            "api_key_generated",
            user_id=user_id,
            key_prefix=key_prefix(record.api_key, API_KEY_LOG_PREFIX),
        )
        return record

    async def revoke(self, api_key: str) -> bool:
        revoked = self.store.revoke_api_key(api_key)
        await self.cache.invalidate(api_key)
        if revoked:
            logger.info("api_key_revoked", key_prefix=key_prefix(api_key, API_KEY_LOG_PREFIX))
        return revoked

    async def revoke_all(self, user_id: int) -> int:
        revoked = self.store.revoke_user_api_keys(user_id)
        await self.cache.invalidate_user(user_id)
        logger.info("api_keys_revoked", user_id=user_id, revoked_count=revoked)
        return revoked

    def owns_key(self, user_id: int, api_key: str) -> bool:
        record = self.store.get_api_key(api_key)
        return bool(record and record.user_id == user_id)

    def list_keys(self, user_id: int) -> List[dict]:
        return [
            {
                "key_prefix": key_prefix(record.api_key, API_KEY_LOG_PREFIX),
                "name": record.name,
                "scopes": list(record.scopes),
                "is_revoked": record.is_revoked,
                "expires_at": record.expires_at,
                "last_used": record.last_used,
                "last_ip": record.last_ip,
                "rate_limit": record.rate_limit,
                "rate_limit_window": record.rate_limit_window,
                "created_at": record.created_at,
            }
            for record in self.store.list_api_keys(user_id)
        ]


class BasicPasswordStrategy(AuthStrategy):
    """HTTP Basic with named, independently revocable application passwords."""

    name = "app_password"

    def __init__(
        self,
        store: AuthStore,
        passwords: Passwords,
        *,
        realm: str,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.store = store
        self.passwords = passwords
        self.realm = realm
        self._clock = clock

    def supports(self, credential: Credential) -> bool:
        return credential.kind == CredentialKind.BASIC and bool(credential.username)

    def challenge(self) -> str:
        return f'Basic realm="{self.realm}"'

    def _find_user(self, login: str) -> Optional[User]:
        return self.store.get_user_by_login(login) or self.store.get_user_by_email(login)

    async def authenticate(self, credential: Credential) -> Identity:
        login = credential.username or ""
        # app passwords are shown grouped with spaces; accept them pasted that way
        secret = "".join((credential.password or "").split())
        user = self._find_user(login)
        if not user:
            self.passwords.burn(secret)
            raise AuthInvalidError("Invalid credentials")

        for record in self.store.list_app_passwords(user.id):
            if self.passwords.verify(record.password_hash, secret):
                self.store.touch_app_password(
                    record.uuid, used_at=self._clock(), ip=credential.client_ip
                )
                return Identity.from_user(user, auth_method=self.name)

        logger.warning("app_password_mismatch", user_id=user.id)
        raise AuthInvalidError("Invalid credentials")

    def generate(self, user_id: int, name: str) -> tuple[AppPassword, str]:
        """Create a password; the plaintext is returned once and never stored."""

        if not name or not name.strip():
            raise ValidationFailedError("application password name is required")
        if not self.store.get_user(user_id):
            raise NotFoundError("user not found", detail={"user_id": user_id})
        plaintext = self.passwords.generate_app_password()
        password_hash, _ = self.passwords.hash(plaintext)
        record = AppPassword(
            uuid=str(uuid.uuid4()),
            user_id=user_id,
            name=name.strip(),
            password_hash=password_hash,
        )
        self.store.add_app_password(record)
        logger.info("app_password_created", user_id=user_id, app_password_id=record.uuid)
        return record, plaintext

    def revoke(self, user_id: int, password_uuid: str) -> bool:
        removed = self.store.delete_app_password(user_id, password_uuid)
        if removed:
            logger.info("app_password_revoked", user_id=user_id, app_password_id=password_uuid)
        return removed

    def revoke_all(self, user_id: int) -> int:
        removed = self.store.delete_app_passwords(user_id)
        logger.info("app_passwords_revoked", user_id=user_id, revoked_count=removed)
        return removed

    def list_passwords(self, user_id: int) -> List[dict]:
        return [
            {
                "uuid": record.uuid,
                "name": record.name,
                "created_at": record.created_at,
                "last_used": record.last_used,
                "last_ip": record.last_ip,
            }
            for record in self.store.list_app_passwords(user_id)
        ]
