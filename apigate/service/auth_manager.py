from __future__ import annotations

import contextlib
from dataclasses import dataclass, replace
from typing import Iterator, List, Mapping, Optional

from apigate.logging import get_logger
from apigate.service.credentials import Credential, CredentialKind, extract_credential
from apigate.service.errors import (
    AuthenticationError,
    AuthInvalidError,
    AuthMissingError,
    StorageUnavailableError,
    ValidationFailedError,
)
from apigate.service.identity import AuthStore, Identity
from apigate.service.passwords import PASSWORD_ALGO, Passwords
from apigate.service.permissions import PermissionsMatrix
from apigate.service.strategies import AuthStrategy, BearerTokenStrategy
from apigate.service.token_manager import TokenPair
from apigate.storage.errors import TransientStorageError
from apigate.storage.models import User

logger = get_logger(__name__)

STRATEGY_JWT = "jwt"
STRATEGY_API_KEY = "api_key"
STRATEGY_APP_PASSWORD = "app_password"


@dataclass(frozen=True)
class LoginRequest:
    username: Optional[str] = None
    password: Optional[str] = None
    api_key: Optional[str] = None
    client_ip: Optional[str] = None


@dataclass(frozen=True)
class AuthResult:
    identity: Identity
    strategy: str
    tokens: Optional[TokenPair] = None


@contextlib.contextmanager
def storage_guard(operation: str) -> Iterator[None]:
    """Surface a store failure that already used its retry as a 503."""

    try:
        yield
    except TransientStorageError as exc:
        logger.error("storage_unavailable", operation=exc.operation or operation, error=exc.message)
        raise StorageUnavailableError(
            "Authentication backend unavailable", detail={"operation": operation}
        ) from exc


class AuthManager:
    """Dispatches credentials to registered strategies and runs login flows."""

    def __init__(
        self,
        store: AuthStore,
        permissions: PermissionsMatrix,
        passwords: Passwords,
    ) -> None:
        self.store = store
        self.permissions = permissions
        self.passwords = passwords
        self._strategies: List[AuthStrategy] = []

    def register_strategy(self, strategy: AuthStrategy) -> None:
        if self.get_strategy(strategy.name) is not None:
            raise ValueError(f"strategy {strategy.name!r} already registered")
        self._strategies.append(strategy)

    def get_strategy(self, name: str) -> Optional[AuthStrategy]:
        return next((s for s in self._strategies if s.name == name), None)

    @property
    def strategies(self) -> List[AuthStrategy]:
        return list(self._strategies)

    def challenges(self) -> List[str]:
        return [strategy.challenge() for strategy in self._strategies]

    def extract_credential(
        self, headers: Mapping[str, str], *, client_ip: Optional[str] = None
    ) -> Optional[Credential]:
        return extract_credential(headers, client_ip=client_ip)

    def _with_capabilities(self, identity: Identity) -> Identity:
        return replace(identity, capabilities=self.permissions.capabilities_for(identity.roles))

    async def authenticate_credential(self, credential: Optional[Credential]) -> Identity:
        if credential is None:
            raise AuthMissingError("Authentication required")
        strategy = next((s for s in self._strategies if s.supports(credential)), None)
        if strategy is None:
            raise AuthInvalidError("Invalid authentication method")
        try:
            with storage_guard(f"authenticate:{strategy.name}"):
                identity = await strategy.authenticate(credential)
        except AuthenticationError as exc:
            logger.warning(
                "authentication_failed",
                strategy=strategy.name,
                reason=exc.message,
                error_code=exc.error_code,
            )
            raise
        return self._with_capabilities(identity)

    async def authenticate(
        self, headers: Mapping[str, str], *, client_ip: Optional[str] = None
    ) -> Identity:
        return await self.authenticate_credential(
            self.extract_credential(headers, client_ip=client_ip)
        )

    @staticmethod
    def detect_strategy(request: LoginRequest) -> str:
        if request.api_key:
            return STRATEGY_API_KEY
        if request.username and request.password:
            return STRATEGY_JWT
        raise ValidationFailedError("Authentication credentials not provided")

    def _verify_primary_password(self, login: str, password: str) -> User:
        user = self.store.get_user_by_login(login) or self.store.get_user_by_email(login)
        if not user:
            self.passwords.burn(password)
            raise AuthInvalidError("Invalid credentials")
        record = self.store.get_password_record(user.id)
        if not record:
            self.passwords.burn(password)
            raise AuthInvalidError("Invalid credentials")
        stored_hash, algo = record
        if algo != PASSWORD_ALGO or not self.passwords.verify(stored_hash, password):
            logger.warning("password_verification_failed", user_id=user.id)
            raise AuthInvalidError("Invalid credentials")
        return user

    async def login(self, strategy_name: Optional[str], request: LoginRequest) -> AuthResult:
        name = strategy_name or self.detect_strategy(request)
        strategy = self.get_strategy(name)
        if strategy is None:
            raise ValidationFailedError(
                "Invalid authentication strategy", detail={"strategy": name}
            )

        with storage_guard(f"login:{name}"):
            if isinstance(strategy, BearerTokenStrategy):
                if not request.username or not request.password:
                    raise ValidationFailedError("Username and password are required")
                user = self._verify_primary_password(request.username, request.password)
                tokens = await strategy.issue(user)
                identity = Identity.from_user(user, auth_method=strategy.name)
                logger.info("login_succeeded", user_id=user.id, strategy=strategy.name)
                return AuthResult(self._with_capabilities(identity), strategy.name, tokens)

            if name == STRATEGY_API_KEY:
                if not request.api_key:
                    raise ValidationFailedError("API key is required")
                credential = Credential(
                    CredentialKind.API_KEY,
                    api_key=request.api_key,
                    client_ip=request.client_ip,
                )
            else:
                if not request.username or not request.password:
                    raise ValidationFailedError("Username and password are required")
                credential = Credential(
                    CredentialKind.BASIC,
                    username=request.username,
                    password=request.password,
                    client_ip=request.client_ip,
                )
            if not strategy.supports(credential):
                raise ValidationFailedError(
                    "Invalid authentication strategy", detail={"strategy": name}
                )
            identity = await strategy.authenticate(credential)
        logger.info("login_succeeded", user_id=identity.id, strategy=strategy.name)
        return AuthResult(self._with_capabilities(identity), strategy.name)

    def _bearer(self) -> BearerTokenStrategy:
        strategy = self.get_strategy(STRATEGY_JWT)
        if not isinstance(strategy, BearerTokenStrategy):
            raise AuthInvalidError("Token refresh not supported")
        return strategy

    async def refresh(self, refresh_token: str) -> TokenPair:
        if not refresh_token:
            raise ValidationFailedError("refresh_token is required")
        with storage_guard("refresh"):
            return await self._bearer().refresh(refresh_token)

    async def logout(self, identity: Identity, strategy_name: Optional[str] = None) -> int:
        name = strategy_name or identity.auth_method or STRATEGY_JWT
        strategy = self.get_strategy(name)
        if strategy is None:
            raise ValidationFailedError(
                "Invalid authentication strategy", detail={"strategy": name}
            )
        with storage_guard(f"logout:{name}"):
            revoked = await strategy.logout(identity)
        logger.info("logout", user_id=identity.id, strategy=name, revoked_count=revoked)
        return revoked

    async def validate_token(self, token: str) -> Identity:
        return await self.authenticate_credential(
            Credential(CredentialKind.BEARER, token=token)
        )

    @staticmethod
    def auth_response(result: AuthResult) -> dict:
        identity = result.identity
        body = {
            "user": {
                **identity.public_dict(),
                "capabilities": sorted(identity.capabilities),
            },
            "strategy": result.strategy,
        }
        if result.tokens is not None:
            body["tokens"] = result.tokens.to_dict()
        return body
