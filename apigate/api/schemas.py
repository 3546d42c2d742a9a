from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, List, Optional
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field, field_validator

from apigate.logging import get_correlation_id

MAX_SCOPES = 32

_VALID_ERROR_CODES = frozenset({
    "validation_failed",
    "auth_missing",
    "auth_invalid",
    "auth_expired",
    "forbidden",
    "not_found",
    "conflict",
    "rate_limited",
    "server_error",
    "storage_unavailable",
})

_VALID_STRATEGIES = frozenset({"jwt", "api_key", "app_password"})


class ErrorBody(BaseModel):
    """Error envelope body with stable code values."""

    code: str = Field(..., description="Stable error code")
    message: str
    details: Optional[Any] = None

    @field_validator("code")
    @classmethod
    def _validate_error_code(cls, value: str) -> str:
        if value not in _VALID_ERROR_CODES:
            raise ValueError(
                f"Invalid error code '{value}'. Must be one of: {', '.join(sorted(_VALID_ERROR_CODES))}"
            )
        return value


class Envelope(BaseModel):
    status: str = Field(..., pattern="^(ok|error)$")
    data: Optional[Any] = None
    error: Optional[ErrorBody] = None
    request_id: str = Field(default_factory=lambda: get_correlation_id() or str(uuid4()))


class LoginRequest(BaseModel):
    model_config = ConfigDict(extra="ignore")

    username: Optional[str] = Field(default=None, max_length=255)
    password: Optional[str] = Field(default=None, max_length=4096)
    api_key: Optional[str] = Field(default=None, max_length=512)
    strategy: Optional[str] = Field(default=None, max_length=32)

    @field_validator("username")
    @classmethod
    def _strip_username(cls, value: Optional[str]) -> Optional[str]:
        if value is None:
            return None
        return value.strip() or None

    @field_validator("strategy")
    @classmethod
    def _normalize_strategy(cls, value: Optional[str]) -> Optional[str]:
        if value is None:
            return None
        normalized = value.strip().lower()
        if normalized not in _VALID_STRATEGIES:
            raise ValueError(
                f"strategy must be one of: {', '.join(sorted(_VALID_STRATEGIES))}"
            )
        return normalized


class TokenRefreshRequest(BaseModel):
    refresh_token: str = Field(..., min_length=1, max_length=4096)


class AuthUser(BaseModel):
    id: int
    username: str
    email: str
    roles: List[str]
    capabilities: List[str] = Field(default_factory=list)


class TokenPairResponse(BaseModel):
    access_token: str
    refresh_token: str
    token_type: str = "Bearer"
    expires_in: int


class LoginResponse(BaseModel):
    user: AuthUser
    strategy: str
    tokens: Optional[TokenPairResponse] = None


class VerifyResponse(BaseModel):
    authenticated: bool = True
    user: AuthUser


class MeResponse(BaseModel):
    id: int
    username: str
    email: str
    display_name: Optional[str] = None
    roles: List[str]
    capabilities: List[str]
    auth_method: Optional[str] = None
    meta: Dict[str, Any] = Field(default_factory=dict)


class APIKeyCreateRequest(BaseModel):
    name: str = Field(..., min_length=1, max_length=128)
    scopes: List[str] = Field(default_factory=list, max_length=MAX_SCOPES)
    expires_at: Optional[datetime] = None
    rate_limit: Optional[int] = Field(default=None, ge=1)
    rate_limit_window: Optional[int] = Field(default=None, ge=1)


class APIKeyCreateResponse(BaseModel):
    api_key: str
    name: str
    scopes: List[str]
    expires_at: Optional[datetime] = None
    rate_limit: int
    rate_limit_window: int
    created_at: datetime


class APIKeySummary(BaseModel):
    key_prefix: str
    name: str
    scopes: List[str]
    is_revoked: bool
    expires_at: Optional[datetime] = None
    last_used: Optional[datetime] = None
    last_ip: Optional[str] = None
    rate_limit: int
    rate_limit_window: int
    created_at: datetime


class APIKeyRevokeRequest(BaseModel):
    api_key: str = Field(..., min_length=1, max_length=512)


class AppPasswordCreateRequest(BaseModel):
    name: str = Field(..., min_length=1, max_length=128)


class AppPasswordCreateResponse(BaseModel):
    uuid: str
    name: str
    password: str
    created_at: datetime


class AppPasswordSummary(BaseModel):
    uuid: str
    name: str
    created_at: datetime
    last_used: Optional[datetime] = None
    last_ip: Optional[str] = None


class FieldPermissionsRequest(BaseModel):
    allowed: List[str] = Field(default_factory=lambda: ["*"])
    denied: List[str] = Field(default_factory=list)


class RateLimitRequest(BaseModel):
    limit: int = Field(..., ge=1)
    window: int = Field(..., ge=1)
