from __future__ import annotations

from typing import Any, Dict, Optional

from fastapi import APIRouter, Body, Depends, Header, Path, Request, Response

from apigate.api.schemas import (
    APIKeyCreateRequest,
    APIKeyCreateResponse,
    APIKeyRevokeRequest,
    APIKeySummary,
    AppPasswordCreateRequest,
    AppPasswordCreateResponse,
    AppPasswordSummary,
    AuthUser,
    Envelope,
    FieldPermissionsRequest,
    LoginRequest,
    LoginResponse,
    MeResponse,
    RateLimitRequest,
    TokenPairResponse,
    TokenRefreshRequest,
    VerifyResponse,
)
from apigate.logging import fingerprint, get_logger
from apigate.service.auth_manager import AuthManager, LoginRequest as LoginCredentials
from apigate.service.errors import NotFoundError
from apigate.service.identity import Identity
from apigate.service.rate_limit import (
    auth_method_key,
    client_ip,
    identity_key,
    ip_key,
    rate_limit_headers,
)
from apigate.service.runtime import Runtime, get_runtime

logger = get_logger(__name__)

router = APIRouter(prefix="/v1")


def _request_ip(request: Request) -> str:
    return client_ip(
        request.headers,
        request.client.host if request.client else None,
        get_runtime().settings.trusted_proxies or (),
    )


def _auth_user(identity: Identity) -> AuthUser:
    return AuthUser(
        id=identity.id,
        username=identity.username,
        email=identity.email,
        roles=sorted(identity.roles),
        capabilities=sorted(identity.capabilities),
    )


async def _enforce_rate_limit(
    runtime: Runtime,
    key: str,
    limit: int,
    window_seconds: int,
    *,
    response: Optional[Response] = None,
) -> None:
    """Count the request and, when given a response, attach X-RateLimit-* headers."""

    await runtime.rate_limiter.enforce(key, limit, window_seconds)
    if response is not None:
        status = await runtime.rate_limiter.get_remaining(key, limit, window_seconds)
        for name, value in rate_limit_headers(limit, status).items():
            response.headers[name] = value


async def get_identity(request: Request, response: Response) -> Identity:
    runtime = get_runtime()
    ip = _request_ip(request)
    await _enforce_rate_limit(
        runtime, ip_key(ip), runtime.settings.ip_rate_limit_per_minute, 60
    )
    identity = await runtime.auth.authenticate(request.headers, client_ip=ip)
    limit, window = runtime.permissions.get_rate_limit(identity)
    await _enforce_rate_limit(
        runtime, identity_key(identity.id), limit, window, response=response
    )
    return identity


async def get_settings_admin(identity: Identity = Depends(get_identity)) -> Identity:
    get_runtime().permissions.authorize(identity, "settings", "update")
    return identity


@router.post("/auth/login", response_model=Envelope, tags=["auth"])
async def login(body: LoginRequest, request: Request):
    """Exchange credentials for an identity and, for the jwt strategy, a token pair.

    Raises:
        400: If credentials are missing or the strategy is unknown
        401: If credentials are invalid
        429: If this client exceeded the login rate limit
    """
    runtime = get_runtime()
    ip = _request_ip(request)
    await _enforce_rate_limit(
        runtime,
        auth_method_key(f"login_{fingerprint(ip)}"),
        runtime.settings.login_rate_limit_per_minute,
        60,
    )
    result = await runtime.auth.login(
        body.strategy,
        LoginCredentials(
            username=body.username,
            password=body.password,
            api_key=body.api_key,
            client_ip=ip,
        ),
    )
    return Envelope(
        status="ok",
        data=LoginResponse.model_validate(AuthManager.auth_response(result)),
    )


@router.post("/auth/refresh", response_model=Envelope, tags=["auth"])
async def refresh_tokens(body: TokenRefreshRequest):
    runtime = get_runtime()
    pair = await runtime.auth.refresh(body.refresh_token)
    return Envelope(status="ok", data=TokenPairResponse(**pair.to_dict()))


@router.post("/auth/logout", response_model=Envelope, tags=["auth"])
async def logout(
    identity: Identity = Depends(get_identity),
    x_auth_strategy: Optional[str] = Header(None, alias="X-Auth-Strategy"),
):
    runtime = get_runtime()
    strategy = x_auth_strategy.strip().lower() if x_auth_strategy else None
    revoked = await runtime.auth.logout(identity, strategy)
    return Envelope(
        status="ok",
        data={"message": "Successfully logged out", "revoked": revoked},
    )


@router.get("/auth/verify", response_model=Envelope, tags=["auth"])
async def verify(identity: Identity = Depends(get_identity)):
    return Envelope(status="ok", data=VerifyResponse(user=_auth_user(identity)))


@router.get("/auth/me", response_model=Envelope, tags=["auth"])
async def me(identity: Identity = Depends(get_identity)):
    runtime = get_runtime()
    return Envelope(
        status="ok",
        data=MeResponse(
            id=identity.id,
            username=identity.username,
            email=identity.email,
            display_name=identity.display_name,
            roles=sorted(identity.roles),
            capabilities=sorted(identity.capabilities),
            auth_method=identity.auth_method,
            meta=runtime.permissions.filter_fields(identity.meta, identity),
        ),
    )


@router.post("/auth/api-keys", response_model=Envelope, status_code=201, tags=["auth"])
async def create_api_key(
    body: APIKeyCreateRequest, identity: Identity = Depends(get_identity)
):
    runtime = get_runtime()
    record = runtime.api_keys.generate(
        identity.id,
        body.name,
        body.scopes,
        body.expires_at,
        rate_limit=body.rate_limit,
        rate_limit_window=body.rate_limit_window,
    )
    return Envelope(
        status="ok",
        data=APIKeyCreateResponse(
            api_key=record.api_key,
            name=record.name,
            scopes=record.scopes,
            expires_at=record.expires_at,
            rate_limit=record.rate_limit,
            rate_limit_window=record.rate_limit_window,
            created_at=record.created_at,
        ),
    )


@router.get("/auth/api-keys", response_model=Envelope, tags=["auth"])
async def list_api_keys(identity: Identity = Depends(get_identity)):
    runtime = get_runtime()
    keys = [APIKeySummary(**item) for item in runtime.api_keys.list_keys(identity.id)]
    return Envelope(status="ok", data={"items": keys})


@router.post("/auth/api-keys/revoke", response_model=Envelope, tags=["auth"])
async def revoke_api_key(
    body: APIKeyRevokeRequest, identity: Identity = Depends(get_identity)
):
    runtime = get_runtime()
    is_admin = runtime.permissions.has_permission(identity, "settings", "update")
    # Unknown and foreign keys look the same to non-admins
    if not is_admin and not runtime.api_keys.owns_key(identity.id, body.api_key):
        raise NotFoundError("api key not found")
    revoked = await runtime.api_keys.revoke(body.api_key)
    if not revoked:
        raise NotFoundError("api key not found")
    return Envelope(status="ok", data={"revoked": True})


@router.post("/auth/app-passwords", response_model=Envelope, status_code=201, tags=["auth"])
async def create_app_password(
    body: AppPasswordCreateRequest, identity: Identity = Depends(get_identity)
):
    runtime = get_runtime()
    record, plaintext = runtime.app_passwords.generate(identity.id, body.name)
    return Envelope(
        status="ok",
        data=AppPasswordCreateResponse(
            uuid=record.uuid,
            name=record.name,
            password=plaintext,
            created_at=record.created_at,
        ),
    )


@router.get("/auth/app-passwords", response_model=Envelope, tags=["auth"])
async def list_app_passwords(identity: Identity = Depends(get_identity)):
    runtime = get_runtime()
    items = [
        AppPasswordSummary(**item)
        for item in runtime.app_passwords.list_passwords(identity.id)
    ]
    return Envelope(status="ok", data={"items": items})


@router.delete("/auth/app-passwords/{password_uuid}", response_model=Envelope, tags=["auth"])
async def delete_app_password(
    password_uuid: str = Path(..., max_length=64),
    identity: Identity = Depends(get_identity),
):
    runtime = get_runtime()
    if not runtime.app_passwords.revoke(identity.id, password_uuid):
        raise NotFoundError("application password not found")
    return Envelope(status="ok", data={"revoked": True})


@router.get("/admin/permissions", response_model=Envelope, tags=["admin"])
async def get_permissions(identity: Identity = Depends(get_settings_admin)):
    return Envelope(status="ok", data=get_runtime().permissions.policy)


@router.put("/admin/permissions/roles/{role}", response_model=Envelope, tags=["admin"])
async def put_role_permissions(
    role: str = Path(..., min_length=1, max_length=64),
    permissions: Dict[str, Dict[str, Any]] = Body(...),
    identity: Identity = Depends(get_settings_admin),
):
    runtime = get_runtime()
    runtime.permissions.set_role_permissions(role, permissions)
    logger.info("role_permissions_updated", role=role, user_id=identity.id)
    return Envelope(status="ok", data=runtime.permissions.get_role_permissions(role))


@router.put("/admin/permissions/fields", response_model=Envelope, tags=["admin"])
async def put_field_permissions(
    body: FieldPermissionsRequest, identity: Identity = Depends(get_settings_admin)
):
    runtime = get_runtime()
    runtime.permissions.set_field_permissions(body.allowed, body.denied)
    return Envelope(status="ok", data=runtime.permissions.get_field_permissions())


@router.put("/admin/permissions/rate-limits/{role}", response_model=Envelope, tags=["admin"])
async def put_rate_limit(
    body: RateLimitRequest,
    role: str = Path(..., min_length=1, max_length=64),
    identity: Identity = Depends(get_settings_admin),
):
    runtime = get_runtime()
    runtime.permissions.set_rate_limit(role, body.limit, body.window)
    return Envelope(
        status="ok", data={"role": role, "limit": body.limit, "window": body.window}
    )


@router.post("/admin/permissions/reset", response_model=Envelope, tags=["admin"])
async def reset_permissions(identity: Identity = Depends(get_settings_admin)):
    runtime = get_runtime()
    runtime.permissions.reset_to_defaults()
    logger.info("permissions_reset_by_admin", user_id=identity.id)
    return Envelope(status="ok", data=runtime.permissions.policy)


@router.get("/admin/permissions/export", tags=["admin"])
async def export_permissions(identity: Identity = Depends(get_settings_admin)):
    return Response(
        content=get_runtime().permissions.export(), media_type="application/json"
    )


@router.post("/admin/permissions/import", response_model=Envelope, tags=["admin"])
async def import_permissions(
    request: Request, identity: Identity = Depends(get_settings_admin)
):
    runtime = get_runtime()
    policy = runtime.permissions.import_policy(await request.body())
    logger.info("permissions_imported", user_id=identity.id)
    return Envelope(status="ok", data=policy)
