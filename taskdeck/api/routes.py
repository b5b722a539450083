from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Body, Depends, Header, Query, Request, Response

from taskdeck.api.schemas import (
    LoginRequest,
    LoginResponse,
    PasswordChangeRequest,
    RegisterRequest,
    RoleCreateRequest,
    RoleResponse,
    RoleUpdateRequest,
    TokenRefreshRequest,
    TokenResponse,
    UserResponse,
    UserStatusRequest,
    VerifyTokenResponse,
    ok,
)
from taskdeck.logging import get_logger
from taskdeck.service.errors import ValidationError
from taskdeck.service.permissions import Identity
from taskdeck.service.rate_limit import RequestRateLimiter
from taskdeck.service.runtime import get_runtime

logger = get_logger(__name__)

router = APIRouter(prefix="/api")


class RateLimitInfo:
    """Rate limit state for adding response headers."""

    __slots__ = ("limit", "remaining", "reset_seconds")

    def __init__(self, limit: int, remaining: int, reset_seconds: int):
        self.limit = limit
        self.remaining = remaining
        self.reset_seconds = reset_seconds

    def apply_headers(self, response: Response) -> None:
        response.headers["X-RateLimit-Limit"] = str(self.limit)
        response.headers["X-RateLimit-Remaining"] = str(max(0, self.remaining))
        response.headers["X-RateLimit-Reset"] = str(self.reset_seconds)


async def _enforce_rate_limit(
    limiter: RequestRateLimiter, subject, *, response: Optional[Response] = None
) -> RateLimitInfo:
    """Count one request for ``subject``; raises RateLimitedError past the limit."""
    remaining = await limiter.hit(subject)
    info = RateLimitInfo(limiter.limit, remaining, limiter.window_seconds)
    if response is not None:
        info.apply_headers(response)
    return info


def _client_ip(request: Request) -> str:
    return request.client.host if request.client else "unknown"


async def get_identity(authorization: Optional[str] = Header(None)) -> Identity:
    return await get_runtime().auth.authenticate(authorization)


async def get_rate_limited_identity(
    response: Response, identity: Identity = Depends(get_identity)
) -> Identity:
    await _enforce_rate_limit(
        get_runtime().api_limiter, identity.user_id, response=response
    )
    return identity


def require_permission(permission: str):
    """Dependency factory gating a route on one permission."""

    async def dependency(identity: Identity = Depends(get_identity)) -> Identity:
        get_runtime().permissions.require_permission(identity, permission)
        return identity

    return dependency


# auth
@router.post("/auth/register", status_code=201, tags=["auth"])
async def register(body: RegisterRequest, request: Request):
    runtime = get_runtime()
    await _enforce_rate_limit(runtime.register_limiter, _client_ip(request))
    user = await runtime.auth.register(
        email=body.email,
        password=body.password,
        first_name=body.first_name,
        last_name=body.last_name,
        role_id=body.role_id,
    )
    return ok({"user": UserResponse.from_user(user)}, "user registered successfully")


@router.post("/auth/login", tags=["auth"])
async def login(
    body: LoginRequest,
    request: Request,
    user_agent: Optional[str] = Header(None),
):
    runtime = get_runtime()
    ip_address = _client_ip(request)
    await _enforce_rate_limit(runtime.login_limiter, ip_address)
    result = await runtime.auth.login(
        body.email,
        body.password,
        device_info=body.device_info,
        ip_address=ip_address,
        user_agent=user_agent,
    )
    return ok(
        LoginResponse(
            user=UserResponse.from_user(result.user),
            access_token=result.tokens.access_token,
            refresh_token=result.tokens.refresh_token,
            refresh_jwt=result.refresh_jwt,
            expires_in=result.tokens.expires_in,
            token_type=result.tokens.token_type,
        ),
        "login successful",
    )


@router.post("/auth/refresh", tags=["auth"])
async def refresh_tokens(body: TokenRefreshRequest):
    tokens = await get_runtime().auth.refresh(body.refresh_token)
    return ok(
        TokenResponse(
            access_token=tokens.access_token,
            refresh_token=tokens.refresh_token,
            expires_in=tokens.expires_in,
            token_type=tokens.token_type,
        ),
        "token refreshed successfully",
    )


@router.post("/auth/logout", tags=["auth"])
async def logout(identity: Identity = Depends(get_identity)):
    await get_runtime().auth.logout(identity.session.id)
    return ok(message="logout successful")


@router.post("/auth/logout-all", tags=["auth"])
async def logout_all(identity: Identity = Depends(get_identity)):
    revoked = await get_runtime().auth.logout_all(identity.user_id)
    return ok({"revoked_sessions": revoked}, "logged out from all devices")


@router.get("/auth/me", tags=["auth"])
async def get_current_user(identity: Identity = Depends(get_rate_limited_identity)):
    return ok({"user": UserResponse.from_user(identity.user)})


@router.post("/auth/verify-token", tags=["auth"])
async def verify_token(identity: Identity = Depends(get_identity)):
    result = await get_runtime().auth.verify_token(identity)
    return ok(
        VerifyTokenResponse(
            valid=result["valid"],
            user=UserResponse.from_user(result["user"]),
            expires_in=result["expires_in"],
        )
    )


@router.post("/auth/password/change", tags=["auth"])
async def change_password(
    body: PasswordChangeRequest, identity: Identity = Depends(get_identity)
):
    revoked = await get_runtime().auth.change_password(
        identity.user_id,
        body.current_password,
        body.new_password,
        keep_session_id=identity.session.id,
    )
    return ok({"revoked_sessions": revoked}, "password changed successfully")


# roles
@router.get("/roles", tags=["roles"])
async def list_roles(
    include_inactive: bool = Query(False),
    identity: Identity = Depends(require_permission("roles.view")),
):
    roles = await get_runtime().roles.list_roles(include_inactive=include_inactive)
    return ok({"roles": [RoleResponse.from_role(role) for role in roles]})


@router.get("/roles/permissions", tags=["roles"])
async def list_permissions(identity: Identity = Depends(require_permission("roles.view"))):
    return ok({"permissions": get_runtime().roles.permission_catalogue()})


@router.get("/roles/{role_id}", tags=["roles"])
async def get_role(
    role_id: int, identity: Identity = Depends(require_permission("roles.view"))
):
    role = await get_runtime().roles.get_role(role_id)
    return ok({"role": RoleResponse.from_role(role)})


@router.get("/roles/{role_id}/users", tags=["roles"])
async def list_role_users(
    role_id: int, identity: Identity = Depends(require_permission("roles.view"))
):
    users = await get_runtime().roles.list_role_users(role_id)
    return ok({"users": [UserResponse.from_user(user) for user in users]})


@router.post("/roles", status_code=201, tags=["roles"])
async def create_role(
    body: RoleCreateRequest,
    identity: Identity = Depends(require_permission("roles.create")),
):
    role = await get_runtime().roles.create_role(
        body.name, body.display_name, body.description, body.permissions
    )
    return ok({"role": RoleResponse.from_role(role)}, "role created successfully")


@router.put("/roles/{role_id}", tags=["roles"])
async def update_role(
    role_id: int,
    body: RoleUpdateRequest,
    identity: Identity = Depends(require_permission("roles.edit")),
):
    role = await get_runtime().roles.update_role(
        role_id,
        display_name=body.display_name,
        description=body.description,
        permissions=body.permissions,
        is_active=body.is_active,
    )
    return ok({"role": RoleResponse.from_role(role)}, "role updated successfully")


@router.patch("/roles/{role_id}/toggle-status", tags=["roles"])
async def toggle_role_status(
    role_id: int, identity: Identity = Depends(require_permission("roles.edit"))
):
    role = await get_runtime().roles.toggle_role_status(role_id)
    state = "activated" if role.is_active else "deactivated"
    return ok({"role": RoleResponse.from_role(role)}, f"role {state} successfully")


@router.delete("/roles/{role_id}", tags=["roles"])
async def delete_role(
    role_id: int, identity: Identity = Depends(require_permission("roles.delete"))
):
    await get_runtime().roles.delete_role(role_id)
    return ok(message="role deleted successfully")


# users
@router.get("/users/{user_id}", tags=["users"])
async def get_user(
    user_id: int, identity: Identity = Depends(get_rate_limited_identity)
):
    runtime = get_runtime()
    # authorize before the lookup; foreign and missing ids both answer 403
    if not runtime.permissions.is_owner_or_admin(identity, user_id):
        runtime.permissions.require_permission(identity, "users.view")
    user = await runtime.auth.get_user(user_id)
    return ok({"user": UserResponse.from_user(user)})


@router.patch("/users/{user_id}/status", tags=["users"])
async def set_user_status(
    user_id: int,
    body: Optional[UserStatusRequest] = Body(None),
    identity: Identity = Depends(require_permission("users.edit")),
):
    if user_id == identity.user_id:
        raise ValidationError(
            "cannot change your own account status",
            errors=["user_id: cannot change your own account status"],
        )
    runtime = get_runtime()
    target = await runtime.auth.get_user(user_id)
    active = body.is_active if body and body.is_active is not None else not target.is_active
    user = await runtime.auth.set_user_active(user_id, active)
    state = "activated" if user.is_active else "deactivated"
    logger.info("user_status_updated", actor_id=identity.user_id, user_id=user_id, active=active)
    return ok({"user": UserResponse.from_user(user)}, f"user {state} successfully")
