from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, Query, Request, Response
from fastapi.responses import JSONResponse

from adminauth.api.error_handling import _error_response
from adminauth.api.schemas import (
    AdminCreateUserRequest,
    AuthResponse,
    Envelope,
    ForgotPasswordRequest,
    LoginRequest,
    PageMetadata,
    PermissionListResponse,
    PermissionRequest,
    PermissionResponse,
    RegenerateTokenRequest,
    ResetPasswordRequest,
    RolePermissionsRequest,
    RoleListResponse,
    RoleRequest,
    RoleResponse,
    SetupUserRequest,
    SignupRequest,
    TokenPair,
    TokenRefreshRequest,
    UpdatePasswordRequest,
    UpdateUserRoleRequest,
    UpdateUserStatusRequest,
    UserListResponse,
    UserResponse,
)
from adminauth.config import Settings
from adminauth.logging import get_logger
from adminauth.service.accounts import SessionTokens
from adminauth.service.errors import ServiceError
from adminauth.service.gate import ADMIN_ONLY, AuthContext, RolePolicy
from adminauth.service.runtime import get_runtime
from adminauth.storage.models import User

logger = get_logger(__name__)

router = APIRouter(prefix="/v1")


async def get_user(request: Request) -> AuthContext:
    runtime = get_runtime()
    return await runtime.gate.authenticate(request.headers, request.cookies)


def require_role(policy: RolePolicy):
    """Dependency factory gating a route on the caller's role."""

    async def _dependency(request: Request) -> AuthContext:
        runtime = get_runtime()
        return await runtime.gate.authenticate(request.headers, request.cookies, policy)

    return _dependency


get_admin_user = require_role(ADMIN_ONLY)


def _apply_session_cookies(response: Response, tokens: SessionTokens, settings: Settings) -> None:
    response.set_cookie(
        settings.access_cookie_name,
        tokens.access_token,
        httponly=True,
        secure=settings.cookie_secure,
        samesite=settings.cookie_samesite,
        max_age=tokens.expires_in,
        path="/",
    )
    response.set_cookie(
        settings.refresh_cookie_name,
        tokens.refresh_token,
        httponly=True,
        secure=settings.cookie_secure,
        samesite=settings.cookie_samesite,
        max_age=settings.refresh_token_ttl_seconds,
        path="/",
    )


def _clear_session_cookies(response: Response, settings: Settings) -> None:
    for name in (settings.access_cookie_name, settings.refresh_cookie_name):
        response.delete_cookie(
            name,
            path="/",
            secure=settings.cookie_secure,
            httponly=True,
            samesite=settings.cookie_samesite,
        )


def _session_envelope(
    user: User, tokens: SessionTokens, response: Response, settings: Settings
) -> Envelope:
    _apply_session_cookies(response, tokens, settings)
    return Envelope(
        status="ok",
        data=AuthResponse(
            user=UserResponse.from_user(user),
            tokens=TokenPair(
                accessToken=tokens.access_token,
                refreshToken=tokens.refresh_token,
                tokenType=tokens.token_type,
                expiresIn=tokens.expires_in,
            ),
        ),
    )


# authentication
@router.post("/auth/login", response_model=Envelope, tags=["auth"])
async def login(body: LoginRequest, response: Response):
    runtime = get_runtime()
    user, tokens = await runtime.accounts.login(body.email, body.password)
    return _session_envelope(user, tokens, response, runtime.settings)


@router.post("/auth/signup", response_model=Envelope, status_code=201, tags=["auth"])
async def signup(body: SignupRequest, response: Response):
    """Create an account with the default role and start a session.

    Raises:
        403: If signup is disabled in settings
        409: If the email or username is taken
    """
    runtime = get_runtime()
    user, tokens = await runtime.accounts.signup(
        body.username, body.email, body.password, body.password_confirm
    )
    return _session_envelope(user, tokens, response, runtime.settings)


@router.post("/auth/logout", response_model=Envelope, tags=["auth"])
async def logout(request: Request):
    # Cookies are cleared on every outcome, so errors are rendered here
    runtime = get_runtime()
    settings = runtime.settings
    try:
        ctx = await runtime.gate.authenticate(request.headers, request.cookies)
        await runtime.accounts.logout(ctx)
    except ServiceError as exc:
        response: JSONResponse = _error_response(
            exc.status_code, exc.message, exc.detail, code=exc.error_code
        )
    except Exception as exc:
        logger.exception("logout_failed", error_type=type(exc).__name__)
        response = _error_response(500, "Error during logout. Please try again.")
    else:
        response = JSONResponse(
            content=Envelope(status="ok", data={"status": "logged_out"}).model_dump()
        )
    _clear_session_cookies(response, settings)
    return response


@router.post("/auth/refresh", response_model=Envelope, tags=["auth"])
async def refresh(request: Request, response: Response, body: Optional[TokenRefreshRequest] = None):
    runtime = get_runtime()
    presented = (body.refresh_token if body else None) or request.cookies.get(
        runtime.settings.refresh_cookie_name
    )
    user, tokens = await runtime.accounts.refresh(presented)
    return _session_envelope(user, tokens, response, runtime.settings)


@router.post("/auth/forgot-password", response_model=Envelope, tags=["auth"])
async def forgot_password(body: ForgotPasswordRequest):
    runtime = get_runtime()
    await runtime.accounts.forgot_password(body.email)
    # Same answer whether or not the address exists
    return Envelope(status="ok", data={"status": "sent"})


@router.patch("/auth/reset-password/{token}", response_model=Envelope, tags=["auth"])
async def reset_password(token: str, body: ResetPasswordRequest, response: Response):
    runtime = get_runtime()
    user, tokens = await runtime.accounts.reset_password(
        token, body.password, body.password_confirm
    )
    return _session_envelope(user, tokens, response, runtime.settings)


@router.patch("/auth/update-password", response_model=Envelope, tags=["auth"])
async def update_password(
    body: UpdatePasswordRequest,
    response: Response,
    principal: AuthContext = Depends(get_user),
):
    runtime = get_runtime()
    user, tokens = await runtime.accounts.update_password(
        principal, body.password_current, body.password
    )
    return _session_envelope(user, tokens, response, runtime.settings)


@router.post("/auth/create", response_model=Envelope, status_code=201, tags=["auth"])
async def create_user(
    body: AdminCreateUserRequest, principal: AuthContext = Depends(get_admin_user)
):
    runtime = get_runtime()
    user = await runtime.accounts.create_user(body.username, body.email)
    logger.info("admin_created_user", actor_id=principal.user_id, user_id=user.id)
    return Envelope(
        status="ok",
        data={
            "message": "Account created successfully. Setup instructions sent to user's email.",
            "user": UserResponse.from_user(user),
        },
    )


@router.get("/auth/setup-user/{token}", response_model=Envelope, tags=["auth"])
async def get_setup_user(token: str):
    runtime = get_runtime()
    user = runtime.accounts.get_setup_user(token)
    return Envelope(status="ok", data={"user": UserResponse.from_user(user)})


@router.patch("/auth/setup-user/{token}", response_model=Envelope, tags=["auth"])
async def complete_setup(token: str, body: SetupUserRequest, response: Response):
    runtime = get_runtime()
    user, tokens = await runtime.accounts.complete_setup(
        token, body.email, body.password, body.password_confirm
    )
    return _session_envelope(user, tokens, response, runtime.settings)


@router.patch("/auth/regenerate-token", response_model=Envelope, tags=["auth"])
async def regenerate_setup_token(
    body: RegenerateTokenRequest, principal: AuthContext = Depends(get_user)
):
    runtime = get_runtime()
    user = await runtime.accounts.regenerate_setup_token(body.email)
    logger.info("setup_token_regenerated", actor_id=principal.user_id, user_id=user.id)
    return Envelope(
        status="ok",
        data={
            "message": "Token regenerated successfully. Setup instructions sent to user's email.",
            "user": UserResponse.from_user(user),
        },
    )


@router.get("/me", response_model=Envelope, tags=["auth"])
async def get_current_user(principal: AuthContext = Depends(get_user)):
    return Envelope(status="ok", data=UserResponse.from_user(principal.user))


# user administration
@router.get("/users", response_model=Envelope, tags=["users"])
async def list_users(
    page: Optional[int] = Query(None, ge=1),
    limit: Optional[int] = Query(None, ge=1, le=100),
    role: Optional[str] = Query(None, max_length=64),
    is_active: Optional[bool] = Query(None),
    principal: AuthContext = Depends(get_admin_user),
):
    runtime = get_runtime()
    result = runtime.rbac.list_users(page=page, limit=limit, role=role, is_active=is_active)
    return Envelope(
        status="ok",
        data=UserListResponse(
            items=[UserResponse.from_user(u) for u in result.items],
            metadata=PageMetadata(**result.metadata()),
        ),
    )


@router.get("/users/{user_id}", response_model=Envelope, tags=["users"])
async def get_user_by_id(user_id: str, principal: AuthContext = Depends(get_admin_user)):
    runtime = get_runtime()
    return Envelope(status="ok", data=UserResponse.from_user(runtime.rbac.get_user(user_id)))


@router.delete("/users/{user_id}", response_model=Envelope, tags=["users"])
async def delete_user(user_id: str, principal: AuthContext = Depends(get_admin_user)):
    runtime = get_runtime()
    runtime.rbac.delete_user(user_id, actor_id=principal.user_id)
    return Envelope(status="ok", data={"id": user_id, "deleted": True})


@router.patch("/users/{user_id}/status", response_model=Envelope, tags=["users"])
async def update_user_status(
    user_id: str,
    body: UpdateUserStatusRequest,
    principal: AuthContext = Depends(get_admin_user),
):
    runtime = get_runtime()
    user = runtime.rbac.set_user_status(user_id, body.is_active)
    return Envelope(status="ok", data=UserResponse.from_user(user))


@router.patch("/users/{user_id}/role", response_model=Envelope, tags=["users"])
async def update_user_role(
    user_id: str,
    body: UpdateUserRoleRequest,
    principal: AuthContext = Depends(get_admin_user),
):
    runtime = get_runtime()
    user = runtime.rbac.set_user_role(user_id, body.role)
    return Envelope(status="ok", data=UserResponse.from_user(user))


# roles
@router.get("/roles", response_model=Envelope, tags=["roles"])
async def list_roles(
    page: Optional[int] = Query(None, ge=1),
    limit: Optional[int] = Query(None, ge=1, le=100),
    principal: AuthContext = Depends(get_admin_user),
):
    runtime = get_runtime()
    result = runtime.rbac.list_roles(page=page, limit=limit)
    return Envelope(
        status="ok",
        data=RoleListResponse(
            items=[RoleResponse.from_role(r) for r in result.items],
            metadata=PageMetadata(**result.metadata()),
        ),
    )


@router.post("/roles", response_model=Envelope, status_code=201, tags=["roles"])
async def create_role(body: RoleRequest, principal: AuthContext = Depends(get_admin_user)):
    runtime = get_runtime()
    role = runtime.rbac.create_role(body.name, body.description)
    return Envelope(status="ok", data=RoleResponse.from_role(role))


@router.get("/roles/{role_id}", response_model=Envelope, tags=["roles"])
async def get_role(role_id: str, principal: AuthContext = Depends(get_admin_user)):
    runtime = get_runtime()
    role = runtime.rbac.get_role(role_id)
    return Envelope(
        status="ok", data=RoleResponse.from_role(role, runtime.rbac.role_members(role))
    )


@router.patch("/roles/{role_id}", response_model=Envelope, tags=["roles"])
async def update_role(
    role_id: str, body: RoleRequest, principal: AuthContext = Depends(get_admin_user)
):
    runtime = get_runtime()
    role = runtime.rbac.update_role(role_id, name=body.name, description=body.description)
    return Envelope(status="ok", data=RoleResponse.from_role(role))


@router.delete("/roles/{role_id}", response_model=Envelope, tags=["roles"])
async def delete_role(role_id: str, principal: AuthContext = Depends(get_admin_user)):
    runtime = get_runtime()
    runtime.rbac.delete_role(role_id)
    return Envelope(status="ok", data={"id": role_id, "deleted": True})


@router.put("/roles/{role_id}/permissions", response_model=Envelope, tags=["roles"])
async def set_role_permissions(
    role_id: str,
    body: RolePermissionsRequest,
    principal: AuthContext = Depends(get_admin_user),
):
    runtime = get_runtime()
    role = runtime.rbac.set_role_permissions(role_id, body.permission_ids)
    return Envelope(status="ok", data=RoleResponse.from_role(role))


# permissions
@router.get("/permissions", response_model=Envelope, tags=["permissions"])
async def list_permissions(
    page: Optional[int] = Query(None, ge=1),
    limit: Optional[int] = Query(None, ge=1, le=100),
    principal: AuthContext = Depends(get_admin_user),
):
    runtime = get_runtime()
    result = runtime.rbac.list_permissions(page=page, limit=limit)
    return Envelope(
        status="ok",
        data=PermissionListResponse(
            items=[PermissionResponse.from_permission(p) for p in result.items],
            metadata=PageMetadata(**result.metadata()),
        ),
    )


@router.post("/permissions", response_model=Envelope, status_code=201, tags=["permissions"])
async def create_permission(
    body: PermissionRequest, principal: AuthContext = Depends(get_admin_user)
):
    runtime = get_runtime()
    permission = runtime.rbac.create_permission(body.name)
    return Envelope(status="ok", data=PermissionResponse.from_permission(permission))


@router.get("/permissions/{permission_id}", response_model=Envelope, tags=["permissions"])
async def get_permission(permission_id: str, principal: AuthContext = Depends(get_admin_user)):
    runtime = get_runtime()
    permission = runtime.rbac.get_permission(permission_id)
    return Envelope(status="ok", data=PermissionResponse.from_permission(permission))


@router.patch("/permissions/{permission_id}", response_model=Envelope, tags=["permissions"])
async def update_permission(
    permission_id: str,
    body: PermissionRequest,
    principal: AuthContext = Depends(get_admin_user),
):
    runtime = get_runtime()
    permission = runtime.rbac.update_permission(permission_id, body.name)
    return Envelope(status="ok", data=PermissionResponse.from_permission(permission))


@router.delete("/permissions/{permission_id}", response_model=Envelope, tags=["permissions"])
async def delete_permission(
    permission_id: str, principal: AuthContext = Depends(get_admin_user)
):
    runtime = get_runtime()
    runtime.rbac.delete_permission(permission_id)
    return Envelope(status="ok", data={"id": permission_id, "deleted": True})
