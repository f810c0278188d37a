from __future__ import annotations

import re
from datetime import datetime
from typing import Any, List, Optional
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field, field_validator

from adminauth.storage.models import Permission, Role, User

_VALID_ERROR_CODES = frozenset({
    "unauthorized",
    "forbidden",
    "not_found",
    "validation_error",
    "conflict",
    "server_error",
})


class ErrorBody(BaseModel):
    """Error envelope body with stable code values."""

    code: str
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
    request_id: str = Field(default_factory=lambda: str(uuid4()))


_EMAIL_PATTERN = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")
_USERNAME_PATTERN = re.compile(r"^[a-zA-Z0-9_.-]+$")


def _validate_email(value: Optional[str]) -> Optional[str]:
    if value is None:
        return None
    normalized = value.strip().lower()
    if not normalized:
        return None
    if len(normalized) > 254 or not _EMAIL_PATTERN.match(normalized):
        raise ValueError("invalid email address")
    return normalized


def _validate_username(value: Optional[str]) -> Optional[str]:
    if value is None:
        return None
    value = value.strip()
    if not value:
        return None
    if len(value) > 64:
        raise ValueError("username must be at most 64 characters")
    if not _USERNAME_PATTERN.match(value):
        raise ValueError(
            "username must contain only letters, digits, dots, underscores and hyphens"
        )
    return value


class _CamelRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)


class LoginRequest(BaseModel):
    email: Optional[str] = None
    password: Optional[str] = Field(default=None, max_length=128)


class SignupRequest(_CamelRequest):
    username: Optional[str] = None
    email: Optional[str] = None
    password: Optional[str] = Field(default=None, max_length=128)
    password_confirm: Optional[str] = Field(default=None, alias="passwordConfirm", max_length=128)

    @field_validator("email")
    @classmethod
    def _check_email(cls, value: Optional[str]) -> Optional[str]:
        return _validate_email(value)

    @field_validator("username")
    @classmethod
    def _check_username(cls, value: Optional[str]) -> Optional[str]:
        return _validate_username(value)


class TokenRefreshRequest(BaseModel):
    refresh_token: Optional[str] = Field(default=None, max_length=2048)


class ForgotPasswordRequest(BaseModel):
    email: Optional[str] = None


class ResetPasswordRequest(_CamelRequest):
    password: Optional[str] = Field(default=None, max_length=128)
    password_confirm: Optional[str] = Field(default=None, alias="passwordConfirm", max_length=128)


class UpdatePasswordRequest(_CamelRequest):
    password_current: Optional[str] = Field(default=None, alias="passwordCurrent", max_length=128)
    password: Optional[str] = Field(default=None, max_length=128)


class AdminCreateUserRequest(BaseModel):
    username: Optional[str] = None
    email: Optional[str] = None

    @field_validator("email")
    @classmethod
    def _check_email(cls, value: Optional[str]) -> Optional[str]:
        return _validate_email(value)

    @field_validator("username")
    @classmethod
    def _check_username(cls, value: Optional[str]) -> Optional[str]:
        return _validate_username(value)


class SetupUserRequest(_CamelRequest):
    email: Optional[str] = None
    password: Optional[str] = Field(default=None, max_length=128)
    password_confirm: Optional[str] = Field(default=None, alias="passwordConfirm", max_length=128)


class RegenerateTokenRequest(BaseModel):
    email: Optional[str] = None


class UpdateUserStatusRequest(_CamelRequest):
    is_active: bool = Field(..., alias="isActive")


class UpdateUserRoleRequest(BaseModel):
    role: str = Field(..., min_length=1, max_length=64)


class RoleRequest(BaseModel):
    name: Optional[str] = Field(default=None, max_length=64)
    description: Optional[str] = Field(default=None, max_length=512)


class RolePermissionsRequest(_CamelRequest):
    permission_ids: List[str] = Field(default_factory=list, alias="permissionIds", max_length=1000)


class PermissionRequest(BaseModel):
    name: Optional[str] = Field(default=None, max_length=128)


class UserResponse(BaseModel):
    id: str
    username: str
    email: str
    role: str
    is_active: bool = True
    created_at: datetime
    last_login_at: Optional[datetime] = None

    @classmethod
    def from_user(cls, user: User) -> "UserResponse":
        return cls(
            id=user.id,
            username=user.username,
            email=user.email,
            role=user.role,
            is_active=user.is_active,
            created_at=user.created_at,
            last_login_at=user.last_login_at,
        )


class TokenPair(BaseModel):
    accessToken: str
    refreshToken: str
    tokenType: str = "Bearer"
    expiresIn: int


class AuthResponse(BaseModel):
    user: UserResponse
    tokens: TokenPair


class PageMetadata(BaseModel):
    page: int
    limit: int
    total: int
    totalPages: int
    hasNextPage: bool
    hasPrevPage: bool


class UserListResponse(BaseModel):
    items: List[UserResponse]
    metadata: PageMetadata


class PermissionResponse(BaseModel):
    id: str
    name: str
    created_at: datetime

    @classmethod
    def from_permission(cls, permission: Permission) -> "PermissionResponse":
        return cls(id=permission.id, name=permission.name, created_at=permission.created_at)


class PermissionListResponse(BaseModel):
    items: List[PermissionResponse]
    metadata: PageMetadata


class RoleResponse(BaseModel):
    id: str
    name: str
    description: Optional[str] = None
    permissions: List[str] = Field(default_factory=list)
    created_at: datetime
    members: Optional[List[UserResponse]] = None

    @classmethod
    def from_role(cls, role: Role, members: Optional[List[User]] = None) -> "RoleResponse":
        return cls(
            id=role.id,
            name=role.name,
            description=role.description,
            permissions=list(role.permissions),
            created_at=role.created_at,
            members=[UserResponse.from_user(u) for u in members] if members is not None else None,
        )


class RoleListResponse(BaseModel):
    items: List[RoleResponse]
    metadata: PageMetadata
