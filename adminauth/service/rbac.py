from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Any, Generic, Iterable, List, Optional, TypeVar

from adminauth.logging import get_logger
from adminauth.service.errors import ConflictError, NotFoundError, ValidationError
from adminauth.storage.errors import ConstraintViolation
from adminauth.storage.models import Permission, Role, User

DEFAULT_PAGE_SIZE = 10
MAX_PAGE_SIZE = 100

T = TypeVar("T")

logger = get_logger(__name__)


@dataclass
class Page(Generic[T]):
    items: List[T]
    page: int
    limit: int
    total: int

    @property
    def total_pages(self) -> int:
        return math.ceil(self.total / self.limit) if self.limit else 0

    def metadata(self) -> dict:
        return {
            "page": self.page,
            "limit": self.limit,
            "total": self.total,
            "totalPages": self.total_pages,
            "hasNextPage": self.page < self.total_pages,
            "hasPrevPage": self.page > 1,
        }


def _window(page: Optional[int], limit: Optional[int]) -> tuple[int, int, int]:
    page = page if page and page > 0 else 1
    limit = min(limit if limit and limit > 0 else DEFAULT_PAGE_SIZE, MAX_PAGE_SIZE)
    return page, limit, (page - 1) * limit


def _required_name(name: Optional[str], label: str) -> str:
    if not name or not name.strip():
        raise ValidationError(f"Please provide a {label} name")
    return name.strip()


class RbacService:
    """Administration of principals, roles and permissions."""

    def __init__(self, store: Any) -> None:
        self.store = store

    # users
    def list_users(
        self,
        *,
        page: Optional[int] = None,
        limit: Optional[int] = None,
        role: Optional[str] = None,
        is_active: Optional[bool] = None,
    ) -> Page[User]:
        page, limit, offset = _window(page, limit)
        users = self.store.list_users(role=role, is_active=is_active, limit=limit, offset=offset)
        total = self.store.count_users(role=role, is_active=is_active)
        return Page(items=users, page=page, limit=limit, total=total)

    def get_user(self, user_id: str) -> User:
        user = self.store.get_user(user_id)
        if not user:
            raise NotFoundError("No user found with that ID")
        return user

    def delete_user(self, user_id: str, *, actor_id: Optional[str] = None) -> None:
        if actor_id and actor_id == user_id:
            raise ValidationError("You cannot delete your own account")
        if not self.store.delete_user(user_id):
            raise NotFoundError("No user found with that ID")
        logger.info("user_deleted", user_id=user_id, actor_id=actor_id)

    def set_user_status(self, user_id: str, is_active: bool) -> User:
        user = self.store.update_user(user_id, is_active=is_active)
        if not user:
            raise NotFoundError("No user found with that ID")
        if not is_active:
            self.store.clear_refresh_token(user_id)
        logger.info("user_status_changed", user_id=user_id, is_active=is_active)
        return user

    def set_user_role(self, user_id: str, role: Optional[str]) -> User:
        role_name = _required_name(role, "role")
        if not self.store.get_role_by_name(role_name):
            raise ValidationError("role does not exist", detail={"role": role_name})
        user = self.store.update_user(user_id, role=role_name)
        if not user:
            raise NotFoundError("No user found with that ID")
        logger.info("user_role_changed", user_id=user_id, role=role_name)
        return user

    # roles
    def list_roles(self, *, page: Optional[int] = None, limit: Optional[int] = None) -> Page[Role]:
        page, limit, offset = _window(page, limit)
        roles = self.store.list_roles(limit=limit, offset=offset)
        return Page(items=roles, page=page, limit=limit, total=self.store.count_roles())

    def get_role(self, role_id: str) -> Role:
        role = self.store.get_role(role_id)
        if not role:
            raise NotFoundError("No role found with that ID")
        return role

    def role_members(self, role: Role) -> List[User]:
        return self.store.list_role_members(role.name)

    def create_role(self, name: Optional[str], description: Optional[str] = None) -> Role:
        try:
            return self.store.create_role(_required_name(name, "role"), description)
        except ConstraintViolation as exc:
            raise ConflictError(exc.message, detail=exc.detail)

    def update_role(
        self, role_id: str, *, name: Optional[str] = None, description: Optional[str] = None
    ) -> Role:
        if name is not None:
            name = _required_name(name, "role")
        try:
            role = self.store.update_role(role_id, name=name, description=description)
        except ConstraintViolation as exc:
            raise ConflictError(exc.message, detail=exc.detail)
        if not role:
            raise NotFoundError("No role found with that ID")
        return role

    def delete_role(self, role_id: str) -> None:
        try:
            deleted = self.store.delete_role(role_id)
        except ConstraintViolation as exc:
            raise ConflictError(exc.message, detail=exc.detail)
        if not deleted:
            raise NotFoundError("No role found with that ID")

    def set_role_permissions(self, role_id: str, permission_ids: Iterable[str]) -> Role:
        try:
            role = self.store.set_role_permissions(role_id, permission_ids)
        except ConstraintViolation as exc:
            raise ValidationError(exc.message, detail=exc.detail)
        if not role:
            raise NotFoundError("No role found with that ID")
        return role

    # permissions
    def list_permissions(
        self, *, page: Optional[int] = None, limit: Optional[int] = None
    ) -> Page[Permission]:
        page, limit, offset = _window(page, limit)
        permissions = self.store.list_permissions(limit=limit, offset=offset)
        return Page(items=permissions, page=page, limit=limit, total=self.store.count_permissions())

    def get_permission(self, permission_id: str) -> Permission:
        permission = self.store.get_permission(permission_id)
        if not permission:
            raise NotFoundError("No permission found with that ID")
        return permission

    def create_permission(self, name: Optional[str]) -> Permission:
        try:
            return self.store.create_permission(_required_name(name, "permission"))
        except ConstraintViolation as exc:
            raise ConflictError(exc.message, detail=exc.detail)

    def update_permission(self, permission_id: str, name: Optional[str]) -> Permission:
        try:
            permission = self.store.update_permission(
                permission_id, _required_name(name, "permission")
            )
        except ConstraintViolation as exc:
            raise ConflictError(exc.message, detail=exc.detail)
        if not permission:
            raise NotFoundError("No permission found with that ID")
        return permission

    def delete_permission(self, permission_id: str) -> None:
        try:
            deleted = self.store.delete_permission(permission_id)
        except ConstraintViolation as exc:
            raise ConflictError(exc.message, detail=exc.detail)
        if not deleted:
            raise NotFoundError("No permission found with that ID")
