from __future__ import annotations

import json
import threading
import uuid
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional

from adminauth.logging import get_logger
from adminauth.storage.errors import ConstraintViolation, ReferenceViolation
from adminauth.storage.models import (
    USER_MUTABLE_FIELDS,
    Permission,
    Role,
    User,
    utcnow,
)

DEFAULT_ROLES = (
    ("admin", "Full administrative access"),
    ("operator", "Default role for new accounts"),
)

_USER_DATETIME_FIELDS = (
    "created_at",
    "last_login_at",
    "password_changed_at",
    "refresh_token_expires",
    "setup_expires",
    "password_reset_expires",
)


class MemoryStore:
    """In-memory principal/role/permission store persisted to a JSON file."""

    def __init__(self, fs_root: str = "/tmp/adminauth") -> None:
        self.logger = get_logger(__name__)
        self.users: Dict[str, User] = {}
        self.credentials: Dict[str, tuple[str, str]] = {}
        self.roles: Dict[str, Role] = {}
        self.permissions: Dict[str, Permission] = {}
        # RLock so helpers can re-enter while a mutation holds the lock
        self._data_lock = threading.RLock()
        self.fs_root = Path(fs_root)
        self.fs_root.mkdir(parents=True, exist_ok=True)

        if not self._load_state():
            self._seed_roles()
            self._persist_state()

    def _state_path(self) -> Path:
        state_dir = self.fs_root / "state"
        state_dir.mkdir(parents=True, exist_ok=True)
        return state_dir / "memory_store.json"

    def _seed_roles(self) -> None:
        for name, description in DEFAULT_ROLES:
            role = Role(id=str(uuid.uuid4()), name=name, description=description)
            self.roles[role.id] = role

    def verify_connection(self) -> None:
        """Nothing to probe for the in-process store."""

    # users
    def _find_user(self, predicate) -> Optional[User]:
        return next((u for u in self.users.values() if predicate(u)), None)

    def _ensure_unique_user(
        self, email: str, username: str, *, exclude_id: Optional[str] = None
    ) -> None:
        for existing in self.users.values():
            if existing.id == exclude_id:
                continue
            if existing.email == email:
                raise ConstraintViolation("email already exists", {"field": "email"})
            if existing.username == username:
                raise ConstraintViolation(
                    "username already exists", {"field": "username"}
                )

    def _ensure_role_exists(self, role: str) -> None:
        if not any(r.name == role for r in self.roles.values()):
            raise ConstraintViolation("role does not exist", {"field": "role", "role": role})

    def create_user(
        self,
        email: str,
        username: str,
        *,
        role: str = "operator",
        is_active: bool = True,
        meta: Optional[dict] = None,
    ) -> User:
        with self._data_lock:
            self._ensure_unique_user(email, username)
            self._ensure_role_exists(role)
            user = User(
                id=str(uuid.uuid4()),
                email=email,
                username=username,
                role=role,
                is_active=is_active,
                meta=meta.copy() if meta else {},
            )
            self.users[user.id] = user
            self._persist_state()
            return user

    def get_user(self, user_id: str) -> Optional[User]:
        with self._data_lock:
            return self.users.get(user_id)

    def get_user_by_email(self, email: str) -> Optional[User]:
        with self._data_lock:
            return self._find_user(lambda u: u.email == email)

    def get_user_by_username(self, username: str) -> Optional[User]:
        with self._data_lock:
            return self._find_user(lambda u: u.username == username)

    def get_user_by_reset_token(self, token_hash: str) -> Optional[User]:
        with self._data_lock:
            return self._find_user(lambda u: u.password_reset_token == token_hash)

    def get_user_by_setup_token(self, token_hash: str) -> Optional[User]:
        with self._data_lock:
            return self._find_user(lambda u: u.setup_token == token_hash)

    def get_user_by_refresh_token(self, token_hash: str) -> Optional[User]:
        with self._data_lock:
            return self._find_user(lambda u: u.refresh_token == token_hash)

    def _filtered_users(
        self, role: Optional[str], is_active: Optional[bool]
    ) -> List[User]:
        return [
            u
            for u in self.users.values()
            if (role is None or u.role == role)
            and (is_active is None or u.is_active == is_active)
        ]

    def list_users(
        self,
        *,
        role: Optional[str] = None,
        is_active: Optional[bool] = None,
        limit: int = 100,
        offset: int = 0,
    ) -> List[User]:
        with self._data_lock:
            results = sorted(
                self._filtered_users(role, is_active),
                key=lambda u: u.created_at,
                reverse=True,
            )
            return results[offset : offset + limit]

    def count_users(
        self, *, role: Optional[str] = None, is_active: Optional[bool] = None
    ) -> int:
        with self._data_lock:
            return len(self._filtered_users(role, is_active))

    def update_user(self, user_id: str, **fields: Any) -> Optional[User]:
        unknown = set(fields) - USER_MUTABLE_FIELDS
        if unknown:
            raise ValueError(f"unsupported user fields: {sorted(unknown)}")
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            if "email" in fields or "username" in fields:
                self._ensure_unique_user(
                    fields.get("email", user.email),
                    fields.get("username", user.username),
                    exclude_id=user_id,
                )
            if "role" in fields:
                self._ensure_role_exists(fields["role"])
            for name, value in fields.items():
                setattr(user, name, value)
            self._persist_state()
            return user

    def delete_user(self, user_id: str) -> bool:
        with self._data_lock:
            if user_id not in self.users:
                return False
            self.users.pop(user_id, None)
            self.credentials.pop(user_id, None)
            self._persist_state()
            return True

    def save_password(
        self,
        user_id: str,
        password_hash: str,
        password_algo: str,
        *,
        changed_at: Optional[datetime] = None,
    ) -> None:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                raise ConstraintViolation(
                    "user not found for credentials", {"user_id": user_id}
                )
            self.credentials[user_id] = (password_hash, password_algo)
            if changed_at is not None:
                user.password_changed_at = changed_at
            self._persist_state()

    def get_password_record(self, user_id: str) -> Optional[tuple[str, str]]:
        with self._data_lock:
            return self.credentials.get(user_id)

    # refresh token slot
    def set_refresh_token(
        self, user_id: str, token_hash: str, expires_at: datetime
    ) -> bool:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return False
            user.refresh_token = token_hash
            user.refresh_token_expires = expires_at
            self._persist_state()
            return True

    def swap_refresh_token(
        self,
        user_id: str,
        expected_hash: str,
        new_hash: str,
        expires_at: datetime,
    ) -> bool:
        """Replace the refresh digest only if it still equals ``expected_hash``."""
        with self._data_lock:
            user = self.users.get(user_id)
            if not user or user.refresh_token != expected_hash:
                return False
            user.refresh_token = new_hash
            user.refresh_token_expires = expires_at
            self._persist_state()
            return True

    def clear_refresh_token(self, user_id: str) -> None:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user or (
                user.refresh_token is None and user.refresh_token_expires is None
            ):
                return
            user.refresh_token = None
            user.refresh_token_expires = None
            self._persist_state()

    # roles
    def _ensure_unique_role(self, name: str, *, exclude_id: Optional[str] = None) -> None:
        if any(r.name == name and r.id != exclude_id for r in self.roles.values()):
            raise ConstraintViolation("role name already exists", {"field": "name"})

    def create_role(self, name: str, description: Optional[str] = None) -> Role:
        with self._data_lock:
            self._ensure_unique_role(name)
            role = Role(id=str(uuid.uuid4()), name=name, description=description)
            self.roles[role.id] = role
            self._persist_state()
            return role

    def get_role(self, role_id: str) -> Optional[Role]:
        with self._data_lock:
            return self.roles.get(role_id)

    def get_role_by_name(self, name: str) -> Optional[Role]:
        with self._data_lock:
            return next((r for r in self.roles.values() if r.name == name), None)

    def list_roles(self, *, limit: int = 100, offset: int = 0) -> List[Role]:
        with self._data_lock:
            ordered = sorted(self.roles.values(), key=lambda r: r.name)
            return ordered[offset : offset + limit]

    def count_roles(self) -> int:
        with self._data_lock:
            return len(self.roles)

    def list_role_members(self, role_name: str) -> List[User]:
        with self._data_lock:
            return [u for u in self.users.values() if u.role == role_name]

    def update_role(
        self,
        role_id: str,
        *,
        name: Optional[str] = None,
        description: Optional[str] = None,
    ) -> Optional[Role]:
        with self._data_lock:
            role = self.roles.get(role_id)
            if not role:
                return None
            if name is not None and name != role.name:
                self._ensure_unique_role(name, exclude_id=role_id)
                # Members reference the role by name
                for user in self.users.values():
                    if user.role == role.name:
                        user.role = name
                role.name = name
            if description is not None:
                role.description = description
            self._persist_state()
            return role

    def delete_role(self, role_id: str) -> bool:
        with self._data_lock:
            role = self.roles.get(role_id)
            if not role:
                return False
            if any(u.role == role.name for u in self.users.values()):
                raise ReferenceViolation(
                    "role still has members", {"role_id": role_id}
                )
            self.roles.pop(role_id, None)
            self._persist_state()
            return True

    def set_role_permissions(
        self, role_id: str, permission_ids: Iterable[str]
    ) -> Optional[Role]:
        with self._data_lock:
            role = self.roles.get(role_id)
            if not role:
                return None
            wanted = list(dict.fromkeys(permission_ids))
            missing = [pid for pid in wanted if pid not in self.permissions]
            if missing:
                raise ConstraintViolation(
                    "unknown permission", {"permission_ids": missing}
                )
            role.permissions = wanted
            self._persist_state()
            return role

    # permissions
    def _ensure_unique_permission(
        self, name: str, *, exclude_id: Optional[str] = None
    ) -> None:
        if any(p.name == name and p.id != exclude_id for p in self.permissions.values()):
            raise ConstraintViolation(
                "permission name already exists", {"field": "name"}
            )

    def create_permission(self, name: str) -> Permission:
        with self._data_lock:
            self._ensure_unique_permission(name)
            permission = Permission(id=str(uuid.uuid4()), name=name)
            self.permissions[permission.id] = permission
            self._persist_state()
            return permission

    def get_permission(self, permission_id: str) -> Optional[Permission]:
        with self._data_lock:
            return self.permissions.get(permission_id)

    def list_permissions(self, *, limit: int = 100, offset: int = 0) -> List[Permission]:
        with self._data_lock:
            ordered = sorted(self.permissions.values(), key=lambda p: p.name)
            return ordered[offset : offset + limit]

    def count_permissions(self) -> int:
        with self._data_lock:
            return len(self.permissions)

    def update_permission(self, permission_id: str, name: str) -> Optional[Permission]:
        with self._data_lock:
            permission = self.permissions.get(permission_id)
            if not permission:
                return None
            self._ensure_unique_permission(name, exclude_id=permission_id)
            permission.name = name
            self._persist_state()
            return permission

    def delete_permission(self, permission_id: str) -> bool:
        with self._data_lock:
            if permission_id not in self.permissions:
                return False
            if any(permission_id in r.permissions for r in self.roles.values()):
                raise ReferenceViolation(
                    "permission is referenced by a role",
                    {"permission_id": permission_id},
                )
            self.permissions.pop(permission_id, None)
            self._persist_state()
            return True

    # persistence
    @staticmethod
    def _serialize_datetime(dt: Optional[datetime]) -> Optional[str]:
        return dt.isoformat() if dt else None

    @staticmethod
    def _deserialize_datetime(raw: Optional[str]) -> Optional[datetime]:
        return datetime.fromisoformat(raw) if raw else None

    def _serialize_user(self, user: User) -> dict:
        data = dict(user.__dict__)
        for name in _USER_DATETIME_FIELDS:
            data[name] = self._serialize_datetime(getattr(user, name))
        return data

    def _deserialize_user(self, data: dict) -> User:
        payload = dict(data)
        for name in _USER_DATETIME_FIELDS:
            payload[name] = self._deserialize_datetime(payload.get(name))
        if payload.get("created_at") is None:
            payload["created_at"] = utcnow()
        return User(**payload)

    def _persist_state(self) -> None:
        state = {
            "users": [self._serialize_user(u) for u in self.users.values()],
            "credentials": [
                {
                    "user_id": user_id,
                    "password_hash": creds[0],
                    "password_algo": creds[1],
                }
                for user_id, creds in self.credentials.items()
            ],
            "roles": [
                {
                    "id": r.id,
                    "name": r.name,
                    "description": r.description,
                    "permissions": list(r.permissions),
                    "created_at": self._serialize_datetime(r.created_at),
                }
                for r in self.roles.values()
            ],
            "permissions": [
                {
                    "id": p.id,
                    "name": p.name,
                    "created_at": self._serialize_datetime(p.created_at),
                }
                for p in self.permissions.values()
            ],
        }
        path = self._state_path()
        try:
            path.write_text(json.dumps(state, indent=2))
        except Exception as exc:
            raise RuntimeError(f"failed to persist in-memory state: {exc}")

    def _load_state(self) -> bool:
        path = self._state_path()
        try:
            data = json.loads(path.read_text())
        except FileNotFoundError:
            return False
        self.users = {u["id"]: self._deserialize_user(u) for u in data.get("users", [])}
        self.credentials = {
            entry["user_id"]: (entry["password_hash"], entry.get("password_algo", ""))
            for entry in data.get("credentials", [])
        }
        self.roles = {
            r["id"]: Role(
                id=r["id"],
                name=r["name"],
                description=r.get("description"),
                permissions=list(r.get("permissions", [])),
                created_at=self._deserialize_datetime(r.get("created_at")) or utcnow(),
            )
            for r in data.get("roles", [])
        }
        self.permissions = {
            p["id"]: Permission(
                id=p["id"],
                name=p["name"],
                created_at=self._deserialize_datetime(p.get("created_at")) or utcnow(),
            )
            for p in data.get("permissions", [])
        }
        self.logger.info(
            "memory_store_loaded", users=len(self.users), roles=len(self.roles)
        )
        return True
