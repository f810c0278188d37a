from __future__ import annotations

import json
import uuid
from datetime import datetime
from typing import Any, Iterable, List, Optional

from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool

from adminauth.logging import get_logger
from adminauth.storage.errors import ConstraintViolation, ReferenceViolation
from adminauth.storage.memory import DEFAULT_ROLES
from adminauth.storage.models import (
    USER_MUTABLE_FIELDS,
    Permission,
    Role,
    User,
    utcnow,
)

_SCHEMA = (
    """
    CREATE TABLE IF NOT EXISTS app_role (
        id TEXT PRIMARY KEY,
        name TEXT NOT NULL UNIQUE,
        description TEXT,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS app_permission (
        id TEXT PRIMARY KEY,
        name TEXT NOT NULL UNIQUE,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS role_permission (
        role_id TEXT NOT NULL REFERENCES app_role(id) ON DELETE CASCADE,
        permission_id TEXT NOT NULL REFERENCES app_permission(id) ON DELETE RESTRICT,
        PRIMARY KEY (role_id, permission_id)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS app_user (
        id TEXT PRIMARY KEY,
        email TEXT NOT NULL UNIQUE,
        username TEXT NOT NULL UNIQUE,
        role TEXT NOT NULL REFERENCES app_role(name) ON UPDATE CASCADE ON DELETE RESTRICT,
        is_active BOOLEAN NOT NULL DEFAULT TRUE,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        last_login_at TIMESTAMPTZ,
        password_changed_at TIMESTAMPTZ,
        refresh_token TEXT,
        refresh_token_expires TIMESTAMPTZ,
        setup_token TEXT,
        setup_expires TIMESTAMPTZ,
        password_reset_token TEXT,
        password_reset_expires TIMESTAMPTZ,
        meta JSONB
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS user_auth_credential (
        user_id TEXT PRIMARY KEY REFERENCES app_user(id) ON DELETE CASCADE,
        password_hash TEXT NOT NULL,
        password_algo TEXT NOT NULL,
        last_updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
)

_ROLE_SELECT = """
    SELECT r.id, r.name, r.description, r.created_at,
           COALESCE(array_agg(rp.permission_id) FILTER (WHERE rp.permission_id IS NOT NULL), '{}') AS permissions
    FROM app_role r
    LEFT JOIN role_permission rp ON rp.role_id = r.id
"""


class PostgresStore:
    """Postgres-backed principal, role and permission store."""

    def __init__(self, dsn: str) -> None:
        self.dsn = dsn
        self.logger = get_logger(__name__)
        self.pool = ConnectionPool(
            self.dsn,
            min_size=2,
            max_size=10,
            kwargs={"row_factory": dict_row, "autocommit": False},
        )
        self._ensure_schema()
        self._seed_roles()

    def _connect(self):
        return self.pool.connection()

    def _ensure_schema(self) -> None:
        with self._connect() as conn:
            for statement in _SCHEMA:
                conn.execute(statement)

    def _seed_roles(self) -> None:
        with self._connect() as conn:
            for name, description in DEFAULT_ROLES:
                conn.execute(
                    "INSERT INTO app_role (id, name, description) VALUES (%s, %s, %s) ON CONFLICT (name) DO NOTHING",
                    (str(uuid.uuid4()), name, description),
                )

    def verify_connection(self) -> None:
        with self._connect() as conn:
            conn.execute("SELECT 1").fetchone()

    @staticmethod
    def _row_to_user(row: dict) -> User:
        return User(
            id=str(row["id"]),
            email=row["email"],
            username=row["username"],
            role=row.get("role", "operator"),
            is_active=row.get("is_active", True),
            created_at=row.get("created_at") or utcnow(),
            last_login_at=row.get("last_login_at"),
            password_changed_at=row.get("password_changed_at"),
            refresh_token=row.get("refresh_token"),
            refresh_token_expires=row.get("refresh_token_expires"),
            setup_token=row.get("setup_token"),
            setup_expires=row.get("setup_expires"),
            password_reset_token=row.get("password_reset_token"),
            password_reset_expires=row.get("password_reset_expires"),
            meta=row.get("meta") or {},
        )

    @staticmethod
    def _row_to_role(row: dict) -> Role:
        return Role(
            id=str(row["id"]),
            name=row["name"],
            description=row.get("description"),
            permissions=[str(p) for p in (row.get("permissions") or [])],
            created_at=row.get("created_at") or utcnow(),
        )

    @staticmethod
    def _row_to_permission(row: dict) -> Permission:
        return Permission(
            id=str(row["id"]),
            name=row["name"],
            created_at=row.get("created_at") or utcnow(),
        )

    @staticmethod
    def _unique_field(exc: errors.UniqueViolation) -> str:
        constraint = getattr(getattr(exc, "diag", None), "constraint_name", None) or ""
        for name in ("email", "username", "name"):
            if name in constraint:
                return name
        return "unknown"

    def _fetch_user(self, column: str, value: Any) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                f"SELECT * FROM app_user WHERE {column} = %s", (value,)
            ).fetchone()
        return self._row_to_user(row) if row else None

    # users
    def create_user(
        self,
        email: str,
        username: str,
        *,
        role: str = "operator",
        is_active: bool = True,
        meta: Optional[dict] = None,
    ) -> User:
        user_id = str(uuid.uuid4())
        normalized_meta = meta.copy() if meta else {}
        created_at = utcnow()
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO app_user (id, email, username, role, is_active, created_at, meta)
                    VALUES (%s, %s, %s, %s, %s, %s, %s)
                    """,
                    (
                        user_id,
                        email,
                        username,
                        role,
                        is_active,
                        created_at,
                        json.dumps(normalized_meta) if normalized_meta else None,
                    ),
                )
        except errors.UniqueViolation as exc:
            field = self._unique_field(exc)
            raise ConstraintViolation(f"{field} already exists", {"field": field})
        except errors.ForeignKeyViolation:
            raise ConstraintViolation("role does not exist", {"field": "role", "role": role})
        return User(
            id=user_id,
            email=email,
            username=username,
            role=role,
            is_active=is_active,
            created_at=created_at,
            meta=normalized_meta,
        )

    def get_user(self, user_id: str) -> Optional[User]:
        return self._fetch_user("id", user_id)

    def get_user_by_email(self, email: str) -> Optional[User]:
        return self._fetch_user("email", email)

    def get_user_by_username(self, username: str) -> Optional[User]:
        return self._fetch_user("username", username)

    def get_user_by_reset_token(self, token_hash: str) -> Optional[User]:
        return self._fetch_user("password_reset_token", token_hash)

    def get_user_by_setup_token(self, token_hash: str) -> Optional[User]:
        return self._fetch_user("setup_token", token_hash)

    def get_user_by_refresh_token(self, token_hash: str) -> Optional[User]:
        return self._fetch_user("refresh_token", token_hash)

    @staticmethod
    def _user_filters(role: Optional[str], is_active: Optional[bool]) -> tuple[str, list]:
        clauses: list[str] = []
        params: list[Any] = []
        if role is not None:
            clauses.append("role = %s")
            params.append(role)
        if is_active is not None:
            clauses.append("is_active = %s")
            params.append(is_active)
        where = f" WHERE {' AND '.join(clauses)}" if clauses else ""
        return where, params

    def list_users(
        self,
        *,
        role: Optional[str] = None,
        is_active: Optional[bool] = None,
        limit: int = 100,
        offset: int = 0,
    ) -> List[User]:
        where, params = self._user_filters(role, is_active)
        with self._connect() as conn:
            rows = conn.execute(
                f"SELECT * FROM app_user{where} ORDER BY created_at DESC LIMIT %s OFFSET %s",
                (*params, limit, offset),
            ).fetchall()
        return [self._row_to_user(row) for row in rows]

    def count_users(
        self, *, role: Optional[str] = None, is_active: Optional[bool] = None
    ) -> int:
        where, params = self._user_filters(role, is_active)
        with self._connect() as conn:
            row = conn.execute(
                f"SELECT COUNT(*) AS total FROM app_user{where}", tuple(params)
            ).fetchone()
        return int(row["total"]) if row else 0

    def update_user(self, user_id: str, **fields: Any) -> Optional[User]:
        unknown = set(fields) - USER_MUTABLE_FIELDS
        if unknown:
            raise ValueError(f"unsupported user fields: {sorted(unknown)}")
        if not fields:
            return self.get_user(user_id)
        assignments = ", ".join(f"{name} = %s" for name in fields)
        values = [
            json.dumps(value) if name == "meta" and value is not None else value
            for name, value in fields.items()
        ]
        try:
            with self._connect() as conn:
                row = conn.execute(
                    f"UPDATE app_user SET {assignments} WHERE id = %s RETURNING *",
                    (*values, user_id),
                ).fetchone()
        except errors.UniqueViolation as exc:
            field = self._unique_field(exc)
            raise ConstraintViolation(f"{field} already exists", {"field": field})
        except errors.ForeignKeyViolation:
            raise ConstraintViolation(
                "role does not exist", {"field": "role", "role": fields.get("role")}
            )
        return self._row_to_user(row) if row else None

    def delete_user(self, user_id: str) -> bool:
        with self._connect() as conn:
            cur = conn.execute("DELETE FROM app_user WHERE id = %s", (user_id,))
            return cur.rowcount > 0

    def save_password(
        self,
        user_id: str,
        password_hash: str,
        password_algo: str,
        *,
        changed_at: Optional[datetime] = None,
    ) -> None:
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO user_auth_credential (user_id, password_hash, password_algo, last_updated_at)
                    VALUES (%s, %s, %s, now())
                    ON CONFLICT (user_id) DO UPDATE
                    SET password_hash = EXCLUDED.password_hash,
                        password_algo = EXCLUDED.password_algo,
                        last_updated_at = now()
                    """,
                    (user_id, password_hash, password_algo),
                )
                if changed_at is not None:
                    conn.execute(
                        "UPDATE app_user SET password_changed_at = %s WHERE id = %s",
                        (changed_at, user_id),
                    )
        except errors.ForeignKeyViolation:
            raise ConstraintViolation(
                "user not found for credentials", {"user_id": user_id}
            )

    def get_password_record(self, user_id: str) -> Optional[tuple[str, str]]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT password_hash, password_algo FROM user_auth_credential WHERE user_id = %s",
                (user_id,),
            ).fetchone()
        if not row:
            return None
        return str(row["password_hash"]), str(row["password_algo"])

    # refresh token slot
    def set_refresh_token(
        self, user_id: str, token_hash: str, expires_at: datetime
    ) -> bool:
        with self._connect() as conn:
            cur = conn.execute(
                "UPDATE app_user SET refresh_token = %s, refresh_token_expires = %s WHERE id = %s",
                (token_hash, expires_at, user_id),
            )
            return cur.rowcount > 0

    def swap_refresh_token(
        self,
        user_id: str,
        expected_hash: str,
        new_hash: str,
        expires_at: datetime,
    ) -> bool:
        """Compare-and-swap the refresh digest in a single conditional UPDATE."""
        with self._connect() as conn:
            cur = conn.execute(
                """
                UPDATE app_user
                SET refresh_token = %s, refresh_token_expires = %s
                WHERE id = %s AND refresh_token = %s
                """,
                (new_hash, expires_at, user_id, expected_hash),
            )
            return cur.rowcount == 1

    def clear_refresh_token(self, user_id: str) -> None:
        with self._connect() as conn:
            conn.execute(
                "UPDATE app_user SET refresh_token = NULL, refresh_token_expires = NULL WHERE id = %s",
                (user_id,),
            )

    # roles
    def create_role(self, name: str, description: Optional[str] = None) -> Role:
        role_id = str(uuid.uuid4())
        try:
            with self._connect() as conn:
                row = conn.execute(
                    "INSERT INTO app_role (id, name, description) VALUES (%s, %s, %s) RETURNING created_at",
                    (role_id, name, description),
                ).fetchone()
        except errors.UniqueViolation:
            raise ConstraintViolation("role name already exists", {"field": "name"})
        return Role(
            id=role_id,
            name=name,
            description=description,
            created_at=(row or {}).get("created_at") or utcnow(),
        )

    def _fetch_role(self, where: str, value: Any) -> Optional[Role]:
        with self._connect() as conn:
            row = conn.execute(
                f"{_ROLE_SELECT} WHERE {where} = %s GROUP BY r.id", (value,)
            ).fetchone()
        return self._row_to_role(row) if row else None

    def get_role(self, role_id: str) -> Optional[Role]:
        return self._fetch_role("r.id", role_id)

    def get_role_by_name(self, name: str) -> Optional[Role]:
        return self._fetch_role("r.name", name)

    def list_roles(self, *, limit: int = 100, offset: int = 0) -> List[Role]:
        with self._connect() as conn:
            rows = conn.execute(
                f"{_ROLE_SELECT} GROUP BY r.id ORDER BY r.name LIMIT %s OFFSET %s",
                (limit, offset),
            ).fetchall()
        return [self._row_to_role(row) for row in rows]

    def count_roles(self) -> int:
        with self._connect() as conn:
            row = conn.execute("SELECT COUNT(*) AS total FROM app_role").fetchone()
        return int(row["total"]) if row else 0

    def list_role_members(self, role_name: str) -> List[User]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM app_user WHERE role = %s ORDER BY created_at DESC",
                (role_name,),
            ).fetchall()
        return [self._row_to_user(row) for row in rows]

    def update_role(
        self,
        role_id: str,
        *,
        name: Optional[str] = None,
        description: Optional[str] = None,
    ) -> Optional[Role]:
        # Renames reach members through ON UPDATE CASCADE on app_user.role
        try:
            with self._connect() as conn:
                cur = conn.execute(
                    """
                    UPDATE app_role
                    SET name = COALESCE(%s, name), description = COALESCE(%s, description)
                    WHERE id = %s
                    """,
                    (name, description, role_id),
                )
                if cur.rowcount == 0:
                    return None
        except errors.UniqueViolation:
            raise ConstraintViolation("role name already exists", {"field": "name"})
        return self.get_role(role_id)

    def delete_role(self, role_id: str) -> bool:
        try:
            with self._connect() as conn:
                cur = conn.execute("DELETE FROM app_role WHERE id = %s", (role_id,))
                return cur.rowcount > 0
        except errors.ForeignKeyViolation:
            raise ReferenceViolation("role still has members", {"role_id": role_id})

    def set_role_permissions(
        self, role_id: str, permission_ids: Iterable[str]
    ) -> Optional[Role]:
        wanted = list(dict.fromkeys(permission_ids))
        try:
            with self._connect() as conn:
                exists = conn.execute(
                    "SELECT 1 FROM app_role WHERE id = %s FOR UPDATE", (role_id,)
                ).fetchone()
                if not exists:
                    return None
                conn.execute("DELETE FROM role_permission WHERE role_id = %s", (role_id,))
                for permission_id in wanted:
                    conn.execute(
                        "INSERT INTO role_permission (role_id, permission_id) VALUES (%s, %s)",
                        (role_id, permission_id),
                    )
        except errors.ForeignKeyViolation:
            raise ConstraintViolation("unknown permission", {"permission_ids": wanted})
        return self.get_role(role_id)

    # permissions
    def create_permission(self, name: str) -> Permission:
        permission_id = str(uuid.uuid4())
        try:
            with self._connect() as conn:
                row = conn.execute(
                    "INSERT INTO app_permission (id, name) VALUES (%s, %s) RETURNING *",
                    (permission_id, name),
                ).fetchone()
        except errors.UniqueViolation:
            raise ConstraintViolation(
                "permission name already exists", {"field": "name"}
            )
        return self._row_to_permission(row)

    def get_permission(self, permission_id: str) -> Optional[Permission]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM app_permission WHERE id = %s", (permission_id,)
            ).fetchone()
        return self._row_to_permission(row) if row else None

    def list_permissions(self, *, limit: int = 100, offset: int = 0) -> List[Permission]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM app_permission ORDER BY name LIMIT %s OFFSET %s",
                (limit, offset),
            ).fetchall()
        return [self._row_to_permission(row) for row in rows]

    def count_permissions(self) -> int:
        with self._connect() as conn:
            row = conn.execute("SELECT COUNT(*) AS total FROM app_permission").fetchone()
        return int(row["total"]) if row else 0

    def update_permission(self, permission_id: str, name: str) -> Optional[Permission]:
        try:
            with self._connect() as conn:
                row = conn.execute(
                    "UPDATE app_permission SET name = %s WHERE id = %s RETURNING *",
                    (name, permission_id),
                ).fetchone()
        except errors.UniqueViolation:
            raise ConstraintViolation(
                "permission name already exists", {"field": "name"}
            )
        return self._row_to_permission(row) if row else None

    def delete_permission(self, permission_id: str) -> bool:
        try:
            with self._connect() as conn:
                cur = conn.execute(
                    "DELETE FROM app_permission WHERE id = %s", (permission_id,)
                )
                return cur.rowcount > 0
        except errors.ForeignKeyViolation:
            raise ReferenceViolation(
                "permission is referenced by a role", {"permission_id": permission_id}
            )
