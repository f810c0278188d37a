from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Dict, List, Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class User:
    id: str
    email: str
    username: str
    role: str = "operator"
    is_active: bool = True
    created_at: datetime = field(default_factory=utcnow)
    last_login_at: Optional[datetime] = None
    password_changed_at: Optional[datetime] = None
    # Token fields hold sha256 digests, never the raw values
    refresh_token: Optional[str] = None
    refresh_token_expires: Optional[datetime] = None
    setup_token: Optional[str] = None
    setup_expires: Optional[datetime] = None
    password_reset_token: Optional[str] = None
    password_reset_expires: Optional[datetime] = None
    meta: Dict | None = None


@dataclass
class Role:
    id: str
    name: str
    description: Optional[str] = None
    permissions: List[str] = field(default_factory=list)
    created_at: datetime = field(default_factory=utcnow)


@dataclass
class Permission:
    id: str
    name: str
    created_at: datetime = field(default_factory=utcnow)


# Columns callers may change through ``update_user``
USER_MUTABLE_FIELDS = frozenset(
    {
        "email",
        "username",
        "role",
        "is_active",
        "last_login_at",
        "setup_token",
        "setup_expires",
        "password_reset_token",
        "password_reset_expires",
        "meta",
    }
)
