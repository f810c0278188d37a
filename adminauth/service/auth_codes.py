from __future__ import annotations

import json
from dataclasses import asdict, dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Optional

from adminauth.logging import get_logger
from adminauth.service.errors import DependencyError
from adminauth.service.tokens import generate_token

AUTH_CODE_PREFIX = "auth_code:"
AUTH_CODE_BYTES = 32
DEFAULT_AUTH_CODE_TTL = 600

logger = get_logger(__name__)


@dataclass
class AuthorizationGrant:
    user_id: str
    client_id: str
    redirect_uri: str
    expires_at: datetime
    state: Optional[str] = None
    scope: Optional[str] = None
    nonce: Optional[str] = None

    @property
    def expired(self) -> bool:
        return self.expires_at <= datetime.now(timezone.utc)

    def to_json(self) -> str:
        payload = asdict(self)
        payload["expires_at"] = self.expires_at.isoformat()
        return json.dumps(payload)

    @classmethod
    def from_json(cls, raw: str) -> Optional["AuthorizationGrant"]:
        try:
            data = json.loads(raw)
            data["expires_at"] = datetime.fromisoformat(data["expires_at"])
            return cls(**data)
        except (json.JSONDecodeError, TypeError, KeyError, ValueError):
            return None


class AuthCodeCache:
    """One-time authorization codes held in the TTL cache."""

    def __init__(self, cache: Any, *, ttl_seconds: int = DEFAULT_AUTH_CODE_TTL) -> None:
        self.cache = cache
        self.ttl_seconds = ttl_seconds

    @staticmethod
    def generate_code() -> str:
        return generate_token(AUTH_CODE_BYTES)

    @staticmethod
    def _key(code: str) -> str:
        return f"{AUTH_CODE_PREFIX}{code}"

    def new_grant(
        self,
        user_id: str,
        client_id: str,
        redirect_uri: str,
        *,
        state: Optional[str] = None,
        scope: Optional[str] = None,
        nonce: Optional[str] = None,
    ) -> AuthorizationGrant:
        return AuthorizationGrant(
            user_id=user_id,
            client_id=client_id,
            redirect_uri=redirect_uri,
            expires_at=datetime.now(timezone.utc) + timedelta(seconds=self.ttl_seconds),
            state=state,
            scope=scope,
            nonce=nonce,
        )

    async def store(
        self, code: str, grant: AuthorizationGrant, ttl_seconds: Optional[int] = None
    ) -> None:
        try:
            await self.cache.set(self._key(code), grant.to_json(), ttl_seconds or self.ttl_seconds)
        except Exception as exc:
            logger.error("auth_code_store_failed", error=str(exc))
            raise DependencyError("authorization code cache unavailable") from exc

    async def consume(self, code: str) -> Optional[AuthorizationGrant]:
        """Atomically fetch and delete ``code``; a second call returns None."""
        try:
            raw = await self.cache.getdel(self._key(code))
        except Exception as exc:
            logger.error("auth_code_consume_failed", error=str(exc))
            raise DependencyError("authorization code cache unavailable") from exc
        if raw is None:
            return None
        grant = AuthorizationGrant.from_json(raw)
        if grant is None:
            logger.warning("auth_code_corrupt")
        return grant

    async def exists(self, code: str) -> bool:
        try:
            return bool(await self.cache.exists(self._key(code)))
        except Exception as exc:
            raise DependencyError("authorization code cache unavailable") from exc

    async def delete(self, code: str) -> None:
        try:
            await self.cache.delete(self._key(code))
        except Exception as exc:
            raise DependencyError("authorization code cache unavailable") from exc
