from __future__ import annotations

import enum
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional, Protocol

from adminauth.logging import get_logger
from adminauth.service.tokens import generate_token, hash_token
from adminauth.storage.models import User, utcnow

REFRESH_TOKEN_BYTES = 64

logger = get_logger(__name__)


class RefreshSlotStore(Protocol):
    def get_user(self, user_id: str) -> Optional[User]: ...

    def get_user_by_refresh_token(self, token_hash: str) -> Optional[User]: ...

    def set_refresh_token(
        self, user_id: str, token_hash: str, expires_at: datetime
    ) -> bool: ...

    def swap_refresh_token(
        self, user_id: str, expected_hash: str, new_hash: str, expires_at: datetime
    ) -> bool: ...

    def clear_refresh_token(self, user_id: str) -> None: ...


class RotationOutcome(str, enum.Enum):
    ROTATED = "rotated"
    INVALID = "invalid"
    CONFLICT = "conflict"


@dataclass(frozen=True)
class RefreshRotation:
    outcome: RotationOutcome
    user_id: Optional[str] = None
    token: Optional[str] = None

    @property
    def rotated(self) -> bool:
        return self.outcome is RotationOutcome.ROTATED


class RefreshTokenStore:
    """Single live refresh token per principal.

    Only the SHA-256 digest of a token is persisted. ``create`` is the only
    unconditional write; ``rotate`` swaps the digest only while the stored
    value still equals the presented one.
    """

    def __init__(self, store: RefreshSlotStore, *, ttl_seconds: int) -> None:
        self.store = store
        self.ttl_seconds = ttl_seconds

    def _expiry(self) -> datetime:
        return utcnow() + timedelta(seconds=self.ttl_seconds)

    def create(self, principal_id: str) -> str:
        token = generate_token(REFRESH_TOKEN_BYTES)
        if not self.store.set_refresh_token(principal_id, hash_token(token), self._expiry()):
            raise LookupError(f"principal {principal_id} not found")
        return token

    def validate(self, token: Optional[str]) -> Optional[User]:
        if not token:
            return None
        user = self.store.get_user_by_refresh_token(hash_token(token))
        if not user or not user.refresh_token_expires:
            return None
        if user.refresh_token_expires <= utcnow():
            return None
        return user

    def revoke(self, principal_id: str) -> None:
        self.store.clear_refresh_token(principal_id)

    def rotate(self, old_token: Optional[str]) -> RefreshRotation:
        user = self.validate(old_token)
        if not user:
            return RefreshRotation(RotationOutcome.INVALID)
        new_token = generate_token(REFRESH_TOKEN_BYTES)
        swapped = self.store.swap_refresh_token(
            user.id, hash_token(old_token), hash_token(new_token), self._expiry()
        )
        if not swapped:
            logger.warning("refresh_rotation_conflict", user_id=user.id)
            return RefreshRotation(RotationOutcome.CONFLICT, user_id=user.id)
        return RefreshRotation(RotationOutcome.ROTATED, user_id=user.id, token=new_token)
