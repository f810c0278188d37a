"""Access control for protected routes.

A request passes through a fixed pipeline of stages; any stage can stop it
with an ``AuthenticationError`` (401) or ``ForbiddenError`` (403) carrying
the failing stage in ``detail``::

    TOKEN_EXTRACTED -> BLACKLIST_CHECKED -> SIGNATURE_VERIFIED
        -> PRINCIPAL_LOADED -> FRESHNESS_CHECKED -> AUTHORIZED
"""

from __future__ import annotations

import enum
import math
from dataclasses import dataclass
from typing import Any, Dict, FrozenSet, Mapping, Optional, Protocol, Sequence

from adminauth.logging import get_logger
from adminauth.service.errors import AuthenticationError, ForbiddenError
from adminauth.service.revocation import RevocationCache
from adminauth.service.signer import TokenExpiredError, TokenError, TokenSigner
from adminauth.storage.models import User

logger = get_logger(__name__)

MSG_NOT_LOGGED_IN = "You are not logged in! Please log in to get access."
MSG_SESSION_INVALID = "Your session is invalid. Please log in again."
MSG_LOGIN_EXPIRED = "Your login has expired. Please log in again."
MSG_INVALID_TOKEN = "Invalid token. Please log in again."
MSG_USER_GONE = "The user belonging to this token does no longer exist."
MSG_PASSWORD_CHANGED = "User recently changed password! Please log in again."
MSG_FORBIDDEN = "You do not have permission to perform this action"


class GateStage(str, enum.Enum):
    TOKEN_EXTRACTED = "token_extracted"
    BLACKLIST_CHECKED = "blacklist_checked"
    SIGNATURE_VERIFIED = "signature_verified"
    PRINCIPAL_LOADED = "principal_loaded"
    FRESHNESS_CHECKED = "freshness_checked"
    AUTHORIZED = "authorized"


class TokenSource(Protocol):
    def extract(
        self, headers: Mapping[str, str], cookies: Mapping[str, str]
    ) -> Optional[str]: ...


class BearerHeaderSource:
    def extract(
        self, headers: Mapping[str, str], cookies: Mapping[str, str]
    ) -> Optional[str]:
        authorization = headers.get("authorization") or ""
        scheme, _, token = authorization.partition(" ")
        if scheme.lower() != "bearer":
            return None
        token = token.strip()
        return token or None


class CookieSource:
    def __init__(self, name: str = "accessToken") -> None:
        self.name = name

    def extract(
        self, headers: Mapping[str, str], cookies: Mapping[str, str]
    ) -> Optional[str]:
        return cookies.get(self.name) or None


@dataclass(frozen=True)
class RolePolicy:
    roles: FrozenSet[str]

    def allows(self, role: Optional[str]) -> bool:
        return role in self.roles


def restrict_to(*roles: str) -> RolePolicy:
    return RolePolicy(frozenset(roles))


ADMIN_ONLY = restrict_to("admin")


@dataclass
class AuthContext:
    user: User
    claims: Dict[str, Any]
    token: str

    @property
    def user_id(self) -> str:
        return self.user.id

    @property
    def role(self) -> str:
        return self.user.role


class AccessGate:
    def __init__(
        self,
        store: Any,
        signer: TokenSigner,
        revocation: RevocationCache,
        *,
        sources: Optional[Sequence[TokenSource]] = None,
    ) -> None:
        self.store = store
        self.signer = signer
        self.revocation = revocation
        self.sources = tuple(sources) if sources else (BearerHeaderSource(), CookieSource())

    @staticmethod
    def _deny(message: str, stage: GateStage) -> AuthenticationError:
        logger.info("access_denied", stage=stage.value)
        return AuthenticationError(message, detail={"stage": stage.value})

    def extract_token(
        self, headers: Mapping[str, str], cookies: Mapping[str, str]
    ) -> Optional[str]:
        for source in self.sources:
            token = source.extract(headers, cookies)
            if token:
                return token
        return None

    async def authenticate(
        self,
        headers: Mapping[str, str],
        cookies: Mapping[str, str],
        policy: Optional[RolePolicy] = None,
    ) -> AuthContext:
        token = self.extract_token(headers, cookies)
        if not token:
            raise self._deny(MSG_NOT_LOGGED_IN, GateStage.TOKEN_EXTRACTED)

        if await self.revocation.is_blacklisted(token):
            raise self._deny(MSG_SESSION_INVALID, GateStage.BLACKLIST_CHECKED)

        try:
            claims = self.signer.verify_access_token(token)
        except TokenExpiredError:
            raise self._deny(MSG_LOGIN_EXPIRED, GateStage.SIGNATURE_VERIFIED)
        except TokenError:
            raise self._deny(MSG_INVALID_TOKEN, GateStage.SIGNATURE_VERIFIED)

        user = self.store.get_user(str(claims.get("sub")))
        if not user or not user.is_active:
            raise self._deny(MSG_USER_GONE, GateStage.PRINCIPAL_LOADED)

        if self.changed_password_after(user, claims):
            raise self._deny(MSG_PASSWORD_CHANGED, GateStage.FRESHNESS_CHECKED)

        ctx = AuthContext(user=user, claims=claims, token=token)
        if policy is not None:
            self.authorize(ctx, policy)
        return ctx

    @staticmethod
    def changed_password_after(user: User, claims: Mapping[str, Any]) -> bool:
        if not user.password_changed_at:
            return False
        try:
            issued_at = int(claims.get("iat", 0))
        except (TypeError, ValueError):
            return True
        return issued_at < math.floor(user.password_changed_at.timestamp())

    @staticmethod
    def authorize(ctx: AuthContext, policy: RolePolicy) -> None:
        if not policy.allows(ctx.user.role):
            logger.info(
                "access_forbidden", user_id=ctx.user.id, stage=GateStage.AUTHORIZED.value
            )
            raise ForbiddenError(
                MSG_FORBIDDEN, detail={"stage": GateStage.AUTHORIZED.value}
            )
