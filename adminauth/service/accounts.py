"""Direct-login account flows: login, signup, password lifecycle and setup."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Optional, Protocol, Tuple

from adminauth.config import Settings
from adminauth.logging import get_logger
from adminauth.service.email import EmailService
from adminauth.service.errors import (
    AuthenticationError,
    ConflictError,
    DeliveryError,
    ForbiddenError,
    NotFoundError,
    ValidationError,
)
from adminauth.service.gate import AuthContext
from adminauth.service.passwords import CredentialVerifier
from adminauth.service.refresh_tokens import RefreshTokenStore
from adminauth.service.revocation import RevocationCache
from adminauth.service.signer import TokenSigner
from adminauth.service.tokens import generate_temp_password, generate_token, hash_token
from adminauth.storage.errors import ConstraintViolation
from adminauth.storage.models import User, utcnow

MIN_PASSWORD_LENGTH = 8
SETUP_TOKEN_BYTES = 32
RESET_TOKEN_BYTES = 32

logger = get_logger(__name__)


class PrincipalStore(Protocol):
    def create_user(
        self,
        email: str,
        username: str,
        *,
        role: str = "operator",
        is_active: bool = True,
        meta: Optional[dict] = None,
    ) -> User: ...

    def get_user(self, user_id: str) -> Optional[User]: ...

    def get_user_by_email(self, email: str) -> Optional[User]: ...

    def get_user_by_reset_token(self, token_hash: str) -> Optional[User]: ...

    def get_user_by_setup_token(self, token_hash: str) -> Optional[User]: ...

    def update_user(self, user_id: str, **fields: Any) -> Optional[User]: ...

    def delete_user(self, user_id: str) -> bool: ...

    def save_password(
        self,
        user_id: str,
        password_hash: str,
        password_algo: str,
        *,
        changed_at: Optional[datetime] = None,
    ) -> None: ...

    def get_password_record(self, user_id: str) -> Optional[tuple[str, str]]: ...


@dataclass
class SessionTokens:
    access_token: str
    refresh_token: str
    expires_in: int
    token_type: str = "Bearer"


def normalize_email(email: Optional[str]) -> str:
    return (email or "").strip().lower()


class AccountService:
    def __init__(
        self,
        store: PrincipalStore,
        verifier: CredentialVerifier,
        signer: TokenSigner,
        refresh_tokens: RefreshTokenStore,
        revocation: RevocationCache,
        email: EmailService,
        settings: Settings,
    ) -> None:
        self.store = store
        self.verifier = verifier
        self.signer = signer
        self.refresh_tokens = refresh_tokens
        self.revocation = revocation
        self.email = email
        self.settings = settings

    # credentials
    @staticmethod
    def _validate_new_password(password: Optional[str], confirm: Optional[str] = None, *, confirm_required: bool = False) -> str:
        if not password:
            raise ValidationError("Please provide a new password")
        if confirm_required and not confirm:
            raise ValidationError("Please confirm your password")
        if confirm is not None and password != confirm:
            raise ValidationError("Password and password confirmation do not match")
        if len(password) < MIN_PASSWORD_LENGTH:
            raise ValidationError(
                f"Password must be at least {MIN_PASSWORD_LENGTH} characters long"
            )
        return password

    def set_password(self, user_id: str, password: str) -> None:
        digest, algo = self.verifier.hash(password)
        # Backdated one second so a token minted right after the change
        # passes the freshness check while earlier ones fail it.
        self.store.save_password(
            user_id, digest, algo, changed_at=utcnow() - timedelta(seconds=1)
        )

    def check_password(self, user: User, password: Optional[str]) -> bool:
        record = self.store.get_password_record(user.id)
        if not record or not password:
            return False
        stored_hash, algo = record
        return self.verifier.verify(password, stored_hash, algo)

    def authenticate(self, email: Optional[str], password: Optional[str]) -> Optional[User]:
        """Return the active user for valid credentials, stamping ``last_login_at``."""
        user = self.store.get_user_by_email(normalize_email(email))
        if not user or not user.is_active or not self.check_password(user, password):
            logger.info("login_failed", reason="invalid_credentials")
            return None
        updated = self.store.update_user(user.id, last_login_at=utcnow())
        return updated or user

    def issue_session(self, user: User) -> SessionTokens:
        return SessionTokens(
            access_token=self.signer.sign_access_token(user.id),
            refresh_token=self.refresh_tokens.create(user.id),
            expires_in=self.signer.access_ttl_seconds,
        )

    async def _deliver(self, sender, *args) -> None:
        sent = await asyncio.to_thread(sender, *args)
        if not sent:
            raise DeliveryError("There was an error sending the email. Try again later!")

    # direct login
    async def login(self, email: Optional[str], password: Optional[str]) -> Tuple[User, SessionTokens]:
        if not email or not password:
            raise ValidationError("Please provide email and password!")
        user = self.authenticate(email, password)
        if not user:
            raise AuthenticationError("Incorrect email or password")
        logger.info("login_succeeded", user_id=user.id)
        return user, self.issue_session(user)

    async def signup(
        self,
        username: Optional[str],
        email: Optional[str],
        password: Optional[str],
        password_confirm: Optional[str] = None,
    ) -> Tuple[User, SessionTokens]:
        if not self.settings.allow_signup:
            raise ForbiddenError("signup is disabled")
        if not username or not username.strip():
            raise ValidationError("Please provide a username")
        normalized = normalize_email(email)
        if not normalized:
            raise ValidationError("Please provide your email address")
        self._validate_new_password(password, password_confirm)
        try:
            user = self.store.create_user(
                normalized, username.strip(), role=self.settings.default_role
            )
        except ConstraintViolation as exc:
            raise ConflictError(exc.message, detail=exc.detail)
        self.set_password(user.id, password)
        logger.info("signup_succeeded", user_id=user.id)
        return user, self.issue_session(user)

    async def logout(self, ctx: AuthContext) -> None:
        await self.revocation.blacklist(ctx.token, self.signer.remaining_seconds(ctx.claims))
        self.refresh_tokens.revoke(ctx.user.id)
        logger.info("logout", user_id=ctx.user.id)

    async def refresh(self, refresh_token: Optional[str]) -> Tuple[User, SessionTokens]:
        if not refresh_token:
            raise ValidationError("Refresh token is required")
        rotation = self.refresh_tokens.rotate(refresh_token)
        if not rotation.rotated:
            raise AuthenticationError(
                "Invalid or expired refresh token", detail={"outcome": rotation.outcome.value}
            )
        user = self.store.get_user(rotation.user_id)
        if not user or not user.is_active:
            self.refresh_tokens.revoke(rotation.user_id)
            raise AuthenticationError("User no longer exists")
        tokens = SessionTokens(
            access_token=self.signer.sign_access_token(user.id),
            refresh_token=rotation.token,
            expires_in=self.signer.access_ttl_seconds,
        )
        return user, tokens

    # password lifecycle
    async def update_password(
        self, ctx: AuthContext, current: Optional[str], new: Optional[str]
    ) -> Tuple[User, SessionTokens]:
        if not current or not new:
            raise ValidationError("Please provide your current and new password")
        if not self.check_password(ctx.user, current):
            raise AuthenticationError("Your current password is wrong.")
        if new == current:
            raise ValidationError(
                "Your new password is identical to the current one. Try a new password"
            )
        self._validate_new_password(new)
        self.set_password(ctx.user.id, new)
        await self.revocation.blacklist(ctx.token, self.signer.remaining_seconds(ctx.claims))
        user = self.store.get_user(ctx.user.id) or ctx.user
        logger.info("password_updated", user_id=user.id)
        return user, self.issue_session(user)

    async def forgot_password(self, email: Optional[str]) -> None:
        """Email a reset token; unknown addresses are ignored silently."""
        normalized = normalize_email(email)
        if not normalized:
            raise ValidationError("Please provide your email address")
        user = self.store.get_user_by_email(normalized)
        if not user or not user.is_active:
            return
        token = generate_token(RESET_TOKEN_BYTES)
        ttl = self.settings.password_reset_ttl_minutes
        self.store.update_user(
            user.id,
            password_reset_token=hash_token(token),
            password_reset_expires=utcnow() + timedelta(minutes=ttl),
        )
        try:
            await self._deliver(self.email.send_password_reset, user.email, token, ttl)
        except DeliveryError:
            self.store.update_user(
                user.id, password_reset_token=None, password_reset_expires=None
            )
            raise

    async def reset_password(
        self, token: str, password: Optional[str], password_confirm: Optional[str]
    ) -> Tuple[User, SessionTokens]:
        user = self.store.get_user_by_reset_token(hash_token(token or ""))
        if (
            not user
            or not user.password_reset_expires
            or user.password_reset_expires <= utcnow()
        ):
            raise ValidationError("Token is invalid or has expired")
        self._validate_new_password(password, password_confirm, confirm_required=True)
        self.set_password(user.id, password)
        user = self.store.update_user(
            user.id, password_reset_token=None, password_reset_expires=None
        ) or user
        logger.info("password_reset", user_id=user.id)
        return user, self.issue_session(user)

    # admin-created accounts
    def _pending_setup_user(self, token: str) -> User:
        user = self.store.get_user_by_setup_token(hash_token(token or ""))
        if not user or not user.setup_expires or user.setup_expires <= utcnow():
            raise ValidationError(
                "This link has expired or is invalid. Please contact an administrator for a new one."
            )
        return user

    async def _send_setup(self, user: User) -> None:
        token = generate_token(SETUP_TOKEN_BYTES)
        ttl = self.settings.setup_token_ttl_hours
        self.store.update_user(
            user.id,
            setup_token=hash_token(token),
            setup_expires=utcnow() + timedelta(hours=ttl),
        )
        try:
            await self._deliver(
                self.email.send_account_setup,
                user.email,
                user.username,
                token,
                ttl,
            )
        except DeliveryError:
            self.store.update_user(user.id, setup_token=None, setup_expires=None)
            raise

    async def create_user(self, username: Optional[str], email: Optional[str]) -> User:
        if not username or not username.strip():
            raise ValidationError("Please provide a username")
        normalized = normalize_email(email)
        if not normalized:
            raise ValidationError("Please provide your email address")
        try:
            user = self.store.create_user(
                normalized, username.strip(), role=self.settings.default_role
            )
        except ConstraintViolation as exc:
            raise ConflictError(exc.message, detail=exc.detail)
        temp_password = generate_temp_password()
        self.set_password(user.id, temp_password)
        await self._send_setup(user)
        logger.info("user_created_by_admin", user_id=user.id)
        return self.store.get_user(user.id) or user

    def get_setup_user(self, token: str) -> User:
        return self._pending_setup_user(token)

    async def complete_setup(
        self,
        token: str,
        email: Optional[str],
        password: Optional[str],
        password_confirm: Optional[str],
    ) -> Tuple[User, SessionTokens]:
        user = self._pending_setup_user(token)
        normalized = normalize_email(email)
        if not normalized:
            raise ValidationError("Please provide your email address")
        if normalized != user.email:
            raise ValidationError("The email address doesn't match the setup link.")
        if not password or not password_confirm:
            raise ValidationError("Please provide a new password and confirm it")
        self._validate_new_password(password, password_confirm)
        self.set_password(user.id, password)
        user = self.store.update_user(user.id, setup_token=None, setup_expires=None) or user
        await self._deliver(self.email.send_setup_complete, user.email, user.username)
        logger.info("setup_completed", user_id=user.id)
        return user, self.issue_session(user)

    async def regenerate_setup_token(self, email: Optional[str]) -> User:
        normalized = normalize_email(email)
        if not normalized:
            raise ValidationError("Please provide your email address")
        user = self.store.get_user_by_email(normalized)
        if not user:
            raise NotFoundError("No user found with that email")
        await self._send_setup(user)
        return self.store.get_user(user.id) or user
