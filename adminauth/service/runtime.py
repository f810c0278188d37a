from __future__ import annotations

import asyncio
import threading
from typing import Optional, Union
from urllib.parse import urlparse, urlunparse

from adminauth.config import Settings, get_settings, reset_settings_cache
from adminauth.logging import get_logger
from adminauth.service.accounts import AccountService
from adminauth.service.auth_codes import AuthCodeCache
from adminauth.service.email import EmailService
from adminauth.service.gate import AccessGate, BearerHeaderSource, CookieSource
from adminauth.service.oauth import OAuthFlow
from adminauth.service.passwords import CredentialVerifier
from adminauth.service.rbac import RbacService
from adminauth.service.refresh_tokens import RefreshTokenStore
from adminauth.service.revocation import RevocationCache
from adminauth.service.signer import SigningKeys, TokenSigner, load_signing_keys
from adminauth.storage.memory import MemoryStore
from adminauth.storage.postgres import PostgresStore
from adminauth.storage.redis_cache import RedisCache, SyncRedisCache
from adminauth.storage.ttl_cache import MemoryCache

logger = get_logger(__name__)

CacheBackend = Union[RedisCache, SyncRedisCache, MemoryCache]


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Replace the password in ``url`` with ``***`` for logging."""
    if not url:
        return url
    try:
        parsed = urlparse(url)
    except ValueError:
        return "***url_parse_error***"
    if not parsed.password:
        return url
    netloc = parsed.hostname or ""
    if parsed.port:
        netloc = f"{netloc}:{parsed.port}"
    netloc = f"{parsed.username or ''}:***@{netloc}"
    return urlunparse(parsed._replace(netloc=netloc))


class Runtime:
    """Holds singleton service instances for the FastAPI app."""

    def __init__(
        self,
        settings: Optional[Settings] = None,
        *,
        keys: Optional[SigningKeys] = None,
    ) -> None:
        self.settings = settings or get_settings()
        logger.info(
            "runtime_init_started",
            use_memory_store=self.settings.use_memory_store,
            test_mode=self.settings.test_mode,
        )

        # Unusable signing keys are fatal; nothing below can work without them
        self.keys = keys or load_signing_keys(self.settings)

        store_type = "memory" if self.settings.use_memory_store else "postgres"
        try:
            self.store: Union[MemoryStore, PostgresStore] = (
                MemoryStore(fs_root=self.settings.shared_fs_root)
                if self.settings.use_memory_store
                else PostgresStore(self.settings.database_url)
            )
            logger.info("runtime_store_initialized", store_type=store_type)
        except Exception as exc:
            logger.error(
                "runtime_store_init_failed",
                store_type=store_type,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise

        self.cache: CacheBackend = self._build_cache()

        self.signer = TokenSigner(
            self.keys,
            self.settings.issuer_url,
            access_ttl_seconds=self.settings.access_token_ttl_seconds,
            id_token_ttl_seconds=self.settings.id_token_ttl_seconds,
        )
        self.verifier = CredentialVerifier()
        self.refresh_tokens = RefreshTokenStore(
            self.store, ttl_seconds=self.settings.refresh_token_ttl_seconds
        )
        self.revocation = RevocationCache(self.cache)
        self.auth_codes = AuthCodeCache(
            self.cache, ttl_seconds=self.settings.auth_code_ttl_seconds
        )
        self.gate = AccessGate(
            self.store,
            self.signer,
            self.revocation,
            sources=(
                BearerHeaderSource(),
                CookieSource(self.settings.access_cookie_name),
            ),
        )
        self.email = EmailService(
            smtp_host=self.settings.smtp_host,
            smtp_port=self.settings.smtp_port,
            smtp_user=self.settings.smtp_user,
            smtp_password=self.settings.smtp_password,
            smtp_use_tls=self.settings.smtp_use_tls,
            from_email=self.settings.email_from_address,
            from_name=self.settings.email_from_name,
            base_url=self.settings.app_base_url,
        )
        self.accounts = AccountService(
            self.store,
            self.verifier,
            self.signer,
            self.refresh_tokens,
            self.revocation,
            self.email,
            self.settings,
        )
        self.rbac = RbacService(self.store)
        self.oauth = OAuthFlow(
            self.store,
            self.accounts,
            self.signer,
            self.refresh_tokens,
            self.revocation,
            self.auth_codes,
            self.settings,
        )
        logger.info(
            "runtime_init_completed",
            kid=self.signer.kid,
            cache_type=type(self.cache).__name__,
            email_configured=self.email.is_configured,
        )

    def _build_cache(self) -> CacheBackend:
        redis_error: Exception | None = None
        if self.settings.redis_url:
            try:
                # Sync client in test mode avoids event loop binding under pytest
                if self.settings.test_mode:
                    cache: CacheBackend = SyncRedisCache(self.settings.redis_url)
                else:
                    cache = RedisCache(self.settings.redis_url)
                cache.verify_connection()
                return cache
            except Exception as exc:
                redis_error = exc

        if not self.settings.test_mode and not self.settings.allow_redis_fallback_dev:
            raise RuntimeError(
                "Redis is required for token revocation and authorization codes; "
                "start Redis or set TEST_MODE=true/ALLOW_REDIS_FALLBACK_DEV=true for local fallback."
            ) from redis_error

        fallback_mode = "TEST_MODE" if self.settings.test_mode else "ALLOW_REDIS_FALLBACK_DEV"
        logger.warning(
            "redis_disabled_fallback",
            redis_url=_mask_url_password(self.settings.redis_url),
            error=str(redis_error) if redis_error else "redis_url_missing",
            message=(
                f"Running without Redis under {fallback_mode}; revocations and "
                "authorization codes are process-local."
            ),
            mode=fallback_mode,
        )
        return MemoryCache()

    async def close(self) -> None:
        await self.cache.close()
        pool = getattr(self.store, "pool", None)
        if pool is not None:
            pool.close()


runtime: Runtime | None = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton using double-checked locking."""
    global runtime
    if runtime is not None:
        return runtime
    with _runtime_lock:
        if runtime is None:
            runtime = Runtime()
        return runtime


def _close_cache(cache: CacheBackend) -> None:
    try:
        loop = asyncio.get_running_loop()
    except RuntimeError:
        asyncio.run(cache.close())
    else:
        loop.create_task(cache.close())


def reset_runtime_for_tests() -> Runtime:
    """Reinitialize the runtime singleton for isolated test runs."""
    global runtime

    with _runtime_lock:
        if runtime is not None:
            try:
                _close_cache(runtime.cache)
            except Exception as exc:
                logger.warning("runtime_cache_close_failed", error=str(exc))

        reset_settings_cache()
        settings = get_settings()
        if not settings.test_mode:
            raise RuntimeError("runtime reset is only allowed in TEST_MODE")
        runtime = Runtime(settings)
        return runtime
