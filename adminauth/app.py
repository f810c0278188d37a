from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, Dict, List

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from adminauth.api.error_handling import register_exception_handlers
from adminauth.api.oauth import oauth_router, well_known_router
from adminauth.api.routes import router
from adminauth.config import get_settings
from adminauth.logging import get_logger, set_correlation_id
from adminauth.service.runtime import get_runtime
from adminauth.service.signer import KeyLoadError

logger = get_logger(__name__)

__version__ = "0.1.0"

HEALTH_CHECK_TIMEOUT_SECONDS = 3

# Paths whose responses carry credentials and must never be cached
_NO_STORE_PREFIXES = ("/v1/", "/oauth2/token", "/healthz")


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Build the runtime on startup and release its connections on shutdown."""
    try:
        runtime = get_runtime()
    except KeyLoadError as exc:
        # Nothing can be signed or verified without keys
        logger.critical("startup_key_load_failed", error=str(exc))
        raise
    logger.info("startup_complete", issuer=runtime.settings.issuer_url, kid=runtime.signer.kid)

    yield

    try:
        await get_runtime().close()
        logger.info("runtime_cleanup_complete")
    except Exception as exc:
        logger.error("shutdown_failed", error=str(exc))


def _allowed_origins() -> List[str]:
    settings = get_settings()
    if settings.cors_allow_origins:
        return settings.cors_allow_origins
    # Avoid wildcard when credentials are enabled
    return [
        "http://localhost",
        "http://localhost:3000",
        "http://localhost:5173",
        "http://127.0.0.1:3000",
    ]


async def add_correlation_id(request, call_next):
    """Bind an ``X-Request-ID`` to the request's log entries and echo it back.

    The client's header is reused when present, otherwise a UUID is generated.
    """
    correlation_id = set_correlation_id(request.headers.get("X-Request-ID"))
    response = await call_next(request)
    response.headers["X-Request-ID"] = correlation_id
    return response


async def add_security_headers(request, call_next):
    response = await call_next(request)
    response.headers.setdefault("X-Frame-Options", "DENY")
    response.headers.setdefault("X-Content-Type-Options", "nosniff")
    response.headers.setdefault("Referrer-Policy", "strict-origin-when-cross-origin")
    if request.url.path.startswith(_NO_STORE_PREFIXES):
        response.headers.setdefault("Cache-Control", "no-store")
    # The hosted login form carries an inline stylesheet
    response.headers.setdefault(
        "Content-Security-Policy",
        "default-src 'self'; style-src 'self' 'unsafe-inline'; frame-ancestors 'none'; base-uri 'self'",
    )
    if request.url.scheme == "https":
        response.headers.setdefault(
            "Strict-Transport-Security", "max-age=63072000; includeSubDomains"
        )
    return response


async def health() -> Dict[str, Any]:
    """Probe the principal store and the TTL cache.

    Each probe runs in a worker thread bounded by ``HEALTH_CHECK_TIMEOUT_SECONDS``.
    """
    runtime = get_runtime()

    async def _run_bounded(label: str, func) -> bool:
        try:
            await asyncio.wait_for(asyncio.to_thread(func), HEALTH_CHECK_TIMEOUT_SECONDS)
            return True
        except asyncio.TimeoutError:
            logger.error(
                "health_check_timeout", component=label, timeout=HEALTH_CHECK_TIMEOUT_SECONDS
            )
        except Exception as exc:
            logger.error(f"health_check_{label}_failed", error=str(exc))
        return False

    store_ok = await _run_bounded("database", runtime.store.verify_connection)
    cache_ok = await _run_bounded("cache", runtime.cache.verify_connection)
    checks = {
        "database": {
            "status": "healthy" if store_ok else "unhealthy",
            "type": type(runtime.store).__name__,
        },
        "cache": {
            "status": "healthy" if cache_ok else "unhealthy",
            "type": type(runtime.cache).__name__,
        },
    }
    return {
        "status": "healthy" if store_ok and cache_ok else "unhealthy",
        "checks": checks,
        "version": __version__,
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }


def create_app() -> FastAPI:
    application = FastAPI(title="Admin Auth Service", version=__version__, lifespan=lifespan)
    application.add_middleware(
        CORSMiddleware,
        allow_origins=_allowed_origins(),
        allow_credentials=True,
        allow_methods=["GET", "POST", "PUT", "PATCH", "DELETE", "OPTIONS"],
        allow_headers=["Content-Type", "Authorization", "X-Request-ID"],
        expose_headers=["X-Request-ID"],
        max_age=3600,
    )
    application.middleware("http")(add_correlation_id)
    application.middleware("http")(add_security_headers)
    register_exception_handlers(application)
    application.include_router(router)
    application.include_router(oauth_router)
    application.include_router(well_known_router)
    application.get("/healthz")(health)
    return application


app = create_app()
