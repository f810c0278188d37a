from __future__ import annotations

from typing import Any

from adminauth.logging import get_logger

logger = get_logger(__name__)

BLACKLIST_PREFIX = "bl_"


class RevocationCache:
    """Blacklist of access tokens revoked before their natural expiry.

    Entries live exactly as long as the token would have, so the cache
    never grows past the set of still-valid revoked tokens.
    """

    def __init__(self, cache: Any) -> None:
        self.cache = cache

    @staticmethod
    def _key(token: str) -> str:
        return f"{BLACKLIST_PREFIX}{token}"

    async def blacklist(self, token: str, ttl_seconds: int) -> None:
        if not token or ttl_seconds <= 0:
            return
        await self.cache.set(self._key(token), "1", int(ttl_seconds))

    async def is_blacklisted(self, token: str) -> bool:
        # Fails closed: an unreachable cache treats every token as revoked
        try:
            return bool(await self.cache.exists(self._key(token)))
        except Exception as exc:
            logger.error("revocation_check_failed", error=str(exc))
            return True

    async def remove(self, token: str) -> None:
        await self.cache.delete(self._key(token))
