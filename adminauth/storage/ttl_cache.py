from __future__ import annotations

import threading
import time
from typing import Dict, Optional, Tuple


class MemoryCache:
    """Process-local TTL cache used when Redis is unavailable.

    Mirrors the async surface of ``RedisCache`` so services await either one.
    Expiry uses monotonic deadlines and is enforced lazily on access.
    """

    def __init__(self) -> None:
        self._entries: Dict[str, Tuple[str, Optional[float]]] = {}
        self._lock = threading.Lock()

    def _live(self, key: str) -> Optional[str]:
        entry = self._entries.get(key)
        if entry is None:
            return None
        value, deadline = entry
        if deadline is not None and deadline <= time.monotonic():
            self._entries.pop(key, None)
            return None
        return value

    def verify_connection(self) -> None:
        """Always reachable."""

    async def set(self, key: str, value: str, ttl_seconds: Optional[int] = None) -> None:
        deadline = time.monotonic() + ttl_seconds if ttl_seconds else None
        with self._lock:
            self._entries[key] = (value, deadline)

    async def get(self, key: str) -> Optional[str]:
        with self._lock:
            return self._live(key)

    async def getdel(self, key: str) -> Optional[str]:
        with self._lock:
            value = self._live(key)
            self._entries.pop(key, None)
            return value

    async def delete(self, key: str) -> int:
        with self._lock:
            return 1 if self._entries.pop(key, None) is not None else 0

    async def exists(self, key: str) -> bool:
        with self._lock:
            return self._live(key) is not None

    async def close(self) -> None:
        with self._lock:
            self._entries.clear()
