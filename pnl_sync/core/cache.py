"""
In-memory key/value cache with per-entry TTL.

Instances are injected where needed (e.g. the LWA access-token cache of the
SP-API client) instead of living as module globals, and take a clock callable
so tests control expiry.
"""

import time
from typing import Any, Callable, Optional

from pnl_sync.core.logging import get_logger

logger = get_logger(__name__)


class TTLCache:
    """
    Storage for short-lived values.

    Not shared across processes; each worker keeps its own entries.
    """

    def __init__(
        self,
        default_ttl_seconds: float = 300.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        """
        Initialize cache.

        Args:
            default_ttl_seconds: TTL applied when ``set`` gets none
            clock: Monotonic seconds source
        """
        self.default_ttl_seconds = default_ttl_seconds
        self._clock = clock
        self._store: dict[str, tuple[float, Any]] = {}

    def get(self, key: str) -> Optional[Any]:
        """
        Get value for key if present and not expired.

        Args:
            key: Cache key

        Returns:
            Stored value or None if not found/expired
        """
        entry = self._store.get(key)
        if entry is None:
            return None

        expires_at, value = entry
        if self._clock() >= expires_at:
            del self._store[key]
            return None

        return value

    def set(self, key: str, value: Any, ttl_seconds: Optional[float] = None) -> None:
        """
        Store value for key.

        Args:
            key: Cache key
            value: Value to store
            ttl_seconds: Lifetime; defaults to ``default_ttl_seconds``
        """
        ttl = self.default_ttl_seconds if ttl_seconds is None else ttl_seconds
        self._store[key] = (self._clock() + ttl, value)

    def delete(self, key: str) -> None:
        """Delete key if present."""
        self._store.pop(key, None)

    def clear(self) -> None:
        """Drop every entry."""
        self._store.clear()

    def cleanup_expired(self) -> int:
        """
        Remove expired entries.

        Returns:
            Number of entries removed
        """
        now = self._clock()
        expired_keys = [key for key, (expires_at, _) in self._store.items() if now >= expires_at]

        for key in expired_keys:
            del self._store[key]

        if expired_keys:
            logger.debug(f"Cleaned up {len(expired_keys)} expired cache entries")

        return len(expired_keys)

    def __len__(self) -> int:
        return len(self._store)
