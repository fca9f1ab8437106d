"""Fixed-window attempt limiter stored in the cache layer."""

from __future__ import annotations

import hashlib
import logging

from ..domain.contracts import Cache
from ..domain.errors import CacheUnavailable

logger = logging.getLogger(__name__)


class LoginThrottle:
    """Count attempts per key and refuse once the window budget is spent."""

    def __init__(
        self,
        cache: Cache,
        *,
        max_attempts: int,
        window_seconds: int,
        key_prefix: str = "throttle",
    ) -> None:
        """Store the cache handle and window configuration."""
        self._cache = cache
        self._max_attempts = max_attempts
        self._window = window_seconds
        self._key_prefix = key_prefix

    def _key(self, key: str) -> str:
        digest = hashlib.sha256(key.lower().encode("utf-8")).hexdigest()[:16]
        return f"{self._key_prefix}:{digest}"

    def hit(self, key: str) -> bool:
        """Record an attempt; return ``True`` while the key is within budget."""
        try:
            count = self._cache.incr(self._key(key), self._window)
        except CacheUnavailable as exc:
            logger.warning("login throttle skipped, cache unavailable: %s", exc)
            return True
        return count <= self._max_attempts
