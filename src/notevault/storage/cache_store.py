"""Key/value cache stores with TTL expiry and prefix deletion.

A cache store is never authoritative. Stores raise CacheUnavailableError
when they cannot serve a request; CacheCoordinator absorbs it.
"""
import logging
import threading
import time
from collections import OrderedDict
from typing import Callable, Optional, Protocol, Tuple

from notevault.exceptions import CacheUnavailableError, ConfigurationError

logger = logging.getLogger(__name__)


class CacheStore(Protocol):
    """What CacheCoordinator needs from a cache backend."""

    def get(self, key: str) -> Optional[str]: ...

    def set(self, key: str, value: str, ttl: int) -> None: ...

    def delete(self, key: str) -> None: ...

    def delete_prefix(self, prefix: str) -> int: ...

    def close(self) -> None: ...


class MemoryCacheStore:
    """Thread-safe in-process cache with per-entry TTL and LRU eviction.

    Values are strings (the coordinator stores JSON), so cached objects can
    never be mutated through a shared reference.

    Args:
        max_entries: Least recently used entries are evicted beyond this.
        clock: Monotonic time source in seconds; injectable for tests.
    """

    def __init__(
        self,
        max_entries: int = 10000,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if max_entries < 1:
            raise ConfigurationError("max_entries must be >= 1", config_key="cache_max_entries")
        self._entries: "OrderedDict[str, Tuple[float, str]]" = OrderedDict()
        self._lock = threading.Lock()
        self._max_entries = max_entries
        self._clock = clock
        self._closed = False

    def _check_open(self, key: Optional[str] = None) -> None:
        if self._closed:
            raise CacheUnavailableError("Cache store is closed", key=key)

    def get(self, key: str) -> Optional[str]:
        with self._lock:
            self._check_open(key)
            entry = self._entries.get(key)
            if entry is None:
                return None
            expires_at, value = entry
            if expires_at <= self._clock():
                del self._entries[key]
                return None
            self._entries.move_to_end(key)
            return value

    def set(self, key: str, value: str, ttl: int) -> None:
        if ttl <= 0:
            return
        with self._lock:
            self._check_open(key)
            self._entries[key] = (self._clock() + ttl, value)
            self._entries.move_to_end(key)
            while len(self._entries) > self._max_entries:
                self._entries.popitem(last=False)

    def delete(self, key: str) -> None:
        with self._lock:
            self._check_open(key)
            self._entries.pop(key, None)

    def delete_prefix(self, prefix: str) -> int:
        with self._lock:
            self._check_open(prefix)
            doomed = [key for key in self._entries if key.startswith(prefix)]
            for key in doomed:
                del self._entries[key]
            return len(doomed)

    def purge_expired(self) -> int:
        """Drop expired entries; returns how many were removed."""
        with self._lock:
            now = self._clock()
            expired = [k for k, (expires_at, _) in self._entries.items() if expires_at <= now]
            for key in expired:
                del self._entries[key]
            return len(expired)

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def close(self) -> None:
        with self._lock:
            self._entries.clear()
            self._closed = True


class NullCacheStore:
    """Cache that stores nothing; every read is a miss."""

    def get(self, key: str) -> Optional[str]:
        return None

    def set(self, key: str, value: str, ttl: int) -> None:
        pass

    def delete(self, key: str) -> None:
        pass

    def delete_prefix(self, prefix: str) -> int:
        return 0

    def close(self) -> None:
        pass


def create_cache_store(backend: str, max_entries: int = 10000) -> CacheStore:
    """Build the configured cache backend.

    Raises:
        ConfigurationError: If the backend name is unknown.
    """
    if backend == "memory":
        logger.info(f"Using in-process cache (max {max_entries} entries)")
        return MemoryCacheStore(max_entries=max_entries)
    if backend == "none":
        logger.info("Caching disabled")
        return NullCacheStore()
    raise ConfigurationError(f"Unknown cache backend: {backend}", config_key="cache_backend")
