"""Read-through cache in front of the note repository.

Policy:
- reads populate the cache on a miss;
- every committed write invalidates the note's own key and every list and
  search key of its owner, after the commit and never before;
- a load that overlapped an invalidation is not written back, so a reader
  that fetched pre-commit data cannot repopulate the cache with it;
- cache failures are logged and behave as misses; they never reach the
  caller and never block a write.

The generation guard is per process, matching the in-process store. With a
shared external store, entries written by other processes are bounded by
their TTL.
"""
import logging
import threading
from collections import Counter, defaultdict
from typing import Callable, Dict, Optional, TypeVar
from urllib.parse import quote

from notevault.storage.cache_store import CacheStore
from notevault.utils import normalize_query

logger = logging.getLogger(__name__)

T = TypeVar("T")

KEY_NAMESPACE = "notes"


class CacheCoordinator:
    """Best-effort cache coordination for one cache store.

    Args:
        store: The cache backend.
        default_ttl: TTL in seconds for entries set without an explicit TTL.
    """

    def __init__(self, store: CacheStore, default_ttl: int = 3600) -> None:
        self._store = store
        self.default_ttl = default_ttl
        self._generations: Dict[str, int] = defaultdict(int)
        # Guards the per-owner lock table; each owner lock guards its generation
        self._lock = threading.Lock()
        self._owner_locks: Dict[str, threading.Lock] = {}
        self._stats: Counter = Counter()
        self._stats_lock = threading.Lock()

    # ------------------------------------------------------------------
    # Key layout
    # ------------------------------------------------------------------

    @staticmethod
    def owner_prefix(owner_id: str) -> str:
        # Owner ids are quoted so one owner's prefix can never match another's keys
        return f"{KEY_NAMESPACE}:{quote(owner_id, safe='')}:"

    @classmethod
    def note_key(cls, owner_id: str, note_id: int) -> str:
        return f"{cls.owner_prefix(owner_id)}note:{note_id}"

    @classmethod
    def collection_prefix(cls, owner_id: str) -> str:
        """Prefix shared by every list and search key of an owner."""
        return f"{cls.owner_prefix(owner_id)}q:"

    @classmethod
    def list_key(cls, owner_id: str, limit: Optional[int] = None, offset: int = 0) -> str:
        return f"{cls.collection_prefix(owner_id)}all:{limit if limit is not None else '*'}:{offset}"

    @classmethod
    def search_key(cls, owner_id: str, query: str, limit: int) -> str:
        return f"{cls.collection_prefix(owner_id)}search:{limit}:{normalize_query(query)}"

    # ------------------------------------------------------------------
    # Store operations (failures absorbed)
    # ------------------------------------------------------------------

    def _count(self, name: str) -> None:
        with self._stats_lock:
            self._stats[name] += 1

    def _absorb(self, action: str, key: str, error: Exception) -> None:
        self._count("errors")
        logger.warning(f"Cache unavailable during {action} of '{key}': {error}")

    def get(self, key: str) -> Optional[str]:
        """Cached value for a key, or None on a miss or cache failure."""
        try:
            value = self._store.get(key)
        except Exception as e:
            self._absorb("get", key, e)
            return None
        self._count("hits" if value is not None else "misses")
        return value

    def set(self, key: str, value: str, ttl: Optional[int] = None) -> None:
        try:
            self._store.set(key, value, ttl or self.default_ttl)
        except Exception as e:
            self._absorb("set", key, e)

    def invalidate(self, key: str) -> None:
        try:
            self._store.delete(key)
        except Exception as e:
            self._absorb("invalidate", key, e)

    def invalidate_by_prefix(self, prefix: str) -> int:
        try:
            return self._store.delete_prefix(prefix)
        except Exception as e:
            self._absorb("prefix invalidation", prefix, e)
            return 0

    # ------------------------------------------------------------------
    # Read-through and post-commit invalidation
    # ------------------------------------------------------------------

    def _owner_lock(self, owner_id: str) -> threading.Lock:
        with self._lock:
            return self._owner_locks.setdefault(owner_id, threading.Lock())

    def generation(self, owner_id: str) -> int:
        with self._owner_lock(owner_id):
            return self._generations[owner_id]

    def read_through(
        self,
        owner_id: str,
        key: str,
        loader: Callable[[], T],
        encode: Callable[[T], str],
        decode: Callable[[str], T],
        ttl: Optional[int] = None,
    ) -> T:
        """Serve a key from cache, or load it and populate the cache.

        Errors raised by the loader propagate and nothing is cached.
        """
        cached = self.get(key)
        if cached is not None:
            try:
                return decode(cached)
            except ValueError as e:
                logger.warning(f"Discarding undecodable cache entry '{key}': {e}")
                self.invalidate(key)

        generation = self.generation(owner_id)
        value = loader()
        self._set_if_current(owner_id, generation, key, encode(value), ttl)
        return value

    def _set_if_current(
        self, owner_id: str, generation: int, key: str, value: str, ttl: Optional[int]
    ) -> None:
        # Check and fill under the owner lock so an invalidation cannot slip between them
        with self._owner_lock(owner_id):
            if self._generations[owner_id] != generation:
                self._count("stale_sets_skipped")
                logger.debug(f"Skipping cache fill of '{key}': owner invalidated during load")
                return
            self.set(key, value, ttl)

    def invalidate_note(self, owner_id: str, note_id: int) -> None:
        """Forget a note and every list/search result of its owner.

        Must be called after the write has committed. Search keys are
        dropped wholesale for the owner, whether or not they matched the note.
        """
        with self._owner_lock(owner_id):
            self._generations[owner_id] += 1
        self._count("invalidations")
        self.invalidate(self.note_key(owner_id, note_id))
        self.invalidate_by_prefix(self.collection_prefix(owner_id))

    def stats(self) -> Dict[str, int]:
        """Counters for hits, misses, absorbed errors and invalidations."""
        with self._stats_lock:
            return {
                "hits": self._stats["hits"],
                "misses": self._stats["misses"],
                "errors": self._stats["errors"],
                "invalidations": self._stats["invalidations"],
                "stale_sets_skipped": self._stats["stale_sets_skipped"],
            }

    def close(self) -> None:
        """Close the underlying store."""
        try:
            self._store.close()
        except Exception as e:
            self._absorb("close", "*", e)
