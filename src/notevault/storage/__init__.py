"""Storage layer for the NoteVault server."""

from notevault.storage.cache_store import (
    CacheStore,
    MemoryCacheStore,
    NullCacheStore,
    create_cache_store,
)
from notevault.storage.note_repository import NoteRepository
from notevault.storage.user_repository import UserRepository
from notevault.storage.version_store import VersionStore

__all__ = [
    "CacheStore",
    "MemoryCacheStore",
    "NullCacheStore",
    "create_cache_store",
    "NoteRepository",
    "UserRepository",
    "VersionStore",
]
