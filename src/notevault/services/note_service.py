"""Service layer for note operations.

Reads are served through the cache coordinator. Writes go straight to the
repository, and the affected cache entries are invalidated once the
repository call has returned, which is after its transaction committed. A
write that raises leaves the cache untouched.
"""

import logging
from typing import List, Optional

from pydantic import TypeAdapter

from notevault.exceptions import ErrorCode, ValidationError
from notevault.models.schema import Note, NoteVersion, SearchHit
from notevault.services.cache_coordinator import CacheCoordinator
from notevault.storage.note_repository import NoteRepository

logger = logging.getLogger(__name__)

_NOTE_LIST = TypeAdapter(List[Note])
_HIT_LIST = TypeAdapter(List[SearchHit])


class NoteService:
    """Caller-facing note operations for one repository and cache."""

    def __init__(
        self,
        repository: NoteRepository,
        cache: CacheCoordinator,
        search_cache_ttl: Optional[int] = None,
        search_limit: int = 50,
    ):
        """Initialize the service.

        Args:
            repository: Note repository (source of truth).
            cache: Coordinator for the read-through cache.
            search_cache_ttl: TTL for cached search results. Half the
                coordinator's default TTL if None.
            search_limit: Result limit used when a search passes none.
        """
        self.repository = repository
        self.cache = cache
        self.search_cache_ttl = search_cache_ttl or max(1, cache.default_ttl // 2)
        self.search_limit = search_limit

    # =========================================================================
    # Mutations
    # =========================================================================

    def create_note(self, owner_id: str, title: str, content: str) -> Note:
        """Create a note at version 1."""
        note = self.repository.create(owner_id, title, content)
        self.cache.invalidate_note(owner_id, note.id)
        return note

    def update_note(
        self,
        owner_id: str,
        note_id: int,
        expected_version: int,
        title: Optional[str] = None,
        content: Optional[str] = None,
    ) -> Note:
        """Update a note if expected_version is still current.

        Raises:
            ConcurrencyConflictError: Another writer got there first; the
                error carries the version to retry against.
        """
        note = self.repository.update(
            owner_id, note_id, expected_version, title=title, content=content
        )
        self.cache.invalidate_note(owner_id, note_id)
        return note

    def delete_note(self, owner_id: str, note_id: int) -> Note:
        """Tombstone a note; its history stays readable."""
        note = self.repository.delete(owner_id, note_id)
        self.cache.invalidate_note(owner_id, note_id)
        return note

    def revert_to_version(
        self,
        owner_id: str,
        note_id: int,
        version_number: int,
        expected_current_version: Optional[int] = None,
    ) -> Note:
        """Copy an old snapshot forward as the note's next version."""
        note = self.repository.revert_to(
            owner_id,
            note_id,
            version_number,
            expected_current_version=expected_current_version,
        )
        self.cache.invalidate_note(owner_id, note_id)
        return note

    # =========================================================================
    # Cached reads
    # =========================================================================

    def get_note(self, owner_id: str, note_id: int) -> Note:
        """Get a live note.

        Raises:
            NoteNotFoundError: Note absent, deleted, or owned by someone else.
        """
        return self.cache.read_through(
            owner_id,
            self.cache.note_key(owner_id, note_id),
            lambda: self.repository.get_by_id(owner_id, note_id),
            encode=lambda note: note.model_dump_json(),
            decode=Note.model_validate_json,
        )

    def list_notes(
        self, owner_id: str, limit: Optional[int] = None, offset: int = 0
    ) -> List[Note]:
        """An owner's live notes, most recently updated first."""
        if limit is not None and limit < 1:
            raise ValidationError("limit must be >= 1", field="limit", value=limit)
        if offset < 0:
            raise ValidationError("offset must be >= 0", field="offset", value=offset)
        return self.cache.read_through(
            owner_id,
            self.cache.list_key(owner_id, limit, offset),
            lambda: self.repository.list_notes(owner_id, limit=limit, offset=offset),
            encode=lambda notes: _NOTE_LIST.dump_json(notes).decode(),
            decode=_NOTE_LIST.validate_json,
        )

    def search_notes(
        self, owner_id: str, query: str, limit: Optional[int] = None
    ) -> List[SearchHit]:
        """Relevance-ranked search over an owner's live notes.

        A blank query is rejected here, before the cache or the search
        engine sees it.
        """
        if not isinstance(query, str) or not query.strip():
            raise ValidationError(
                "Search query is required",
                field="query",
                code=ErrorCode.SEARCH_INVALID_QUERY,
            )
        limit = self.search_limit if limit is None else limit
        if limit < 1:
            raise ValidationError("limit must be >= 1", field="limit", value=limit)

        return self.cache.read_through(
            owner_id,
            self.cache.search_key(owner_id, query, limit),
            lambda: self.repository.search(owner_id, query, limit=limit),
            encode=lambda hits: _HIT_LIST.dump_json(hits).decode(),
            decode=_HIT_LIST.validate_json,
            ttl=self.search_cache_ttl,
        )

    # =========================================================================
    # History (uncached)
    # =========================================================================

    def list_versions(self, owner_id: str, note_id: int) -> List[NoteVersion]:
        return self.repository.list_versions(owner_id, note_id)

    def get_version(self, owner_id: str, note_id: int, version_number: int) -> NoteVersion:
        return self.repository.get_version(owner_id, note_id, version_number)

    def verify_history(self, owner_id: str, note_id: int) -> bool:
        return self.repository.verify_history(owner_id, note_id)

    def count_notes(self, owner_id: str) -> int:
        return self.repository.count_notes(owner_id)
