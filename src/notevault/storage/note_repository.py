"""Repository for note storage and retrieval.

Owns the current-state row of every note and keeps it consistent with the
snapshot history in VersionStore. Every mutation follows the same sequence
inside one transaction:

    begin -> lock the note row -> read -> compare versions -> write row
          -> append snapshot -> commit

and any exit other than a clean commit rolls back both the row and the
snapshot.
"""

import logging
from contextlib import contextmanager
from typing import Any, Iterator, List, Optional

from sqlalchemy import func, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from notevault.exceptions import (
    ConcurrencyConflictError,
    ErrorCode,
    NoteNotFoundError,
    NoteVaultError,
    StorageUnavailableError,
    ValidationError,
)
from notevault.models.db_models import DBNote, DBUser, get_session_factory
from notevault.models.schema import (
    MAX_TITLE_LENGTH,
    Note,
    NoteVersion,
    SearchHit,
    ensure_timezone_aware,
    utc_now,
)
from notevault.storage.fts_index import FtsIndex
from notevault.storage.version_store import VersionStore

logger = logging.getLogger(__name__)


class NoteRepository:
    """Current-state store for notes with optimistic version control.

    Readers never take locks. Writers lock the single note row they change
    (SELECT ... FOR UPDATE, or an IMMEDIATE transaction on SQLite) and then
    check the caller's expected version, so among writers holding the same
    expected version exactly one succeeds and the rest see a conflict
    carrying the new version.

    On SQLite the IMMEDIATE transaction takes the database write lock, so
    writers queue behind each other even when they touch different notes.
    Each waits at most the busy timeout; readers are not affected (WAL).
    Backends with row locks only serialize writers of the same note.
    """

    def __init__(self, engine: Any, version_store: Optional[VersionStore] = None):
        """Initialize the repository.

        Args:
            engine: Initialized SQLAlchemy engine (see models.db_models.init_db).
                    The repository does not own it and never disposes it.
            version_store: Snapshot store. A default VersionStore if None.
        """
        self.engine = engine
        self.session_factory = get_session_factory(engine)
        self._write_sessions = get_session_factory(engine, write=True)
        self.versions = version_store or VersionStore()
        self._fts = FtsIndex(engine, self.session_factory)
        logger.info(
            f"NoteRepository initialized: dialect={engine.dialect.name}, "
            f"fts5={self._fts.available}"
        )

    # =========================================================================
    # Transaction scopes
    # =========================================================================

    @contextmanager
    def _write_transaction(self, operation: str) -> Iterator[Session]:
        """Scoped write transaction: commit on clean exit, roll back otherwise.

        Domain errors pass through unchanged; store failures become
        StorageUnavailableError once the rollback has happened.
        """
        session = self._write_sessions()
        try:
            with session.begin():
                yield session
        except NoteVaultError:
            raise
        except SQLAlchemyError as e:
            logger.error(f"{operation} failed and was rolled back: {e}")
            raise StorageUnavailableError(
                f"Storage failure during {operation}; no changes were applied",
                operation=operation,
                original_error=e,
            ) from e
        finally:
            session.close()

    @contextmanager
    def _read_session(self, operation: str) -> Iterator[Session]:
        try:
            with self.session_factory() as session:
                yield session
        except SQLAlchemyError as e:
            logger.error(f"{operation} failed: {e}")
            raise StorageUnavailableError(
                f"Storage failure during {operation}",
                operation=operation,
                original_error=e,
            ) from e

    # =========================================================================
    # Shared query construction
    # =========================================================================

    @staticmethod
    def _owned_notes(owner_id: str, include_deleted: bool = False) -> Any:
        """Base query for an owner's notes.

        Every read path starts here, so tombstoned notes are hidden unless a
        caller asks for them by name.
        """
        query = select(DBNote).where(DBNote.owner_id == owner_id)
        if not include_deleted:
            query = query.where(DBNote.deleted_at.is_(None))
        return query

    def _find_owned(
        self,
        session: Session,
        owner_id: str,
        note_id: int,
        include_deleted: bool = False,
        lock: bool = False,
    ) -> DBNote:
        query = self._owned_notes(owner_id, include_deleted).where(DBNote.id == note_id)
        if lock:
            query = query.with_for_update()
        db_note = session.scalar(query)
        if db_note is None:
            raise NoteNotFoundError(note_id)
        return db_note

    # =========================================================================
    # Pre-commit steps
    # =========================================================================

    @staticmethod
    def _check_note_id(note_id: Any) -> int:
        if isinstance(note_id, bool) or not isinstance(note_id, int) or note_id < 1:
            raise ValidationError("Note ID must be a positive integer", field="note_id", value=note_id)
        return note_id

    @staticmethod
    def _check_version_number(value: Any, field: str) -> int:
        if isinstance(value, bool) or not isinstance(value, int) or value < 1:
            raise ValidationError(f"{field} must be an integer >= 1", field=field, value=value)
        return value

    @staticmethod
    def _check_title(title: Any) -> str:
        if not isinstance(title, str) or not title.strip():
            raise ValidationError(
                "Title cannot be empty", field="title", code=ErrorCode.NOTE_TITLE_REQUIRED
            )
        if len(title) > MAX_TITLE_LENGTH:
            raise ValidationError(
                f"Title must be between 1 and {MAX_TITLE_LENGTH} characters",
                field="title",
                value=title,
                code=ErrorCode.NOTE_TITLE_TOO_LONG,
            )
        return title

    @staticmethod
    def _check_content(content: Any) -> str:
        if not isinstance(content, str) or not content.strip():
            raise ValidationError(
                "Content cannot be empty", field="content", code=ErrorCode.NOTE_CONTENT_REQUIRED
            )
        return content

    @staticmethod
    def _stamp(db_note: DBNote, created: bool = False) -> None:
        """Set timestamps for a row about to be written."""
        now = utc_now()
        if created:
            db_note.created_at = now
        db_note.updated_at = now

    @staticmethod
    def _check_expected_version(db_note: DBNote, expected_version: int) -> None:
        if db_note.version != expected_version:
            logger.info(
                f"Version conflict on note {db_note.id}: expected {expected_version}, "
                f"current {db_note.version}"
            )
            raise ConcurrencyConflictError(db_note.id, expected_version, db_note.version)

    def _advance(self, session: Session, db_note: DBNote) -> None:
        """Bump the version of a locked row and record the matching snapshot."""
        db_note.version += 1
        self._stamp(db_note)
        session.flush()
        self.versions.append(
            session, db_note.id, db_note.title, db_note.content, db_note.version
        )

    @staticmethod
    def _to_model(db_note: DBNote) -> Note:
        return Note(
            id=db_note.id,
            owner_id=db_note.owner_id,
            title=db_note.title,
            content=db_note.content,
            version=db_note.version,
            created_at=ensure_timezone_aware(db_note.created_at),
            updated_at=ensure_timezone_aware(db_note.updated_at),
            deleted_at=ensure_timezone_aware(db_note.deleted_at),
        )

    # =========================================================================
    # Mutations
    # =========================================================================

    def create(self, owner_id: str, title: str, content: str) -> Note:
        """Create a note at version 1 together with its first snapshot.

        Raises:
            ValidationError: Blank or oversized title, blank content, or an
                owner the store has never seen.
        """
        self._check_title(title)
        self._check_content(content)

        with self._write_transaction("create") as session:
            if session.get(DBUser, owner_id) is None:
                raise ValidationError("Unknown owner", field="owner_id", value=owner_id)
            db_note = DBNote(owner_id=owner_id, title=title, content=content, version=1)
            self._stamp(db_note, created=True)
            session.add(db_note)
            session.flush()
            self.versions.append(session, db_note.id, title, content, 1)
            note = self._to_model(db_note)

        logger.info(f"Created note {note.id} for owner {owner_id}")
        return note

    def update(
        self,
        owner_id: str,
        note_id: int,
        expected_version: int,
        title: Optional[str] = None,
        content: Optional[str] = None,
    ) -> Note:
        """Apply a title and/or content change if the caller's version is current.

        Only the supplied fields change. The version advances by one and a
        snapshot of the result is appended in the same transaction.

        Raises:
            ValidationError: Malformed input or nothing to change.
            NoteNotFoundError: Note absent, tombstoned, or not owned.
            ConcurrencyConflictError: expected_version is stale.
        """
        self._check_note_id(note_id)
        self._check_version_number(expected_version, "expected_version")
        if title is None and content is None:
            raise ValidationError("Nothing to update: supply a title, content, or both")
        if title is not None:
            self._check_title(title)
        if content is not None:
            self._check_content(content)

        with self._write_transaction("update") as session:
            db_note = self._find_owned(session, owner_id, note_id, lock=True)
            self._check_expected_version(db_note, expected_version)
            if title is not None:
                db_note.title = title
            if content is not None:
                db_note.content = content
            self._advance(session, db_note)
            note = self._to_model(db_note)

        logger.info(f"Updated note {note_id} to version {note.version}")
        return note

    def delete(self, owner_id: str, note_id: int) -> Note:
        """Tombstone a note. History is kept.

        No version check: a delete that commits after a concurrent update
        wins, and an update that arrives after the delete sees not-found.

        Returns:
            The tombstoned note.

        Raises:
            NoteNotFoundError: Note absent, already tombstoned, or not owned.
        """
        self._check_note_id(note_id)

        with self._write_transaction("delete") as session:
            db_note = self._find_owned(session, owner_id, note_id, lock=True)
            db_note.deleted_at = utc_now()
            note = self._to_model(db_note)

        logger.info(f"Deleted note {note_id} at version {note.version}")
        return note

    def revert_to(
        self,
        owner_id: str,
        note_id: int,
        version_number: int,
        expected_current_version: Optional[int] = None,
    ) -> Note:
        """Make an old snapshot current again, as a new version.

        The snapshot's title and content are copied forward into version
        N+1; nothing in the history is rewritten.

        Raises:
            ValidationError: Malformed version numbers.
            NoteNotFoundError: Note absent, tombstoned, or not owned.
            ConcurrencyConflictError: expected_current_version is stale.
            VersionNotFoundError: No snapshot with that number.
        """
        self._check_note_id(note_id)
        self._check_version_number(version_number, "version_number")
        if expected_current_version is not None:
            self._check_version_number(expected_current_version, "expected_current_version")

        with self._write_transaction("revert") as session:
            db_note = self._find_owned(session, owner_id, note_id, lock=True)
            if expected_current_version is not None:
                self._check_expected_version(db_note, expected_current_version)
            target = self.versions.get_version(session, note_id, version_number)
            db_note.title = target.title
            db_note.content = target.content
            self._advance(session, db_note)
            note = self._to_model(db_note)

        logger.info(
            f"Reverted note {note_id} to snapshot {version_number} as version {note.version}"
        )
        return note

    # =========================================================================
    # Reads
    # =========================================================================

    def get_by_id(self, owner_id: str, note_id: int) -> Note:
        """Get a live note.

        Raises:
            NoteNotFoundError: Note absent, tombstoned, or not owned.
        """
        self._check_note_id(note_id)
        with self._read_session("get") as session:
            return self._to_model(self._find_owned(session, owner_id, note_id))

    def list_notes(
        self, owner_id: str, limit: Optional[int] = None, offset: int = 0
    ) -> List[Note]:
        """An owner's live notes, most recently updated first."""
        query = self._owned_notes(owner_id).order_by(
            DBNote.updated_at.desc(), DBNote.id.desc()
        )
        if offset > 0:
            query = query.offset(offset)
        if limit is not None:
            query = query.limit(limit)
        with self._read_session("list") as session:
            return [self._to_model(row) for row in session.scalars(query).all()]

    def count_notes(self, owner_id: str) -> int:
        query = select(func.count()).select_from(self._owned_notes(owner_id).subquery())
        with self._read_session("count") as session:
            return session.scalar(query) or 0

    def search(self, owner_id: str, query: str, limit: int = 50) -> List[SearchHit]:
        """Relevance-ranked search over an owner's live notes.

        Raises:
            ValidationError: If the query is blank.
            SearchError: If the query has no searchable words.
        """
        if not isinstance(query, str) or not query.strip():
            raise ValidationError(
                "Search query is required",
                field="query",
                code=ErrorCode.SEARCH_INVALID_QUERY,
            )

        ranked = self._fts.search(owner_id, query, limit=limit)
        if not ranked:
            return []

        mode = "fts5" if self._fts.available else "fallback"
        ids = [note_id for note_id, _ in ranked]
        with self._read_session("search") as session:
            rows = session.scalars(self._owned_notes(owner_id).where(DBNote.id.in_(ids)))
            by_id = {row.id: row for row in rows}
            # A note tombstoned between ranking and loading is dropped
            return [
                SearchHit(note=self._to_model(by_id[note_id]), rank=rank, search_mode=mode)
                for note_id, rank in ranked
                if note_id in by_id
            ]

    def list_versions(self, owner_id: str, note_id: int) -> List[NoteVersion]:
        """A note's snapshots, newest first. Readable after the note is deleted.

        Raises:
            NoteNotFoundError: Note absent or not owned.
        """
        self._check_note_id(note_id)
        with self._read_session("list_versions") as session:
            self._find_owned(session, owner_id, note_id, include_deleted=True)
            return [
                self.versions.to_model(row)
                for row in self.versions.list_versions(session, note_id)
            ]

    def get_version(self, owner_id: str, note_id: int, version_number: int) -> NoteVersion:
        """One snapshot of a note. Readable after the note is deleted.

        Raises:
            NoteNotFoundError: Note absent or not owned.
            VersionNotFoundError: No snapshot with that number.
        """
        self._check_note_id(note_id)
        self._check_version_number(version_number, "version_number")
        with self._read_session("get_version") as session:
            self._find_owned(session, owner_id, note_id, include_deleted=True)
            return self.versions.to_model(
                self.versions.get_version(session, note_id, version_number)
            )

    def verify_history(self, owner_id: str, note_id: int) -> bool:
        """Check that snapshots 1..version exist without gaps and the newest
        matches the note's current title and content."""
        self._check_note_id(note_id)
        with self._read_session("verify_history") as session:
            db_note = self._find_owned(session, owner_id, note_id, include_deleted=True)
            snapshots = self.versions.list_versions(session, note_id)
            numbers = [s.version_number for s in snapshots]
            if numbers != list(range(db_note.version, 0, -1)):
                logger.warning(
                    f"Note {note_id} at version {db_note.version} has snapshots {numbers}"
                )
                return False
            latest = snapshots[0]
            return latest.title == db_note.title and latest.content == db_note.content

    # =========================================================================
    # Search index maintenance
    # =========================================================================

    @property
    def fts_available(self) -> bool:
        return self._fts.available

    def rebuild_search_index(self) -> int:
        """Rebuild the FTS5 index from the notes table."""
        return self._fts.rebuild()
