"""Append-only store of note snapshots.

The version store has no transactions or locks of its own: every call runs
inside a session opened by NoteRepository, so a snapshot is committed or
rolled back together with the note row it describes.
"""
import logging
from typing import List, Optional

from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from notevault.exceptions import DuplicateVersionError, VersionNotFoundError
from notevault.models.db_models import DBNoteVersion
from notevault.models.schema import NoteVersion, ensure_timezone_aware, utc_now

logger = logging.getLogger(__name__)


class VersionStore:
    """Snapshot history for notes, keyed by (note_id, version_number)."""

    def append(
        self,
        session: Session,
        note_id: int,
        title: str,
        content: str,
        version_number: int,
    ) -> DBNoteVersion:
        """Record a snapshot in the caller's transaction.

        Raises:
            DuplicateVersionError: If the snapshot number is already taken.
                The session is unusable afterwards and must be rolled back.
        """
        existing = session.scalar(
            select(DBNoteVersion.id).where(
                DBNoteVersion.note_id == note_id,
                DBNoteVersion.version_number == version_number,
            )
        )
        if existing is not None:
            logger.error(
                f"Version history out of step for note {note_id}: "
                f"snapshot {version_number} already exists"
            )
            raise DuplicateVersionError(note_id, version_number)

        snapshot = DBNoteVersion(
            note_id=note_id,
            version_number=version_number,
            title=title,
            content=content,
            created_at=utc_now(),
        )
        session.add(snapshot)
        try:
            session.flush()
        except IntegrityError as e:
            # Lost a race the existence check could not see
            logger.error(
                f"Unique constraint rejected snapshot {version_number} "
                f"for note {note_id}: {e}"
            )
            raise DuplicateVersionError(note_id, version_number) from e
        return snapshot

    def list_versions(self, session: Session, note_id: int) -> List[DBNoteVersion]:
        """All snapshots of a note, newest first."""
        query = (
            select(DBNoteVersion)
            .where(DBNoteVersion.note_id == note_id)
            .order_by(DBNoteVersion.version_number.desc())
        )
        return list(session.scalars(query).all())

    def get_version(
        self, session: Session, note_id: int, version_number: int
    ) -> DBNoteVersion:
        """A single snapshot.

        Raises:
            VersionNotFoundError: If the note has no such snapshot.
        """
        snapshot = session.scalar(
            select(DBNoteVersion).where(
                DBNoteVersion.note_id == note_id,
                DBNoteVersion.version_number == version_number,
            )
        )
        if snapshot is None:
            raise VersionNotFoundError(note_id, version_number)
        return snapshot

    def count_versions(self, session: Session, note_id: int) -> int:
        return session.scalar(
            select(func.count(DBNoteVersion.id)).where(DBNoteVersion.note_id == note_id)
        ) or 0

    def latest_version_number(self, session: Session, note_id: int) -> Optional[int]:
        return session.scalar(
            select(func.max(DBNoteVersion.version_number)).where(
                DBNoteVersion.note_id == note_id
            )
        )

    @staticmethod
    def to_model(snapshot: DBNoteVersion) -> NoteVersion:
        """Convert a snapshot row to its immutable model."""
        return NoteVersion(
            note_id=snapshot.note_id,
            version_number=snapshot.version_number,
            title=snapshot.title,
            content=snapshot.content,
            created_at=ensure_timezone_aware(snapshot.created_at),
        )
