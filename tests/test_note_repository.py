"""Tests for the NoteRepository: versioned writes, tombstones and history."""
import warnings
from unittest.mock import patch

import pytest
from sqlalchemy import func, select
from sqlalchemy.exc import OperationalError, SADeprecationWarning

from notevault.exceptions import (
    ConcurrencyConflictError,
    DuplicateVersionError,
    ErrorCode,
    NoteNotFoundError,
    StorageUnavailableError,
    ValidationError,
    VersionNotFoundError,
)
from notevault.models.db_models import DBNote, DBNoteVersion
from tests.conftest import OTHER_OWNER, OWNER


def _snapshot_count(repository, note_id):
    with repository.session_factory() as session:
        return session.scalar(
            select(func.count(DBNoteVersion.id)).where(DBNoteVersion.note_id == note_id)
        )


class TestCreate:
    """Creating notes."""

    def test_create_starts_at_version_one_with_snapshot(self, note_repository):
        note = note_repository.create(OWNER, "First", "Hello")
        assert isinstance(note.id, int)
        assert note.version == 1
        assert note.owner_id == OWNER
        assert note.deleted_at is None

        versions = note_repository.list_versions(OWNER, note.id)
        assert [v.version_number for v in versions] == [1]
        assert versions[0].title == "First"
        assert versions[0].content == "Hello"

    def test_create_round_trip(self, note_repository):
        created = note_repository.create(OWNER, "Round trip", "Body text")
        fetched = note_repository.get_by_id(OWNER, created.id)
        assert fetched.title == created.title
        assert fetched.content == created.content
        assert fetched.version == 1
        assert fetched.created_at == created.created_at
        assert fetched.created_at.tzinfo is not None

    @pytest.mark.parametrize(
        "title,content,code",
        [
            ("", "content", ErrorCode.NOTE_TITLE_REQUIRED),
            ("   ", "content", ErrorCode.NOTE_TITLE_REQUIRED),
            ("x" * 256, "content", ErrorCode.NOTE_TITLE_TOO_LONG),
            ("title", "", ErrorCode.NOTE_CONTENT_REQUIRED),
            ("title", " \n ", ErrorCode.NOTE_CONTENT_REQUIRED),
        ],
    )
    def test_create_rejects_invalid_input_without_writing(
        self, note_repository, title, content, code
    ):
        with pytest.raises(ValidationError) as exc_info:
            note_repository.create(OWNER, title, content)
        assert exc_info.value.code == code
        assert note_repository.count_notes(OWNER) == 0

    def test_title_at_max_length_is_accepted(self, note_repository):
        note = note_repository.create(OWNER, "x" * 255, "content")
        assert len(note.title) == 255

    def test_create_for_unknown_owner_rejected(self, note_repository):
        with pytest.raises(ValidationError) as exc_info:
            note_repository.create("nobody", "Title", "Content")
        assert exc_info.value.field == "owner_id"


class TestUpdate:
    """Optimistic updates."""

    def test_writes_emit_no_deprecation_warnings(self, note_repository):
        with warnings.catch_warnings():
            warnings.simplefilter("error", SADeprecationWarning)
            note = note_repository.create(OWNER, "Title", "v1")
            note = note_repository.update(OWNER, note.id, 1, content="v2")
            note = note_repository.revert_to(OWNER, note.id, 1)
        assert note.version == 3

    def test_n_updates_give_version_one_plus_n(self, note_repository):
        note = note_repository.create(OWNER, "T0", "C0")
        for i in range(1, 6):
            note = note_repository.update(
                OWNER, note.id, expected_version=note.version, content=f"C{i}"
            )
        assert note.version == 6
        versions = note_repository.list_versions(OWNER, note.id)
        assert [v.version_number for v in versions] == [6, 5, 4, 3, 2, 1]
        assert versions[0].content == "C5"
        assert note_repository.verify_history(OWNER, note.id)

    def test_update_changes_only_supplied_fields(self, note_repository):
        note = note_repository.create(OWNER, "Title", "Content")
        updated = note_repository.update(OWNER, note.id, 1, title="New title")
        assert updated.title == "New title"
        assert updated.content == "Content"
        assert updated.version == 2
        assert updated.updated_at >= note.updated_at
        assert updated.created_at == note.created_at

    def test_update_with_nothing_to_change_rejected(self, note_repository):
        note = note_repository.create(OWNER, "Title", "Content")
        with pytest.raises(ValidationError):
            note_repository.update(OWNER, note.id, 1)
        assert note_repository.get_by_id(OWNER, note.id).version == 1

    def test_stale_version_raises_conflict_and_writes_nothing(self, note_repository):
        note = note_repository.create(OWNER, "Title", "Content")
        note_repository.update(OWNER, note.id, 1, content="Second")

        with pytest.raises(ConcurrencyConflictError) as exc_info:
            note_repository.update(OWNER, note.id, 1, content="Lost update")

        error = exc_info.value
        assert error.current_version == 2
        assert error.expected_version == 1
        assert error.code == ErrorCode.VERSION_CONFLICT
        current = note_repository.get_by_id(OWNER, note.id)
        assert current.content == "Second"
        assert current.version == 2
        assert _snapshot_count(note_repository, note.id) == 2

    def test_update_validates_fields(self, note_repository):
        note = note_repository.create(OWNER, "Title", "Content")
        with pytest.raises(ValidationError):
            note_repository.update(OWNER, note.id, 1, title="")
        with pytest.raises(ValidationError):
            note_repository.update(OWNER, note.id, 1, content="  ")
        with pytest.raises(ValidationError):
            note_repository.update(OWNER, note.id, 0, content="x")

    def test_update_other_owners_note_is_not_found(self, note_repository):
        note = note_repository.create(OWNER, "Private", "Mine")
        with pytest.raises(NoteNotFoundError):
            note_repository.update(OTHER_OWNER, note.id, 1, content="Theirs")
        assert note_repository.get_by_id(OWNER, note.id).content == "Mine"

    def test_storage_failure_rolls_back_row_and_snapshot(self, note_repository):
        note = note_repository.create(OWNER, "Title", "Content")
        failure = OperationalError("INSERT INTO note_versions", {}, Exception("disk I/O error"))

        with patch.object(note_repository.versions, "append", side_effect=failure):
            with pytest.raises(StorageUnavailableError) as exc_info:
                note_repository.update(OWNER, note.id, 1, content="Never saved")

        assert exc_info.value.retryable
        current = note_repository.get_by_id(OWNER, note.id)
        assert current.version == 1
        assert current.content == "Content"
        assert _snapshot_count(note_repository, note.id) == 1

    def test_duplicate_snapshot_aborts_update(self, note_repository):
        note = note_repository.create(OWNER, "Title", "Content")
        # Plant the snapshot the next update would write
        with note_repository.session_factory() as session:
            with session.begin():
                note_repository.versions.append(session, note.id, "Stray", "Stray", 2)

        with pytest.raises(DuplicateVersionError):
            note_repository.update(OWNER, note.id, 1, content="Blocked")

        current = note_repository.get_by_id(OWNER, note.id)
        assert current.version == 1
        assert current.content == "Content"

    @pytest.mark.parametrize("bad_id", [0, -3, "1", True, None])
    def test_malformed_note_id_rejected(self, note_repository, bad_id):
        with pytest.raises(ValidationError):
            note_repository.update(OWNER, bad_id, 1, content="x")


class TestDelete:
    """Tombstone deletes."""

    def test_delete_hides_note_but_keeps_history(self, note_repository):
        note = note_repository.create(OWNER, "Doomed", "v1")
        note_repository.update(OWNER, note.id, 1, content="v2")

        deleted = note_repository.delete(OWNER, note.id)
        assert deleted.is_deleted
        assert deleted.version == 2

        with pytest.raises(NoteNotFoundError):
            note_repository.get_by_id(OWNER, note.id)
        assert note_repository.list_notes(OWNER) == []
        assert note_repository.count_notes(OWNER) == 0

        versions = note_repository.list_versions(OWNER, note.id)
        assert [v.version_number for v in versions] == [2, 1]
        assert note_repository.get_version(OWNER, note.id, 1).content == "v1"
        assert note_repository.verify_history(OWNER, note.id)

    def test_delete_keeps_row(self, note_repository):
        note = note_repository.create(OWNER, "Doomed", "v1")
        note_repository.delete(OWNER, note.id)
        with note_repository.session_factory() as session:
            row = session.get(DBNote, note.id)
            assert row is not None
            assert row.deleted_at is not None

    def test_mutations_after_delete_are_not_found(self, note_repository):
        note = note_repository.create(OWNER, "Doomed", "v1")
        note_repository.delete(OWNER, note.id)

        with pytest.raises(NoteNotFoundError):
            note_repository.delete(OWNER, note.id)
        with pytest.raises(NoteNotFoundError):
            note_repository.update(OWNER, note.id, 1, content="Zombie")
        with pytest.raises(NoteNotFoundError):
            note_repository.revert_to(OWNER, note.id, 1)

    def test_delete_other_owners_note_is_not_found(self, note_repository):
        note = note_repository.create(OWNER, "Mine", "Content")
        with pytest.raises(NoteNotFoundError):
            note_repository.delete(OTHER_OWNER, note.id)
        assert note_repository.get_by_id(OWNER, note.id).version == 1

    def test_history_of_other_owners_note_is_not_found(self, note_repository):
        note = note_repository.create(OWNER, "Mine", "Content")
        with pytest.raises(NoteNotFoundError):
            note_repository.list_versions(OTHER_OWNER, note.id)
        with pytest.raises(NoteNotFoundError):
            note_repository.get_version(OTHER_OWNER, note.id, 1)


class TestRevert:
    """Reverting to earlier snapshots."""

    def test_revert_copies_snapshot_forward(self, note_repository):
        note = note_repository.create(OWNER, "Title A", "Content A")
        note_repository.update(OWNER, note.id, 1, title="Title B", content="Content B")

        reverted = note_repository.revert_to(OWNER, note.id, 1)

        assert reverted.version == 3
        assert reverted.title == "Title A"
        assert reverted.content == "Content A"
        versions = note_repository.list_versions(OWNER, note.id)
        assert [v.version_number for v in versions] == [3, 2, 1]
        # The intermediate version is untouched
        assert versions[1].title == "Title B"
        assert versions[1].content == "Content B"
        assert note_repository.verify_history(OWNER, note.id)

    def test_revert_to_missing_version(self, note_repository):
        note = note_repository.create(OWNER, "Title", "Content")
        with pytest.raises(VersionNotFoundError) as exc_info:
            note_repository.revert_to(OWNER, note.id, 7)
        assert exc_info.value.version_number == 7
        assert note_repository.get_by_id(OWNER, note.id).version == 1
        assert _snapshot_count(note_repository, note.id) == 1

    def test_revert_with_stale_expected_version(self, note_repository):
        note = note_repository.create(OWNER, "Title", "Content")
        note_repository.update(OWNER, note.id, 1, content="Second")
        with pytest.raises(ConcurrencyConflictError) as exc_info:
            note_repository.revert_to(OWNER, note.id, 1, expected_current_version=1)
        assert exc_info.value.current_version == 2
        assert note_repository.get_by_id(OWNER, note.id).version == 2

    def test_revert_with_current_expected_version(self, note_repository):
        note = note_repository.create(OWNER, "Title", "Content")
        note_repository.update(OWNER, note.id, 1, content="Second")
        reverted = note_repository.revert_to(OWNER, note.id, 1, expected_current_version=2)
        assert reverted.version == 3
        assert reverted.content == "Content"


class TestReads:
    """Listing and version reads."""

    def test_list_orders_by_most_recent_update(self, note_repository):
        first = note_repository.create(OWNER, "First", "1")
        second = note_repository.create(OWNER, "Second", "2")
        third = note_repository.create(OWNER, "Third", "3")
        note_repository.update(OWNER, first.id, 1, content="touched")

        ids = [n.id for n in note_repository.list_notes(OWNER)]
        assert ids == [first.id, third.id, second.id]

    def test_list_pagination(self, note_repository):
        created = [note_repository.create(OWNER, f"Note {i}", "body") for i in range(5)]
        newest_first = [n.id for n in reversed(created)]

        assert [n.id for n in note_repository.list_notes(OWNER, limit=2)] == newest_first[:2]
        assert [n.id for n in note_repository.list_notes(OWNER, limit=2, offset=2)] == newest_first[2:4]
        assert [n.id for n in note_repository.list_notes(OWNER, offset=4)] == newest_first[4:]

    def test_list_is_owner_scoped(self, note_repository):
        note_repository.create(OWNER, "Mine", "a")
        theirs = note_repository.create(OTHER_OWNER, "Theirs", "b")
        assert [n.id for n in note_repository.list_notes(OTHER_OWNER)] == [theirs.id]
        assert note_repository.count_notes(OWNER) == 1

    def test_get_other_owners_note_is_not_found(self, note_repository):
        note = note_repository.create(OWNER, "Mine", "Content")
        with pytest.raises(NoteNotFoundError):
            note_repository.get_by_id(OTHER_OWNER, note.id)

    def test_get_missing_note(self, note_repository):
        with pytest.raises(NoteNotFoundError) as exc_info:
            note_repository.get_by_id(OWNER, 999)
        assert exc_info.value.code == ErrorCode.NOTE_NOT_FOUND

    def test_get_version(self, note_repository):
        note = note_repository.create(OWNER, "Title", "One")
        note_repository.update(OWNER, note.id, 1, content="Two")
        snapshot = note_repository.get_version(OWNER, note.id, 2)
        assert snapshot.version_number == 2
        assert snapshot.content == "Two"
        with pytest.raises(VersionNotFoundError):
            note_repository.get_version(OWNER, note.id, 3)

    def test_verify_history_detects_gap(self, note_repository):
        note = note_repository.create(OWNER, "Title", "One")
        note_repository.update(OWNER, note.id, 1, content="Two")
        with note_repository.session_factory() as session:
            with session.begin():
                snapshot = note_repository.versions.get_version(session, note.id, 1)
                session.delete(snapshot)
        assert note_repository.verify_history(OWNER, note.id) is False
