"""Data models for the NoteVault server."""

import datetime
from datetime import timezone
from typing import Any, Dict, Optional

from pydantic import BaseModel, Field, field_validator

MAX_TITLE_LENGTH = 255


def utc_now() -> datetime.datetime:
    """Get current UTC time as timezone-aware datetime."""
    return datetime.datetime.now(timezone.utc)


def ensure_timezone_aware(
    dt_value: Optional[datetime.datetime],
) -> Optional[datetime.datetime]:
    """Ensure a datetime is timezone-aware, treating naive datetimes as UTC.

    SQLite hands datetimes back without tzinfo; everything the store writes
    is UTC, so naive values are tagged rather than converted.
    """
    if dt_value is None:
        return None
    if dt_value.tzinfo is None:
        return dt_value.replace(tzinfo=timezone.utc)
    return dt_value


def validate_title(value: str) -> str:
    """Validate a note title: non-blank and at most MAX_TITLE_LENGTH characters.

    Raises:
        ValueError: If the title is blank or too long
    """
    if value is None or not value.strip():
        raise ValueError("Title cannot be empty")
    if len(value) > MAX_TITLE_LENGTH:
        raise ValueError(f"Title must be between 1 and {MAX_TITLE_LENGTH} characters")
    return value


def validate_content(value: str) -> str:
    """Validate note content: non-blank.

    Raises:
        ValueError: If the content is blank
    """
    if value is None or not value.strip():
        raise ValueError("Content cannot be empty")
    return value


class User(BaseModel):
    """An owner of notes, as issued by the identity provider."""

    id: str = Field(..., description="Owner ID issued by the identity provider")
    username: str = Field(..., description="Display name")
    created_at: datetime.datetime = Field(default_factory=utc_now)

    model_config = {"frozen": True}

    @field_validator("id", "username")
    @classmethod
    def validate_not_blank(cls, v: str) -> str:
        if not v.strip():
            raise ValueError("User id and username cannot be empty")
        return v


class Note(BaseModel):
    """Current state of a note."""

    id: int = Field(..., description="Unique ID of the note")
    owner_id: str = Field(..., description="Owner of the note")
    title: str = Field(..., description="Title of the note")
    content: str = Field(..., description="Content of the note")
    version: int = Field(..., ge=1, description="Monotonic version counter")
    created_at: datetime.datetime = Field(..., description="When the note was created (UTC)")
    updated_at: datetime.datetime = Field(
        ..., description="When the note was last changed (UTC)"
    )
    deleted_at: Optional[datetime.datetime] = Field(
        default=None, description="Tombstone timestamp; None while the note is live"
    )

    model_config = {"frozen": True, "extra": "forbid"}

    @field_validator("title")
    @classmethod
    def check_title(cls, v: str) -> str:
        """Validate that the title is non-blank and fits the column."""
        return validate_title(v)

    @field_validator("content")
    @classmethod
    def check_content(cls, v: str) -> str:
        """Validate that the content is not empty."""
        return validate_content(v)

    @property
    def is_deleted(self) -> bool:
        return self.deleted_at is not None

    def to_dict(self) -> Dict[str, Any]:
        """JSON-compatible representation."""
        return self.model_dump(mode="json")


class NoteVersion(BaseModel):
    """Immutable snapshot of a note at one version."""

    note_id: int
    version_number: int = Field(..., ge=1)
    title: str
    content: str
    created_at: datetime.datetime

    model_config = {"frozen": True, "extra": "forbid"}

    def to_dict(self) -> Dict[str, Any]:
        """JSON-compatible representation."""
        return self.model_dump(mode="json")


class SearchHit(BaseModel):
    """One ranked full-text search result.

    Lower rank means more relevant (bm25 convention).
    """

    note: Note
    rank: float
    search_mode: str = "fts5"

    model_config = {"frozen": True}

    def to_dict(self) -> Dict[str, Any]:
        return self.model_dump(mode="json")
