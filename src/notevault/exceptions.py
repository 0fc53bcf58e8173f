"""Custom exceptions for the NoteVault server.

Every error the store can report to a caller is a NoteVaultError carrying a
machine-readable ErrorCode, so the request layer can map it without string
matching.
"""
from enum import Enum
from typing import Any, Dict, Optional


class ErrorCode(Enum):
    """Error codes for machine-readable error identification."""

    # Note errors (1xxx)
    NOTE_NOT_FOUND = 1001
    NOTE_VALIDATION_FAILED = 1002
    NOTE_TITLE_REQUIRED = 1004
    NOTE_CONTENT_REQUIRED = 1005
    NOTE_TITLE_TOO_LONG = 1006

    # Version errors (2xxx)
    VERSION_CONFLICT = 2001
    VERSION_NOT_FOUND = 2002
    VERSION_DUPLICATE = 2003

    # Storage errors (4xxx)
    STORAGE_UNAVAILABLE = 4001
    STORAGE_WRITE_FAILED = 4002
    CACHE_UNAVAILABLE = 4101

    # Search errors (5xxx)
    SEARCH_FAILED = 5001
    SEARCH_INVALID_QUERY = 5002

    # Configuration errors (6xxx)
    CONFIG_INVALID = 6001

    # Validation errors (7xxx)
    VALIDATION_FAILED = 7001


class NoteVaultError(Exception):
    """Base exception for all NoteVault errors.

    Attributes:
        message: Human-readable error message
        code: Machine-readable error code
        details: Additional context about the error
    """

    retryable = False

    def __init__(
        self,
        message: str,
        code: ErrorCode = ErrorCode.VALIDATION_FAILED,
        details: Optional[Dict[str, Any]] = None,
    ):
        self.message = message
        self.code = code
        self.details = details or {}
        super().__init__(message)

    def to_dict(self) -> Dict[str, Any]:
        """Convert exception to a dictionary for serialization."""
        return {
            "error": self.__class__.__name__,
            "code": self.code.value,
            "code_name": self.code.name,
            "message": self.message,
            "retryable": self.retryable,
            "details": self.details,
        }

    def __str__(self) -> str:
        if self.details:
            detail_str = ", ".join(f"{k}={v}" for k, v in self.details.items())
            return f"[{self.code.name}] {self.message} ({detail_str})"
        return f"[{self.code.name}] {self.message}"


class ValidationError(NoteVaultError):
    """Raised when caller input is malformed."""

    def __init__(
        self,
        message: str,
        field: Optional[str] = None,
        value: Optional[Any] = None,
        code: ErrorCode = ErrorCode.VALIDATION_FAILED,
    ):
        details = {}
        if field:
            details["field"] = field
        if value is not None:
            details["value"] = str(value)[:100]

        super().__init__(message, code=code, details=details)
        self.field = field
        self.value = value


class NoteNotFoundError(NoteVaultError):
    """Raised when a note is absent, tombstoned, or owned by someone else.

    The three cases are reported identically so callers cannot discover the
    existence of other owners' notes.
    """

    def __init__(self, note_id: Any, message: Optional[str] = None):
        super().__init__(
            message or f"Note with ID '{note_id}' not found",
            code=ErrorCode.NOTE_NOT_FOUND,
            details={"note_id": note_id},
        )
        self.note_id = note_id


class VersionNotFoundError(NoteVaultError):
    """Raised when a requested snapshot does not exist."""

    def __init__(self, note_id: Any, version_number: int):
        super().__init__(
            f"Version {version_number} of note '{note_id}' not found",
            code=ErrorCode.VERSION_NOT_FOUND,
            details={"note_id": note_id, "version_number": version_number},
        )
        self.note_id = note_id
        self.version_number = version_number


class ConcurrencyConflictError(NoteVaultError):
    """Raised when the caller's expected version is stale.

    Carries the authoritative current version so the caller can re-fetch
    and retry without another round trip to discover it.
    """

    def __init__(self, note_id: Any, expected_version: int, current_version: int):
        super().__init__(
            "Note has been modified by another writer. "
            f"Expected version {expected_version}, current version is {current_version}",
            code=ErrorCode.VERSION_CONFLICT,
            details={
                "note_id": note_id,
                "expected_version": expected_version,
                "current_version": current_version,
            },
        )
        self.note_id = note_id
        self.expected_version = expected_version
        self.current_version = current_version


class DuplicateVersionError(NoteVaultError):
    """Raised when a snapshot number is written twice for the same note.

    Never a user error: it means the version counter and the history
    disagree.
    """

    def __init__(self, note_id: Any, version_number: int):
        super().__init__(
            f"Snapshot {version_number} already exists for note '{note_id}'",
            code=ErrorCode.VERSION_DUPLICATE,
            details={"note_id": note_id, "version_number": version_number},
        )
        self.note_id = note_id
        self.version_number = version_number


class StorageUnavailableError(NoteVaultError):
    """Raised when the transactional store fails mid-operation.

    The transaction has been rolled back; the caller may retry.
    """

    retryable = True

    def __init__(
        self,
        message: str,
        operation: Optional[str] = None,
        code: ErrorCode = ErrorCode.STORAGE_UNAVAILABLE,
        original_error: Optional[Exception] = None,
    ):
        details = {}
        if operation:
            details["operation"] = operation
        if original_error:
            details["original_error"] = str(original_error)[:200]

        super().__init__(message, code=code, details=details)
        self.operation = operation
        self.original_error = original_error


class CacheUnavailableError(NoteVaultError):
    """Raised by cache stores when the backing store cannot be reached.

    Absorbed by the cache coordinator; never reaches a caller.
    """

    retryable = True

    def __init__(
        self,
        message: str,
        key: Optional[str] = None,
        original_error: Optional[Exception] = None,
    ):
        details = {}
        if key:
            details["key"] = key[:100]
        if original_error:
            details["original_error"] = str(original_error)[:200]
        super().__init__(message, code=ErrorCode.CACHE_UNAVAILABLE, details=details)
        self.key = key
        self.original_error = original_error


class SearchError(NoteVaultError):
    """Raised for search-related errors."""

    def __init__(
        self,
        message: str,
        query: Optional[str] = None,
        code: ErrorCode = ErrorCode.SEARCH_FAILED,
    ):
        details = {}
        if query:
            details["query"] = query[:100]

        super().__init__(message, code=code, details=details)
        self.query = query


class ConfigurationError(NoteVaultError):
    """Raised for configuration-related errors."""

    def __init__(
        self,
        message: str,
        config_key: Optional[str] = None,
        code: ErrorCode = ErrorCode.CONFIG_INVALID,
    ):
        details = {}
        if config_key:
            details["config_key"] = config_key

        super().__init__(message, code=code, details=details)
        self.config_key = config_key
