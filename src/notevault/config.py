"""Configuration module for the NoteVault server."""

import logging
import os
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv
from pydantic import BaseModel, Field, model_validator

from notevault import __version__

# Project-level .env, anchored to this file rather than the process CWD.
_PROJECT_ROOT = Path(__file__).resolve().parent.parent.parent
load_dotenv(_PROJECT_ROOT / ".env")

# User-level overrides
_USER_ENV = Path.home() / ".notevault" / ".env"
load_dotenv(_USER_ENV)


logger = logging.getLogger(__name__)

CACHE_BACKENDS = ("memory", "none")


def _env_bool(name: str, default: str) -> bool:
    return os.getenv(name, default).lower() in ("true", "1", "yes")


class NoteVaultConfig(BaseModel):
    """Configuration for the NoteVault server."""

    base_dir: Path = Field(
        default_factory=lambda: Path(os.getenv("NOTEVAULT_BASE_DIR", "."))
    )
    # Database configuration
    database_path: Path = Field(
        default_factory=lambda: Path(
            os.getenv("NOTEVAULT_DATABASE_PATH", "data/db/notevault.db")
        )
    )
    # Full SQLAlchemy URL; takes precedence over database_path when set
    database_url: Optional[str] = Field(
        default_factory=lambda: os.getenv("NOTEVAULT_DATABASE_URL") or None
    )
    # Seconds a writer waits on a locked SQLite database before failing
    lock_timeout: float = Field(
        default_factory=lambda: float(os.getenv("NOTEVAULT_LOCK_TIMEOUT", "30"))
    )
    sql_echo: bool = Field(default_factory=lambda: _env_bool("NOTEVAULT_SQL_ECHO", "false"))

    # Cache configuration
    cache_backend: str = Field(
        default_factory=lambda: os.getenv("NOTEVAULT_CACHE_BACKEND", "memory").lower()
    )
    cache_ttl: int = Field(
        default_factory=lambda: int(os.getenv("NOTEVAULT_CACHE_TTL", "3600"))
    )
    cache_max_entries: int = Field(
        default_factory=lambda: int(os.getenv("NOTEVAULT_CACHE_MAX_ENTRIES", "10000"))
    )

    # Search
    search_limit: int = Field(
        default_factory=lambda: int(os.getenv("NOTEVAULT_SEARCH_LIMIT", "50"))
    )

    # Identity: the owner every request is made on behalf of. Supplied by
    # whoever launches the server and trusted without re-verification.
    owner_id: str = Field(
        default_factory=lambda: os.getenv("NOTEVAULT_OWNER_ID", "local")
    )
    owner_name: str = Field(
        default_factory=lambda: os.getenv("NOTEVAULT_OWNER_NAME", "local")
    )

    # Server configuration
    server_name: str = Field(default=os.getenv("NOTEVAULT_SERVER_NAME", "notevault"))
    server_version: str = Field(default=__version__)
    log_dir: Optional[Path] = Field(
        default_factory=lambda: (
            Path(os.getenv("NOTEVAULT_LOG_DIR"))
            if os.getenv("NOTEVAULT_LOG_DIR")
            else None
        )
    )

    @model_validator(mode="after")
    def _validate_limits(self) -> "NoteVaultConfig":
        """Reject settings the store and cache cannot work with."""
        if self.cache_backend not in CACHE_BACKENDS:
            raise ValueError(
                f"cache_backend must be one of {', '.join(CACHE_BACKENDS)}, "
                f"got '{self.cache_backend}'"
            )
        if self.cache_ttl < 1:
            raise ValueError("cache_ttl must be >= 1")
        if self.cache_max_entries < 1:
            raise ValueError("cache_max_entries must be >= 1")
        if self.search_limit < 1:
            raise ValueError("search_limit must be >= 1")
        if self.lock_timeout <= 0:
            raise ValueError("lock_timeout must be > 0")
        if not self.owner_id.strip():
            raise ValueError("owner_id cannot be empty")
        if self.cache_ttl < 2:
            logger.warning(
                "cache_ttl=%d leaves no room for search results, which are "
                "cached for half the TTL",
                self.cache_ttl,
            )
        return self

    @property
    def search_cache_ttl(self) -> int:
        """Search results change more often than single notes; cache them for half as long."""
        return max(1, self.cache_ttl // 2)

    def get_absolute_path(self, path: Path) -> Path:
        """Convert a relative path to an absolute path based on base_dir."""
        if path.is_absolute():
            return path
        return self.base_dir / path

    def get_db_url(self) -> str:
        """Get the database URL, defaulting to a SQLite file under base_dir."""
        if self.database_url:
            return self.database_url
        db_path = self.get_absolute_path(self.database_path)
        db_path.parent.mkdir(parents=True, exist_ok=True)
        return f"sqlite:///{db_path}"


# Process-wide defaults; components receive explicit values from main().
config = NoteVaultConfig()
