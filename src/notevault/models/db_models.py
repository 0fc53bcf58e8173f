"""SQLAlchemy database models for the NoteVault server."""
import logging
from typing import Any, Optional

from sqlalchemy import (Column, DateTime, ForeignKey, Index, Integer, String,
                        Text, UniqueConstraint, create_engine, event, text)
from sqlalchemy.engine import Engine
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import declarative_base, relationship, sessionmaker
from sqlalchemy.pool import QueuePool, StaticPool

from notevault.config import config

logger = logging.getLogger(__name__)

Base = declarative_base()

# Execution option read by the SQLite "begin" listener. Write sessions bind
# to an engine carrying begin_mode="IMMEDIATE" so the writer lock is taken
# before the row is read.
BEGIN_MODE_OPTION = "notevault_begin_mode"


class DBUser(Base):
    """Database model for a note owner."""
    __tablename__ = "users"
    id = Column(String(255), primary_key=True)
    username = Column(String(255), nullable=False)
    created_at = Column(DateTime, nullable=False)

    notes = relationship(
        "DBNote",
        back_populates="owner",
        cascade="all, delete-orphan",
        passive_deletes=True,
    )

    def __repr__(self) -> str:
        return f"<User(id='{self.id}', username='{self.username}')>"


class DBNote(Base):
    """Database model for the current state of a note."""
    __tablename__ = "notes"
    id = Column(Integer, primary_key=True, autoincrement=True)
    owner_id = Column(
        String(255), ForeignKey("users.id", ondelete="CASCADE"), nullable=False
    )
    title = Column(String(255), nullable=False)
    content = Column(Text, nullable=False)
    version = Column(Integer, nullable=False)
    created_at = Column(DateTime, nullable=False)
    updated_at = Column(DateTime, nullable=False, index=True)
    deleted_at = Column(DateTime, nullable=True)

    owner = relationship("DBUser", back_populates="notes")
    versions = relationship(
        "DBNoteVersion",
        back_populates="note",
        cascade="all, delete-orphan",
        passive_deletes=True,
        order_by="DBNoteVersion.version_number.desc()",
    )

    # sqlite_autoincrement keeps ids (and so FTS rowids and cache keys) from
    # ever being reused after a hard delete.
    __table_args__ = (
        Index("ix_notes_owner_deleted", "owner_id", "deleted_at"),
        {"sqlite_autoincrement": True},
    )

    def __repr__(self) -> str:
        return (
            f"<Note(id={self.id}, owner='{self.owner_id}', "
            f"title='{self.title}', version={self.version})>"
        )


class DBNoteVersion(Base):
    """Database model for an immutable note snapshot."""
    __tablename__ = "note_versions"
    id = Column(Integer, primary_key=True, autoincrement=True)
    note_id = Column(
        Integer, ForeignKey("notes.id", ondelete="CASCADE"), nullable=False, index=True
    )
    version_number = Column(Integer, nullable=False)
    title = Column(String(255), nullable=False)
    content = Column(Text, nullable=False)
    created_at = Column(DateTime, nullable=False)

    note = relationship("DBNote", back_populates="versions")

    __table_args__ = (
        UniqueConstraint("note_id", "version_number", name="uq_note_version"),
    )

    def __repr__(self) -> str:
        return f"<NoteVersion(note_id={self.note_id}, version={self.version_number})>"


def _is_sqlite(url: str) -> bool:
    return url.startswith("sqlite")


def _is_memory_sqlite(url: str) -> bool:
    return url in ("sqlite://", "sqlite:///:memory:") or "mode=memory" in url


def create_db_engine(
    url: Optional[str] = None,
    lock_timeout: Optional[float] = None,
    echo: Optional[bool] = None,
) -> Engine:
    """Create an engine configured for concurrent writers.

    On SQLite:
    - WAL mode so readers never block the writer
    - foreign keys enforced (owner and snapshot cascades rely on them)
    - pysqlite's implicit BEGIN disabled; transactions are begun explicitly
      with the mode requested through BEGIN_MODE_OPTION
    - a busy timeout, so writers queue on the lock instead of failing

    Other backends get a plain pooled engine; row locks come from
    SELECT ... FOR UPDATE in the repository.
    """
    url = url or config.get_db_url()
    lock_timeout = config.lock_timeout if lock_timeout is None else lock_timeout
    echo = config.sql_echo if echo is None else echo

    if not _is_sqlite(url):
        return create_engine(url, echo=echo, pool_pre_ping=True, future=True)

    if _is_memory_sqlite(url):
        # One shared connection, otherwise every checkout sees an empty database
        engine = create_engine(
            url,
            echo=echo,
            poolclass=StaticPool,
            connect_args={"check_same_thread": False, "timeout": lock_timeout},
        )
    else:
        engine = create_engine(
            url,
            echo=echo,
            poolclass=QueuePool,
            pool_size=5,
            max_overflow=10,
            pool_timeout=30,
            pool_pre_ping=True,
            connect_args={"check_same_thread": False, "timeout": lock_timeout},
        )

    @event.listens_for(engine, "connect")
    def set_sqlite_pragma(dbapi_connection, connection_record):
        # Hand transaction control to the "begin" listener below
        dbapi_connection.isolation_level = None
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA journal_mode=WAL")
        cursor.execute("PRAGMA synchronous=NORMAL")
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.execute(f"PRAGMA busy_timeout={int(lock_timeout * 1000)}")
        cursor.close()

    @event.listens_for(engine, "begin")
    def do_begin(conn):
        mode = conn.get_execution_options().get(BEGIN_MODE_OPTION, "DEFERRED")
        conn.exec_driver_sql(f"BEGIN {mode}")

    return engine


def init_db(
    url: Optional[str] = None,
    lock_timeout: Optional[float] = None,
    engine: Optional[Engine] = None,
) -> Engine:
    """Create the schema (idempotent) and the full-text index.

    Args:
        url: Database URL. Defaults to the configured database.
        lock_timeout: Seconds a writer waits for the SQLite lock.
        engine: An existing engine to initialize instead of creating one.

    Returns:
        The initialized engine. The caller owns it and must dispose() it.
    """
    if engine is None:
        engine = create_db_engine(url, lock_timeout=lock_timeout)
    Base.metadata.create_all(engine)
    if engine.dialect.name == "sqlite":
        init_fts5(engine)
    return engine


def init_fts5(engine: Engine) -> bool:
    """Initialize the FTS5 table mirroring notes.title and notes.content.

    The table is an external-content index over `notes` keyed by the note id;
    triggers keep it in step with every insert, update and delete. Tombstoned
    rows stay indexed and are filtered at query time.

    Returns:
        True if FTS5 is available, False if this SQLite build lacks it.
    """
    try:
        with engine.begin() as conn:
            conn.execute(text("""
                CREATE VIRTUAL TABLE IF NOT EXISTS notes_fts USING fts5(
                    title,
                    content,
                    content='notes',
                    content_rowid='id'
                )
            """))
            conn.execute(text("""
                CREATE TRIGGER IF NOT EXISTS notes_ai AFTER INSERT ON notes BEGIN
                    INSERT INTO notes_fts(rowid, title, content)
                    VALUES (NEW.id, NEW.title, NEW.content);
                END
            """))
            conn.execute(text("""
                CREATE TRIGGER IF NOT EXISTS notes_ad AFTER DELETE ON notes BEGIN
                    INSERT INTO notes_fts(notes_fts, rowid, title, content)
                    VALUES ('delete', OLD.id, OLD.title, OLD.content);
                END
            """))
            conn.execute(text("""
                CREATE TRIGGER IF NOT EXISTS notes_au AFTER UPDATE ON notes BEGIN
                    INSERT INTO notes_fts(notes_fts, rowid, title, content)
                    VALUES ('delete', OLD.id, OLD.title, OLD.content);
                    INSERT INTO notes_fts(rowid, title, content)
                    VALUES (NEW.id, NEW.title, NEW.content);
                END
            """))
        return True
    except OperationalError as e:
        logger.warning(f"FTS5 unavailable, search will use LIKE fallback: {e}")
        return False


def rebuild_fts_index(engine: Engine) -> int:
    """Rebuild the FTS5 index from the notes table.

    Returns:
        Number of rows indexed.
    """
    with engine.begin() as conn:
        conn.execute(text("INSERT INTO notes_fts(notes_fts) VALUES('rebuild')"))
        count = conn.execute(text("SELECT COUNT(*) FROM notes")).scalar()
    return count or 0


def get_session_factory(engine: Engine, write: bool = False) -> Any:
    """Get a session factory for the database.

    Args:
        engine: Engine to bind to.
        write: Bind to a variant of the engine that begins transactions in
               IMMEDIATE mode (SQLite only; ignored elsewhere).
    """
    if write and engine.dialect.name == "sqlite":
        engine = engine.execution_options(**{BEGIN_MODE_OPTION: "IMMEDIATE"})
    return sessionmaker(bind=engine, expire_on_commit=False)
