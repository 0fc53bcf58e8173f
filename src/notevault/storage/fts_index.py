"""FTS5 full-text search over notes.

Encapsulates query building, owner scoping, graceful degradation to LIKE
matching, and index recovery. Extracted from NoteRepository for cohesion.
"""
import logging
import sqlite3
from typing import Any, Callable, List, Tuple

from sqlalchemy import text
from sqlalchemy.exc import DatabaseError as SQLAlchemyDatabaseError
from sqlalchemy.exc import OperationalError as SQLAlchemyOperationalError

from notevault.exceptions import ErrorCode, SearchError, StorageUnavailableError
from notevault.models.db_models import rebuild_fts_index
from notevault.utils import escape_like_pattern, tokenize_query

logger = logging.getLogger(__name__)

# (note_id, rank) pairs; lower rank is more relevant
RankedIds = List[Tuple[int, float]]


class FtsIndex:
    """Owner-scoped FTS5 search with graceful degradation.

    Queries are treated as natural language: each word is matched as a
    literal term and a note matches if it contains any of them. bm25
    decides relevance; ties go to the most recently updated note.

    Args:
        engine: SQLAlchemy engine used for database access.
        session_factory: Callable returning a context-manager session.
    """

    def __init__(self, engine: Any, session_factory: Callable) -> None:
        self.engine = engine
        self._session_factory = session_factory
        self.available: bool = engine.dialect.name == "sqlite" and self._table_exists()

    def _table_exists(self) -> bool:
        with self._session_factory() as session:
            found = session.execute(
                text(
                    "SELECT name FROM sqlite_master "
                    "WHERE type = 'table' AND name = 'notes_fts'"
                )
            ).first()
        return found is not None

    # ------------------------------------------------------------------
    # Public query API
    # ------------------------------------------------------------------

    def search(self, owner_id: str, query: str, limit: int = 50) -> RankedIds:
        """Rank an owner's live notes against a free-text query.

        Returns:
            (note_id, rank) pairs, most relevant first.

        Raises:
            SearchError: If the query has no searchable words.
            StorageUnavailableError: If the store fails while searching,
                including during fallback search.
        """
        tokens = tokenize_query(query)
        if not tokens:
            raise SearchError(
                "Search query has no searchable words",
                query=query,
                code=ErrorCode.SEARCH_INVALID_QUERY,
            )

        if not self.available:
            logger.debug("FTS5 unavailable, using fallback search")
            return self._fallback_text_search(owner_id, tokens, limit)

        match_expr = self._build_match(tokens)
        sql = text("""
            SELECT n.id, bm25(notes_fts) AS score
            FROM notes_fts
            JOIN notes n ON n.id = notes_fts.rowid
            WHERE notes_fts MATCH :match
              AND n.owner_id = :owner_id
              AND n.deleted_at IS NULL
            ORDER BY score ASC, n.updated_at DESC, n.id DESC
            LIMIT :limit
        """)

        with self._session_factory() as session:
            try:
                rows = session.execute(
                    sql, {"match": match_expr, "owner_id": owner_id, "limit": limit}
                ).fetchall()
                return [(row[0], float(row[1])) for row in rows]

            except (sqlite3.OperationalError, SQLAlchemyOperationalError) as e:
                logger.warning(
                    f"FTS5 query failed for '{query}': {e}. Using fallback search."
                )
                return self._fallback_text_search(owner_id, tokens, limit)

            except (sqlite3.DatabaseError, SQLAlchemyDatabaseError) as e:
                error_msg = str(e).lower()
                if "malformed" in error_msg or "corrupt" in error_msg:
                    logger.error(f"FTS5 corruption detected: {e}. Attempting rebuild...")
                    if self._attempt_recovery():
                        logger.info("FTS5 rebuilt successfully, retrying search")
                        return self.search(owner_id, query, limit)
                    logger.error("FTS5 recovery failed. Disabling FTS5 for this session.")
                    self.available = False
                else:
                    logger.error(f"FTS5 database error: {e}. Using fallback search.")
                return self._fallback_text_search(owner_id, tokens, limit)

    def rebuild(self) -> int:
        """Rebuild the FTS5 index from the notes table."""
        return rebuild_fts_index(self.engine)

    # ------------------------------------------------------------------
    # Query building
    # ------------------------------------------------------------------

    @staticmethod
    def _build_match(tokens: List[str]) -> str:
        """Quote every token so FTS5 operators in user input are inert."""
        quoted = ['"' + token.replace('"', '""') + '"' for token in tokens]
        return " OR ".join(quoted)

    # ------------------------------------------------------------------
    # Fallback & recovery
    # ------------------------------------------------------------------

    def _fallback_text_search(
        self, owner_id: str, tokens: List[str], limit: int = 50
    ) -> RankedIds:
        """LIKE-based ranking used when FTS5 is missing or broken.

        Each token found in the title scores 2, in the content 1; the rank
        is the negated score so ordering matches bm25 (lower is better).
        """
        clauses = []
        params: dict = {"owner_id": owner_id, "limit": limit}
        score_terms = []
        for i, token in enumerate(tokens):
            params[f"t{i}"] = f"%{escape_like_pattern(token)}%"
            clauses.append(
                f"title LIKE :t{i} ESCAPE '\\' OR content LIKE :t{i} ESCAPE '\\'"
            )
            score_terms.append(
                f"(CASE WHEN title LIKE :t{i} ESCAPE '\\' THEN 2 ELSE 0 END"
                f" + CASE WHEN content LIKE :t{i} ESCAPE '\\' THEN 1 ELSE 0 END)"
            )

        score_expr = " + ".join(score_terms)
        where_expr = " OR ".join(clauses)
        sql = text(f"""
            SELECT id, -({score_expr}) AS score
            FROM notes
            WHERE owner_id = :owner_id
              AND deleted_at IS NULL
              AND ({where_expr})
            ORDER BY score ASC, updated_at DESC, id DESC
            LIMIT :limit
        """)

        try:
            with self._session_factory() as session:
                rows = session.execute(sql, params).fetchall()
        except SQLAlchemyDatabaseError as e:
            logger.error(f"Fallback text search failed for {tokens}: {e}")
            raise StorageUnavailableError(
                "Storage failure during search", operation="search", original_error=e
            ) from e

        logger.debug(f"Fallback search returned {len(rows)} results for {tokens}")
        return [(row[0], float(row[1])) for row in rows]

    def _attempt_recovery(self) -> bool:
        """Attempt to recover FTS5 by rebuilding the index."""
        try:
            count = self.rebuild()
            logger.info(f"FTS5 index rebuilt with {count} notes")
            return True
        except SQLAlchemyDatabaseError as e:
            logger.error(f"FTS5 rebuild failed: {e}")
            return False
