"""MCP server implementation for the note vault."""

import logging
import uuid
from typing import Any, List, Optional

from mcp.server.fastmcp import FastMCP

from notevault.config import config
from notevault.exceptions import NoteVaultError, ValidationError
from notevault.models.schema import Note, NoteVersion
from notevault.observability import (
    OUTCOME_CONFLICT,
    OUTCOME_FAILED,
    OUTCOME_INVALID,
    OUTCOME_NOT_FOUND,
    OUTCOME_UNAVAILABLE,
    metrics,
    timed_operation,
)
from notevault.services.cache_coordinator import CacheCoordinator
from notevault.services.note_service import NoteService
from notevault.storage.cache_store import CacheStore
from notevault.storage.note_repository import NoteRepository
from notevault.storage.user_repository import UserRepository

logger = logging.getLogger(__name__)

PREVIEW_LENGTH = 200


def _parse_note_id(note_id: Any) -> int:
    """Note ids arrive as strings from MCP clients; the store keys on integers."""
    try:
        value = int(str(note_id).strip())
    except ValueError:
        raise ValidationError(
            "Note ID must be a positive integer", field="note_id", value=note_id
        ) from None
    if value < 1:
        raise ValidationError("Note ID must be a positive integer", field="note_id", value=note_id)
    return value


def _format_note(note: Note) -> str:
    result = f"# {note.title}\n"
    result += f"ID: {note.id}\n"
    result += f"Version: {note.version}\n"
    result += f"Created: {note.created_at.isoformat()}\n"
    result += f"Updated: {note.updated_at.isoformat()}\n"
    result += f"\n{note.content}\n"
    return result


def _preview(content: str) -> str:
    flat = " ".join(content.split())
    if len(flat) <= PREVIEW_LENGTH:
        return flat
    return flat[:PREVIEW_LENGTH] + "..."


class NoteVaultMcpServer:
    """MCP server exposing one owner's notes.

    The owner id comes from configuration (the launcher authenticates the
    user) and is trusted as-is. The server does not own the engine or the
    cache store; whoever created them closes them.
    """

    def __init__(
        self,
        engine: Any,
        cache_store: CacheStore,
        owner_id: Optional[str] = None,
        owner_name: Optional[str] = None,
    ):
        """Initialize the MCP server.

        Args:
            engine: Initialized SQLAlchemy engine shared by all repositories.
            cache_store: Cache backend behind the read-through cache.
            owner_id: Owner all tools act for. Defaults to config.owner_id.
            owner_name: Display name registered for a new owner.
        """
        self.mcp = FastMCP(config.server_name)
        self.owner_id = owner_id or config.owner_id

        self.user_repository = UserRepository(engine)
        self.user_repository.ensure(self.owner_id, owner_name or config.owner_name)

        self.repository = NoteRepository(engine)
        self.cache = CacheCoordinator(cache_store, default_ttl=config.cache_ttl)
        self.note_service = NoteService(
            self.repository,
            self.cache,
            search_cache_ttl=config.search_cache_ttl,
            search_limit=config.search_limit,
        )
        self._register_tools()
        logger.info(f"NoteVault MCP server initialized for owner {self.owner_id}")

    def format_error_response(self, error: Exception) -> str:
        """Format an error response in a consistent way.

        Domain errors carry messages meant for the caller. Anything else is
        logged with a reference id and reported without internals.
        """
        error_id = str(uuid.uuid4())[:8]

        if isinstance(error, NoteVaultError):
            logger.error(
                f"[{error.code.name}] [{error_id}]: {error.message}",
                extra={"error_details": error.details},
            )
            if error.retryable:
                return f"Error: {error.message} (temporary, retry later; ref: {error_id})"
            return f"Error: {error.message}"
        elif isinstance(error, ValueError):
            logger.error(f"Validation error [{error_id}]: {str(error)}")
            return f"Error: Invalid input (ref: {error_id})"
        else:
            logger.error(f"Unexpected error [{error_id}]: {str(error)}", exc_info=True)
            return f"Error: An unexpected error occurred (ref: {error_id})"

    def _report_failure(self, op: dict, error: Exception) -> str:
        op["error"] = error
        return self.format_error_response(error)

    def _register_tools(self) -> None:
        """Register MCP tools."""

        @self.mcp.tool(name="nv_create_note")
        def nv_create_note(title: str, content: str) -> str:
            """Create a new note.
            Args:
                title: The title of the note (1-255 characters)
                content: The body of the note
            """
            with timed_operation("nv_create_note", title=title[:30]) as op:
                try:
                    note = self.note_service.create_note(self.owner_id, title, content)
                    op["note_id"] = note.id
                    return f"Note created successfully with ID: {note.id} (version {note.version})"
                except Exception as e:
                    return self._report_failure(op, e)

        @self.mcp.tool(name="nv_get_note")
        def nv_get_note(note_id: str) -> str:
            """Retrieve a note by ID.
            Args:
                note_id: The ID of the note
            Returns:
                The note with its current version. Pass the version as
                expected_version to nv_update_note.
            """
            with timed_operation("nv_get_note", note_id=note_id) as op:
                try:
                    note = self.note_service.get_note(self.owner_id, _parse_note_id(note_id))
                    op["found"] = True
                    return _format_note(note)
                except Exception as e:
                    return self._report_failure(op, e)

        @self.mcp.tool(name="nv_list_notes")
        def nv_list_notes(limit: Optional[int] = None, offset: int = 0) -> str:
            """List notes, most recently updated first.
            Args:
                limit: Maximum number of notes to return (default: all)
                offset: Number of notes to skip (for pagination)
            """
            with timed_operation("nv_list_notes") as op:
                try:
                    notes = self.note_service.list_notes(self.owner_id, limit=limit, offset=offset)
                    op["result_count"] = len(notes)
                    if not notes:
                        return "No notes found."
                    output = f"Found {len(notes)} notes:\n\n"
                    for i, note in enumerate(notes, 1):
                        output += f"{i + offset}. {note.title} (ID: {note.id}, v{note.version})\n"
                        output += f"   Updated: {note.updated_at.strftime('%Y-%m-%d %H:%M')}\n"
                    return output
                except Exception as e:
                    return self._report_failure(op, e)

        @self.mcp.tool(name="nv_update_note")
        def nv_update_note(
            note_id: str,
            expected_version: int,
            title: Optional[str] = None,
            content: Optional[str] = None,
        ) -> str:
            """Update a note's title and/or content.
            Args:
                note_id: The ID of the note
                expected_version: The version you last read (from nv_get_note).
                    If someone else changed the note since, nothing is written
                    and the current version is reported so you can re-read and retry.
                title: New title (optional)
                content: New content (optional)
            """
            with timed_operation("nv_update_note", note_id=note_id) as op:
                try:
                    note = self.note_service.update_note(
                        self.owner_id,
                        _parse_note_id(note_id),
                        expected_version,
                        title=title,
                        content=content,
                    )
                    op["version"] = note.version
                    return f"Note updated successfully: {note.id} (now version {note.version})"
                except Exception as e:
                    return self._report_failure(op, e)

        @self.mcp.tool(name="nv_delete_note")
        def nv_delete_note(note_id: str) -> str:
            """Delete a note. Its version history remains readable.
            Args:
                note_id: The ID of the note
            """
            with timed_operation("nv_delete_note", note_id=note_id) as op:
                try:
                    note = self.note_service.delete_note(self.owner_id, _parse_note_id(note_id))
                    return f"Note deleted successfully: {note.id}"
                except Exception as e:
                    return self._report_failure(op, e)

        @self.mcp.tool(name="nv_search_notes")
        def nv_search_notes(query: str, limit: Optional[int] = None) -> str:
            """Full-text search over your notes, most relevant first.
            Args:
                query: Words to search for; a note matches if it contains any of them
                limit: Maximum number of results
            """
            with timed_operation("nv_search_notes", query=query[:30]) as op:
                try:
                    hits = self.note_service.search_notes(self.owner_id, query, limit=limit)
                    op["result_count"] = len(hits)
                    if not hits:
                        return f"No notes found matching '{query}'."
                    output = f"Found {len(hits)} matching notes:\n\n"
                    for i, hit in enumerate(hits, 1):
                        output += f"{i}. {hit.note.title} (ID: {hit.note.id}, v{hit.note.version})\n"
                        output += f"   {_preview(hit.note.content)}\n"
                    return output
                except Exception as e:
                    return self._report_failure(op, e)

        @self.mcp.tool(name="nv_list_versions")
        def nv_list_versions(note_id: str) -> str:
            """Show the version history of a note, newest first.
            Args:
                note_id: The ID of the note (deleted notes keep their history)
            """
            with timed_operation("nv_list_versions", note_id=note_id) as op:
                try:
                    versions = self.note_service.list_versions(
                        self.owner_id, _parse_note_id(note_id)
                    )
                    op["version_count"] = len(versions)
                    return self._format_history(note_id, versions)
                except Exception as e:
                    return self._report_failure(op, e)

        @self.mcp.tool(name="nv_get_version")
        def nv_get_version(note_id: str, version_number: int) -> str:
            """Show one historical version of a note.
            Args:
                note_id: The ID of the note
                version_number: The version to show
            """
            with timed_operation("nv_get_version", note_id=note_id) as op:
                try:
                    version = self.note_service.get_version(
                        self.owner_id, _parse_note_id(note_id), version_number
                    )
                    result = f"# {version.title}\n"
                    result += f"Note ID: {version.note_id}\n"
                    result += f"Version: {version.version_number}\n"
                    result += f"Saved: {version.created_at.isoformat()}\n"
                    result += f"\n{version.content}\n"
                    return result
                except Exception as e:
                    return self._report_failure(op, e)

        @self.mcp.tool(name="nv_revert_note")
        def nv_revert_note(
            note_id: str,
            version_number: int,
            expected_version: Optional[int] = None,
        ) -> str:
            """Restore an earlier version of a note as its newest version.
            History is never rewritten: the old title and content are saved
            as a new version.
            Args:
                note_id: The ID of the note
                version_number: The version to restore
                expected_version: The current version you last read (optional
                    conflict check)
            """
            with timed_operation("nv_revert_note", note_id=note_id) as op:
                try:
                    note = self.note_service.revert_to_version(
                        self.owner_id,
                        _parse_note_id(note_id),
                        version_number,
                        expected_current_version=expected_version,
                    )
                    op["version"] = note.version
                    return (
                        f"Note {note.id} reverted to version {version_number} "
                        f"(now version {note.version})"
                    )
                except Exception as e:
                    return self._report_failure(op, e)

        @self.mcp.tool(name="nv_status")
        def nv_status() -> str:
            """Show note counts, search and cache health, and server metrics."""
            with timed_operation("nv_status") as op:
                try:
                    return self._format_status()
                except Exception as e:
                    return self._report_failure(op, e)

    @staticmethod
    def _format_history(note_id: str, versions: List[NoteVersion]) -> str:
        result = f"# Version History for {note_id}\n\n"
        result += f"**{len(versions)} version(s)**\n\n"
        result += "| Version | Title | Saved |\n"
        result += "|---------|-------|-------|\n"
        for version in versions:
            result += (
                f"| {version.version_number} | {version.title} "
                f"| {version.created_at.isoformat()} |\n"
            )
        return result

    def _format_status(self) -> str:
        output = "# NoteVault Status\n\n"

        output += "## Summary\n"
        output += f"**Version:** {config.server_version}\n"
        output += f"**Owner:** {self.owner_id}\n"
        output += f"**Notes:** {self.note_service.count_notes(self.owner_id)}\n\n"

        output += "## Search\n"
        fts_ok = self.repository.fts_available
        output += f"**FTS5:** {'OK' if fts_ok else 'Degraded (substring fallback)'}\n\n"

        stats = self.cache.stats()
        output += "## Cache\n"
        output += f"**Backend:** {config.cache_backend}\n"
        output += f"**Hits:** {stats['hits']} | **Misses:** {stats['misses']}\n"
        output += f"**Errors absorbed:** {stats['errors']}\n"
        output += f"**Invalidations:** {stats['invalidations']}\n\n"

        summary = metrics.summary()
        outcomes = summary["outcomes"]
        output += "## Server Metrics\n"
        output += f"**Uptime:** {summary['uptime_seconds']:.0f} seconds\n"
        output += f"**Operations:** {summary['calls']}\n"
        output += f"**Success Rate:** {summary['success_rate']:.1%}\n"
        output += f"**Errors:** {summary['failures']}\n"
        output += (
            f"**Conflicts:** {outcomes.get(OUTCOME_CONFLICT, 0)} | "
            f"**Not found:** {outcomes.get(OUTCOME_NOT_FOUND, 0)} | "
            f"**Invalid:** {outcomes.get(OUTCOME_INVALID, 0)} | "
            f"**Unavailable:** {outcomes.get(OUTCOME_UNAVAILABLE, 0)} | "
            f"**Failed:** {outcomes.get(OUTCOME_FAILED, 0)}\n"
        )

        tools = metrics.by_tool()
        if tools:
            output += "\n| Tool | Calls | Failures | Avg ms |\n"
            output += "|------|-------|----------|--------|\n"
            for tool, m in sorted(tools.items()):
                output += (
                    f"| {tool} | {m['calls']} | {m['failures']} | {m['avg_duration_ms']} |\n"
                )
        return output

    def run(self) -> None:
        """Run the MCP server over stdio."""
        self.mcp.run()
