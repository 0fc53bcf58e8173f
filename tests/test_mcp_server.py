# tests/test_mcp_server.py
"""Tests for the MCP server tools, end to end over a real database."""
import re
from unittest.mock import MagicMock, patch

import pytest

from notevault.exceptions import StorageUnavailableError
from notevault.server.mcp_server import NoteVaultMcpServer
from notevault.storage.cache_store import MemoryCacheStore
from tests.conftest import OWNER


class TestMcpServer:
    """Tests for the NoteVaultMcpServer class."""

    @pytest.fixture(autouse=True)
    def server(self, engine):
        """Build a server whose FastMCP captures tool functions by name."""
        self.registered_tools = {}
        self.mock_mcp = MagicMock()

        def mock_tool_decorator(*args, **kwargs):
            def tool_wrapper(func):
                self.registered_tools[kwargs.get("name")] = func
                return func
            return tool_wrapper
        self.mock_mcp.tool = mock_tool_decorator

        self.cache_store = MemoryCacheStore()
        with patch("notevault.server.mcp_server.FastMCP", return_value=self.mock_mcp):
            self.server = NoteVaultMcpServer(engine, self.cache_store, owner_id=OWNER)
        yield self.server
        self.cache_store.close()

    def call(self, name, **kwargs):
        return self.registered_tools[name](**kwargs)

    def create(self, title="Title", content="Content"):
        result = self.call("nv_create_note", title=title, content=content)
        match = re.search(r"ID: (\d+)", result)
        assert match, result
        return match.group(1)

    def test_all_tools_registered(self):
        assert set(self.registered_tools) == {
            "nv_create_note",
            "nv_get_note",
            "nv_list_notes",
            "nv_update_note",
            "nv_delete_note",
            "nv_search_notes",
            "nv_list_versions",
            "nv_get_version",
            "nv_revert_note",
            "nv_status",
        }

    def test_owner_registered_on_startup(self):
        assert self.server.user_repository.get(OWNER) is not None

    def test_create_and_get(self):
        note_id = self.create("Shopping", "apples")
        result = self.call("nv_get_note", note_id=note_id)
        assert "# Shopping" in result
        assert "Version: 1" in result
        assert "apples" in result

    def test_create_invalid_note(self):
        result = self.call("nv_create_note", title="", content="Content")
        assert result == "Error: Title cannot be empty"

    def test_update_and_conflict(self):
        note_id = self.create()
        result = self.call("nv_update_note", note_id=note_id, expected_version=1, content="Second")
        assert "now version 2" in result

        stale = self.call("nv_update_note", note_id=note_id, expected_version=1, content="Lost")
        assert stale.startswith("Error:")
        assert "current version is 2" in stale

    def test_invalid_note_id(self):
        assert self.call("nv_get_note", note_id="abc") == (
            "Error: Note ID must be a positive integer"
        )
        assert self.call("nv_get_note", note_id="0").startswith("Error:")

    def test_missing_note(self):
        assert self.call("nv_get_note", note_id="999") == "Error: Note with ID '999' not found"

    def test_list_notes(self):
        assert self.call("nv_list_notes") == "No notes found."
        self.create("First")
        self.create("Second")
        result = self.call("nv_list_notes")
        assert "Found 2 notes" in result
        assert result.index("Second") < result.index("First")

    def test_search(self):
        self.create("Garden", "basil and thyme")
        self.create("Kitchen", "pots and pans")
        result = self.call("nv_search_notes", query="thyme")
        assert "Found 1 matching notes" in result
        assert "Garden" in result
        assert self.call("nv_search_notes", query="saffron") == "No notes found matching 'saffron'."
        assert self.call("nv_search_notes", query="  ").startswith("Error: Search query is required")

    def test_delete_then_history(self):
        note_id = self.create("Doomed", "v1")
        self.call("nv_update_note", note_id=note_id, expected_version=1, content="v2")
        assert "deleted successfully" in self.call("nv_delete_note", note_id=note_id)
        assert self.call("nv_get_note", note_id=note_id).startswith("Error:")

        history = self.call("nv_list_versions", note_id=note_id)
        assert "**2 version(s)**" in history
        assert "v1" in self.call("nv_get_version", note_id=note_id, version_number=1)

    def test_revert(self):
        note_id = self.create("Title", "original")
        self.call("nv_update_note", note_id=note_id, expected_version=1, content="changed")
        result = self.call("nv_revert_note", note_id=note_id, version_number=1)
        assert "now version 3" in result
        assert "original" in self.call("nv_get_note", note_id=note_id)

        stale = self.call("nv_revert_note", note_id=note_id, version_number=2, expected_version=1)
        assert "current version is 3" in stale

    def test_status(self):
        self.create()
        result = self.call("nv_status")
        assert "# NoteVault Status" in result
        assert f"**Owner:** {OWNER}" in result
        assert "**Notes:** 1" in result
        assert "## Cache" in result
        assert "## Server Metrics" in result

    def test_status_counts_failed_tool_calls(self):
        note_id = self.create()
        self.call("nv_get_note", note_id="999")
        self.call("nv_update_note", note_id=note_id, expected_version=1, content="Second")
        self.call("nv_update_note", note_id=note_id, expected_version=1, content="Lost")

        result = self.call("nv_status")
        # nv_status itself has not been recorded yet when it renders
        assert "**Operations:** 4" in result
        assert "**Success Rate:** 50.0%" in result
        assert "**Errors:** 2" in result
        assert "**Conflicts:** 1 | **Not found:** 1" in result
        assert "| nv_update_note | 2 | 1 |" in result

    def test_storage_errors_are_reported_as_retryable(self):
        with patch.object(
            self.server.note_service,
            "create_note",
            side_effect=StorageUnavailableError("Storage failure during create"),
        ):
            result = self.call("nv_create_note", title="T", content="C")
        assert result.startswith("Error: Storage failure during create (temporary, retry later; ref: ")

    def test_unexpected_errors_hide_details(self):
        with patch.object(
            self.server.note_service, "get_note", side_effect=RuntimeError("secret internals")
        ):
            result = self.call("nv_get_note", note_id="1")
        assert result.startswith("Error: An unexpected error occurred (ref: ")
        assert "secret" not in result
