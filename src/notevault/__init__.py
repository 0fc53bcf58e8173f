"""
NoteVault - a multi-user note store with version history.

Notes live in a relational store; every committed change appends an immutable
snapshot, writers are serialized per note with optimistic version checks, and
a read-through cache sits in front of the store. The store is exposed to
clients as an MCP server.
"""

from importlib.metadata import PackageNotFoundError, version

try:
    __version__ = version("notevault")
except PackageNotFoundError:
    __version__ = "0.3.0"
