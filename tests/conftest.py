"""Common test fixtures for the NoteVault server."""

import tempfile
from pathlib import Path

import pytest

from notevault.config import config
from notevault.models.db_models import init_db
from notevault.observability import metrics
from notevault.services.cache_coordinator import CacheCoordinator
from notevault.services.note_service import NoteService
from notevault.storage.cache_store import MemoryCacheStore
from notevault.storage.note_repository import NoteRepository
from notevault.storage.user_repository import UserRepository
from tests.fakes import FakeClock

OWNER = "alice"
OTHER_OWNER = "bob"


@pytest.fixture
def temp_db_dir():
    """Create a temporary directory for the database."""
    with tempfile.TemporaryDirectory() as db_dir:
        yield Path(db_dir)


@pytest.fixture
def test_config(temp_db_dir, monkeypatch):
    """Point the global config at test paths (auto-restored even on crash)."""
    database_path = temp_db_dir / "test_notevault.db"
    monkeypatch.setattr(config, "base_dir", temp_db_dir)
    monkeypatch.setattr(config, "database_path", database_path)
    monkeypatch.setattr(config, "database_url", None)
    monkeypatch.setattr(config, "owner_id", OWNER)
    monkeypatch.setattr(config, "cache_ttl", 60)
    yield config


@pytest.fixture
def engine(test_config):
    """File-backed SQLite engine with the schema and FTS index created.

    A file rather than :memory: so concurrent tests get real per-thread
    connections and real SQLite locking.
    """
    engine = init_db(test_config.get_db_url(), lock_timeout=10)
    yield engine
    engine.dispose()


@pytest.fixture
def user_repository(engine):
    repository = UserRepository(engine)
    repository.ensure(OWNER)
    repository.ensure(OTHER_OWNER)
    return repository


@pytest.fixture
def note_repository(engine, user_repository):
    """Create a test note repository with two registered owners."""
    return NoteRepository(engine)


@pytest.fixture
def fake_clock():
    return FakeClock()


@pytest.fixture
def cache_store(fake_clock):
    store = MemoryCacheStore(max_entries=1000, clock=fake_clock)
    yield store
    store.close()


@pytest.fixture
def cache(cache_store):
    return CacheCoordinator(cache_store, default_ttl=60)


@pytest.fixture
def note_service(note_repository, cache):
    """Create a test NoteService over the real repository and in-memory cache."""
    return NoteService(note_repository, cache)


@pytest.fixture(autouse=True)
def _reset_metrics():
    metrics.reset()
    yield
