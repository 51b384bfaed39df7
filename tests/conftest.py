"""Shared fixtures for memory engine tests."""

from pathlib import Path

import pytest

from aimate.memory.config import MemoryConfig
from aimate.memory.core import CoreMemoryManager
from aimate.memory.filestore import MarkdownFileStore
from aimate.memory.index import LayeredIndexStore, SQLiteIndexStore
from aimate.memory.layout import StorageLayout
from aimate.memory.long_term import LongTermMemoryManager
from aimate.memory.models import MemoryScope
from aimate.memory.session import SessionManager
from aimate.memory.short_term import ShortTermMemoryManager
from aimate.memory.vector_store import InMemoryVectorStore, LayeredVectorStore


@pytest.fixture
def config(tmp_path: Path) -> MemoryConfig:
    """Default config rooted in a temporary directory."""
    return MemoryConfig.for_root(tmp_path / "home" / "memory")


@pytest.fixture
def layout(config: MemoryConfig) -> StorageLayout:
    return StorageLayout(config.storage)


@pytest.fixture
def files(layout: StorageLayout) -> MarkdownFileStore:
    return MarkdownFileStore(layout)


@pytest.fixture
def index(layout: StorageLayout) -> LayeredIndexStore:
    """Layered index over a SQLite global index."""
    store = SQLiteIndexStore(layout.index_db_path(MemoryScope.GLOBAL))
    store.init_db()
    layered = LayeredIndexStore(store)
    yield layered
    layered.close()


@pytest.fixture
def vectors() -> LayeredVectorStore:
    return LayeredVectorStore(InMemoryVectorStore(64))


@pytest.fixture
def core(layout, files, index, config) -> CoreMemoryManager:
    return CoreMemoryManager(layout, files, index, config.core)


@pytest.fixture
def short_term(layout, files, index, config) -> ShortTermMemoryManager:
    return ShortTermMemoryManager(layout, files, index, config.short_term)


@pytest.fixture
def long_term(layout, files, index, config, vectors) -> LongTermMemoryManager:
    return LongTermMemoryManager(layout, files, index, config.long_term, vectors)


@pytest.fixture
def session(layout, files, config) -> SessionManager:
    return SessionManager(layout, files, config.session)


@pytest.fixture
def project_dir(tmp_path: Path) -> Path:
    """A project directory marked by a .git folder."""
    project = tmp_path / "proj"
    (project / ".git").mkdir(parents=True)
    (project / "src").mkdir()
    return project
