"""Tests for the vector index stores."""

from pathlib import Path

import pytest

from aimate.memory.errors import ErrorKind, MemoryEngineError
from aimate.memory.vector_store import InMemoryVectorStore, LayeredVectorStore, SQLiteVectorStore


@pytest.fixture(params=["sqlite", "memory"])
def store(request, tmp_path: Path):
    """Each vector store implementation with dimension 3."""
    if request.param == "sqlite":
        instance = SQLiteVectorStore(tmp_path / "vectors.db", 3)
    else:
        instance = InMemoryVectorStore(3)
    instance.init_db()
    yield instance
    instance.close()


class TestVectorStore:
    """Behavior shared by every vector store."""

    def test_store_and_get(self, store):
        store.store("a", [1.0, 0.5, 0.25])
        assert store.get("a") == pytest.approx([1.0, 0.5, 0.25])
        assert store.count() == 1

    def test_store_replaces(self, store):
        store.store("a", [1.0, 0.0, 0.0])
        store.store("a", [0.0, 1.0, 0.0])
        assert store.get("a") == pytest.approx([0.0, 1.0, 0.0])
        assert store.count() == 1

    def test_dimension_mismatch(self, store):
        with pytest.raises(MemoryEngineError) as excinfo:
            store.store("a", [1.0, 2.0])
        assert excinfo.value.kind is ErrorKind.DIMENSION_MISMATCH

        with pytest.raises(MemoryEngineError):
            store.search([1.0], 5)

    def test_update_requires_existing(self, store):
        with pytest.raises(MemoryEngineError) as excinfo:
            store.update("missing", [1.0, 0.0, 0.0])
        assert excinfo.value.kind is ErrorKind.VECTOR_NOT_FOUND

        store.store("a", [1.0, 0.0, 0.0])
        store.update("a", [0.0, 0.0, 1.0])
        assert store.get("a") == pytest.approx([0.0, 0.0, 1.0])

    def test_get_missing(self, store):
        with pytest.raises(MemoryEngineError) as excinfo:
            store.get("missing")
        assert excinfo.value.is_not_found

    def test_delete(self, store):
        store.store("a", [1.0, 0.0, 0.0])
        assert store.delete("a") is True
        assert store.delete("a") is False
        assert store.count() == 0

    def test_search_ranks_by_similarity(self, store):
        store.store("same", [1.0, 0.0, 0.0])
        store.store("close", [1.0, 1.0, 0.0])
        store.store("orthogonal", [0.0, 0.0, 1.0])
        store.store("opposite", [-1.0, 0.0, 0.0])

        results = store.search([2.0, 0.0, 0.0], top_k=10)
        assert [r.id for r in results] == ["same", "close", "orthogonal"]
        assert results[0].score == pytest.approx(1.0)
        assert results[0].distance == pytest.approx(0.0)
        assert results[1].score == pytest.approx(0.7071, abs=1e-4)

    def test_search_floor_and_top_k(self, store):
        store.store("same", [1.0, 0.0, 0.0])
        store.store("close", [1.0, 1.0, 0.0])
        store.store("orthogonal", [0.0, 0.0, 1.0])

        assert [r.id for r in store.search([1.0, 0.0, 0.0], 10, min_similarity=0.5)] == [
            "same",
            "close",
        ]
        assert [r.id for r in store.search([1.0, 0.0, 0.0], 1)] == ["same"]

    def test_zero_vectors_never_match(self, store):
        store.store("zero", [0.0, 0.0, 0.0])
        store.store("a", [1.0, 0.0, 0.0])
        assert [r.id for r in store.search([1.0, 0.0, 0.0], 10)] == ["a"]
        assert store.search([0.0, 0.0, 0.0], 10) == []

    def test_batch_store(self, store):
        store.batch_store({"a": [1.0, 0.0, 0.0], "b": [0.0, 1.0, 0.0]})
        assert store.count() == 2
        stats = store.stats()
        assert stats.total_vectors == 2
        assert stats.dimension == 3

    def test_batch_store_checks_every_vector(self, store):
        with pytest.raises(MemoryEngineError):
            store.batch_store({"a": [1.0, 0.0, 0.0], "b": [1.0]})
        assert store.count() == 0


class TestLayeredVectorStore:
    """Global and project vector indexes together."""

    def test_store_targets(self):
        global_store, project_store = InMemoryVectorStore(2), InMemoryVectorStore(2)
        layered = LayeredVectorStore(global_store, project_store)

        layered.store("g", [1.0, 0.0])
        layered.store("p", [0.0, 1.0], project=True)

        assert global_store.count() == 1
        assert project_store.count() == 1
        assert layered.count() == 2
        assert layered.get("p") == [0.0, 1.0]

    def test_project_without_store_goes_global(self):
        global_store = InMemoryVectorStore(2)
        layered = LayeredVectorStore(global_store)
        layered.store("p", [0.0, 1.0], project=True)
        assert global_store.count() == 1

    def test_search_merges_both(self):
        layered = LayeredVectorStore(InMemoryVectorStore(2), InMemoryVectorStore(2))
        layered.store("g", [1.0, 0.1])
        layered.store("p", [1.0, 0.0], project=True)
        assert [r.id for r in layered.search([1.0, 0.0], 2)] == ["p", "g"]
        assert len(layered.search([1.0, 0.0], 1)) == 1

    def test_update_and_delete_find_owner(self):
        project_store = InMemoryVectorStore(2)
        layered = LayeredVectorStore(InMemoryVectorStore(2), project_store)
        layered.store("p", [1.0, 0.0], project=True)

        layered.update("p", [0.0, 1.0])
        assert project_store.get("p") == [0.0, 1.0]
        assert layered.delete("p") is True
        with pytest.raises(MemoryEngineError):
            layered.update("p", [1.0, 0.0])
