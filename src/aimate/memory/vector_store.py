"""Vector index: per-memory embeddings with brute-force cosine search.

Search scans every stored vector. That is fine for the tens of thousands of
memories an assistant accumulates; anything larger should swap this module
for a real ANN index behind the same interface.
"""

import sqlite3
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Protocol, Sequence

from .errors import ErrorKind, MemoryEngineError
from .vectors import cosine_similarity, deserialize_vector, l2_norm, serialize_vector


@dataclass
class VectorSearchResult:
    """A similarity hit. ``distance`` is ``1 - score``."""

    id: str
    score: float
    distance: float


@dataclass
class VectorStats:
    total_vectors: int
    dimension: int


class VectorStore(Protocol):
    """Interface of a vector index."""

    dimension: int

    def store(self, memory_id: str, vector: Sequence[float]) -> None: ...
    def update(self, memory_id: str, vector: Sequence[float]) -> None: ...
    def get(self, memory_id: str) -> list[float]: ...
    def delete(self, memory_id: str) -> bool: ...
    def search(
        self, query: Sequence[float], top_k: int, min_similarity: float = 0.0
    ) -> list[VectorSearchResult]: ...
    def batch_store(self, items: dict[str, Sequence[float]]) -> None: ...
    def count(self) -> int: ...
    def stats(self) -> VectorStats: ...
    def close(self) -> None: ...


def _check_dimension(op: str, vector: Sequence[float], dimension: int) -> None:
    if len(vector) != dimension:
        raise MemoryEngineError(
            op,
            ErrorKind.DIMENSION_MISMATCH,
            details=f"expected {dimension}, got {len(vector)}",
        )


def _rank(
    candidates: list[tuple[str, list[float], float]],
    query: Sequence[float],
    top_k: int,
    min_similarity: float,
) -> list[VectorSearchResult]:
    query_norm = l2_norm(query)
    if query_norm == 0:
        return []
    results: list[VectorSearchResult] = []
    for memory_id, vector, norm in candidates:
        if norm == 0:
            continue
        score = cosine_similarity(query, vector, query_norm, norm)
        if score >= min_similarity:
            results.append(VectorSearchResult(id=memory_id, score=score, distance=1.0 - score))
    results.sort(key=lambda r: r.score, reverse=True)
    return results[:top_k]


class SQLiteVectorStore:
    """Vector index backed by SQLite BLOBs (little-endian float32)."""

    def __init__(self, db_path: Path, dimension: int) -> None:
        """Initialize the store.

        Args:
            db_path: Path to the SQLite database file.
            dimension: Required length of every stored vector.
        """
        self.db_path = db_path
        self.dimension = dimension
        self._conn: sqlite3.Connection | None = None

    def _get_connection(self) -> sqlite3.Connection:
        """Get or create the database connection."""
        if self._conn is None:
            self.db_path.parent.mkdir(parents=True, exist_ok=True)
            self._conn = sqlite3.connect(self.db_path)
            self._conn.row_factory = sqlite3.Row
            self._conn.execute("PRAGMA journal_mode=WAL")
            self._conn.execute("PRAGMA busy_timeout=5000")
        return self._conn

    def init_db(self) -> None:
        """Create the vectors table if it doesn't exist."""
        conn = self._get_connection()
        conn.execute("""
            CREATE TABLE IF NOT EXISTS memory_vectors (
                id          TEXT PRIMARY KEY,
                vector      BLOB NOT NULL,
                dimension   INTEGER NOT NULL,
                norm        REAL NOT NULL,
                created_at  TEXT NOT NULL,
                updated_at  TEXT NOT NULL
            )
        """)
        conn.commit()

    def store(self, memory_id: str, vector: Sequence[float]) -> None:
        """Insert or replace the vector of a memory.

        Raises:
            MemoryEngineError: If the vector has the wrong dimension.
        """
        _check_dimension("vector.store", vector, self.dimension)
        now = datetime.now().isoformat()
        conn = self._get_connection()
        conn.execute(
            """
            INSERT INTO memory_vectors (id, vector, dimension, norm, created_at, updated_at)
            VALUES (?, ?, ?, ?, ?, ?)
            ON CONFLICT(id) DO UPDATE SET
                vector = excluded.vector,
                dimension = excluded.dimension,
                norm = excluded.norm,
                updated_at = excluded.updated_at
            """,
            (memory_id, serialize_vector(vector), len(vector), l2_norm(vector), now, now),
        )
        conn.commit()

    def update(self, memory_id: str, vector: Sequence[float]) -> None:
        """Replace an existing vector.

        Raises:
            MemoryEngineError: On dimension mismatch or if no vector exists.
        """
        _check_dimension("vector.update", vector, self.dimension)
        conn = self._get_connection()
        cursor = conn.execute(
            "UPDATE memory_vectors SET vector = ?, dimension = ?, norm = ?, updated_at = ? "
            "WHERE id = ?",
            (serialize_vector(vector), len(vector), l2_norm(vector),
             datetime.now().isoformat(), memory_id),
        )
        conn.commit()
        if cursor.rowcount == 0:
            raise MemoryEngineError(
                "vector.update", ErrorKind.VECTOR_NOT_FOUND, details=f"id={memory_id}"
            )

    def get(self, memory_id: str) -> list[float]:
        """Get the vector of a memory.

        Raises:
            MemoryEngineError: If no vector exists.
        """
        conn = self._get_connection()
        row = conn.execute(
            "SELECT vector FROM memory_vectors WHERE id = ?", (memory_id,)
        ).fetchone()
        if row is None:
            raise MemoryEngineError(
                "vector.get", ErrorKind.VECTOR_NOT_FOUND, details=f"id={memory_id}"
            )
        return deserialize_vector(row["vector"])

    def delete(self, memory_id: str) -> bool:
        conn = self._get_connection()
        cursor = conn.execute("DELETE FROM memory_vectors WHERE id = ?", (memory_id,))
        conn.commit()
        return cursor.rowcount > 0

    def search(
        self, query: Sequence[float], top_k: int, min_similarity: float = 0.0
    ) -> list[VectorSearchResult]:
        """Rank every stored vector by cosine similarity to ``query``.

        Args:
            query: Query vector.
            top_k: Maximum number of results.
            min_similarity: Results scoring below this are dropped.

        Returns:
            Results sorted by descending similarity.
        """
        _check_dimension("vector.search", query, self.dimension)
        conn = self._get_connection()
        rows = conn.execute("SELECT id, vector, norm FROM memory_vectors").fetchall()
        candidates = [(r["id"], deserialize_vector(r["vector"]), r["norm"]) for r in rows]
        return _rank(candidates, query, top_k, min_similarity)

    def batch_store(self, items: dict[str, Sequence[float]]) -> None:
        """Store several vectors in one transaction."""
        for vector in items.values():
            _check_dimension("vector.batch_store", vector, self.dimension)
        now = datetime.now().isoformat()
        conn = self._get_connection()
        with conn:
            conn.executemany(
                """
                INSERT INTO memory_vectors (id, vector, dimension, norm, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?, ?)
                ON CONFLICT(id) DO UPDATE SET
                    vector = excluded.vector,
                    dimension = excluded.dimension,
                    norm = excluded.norm,
                    updated_at = excluded.updated_at
                """,
                [
                    (mid, serialize_vector(v), len(v), l2_norm(v), now, now)
                    for mid, v in items.items()
                ],
            )

    def count(self) -> int:
        conn = self._get_connection()
        return conn.execute("SELECT COUNT(*) FROM memory_vectors").fetchone()[0]

    def stats(self) -> VectorStats:
        return VectorStats(total_vectors=self.count(), dimension=self.dimension)

    def close(self) -> None:
        """Close the database connection."""
        if self._conn is not None:
            self._conn.close()
            self._conn = None


class InMemoryVectorStore:
    """Dict-backed vector index for tests and ephemeral use."""

    def __init__(self, dimension: int) -> None:
        self.dimension = dimension
        self._vectors: dict[str, tuple[list[float], float]] = {}

    def init_db(self) -> None:
        pass

    def store(self, memory_id: str, vector: Sequence[float]) -> None:
        _check_dimension("vector.store", vector, self.dimension)
        self._vectors[memory_id] = (list(vector), l2_norm(vector))

    def update(self, memory_id: str, vector: Sequence[float]) -> None:
        _check_dimension("vector.update", vector, self.dimension)
        if memory_id not in self._vectors:
            raise MemoryEngineError(
                "vector.update", ErrorKind.VECTOR_NOT_FOUND, details=f"id={memory_id}"
            )
        self._vectors[memory_id] = (list(vector), l2_norm(vector))

    def get(self, memory_id: str) -> list[float]:
        if memory_id not in self._vectors:
            raise MemoryEngineError(
                "vector.get", ErrorKind.VECTOR_NOT_FOUND, details=f"id={memory_id}"
            )
        return list(self._vectors[memory_id][0])

    def delete(self, memory_id: str) -> bool:
        return self._vectors.pop(memory_id, None) is not None

    def search(
        self, query: Sequence[float], top_k: int, min_similarity: float = 0.0
    ) -> list[VectorSearchResult]:
        _check_dimension("vector.search", query, self.dimension)
        candidates = [(mid, vec, norm) for mid, (vec, norm) in self._vectors.items()]
        return _rank(candidates, query, top_k, min_similarity)

    def batch_store(self, items: dict[str, Sequence[float]]) -> None:
        for vector in items.values():
            _check_dimension("vector.batch_store", vector, self.dimension)
        for memory_id, vector in items.items():
            self._vectors[memory_id] = (list(vector), l2_norm(vector))

    def count(self) -> int:
        return len(self._vectors)

    def stats(self) -> VectorStats:
        return VectorStats(total_vectors=len(self._vectors), dimension=self.dimension)

    def close(self) -> None:
        pass


class LayeredVectorStore:
    """Global and project vector indexes behind one interface.

    New vectors go to the store selected by the caller (``project``);
    lookups, deletes and searches cover both.
    """

    def __init__(self, global_store: VectorStore, project_store: VectorStore | None = None) -> None:
        self.global_store = global_store
        self.project_store = project_store

    @property
    def dimension(self) -> int:
        return self.global_store.dimension

    def attach_project(self, store: VectorStore) -> None:
        if self.project_store is not None:
            self.project_store.close()
        self.project_store = store

    def detach_project(self) -> None:
        if self.project_store is not None:
            self.project_store.close()
            self.project_store = None

    def _stores(self) -> list[VectorStore]:
        if self.project_store is None:
            return [self.global_store]
        return [self.project_store, self.global_store]

    def _target(self, project: bool) -> VectorStore:
        if project and self.project_store is not None:
            return self.project_store
        return self.global_store

    def store(self, memory_id: str, vector: Sequence[float], project: bool = False) -> None:
        self._target(project).store(memory_id, vector)

    def update(self, memory_id: str, vector: Sequence[float]) -> None:
        for store in self._stores():
            try:
                store.update(memory_id, vector)
                return
            except MemoryEngineError as e:
                if not e.is_not_found:
                    raise
        raise MemoryEngineError(
            "vector.update", ErrorKind.VECTOR_NOT_FOUND, details=f"id={memory_id}"
        )

    def get(self, memory_id: str) -> list[float]:
        for store in self._stores():
            try:
                return store.get(memory_id)
            except MemoryEngineError as e:
                if not e.is_not_found:
                    raise
        raise MemoryEngineError("vector.get", ErrorKind.VECTOR_NOT_FOUND, details=f"id={memory_id}")

    def delete(self, memory_id: str) -> bool:
        return any([store.delete(memory_id) for store in self._stores()])

    def search(
        self, query: Sequence[float], top_k: int, min_similarity: float = 0.0
    ) -> list[VectorSearchResult]:
        results: list[VectorSearchResult] = []
        for store in self._stores():
            results.extend(store.search(query, top_k, min_similarity))
        results.sort(key=lambda r: r.score, reverse=True)
        return results[:top_k]

    def batch_store(self, items: dict[str, Sequence[float]], project: bool = False) -> None:
        self._target(project).batch_store(items)

    def count(self) -> int:
        return sum(store.count() for store in self._stores())

    def stats(self) -> VectorStats:
        return VectorStats(total_vectors=self.count(), dimension=self.dimension)

    def close(self) -> None:
        for store in self._stores():
            store.close()
