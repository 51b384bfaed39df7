"""Reconciliation of memory documents with the metadata and vector indexes."""

import logging
import time
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path

from ..logging import MemoryEventLog
from .errors import ErrorKind, MemoryEngineError
from .filestore import MarkdownFileStore
from .index import IndexStore, LayeredIndexStore
from .layout import StorageLayout
from .models import IndexRow, Memory
from .vector_store import LayeredVectorStore, VectorStore

logger = logging.getLogger(__name__)


@dataclass
class SyncResult:
    """Outcome of a sync pass. Per-file failures land in ``error_details``."""

    sync_time: datetime = field(default_factory=datetime.now)
    created: int = 0
    updated: int = 0
    deleted: int = 0
    skipped: int = 0
    errors: int = 0
    error_details: list[str] = field(default_factory=list)
    duration_ms: float = 0.0

    def add_error(self, message: str) -> None:
        self.errors += 1
        self.error_details.append(message)


@dataclass
class HashMismatch:
    file_path: str
    file_hash: str
    index_hash: str


@dataclass
class ConsistencyReport:
    check_time: datetime = field(default_factory=datetime.now)
    total_files: int = 0
    total_indexes: int = 0
    orphaned_files: list[str] = field(default_factory=list)
    orphaned_indexes: list[str] = field(default_factory=list)
    hash_mismatches: list[HashMismatch] = field(default_factory=list)
    duplicate_files: list[str] = field(default_factory=list)

    @property
    def is_consistent(self) -> bool:
        return not (
            self.orphaned_files
            or self.orphaned_indexes
            or self.hash_mismatches
            or self.duplicate_files
        )


class IndexSyncer:
    """Repairs drift between the documents on disk and their index rows.

    Documents are authoritative. Rows are created for unindexed documents,
    refreshed when the body hash changed (keeping the access count), and
    removed together with their vectors once the document is gone.
    """

    def __init__(
        self,
        layout: StorageLayout,
        files: MarkdownFileStore,
        index: IndexStore | LayeredIndexStore,
        vectors: VectorStore | LayeredVectorStore | None = None,
        events: MemoryEventLog | None = None,
    ) -> None:
        self.layout = layout
        self.files = files
        self.index = index
        self.vectors = vectors
        self.events = events

    def _snapshot(self) -> tuple[list[str], dict[str, IndexRow]]:
        paths = [str(p) for p in self.layout.all_memory_paths()]
        rows = {row.file_path: row for row in self.index.get_all()}
        return paths, rows

    def _drop_vector(self, memory_id: str) -> None:
        if self.vectors is None:
            return
        try:
            self.vectors.delete(memory_id)
        except MemoryEngineError as e:
            logger.debug("No vector to drop for %s: %s", memory_id, e)

    def _finish(self, event: str, result: SyncResult, started: float) -> SyncResult:
        result.duration_ms = (time.monotonic() - started) * 1000
        if self.events is not None:
            self.events.log_result(
                event,
                result.duration_ms,
                result.error_details,
                created=result.created,
                updated=result.updated,
                deleted=result.deleted,
                skipped=result.skipped,
            )
        return result

    def _read_all(
        self, paths: list[str], rows: dict[str, IndexRow], result: SyncResult | None = None
    ) -> tuple[dict[str, Memory], dict[str, str]]:
        """Read every document and give each id to exactly one path.

        The path the index already holds for an id keeps it; otherwise the
        first path in listing order does.

        Returns:
            The readable documents by path, and the remaining paths that
            carry an already claimed id, mapped to that id.
        """
        memories: dict[str, Memory] = {}
        for path in paths:
            try:
                memories[path] = self.files.read_memory(path)
            except (MemoryEngineError, OSError) as e:
                if result is not None:
                    result.add_error(f"{path}: {e}")

        owners: dict[str, str] = {}
        for path, memory in memories.items():
            row = rows.get(path)
            if row is not None and row.id == memory.id:
                owners[memory.id] = path
        for path, memory in memories.items():
            owners.setdefault(memory.id, path)

        duplicates = {
            path: memory.id for path, memory in memories.items() if owners[memory.id] != path
        }
        for path in duplicates:
            del memories[path]
        return memories, duplicates

    def _sync_memory(self, memory: Memory, existing: IndexRow | None, result: SyncResult) -> None:
        row = IndexRow.from_memory(memory)
        if existing is None:
            self.index.upsert(row)
            result.created += 1
        elif existing.content_hash != memory.content_hash or existing.id != memory.id:
            row.access_count = existing.access_count
            if existing.id != memory.id:
                self.index.delete(existing.id)
            self.index.upsert(row)
            result.updated += 1
        else:
            result.skipped += 1

    def sync_all(self) -> SyncResult:
        """Bring the index in line with every document in every active root.

        Running it twice without file changes creates, updates and deletes
        nothing the second time. A document carrying an id that another
        document holds is reported as an error and left out of the index.
        """
        started = time.monotonic()
        result = SyncResult()
        paths, rows = self._snapshot()
        memories, duplicates = self._read_all(paths, rows, result)

        for path, memory_id in duplicates.items():
            result.add_error(f"duplicate id {memory_id} at {path}")
        for path, memory in memories.items():
            try:
                self._sync_memory(memory, rows.get(path), result)
            except (MemoryEngineError, OSError) as e:
                result.add_error(f"{path}: {e}")

        existing = set(paths)
        for path, row in rows.items():
            if path in existing:
                continue
            try:
                self.index.delete(row.id)
            except MemoryEngineError as e:
                result.add_error(f"delete orphaned index {row.id}: {e}")
                continue
            result.deleted += 1
            self._drop_vector(row.id)

        logger.info(
            "Index sync: %d created, %d updated, %d deleted, %d skipped, %d errors",
            result.created, result.updated, result.deleted, result.skipped, result.errors,
        )
        return self._finish("sync_completed", result, started)

    def reindex(self) -> SyncResult:
        """Rewrite the index row of every document, changed or not.

        Access counts already recorded in the index are kept. Documents
        with a duplicate id are skipped as in ``sync_all``.
        """
        started = time.monotonic()
        result = SyncResult()
        paths, rows = self._snapshot()
        memories, duplicates = self._read_all(paths, rows, result)
        for path, memory_id in duplicates.items():
            result.add_error(f"duplicate id {memory_id} at {path}")

        for memory in memories.values():
            row = IndexRow.from_memory(memory)
            try:
                existing = self.index.get(memory.id)
            except MemoryEngineError as e:
                if not e.is_not_found:
                    result.add_error(f"lookup {memory.id}: {e}")
                    continue
                existing = None

            try:
                if existing is not None:
                    row.access_count = existing.access_count
                    self.index.upsert(row)
                    result.updated += 1
                else:
                    self.index.upsert(row)
                    result.created += 1
            except MemoryEngineError as e:
                result.add_error(f"index {memory.id}: {e}")
        return self._finish("reindex_completed", result, started)

    def sync_single(self, path: str | Path) -> None:
        """Sync one document; a missing document drops its row.

        Raises:
            MemoryEngineError: If the document exists but cannot be read, or
                its id is already indexed for another existing document.
        """
        path = str(path)
        if not Path(path).exists():
            try:
                row = self.index.get_by_path(path)
            except MemoryEngineError as e:
                if e.is_not_found:
                    return
                raise
            self.index.delete(row.id)
            self._drop_vector(row.id)
            return

        try:
            existing = self.index.get_by_path(path)
        except MemoryEngineError as e:
            if not e.is_not_found:
                raise
            existing = None

        memory = self.files.read_memory(path)
        try:
            holder = self.index.get(memory.id)
        except MemoryEngineError as e:
            if not e.is_not_found:
                raise
            holder = None
        if holder is not None and holder.file_path != path and Path(holder.file_path).exists():
            raise MemoryEngineError(
                "sync.single",
                ErrorKind.INDEX_OUT_OF_SYNC,
                path=path,
                details=f"duplicate id {memory.id}, indexed at {holder.file_path}",
            )
        self._sync_memory(memory, existing, SyncResult())

    def check_consistency(self) -> ConsistencyReport:
        """Audit documents against the index without changing either."""
        paths, rows = self._snapshot()
        report = ConsistencyReport(total_files=len(paths), total_indexes=len(rows))
        memories, duplicates = self._read_all(paths, rows)
        report.duplicate_files = list(duplicates)

        for path in paths:
            if path in duplicates:
                continue
            row = rows.get(path)
            if row is None:
                report.orphaned_files.append(path)
                continue
            memory = memories.get(path)
            if memory is None:
                logger.debug("Cannot hash %s", path)
                continue
            if memory.content_hash != row.content_hash:
                report.hash_mismatches.append(
                    HashMismatch(path, file_hash=memory.content_hash, index_hash=row.content_hash)
                )

        existing = set(paths)
        report.orphaned_indexes = [row.id for path, row in rows.items() if path not in existing]
        return report

    def clean_orphaned(self) -> int:
        """Delete rows (and vectors) whose document no longer exists."""
        existing = {str(p) for p in self.layout.all_memory_paths()}
        deleted = 0
        for row in self.index.get_orphaned(existing):
            try:
                self.index.delete(row.id)
            except MemoryEngineError as e:
                logger.warning("Failed to delete orphaned index %s: %s", row.id, e)
                continue
            deleted += 1
            self._drop_vector(row.id)
        return deleted

    def index_orphaned_files(self) -> int:
        """Create rows for documents the index does not know about.

        Documents carrying a duplicate id are left out.
        """
        paths, rows = self._snapshot()
        memories, duplicates = self._read_all(paths, rows)
        indexed = 0
        for path, memory in memories.items():
            if path in rows:
                continue
            try:
                self.index.upsert(IndexRow.from_memory(memory))
            except MemoryEngineError as e:
                logger.warning("Failed to index %s: %s", path, e)
                continue
            indexed += 1
        for path, memory_id in duplicates.items():
            logger.warning("Not indexing %s: duplicate id %s", path, memory_id)
        return indexed

    def changed_since(self, since: datetime) -> list[str]:
        """Documents modified after ``since``."""
        threshold = since.timestamp()
        changed: list[str] = []
        for path in self.layout.all_memory_paths():
            try:
                if path.stat().st_mtime > threshold:
                    changed.append(str(path))
            except OSError:
                continue
        return changed

    def incremental_sync(self, since: datetime) -> SyncResult:
        """Sync only the documents modified after ``since``."""
        started = time.monotonic()
        result = SyncResult()
        for path in self.changed_since(since):
            try:
                self.sync_single(path)
            except (MemoryEngineError, OSError) as e:
                result.add_error(f"{path}: {e}")
                continue
            result.updated += 1
        return self._finish("sync_completed", result, started)
