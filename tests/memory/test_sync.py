"""Tests for index synchronization."""

import shutil
from datetime import datetime, timedelta
from pathlib import Path

import pytest

from aimate.memory.errors import ErrorKind, MemoryEngineError
from aimate.memory.models import Memory, MemoryCategory, MemoryScope, MemoryType
from aimate.memory.sync import IndexSyncer


@pytest.fixture
def syncer(layout, files, index, vectors) -> IndexSyncer:
    return IndexSyncer(layout, files, index, vectors)


def write_unindexed(files, title: str = "Hand written") -> Memory:
    """Create a document without an index row, as an editor would."""
    return files.create_memory(
        Memory(
            id=f"manual-{title.lower().replace(' ', '-')}",
            type=MemoryType.LONG_TERM,
            scope=MemoryScope.GLOBAL,
            category=MemoryCategory.KNOWLEDGE,
            title=title,
            content="Written outside the engine",
        )
    )


def edit_body(memory: Memory, old: str, new: str) -> None:
    path = Path(memory.file_path)
    path.write_text(path.read_text(encoding="utf-8").replace(old, new), encoding="utf-8")


def copy_document(memory: Memory, name: str) -> str:
    """Copy a document next to itself, keeping its id."""
    source = Path(memory.file_path)
    target = source.with_name(name)
    shutil.copyfile(source, target)
    return str(target)


class TestSyncAll:
    """Tests for sync_all."""

    def test_consistent_store_is_skipped(self, syncer, core, long_term):
        core.add_rule("Tabs", "No tabs")
        long_term.add_knowledge("Redis", "Cache")
        result = syncer.sync_all()
        assert (result.created, result.updated, result.deleted, result.skipped) == (0, 0, 0, 2)
        assert result.errors == 0

    def test_indexes_new_documents(self, syncer, files, index):
        memory = write_unindexed(files)
        result = syncer.sync_all()
        assert result.created == 1
        assert index.get(memory.id).title == "Hand written"

    def test_idempotent(self, syncer, files, long_term):
        write_unindexed(files)
        long_term.add_knowledge("Redis", "Cache")
        syncer.sync_all()

        second = syncer.sync_all()
        assert (second.created, second.updated, second.deleted) == (0, 0, 0)
        assert second.skipped == 2

    def test_refreshes_edited_documents(self, syncer, long_term, index):
        memory = long_term.add_knowledge("Redis", "Cache for sessions")
        index.increment_access(memory.id)
        edit_body(memory, "Cache for sessions", "Cache for rate limits")

        result = syncer.sync_all()

        assert result.updated == 1
        row = index.get(memory.id)
        assert row.content_hash != memory.content_hash
        assert row.access_count == 1

    def test_drops_rows_of_deleted_documents(self, syncer, long_term, index, vectors):
        memory = long_term.add_knowledge("Redis", "Cache")
        vectors.store(memory.id, [1.0] * 64)
        Path(memory.file_path).unlink()

        result = syncer.sync_all()

        assert result.deleted == 1
        assert index.get_all() == []
        assert vectors.count() == 0

    def test_malformed_document_is_isolated(self, syncer, layout, files, index):
        (layout.global_root / "long_term" / "knowledge" / "broken.md").write_text(
            "---\ntitle: [oops\n---\n\nbody\n"
        )
        memory = write_unindexed(files)

        result = syncer.sync_all()

        assert result.created == 1
        assert result.errors == 1
        assert "broken.md" in result.error_details[0]
        assert index.get(memory.id)

    def test_copied_document_keeps_original_row(self, syncer, long_term, index):
        original = long_term.add_knowledge("Vim", "Modal editing")
        copy = copy_document(original, "copy_of_vim.md")

        runs = [syncer.sync_all() for _ in range(3)]

        for result in runs:
            assert (result.created, result.updated, result.deleted) == (0, 0, 0)
            assert result.skipped == 1
            assert result.error_details == [f"duplicate id {original.id} at {copy}"]
        assert index.get(original.id).file_path == original.file_path

        report = syncer.check_consistency()
        assert report.orphaned_files == []
        assert report.duplicate_files == [copy]
        assert not report.is_consistent

        Path(copy).unlink()
        assert syncer.check_consistency().is_consistent

    def test_archived_documents_stay_indexed(self, syncer, short_term, index):
        memory = short_term.add_note("Old", "Body")
        short_term.archive(memory.id)
        result = syncer.sync_all()
        assert result.deleted == 0
        assert index.get(memory.id).file_path.endswith(".md")


class TestConsistency:
    """Tests for check_consistency."""

    def test_consistent(self, syncer, core):
        core.add_rule("Tabs", "No tabs")
        report = syncer.check_consistency()
        assert report.is_consistent
        assert report.total_files == 1
        assert report.total_indexes == 1

    def test_orphaned_index_row(self, syncer, short_term):
        memory = short_term.add_note("Gone", "Soon deleted")
        Path(memory.file_path).unlink()

        report = syncer.check_consistency()

        assert report.orphaned_indexes == [memory.id]
        assert report.orphaned_files == []
        assert not report.is_consistent

    def test_orphaned_file(self, syncer, files):
        memory = write_unindexed(files)
        report = syncer.check_consistency()
        assert report.orphaned_files == [memory.file_path]
        assert report.orphaned_indexes == []

    def test_hash_mismatch(self, syncer, long_term):
        memory = long_term.add_knowledge("Redis", "Cache for sessions")
        edit_body(memory, "Cache for sessions", "Something else")

        report = syncer.check_consistency()

        assert len(report.hash_mismatches) == 1
        mismatch = report.hash_mismatches[0]
        assert mismatch.file_path == memory.file_path
        assert mismatch.index_hash == memory.content_hash

    def test_check_does_not_repair(self, syncer, files):
        write_unindexed(files)
        syncer.check_consistency()
        assert len(syncer.check_consistency().orphaned_files) == 1


class TestTargetedRepairs:
    """Tests for reindex, sync_single and the orphan helpers."""

    def test_reindex(self, syncer, long_term, index):
        kept = long_term.add_knowledge("Kept", "a")
        lost = long_term.add_knowledge("Lost", "b")
        index.increment_access(kept.id)
        index.delete(lost.id)

        result = syncer.reindex()

        assert result.created == 1
        assert result.updated == 1
        assert index.get(lost.id).title == "Lost"
        assert index.get(kept.id).access_count == 1

    def test_reindex_skips_duplicate_id(self, syncer, long_term, index):
        original = long_term.add_knowledge("Vim", "Modal editing")
        copy = copy_document(original, "copy_of_vim.md")

        result = syncer.reindex()

        assert result.updated == 1
        assert result.error_details == [f"duplicate id {original.id} at {copy}"]
        assert index.get(original.id).file_path == original.file_path
        assert syncer.index_orphaned_files() == 0
        assert index.get(original.id).file_path == original.file_path

    def test_sync_single_rejects_duplicate_id(self, syncer, long_term, index):
        original = long_term.add_knowledge("Vim", "Modal editing")
        copy = copy_document(original, "copy_of_vim.md")

        with pytest.raises(MemoryEngineError) as exc_info:
            syncer.sync_single(copy)

        assert exc_info.value.kind == ErrorKind.INDEX_OUT_OF_SYNC
        assert index.get(original.id).file_path == original.file_path

    def test_sync_single_new_and_missing(self, syncer, files, index):
        memory = write_unindexed(files)
        syncer.sync_single(memory.file_path)
        assert index.get(memory.id)

        Path(memory.file_path).unlink()
        syncer.sync_single(memory.file_path)
        assert index.get_all() == []

        syncer.sync_single(memory.file_path)

    def test_clean_orphaned(self, syncer, long_term, index):
        gone = long_term.add_knowledge("Gone", "x")
        long_term.add_knowledge("Here", "y")
        Path(gone.file_path).unlink()

        assert syncer.clean_orphaned() == 1
        assert [r.title for r in index.get_all()] == ["Here"]

    def test_index_orphaned_files(self, syncer, files, index):
        write_unindexed(files, "One")
        write_unindexed(files, "Two")
        assert syncer.index_orphaned_files() == 2
        assert syncer.index_orphaned_files() == 0
        assert len(index.get_all()) == 2

    def test_incremental_sync(self, syncer, files, index):
        memory = write_unindexed(files)
        assert syncer.changed_since(datetime.now() + timedelta(hours=1)) == []
        assert syncer.changed_since(datetime.now() - timedelta(hours=1)) == [memory.file_path]

        result = syncer.incremental_sync(datetime.now() - timedelta(hours=1))

        assert result.updated == 1
        assert index.get(memory.id)
