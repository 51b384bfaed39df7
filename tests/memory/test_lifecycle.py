"""Tests for the maintenance lifecycle."""

import asyncio
from datetime import datetime, timedelta
from pathlib import Path
from unittest.mock import AsyncMock, MagicMock

import pytest

from aimate.memory.config import MaintenanceConfig
from aimate.memory.errors import ErrorKind, MemoryEngineError
from aimate.memory.lifecycle import LifecycleManager
from aimate.memory.sync import IndexSyncer


@pytest.fixture
def syncer(layout, files, index, vectors) -> IndexSyncer:
    return IndexSyncer(layout, files, index, vectors)


@pytest.fixture
def lifecycle(short_term, long_term, syncer) -> LifecycleManager:
    return LifecycleManager(MaintenanceConfig(), short_term, long_term, syncer)


class TestRunMaintenance:
    """Tests for a single maintenance pass."""

    def test_expires_archives_and_syncs(self, lifecycle, short_term, long_term, files, index):
        stale = short_term.add_note("Stale", "Body")
        short_term.extend_ttl(stale.id, -30)
        old = long_term.add_knowledge("Old", "Dusty")
        old.accessed_at = datetime.now() - timedelta(days=200)
        files.update_memory(old, touch=False)
        gone = long_term.add_knowledge("Gone", "Deleted by hand")
        Path(gone.file_path).unlink()

        result = lifecycle.run_maintenance()

        assert result.expired_cleaned == 1
        assert result.inactive_archived == 1
        assert result.orphaned_cleaned == 1
        assert result.errors == []
        assert result.end_time is not None
        assert lifecycle.last_maintenance == result.end_time

    def test_promotion(self, lifecycle, short_term, long_term, files, index):
        popular = short_term.add_note("Popular", "Worth keeping")
        for _ in range(5):
            files.record_access(popular)

        result = lifecycle.run_maintenance()

        assert result.promoted == 1
        assert short_term.load_all() == []
        with pytest.raises(MemoryEngineError):
            index.get(popular.id)
        promoted = long_term.load_all()
        assert [m.content for m in promoted] == ["Worth keeping"]
        assert promoted[0].source == "promotion"

    def test_disabled(self, short_term, long_term, syncer):
        lifecycle = LifecycleManager(MaintenanceConfig(enabled=False), short_term, long_term, syncer)
        stale = short_term.add_note("Stale", "Body")
        short_term.extend_ttl(stale.id, -30)

        result = lifecycle.run_maintenance()

        assert result.expired_cleaned == 0
        assert lifecycle.last_maintenance is None

    def test_failing_step_does_not_stop_others(self, short_term, long_term):
        syncer = MagicMock()
        syncer.sync_all.side_effect = MemoryEngineError("sync", ErrorKind.OPERATION_FAILED)
        lifecycle = LifecycleManager(MaintenanceConfig(), short_term, long_term, syncer)
        stale = short_term.add_note("Stale", "Body")
        short_term.extend_ttl(stale.id, -30)

        result = lifecycle.run_maintenance()

        assert result.expired_cleaned == 1
        assert len(result.errors) == 1
        assert result.errors[0].startswith("sync index:")

    def test_promotion_failure_keeps_original(self, short_term, files):
        long_term = MagicMock()
        long_term.promote_from_short_term.side_effect = OSError("disk full")
        long_term.archive_inactive.return_value = 0
        lifecycle = LifecycleManager(MaintenanceConfig(sync_index=False), short_term, long_term)
        popular = short_term.add_note("Popular", "Body")
        for _ in range(5):
            files.record_access(popular)

        result = lifecycle.run_maintenance()

        assert result.promoted == 0
        assert [m.id for m in short_term.load_all()] == [popular.id]
        assert result.errors == [f"promote {popular.id}: disk full"]

    def test_promote_without_both_tiers(self, short_term):
        lifecycle = LifecycleManager(MaintenanceConfig(), short_term, None)
        assert lifecycle.promote_high_access() == 0

    def test_stats(self, lifecycle, short_term, long_term):
        short_term.add_note("Note", "x")
        long_term.add_knowledge("Fact", "y")
        stats = lifecycle.stats()
        assert stats.short_term_total == 1
        assert stats.long_term_total == 1
        assert not stats.is_running
        assert stats.last_maintenance is None


class TestBackgroundLoop:
    """Tests for start, stop and join."""

    @pytest.mark.asyncio
    async def test_runs_once_on_start_and_stops(self, lifecycle):
        lifecycle.start()
        assert lifecycle.is_running

        for _ in range(50):
            if lifecycle.last_maintenance is not None:
                break
            await asyncio.sleep(0.01)

        await lifecycle.stop()

        assert lifecycle.last_maintenance is not None
        assert not lifecycle.is_running

    @pytest.mark.asyncio
    async def test_start_twice_keeps_one_task(self, lifecycle):
        lifecycle.start()
        task = lifecycle._task
        lifecycle.start()
        assert lifecycle._task is task
        await lifecycle.stop()

    @pytest.mark.asyncio
    async def test_async_pass_yields_between_steps(self, lifecycle, short_term):
        stale = short_term.add_note("Stale", "Body")
        short_term.extend_ttl(stale.id, -30)
        ticks = 0

        async def ticker():
            nonlocal ticks
            while True:
                ticks += 1
                await asyncio.sleep(0)

        task = asyncio.create_task(ticker())
        await asyncio.sleep(0)
        before = ticks

        result = await lifecycle.run_maintenance_async()

        task.cancel()
        assert ticks > before
        assert result.expired_cleaned == 1
        assert lifecycle.last_maintenance is not None

    @pytest.mark.asyncio
    async def test_stop_without_start(self, lifecycle):
        await lifecycle.stop()
        assert not lifecycle.is_running

    @pytest.mark.asyncio
    async def test_loop_survives_failing_pass(self, short_term, long_term):
        lifecycle = LifecycleManager(MaintenanceConfig(), short_term, long_term)
        lifecycle.run_maintenance_async = AsyncMock(side_effect=RuntimeError("boom"))

        lifecycle.start()
        await asyncio.sleep(0.05)
        await lifecycle.stop()

        lifecycle.run_maintenance_async.assert_awaited_once()
