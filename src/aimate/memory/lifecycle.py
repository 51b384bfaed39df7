"""Periodic maintenance: expiry, archival, promotion and index sync."""

import asyncio
import logging
import time
from collections.abc import Iterator
from dataclasses import dataclass, field
from datetime import datetime

from ..logging import MemoryEventLog
from .config import MaintenanceConfig
from .errors import MemoryEngineError
from .long_term import LongTermMemoryManager
from .short_term import ShortTermMemoryManager
from .sync import IndexSyncer

logger = logging.getLogger(__name__)


@dataclass
class MaintenanceResult:
    start_time: datetime = field(default_factory=datetime.now)
    end_time: datetime | None = None
    duration_ms: float = 0.0
    expired_cleaned: int = 0
    inactive_archived: int = 0
    promoted: int = 0
    index_synced: int = 0
    orphaned_cleaned: int = 0
    errors: list[str] = field(default_factory=list)


@dataclass
class MaintenanceStats:
    last_maintenance: datetime | None = None
    is_running: bool = False
    short_term_total: int = 0
    short_term_expired: int = 0
    long_term_total: int = 0
    long_term_archived: int = 0


class LifecycleManager:
    """Runs maintenance once on start and then every ``interval_minutes``.

    The loop is a single asyncio task stopped through an event, so
    ``stop()`` returns only after the task has finished.
    """

    def __init__(
        self,
        config: MaintenanceConfig,
        short_term: ShortTermMemoryManager | None = None,
        long_term: LongTermMemoryManager | None = None,
        syncer: IndexSyncer | None = None,
        events: MemoryEventLog | None = None,
    ) -> None:
        self.config = config
        self.short_term = short_term
        self.long_term = long_term
        self.syncer = syncer
        self.events = events
        self.last_maintenance: datetime | None = None
        self._task: asyncio.Task | None = None
        self._stop_event: asyncio.Event | None = None

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        """Start the background loop; a running loop is left alone."""
        if self.is_running:
            return
        self._stop_event = asyncio.Event()
        self._task = asyncio.create_task(self._loop(self._stop_event))

    async def stop(self) -> None:
        """Signal the loop to stop and wait for it to finish."""
        if self._stop_event is not None:
            self._stop_event.set()
        await self.join()

    async def join(self) -> None:
        """Wait for the background loop to finish."""
        if self._task is None:
            return
        try:
            await self._task
        finally:
            self._task = None
            self._stop_event = None

    async def _loop(self, stop_event: asyncio.Event) -> None:
        interval = self.config.interval_minutes * 60
        while True:
            try:
                await self.run_maintenance_async()
            except Exception:
                logger.exception("Maintenance pass failed")
            try:
                await asyncio.wait_for(stop_event.wait(), timeout=interval)
                return
            except asyncio.TimeoutError:
                continue

    def run_maintenance(self) -> MaintenanceResult:
        """Run every enabled step once.

        Steps run independently: a failure is recorded in ``errors`` and the
        remaining steps still run. Blocks the calling thread for the whole
        pass; from a running event loop prefer ``run_maintenance_async``.
        """
        started = time.monotonic()
        result = MaintenanceResult()
        for _ in self._steps(result):
            pass
        return self._finish(result, started)

    async def run_maintenance_async(self) -> MaintenanceResult:
        """Same as ``run_maintenance``, yielding to the event loop between steps."""
        started = time.monotonic()
        result = MaintenanceResult()
        for _ in self._steps(result):
            await asyncio.sleep(0)
        return self._finish(result, started)

    def _steps(self, result: MaintenanceResult) -> Iterator[None]:
        if not self.config.enabled:
            return

        if self.config.cleanup_expired and self.short_term is not None:
            try:
                result.expired_cleaned = self.short_term.clean_expired(result.errors)
            except (MemoryEngineError, OSError) as e:
                result.errors.append(f"clean expired: {e}")
            yield

        if self.long_term is not None:
            try:
                result.inactive_archived = self.long_term.archive_inactive(result.errors)
            except (MemoryEngineError, OSError) as e:
                result.errors.append(f"archive inactive: {e}")
            yield

        if self.short_term is not None and self.long_term is not None:
            try:
                result.promoted = self.promote_high_access(result.errors)
            except (MemoryEngineError, OSError) as e:
                result.errors.append(f"promote: {e}")
            yield

        if self.config.sync_index and self.syncer is not None:
            try:
                sync = self.syncer.sync_all()
            except (MemoryEngineError, OSError) as e:
                result.errors.append(f"sync index: {e}")
            else:
                result.index_synced = sync.created + sync.updated
                result.orphaned_cleaned = sync.deleted
                result.errors.extend(sync.error_details)
            yield

        self.last_maintenance = datetime.now()

    def _finish(self, result: MaintenanceResult, started: float) -> MaintenanceResult:
        result.end_time = self.last_maintenance if self.config.enabled else datetime.now()
        result.duration_ms = (time.monotonic() - started) * 1000
        if not self.config.enabled:
            return result

        if result.errors:
            logger.warning("Maintenance finished with %d errors", len(result.errors))
        if self.events is not None:
            self.events.log_result(
                "maintenance_completed",
                result.duration_ms,
                result.errors,
                expired_cleaned=result.expired_cleaned,
                inactive_archived=result.inactive_archived,
                promoted=result.promoted,
                index_synced=result.index_synced,
                orphaned_cleaned=result.orphaned_cleaned,
            )
        return result

    def promote_high_access(self, errors: list[str] | None = None) -> int:
        """Move frequently accessed short-term memories to long-term.

        The long-term copy is written before the short-term original is
        deleted. If the delete fails both copies remain.
        """
        if self.short_term is None or self.long_term is None:
            return 0
        promoted = 0
        for memory in self.short_term.get_high_access():
            try:
                self.long_term.promote_from_short_term(memory)
            except (MemoryEngineError, OSError) as e:
                logger.warning("Failed to promote %s: %s", memory.id, e)
                if errors is not None:
                    errors.append(f"promote {memory.id}: {e}")
                continue
            try:
                self.short_term.delete(memory.id)
            except (MemoryEngineError, OSError) as e:
                logger.warning("Promoted %s but could not remove the original: %s", memory.id, e)
                if errors is not None:
                    errors.append(f"remove promoted {memory.id}: {e}")
                continue
            promoted += 1
        return promoted

    def stats(self) -> MaintenanceStats:
        stats = MaintenanceStats(last_maintenance=self.last_maintenance, is_running=self.is_running)
        if self.short_term is not None:
            short = self.short_term.stats()
            stats.short_term_total = short.total
            stats.short_term_expired = short.expired_count
        if self.long_term is not None:
            long = self.long_term.stats()
            stats.long_term_total = long.total
            stats.long_term_archived = long.archived_count
        return stats
