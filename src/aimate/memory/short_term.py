"""Short-term memory: tasks, notes and context summaries with a TTL."""

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from pathlib import Path

from ..logging import MemoryEventLog
from .base import TierManager, truncate_content
from .config import ShortTermConfig
from .errors import MemoryEngineError
from .filestore import MarkdownFileStore
from .index import IndexStore, LayeredIndexStore
from .layout import StorageLayout
from .models import IndexRow, Memory, MemoryCategory, MemoryScope, MemoryStatus, MemoryType

logger = logging.getLogger(__name__)

CATEGORY_LABELS = {
    MemoryCategory.TASK: "Task",
    MemoryCategory.NOTE: "Note",
    MemoryCategory.CONTEXT: "Context",
}


@dataclass
class ShortTermStats:
    total: int = 0
    task_count: int = 0
    note_count: int = 0
    context_count: int = 0
    expired_count: int = 0
    high_access_count: int = 0


class ShortTermMemoryManager(TierManager):
    """Manages expiring memories under ``short_term/`` of each root."""

    memory_type = MemoryType.SHORT_TERM
    categories = (MemoryCategory.TASK, MemoryCategory.NOTE, MemoryCategory.CONTEXT)

    def __init__(
        self,
        layout: StorageLayout,
        files: MarkdownFileStore,
        index: IndexStore | LayeredIndexStore,
        config: ShortTermConfig,
        events: MemoryEventLog | None = None,
    ) -> None:
        super().__init__(layout, files, index, events)
        self.config = config

    def directories(self) -> list[Path]:
        return [self.layout.short_term_dir(scope=scope) for scope, _ in self.layout.roots()]

    def add(
        self,
        category: MemoryCategory,
        scope: MemoryScope,
        title: str,
        content: str,
        ttl_days: int = 0,
        tags: list[str] | None = None,
        importance: int = 3,
        source: str = "user",
    ) -> Memory:
        """Add a short-term memory.

        Args:
            category: task, note or context.
            scope: Requested scope; project falls back to global without an
                active project.
            title: Memory title.
            content: Memory body.
            ttl_days: Days until expiry; the category default when not positive.
            tags: Optional tags.
            importance: 1 to 5.
            source: Origin of the memory.

        Returns:
            The persisted memory.
        """
        memory = self._new_memory(category, scope, title, content, tags, importance, source)
        memory.set_ttl(ttl_days if ttl_days > 0 else self.config.ttl_for(category.value))
        return self._persist(memory)

    def _default_scope(self) -> MemoryScope:
        return MemoryScope.PROJECT if self.layout.has_project else MemoryScope.GLOBAL

    def add_task(self, title: str, content: str, ttl_days: int = 0) -> Memory:
        return self.add(MemoryCategory.TASK, self._default_scope(), title, content, ttl_days)

    def add_note(self, title: str, content: str, ttl_days: int = 0) -> Memory:
        return self.add(MemoryCategory.NOTE, self._default_scope(), title, content, ttl_days)

    def add_context(
        self, title: str, content: str, ttl_days: int = 0, source: str = "user"
    ) -> Memory:
        return self.add(
            MemoryCategory.CONTEXT, self._default_scope(), title, content, ttl_days, source=source
        )

    def list_tasks(self) -> list[Memory]:
        return self.load_by_category(MemoryCategory.TASK)

    def list_notes(self) -> list[Memory]:
        return self.load_by_category(MemoryCategory.NOTE)

    def list_contexts(self) -> list[Memory]:
        return self.load_by_category(MemoryCategory.CONTEXT)

    def _read_rows(self, rows: list[IndexRow]) -> list[Memory]:
        memories: list[Memory] = []
        for row in rows:
            try:
                memories.append(self.files.read_memory(row.file_path))
            except MemoryEngineError as e:
                logger.debug("Skipping indexed memory %s: %s", row.id, e)
        return memories

    def load_recent(self, days: int) -> list[Memory]:
        """Active short-term memories created within the last ``days`` days."""
        rows = [
            r for r in self.index.get_recent(days, MemoryType.SHORT_TERM)
            if r.status == MemoryStatus.ACTIVE
        ]
        return [m for m in self._read_rows(rows) if m.is_active]

    def get_expired(self, now: datetime | None = None) -> list[Memory]:
        """Short-term memories past their expiry that are not archived yet."""
        rows = [
            r for r in self.index.get_expired(now)
            if r.type == MemoryType.SHORT_TERM and r.status == MemoryStatus.ACTIVE
        ]
        return self._read_rows(rows)

    def clean_expired(self, errors: list[str] | None = None) -> int:
        """Archive every expired short-term memory.

        Args:
            errors: Collects one message per memory that failed to archive.

        Returns:
            Number of memories archived.
        """
        cleaned = 0
        for memory in self.get_expired():
            try:
                self.archive_memory(memory)
            except (MemoryEngineError, OSError) as e:
                logger.warning("Failed to archive expired memory %s: %s", memory.id, e)
                if errors is not None:
                    errors.append(f"archive expired {memory.id}: {e}")
                continue
            cleaned += 1
        return cleaned

    def extend_ttl(self, memory_id: str, days: int) -> Memory:
        """Push a memory's expiry ``days`` further out (from now if unset)."""
        memory = self.find_by_id(memory_id)
        base = memory.expires_at or datetime.now()
        memory.expires_at = base + timedelta(days=days)
        return self._save(memory)

    def get_high_access(self) -> list[Memory]:
        """Active memories whose access count reached the promotion threshold."""
        return [
            m for m in self.load_all()
            if m.is_active and m.access_count >= self.config.promote_threshold
        ]

    def stats(self) -> ShortTermStats:
        stats = ShortTermStats()
        for memory in self.load_all():
            stats.total += 1
            if memory.category == MemoryCategory.TASK:
                stats.task_count += 1
            elif memory.category == MemoryCategory.NOTE:
                stats.note_count += 1
            elif memory.category == MemoryCategory.CONTEXT:
                stats.context_count += 1
            if memory.is_expired():
                stats.expired_count += 1
            if memory.access_count >= self.config.promote_threshold:
                stats.high_access_count += 1
        return stats

    def heading(self) -> str:
        return "Short-term memory"

    def format_entry(self, memory: Memory) -> str:
        label = CATEGORY_LABELS.get(memory.category, memory.category.value)
        return (
            f"### [{label}] {memory.title}\n"
            f"*Created {memory.created_at:%Y-%m-%d}*\n\n"
            f"{truncate_content(memory.content, 300)}\n\n"
        )
