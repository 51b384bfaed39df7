"""Long-term memory: project knowledge, general knowledge and decisions."""

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from pathlib import Path

from ..logging import MemoryEventLog
from .base import TierManager, truncate_content
from .config import LongTermConfig
from .errors import ErrorKind, MemoryEngineError
from .filestore import MarkdownFileStore
from .index import IndexStore, LayeredIndexStore
from .layout import StorageLayout
from .models import Memory, MemoryCategory, MemoryScope, MemoryStatus, MemoryType
from .vector_store import LayeredVectorStore, VectorStore

logger = logging.getLogger(__name__)

CATEGORY_LABELS = {
    MemoryCategory.PROJECT: "Project knowledge",
    MemoryCategory.KNOWLEDGE: "Knowledge",
    MemoryCategory.DECISION: "Decision",
}


@dataclass
class LongTermStats:
    total: int = 0
    project_count: int = 0
    knowledge_count: int = 0
    decision_count: int = 0
    global_count: int = 0
    project_scope_count: int = 0
    archived_count: int = 0


class LongTermMemoryManager(TierManager):
    """Manages durable memories under ``long_term/`` of each root.

    Owns the vector rows of its memories: deleting a long-term memory also
    drops its embedding.
    """

    memory_type = MemoryType.LONG_TERM
    categories = (MemoryCategory.PROJECT, MemoryCategory.KNOWLEDGE, MemoryCategory.DECISION)

    def __init__(
        self,
        layout: StorageLayout,
        files: MarkdownFileStore,
        index: IndexStore | LayeredIndexStore,
        config: LongTermConfig,
        vectors: VectorStore | LayeredVectorStore | None = None,
        events: MemoryEventLog | None = None,
    ) -> None:
        super().__init__(layout, files, index, events)
        self.config = config
        self.vectors = vectors

    def directories(self) -> list[Path]:
        return [self.layout.long_term_dir(scope=scope) for scope, _ in self.layout.roots()]

    def add(
        self,
        category: MemoryCategory,
        scope: MemoryScope,
        title: str,
        content: str,
        tags: list[str] | None = None,
        importance: int = 3,
        source: str = "user",
    ) -> Memory:
        """Add a long-term memory.

        Args:
            category: project, knowledge or decision.
            scope: Requested scope; project falls back to global without an
                active project.
            title: Memory title.
            content: Memory body.
            tags: Optional tags.
            importance: 1 to 5.
            source: Origin of the memory.
        """
        memory = self._new_memory(category, scope, title, content, tags, importance, source)
        return self._persist(memory)

    def add_project_knowledge(
        self, title: str, content: str, tags: list[str] | None = None
    ) -> Memory:
        scope = MemoryScope.PROJECT if self.layout.has_project else MemoryScope.GLOBAL
        return self.add(MemoryCategory.PROJECT, scope, title, content, tags)

    def add_knowledge(self, title: str, content: str, tags: list[str] | None = None) -> Memory:
        return self.add(MemoryCategory.KNOWLEDGE, MemoryScope.GLOBAL, title, content, tags)

    def add_decision(self, title: str, content: str, tags: list[str] | None = None) -> Memory:
        scope = MemoryScope.PROJECT if self.layout.has_project else MemoryScope.GLOBAL
        return self.add(MemoryCategory.DECISION, scope, title, content, tags)

    def delete(self, memory_id: str) -> None:
        super().delete(memory_id)
        if self.vectors is not None:
            self.vectors.delete(memory_id)

    def load_by_scope(self, scope: MemoryScope) -> list[Memory]:
        return [m for m in self.load_all() if m.scope == scope]

    def load_active(self) -> list[Memory]:
        """Active memories, most important first, then most recently updated."""
        active = [m for m in self.load_all() if m.is_active]
        active.sort(key=lambda m: (m.importance, m.updated_at), reverse=True)
        return active

    def list_project_knowledge(self) -> list[Memory]:
        return self.load_by_category(MemoryCategory.PROJECT)

    def list_knowledge(self) -> list[Memory]:
        return self.load_by_category(MemoryCategory.KNOWLEDGE)

    def list_decisions(self) -> list[Memory]:
        return self.load_by_category(MemoryCategory.DECISION)

    def search_by_tags(self, tags: list[str], limit: int = 10) -> list[Memory]:
        """Active memories carrying any of ``tags`` (case-insensitive)."""
        wanted = {t.lower() for t in tags}
        matches = [
            m for m in self.load_active()
            if wanted.intersection(t.lower() for t in m.tags)
        ]
        return matches[:limit]

    def set_importance(self, memory_id: str, importance: int) -> Memory:
        """Set importance, which must be between 1 and 5.

        Raises:
            MemoryEngineError: If ``importance`` is out of range.
        """
        if not 1 <= importance <= 5:
            raise MemoryEngineError(
                "long_term.set_importance",
                ErrorKind.OPERATION_FAILED,
                details="importance must be between 1 and 5",
            )
        return self.update(memory_id, importance=importance)

    # -- relations --------------------------------------------------------

    def _link(self, memory_id: str, other_id: str, add: bool) -> None:
        memory = self.find_by_id(memory_id)
        if add and other_id not in memory.related:
            memory.related.append(other_id)
        elif not add and other_id in memory.related:
            memory.related.remove(other_id)
        else:
            return
        self._save(memory)

    def add_relation(self, memory_id: str, related_id: str) -> None:
        """Link two memories in both directions.

        Both memories must exist; linking an already linked pair is a no-op.
        """
        if memory_id == related_id:
            return
        self.find_by_id(related_id)
        self._link(memory_id, related_id, add=True)
        self._link(related_id, memory_id, add=True)

    def remove_relation(self, memory_id: str, related_id: str) -> None:
        """Unlink two memories in both directions.

        A side that no longer exists is skipped.
        """
        self._link(memory_id, related_id, add=False)
        try:
            self._link(related_id, memory_id, add=False)
        except MemoryEngineError as e:
            if not e.is_not_found:
                raise

    def get_related(self, memory_id: str) -> list[Memory]:
        """Memories linked from ``memory_id``; dangling links are skipped."""
        memory = self.find_by_id(memory_id)
        related: list[Memory] = []
        for other_id in memory.related:
            try:
                related.append(self.find_by_id(other_id))
            except MemoryEngineError as e:
                logger.debug("Dangling relation %s -> %s: %s", memory_id, other_id, e)
        return related

    # -- lifecycle --------------------------------------------------------

    def get_inactive(self, now: datetime | None = None) -> list[Memory]:
        """Active memories not accessed within ``inactive_archive_days``."""
        cutoff = (now or datetime.now()) - timedelta(days=self.config.inactive_archive_days)
        return [
            m for m in self.load_all()
            if m.status == MemoryStatus.ACTIVE and m.accessed_at < cutoff
        ]

    def archive_inactive(self, errors: list[str] | None = None) -> int:
        """Archive every inactive memory.

        Args:
            errors: Collects one message per memory that failed to archive.

        Returns:
            Number of memories archived.
        """
        archived = 0
        for memory in self.get_inactive():
            try:
                self.archive_memory(memory)
            except (MemoryEngineError, OSError) as e:
                logger.warning("Failed to archive inactive memory %s: %s", memory.id, e)
                if errors is not None:
                    errors.append(f"archive inactive {memory.id}: {e}")
                continue
            archived += 1
        return archived

    def promote_from_short_term(self, source: Memory) -> Memory:
        """Create a long-term knowledge memory from a short-term one.

        The new record keeps scope, title, content, tags, importance and the
        access count. Removing the short-term original is up to the caller,
        after this returns.
        """
        memory = self._new_memory(
            MemoryCategory.KNOWLEDGE,
            source.scope,
            source.title,
            source.content,
            source.tags,
            source.importance,
            source="promotion",
        )
        memory.access_count = source.access_count
        self._persist(memory)
        self._log("memory_promoted", memory, from_id=source.id)
        return memory

    def stats(self) -> LongTermStats:
        stats = LongTermStats()
        for memory in self.load_all():
            stats.total += 1
            if memory.category == MemoryCategory.PROJECT:
                stats.project_count += 1
            elif memory.category == MemoryCategory.KNOWLEDGE:
                stats.knowledge_count += 1
            elif memory.category == MemoryCategory.DECISION:
                stats.decision_count += 1
            if memory.scope == MemoryScope.PROJECT:
                stats.project_scope_count += 1
            else:
                stats.global_count += 1
            if memory.status == MemoryStatus.ARCHIVED:
                stats.archived_count += 1
        return stats

    # -- context ----------------------------------------------------------

    def heading(self) -> str:
        return "Long-term memory"

    def format_entry(self, memory: Memory) -> str:
        label = CATEGORY_LABELS.get(memory.category, memory.category.value)
        lines = [f"### [{label}] {memory.title}\n"]
        if memory.tags:
            lines.append(f"*Tags: {', '.join(memory.tags)}*\n")
        lines.append(f"\n{truncate_content(memory.content, 500)}\n\n")
        return "".join(lines)
