"""Shared CRUD for the file-backed memory tiers."""

import logging
import uuid
from collections.abc import Callable
from datetime import datetime
from pathlib import Path

from ..logging import MemoryEventLog
from .errors import ErrorKind, MemoryEngineError, is_not_found
from .filestore import MarkdownFileStore
from .index import IndexStore, LayeredIndexStore
from .layout import StorageLayout
from .models import (
    IndexRow,
    Memory,
    MemoryCategory,
    MemoryScope,
    MemoryType,
    estimate_tokens,
)

logger = logging.getLogger(__name__)


def truncate_content(content: str, max_chars: int) -> str:
    """Flatten newlines and cap ``content`` at ``max_chars`` characters."""
    content = content.replace("\r", "").replace("\n", " ")
    if len(content) <= max_chars:
        return content
    return content[:max_chars] + "..."


class TierManager:
    """Base for tier managers: one file per memory, one index row per file.

    Subclasses set ``memory_type`` and ``categories`` and say which
    directories hold their documents.
    """

    memory_type: MemoryType
    categories: tuple[MemoryCategory, ...] = ()

    def __init__(
        self,
        layout: StorageLayout,
        files: MarkdownFileStore,
        index: IndexStore | LayeredIndexStore,
        events: MemoryEventLog | None = None,
    ) -> None:
        self.layout = layout
        self.files = files
        self.index = index
        self.events = events

    # -- hooks ------------------------------------------------------------

    def directories(self) -> list[Path]:
        """Directories holding this tier's live documents."""
        raise NotImplementedError

    def _recursive(self) -> bool:
        return True

    # -- helpers ----------------------------------------------------------

    def resolve_scope(self, scope: MemoryScope) -> MemoryScope:
        """Project scope without an active project becomes global."""
        if scope == MemoryScope.PROJECT and not self.layout.has_project:
            return MemoryScope.GLOBAL
        return scope

    def _check_category(self, category: MemoryCategory) -> None:
        if self.categories and category not in self.categories:
            raise MemoryEngineError(
                f"{self.memory_type.value}.add",
                ErrorKind.OPERATION_FAILED,
                details=f"category {category.value} does not belong to this tier",
            )

    def _new_memory(
        self,
        category: MemoryCategory,
        scope: MemoryScope,
        title: str,
        content: str,
        tags: list[str] | None = None,
        importance: int = 3,
        source: str = "user",
    ) -> Memory:
        self._check_category(category)
        scope = self.resolve_scope(scope)
        now = datetime.now()
        return Memory(
            id=str(uuid.uuid4()),
            type=self.memory_type,
            scope=scope,
            category=category,
            title=title,
            content=content,
            tags=list(tags or []),
            source=source,
            project_path=(
                str(self.layout.project_path)
                if scope == MemoryScope.PROJECT and self.layout.project_path
                else None
            ),
            importance=importance,
            created_at=now,
            updated_at=now,
            accessed_at=now,
        )

    def _persist(self, memory: Memory) -> Memory:
        """Write the document, then its index row.

        If indexing fails the document is removed again so neither side is
        left half-created.
        """
        self.files.create_memory(memory)
        try:
            self.index.add(IndexRow.from_memory(memory))
        except Exception:
            self.files.delete_memory(memory.file_path)
            raise
        self._log("memory_created", memory)
        return memory

    def _save(self, memory: Memory, touch: bool = True) -> Memory:
        self.files.update_memory(memory, touch=touch)
        self.index.upsert(IndexRow.from_memory(memory))
        self._log("memory_updated", memory)
        return memory

    def _log(self, event: str, memory: Memory, **extra) -> None:
        if self.events is not None:
            self.events.log_memory(
                event, memory.id, memory.file_path, tier=memory.type.value, **extra
            )

    # -- CRUD -------------------------------------------------------------

    def find_by_id(self, memory_id: str) -> Memory:
        """Read a memory through its index row.

        Raises:
            MemoryEngineError: If the id is not indexed or the file is gone.
        """
        row = self.index.get(memory_id)
        return self.files.read_memory(row.file_path)

    def find_by_title(self, title: str) -> Memory | None:
        for memory in self.load_all():
            if memory.title == title:
                return memory
        return None

    def update(
        self,
        memory_id: str,
        content: str | None = None,
        *,
        title: str | None = None,
        tags: list[str] | None = None,
        importance: int | None = None,
    ) -> Memory:
        """Change a memory's content or metadata.

        The hash is recomputed and ``updated_at`` bumped on every update.
        """
        memory = self.find_by_id(memory_id)
        if content is not None:
            memory.content = content
        if title is not None:
            memory.title = title
        if tags is not None:
            memory.tags = list(tags)
        if importance is not None:
            memory.importance = importance
        return self._save(memory)

    def delete(self, memory_id: str) -> None:
        """Remove a memory's document and index row.

        A document already gone from disk is not an error; the row is
        dropped either way.
        """
        row = self.index.get(memory_id)
        try:
            self.files.delete_memory(row.file_path)
        except MemoryEngineError as e:
            if not is_not_found(e):
                raise
            logger.debug("Document of %s already removed: %s", memory_id, row.file_path)
        self.index.delete(memory_id)
        if self.events is not None:
            self.events.log("memory_deleted", memory_id=memory_id, path=row.file_path)

    def archive(self, memory_id: str) -> Memory:
        """Move a memory into the archive tree and mark it archived."""
        return self.archive_memory(self.find_by_id(memory_id))

    def archive_memory(self, memory: Memory) -> Memory:
        self.files.archive_memory(memory)
        self.index.upsert(IndexRow.from_memory(memory))
        self._log("memory_archived", memory)
        return memory

    # -- listing ----------------------------------------------------------

    def load_all(self) -> list[Memory]:
        """Every readable document of this tier across active roots."""
        memories: list[Memory] = []
        for directory in self.directories():
            memories.extend(self.files.list_memories(directory, recursive=self._recursive()))
        return memories

    def load_by_category(self, category: MemoryCategory) -> list[Memory]:
        return [m for m in self.load_all() if m.category == category]

    def load_active(self) -> list[Memory]:
        """Active, unexpired memories, most recently updated first."""
        active = [m for m in self.load_all() if m.is_active]
        active.sort(key=lambda m: m.updated_at, reverse=True)
        return active

    def search(self, keyword: str, limit: int = 10) -> list[Memory]:
        """Keyword search restricted to this tier."""
        memories: list[Memory] = []
        for row in self.index.search(keyword, limit * 2):
            if row.type != self.memory_type:
                continue
            try:
                memories.append(self.files.read_memory(row.file_path))
            except MemoryEngineError as e:
                logger.debug("Skipping indexed memory %s: %s", row.id, e)
            if len(memories) >= limit:
                break
        return memories

    # -- context ----------------------------------------------------------

    def format_entry(self, memory: Memory) -> str:
        raise NotImplementedError

    def heading(self) -> str:
        raise NotImplementedError

    def context_candidates(self) -> list[Memory]:
        return self.load_active()

    def build_context(self, max_tokens: int) -> str:
        """Render this tier as a Markdown section within ``max_tokens``.

        Entries are added whole in order until the next one would exceed the
        budget; no entry is cut in the middle.
        """
        return render_section(self.heading(), self.context_candidates(), self.format_entry, max_tokens)


def render_section(
    heading: str,
    memories: list[Memory],
    format_entry: Callable[[Memory], str],
    max_tokens: int,
) -> str:
    """Heading plus as many formatted entries as fit in ``max_tokens``."""
    if not memories or max_tokens <= 0:
        return ""

    head = f"## {heading}\n\n"
    text = head
    for memory in memories:
        candidate = text + format_entry(memory)
        if estimate_tokens(candidate) > max_tokens:
            break
        text = candidate

    if text == head:
        return ""
    return text
