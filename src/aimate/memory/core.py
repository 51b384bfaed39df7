"""Core memory: preferences, rules and persona, always global."""

import logging
from pathlib import Path

from ..logging import MemoryEventLog
from .base import TierManager, truncate_content
from .config import CoreConfig
from .errors import ErrorKind, MemoryEngineError
from .filestore import MarkdownFileStore
from .index import IndexStore, LayeredIndexStore
from .layout import StorageLayout
from .models import Memory, MemoryCategory, MemoryScope, MemoryType, estimate_tokens

logger = logging.getLogger(__name__)

DEFAULT_PERSONA_TITLE = "Assistant identity"
DEFAULT_PERSONA = """You are AIMate, a programming assistant.
Your goal is to help the user solve programming problems with accurate code
and clear technical guidance. You should:
- write correct, high-quality code
- explain technical concepts clearly
- follow established practices
- respect the user's stated style preferences"""

SECTION_TITLES = {
    MemoryCategory.PREFERENCE: "User preferences",
    MemoryCategory.PERSONA: "Persona",
    MemoryCategory.RULE: "Rules",
}


class CoreMemoryManager(TierManager):
    """Manages the always-loaded core tier.

    Core memories live flat in the global ``core/`` directory, one file per
    title, and are never project-scoped.
    """

    memory_type = MemoryType.CORE
    categories = (MemoryCategory.PREFERENCE, MemoryCategory.RULE, MemoryCategory.PERSONA)

    def __init__(
        self,
        layout: StorageLayout,
        files: MarkdownFileStore,
        index: IndexStore | LayeredIndexStore,
        config: CoreConfig,
        events: MemoryEventLog | None = None,
    ) -> None:
        super().__init__(layout, files, index, events)
        self.config = config

    def directories(self) -> list[Path]:
        return [self.layout.core_dir]

    def _recursive(self) -> bool:
        return False

    def add(
        self,
        category: MemoryCategory,
        title: str,
        content: str,
        tags: list[str] | None = None,
        importance: int = 5,
        source: str = "user",
    ) -> Memory:
        """Add a core memory.

        Args:
            category: preference, rule or persona.
            title: Unique title among core memories.
            content: Memory body.
            tags: Optional tags.
            importance: Defaults to the highest level.
            source: Origin of the memory.

        Raises:
            MemoryEngineError: If a core memory with this title exists.
        """
        if self.find_by_title(title) is not None:
            raise MemoryEngineError(
                "core.add", ErrorKind.FILE_EXISTS, details=f"core memory titled {title!r} exists"
            )
        memory = self._new_memory(
            category, MemoryScope.GLOBAL, title, content, tags, importance, source
        )
        return self._persist(memory)

    def add_preference(self, title: str, content: str) -> Memory:
        return self.add(MemoryCategory.PREFERENCE, title, content)

    def add_rule(self, title: str, content: str) -> Memory:
        return self.add(MemoryCategory.RULE, title, content)

    def add_persona(self, title: str, content: str) -> Memory:
        return self.add(MemoryCategory.PERSONA, title, content)

    def get_preferences(self) -> list[Memory]:
        return self.load_by_category(MemoryCategory.PREFERENCE)

    def get_rules(self) -> list[Memory]:
        return self.load_by_category(MemoryCategory.RULE)

    def get_personas(self) -> list[Memory]:
        return self.load_by_category(MemoryCategory.PERSONA)

    def init_default_memories(self) -> Memory | None:
        """Create the default persona when the core tier is empty.

        Returns:
            The created persona, or None if core memories already exist.
        """
        if self.load_all():
            return None
        logger.info("Core memory empty, creating default persona")
        return self.add_persona(DEFAULT_PERSONA_TITLE, DEFAULT_PERSONA)

    def get_total_tokens(self) -> int:
        return sum(m.token_count for m in self.load_all())

    def is_over_limit(self) -> bool:
        return self.get_total_tokens() > self.config.max_tokens

    def needs_refine(self) -> bool:
        """True once usage passes ``refine_threshold`` of the core limit."""
        return self.get_total_tokens() > int(self.config.max_tokens * self.config.refine_threshold)

    def build_context(self, max_tokens: int | None = None) -> str:
        """Render core memories grouped by category.

        Preferences come first, then persona, then rules. Whole entries are
        dropped once ``max_tokens`` (the core limit by default) is reached.
        """
        budget = self.config.max_tokens if max_tokens is None else max_tokens
        memories = self.load_active()
        if not memories or budget <= 0:
            return ""

        head = "## Core memory\n"
        text = head
        for category, section in SECTION_TITLES.items():
            entries = [m for m in memories if m.category == category]
            if not entries:
                continue
            block = f"\n### {section}\n\n"
            added = False
            for memory in entries:
                entry = f"- **{memory.title}**: {truncate_content(memory.content, 200)}\n"
                if estimate_tokens(text + block + entry) > budget:
                    break
                block += entry
                added = True
            if added:
                text += block

        if text == head:
            return ""
        return text
