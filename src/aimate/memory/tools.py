"""Agent-facing tools: remember, recall and forget."""

from dataclasses import dataclass, field
from typing import Any

from ..tools.base import Tool, ToolResult
from .base import truncate_content
from .errors import MemoryEngineError
from .models import Memory, MemoryCategory, MemoryScope, MemoryType
from .retrieval import RetrievalOptions
from .system import MemorySystem

TIER_CHOICES = ["auto", "core", "short_term", "long_term"]

DEFAULT_CATEGORY = {
    MemoryType.CORE: MemoryCategory.PREFERENCE,
    MemoryType.SHORT_TERM: MemoryCategory.NOTE,
    MemoryType.LONG_TERM: MemoryCategory.KNOWLEDGE,
}


@dataclass
class RememberArgs:
    content: str
    tier: str = "auto"
    category: str | None = None
    title: str | None = None
    scope: str | None = None
    tags: list[str] = field(default_factory=list)
    importance: int = 3


@dataclass
class RecallArgs:
    query: str
    top_k: int = 5
    tier: str | None = None


@dataclass
class ForgetArgs:
    memory_id: str


class RememberTool(Tool):
    """Stores something the user explicitly asked to keep."""

    def __init__(self, memory: MemorySystem) -> None:
        self.memory = memory

    @property
    def name(self) -> str:
        return "remember"

    @property
    def description(self) -> str:
        return (
            "Save information for future conversations. Use when the user asks "
            "you to remember something, states a preference, or shares project facts."
        )

    @property
    def parameters(self) -> dict[str, Any]:
        return {
            "type": "object",
            "properties": {
                "content": {"type": "string", "description": "What to remember."},
                "tier": {
                    "type": "string",
                    "enum": TIER_CHOICES,
                    "description": "Where to store it; 'auto' lets the classifier decide.",
                },
                "category": {
                    "type": "string",
                    "enum": [c.value for c in MemoryCategory],
                    "description": "Category within the tier.",
                },
                "title": {"type": "string", "description": "Short title."},
                "scope": {"type": "string", "enum": [s.value for s in MemoryScope]},
                "tags": {"type": "array", "items": {"type": "string"}},
                "importance": {"type": "integer", "minimum": 1, "maximum": 5},
            },
            "required": ["content"],
        }

    async def execute(self, **kwargs: Any) -> ToolResult:
        args = RememberArgs(**kwargs)
        if not args.content.strip():
            return ToolResult(success=False, output="", error="'content' must not be empty")

        try:
            memory = await self._store(args)
        except MemoryEngineError as e:
            return ToolResult(success=False, output="", error=str(e))
        return ToolResult(
            success=True,
            output=f"Remembered [{memory.type.value}] {memory.title}",
            metadata={"memory_id": memory.id},
        )

    async def _store(self, args: RememberArgs) -> Memory:
        classifier = self.memory.classifier
        result = classifier.classify_from_conversation(args.content)

        if args.tier != "auto":
            tier = MemoryType(args.tier)
        elif result.should_store and result.memory_type is not None:
            tier = result.memory_type
        else:
            tier = MemoryType.LONG_TERM

        if args.category is not None:
            category = MemoryCategory(args.category)
        elif result.should_store and result.memory_type == tier and result.category is not None:
            category = result.category
        else:
            category = DEFAULT_CATEGORY[tier]

        title = args.title or classifier.extract_title(args.content, "Remembered note")
        tags = args.tags or classifier.extract_tags(args.content)
        scope = (
            MemoryScope(args.scope)
            if args.scope
            else classifier.determine_scope(args.content, self.memory.layout.has_project)
        )

        if tier == MemoryType.CORE:
            return self.memory.core.add(category, title, args.content, tags=tags, importance=max(args.importance, 4))
        if tier == MemoryType.SHORT_TERM:
            memory = self.memory.short_term.add(
                category, scope, title, args.content, tags=tags, importance=args.importance
            )
        else:
            memory = self.memory.long_term.add(
                category, scope, title, args.content, tags=tags, importance=args.importance
            )
        await self.memory.embed_memory(memory)
        return memory


class RecallTool(Tool):
    """Searches memories relevant to a query."""

    def __init__(self, memory: MemorySystem) -> None:
        self.memory = memory

    @property
    def name(self) -> str:
        return "recall"

    @property
    def description(self) -> str:
        return "Search stored memories for information related to a query."

    @property
    def parameters(self) -> dict[str, Any]:
        return {
            "type": "object",
            "properties": {
                "query": {"type": "string", "description": "What to look for."},
                "top_k": {"type": "integer", "minimum": 1, "maximum": 20},
                "tier": {"type": "string", "enum": TIER_CHOICES[1:]},
            },
            "required": ["query"],
        }

    async def execute(self, **kwargs: Any) -> ToolResult:
        args = RecallArgs(**kwargs)
        options = RetrievalOptions(
            top_k=args.top_k,
            memory_types=[MemoryType(args.tier)] if args.tier else [],
            min_similarity=0.3,
        )
        results = await self.memory.search_detailed(args.query, options)
        if not results:
            return ToolResult(success=True, output=f"Nothing remembered about '{args.query}'")

        lines = [
            f"- ({r.memory.id}) [{r.memory.type.value}] {r.memory.title}: "
            f"{truncate_content(r.memory.content, 200)}"
            for r in results
        ]
        return ToolResult(
            success=True,
            output="\n".join(lines),
            metadata={"count": len(results)},
        )


class ForgetTool(Tool):
    """Deletes a memory by id."""

    def __init__(self, memory: MemorySystem) -> None:
        self.memory = memory

    @property
    def name(self) -> str:
        return "forget"

    @property
    def description(self) -> str:
        return (
            "Delete a stored memory by its id (as shown by recall). "
            "Use when the user asks you to forget something."
        )

    @property
    def parameters(self) -> dict[str, Any]:
        return {
            "type": "object",
            "properties": {
                "memory_id": {"type": "string", "description": "Id of the memory to delete."},
            },
            "required": ["memory_id"],
        }

    async def execute(self, **kwargs: Any) -> ToolResult:
        args = ForgetArgs(**kwargs)
        try:
            self.memory.delete_memory(args.memory_id)
        except MemoryEngineError as e:
            if e.is_not_found:
                return ToolResult(success=True, output=f"No memory with id {args.memory_id}")
            return ToolResult(success=False, output="", error=str(e))
        return ToolResult(success=True, output=f"Forgot memory {args.memory_id}")


def memory_tools(memory: MemorySystem) -> list[Tool]:
    """The remember, recall and forget tools bound to one memory system."""
    return [RememberTool(memory), RecallTool(memory), ForgetTool(memory)]
