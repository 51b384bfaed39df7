"""Data models for the memory engine."""

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Any


class MemoryType(str, Enum):
    """Memory tier."""

    CORE = "core"
    SESSION = "session"
    SHORT_TERM = "short_term"
    LONG_TERM = "long_term"


class MemoryScope(str, Enum):
    """Visibility of a memory: across projects or bound to one."""

    GLOBAL = "global"
    PROJECT = "project"


class MemoryCategory(str, Enum):
    """Tier-specific subtype of a memory."""

    # core
    PREFERENCE = "preference"
    RULE = "rule"
    PERSONA = "persona"
    # short_term
    TASK = "task"
    NOTE = "note"
    CONTEXT = "context"
    # long_term
    PROJECT = "project"
    KNOWLEDGE = "knowledge"
    DECISION = "decision"


class MemoryStatus(str, Enum):
    """Lifecycle status of a memory or session."""

    ACTIVE = "active"
    ARCHIVED = "archived"
    EXPIRED = "expired"


def estimate_tokens(text: str) -> int:
    """Estimate the token count of a text (one token per three characters)."""
    return len(text) // 3


@dataclass
class Memory:
    """A single remembered item, backed by one document on disk.

    Attributes:
        id: Opaque unique identifier.
        type: Memory tier.
        scope: Global or project scope.
        category: Tier-specific category.
        title: Short human-readable title.
        content: Free-form body of the document.
        tags: Tag list.
        related: Ids of loosely related memories.
        source: Where the memory came from (user, auto, promotion, ...).
        project_path: Project root for project-scoped memories.
        status: Lifecycle status.
        importance: 1 (low) to 5 (high).
        access_count: Number of times the memory was retrieved.
        content_hash: SHA-256 of the persisted body.
        expires_at: Expiry time, short-term tier only.
        created_at: Creation timestamp.
        updated_at: Last content update.
        accessed_at: Last retrieval.
        file_path: Backing document path.
    """

    id: str
    type: MemoryType
    scope: MemoryScope
    category: MemoryCategory
    title: str
    content: str = ""
    tags: list[str] = field(default_factory=list)
    related: list[str] = field(default_factory=list)
    source: str = "user"
    project_path: str | None = None
    status: MemoryStatus = MemoryStatus.ACTIVE
    importance: int = 3
    access_count: int = 0
    content_hash: str = ""
    expires_at: datetime | None = None
    created_at: datetime = field(default_factory=datetime.now)
    updated_at: datetime = field(default_factory=datetime.now)
    accessed_at: datetime = field(default_factory=datetime.now)
    file_path: str = ""

    def is_expired(self, now: datetime | None = None) -> bool:
        """Check whether the memory has passed its expiry time."""
        if self.expires_at is None:
            return False
        return (now or datetime.now()) >= self.expires_at

    def set_ttl(self, days: int) -> None:
        """Set the expiry time to ``days`` from now; non-positive clears it."""
        if days > 0:
            self.expires_at = datetime.now() + timedelta(days=days)
        else:
            self.expires_at = None

    def increment_access(self) -> None:
        """Record one retrieval of this memory."""
        self.access_count += 1
        self.accessed_at = datetime.now()

    @property
    def is_active(self) -> bool:
        """Active status and not expired."""
        return self.status == MemoryStatus.ACTIVE and not self.is_expired()

    @property
    def token_count(self) -> int:
        """Estimated token count of title plus content."""
        return estimate_tokens(self.title) + estimate_tokens(self.content)


@dataclass
class SessionMessage:
    """A single message in a session transcript."""

    sequence: int
    role: str
    content: str
    timestamp: datetime = field(default_factory=datetime.now)
    token_count: int = 0
    tool_calls: list[dict[str, Any]] | None = None
    tool_call_id: str | None = None

    def to_llm_dict(self) -> dict[str, Any]:
        """Convert to the chat-completion message format."""
        data: dict[str, Any] = {"role": self.role, "content": self.content}
        if self.tool_calls:
            data["tool_calls"] = self.tool_calls
        if self.tool_call_id:
            data["tool_call_id"] = self.tool_call_id
        return data


@dataclass
class Session:
    """A bounded conversation transcript."""

    id: str
    title: str = ""
    project_path: str | None = None
    status: MemoryStatus = MemoryStatus.ACTIVE
    token_count: int = 0
    message_count: int = 0
    created_at: datetime = field(default_factory=datetime.now)
    updated_at: datetime = field(default_factory=datetime.now)
    file_path: str = ""


@dataclass
class IndexRow:
    """Denormalized projection of a Memory used by the metadata index."""

    id: str
    file_path: str
    type: MemoryType
    scope: MemoryScope
    category: MemoryCategory
    title: str
    tags: list[str] = field(default_factory=list)
    content_hash: str = ""
    importance: int = 3
    access_count: int = 0
    token_count: int = 0
    status: MemoryStatus = MemoryStatus.ACTIVE
    project_path: str | None = None
    expires_at: datetime | None = None
    created_at: datetime = field(default_factory=datetime.now)
    updated_at: datetime = field(default_factory=datetime.now)
    accessed_at: datetime = field(default_factory=datetime.now)

    @classmethod
    def from_memory(cls, memory: Memory) -> "IndexRow":
        """Project a memory into an index row."""
        return cls(
            id=memory.id,
            file_path=memory.file_path,
            type=memory.type,
            scope=memory.scope,
            category=memory.category,
            title=memory.title,
            tags=list(memory.tags),
            content_hash=memory.content_hash,
            importance=memory.importance,
            access_count=memory.access_count,
            token_count=memory.token_count,
            status=memory.status,
            project_path=memory.project_path,
            expires_at=memory.expires_at,
            created_at=memory.created_at,
            updated_at=memory.updated_at,
            accessed_at=memory.accessed_at,
        )

    def is_expired(self, now: datetime | None = None) -> bool:
        if self.expires_at is None:
            return False
        return (now or datetime.now()) >= self.expires_at


@dataclass
class ClassificationResult:
    """Recommendation on whether and where to store a piece of user input."""

    should_store: bool = False
    memory_type: MemoryType | None = None
    category: MemoryCategory | None = None
    scope: MemoryScope = MemoryScope.GLOBAL
    title: str = ""
    tags: list[str] = field(default_factory=list)
    ttl_days: int = 0
    importance: int = 3
    confidence: float = 0.0
    reason: str = ""


@dataclass
class MemorySearchResult:
    """A retrieved memory with its ranking score.

    ``match_type`` is one of ``"vector"``, ``"keyword"`` or ``"hybrid"``.
    """

    memory: Memory
    score: float
    match_type: str
    highlights: list[str] = field(default_factory=list)


@dataclass
class ContextBudget:
    """Token budget split across tiers."""

    total: int
    core: int
    session: int
    short_term: int
    long_term: int
    reserved: int

    def allocated(self) -> int:
        """Sum of all components."""
        return self.core + self.session + self.short_term + self.long_term + self.reserved
