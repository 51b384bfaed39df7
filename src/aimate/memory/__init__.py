"""Multi-tier memory engine: core, session, short-term and long-term."""

from .config import MemoryConfig, load_config, save_config
from .context import BuiltContext, ContextBuilder, ContextWarning
from .embedding import EmbeddingGateway, HashEmbeddingClient, OpenAIEmbeddingClient
from .errors import ErrorKind, MemoryEngineError, is_malformed, is_not_found
from .models import (
    ClassificationResult,
    ContextBudget,
    IndexRow,
    Memory,
    MemoryCategory,
    MemoryScope,
    MemorySearchResult,
    MemoryStatus,
    MemoryType,
    Session,
    SessionMessage,
)
from .retrieval import HybridRetriever, RetrievalOptions
from .system import MemorySystem, MemorySystemStats
from .tools import ForgetTool, RecallTool, RememberTool, memory_tools

__all__ = [
    "BuiltContext",
    "ClassificationResult",
    "ContextBudget",
    "ContextBuilder",
    "ContextWarning",
    "EmbeddingGateway",
    "ErrorKind",
    "ForgetTool",
    "HashEmbeddingClient",
    "HybridRetriever",
    "IndexRow",
    "Memory",
    "MemoryCategory",
    "MemoryConfig",
    "MemoryEngineError",
    "MemoryScope",
    "MemorySearchResult",
    "MemoryStatus",
    "MemorySystem",
    "MemorySystemStats",
    "MemoryType",
    "OpenAIEmbeddingClient",
    "RecallTool",
    "RememberTool",
    "RetrievalOptions",
    "Session",
    "SessionMessage",
    "is_malformed",
    "is_not_found",
    "load_config",
    "memory_tools",
    "save_config",
]
