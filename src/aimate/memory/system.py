"""MemorySystem: the single entry point the agent loop talks to."""

import logging
import os
from dataclasses import dataclass
from pathlib import Path

from ..logging import MemoryEventLog
from .classifier import MemoryClassifier
from .config import MemoryConfig
from .context import BuiltContext, ContextBuilder, ContextWarning
from .core import CoreMemoryManager
from .embedding import EmbeddingClient, EmbeddingGateway, OpenAIEmbeddingClient
from .errors import ErrorKind, MemoryEngineError
from .filestore import MarkdownFileStore
from .index import LayeredIndexStore, SQLiteIndexStore
from .layout import StorageLayout
from .lifecycle import LifecycleManager, MaintenanceResult
from .long_term import LongTermMemoryManager
from .models import (
    ClassificationResult,
    Memory,
    MemoryScope,
    MemorySearchResult,
    MemoryType,
    Session,
    SessionMessage,
)
from .retrieval import HybridRetriever, RetrievalOptions
from .session import SessionManager
from .short_term import ShortTermMemoryManager
from .summarizer import Summarizer, summarizer_from_env
from .sync import ConsistencyReport, IndexSyncer, SyncResult
from .trimmer import SessionTrimmer, TrimResult
from .vector_store import LayeredVectorStore, SQLiteVectorStore

logger = logging.getLogger(__name__)


@dataclass
class MemorySystemStats:
    core_tokens: int = 0
    session_tokens: int = 0
    session_messages: int = 0
    session_usage_ratio: float = 0.0
    short_term_count: int = 0
    short_term_expired: int = 0
    long_term_count: int = 0
    indexed_count: int = 0
    vector_count: int = 0
    offline_queue_size: int = 0


class MemorySystem:
    """Composes storage, tiers, retrieval and maintenance.

    Use as an async context manager, or call ``initialize()`` and
    ``close()`` explicitly:

        async with MemorySystem(config) as memory:
            await memory.process_user_input("I always use vim")
            built = await memory.build_context("editor setup")
    """

    def __init__(
        self,
        config: MemoryConfig | None = None,
        *,
        embedding_client: EmbeddingClient | None = None,
        api_key: str | None = None,
        summarizer: Summarizer | None = None,
        events: MemoryEventLog | None = None,
        start_maintenance: bool = True,
    ) -> None:
        """Create an uninitialized memory system.

        Args:
            config: Engine configuration; defaults when None.
            embedding_client: Embedding capability. When None, an HTTP client
                is built if embeddings are enabled and an API key is known.
            api_key: Embedding API key; ``AIMATE_EMBEDDING_API_KEY`` if None.
            summarizer: Summarizer for session trims; chosen from the
                environment if None.
            events: Structured event log; disabled if None.
            start_maintenance: Run the background maintenance loop.
        """
        self.config = config or MemoryConfig()
        self.events = events
        self._embedding_client = embedding_client
        self._api_key = api_key if api_key is not None else os.getenv("AIMATE_EMBEDDING_API_KEY")
        self._summarizer = summarizer
        self._start_maintenance = start_maintenance
        self._initialized = False

    async def __aenter__(self) -> "MemorySystem":
        await self.initialize()
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.close()

    @property
    def is_initialized(self) -> bool:
        return self._initialized

    def _require(self, op: str) -> None:
        if not self._initialized:
            raise MemoryEngineError(op, ErrorKind.OPERATION_FAILED, details="memory system not initialized")

    # -- lifecycle --------------------------------------------------------

    async def initialize(self, project_path: str | Path | None = None) -> None:
        """Open stores, build components and start maintenance.

        Idempotent. Creates the default persona on first use.

        Args:
            project_path: Directory inside the project to activate, if any.
        """
        if self._initialized:
            return

        self.layout = StorageLayout(self.config.storage)
        self.layout.ensure_global_dirs()
        self.files = MarkdownFileStore(self.layout)

        global_index = SQLiteIndexStore(self.layout.index_db_path(MemoryScope.GLOBAL))
        global_index.init_db()
        self.index = LayeredIndexStore(global_index)

        client = self._embedding_client
        if client is None and self.config.embedding.enabled and self._api_key:
            client = OpenAIEmbeddingClient(self.config.embedding, self._api_key)
            self._embedding_client = client
        self._dimension = client.dimension if client is not None else self.config.embedding.dimension

        global_vectors = SQLiteVectorStore(self.layout.vector_db_path(MemoryScope.GLOBAL), self._dimension)
        global_vectors.init_db()
        self.vectors = LayeredVectorStore(global_vectors)

        self.embedding = (
            EmbeddingGateway(client, self.vectors, self.config.embedding, events=self.events)
            if client is not None
            else None
        )
        if self.embedding is None:
            logger.info("No embedding client configured, retrieval is keyword-only")

        self.core = CoreMemoryManager(self.layout, self.files, self.index, self.config.core, self.events)
        self.session = SessionManager(self.layout, self.files, self.config.session, self.events)
        self.short_term = ShortTermMemoryManager(
            self.layout, self.files, self.index, self.config.short_term, self.events
        )
        self.long_term = LongTermMemoryManager(
            self.layout, self.files, self.index, self.config.long_term, self.vectors, self.events
        )

        self.classifier = MemoryClassifier()
        self.syncer = IndexSyncer(self.layout, self.files, self.index, self.vectors, self.events)
        self.retriever = HybridRetriever(
            self.index, self.files, self.config.retrieval, self.embedding, self.vectors
        )
        self.context = ContextBuilder(
            self.config, self.core, self.session, self.short_term, self.long_term, self.retriever
        )
        self.lifecycle = LifecycleManager(
            self.config.maintenance, self.short_term, self.long_term, self.syncer, self.events
        )
        self.trimmer = SessionTrimmer(
            self.session,
            self.short_term,
            self.config.session,
            self.config.short_term,
            self._summarizer or summarizer_from_env(),
            self.events,
        )

        self._initialized = True
        if project_path is not None:
            self.set_project(project_path)

        try:
            self.core.init_default_memories()
        except (MemoryEngineError, OSError) as e:
            logger.warning("Failed to create default core memories: %s", e)

        if self._start_maintenance and self.config.maintenance.enabled:
            self.lifecycle.start()

    def set_project(self, path: str | Path) -> Path | None:
        """Activate the project containing ``path`` and open its indexes.

        Returns:
            The project's memory root, or None when ``path`` resolves to the
            global tree and only global memory is used.
        """
        self._require("system.set_project")
        root = self.layout.set_project(path)
        if root is None:
            self.index.detach_project()
            self.vectors.detach_project()
            return None

        project_index = SQLiteIndexStore(self.layout.index_db_path(MemoryScope.PROJECT))
        project_index.init_db()
        self.index.attach_project(project_index)

        project_vectors = SQLiteVectorStore(self.layout.vector_db_path(MemoryScope.PROJECT), self._dimension)
        project_vectors.init_db()
        self.vectors.attach_project(project_vectors)

        logger.info("Project memory at %s", root)
        return root

    async def close(self) -> None:
        """Stop maintenance and close every store."""
        if not self._initialized:
            return
        await self.lifecycle.stop()
        aclose = getattr(self._embedding_client, "aclose", None)
        if aclose is not None:
            await aclose()
        self.index.close()
        self.vectors.close()
        self._initialized = False

    # -- foreground flow --------------------------------------------------

    async def process_user_input(self, text: str) -> ClassificationResult:
        """Classify user input and store it in the tier it belongs to.

        Core memories with an existing title are updated in place. Short- and
        long-term memories are embedded for vector search; a failed embedding
        is queued, not raised.

        Returns:
            The classification, whether or not anything was stored.
        """
        self._require("system.process_user_input")
        result = self.classifier.classify_from_conversation(text)
        if not result.should_store or result.category is None:
            return result

        if result.memory_type == MemoryType.CORE:
            existing = self.core.find_by_title(result.title)
            if existing is not None:
                self.core.update(existing.id, text)
            else:
                self.core.add(result.category, result.title, text, importance=max(result.importance, 4))
            return result

        if result.memory_type == MemoryType.SHORT_TERM:
            memory = self.short_term.add(
                result.category,
                result.scope,
                result.title,
                text,
                ttl_days=result.ttl_days,
                tags=result.tags,
                importance=result.importance,
                source="auto",
            )
        else:
            memory = self.long_term.add(
                result.category,
                result.scope,
                result.title,
                text,
                tags=result.tags,
                importance=result.importance,
                source="auto",
            )
        await self.embed_memory(memory)
        return result

    async def embed_memory(self, memory: Memory) -> None:
        """Embed a memory's title and content, if embeddings are enabled."""
        if self.embedding is None:
            return
        await self.embedding.embed_and_store(
            memory.id,
            f"{memory.title}\n{memory.content}",
            project=memory.scope == MemoryScope.PROJECT,
        )

    def add_conversation(
        self, role: str, content: str, token_count: int | None = None
    ) -> SessionMessage:
        self._require("system.add_conversation")
        return self.session.add_message(role, content, token_count)

    async def build_context(self, query: str | None = None) -> BuiltContext:
        """Context for ``query``, or new-session context without one."""
        self._require("system.build_context")
        if not query or not query.strip():
            return self.context.build_context_for_new_session()
        return await self.context.build_context(query)

    async def search(self, query: str, top_k: int = 0) -> list[Memory]:
        self._require("system.search")
        return await self.retriever.quick_search(query, top_k)

    async def search_detailed(
        self, query: str, options: RetrievalOptions | None = None
    ) -> list[MemorySearchResult]:
        self._require("system.search")
        return await self.retriever.search(query, options)

    def delete_memory(self, memory_id: str) -> None:
        """Delete a memory of any tier, with its vector.

        Raises:
            MemoryEngineError: If the id is not indexed.
        """
        self._require("system.delete_memory")
        row = self.index.get(memory_id)
        managers = {
            MemoryType.CORE: self.core,
            MemoryType.SHORT_TERM: self.short_term,
            MemoryType.LONG_TERM: self.long_term,
        }
        managers.get(row.type, self.long_term).delete(memory_id)
        if self.embedding is not None:
            self.embedding.forget(memory_id)
        else:
            self.vectors.delete(memory_id)

    # -- sessions ---------------------------------------------------------

    def new_session(self, title: str = "") -> Session:
        self._require("system.new_session")
        return self.session.create_session(title)

    def restore_session(self, session_id: str) -> Session:
        self._require("system.restore_session")
        return self.session.restore_session(session_id)

    def list_sessions(self, limit: int = 0) -> list[Session]:
        self._require("system.list_sessions")
        if limit > 0:
            return self.session.list_recent_sessions(limit)
        return self.session.list_sessions()

    def check_session_threshold(self) -> list[str]:
        self._require("system.check_session_threshold")
        return self.session.check_threshold()

    async def trim_session_if_needed(self) -> TrimResult | None:
        self._require("system.trim_session")
        return await self.trimmer.trim_if_needed()

    # -- maintenance ------------------------------------------------------

    def sync_index(self) -> SyncResult:
        self._require("system.sync_index")
        return self.syncer.sync_all()

    def reindex(self) -> SyncResult:
        self._require("system.reindex")
        return self.syncer.reindex()

    def check_consistency(self) -> ConsistencyReport:
        self._require("system.check_consistency")
        return self.syncer.check_consistency()

    def run_maintenance(self) -> MaintenanceResult:
        self._require("system.run_maintenance")
        return self.lifecycle.run_maintenance()

    async def drain_embedding_queue(self) -> tuple[int, int]:
        """Retry queued embeddings once; returns (succeeded, failed)."""
        self._require("system.drain_embedding_queue")
        if self.embedding is None:
            return 0, 0
        return await self.embedding.process_offline_queue()

    # -- reporting --------------------------------------------------------

    def check_warnings(self) -> list[ContextWarning]:
        self._require("system.check_warnings")
        return self.context.check_context_warnings()

    def stats(self) -> MemorySystemStats:
        self._require("system.stats")
        stats = MemorySystemStats(core_tokens=self.core.get_total_tokens())

        session_stats = self.session.stats()
        stats.session_tokens = session_stats.token_count
        stats.session_messages = session_stats.message_count
        stats.session_usage_ratio = session_stats.usage_ratio

        short_stats = self.short_term.stats()
        stats.short_term_count = short_stats.total
        stats.short_term_expired = short_stats.expired_count
        stats.long_term_count = self.long_term.stats().total

        stats.indexed_count = self.index.stats().total_count
        stats.vector_count = self.vectors.stats().total_vectors
        if self.embedding is not None:
            stats.offline_queue_size = self.embedding.queue_size
        return stats
