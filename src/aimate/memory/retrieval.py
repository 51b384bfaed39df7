"""Hybrid retrieval over the keyword index and the vector index."""

import asyncio
import logging
import math
from dataclasses import dataclass, field
from datetime import datetime

from .base import truncate_content
from .codec import extract_keywords
from .config import RetrievalConfig
from .embedding import EmbeddingGateway
from .errors import MemoryEngineError
from .filestore import MarkdownFileStore
from .index import IndexStore, LayeredIndexStore
from .models import (
    IndexRow,
    Memory,
    MemoryScope,
    MemorySearchResult,
    MemoryStatus,
    MemoryType,
    estimate_tokens,
)
from .vector_store import LayeredVectorStore, VectorSearchResult, VectorStore

logger = logging.getLogger(__name__)

QUICK_SEARCH_MIN_SIMILARITY = 0.5


@dataclass
class RetrievalOptions:
    """Per-query retrieval settings.

    Attributes:
        memory_types: Only return these tiers; all tiers when empty.
        scope: Only return this scope; any scope when None.
        top_k: Result count; the configured ``final_top_k`` when not positive.
        use_vector: Run the vector leg when a gateway is configured.
        use_keyword: Run the keyword leg.
        use_time_weight: Apply recency, importance and access weighting.
        min_similarity: Score floor; the configured floor when None.
        record_access: Count returned memories as accessed.
    """

    memory_types: list[MemoryType] = field(default_factory=list)
    scope: MemoryScope | None = None
    top_k: int = 0
    use_vector: bool = True
    use_keyword: bool = True
    use_time_weight: bool = True
    min_similarity: float | None = None
    record_access: bool = True


@dataclass
class RetrievalStats:
    total_indexed: int = 0
    total_vectors: int = 0
    vector_dimension: int = 0
    embedding_cache_size: int = 0
    offline_queue_size: int = 0


def keyword_score(query: str, memory: Memory) -> float:
    """Score a memory against a query by substring and term overlap.

    Title match adds 0.5, content match 0.3, tag match 0.2, and the share
    of query terms found in title or content adds up to 0.3. Capped at 1.0.
    """
    query_lower = query.lower().strip()
    title = memory.title.lower()
    content = memory.content.lower()

    score = 0.0
    if query_lower and query_lower in title:
        score += 0.5
    if query_lower and query_lower in content:
        score += 0.3
    if query_lower and any(query_lower in tag.lower() for tag in memory.tags):
        score += 0.2

    terms = query_lower.split()
    if terms:
        matched = sum(1 for t in terms if t in title or t in content)
        score += matched / len(terms) * 0.3

    return min(score, 1.0)


def time_weight(memory: Memory, decay_factor: float, now: datetime | None = None) -> float:
    """Multiplier for recency, importance and access frequency.

    Recency decays by ``decay_factor`` per 30 days since the last update.
    Importance maps 1..5 onto 0.84..1.0. Accessed memories gain up to a few
    percent, log-scaled by access count.
    """
    now = now or datetime.now()
    days = max((now - memory.updated_at).total_seconds(), 0.0) / 86400
    weight = decay_factor ** (days / 30)
    weight *= 0.8 + 0.2 * (memory.importance / 5)
    if memory.access_count > 0:
        weight *= 1 + math.log10(memory.access_count + 1) / 3 * 0.1
    return weight


class HybridRetriever:
    """Fans a query out to keyword and vector search and ranks the union."""

    def __init__(
        self,
        index: IndexStore | LayeredIndexStore,
        files: MarkdownFileStore,
        config: RetrievalConfig,
        embedding: EmbeddingGateway | None = None,
        vectors: VectorStore | LayeredVectorStore | None = None,
    ) -> None:
        """Initialize the retriever.

        Args:
            index: Metadata index used for keyword search and id lookups.
            files: Document store to read matched memories from.
            config: Retrieval tuning.
            embedding: Gateway for the vector leg; keyword-only when None.
            vectors: Vector index for searches with a ready-made vector.
        """
        self.index = index
        self.files = files
        self.config = config
        self.embedding = embedding
        self.vectors = vectors if vectors is not None else (embedding.vectors if embedding else None)

    async def search(
        self, query: str, options: RetrievalOptions | None = None
    ) -> list[MemorySearchResult]:
        """Search both legs, merge, weight, filter and rank.

        The vector leg is abandoned after ``timeout_ms``; keyword results are
        still returned. Failures of either leg are logged, not raised.

        Args:
            query: Free-text query.
            options: Per-query settings; defaults when None.

        Returns:
            At most ``top_k`` results, best first.
        """
        options = options or RetrievalOptions()
        results: list[MemorySearchResult] = []

        if options.use_vector and self.embedding is not None:
            try:
                results.extend(
                    await asyncio.wait_for(
                        self.search_by_text_vector(query, self.config.vector_top_k),
                        timeout=self.config.timeout_ms / 1000,
                    )
                )
            except asyncio.TimeoutError:
                logger.info("Vector search timed out after %dms", self.config.timeout_ms)
            except MemoryEngineError as e:
                logger.info("Vector search failed, using keyword results only: %s", e)

        if options.use_keyword:
            results.extend(self.search_by_keyword(query, self.config.keyword_top_k))

        merged = self._merge(results)
        if options.use_time_weight:
            now = datetime.now()
            for result in merged:
                result.score *= time_weight(result.memory, self.config.time_decay_factor, now)

        floor = self.config.min_similarity if options.min_similarity is None else options.min_similarity
        ranked = self._filter(merged, options, floor)
        ranked.sort(key=lambda r: r.score, reverse=True)

        top_k = options.top_k if options.top_k > 0 else self.config.final_top_k
        ranked = ranked[:top_k]

        if options.record_access:
            for result in ranked:
                self._record_access(result.memory)
        return ranked

    async def quick_search(self, query: str, top_k: int = 0) -> list[Memory]:
        """Search with a lower floor and return bare memories."""
        results = await self.search(
            query,
            RetrievalOptions(top_k=top_k, min_similarity=QUICK_SEARCH_MIN_SIMILARITY),
        )
        return [r.memory for r in results]

    async def search_context(self, query: str, max_tokens: int) -> str:
        """Render the best matches for ``query`` as a Markdown section."""
        results = await self.search(
            query, RetrievalOptions(top_k=10, min_similarity=QUICK_SEARCH_MIN_SIMILARITY)
        )
        return render_results(results, max_tokens)

    # -- legs -------------------------------------------------------------

    def _load(self, row: IndexRow) -> Memory | None:
        try:
            return self.files.read_memory(row.file_path)
        except MemoryEngineError as e:
            logger.debug("Skipping indexed memory %s: %s", row.id, e)
            return None

    def _resolve_vector_hits(self, hits: list[VectorSearchResult]) -> list[MemorySearchResult]:
        results: list[MemorySearchResult] = []
        for hit in hits:
            try:
                row = self.index.get(hit.id)
            except MemoryEngineError:
                continue
            memory = self._load(row)
            if memory is not None:
                results.append(MemorySearchResult(memory=memory, score=hit.score, match_type="vector"))
        return results

    async def search_by_text_vector(self, query: str, top_k: int) -> list[MemorySearchResult]:
        """Embed ``query`` and resolve its nearest vectors to memories."""
        if self.embedding is None:
            return []
        hits = await self.embedding.search_similar(query, top_k)
        return self._resolve_vector_hits(hits)

    def search_by_vector(self, vector: list[float], top_k: int) -> list[MemorySearchResult]:
        """Nearest memories to a ready-made vector, above the configured floor."""
        if self.vectors is None:
            return []
        return self._resolve_vector_hits(
            self.vectors.search(vector, top_k, self.config.min_similarity)
        )

    def search_by_keyword(self, query: str, top_k: int) -> list[MemorySearchResult]:
        """Keyword leg: the query's top keywords plus the raw query.

        Index hits are deduplicated in order and the first ``top_k`` are read
        and scored with ``keyword_score``.
        """
        rows: list[IndexRow] = []
        for term in [*extract_keywords(query, 5), query]:
            try:
                rows.extend(self.index.search(term, top_k))
            except MemoryEngineError as e:
                logger.debug("Keyword search for %r failed: %s", term, e)

        seen: set[str] = set()
        unique: list[IndexRow] = []
        for row in rows:
            if row.id not in seen:
                seen.add(row.id)
                unique.append(row)

        results: list[MemorySearchResult] = []
        for row in unique[:top_k]:
            memory = self._load(row)
            if memory is not None:
                results.append(
                    MemorySearchResult(
                        memory=memory, score=keyword_score(query, memory), match_type="keyword"
                    )
                )
        return results

    # -- ranking ----------------------------------------------------------

    @staticmethod
    def _merge(results: list[MemorySearchResult]) -> list[MemorySearchResult]:
        merged: dict[str, MemorySearchResult] = {}
        for result in results:
            existing = merged.get(result.memory.id)
            if existing is None:
                merged[result.memory.id] = result
                continue
            existing.score = max(existing.score, result.score)
            if existing.match_type != result.match_type:
                existing.match_type = "hybrid"
        return list(merged.values())

    @staticmethod
    def _filter(
        results: list[MemorySearchResult], options: RetrievalOptions, floor: float
    ) -> list[MemorySearchResult]:
        now = datetime.now()
        kept: list[MemorySearchResult] = []
        for result in results:
            memory = result.memory
            if result.score < floor:
                continue
            if options.memory_types and memory.type not in options.memory_types:
                continue
            if options.scope is not None and memory.scope != options.scope:
                continue
            if memory.is_expired(now):
                continue
            if memory.status != MemoryStatus.ACTIVE:
                continue
            kept.append(result)
        return kept

    def _record_access(self, memory: Memory) -> None:
        try:
            self.index.increment_access(memory.id)
            self.files.record_access(memory)
        except (MemoryEngineError, OSError) as e:
            logger.debug("Failed to record access of %s: %s", memory.id, e)

    def stats(self) -> RetrievalStats:
        stats = RetrievalStats(total_indexed=self.index.stats().total_count)
        if self.vectors is not None:
            vector_stats = self.vectors.stats()
            stats.total_vectors = vector_stats.total_vectors
            stats.vector_dimension = vector_stats.dimension
        if self.embedding is not None:
            stats.embedding_cache_size = self.embedding.cache_size
            stats.offline_queue_size = self.embedding.queue_size
        return stats


def render_results(results: list[MemorySearchResult], max_tokens: int) -> str:
    """Markdown section of search results, whole entries only."""
    if not results or max_tokens <= 0:
        return ""
    heading = "## Relevant memories\n\n"
    text = heading
    for result in results:
        entry = f"### {result.memory.title}\n\n{truncate_content(result.memory.content, 300)}\n\n"
        if estimate_tokens(text + entry) > max_tokens:
            break
        text += entry
    if text == heading:
        return ""
    return text
