"""Embedding gateway.

Wraps an external embedding capability with batching, retry with
exponential backoff, a per-memory cache and an offline queue. Failed items
are queued, never dropped; ``process_offline_queue`` retries them when the
caller decides to.
"""

import asyncio
import hashlib
import logging
import math
from collections.abc import Awaitable, Callable, Sequence
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Protocol

import httpx

from ..logging import MemoryEventLog
from .config import EmbeddingConfig
from .errors import ErrorKind, MemoryEngineError
from .vector_store import LayeredVectorStore, VectorSearchResult, VectorStore

logger = logging.getLogger(__name__)


class EmbeddingClient(Protocol):
    """Capability that turns text into fixed-length vectors."""

    dimension: int

    async def embed(self, text: str) -> list[float]: ...
    async def embed_batch(self, texts: list[str]) -> list[list[float]]: ...


class OpenAIEmbeddingClient:
    """EmbeddingClient for OpenAI-compatible ``/embeddings`` endpoints.

    Example:
        client = OpenAIEmbeddingClient(config.embedding, api_key="...")
        vector = await client.embed("hello")
        await client.aclose()
    """

    def __init__(
        self,
        config: EmbeddingConfig,
        api_key: str,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        """Initialize the client.

        Args:
            config: Endpoint, model, dimension and timeout settings.
            api_key: Bearer token for the endpoint.
            http_client: Client to reuse; one is created if None.
        """
        self.dimension = config.dimension
        self._model = config.model
        self._url = config.base_url.rstrip("/") + "/embeddings"
        self._api_key = api_key
        self._client = http_client or httpx.AsyncClient(timeout=config.timeout_sec)
        self._owns_client = http_client is None

    async def embed(self, text: str) -> list[float]:
        vectors = await self.embed_batch([text])
        if not vectors:
            raise MemoryEngineError(
                "embedding.embed", ErrorKind.EMBEDDING_FAILED, details="empty response"
            )
        return vectors[0]

    async def embed_batch(self, texts: list[str]) -> list[list[float]]:
        """Embed several texts in one request.

        Returns:
            Vectors in the same order as ``texts``.

        Raises:
            MemoryEngineError: On transport errors, non-2xx status or a
                malformed response body.
        """
        if not texts:
            return []

        try:
            response = await self._client.post(
                self._url,
                json={"model": self._model, "input": texts},
                headers={"Authorization": f"Bearer {self._api_key}"},
            )
            response.raise_for_status()
            payload: dict[str, Any] = response.json()
        except httpx.TimeoutException as e:
            raise MemoryEngineError(
                "embedding.embed_batch", ErrorKind.OPERATION_TIMEOUT, cause=e
            ) from e
        except (httpx.HTTPError, ValueError) as e:
            raise MemoryEngineError(
                "embedding.embed_batch", ErrorKind.EMBEDDING_FAILED, cause=e
            ) from e

        data = payload.get("data")
        if not isinstance(data, list) or len(data) != len(texts):
            raise MemoryEngineError(
                "embedding.embed_batch",
                ErrorKind.EMBEDDING_FAILED,
                details=f"expected {len(texts)} embeddings",
            )
        ordered = sorted(data, key=lambda item: item.get("index", 0))
        return [list(map(float, item["embedding"])) for item in ordered]

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()


class HashEmbeddingClient:
    """Deterministic offline embeddings by feature hashing of word tokens.

    Texts sharing words get similar vectors, which is enough for local use
    without an embedding endpoint and for tests.
    """

    def __init__(self, dimension: int = 256) -> None:
        self.dimension = dimension

    def _vector(self, text: str) -> list[float]:
        vector = [0.0] * self.dimension
        for token in text.lower().split():
            digest = hashlib.sha256(token.encode("utf-8")).digest()
            bucket = int.from_bytes(digest[:4], "little") % self.dimension
            sign = 1.0 if digest[4] & 1 else -1.0
            vector[bucket] += sign
        norm = math.sqrt(sum(x * x for x in vector))
        if norm == 0:
            return vector
        return [x / norm for x in vector]

    async def embed(self, text: str) -> list[float]:
        return self._vector(text)

    async def embed_batch(self, texts: list[str]) -> list[list[float]]:
        return [self._vector(t) for t in texts]


@dataclass
class EmbeddingTask:
    """A queued embedding that failed and awaits retry."""

    memory_id: str
    text: str
    project: bool = False
    created_at: datetime = field(default_factory=datetime.now)
    attempts: int = 0


class EmbeddingGateway:
    """Embeds memories and keeps the vector index populated.

    Cache entries are keyed by memory id and remember the hash of the
    embedded text, so unchanged content is never re-embedded.
    """

    def __init__(
        self,
        client: EmbeddingClient,
        vectors: VectorStore | LayeredVectorStore,
        config: EmbeddingConfig,
        events: MemoryEventLog | None = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        """Initialize the gateway.

        Args:
            client: The embedding capability.
            vectors: Vector index to write into.
            config: Batch size, retry count and backoff base.
            events: Structured event log.
            sleep: Awaitable used for backoff delays.
        """
        self.client = client
        self.vectors = vectors
        self.config = config
        self.events = events
        self._sleep = sleep
        self._cache: dict[str, tuple[str, list[float]]] = {}
        self._queue: list[EmbeddingTask] = []

    @property
    def cache_size(self) -> int:
        return len(self._cache)

    @property
    def queue_size(self) -> int:
        return len(self._queue)

    @property
    def pending(self) -> list[EmbeddingTask]:
        return list(self._queue)

    @staticmethod
    def _text_hash(text: str) -> str:
        return hashlib.sha256(text.encode("utf-8")).hexdigest()

    async def _with_retry(self, op: str, call: Callable[[], Awaitable[Any]]) -> Any:
        """Run ``call``, retrying up to ``max_retries`` times with backoff."""
        last_error: Exception | None = None
        for attempt in range(self.config.max_retries + 1):
            try:
                return await call()
            except Exception as e:
                last_error = e
                if attempt < self.config.max_retries:
                    delay = self.config.backoff_base * (2 ** attempt)
                    logger.debug("%s failed (attempt %d), retrying in %.1fs: %s",
                                 op, attempt + 1, delay, e)
                    await self._sleep(delay)
        raise MemoryEngineError(
            op,
            ErrorKind.EMBEDDING_FAILED,
            cause=last_error,
            details=f"gave up after {self.config.max_retries + 1} attempts",
        ) from last_error

    def _store(self, memory_id: str, vector: list[float], project: bool) -> None:
        if isinstance(self.vectors, LayeredVectorStore):
            self.vectors.store(memory_id, vector, project=project)
        else:
            self.vectors.store(memory_id, vector)

    def _enqueue(self, task: EmbeddingTask, error: Exception) -> None:
        self._queue = [t for t in self._queue if t.memory_id != task.memory_id]
        self._queue.append(task)
        logger.warning("Embedding for %s queued for retry: %s", task.memory_id, error)
        if self.events is not None:
            self.events.log("embedding_queued", memory_id=task.memory_id, error=str(error))

    async def embed(self, text: str) -> list[float]:
        """Embed a text, retrying on failure, with no queue fallback.

        Raises:
            MemoryEngineError: Once retries are exhausted.
        """
        return await self._with_retry("embedding.embed", lambda: self.client.embed(text))

    async def embed_and_store(
        self, memory_id: str, text: str, project: bool = False
    ) -> list[float] | None:
        """Embed a memory's text and store the vector.

        Args:
            memory_id: Id the vector is stored under.
            text: Text to embed.
            project: Store in the project vector index.

        Returns:
            The vector, or None if embedding failed and the item was queued.
        """
        text_hash = self._text_hash(text)
        cached = self._cache.get(memory_id)
        if cached is not None and cached[0] == text_hash:
            return cached[1]

        try:
            vector = await self.embed(text)
        except MemoryEngineError as e:
            self._enqueue(EmbeddingTask(memory_id=memory_id, text=text, project=project), e)
            return None

        self._store(memory_id, vector, project)
        self._cache[memory_id] = (text_hash, vector)
        return vector

    async def embed_batch_and_store(
        self, items: Sequence[tuple[str, str]], project: bool = False
    ) -> dict[str, list[float]]:
        """Embed many memories, ``batch_size`` at a time.

        A batch that fails as a whole is retried item by item, so one bad
        item cannot sink its siblings. Items that still fail are queued.

        Args:
            items: ``(memory_id, text)`` pairs.
            project: Store in the project vector index.

        Returns:
            Vectors of the items that were embedded, by memory id.
        """
        stored: dict[str, list[float]] = {}
        pending: list[tuple[str, str]] = []
        for memory_id, text in items:
            cached = self._cache.get(memory_id)
            if cached is not None and cached[0] == self._text_hash(text):
                stored[memory_id] = cached[1]
            else:
                pending.append((memory_id, text))

        size = self.config.batch_size
        for start in range(0, len(pending), size):
            batch = pending[start:start + size]
            texts = [text for _, text in batch]
            try:
                vectors = await self._with_retry(
                    "embedding.embed_batch", lambda: self.client.embed_batch(texts)
                )
            except MemoryEngineError as e:
                logger.info("Batch of %d failed, embedding items one by one: %s", len(batch), e)
                await self._embed_each(batch, project, stored)
                continue

            if len(vectors) != len(batch):
                logger.warning(
                    "Batch of %d returned %d vectors, embedding items one by one",
                    len(batch), len(vectors),
                )
                await self._embed_each(batch, project, stored)
                continue

            for (memory_id, text), vector in zip(batch, vectors):
                self._store(memory_id, vector, project)
                self._cache[memory_id] = (self._text_hash(text), vector)
                stored[memory_id] = vector

        return stored

    async def _embed_each(
        self, batch: list[tuple[str, str]], project: bool, stored: dict[str, list[float]]
    ) -> None:
        for memory_id, text in batch:
            vector = await self.embed_and_store(memory_id, text, project)
            if vector is not None:
                stored[memory_id] = vector

    async def process_offline_queue(self) -> tuple[int, int]:
        """Retry every queued item once.

        Items that fail again go back on the queue.

        Returns:
            Tuple of (succeeded, failed).
        """
        tasks, self._queue = self._queue, []
        succeeded = 0
        failed = 0
        for task in tasks:
            try:
                vector = await self.embed(task.text)
            except MemoryEngineError as e:
                task.attempts += 1
                self._queue.append(task)
                failed += 1
                logger.debug("Queued embedding for %s failed again: %s", task.memory_id, e)
                continue
            self._store(task.memory_id, vector, task.project)
            self._cache[task.memory_id] = (self._text_hash(task.text), vector)
            succeeded += 1
        return succeeded, failed

    async def search_similar(
        self, query: str, top_k: int, min_similarity: float = 0.0
    ) -> list[VectorSearchResult]:
        """Embed a query and search the vector index."""
        vector = await self.embed(query)
        return self.vectors.search(vector, top_k, min_similarity)

    def forget(self, memory_id: str) -> None:
        """Drop a memory's vector, cache entry and queued task."""
        self._cache.pop(memory_id, None)
        self._queue = [t for t in self._queue if t.memory_id != memory_id]
        self.vectors.delete(memory_id)

    def clear_cache(self) -> None:
        self._cache.clear()
