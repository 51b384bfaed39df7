"""Tests for the embedding gateway and clients."""

import json
from unittest.mock import AsyncMock

import httpx
import pytest

from aimate.memory.config import EmbeddingConfig
from aimate.memory.embedding import EmbeddingGateway, HashEmbeddingClient, OpenAIEmbeddingClient
from aimate.memory.errors import ErrorKind, MemoryEngineError
from aimate.memory.vector_store import InMemoryVectorStore, LayeredVectorStore
from aimate.memory.vectors import l2_norm


class FlakyClient:
    """Embedding client that fails a set number of times first."""

    def __init__(self, failures: int = 0, dimension: int = 4):
        self.dimension = dimension
        self.failures = failures
        self.calls = 0
        self.batch_calls = 0
        self.fail_batches = False
        self.bad_texts: set[str] = set()

    def _vector(self, text: str) -> list[float]:
        return [float(len(text)), 1.0, 0.0, 0.0]

    async def embed(self, text: str) -> list[float]:
        self.calls += 1
        if self.calls <= self.failures or text in self.bad_texts:
            raise RuntimeError("service unavailable")
        return self._vector(text)

    async def embed_batch(self, texts: list[str]) -> list[list[float]]:
        self.batch_calls += 1
        if self.fail_batches:
            raise RuntimeError("batch rejected")
        return [self._vector(t) for t in texts]


def make_gateway(client, max_retries: int = 2, batch_size: int = 10):
    config = EmbeddingConfig(dimension=client.dimension, max_retries=max_retries,
                             batch_size=batch_size, backoff_base=0.5)
    vectors = LayeredVectorStore(InMemoryVectorStore(client.dimension), InMemoryVectorStore(client.dimension))
    sleep = AsyncMock()
    return EmbeddingGateway(client, vectors, config, sleep=sleep), vectors, sleep


class TestHashEmbeddingClient:
    """Tests for the offline hashing client."""

    @pytest.mark.asyncio
    async def test_deterministic_and_normalized(self):
        client = HashEmbeddingClient(32)
        first = await client.embed("redis cache settings")
        second = await client.embed("redis cache settings")
        assert first == second
        assert len(first) == 32
        assert l2_norm(first) == pytest.approx(1.0)

    @pytest.mark.asyncio
    async def test_empty_text_is_zero_vector(self):
        client = HashEmbeddingClient(8)
        assert await client.embed("") == [0.0] * 8

    @pytest.mark.asyncio
    async def test_batch(self):
        client = HashEmbeddingClient(16)
        vectors = await client.embed_batch(["a b", "c"])
        assert vectors == [await client.embed("a b"), await client.embed("c")]


class TestOpenAIEmbeddingClient:
    """Tests for the HTTP embedding client."""

    @pytest.mark.asyncio
    async def test_posts_and_orders_by_index(self):
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["url"] = str(request.url)
            seen["auth"] = request.headers["Authorization"]
            seen["body"] = json.loads(request.content)
            return httpx.Response(200, json={"data": [
                {"index": 1, "embedding": [0, 1]},
                {"index": 0, "embedding": [1, 0]},
            ]})

        http = httpx.AsyncClient(transport=httpx.MockTransport(handler))
        config = EmbeddingConfig(base_url="https://embed.example/v1/", model="m", dimension=2)
        client = OpenAIEmbeddingClient(config, api_key="secret", http_client=http)

        vectors = await client.embed_batch(["first", "second"])

        assert vectors == [[1.0, 0.0], [0.0, 1.0]]
        assert seen["url"] == "https://embed.example/v1/embeddings"
        assert seen["auth"] == "Bearer secret"
        assert seen["body"] == {"model": "m", "input": ["first", "second"]}
        await http.aclose()

    @pytest.mark.asyncio
    async def test_http_error(self):
        http = httpx.AsyncClient(transport=httpx.MockTransport(lambda r: httpx.Response(500)))
        client = OpenAIEmbeddingClient(EmbeddingConfig(dimension=2), api_key="k", http_client=http)
        with pytest.raises(MemoryEngineError) as excinfo:
            await client.embed("x")
        assert excinfo.value.kind is ErrorKind.EMBEDDING_FAILED
        await http.aclose()

    @pytest.mark.asyncio
    async def test_wrong_count(self):
        http = httpx.AsyncClient(
            transport=httpx.MockTransport(lambda r: httpx.Response(200, json={"data": []}))
        )
        client = OpenAIEmbeddingClient(EmbeddingConfig(dimension=2), api_key="k", http_client=http)
        with pytest.raises(MemoryEngineError):
            await client.embed_batch(["x"])
        await http.aclose()

    @pytest.mark.asyncio
    async def test_empty_input_skips_request(self):
        http = httpx.AsyncClient(transport=httpx.MockTransport(lambda r: httpx.Response(500)))
        client = OpenAIEmbeddingClient(EmbeddingConfig(dimension=2), api_key="k", http_client=http)
        assert await client.embed_batch([]) == []
        await http.aclose()


class TestRetry:
    """Retry and backoff."""

    @pytest.mark.asyncio
    async def test_recovers_after_failures(self):
        gateway, _, sleep = make_gateway(FlakyClient(failures=2), max_retries=2)
        vector = await gateway.embed("hello")
        assert vector[0] == 5.0
        assert [c.args[0] for c in sleep.await_args_list] == [0.5, 1.0]

    @pytest.mark.asyncio
    async def test_gives_up(self):
        client = FlakyClient(failures=10)
        gateway, _, sleep = make_gateway(client, max_retries=2)
        with pytest.raises(MemoryEngineError) as excinfo:
            await gateway.embed("hello")
        assert excinfo.value.kind is ErrorKind.EMBEDDING_FAILED
        assert client.calls == 3
        assert sleep.await_count == 2


class TestEmbedAndStore:
    """Storing vectors, caching and queueing."""

    @pytest.mark.asyncio
    async def test_stores_vector(self):
        gateway, vectors, _ = make_gateway(FlakyClient())
        await gateway.embed_and_store("m1", "abc")
        await gateway.embed_and_store("m2", "abcd", project=True)
        assert vectors.global_store.get("m1")[0] == 3.0
        assert vectors.project_store.get("m2")[0] == 4.0
        assert gateway.cache_size == 2

    @pytest.mark.asyncio
    async def test_unchanged_text_uses_cache(self):
        client = FlakyClient()
        gateway, _, _ = make_gateway(client)
        await gateway.embed_and_store("m1", "abc")
        await gateway.embed_and_store("m1", "abc")
        assert client.calls == 1

        await gateway.embed_and_store("m1", "abcdef")
        assert client.calls == 2

    @pytest.mark.asyncio
    async def test_failure_queues_without_raising(self):
        client = FlakyClient()
        client.bad_texts.add("broken")
        gateway, vectors, _ = make_gateway(client, max_retries=0)

        assert await gateway.embed_and_store("m1", "broken") is None
        assert await gateway.embed_and_store("m1", "broken") is None

        assert gateway.queue_size == 1
        assert gateway.pending[0].memory_id == "m1"
        assert vectors.count() == 0

    @pytest.mark.asyncio
    async def test_process_offline_queue(self):
        client = FlakyClient()
        client.bad_texts.update({"first", "second"})
        gateway, vectors, _ = make_gateway(client, max_retries=0)
        await gateway.embed_and_store("m1", "first")
        await gateway.embed_and_store("m2", "second")

        client.bad_texts.discard("first")
        assert await gateway.process_offline_queue() == (1, 1)
        assert vectors.get("m1")[0] == 5.0
        assert gateway.queue_size == 1
        assert gateway.pending[0].attempts == 1

        client.bad_texts.clear()
        assert await gateway.process_offline_queue() == (1, 0)
        assert gateway.queue_size == 0

    @pytest.mark.asyncio
    async def test_forget(self):
        client = FlakyClient()
        gateway, vectors, _ = make_gateway(client, max_retries=0)
        await gateway.embed_and_store("m1", "abc")
        client.bad_texts.add("zzz")
        await gateway.embed_and_store("m2", "zzz")

        gateway.forget("m1")
        gateway.forget("m2")

        assert vectors.count() == 0
        assert gateway.cache_size == 0
        assert gateway.queue_size == 0


class TestBatch:
    """Batch embedding."""

    @pytest.mark.asyncio
    async def test_batches_by_size(self):
        client = FlakyClient()
        gateway, vectors, _ = make_gateway(client, batch_size=2)
        stored = await gateway.embed_batch_and_store([("a", "x"), ("b", "xx"), ("c", "xxx")])
        assert sorted(stored) == ["a", "b", "c"]
        assert client.batch_calls == 2
        assert vectors.count() == 3

    @pytest.mark.asyncio
    async def test_failed_batch_falls_back_per_item(self):
        client = FlakyClient()
        client.fail_batches = True
        client.bad_texts.add("bad")
        gateway, vectors, _ = make_gateway(client, max_retries=0)

        stored = await gateway.embed_batch_and_store([("a", "good"), ("b", "bad")])

        assert list(stored) == ["a"]
        assert gateway.queue_size == 1
        assert vectors.count() == 1

    @pytest.mark.asyncio
    async def test_short_batch_response_falls_back_per_item(self):
        client = FlakyClient()
        client.embed_batch = AsyncMock(return_value=[[1.0, 1.0, 0.0, 0.0]])
        gateway, vectors, _ = make_gateway(client)

        stored = await gateway.embed_batch_and_store([("a", "x"), ("b", "xx"), ("c", "xxx")])

        assert sorted(stored) == ["a", "b", "c"]
        assert stored["c"][0] == 3.0
        assert client.calls == 3
        assert vectors.count() == 3
        assert gateway.queue_size == 0

    @pytest.mark.asyncio
    async def test_cached_items_skip_the_client(self):
        client = FlakyClient()
        gateway, _, _ = make_gateway(client)
        await gateway.embed_and_store("a", "same")
        stored = await gateway.embed_batch_and_store([("a", "same")])
        assert stored["a"][0] == 4.0
        assert client.batch_calls == 0


class TestSearchSimilar:
    """Query embedding plus vector search."""

    @pytest.mark.asyncio
    async def test_finds_related_text(self):
        client = HashEmbeddingClient(64)
        config = EmbeddingConfig(dimension=64, max_retries=0)
        gateway = EmbeddingGateway(client, InMemoryVectorStore(64), config)
        await gateway.embed_and_store("db", "postgres connection pool size")
        await gateway.embed_and_store("ui", "button color theme")

        results = await gateway.search_similar("postgres pool", top_k=1)
        assert [r.id for r in results] == ["db"]
