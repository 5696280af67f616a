"""
Embedding Client Tests

Provider calls are served by httpx.MockTransport; no network access.
"""

import asyncio
import json

import httpx
import pytest
from pydantic import SecretStr

from ragstream.config import Settings
from ragstream.core.errors import (
    ConfigurationError,
    EmbeddingError,
    InvalidArgumentError,
    InvalidDimensionError,
    RetryExhaustedError,
    TransientEmbeddingError,
)
from ragstream.embeddings.cache import EmbeddingCache
from ragstream.embeddings.embedder import (
    FoundryEmbeddingClient,
    OllamaEmbeddingClient,
    OpenAIEmbeddingClient,
    classify_failure,
    create_embedding_client,
)
from ragstream.embeddings.retry import RetryPolicy

DIM = 1536


async def no_sleep(delay):
    return None


def vector_for(text):
    """Deterministic fake embedding derived from the text length."""
    return [float(len(text))] + [0.0] * (DIM - 1)


class FakeOpenAI:
    """Records requests and answers like the OpenAI embeddings endpoint."""

    def __init__(self, status=200, reverse=False, dimension=DIM, delay=0.0):
        self.requests = []
        self.status = status
        self.reverse = reverse
        self.dimension = dimension
        self.delay = delay

    async def __call__(self, request):
        body = json.loads(request.content)
        self.requests.append((request, body))
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.status != 200:
            return httpx.Response(self.status, json={"error": "nope"})

        inputs = body["input"]
        data = [
            {"index": i, "embedding": vector_for(t)[: self.dimension]}
            for i, t in enumerate(inputs)
        ]
        if self.reverse:
            data.reverse()
        return httpx.Response(200, json={"data": data})


def openai_client(handler, cache=None, max_attempts=3, batch_size=16):
    return OpenAIEmbeddingClient(
        api_key="sk-test",
        model="text-embedding-ada-002",
        cache=cache,
        retry_policy=RetryPolicy(max_attempts=max_attempts, sleep=no_sleep),
        batch_size=batch_size,
        transport=httpx.MockTransport(handler),
    )


# ---------------------------------------------------------------------
# Single embed
# ---------------------------------------------------------------------

@pytest.mark.asyncio
async def test_embed_returns_vector_and_sends_bearer_key():
    fake = FakeOpenAI()
    client = openai_client(fake)

    vector = await client.embed("hello")

    assert vector == vector_for("hello")
    request, body = fake.requests[0]
    assert request.url == "https://api.openai.com/v1/embeddings"
    assert request.headers["Authorization"] == "Bearer sk-test"
    assert body == {"model": "text-embedding-ada-002", "input": ["hello"]}


@pytest.mark.asyncio
async def test_cache_hit_skips_network():
    fake = FakeOpenAI()
    client = openai_client(fake, cache=EmbeddingCache())

    first = await client.embed("hello")
    second = await client.embed("hello")

    assert first == second
    assert len(fake.requests) == 1


@pytest.mark.asyncio
async def test_concurrent_identical_embeds_make_one_call():
    fake = FakeOpenAI(delay=0.01)
    client = openai_client(fake, cache=EmbeddingCache())

    results = await asyncio.gather(*(client.embed("same text") for _ in range(10)))

    assert len(fake.requests) == 1
    assert all(r == results[0] for r in results)


@pytest.mark.asyncio
async def test_empty_text_is_rejected():
    client = openai_client(FakeOpenAI())
    with pytest.raises(InvalidArgumentError):
        await client.embed("   ")


@pytest.mark.asyncio
async def test_dimension_mismatch_is_fatal_and_not_retried():
    fake = FakeOpenAI(dimension=768)
    cache = EmbeddingCache()
    client = openai_client(fake, cache=cache)

    with pytest.raises(InvalidDimensionError):
        await client.embed("hello")

    assert len(fake.requests) == 1
    assert len(cache) == 0


@pytest.mark.asyncio
async def test_server_errors_are_retried_then_exhausted():
    fake = FakeOpenAI(status=503)
    client = openai_client(fake, max_attempts=3)

    with pytest.raises(RetryExhaustedError) as info:
        await client.embed("hello")

    assert len(fake.requests) == 3
    assert info.value.attempts == 3


@pytest.mark.asyncio
async def test_client_errors_are_fatal():
    fake = FakeOpenAI(status=400)
    client = openai_client(fake)

    with pytest.raises(EmbeddingError):
        await client.embed("hello")

    assert len(fake.requests) == 1


@pytest.mark.asyncio
async def test_transient_failure_then_success():
    responses = [httpx.Response(429), None]
    fake = FakeOpenAI()

    async def handler(request):
        response = responses.pop(0)
        if response is not None:
            return response
        return await fake(request)

    client = openai_client(handler)
    assert await client.embed("hello") == vector_for("hello")


@pytest.mark.asyncio
async def test_malformed_response_is_fatal():
    async def handler(request):
        return httpx.Response(200, json={"unexpected": True})

    client = openai_client(handler)
    with pytest.raises(EmbeddingError):
        await client.embed("hello")


@pytest.mark.asyncio
async def test_cancellation_leaves_nothing_in_cache():
    fake = FakeOpenAI(delay=10)
    cache = EmbeddingCache()
    client = openai_client(fake, cache=cache)

    task = asyncio.create_task(client.embed("hello"))
    await asyncio.sleep(0.01)
    task.cancel()

    with pytest.raises(asyncio.CancelledError):
        await task

    assert len(cache) == 0
    assert len(fake.requests) == 1


@pytest.mark.asyncio
async def test_cancelled_caller_fails_other_waiters_without_cancelling_them():
    fake = FakeOpenAI(delay=10)
    cache = EmbeddingCache()
    client = openai_client(fake, cache=cache)

    leader = asyncio.create_task(client.embed("shared"))
    await asyncio.sleep(0.01)
    waiter = asyncio.create_task(client.embed("shared"))
    await asyncio.sleep(0.01)

    leader.cancel()
    with pytest.raises(asyncio.CancelledError):
        await leader
    with pytest.raises(TransientEmbeddingError):
        await waiter

    assert len(fake.requests) == 1
    assert len(cache) == 0


# ---------------------------------------------------------------------
# Batch embed
# ---------------------------------------------------------------------

@pytest.mark.asyncio
async def test_batch_results_are_reordered_by_index():
    fake = FakeOpenAI(reverse=True)
    client = openai_client(fake)
    texts = ["a", "bb", "ccc"]

    vectors = await client.embed_batch(texts)

    assert vectors == [vector_for(t) for t in texts]


@pytest.mark.asyncio
async def test_batch_deduplicates_and_uses_cache():
    fake = FakeOpenAI()
    cache = EmbeddingCache()
    client = openai_client(fake, cache=cache)
    await client.embed("cached")

    vectors = await client.embed_batch(["x", "cached", "x", "yy"])

    assert vectors == [vector_for(t) for t in ["x", "cached", "x", "yy"]]
    assert len(fake.requests) == 2
    _, body = fake.requests[1]
    assert body["input"] == ["x", "yy"]


@pytest.mark.asyncio
async def test_batch_is_split_by_batch_size():
    fake = FakeOpenAI()
    client = openai_client(fake, batch_size=2)

    vectors = await client.embed_batch(["a", "bb", "ccc", "dddd", "eeeee"])

    assert len(vectors) == 5
    assert [len(body["input"]) for _, body in fake.requests] == [2, 2, 1]


@pytest.mark.asyncio
async def test_empty_batch_returns_empty_list():
    fake = FakeOpenAI()
    client = openai_client(fake)
    assert await client.embed_batch([]) == []
    assert fake.requests == []


# ---------------------------------------------------------------------
# Provider variants and factory
# ---------------------------------------------------------------------

@pytest.mark.asyncio
async def test_foundry_request_shape():
    fake = FakeOpenAI()
    client = FoundryEmbeddingClient(
        endpoint="https://example.openai.azure.com/",
        api_key="azure-key",
        deployment="embed-dep",
        api_version="2024-02-01",
        retry_policy=RetryPolicy(sleep=no_sleep),
        transport=httpx.MockTransport(fake),
    )

    await client.embed("hello")

    request, body = fake.requests[0]
    assert request.url.path == "/openai/deployments/embed-dep/embeddings"
    assert request.url.params["api-version"] == "2024-02-01"
    assert request.headers["api-key"] == "azure-key"
    assert body == {"input": ["hello"]}


@pytest.mark.asyncio
async def test_ollama_request_shape():
    seen = []

    async def handler(request):
        body = json.loads(request.content)
        seen.append((request, body))
        return httpx.Response(
            200, json={"embeddings": [vector_for(t) for t in body["input"]]}
        )

    client = OllamaEmbeddingClient(
        endpoint="http://ollama:11434",
        model="nomic-embed-text",
        retry_policy=RetryPolicy(sleep=no_sleep),
        transport=httpx.MockTransport(handler),
    )

    assert await client.embed_batch(["a", "bb"]) == [vector_for("a"), vector_for("bb")]
    request, body = seen[0]
    assert str(request.url) == "http://ollama:11434/api/embed"
    assert body == {"model": "nomic-embed-text", "input": ["a", "bb"]}


def test_missing_credentials_fail_at_construction():
    with pytest.raises(ConfigurationError):
        OpenAIEmbeddingClient(api_key=None)
    with pytest.raises(ConfigurationError):
        FoundryEmbeddingClient(endpoint=None, api_key="k", deployment="d")
    with pytest.raises(ConfigurationError):
        FoundryEmbeddingClient(endpoint="https://x", api_key=None, deployment="d")
    with pytest.raises(ConfigurationError):
        OllamaEmbeddingClient(endpoint="")


def test_factory_selects_provider_and_aliases():
    openai = create_embedding_client(
        Settings(embedding_provider="openai", openai_api_key=SecretStr("sk"))
    )
    assert isinstance(openai, OpenAIEmbeddingClient)

    azure = create_embedding_client(
        Settings(
            embedding_provider="AzureOpenAI",
            foundry_endpoint="https://x.openai.azure.com",
            foundry_api_key=SecretStr("k"),
        )
    )
    assert isinstance(azure, FoundryEmbeddingClient)

    ollama = create_embedding_client(
        Settings(embedding_provider="ollama", embedding_model="nomic-embed-text")
    )
    assert isinstance(ollama, OllamaEmbeddingClient)


def test_factory_rejects_unknown_provider():
    with pytest.raises(ConfigurationError):
        create_embedding_client(Settings(embedding_provider="cohere"))


def test_classify_failure():
    request = httpx.Request("POST", "http://test")

    def status_error(code):
        response = httpx.Response(code, request=request)
        return httpx.HTTPStatusError("err", request=request, response=response)

    assert classify_failure(status_error(500))
    assert classify_failure(status_error(429))
    assert classify_failure(status_error(408))
    assert not classify_failure(status_error(401))
    assert classify_failure(httpx.ReadTimeout("slow", request=request))
    assert not classify_failure(ValueError("bad"))
