"""
Embedding Clients

This module implements the provider-agnostic embedding client and its
concrete variants (OpenAI, Azure AI Foundry, Ollama). Every variant shares
the same pipeline:

- content-keyed cache lookup (a hit makes no network call)
- single-flight de-duplication of identical concurrent requests
- bounded retry with backoff around each provider call
- a per-attempt timeout independent of the retry budget
- strict dimension validation (a mismatch is fatal and never retried)

Only ``_request_embeddings`` is provider specific: it performs one HTTP call
for a list of texts and returns the vectors in input order.
"""

from __future__ import annotations

import asyncio
import logging
import time
from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional, Sequence

import httpx

from ..config import EMBEDDING_DIMENSION
from ..core.errors import (
    ConfigurationError,
    EmbeddingError,
    InvalidArgumentError,
    InvalidDimensionError,
    TransientEmbeddingError,
)
from .cache import EmbeddingCache
from .retry import RetryPolicy, default_classifier

logger = logging.getLogger("ragstream.embedder")

MAX_BATCH_SIZE = 100

_RETRYABLE_STATUS = {408, 429}


def classify_failure(exc: BaseException) -> bool:
    """
    Decide whether a provider failure is worth retrying.

    Timeouts, connection errors, HTTP 408/429 and 5xx are transient.
    Other 4xx responses, malformed payloads and dimension mismatches are
    fatal.
    """
    if isinstance(exc, httpx.HTTPStatusError):
        status = exc.response.status_code
        return status in _RETRYABLE_STATUS or status >= 500
    return default_classifier(exc)


class EmbeddingClient(ABC):
    """
    Base class for embedding providers.

    Subclasses set ``provider`` and implement ``_request_embeddings``.
    Instances hold no per-request state and are safe to share across
    concurrent requests.
    """

    provider: str = "base"

    def __init__(
        self,
        model: str,
        *,
        dimension: int = EMBEDDING_DIMENSION,
        retry_policy: Optional[RetryPolicy] = None,
        cache: Optional[EmbeddingCache] = None,
        timeout: float = 30.0,
        batch_size: int = 16,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        """
        Parameters
        ----------
        model : str
            Provider model (or deployment) identifier; part of the cache key.

        dimension : int
            Required vector length.

        retry_policy : Optional[RetryPolicy]
            Backoff policy for provider calls. Defaults to ``RetryPolicy()``.

        cache : Optional[EmbeddingCache]
            Shared vector cache. ``None`` disables caching (and with it
            single-flight de-duplication).

        timeout : float
            Seconds allowed for a single provider attempt.

        batch_size : int
            Texts per provider request in ``embed_batch``.

        transport : Optional[httpx.AsyncBaseTransport]
            Custom HTTP transport (used by tests).
        """
        if not model:
            raise ConfigurationError(f"{self.provider}: embedding model is required")

        self.model = model
        self.dimension = dimension
        self.retry_policy = retry_policy or RetryPolicy()
        self.cache = cache
        self.timeout = timeout
        self.batch_size = max(1, min(batch_size, MAX_BATCH_SIZE))
        self._transport = transport

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def embed(self, text: str) -> List[float]:
        """
        Embed a single text.

        Raises
        ------
        InvalidArgumentError
            If ``text`` is empty.
        InvalidDimensionError
            If the provider returns a vector of the wrong length.
        RetryExhaustedError
            If every attempt failed with a transient error.
        """
        self._validate_text(text)
        started = time.perf_counter()

        try:
            if self.cache is None:
                vector = await self._fetch_one(text)
            else:
                vector = await self.cache.get_or_create(
                    self._cache_key(text),
                    lambda: self._fetch_one(text),
                )
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            logger.error(
                "Embedding failed [%s/%s] after %.0fms: %s",
                self.provider,
                self.model,
                (time.perf_counter() - started) * 1000,
                type(exc).__name__,
            )
            raise

        logger.debug(
            "Embedded text (%d chars) using [%s/%s] in %.0fms",
            len(text),
            self.provider,
            self.model,
            (time.perf_counter() - started) * 1000,
        )
        return vector

    async def embed_batch(
        self,
        texts: Sequence[str],
        max_concurrency: Optional[int] = None,
    ) -> List[List[float]]:
        """
        Embed many texts, returning vectors in input order.

        Cached texts are served without network calls, duplicate texts are
        sent once, and the remainder goes out in provider batches of
        ``batch_size``. Texts already being embedded by another caller join
        that in-flight request.

        Parameters
        ----------
        texts : Sequence[str]
            Input texts. Must all be non-empty.

        max_concurrency : Optional[int]
            Upper bound on simultaneous provider requests. ``None`` sends
            all batches at once.
        """
        texts = list(texts)
        if not texts:
            return []
        for text in texts:
            self._validate_text(text)

        started = time.perf_counter()

        positions: Dict[str, List[int]] = {}
        for i, text in enumerate(texts):
            positions.setdefault(text, []).append(i)

        resolved: Dict[str, List[float]] = {}
        missing: List[str] = []
        joining: List[str] = []

        for text in positions:
            if self.cache is not None:
                cached = self.cache.get(self._cache_key(text))
                if cached is not None:
                    resolved[text] = cached
                    continue
                if self.cache.in_flight(self._cache_key(text)):
                    joining.append(text)
                    continue
            missing.append(text)

        semaphore = asyncio.Semaphore(max_concurrency) if max_concurrency else None
        batch_tasks: List[asyncio.Task] = []

        async def run_batch(chunk: List[str]) -> List[List[float]]:
            if semaphore is None:
                return await self._call_with_retry(chunk)
            async with semaphore:
                return await self._call_with_retry(chunk)

        async def take(task: asyncio.Task, index: int) -> List[float]:
            vectors = await asyncio.shield(task)
            return vectors[index]

        pending: List[tuple] = []
        for start in range(0, len(missing), self.batch_size):
            chunk = missing[start : start + self.batch_size]
            task = asyncio.ensure_future(run_batch(chunk))
            batch_tasks.append(task)
            for index, text in enumerate(chunk):
                pending.append((text, task, index))

        async def resolve(text: str, task: asyncio.Task, index: int) -> List[float]:
            if self.cache is None:
                return list(await take(task, index))
            return await self.cache.get_or_create(
                self._cache_key(text),
                lambda: take(task, index),
            )

        async def join(text: str) -> List[float]:
            return await self.cache.get_or_create(
                self._cache_key(text),
                lambda: self._fetch_one(text),
            )

        coros = [resolve(text, task, index) for text, task, index in pending]
        coros += [join(text) for text in joining]
        order = [text for text, _, _ in pending] + joining

        try:
            results = await asyncio.gather(*coros)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            logger.error(
                "Batch embedding failed [%s/%s] for %d texts: %s",
                self.provider,
                self.model,
                len(texts),
                type(exc).__name__,
            )
            raise
        finally:
            for task in batch_tasks:
                if not task.done():
                    task.cancel()
                elif not task.cancelled():
                    task.exception()

        for text, vector in zip(order, results):
            resolved[text] = vector

        output: List[Optional[List[float]]] = [None] * len(texts)
        for text, indices in positions.items():
            for i in indices:
                output[i] = list(resolved[text])

        logger.info(
            "Batch embedded %d texts (%d unique, %d requested) using [%s/%s] in %.0fms",
            len(texts),
            len(positions),
            len(missing),
            self.provider,
            self.model,
            (time.perf_counter() - started) * 1000,
        )
        return output  # type: ignore[return-value]

    # ------------------------------------------------------------------
    # Provider hook
    # ------------------------------------------------------------------

    @abstractmethod
    async def _request_embeddings(
        self,
        client: httpx.AsyncClient,
        texts: List[str],
    ) -> List[List[float]]:
        """Issue one provider request; return vectors in input order."""

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _cache_key(self, text: str) -> str:
        return EmbeddingCache.make_key(self.provider, self.model, text)

    @staticmethod
    def _validate_text(text: str) -> None:
        if not isinstance(text, str) or not text.strip():
            raise InvalidArgumentError("Text to embed must be a non-empty string.")

    async def _fetch_one(self, text: str) -> List[float]:
        vectors = await self._call_with_retry([text])
        return vectors[0]

    async def _call_with_retry(self, texts: List[str]) -> List[List[float]]:
        async def attempt() -> List[List[float]]:
            async with httpx.AsyncClient(
                timeout=self.timeout,
                transport=self._transport,
            ) as client:
                return await asyncio.wait_for(
                    self._request_embeddings(client, texts),
                    timeout=self.timeout,
                )

        vectors = await self.retry_policy.execute(
            attempt,
            classifier=classify_failure,
            operation_name=f"embed[{self.provider}/{self.model}]",
        )

        if len(vectors) != len(texts):
            raise EmbeddingError(
                f"Provider returned {len(vectors)} embeddings for {len(texts)} inputs."
            )
        for vector in vectors:
            if len(vector) != self.dimension:
                raise InvalidDimensionError(
                    self.dimension,
                    len(vector),
                    f"provider={self.provider}, model={self.model}",
                )
        return vectors

    @staticmethod
    def _parse_vector(raw: Any, index: int) -> List[float]:
        if not isinstance(raw, list) or not all(
            isinstance(x, (float, int)) for x in raw
        ):
            raise EmbeddingError(
                f"Invalid embedding vector at index {index}: must be float list."
            )
        return [float(x) for x in raw]

    @classmethod
    def _extract_openai_embeddings(cls, data: Any) -> List[List[float]]:
        """
        Parse an OpenAI-style embeddings response.

        OpenAI returns:
            { "data": [ {"index": 0, "embedding": [...]}, ... ] }

        Records are re-sorted by ``index`` because providers may return
        them out of order.
        """
        if not isinstance(data, dict) or "data" not in data:
            raise EmbeddingError("Embedding response missing 'data' field.")

        records = data["data"]
        if not isinstance(records, list):
            raise EmbeddingError("'data' field must be a list.")

        indexed = []
        for position, record in enumerate(records):
            if not isinstance(record, dict) or "embedding" not in record:
                raise EmbeddingError(
                    f"Malformed embedding record at index {position}: {record!r}"
                )
            index = record.get("index", position)
            indexed.append((index, cls._parse_vector(record["embedding"], position)))

        indexed.sort(key=lambda item: item[0])
        return [vector for _, vector in indexed]

    @staticmethod
    async def _post(
        client: httpx.AsyncClient,
        url: str,
        payload: Dict[str, Any],
        headers: Optional[Dict[str, str]] = None,
        params: Optional[Dict[str, str]] = None,
    ) -> Any:
        response = await client.post(url, json=payload, headers=headers, params=params)
        try:
            response.raise_for_status()
        except httpx.HTTPStatusError as exc:
            status = exc.response.status_code
            if classify_failure(exc):
                raise TransientEmbeddingError(
                    f"Embedding provider unavailable (HTTP {status})"
                ) from exc
            raise EmbeddingError(
                f"Embedding provider rejected request (HTTP {status})"
            ) from exc

        try:
            return response.json()
        except ValueError as exc:
            raise EmbeddingError("Embedding response is not valid JSON.") from exc


# ---------------------------------------------------------------------
# Provider Variants
# ---------------------------------------------------------------------

class OpenAIEmbeddingClient(EmbeddingClient):
    """OpenAI ``/v1/embeddings`` (or any compatible endpoint)."""

    provider = "openai"

    def __init__(
        self,
        api_key: Optional[str],
        model: str = "text-embedding-ada-002",
        base_url: str = "https://api.openai.com/v1",
        **kwargs: Any,
    ) -> None:
        if not api_key:
            raise ConfigurationError(
                "OpenAI API key not configured. Set RAGSTREAM_OPENAI_API_KEY."
            )
        if not base_url:
            raise ConfigurationError("OpenAI base URL must not be empty.")

        super().__init__(model, **kwargs)
        self._api_key = api_key
        self.url = base_url.rstrip("/") + "/embeddings"

    async def _request_embeddings(self, client, texts):
        data = await self._post(
            client,
            self.url,
            {"model": self.model, "input": texts},
            headers={"Authorization": f"Bearer {self._api_key}"},
        )
        return self._extract_openai_embeddings(data)


class FoundryEmbeddingClient(EmbeddingClient):
    """Azure AI Foundry / Azure OpenAI deployment."""

    provider = "foundry"

    def __init__(
        self,
        endpoint: Optional[str],
        api_key: Optional[str],
        deployment: str,
        api_version: str = "2024-02-01",
        model: Optional[str] = None,
        **kwargs: Any,
    ) -> None:
        if not endpoint:
            raise ConfigurationError(
                "Foundry endpoint not configured. Set RAGSTREAM_FOUNDRY_ENDPOINT."
            )
        if not api_key:
            raise ConfigurationError(
                "Foundry API key not configured. Set RAGSTREAM_FOUNDRY_API_KEY."
            )
        if not deployment:
            raise ConfigurationError("Foundry deployment name must not be empty.")

        super().__init__(model or deployment, **kwargs)
        self.deployment = deployment
        self._api_key = api_key
        self._api_version = api_version
        self.url = (
            f"{endpoint.rstrip('/')}/openai/deployments/{deployment}/embeddings"
        )

    async def _request_embeddings(self, client, texts):
        data = await self._post(
            client,
            self.url,
            {"input": texts},
            headers={"api-key": self._api_key},
            params={"api-version": self._api_version},
        )
        return self._extract_openai_embeddings(data)


class OllamaEmbeddingClient(EmbeddingClient):
    """Local Ollama server ``/api/embed``."""

    provider = "ollama"

    def __init__(
        self,
        endpoint: Optional[str] = "http://localhost:11434",
        model: str = "nomic-embed-text",
        **kwargs: Any,
    ) -> None:
        if not endpoint:
            raise ConfigurationError(
                "Ollama endpoint not configured. Set RAGSTREAM_OLLAMA_ENDPOINT."
            )

        super().__init__(model, **kwargs)
        self.url = endpoint.rstrip("/") + "/api/embed"

    async def _request_embeddings(self, client, texts):
        data = await self._post(client, self.url, {"model": self.model, "input": texts})

        embeddings = data.get("embeddings") if isinstance(data, dict) else None
        if not isinstance(embeddings, list):
            raise EmbeddingError(
                f"Ollama returned no embeddings for model {self.model}. "
                "Ensure the model is downloaded and supports embeddings."
            )
        return [self._parse_vector(raw, i) for i, raw in enumerate(embeddings)]


# ---------------------------------------------------------------------
# Factory
# ---------------------------------------------------------------------

_PROVIDER_ALIASES = {
    "openai": "openai",
    "foundry": "foundry",
    "azure": "foundry",
    "azureopenai": "foundry",
    "ollama": "ollama",
}


def _secret(value) -> Optional[str]:
    if value is None:
        return None
    return value.get_secret_value() if hasattr(value, "get_secret_value") else value


def create_embedding_client(
    settings,
    cache: Optional[EmbeddingCache] = None,
    retry_policy: Optional[RetryPolicy] = None,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> EmbeddingClient:
    """
    Build the embedding client selected by ``settings.embedding_provider``.

    Raises
    ------
    ConfigurationError
        If the provider is unknown or its endpoint/credentials are missing.
    """
    name = (settings.embedding_provider or "").strip().lower()
    provider = _PROVIDER_ALIASES.get(name)
    if provider is None:
        raise ConfigurationError(
            f"Unknown embedding provider: {settings.embedding_provider!r}. "
            "Supported providers: openai, foundry, ollama."
        )

    common: Dict[str, Any] = {
        "dimension": settings.embedding_dimension,
        "retry_policy": retry_policy or RetryPolicy.from_settings(settings),
        "cache": cache,
        "timeout": settings.embedding_timeout,
        "batch_size": settings.embedding_batch_size,
        "transport": transport,
    }

    if provider == "openai":
        client: EmbeddingClient = OpenAIEmbeddingClient(
            api_key=_secret(settings.openai_api_key),
            model=settings.embedding_model,
            base_url=settings.openai_base_url,
            **common,
        )
    elif provider == "foundry":
        client = FoundryEmbeddingClient(
            endpoint=settings.foundry_endpoint,
            api_key=_secret(settings.foundry_api_key),
            deployment=settings.foundry_deployment,
            api_version=settings.foundry_api_version,
            model=settings.embedding_model,
            **common,
        )
    else:
        client = OllamaEmbeddingClient(
            endpoint=settings.ollama_endpoint,
            model=settings.embedding_model,
            **common,
        )

    logger.info(
        "Initialized %s embedding client with model %s",
        client.provider,
        client.model,
    )
    return client
