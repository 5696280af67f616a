import asyncio
from functools import lru_cache

from fastapi import Depends, Request

from ..config import settings
from ..embeddings.cache import EmbeddingCache
from ..embeddings.embedder import EmbeddingClient, create_embedding_client
from ..embeddings.ingestion import IngestionService
from ..embeddings.queue import EmbeddingQueue, process_ingestion_worker
from ..embeddings.store import VectorStore, create_vector_store
from ..generation.service import GenerationService
from ..llm.client import LLMClient, create_llm_client
from ..sessions.store import SessionManager


@lru_cache
def get_embedding_cache() -> EmbeddingCache:
    return EmbeddingCache(
        ttl_seconds=settings.cache_ttl_seconds,
        max_entries=settings.cache_max_entries,
    )


@lru_cache
def get_embedding_client() -> EmbeddingClient:
    return create_embedding_client(settings, cache=get_embedding_cache())


@lru_cache
def get_vector_store() -> VectorStore:
    return create_vector_store(settings)


def get_ingestion_service(
    embedder: EmbeddingClient = Depends(get_embedding_client),
    vector_store: VectorStore = Depends(get_vector_store),
) -> IngestionService:
    return IngestionService(
        embedder,
        vector_store,
        max_chunk_chars=settings.ingest_max_chunk_chars,
        chunk_overlap=settings.ingest_chunk_overlap,
    )


@lru_cache
def get_llm_client() -> LLMClient:
    return create_llm_client(settings)


def get_session_manager(request: Request) -> SessionManager:
    return request.app.state.session_manager


def get_generation_service(
    request: Request,
    sessions: SessionManager = Depends(get_session_manager),
    llm: LLMClient = Depends(get_llm_client),
    ingestion: IngestionService = Depends(get_ingestion_service),
) -> GenerationService:
    # One instance per app so cancel() sees the prompts stream() started.
    service = getattr(request.app.state, "generation_service", None)
    if service is None:
        service = GenerationService(
            sessions,
            llm,
            retriever=ingestion,
            top_k=settings.retrieval_top_k,
        )
        request.app.state.generation_service = service
    return service


def get_job_queue(request: Request) -> EmbeddingQueue:
    return request.app.state.ingestion_queue


async def get_ingestion_queue(
    request: Request,
    queue: EmbeddingQueue = Depends(get_job_queue),
    ingestion: IngestionService = Depends(get_ingestion_service),
) -> EmbeddingQueue:
    """Job queue for enqueueing; starts the worker on first use."""
    worker = getattr(request.app.state, "ingestion_worker", None)
    if worker is None or worker.done():
        request.app.state.ingestion_worker = asyncio.create_task(
            process_ingestion_worker(queue, ingestion)
        )
    return queue
