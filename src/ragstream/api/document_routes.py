"""
Document Routes

This module exposes endpoints for:
- Ingesting documents (chunk, embed, upsert) with per-document outcomes
- Queueing ingestion as a background job and polling its status
- Deleting a stored document by id
- Rebuilding the vector index
"""

from typing import Annotated

from fastapi import APIRouter, Depends, status

from .dependencies import (
    get_ingestion_queue,
    get_ingestion_service,
    get_job_queue,
    get_vector_store,
)
from .models import (
    DeleteResponse,
    IngestionJobResponse,
    IngestResponse,
    OperationResult,
)
from ..core.errors import JobNotFoundError
from ..embeddings.ingestion import IngestionService
from ..embeddings.models import IngestionRequest
from ..embeddings.queue import EmbeddingQueue, IngestionJob
from ..embeddings.store import VectorStore

router = APIRouter(prefix="/documents", tags=["documents"])


@router.post(
    "/ingest",
    response_model=IngestResponse,
    summary="Ingest documents into the vector store",
    status_code=status.HTTP_200_OK,
)
async def ingest_documents(
    req: IngestionRequest,
    service: Annotated[IngestionService, Depends(get_ingestion_service)],
) -> IngestResponse:
    """
    Ingest a batch of documents.

    With ``continue_on_error`` (the default) failing documents are reported
    in ``outcomes`` and the request still succeeds.
    """
    result = await service.ingest(req)
    return IngestResponse.from_result(result)


@router.post(
    "/ingest/jobs",
    response_model=IngestionJobResponse,
    summary="Queue documents for background ingestion",
    status_code=status.HTTP_202_ACCEPTED,
)
async def enqueue_ingestion(
    req: IngestionRequest,
    queue: Annotated[EmbeddingQueue, Depends(get_ingestion_queue)],
) -> IngestionJobResponse:
    job = IngestionJob(request=req)
    queue_size = await queue.enqueue(job)
    return IngestionJobResponse.from_job(job, queue_size=queue_size)


@router.get(
    "/ingest/jobs/{job_id}",
    response_model=IngestionJobResponse,
    summary="Get a background ingestion job",
)
async def get_ingestion_job(
    job_id: str,
    queue: Annotated[EmbeddingQueue, Depends(get_job_queue)],
) -> IngestionJobResponse:
    job = queue.get_job(job_id)
    if job is None:
        raise JobNotFoundError(f"Ingestion job {job_id} not found")
    return IngestionJobResponse.from_job(job)


@router.delete(
    "/{document_id}",
    response_model=DeleteResponse,
    summary="Delete a stored document",
)
async def delete_document(
    document_id: str,
    vector_store: Annotated[VectorStore, Depends(get_vector_store)],
) -> DeleteResponse:
    deleted = await vector_store.delete(document_id)
    return DeleteResponse(deleted=deleted)


@router.post(
    "/rebuild-index",
    response_model=OperationResult,
    summary="Rebuild the similarity index",
)
async def rebuild_index(
    vector_store: Annotated[VectorStore, Depends(get_vector_store)],
) -> OperationResult:
    await vector_store.rebuild_index()
    return OperationResult(status="ok", count=await vector_store.count())
