"""
API Models

Pydantic request/response models for the HTTP surface: sessions, document
ingestion, retrieval and streamed generation.

Session and generation payloads use camelCase on the wire (matching the
delta records they stream); document and query payloads use the snake_case
field names of the document model.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field

from ..embeddings.models import IngestionOutcome, IngestionResult, VectorQueryResult
from ..embeddings.queue import IngestionJob, JobStatus
from ..sessions.store import Session, SessionStatus


# ---------------------------------------------------------------------
# Sessions
# ---------------------------------------------------------------------

class CreateSessionRequest(BaseModel):
    owner_id: Optional[str] = Field(default=None, alias="ownerId")

    model_config = ConfigDict(extra="forbid", populate_by_name=True)


class SessionResponse(BaseModel):
    session_id: str = Field(alias="sessionId")
    owner_id: Optional[str] = Field(default=None, alias="ownerId")
    status: SessionStatus
    created_at: datetime = Field(alias="createdAt")
    last_active_at: datetime = Field(alias="lastActiveAt")
    expires_at: datetime = Field(alias="expiresAt")

    model_config = ConfigDict(populate_by_name=True)

    @classmethod
    def from_session(cls, session: Session) -> "SessionResponse":
        return cls(**session.model_dump())


# ---------------------------------------------------------------------
# Documents
# ---------------------------------------------------------------------

class IngestResponse(BaseModel):
    outcomes: List[IngestionOutcome]
    success_count: int = Field(..., ge=0)
    failure_count: int = Field(..., ge=0)
    total_chunks: int = Field(..., ge=0)
    duration_ms: float

    @classmethod
    def from_result(cls, result: IngestionResult) -> "IngestResponse":
        return cls(
            outcomes=result.outcomes,
            success_count=result.success_count,
            failure_count=result.failure_count,
            total_chunks=result.total_chunks,
            duration_ms=result.duration_ms,
        )


class IngestionJobResponse(BaseModel):
    job_id: str
    status: JobStatus
    document_count: int = Field(..., ge=0)
    queue_size: Optional[int] = Field(default=None, ge=0)
    result: Optional[IngestResponse] = None
    error: Optional[str] = None

    @classmethod
    def from_job(
        cls,
        job: IngestionJob,
        queue_size: Optional[int] = None,
    ) -> "IngestionJobResponse":
        return cls(
            job_id=job.job_id,
            status=job.status,
            document_count=len(job.request.documents),
            queue_size=queue_size,
            result=IngestResponse.from_result(job.result) if job.result else None,
            error=job.error,
        )


class DeleteResponse(BaseModel):
    deleted: bool


class OperationResult(BaseModel):
    """
    Standardized result for maintenance endpoints.
    """
    status: str
    count: Optional[int] = Field(default=None, ge=0)

    model_config = ConfigDict(extra="forbid")


# ---------------------------------------------------------------------
# Retrieval
# ---------------------------------------------------------------------

class QueryRequest(BaseModel):
    text: str
    # Range checks happen in the service so they map onto 400 responses.
    k: int = 5
    filters: Optional[Dict[str, Optional[str]]] = None

    model_config = ConfigDict(extra="forbid")


class QueryResult(BaseModel):
    id: str
    repo_url: str
    file_path: str
    title: str
    text: str
    score: float
    metadata: Dict[str, Any] = Field(default_factory=dict)

    @classmethod
    def from_result(cls, result: VectorQueryResult) -> "QueryResult":
        doc = result.document
        return cls(
            id=doc.id,
            repo_url=doc.repo_url,
            file_path=doc.file_path,
            title=doc.title,
            text=doc.text,
            score=result.similarity_score,
            metadata=doc.metadata,
        )


# ---------------------------------------------------------------------
# Generation
# ---------------------------------------------------------------------

class GenerateRequest(BaseModel):
    session_id: str = Field(..., alias="sessionId", min_length=1)
    prompt: str
    top_k: Optional[int] = Field(default=None, alias="topK")
    filters: Optional[Dict[str, Optional[str]]] = None
    idempotency_key: Optional[str] = Field(default=None, alias="idempotencyKey")

    model_config = ConfigDict(extra="forbid", populate_by_name=True)


class CancelRequest(BaseModel):
    prompt_id: str = Field(..., alias="promptId", min_length=1)

    model_config = ConfigDict(extra="forbid", populate_by_name=True)


class CancelResponse(BaseModel):
    cancelled: bool
