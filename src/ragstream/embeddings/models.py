"""
Document Data Models

This module defines the canonical data model for a stored document (one
embedding vector + one chunk of text), the vector query result wrapper, and
the ingestion request/outcome contracts.
"""

from __future__ import annotations

import uuid
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field


def new_document_id() -> str:
    return str(uuid.uuid4())


class Document(BaseModel):
    """
    A single stored document chunk.

    This model is the authoritative schema for:
    - vector store upserts and query results
    - index metadata persistence
    - ingestion output

    ``embedding`` is ``None`` until the ingestion pipeline populates it.
    Vector stores reject an embedding whose length is not the configured
    dimension.
    """

    id: str = Field(default_factory=new_document_id, min_length=1)
    repo_url: str = Field(..., min_length=1)
    file_path: str = Field(..., min_length=1)
    title: str = ""
    text: str = ""
    embedding: Optional[List[float]] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)
    token_count: int = Field(default=0, ge=0)
    file_type: str = ""
    is_code: bool = False
    is_implementation: bool = False
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    model_config = ConfigDict(extra="forbid")


class VectorQueryResult(BaseModel):
    """A stored document with its cosine similarity to the query vector."""

    document: Document
    similarity_score: float

    model_config = ConfigDict(extra="forbid")


# ---------------------------------------------------------------------
# Ingestion Contracts
# ---------------------------------------------------------------------

class IngestionDocument(BaseModel):
    """
    One document submitted for ingestion.

    Optional fields left unset are derived from ``file_path`` during
    ingestion. A caller-supplied ``embedding`` skips the embedding call.
    """

    id: Optional[str] = None
    repo_url: str
    file_path: str
    title: str = ""
    text: str
    metadata: Dict[str, Any] = Field(default_factory=dict)
    file_type: Optional[str] = None
    is_code: Optional[bool] = None
    is_implementation: Optional[bool] = None
    embedding: Optional[List[float]] = None

    model_config = ConfigDict(extra="forbid")

    @property
    def identifier(self) -> str:
        return f"{self.repo_url}:{self.file_path}"


class IngestionRequest(BaseModel):
    documents: List[IngestionDocument] = Field(default_factory=list)
    continue_on_error: bool = True
    skip_embedding: bool = False
    metadata_defaults: Dict[str, Any] = Field(default_factory=dict)
    max_concurrency: Optional[int] = Field(default=None, ge=1)

    model_config = ConfigDict(extra="forbid")


class IngestionStage(str, Enum):
    VALIDATION = "validation"
    CHUNKING = "chunking"
    EMBEDDING = "embedding"
    UPSERT = "upsert"


class IngestionOutcome(BaseModel):
    """Result of ingesting one submitted document."""

    document_identifier: str
    document_id: Optional[str] = None
    success: bool
    chunk_count: int = 0
    stage: Optional[IngestionStage] = None
    error: Optional[str] = None
    retryable: bool = False

    model_config = ConfigDict(extra="forbid")


class IngestionResult(BaseModel):
    outcomes: List[IngestionOutcome] = Field(default_factory=list)
    duration_ms: float = 0.0

    model_config = ConfigDict(extra="forbid")

    @property
    def success_count(self) -> int:
        return sum(1 for o in self.outcomes if o.success)

    @property
    def failure_count(self) -> int:
        return sum(1 for o in self.outcomes if not o.success)

    @property
    def total_chunks(self) -> int:
        return sum(o.chunk_count for o in self.outcomes)
