"""
Vector Store Contract

Persistence-agnostic interface for nearest-neighbour query, upsert, delete
and index rebuild. Concrete adapters live next to their storage engine:

- ``embeddings.index.FaissVectorStore``   (local FAISS index)
- ``db.vector_store.PgVectorStore``       (PostgreSQL + pgvector)

Both share the argument validation defined here so that every adapter
rejects the same inputs with the same errors.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Dict, Iterable, List, Mapping, Optional, Sequence

from ..config import EMBEDDING_DIMENSION
from ..core.errors import InvalidArgumentError, InvalidDimensionError
from .models import Document, VectorQueryResult

# Accepted filter keys, mapped to their canonical name.
_FILTER_KEYS = {
    "repo_url": "repo_url",
    "repoUrl": "repo_url",
    "file_path": "file_path",
    "filePath": "file_path",
}


def validate_embedding(
    embedding: Optional[Sequence[float]],
    dimension: int = EMBEDDING_DIMENSION,
    context: str = "",
) -> None:
    if embedding is None:
        raise InvalidArgumentError("Embedding must not be None.")
    if len(embedding) != dimension:
        raise InvalidDimensionError(dimension, len(embedding), context)


def validate_k(k: int) -> None:
    if not isinstance(k, int) or isinstance(k, bool) or k < 1:
        raise InvalidArgumentError(f"k must be an integer >= 1, got {k!r}")


def normalize_filters(filters: Optional[Mapping[str, Optional[str]]]) -> Dict[str, str]:
    """
    Canonicalize query filters to ``{"repo_url"?, "file_path"?}``.

    Empty values are dropped; unknown keys are rejected.
    """
    if not filters:
        return {}

    result: Dict[str, str] = {}
    for key, value in filters.items():
        canonical = _FILTER_KEYS.get(key)
        if canonical is None:
            raise InvalidArgumentError(f"Unsupported filter: {key!r}")
        if value:
            result[canonical] = value
    return result


class VectorStore(ABC):
    """
    Abstract async vector store.

    Each ``upsert`` / ``delete`` is atomic on its own; no cross-call
    transaction is implied.
    """

    dimension: int = EMBEDDING_DIMENSION

    @abstractmethod
    async def query(
        self,
        embedding: Sequence[float],
        k: int = 5,
        filters: Optional[Mapping[str, Optional[str]]] = None,
    ) -> List[VectorQueryResult]:
        """
        Return at most ``k`` documents ordered by descending similarity.

        Raises
        ------
        InvalidArgumentError
            On a wrong embedding dimension, ``k < 1`` or unknown filters.
        """

    @abstractmethod
    async def upsert(self, document: Document) -> Document:
        """Insert or replace by ``document.id``; returns the stored copy."""

    @abstractmethod
    async def delete(self, document_id: str) -> bool:
        """Remove a document. Absent ids are a no-op returning ``False``."""

    @abstractmethod
    async def delete_chunks(
        self,
        repo_url: str,
        file_path: str,
        keep_ids: Optional[Iterable[str]] = None,
    ) -> int:
        """
        Remove the documents of one (repo, path), except ids in ``keep_ids``.

        Returns the number removed.
        """

    @abstractmethod
    async def count(self, repo_url: Optional[str] = None) -> int:
        """Number of stored documents, optionally for one repository."""

    @abstractmethod
    async def rebuild_index(self) -> None:
        """Rebuild the similarity index from everything committed so far."""

    async def close(self) -> None:
        """Release held resources. Default: nothing to release."""

    def _check_document(self, document: Document) -> None:
        if document is None:
            raise InvalidArgumentError("Document must not be None.")
        if document.embedding is not None:
            validate_embedding(
                document.embedding,
                self.dimension,
                f"document {document.id}",
            )


def create_vector_store(settings) -> VectorStore:
    """Build the adapter selected by ``settings.vector_store_backend``."""
    backend = settings.vector_store_backend

    if backend == "faiss":
        from .index import FaissVectorStore

        store: VectorStore = FaissVectorStore(
            index_path=settings.vector_index_path,
            meta_path=settings.vector_meta_path,
            dimension=settings.embedding_dimension,
        )
        store.load()
        return store

    if backend == "pgvector":
        from ..db.session import get_sessionmaker
        from ..db.vector_store import PgVectorStore

        return PgVectorStore(get_sessionmaker(settings.database_url))

    raise InvalidArgumentError(f"Unknown vector store backend: {backend!r}")
