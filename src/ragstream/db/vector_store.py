"""
pgvector Vector Store

PostgreSQL + pgvector ``VectorStore`` adapter. Every call opens its own
session and transaction, so each upsert or delete is atomic on its own.
"""

from __future__ import annotations

import logging
from typing import Iterable, List, Mapping, Optional, Sequence

from sqlalchemy import delete, func, select, text
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ..embeddings.models import Document, VectorQueryResult
from ..embeddings.store import (
    VectorStore,
    normalize_filters,
    validate_embedding,
    validate_k,
)
from .models import DocumentRecord

logger = logging.getLogger("ragstream.vector_store")


def _to_document(record: DocumentRecord) -> Document:
    embedding = record.embedding
    return Document(
        id=record.id,
        repo_url=record.repo_url,
        file_path=record.file_path,
        title=record.title,
        text=record.text,
        embedding=[float(x) for x in embedding] if embedding is not None else None,
        metadata=dict(record.metadata_ or {}),
        token_count=record.token_count,
        file_type=record.file_type,
        is_code=record.is_code,
        is_implementation=record.is_implementation,
        created_at=record.created_at,
        updated_at=record.updated_at,
    )


class PgVectorStore(VectorStore):
    """
    PostgreSQL-backed vector store using pgvector's cosine distance.

    Parameters
    ----------
    session_factory : async_sessionmaker[AsyncSession]
        Factory producing one session per operation.
    """

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session_factory = session_factory

    async def query(
        self,
        embedding: Sequence[float],
        k: int = 5,
        filters: Optional[Mapping[str, Optional[str]]] = None,
    ) -> List[VectorQueryResult]:
        validate_embedding(embedding, self.dimension, "query")
        validate_k(k)
        criteria = normalize_filters(filters)

        distance = DocumentRecord.embedding.cosine_distance(list(embedding))
        stmt = (
            select(DocumentRecord, (1 - distance).label("score"))
            .where(DocumentRecord.embedding.is_not(None))
            .order_by(distance)
            .limit(k)
        )
        if "repo_url" in criteria:
            stmt = stmt.where(DocumentRecord.repo_url == criteria["repo_url"])
        if "file_path" in criteria:
            stmt = stmt.where(DocumentRecord.file_path == criteria["file_path"])

        async with self._session_factory() as session:
            result = await session.execute(stmt)
            rows = result.all()

        return [
            VectorQueryResult(
                document=_to_document(row[0]),
                similarity_score=float(row.score),
            )
            for row in rows
        ]

    async def upsert(self, document: Document) -> Document:
        self._check_document(document)

        values = {
            "id": document.id,
            "repo_url": document.repo_url,
            "file_path": document.file_path,
            "title": document.title,
            "text": document.text,
            "metadata": document.metadata,
            "token_count": document.token_count,
            "file_type": document.file_type,
            "is_code": document.is_code,
            "is_implementation": document.is_implementation,
            "embedding": document.embedding,
        }
        stmt = pg_insert(DocumentRecord.__table__).values(**values)
        stmt = stmt.on_conflict_do_update(
            index_elements=["id"],
            set_={
                **{key: stmt.excluded[key] for key in values if key != "id"},
                "updated_at": func.now(),
            },
        )

        async with self._session_factory() as session:
            async with session.begin():
                await session.execute(stmt)

        return document.model_copy(deep=True)

    async def delete(self, document_id: str) -> bool:
        stmt = delete(DocumentRecord).where(DocumentRecord.id == document_id)
        async with self._session_factory() as session:
            async with session.begin():
                result = await session.execute(stmt)
        return (result.rowcount or 0) > 0

    async def delete_chunks(
        self,
        repo_url: str,
        file_path: str,
        keep_ids: Optional[Iterable[str]] = None,
    ) -> int:
        stmt = delete(DocumentRecord).where(
            DocumentRecord.repo_url == repo_url,
            DocumentRecord.file_path == file_path,
        )
        keep = list(keep_ids or ())
        if keep:
            stmt = stmt.where(DocumentRecord.id.not_in(keep))
        async with self._session_factory() as session:
            async with session.begin():
                result = await session.execute(stmt)
        return result.rowcount or 0

    async def count(self, repo_url: Optional[str] = None) -> int:
        stmt = select(func.count()).select_from(DocumentRecord)
        if repo_url is not None:
            stmt = stmt.where(DocumentRecord.repo_url == repo_url)

        async with self._session_factory() as session:
            result = await session.execute(stmt)
            return result.scalar() or 0

    async def rebuild_index(self) -> None:
        async with self._session_factory() as session:
            async with session.begin():
                await session.execute(
                    text("REINDEX INDEX idx_document_embedding_hnsw")
                )
        logger.info("Rebuilt pgvector HNSW index")
