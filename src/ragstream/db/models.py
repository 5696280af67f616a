"""
SQLAlchemy Models

Defines the one table the pgvector adapter needs: document chunks with their
embedding vector.
"""

from __future__ import annotations

from datetime import datetime
from typing import Optional

from sqlalchemy import Boolean, Column, DateTime, Index, Integer, String, Text, func
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column
from pgvector.sqlalchemy import Vector

from ..config import EMBEDDING_DIMENSION


class Base(DeclarativeBase):
    """Base class for all models."""
    pass


class DocumentRecord(Base):
    """
    A stored document chunk.

    ``embedding`` is nullable: documents ingested without a vector are kept
    but excluded from similarity search.
    """
    __tablename__ = "document"

    id: Mapped[str] = mapped_column(String(128), primary_key=True)
    repo_url: Mapped[str] = mapped_column(Text, nullable=False)
    file_path: Mapped[str] = mapped_column(Text, nullable=False)
    title: Mapped[str] = mapped_column(Text, nullable=False, default="")
    text: Mapped[str] = mapped_column(Text, nullable=False, default="")
    metadata_: Mapped[dict] = mapped_column(
        "metadata",
        JSONB,
        nullable=False,
        default=dict,
    )
    token_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    file_type: Mapped[str] = mapped_column(String(32), nullable=False, default="")
    is_code: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    is_implementation: Mapped[bool] = mapped_column(
        Boolean, nullable=False, default=False
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
    )
    updated_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
        server_default=func.now(),
        onupdate=func.now(),
    )

    embedding = Column(Vector(EMBEDDING_DIMENSION), nullable=True)

    __table_args__ = (
        Index("idx_document_repo_path", "repo_url", "file_path"),
        Index(
            "idx_document_embedding_hnsw",
            "embedding",
            postgresql_using="hnsw",
            postgresql_ops={"embedding": "vector_cosine_ops"},
        ),
    )
