"""
Database Package

Provides SQLAlchemy async session management, the document model and the
pgvector-backed vector store.
"""

from .session import get_engine, get_sessionmaker, init_models
from .models import Base, DocumentRecord
from .vector_store import PgVectorStore

__all__ = [
    "get_engine",
    "get_sessionmaker",
    "init_models",
    "Base",
    "DocumentRecord",
    "PgVectorStore",
]
