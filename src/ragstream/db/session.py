"""
Database Session Management

Provides the async SQLAlchemy engine and session factory for PostgreSQL.
Both are created on first use so importing this module never connects.
"""

from __future__ import annotations

from functools import lru_cache
from typing import Optional

from sqlalchemy import text
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from ..config import settings
from .models import Base


@lru_cache
def get_engine(database_url: Optional[str] = None) -> AsyncEngine:
    return create_async_engine(
        database_url or settings.database_url,
        echo=False,
        pool_pre_ping=True,
        pool_size=5,
        max_overflow=10,
    )


@lru_cache
def get_sessionmaker(
    database_url: Optional[str] = None,
) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(
        bind=get_engine(database_url),
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )


async def init_models(database_url: Optional[str] = None) -> None:
    """
    Create the pgvector extension and the document table if missing.
    """
    async with get_engine(database_url).begin() as conn:
        await conn.execute(text("CREATE EXTENSION IF NOT EXISTS vector"))
        await conn.run_sync(Base.metadata.create_all)
