"""
FAISS Vector Store

Local, persistent ``VectorStore`` adapter backed by FAISS.

Key Properties
--------------
- Explicit ID management via IndexIDMap2 (string document id -> int64)
- Cosine similarity as inner product over L2-normalised vectors
- Upsert replaces the previous vector for the same document id
- Documents without an embedding are kept but never returned by ``query``
- Thread-safe: all state is guarded by one RLock; blocking FAISS work is
  moved off the event loop with ``asyncio.to_thread``
- Optional persistence (index file + JSON metadata)
"""

from __future__ import annotations

import asyncio
import json
import logging
from pathlib import Path
from threading import RLock
from typing import Dict, Iterable, List, Mapping, Optional, Sequence

import faiss
import numpy as np

from ..config import EMBEDDING_DIMENSION
from ..core.errors import RagError
from .models import Document, VectorQueryResult
from .store import VectorStore, normalize_filters, validate_embedding, validate_k

logger = logging.getLogger("ragstream.vector_store")


class FaissPersistenceError(RagError):
    """Raised when the index or its metadata cannot be read or written."""

    code = "persistence_error"


class FaissVectorStore(VectorStore):
    """
    In-process vector store over ``faiss.IndexIDMap2(IndexFlatIP)``.

    Parameters
    ----------
    index_path : Optional[str]
        Where ``save()`` writes the FAISS index. ``None`` keeps the store
        purely in memory.

    meta_path : Optional[str]
        Where ``save()`` writes documents and the id map as JSON.

    dimension : int
        Required embedding length.
    """

    def __init__(
        self,
        index_path: Optional[str] = None,
        meta_path: Optional[str] = None,
        dimension: int = EMBEDDING_DIMENSION,
    ) -> None:
        self._index_path = index_path
        self._meta_path = meta_path
        self.dimension = dimension

        self._index = self._new_index()
        self._docs: Dict[str, Document] = {}
        self._faiss_ids: Dict[str, int] = {}
        self._doc_ids: Dict[int, str] = {}
        self._next_id = 0

        self._lock = RLock()

    def _new_index(self) -> faiss.IndexIDMap2:
        return faiss.IndexIDMap2(faiss.IndexFlatIP(self.dimension))

    @staticmethod
    def _as_matrix(vectors: Sequence[Sequence[float]]) -> np.ndarray:
        matrix = np.asarray(vectors, dtype="float32")
        faiss.normalize_L2(matrix)
        return matrix

    # ------------------------------------------------------------------
    # VectorStore API
    # ------------------------------------------------------------------

    async def query(
        self,
        embedding: Sequence[float],
        k: int = 5,
        filters: Optional[Mapping[str, Optional[str]]] = None,
    ) -> List[VectorQueryResult]:
        validate_embedding(embedding, self.dimension, "query")
        validate_k(k)
        criteria = normalize_filters(filters)
        return await asyncio.to_thread(self._search, list(embedding), k, criteria)

    async def upsert(self, document: Document) -> Document:
        self._check_document(document)
        stored = document.model_copy(deep=True)
        await asyncio.to_thread(self._upsert, stored)
        return stored.model_copy(deep=True)

    async def delete(self, document_id: str) -> bool:
        return await asyncio.to_thread(self._delete, document_id)

    async def delete_chunks(
        self,
        repo_url: str,
        file_path: str,
        keep_ids: Optional[Iterable[str]] = None,
    ) -> int:
        keep = set(keep_ids or ())
        with self._lock:
            doomed = [
                doc.id
                for doc in self._docs.values()
                if doc.repo_url == repo_url
                and doc.file_path == file_path
                and doc.id not in keep
            ]
        removed = 0
        for doc_id in doomed:
            if await self.delete(doc_id):
                removed += 1
        return removed

    async def count(self, repo_url: Optional[str] = None) -> int:
        with self._lock:
            if repo_url is None:
                return len(self._docs)
            return sum(1 for d in self._docs.values() if d.repo_url == repo_url)

    async def rebuild_index(self) -> None:
        await asyncio.to_thread(self._rebuild)
        if self._index_path and self._meta_path:
            await asyncio.to_thread(self.save)

    async def close(self) -> None:
        if self._index_path and self._meta_path:
            await asyncio.to_thread(self.save)

    # ------------------------------------------------------------------
    # Blocking implementations (run in worker threads)
    # ------------------------------------------------------------------

    def _search(
        self,
        embedding: List[float],
        k: int,
        criteria: Dict[str, str],
    ) -> List[VectorQueryResult]:
        with self._lock:
            total = self._index.ntotal
            if total == 0:
                return []

            # Filters are applied after the search, so search everything then.
            fetch = total if criteria else min(k, total)
            scores, ids = self._index.search(self._as_matrix([embedding]), fetch)

            results: List[VectorQueryResult] = []
            for score, faiss_id in zip(scores[0], ids[0]):
                faiss_id = int(faiss_id)
                if faiss_id == -1:
                    continue

                doc_id = self._doc_ids.get(faiss_id)
                doc = self._docs.get(doc_id) if doc_id is not None else None
                if doc is None:
                    continue

                if any(getattr(doc, key) != value for key, value in criteria.items()):
                    continue

                results.append(
                    VectorQueryResult(
                        document=doc.model_copy(deep=True),
                        similarity_score=float(score),
                    )
                )
                if len(results) >= k:
                    break

            return results

    def _upsert(self, document: Document) -> None:
        with self._lock:
            self._remove_vector(document.id)

            if document.embedding is not None:
                faiss_id = self._next_id
                self._next_id += 1
                self._index.add_with_ids(
                    self._as_matrix([document.embedding]),
                    np.asarray([faiss_id], dtype="int64"),
                )
                self._faiss_ids[document.id] = faiss_id
                self._doc_ids[faiss_id] = document.id

            self._docs[document.id] = document

    def _delete(self, document_id: str) -> bool:
        with self._lock:
            if document_id not in self._docs:
                return False
            self._remove_vector(document_id)
            del self._docs[document_id]
            return True

    def _remove_vector(self, document_id: str) -> None:
        faiss_id = self._faiss_ids.pop(document_id, None)
        if faiss_id is None:
            return
        self._index.remove_ids(np.asarray([faiss_id], dtype="int64"))
        self._doc_ids.pop(faiss_id, None)

    def _rebuild(self) -> None:
        with self._lock:
            index = self._new_index()
            faiss_ids: Dict[str, int] = {}
            embedded = [d for d in self._docs.values() if d.embedding is not None]

            if embedded:
                ids = np.arange(len(embedded), dtype="int64")
                index.add_with_ids(
                    self._as_matrix([d.embedding for d in embedded]),
                    ids,
                )
                faiss_ids = {d.id: int(i) for d, i in zip(embedded, ids)}

            self._index = index
            self._faiss_ids = faiss_ids
            self._doc_ids = {v: k for k, v in faiss_ids.items()}
            self._next_id = len(embedded)

            logger.info("Rebuilt FAISS index with %d vectors", index.ntotal)

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    def save(self) -> None:
        """
        Persist the FAISS index and document metadata.
        """
        if not self._index_path or not self._meta_path:
            return

        with self._lock:
            index_path = Path(self._index_path)
            meta_path = Path(self._meta_path)

            try:
                index_path.parent.mkdir(parents=True, exist_ok=True)
                faiss.write_index(self._index, str(index_path))
            except Exception as exc:
                raise FaissPersistenceError(
                    f"Failed to write FAISS index: {type(exc).__name__}"
                ) from exc

            meta = {
                "dimension": self.dimension,
                "next_id": self._next_id,
                "faiss_ids": self._faiss_ids,
                "documents": [d.model_dump(mode="json") for d in self._docs.values()],
            }

            try:
                meta_path.parent.mkdir(parents=True, exist_ok=True)
                with meta_path.open("w", encoding="utf-8") as f:
                    json.dump(meta, f)
            except Exception as exc:
                raise FaissPersistenceError(
                    f"Failed to write FAISS metadata: {type(exc).__name__}"
                ) from exc

            logger.debug("Saved %d documents to %s", len(self._docs), meta_path)

    def load(self) -> None:
        """
        Load index and metadata from disk if both are present.
        """
        if not self._index_path or not self._meta_path:
            return

        index_path = Path(self._index_path)
        meta_path = Path(self._meta_path)
        if not index_path.exists() or not meta_path.exists():
            return

        with self._lock:
            try:
                index = faiss.read_index(str(index_path))
                with meta_path.open("r", encoding="utf-8") as f:
                    data = json.load(f)

                docs = {
                    raw["id"]: Document.model_validate(raw)
                    for raw in data.get("documents", [])
                }
                faiss_ids = {k: int(v) for k, v in data.get("faiss_ids", {}).items()}
                next_id = int(data.get("next_id", 0))
            except Exception as exc:
                raise FaissPersistenceError(
                    f"Failed to load FAISS store: {type(exc).__name__}"
                ) from exc

            if index.d != self.dimension:
                raise FaissPersistenceError(
                    f"Stored index has dimension {index.d}, expected {self.dimension}"
                )

            self._index = index
            self._docs = docs
            self._faiss_ids = faiss_ids
            self._doc_ids = {v: k for k, v in faiss_ids.items()}
            self._next_id = next_id

            logger.info("Loaded FAISS store with %d documents", len(docs))
