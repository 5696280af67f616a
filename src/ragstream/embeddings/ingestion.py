"""
Document Ingestion

Turns submitted documents into stored, embedded chunks:

    validate -> enrich metadata -> chunk -> embed -> replace old chunks -> upsert

Every submitted document yields exactly one ``IngestionOutcome``. With
``continue_on_error`` a failing document is recorded and skipped; without it
the first failure is recorded, logged and re-raised.

Also hosts the retrieval half of the pipeline (``query``), since both sides
share the same embedder and vector store.
"""

from __future__ import annotations

import asyncio
import logging
import time
import uuid
from pathlib import PurePosixPath
from typing import Any, Dict, List, Mapping, Optional

from langchain_text_splitters import RecursiveCharacterTextSplitter

from ..core.errors import InvalidArgumentError, RetryExhaustedError, TransientError
from .embedder import EmbeddingClient
from .models import (
    Document,
    IngestionDocument,
    IngestionOutcome,
    IngestionRequest,
    IngestionResult,
    IngestionStage,
    VectorQueryResult,
)
from .store import VectorStore, validate_embedding, validate_k

logger = logging.getLogger("ragstream.ingestion")

MAX_TEXT_BYTES = 5 * 1024 * 1024

CODE_LANGUAGES: Dict[str, str] = {
    "cs": "csharp",
    "fs": "fsharp",
    "vb": "vb",
    "js": "javascript",
    "jsx": "javascript",
    "ts": "typescript",
    "tsx": "typescript",
    "py": "python",
    "rb": "ruby",
    "go": "go",
    "rs": "rust",
    "java": "java",
    "kt": "kotlin",
    "swift": "swift",
    "c": "c",
    "h": "c",
    "cpp": "cpp",
    "hpp": "cpp",
    "m": "objective-c",
    "mm": "objective-c",
    "php": "php",
    "pl": "perl",
    "sh": "bash",
    "bash": "bash",
    "ps1": "powershell",
    "psm1": "powershell",
}

TEST_PATH_PARTS = {"test", "tests", "spec", "specs", "__tests__", "__test__"}


# ---------------------------------------------------------------------
# Metadata helpers
# ---------------------------------------------------------------------

def file_type_of(file_path: str) -> str:
    suffix = PurePosixPath(file_path.replace("\\", "/")).suffix
    return suffix.lstrip(".").lower() or "unknown"


def is_code_type(file_type: str) -> bool:
    return file_type in CODE_LANGUAGES


def is_implementation_path(file_path: str, is_code: bool) -> bool:
    """Code files that are not tests, judged by directory and file name."""
    if not is_code:
        return False

    path = PurePosixPath(file_path.replace("\\", "/"))
    if any(part.lower() in TEST_PATH_PARTS for part in path.parts[:-1]):
        return False

    stem = path.stem.lower()
    if stem.startswith("test") or stem.endswith(("test", "tests", "spec")):
        return False

    return True


def estimate_tokens(text: str) -> int:
    return max(1, len(text) // 4)


# ---------------------------------------------------------------------
# Service
# ---------------------------------------------------------------------

class _StageError(Exception):
    """Internal wrapper remembering which stage a document failed in."""

    def __init__(self, stage: IngestionStage, cause: BaseException) -> None:
        super().__init__(str(cause))
        self.stage = stage
        self.cause = cause


class IngestionService:
    """
    Ingestion and retrieval over one embedder and one vector store.

    Parameters
    ----------
    embedder : EmbeddingClient
        Produces chunk and query vectors.

    vector_store : VectorStore
        Destination of upserted chunks and source of query results.

    max_chunk_chars : int
        Chunk size for ``RecursiveCharacterTextSplitter``.

    chunk_overlap : int
        Overlap between consecutive chunks.

    max_concurrency : Optional[int]
        Default bound on documents processed at once. ``None`` processes
        documents one at a time.
    """

    def __init__(
        self,
        embedder: EmbeddingClient,
        vector_store: VectorStore,
        max_chunk_chars: int = 12000,
        chunk_overlap: int = 1200,
        max_concurrency: Optional[int] = None,
    ) -> None:
        if chunk_overlap >= max_chunk_chars:
            raise InvalidArgumentError("chunk_overlap must be smaller than max_chunk_chars")

        self._embedder = embedder
        self._store = vector_store
        self._max_chunk_chars = max_chunk_chars
        self._max_concurrency = max_concurrency
        self._splitter = RecursiveCharacterTextSplitter(
            chunk_size=max_chunk_chars,
            chunk_overlap=chunk_overlap,
            length_function=len,
            separators=["\n\n", "\n", ".", " ", ""],
        )

    @property
    def vector_store(self) -> VectorStore:
        return self._store

    # ------------------------------------------------------------------
    # Ingestion
    # ------------------------------------------------------------------

    async def ingest(self, request: IngestionRequest) -> IngestionResult:
        """
        Ingest every document of ``request``.

        Returns
        -------
        IngestionResult
            One outcome per submitted document, in submission order.

        Raises
        ------
        Exception
            Only when ``continue_on_error`` is False: the first document
            failure, after its outcome has been logged.
        """
        started = time.perf_counter()

        if request.continue_on_error:
            limit = request.max_concurrency or self._max_concurrency or 1
            semaphore = asyncio.Semaphore(limit)

            async def bounded(doc: IngestionDocument) -> IngestionOutcome:
                async with semaphore:
                    return await self._ingest_safely(doc, request)

            outcomes = list(
                await asyncio.gather(*(bounded(d) for d in request.documents))
            )
        else:
            outcomes = []
            for doc in request.documents:
                try:
                    outcomes.append(await self._ingest_document(doc, request))
                except _StageError as exc:
                    outcome = self._failed_outcome(doc, exc)
                    outcomes.append(outcome)
                    logger.error(
                        "Aborting ingestion at %s (%d of %d processed)",
                        outcome.document_identifier,
                        len(outcomes),
                        len(request.documents),
                    )
                    raise exc.cause from None

        result = IngestionResult(
            outcomes=outcomes,
            duration_ms=(time.perf_counter() - started) * 1000.0,
        )
        logger.info(
            "Ingested %d/%d documents (%d chunks) in %.1f ms",
            result.success_count,
            len(outcomes),
            result.total_chunks,
            result.duration_ms,
        )
        return result

    async def _ingest_safely(
        self,
        doc: IngestionDocument,
        request: IngestionRequest,
    ) -> IngestionOutcome:
        try:
            return await self._ingest_document(doc, request)
        except _StageError as exc:
            return self._failed_outcome(doc, exc)

    def _failed_outcome(
        self,
        doc: IngestionDocument,
        exc: _StageError,
    ) -> IngestionOutcome:
        retryable = isinstance(exc.cause, (TransientError, RetryExhaustedError))
        logger.warning(
            "Failed to ingest %s at stage %s: %s",
            doc.identifier,
            exc.stage.value,
            exc.cause,
        )
        return IngestionOutcome(
            document_identifier=doc.identifier,
            document_id=doc.id,
            success=False,
            stage=exc.stage,
            error=str(exc.cause),
            retryable=retryable,
        )

    async def _ingest_document(
        self,
        doc: IngestionDocument,
        request: IngestionRequest,
    ) -> IngestionOutcome:
        try:
            self._validate(doc)
        except InvalidArgumentError as exc:
            raise _StageError(IngestionStage.VALIDATION, exc) from exc

        try:
            chunks = self._build_chunks(doc, request.metadata_defaults)
        except Exception as exc:
            raise _StageError(IngestionStage.CHUNKING, exc) from exc

        if doc.embedding is None and not request.skip_embedding:
            try:
                vectors = await self._embedder.embed_batch([c.text for c in chunks])
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                raise _StageError(IngestionStage.EMBEDDING, exc) from exc

            for chunk, vector in zip(chunks, vectors):
                chunk.embedding = vector

        # Stale chunks are removed only after every new chunk is stored.
        try:
            for chunk in chunks:
                await self._store.upsert(chunk)
            replaced = await self._store.delete_chunks(
                doc.repo_url,
                doc.file_path,
                keep_ids=[c.id for c in chunks],
            )
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            raise _StageError(IngestionStage.UPSERT, exc) from exc

        logger.debug(
            "Stored %d chunk(s) for %s (removed %d stale)",
            len(chunks),
            doc.identifier,
            replaced,
        )
        return IngestionOutcome(
            document_identifier=doc.identifier,
            document_id=chunks[0].metadata.get("parent_id", chunks[0].id),
            success=True,
            chunk_count=len(chunks),
        )

    # ------------------------------------------------------------------
    # Validation / chunking
    # ------------------------------------------------------------------

    def _validate(self, doc: IngestionDocument) -> None:
        if not doc.repo_url.strip():
            raise InvalidArgumentError("Document repo_url is required")
        if not doc.file_path.strip():
            raise InvalidArgumentError("Document file_path is required")
        if not doc.text.strip():
            raise InvalidArgumentError("Document text is required")

        size = len(doc.text.encode("utf-8"))
        if size > MAX_TEXT_BYTES:
            raise InvalidArgumentError(
                f"Document text exceeds {MAX_TEXT_BYTES // (1024 * 1024)} MB "
                f"(got {size / (1024 * 1024):.2f} MB)"
            )

        if doc.embedding is not None:
            validate_embedding(doc.embedding, self._store.dimension, doc.identifier)

    def _build_chunks(
        self,
        doc: IngestionDocument,
        defaults: Mapping[str, Any],
    ) -> List[Document]:
        file_type = doc.file_type or file_type_of(doc.file_path)
        is_code = doc.is_code if doc.is_code is not None else is_code_type(file_type)
        is_impl = (
            doc.is_implementation
            if doc.is_implementation is not None
            else is_implementation_path(doc.file_path, is_code)
        )

        metadata: Dict[str, Any] = {**defaults, **doc.metadata}
        metadata.update(
            file_type=file_type,
            is_code=is_code,
            is_implementation=is_impl,
            language=CODE_LANGUAGES.get(file_type, "code") if is_code else "text",
        )

        parent_id = doc.id or str(uuid.uuid5(uuid.NAMESPACE_URL, doc.identifier))
        title = doc.title or PurePosixPath(doc.file_path.replace("\\", "/")).name

        # A caller-supplied vector describes the whole text; keep it whole.
        if doc.embedding is not None or len(doc.text) <= self._max_chunk_chars:
            texts = [doc.text]
        else:
            texts = self._splitter.split_text(doc.text)

        if len(texts) == 1:
            return [
                Document(
                    id=parent_id,
                    repo_url=doc.repo_url,
                    file_path=doc.file_path,
                    title=title,
                    text=texts[0],
                    embedding=doc.embedding,
                    metadata=metadata,
                    token_count=estimate_tokens(texts[0]),
                    file_type=file_type,
                    is_code=is_code,
                    is_implementation=is_impl,
                )
            ]

        chunks: List[Document] = []
        for index, text in enumerate(texts):
            chunks.append(
                Document(
                    id=str(uuid.uuid5(uuid.NAMESPACE_URL, f"{parent_id}#{index}")),
                    repo_url=doc.repo_url,
                    file_path=doc.file_path,
                    title=title,
                    text=text,
                    metadata={
                        **metadata,
                        "chunk_index": index,
                        "total_chunks": len(texts),
                        "parent_id": parent_id,
                    },
                    token_count=estimate_tokens(text),
                    file_type=file_type,
                    is_code=is_code,
                    is_implementation=is_impl,
                )
            )
        return chunks

    # ------------------------------------------------------------------
    # Retrieval
    # ------------------------------------------------------------------

    async def query(
        self,
        text: str,
        k: int = 5,
        filters: Optional[Mapping[str, Optional[str]]] = None,
    ) -> List[VectorQueryResult]:
        """Embed ``text`` and return its ``k`` nearest stored documents."""
        validate_k(k)
        started = time.perf_counter()

        vector = await self._embedder.embed(text)
        results = await self._store.query(vector, k, filters)

        logger.info(
            "Retrieved %d document(s) in %.1f ms",
            len(results),
            (time.perf_counter() - started) * 1000.0,
        )
        return results
