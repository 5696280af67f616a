import argparse
import asyncio
import os
import sys
from pathlib import Path

# Ensure src is in pythonpath
sys.path.append(os.path.join(os.path.dirname(__file__), "..", "src"))

from dotenv import load_dotenv
load_dotenv()

from ragstream.config import settings
from ragstream.db.session import init_models
from ragstream.embeddings.cache import EmbeddingCache
from ragstream.embeddings.embedder import create_embedding_client
from ragstream.embeddings.ingestion import IngestionService
from ragstream.embeddings.models import IngestionDocument, IngestionRequest
from ragstream.embeddings.store import create_vector_store

SKIP_DIRS = {".git", "node_modules", "__pycache__", ".venv", "venv", "dist", "build"}
MAX_FILE_BYTES = 1024 * 1024


def collect_documents(root: Path, repo_url: str):
    documents = []
    for path in sorted(root.rglob("*")):
        if not path.is_file() or any(part in SKIP_DIRS for part in path.relative_to(root).parts):
            continue
        if path.stat().st_size > MAX_FILE_BYTES:
            continue
        try:
            text = path.read_text(encoding="utf-8")
        except (UnicodeDecodeError, OSError):
            # Binary or unreadable file
            continue
        if not text.strip():
            continue

        documents.append(IngestionDocument(
            repo_url=repo_url,
            file_path=path.relative_to(root).as_posix(),
            text=text,
        ))
    return documents


async def main():
    parser = argparse.ArgumentParser(description="Ingest a local repository checkout.")
    parser.add_argument("root", help="Repository checkout to walk")
    parser.add_argument("--repo-url", required=True, help="Repository URL stored with each document")
    parser.add_argument("--batch", type=int, default=50, help="Documents per ingestion request")
    args = parser.parse_args()

    print("Initializing clients...")
    cache = EmbeddingCache(settings.cache_ttl_seconds, settings.cache_max_entries)
    embedder = create_embedding_client(settings, cache=cache)
    if settings.vector_store_backend == "pgvector":
        await init_models(settings.database_url)

    store = create_vector_store(settings)
    service = IngestionService(
        embedder,
        store,
        max_chunk_chars=settings.ingest_max_chunk_chars,
        chunk_overlap=settings.ingest_chunk_overlap,
        max_concurrency=4,
    )

    documents = collect_documents(Path(args.root), args.repo_url)
    print(f"Found {len(documents)} text files.")
    if not documents:
        print("No documents to ingest.")
        return

    succeeded = failed = chunks = 0
    for i in range(0, len(documents), args.batch):
        batch = documents[i:i + args.batch]
        print(f"Ingesting documents {i}-{i + len(batch)}...")
        result = await service.ingest(IngestionRequest(documents=batch))

        succeeded += result.success_count
        failed += result.failure_count
        chunks += result.total_chunks
        for outcome in result.outcomes:
            if not outcome.success:
                print(f"  FAILED {outcome.document_identifier} [{outcome.stage.value}]: {outcome.error}")

    print("Saving vector store...")
    await store.close()
    print(f"Done! {succeeded} ingested ({chunks} chunks), {failed} failed.")


if __name__ == "__main__":
    asyncio.run(main())
