"""
HTTP API Tests

Routes run against an in-memory FAISS store, a mocked embedder and a fake
LLM, wired in through dependency overrides.
"""

import asyncio
import json
import time
from unittest.mock import AsyncMock

import pytest
from fastapi.testclient import TestClient

from ragstream.api.dependencies import (
    get_embedding_client,
    get_ingestion_service,
    get_llm_client,
    get_vector_store,
)
from ragstream.embeddings.embedder import EmbeddingClient
from ragstream.embeddings.index import FaissVectorStore
from ragstream.embeddings.ingestion import IngestionService
from ragstream.main import create_app
from ragstream.sessions.store import SessionManager

DIM = 1536
REPO = "https://github.com/o/r"


def fake_vector(text):
    v = [0.0] * DIM
    v[len(text) % DIM] = 1.0
    return v


class FakeLLM:
    def __init__(self, chunks):
        self.chunks = chunks

    async def stream(self, messages, temperature=0.2):
        for chunk in self.chunks:
            yield chunk


@pytest.fixture
def mock_embedder():
    mock = AsyncMock(spec=EmbeddingClient)

    async def embed_batch(texts, max_concurrency=None):
        return [fake_vector(t) for t in texts]

    async def embed(text):
        return fake_vector(text)

    mock.embed_batch.side_effect = embed_batch
    mock.embed.side_effect = embed
    return mock


@pytest.fixture
def vector_store():
    return FaissVectorStore(dimension=DIM)


@pytest.fixture
def llm():
    return FakeLLM([b"Hello", b" ", b"world"])


@pytest.fixture
def client(mock_embedder, vector_store, llm):
    app = create_app(session_manager=SessionManager(ttl_seconds=60))
    service = IngestionService(mock_embedder, vector_store, max_chunk_chars=200, chunk_overlap=20)

    app.dependency_overrides[get_embedding_client] = lambda: mock_embedder
    app.dependency_overrides[get_vector_store] = lambda: vector_store
    app.dependency_overrides[get_ingestion_service] = lambda: service
    app.dependency_overrides[get_llm_client] = lambda: llm

    with TestClient(app) as c:
        yield c

    app.dependency_overrides = {}


def ndjson(response):
    return [json.loads(line) for line in response.text.splitlines() if line]


# ---------------------------------------------------------------------
# Health / sessions
# ---------------------------------------------------------------------

def test_health(client):
    response = client.get("/health")
    assert response.status_code == 200
    assert response.json()["status"] == "ok"


def test_create_and_get_session(client):
    response = client.post("/sessions", json={"ownerId": "alice"})
    assert response.status_code == 201
    body = response.json()
    assert body["ownerId"] == "alice"
    assert body["status"] == "active"

    fetched = client.get(f"/sessions/{body['sessionId']}")
    assert fetched.status_code == 200
    assert fetched.json()["sessionId"] == body["sessionId"]


def test_create_session_without_body(client):
    response = client.post("/sessions")
    assert response.status_code == 201
    assert response.json()["ownerId"] is None


def test_unknown_session_is_404(client):
    response = client.get("/sessions/does-not-exist")
    assert response.status_code == 404
    assert response.json()["error"] == "session_not_found"


# ---------------------------------------------------------------------
# Documents / query
# ---------------------------------------------------------------------

def test_ingest_reports_per_document_outcomes(client):
    payload = {
        "documents": [
            {"repo_url": REPO, "file_path": "src/a.py", "text": "print(1)"},
            {"repo_url": REPO, "file_path": "src/b.py", "text": " "},
        ]
    }
    response = client.post("/documents/ingest", json=payload)

    assert response.status_code == 200
    body = response.json()
    assert body["success_count"] == 1
    assert body["failure_count"] == 1
    assert body["outcomes"][1]["stage"] == "validation"


def test_background_ingestion_job(client):
    response = client.post(
        "/documents/ingest/jobs",
        json={"documents": [{"repo_url": REPO, "file_path": "src/a.py", "text": "print(1)"}]},
    )

    assert response.status_code == 202
    job = response.json()
    assert job["status"] in ("queued", "running", "completed")
    assert job["document_count"] == 1

    for _ in range(100):
        job = client.get(f"/documents/ingest/jobs/{job['job_id']}").json()
        if job["status"] == "completed":
            break
        time.sleep(0.01)

    assert job["status"] == "completed"
    assert job["result"]["success_count"] == 1


def test_unknown_ingestion_job_is_404(client):
    response = client.get("/documents/ingest/jobs/nope")
    assert response.status_code == 404
    assert response.json()["error"] == "job_not_found"


def test_query_returns_ranked_results(client):
    client.post(
        "/documents/ingest",
        json={"documents": [{"repo_url": REPO, "file_path": "src/a.py", "text": "print(1)"}]},
    )

    response = client.post("/query", json={"text": "print(1)", "k": 3})

    assert response.status_code == 200
    results = response.json()
    assert len(results) == 1
    assert results[0]["file_path"] == "src/a.py"
    assert results[0]["score"] == pytest.approx(1.0, abs=1e-5)


def test_query_validation_errors_are_400(client):
    assert client.post("/query", json={"text": "x", "k": 0}).status_code == 400

    response = client.post("/query", json={"text": "x", "filters": {"owner": "me"}})
    assert response.status_code == 400
    assert response.json()["error"] == "invalid_argument"


def test_delete_document(client, vector_store):
    ingest = client.post(
        "/documents/ingest",
        json={"documents": [{"repo_url": REPO, "file_path": "a.py", "text": "x = 1"}]},
    )
    doc_id = ingest.json()["outcomes"][0]["document_id"]

    assert client.delete(f"/documents/{doc_id}").json() == {"deleted": True}
    assert client.delete(f"/documents/{doc_id}").json() == {"deleted": False}
    assert asyncio.run(vector_store.count()) == 0


def test_rebuild_index(client):
    client.post(
        "/documents/ingest",
        json={"documents": [{"repo_url": REPO, "file_path": "a.py", "text": "x = 1"}]},
    )
    response = client.post("/documents/rebuild-index")

    assert response.status_code == 200
    assert response.json() == {"status": "ok", "count": 1}


# ---------------------------------------------------------------------
# Generation
# ---------------------------------------------------------------------

def test_generation_stream_emits_deltas_then_done(client):
    session_id = client.post("/sessions").json()["sessionId"]

    response = client.post(
        "/generation/stream",
        json={"sessionId": session_id, "prompt": "say hello"},
    )

    assert response.status_code == 200
    assert response.headers["content-type"].startswith("application/x-ndjson")
    records = ndjson(response)
    prompt_id = response.headers["x-prompt-id"]

    assert [r["text"] for r in records[:-1]] == ["Hello", " ", "world"]
    assert [r["seq"] for r in records[:-1]] == [0, 1, 2]
    assert all(r["promptId"] == prompt_id for r in records)
    assert records[-1] == {"type": "done", "promptId": prompt_id, "seq": 3}


def test_generation_stream_error_event(client, llm):
    llm.chunks = [b"ok", b"\xf0\x9f"]
    session_id = client.post("/sessions").json()["sessionId"]

    response = client.post(
        "/generation/stream",
        json={"sessionId": session_id, "prompt": "q"},
    )

    assert response.status_code == 200
    records = ndjson(response)
    assert records[0]["text"] == "ok"
    assert records[-1]["type"] == "error"
    assert records[-1]["error"]["code"] == "stream_error"


def test_generation_unknown_session_is_404(client):
    response = client.post(
        "/generation/stream",
        json={"sessionId": "missing", "prompt": "q"},
    )
    assert response.status_code == 404


def test_generation_bad_top_k_is_400_before_streaming(client):
    session_id = client.post("/sessions").json()["sessionId"]
    response = client.post(
        "/generation/stream",
        json={"sessionId": session_id, "prompt": "q", "topK": 0},
    )

    assert response.status_code == 400
    assert response.json()["error"] == "invalid_argument"
    assert "x-prompt-id" not in response.headers


def test_generation_empty_prompt_is_400(client):
    session_id = client.post("/sessions").json()["sessionId"]
    response = client.post(
        "/generation/stream",
        json={"sessionId": session_id, "prompt": ""},
    )
    assert response.status_code == 400


def test_cancel_unknown_prompt(client):
    response = client.post("/generation/cancel", json={"promptId": "nope"})
    assert response.status_code == 200
    assert response.json() == {"cancelled": False}
