from datetime import datetime, timedelta

import pytest
from fastapi.testclient import TestClient

from docrag.cache import ResponseCache
from docrag.errors import ExternalServiceError
from docrag.main import app, get_generator, get_response_cache, get_retriever, get_usage_tracker
from docrag.retrieval import HybridRetriever
from conftest import (
    FakeEmbedder,
    FakeGenerator,
    InMemoryCacheStore,
    InMemoryChunkStore,
    RecordingUsageTracker,
    make_result,
)


class Wiring:
    def __init__(self):
        self.embedder = FakeEmbedder()
        self.chunk_store = InMemoryChunkStore(
            dense=[make_result("c1", "Refunds are issued within 7 days.", 0.9)],
            keyword=[make_result("c1", "Refunds are issued within 7 days.")],
        )
        self.cache_store = InMemoryCacheStore()
        self.generator = FakeGenerator(lambda system, user: "Refunds take up to 7 days.")
        self.tracker = RecordingUsageTracker()
        self.retriever = HybridRetriever(self.chunk_store, self.embedder, timeout_seconds=5)
        self.cache = ResponseCache(
            self.cache_store,
            self.embedder,
            ttl=timedelta(hours=24),
            similarity_threshold=0.92,
            min_dense_similarity=0.7,
            candidates=5,
            clock=datetime.utcnow,
        )


@pytest.fixture
def wiring():
    w = Wiring()
    app.dependency_overrides[get_retriever] = lambda: w.retriever
    app.dependency_overrides[get_response_cache] = lambda: w.cache
    app.dependency_overrides[get_generator] = lambda: w.generator
    app.dependency_overrides[get_usage_tracker] = lambda: w.tracker
    yield w
    app.dependency_overrides.clear()


@pytest.fixture
def client(wiring):
    return TestClient(app)


def test_health(client):
    assert client.get("/health").json() == {"status": "ok"}


def test_search_returns_fused_hits(client):
    resp = client.post("/search", json={"tenant_id": "acme", "query": "refunds", "limit": 3})
    assert resp.status_code == 200
    body = resp.json()
    assert body["results"][0]["chunk_id"] == "c1"
    assert body["results"][0]["source"] == "hybrid"
    assert body["results"][0]["dense_score"] == 0.9


def test_search_validates_input(client):
    assert client.post("/search", json={"tenant_id": "acme", "query": ""}).status_code == 422


def test_search_unavailable_when_both_paths_fail(client, wiring):
    wiring.chunk_store.keyword_error = RuntimeError("db down")
    wiring.embedder.fail = True
    resp = client.post("/search", json={"tenant_id": "acme", "query": "refunds"})
    assert resp.status_code == 503


def test_ask_answers_then_serves_from_cache(client, wiring):
    first = client.post("/ask", json={"tenant_id": "acme", "question": "How long do refunds take?"})
    assert first.status_code == 200
    body = first.json()
    assert body["answer"] == "Refunds take up to 7 days."
    assert body["used_cache"] is False
    assert body["citations"][0]["chunk_id"] == "c1"
    assert len(wiring.cache_store.entries) == 1
    assert wiring.tracker.events[0].feature_type == "chat"

    second = client.post("/ask", json={"tenant_id": "acme", "question": "how long do refunds take?"})
    assert second.json()["used_cache"] is True
    assert second.json()["answer"] == "Refunds take up to 7 days."
    assert len(wiring.generator.calls) == 1


def test_ask_without_confident_match_is_not_cached(client, wiring):
    wiring.chunk_store.dense = [make_result("c1", "Loosely related text.", 0.5)]
    resp = client.post("/ask", json={"tenant_id": "acme", "question": "Anything?"})
    assert resp.status_code == 200
    assert wiring.cache_store.entries == {}


def test_ask_survives_retrieval_failure(client, wiring):
    wiring.chunk_store.keyword_error = RuntimeError("db down")
    wiring.embedder.fail = True
    resp = client.post("/ask", json={"tenant_id": "acme", "question": "Anything?"})
    assert resp.status_code == 200
    assert resp.json()["citations"] == []
    assert "(no relevant passages were found)" in wiring.generator.calls[0]["user"]


def test_ask_reports_generation_failure(client, wiring):
    wiring.generator.respond = lambda system, user: ExternalServiceError("generation", "timeout")
    resp = client.post("/ask", json={"tenant_id": "acme", "question": "How long do refunds take?"})
    assert resp.status_code == 502


def test_ask_passes_max_tokens(client, wiring):
    client.post("/ask", json={"tenant_id": "acme", "question": "Refunds?", "max_tokens": 128})
    assert wiring.generator.calls[0]["max_output_tokens"] == 128


def test_cache_maintenance_endpoints(client, wiring):
    client.post("/ask", json={"tenant_id": "acme", "question": "How long do refunds take?"})
    assert client.post("/cache/cleanup").json() == {"deleted": 0}
    assert client.delete("/cache/acme").json() == {"deleted": 1}
    assert wiring.cache_store.entries == {}


def test_cache_maintenance_failure_is_503(client, wiring):
    wiring.cache_store.fail = True
    assert client.post("/cache/cleanup").status_code == 503
    assert client.delete("/cache/acme").status_code == 503


def test_ask_reranks_when_enabled(client, wiring, monkeypatch):
    from docrag import reranker
    from docrag.config import settings

    wiring.chunk_store.dense = [
        make_result("c1", "Shipping is free.", 0.9),
        make_result("c2", "Refunds are issued within 7 days.", 0.8),
    ]
    wiring.chunk_store.keyword = []
    monkeypatch.setattr(settings, "RERANKER_ENABLED", True)
    monkeypatch.setattr(settings, "TOP_K", 1)
    monkeypatch.setattr(
        reranker, "score_pairs", lambda query, passages: [1.0 if "Refunds" in p else 0.0 for p in passages]
    )

    resp = client.post("/ask", json={"tenant_id": "acme", "question": "How long do refunds take?"})
    assert resp.status_code == 200
    assert [c["chunk_id"] for c in resp.json()["citations"]] == ["c2"]
    assert wiring.chunk_store.dense_calls[0]["limit"] == settings.RERANKER_TOPN * 2
