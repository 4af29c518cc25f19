"""In-memory collaborators shared by the test modules."""
from dataclasses import replace
from datetime import datetime
from typing import Callable, Dict, List, Optional, Sequence

import pytest

from docrag.schemas import (
    ChunkDraft,
    ChunkStatus,
    GenerationResult,
    GenerationUsage,
    ProcessingStatus,
    ResultSource,
    SearchResult,
    TokenUsageEvent,
)
from docrag.store import CachedEntry


class FakeEmbedder:
    """Returns vector_for(text) for every input; fail=True raises on every call."""

    def __init__(self, vector_for: Optional[Callable[[str], List[float]]] = None, fail: bool = False):
        self.vector_for = vector_for or (lambda text: [1.0, 0.0, 0.0])
        self.fail = fail
        self.calls: List[List[str]] = []

    async def embed_text(self, text: str, tenant_id: Optional[str] = None) -> List[float]:
        return (await self.embed_texts([text], tenant_id=tenant_id))[0]

    async def embed_texts(self, texts: List[str], tenant_id: Optional[str] = None) -> List[List[float]]:
        self.calls.append(list(texts))
        if self.fail:
            raise RuntimeError("embedding backend down")
        return [list(self.vector_for(t)) for t in texts]


class FakeGenerator:
    """Answers with respond(system, user); an Exception instance is raised instead."""

    model = "fake-model"

    def __init__(self, respond=None, usage: Optional[GenerationUsage] = None):
        self.respond = respond or (lambda system, user: "ok")
        self.usage = usage or GenerationUsage(input_tokens=10, output_tokens=5)
        self.calls: List[Dict[str, object]] = []

    async def generate(self, system_prompt, user_prompt, *, temperature=0.0, max_output_tokens=1024):
        self.calls.append(
            {
                "system": system_prompt,
                "user": user_prompt,
                "temperature": temperature,
                "max_output_tokens": max_output_tokens,
            }
        )
        out = self.respond(system_prompt, user_prompt)
        if isinstance(out, Exception):
            raise out
        return GenerationResult(text=out, usage=self.usage)


class RecordingUsageTracker:
    def __init__(self):
        self.events: List[TokenUsageEvent] = []

    def track(self, event: TokenUsageEvent) -> None:
        self.events.append(event)


class InMemoryStatusStore:
    def __init__(self):
        self.history: List[ProcessingStatus] = []

    def set_status(self, document_id: str, status: ProcessingStatus) -> None:
        self.history.append(status)

    def get_status(self, document_id: str) -> Optional[ProcessingStatus]:
        for status in reversed(self.history):
            if status.document_id == document_id:
                return status
        return None


def make_result(chunk_id: str, content: str = "", score: float = 0.0, document_id: str = "doc-1") -> SearchResult:
    return SearchResult(
        chunk_id=chunk_id,
        document_id=document_id,
        content=content or f"content of {chunk_id}",
        score=score,
        source=ResultSource.DENSE,
    )


class InMemoryChunkStore:
    """ChunkStore with canned search results and recorded writes."""

    def __init__(
        self,
        dense: Optional[List[SearchResult]] = None,
        keyword: Optional[List[SearchResult]] = None,
        dense_error: Optional[Exception] = None,
        keyword_error: Optional[Exception] = None,
    ):
        self.dense = dense or []
        self.keyword = keyword or []
        self.dense_error = dense_error
        self.keyword_error = keyword_error
        self.documents: Dict[str, List[ChunkDraft]] = {}
        self.statuses: Dict[str, List[ChunkStatus]] = {}
        self.dense_calls: List[dict] = []
        self.keyword_calls: List[dict] = []

    async def dense_search(self, tenant_id, embedding, limit, dataset_ids=None):
        self.dense_calls.append({"tenant_id": tenant_id, "limit": limit, "dataset_ids": dataset_ids})
        if self.dense_error:
            raise self.dense_error
        return [replace(r) for r in self.dense[:limit]]

    async def keyword_candidates(self, tenant_id, query, terms, limit, dataset_ids=None):
        self.keyword_calls.append(
            {"tenant_id": tenant_id, "terms": terms, "limit": limit, "dataset_ids": dataset_ids}
        )
        if self.keyword_error:
            raise self.keyword_error
        return [replace(r, source=ResultSource.SPARSE) for r in self.keyword[:limit]]

    async def get_chunks_by_document(self, tenant_id, document_id):
        return [
            make_result(f"{document_id}-{d.index}", d.content, document_id=document_id)
            for d in self.documents.get(document_id, [])
        ]

    async def sample_chunks(self, tenant_id, dataset_ids, limit):
        return [replace(r) for r in self.dense[:limit]]

    async def replace_document_chunks(self, tenant_id, document_id, dataset_id, drafts, statuses):
        if any(d.embedding is None for d in drafts):
            raise ValueError("chunk without embedding")
        self.documents[document_id] = list(drafts)
        self.statuses[document_id] = list(statuses)
        return len(drafts)


class InMemoryCacheStore:
    """CacheStore keyed by (tenant, query hash); nearest returns entries in insertion order."""

    def __init__(self):
        self.entries: Dict[tuple, dict] = {}
        self.hits: Dict[str, int] = {}
        self.fail = False

    def _check(self):
        if self.fail:
            raise RuntimeError("cache store down")

    def _live(self, tenant_id: str, now: datetime):
        return [
            e for (tenant, _), e in self.entries.items() if tenant == tenant_id and e["expires_at"] > now
        ]

    async def find_exact(self, tenant_id, query_hash, now):
        self._check()
        e = self.entries.get((tenant_id, query_hash))
        if e is None or e["expires_at"] <= now:
            return None
        return CachedEntry(id=e["id"], response=e["response"], query_embedding=e["embedding"])

    async def nearest(self, tenant_id, embedding, limit, now):
        self._check()
        return [
            CachedEntry(id=e["id"], response=e["response"], query_embedding=e["embedding"])
            for e in self._live(tenant_id, now)[:limit]
        ]

    async def increment_hit(self, cache_id):
        self.hits[cache_id] = self.hits.get(cache_id, 0) + 1

    async def upsert(self, tenant_id, query_hash, embedding, response, expires_at):
        self._check()
        entry_id = f"{tenant_id}:{query_hash[:8]}"
        self.entries[(tenant_id, query_hash)] = {
            "id": entry_id,
            "embedding": list(embedding),
            "response": response,
            "expires_at": expires_at,
        }

    async def delete_expired(self, now):
        self._check()
        expired = [k for k, e in self.entries.items() if e["expires_at"] <= now]
        for k in expired:
            del self.entries[k]
        return len(expired)

    async def delete_tenant(self, tenant_id):
        self._check()
        keys = [k for k in self.entries if k[0] == tenant_id]
        for k in keys:
            del self.entries[k]
        return len(keys)


@pytest.fixture
def embedder() -> FakeEmbedder:
    return FakeEmbedder()


@pytest.fixture
def usage_tracker() -> RecordingUsageTracker:
    return RecordingUsageTracker()


@pytest.fixture
def status_store() -> InMemoryStatusStore:
    return InMemoryStatusStore()


def offsets_match(content: str, drafts: Sequence) -> bool:
    return all(content[d.start:d.end] == d.content for d in drafts)
