"""Persistent chunk and response-cache stores.

Provides:
- ChunkStore / CacheStore: async protocols used by retrieval, caching and ingestion.
- CachedEntry: a response-cache row as seen by the cache layer.
- PgChunkStore: PostgreSQL + pgvector implementation of ChunkStore.
- PgCacheStore: PostgreSQL + pgvector implementation of CacheStore.

The Pg stores run synchronous SQLAlchemy work in worker threads
(asyncio.to_thread) with one session per call. Retrieval only ever sees
approved, active chunks of the requesting tenant.
"""
import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Protocol, Sequence

from sqlalchemy import delete, select, text, update
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.orm import Session

from docrag.db import SessionLocal, session_scope
from docrag.models import Chunk, ResponseCacheEntry
from docrag.schemas import ChunkDraft, ChunkStatus, ResultSource, SearchResult

logger = logging.getLogger(__name__)


@dataclass
class CachedEntry:
    id: str
    response: str
    query_embedding: Optional[List[float]] = None


class ChunkStore(Protocol):
    async def dense_search(
        self, tenant_id: str, embedding: List[float], limit: int, dataset_ids: Optional[Sequence[str]] = None
    ) -> List[SearchResult]: ...

    async def keyword_candidates(
        self, tenant_id: str, query: str, terms: List[str], limit: int, dataset_ids: Optional[Sequence[str]] = None
    ) -> List[SearchResult]: ...

    async def get_chunks_by_document(self, tenant_id: str, document_id: str) -> List[SearchResult]: ...

    async def sample_chunks(self, tenant_id: str, dataset_ids: Sequence[str], limit: int) -> List[SearchResult]: ...

    async def replace_document_chunks(
        self,
        tenant_id: str,
        document_id: str,
        dataset_id: Optional[str],
        drafts: Sequence[ChunkDraft],
        statuses: Sequence[ChunkStatus],
    ) -> int: ...


class CacheStore(Protocol):
    async def find_exact(self, tenant_id: str, query_hash: str, now: datetime) -> Optional[CachedEntry]: ...

    async def nearest(
        self, tenant_id: str, embedding: List[float], limit: int, now: datetime
    ) -> List[CachedEntry]: ...

    async def increment_hit(self, cache_id: str) -> None: ...

    async def upsert(
        self, tenant_id: str, query_hash: str, embedding: List[float], response: str, expires_at: datetime
    ) -> None: ...

    async def delete_expired(self, now: datetime) -> int: ...

    async def delete_tenant(self, tenant_id: str) -> int: ...


def _vector_literal(vec: Sequence[float]) -> str:
    return "[" + ",".join(f"{float(x):.6f}" for x in vec) + "]"


def _like(term: str) -> str:
    escaped = term.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")
    return f"%{escaped}%"


def _scope_filter(params: Dict[str, Any], dataset_ids: Optional[Sequence[str]]) -> str:
    where = "tenant_id = :tenant_id AND status = 'approved' AND is_active = true"
    if dataset_ids is not None:
        where += " AND dataset_id = ANY(CAST(:dataset_ids AS uuid[]))"
        params["dataset_ids"] = list(dataset_ids)
    return where


def _row_to_result(r, source: ResultSource, score: float) -> SearchResult:
    metadata = dict(r["metadata"] or {})
    metadata.setdefault("topic", r["topic"])
    metadata.setdefault("chunkType", r["chunk_type"])
    return SearchResult(
        chunk_id=str(r["id"]),
        document_id=str(r["document_id"]),
        dataset_id=str(r["dataset_id"]) if r["dataset_id"] else None,
        content=r["content"],
        score=score,
        source=source,
        dense_score=score if source == ResultSource.DENSE else None,
        metadata=metadata,
    )


_CHUNK_COLUMNS = "id, document_id, dataset_id, content, topic, chunk_type, metadata"


class PgChunkStore:
    """ChunkStore over the chunks table.

    Args:
        session_factory: Callable returning a new SQLAlchemy Session.
    """

    def __init__(self, session_factory: Callable[[], Session] = SessionLocal):
        self.session_factory = session_factory

    async def dense_search(self, tenant_id, embedding, limit, dataset_ids=None):
        return await asyncio.to_thread(self._dense_search, tenant_id, embedding, limit, dataset_ids)

    def _dense_search(self, tenant_id, embedding, limit, dataset_ids) -> List[SearchResult]:
        params: Dict[str, Any] = {"tenant_id": tenant_id, "qvec": _vector_literal(embedding), "limit": limit}
        where = _scope_filter(params, dataset_ids)
        sql = text(
            f"""
            SELECT {_CHUNK_COLUMNS},
                (embedding <=> CAST(:qvec AS vector)) AS distance
            FROM chunks
            WHERE {where}
            ORDER BY embedding <=> CAST(:qvec AS vector)
            LIMIT :limit
            """
        )
        with self.session_factory() as db:
            rows = db.execute(sql, params).mappings().all()
        # similarity = 1 - cosine distance
        return [_row_to_result(r, ResultSource.DENSE, 1.0 - float(r["distance"])) for r in rows]

    async def keyword_candidates(self, tenant_id, query, terms, limit, dataset_ids=None):
        return await asyncio.to_thread(self._keyword_candidates, tenant_id, query, terms, limit, dataset_ids)

    def _keyword_candidates(self, tenant_id, query, terms, limit, dataset_ids) -> List[SearchResult]:
        params: Dict[str, Any] = {"tenant_id": tenant_id, "limit": limit, "q": _like(query.strip())}
        conds = ["content ILIKE :q"]
        for i, term in enumerate(terms):
            key = f"t{i}"
            conds.append(f"content ILIKE :{key}")
            params[key] = _like(term)
        where = _scope_filter(params, dataset_ids)
        sql = text(
            f"""
            SELECT {_CHUNK_COLUMNS}
            FROM chunks
            WHERE {where} AND ({" OR ".join(conds)})
            ORDER BY (content ILIKE :q) DESC, created_at DESC
            LIMIT :limit
            """
        )
        with self.session_factory() as db:
            rows = db.execute(sql, params).mappings().all()
        return [_row_to_result(r, ResultSource.SPARSE, 0.0) for r in rows]

    async def get_chunks_by_document(self, tenant_id, document_id):
        return await asyncio.to_thread(self._get_chunks_by_document, tenant_id, document_id)

    def _get_chunks_by_document(self, tenant_id, document_id) -> List[SearchResult]:
        sql = text(
            f"""
            SELECT {_CHUNK_COLUMNS}
            FROM chunks
            WHERE tenant_id = :tenant_id AND document_id = :document_id AND is_active = true
            ORDER BY chunk_index
            """
        )
        with self.session_factory() as db:
            rows = db.execute(sql, {"tenant_id": tenant_id, "document_id": document_id}).mappings().all()
        return [_row_to_result(r, ResultSource.SPARSE, 0.0) for r in rows]

    async def sample_chunks(self, tenant_id, dataset_ids, limit):
        return await asyncio.to_thread(self._sample_chunks, tenant_id, dataset_ids, limit)

    def _sample_chunks(self, tenant_id, dataset_ids, limit) -> List[SearchResult]:
        params: Dict[str, Any] = {"tenant_id": tenant_id, "limit": limit}
        where = _scope_filter(params, dataset_ids)
        sql = text(f"SELECT {_CHUNK_COLUMNS} FROM chunks WHERE {where} ORDER BY RANDOM() LIMIT :limit")
        with self.session_factory() as db:
            rows = db.execute(sql, params).mappings().all()
        return [_row_to_result(r, ResultSource.SPARSE, 0.0) for r in rows]

    async def replace_document_chunks(self, tenant_id, document_id, dataset_id, drafts, statuses):
        return await asyncio.to_thread(
            self._replace_document_chunks, tenant_id, document_id, dataset_id, drafts, statuses
        )

    def _replace_document_chunks(self, tenant_id, document_id, dataset_id, drafts, statuses) -> int:
        """Delete the document's previous chunks and insert the new run in one transaction."""
        if len(drafts) != len(statuses):
            raise ValueError("drafts and statuses must have the same length")
        with session_scope(self.session_factory) as db:
            previous = db.execute(
                text("SELECT COALESCE(MAX(version), 0) FROM chunks WHERE document_id = :document_id"),
                {"document_id": document_id},
            ).scalar_one()
            db.execute(delete(Chunk).where(Chunk.document_id == document_id))
            for draft, status in zip(drafts, statuses):
                if draft.embedding is None:
                    raise ValueError(f"chunk {draft.index} of document {document_id} has no embedding")
                metadata = dict(draft.metadata)
                if draft.late_metadata is not None:
                    metadata["lateChunking"] = draft.late_metadata.to_dict()
                db.add(
                    Chunk(
                        tenant_id=tenant_id,
                        dataset_id=dataset_id,
                        document_id=document_id,
                        chunk_index=draft.index,
                        content=draft.content,
                        chunk_type=draft.type.value,
                        topic=draft.topic,
                        quality_score=draft.quality_score,
                        start_offset=draft.start,
                        end_offset=draft.end,
                        status=status.value,
                        auto_approved=status == ChunkStatus.APPROVED,
                        version=previous + 1,
                        embedding=draft.embedding,
                        metadata_=metadata,
                    )
                )
        logger.info("Stored %d chunks for document %s (version %d)", len(drafts), document_id, previous + 1)
        return len(drafts)


class PgCacheStore:
    """CacheStore over the response_cache table."""

    def __init__(self, session_factory: Callable[[], Session] = SessionLocal):
        self.session_factory = session_factory

    async def find_exact(self, tenant_id, query_hash, now):
        return await asyncio.to_thread(self._find_exact, tenant_id, query_hash, now)

    def _find_exact(self, tenant_id, query_hash, now) -> Optional[CachedEntry]:
        stmt = select(ResponseCacheEntry.id, ResponseCacheEntry.response).where(
            ResponseCacheEntry.tenant_id == tenant_id,
            ResponseCacheEntry.query_hash == query_hash,
            ResponseCacheEntry.expires_at > now,
        )
        with self.session_factory() as db:
            row = db.execute(stmt).first()
        return CachedEntry(id=str(row.id), response=row.response) if row else None

    async def nearest(self, tenant_id, embedding, limit, now):
        return await asyncio.to_thread(self._nearest, tenant_id, embedding, limit, now)

    def _nearest(self, tenant_id, embedding, limit, now) -> List[CachedEntry]:
        stmt = (
            select(ResponseCacheEntry)
            .where(
                ResponseCacheEntry.tenant_id == tenant_id,
                ResponseCacheEntry.expires_at > now,
                ResponseCacheEntry.query_embedding.is_not(None),
            )
            .order_by(ResponseCacheEntry.query_embedding.cosine_distance(list(embedding)))
            .limit(limit)
        )
        with self.session_factory() as db:
            rows = db.execute(stmt).scalars().all()
            return [
                CachedEntry(
                    id=str(r.id),
                    response=r.response,
                    query_embedding=[float(x) for x in r.query_embedding],
                )
                for r in rows
            ]

    async def increment_hit(self, cache_id):
        await asyncio.to_thread(self._increment_hit, cache_id)

    def _increment_hit(self, cache_id) -> None:
        with session_scope(self.session_factory) as db:
            db.execute(
                update(ResponseCacheEntry)
                .where(ResponseCacheEntry.id == cache_id)
                .values(hit_count=ResponseCacheEntry.hit_count + 1)
            )

    async def upsert(self, tenant_id, query_hash, embedding, response, expires_at):
        await asyncio.to_thread(self._upsert, tenant_id, query_hash, embedding, response, expires_at)

    def _upsert(self, tenant_id, query_hash, embedding, response, expires_at) -> None:
        stmt = pg_insert(ResponseCacheEntry).values(
            tenant_id=tenant_id,
            query_hash=query_hash,
            query_embedding=list(embedding),
            response=response,
            hit_count=0,
            expires_at=expires_at,
        )
        stmt = stmt.on_conflict_do_update(
            constraint="uq_response_cache_tenant_hash",
            set_={
                "response": stmt.excluded.response,
                "query_embedding": stmt.excluded.query_embedding,
                "hit_count": 0,
                "expires_at": stmt.excluded.expires_at,
            },
        )
        with session_scope(self.session_factory) as db:
            db.execute(stmt)

    async def delete_expired(self, now):
        return await asyncio.to_thread(self._delete_expired, now)

    def _delete_expired(self, now) -> int:
        with session_scope(self.session_factory) as db:
            result = db.execute(delete(ResponseCacheEntry).where(ResponseCacheEntry.expires_at <= now))
        return result.rowcount or 0

    async def delete_tenant(self, tenant_id):
        return await asyncio.to_thread(self._delete_tenant, tenant_id)

    def _delete_tenant(self, tenant_id) -> int:
        with session_scope(self.session_factory) as db:
            result = db.execute(delete(ResponseCacheEntry).where(ResponseCacheEntry.tenant_id == tenant_id))
        return result.rowcount or 0
