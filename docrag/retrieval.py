"""Hybrid retrieval: dense vector search + keyword/BM25 search fused with RRF.

This module implements:
- Tokenization and keyword term extraction
- rank_sparse: BM25 ranking of keyword candidates
- reciprocal_rank_fusion: rank-based fusion of two ranked lists
- HybridRetriever: concurrent dense/sparse search with partial-failure handling

Both paths over-fetch 2 * limit candidates scoped to the tenant, optional
datasets, and approved active chunks. Dense similarity = 1 - cosine distance.
"""
import asyncio
import logging
import re
from dataclasses import replace
from typing import Dict, List, Optional, Sequence

from rank_bm25 import BM25Okapi

from docrag.config import settings
from docrag.embedding import EmbeddingService
from docrag.errors import ExternalServiceError, RetrievalError
from docrag.obs import span
from docrag.schemas import ResultSource, SearchResult
from docrag.store import ChunkStore

logger = logging.getLogger(__name__)

RRF_K = 60


def tokenize(s: str) -> List[str]:
    """Lowercase Unicode word tokenization used by BM25 and term extraction.

    Args:
        s: Input string.

    Returns:
        List[str]: Word tokens in lowercase (Hangul and CJK included).
    """
    return re.findall(r"\w+", s.lower())


def extract_terms(query: str, min_len: int = 2, max_terms: int = 6) -> List[str]:
    """Extract distinctive keyword terms for the SQL prefilter.

    Selects unique terms of at least min_len characters, preferring longer tokens.

    Args:
        query: The user query text.
        min_len: Minimum token length to consider.
        max_terms: Maximum number of terms to return.

    Returns:
        List[str]: Ordered list of distinctive terms (longer first).
    """
    toks = [t for t in tokenize(query) if len(t) >= min_len]
    seen = set()
    out: List[str] = []
    for t in sorted(toks, key=lambda x: (-len(x), x)):
        if t not in seen:
            seen.add(t)
            out.append(t)
        if len(out) >= max_terms:
            break
    return out


def rank_sparse(query: str, candidates: List[SearchResult]) -> List[SearchResult]:
    """Order keyword candidates: whole-query containment first, then BM25 score."""
    if not candidates:
        return []
    phrase = " ".join(query.lower().split())
    corpus = [tokenize(c.content) for c in candidates]
    query_tokens = tokenize(query)
    if query_tokens and any(corpus):
        bm25_scores = [float(s) for s in BM25Okapi(corpus).get_scores(query_tokens)]
    else:
        bm25_scores = [0.0] * len(candidates)

    scored = []
    for cand, bm25 in zip(candidates, bm25_scores):
        contains = bool(phrase) and phrase in " ".join(cand.content.lower().split())
        scored.append((contains, bm25, cand))
    scored.sort(key=lambda x: (x[0], x[1]), reverse=True)
    return [
        replace(cand, source=ResultSource.SPARSE, score=bm25 + (1.0 if contains else 0.0))
        for contains, bm25, cand in scored
    ]


def reciprocal_rank_fusion(
    dense: Sequence[SearchResult],
    sparse: Sequence[SearchResult],
    limit: int,
    k: int = RRF_K,
) -> List[SearchResult]:
    """Fuse two ranked lists with Reciprocal Rank Fusion.

    Each occurrence contributes 1 / (k + rank + 1) with 0-based ranks; ids in
    both lists sum their contributions. Equal scores keep dense-list order
    (dense results are inserted first and the sort is stable).

    Args:
        dense: Dense results, best first.
        sparse: Sparse results, best first.
        limit: Number of fused results to return.
        k: RRF constant.

    Returns:
        List[SearchResult]: Fused results with score = RRF score; dense_score
        keeps the dense similarity for ids seen by the dense path.
    """
    fused: Dict[str, SearchResult] = {}
    scores: Dict[str, float] = {}
    in_dense = set()

    for rank, r in enumerate(dense):
        if r.chunk_id in in_dense:
            continue
        in_dense.add(r.chunk_id)
        fused[r.chunk_id] = replace(r, source=ResultSource.DENSE, dense_score=r.score)
        scores[r.chunk_id] = 1.0 / (k + rank + 1)

    in_sparse = set()
    for rank, r in enumerate(sparse):
        if r.chunk_id in in_sparse:
            continue
        in_sparse.add(r.chunk_id)
        contribution = 1.0 / (k + rank + 1)
        if r.chunk_id in fused:
            fused[r.chunk_id] = replace(fused[r.chunk_id], source=ResultSource.HYBRID)
            scores[r.chunk_id] += contribution
        else:
            fused[r.chunk_id] = replace(r, source=ResultSource.SPARSE, dense_score=None)
            scores[r.chunk_id] = contribution

    ordered = sorted(fused, key=lambda cid: scores[cid], reverse=True)
    return [replace(fused[cid], score=scores[cid]) for cid in ordered[:limit]]


class HybridRetriever:
    """Tenant-scoped hybrid search over approved, active chunks.

    Args:
        store: Chunk store to query.
        embedder: Embedding service for query vectors.
        rrf_k: RRF constant.
        timeout_seconds: Timeout applied to each external call.
    """

    def __init__(
        self,
        store: ChunkStore,
        embedder: EmbeddingService,
        rrf_k: int = RRF_K,
        timeout_seconds: Optional[float] = None,
    ):
        self.store = store
        self.embedder = embedder
        self.rrf_k = rrf_k
        self.timeout_seconds = timeout_seconds or settings.EXTERNAL_CALL_TIMEOUT_SECONDS

    async def _call(self, awaitable):
        return await asyncio.wait_for(awaitable, timeout=self.timeout_seconds)

    async def dense_search(
        self, tenant_id: str, query: str, limit: int, dataset_ids: Optional[Sequence[str]] = None
    ) -> List[SearchResult]:
        embedding = await self._call(self.embedder.embed_text(query, tenant_id=tenant_id))
        return await self._call(self.store.dense_search(tenant_id, embedding, limit, dataset_ids))

    async def sparse_search(
        self, tenant_id: str, query: str, limit: int, dataset_ids: Optional[Sequence[str]] = None
    ) -> List[SearchResult]:
        candidates = await self._call(
            self.store.keyword_candidates(tenant_id, query, extract_terms(query), limit * 2, dataset_ids)
        )
        return rank_sparse(query, candidates)[:limit]

    async def hybrid_search(
        self,
        tenant_id: str,
        query: str,
        limit: int = 5,
        dataset_ids: Optional[Sequence[str]] = None,
    ) -> List[SearchResult]:
        """Run dense and sparse search concurrently and fuse them with RRF.

        One failing path degrades to the other; both failing raises.

        Args:
            tenant_id: Tenant whose chunks are searched.
            query: Free-text query.
            limit: Number of results to return.
            dataset_ids: Optional dataset restriction; an empty list matches nothing.

        Returns:
            List[SearchResult]: Fused results, best first.

        Raises:
            RetrievalError: When both the dense and the sparse path fail.
        """
        if not query.strip() or (dataset_ids is not None and len(dataset_ids) == 0):
            return []
        fetch = limit * 2
        with span("hybrid_search", {"tenant_id": tenant_id, "limit": limit}):
            dense, sparse = await asyncio.gather(
                self.dense_search(tenant_id, query, fetch, dataset_ids),
                self.sparse_search(tenant_id, query, fetch, dataset_ids),
                return_exceptions=True,
            )
        dense_failed = isinstance(dense, BaseException)
        sparse_failed = isinstance(sparse, BaseException)
        if dense_failed and sparse_failed:
            logger.error("Hybrid search failed for tenant=%s: dense=%r sparse=%r", tenant_id, dense, sparse)
            raise RetrievalError(f"dense search: {dense!r}; sparse search: {sparse!r}")
        if dense_failed:
            logger.warning("Dense search failed for tenant=%s, using sparse results only: %r", tenant_id, dense)
            dense = []
        if sparse_failed:
            logger.warning("Sparse search failed for tenant=%s, using dense results only: %r", tenant_id, sparse)
            sparse = []

        results = reciprocal_rank_fusion(dense, sparse, limit, self.rrf_k)
        logger.debug(
            "Hybrid search tenant=%s dense=%d sparse=%d fused=%d", tenant_id, len(dense), len(sparse), len(results)
        )
        return results

    async def hybrid_search_multi_dataset(
        self, tenant_id: str, dataset_ids: Sequence[str], query: str, limit: int = 5
    ) -> List[SearchResult]:
        """Hybrid search restricted to explicit datasets; no datasets means no results."""
        if not dataset_ids:
            logger.warning("Multi-dataset search without datasets for tenant=%s", tenant_id)
            return []
        return await self.hybrid_search(tenant_id, query, limit, dataset_ids=list(dataset_ids))

    async def vector_search(
        self, tenant_id: str, query: str, limit: int = 5, dataset_ids: Optional[Sequence[str]] = None
    ) -> List[SearchResult]:
        """Dense-only search, used when keyword search is not wanted."""
        if not query.strip():
            return []
        try:
            return await self.dense_search(tenant_id, query, limit, dataset_ids)
        except ExternalServiceError:
            raise
        except Exception as exc:
            raise ExternalServiceError("vector_search", repr(exc)) from exc

    async def get_chunks_by_document(self, tenant_id: str, document_id: str) -> List[SearchResult]:
        return await self._call(self.store.get_chunks_by_document(tenant_id, document_id))

    async def sample_chunks_by_datasets(
        self, tenant_id: str, dataset_ids: Sequence[str], limit: int = 10
    ) -> List[SearchResult]:
        """Random sample of approved chunks from the given datasets."""
        if not dataset_ids:
            return []
        return await self._call(self.store.sample_chunks(tenant_id, list(dataset_ids), limit))
