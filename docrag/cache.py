"""Semantic response cache.

Provides:
- normalize_query / hash_query: Stable cache key from a normalized query.
- ResponseCache: exact-hash lookup, then embedding-similarity lookup over the
  closest unexpired entries of the tenant; upsert writes with a TTL.

Lookup and write failures are logged and swallowed: caching never breaks the
answer path. Only answers whose retrieval produced a confident dense match
are written back.
"""
import hashlib
import logging
from datetime import datetime, timedelta
from typing import Callable, List, Optional, Sequence

from docrag.config import settings
from docrag.embedding import EmbeddingService, cosine_similarity
from docrag.errors import CacheError
from docrag.schemas import CacheResult, SearchResult
from docrag.store import CacheStore

logger = logging.getLogger(__name__)


def normalize_query(query: str) -> str:
    """Lowercase, trim, and collapse internal whitespace."""
    return " ".join(query.lower().split())


def hash_query(query: str) -> str:
    return hashlib.sha256(normalize_query(query).encode("utf-8")).hexdigest()


class ResponseCache:
    """Tenant-scoped answer cache.

    Args:
        store: Persistent cache store.
        embedder: Embedding service for query vectors.
        ttl: Lifetime of a written entry.
        similarity_threshold: Minimum cosine similarity for a similarity hit (inclusive).
        min_dense_similarity: Top dense similarity an answer needs to be cached (exclusive).
        candidates: Number of nearest entries compared on a similarity lookup.
        similarity: Similarity function used to compare query embeddings.
        clock: Returns the current naive UTC time.
    """

    def __init__(
        self,
        store: CacheStore,
        embedder: EmbeddingService,
        ttl: Optional[timedelta] = None,
        similarity_threshold: Optional[float] = None,
        min_dense_similarity: Optional[float] = None,
        candidates: Optional[int] = None,
        similarity: Callable[[Sequence[float], Sequence[float]], float] = cosine_similarity,
        clock: Callable[[], datetime] = datetime.utcnow,
    ):
        self.store = store
        self.embedder = embedder
        self.ttl = ttl or timedelta(hours=settings.CACHE_TTL_HOURS)
        self.similarity_threshold = (
            settings.CACHE_SIMILARITY_THRESHOLD if similarity_threshold is None else similarity_threshold
        )
        self.min_dense_similarity = (
            settings.CACHE_MIN_DENSE_SIMILARITY if min_dense_similarity is None else min_dense_similarity
        )
        self.candidates = candidates or settings.CACHE_CANDIDATES
        self.similarity = similarity
        self.clock = clock

    async def find_cached_response(self, tenant_id: str, query: str) -> CacheResult:
        """Look up a cached answer; any failure is reported as a miss.

        Returns:
            CacheResult: hit=True with the response on an exact or similar match.
        """
        try:
            return await self._lookup(tenant_id, query)
        except Exception as exc:
            logger.warning("Cache lookup failed for tenant=%s: %r", tenant_id, exc)
            return CacheResult(hit=False)

    async def _lookup(self, tenant_id: str, query: str) -> CacheResult:
        now = self.clock()
        exact = await self.store.find_exact(tenant_id, hash_query(query), now)
        if exact is not None:
            await self._record_hit(exact.id)
            logger.debug("Cache exact hit tenant=%s id=%s", tenant_id, exact.id)
            return CacheResult(hit=True, response=exact.response, cache_id=exact.id, similarity=1.0)

        embedding = await self.embedder.embed_text(query, tenant_id=tenant_id)
        for entry in await self.store.nearest(tenant_id, embedding, self.candidates, now):
            if not entry.query_embedding:
                continue
            score = self.similarity(embedding, entry.query_embedding)
            if score >= self.similarity_threshold:
                await self._record_hit(entry.id)
                logger.debug("Cache similarity hit tenant=%s id=%s similarity=%.4f", tenant_id, entry.id, score)
                return CacheResult(hit=True, response=entry.response, cache_id=entry.id, similarity=score)
        return CacheResult(hit=False)

    async def _record_hit(self, cache_id) -> None:
        try:
            await self.store.increment_hit(cache_id)
        except Exception as exc:
            logger.warning("Cache hit count not updated for id=%s: %r", cache_id, exc)

    async def cache_response(self, tenant_id: str, query: str, response: str) -> bool:
        """Write (or overwrite) the cached answer for query; failures are logged only.

        Returns:
            bool: True when the entry was written.
        """
        try:
            embedding = await self.embedder.embed_text(query, tenant_id=tenant_id)
            await self.store.upsert(tenant_id, hash_query(query), embedding, response, self.clock() + self.ttl)
        except Exception as exc:
            logger.warning("Cache write failed for tenant=%s: %r", tenant_id, exc)
            return False
        return True

    def should_cache(self, results: List[SearchResult]) -> bool:
        """True when the best dense similarity among results exceeds the threshold."""
        top = max((r.dense_score for r in results if r.dense_score is not None), default=None)
        return top is not None and top > self.min_dense_similarity

    async def cleanup_expired(self) -> int:
        """Delete expired entries across tenants.

        Raises:
            CacheError: If the store fails.
        """
        try:
            deleted = await self.store.delete_expired(self.clock())
        except Exception as exc:
            raise CacheError(f"cleanup failed: {exc!r}") from exc
        logger.info("Deleted %d expired cache entries", deleted)
        return deleted

    async def invalidate_tenant(self, tenant_id: str) -> int:
        """Delete every cache entry of a tenant.

        Raises:
            CacheError: If the store fails.
        """
        try:
            deleted = await self.store.delete_tenant(tenant_id)
        except Exception as exc:
            raise CacheError(f"invalidation failed for tenant {tenant_id}: {exc!r}") from exc
        logger.info("Invalidated %d cache entries for tenant=%s", deleted, tenant_id)
        return deleted
