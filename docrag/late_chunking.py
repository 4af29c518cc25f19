"""Late chunking: embed first, pool second.

Chunk-then-embed loses document-level context. Here the whole document is
embedded in token-bounded segments first; each chunk's embedding is pooled
from the segments its character range overlaps. Each chunk's similarity to
the document embedding (mean of all segments) adjusts its quality score.

Provides:
- pool_embeddings / weighted_pool_embeddings: numpy pooling helpers.
- find_overlapping_segments: (segment index, overlap fraction) per chunk range.
- adjust_quality_with_embedding: similarity-based quality adjustment.
- LateChunker: late_chunk(content) and embed_chunks(chunks, content).
"""
import asyncio
import logging
from typing import List, Optional, Sequence, Tuple

import numpy as np

from docrag.config import ChunkingConfig, settings
from docrag.embedding import EmbeddingService, cosine_similarity
from docrag.errors import ExternalServiceError
from docrag.rule_chunker import rule_based_chunk
from docrag.schemas import ChunkDraft, LateChunkMetadata, Segment, clamp_score
from docrag.segmenter import estimate_token_count, split_by_token_limit

logger = logging.getLogger(__name__)

DIRECT_EMBEDDING = "direct"


def pool_embeddings(embeddings: Sequence[Sequence[float]], strategy: str = "mean") -> List[float]:
    """Mean or elementwise-max pool a non-empty list of equal-length vectors."""
    if len(embeddings) == 0:
        raise ValueError("No embeddings to pool")
    matrix = np.asarray(embeddings, dtype=np.float64)
    if strategy == "max":
        return matrix.max(axis=0).tolist()
    return matrix.mean(axis=0).tolist()


def weighted_pool_embeddings(embeddings: Sequence[Sequence[float]], weights: Sequence[float]) -> List[float]:
    """Weighted average with weights re-normalised to sum to 1.

    Falls back to the plain mean when every weight is zero.
    """
    if len(embeddings) == 0 or len(embeddings) != len(weights):
        raise ValueError("Invalid embeddings or weights")
    w = np.asarray(weights, dtype=np.float64)
    total = float(w.sum())
    if total <= 0.0:
        return pool_embeddings(embeddings, "mean")
    matrix = np.asarray(embeddings, dtype=np.float64)
    return ((w / total) @ matrix).tolist()


def find_overlapping_segments(start: int, end: int, segments: Sequence[Segment]) -> List[Tuple[int, float]]:
    """Return (segment index, overlap fraction of the chunk) for every overlapping segment."""
    length = end - start
    if length <= 0:
        return []
    found = []
    for i, seg in enumerate(segments):
        overlap = min(end, seg.end) - max(start, seg.start)
        if overlap > 0:
            found.append((i, overlap / length))
    return found


def adjust_quality_with_embedding(base_score: int, document_similarity: float) -> int:
    """Penalize chunks that drift from the document, reward strongly related ones."""
    if document_similarity < 0.5:
        adjustment = -15
    elif document_similarity < 0.7:
        adjustment = -5
    elif document_similarity > 0.9:
        adjustment = 5
    else:
        adjustment = 0
    return clamp_score(base_score + adjustment)


class LateChunker:
    """Attaches document-aware embeddings to chunks.

    Args:
        embedder: Embedding service for segments (and for direct fallbacks).
    """

    def __init__(self, embedder: EmbeddingService):
        self.embedder = embedder

    async def late_chunk(
        self,
        content: str,
        config: ChunkingConfig,
        tenant_id: Optional[str] = None,
    ) -> List[ChunkDraft]:
        """Chunk content with the rule-based chunker and embed it late.

        Returns:
            List[ChunkDraft]: Chunks carrying embeddings and late_metadata.
        """
        if not content.strip():
            return []
        chunks = rule_based_chunk(content)
        return await self.embed_chunks(chunks, content, config, tenant_id)

    async def embed_chunks(
        self,
        chunks: List[ChunkDraft],
        content: str,
        config: ChunkingConfig,
        tenant_id: Optional[str] = None,
    ) -> List[ChunkDraft]:
        """Attach pooled embeddings to already-produced chunks of content.

        Chunk offsets must point into content. When segment embedding fails,
        every chunk is embedded directly instead.

        Raises:
            ExternalServiceError: If direct embedding fails as well.
        """
        if not chunks:
            return []
        # the embedding call rejects inputs above the model ceiling
        limit = min(config.max_tokens_per_segment, settings.MAX_EMBEDDING_TOKENS)
        segments = split_by_token_limit(content, limit)
        logger.debug(
            "Late chunking: length=%d estimated_tokens=%d segments=%d strategy=%s",
            len(content), estimate_token_count(content), len(segments), config.pooling_strategy,
        )
        try:
            segment_embeddings = await asyncio.wait_for(
                self.embedder.embed_texts([s.text for s in segments], tenant_id=tenant_id),
                timeout=config.timeout_seconds,
            )
        except Exception as exc:
            logger.warning("Segment embedding failed, embedding %d chunks directly: %r", len(chunks), exc)
            return await self._embed_directly(chunks, config, tenant_id)

        document_embedding = pool_embeddings(segment_embeddings, "mean")

        for chunk in chunks:
            overlaps = find_overlapping_segments(chunk.start, chunk.end, segments)
            if not overlaps:
                embedding = await asyncio.wait_for(
                    self.embedder.embed_text(chunk.content, tenant_id=tenant_id),
                    timeout=config.timeout_seconds,
                )
            else:
                vectors = [segment_embeddings[i] for i, _ in overlaps]
                if config.pooling_strategy == "weighted":
                    weights = [fraction * chunk.quality_score / 100 for _, fraction in overlaps]
                    embedding = weighted_pool_embeddings(vectors, weights)
                else:
                    embedding = pool_embeddings(vectors, config.pooling_strategy)
            self._finish(chunk, list(embedding), document_embedding, config, config.pooling_strategy, len(overlaps))

        avg = sum(c.late_metadata.document_similarity or 0.0 for c in chunks) / len(chunks)
        logger.debug("Late chunking done: chunks=%d avg_document_similarity=%.3f", len(chunks), avg)
        return chunks

    async def _embed_directly(
        self, chunks: List[ChunkDraft], config: ChunkingConfig, tenant_id: Optional[str]
    ) -> List[ChunkDraft]:
        try:
            embeddings = await asyncio.wait_for(
                self.embedder.embed_texts([c.content for c in chunks], tenant_id=tenant_id),
                timeout=config.timeout_seconds,
            )
        except ExternalServiceError:
            raise
        except Exception as exc:
            raise ExternalServiceError("embedding", f"direct chunk embedding failed: {exc!r}") from exc
        document_embedding = pool_embeddings(embeddings, "mean")
        for chunk, embedding in zip(chunks, embeddings):
            self._finish(chunk, list(embedding), document_embedding, config, DIRECT_EMBEDDING, 0)
        return chunks

    @staticmethod
    def _finish(
        chunk: ChunkDraft,
        embedding: List[float],
        document_embedding: List[float],
        config: ChunkingConfig,
        strategy: str,
        segment_count: int,
    ) -> None:
        similarity = cosine_similarity(embedding, document_embedding)
        if config.validate_with_embedding:
            chunk.quality_score = adjust_quality_with_embedding(chunk.quality_score, similarity)
        chunk.embedding = embedding
        chunk.late_metadata = LateChunkMetadata(
            pooling_strategy=strategy,
            source_segment_count=segment_count,
            estimated_tokens=estimate_token_count(chunk.content),
            document_similarity=similarity,
        )
