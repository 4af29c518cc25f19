"""Cross-encoder reranking of fused search results.

Provides:
- _load_model: Lazy-load a sentence-transformers CrossEncoder for reranking.
- score_pairs: Score (query, passage) pairs; higher scores indicate stronger relevance.
- rerank_results: Reorder the head of a result list by cross-encoder score.

The model name, enablement and head size are configured via docrag.config.settings.
"""
import logging
from typing import List, Optional, Tuple

from docrag.config import settings
from docrag.schemas import SearchResult

logger = logging.getLogger(__name__)

_model = None  # lazy-loaded to avoid cold start cost


def _load_model():
    """Load and cache the cross-encoder reranker model.

    Returns:
        Any: A sentence-transformers CrossEncoder instance.
    """
    global _model
    if _model is not None:
        return _model
    from sentence_transformers.cross_encoder import CrossEncoder

    _model = CrossEncoder(settings.RERANKER_MODEL_NAME, trust_remote_code=True)
    return _model


def score_pairs(query: str, passages: List[str]) -> List[float]:
    """Score (query, passage) pairs for relevance using a cross-encoder.

    Args:
        query: The user query to compare against passages.
        passages: List of passages to score.

    Returns:
        List[float]: Relevance scores aligned with the input passages; higher is better.
    """
    if not passages:
        return []
    model = _load_model()
    pairs: List[Tuple[str, str]] = [(query, p) for p in passages]
    return model.predict(pairs, convert_to_numpy=True).tolist()


def rerank_results(
    query: str,
    results: List[SearchResult],
    top_k: int,
    top_n: Optional[int] = None,
) -> List[SearchResult]:
    """Rerank the first top_n results with the cross-encoder and keep top_k.

    Fused scores and dense similarities are left untouched; only the order
    changes. If the model cannot be loaded or scoring fails, the fused order
    is kept.
    """
    if not results:
        return []
    n = min(top_n or settings.RERANKER_TOPN, len(results))
    head, tail = results[:n], results[n:]
    try:
        scores = score_pairs(query, [r.content for r in head])
    except Exception:
        logger.warning("Reranker unavailable, keeping fused order", exc_info=True)
        return results[:top_k]
    order = sorted(range(len(head)), key=lambda i: scores[i], reverse=True)
    return ([head[i] for i in order] + tail)[:top_k]
