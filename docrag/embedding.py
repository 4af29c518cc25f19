"""Embedding utilities wrapping OpenAI's embeddings API.

Provides:
- EmbeddingService: protocol the chunkers, retriever and cache depend on.
- get_client: Cached async OpenAI client using the configured API key.
- preprocess_text: Whitespace normalisation and token-ceiling cap before embedding.
- OpenAIEmbeddingService: Batched embedding calls with usage tracking.
- cosine_similarity: Cosine similarity of two vectors (numpy).

Models and dimensions are configured via docrag.config.settings.
"""
import logging
import re
from typing import List, Optional, Protocol, Sequence

import numpy as np
from openai import AsyncOpenAI

from docrag.config import settings
from docrag.errors import ExternalServiceError
from docrag.schemas import GenerationUsage
from docrag.tokenizer import truncate_to_tokens
from docrag.usage import UsageTracker, track_usage

logger = logging.getLogger(__name__)

EMBEDDING_BATCH_SIZE = 100

_client: AsyncOpenAI | None = None


class EmbeddingService(Protocol):
    async def embed_text(self, text: str, tenant_id: Optional[str] = None) -> List[float]: ...

    async def embed_texts(self, texts: List[str], tenant_id: Optional[str] = None) -> List[List[float]]: ...


def get_client() -> AsyncOpenAI:
    """Return a cached AsyncOpenAI client initialized with the configured API key.

    Returns:
        AsyncOpenAI: A singleton-like client instance reused across calls.
    """
    global _client
    if _client is None:
        _client = AsyncOpenAI(api_key=settings.OPENAI_API_KEY, timeout=settings.EXTERNAL_CALL_TIMEOUT_SECONDS)
    return _client


def preprocess_text(text: str, max_tokens: int | None = None) -> str:
    """Collapse whitespace and cap the text at the embedding model's token ceiling.

    Inputs already within max_tokens (settings.MAX_EMBEDDING_TOKENS by default)
    are never cut, so token-bounded segments reach the model whole.
    """
    text = re.sub(r"\s+", " ", text).strip()
    return truncate_to_tokens(text, max_tokens or settings.MAX_EMBEDDING_TOKENS)


class OpenAIEmbeddingService:
    """EmbeddingService backed by the OpenAI embeddings endpoint.

    Args:
        client: Optional AsyncOpenAI client; defaults to get_client().
        model: Embedding model name; defaults to settings.OPENAI_EMBEDDING_MODEL.
        usage_tracker: Optional tracker receiving one event per request.
    """

    def __init__(
        self,
        client: AsyncOpenAI | None = None,
        model: str | None = None,
        usage_tracker: Optional[UsageTracker] = None,
    ):
        self._client = client
        self.model = model or settings.OPENAI_EMBEDDING_MODEL
        self.usage_tracker = usage_tracker

    @property
    def client(self) -> AsyncOpenAI:
        return self._client or get_client()

    async def embed_texts(self, texts: List[str], tenant_id: Optional[str] = None) -> List[List[float]]:
        """Embed texts in batches of EMBEDDING_BATCH_SIZE.

        Args:
            texts: Input strings to embed.
            tenant_id: Tenant charged for the usage, when tracked.

        Returns:
            List[List[float]]: One embedding vector per input text, in input order.

        Raises:
            ExternalServiceError: When any batch request fails.
        """
        if not texts:
            return []
        vectors: List[List[float]] = []
        for i in range(0, len(texts), EMBEDDING_BATCH_SIZE):
            batch = [preprocess_text(t) or " " for t in texts[i:i + EMBEDDING_BATCH_SIZE]]
            try:
                resp = await self.client.embeddings.create(model=self.model, input=batch)
            except Exception as exc:
                raise ExternalServiceError("embedding", str(exc)) from exc
            vectors.extend(d.embedding for d in sorted(resp.data, key=lambda d: d.index))
            if resp.usage is not None:
                track_usage(
                    self.usage_tracker,
                    tenant_id,
                    "embedding",
                    self.model,
                    GenerationUsage(input_tokens=resp.usage.prompt_tokens, output_tokens=0),
                )
        logger.debug("Embedded %d texts with %s", len(texts), self.model)
        return vectors

    async def embed_text(self, text: str, tenant_id: Optional[str] = None) -> List[float]:
        vectors = await self.embed_texts([text], tenant_id=tenant_id)
        return vectors[0]


def cosine_similarity(a: Sequence[float], b: Sequence[float]) -> float:
    """Cosine similarity of two equal-length vectors; 0.0 when either has zero norm.

    Raises:
        ValueError: If the vectors differ in length.
    """
    va = np.asarray(a, dtype=np.float64)
    vb = np.asarray(b, dtype=np.float64)
    if va.shape != vb.shape:
        raise ValueError(f"Vector dimensions do not match: {va.shape} vs {vb.shape}")
    denom = float(np.linalg.norm(va) * np.linalg.norm(vb))
    if denom == 0.0:
        return 0.0
    return float(np.dot(va, vb) / denom)
