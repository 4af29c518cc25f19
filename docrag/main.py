"""FastAPI application entrypoint and routes.

Exposes health, hybrid search, question answering and cache maintenance
endpoints, configures CORS, and initializes the database schema at startup.
The /ask endpoint orchestrates the response cache, hybrid retrieval, optional
reranking, generation, and the background cache write.
"""
import asyncio
import logging
import time
from functools import lru_cache
from typing import List

from fastapi import BackgroundTasks, Depends, FastAPI, HTTPException
from fastapi.middleware.cors import CORSMiddleware

from docrag.cache import ResponseCache
from docrag.config import settings
from docrag.db import init_db
from docrag.embedding import OpenAIEmbeddingService
from docrag.errors import CacheError, ExternalServiceError, RetrievalError
from docrag.generation import GenerationService, OpenAIGenerationService, generate_answer
from docrag.obs import Trace, span
from docrag.reranker import rerank_results
from docrag.retrieval import HybridRetriever
from docrag.schemas import (
    AskRequest,
    AskResponse,
    CacheMaintenanceResponse,
    Citation,
    SearchHit,
    SearchRequest,
    SearchResponse,
    SearchResult,
)
from docrag.store import PgCacheStore, PgChunkStore
from docrag.usage import LoggingUsageTracker, UsageTracker

logger = logging.getLogger(__name__)

app = FastAPI(title="DocRAG API", version="0.1.0")

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_methods=["*"],
    allow_credentials=True,
    allow_headers=["*"],
)


@lru_cache
def get_usage_tracker() -> UsageTracker:
    return LoggingUsageTracker()


@lru_cache
def get_embedder() -> OpenAIEmbeddingService:
    return OpenAIEmbeddingService(usage_tracker=get_usage_tracker())


@lru_cache
def get_generator() -> GenerationService:
    return OpenAIGenerationService()


@lru_cache
def get_retriever() -> HybridRetriever:
    return HybridRetriever(PgChunkStore(), get_embedder(), rrf_k=settings.RRF_K)


@lru_cache
def get_response_cache() -> ResponseCache:
    return ResponseCache(PgCacheStore(), get_embedder())


@app.on_event("startup")
def on_startup() -> None:
    """Configure logging and ensure DB schema and indexes exist."""
    logging.basicConfig(
        level=getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO),
        format="%(asctime)s | %(levelname)s | %(name)s | %(message)s",
    )
    init_db()


@app.get("/health")
def health():
    """Liveness probe endpoint.

    Returns:
        dict: {"status": "ok"} when the service is running.
    """
    return {"status": "ok"}


def _snippet(content: str, limit: int = 450) -> str:
    content = content.strip()
    return content if len(content) <= limit else content[:limit].rstrip() + "..."


@app.post("/search", response_model=SearchResponse)
async def search(req: SearchRequest, retriever: HybridRetriever = Depends(get_retriever)) -> SearchResponse:
    """Hybrid search over the tenant's approved chunks.

    Raises:
        HTTPException: 503 when neither the dense nor the sparse path is available.
    """
    t0 = time.time()
    try:
        if req.dataset_ids is not None:
            results = await retriever.hybrid_search_multi_dataset(req.tenant_id, req.dataset_ids, req.query, req.limit)
        else:
            results = await retriever.hybrid_search(req.tenant_id, req.query, req.limit)
    except RetrievalError as exc:
        raise HTTPException(status_code=503, detail=str(exc)) from exc
    hits = [
        SearchHit(
            chunk_id=r.chunk_id,
            document_id=r.document_id,
            dataset_id=r.dataset_id,
            content=r.content,
            score=r.score,
            dense_score=r.dense_score,
            source=r.source.value,
        )
        for r in results
    ]
    return SearchResponse(results=hits, latency_ms=int((time.time() - t0) * 1000))


async def _retrieve_for_answer(retriever: HybridRetriever, req: AskRequest) -> List[SearchResult]:
    fetch = settings.RERANKER_TOPN if settings.RERANKER_ENABLED else settings.TOP_K
    try:
        if req.dataset_ids is not None:
            return await retriever.hybrid_search_multi_dataset(req.tenant_id, req.dataset_ids, req.question, fetch)
        return await retriever.hybrid_search(req.tenant_id, req.question, fetch)
    except Exception:
        logger.exception("Retrieval failed for tenant=%s, answering without context", req.tenant_id)
        return []


@app.post("/ask", response_model=AskResponse)
async def ask(
    req: AskRequest,
    background_tasks: BackgroundTasks,
    retriever: HybridRetriever = Depends(get_retriever),
    cache: ResponseCache = Depends(get_response_cache),
    generator: GenerationService = Depends(get_generator),
    usage_tracker: UsageTracker = Depends(get_usage_tracker),
) -> AskResponse:
    """Answer a user question using retrieval-augmented generation.

    Workflow:
    - Check the response cache (exact normalized hash, then similar queries)
    - Hybrid retrieval (dense + keyword, RRF); failures degrade to no context
    - Optional cross-encoder reranking of the fused list
    - Generate a grounded answer
    - Schedule a cache write when retrieval found a confident dense match

    Args:
        req: AskRequest payload.

    Returns:
        AskResponse: Answer, citations, latency, and cache flag.
    """
    t0 = time.time()
    trace = Trace("ask", input={"tenant_id": req.tenant_id, "question": req.question})

    cached = await cache.find_cached_response(req.tenant_id, req.question)
    if cached.hit:
        latency_ms = int((time.time() - t0) * 1000)
        trace.event("cache_hit", {"cache_id": cached.cache_id, "similarity": cached.similarity})
        trace.end(output={"used_cache": True, "latency_ms": latency_ms})
        return AskResponse(
            answer=cached.response or "",
            citations=[],
            latency_ms=latency_ms,
            used_cache=True,
        )

    with span("retrieve", {"tenant_id": req.tenant_id, "reranker": settings.RERANKER_ENABLED}):
        results = await _retrieve_for_answer(retriever, req)
        if settings.RERANKER_ENABLED and results:
            results = await asyncio.to_thread(rerank_results, req.question, results, settings.TOP_K)
        else:
            results = results[: settings.TOP_K]
    trace.event("retrieval_result", {"num_results": len(results)})

    try:
        with span("generate", {"tenant_id": req.tenant_id}):
            answer = await generate_answer(
                generator,
                req.question,
                results,
                max_tokens=req.max_tokens,
                usage_tracker=usage_tracker,
                tenant_id=req.tenant_id,
            )
    except ExternalServiceError as exc:
        logger.exception("Generation failed for tenant=%s", req.tenant_id)
        trace.end(output={"error": str(exc)})
        raise HTTPException(status_code=502, detail="Answer generation is unavailable") from exc
    trace.generation("answer", prompt=req.question, output=answer.text, model=getattr(generator, "model", None))

    if cache.should_cache(results):
        background_tasks.add_task(cache.cache_response, req.tenant_id, req.question, answer.text)

    citations = [
        Citation(chunk_id=r.chunk_id, document_id=r.document_id, snippet=_snippet(r.content)) for r in results
    ]
    latency_ms = int((time.time() - t0) * 1000)
    trace.end(output={"used_cache": False, "latency_ms": latency_ms, "citations": len(citations)})
    return AskResponse(
        answer=answer.text,
        citations=citations,
        latency_ms=latency_ms,
        used_cache=False,
    )


@app.post("/cache/cleanup", response_model=CacheMaintenanceResponse)
async def cleanup_cache(cache: ResponseCache = Depends(get_response_cache)) -> CacheMaintenanceResponse:
    """Delete expired cache entries."""
    try:
        deleted = await cache.cleanup_expired()
    except CacheError as exc:
        raise HTTPException(status_code=503, detail=str(exc)) from exc
    return CacheMaintenanceResponse(deleted=deleted)


@app.delete("/cache/{tenant_id}", response_model=CacheMaintenanceResponse)
async def invalidate_cache(tenant_id: str, cache: ResponseCache = Depends(get_response_cache)) -> CacheMaintenanceResponse:
    """Delete all cache entries of a tenant, e.g. after its documents changed."""
    try:
        deleted = await cache.invalidate_tenant(tenant_id)
    except CacheError as exc:
        raise HTTPException(status_code=503, detail=str(exc)) from exc
    return CacheMaintenanceResponse(deleted=deleted)
