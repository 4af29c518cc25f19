"""Document chunking job.

DocumentProcessor.process runs one chunking pass for a document:
1. Decide the chunking strategy (experiment config / A/B bucket / global default).
2. Chunk with the rule-based, semantic, or late chunker.
3. Embed chunk contents (late chunking already attached embeddings).
4. Auto-approve chunks at or above the quality threshold, leave the rest pending.
5. Replace the document's previous chunks and report a ProcessingStatus.

Scheduling is the caller's choice (CLI, task queue, background task).
"""
import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, List, Optional

from docrag.config import ChunkingConfig, settings
from docrag.embedding import EmbeddingService
from docrag.errors import ExternalServiceError
from docrag.late_chunking import LateChunker
from docrag.rule_chunker import rule_based_chunk
from docrag.schemas import (
    ChunkDraft,
    ChunkingStrategy,
    ChunkStatus,
    ProcessingStatus,
    StrategyDecision,
)
from docrag.semantic_chunker import SemanticChunker
from docrag.status import StatusStore
from docrag.store import ChunkStore
from docrag.strategy import determine_chunking_strategy, to_chunk_experiment_metadata

logger = logging.getLogger(__name__)


@dataclass
class DocumentJob:
    """One document to (re-)chunk.

    Attributes:
        tenant_id: Owning tenant.
        document_id: Document id; also the A/B bucketing key.
        content: Extracted UTF-8 text of the document.
        dataset_id: Optional dataset the document belongs to.
        chatbot_id: Chatbot whose experiment config applies.
        experiment_config: ExperimentConfig or raw mapping; None uses the global default.
    """
    tenant_id: str
    document_id: str
    content: str
    dataset_id: Optional[str] = None
    chatbot_id: Optional[str] = None
    experiment_config: Any = field(default=None)


class DocumentProcessor:
    """Chunks, embeds and stores documents.

    Args:
        chunk_store: Destination for the produced chunks.
        embedder: Embedding service for chunk contents.
        semantic_chunker: AI-assisted chunker.
        late_chunker: Embed-first chunker.
        status_store: Optional job status sink.
        auto_approve_min_quality: Quality score at which chunks skip review.
    """

    def __init__(
        self,
        chunk_store: ChunkStore,
        embedder: EmbeddingService,
        semantic_chunker: SemanticChunker,
        late_chunker: LateChunker,
        status_store: Optional[StatusStore] = None,
        auto_approve_min_quality: Optional[int] = None,
    ):
        self.chunk_store = chunk_store
        self.embedder = embedder
        self.semantic_chunker = semantic_chunker
        self.late_chunker = late_chunker
        self.status_store = status_store
        self.auto_approve_min_quality = (
            settings.AUTO_APPROVE_MIN_QUALITY if auto_approve_min_quality is None else auto_approve_min_quality
        )

    async def process(self, job: DocumentJob, config: Optional[ChunkingConfig] = None) -> ProcessingStatus:
        """Run one chunking pass; failures are reported in the returned status.

        Args:
            job: The document to process.
            config: Chunking configuration; defaults to ChunkingConfig.from_settings().

        Returns:
            ProcessingStatus: completed with chunk statistics, or failed with an error.
        """
        config = config or ChunkingConfig.from_settings()
        decision = determine_chunking_strategy(
            job.chatbot_id, job.experiment_config, job.document_id, semantic_enabled=config.semantic_enabled
        )
        logger.info(
            "Processing document=%s tenant=%s strategy=%s reason=%s variant=%s",
            job.document_id, job.tenant_id, decision.strategy.value, decision.reason.value,
            decision.variant.value if decision.variant else None,
        )
        self._report(job, self._status(job, decision, "processing"))

        try:
            drafts = await self.chunk(job, decision, config)
            await self._embed_missing(drafts, job.tenant_id, config)
            experiment = to_chunk_experiment_metadata(decision)
            statuses: List[ChunkStatus] = []
            for draft in drafts:
                draft.metadata.update(experiment)
                approved = draft.quality_score >= self.auto_approve_min_quality
                statuses.append(ChunkStatus.APPROVED if approved else ChunkStatus.PENDING)
            stored = await self.chunk_store.replace_document_chunks(
                job.tenant_id, job.document_id, job.dataset_id, drafts, statuses
            )
        except Exception as exc:
            logger.exception("Chunking failed for document=%s", job.document_id)
            result = self._status(job, decision, "failed", error=str(exc) or repr(exc))
            self._report(job, result)
            return result

        approved = sum(1 for s in statuses if s == ChunkStatus.APPROVED)
        result = self._status(
            job,
            decision,
            "completed",
            total_chunks=stored,
            auto_approved=approved,
            pending_review=stored - approved,
            avg_quality_score=(sum(d.quality_score for d in drafts) / len(drafts)) if drafts else 0.0,
            review_status="reviewing" if approved < stored else "approved",
        )
        logger.info(
            "Processed document=%s chunks=%d auto_approved=%d avg_quality=%.1f",
            job.document_id, stored, approved, result.avg_quality_score,
        )
        self._report(job, result)
        return result

    async def chunk(self, job: DocumentJob, decision: StrategyDecision, config: ChunkingConfig) -> List[ChunkDraft]:
        """Produce chunks for the decided strategy."""
        match decision.strategy:
            case ChunkingStrategy.SMART:
                return rule_based_chunk(job.content)
            case ChunkingStrategy.SEMANTIC:
                return await self.semantic_chunker.chunk(job.content, config, tenant_id=job.tenant_id)
            case ChunkingStrategy.LATE:
                if config.semantic_enabled:
                    boundaries = await self.semantic_chunker.chunk(job.content, config, tenant_id=job.tenant_id)
                    return await self.late_chunker.embed_chunks(boundaries, job.content, config, job.tenant_id)
                return await self.late_chunker.late_chunk(job.content, config, tenant_id=job.tenant_id)
            case ChunkingStrategy.AUTO:
                raise ValueError("strategy selection never yields auto")

    async def _embed_missing(self, drafts: List[ChunkDraft], tenant_id: str, config: ChunkingConfig) -> None:
        pending = [d for d in drafts if d.embedding is None]
        if not pending:
            return
        vectors = await asyncio.wait_for(
            self.embedder.embed_texts([d.content for d in pending], tenant_id=tenant_id),
            timeout=config.timeout_seconds * max(1, len(pending) // 100 + 1),
        )
        if len(vectors) != len(pending):
            raise ExternalServiceError("embedding", f"expected {len(pending)} vectors, got {len(vectors)}")
        for draft, vector in zip(pending, vectors):
            draft.embedding = list(vector)

    @staticmethod
    def _status(job: DocumentJob, decision: StrategyDecision, status: str, **fields) -> ProcessingStatus:
        return ProcessingStatus(
            document_id=job.document_id,
            status=status,
            strategy=decision.strategy.value,
            variant=decision.variant.value if decision.variant else None,
            reason=decision.reason.value,
            **fields,
        )

    def _report(self, job: DocumentJob, status: ProcessingStatus) -> None:
        if self.status_store is None:
            return
        try:
            self.status_store.set_status(job.document_id, status)
        except Exception:
            logger.warning("Could not write status %s for document=%s", status.status, job.document_id, exc_info=True)
