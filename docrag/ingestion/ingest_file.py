"""Local file ingestor.

Reads a UTF-8 text or markdown file, chunks it with the configured strategy,
embeds the chunks with OpenAI embeddings, and stores Chunk rows in Postgres.
The job status is written to Redis.

Usage:
  python -m docrag.ingestion.ingest_file --path docs/faq.md --tenant-id acme
  python -m docrag.ingestion.ingest_file --path terms.txt --tenant-id acme --strategy late

Configuration:
- Database: docrag.config.settings.DATABASE_URL
- Status store: docrag.config.settings.REDIS_URL
- Embeddings / generation: docrag.config.settings.OPENAI_* and SEMANTIC_CHUNKING_*
"""
import argparse
import asyncio
import logging
import uuid
from pathlib import Path

from docrag.config import ChunkingConfig, settings
from docrag.db import init_db
from docrag.embedding import OpenAIEmbeddingService
from docrag.generation import OpenAIGenerationService
from docrag.ingestion.pipeline import DocumentJob, DocumentProcessor
from docrag.late_chunking import LateChunker
from docrag.schemas import ChunkingStrategy, ProcessingStatus
from docrag.semantic_chunker import SemanticChunker
from docrag.status import RedisStatusStore
from docrag.store import PgChunkStore
from docrag.usage import LoggingUsageTracker

logger = logging.getLogger(__name__)


def build_processor(use_status_store: bool = True) -> DocumentProcessor:
    """Wire the default OpenAI / Postgres / Redis collaborators."""
    tracker = LoggingUsageTracker()
    embedder = OpenAIEmbeddingService(usage_tracker=tracker)
    generator = OpenAIGenerationService(model=settings.SEMANTIC_CHUNKING_MODEL)
    return DocumentProcessor(
        chunk_store=PgChunkStore(),
        embedder=embedder,
        semantic_chunker=SemanticChunker(generator, usage_tracker=tracker),
        late_chunker=LateChunker(embedder),
        status_store=RedisStatusStore() if use_status_store else None,
    )


def ingest_file(
    path: str,
    tenant_id: str,
    document_id: str,
    dataset_id: str | None = None,
    strategy: str | None = None,
    use_status_store: bool = True,
) -> ProcessingStatus:
    """Chunk and store one local file.

    Args:
        path: File to read (UTF-8).
        tenant_id: Owning tenant.
        document_id: Document UUID; re-using it replaces the previous chunks.
        dataset_id: Optional dataset UUID.
        strategy: Optional fixed strategy (smart, semantic, late, auto).
        use_status_store: Write job status to Redis.

    Returns:
        ProcessingStatus: Result of the chunking run.
    """
    content = Path(path).read_text(encoding="utf-8")
    logger.info("Read %s (%d chars)", path, len(content))
    experiment = {"chunkingStrategy": strategy} if strategy else None
    job = DocumentJob(
        tenant_id=tenant_id,
        document_id=document_id,
        content=content,
        dataset_id=dataset_id,
        experiment_config=experiment,
    )
    processor = build_processor(use_status_store)
    return asyncio.run(processor.process(job, ChunkingConfig.from_settings()))


def main():
    parser = argparse.ArgumentParser(description="Chunk, embed and store a local text/markdown file.")
    parser.add_argument("--path", required=True, help="UTF-8 text or markdown file to ingest")
    parser.add_argument("--tenant-id", required=True, help="Tenant that owns the document")
    parser.add_argument("--document-id", default=None, help="Document UUID (default: random)")
    parser.add_argument("--dataset-id", default=None, help="Dataset UUID")
    parser.add_argument(
        "--strategy",
        default=None,
        choices=[s.value for s in ChunkingStrategy],
        help="Fixed chunking strategy (default: global setting)",
    )
    parser.add_argument("--no-status", action="store_true", help="Do not write job status to Redis")
    parser.add_argument(
        "--log-level",
        default=settings.LOG_LEVEL,
        choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
        help="Logging verbosity (default: LOG_LEVEL setting)",
    )
    args = parser.parse_args()

    logging.basicConfig(
        level=getattr(logging, args.log_level.upper(), logging.INFO),
        format="%(asctime)s | %(levelname)s | %(name)s | %(message)s",
    )
    document_id = args.document_id or str(uuid.uuid4())
    logger.info("Starting ingestion of %s as document %s", args.path, document_id)

    init_db()
    result = ingest_file(
        args.path,
        args.tenant_id,
        document_id,
        dataset_id=args.dataset_id,
        strategy=args.strategy,
        use_status_store=not args.no_status,
    )
    if not result.ok:
        logger.error("Ingestion failed for %s: %s", args.path, result.error)
        raise SystemExit(1)
    print(
        f"[INGEST-FILE] {args.path} -> {result.total_chunks} chunks "
        f"(strategy={result.strategy}, auto_approved={result.auto_approved}, pending={result.pending_review})"
    )


if __name__ == "__main__":
    main()
