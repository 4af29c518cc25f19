"""Application configuration and environment-driven settings.

Defines the Settings class based on pydantic-settings to centralize configuration for:
- API keys and model names
- Data stores (PostgreSQL, Redis) and status TTLs
- Chunking parameters (semantic chunking switch, sizes, batching, pooling)
- Retrieval knobs (top-k, RRF constant, optional reranker)
- Response cache thresholds
- Observability (Langfuse keys, OpenTelemetry console export)

ChunkingConfig is an immutable per-call snapshot of the chunking knobs. The
pipeline receives it explicitly instead of reading process-wide settings.
"""
import os
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field
from pydantic_settings import BaseSettings, SettingsConfigDict


PoolingStrategy = Literal["mean", "max", "weighted"]


class Settings(BaseSettings):
    """Strongly-typed application settings loaded from environment variables.

    Uses pydantic-settings to populate fields from a .env file or process env.
    See individual field names for semantics and safe defaults.
    """
    # Required
    OPENAI_API_KEY: str = Field(default="", description="OpenAI API key")

    # Models
    OPENAI_MODEL: str = "gpt-4o-mini"
    OPENAI_EMBEDDING_MODEL: str = "text-embedding-3-small"  # 1536 dims
    SEMANTIC_CHUNKING_MODEL: str = "gpt-4o-mini"

    # Data stores
    DATABASE_URL: str = "postgresql+psycopg2://rag_user:rag_pass@db:5432/rag_db"
    REDIS_URL: str = "redis://redis:6379/0"
    STATUS_TTL_SECONDS: int = 7 * 24 * 3600

    # Chunking
    SEMANTIC_CHUNKING_ENABLED: bool = True
    PRE_CHUNK_SIZE: int = 2000
    MIN_CHUNK_SIZE: int = 100
    MAX_CHUNK_SIZE: int = 600
    CHUNK_OVERLAP: int = 50
    SEMANTIC_BATCH_SIZE: int = 5
    SEMANTIC_BATCH_DELAY_MS: int = 100
    MAX_TOKENS_PER_SEGMENT: int = 8000  # provider ceiling is 8191
    EMBEDDING_TOKEN_ENCODING: str = "cl100k_base"  # tokenizer of text-embedding-3-*
    MAX_EMBEDDING_TOKENS: int = 8191
    POOLING_STRATEGY: PoolingStrategy = "weighted"
    AUTO_APPROVE_MIN_QUALITY: int = 85

    # Retrieval
    TOP_K: int = 5
    RRF_K: int = 60
    RERANKER_ENABLED: bool = False
    RERANKER_MODEL_NAME: str = "BAAI/bge-reranker-base"
    RERANKER_TOPN: int = 20

    # Response cache
    CACHE_TTL_HOURS: int = 24
    CACHE_SIMILARITY_THRESHOLD: float = 0.92
    CACHE_MIN_DENSE_SIMILARITY: float = 0.7
    CACHE_CANDIDATES: int = 5

    # Generation
    MAX_OUTPUT_TOKENS: int = 350
    EXTERNAL_CALL_TIMEOUT_SECONDS: float = 30.0

    # Observability (optional)
    LANGFUSE_HOST: str = ""
    LANGFUSE_PUBLIC_KEY: str = ""
    LANGFUSE_SECRET_KEY: str = ""
    OTEL_CONSOLE_EXPORT: bool = False

    LOG_LEVEL: str = "INFO"

    # Derived
    @property
    def EMBEDDING_DIM(self) -> int:
        """Embedding dimension for the configured embedding model.

        Returns:
            int: The vector dimension inferred from OPENAI_EMBEDDING_MODEL.
        """
        model = self.OPENAI_EMBEDDING_MODEL.lower()
        if "text-embedding-3-small" in model:
            return 1536
        if "text-embedding-3-large" in model:
            return 3072
        return 1536

    @property
    def semantic_chunking_available(self) -> bool:
        """Whether AI-assisted chunking can run (switch on and a key configured)."""
        return self.SEMANTIC_CHUNKING_ENABLED and bool(self.OPENAI_API_KEY)

    model_config = SettingsConfigDict(env_file=".env", case_sensitive=False)


class ChunkingConfig(BaseModel):
    """Per-call chunking configuration passed through the ingestion pipeline.

    Attributes:
        semantic_enabled: Route segments through the generation service when True;
            otherwise everything goes through rule-based chunking.
        pre_chunk_size: Coarse segment size (characters) fed to the AI splitter.
        min_chunk_size: Chunks shorter than this are merged into their predecessor.
        max_chunk_size: Upper size for rule-based chunks.
        overlap: Character overlap used by rule-based chunking when AI is disabled.
        batch_size: Segments dispatched concurrently per batch.
        batch_delay_ms: Sleep between batches (rate limiting only).
        max_tokens_per_segment: Token ceiling for late-chunking embedding segments.
        pooling_strategy: Late-chunking pooling method.
        model: Generation model used for semantic chunking.
        timeout_seconds: Timeout applied to each external call.
    """
    model_config = ConfigDict(frozen=True)

    semantic_enabled: bool = True
    pre_chunk_size: int = Field(default=2000, gt=0)
    min_chunk_size: int = Field(default=100, ge=0)
    max_chunk_size: int = Field(default=600, gt=0)
    overlap: int = Field(default=50, ge=0)
    batch_size: int = Field(default=5, gt=0)
    batch_delay_ms: int = Field(default=100, ge=0)
    max_tokens_per_segment: int = Field(default=8000, gt=0)
    pooling_strategy: PoolingStrategy = "weighted"
    validate_with_embedding: bool = True
    model: str = "gpt-4o-mini"
    timeout_seconds: float = Field(default=30.0, gt=0)

    @classmethod
    def from_settings(cls, s: "Settings | None" = None, **overrides) -> "ChunkingConfig":
        """Build a config snapshot from application settings.

        Args:
            s: Settings instance; defaults to the module-level settings.
            **overrides: Field values that take precedence over settings.

        Returns:
            ChunkingConfig: Frozen configuration for one chunking run.
        """
        s = s or settings
        values = dict(
            semantic_enabled=s.semantic_chunking_available,
            pre_chunk_size=s.PRE_CHUNK_SIZE,
            min_chunk_size=s.MIN_CHUNK_SIZE,
            max_chunk_size=s.MAX_CHUNK_SIZE,
            overlap=s.CHUNK_OVERLAP,
            batch_size=s.SEMANTIC_BATCH_SIZE,
            batch_delay_ms=s.SEMANTIC_BATCH_DELAY_MS,
            max_tokens_per_segment=s.MAX_TOKENS_PER_SEGMENT,
            pooling_strategy=s.POOLING_STRATEGY,
            model=s.SEMANTIC_CHUNKING_MODEL,
            timeout_seconds=s.EXTERNAL_CALL_TIMEOUT_SECONDS,
        )
        values.update(overrides)
        return cls(**values)


settings = Settings()

# Safety check for local dev (inside API container this must be set)
if os.environ.get("RUNNING_IN_DOCKER", "0") == "0":
    if not settings.OPENAI_API_KEY:
        # Avoid raising to allow local scaffolding before setting .env
        print("[WARN] OPENAI_API_KEY not set. Semantic chunking is disabled and embedding calls will fail.")
