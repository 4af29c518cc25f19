"""Domain types and Pydantic request/response schemas.

Domain types shared by the pipeline:
- Enumerations: ChunkType, ChunkStatus, ChunkingStrategy, ExperimentVariant,
  StrategyReason, ResultSource.
- Segment: transient text span with offsets (never persisted).
- ChunkDraft: a chunk produced by any chunker, before persistence.
- LateChunkMetadata: pooling details attached by late chunking.
- SearchResult: one fused retrieval hit.
- ExperimentConfig / StrategyDecision: chunking-strategy selection input and output.
- GenerationUsage / GenerationResult / TokenUsageEvent: generation contract and usage events.
- CacheResult / ProcessingStatus: cache lookup and ingestion job outcomes.

API contracts used by the FastAPI endpoints:
- SearchRequest / SearchResponse
- AskRequest / Citation / AskResponse
- CacheMaintenanceResponse
"""
import logging
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, ValidationError, field_validator

logger = logging.getLogger(__name__)


class ChunkType(str, Enum):
    PARAGRAPH = "paragraph"
    QA = "qa"
    LIST = "list"
    TABLE = "table"
    HEADER = "header"
    CODE = "code"

    @classmethod
    def coerce(cls, value: Any) -> "ChunkType":
        """Map an arbitrary value to a ChunkType, defaulting to paragraph."""
        try:
            return cls(str(value).strip().lower())
        except ValueError:
            return cls.PARAGRAPH


class ChunkStatus(str, Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"


class ChunkingStrategy(str, Enum):
    SMART = "smart"
    SEMANTIC = "semantic"
    LATE = "late"
    AUTO = "auto"


class ExperimentVariant(str, Enum):
    TREATMENT = "treatment"
    CONTROL = "control"


class StrategyReason(str, Enum):
    GLOBAL_SETTING = "global_setting"
    AB_TEST = "ab_test"
    FIXED_STRATEGY = "fixed_strategy"


class ResultSource(str, Enum):
    DENSE = "dense"
    SPARSE = "sparse"
    HYBRID = "hybrid"


def clamp_score(score: float) -> int:
    """Clamp a quality score into the stored [0, 100] integer range."""
    return int(max(0, min(100, round(score))))


@dataclass
class Segment:
    """Text span of the source document; start/end are character offsets."""
    text: str
    start: int
    end: int

    def __len__(self) -> int:
        return len(self.text)


@dataclass
class LateChunkMetadata:
    pooling_strategy: str
    source_segment_count: int
    estimated_tokens: int
    document_similarity: Optional[float] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "poolingStrategy": self.pooling_strategy,
            "sourceSegmentCount": self.source_segment_count,
            "estimatedTokens": self.estimated_tokens,
            "documentSimilarity": self.document_similarity,
        }


@dataclass
class ChunkDraft:
    """A chunk produced by a chunker, not yet persisted.

    Attributes:
        content: Chunk text.
        type: Structural type of the chunk.
        topic: Short topic label; may be empty.
        index: Position of the chunk within the document.
        quality_score: Heuristic usefulness score clamped to [0, 100].
        start: Start offset into the source document.
        end: End offset into the source document.
        segment_index: Index of the coarse segment the chunk came from.
        embedding: Embedding vector when one is already attached.
        late_metadata: Pooling details when late chunking produced the embedding.
        metadata: Free-form extras (structure flags, language, experiment info).
    """
    content: str
    type: ChunkType = ChunkType.PARAGRAPH
    topic: str = ""
    index: int = 0
    quality_score: int = 0
    start: int = 0
    end: int = 0
    segment_index: int = 0
    embedding: Optional[List[float]] = None
    late_metadata: Optional[LateChunkMetadata] = None
    metadata: Dict[str, Any] = field(default_factory=dict)


@dataclass
class SearchResult:
    """A retrieval hit.

    score holds the fused RRF score after fusion (the raw path score before it);
    dense_score keeps the cosine similarity from the dense path when the chunk
    appeared there, and is used to gate cache writes.
    """
    chunk_id: str
    document_id: str
    content: str
    score: float
    source: ResultSource
    dataset_id: Optional[str] = None
    dense_score: Optional[float] = None
    metadata: Dict[str, Any] = field(default_factory=dict)


_STRATEGY_VALUES = {s.value for s in ChunkingStrategy}


class ExperimentConfig(BaseModel):
    """Per-chatbot chunking experiment settings.

    Malformed input is coerced to safe values rather than rejected: an unknown
    strategy becomes ``auto``, a missing traffic split becomes 50, and
    out-of-range percentages are clamped to [0, 100].
    """
    model_config = ConfigDict(populate_by_name=True, frozen=True)

    chunking_strategy: ChunkingStrategy = Field(
        default=ChunkingStrategy.AUTO,
        validation_alias=AliasChoices("chunking_strategy", "chunkingStrategy"),
    )
    ab_test_enabled: bool = Field(
        default=False, validation_alias=AliasChoices("ab_test_enabled", "abTestEnabled")
    )
    semantic_traffic_percent: int = Field(
        default=50,
        validation_alias=AliasChoices("semantic_traffic_percent", "semanticTrafficPercent"),
    )
    experiment_started_at: Optional[datetime] = Field(
        default=None,
        validation_alias=AliasChoices("experiment_started_at", "experimentStartedAt"),
    )
    experiment_ended_at: Optional[datetime] = Field(
        default=None,
        validation_alias=AliasChoices("experiment_ended_at", "experimentEndedAt"),
    )

    @field_validator("chunking_strategy", mode="before")
    @classmethod
    def _strategy(cls, v: Any) -> Any:
        if isinstance(v, ChunkingStrategy):
            return v
        v = str(v or "").strip().lower()
        return v if v in _STRATEGY_VALUES else ChunkingStrategy.AUTO

    @field_validator("ab_test_enabled", mode="before")
    @classmethod
    def _flag(cls, v: Any) -> bool:
        if isinstance(v, str):
            return v.strip().lower() in ("true", "1", "yes", "on")
        return bool(v)

    @field_validator("semantic_traffic_percent", mode="before")
    @classmethod
    def _percent(cls, v: Any) -> int:
        try:
            pct = int(float(v))
        except (TypeError, ValueError):
            return 50
        return max(0, min(100, pct))

    @field_validator("experiment_started_at", "experiment_ended_at", mode="before")
    @classmethod
    def _timestamp(cls, v: Any) -> Any:
        if v in (None, ""):
            return None
        if isinstance(v, datetime):
            return v
        try:
            return datetime.fromisoformat(str(v).replace("Z", "+00:00"))
        except ValueError:
            return None

    @classmethod
    def from_raw(cls, raw: Any) -> Optional["ExperimentConfig"]:
        """Coerce a stored configuration blob into an ExperimentConfig.

        Args:
            raw: None, an ExperimentConfig, or a mapping read from storage.

        Returns:
            Optional[ExperimentConfig]: None when no configuration exists; the
            default configuration when the blob cannot be validated.
        """
        if raw is None or isinstance(raw, ExperimentConfig):
            return raw
        if not isinstance(raw, dict):
            logger.warning("Ignoring experiment config of type %s", type(raw).__name__)
            return cls()
        try:
            return cls.model_validate(raw)
        except ValidationError as exc:
            logger.warning("Malformed experiment config, using defaults: %s", exc)
            return cls()


@dataclass(frozen=True)
class StrategyDecision:
    """Chosen chunker, A/B variant (None outside an A/B test) and the reason."""
    strategy: ChunkingStrategy
    variant: Optional[ExperimentVariant]
    reason: StrategyReason


@dataclass
class GenerationUsage:
    input_tokens: int = 0
    output_tokens: int = 0
    cache_creation_tokens: Optional[int] = None
    cache_read_tokens: Optional[int] = None


@dataclass
class GenerationResult:
    text: str
    usage: GenerationUsage = field(default_factory=GenerationUsage)


@dataclass
class TokenUsageEvent:
    tenant_id: str
    feature_type: str
    model_provider: str
    model_id: str
    input_tokens: int
    output_tokens: int
    metadata: Dict[str, Any] = field(default_factory=dict)


@dataclass
class CacheResult:
    hit: bool
    response: Optional[str] = None
    cache_id: Optional[str] = None
    similarity: Optional[float] = None


class ProcessingStatus(BaseModel):
    """Outcome of one document chunking run, as written to the status store."""
    document_id: str
    status: str  # processing | completed | failed
    strategy: Optional[str] = None
    variant: Optional[str] = None
    reason: Optional[str] = None
    total_chunks: int = 0
    auto_approved: int = 0
    pending_review: int = 0
    avg_quality_score: float = 0.0
    review_status: Optional[str] = None  # approved | reviewing
    error: Optional[str] = None
    updated_at: datetime = Field(default_factory=datetime.utcnow)

    @property
    def ok(self) -> bool:
        return self.status == "completed"


class SearchRequest(BaseModel):
    """Request body for the hybrid search endpoint."""
    tenant_id: str = Field(..., min_length=1)
    query: str = Field(..., min_length=1, description="Free-text query")
    dataset_ids: Optional[List[str]] = Field(
        default=None, description="Restrict the search to these datasets"
    )
    limit: int = Field(default=5, ge=1, le=50)


class SearchHit(BaseModel):
    chunk_id: str
    document_id: str
    dataset_id: Optional[str] = None
    content: str
    score: float
    dense_score: Optional[float] = None
    source: str


class SearchResponse(BaseModel):
    results: List[SearchHit]
    latency_ms: int


class AskRequest(BaseModel):
    """Request body for asking a question against a tenant's documents.

    Attributes:
        tenant_id: Tenant whose approved chunks are searched.
        question: The user question to answer.
        dataset_ids: Optional dataset restriction.
        max_tokens: Optional cap on the number of tokens for the generated answer.
    """
    tenant_id: str = Field(..., min_length=1)
    question: str = Field(..., min_length=1, description="User question")
    dataset_ids: Optional[List[str]] = None
    max_tokens: Optional[int] = Field(
        default=None,
        ge=64,
        le=8192,
        description="Desired maximum tokens for the answer (overrides server default)",
    )


class Citation(BaseModel):
    """A reference to a supporting chunk for an answer."""
    chunk_id: str
    document_id: str
    snippet: str


class AskResponse(BaseModel):
    """Response body returned by the question-answering endpoint.

    Attributes:
        answer: The generated answer text.
        citations: Chunks used as context for the answer.
        latency_ms: End-to-end latency for the request in milliseconds.
        used_cache: Whether the answer was served from the response cache.
    """
    answer: str
    citations: List[Citation]
    latency_ms: int
    used_cache: bool = False


class CacheMaintenanceResponse(BaseModel):
    deleted: int
