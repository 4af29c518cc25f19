"""Per-chatbot chunking strategy selection and A/B bucketing.

Priority:
1. No experiment config: global default (semantic when enabled, else smart).
2. A/B test enabled: split traffic between semantic (treatment) and smart
   (control). Documents are bucketed by an FNV-1a hash of their id, so a
   re-processed document always lands in the same group.
3. Fixed strategy; "auto" resolves to the global default.
"""
import logging
import random
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from docrag.schemas import (
    ChunkingStrategy,
    ExperimentConfig,
    ExperimentVariant,
    StrategyDecision,
    StrategyReason,
)

logger = logging.getLogger(__name__)

FNV_OFFSET_BASIS = 0x811C9DC5
FNV_PRIME = 0x01000193


def fnv1a_32(key: str) -> int:
    """32-bit FNV-1a over the UTF-16 code units of key (unsigned result)."""
    data = key.encode("utf-16-le")
    h = FNV_OFFSET_BASIS
    for i in range(0, len(data), 2):
        h ^= data[i] | (data[i + 1] << 8)
        h = (h * FNV_PRIME) & 0xFFFFFFFF
    return h


def bucket_for(key: str) -> int:
    """Map key to a bucket in [0, 100) from the signed 32-bit hash."""
    h = fnv1a_32(key)
    if h & 0x80000000:
        h -= 0x100000000
    return abs(h) % 100


def get_consistent_variant(document_id: str, semantic_traffic_percent: int) -> ExperimentVariant:
    """Deterministically assign a document to treatment or control.

    Example:
        >>> get_consistent_variant("doc-42", 100)
        <ExperimentVariant.TREATMENT: 'treatment'>
    """
    if bucket_for(document_id) < semantic_traffic_percent:
        return ExperimentVariant.TREATMENT
    return ExperimentVariant.CONTROL


def _global_default(semantic_enabled: bool) -> ChunkingStrategy:
    return ChunkingStrategy.SEMANTIC if semantic_enabled else ChunkingStrategy.SMART


def determine_chunking_strategy(
    chatbot_id: Optional[str],
    experiment_config: Any,
    document_id: Optional[str] = None,
    *,
    semantic_enabled: bool,
    rng: Optional[random.Random] = None,
) -> StrategyDecision:
    """Choose the chunker for one document.

    Args:
        chatbot_id: Chatbot owning the document (logged only).
        experiment_config: ExperimentConfig, raw mapping, or None.
        document_id: Document id used for consistent A/B bucketing.
        semantic_enabled: Global default switch for semantic chunking.
        rng: Random source for bucketing when no document id is given.

    Returns:
        StrategyDecision: Strategy (never auto), variant, and reason.
    """
    config = ExperimentConfig.from_raw(experiment_config)
    if config is None:
        return StrategyDecision(_global_default(semantic_enabled), None, StrategyReason.GLOBAL_SETTING)

    if config.ab_test_enabled:
        pct = config.semantic_traffic_percent
        if document_id:
            treatment = get_consistent_variant(document_id, pct) == ExperimentVariant.TREATMENT
        else:
            treatment = (rng or random).random() * 100 < pct
        decision = StrategyDecision(
            ChunkingStrategy.SEMANTIC if treatment else ChunkingStrategy.SMART,
            ExperimentVariant.TREATMENT if treatment else ExperimentVariant.CONTROL,
            StrategyReason.AB_TEST,
        )
        logger.debug(
            "A/B assignment chatbot=%s document=%s percent=%d variant=%s",
            chatbot_id, document_id, pct, decision.variant.value,
        )
        return decision

    if config.chunking_strategy == ChunkingStrategy.AUTO:
        return StrategyDecision(_global_default(semantic_enabled), None, StrategyReason.FIXED_STRATEGY)
    return StrategyDecision(config.chunking_strategy, None, StrategyReason.FIXED_STRATEGY)


def to_chunk_experiment_metadata(decision: StrategyDecision) -> Dict[str, Optional[str]]:
    return {
        "chunkingStrategy": decision.strategy.value,
        "experimentVariant": decision.variant.value if decision.variant else None,
        "strategyReason": decision.reason.value,
    }


def is_ab_test_active(experiment_config: Any) -> bool:
    config = ExperimentConfig.from_raw(experiment_config)
    return bool(config and config.ab_test_enabled)


def _as_utc(value: datetime) -> datetime:
    return value.replace(tzinfo=timezone.utc) if value.tzinfo is None else value


def is_within_experiment_period(experiment_config: Any, now: Optional[datetime] = None) -> bool:
    """True while an A/B test is enabled and now lies inside its optional window.

    Naive timestamps are treated as UTC.
    """
    config = ExperimentConfig.from_raw(experiment_config)
    if config is None or not config.ab_test_enabled:
        return False
    now = _as_utc(now or datetime.now(timezone.utc))
    if config.experiment_started_at and now < _as_utc(config.experiment_started_at):
        return False
    if config.experiment_ended_at and now > _as_utc(config.experiment_ended_at):
        return False
    return True
