"""Token usage tracking.

Provides:
- UsageTracker: protocol for recording TokenUsageEvent values.
- LoggingUsageTracker: default tracker that writes events to the log.
- track_usage: fire-and-forget helper; tracker failures are logged, never raised.
"""
import logging
from typing import Optional, Protocol

from docrag.schemas import GenerationUsage, TokenUsageEvent

logger = logging.getLogger(__name__)


class UsageTracker(Protocol):
    def track(self, event: TokenUsageEvent) -> None: ...


class LoggingUsageTracker:
    """Records usage events as structured log lines."""

    def track(self, event: TokenUsageEvent) -> None:
        logger.info(
            "token_usage tenant=%s feature=%s provider=%s model=%s input=%d output=%d meta=%s",
            event.tenant_id,
            event.feature_type,
            event.model_provider,
            event.model_id,
            event.input_tokens,
            event.output_tokens,
            event.metadata,
        )


def track_usage(
    tracker: Optional[UsageTracker],
    tenant_id: Optional[str],
    feature_type: str,
    model_id: str,
    usage: GenerationUsage,
    model_provider: str = "openai",
) -> None:
    """Send one usage event; skipped without a tracker or tenant."""
    if tracker is None or not tenant_id:
        return
    event = TokenUsageEvent(
        tenant_id=tenant_id,
        feature_type=feature_type,
        model_provider=model_provider,
        model_id=model_id,
        input_tokens=usage.input_tokens,
        output_tokens=usage.output_tokens,
        metadata={
            "cacheCreationInputTokens": usage.cache_creation_tokens,
            "cacheReadInputTokens": usage.cache_read_tokens,
        },
    )
    try:
        tracker.track(event)
    except Exception:
        logger.warning("Usage tracking failed for tenant=%s feature=%s", tenant_id, feature_type, exc_info=True)
