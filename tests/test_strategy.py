import random
from datetime import datetime, timedelta, timezone

from docrag.schemas import ChunkingStrategy, ExperimentConfig, ExperimentVariant, StrategyReason
from docrag.strategy import (
    bucket_for,
    determine_chunking_strategy,
    fnv1a_32,
    get_consistent_variant,
    is_ab_test_active,
    is_within_experiment_period,
    to_chunk_experiment_metadata,
)


class FixedRandom(random.Random):
    def __init__(self, value: float):
        super().__init__()
        self.value = value

    def random(self):
        return self.value


def test_fnv1a_known_values():
    assert fnv1a_32("") == 0x811C9DC5
    assert fnv1a_32("a") == 0xE40C292C


def test_bucket_uses_signed_hash():
    assert bucket_for("") == 35
    assert bucket_for("a") == 76
    assert all(0 <= bucket_for(f"doc-{i}") < 100 for i in range(200))


def test_consistent_variant_is_deterministic():
    assert get_consistent_variant("a", 77) == ExperimentVariant.TREATMENT
    assert get_consistent_variant("a", 76) == ExperimentVariant.CONTROL
    assert get_consistent_variant("doc-7", 0) == ExperimentVariant.CONTROL
    assert get_consistent_variant("doc-7", 100) == ExperimentVariant.TREATMENT


def test_no_config_uses_global_default():
    on = determine_chunking_strategy("bot", None, "doc-1", semantic_enabled=True)
    off = determine_chunking_strategy("bot", None, "doc-1", semantic_enabled=False)
    assert (on.strategy, on.variant, on.reason) == (ChunkingStrategy.SEMANTIC, None, StrategyReason.GLOBAL_SETTING)
    assert off.strategy == ChunkingStrategy.SMART


def test_ab_test_buckets_by_document():
    config = {"abTestEnabled": True, "semanticTrafficPercent": 77}
    decision = determine_chunking_strategy("bot", config, "a", semantic_enabled=False)
    assert decision.strategy == ChunkingStrategy.SEMANTIC
    assert decision.variant == ExperimentVariant.TREATMENT
    assert decision.reason == StrategyReason.AB_TEST

    again = determine_chunking_strategy("bot", config, "a", semantic_enabled=True)
    assert again == decision

    control = determine_chunking_strategy("bot", {"abTestEnabled": True, "semanticTrafficPercent": 76}, "a",
                                          semantic_enabled=True)
    assert control.strategy == ChunkingStrategy.SMART
    assert control.variant == ExperimentVariant.CONTROL


def test_ab_test_without_document_id_uses_random_source():
    config = ExperimentConfig(ab_test_enabled=True, semantic_traffic_percent=50)
    low = determine_chunking_strategy("bot", config, None, semantic_enabled=True, rng=FixedRandom(0.3))
    high = determine_chunking_strategy("bot", config, None, semantic_enabled=True, rng=FixedRandom(0.7))
    assert low.variant == ExperimentVariant.TREATMENT
    assert high.variant == ExperimentVariant.CONTROL


def test_fixed_strategy_and_auto():
    late = determine_chunking_strategy("bot", {"chunkingStrategy": "late"}, "doc", semantic_enabled=True)
    assert (late.strategy, late.variant, late.reason) == (ChunkingStrategy.LATE, None, StrategyReason.FIXED_STRATEGY)

    auto = determine_chunking_strategy("bot", {"chunkingStrategy": "auto"}, "doc", semantic_enabled=False)
    assert (auto.strategy, auto.reason) == (ChunkingStrategy.SMART, StrategyReason.FIXED_STRATEGY)


def test_malformed_config_is_coerced():
    config = ExperimentConfig.from_raw(
        {"chunkingStrategy": "bogus", "abTestEnabled": "yes", "semanticTrafficPercent": 150}
    )
    assert config.chunking_strategy == ChunkingStrategy.AUTO
    assert config.ab_test_enabled is True
    assert config.semantic_traffic_percent == 100

    assert ExperimentConfig.from_raw({"semanticTrafficPercent": "abc"}).semantic_traffic_percent == 50
    assert ExperimentConfig.from_raw(["not", "a", "mapping"]) == ExperimentConfig()

    decision = determine_chunking_strategy("bot", "garbage", "doc", semantic_enabled=True)
    assert (decision.strategy, decision.reason) == (ChunkingStrategy.SEMANTIC, StrategyReason.FIXED_STRATEGY)


def test_experiment_metadata():
    decision = determine_chunking_strategy("bot", {"abTestEnabled": True, "semanticTrafficPercent": 100}, "x",
                                           semantic_enabled=True)
    assert to_chunk_experiment_metadata(decision) == {
        "chunkingStrategy": "semantic",
        "experimentVariant": "treatment",
        "strategyReason": "ab_test",
    }
    fixed = determine_chunking_strategy("bot", None, "x", semantic_enabled=False)
    assert to_chunk_experiment_metadata(fixed)["experimentVariant"] is None


def test_ab_test_active():
    assert is_ab_test_active({"abTestEnabled": True})
    assert not is_ab_test_active({"abTestEnabled": False})
    assert not is_ab_test_active(None)


def test_experiment_period():
    now = datetime(2024, 5, 1, 12, tzinfo=timezone.utc)
    window = {
        "abTestEnabled": True,
        "experimentStartedAt": "2024-04-30T00:00:00Z",
        "experimentEndedAt": (now + timedelta(days=1)).replace(tzinfo=None).isoformat(),
    }
    assert is_within_experiment_period(window, now)
    assert not is_within_experiment_period(window, now + timedelta(days=2))
    assert not is_within_experiment_period(window, now - timedelta(days=5))
    assert is_within_experiment_period({"abTestEnabled": True}, now)
    assert not is_within_experiment_period({"abTestEnabled": False}, now)
