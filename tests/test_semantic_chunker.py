import asyncio
import json

from docrag.config import ChunkingConfig
from docrag.errors import ParseFailure
from docrag.rule_chunker import infer_chunk_type, rule_based_chunk
from docrag.schemas import ChunkDraft, ChunkType
from docrag.semantic_chunker import (
    SYSTEM_PROMPT_EN,
    SYSTEM_PROMPT_KO,
    SemanticChunker,
    merge_short_chunks,
    parse_chunk_response,
    semantic_quality_score,
    system_prompt_for,
)
from conftest import FakeGenerator, RecordingUsageTracker, offsets_match

MARKDOWN = (
    "# Shipping\nOrders ship within two business days from our warehouse.\n\n"
    "# Returns\nItems can be returned within thirty days of delivery."
)
PARAGRAPHS = "\n\n".join(f"Paragraph {i} has enough words to stand on its own." for i in range(5))


def _config(**overrides) -> ChunkingConfig:
    values = dict(semantic_enabled=True, min_chunk_size=0, batch_size=2, batch_delay_ms=50, timeout_seconds=5)
    values.update(overrides)
    return ChunkingConfig(**values)


def _segment_of(user_prompt: str) -> str:
    return user_prompt[len("<segment>\n"):-len("\n</segment>")]


def _echo(system, user):
    return json.dumps([{"content": _segment_of(user), "type": "header", "topic": "policy"}])


async def _no_sleep(seconds):
    return None


def test_parse_chunk_response_extracts_array_from_prose():
    text = 'Here you go:\n[{"content": "a", "type": "QA", "topic": null}, {"content": "b", "type": "weird"}]\nDone.'
    parsed = parse_chunk_response(text)
    assert [p.content for p in parsed] == ["a", "b"]
    assert parsed[0].type == ChunkType.QA
    assert parsed[0].topic == ""
    assert parsed[1].type == ChunkType.PARAGRAPH


def test_parse_chunk_response_failures():
    missing = parse_chunk_response("Sorry, I cannot help with that.")
    assert isinstance(missing, ParseFailure)
    assert missing.reason == "no JSON array in response"
    assert missing.preview == "Sorry, I cannot help with that."

    invalid = parse_chunk_response('[{"foo": 1}]')
    assert isinstance(invalid, ParseFailure)
    assert invalid.reason.startswith("invalid chunk array")

    empty = parse_chunk_response('[{"content": "   "}]')
    assert isinstance(empty, ParseFailure)
    assert empty.reason == "empty chunk array"


def test_system_prompt_follows_script():
    assert system_prompt_for("배송은 보통 이틀 정도 걸립니다.") == SYSTEM_PROMPT_KO
    assert system_prompt_for("Shipping usually takes two days.") == SYSTEM_PROMPT_EN


def test_semantic_quality_score():
    base = "x" * 200
    assert semantic_quality_score(base, ChunkType.PARAGRAPH, "") == 100
    assert semantic_quality_score("short.", ChunkType.QA, "refunds") == 100
    assert semantic_quality_score("x" * 900, ChunkType.PARAGRAPH, "") == 90


def test_merge_short_chunks_only_merges_same_type():
    chunks = [
        ChunkDraft(content="A long enough paragraph.", type=ChunkType.PARAGRAPH, topic="intro", start=0, end=24),
        ChunkDraft(content="tiny", type=ChunkType.PARAGRAPH, topic="extra", start=26, end=30),
        ChunkDraft(content="Q: a?", type=ChunkType.QA, start=32, end=37),
    ]
    merged = merge_short_chunks(chunks, min_size=10)
    assert len(merged) == 2
    assert merged[0].content == "A long enough paragraph.\n\ntiny"
    assert merged[0].end == 30
    assert merged[0].topic == "intro, extra"
    assert merged[1].type == ChunkType.QA


def test_chunks_follow_model_output_with_offsets():
    generator = FakeGenerator(_echo)
    chunker = SemanticChunker(generator, sleep=_no_sleep)
    drafts = asyncio.run(chunker.chunk(MARKDOWN, _config()))

    assert [d.content.split("\n")[0] for d in drafts] == ["# Shipping", "# Returns"]
    assert all(d.type == ChunkType.HEADER for d in drafts)
    assert [d.index for d in drafts] == [0, 1]
    assert [d.segment_index for d in drafts] == [0, 1]
    assert all(d.topic == "policy" for d in drafts)
    assert offsets_match(MARKDOWN, drafts)
    assert generator.calls[0]["temperature"] == 0.0
    assert generator.calls[0]["max_output_tokens"] == 4096


def test_failed_segment_falls_back_without_affecting_siblings():
    def respond(system, user):
        if "Returns" in user:
            return RuntimeError("model overloaded")
        return _echo(system, user)

    chunker = SemanticChunker(FakeGenerator(respond), sleep=_no_sleep)
    drafts = asyncio.run(chunker.chunk(MARKDOWN, _config()))

    assert drafts[0].topic == "policy"
    fallback = [d for d in drafts if d.segment_index == 1]
    assert fallback
    assert all(d.topic == "" for d in fallback)
    assert offsets_match(MARKDOWN, drafts)


def test_unparseable_response_falls_back():
    chunker = SemanticChunker(FakeGenerator(lambda s, u: "I would split this into two parts."), sleep=_no_sleep)
    drafts = asyncio.run(chunker.chunk(MARKDOWN, _config()))
    assert len(drafts) == 2
    assert all(d.type == ChunkType.HEADER for d in drafts)
    assert offsets_match(MARKDOWN, drafts)


def test_rephrased_chunk_is_anchored_inside_segment():
    chunker = SemanticChunker(
        FakeGenerator(lambda s, u: json.dumps([{"content": "A rewritten summary", "type": "paragraph"}])),
        sleep=_no_sleep,
    )
    drafts = asyncio.run(chunker.chunk("Original text of a single paragraph.", _config()))
    assert len(drafts) == 1
    assert drafts[0].start == 0
    assert drafts[0].end <= len("Original text of a single paragraph.")


def test_batches_report_progress_and_sleep_between_batches():
    sleeps = []
    progress = []

    async def record_sleep(seconds):
        sleeps.append(seconds)

    chunker = SemanticChunker(FakeGenerator(_echo), sleep=record_sleep)
    drafts = asyncio.run(
        chunker.chunk(PARAGRAPHS, _config(), on_progress=lambda done, total: progress.append((done, total)))
    )
    assert len(drafts) == 5
    assert progress == [(2, 5), (4, 5), (5, 5)]
    assert sleeps == [0.05, 0.05]


def test_usage_is_tracked_per_segment():
    tracker = RecordingUsageTracker()
    chunker = SemanticChunker(FakeGenerator(_echo), usage_tracker=tracker, sleep=_no_sleep)
    asyncio.run(chunker.chunk(MARKDOWN, _config(model="chunk-model"), tenant_id="acme"))
    assert len(tracker.events) == 2
    assert {e.feature_type for e in tracker.events} == {"semantic_chunking"}
    assert {e.model_id for e in tracker.events} == {"chunk-model"}
    assert tracker.events[0].tenant_id == "acme"


def test_disabled_semantic_chunking_uses_rules_only():
    content = PARAGRAPHS + "\n\n- first item\n- second item\n- third item\n\n" + "Long sentence about returns. " * 12
    cfg = _config(semantic_enabled=False, max_chunk_size=200)
    generator = FakeGenerator(_echo)
    chunker = SemanticChunker(generator, sleep=_no_sleep)
    drafts = asyncio.run(chunker.chunk(content, cfg))

    expected = rule_based_chunk(content, max_chunk_size=cfg.max_chunk_size, overlap=cfg.overlap)
    assert generator.calls == []
    assert cfg.overlap == 50
    assert [d.content for d in drafts] == [d.content for d in expected]
    assert [d.type for d in drafts] == [infer_chunk_type(d.content) for d in expected]
    assert [(d.start, d.end) for d in drafts] == [(d.start, d.end) for d in expected]
    assert all(d.topic == "" for d in drafts)
    assert [d.index for d in drafts] == list(range(len(drafts)))
