"""AI-assisted semantic chunking.

Flow:
1. pre_chunk the document into coarse segments (rule-based).
2. Send segments to the generation service in concurrent batches; each
   call returns a JSON array of {content, type, topic}.
3. Unusable output (or a failed call) falls back to rule-based chunking of
   that segment only; sibling segments are unaffected.
4. Merge chunks shorter than the minimum into the previous chunk of the same
   type, then re-index and score.

With semantic chunking disabled the whole document goes through rule-based
chunking and each chunk is typed with infer_chunk_type.
"""
import asyncio
import logging
import re
from typing import Awaitable, Callable, List, Optional, Union

from pydantic import BaseModel, TypeAdapter, ValidationError, field_validator

from docrag.config import ChunkingConfig
from docrag.errors import ParseFailure
from docrag.generation import GenerationService
from docrag.obs import span
from docrag.rule_chunker import infer_chunk_type, rule_based_chunk
from docrag.schemas import ChunkDraft, ChunkType, Segment, clamp_score
from docrag.segmenter import pre_chunk
from docrag.usage import UsageTracker, track_usage

logger = logging.getLogger(__name__)

SYSTEM_PROMPT_KO = """당신은 텍스트를 의미적으로 완결된 청크들로 분할하는 전문가입니다.

## 분할 규칙
1. 각 청크는 하나의 완결된 개념/주제를 담아야 함
2. Q&A 쌍(질문+답변)은 반드시 함께 유지
3. 목록은 가능한 한 단위로 유지 (너무 길면 논리적 단위로 분할)
4. 표는 분할하지 않음
5. 코드 블록은 분할하지 않음
6. 100-600자 권장 (의미 완결성이 문자 수보다 우선)
7. 문장 중간에서 절대 자르지 말 것

## 청크 타입
- paragraph: 일반 문단
- qa: Q&A 쌍
- list: 목록
- table: 표
- header: 제목 + 설명
- code: 코드 블록

## 출력 형식
JSON 배열만 출력하세요. 다른 설명은 하지 마세요.
[
  {"content": "청크 내용", "type": "paragraph", "topic": "주제 키워드"},
  {"content": "Q: 질문\\nA: 답변", "type": "qa", "topic": "FAQ 주제"}
]

사용자가 <segment> 태그로 텍스트를 제공하면, 위 규칙에 따라 분할하세요."""

SYSTEM_PROMPT_EN = """You are an expert at splitting text into semantically complete chunks.

## Splitting Rules
1. Each chunk should contain one complete concept/topic
2. Q&A pairs (question + answer) must stay together
3. Keep lists as single units when possible (split logically if too long)
4. Do not split tables
5. Do not split code blocks
6. Target 100-600 characters (semantic completeness > character count)
7. Never split in the middle of a sentence

## Chunk Types
- paragraph: general paragraph
- qa: Q&A pair
- list: list/enumeration
- table: table
- header: heading + description
- code: code block

## Output Format
Output only a JSON array. No other explanation.
[
  {"content": "chunk content", "type": "paragraph", "topic": "topic keyword"},
  {"content": "Q: question\\nA: answer", "type": "qa", "topic": "FAQ topic"}
]

When the user provides text in <segment> tags, split it according to the rules above."""

MAX_OUTPUT_TOKENS = 4096
NATURAL_ENDINGS = (".", "!", "?", "다", "요", "죠")

_JSON_ARRAY = re.compile(r"\[[\s\S]*\]")

ProgressCallback = Callable[[int, int], None]


class ChunkProposal(BaseModel):
    """One chunk as proposed by the model."""
    content: str
    type: ChunkType = ChunkType.PARAGRAPH
    topic: str = ""

    @field_validator("content", mode="before")
    @classmethod
    def _content(cls, v):
        return "" if v is None else str(v)

    @field_validator("type", mode="before")
    @classmethod
    def _type(cls, v):
        return ChunkType.coerce(v)

    @field_validator("topic", mode="before")
    @classmethod
    def _topic(cls, v):
        return "" if v is None else str(v)


_PROPOSALS = TypeAdapter(List[ChunkProposal])


def is_non_latin_majority(text: str) -> bool:
    """True when most letters in text are outside the Latin script blocks."""
    latin = non_latin = 0
    for ch in text:
        if not ch.isalpha():
            continue
        if ord(ch) <= 0x024F:
            latin += 1
        else:
            non_latin += 1
    return non_latin > latin


def system_prompt_for(segment: str) -> str:
    return SYSTEM_PROMPT_KO if is_non_latin_majority(segment) else SYSTEM_PROMPT_EN


def parse_chunk_response(text: str) -> Union[List[ChunkProposal], ParseFailure]:
    """Extract and validate the JSON chunk array from a model response.

    Returns:
        Union[List[ChunkProposal], ParseFailure]: Non-empty proposals, or a
        ParseFailure describing why the response is unusable.
    """
    preview = text[:200]
    match = _JSON_ARRAY.search(text)
    if match is None:
        return ParseFailure("no JSON array in response", preview)
    try:
        proposals = _PROPOSALS.validate_json(match.group(0))
    except ValidationError as exc:
        return ParseFailure(f"invalid chunk array ({exc.error_count()} errors)", preview)
    proposals = [p for p in proposals if p.content.strip()]
    if not proposals:
        return ParseFailure("empty chunk array", preview)
    return proposals


def semantic_quality_score(content: str, chunk_type: ChunkType, topic: str) -> int:
    score = 100
    if len(content) < 100:
        score -= 15
    if len(content) > 800:
        score -= 10
    if chunk_type == ChunkType.QA:
        score += 10
    if topic and len(topic.strip()) > 2:
        score += 5
    if content.strip().endswith(NATURAL_ENDINGS):
        score += 5
    return clamp_score(score)


def merge_short_chunks(chunks: List[ChunkDraft], min_size: int) -> List[ChunkDraft]:
    """Fold chunks shorter than min_size into the previous chunk of the same type."""
    merged: List[ChunkDraft] = []
    for chunk in chunks:
        if merged and len(chunk.content) < min_size and chunk.type == merged[-1].type:
            last = merged[-1]
            last.content = f"{last.content}\n\n{chunk.content}"
            last.end = max(last.end, chunk.end)
            if chunk.topic and chunk.topic not in last.topic:
                last.topic = f"{last.topic}, {chunk.topic}" if last.topic else chunk.topic
        else:
            merged.append(chunk)
    return merged


def _score_and_index(chunks: List[ChunkDraft]) -> List[ChunkDraft]:
    for i, chunk in enumerate(chunks):
        chunk.index = i
        chunk.quality_score = semantic_quality_score(chunk.content, chunk.type, chunk.topic)
    return chunks


def _locate(proposals: List[ChunkProposal], segment: Segment, segment_index: int) -> List[ChunkDraft]:
    """Map proposals to document offsets by searching forward within the segment."""
    drafts = []
    cursor = 0
    size = len(segment.text)
    for p in proposals:
        content = p.content.strip()
        pos = segment.text.find(content, cursor)
        if pos >= 0:
            cursor = pos + len(content)
        else:
            # rephrased by the model; anchor at the cursor
            pos = min(cursor, size)
        end = min(pos + len(content), size)
        drafts.append(
            ChunkDraft(
                content=content,
                type=p.type,
                topic=p.topic.strip(),
                start=segment.start + pos,
                end=segment.start + end,
                segment_index=segment_index,
            )
        )
    return drafts


def _fallback(segment: Segment, segment_index: int, config: ChunkingConfig) -> List[ChunkDraft]:
    drafts = rule_based_chunk(segment.text, max_chunk_size=config.max_chunk_size, overlap=0)
    if not drafts:
        drafts = [ChunkDraft(content=segment.text, start=0, end=len(segment.text))]
    return [
        ChunkDraft(
            content=d.content,
            type=infer_chunk_type(d.content),
            start=segment.start + d.start,
            end=segment.start + d.end,
            segment_index=segment_index,
        )
        for d in drafts
    ]


class SemanticChunker:
    """Chunks documents with the generation service, falling back to rules.

    Args:
        generator: Generation service used for the per-segment split.
        usage_tracker: Optional tracker receiving semantic_chunking usage.
        sleep: Awaitable sleep used between batches.
    """

    def __init__(
        self,
        generator: GenerationService,
        usage_tracker: Optional[UsageTracker] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.generator = generator
        self.usage_tracker = usage_tracker
        self._sleep = sleep

    async def chunk(
        self,
        content: str,
        config: ChunkingConfig,
        tenant_id: Optional[str] = None,
        on_progress: Optional[ProgressCallback] = None,
    ) -> List[ChunkDraft]:
        """Split content into typed, scored chunks.

        Args:
            content: Full document text.
            config: Chunking configuration for this run.
            tenant_id: Tenant charged for generation usage.
            on_progress: Called with (segments_done, segments_total) after each batch.

        Returns:
            List[ChunkDraft]: Ordered chunks with offsets into content.
        """
        if not config.semantic_enabled:
            logger.info("Semantic chunking disabled, using rule-based chunking")
            return chunk_rule_based(content, config)

        segments = pre_chunk(content, config.pre_chunk_size)
        logger.info("Pre-chunking completed: %d segments", len(segments))

        chunks: List[ChunkDraft] = []
        total = len(segments)
        for start in range(0, total, config.batch_size):
            batch = segments[start:start + config.batch_size]
            with span("semantic_chunk_batch", {"first_segment": start, "size": len(batch)}):
                results = await asyncio.gather(
                    *(
                        self._chunk_segment(seg, start + offset, config, tenant_id)
                        for offset, seg in enumerate(batch)
                    )
                )
            for drafts in results:
                chunks.extend(drafts)

            done = min(start + config.batch_size, total)
            if on_progress is not None:
                on_progress(done, total)
            if done < total:
                await self._sleep(config.batch_delay_ms / 1000)

        final = _score_and_index(merge_short_chunks(chunks, config.min_chunk_size))
        logger.info("Semantic chunking completed: segments=%d chunks=%d", total, len(final))
        return final

    async def _chunk_segment(
        self,
        segment: Segment,
        segment_index: int,
        config: ChunkingConfig,
        tenant_id: Optional[str],
    ) -> List[ChunkDraft]:
        try:
            result = await asyncio.wait_for(
                self.generator.generate(
                    system_prompt_for(segment.text),
                    f"<segment>\n{segment.text}\n</segment>",
                    temperature=0.0,
                    max_output_tokens=MAX_OUTPUT_TOKENS,
                ),
                timeout=config.timeout_seconds,
            )
        except Exception as exc:
            logger.warning(
                "Semantic chunking call failed for segment %d (%d chars), using rule-based split: %r",
                segment_index, len(segment.text), exc,
            )
            return _fallback(segment, segment_index, config)

        track_usage(self.usage_tracker, tenant_id, "semantic_chunking", config.model, result.usage)

        parsed = parse_chunk_response(result.text)
        if isinstance(parsed, ParseFailure):
            logger.warning(
                "Unusable chunking response for segment %d: %s (preview=%r)",
                segment_index, parsed.reason, parsed.preview[:100],
            )
            return _fallback(segment, segment_index, config)
        return _locate(parsed, segment, segment_index)


def chunk_rule_based(content: str, config: ChunkingConfig) -> List[ChunkDraft]:
    """Rule-based path used when semantic chunking is disabled."""
    drafts = rule_based_chunk(content, max_chunk_size=config.max_chunk_size, overlap=config.overlap)
    for draft in drafts:
        draft.type = infer_chunk_type(draft.content)
        draft.topic = ""
    return _score_and_index(drafts)
