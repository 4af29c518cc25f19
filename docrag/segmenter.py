"""Rule-based boundary segmentation.

Splits raw document text into size-bounded segments that respect document
structure and sentence boundaries. Every returned Segment carries offsets into
the original text, so segments can be mapped back to the source document.

Provides:
- find_sentence_boundaries: end positions of sentences (Korean endings + punctuation).
- split_by_natural_boundaries: sentence-aware split of an oversized span.
- pre_chunk: header- or paragraph-level split, re-splitting oversized pieces.
- estimate_token_count: cheap token estimate for CJK and Latin text.
- split_by_token_limit: paragraph grouping bounded by a tiktoken-counted ceiling.
"""
import logging
import math
import re
from typing import Iterator, List, Optional, Tuple

from docrag.schemas import Segment
from docrag.tokenizer import count_tokens, fit_prefix

logger = logging.getLogger(__name__)

# Korean sentence-final endings, optional punctuation, then whitespace
KOREAN_SENTENCE_END = re.compile(
    r"(?:습니다|입니다|됩니다|합니다|습니까|입니까|네요|군요|거든요|잖아요|나요|가요|을까요|ㄹ까요"
    r"|세요|어요|아요|죠|요|다|냐|니|자)[.!?。！？]?\s+"
)
GENERAL_SENTENCE_END = re.compile(r"[.!?。！？]\s+")

MARKDOWN_HEADER = re.compile(r"^#{1,6}\s", re.MULTILINE)
HEADER_SPLIT = re.compile(r"^#{1,3}\s", re.MULTILINE)
PARAGRAPH_BREAK = re.compile(r"\n\n+")

_CJK = re.compile(r"[\u3000-\u303f\u3040-\u309f\u30a0-\u30ff\u4e00-\u9fff\uac00-\ud7af]")

DEFAULT_PRE_CHUNK_SIZE = 2000
DEFAULT_MAX_TOKENS = 8000


def trimmed_span(text: str, start: int, end: int, offset: int = 0) -> Optional[Segment]:
    """Trim text[start:end] and return it as a Segment, or None if blank."""
    piece = text[start:end]
    stripped = piece.strip()
    if not stripped:
        return None
    begin = start + (len(piece) - len(piece.lstrip()))
    return Segment(text=stripped, start=offset + begin, end=offset + begin + len(stripped))


def _append(out: List[Segment], text: str, start: int, end: int, offset: int) -> None:
    seg = trimmed_span(text, start, end, offset)
    if seg is not None:
        out.append(seg)


def _hard_slices(text: str, start: int, end: int, max_size: int, offset: int) -> List[Segment]:
    out: List[Segment] = []
    for i in range(start, end, max_size):
        _append(out, text, i, min(i + max_size, end), offset)
    return out


def iter_pieces(text: str, separator: re.Pattern) -> Iterator[Tuple[int, int]]:
    """Yield (start, end) of the pieces between separator matches."""
    pos = 0
    for m in separator.finditer(text):
        yield pos, m.start()
        pos = m.end()
    yield pos, len(text)


def find_sentence_boundaries(text: str) -> List[int]:
    """Return sorted end offsets of sentences found in text.

    Union of Korean sentence-final endings and generic terminal punctuation,
    each followed by whitespace. An offset points just past the whitespace,
    i.e. at the start of the next sentence.
    """
    boundaries = {m.end() for m in KOREAN_SENTENCE_END.finditer(text)}
    boundaries.update(m.end() for m in GENERAL_SENTENCE_END.finditer(text))
    return sorted(boundaries)


def _split_paragraphs(text: str, max_size: int, offset: int) -> List[Segment]:
    out: List[Segment] = []
    cur_start: Optional[int] = None
    cur_end = 0
    for start, end in iter_pieces(text, PARAGRAPH_BREAK):
        para = trimmed_span(text, start, end)
        if para is None:
            continue
        p_start, p_end = para.start, para.end
        if cur_start is not None and p_end - cur_start <= max_size:
            cur_end = p_end
            continue
        if cur_start is not None:
            _append(out, text, cur_start, cur_end, offset)
            cur_start = None
        if p_end - p_start > max_size:
            out.extend(_hard_slices(text, p_start, p_end, max_size, offset))
        else:
            cur_start, cur_end = p_start, p_end
    if cur_start is not None:
        _append(out, text, cur_start, cur_end, offset)
    return out


def split_by_natural_boundaries(text: str, max_size: int, offset: int = 0) -> List[Segment]:
    """Split text into segments of at most max_size characters at sentence ends.

    Sentences are accumulated greedily. A single sentence longer than max_size is
    sliced by character count. Without any sentence boundary, paragraphs are
    grouped instead.

    Args:
        text: Text to split.
        max_size: Maximum segment length in characters.
        offset: Offset of text within the source document.

    Returns:
        List[Segment]: Non-empty trimmed segments with document offsets.
    """
    if max_size <= 0:
        raise ValueError("max_size must be positive")
    if len(text) <= max_size:
        seg = trimmed_span(text, 0, len(text), offset)
        return [seg] if seg else []

    boundaries = find_sentence_boundaries(text)
    if not boundaries:
        return _split_paragraphs(text, max_size, offset)

    out: List[Segment] = []
    seg_start: Optional[int] = None
    cur = 0
    for boundary in boundaries:
        candidate = cur if seg_start is None else seg_start
        if boundary - candidate <= max_size:
            seg_start = candidate
        else:
            if seg_start is not None:
                _append(out, text, seg_start, cur, offset)
            if boundary - cur > max_size:
                out.extend(_hard_slices(text, cur, boundary, max_size, offset))
                seg_start = None
            else:
                seg_start = cur
        cur = boundary

    tail_start = cur if seg_start is None else seg_start
    if len(text) - tail_start <= max_size:
        _append(out, text, tail_start, len(text), offset)
    else:
        if seg_start is not None:
            _append(out, text, seg_start, cur, offset)
        out.extend(_hard_slices(text, cur, len(text), max_size, offset))
    return out


def has_markdown_headers(content: str) -> bool:
    return MARKDOWN_HEADER.search(content) is not None


def pre_chunk(content: str, max_size: int = DEFAULT_PRE_CHUNK_SIZE) -> List[Segment]:
    """Coarse structural split of a document.

    Markdown documents are cut immediately before each level 1-3 header, so the
    header stays with its body; other documents are cut on blank lines. Pieces
    longer than max_size are re-split with split_by_natural_boundaries.

    Args:
        content: Full document text.
        max_size: Maximum segment length in characters.

    Returns:
        List[Segment]: Ordered, non-overlapping segments.
    """
    if has_markdown_headers(content):
        cuts = [m.start() for m in HEADER_SPLIT.finditer(content) if m.start() > 0]
        bounds = [0] + cuts + [len(content)]
        pieces = list(zip(bounds, bounds[1:]))
        logger.debug("pre_chunk: markdown document, %d header sections", len(pieces))
    else:
        pieces = list(iter_pieces(content, PARAGRAPH_BREAK))
        logger.debug("pre_chunk: plain text document, %d paragraphs", len(pieces))

    segments: List[Segment] = []
    for start, end in pieces:
        seg = trimmed_span(content, start, end)
        if seg is None:
            continue
        if len(seg.text) <= max_size:
            segments.append(seg)
        else:
            segments.extend(split_by_natural_boundaries(seg.text, max_size, seg.start))

    logger.debug(
        "pre_chunk: input_length=%d segments=%d avg_size=%d",
        len(content),
        len(segments),
        len(content) // max(1, len(segments)),
    )
    return segments


def _token_weight(text: str) -> float:
    cjk = len(_CJK.findall(text))
    return cjk / 2.5 + (len(text) - cjk) / 4


def estimate_token_count(text: str) -> int:
    """Estimate tokens: about 2.5 characters per CJK token and 4 per other token."""
    if not text:
        return 0
    return math.ceil(_token_weight(text))


def _cut_point(text: str) -> int:
    """Last sentence boundary, else last whitespace, in the back half of text; 0 if none."""
    half = len(text) // 2
    boundaries = [b for b in find_sentence_boundaries(text) if half < b <= len(text)]
    if boundaries:
        return boundaries[-1]
    space = max(text.rfind(" "), text.rfind("\n"))
    return space + 1 if space + 1 > half else 0


def _split_span_by_tokens(content: str, start: int, end: int, max_tokens: int) -> List[Segment]:
    out: List[Segment] = []
    pos = start
    while pos < end:
        seg = trimmed_span(content, pos, end)
        if seg is None:
            break
        if count_tokens(seg.text) <= max_tokens:
            out.append(seg)
            break
        pos = seg.start
        # a cl100k token rarely spans more than a few characters
        cut = fit_prefix(content, pos, min(end, pos + max_tokens * 32), max_tokens)
        back = _cut_point(content[pos:cut])
        if back:
            cut = pos + back
        _append(out, content, pos, cut, 0)
        pos = cut
    return out


def _flush(out: List[Segment], content: str, start: int, end: int, max_tokens: int) -> None:
    seg = trimmed_span(content, start, end)
    if seg is None:
        return
    if count_tokens(seg.text) <= max_tokens:
        out.append(seg)
    else:
        out.extend(_split_span_by_tokens(content, seg.start, seg.end, max_tokens))


def split_by_token_limit(content: str, max_tokens: int = DEFAULT_MAX_TOKENS) -> List[Segment]:
    """Group paragraphs into segments of at most max_tokens BPE tokens.

    Used before embedding to respect provider token ceilings, so tokens are
    counted with the embedding model's tokenizer rather than estimated.
    Paragraphs too large on their own are cut at the last sentence end (or
    whitespace) that still fits the budget.

    Args:
        content: Full document text.
        max_tokens: Token ceiling per segment.

    Returns:
        List[Segment]: Ordered, non-overlapping segments.
    """
    whole = trimmed_span(content, 0, len(content))
    if whole is None:
        return []
    if count_tokens(whole.text) <= max_tokens:
        return [whole]

    out: List[Segment] = []
    cur_start: Optional[int] = None
    cur_end = 0
    cur_tokens = 0

    for start, end in iter_pieces(content, PARAGRAPH_BREAK):
        para = trimmed_span(content, start, end)
        if para is None:
            continue
        tokens = count_tokens(para.text)
        if tokens > max_tokens:
            if cur_start is not None:
                _flush(out, content, cur_start, cur_end, max_tokens)
                cur_start = None
            out.extend(_split_span_by_tokens(content, para.start, para.end, max_tokens))
            continue
        if cur_start is None:
            cur_start, cur_end, cur_tokens = para.start, para.end, tokens
            continue
        joined = cur_tokens + count_tokens(content[cur_end:para.start]) + tokens
        if joined <= max_tokens:
            cur_end, cur_tokens = para.end, joined
        else:
            _flush(out, content, cur_start, cur_end, max_tokens)
            cur_start, cur_end, cur_tokens = para.start, para.end, tokens

    if cur_start is not None:
        _flush(out, content, cur_start, cur_end, max_tokens)
    return out
