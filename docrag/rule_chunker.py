"""Rule-based ("smart") chunking.

Chunks a document without any model call:
1. Optionally classify the document (faq / technical / legal / general) and pick
   chunk size and overlap presets for that type.
2. Split into structural units: Q&A pairs, header sections, or paragraphs.
3. Window each unit to the size limit, cutting at sentence ends and carrying a
   sentence-aligned overlap into the next window.
4. Drop chunks that carry only headers or separators, score the rest.

Also hosts the text heuristics shared with the semantic chunker:
infer_chunk_type, ends_with_complete_sentence, detect_language.
"""
import logging
import re
from typing import Dict, List, NamedTuple, Optional

from docrag.schemas import ChunkDraft, ChunkType, Segment, clamp_score
from docrag.segmenter import PARAGRAPH_BREAK, find_sentence_boundaries, iter_pieces, trimmed_span

logger = logging.getLogger(__name__)


class DocumentTypeConfig(NamedTuple):
    max_chunk_size: int
    overlap: int
    description: str


DOCUMENT_TYPE_CONFIGS: Dict[str, DocumentTypeConfig] = {
    "faq": DocumentTypeConfig(400, 30, "short Q&A units"),
    "technical": DocumentTypeConfig(600, 80, "technical documents, context matters"),
    "legal": DocumentTypeConfig(800, 100, "contracts and terms, article units"),
    "general": DocumentTypeConfig(500, 50, "general documents"),
}
DEFAULT_DOCUMENT_TYPE = "general"

_FAQ_KEYWORDS = re.compile(r"(?:FAQ|Q\s*&\s*A|자주\s*묻는\s*질문|질문\s*답변|문의\s*답변|질의\s*응답)", re.I)
_FAQ_STRUCTURE = re.compile(r"(?:Q[:：]|A[:：]|질문[:：]|답변[:：]|문[:：]|답[:：])")
_FAQ_MARKERS = re.compile(r"(?:Q|질문|문)[:：]", re.I)
_TECH_KEYWORDS = re.compile(
    r"(?:API|SDK|개발\s*가이드|기술\s*문서|사용\s*설명서|매뉴얼|레퍼런스|설치\s*방법|사용법)", re.I
)
_TECH_STRUCTURE = re.compile(r"```[\s\S]*?```|<code>[\s\S]*?</code>")
_CODE_BLOCK = re.compile(r"```[\s\S]*?```")
_LEGAL_KEYWORDS = re.compile(r"(?:약관|이용약관|개인정보|계약서|조항|법률|규정|조례|동의서|면책|보증)", re.I)
_LEGAL_STRUCTURE = re.compile(r"제\s*\d+\s*조|제\s*\d+\s*항|제\s*\d+\s*호|Article\s+\d+", re.I)
_LEGAL_ARTICLE = re.compile(r"제\s*\d+\s*[조항호]")

_HEADER_LINE = re.compile(r"^#+\s", re.M)
_SETEXT_HEADER = re.compile(r"^[A-Z가-힣].+\n={3,}", re.M)
_HEADER_SECTION = re.compile(r"^(?:#{1,6}\s.+|.+\n={3,})", re.M)
_QA_PAIR_HINTS = (
    re.compile(r"Q[:：].*\nA[:：]", re.I),
    re.compile(r"질문[:：].*\n답변[:：]", re.I),
    re.compile(r"문[:：].*\n답[:：]", re.I),
)
_QA_BLOCK = re.compile(r"(?:Q|질문|문)[:：][^\n]+(?:\n(?:A|답변|답)[:：][^\n]+)+", re.I)
_TABLE_ROW = re.compile(r"\|.*\|.*\|")
_LIST_ITEM = (re.compile(r"^[-*•]\s", re.M), re.compile(r"^\d+[.)]\s", re.M))

_QA_QUESTION = re.compile(r"(?:Q|질문|문)[:：]", re.I)
_QA_ANSWER = re.compile(r"(?:A|답변|답)[:：]", re.I)
_LEADING_HEADER = re.compile(r"^#{1,6}\s")
_CODE_FENCE = re.compile(r"```")
_INDENTED_CODE = re.compile(r"^\s{4,}\w", re.M)

_SEPARATOR_LINE = re.compile(r"^[-*_=]{3,}$")
_HEADER_ONLY_LINE = re.compile(r"^#{1,6}\s+.+$")
_HR_TAG = re.compile(r"^<hr\s*/?>$", re.I)

_TERMINAL_PUNCT = re.compile(r"[.!?。！？]$")
KOREAN_ENDINGS = (
    "습니다", "입니다", "됩니다", "합니다", "습니까", "입니까", "네요", "군요", "거든요", "잖아요",
    "나요", "가요", "을까요", "세요", "어요", "아요", "죠", "요", "다", "냐", "니", "자",
)
_MEANINGFUL = re.compile(r"[가-힣a-zA-Z]")
_ALNUM = re.compile(r"[a-zA-Z가-힣ㄱ-ㅎㅏ-ㅣ0-9]")
_KOREAN_CHAR = re.compile(r"[가-힣ㄱ-ㅎㅏ-ㅣ]")
_LATIN_CHAR = re.compile(r"[a-zA-Z]")


class DocumentStructure(NamedTuple):
    has_headers: bool
    has_qa_pairs: bool
    has_tables: bool
    has_lists: bool


class _Unit(NamedTuple):
    segment: Segment
    has_header: bool
    is_qa_pair: bool


def classify_document_type(content: str) -> str:
    """Classify a document as faq, technical, legal or general.

    Each type scores keyword hits, structural markers and repeated markers; the
    best type wins when it reaches 30 points (ties resolve faq, technical, legal).
    """
    scores = {"faq": 0, "technical": 0, "legal": 0}

    if _FAQ_KEYWORDS.search(content):
        scores["faq"] += 30
    if _FAQ_STRUCTURE.search(content):
        scores["faq"] += 40
    if len(_FAQ_MARKERS.findall(content)) >= 3:
        scores["faq"] += 20

    if _TECH_KEYWORDS.search(content):
        scores["technical"] += 30
    if _TECH_STRUCTURE.search(content):
        scores["technical"] += 30
    if len(_CODE_BLOCK.findall(content)) >= 2:
        scores["technical"] += 20

    if _LEGAL_KEYWORDS.search(content):
        scores["legal"] += 30
    if _LEGAL_STRUCTURE.search(content):
        scores["legal"] += 40
    if len(_LEGAL_ARTICLE.findall(content)) >= 3:
        scores["legal"] += 20

    best = max(scores.values())
    if best < 30:
        return DEFAULT_DOCUMENT_TYPE
    for doc_type in ("faq", "technical", "legal"):
        if scores[doc_type] == best:
            return doc_type
    return DEFAULT_DOCUMENT_TYPE


def analyze_structure(content: str) -> DocumentStructure:
    return DocumentStructure(
        has_headers=bool(_HEADER_LINE.search(content) or _SETEXT_HEADER.search(content)),
        has_qa_pairs=any(p.search(content) for p in _QA_PAIR_HINTS),
        has_tables=bool(_TABLE_ROW.search(content)),
        has_lists=any(p.search(content) for p in _LIST_ITEM),
    )


def infer_chunk_type(content: str) -> ChunkType:
    """Guess the structural type of a chunk from its text.

    Checked in order: Q&A markers, leading markdown header, code fences or
    indented code, table rows, list items; anything else is a paragraph.
    """
    if _QA_QUESTION.search(content) and _QA_ANSWER.search(content):
        return ChunkType.QA
    if _LEADING_HEADER.match(content):
        return ChunkType.HEADER
    if _CODE_FENCE.search(content) or _INDENTED_CODE.search(content):
        return ChunkType.CODE
    if _TABLE_ROW.search(content):
        return ChunkType.TABLE
    if any(p.search(content) for p in _LIST_ITEM):
        return ChunkType.LIST
    return ChunkType.PARAGRAPH


def ends_with_complete_sentence(content: str) -> bool:
    trimmed = content.strip()
    return bool(_TERMINAL_PUNCT.search(trimmed)) or trimmed.endswith(KOREAN_ENDINGS)


def detect_language(text: str) -> str:
    """Return "ko", "en" or "mixed" from the share of Korean vs Latin words.

    Words are counted rather than characters so that short Hangul words and long
    English words weigh the same. A language needs 60% of the words.
    """
    korean = english = 0
    for word in text.split():
        ko = len(_KOREAN_CHAR.findall(word))
        en = len(_LATIN_CHAR.findall(word))
        if ko > 0 and ko >= en:
            korean += 1
        elif en > 0:
            english += 1
    total = korean + english
    if total == 0:
        return "mixed"
    if korean / total >= 0.6:
        return "ko"
    if english / total >= 0.6:
        return "en"
    return "mixed"


def _rule_boundaries(text: str) -> List[int]:
    # sentence ends plus blank-line paragraph ends
    found = set(find_sentence_boundaries(text))
    found.update(m.end() for m in re.finditer(r"\n\s*\n", text))
    return sorted(found)


def readability_score(text: str) -> int:
    """Rough 0-100 readability: sentence length, vocabulary diversity, symbol density."""
    if not text.strip():
        return 0
    score = 100
    sentence_count = max(1, len(_rule_boundaries(text)))
    avg_len = len(text) / sentence_count
    if avg_len < 10:
        score -= 15
    elif avg_len > 100:
        score -= 30
    elif avg_len > 80:
        score -= 20
    elif avg_len > 50:
        score -= 10

    words = [w for w in text.split() if len(w) > 1]
    if len(words) > 5:
        diversity = len({w.lower() for w in words}) / len(words)
        if diversity < 0.3:
            score -= 15
        elif diversity < 0.5:
            score -= 5

    if len(_ALNUM.findall(text)) / len(text) < 0.5:
        score -= 15
    if ends_with_complete_sentence(text):
        score += 5
    return clamp_score(score)


def is_header_or_separator_only(content: str) -> bool:
    """True when a chunk has no meaningful body (only headers, rules, or < 20 chars)."""
    meaningful = []
    for line in content.strip().split("\n"):
        line = line.strip()
        if not line:
            continue
        if _HEADER_ONLY_LINE.match(line) or _SEPARATOR_LINE.match(line) or _HR_TAG.match(line):
            continue
        meaningful.append(line)
    if not meaningful:
        return True
    return len(" ".join(meaningful).strip()) < 20


def rule_quality_score(
    content: str,
    has_header: bool = False,
    is_qa_pair: bool = False,
    is_table: bool = False,
    is_list: bool = False,
) -> int:
    """Score a rule-based chunk in [0, 100].

    Penalizes size extremes, a missing sentence ending, broken Q&A pairs and
    symbol-heavy text; rewards complete Q&A pairs and structural content.
    """
    score = 100
    n = len(content)
    if n < 50:
        score -= 30
    elif n < 100:
        score -= 20
    if n > 1000:
        score -= 15
    elif n > 800:
        score -= 10

    if not ends_with_complete_sentence(content):
        score -= 15

    has_q = any(m in content for m in ("Q:", "질문:", "문:"))
    has_a = any(m in content for m in ("A:", "답변:", "답:"))
    if has_q and not has_a:
        score -= 30
    elif has_a and not has_q:
        score -= 20

    ratio = len(_MEANINGFUL.findall(content)) / n if n else 0.0
    if ratio < 0.2:
        score -= 30
    elif ratio < 0.3:
        score -= 25

    if is_qa_pair:
        score += 10
    if has_header:
        score += 5
    if is_list:
        score += 3
    if is_table:
        score += 3
    return clamp_score(score)


def _cut_units(content: str, cuts: List[int], starts_header: bool) -> List[_Unit]:
    bounds = [0] + [c for c in cuts if c > 0] + [len(content)]
    units = []
    for start, end in zip(bounds, bounds[1:]):
        seg = trimmed_span(content, start, end)
        if seg is not None:
            units.append(_Unit(seg, starts_header and start in cuts, False))
    return units


def _semantic_units(content: str, structure: DocumentStructure, preserve_structure: bool) -> List[_Unit]:
    if not preserve_structure:
        seg = trimmed_span(content, 0, len(content))
        return [_Unit(seg, False, False)] if seg else []

    if structure.has_qa_pairs:
        units: List[_Unit] = []
        last = 0
        for m in _QA_BLOCK.finditer(content):
            before = trimmed_span(content, last, m.start())
            if before is not None:
                units.append(_Unit(before, False, False))
            pair = trimmed_span(content, m.start(), m.end())
            if pair is not None:
                units.append(_Unit(pair, False, True))
            last = m.end()
        tail = trimmed_span(content, last, len(content))
        if tail is not None:
            units.append(_Unit(tail, False, False))
        if units:
            return units

    if structure.has_headers:
        cuts = [m.start() for m in _HEADER_SECTION.finditer(content)]
        if cuts:
            units = _cut_units(content, cuts, starts_header=True)
            if units:
                return units

    units = []
    for start, end in iter_pieces(content, PARAGRAPH_BREAK):
        seg = trimmed_span(content, start, end)
        if seg is not None:
            units.append(_Unit(seg, False, False))
    return units


def _overlap_start(window: str, overlap: int) -> int:
    """Offset in window where the next window starts, aligned to a sentence start."""
    if overlap <= 0:
        return len(window)
    target = len(window) - overlap
    for boundary in _rule_boundaries(window):
        if target <= boundary < len(window):
            return boundary
    return max(0, target)


def _windows(unit: Segment, max_size: int, overlap: int) -> List[Segment]:
    text = unit.text
    if len(text) <= max_size:
        return [unit]
    out: List[Segment] = []
    pos = 0
    while pos < len(text):
        end = min(pos + max_size, len(text))
        if end < len(text):
            boundaries = _rule_boundaries(text[pos:end])
            if boundaries and boundaries[-1] > max_size * 0.5:
                end = pos + boundaries[-1]
        seg = trimmed_span(text, pos, end, unit.start)
        if seg is not None:
            out.append(seg)
        if end >= len(text):
            break
        next_pos = pos + _overlap_start(text[pos:end], overlap)
        pos = next_pos if next_pos > pos else end
    return out


def rule_based_chunk(
    content: str,
    max_chunk_size: Optional[int] = None,
    overlap: Optional[int] = None,
    preserve_structure: bool = True,
    auto_detect_document_type: bool = True,
) -> List[ChunkDraft]:
    """Chunk a document with structure-aware rules.

    Args:
        content: Full document text.
        max_chunk_size: Window size in characters; when neither size nor overlap
            is given and auto detection is on, the document-type preset is used.
        overlap: Target overlap in characters between consecutive windows.
        preserve_structure: Split on Q&A pairs, headers and paragraphs first.
        auto_detect_document_type: Allow document-type presets.

    Returns:
        List[ChunkDraft]: Typed, scored chunks with offsets into content.
    """
    doc_type = DEFAULT_DOCUMENT_TYPE
    preset = DOCUMENT_TYPE_CONFIGS[doc_type]
    if auto_detect_document_type and max_chunk_size is None and overlap is None:
        doc_type = classify_document_type(content)
        preset = DOCUMENT_TYPE_CONFIGS[doc_type]
    max_size = max_chunk_size if max_chunk_size is not None else preset.max_chunk_size
    overlap = overlap if overlap is not None else preset.overlap
    if max_size <= 0:
        raise ValueError("max_chunk_size must be positive")

    structure = analyze_structure(content)
    drafts: List[ChunkDraft] = []
    for unit in _semantic_units(content, structure, preserve_structure):
        for window in _windows(unit.segment, max_size, overlap):
            if is_header_or_separator_only(window.text):
                continue
            is_table = bool(_TABLE_ROW.search(window.text))
            is_list = any(p.search(window.text) for p in _LIST_ITEM)
            sentence_count = max(1, len(_rule_boundaries(window.text)))
            drafts.append(
                ChunkDraft(
                    content=window.text,
                    type=infer_chunk_type(window.text),
                    index=len(drafts),
                    quality_score=rule_quality_score(
                        window.text, unit.has_header, unit.is_qa_pair, is_table, is_list
                    ),
                    start=window.start,
                    end=window.end,
                    metadata={
                        "documentType": doc_type,
                        "hasHeader": unit.has_header,
                        "isQAPair": unit.is_qa_pair,
                        "isTable": is_table,
                        "isList": is_list,
                        "sentenceCount": sentence_count,
                        "avgSentenceLength": round(len(window.text) / sentence_count),
                        "language": detect_language(window.text),
                        "readabilityScore": readability_score(window.text),
                    },
                )
            )

    logger.debug(
        "rule_based_chunk: document_type=%s max_size=%d overlap=%d chunks=%d",
        doc_type, max_size, overlap, len(drafts),
    )
    return drafts
