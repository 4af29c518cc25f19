"""BPE token counting for embedding inputs.

Provides:
- get_encoding: cached tiktoken encoding (cl100k_base by default, the encoding
  behind text-embedding-3-*).
- count_tokens: exact token count of a text.
- truncate_to_tokens: longest prefix of a text that fits a token budget.
"""
from functools import lru_cache

import tiktoken

from docrag.config import settings


@lru_cache(maxsize=4)
def get_encoding(name: str | None = None) -> tiktoken.Encoding:
    return tiktoken.get_encoding(name or settings.EMBEDDING_TOKEN_ENCODING)


def count_tokens(text: str) -> int:
    """Count BPE tokens using the configured embedding encoding."""
    if not text:
        return 0
    return len(get_encoding().encode(text, disallowed_special=()))


def truncate_to_tokens(text: str, max_tokens: int) -> str:
    """Return text unchanged when it fits max_tokens, else its longest fitting prefix.

    The cut is made on a character boundary, so the result is always a true
    prefix of text even when the last kept token ends inside a multi-byte
    character.
    """
    if count_tokens(text) <= max_tokens:
        return text
    return text[:fit_prefix(text, 0, len(text), max_tokens)]


def fit_prefix(text: str, start: int, end: int, max_tokens: int) -> int:
    """Largest cut in (start, end] with count_tokens(text[start:cut]) <= max_tokens.

    Binary search over the character range. Returns start + 1 when even a single
    character exceeds the budget, so callers always make progress.
    """
    lo, hi = start + 1, end
    best = start + 1
    while lo <= hi:
        mid = (lo + hi) // 2
        if count_tokens(text[start:mid]) <= max_tokens:
            best = mid
            lo = mid + 1
        else:
            hi = mid - 1
    return best
