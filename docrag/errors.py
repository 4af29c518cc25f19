"""Error taxonomy shared by the chunking and retrieval pipeline.

- DocRagError: base class for everything raised by this package.
- ExternalServiceError: an embedding, generation or store call failed or timed out.
- RetrievalError: no search path produced data (dense and sparse both failed).
- CacheError: a response-cache maintenance operation failed.
- ParseFailure: value (not an exception) describing unusable LLM output.
"""
from dataclasses import dataclass


class DocRagError(Exception):
    """Base class for package errors."""


class ExternalServiceError(DocRagError):
    """An external collaborator (embedding, generation, store) failed.

    Attributes:
        service: Short name of the failing collaborator, e.g. "embedding".
    """

    def __init__(self, service: str, message: str):
        super().__init__(f"{service}: {message}")
        self.service = service


class RetrievalError(ExternalServiceError):
    """Both dense and sparse search failed; there is no data path left."""

    def __init__(self, message: str):
        super().__init__("retrieval", message)


class CacheError(DocRagError):
    """Response cache cleanup or invalidation failed."""


@dataclass(frozen=True)
class ParseFailure:
    """Typed result for generation output that could not be used as chunks.

    Attributes:
        reason: Why parsing failed (no array, invalid JSON, schema mismatch, empty).
        preview: First characters of the raw response, for logging.
    """
    reason: str
    preview: str = ""
