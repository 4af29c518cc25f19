"""Text generation using OpenAI chat completions.

Provides:
- GenerationService: protocol used by semantic chunking and question answering.
- get_client: Cached async OpenAI client.
- OpenAIGenerationService: generate(system_prompt, user_prompt) with usage mapping.
- build_context: Formatting of retrieved chunks into a compact context block.
- generate_answer: Grounded answer generation constrained to provided context.

Configuration is read from docrag.config.settings.
"""
import logging
from typing import List, Optional, Protocol

from openai import AsyncOpenAI

from docrag.config import settings
from docrag.errors import ExternalServiceError
from docrag.schemas import GenerationResult, GenerationUsage, SearchResult
from docrag.usage import UsageTracker, track_usage

logger = logging.getLogger(__name__)

_client: AsyncOpenAI | None = None


class GenerationService(Protocol):
    async def generate(
        self,
        system_prompt: str,
        user_prompt: str,
        *,
        temperature: float = 0.0,
        max_output_tokens: int = 1024,
    ) -> GenerationResult: ...


def get_client() -> AsyncOpenAI:
    """Return a cached AsyncOpenAI client using the configured API key.

    Returns:
        AsyncOpenAI: Client instance reused across calls.
    """
    global _client
    if _client is None:
        _client = AsyncOpenAI(api_key=settings.OPENAI_API_KEY, timeout=settings.EXTERNAL_CALL_TIMEOUT_SECONDS)
    return _client


class OpenAIGenerationService:
    """GenerationService backed by chat completions.

    The system prompt is sent first and unchanged between calls, so the
    provider's automatic prompt caching applies; cached prompt tokens are
    reported as cache_read_tokens.
    """

    def __init__(self, client: AsyncOpenAI | None = None, model: str | None = None):
        self._client = client
        self.model = model or settings.OPENAI_MODEL

    @property
    def client(self) -> AsyncOpenAI:
        return self._client or get_client()

    async def generate(
        self,
        system_prompt: str,
        user_prompt: str,
        *,
        temperature: float = 0.0,
        max_output_tokens: int = 1024,
    ) -> GenerationResult:
        try:
            resp = await self.client.chat.completions.create(
                model=self.model,
                messages=[
                    {"role": "system", "content": system_prompt},
                    {"role": "user", "content": user_prompt},
                ],
                temperature=temperature,
                max_tokens=max_output_tokens,
            )
        except Exception as exc:
            raise ExternalServiceError("generation", str(exc)) from exc

        text = (resp.choices[0].message.content or "").strip()
        usage = GenerationUsage()
        if resp.usage is not None:
            details = getattr(resp.usage, "prompt_tokens_details", None)
            usage = GenerationUsage(
                input_tokens=resp.usage.prompt_tokens,
                output_tokens=resp.usage.completion_tokens,
                cache_read_tokens=getattr(details, "cached_tokens", None),
            )
        return GenerationResult(text=text, usage=usage)


def build_context(results: List[SearchResult]) -> str:
    """Create a compact, enumerated context block from retrieved chunks.

    Args:
        results: Retrieved chunks in rank order.

    Returns:
        str: Block of "[n] document_id" headers followed by chunk text.
    """
    lines: List[str] = []
    for i, r in enumerate(results, start=1):
        topic = r.metadata.get("topic") or ""
        header = f"[{i}] {r.document_id}" + (f" | {topic}" if topic else "")
        lines.append(f"{header}\n{r.content}")
    return "\n\n".join(lines)


ANSWER_SYSTEM_PROMPT = (
    "You are a helpful assistant answering questions about the user's documents. "
    "Use ONLY the provided context passages to answer. If the answer is not clearly supported, say you don't know. "
    "Answer in the language of the question. "
    "Do NOT include citation markers in your answer; citations will be attached by the system."
)


async def generate_answer(
    generator: GenerationService,
    question: str,
    results: List[SearchResult],
    max_tokens: int | None = None,
    usage_tracker: Optional[UsageTracker] = None,
    tenant_id: Optional[str] = None,
) -> GenerationResult:
    """Generate an answer grounded strictly in the retrieved chunks.

    With no chunks the model still answers, and is told no context was found.

    Args:
        generator: Generation service to call.
        question: User question to answer.
        results: Retrieved chunks used as context.
        max_tokens: Optional cap for output tokens; defaults to settings.MAX_OUTPUT_TOKENS.
        usage_tracker: Optional usage tracker.
        tenant_id: Tenant charged for the usage.

    Returns:
        GenerationResult: The generated answer text and token usage.
    """
    context = build_context(results) if results else "(no relevant passages were found)"
    user = (
        f"Question:\n{question}\n\n"
        f"Context passages (use these only):\n{context}\n\n"
        "Provide a clear and complete answer grounded in the context. If unsure, say you don't know."
    )
    result = await generator.generate(
        ANSWER_SYSTEM_PROMPT,
        user,
        temperature=0.2,
        max_output_tokens=max_tokens or settings.MAX_OUTPUT_TOKENS,
    )
    track_usage(usage_tracker, tenant_id, "chat", getattr(generator, "model", "unknown"), result.usage)
    return result
