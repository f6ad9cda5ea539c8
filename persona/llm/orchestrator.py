"""Two-stage persona generation: optional web intel, then persona synthesis.

Default mode makes one synthesis call grounded in any retrieved
knowledge. Search mode first runs a neutral intel-gathering call with the
web search tool, scoped to the latest user message only, then asks the
persona to react to that intel. Synthesis failures propagate; the
search-mode entry point ``generate_with_fallback`` converts any failure
into a fixed, non-cacheable fallback response.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from enum import StrEnum

from persona.config import settings
from persona.knowledge.index import KnowledgeIndex, format_knowledge_context
from persona.llm import client
from persona.llm.client import ensure_api_key
from persona.llm.models import (
    Message,
    PersonaResponse,
    Usage,
    latest_user_message,
    merge_usage,
)
from persona.llm.prompt import (
    NO_INTEL_SENTINEL,
    build_intel_system_prompt,
    build_persona_system_prompt,
)

logger = logging.getLogger(__name__)

MAX_INTEL_PROMPT_CHARS = 2000

_MARKDOWN_LINK = re.compile(r"\[([^\]]+)\]\([^)]+\)")
_BARE_URL = re.compile(r"https?://\S+")
_EXCESS_BLANK_LINES = re.compile(r"\n{3,}")
_HEADING = re.compile(r"^#{1,6}\s+", re.MULTILINE)
_BULLET = re.compile(r"^\s*[-*•]\s+", re.MULTILINE)


class GenerationError(RuntimeError):
    """The upstream model returned no usable text."""


class IntelUnavailableError(GenerationError):
    """The intel-gathering call failed or found nothing."""


# -- Requests ------------------------------------------------------------------


@dataclass(frozen=True)
class DefaultRequest:
    """One synthesis call over the full history."""

    messages: list[Message]
    temperature: float | None = None
    max_output_tokens: int | None = None


@dataclass(frozen=True)
class SearchRequest:
    """Intel call on the latest user message, then synthesis over the full history."""

    messages: list[Message]
    max_output_tokens: int | None = None


PersonaRequest = DefaultRequest | SearchRequest


# -- Intel ---------------------------------------------------------------------


class IntelStatus(StrEnum):
    OK = "ok"
    EMPTY = "empty"
    FAILED = "failed"


@dataclass(frozen=True)
class IntelResult:
    """Outcome of the intel sub-call. ``intel`` is only set when status is OK."""

    status: IntelStatus
    intel: str = ""
    usage: Usage | None = None
    error: str | None = None

    @property
    def ok(self) -> bool:
        return self.status is IntelStatus.OK


def sanitize_intel(text: str) -> str:
    """Drop link markup and bare URLs, collapse runs of blank lines."""
    text = _MARKDOWN_LINK.sub(r"\1", text)
    text = _BARE_URL.sub("", text)
    text = _EXCESS_BLANK_LINES.sub("\n\n", text)
    return text.strip()


def strip_structural_noise(text: str) -> str:
    """Remove heading and bullet markers and em-dashes from persona output."""
    text = _HEADING.sub("", text)
    text = _BULLET.sub("", text)
    text = _EXCESS_BLANK_LINES.sub("\n\n", text)
    return text.replace("—", "-").strip()


def _intel_prompt(messages: list[Message]) -> str:
    latest = latest_user_message(messages).strip()
    if len(latest) > MAX_INTEL_PROMPT_CHARS:
        latest = latest[-MAX_INTEL_PROMPT_CHARS:]
    return latest


async def gather_intel(messages: list[Message], max_output_tokens: int | None = None) -> IntelResult:
    """Fetch neutral live facts for the latest user message.

    Never raises: API errors come back as FAILED, and an empty answer or
    the NO_INTEL sentinel as EMPTY.
    """
    prompt = _intel_prompt(messages)
    if not prompt:
        return IntelResult(IntelStatus.FAILED, error="No user prompt provided for web search")

    try:
        completion = await client.complete(
            [Message(role="user", content=f"User request:\n{prompt}")],
            system=build_intel_system_prompt(),
            temperature=0.2,
            max_tokens=min(max_output_tokens or 400, 600),
            web_search=True,
        )
    except Exception as exc:
        logger.exception("Intel gathering call failed")
        return IntelResult(IntelStatus.FAILED, error=str(exc))

    intel = completion.text.strip()
    if not intel or NO_INTEL_SENTINEL in intel.upper():
        return IntelResult(IntelStatus.EMPTY, usage=completion.usage)

    return IntelResult(IntelStatus.OK, intel=sanitize_intel(intel), usage=completion.usage)


# -- Knowledge -----------------------------------------------------------------


async def retrieve_knowledge(query: str) -> str:
    """Best-effort knowledge context for *query*; '' when nothing relevant."""
    try:
        results = await KnowledgeIndex.get().search(query)
    except Exception:
        logger.warning("Knowledge base search failed, continuing without context", exc_info=True)
        return ""

    if not results:
        return ""

    logger.info(
        "Knowledge base matches found: %d (top score %.3f)", len(results), results[0].score
    )
    return format_knowledge_context(results)


# -- Synthesis -----------------------------------------------------------------


async def _synthesize(
    messages: list[Message],
    *,
    system: str,
    temperature: float,
    max_tokens: int,
) -> tuple[str, str, Usage | None]:
    completion = await client.complete(
        messages, system=system, temperature=temperature, max_tokens=max_tokens
    )
    if not completion.text:
        logger.warning("Claude response missing text output (model=%s)", completion.model)
        raise GenerationError("No content returned from the model")
    return strip_structural_noise(completion.text), completion.model, completion.usage


async def _run_default(request: DefaultRequest) -> PersonaResponse:
    knowledge = await retrieve_knowledge(latest_user_message(request.messages))
    system = build_persona_system_prompt(knowledge_context=knowledge)
    default_budget = 800 if knowledge else 400

    text, model, usage = await _synthesize(
        request.messages,
        system=system,
        temperature=0.6 if request.temperature is None else request.temperature,
        max_tokens=request.max_output_tokens or default_budget,
    )
    return PersonaResponse(text=text, model=model, usage=merge_usage(usage))


async def _run_search(request: SearchRequest) -> PersonaResponse:
    knowledge = await retrieve_knowledge(latest_user_message(request.messages))

    intel = await gather_intel(request.messages, request.max_output_tokens)
    if not intel.ok:
        raise IntelUnavailableError(
            intel.error or "Web search returned no usable intel"
        )

    system = build_persona_system_prompt(knowledge_context=knowledge, intel=intel.intel)
    text, model, usage = await _synthesize(
        request.messages,
        system=system,
        temperature=0.7,
        max_tokens=min(request.max_output_tokens or 600, 800),
    )
    return PersonaResponse(text=text, model=model, usage=merge_usage(intel.usage, usage))


async def run(request: PersonaRequest) -> PersonaResponse:
    """Execute a tagged persona request."""
    ensure_api_key()
    if isinstance(request, SearchRequest):
        return await _run_search(request)
    return await _run_default(request)


async def generate(
    messages: list[Message],
    *,
    temperature: float | None = None,
    max_output_tokens: int | None = None,
    enable_search: bool = False,
) -> PersonaResponse:
    """Generate a persona response. Errors propagate to the caller."""
    if enable_search:
        request: PersonaRequest = SearchRequest(messages, max_output_tokens=max_output_tokens)
    else:
        request = DefaultRequest(
            messages, temperature=temperature, max_output_tokens=max_output_tokens
        )
    return await run(request)


def fallback_response(message: str | None = None) -> PersonaResponse:
    return PersonaResponse(
        text=message or settings.search_fallback_message,
        model=settings.claude_model,
        used_fallback=True,
    )


async def generate_with_fallback(
    messages: list[Message],
    *,
    max_output_tokens: int | None = None,
    fallback_message: str | None = None,
) -> PersonaResponse:
    """Search-mode generation that never raises.

    Any failure, in the intel call or in synthesis, yields the fixed
    fallback response flagged ``used_fallback``.
    """
    try:
        return await generate(
            messages, max_output_tokens=max_output_tokens, enable_search=True
        )
    except Exception:
        logger.exception("Search-backed persona response failed")
        return fallback_response(fallback_message)
