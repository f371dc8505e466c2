"""External oracle interfaces and the LLM-backed judge.

The core never talks to a model directly: embeddings come through an
``EmbeddingOracle`` and every language judgement (temporal classification,
curation proposals, rewrites, relationship discovery) through a
``JudgeOracle``. Tests substitute deterministic fakes for both.
"""

from __future__ import annotations

import asyncio
import json
from typing import Any, AsyncIterator, Protocol

from loguru import logger
from pydantic import ValidationError as PydanticValidationError

from .exceptions import OracleUnavailableError
from .models import (
    CurationItem,
    CurationProposal,
    RelationshipProposal,
    RelationshipType,
    TemporalAnnotation,
)


class EmbeddingOracle(Protocol):
    """Text to fixed-length vector."""

    async def embed(self, text: str) -> list[float]:
        ...

    async def embed_batch(self, texts: list[str]) -> list[list[float]]:
        """Order-preserving batch embed."""
        ...


class JudgeOracle(Protocol):
    """Natural-language classifier/judge."""

    async def classify_temporal(self, text: str) -> TemporalAnnotation:
        ...

    async def curate(self, items: list[CurationItem]) -> CurationProposal:
        ...

    async def rewrite(self, text: str) -> str:
        """Return a more definite phrasing, or the text unchanged."""
        ...

    async def classify_relationships(
        self, text: str, other_text: str
    ) -> list[RelationshipProposal]:
        """How the first fact relates to the second; empty when unrelated."""
        ...


class ChatLLM(Protocol):
    """Streaming chat-completion client."""

    def chat_completion(
        self, messages: list[dict[str, Any]], system: str | None = None
    ) -> AsyncIterator[Any]:
        ...


TEMPORAL_SYSTEM_PROMPT = """\
You analyze the temporal aspects of a single fact about a user.

Return a JSON object with:
- "tense": one of "past", "present", "future", "change", "frequency"
- "time_references": list of time expressions found in the text
- "is_current": whether the fact likely still holds (boolean)
- "stability": one of "high", "medium", "low"
- "frequency": one of "one_time", "occasional", "regular", "constant", \
"never", or null
- "likely_to_change": boolean

Return ONLY the JSON object. No markdown, no explanation.
"""

CURATION_SYSTEM_PROMPT = """\
You curate a list of facts remembered about one user, all in one category.
Each fact has an index, its text and a confidence.

Decide which facts to keep, which to remove (uninformative, placeholder, \
or clearly wrong) and which groups say the same thing and should be \
merged into a single clearer statement.

Return a JSON object with:
- "keep": list of indices
- "remove": list of indices
- "merge": list of {"indices": [...], "new_text": "..."}
- "reasoning": short explanation

Every index appears in at most one of keep, remove or a merge group. \
Return ONLY the JSON object. No markdown, no explanation.
"""

REWRITE_SYSTEM_PROMPT = """\
You make remembered facts about a user more precise and definite.
Remove hedging ("might", "maybe", "seems to") and vagueness only when \
the core meaning is maintained. Never add new information.
If the fact cannot be improved without changing its meaning, return it \
unchanged.

Return ONLY the rewritten fact as plain text.
"""

RELATIONSHIP_SYSTEM_PROMPT = """\
You decide how two facts remembered about the same user relate.

Possible relationship types (from the first fact to the second):
- "supports": the first fact makes the second more likely
- "contradicts": the facts cannot both be true
- "elaborates": the first fact adds detail to the second
- "supersedes": the first fact replaces the second
- "causes": the first fact leads to the second
- "follows": the first fact happens after the second
- "precedes": the first fact happens before the second
- "part_of": the first fact is a component of the second
- "related_to": the facts share a topic

Return a JSON object:
{"relationships": [{"relationship_type": "...", "confidence": 0.0-1.0, \
"explanation": "..."}]}

Use an empty list when the facts are unrelated. \
Return ONLY the JSON object. No markdown, no explanation.
"""

_TENSE_ALIASES = {"mixed": "change"}
_RELATIONSHIP_VALUES = frozenset(t.value for t in RelationshipType)


def strip_code_fences(raw: str) -> str:
    """Remove a surrounding markdown code fence, if any."""
    text = raw.strip()
    if text.startswith("```"):
        first_newline = text.find("\n")
        if first_newline != -1:
            text = text[first_newline + 1:]
        if text.endswith("```"):
            text = text[:-3].strip()
    return text


class LLMJudge:
    """JudgeOracle implemented on top of a streaming chat LLM.

    Replies are parsed as JSON and validated into typed payloads; any
    transport, parse or validation failure surfaces as
    ``OracleUnavailableError``.
    """

    def __init__(self, llm: ChatLLM, max_concurrent_calls: int = 2):
        self._llm = llm
        self._semaphore = asyncio.Semaphore(max_concurrent_calls)

    async def _complete(self, prompt: str, system: str) -> str:
        messages = [{"role": "user", "content": prompt}]
        response_parts: list[str] = []
        async with self._semaphore:
            try:
                stream = self._llm.chat_completion(messages=messages, system=system)
                async for chunk in stream:
                    if isinstance(chunk, str):
                        response_parts.append(chunk)
                    elif isinstance(chunk, dict) and chunk.get("type") == "text_delta":
                        response_parts.append(chunk.get("text", ""))
            except Exception as e:
                logger.error(f"Judge LLM call failed: {e}")
                raise OracleUnavailableError("judge", str(e)) from e
        return "".join(response_parts).strip()

    async def _complete_json(self, prompt: str, system: str) -> dict[str, Any]:
        raw = await self._complete(prompt, system)
        try:
            data = json.loads(strip_code_fences(raw))
        except json.JSONDecodeError as e:
            logger.warning(f"Judge returned invalid JSON: {raw[:200]!r}")
            raise OracleUnavailableError("judge", f"invalid JSON: {e}") from e
        if not isinstance(data, dict):
            raise OracleUnavailableError("judge", "expected a JSON object")
        return data

    async def classify_temporal(self, text: str) -> TemporalAnnotation:
        data = await self._complete_json(f'Fact: "{text}"', TEMPORAL_SYSTEM_PROMPT)
        tense = data.get("tense")
        if isinstance(tense, str):
            data["tense"] = _TENSE_ALIASES.get(tense.lower(), tense.lower())
        data["analyzed_by"] = "oracle"
        try:
            return TemporalAnnotation.model_validate(data)
        except PydanticValidationError as e:
            raise OracleUnavailableError("judge", f"bad temporal payload: {e}") from e

    async def curate(self, items: list[CurationItem]) -> CurationProposal:
        listing = "\n".join(
            f"{item.index}. {item.text} (confidence {item.confidence:.2f})"
            for item in items
        )
        data = await self._complete_json(f"Facts:\n{listing}", CURATION_SYSTEM_PROMPT)
        try:
            return CurationProposal.model_validate(data)
        except PydanticValidationError as e:
            raise OracleUnavailableError("judge", f"bad curation payload: {e}") from e

    async def rewrite(self, text: str) -> str:
        rewritten = strip_code_fences(
            await self._complete(f'Fact: "{text}"', REWRITE_SYSTEM_PROMPT)
        )
        rewritten = rewritten.strip().strip('"').strip()
        return rewritten or text

    async def classify_relationships(
        self, text: str, other_text: str
    ) -> list[RelationshipProposal]:
        data = await self._complete_json(
            f'Fact 1: "{text}"\nFact 2: "{other_text}"', RELATIONSHIP_SYSTEM_PROMPT
        )
        raw = data.get("relationships", [])
        if not isinstance(raw, list):
            raise OracleUnavailableError("judge", "relationships must be a list")
        proposals = []
        for item in raw:
            if not isinstance(item, dict):
                continue
            edge_type = str(item.get("relationship_type", "")).lower()
            if edge_type not in _RELATIONSHIP_VALUES:
                edge_type = RelationshipType.RELATED_TO.value
            try:
                proposals.append(
                    RelationshipProposal(
                        edge_type=edge_type,
                        confidence=item.get("confidence", 0.6),
                        explanation=str(item.get("explanation", "")),
                    )
                )
            except PydanticValidationError as e:
                logger.debug(f"Skipping malformed relationship {item!r}: {e}")
        return proposals
