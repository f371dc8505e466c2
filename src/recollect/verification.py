"""Confidence lifecycle and the verification question/answer protocol.

State machine per memory::

    UNVERIFIED -> AWAITING_RESPONSE -> VERIFIED
                                    -> CONTRADICTED
                                    -> UNVERIFIED   (ambiguous answer)

A question left unanswered is asked again once it is older than
``reask_after_hours``.

Response classification tries explicit confirm/deny phrases first and only
then falls back to embedding similarity between the answer and the memory.
"""

from __future__ import annotations

import re
from datetime import datetime, timedelta

from loguru import logger

from .config import MemoryConfig
from .confidence import contradicted_confidence
from .exceptions import ConflictError
from .graph import RelationshipGraph
from .memory_store import MemoryStore
from .models import (
    Ambiguous,
    Confirmed,
    Denied,
    Memory,
    MemoryCategory,
    MemoryType,
    OwnerKey,
    RelationshipType,
    VerificationOutcome,
    VerificationResult,
    VerificationState,
    utcnow,
)
from .text import normalize_text

CONFIRM_PATTERN = re.compile(
    r"^\s*(?:yes|yeah|yep|yup|correct|right|that's right|that is right|exactly|"
    r"true|affirmative|indeed|absolutely|definitely)\b",
    re.IGNORECASE,
)
DENY_PATTERN = re.compile(
    r"^\s*(?:no|nope|nah|incorrect|wrong|that's wrong|that is wrong|not true|"
    r"negative|never|not at all|not really)\b",
    re.IGNORECASE,
)

_LEADING_FILLER = re.compile(
    r"^\s*(?:no|nope|nah|wrong|incorrect|not really|actually|well)\b[\s,.!;:-]*",
    re.IGNORECASE,
)
_ACTUALLY = re.compile(r"\bactually\b[\s,]*(.+)", re.IGNORECASE)
_ITS = re.compile(r"\b(?:it's|it is)\s+(.+)", re.IGNORECASE)
_FIRST_PERSON = re.compile(r"\b(I\b.+|my\s.+)", re.IGNORECASE)

_STATEMENT_VERBS = (
    "is", "are", "has", "lives", "works", "studies", "likes", "loves",
    "hates", "prefers", "enjoys", "owns", "plays",
)
_VERB_PHRASE = re.compile(
    r"^(.*?\b(?:" + "|".join(_STATEMENT_VERBS) + r")\b)(?:\s+(as|in|at|on|for|with)\b)?",
    re.IGNORECASE,
)
_NEGATED = re.compile(
    r"^(?:not|i\s+(?:don't|do\s+not|didn't|did\s+not|never|am\s+not)|i'm\s+not)\b",
    re.IGNORECASE,
)
_UNCHANGED_VERBS = frozenset(
    {"was", "can", "will", "could", "should", "would", "might", "must", "did", "used"}
)
_IRREGULAR_VERBS = {"have": "has", "do": "does", "go": "goes", "be": "is", "am": "is"}


def third_person(verb: str) -> str:
    """Conjugate a first-person present verb for a third-person subject."""
    lowered = verb.lower()
    if lowered in _IRREGULAR_VERBS:
        return _IRREGULAR_VERBS[lowered]
    if lowered in _UNCHANGED_VERBS or lowered.endswith("ed"):
        return verb
    if re.search(r"(?:s|sh|ch|x|z|o)$", lowered):
        return verb + "es"
    if re.search(r"[^aeiou]y$", lowered):
        return verb[:-1] + "ies"
    return verb + "s"


def to_user_statement(fragment: str, memory_text: str) -> str | None:
    """Turn a correction fragment into a "User ..." statement.

    First-person fragments are rewritten to third person; a bare object is
    spliced into the verb phrase of the memory being corrected.
    """
    fragment = _LEADING_FILLER.sub("", fragment.strip())
    fragment = _LEADING_FILLER.sub("", fragment).strip().rstrip(".!?").strip()
    if not fragment or _NEGATED.match(fragment):
        return None

    m = re.match(r"^(?:i am|i'm|im)\s+(.+)", fragment, re.IGNORECASE)
    if m:
        return f"User is {m.group(1)}"
    m = re.match(r"^my\s+(.+)", fragment, re.IGNORECASE)
    if m:
        return f"User's {m.group(1)}"
    m = re.match(r"^i\s+(\w+)\b\s*(.*)", fragment, re.IGNORECASE)
    if m:
        return " ".join(part for part in ("User", third_person(m.group(1)), m.group(2)) if part)
    if re.match(r"^user\b", fragment, re.IGNORECASE):
        return "User" + fragment[4:]

    m = _VERB_PHRASE.match(memory_text)
    if m:
        prefix, preposition = m.group(1), m.group(2)
        if preposition and not re.match(
            rf"^{preposition}\b", fragment, re.IGNORECASE
        ):
            prefix = f"{prefix} {preposition}"
        return f"{prefix} {fragment}"
    return f"User {fragment}"


def extract_correction(
    response: str, memory_text: str, allow_first_person: bool = True
) -> str | None:
    """Find a replacement fact inside a denial, if the user gave one."""
    patterns = [_ACTUALLY, _ITS]
    if allow_first_person:
        patterns.append(_FIRST_PERSON)
    for pattern in patterns:
        m = pattern.search(response)
        if m:
            statement = to_user_statement(m.group(1), memory_text)
            if statement:
                return statement
    if allow_first_person:
        # "No, a teacher."
        remainder = _LEADING_FILLER.sub("", response.strip())
        if remainder and remainder != response.strip():
            return to_user_statement(remainder, memory_text)
    return None


def _second_person(text: str) -> str:
    text = re.sub(r"^User's\b", "your", text, flags=re.IGNORECASE)
    m = re.match(r"^User\s+(\w+)\b(.*)$", text, re.IGNORECASE)
    if not m:
        return text
    verb, rest = m.group(1).lower(), m.group(2)
    base = {"is": "are", "has": "have", "does": "do", "was": "were"}.get(verb)
    if base is None:
        if verb.endswith("ies"):
            base = verb[:-3] + "y"
        elif re.search(r"(?:sses|shes|ches|xes|zes|oes)$", verb):
            base = verb[:-2]
        elif verb.endswith("s") and not verb.endswith("ss"):
            base = verb[:-1]
        else:
            base = verb
    return f"you {base}{rest}"


class VerificationProtocol:
    """Turns uncertain memories into verified or corrected ones."""

    def __init__(
        self,
        memories: MemoryStore,
        graph: RelationshipGraph,
        config: MemoryConfig | None = None,
    ):
        self._memories = memories
        self._graph = graph
        self._config = config or MemoryConfig()

    async def candidates(
        self,
        owner: OwnerKey,
        limit: int | None = None,
        now: datetime | None = None,
    ) -> list[Memory]:
        """Unverified intuited memories in the uncertain confidence band.

        A memory whose question went unanswered for ``reask_after_hours`` is
        offered again.
        """
        cfg = self._config.verification
        asked_before = (now or utcnow()) - timedelta(hours=cfg.reask_after_hours)
        return await self._memories.db.list_verification_candidates(
            owner,
            cfg.candidate_min_confidence,
            cfg.candidate_max_confidence,
            limit if limit is not None else cfg.batch_size,
            asked_before=asked_before,
        )

    @staticmethod
    def question_for(memory: Memory) -> str:
        fact = _second_person(memory.text.rstrip("."))
        if memory.category == MemoryCategory.PERSONAL:
            return f"I think I remember that {fact}. Is that right?"
        if memory.category == MemoryCategory.PREFERENCES:
            return f"I remember you mentioned that {fact}. Is that accurate?"
        if memory.category == MemoryCategory.HOBBIES:
            return f"I recall that {fact}. Do you still do that?"
        if memory.category == MemoryCategory.PROFESSIONAL:
            return f"I believe you mentioned that {fact}. Is that correct?"
        return f"I seem to remember that {fact}. Is that right?"

    async def next_question(
        self, owner: OwnerKey, now: datetime | None = None
    ) -> tuple[Memory, str] | None:
        """Pick the top candidate and mark it as awaiting an answer."""
        now = now or utcnow()
        candidates = await self.candidates(owner, limit=1, now=now)
        if not candidates:
            return None
        memory = candidates[0]
        await self._memories.db.update_verification(
            memory.id, state=VerificationState.AWAITING_RESPONSE, asked_at=now
        )
        memory.verification_state = VerificationState.AWAITING_RESPONSE
        memory.asked_at = now
        return memory, self.question_for(memory)

    async def classify(self, response: str, memory: Memory) -> VerificationOutcome:
        """Classify an answer about ``memory``.

        Raises:
            OracleUnavailableError: The similarity fallback could not embed
        """
        text = response.strip().replace("’", "'")
        if not text:
            return Ambiguous()
        if CONFIRM_PATTERN.match(text):
            return Confirmed(via="pattern")
        if DENY_PATTERN.match(text):
            return Denied(via="pattern", correction=extract_correction(text, memory.text))

        cfg = self._config.verification
        index = self._memories.index
        similarity = index.similarity(await index.embed(text), memory.embedding)
        if similarity > cfg.confirm_similarity:
            return Confirmed(via="similarity")
        if similarity < cfg.deny_similarity:
            return Denied(
                via="similarity",
                correction=extract_correction(
                    text, memory.text, allow_first_person=False
                ),
            )
        return Ambiguous(similarity=similarity)

    async def record_response(
        self, owner: OwnerKey, memory_id: str, response: str
    ) -> VerificationResult:
        """Apply a user's answer to a verification question.

        The caller holds the owner lock.

        Raises:
            NotFoundError: Unknown memory for this owner
            ConflictError: Memory is already verified or contradicted
            OracleUnavailableError: Classification or correction embedding failed
        """
        memory = await self._memories.get(memory_id, owner)
        if memory.verification_state not in (
            VerificationState.UNVERIFIED,
            VerificationState.AWAITING_RESPONSE,
        ):
            raise ConflictError(
                f"Memory {memory_id} is {memory.verification_state.value}; "
                "no verification pending"
            )

        outcome = await self.classify(response, memory)
        result = VerificationResult(memory_id=memory_id, outcome=outcome)

        if isinstance(outcome, Confirmed):
            await self._confirm(memory)
        elif isinstance(outcome, Denied):
            result.correction_id = await self._deny(memory, outcome.correction)
        elif memory.verification_state == VerificationState.AWAITING_RESPONSE:
            await self._memories.db.update_verification(
                memory_id, state=VerificationState.UNVERIFIED
            )
            logger.debug(f"Ambiguous verification answer for {memory_id}")
        return result

    async def _confirm(self, memory: Memory) -> None:
        cfg = self._config.verification
        async with self._memories.db.transaction():
            await self._memories.db.update_verification(
                memory.id,
                state=VerificationState.VERIFIED,
                verified=True,
                source="user_confirmation",
                verified_at=utcnow(),
            )
            await self._memories.update_confidence(
                memory.id, cfg.verified_confidence, "verification_confirmed"
            )
        logger.info(f"Memory {memory.id} verified by user confirmation")

    async def _deny(self, memory: Memory, correction: str | None) -> str | None:
        cfg = self._config.verification
        replacement: Memory | None = None
        if correction and normalize_text(correction) != normalize_text(memory.text):
            # Embed before touching the store so an oracle failure aborts cleanly.
            replacement = await self._memories.prepare(
                memory.owner,
                correction,
                memory.category,
                MemoryType.EXPLICIT,
                cfg.correction_confidence,
                source="user_correction",
            )
            replacement.verification_source = "user_correction"

        new_confidence = contradicted_confidence(
            memory.confidence, memory.contradiction_count, self._config.confidence
        )
        async with self._memories.db.transaction():
            await self._memories.db.update_verification(
                memory.id,
                state=VerificationState.CONTRADICTED,
                verified=False,
                source="user_denial",
                contradiction_count=memory.contradiction_count + 1,
            )
            await self._memories.update_confidence(
                memory.id, new_confidence, "verification_denied"
            )
            if replacement is None:
                logger.info(f"Memory {memory.id} contradicted by user")
                return None

            await self._memories.db.set_active(memory.id, False)
            stored = await self._memories.insert(replacement)
            await self._graph.add_edge(
                stored.id, memory.id, RelationshipType.SUPERSEDES, 1.0
            )
        logger.info(
            f"Memory {memory.id} contradicted; superseded by {stored.id} "
            f"({stored.text!r})"
        )
        return stored.id
