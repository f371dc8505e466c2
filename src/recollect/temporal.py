"""Temporal Analyzer.

Annotates memories with tense, currency, stability and frequency, and
detects contradictions between an owner's memories from those annotations.
Local marker-word heuristics run first; the judge oracle is consulted only
for texts whose marker mix is complex enough to need it.
"""

from __future__ import annotations

import re
from datetime import datetime
from enum import Enum
from itertools import combinations
from typing import TYPE_CHECKING

from loguru import logger

from .config import TemporalConfig
from .exceptions import MemorySystemError
from .models import (
    AnalysisReport,
    Contradiction,
    Frequency,
    Memory,
    OwnerKey,
    RelationshipType,
    Stability,
    TemporalAnnotation,
    Tense,
    utcnow,
)
from .text import extract_key_terms, terms_related

if TYPE_CHECKING:
    from .graph import RelationshipGraph
    from .locks import OwnerLocks
    from .memory_store import MemoryStore
    from .oracle import JudgeOracle


def _markers(*phrases: str) -> re.Pattern[str]:
    return re.compile(r"\b(?:" + "|".join(phrases) + r")\b", re.IGNORECASE)


_TENSE_MARKERS: dict[Tense, re.Pattern[str]] = {
    Tense.PRESENT: _markers(
        "now", "currently", "lately", "these days", "at the moment", "presently"
    ),
    Tense.PAST: _markers(
        "yesterday", r"last (?:week|month|year)", "previously", "formerly",
        "used to", "before", "ago", "in the past",
    ),
    Tense.FUTURE: _markers(
        "tomorrow", r"next (?:week|month|year)", "soon", "planning to",
        "going to", "will", "intends to", "wants to",
    ),
    Tense.CHANGE: _markers(
        "changed", "switched", "upgraded", "started", "stopped", "no longer"
    ),
    Tense.FREQUENCY: _markers(
        "always", "never", "sometimes", "occasionally", "rarely", "frequently",
        "often", "regularly", "once", r"every (?:day|week|month|year)",
    ),
}

# Dominance ties resolve in this order.
_TENSE_PRIORITY = (Tense.CHANGE, Tense.PAST, Tense.FUTURE, Tense.PRESENT, Tense.FREQUENCY)

_FREQUENCY_WORDS: dict[str, Frequency] = {
    "always": Frequency.CONSTANT,
    "never": Frequency.NEVER,
    "often": Frequency.REGULAR,
    "frequently": Frequency.REGULAR,
    "regularly": Frequency.REGULAR,
    "sometimes": Frequency.OCCASIONAL,
    "occasionally": Frequency.OCCASIONAL,
    "rarely": Frequency.OCCASIONAL,
    "once": Frequency.ONE_TIME,
}

_ABSOLUTE_FREQUENCIES = {Frequency.CONSTANT, Frequency.NEVER}


class TimePeriod(str, Enum):
    RECENT = "recent"
    THIS_WEEK = "this_week"
    THIS_MONTH = "this_month"
    THIS_YEAR = "this_year"
    OLDER = "older"


def local_analysis(text: str) -> tuple[TemporalAnnotation, float]:
    """Marker-word annotation of ``text`` and its complexity in [0, 1]."""
    found: dict[Tense, list[str]] = {}
    for tense, pattern in _TENSE_MARKERS.items():
        hits = [m.group(0).lower() for m in pattern.finditer(text)]
        if hits:
            found[tense] = hits

    total = sum(len(hits) for hits in found.values())
    complexity = min(1.0, total / 2)
    if len(found) > 1:
        complexity = min(1.0, complexity + 0.25)

    tense = Tense.PRESENT
    if found:
        tense = max(
            found,
            key=lambda t: (len(found[t]), -_TENSE_PRIORITY.index(t)),
        )

    frequency = None
    for word in found.get(Tense.FREQUENCY, []):
        if word.startswith("every"):
            frequency = Frequency.REGULAR
        else:
            frequency = _FREQUENCY_WORDS.get(word)
        if frequency is not None:
            break

    if tense in (Tense.CHANGE, Tense.FUTURE):
        stability = Stability.LOW
    elif frequency == Frequency.CONSTANT:
        stability = Stability.HIGH
    else:
        stability = Stability.MEDIUM

    annotation = TemporalAnnotation(
        tense=tense,
        is_current=tense != Tense.PAST,
        stability=stability,
        frequency=frequency,
        time_references=[hit for hits in found.values() for hit in hits],
        likely_to_change=stability == Stability.LOW,
        analyzed_by="local",
    )
    return annotation, complexity


def time_period(memory: Memory, now: datetime | None = None) -> TimePeriod:
    """Bucket a memory's age."""
    age_days = ((now or utcnow()) - memory.created_at).total_seconds() / 86400
    if age_days <= 1:
        return TimePeriod.RECENT
    if age_days <= 7:
        return TimePeriod.THIS_WEEK
    if age_days <= 30:
        return TimePeriod.THIS_MONTH
    if age_days <= 365:
        return TimePeriod.THIS_YEAR
    return TimePeriod.OLDER


def contradiction_rule(
    newer: TemporalAnnotation, older: TemporalAnnotation
) -> tuple[str, float] | None:
    """First rule of the contradiction table that fires, if any."""
    if (
        older.is_current
        and older.stability == Stability.HIGH
        and newer.tense == Tense.CHANGE
    ):
        return "stability_change", 0.85
    if newer.is_current and not older.is_current and older.tense == Tense.PRESENT:
        return "tense_mismatch", 0.8
    if (
        newer.frequency in _ABSOLUTE_FREQUENCIES
        and older.frequency in _ABSOLUTE_FREQUENCIES
        and newer.frequency != older.frequency
    ):
        return "frequency_mismatch", 0.75
    return None


class TemporalAnalyzer:
    """Annotates memories and links temporally contradictory pairs."""

    def __init__(
        self,
        memories: MemoryStore,
        graph: RelationshipGraph,
        judge: JudgeOracle | None = None,
        config: TemporalConfig | None = None,
        locks: OwnerLocks | None = None,
    ):
        self._memories = memories
        self._graph = graph
        self._judge = judge
        self._config = config or TemporalConfig()
        self._locks = locks
        self.oracle_calls = 0

    def set_judge(self, judge: JudgeOracle | None) -> None:
        self._judge = judge

    async def analyze(self, memory: Memory | str) -> TemporalAnnotation:
        """Annotate a memory (or raw text).

        Raises:
            OracleUnavailableError: The oracle was needed and failed
        """
        text = memory.text if isinstance(memory, Memory) else memory
        annotation, complexity = local_analysis(text)
        if self._judge is None or complexity <= self._config.complexity_threshold:
            return annotation

        self.oracle_calls += 1
        judged = await self._judge.classify_temporal(text)
        references = list(dict.fromkeys(annotation.time_references + judged.time_references))
        return judged.model_copy(
            update={"time_references": references, "analyzed_by": "oracle"}
        )

    async def annotate(self, memory_id: str) -> TemporalAnnotation:
        """Analyze and persist the annotation of one memory."""
        memory = await self._memories.get(memory_id)
        annotation = await self.analyze(memory)
        await self._memories.db.update_temporal(memory_id, annotation)
        return annotation

    async def find_contradictions(self, owner: OwnerKey) -> list[Contradiction]:
        """Pairwise rule check over related memories of one owner.

        Each fired rule upserts a ``contradicts`` edge from the newer memory
        to the older one.
        """
        memories = await self._memories.list_memories(owner)
        prepared = []
        for memory in memories:
            annotation = memory.temporal or local_analysis(memory.text)[0]
            prepared.append((memory, annotation, extract_key_terms(memory.text)))

        found: list[Contradiction] = []
        for first, second in combinations(prepared, 2):
            if not terms_related(first[2], second[2]):
                continue
            newer, older = sorted(
                (first, second),
                key=lambda p: p[0].created_at,
                reverse=True,
            )
            fired = contradiction_rule(newer[1], older[1])
            if fired is None:
                continue
            rule, confidence = fired
            await self._graph.add_edge(
                newer[0].id, older[0].id, RelationshipType.CONTRADICTS, confidence
            )
            found.append(
                Contradiction(
                    newer_id=newer[0].id,
                    older_id=older[0].id,
                    rule=rule,
                    confidence=confidence,
                )
            )

        if found:
            logger.info(f"Found {len(found)} temporal contradictions for {owner}")
        return found

    async def _analyze_owner(self, owner: OwnerKey, report: AnalysisReport) -> None:
        pending = await self._memories.db.list_memories(
            owner, unannotated_only=True, limit=self._config.batch_size
        )
        calls_before = self.oracle_calls
        for memory in pending:
            try:
                await self.annotate(memory.id)
                report.annotated += 1
            except MemorySystemError as e:
                report.errors += 1
                logger.warning(f"Temporal annotation failed for {memory.id}: {e}")
        report.oracle_calls += self.oracle_calls - calls_before
        report.contradictions.extend(await self.find_contradictions(owner))

    async def analyze_once(self, owner: OwnerKey | None = None) -> AnalysisReport:
        """Annotate unannotated memories and refresh contradiction edges.

        Covers one owner, or every owner with active memories.
        """
        report = AnalysisReport()
        if owner is not None:
            owners = [owner]
        else:
            owners = [key for key, _ in await self._memories.db.list_owners()]

        for key in owners:
            try:
                if self._locks is not None:
                    async with self._locks.hold(key):
                        await self._analyze_owner(key, report)
                else:
                    await self._analyze_owner(key, report)
            except MemorySystemError as e:
                report.errors += 1
                logger.warning(f"Temporal analysis failed for {key}: {e}")
        return report
