"""Curation Engine: the periodic maintenance pipeline.

Stages run in a fixed order:

1. scan_problematic   - hard-delete uninformative unverified intuited memories
2. merge_similar      - collapse near-identical memories within a category
3. recategorize       - move memories whose keywords point elsewhere
4. improve_quality    - ask the judge for definite rewrites of hedged text
5. oracle_curate      - judge-proposed keep/remove/merge for busy owners

followed by confidence decay. Each stage works owner by owner under the
owner lock. A failing item or stage is logged and skipped; the run always
continues. Cancellation is honoured only between stages.
"""

from __future__ import annotations

import asyncio
import re
from collections import defaultdict
from datetime import datetime
from itertools import combinations

from loguru import logger

from .categorizer import categorize
from .confidence import decayed_confidence
from .config import MemoryConfig
from .exceptions import DuplicateConflictError, MemorySystemError
from .graph import RelationshipGraph
from .locks import OwnerLocks
from .memory_store import MemoryStore
from .models import (
    CurationItem,
    CurationReport,
    Memory,
    MemoryCategory,
    MemoryType,
    OwnerKey,
    RelationshipType,
    StageReport,
    VerificationState,
    utcnow,
)
from .oracle import JudgeOracle
from .text import lexical_similarity, normalize_text

PROBLEMATIC_PATTERNS = (
    re.compile(r"\bnot (?:provided|mentioned|specified|given|stated)\b", re.IGNORECASE),
    re.compile(r"\bunknown\b", re.IGNORECASE),
    re.compile(r"\bno (?:information|data|details)\b", re.IGNORECASE),
    re.compile(
        r"\b(?:didn't|did not|doesn't|does not|hasn't|has not) "
        r"(?:provide|mention|specify|state)\b",
        re.IGNORECASE,
    ),
    re.compile(r"\b(?:unclear|uncertain|unsure)\b", re.IGNORECASE),
)

HEDGING_PATTERN = re.compile(
    r"\b(?:might|maybe|perhaps|possibly|probably|appears to|seems to|could be|"
    r"something|several|various|a few)\b",
    re.IGNORECASE,
)

STAGES = (
    "scan_problematic",
    "merge_similar",
    "recategorize",
    "improve_quality",
    "oracle_curate",
)


def is_problematic(text: str) -> bool:
    return any(pattern.search(text) for pattern in PROBLEMATIC_PATTERNS)


def _merge_reports(total: StageReport, part: StageReport) -> None:
    total.examined += part.examined
    total.changed += part.changed
    total.errors += part.errors
    total.skipped = total.skipped and part.skipped


class CurationEngine:
    """Runs the maintenance stages over the memory store."""

    def __init__(
        self,
        memories: MemoryStore,
        graph: RelationshipGraph,
        judge: JudgeOracle | None = None,
        config: MemoryConfig | None = None,
        locks: OwnerLocks | None = None,
    ):
        self._memories = memories
        self._graph = graph
        self._judge = judge
        self._config = config or MemoryConfig()
        self._locks = locks or OwnerLocks()

    def set_judge(self, judge: JudgeOracle | None) -> None:
        self._judge = judge

    @property
    def _db(self):
        return self._memories.db

    # ------------------------------------------------------------------
    # Pipeline
    # ------------------------------------------------------------------

    async def run_once(
        self,
        cancel_event: asyncio.Event | None = None,
        owners: list[OwnerKey] | None = None,
        now: datetime | None = None,
    ) -> CurationReport:
        """Run every stage once, then decay.

        Args:
            cancel_event: Checked before each stage; when set the run stops
            owners: Restrict the run to these owners (default: all)
            now: Clock override for decay

        Returns:
            Per-stage report
        """
        report = CurationReport()
        if owners is None:
            owners = [key for key, _ in await self._db.list_owners()]
        logger.info(f"Maintenance run starting for {len(owners)} owners")

        for name in (*STAGES, "decay"):
            if cancel_event is not None and cancel_event.is_set():
                report.cancelled = True
                logger.info(f"Maintenance run cancelled before stage {name}")
                break

            stage_report = StageReport(name=name, skipped=True)
            stage_owners = owners
            if name == "oracle_curate":
                try:
                    stage_owners = await self._oracle_owners(owners)
                except MemorySystemError as e:
                    stage_report.errors += 1
                    stage_owners = []
                    logger.warning(f"Could not rank owners for {name}: {e}")
            for owner in stage_owners:
                try:
                    if name == "decay":
                        part = await self.apply_decay(owner, now)
                    else:
                        part = await getattr(self, name)(owner)
                except Exception as e:
                    stage_report.errors += 1
                    logger.warning(f"Maintenance stage {name} failed for {owner}: {e}")
                    continue
                _merge_reports(stage_report, part)
            report.stages.append(stage_report)
            logger.debug(
                f"Stage {name}: examined={stage_report.examined} "
                f"changed={stage_report.changed} errors={stage_report.errors}"
            )

        report.finished_at = utcnow()
        logger.info(
            "Maintenance run finished: "
            + ", ".join(f"{s.name}={s.changed}" for s in report.stages)
        )
        return report

    async def _oracle_owners(self, owners: list[OwnerKey]) -> list[OwnerKey]:
        """Highest-volume owners, the only ones worth an oracle pass."""
        if self._judge is None:
            return []
        wanted = set(owners)
        ranked = [key for key, _ in await self._db.list_owners() if key in wanted]
        return ranked[: self._config.curation.oracle_top_owners]

    # ------------------------------------------------------------------
    # Stage 1: uninformative text
    # ------------------------------------------------------------------

    async def scan_problematic(self, owner: OwnerKey) -> StageReport:
        report = StageReport(name="scan_problematic")
        async with self._locks.hold(owner):
            for memory in await self._memories.list_memories(owner):
                report.examined += 1
                if memory.verified or memory.memory_type != MemoryType.INTUITED:
                    continue
                if not is_problematic(memory.text):
                    continue
                try:
                    await self._memories.hard_delete(memory.id)
                    report.changed += 1
                    logger.info(f"Removed uninformative memory {memory.id}: {memory.text!r}")
                except MemorySystemError as e:
                    report.errors += 1
                    logger.warning(f"Could not remove {memory.id}: {e}")
        return report

    # ------------------------------------------------------------------
    # Stage 2: lexical duplicates
    # ------------------------------------------------------------------

    async def merge_similar(self, owner: OwnerKey) -> StageReport:
        report = StageReport(name="merge_similar")
        threshold = self._config.curation.merge_similarity_threshold
        async with self._locks.hold(owner):
            by_category: dict[MemoryCategory, list[Memory]] = defaultdict(list)
            for memory in await self._memories.list_memories(owner):
                by_category[memory.category].append(memory)

            for memories in by_category.values():
                gone: set[str] = set()
                for a, b in combinations(memories, 2):
                    if a.id in gone or b.id in gone:
                        continue
                    report.examined += 1
                    if lexical_similarity(a.text, b.text) <= threshold:
                        continue
                    pair = self._choose_survivor(a, b)
                    if pair is None:
                        logger.debug(f"Skipping protected duplicate pair {a.id}/{b.id}")
                        continue
                    keep, discard = pair
                    try:
                        await self._absorb_duplicate(keep, discard)
                    except MemorySystemError as e:
                        report.errors += 1
                        logger.warning(f"Duplicate merge {discard.id}->{keep.id} failed: {e}")
                        continue
                    gone.add(discard.id)
                    report.changed += 1
        return report

    @staticmethod
    def _choose_survivor(a: Memory, b: Memory) -> tuple[Memory, Memory] | None:
        """(keep, discard), or None when both are protected from deletion."""
        keep, discard = sorted(
            (a, b), key=lambda m: (m.confidence, m.verified, -m.created_at.timestamp()),
            reverse=True,
        )
        if discard.is_protected:
            if keep.is_protected:
                return None
            keep, discard = discard, keep
        return keep, discard

    async def _absorb_duplicate(self, keep: Memory, discard: Memory) -> None:
        async with self._db.transaction():
            await self._db.migrate_edges([discard.id], keep.id)
            if discard.confidence > keep.confidence:
                await self._memories.update_confidence(
                    keep.id, discard.confidence, "merge_duplicate"
                )
            await self._db.delete_memory(discard.id)
        logger.info(f"Merged duplicate {discard.id} into {keep.id}")

    # ------------------------------------------------------------------
    # Stage 3: categories
    # ------------------------------------------------------------------

    async def recategorize(self, owner: OwnerKey) -> StageReport:
        report = StageReport(name="recategorize")
        async with self._locks.hold(owner):
            for memory in await self._memories.list_memories(owner):
                report.examined += 1
                suggested = categorize(memory.text)
                if suggested == MemoryCategory.OTHER or suggested == memory.category:
                    continue
                try:
                    await self._memories.recategorize(memory.id, suggested)
                    report.changed += 1
                    logger.debug(
                        f"Recategorized {memory.id}: "
                        f"{memory.category.value} -> {suggested.value}"
                    )
                except DuplicateConflictError:
                    logger.debug(f"Recategorize of {memory.id} would duplicate; skipped")
                except MemorySystemError as e:
                    report.errors += 1
                    logger.warning(f"Recategorize of {memory.id} failed: {e}")
        return report

    # ------------------------------------------------------------------
    # Stage 4: rewrites
    # ------------------------------------------------------------------

    async def improve_quality(self, owner: OwnerKey) -> StageReport:
        report = StageReport(name="improve_quality")
        if self._judge is None:
            report.skipped = True
            return report
        async with self._locks.hold(owner):
            for memory in await self._memories.list_memories(owner):
                if memory.verified or not HEDGING_PATTERN.search(memory.text):
                    continue
                report.examined += 1
                try:
                    if await self._try_rewrite(memory):
                        report.changed += 1
                except DuplicateConflictError:
                    logger.debug(f"Rewrite of {memory.id} would duplicate; skipped")
                except MemorySystemError as e:
                    report.errors += 1
                    logger.warning(f"Rewrite of {memory.id} failed: {e}")
        return report

    async def _try_rewrite(self, memory: Memory) -> bool:
        cfg = self._config.curation
        candidate = " ".join((await self._judge.rewrite(memory.text)).split())
        if not candidate or normalize_text(candidate) == normalize_text(memory.text):
            return False

        ratio = len(candidate) / max(1, len(memory.text))
        if not (1 / cfg.rewrite_max_length_ratio <= ratio <= cfg.rewrite_max_length_ratio):
            logger.debug(f"Rewrite of {memory.id} rejected: length ratio {ratio:.2f}")
            return False
        if is_problematic(candidate):
            logger.debug(f"Rewrite of {memory.id} rejected: uninformative")
            return False

        index = self._memories.index
        similarity = index.similarity(memory.embedding, await index.embed(candidate))
        if similarity < cfg.rewrite_min_similarity:
            logger.debug(
                f"Rewrite of {memory.id} rejected: similarity {similarity:.2f}"
            )
            return False

        await self._memories.rewrite(memory.id, candidate)
        logger.info(f"Rewrote {memory.id}: {memory.text!r} -> {candidate!r}")
        return True

    # ------------------------------------------------------------------
    # Stage 5: oracle-assisted curation
    # ------------------------------------------------------------------

    async def oracle_curate(self, owner: OwnerKey) -> StageReport:
        report = StageReport(name="oracle_curate")
        if self._judge is None:
            report.skipped = True
            return report
        cfg = self._config.curation
        async with self._locks.hold(owner):
            by_category: dict[MemoryCategory, list[Memory]] = defaultdict(list)
            for memory in await self._memories.list_memories(owner):
                by_category[memory.category].append(memory)

            for category, memories in by_category.items():
                if len(memories) < cfg.oracle_min_category_size:
                    continue
                batch = memories[: cfg.oracle_batch_size]
                report.examined += len(batch)
                try:
                    await self._curate_batch(batch, report)
                except MemorySystemError as e:
                    report.errors += 1
                    logger.warning(
                        f"Oracle curation of {owner}/{category.value} failed: {e}"
                    )
        return report

    async def _curate_batch(self, batch: list[Memory], report: StageReport) -> None:
        items = [
            CurationItem(index=i, text=m.text, confidence=m.confidence)
            for i, m in enumerate(batch)
        ]
        proposal = await self._judge.curate(items)
        if proposal.reasoning:
            logger.debug(f"Curation reasoning: {proposal.reasoning}")

        used: set[int] = set()
        for group in proposal.merge:
            indices = [
                i for i in dict.fromkeys(group.indices)
                if 0 <= i < len(batch) and i not in used
            ]
            if len(indices) < 2:
                continue
            try:
                await self.merge_group([batch[i] for i in indices], group.new_text)
            except MemorySystemError as e:
                report.errors += 1
                logger.warning(f"Oracle merge of {indices} failed: {e}")
                continue
            used.update(indices)
            report.changed += 1

        for i in dict.fromkeys(proposal.remove):
            if not 0 <= i < len(batch) or i in used:
                continue
            memory = batch[i]
            used.add(i)
            if memory.is_protected:
                logger.debug(f"Oracle asked to remove protected memory {memory.id}; kept")
                continue
            try:
                await self._memories.hard_delete(memory.id)
                report.changed += 1
            except MemorySystemError as e:
                report.errors += 1
                logger.warning(f"Oracle removal of {memory.id} failed: {e}")

    async def merge_group(
        self, originals: list[Memory], new_text: str | None
    ) -> Memory:
        """Replace ``originals`` by one merged memory.

        Create, edge migration and retirement of the originals commit
        together or not at all. The caller holds the owner lock.

        Raises:
            OracleUnavailableError: New text could not be embedded
            DuplicateConflictError: Merged text duplicates another memory
        """
        strongest = max(originals, key=lambda m: m.confidence)
        text = " ".join((new_text or "").split())
        if text:
            embedding = await self._memories.index.embed(text)
            self._memories.index.validate(embedding)
        else:
            text, embedding = strongest.text, strongest.embedding

        verified = any(m.verified for m in originals)
        confidence = strongest.confidence
        if verified:
            confidence = max(confidence, self._config.verification.verified_floor)
        accessed = [m.last_accessed for m in originals if m.last_accessed]
        merged = Memory(
            owner=strongest.owner,
            text=text,
            category=strongest.category,
            memory_type=MemoryType.MERGED,
            confidence=confidence,
            verified=verified,
            verification_state=(
                VerificationState.VERIFIED if verified else VerificationState.UNVERIFIED
            ),
            verification_source="merged" if verified else None,
            verified_at=utcnow() if verified else None,
            embedding=embedding,
            access_count=sum(m.access_count for m in originals),
            last_accessed=max(accessed) if accessed else None,
            source="curation",
        )

        old_ids = [m.id for m in originals]
        async with self._db.transaction():
            for memory_id in old_ids:
                await self._db.set_active(memory_id, False)
            await self._db.insert_memory(merged)
            await self._graph.migrate_edges(old_ids, merged.id)
            for memory_id in old_ids:
                await self._db.upsert_edge(
                    merged.id, memory_id, RelationshipType.SUPERSEDES, 1.0
                )
        logger.info(f"Merged {old_ids} into {merged.id}: {merged.text!r}")
        return merged

    # ------------------------------------------------------------------
    # Confidence decay
    # ------------------------------------------------------------------

    async def apply_decay(
        self, owner: OwnerKey, now: datetime | None = None
    ) -> StageReport:
        report = StageReport(name="decay")
        now = now or utcnow()
        async with self._locks.hold(owner):
            for memory in await self._memories.list_memories(owner):
                report.examined += 1
                new_value = decayed_confidence(memory, now, self._config.confidence)
                if new_value is None:
                    continue
                try:
                    await self._memories.update_confidence(memory.id, new_value, "decay")
                    report.changed += 1
                except MemorySystemError as e:
                    report.errors += 1
                    logger.warning(f"Decay of {memory.id} failed: {e}")
        return report
