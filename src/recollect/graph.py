"""Relationship Graph: directed, typed edges between memories.

Besides explicit edge operations the graph can discover edges itself: for
each recent memory the judge is asked how it relates to its nearest
neighbours. Retrieval can then pull in strongly connected memories that
did not match the query directly.
"""

from __future__ import annotations

from collections import deque
from typing import TYPE_CHECKING

from loguru import logger

from .config import GraphConfig
from .embedding import EmbeddingIndex
from .exceptions import NotFoundError, OracleUnavailableError, ValidationError
from .models import (
    GraphBuildReport,
    Memory,
    OwnerKey,
    RelationshipEdge,
    RelationshipType,
    ScoredMemory,
)
from .storage.sqlite_store import SQLiteStore

if TYPE_CHECKING:
    from .oracle import JudgeOracle

MIN_EDGE_CONFIDENCE = 0.1

_INVERSE_TYPES = {
    RelationshipType.RELATED_TO: RelationshipType.RELATED_TO,
    RelationshipType.FOLLOWS: RelationshipType.PRECEDES,
    RelationshipType.PRECEDES: RelationshipType.FOLLOWS,
}

# Preference order when expanding retrieval results along edges.
_EXPANSION_WEIGHTS = {
    RelationshipType.ELABORATES: 3,
    RelationshipType.CAUSES: 2,
    RelationshipType.FOLLOWS: 2,
}


class RelationshipGraph:
    """Edge operations over the SQLite store.

    Edges are unique per (source, target, type); re-adding a triple keeps
    the higher confidence.
    """

    def __init__(self, store: SQLiteStore, config: GraphConfig | None = None):
        self._store = store
        self._config = config or GraphConfig()

    async def add_edge(
        self,
        source_id: str,
        target_id: str,
        edge_type: RelationshipType | str,
        confidence: float = 0.5,
        bidirectional: bool | None = None,
    ) -> RelationshipEdge:
        """Create or strengthen an edge.

        Args:
            source_id: Source memory id
            target_id: Target memory id
            edge_type: Relationship type
            confidence: Edge confidence, clamped to [0.1, 1.0]
            bidirectional: Also upsert the inverse edge. Defaults to True for
                related_to/follows/precedes, False otherwise.

        Raises:
            ValidationError: Self-loop or unknown edge type
            NotFoundError: Either endpoint does not exist
        """
        try:
            edge_type = RelationshipType(edge_type)
        except ValueError:
            raise ValidationError("edge_type", f"unknown relationship type {edge_type!r}")
        if source_id == target_id:
            raise ValidationError("target_id", "a memory cannot relate to itself")
        for memory_id in (source_id, target_id):
            if await self._store.get_memory(memory_id) is None:
                raise NotFoundError(memory_id)

        confidence = max(MIN_EDGE_CONFIDENCE, min(1.0, confidence))
        edge = await self._store.upsert_edge(source_id, target_id, edge_type, confidence)

        inverse = _INVERSE_TYPES.get(edge_type)
        if bidirectional is None:
            bidirectional = inverse is not None
        if bidirectional:
            await self._store.upsert_edge(
                target_id, source_id, inverse or edge_type, confidence
            )
        logger.debug(
            f"Edge {source_id} -[{edge_type.value}]-> {target_id} "
            f"confidence={edge.confidence:.2f}"
        )
        return edge

    async def migrate_edges(self, old_ids: list[str], new_id: str) -> int:
        """Re-point all edges incident to ``old_ids`` at ``new_id``.

        Only used by merges, inside the merge transaction.
        """
        if new_id in old_ids:
            raise ValidationError("new_id", "merge target cannot be one of the merged ids")
        if await self._store.get_memory(new_id) is None:
            raise NotFoundError(new_id)
        return await self._store.migrate_edges(old_ids, new_id)

    async def edges_of(self, memory_id: str) -> list[RelationshipEdge]:
        return await self._store.get_edges(memory_id)

    async def connected(
        self,
        memory_id: str,
        min_confidence: float = 0.0,
        edge_types: set[RelationshipType] | None = None,
    ) -> list[tuple[str, RelationshipEdge]]:
        """Neighbour ids with the edge that links them, in both directions."""
        neighbours = []
        for edge in await self._store.get_edges(memory_id):
            if edge.confidence < min_confidence:
                continue
            if edge_types is not None and edge.edge_type not in edge_types:
                continue
            other = edge.target_id if edge.source_id == memory_id else edge.source_id
            neighbours.append((other, edge))
        return neighbours

    async def traverse(
        self,
        start_id: str,
        max_depth: int = 2,
        min_confidence: float = 0.0,
    ) -> dict[str, int]:
        """Breadth-first walk; returns reachable memory ids with their depth."""
        depths = {start_id: 0}
        queue = deque([start_id])
        while queue:
            current = queue.popleft()
            depth = depths[current]
            if depth >= max_depth:
                continue
            for other, _ in await self.connected(current, min_confidence):
                if other not in depths:
                    depths[other] = depth + 1
                    queue.append(other)
        return depths

    async def linked(self, memory_id: str, other_id: str) -> bool:
        """Whether any edge joins the two memories, in either direction."""
        return any(
            other == other_id for other, _ in await self.connected(memory_id)
        )

    def _discovery_candidates(self, memory: Memory, pool: list[Memory]) -> list[Memory]:
        cfg = self._config
        scored = [
            (EmbeddingIndex.similarity(memory.embedding, other.embedding), other)
            for other in pool
            if other.id != memory.id
        ]
        threshold = cfg.discovery_similarity_threshold
        scored = [pair for pair in scored if pair[0] >= threshold]
        scored.sort(key=lambda pair: -pair[0])
        return [other for _, other in scored[: cfg.discovery_candidates]]

    async def build_for_owner(
        self, owner: OwnerKey, judge: JudgeOracle
    ) -> GraphBuildReport:
        """Discover edges for the owner's newest memories.

        Each memory is compared with its most similar active neighbours;
        pairs that are already linked are skipped. Judge verdicts at or
        below ``relationship_min_confidence`` are dropped. A judge failure
        on one pair is counted and the run moves on.

        The caller holds the owner lock.
        """
        cfg = self._config
        report = GraphBuildReport()
        pool = await self._store.list_memories(owner)
        seen: set[frozenset[str]] = set()

        for memory in pool[: cfg.discovery_batch_size]:
            report.processed += 1
            for other in self._discovery_candidates(memory, pool):
                pair = frozenset((memory.id, other.id))
                if pair in seen:
                    continue
                seen.add(pair)
                if await self.linked(memory.id, other.id):
                    continue
                try:
                    proposals = await judge.classify_relationships(memory.text, other.text)
                except OracleUnavailableError as e:
                    report.errors += 1
                    logger.warning(
                        f"Relationship analysis failed for {memory.id}/{other.id}: {e}"
                    )
                    continue
                for proposal in proposals:
                    if proposal.confidence <= cfg.relationship_min_confidence:
                        continue
                    await self.add_edge(
                        memory.id, other.id, proposal.edge_type, proposal.confidence
                    )
                    report.connections_created += 1

        logger.info(
            f"Graph build for {owner}: processed={report.processed} "
            f"connections={report.connections_created} errors={report.errors}"
        )
        return report

    async def expand(
        self,
        direct: list[ScoredMemory],
        max_additional: int,
        query_vector: list[float] | None = None,
    ) -> list[ScoredMemory]:
        """Append strongly connected neighbours to retrieval results.

        Neighbours are ranked per result by edge type weight times edge
        confidence; at most ``expansion_per_memory`` are taken per result
        and ``max_additional`` overall. Inactive neighbours and memories
        already in the results are skipped.
        """
        cfg = self._config
        results = list(direct)
        included = {s.memory.id for s in direct}
        limit = len(direct) + max(0, max_additional)

        for scored in direct:
            if len(results) >= limit:
                break
            options = [
                (_EXPANSION_WEIGHTS.get(edge.edge_type, 1) * edge.confidence, other, edge)
                for other, edge in await self.connected(
                    scored.memory.id, cfg.expansion_min_confidence
                )
                if other not in included
            ]
            options.sort(key=lambda option: -option[0])

            taken = 0
            for _, other_id, edge in options:
                if taken >= cfg.expansion_per_memory or len(results) >= limit:
                    break
                if other_id in included:
                    continue
                memory = await self._store.get_memory(other_id)
                if memory is None or not memory.active:
                    continue
                if memory.owner != scored.memory.owner:
                    continue
                included.add(other_id)
                taken += 1
                results.append(
                    ScoredMemory(
                        memory=memory,
                        similarity=(
                            EmbeddingIndex.similarity(query_vector, memory.embedding)
                            if query_vector is not None
                            else 0.0
                        ),
                        via_relationship=edge.edge_type,
                        graph_confidence=edge.confidence,
                    )
                )
        return results
