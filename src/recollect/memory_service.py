"""Memory Service - caller-facing facade for the memory subsystem.

Wires the store, embedding index, graph, temporal analyzer, verification
protocol and curation engine together, and serializes every mutating
operation per owner key. Deciding *when* to call ``run_maintenance_once``
or ``analyze_once`` is left to the caller's scheduler.
"""

from __future__ import annotations

import asyncio
from typing import Protocol

from loguru import logger

from .config import MemoryConfig
from .curation import CurationEngine
from .embedding import EmbeddingIndex, SentenceTransformerEmbedder
from .exceptions import OracleUnavailableError, ValidationError
from .graph import RelationshipGraph
from .locks import OwnerLocks
from .memory_store import MemoryStore
from .models import (
    AnalysisReport,
    ConfidenceAuditEntry,
    CurationReport,
    GraphBuildReport,
    Memory,
    MemoryCategory,
    MemoryType,
    OwnerKey,
    RelationshipEdge,
    RelationshipType,
    ScoredMemory,
    VerificationResult,
)
from .oracle import ChatLLM, EmbeddingOracle, JudgeOracle, LLMJudge
from .storage.sqlite_store import SQLiteStore
from .temporal import TemporalAnalyzer
from .verification import VerificationProtocol

OwnerLike = OwnerKey | str


class MemoryServiceInterface(Protocol):
    """Protocol defining the caller-facing MemoryService API."""

    async def create_memory(
        self,
        owner: OwnerLike,
        text: str,
        category: MemoryCategory | str | None = None,
        memory_type: MemoryType | str = MemoryType.INTUITED,
        confidence: float | None = None,
        source: str = "conversation",
    ) -> Memory:
        """Create a memory (or return its active duplicate)."""
        ...

    async def query_memories(
        self,
        owner: OwnerLike,
        text: str,
        k: int = 5,
        category: MemoryCategory | str | None = None,
        expand_with_graph: bool = False,
    ) -> list[ScoredMemory]:
        """Rank an owner's memories against a query."""
        ...

    async def record_verification_response(
        self, owner: OwnerLike, memory_id: str, response_text: str
    ) -> VerificationResult:
        """Apply a user's answer to a verification question."""
        ...

    async def run_maintenance_once(
        self, cancel_event: asyncio.Event | None = None
    ) -> CurationReport:
        """Run the curation pipeline once."""
        ...

    async def get_verification_candidates(self, owner: OwnerLike) -> list[Memory]:
        """Memories worth asking the user about."""
        ...


def _owner_key(owner: OwnerLike) -> OwnerKey:
    if isinstance(owner, OwnerKey):
        return owner
    if not owner or not str(owner).strip():
        raise ValidationError("owner", "owner cannot be blank")
    return OwnerKey(user_id=str(owner))


class MemoryService:
    """Main memory service facade.

    Components are created lazily on first use. Oracles can be injected;
    without an embedding oracle a local sentence-transformers model is used,
    and the judge is only available after ``set_llm`` (or injection).
    """

    def __init__(
        self,
        config: MemoryConfig | None = None,
        embedding_oracle: EmbeddingOracle | None = None,
        judge: JudgeOracle | None = None,
    ):
        """Initialize memory service.

        Args:
            config: Memory configuration (uses defaults if not provided)
            embedding_oracle: Embedding backend; defaults to sentence-transformers
            judge: Classifier/judge backend; optional
        """
        self.config = config or MemoryConfig()
        self._embedding_oracle = embedding_oracle
        self._judge = judge
        self._locks = OwnerLocks()
        self._init_lock = asyncio.Lock()
        self._store: SQLiteStore | None = None
        self._store_initialized: bool = False
        self._index: EmbeddingIndex | None = None
        self._memories: MemoryStore | None = None
        self._graph: RelationshipGraph | None = None
        self._temporal: TemporalAnalyzer | None = None
        self._verification: VerificationProtocol | None = None
        self._curation: CurationEngine | None = None

        logger.debug(f"MemoryService full config: {self.config.model_dump()}")
        logger.info(
            f"MemoryService initialized: "
            f"sqlite_db_path={self.config.storage.sqlite_db_path!r}"
        )

    def set_llm(self, llm: ChatLLM) -> None:
        """Use a streaming chat LLM as the judge oracle.

        Args:
            llm: Client exposing ``chat_completion(messages, system)``
        """
        self._judge = LLMJudge(llm, self.config.oracle.max_concurrent_calls)
        if self._temporal is not None:
            self._temporal.set_judge(self._judge)
        if self._curation is not None:
            self._curation.set_judge(self._judge)
        logger.info("Judge oracle initialized with shared LLM")

    async def _ensure_store(self) -> SQLiteStore:
        """Lazy initialization of SQLite store."""
        if self._store is None:
            self._store = SQLiteStore(db_path=self.config.storage.sqlite_db_path)
        if not self._store_initialized:
            await self._store.initialize()
            self._store_initialized = True
        return self._store

    async def _ensure_memories(self) -> MemoryStore:
        """Lazy initialization of every component.

        Concurrent first calls wait for a single initialization.
        """
        if self._memories is not None:
            return self._memories
        async with self._init_lock:
            if self._memories is not None:
                return self._memories

            store = await self._ensure_store()
            if self._embedding_oracle is None:
                self._embedding_oracle = SentenceTransformerEmbedder(self.config.embedding)
                logger.debug("SentenceTransformerEmbedder initialized")
            self._index = EmbeddingIndex(self._embedding_oracle, self.config.embedding)
            memories = MemoryStore(store, self._index, self.config)
            self._graph = RelationshipGraph(store, self.config.graph)
            self._temporal = TemporalAnalyzer(
                memories, self._graph, self._judge, self.config.temporal, self._locks
            )
            self._verification = VerificationProtocol(memories, self._graph, self.config)
            self._curation = CurationEngine(
                memories, self._graph, self._judge, self.config, self._locks
            )
            self._memories = memories
            logger.debug("Memory components initialized")
        return self._memories

    async def close(self) -> None:
        """Close resources (embedding batches, SQLite connection)."""
        if self._index is not None:
            await self._index.close()
        if self._store and self._store_initialized:
            await self._store.close()
            self._store_initialized = False
            logger.info("MemoryService: SQLiteStore closed")

    # ------------------------------------------------------------------
    # Memories
    # ------------------------------------------------------------------

    async def create_memory(
        self,
        owner: OwnerLike,
        text: str,
        category: MemoryCategory | str | None = None,
        memory_type: MemoryType | str = MemoryType.INTUITED,
        confidence: float | None = None,
        source: str = "conversation",
    ) -> Memory:
        """Create a memory, or return the owner's active normalized duplicate.

        Raises:
            ValidationError: Blank text or unknown category/type
            OracleUnavailableError: Embedding failed; nothing was written
        """
        key = _owner_key(owner)
        memories = await self._ensure_memories()
        async with self._locks.hold(key):
            return await memories.create(
                key,
                text,
                category,
                memory_type,
                confidence,
                source,
                corroborate=self.config.confidence.corroborate_on_create,
            )

    async def query_memories(
        self,
        owner: OwnerLike,
        text: str,
        k: int = 5,
        category: MemoryCategory | str | None = None,
        expand_with_graph: bool = False,
    ) -> list[ScoredMemory]:
        """Rank an owner's memories against a query.

        Retrieval updates access statistics, so it holds the owner lock like
        any other write. With ``expand_with_graph`` up to ``max(2, k // 2)``
        strongly connected memories are appended after the direct matches.
        """
        key = _owner_key(owner)
        memories = await self._ensure_memories()
        async with self._locks.hold(key):
            results = await memories.retrieve_by_similarity(key, text, k, category)
            if expand_with_graph and results:
                query_vector = await memories.index.embed(text)
                results = await self._graph.expand(
                    results, max(2, k // 2), query_vector
                )
        return results

    async def get_memory(self, memory_id: str, owner: OwnerLike | None = None) -> Memory:
        memories = await self._ensure_memories()
        return await memories.get(memory_id, _owner_key(owner) if owner else None)

    async def list_memories(
        self,
        owner: OwnerLike,
        category: MemoryCategory | None = None,
        active_only: bool = True,
    ) -> list[Memory]:
        memories = await self._ensure_memories()
        return await memories.list_memories(_owner_key(owner), category, active_only)

    async def update_confidence(
        self, memory_id: str, new_value: float, reason: str
    ) -> Memory:
        memories = await self._ensure_memories()
        memory = await memories.get(memory_id)
        async with self._locks.hold(memory.owner):
            return await memories.update_confidence(memory_id, new_value, reason)

    async def confidence_history(self, memory_id: str) -> list[ConfidenceAuditEntry]:
        memories = await self._ensure_memories()
        return await memories.confidence_history(memory_id)

    async def deactivate(self, memory_id: str) -> Memory:
        memories = await self._ensure_memories()
        memory = await memories.get(memory_id)
        async with self._locks.hold(memory.owner):
            return await memories.deactivate(memory_id)

    async def hard_delete(self, memory_id: str) -> None:
        memories = await self._ensure_memories()
        memory = await memories.get(memory_id)
        async with self._locks.hold(memory.owner):
            await memories.hard_delete(memory_id)

    # ------------------------------------------------------------------
    # Relationships
    # ------------------------------------------------------------------

    async def add_relationship(
        self,
        source_id: str,
        target_id: str,
        edge_type: RelationshipType | str,
        confidence: float = 0.5,
    ) -> RelationshipEdge:
        """Link two memories of the same owner."""
        memories = await self._ensure_memories()
        source = await memories.get(source_id)
        target = await memories.get(target_id)
        if source.owner != target.owner:
            raise ValidationError("target_id", "memories belong to different owners")
        async with self._locks.hold(source.owner):
            return await self._graph.add_edge(source_id, target_id, edge_type, confidence)

    async def edges_of(self, memory_id: str) -> list[RelationshipEdge]:
        await self._ensure_memories()
        return await self._graph.edges_of(memory_id)

    async def build_relationship_graph(
        self, owner: OwnerLike | None = None
    ) -> GraphBuildReport:
        """Let the judge discover edges among recent memories.

        Runs for one owner, or for every owner with active memories.

        Raises:
            OracleUnavailableError: No judge is configured
        """
        memories = await self._ensure_memories()
        if self._judge is None:
            raise OracleUnavailableError("judge", "no judge configured")
        if owner is not None:
            owners = [_owner_key(owner)]
        else:
            owners = [key for key, _ in await memories.db.list_owners()]

        total = GraphBuildReport()
        for key in owners:
            async with self._locks.hold(key):
                report = await self._graph.build_for_owner(key, self._judge)
            total.processed += report.processed
            total.connections_created += report.connections_created
            total.errors += report.errors
        return total

    # ------------------------------------------------------------------
    # Verification
    # ------------------------------------------------------------------

    async def get_verification_candidates(self, owner: OwnerLike) -> list[Memory]:
        await self._ensure_memories()
        return await self._verification.candidates(_owner_key(owner))

    async def next_verification_question(
        self, owner: OwnerLike
    ) -> tuple[Memory, str] | None:
        """Pick a memory to verify and return it with the question to ask."""
        key = _owner_key(owner)
        await self._ensure_memories()
        async with self._locks.hold(key):
            return await self._verification.next_question(key)

    async def record_verification_response(
        self, owner: OwnerLike, memory_id: str, response_text: str
    ) -> VerificationResult:
        key = _owner_key(owner)
        await self._ensure_memories()
        async with self._locks.hold(key):
            return await self._verification.record_response(key, memory_id, response_text)

    # ------------------------------------------------------------------
    # Background work
    # ------------------------------------------------------------------

    async def run_maintenance_once(
        self, cancel_event: asyncio.Event | None = None
    ) -> CurationReport:
        await self._ensure_memories()
        return await self._curation.run_once(cancel_event)

    run_maintenance = run_maintenance_once

    async def analyze_once(self, owner: OwnerLike | None = None) -> AnalysisReport:
        """Temporal annotation plus contradiction detection."""
        await self._ensure_memories()
        return await self._temporal.analyze_once(
            _owner_key(owner) if owner is not None else None
        )
