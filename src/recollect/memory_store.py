"""Memory Store: the memory entity table and its invariants.

Every write goes through the embedding index first, so a memory is never
persisted without a vector of the index dimension. Operations here are not
owner-serialized themselves; ``MemoryService`` and the maintenance engines
hold the owner lock around them.
"""

from __future__ import annotations

from loguru import logger

from .config import MemoryConfig
from .confidence import clamp, initial_confidence
from .embedding import EmbeddingIndex
from .exceptions import DuplicateConflictError, NotFoundError, ValidationError
from .models import (
    ConfidenceAuditEntry,
    Memory,
    MemoryCategory,
    MemoryType,
    OwnerKey,
    ScoredMemory,
    VerificationState,
    utcnow,
)
from .storage.sqlite_store import SQLiteStore
from .categorizer import categorize


def coerce_category(category: MemoryCategory | str | None, text: str) -> MemoryCategory:
    if category is None:
        return categorize(text)
    try:
        return MemoryCategory(category)
    except ValueError:
        raise ValidationError("category", f"unknown category {category!r}")


def coerce_type(memory_type: MemoryType | str) -> MemoryType:
    try:
        return MemoryType(memory_type)
    except ValueError:
        raise ValidationError("memory_type", f"unknown memory type {memory_type!r}")


class MemoryStore:
    """Create, retrieve and mutate memories while keeping invariants."""

    def __init__(
        self,
        store: SQLiteStore,
        index: EmbeddingIndex,
        config: MemoryConfig | None = None,
    ):
        self._store = store
        self._index = index
        self._config = config or MemoryConfig()

    @property
    def index(self) -> EmbeddingIndex:
        return self._index

    @property
    def db(self) -> SQLiteStore:
        return self._store

    async def prepare(
        self,
        owner: OwnerKey,
        text: str,
        category: MemoryCategory | str | None = None,
        memory_type: MemoryType | str = MemoryType.INTUITED,
        initial_confidence_value: float | None = None,
        source: str = "conversation",
    ) -> Memory:
        """Build a fully-embedded Memory without writing it.

        Raises:
            ValidationError: Blank text, unknown category or type
            OracleUnavailableError: Embedding failed
            DimensionMismatchError: Embedding has the wrong size
        """
        text = " ".join(text.split()) if text else ""
        if not text:
            raise ValidationError("text", "memory text cannot be blank")
        category = coerce_category(category, text)
        memory_type = coerce_type(memory_type)

        embedding = await self._index.embed(text)
        self._index.validate(embedding)

        if initial_confidence_value is None:
            confidence = initial_confidence(
                memory_type, category, text, source, self._config.confidence
            )
        else:
            confidence = clamp(initial_confidence_value)

        memory = Memory(
            owner=owner,
            text=text,
            category=category,
            memory_type=memory_type,
            confidence=confidence,
            embedding=embedding,
            source=source,
        )
        if memory_type == MemoryType.EXPLICIT:
            memory.verified = True
            memory.verification_state = VerificationState.VERIFIED
            memory.verification_source = "explicit"
            memory.verified_at = memory.created_at
            memory.confidence = max(
                memory.confidence, self._config.verification.verified_floor
            )
        return memory

    async def insert(self, memory: Memory) -> Memory:
        """Persist a prepared memory, returning an existing duplicate instead.

        Raises:
            DuplicateConflictError: Insert collided but the duplicate vanished
        """
        self._index.validate(memory.embedding)
        try:
            return await self._store.insert_memory(memory)
        except DuplicateConflictError:
            existing = await self._store.find_active_duplicate(
                memory.owner, memory.category, memory.text
            )
            if existing is None:
                raise
            logger.debug(f"Insert raced with duplicate {existing.id}; returning it")
            return existing

    async def create(
        self,
        owner: OwnerKey,
        text: str,
        category: MemoryCategory | str | None = None,
        memory_type: MemoryType | str = MemoryType.INTUITED,
        initial_confidence_value: float | None = None,
        source: str = "conversation",
        corroborate: bool = False,
    ) -> Memory:
        """Create a memory, or return the active normalized duplicate.

        With ``corroborate`` a newly inserted memory also raises the
        confidence of near-identical memories it agrees with.
        """
        text = " ".join(text.split()) if text else ""
        if not text:
            raise ValidationError("text", "memory text cannot be blank")
        resolved = coerce_category(category, text)

        existing = await self._store.find_active_duplicate(owner, resolved, text)
        if existing is not None:
            logger.debug(f"Duplicate memory for {owner}, returning {existing.id}")
            return existing

        memory = await self.prepare(
            owner, text, resolved, memory_type, initial_confidence_value, source
        )
        created = await self.insert(memory)
        if created.id == memory.id:
            logger.info(
                f"Created {created.memory_type.value} memory {created.id} "
                f"for {owner} [{created.category.value}] "
                f"confidence={created.confidence:.2f}"
            )
            if corroborate:
                await self.corroborate(created)
        return created

    async def corroborate(self, memory: Memory) -> list[Memory]:
        """Boost the owner's active memories that closely match ``memory``.

        Explicit memories gain less than intuited ones; confidence is capped
        at 1.0 and every change is audited as "corroborated".
        """
        cfg = self._config.confidence
        scored = [
            (self._index.similarity(memory.embedding, other.embedding), other)
            for other in await self._store.list_memories(memory.owner)
            if other.id != memory.id
        ]
        scored = [pair for pair in scored if pair[0] >= cfg.corroboration_similarity]
        scored.sort(key=lambda pair: -pair[0])

        boosted = []
        for _, other in scored[: cfg.corroboration_limit]:
            if other.memory_type == MemoryType.EXPLICIT:
                boost = cfg.explicit_corroboration_boost
            else:
                boost = cfg.corroboration_boost
            value = min(1.0, other.confidence + boost)
            if value > other.confidence:
                boosted.append(await self.update_confidence(other.id, value, "corroborated"))
        if boosted:
            logger.debug(f"Memory {memory.id} corroborated {len(boosted)} memories")
        return boosted

    async def get(self, memory_id: str, owner: OwnerKey | None = None) -> Memory:
        """Fetch by id, active or not.

        Raises:
            NotFoundError: Unknown id, or the memory belongs to another owner
        """
        memory = await self._store.get_memory(memory_id)
        if memory is None or (owner is not None and memory.owner != owner):
            raise NotFoundError(memory_id)
        return memory

    async def list_memories(
        self,
        owner: OwnerKey,
        category: MemoryCategory | None = None,
        active_only: bool = True,
    ) -> list[Memory]:
        return await self._store.list_memories(
            owner, category=category, active_only=active_only
        )

    async def retrieve_by_similarity(
        self,
        owner: OwnerKey,
        query_text: str,
        k: int = 5,
        category: MemoryCategory | str | None = None,
    ) -> list[ScoredMemory]:
        """Rank the owner's active memories against a query.

        Ordering: cosine similarity descending, then confidence descending,
        then recency descending. Returned memories have their access
        statistics updated.
        """
        if not query_text or not query_text.strip():
            raise ValidationError("query_text", "query cannot be blank")
        if k <= 0:
            return []
        category_filter = None
        if category is not None:
            category_filter = coerce_category(category, query_text)

        query_vector = await self._index.embed(query_text)
        memories = await self._store.list_memories(owner, category=category_filter)

        scored = [
            ScoredMemory(
                memory=memory,
                similarity=self._index.similarity(query_vector, memory.embedding),
            )
            for memory in memories
        ]
        scored.sort(
            key=lambda s: (
                -s.similarity,
                -s.memory.confidence,
                -s.memory.created_at.timestamp(),
            )
        )
        top = scored[:k]

        await self._store.record_access([s.memory.id for s in top])
        now = utcnow()
        for s in top:
            s.memory.access_count += 1
            s.memory.last_accessed = now
        return top

    async def update_confidence(
        self, memory_id: str, new_value: float, reason: str
    ) -> Memory:
        """Clamp into [0, 1] (and above the verified floor) and audit."""
        if not reason or not reason.strip():
            raise ValidationError("reason", "a reason is required for the audit trail")
        memory = await self.get(memory_id)
        value = clamp(new_value)
        if memory.verified:
            value = max(value, self._config.verification.verified_floor)
        await self._store.update_confidence(memory_id, memory.confidence, value, reason)
        logger.debug(
            f"Confidence of {memory_id}: {memory.confidence:.3f} -> {value:.3f} ({reason})"
        )
        memory.confidence = value
        return memory

    async def confidence_history(self, memory_id: str) -> list[ConfidenceAuditEntry]:
        await self.get(memory_id)
        return await self._store.confidence_history(memory_id)

    async def deactivate(self, memory_id: str) -> Memory:
        """Retire a memory; it stays readable by id."""
        memory = await self.get(memory_id)
        if memory.active:
            await self._store.set_active(memory_id, False)
            memory.active = False
            logger.debug(f"Deactivated memory {memory_id}")
        return memory

    async def reactivate(self, memory_id: str) -> Memory:
        """Bring a retired memory back.

        Raises:
            DuplicateConflictError: An active duplicate has taken its place
        """
        memory = await self.get(memory_id)
        if not memory.active:
            await self._store.set_active(memory_id, True)
            memory.active = True
        return memory

    async def hard_delete(self, memory_id: str) -> None:
        """Irreversibly remove a memory together with its edges."""
        await self.get(memory_id)
        await self._store.delete_memory(memory_id)
        logger.info(f"Hard-deleted memory {memory_id}")

    async def rewrite(self, memory_id: str, new_text: str) -> Memory:
        """Replace text and embedding together; the embedding is computed first."""
        new_text = " ".join(new_text.split()) if new_text else ""
        if not new_text:
            raise ValidationError("text", "memory text cannot be blank")
        memory = await self.get(memory_id)
        embedding = await self._index.embed(new_text)
        self._index.validate(embedding)
        await self._store.update_text_and_embedding(memory_id, new_text, embedding)
        memory.text = new_text
        memory.embedding = embedding
        memory.temporal = None
        return memory

    async def recategorize(self, memory_id: str, category: MemoryCategory) -> Memory:
        memory = await self.get(memory_id)
        if memory.category != category:
            await self._store.update_category(memory_id, category)
            memory.category = category
        return memory
