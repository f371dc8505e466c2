"""Tests for the SQLite schema, constraints and transactions."""

import asyncio
from datetime import timedelta

import aiosqlite
import pytest

from recollect.exceptions import DuplicateConflictError, StorageError
from recollect.models import (
    Memory,
    MemoryCategory,
    OwnerKey,
    RelationshipType,
    TemporalAnnotation,
    Tense,
    VerificationState,
    utcnow,
)
from recollect.storage.sqlite_store import SQLiteStore

OWNER = OwnerKey(user_id="alice")


def _memory(text: str, **overrides) -> Memory:
    fields = dict(
        owner=OWNER,
        text=text,
        category=MemoryCategory.PREFERENCES,
        embedding=[0.1, 0.2, 0.3],
    )
    fields.update(overrides)
    return Memory(**fields)


@pytest.mark.asyncio
async def test_tables_exist(store):
    async with store._db.execute(
        "SELECT name FROM sqlite_master WHERE type='table'"
    ) as cursor:
        names = {row[0] for row in await cursor.fetchall()}
    assert {"memories", "memory_relationships", "confidence_audit"} <= names


@pytest.mark.asyncio
async def test_memories_has_migrated_columns(store):
    async with store._db.execute("PRAGMA table_info(memories)") as cursor:
        rows = await cursor.fetchall()
    col_names = {r[1] for r in rows}
    assert "contradiction_count" in col_names
    assert "temporal" in col_names
    assert "asked_at" in col_names


LEGACY_MEMORIES = """
    CREATE TABLE memories (
        id TEXT PRIMARY KEY,
        user_id TEXT NOT NULL,
        scope TEXT NOT NULL,
        text TEXT NOT NULL,
        normalized_text TEXT NOT NULL,
        category TEXT NOT NULL,
        memory_type TEXT NOT NULL,
        confidence REAL NOT NULL,
        verified INTEGER NOT NULL DEFAULT 0,
        verification_state TEXT NOT NULL DEFAULT 'unverified',
        verification_source TEXT,
        verified_at TEXT,
        embedding BLOB NOT NULL,
        created_at TEXT NOT NULL,
        last_accessed TEXT,
        access_count INTEGER NOT NULL DEFAULT 0,
        active INTEGER NOT NULL DEFAULT 1,
        source TEXT NOT NULL DEFAULT 'conversation'
    )
"""


@pytest.mark.asyncio
async def test_legacy_database_is_migrated(tmp_path):
    db_path = str(tmp_path / "legacy.db")
    async with aiosqlite.connect(db_path) as db:
        await db.execute(LEGACY_MEMORIES)
        await db.commit()

    s = SQLiteStore(db_path=db_path)
    await s.initialize()
    try:
        memory = _memory("User likes tea", contradiction_count=2)
        await s.insert_memory(memory)
        loaded = await s.get_memory(memory.id)
        assert loaded.contradiction_count == 2
        assert loaded.asked_at is None
    finally:
        await s.close()


@pytest.mark.asyncio
async def test_initialize_is_idempotent(store):
    db = store._db
    await store.initialize()
    assert store._db is db


@pytest.mark.asyncio
async def test_concurrent_initialize_connects_once(tmp_path, monkeypatch):
    connects = []
    real_connect = aiosqlite.connect

    def counting_connect(*args, **kwargs):
        connects.append(args)
        return real_connect(*args, **kwargs)

    monkeypatch.setattr(aiosqlite, "connect", counting_connect)
    s = SQLiteStore(db_path=str(tmp_path / "fresh.db"))
    try:
        await asyncio.gather(*(s.initialize() for _ in range(5)))
        assert len(connects) == 1
        assert await s.count_memories() == 0
    finally:
        await s.close()


@pytest.mark.asyncio
async def test_insert_and_get_round_trip(store):
    memory = _memory(
        "User likes tea",
        temporal=TemporalAnnotation(tense=Tense.PAST, is_current=False),
    )
    await store.insert_memory(memory)

    loaded = await store.get_memory(memory.id)
    assert loaded is not None
    assert loaded.text == "User likes tea"
    assert loaded.owner == OWNER
    assert loaded.embedding == pytest.approx([0.1, 0.2, 0.3])
    assert loaded.temporal.tense == Tense.PAST
    assert loaded.created_at == memory.created_at


@pytest.mark.asyncio
async def test_active_normalized_duplicates_rejected(store):
    await store.insert_memory(_memory("User likes tea"))
    with pytest.raises(DuplicateConflictError):
        await store.insert_memory(_memory("  user LIKES tea "))


@pytest.mark.asyncio
async def test_duplicate_allowed_once_original_inactive(store):
    first = await store.insert_memory(_memory("User likes tea"))
    await store.set_active(first.id, False)
    second = await store.insert_memory(_memory("User likes tea"))
    assert second.id != first.id


@pytest.mark.asyncio
async def test_duplicate_allowed_across_categories_and_owners(store):
    await store.insert_memory(_memory("User likes tea"))
    await store.insert_memory(_memory("User likes tea", category=MemoryCategory.OTHER))
    await store.insert_memory(_memory("User likes tea", owner=OwnerKey(user_id="bob")))
    assert await store.count_memories() == 3


@pytest.mark.asyncio
async def test_upsert_edge_keeps_max_confidence(store):
    a = await store.insert_memory(_memory("User likes tea"))
    b = await store.insert_memory(_memory("User likes green tea"))

    await store.upsert_edge(a.id, b.id, RelationshipType.SUPPORTS, 0.7)
    await store.upsert_edge(a.id, b.id, RelationshipType.SUPPORTS, 0.4)
    edges = await store.get_edges(a.id)

    assert len(edges) == 1
    assert edges[0].confidence == pytest.approx(0.7)


@pytest.mark.asyncio
async def test_migrate_edges_collapses_and_drops_self_loops(store):
    a = await store.insert_memory(_memory("A one"))
    b = await store.insert_memory(_memory("B two"))
    c = await store.insert_memory(_memory("C three"))
    merged = await store.insert_memory(_memory("Merged"))

    await store.upsert_edge(a.id, c.id, RelationshipType.SUPPORTS, 0.4)
    await store.upsert_edge(b.id, c.id, RelationshipType.SUPPORTS, 0.9)
    await store.upsert_edge(a.id, b.id, RelationshipType.ELABORATES, 0.5)

    await store.migrate_edges([a.id, b.id], merged.id)

    assert await store.get_edges(a.id) == []
    assert await store.get_edges(b.id) == []
    edges = await store.get_edges(merged.id)
    assert len(edges) == 1
    assert (edges[0].source_id, edges[0].target_id) == (merged.id, c.id)
    assert edges[0].confidence == pytest.approx(0.9)


@pytest.mark.asyncio
async def test_transaction_rolls_back_on_error(store):
    memory = await store.insert_memory(_memory("User likes tea"))
    with pytest.raises(RuntimeError):
        async with store.transaction():
            await store.set_active(memory.id, False)
            await store.insert_memory(_memory("User likes coffee"))
            raise RuntimeError("boom")

    loaded = await store.get_memory(memory.id)
    assert loaded.active is True
    assert await store.count_memories() == 1


@pytest.mark.asyncio
async def test_transaction_commits(store):
    memory = await store.insert_memory(_memory("User likes tea"))
    async with store.transaction():
        await store.set_active(memory.id, False)
    assert (await store.get_memory(memory.id)).active is False


@pytest.mark.asyncio
async def test_delete_cascades_edges_and_audit(store):
    a = await store.insert_memory(_memory("User likes tea"))
    b = await store.insert_memory(_memory("User likes coffee"))
    await store.upsert_edge(a.id, b.id, RelationshipType.RELATED_TO, 0.5)
    await store.update_confidence(a.id, 0.75, 0.5, "test")

    assert await store.delete_memory(a.id) is True
    assert await store.get_edges(b.id) == []
    assert await store.confidence_history(a.id) == []


@pytest.mark.asyncio
async def test_list_owners_orders_by_volume(store):
    bob = OwnerKey(user_id="bob")
    await store.insert_memory(_memory("User likes tea"))
    await store.insert_memory(_memory("User likes tea", owner=bob))
    await store.insert_memory(_memory("User likes coffee", owner=bob))

    owners = await store.list_owners()
    assert owners == [(bob, 2), (OWNER, 1)]


@pytest.mark.asyncio
async def test_uninitialized_store_raises(tmp_path):
    s = SQLiteStore(db_path=str(tmp_path / "never.db"))
    with pytest.raises(StorageError):
        await s.get_memory("x")


@pytest.mark.asyncio
async def test_driver_errors_surface_as_storage_error(store):
    memory = _memory("User likes tea")
    await store.insert_memory(memory)

    with pytest.raises(StorageError) as exc_info:
        await store.update_confidence(memory.id, 0.75, 1.5, "out of range")

    assert exc_info.value.path == store.db_path
    assert (await store.get_memory(memory.id)).confidence == pytest.approx(0.75)
    assert await store.confidence_history(memory.id) == []


@pytest.mark.asyncio
async def test_storage_error_inside_transaction_rolls_back(store):
    memory = _memory("User likes tea")
    await store.insert_memory(memory)

    with pytest.raises(StorageError):
        async with store.transaction():
            await store.set_active(memory.id, False)
            await store.update_confidence(memory.id, 0.75, 1.5, "out of range")

    assert (await store.get_memory(memory.id)).active is True


@pytest.mark.asyncio
async def test_stale_awaiting_candidates_return(store):
    now = utcnow()
    fresh = _memory("User likes tea", confidence=0.6)
    stale = _memory("User likes coffee", confidence=0.6)
    await store.insert_memory(fresh)
    await store.insert_memory(stale)
    await store.update_verification(
        fresh.id, state=VerificationState.AWAITING_RESPONSE, asked_at=now
    )
    await store.update_verification(
        stale.id,
        state=VerificationState.AWAITING_RESPONSE,
        asked_at=now - timedelta(days=2),
    )

    strict = await store.list_verification_candidates(OWNER, 0.4, 0.8, 10)
    relaxed = await store.list_verification_candidates(
        OWNER, 0.4, 0.8, 10, asked_before=now - timedelta(days=1)
    )

    assert strict == []
    assert [m.id for m in relaxed] == [stale.id]
