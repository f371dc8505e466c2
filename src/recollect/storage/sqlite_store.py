"""SQLite storage backend for the memory subsystem.

Persists memories, relationship edges and the confidence audit trail using
aiosqlite. The store enforces the structural invariants it can express in
SQL:

- embeddings are NOT NULL
- confidence is CHECKed into [0, 1]
- at most one active memory per (owner, category, normalized text), via a
  partial unique index
- no self-loop edges, and edges are unique per (source, target, type)
- edges and audit rows cascade with a hard-deleted memory

The connection runs in autocommit mode; multi-statement units of work use
``transaction()``, which holds the store lock so statements from other tasks
cannot interleave on the shared connection.
"""

from __future__ import annotations

import asyncio
import json
import sqlite3
from contextlib import asynccontextmanager
from datetime import datetime
from pathlib import Path
from typing import Any, AsyncIterator

import aiosqlite
from loguru import logger

from ..embedding import deserialize_embedding, serialize_embedding
from ..exceptions import DuplicateConflictError, StorageError
from ..models import (
    ConfidenceAuditEntry,
    Memory,
    MemoryCategory,
    MemoryType,
    OwnerKey,
    RelationshipEdge,
    RelationshipType,
    TemporalAnnotation,
    VerificationState,
    utcnow,
)
from ..text import normalize_text

_MEMORY_COLUMNS = (
    "id, user_id, scope, text, normalized_text, category, memory_type, "
    "confidence, verified, verification_state, verification_source, "
    "verified_at, contradiction_count, embedding, created_at, last_accessed, "
    "access_count, active, temporal, source, asked_at"
)

# Columns that may be changed through _update_memory.
_UPDATABLE = frozenset(
    {
        "text", "normalized_text", "category", "confidence", "verified",
        "verification_state", "verification_source", "verified_at",
        "contradiction_count", "embedding", "last_accessed", "access_count",
        "active", "temporal", "asked_at",
    }
)


def _ts(value: datetime | None) -> str | None:
    return value.isoformat() if value else None


def _parse_ts(value: str | None) -> datetime | None:
    return datetime.fromisoformat(value) if value else None


class SQLiteStore:
    """Async SQLite persistence for memories and relationship edges."""

    def __init__(self, db_path: str = "./data/memory/recollect.db"):
        """Initialize SQLite store.

        Args:
            db_path: Path to SQLite database file
        """
        self.db_path = db_path
        self._db: aiosqlite.Connection | None = None
        self._lock = asyncio.Lock()
        self._init_lock = asyncio.Lock()
        self._holder: asyncio.Task | None = None
        self._in_transaction = False
        logger.info(f"SQLiteStore initialized with db_path: {db_path}")

    async def initialize(self) -> None:
        """Create database tables and indexes if they don't exist.

        Safe to call more than once; later calls reuse the open connection.
        """
        async with self._init_lock:
            if self._db is not None:
                return
            db_dir = Path(self.db_path).parent
            db_dir.mkdir(parents=True, exist_ok=True)

            db = await aiosqlite.connect(self.db_path, isolation_level=None)
            db.row_factory = aiosqlite.Row
            try:
                await db.execute("PRAGMA journal_mode=WAL")
                await db.execute("PRAGMA foreign_keys=ON")
                self._db = db
                await self._create_tables()
                await self._migrate_memories()
                await self._create_indexes()
            except sqlite3.Error as e:
                self._db = None
                await db.close()
                raise StorageError(
                    f"Failed to initialize database: {e}", self.db_path
                ) from e
            logger.info("SQLite database initialized successfully")

    async def _create_tables(self) -> None:
        await self._db.execute("""
            CREATE TABLE IF NOT EXISTS memories (
                id TEXT PRIMARY KEY,
                user_id TEXT NOT NULL,
                scope TEXT NOT NULL,
                text TEXT NOT NULL,
                normalized_text TEXT NOT NULL,
                category TEXT NOT NULL,
                memory_type TEXT NOT NULL,
                confidence REAL NOT NULL CHECK (confidence BETWEEN 0.0 AND 1.0),
                verified INTEGER NOT NULL DEFAULT 0,
                verification_state TEXT NOT NULL DEFAULT 'unverified',
                verification_source TEXT,
                verified_at TEXT,
                contradiction_count INTEGER NOT NULL DEFAULT 0,
                embedding BLOB NOT NULL,
                created_at TEXT NOT NULL,
                last_accessed TEXT,
                access_count INTEGER NOT NULL DEFAULT 0,
                active INTEGER NOT NULL DEFAULT 1,
                temporal TEXT,
                source TEXT NOT NULL DEFAULT 'conversation',
                asked_at TEXT
            )
        """)

        await self._db.execute("""
            CREATE TABLE IF NOT EXISTS memory_relationships (
                source_id TEXT NOT NULL,
                target_id TEXT NOT NULL,
                edge_type TEXT NOT NULL,
                confidence REAL NOT NULL,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL,
                PRIMARY KEY (source_id, target_id, edge_type),
                CHECK (source_id != target_id),
                FOREIGN KEY (source_id) REFERENCES memories(id) ON DELETE CASCADE,
                FOREIGN KEY (target_id) REFERENCES memories(id) ON DELETE CASCADE
            )
        """)

        await self._db.execute("""
            CREATE TABLE IF NOT EXISTS confidence_audit (
                audit_id INTEGER PRIMARY KEY AUTOINCREMENT,
                memory_id TEXT NOT NULL,
                old_value REAL NOT NULL,
                new_value REAL NOT NULL,
                reason TEXT NOT NULL,
                at TEXT NOT NULL,
                FOREIGN KEY (memory_id) REFERENCES memories(id) ON DELETE CASCADE
            )
        """)

    async def _migrate_memories(self) -> None:
        """Add columns introduced after the first schema version."""
        async with self._db.execute("PRAGMA table_info(memories)") as cursor:
            cols = await cursor.fetchall()
        existing = {c[1] for c in cols}
        migrations = [
            ("contradiction_count", "INTEGER NOT NULL DEFAULT 0"),
            ("temporal", "TEXT"),
            ("asked_at", "TEXT"),
        ]
        for col_name, col_type in migrations:
            if col_name not in existing:
                await self._db.execute(
                    f"ALTER TABLE memories ADD COLUMN {col_name} {col_type}"
                )
        logger.debug("memories migration check complete")

    async def _create_indexes(self) -> None:
        await self._db.execute("""
            CREATE UNIQUE INDEX IF NOT EXISTS idx_memories_active_unique
            ON memories(user_id, scope, category, normalized_text)
            WHERE active = 1
        """)
        await self._db.execute("""
            CREATE INDEX IF NOT EXISTS idx_memories_owner
            ON memories(user_id, scope, active)
        """)
        await self._db.execute("""
            CREATE INDEX IF NOT EXISTS idx_relationships_target
            ON memory_relationships(target_id)
        """)
        await self._db.execute("""
            CREATE INDEX IF NOT EXISTS idx_audit_memory
            ON confidence_audit(memory_id)
        """)

    async def close(self) -> None:
        """Close database connection."""
        if self._db:
            await self._db.close()
            self._db = None
            logger.info("SQLite database connection closed")

    # ------------------------------------------------------------------
    # Serialization of access
    # ------------------------------------------------------------------

    def _require_db(self) -> aiosqlite.Connection:
        if self._db is None:
            raise StorageError(
                "Database not initialized. Call initialize() first.", self.db_path
            )
        return self._db

    @asynccontextmanager
    async def _exclusive(self) -> AsyncIterator[aiosqlite.Connection]:
        """Hold the store lock; re-entrant for the task already holding it.

        Driver errors escaping the block surface as ``StorageError``.
        """
        db = self._require_db()
        task = asyncio.current_task()
        if self._holder is not None and self._holder is task:
            try:
                yield db
            except sqlite3.Error as e:
                raise StorageError(f"SQLite error: {e}", self.db_path) from e
            return
        async with self._lock:
            self._holder = task
            try:
                yield db
            except sqlite3.Error as e:
                raise StorageError(f"SQLite error: {e}", self.db_path) from e
            finally:
                self._holder = None

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[None]:
        """All-or-nothing unit of work.

        Store calls made by the same task inside the block join the
        transaction; an exception rolls everything back and propagates.
        """
        if self._in_transaction and self._holder is asyncio.current_task():
            raise StorageError("Nested transactions are not supported", self.db_path)
        async with self._exclusive() as db:
            await db.execute("BEGIN IMMEDIATE")
            self._in_transaction = True
            try:
                yield
            except BaseException:
                await db.execute("ROLLBACK")
                raise
            else:
                await db.execute("COMMIT")
            finally:
                self._in_transaction = False

    # ------------------------------------------------------------------
    # Memories
    # ------------------------------------------------------------------

    @staticmethod
    def _row_to_memory(row: aiosqlite.Row) -> Memory:
        temporal = row["temporal"]
        return Memory(
            id=row["id"],
            owner=OwnerKey(user_id=row["user_id"], scope=row["scope"]),
            text=row["text"],
            category=MemoryCategory(row["category"]),
            memory_type=MemoryType(row["memory_type"]),
            confidence=row["confidence"],
            verified=bool(row["verified"]),
            verification_state=VerificationState(row["verification_state"]),
            verification_source=row["verification_source"],
            verified_at=_parse_ts(row["verified_at"]),
            contradiction_count=row["contradiction_count"],
            embedding=deserialize_embedding(row["embedding"]),
            created_at=_parse_ts(row["created_at"]),
            last_accessed=_parse_ts(row["last_accessed"]),
            access_count=row["access_count"],
            active=bool(row["active"]),
            temporal=(
                TemporalAnnotation.model_validate_json(temporal) if temporal else None
            ),
            source=row["source"],
            asked_at=_parse_ts(row["asked_at"]),
        )

    async def insert_memory(self, memory: Memory) -> Memory:
        """Insert a memory record.

        Raises:
            DuplicateConflictError: An active normalized duplicate exists
        """
        normalized = normalize_text(memory.text)
        async with self._exclusive() as db:
            try:
                await db.execute(
                    f"INSERT INTO memories ({_MEMORY_COLUMNS}) "
                    "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
                    (
                        memory.id,
                        memory.owner.user_id,
                        memory.owner.scope,
                        memory.text,
                        normalized,
                        memory.category.value,
                        memory.memory_type.value,
                        memory.confidence,
                        int(memory.verified),
                        memory.verification_state.value,
                        memory.verification_source,
                        _ts(memory.verified_at),
                        memory.contradiction_count,
                        serialize_embedding(memory.embedding),
                        _ts(memory.created_at),
                        _ts(memory.last_accessed),
                        memory.access_count,
                        int(memory.active),
                        memory.temporal.model_dump_json() if memory.temporal else None,
                        memory.source,
                        _ts(memory.asked_at),
                    ),
                )
            except sqlite3.IntegrityError as e:
                if "normalized_text" in str(e):
                    raise DuplicateConflictError(
                        str(memory.owner), memory.category.value, normalized
                    ) from e
                raise
        return memory

    async def get_memory(self, memory_id: str) -> Memory | None:
        async with self._exclusive() as db:
            async with db.execute(
                f"SELECT {_MEMORY_COLUMNS} FROM memories WHERE id = ?", (memory_id,)
            ) as cursor:
                row = await cursor.fetchone()
        return self._row_to_memory(row) if row else None

    async def find_active_duplicate(
        self, owner: OwnerKey, category: MemoryCategory, text: str
    ) -> Memory | None:
        """Active memory with the same normalized text, if any."""
        async with self._exclusive() as db:
            async with db.execute(
                f"SELECT {_MEMORY_COLUMNS} FROM memories "
                "WHERE user_id = ? AND scope = ? AND category = ? "
                "AND normalized_text = ? AND active = 1",
                (owner.user_id, owner.scope, category.value, normalize_text(text)),
            ) as cursor:
                row = await cursor.fetchone()
        return self._row_to_memory(row) if row else None

    async def list_memories(
        self,
        owner: OwnerKey,
        *,
        active_only: bool = True,
        category: MemoryCategory | None = None,
        memory_type: MemoryType | None = None,
        unannotated_only: bool = False,
        limit: int | None = None,
    ) -> list[Memory]:
        """Memories for an owner, newest first."""
        clauses = ["user_id = ?", "scope = ?"]
        params: list[Any] = [owner.user_id, owner.scope]
        if active_only:
            clauses.append("active = 1")
        if category is not None:
            clauses.append("category = ?")
            params.append(category.value)
        if memory_type is not None:
            clauses.append("memory_type = ?")
            params.append(memory_type.value)
        if unannotated_only:
            clauses.append("temporal IS NULL")
        sql = (
            f"SELECT {_MEMORY_COLUMNS} FROM memories WHERE {' AND '.join(clauses)} "
            "ORDER BY created_at DESC, rowid DESC"
        )
        if limit is not None:
            sql += " LIMIT ?"
            params.append(limit)
        async with self._exclusive() as db:
            async with db.execute(sql, params) as cursor:
                rows = await cursor.fetchall()
        return [self._row_to_memory(row) for row in rows]

    async def list_verification_candidates(
        self,
        owner: OwnerKey,
        min_confidence: float,
        max_confidence: float,
        limit: int,
        asked_before: datetime | None = None,
    ) -> list[Memory]:
        """Unverified intuited memories inside the confidence band.

        Memories already asked about come back once their question is older
        than ``asked_before``.
        """
        state_clause = "verification_state = ?"
        params: list[Any] = [
            owner.user_id,
            owner.scope,
            MemoryType.INTUITED.value,
            VerificationState.UNVERIFIED.value,
        ]
        if asked_before is not None:
            state_clause = (
                "(verification_state = ? OR (verification_state = ? "
                "AND (asked_at IS NULL OR asked_at <= ?)))"
            )
            params += [VerificationState.AWAITING_RESPONSE.value, _ts(asked_before)]
        params += [min_confidence, max_confidence, limit]
        async with self._exclusive() as db:
            async with db.execute(
                f"SELECT {_MEMORY_COLUMNS} FROM memories "
                "WHERE user_id = ? AND scope = ? AND active = 1 AND verified = 0 "
                f"AND memory_type = ? AND {state_clause} "
                "AND confidence BETWEEN ? AND ? "
                "ORDER BY created_at DESC, rowid DESC LIMIT ?",
                params,
            ) as cursor:
                rows = await cursor.fetchall()
        return [self._row_to_memory(row) for row in rows]

    async def list_owners(self) -> list[tuple[OwnerKey, int]]:
        """Owners with active memories, highest volume first."""
        async with self._exclusive() as db:
            async with db.execute(
                "SELECT user_id, scope, COUNT(*) AS n FROM memories "
                "WHERE active = 1 GROUP BY user_id, scope "
                "ORDER BY n DESC, user_id, scope"
            ) as cursor:
                rows = await cursor.fetchall()
        return [
            (OwnerKey(user_id=row["user_id"], scope=row["scope"]), row["n"])
            for row in rows
        ]

    async def _update_memory(self, memory_id: str, fields: dict[str, Any]) -> bool:
        unknown = set(fields) - _UPDATABLE
        if unknown:
            raise ValueError(f"Cannot update columns: {sorted(unknown)}")
        assignments = ", ".join(f"{name} = ?" for name in fields)
        async with self._exclusive() as db:
            try:
                cursor = await db.execute(
                    f"UPDATE memories SET {assignments} WHERE id = ?",
                    (*fields.values(), memory_id),
                )
            except sqlite3.IntegrityError as e:
                if "normalized_text" in str(e):
                    raise DuplicateConflictError(
                        memory_id, str(fields.get("category", "")),
                        str(fields.get("normalized_text", "")),
                    ) from e
                raise
            return cursor.rowcount > 0

    async def update_confidence(
        self, memory_id: str, old_value: float, new_value: float, reason: str
    ) -> None:
        """Write a new confidence and append an audit row."""
        async with self._exclusive() as db:
            await self._update_memory(memory_id, {"confidence": new_value})
            await db.execute(
                "INSERT INTO confidence_audit "
                "(memory_id, old_value, new_value, reason, at) VALUES (?, ?, ?, ?, ?)",
                (memory_id, old_value, new_value, reason, _ts(utcnow())),
            )

    async def confidence_history(self, memory_id: str) -> list[ConfidenceAuditEntry]:
        async with self._exclusive() as db:
            async with db.execute(
                "SELECT memory_id, old_value, new_value, reason, at "
                "FROM confidence_audit WHERE memory_id = ? ORDER BY audit_id",
                (memory_id,),
            ) as cursor:
                rows = await cursor.fetchall()
        return [
            ConfidenceAuditEntry(
                memory_id=row["memory_id"],
                old_value=row["old_value"],
                new_value=row["new_value"],
                reason=row["reason"],
                at=_parse_ts(row["at"]),
            )
            for row in rows
        ]

    async def update_verification(
        self,
        memory_id: str,
        *,
        state: VerificationState,
        verified: bool | None = None,
        source: str | None = None,
        verified_at: datetime | None = None,
        contradiction_count: int | None = None,
        asked_at: datetime | None = None,
    ) -> bool:
        fields: dict[str, Any] = {"verification_state": state.value}
        if verified is not None:
            fields["verified"] = int(verified)
        if source is not None:
            fields["verification_source"] = source
        if verified_at is not None:
            fields["verified_at"] = _ts(verified_at)
        if contradiction_count is not None:
            fields["contradiction_count"] = contradiction_count
        if asked_at is not None:
            fields["asked_at"] = _ts(asked_at)
        return await self._update_memory(memory_id, fields)

    async def update_text_and_embedding(
        self, memory_id: str, text: str, embedding: list[float]
    ) -> bool:
        """Replace text and embedding in a single statement."""
        return await self._update_memory(
            memory_id,
            {
                "text": text,
                "normalized_text": normalize_text(text),
                "embedding": serialize_embedding(embedding),
                "temporal": None,
            },
        )

    async def update_category(self, memory_id: str, category: MemoryCategory) -> bool:
        return await self._update_memory(memory_id, {"category": category.value})

    async def update_temporal(
        self, memory_id: str, annotation: TemporalAnnotation
    ) -> bool:
        return await self._update_memory(
            memory_id, {"temporal": annotation.model_dump_json()}
        )

    async def set_active(self, memory_id: str, active: bool) -> bool:
        return await self._update_memory(memory_id, {"active": int(active)})

    async def record_access(self, memory_ids: list[str]) -> None:
        if not memory_ids:
            return
        now = _ts(utcnow())
        async with self._exclusive() as db:
            await db.executemany(
                "UPDATE memories SET access_count = access_count + 1, "
                "last_accessed = ? WHERE id = ?",
                [(now, memory_id) for memory_id in memory_ids],
            )

    async def delete_memory(self, memory_id: str) -> bool:
        """Hard-delete a memory; its edges and audit rows cascade."""
        async with self._exclusive() as db:
            cursor = await db.execute("DELETE FROM memories WHERE id = ?", (memory_id,))
            return cursor.rowcount > 0

    # ------------------------------------------------------------------
    # Relationship edges
    # ------------------------------------------------------------------

    @staticmethod
    def _row_to_edge(row: aiosqlite.Row) -> RelationshipEdge:
        return RelationshipEdge(
            source_id=row["source_id"],
            target_id=row["target_id"],
            edge_type=RelationshipType(row["edge_type"]),
            confidence=row["confidence"],
            created_at=_parse_ts(row["created_at"]),
            updated_at=_parse_ts(row["updated_at"]),
        )

    async def upsert_edge(
        self,
        source_id: str,
        target_id: str,
        edge_type: RelationshipType,
        confidence: float,
        created_at: datetime | None = None,
    ) -> RelationshipEdge:
        """Insert an edge, or raise an existing edge's confidence to the max."""
        now = utcnow()
        async with self._exclusive() as db:
            await db.execute(
                """
                INSERT INTO memory_relationships (
                    source_id, target_id, edge_type, confidence,
                    created_at, updated_at
                )
                VALUES (?, ?, ?, ?, ?, ?)
                ON CONFLICT (source_id, target_id, edge_type) DO UPDATE SET
                    confidence = MAX(confidence, excluded.confidence),
                    created_at = MIN(created_at, excluded.created_at),
                    updated_at = excluded.updated_at
                """,
                (
                    source_id,
                    target_id,
                    edge_type.value,
                    confidence,
                    _ts(created_at or now),
                    _ts(now),
                ),
            )
            async with db.execute(
                "SELECT * FROM memory_relationships "
                "WHERE source_id = ? AND target_id = ? AND edge_type = ?",
                (source_id, target_id, edge_type.value),
            ) as cursor:
                row = await cursor.fetchone()
        return self._row_to_edge(row)

    async def get_edges(self, memory_id: str) -> list[RelationshipEdge]:
        """All edges incident to a memory, in both directions."""
        async with self._exclusive() as db:
            async with db.execute(
                "SELECT * FROM memory_relationships "
                "WHERE source_id = ? OR target_id = ? "
                "ORDER BY created_at, source_id, target_id, edge_type",
                (memory_id, memory_id),
            ) as cursor:
                rows = await cursor.fetchall()
        return [self._row_to_edge(row) for row in rows]

    async def migrate_edges(self, old_ids: list[str], new_id: str) -> int:
        """Re-point every edge touching ``old_ids`` at ``new_id``.

        Edges that would become self-loops are dropped; rewritten duplicates
        collapse into one edge with the maximum confidence. Callers wanting
        atomicity with other writes run this inside ``transaction()``.

        Returns:
            Number of edges rewritten
        """
        if not old_ids:
            return 0
        placeholders = ", ".join("?" for _ in old_ids)
        old = set(old_ids)
        async with self._exclusive() as db:
            async with db.execute(
                f"SELECT * FROM memory_relationships "
                f"WHERE source_id IN ({placeholders}) OR target_id IN ({placeholders})",
                (*old_ids, *old_ids),
            ) as cursor:
                rows = await cursor.fetchall()
            edges = [self._row_to_edge(row) for row in rows]

            await db.execute(
                f"DELETE FROM memory_relationships "
                f"WHERE source_id IN ({placeholders}) OR target_id IN ({placeholders})",
                (*old_ids, *old_ids),
            )

            rewritten = 0
            for edge in edges:
                source = new_id if edge.source_id in old else edge.source_id
                target = new_id if edge.target_id in old else edge.target_id
                if source == target:
                    continue
                await self.upsert_edge(
                    source, target, edge.edge_type, edge.confidence, edge.created_at
                )
                rewritten += 1
        logger.debug(f"Migrated {rewritten} edges from {len(old_ids)} ids to {new_id}")
        return rewritten

    async def count_memories(self, owner: OwnerKey | None = None) -> int:
        sql = "SELECT COUNT(*) FROM memories"
        params: tuple = ()
        if owner is not None:
            sql += " WHERE user_id = ? AND scope = ?"
            params = (owner.user_id, owner.scope)
        async with self._exclusive() as db:
            async with db.execute(sql, params) as cursor:
                row = await cursor.fetchone()
        return row[0]
