"""Shared fixtures and deterministic fake oracles for memory tests."""

from __future__ import annotations

import asyncio
import re
import zlib

import pytest

from recollect.config import EmbeddingConfig, MemoryConfig, StorageConfig
from recollect.embedding import EmbeddingIndex
from recollect.graph import RelationshipGraph
from recollect.memory_service import MemoryService
from recollect.memory_store import MemoryStore
from recollect.models import (
    CurationItem,
    CurationProposal,
    OwnerKey,
    RelationshipProposal,
    TemporalAnnotation,
)
from recollect.storage.sqlite_store import SQLiteStore

# ---------------------------------------------------------------------------
# Fake oracles
# ---------------------------------------------------------------------------

CONCEPTS: dict[str, set[str]] = {
    "food": {"food", "pizza", "pasta", "sushi", "eat", "eats", "meat", "burger", "cooking"},
    "outdoors": {"hiking", "hike", "camping", "outdoors", "mountains", "climbing"},
    "work": {"work", "works", "job", "nurse", "teacher", "engineer", "career"},
    "like": {"like", "likes", "love", "loves", "enjoy", "enjoys", "prefers"},
    "home": {"lives", "live", "city", "boston", "paris", "home"},
    "name": {"name", "called"},
    "pets": {"dog", "dogs", "cat", "cats", "pet", "pets"},
    "music": {"guitar", "piano", "music", "plays", "songs"},
}
IGNORED = {"the", "a", "an", "is", "does", "what", "do", "of", "to"}
HASH_BUCKETS = 8
DIMENSION = len(CONCEPTS) + HASH_BUCKETS


class ConceptEmbedder:
    """Bag-of-concepts embedder: words map onto a few semantic axes.

    Unknown words land in hashed buckets with a small weight, so unrelated
    texts are close to orthogonal while paraphrases share their concepts.
    """

    def __init__(self, dimension: int = DIMENSION, delay: float = 0.0):
        self.dimension = dimension
        self.delay = delay
        self.fail = False
        self.batches: list[list[str]] = []
        self.in_flight = 0
        self.max_in_flight = 0

    def vector(self, text: str) -> list[float]:
        vec = [0.0] * self.dimension
        for word in re.findall(r"[a-z']+", text.lower()):
            if word in IGNORED:
                continue
            for axis, (_, members) in enumerate(CONCEPTS.items()):
                if word in members:
                    vec[axis] += 1.0
                    break
            else:
                bucket = len(CONCEPTS) + zlib.crc32(word.encode()) % HASH_BUCKETS
                vec[bucket] += 0.2
        return vec

    async def embed(self, text: str) -> list[float]:
        return (await self.embed_batch([text]))[0]

    async def embed_batch(self, texts: list[str]) -> list[list[float]]:
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            if self.delay:
                await asyncio.sleep(self.delay)
            if self.fail:
                raise RuntimeError("embedding backend down")
            self.batches.append(list(texts))
            return [self.vector(t) for t in texts]
        finally:
            self.in_flight -= 1


class ScriptedJudge:
    """Judge oracle returning canned answers and recording its calls."""

    def __init__(self):
        self.fail = False
        self.temporal: dict[str, TemporalAnnotation] = {}
        self.rewrites: dict[str, str] = {}
        self.proposal: CurationProposal | None = None
        self.relationships: dict[tuple[str, str], list[RelationshipProposal]] = {}
        self.temporal_calls: list[str] = []
        self.curate_calls: list[list[CurationItem]] = []
        self.rewrite_calls: list[str] = []
        self.relationship_calls: list[tuple[str, str]] = []

    def _check(self) -> None:
        if self.fail:
            from recollect.exceptions import OracleUnavailableError

            raise OracleUnavailableError("judge", "scripted outage")

    async def classify_temporal(self, text: str) -> TemporalAnnotation:
        self.temporal_calls.append(text)
        self._check()
        return self.temporal.get(text, TemporalAnnotation(analyzed_by="oracle"))

    async def curate(self, items: list[CurationItem]) -> CurationProposal:
        self.curate_calls.append(items)
        self._check()
        return self.proposal or CurationProposal(keep=[i.index for i in items])

    async def rewrite(self, text: str) -> str:
        self.rewrite_calls.append(text)
        self._check()
        return self.rewrites.get(text, text)

    async def classify_relationships(
        self, text: str, other_text: str
    ) -> list[RelationshipProposal]:
        self.relationship_calls.append((text, other_text))
        self._check()
        return self.relationships.get((text, other_text), [])


class FakeChatLLM:
    """Streaming chat client yielding a canned reply in chunks."""

    def __init__(self, reply: str = "", chunked: bool = True):
        self.reply = reply
        self.chunked = chunked
        self.calls: list[dict] = []
        self.error: Exception | None = None

    async def chat_completion(self, messages, system=None):
        self.calls.append({"messages": messages, "system": system})
        if self.error is not None:
            raise self.error
        if self.chunked:
            middle = len(self.reply) // 2
            yield self.reply[:middle]
            yield {"type": "text_delta", "text": self.reply[middle:]}
        else:
            yield self.reply


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def config(tmp_path) -> MemoryConfig:
    return MemoryConfig(
        storage=StorageConfig(sqlite_db_path=str(tmp_path / "memory.db")),
        embedding=EmbeddingConfig(dimension=DIMENSION, coalesce_window_ms=1),
    )


@pytest.fixture
def owner() -> OwnerKey:
    return OwnerKey(user_id="alice")


@pytest.fixture
def embedder() -> ConceptEmbedder:
    return ConceptEmbedder()


@pytest.fixture
def judge() -> ScriptedJudge:
    return ScriptedJudge()


@pytest.fixture
async def store(config):
    """Initialized SQLiteStore in a temporary directory."""
    s = SQLiteStore(db_path=config.storage.sqlite_db_path)
    await s.initialize()
    yield s
    await s.close()


@pytest.fixture
async def index(embedder, config):
    idx = EmbeddingIndex(embedder, config.embedding)
    yield idx
    await idx.close()


@pytest.fixture
def memories(store, index, config) -> MemoryStore:
    return MemoryStore(store, index, config)


@pytest.fixture
def graph(store) -> RelationshipGraph:
    return RelationshipGraph(store)


@pytest.fixture
async def service(config, embedder, judge):
    svc = MemoryService(config=config, embedding_oracle=embedder, judge=judge)
    yield svc
    await svc.close()


@pytest.fixture
def make_llm():
    """Factory for scripted streaming chat clients."""
    return FakeChatLLM
