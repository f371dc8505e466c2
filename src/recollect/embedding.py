"""Embedding index for the memory subsystem.

Wraps an external embedding oracle with:
- A bounded LRU cache keyed by normalized text
- Request coalescing: embeds requested within a short window are sent to
  the oracle as one batch, and each caller receives only its own vector
- A cap on concurrently outstanding oracle calls

Also provides the default sentence-transformers oracle and the BLOB
serialization helpers used by the SQLite store.
"""

from __future__ import annotations

import asyncio
import math
import struct
from collections import OrderedDict
from threading import Lock
from typing import TYPE_CHECKING, Any

import numpy as np
from loguru import logger

from .config import EmbeddingConfig
from .exceptions import DimensionMismatchError, OracleUnavailableError, ValidationError
from .text import normalize_text

if TYPE_CHECKING:
    from .oracle import EmbeddingOracle


def serialize_embedding(embedding: list[float]) -> bytes:
    """Pack an embedding as little-endian float32 for BLOB storage."""
    return struct.pack(f"<{len(embedding)}f", *embedding)


def deserialize_embedding(blob: bytes) -> list[float]:
    count = len(blob) // 4  # float32 = 4 bytes
    return list(struct.unpack(f"<{count}f", blob))


class LRUCache:
    """Fixed-capacity least-recently-used cache.

    Speed-only layer: nothing correctness-relevant is decided from it.
    """

    def __init__(self, capacity: int = 1000):
        if capacity < 1:
            raise ValueError("capacity must be at least 1")
        self._capacity = capacity
        self._data: OrderedDict[str, Any] = OrderedDict()
        self._lock = Lock()
        self._stats = {"hits": 0, "misses": 0, "evictions": 0}

    @property
    def capacity(self) -> int:
        return self._capacity

    def get(self, key: str) -> Any | None:
        with self._lock:
            if key not in self._data:
                self._stats["misses"] += 1
                return None
            self._data.move_to_end(key)
            self._stats["hits"] += 1
            return self._data[key]

    def put(self, key: str, value: Any) -> None:
        with self._lock:
            if key in self._data:
                self._data.move_to_end(key)
                self._data[key] = value
                return
            while len(self._data) >= self._capacity:
                self._data.popitem(last=False)
                self._stats["evictions"] += 1
            self._data[key] = value

    def __contains__(self, key: str) -> bool:
        with self._lock:
            return key in self._data

    def __len__(self) -> int:
        with self._lock:
            return len(self._data)

    def clear(self) -> None:
        with self._lock:
            self._data.clear()

    def get_stats(self) -> dict[str, Any]:
        with self._lock:
            total = self._stats["hits"] + self._stats["misses"]
            return {
                **self._stats,
                "size": len(self._data),
                "capacity": self._capacity,
                "hit_rate": self._stats["hits"] / total if total else 0.0,
            }


class EmbeddingIndex:
    """Cached, coalescing, concurrency-bounded front for an embedding oracle."""

    def __init__(
        self,
        oracle: EmbeddingOracle,
        config: EmbeddingConfig | None = None,
    ):
        self._oracle = oracle
        self._config = config or EmbeddingConfig()
        self._dimension = self._config.dimension
        self._cache = LRUCache(self._config.cache_capacity)
        self._semaphore = asyncio.Semaphore(self._config.max_concurrent_calls)
        self._pending: dict[str, asyncio.Future] = {}
        self._flush_handle: asyncio.TimerHandle | None = None
        self._flush_tasks: set[asyncio.Task] = set()
        self.oracle_calls = 0

    @property
    def dimension(self) -> int:
        return self._dimension

    @property
    def cache(self) -> LRUCache:
        return self._cache

    async def embed(self, text: str) -> list[float]:
        """Embed one text, via the cache or the next coalesced batch.

        Raises:
            ValidationError: Blank text
            OracleUnavailableError: The oracle call failed
            DimensionMismatchError: The oracle returned a wrong-size vector
        """
        key = normalize_text(text)
        if not key:
            raise ValidationError("text", "cannot embed blank text")

        cached = self._cache.get(key)
        if cached is not None:
            return list(cached)

        future = self._pending.get(key)
        if future is None:
            loop = asyncio.get_running_loop()
            future = loop.create_future()
            self._pending[key] = future
            if len(self._pending) >= self._config.max_batch_size:
                self._start_flush()
            elif self._flush_handle is None:
                self._flush_handle = loop.call_later(
                    self._config.coalesce_window_ms / 1000, self._start_flush
                )

        # Several callers may share one future; a cancelled caller must not
        # cancel it for the others.
        vector = await asyncio.shield(future)
        return list(vector)

    async def embed_many(self, texts: list[str]) -> list[list[float]]:
        """Embed several texts; order-preserving, coalesced into few batches."""
        return list(await asyncio.gather(*(self.embed(t) for t in texts)))

    def _start_flush(self) -> None:
        if self._flush_handle is not None:
            self._flush_handle.cancel()
            self._flush_handle = None
        if not self._pending:
            return
        batch, self._pending = self._pending, {}
        task = asyncio.get_running_loop().create_task(self._flush(batch))
        self._flush_tasks.add(task)
        task.add_done_callback(self._flush_tasks.discard)

    async def _flush(self, batch: dict[str, asyncio.Future]) -> None:
        keys = list(batch)
        try:
            async with self._semaphore:
                self.oracle_calls += 1
                vectors = await self._oracle.embed_batch(keys)
            if len(vectors) != len(keys):
                raise ValueError(
                    f"expected {len(keys)} vectors, got {len(vectors)}"
                )
        except Exception as e:
            logger.warning(f"Embedding oracle failed for batch of {len(keys)}: {e}")
            error = OracleUnavailableError("embedding", str(e))
            for future in batch.values():
                if not future.done():
                    future.set_exception(error)
                    # Mark retrieved so abandoned futures don't warn.
                    future.exception()
            return

        logger.debug(f"Embedded batch of {len(keys)} texts")
        for key, vector in zip(keys, vectors):
            future = batch[key]
            if future.done():
                continue
            vector = [float(x) for x in vector]
            try:
                self.validate(vector)
            except DimensionMismatchError as e:
                future.set_exception(e)
                future.exception()
                continue
            self._cache.put(key, vector)
            future.set_result(vector)

    def validate(self, vector: list[float]) -> None:
        """Raise DimensionMismatchError unless vector fits this index."""
        if len(vector) != self._dimension:
            raise DimensionMismatchError(self._dimension, len(vector))
        if not all(math.isfinite(x) for x in vector):
            raise ValidationError("embedding", "contains non-finite values")

    @staticmethod
    def similarity(a: list[float], b: list[float]) -> float:
        """Cosine similarity in [-1, 1]; 0.0 when either vector is zero.

        Raises:
            DimensionMismatchError: Vectors differ in length
        """
        if len(a) != len(b):
            raise DimensionMismatchError(len(a), len(b))
        va = np.asarray(a, dtype=np.float64)
        vb = np.asarray(b, dtype=np.float64)
        norm = float(np.linalg.norm(va)) * float(np.linalg.norm(vb))
        if norm == 0.0:
            return 0.0
        return float(np.clip(np.dot(va, vb) / norm, -1.0, 1.0))

    async def close(self) -> None:
        """Fail anything still queued and wait for in-flight batches."""
        if self._flush_handle is not None:
            self._flush_handle.cancel()
            self._flush_handle = None
        error = OracleUnavailableError("embedding", "index closed")
        for future in self._pending.values():
            if not future.done():
                future.set_exception(error)
                future.exception()
        self._pending = {}
        if self._flush_tasks:
            await asyncio.gather(*self._flush_tasks, return_exceptions=True)


class SentenceTransformerEmbedder:
    """Embedding oracle backed by a local sentence-transformers model.

    The model is loaded lazily on first use; encoding runs in a worker
    thread so the event loop is never blocked.
    """

    def __init__(self, config: EmbeddingConfig | None = None):
        self._config = config or EmbeddingConfig()
        self._model = None
        self._dimension = self._config.dimension

    @property
    def dimension(self) -> int:
        return self._dimension

    def _ensure_model(self) -> None:
        """Lazy-load the sentence-transformers model."""
        if self._model is not None:
            return

        try:
            from sentence_transformers import SentenceTransformer
        except ImportError:
            raise ImportError(
                "sentence-transformers is required for SentenceTransformerEmbedder. "
                "Install with: pip install 'recollect[embeddings]'"
            )

        logger.info(f"Loading embedding model: {self._config.model}")
        self._model = SentenceTransformer(
            self._config.model,
            trust_remote_code=self._config.trust_remote_code,
        )
        self._dimension = self._model.get_sentence_embedding_dimension()
        if self._dimension != self._config.dimension:
            logger.warning(
                f"Model dimension {self._dimension} differs from configured "
                f"{self._config.dimension}"
            )
        logger.info(f"Embedding model loaded: dim={self._dimension}")

    def encode(self, texts: list[str]) -> list[list[float]]:
        if not texts:
            return []
        self._ensure_model()
        embeddings: np.ndarray = self._model.encode(
            texts, batch_size=32, show_progress_bar=False,
            normalize_embeddings=True,
        )
        return embeddings.tolist()

    async def embed(self, text: str) -> list[float]:
        results = await self.embed_batch([text])
        return results[0]

    async def embed_batch(self, texts: list[str]) -> list[list[float]]:
        return await asyncio.to_thread(self.encode, texts)
