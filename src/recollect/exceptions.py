"""Exception hierarchy for the memory subsystem.

Every error raised by the core derives from ``MemorySystemError`` so callers
can catch the whole family at their boundary.
"""

from __future__ import annotations


class MemorySystemError(Exception):
    """Base error for the memory subsystem."""

    pass


class ValidationError(MemorySystemError):
    """Rejected input (blank text, unknown category, self-loop edge, ...)."""

    def __init__(self, field: str, message: str):
        self.field = field
        super().__init__(f"Validation error for '{field}': {message}")


class NotFoundError(MemorySystemError):
    """No memory with the given id (for the given owner)."""

    def __init__(self, memory_id: str):
        self.memory_id = memory_id
        super().__init__(f"Memory not found: {memory_id}")


class DimensionMismatchError(MemorySystemError):
    """Embedding length disagrees with the index dimension."""

    def __init__(self, expected: int, actual: int):
        self.expected = expected
        self.actual = actual
        super().__init__(
            f"Embedding dimension mismatch: expected {expected}, got {actual}"
        )


class OracleUnavailableError(MemorySystemError):
    """An external oracle failed or returned an unusable payload."""

    def __init__(self, oracle: str, reason: str):
        self.oracle = oracle
        self.reason = reason
        super().__init__(f"Oracle '{oracle}' unavailable: {reason}")


class ConflictError(MemorySystemError):
    """Concurrent modification or an invalid state transition."""

    pass


class DuplicateConflictError(ConflictError):
    """A write would create a second active normalized-duplicate memory."""

    def __init__(self, owner: str, category: str, normalized_text: str):
        self.owner = owner
        self.category = category
        self.normalized_text = normalized_text
        super().__init__(
            f"Duplicate memory for {owner}/{category}: {normalized_text!r}"
        )


class StorageError(MemorySystemError):
    """Persistence layer misuse or failure."""

    def __init__(self, message: str, path: str | None = None):
        self.path = path
        super().__init__(message)
