"""Long-term memory subsystem for conversational assistants.

Stores short factual memories per (user, scope) owner with embeddings,
confidence, categories and a relationship graph, and keeps them consistent
through verification, temporal analysis and periodic curation.
"""

from .config import MemoryConfig
from .exceptions import (
    ConflictError,
    DimensionMismatchError,
    DuplicateConflictError,
    MemorySystemError,
    NotFoundError,
    OracleUnavailableError,
    StorageError,
    ValidationError,
)
from .memory_service import MemoryService
from .models import (
    Memory,
    MemoryCategory,
    MemoryType,
    OwnerKey,
    RelationshipEdge,
    RelationshipType,
    VerificationState,
)

__all__ = [
    "ConflictError",
    "DimensionMismatchError",
    "DuplicateConflictError",
    "Memory",
    "MemoryCategory",
    "MemoryConfig",
    "MemoryService",
    "MemorySystemError",
    "MemoryType",
    "NotFoundError",
    "OracleUnavailableError",
    "OwnerKey",
    "RelationshipEdge",
    "RelationshipType",
    "StorageError",
    "ValidationError",
    "VerificationState",
]
