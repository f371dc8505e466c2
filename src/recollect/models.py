"""Core data models for the memory subsystem."""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Annotated, Literal, Union
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _uuid() -> str:
    return str(uuid4())


class MemoryCategory(str, Enum):
    PERSONAL = "personal"
    PROFESSIONAL = "professional"
    PREFERENCES = "preferences"
    HOBBIES = "hobbies"
    CONTACT = "contact"
    OTHER = "other"


class MemoryType(str, Enum):
    EXPLICIT = "explicit"
    INTUITED = "intuited"
    MERGED = "merged"
    CORRECTED = "corrected"


class VerificationState(str, Enum):
    UNVERIFIED = "unverified"
    AWAITING_RESPONSE = "awaiting_response"
    VERIFIED = "verified"
    CONTRADICTED = "contradicted"


class RelationshipType(str, Enum):
    SUPPORTS = "supports"
    CONTRADICTS = "contradicts"
    ELABORATES = "elaborates"
    SUPERSEDES = "supersedes"
    CAUSES = "causes"
    RELATED_TO = "related_to"
    FOLLOWS = "follows"
    PRECEDES = "precedes"
    PART_OF = "part_of"


class Tense(str, Enum):
    PAST = "past"
    PRESENT = "present"
    FUTURE = "future"
    CHANGE = "change"
    FREQUENCY = "frequency"


class Stability(str, Enum):
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"


class Frequency(str, Enum):
    ONE_TIME = "one_time"
    OCCASIONAL = "occasional"
    REGULAR = "regular"
    CONSTANT = "constant"
    NEVER = "never"


class OwnerKey(BaseModel):
    """(user, scope) pair that partitions every memory operation."""

    model_config = ConfigDict(frozen=True)

    user_id: str
    scope: str = "default"

    def __str__(self) -> str:
        return f"{self.user_id}:{self.scope}"


class TemporalAnnotation(BaseModel):
    """Tense/stability/frequency annotation attached to a memory."""

    tense: Tense = Tense.PRESENT
    is_current: bool = True
    stability: Stability = Stability.MEDIUM
    frequency: Frequency | None = None
    time_references: list[str] = Field(default_factory=list)
    likely_to_change: bool = False
    analyzed_by: Literal["local", "oracle"] = "local"


class Memory(BaseModel):
    """A short factual statement about a user."""

    id: str = Field(default_factory=_uuid)
    owner: OwnerKey
    text: str
    category: MemoryCategory = MemoryCategory.OTHER
    memory_type: MemoryType = MemoryType.INTUITED
    confidence: float = Field(default=0.75, ge=0.0, le=1.0)
    verified: bool = False
    verification_state: VerificationState = VerificationState.UNVERIFIED
    verification_source: str | None = None
    verified_at: datetime | None = None
    contradiction_count: int = 0
    embedding: list[float] = Field(default_factory=list)
    created_at: datetime = Field(default_factory=utcnow)
    last_accessed: datetime | None = None
    access_count: int = 0
    active: bool = True
    temporal: TemporalAnnotation | None = None
    source: str = "conversation"
    asked_at: datetime | None = None

    @property
    def is_protected(self) -> bool:
        """Verified or explicit memories are never hard-deleted."""
        return self.verified or self.memory_type == MemoryType.EXPLICIT


class ScoredMemory(BaseModel):
    """A memory returned by similarity retrieval."""

    memory: Memory
    similarity: float
    via_relationship: RelationshipType | None = None
    graph_confidence: float | None = None


class RelationshipEdge(BaseModel):
    """Directed, typed edge between two memories."""

    source_id: str
    target_id: str
    edge_type: RelationshipType
    confidence: float = Field(default=0.5, ge=0.0, le=1.0)
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)


class ConfidenceAuditEntry(BaseModel):
    memory_id: str
    old_value: float
    new_value: float
    reason: str
    at: datetime


# ---------------------------------------------------------------------------
# Verification outcomes (tagged variant)
# ---------------------------------------------------------------------------


class Confirmed(BaseModel):
    kind: Literal["confirmed"] = "confirmed"
    via: Literal["pattern", "similarity"] = "pattern"


class Denied(BaseModel):
    kind: Literal["denied"] = "denied"
    via: Literal["pattern", "similarity"] = "pattern"
    correction: str | None = None


class Ambiguous(BaseModel):
    kind: Literal["ambiguous"] = "ambiguous"
    similarity: float | None = None


VerificationOutcome = Annotated[
    Union[Confirmed, Denied, Ambiguous], Field(discriminator="kind")
]


class VerificationResult(BaseModel):
    """What a verification response did to the store."""

    memory_id: str
    outcome: VerificationOutcome
    correction_id: str | None = None


# ---------------------------------------------------------------------------
# Oracle payloads
# ---------------------------------------------------------------------------


class MergeGroup(BaseModel):
    indices: list[int]
    new_text: str | None = None


class CurationProposal(BaseModel):
    """Judge proposal for one category batch."""

    keep: list[int] = Field(default_factory=list)
    remove: list[int] = Field(default_factory=list)
    merge: list[MergeGroup] = Field(default_factory=list)
    reasoning: str = ""


class CurationItem(BaseModel):
    index: int
    text: str
    confidence: float


class RelationshipProposal(BaseModel):
    """Judge verdict on how one memory relates to another."""

    edge_type: RelationshipType = RelationshipType.RELATED_TO
    confidence: float = Field(default=0.6, ge=0.0, le=1.0)
    explanation: str = ""


# ---------------------------------------------------------------------------
# Analysis / maintenance results
# ---------------------------------------------------------------------------


class Contradiction(BaseModel):
    newer_id: str
    older_id: str
    rule: Literal["stability_change", "tense_mismatch", "frequency_mismatch"]
    confidence: float


class StageReport(BaseModel):
    name: str
    examined: int = 0
    changed: int = 0
    errors: int = 0
    skipped: bool = False


class CurationReport(BaseModel):
    started_at: datetime = Field(default_factory=utcnow)
    finished_at: datetime | None = None
    stages: list[StageReport] = Field(default_factory=list)
    cancelled: bool = False

    def stage(self, name: str) -> StageReport | None:
        for report in self.stages:
            if report.name == name:
                return report
        return None


class GraphBuildReport(BaseModel):
    processed: int = 0
    connections_created: int = 0
    errors: int = 0


class AnalysisReport(BaseModel):
    annotated: int = 0
    oracle_calls: int = 0
    errors: int = 0
    contradictions: list[Contradiction] = Field(default_factory=list)
