"""Configuration models for the memory subsystem."""

from __future__ import annotations

import os

from pydantic import BaseModel, Field, model_validator


class StorageConfig(BaseModel):
    """Storage paths configuration."""

    sqlite_db_path: str = "./data/memory/recollect.db"

    @model_validator(mode="after")
    def _validate_paths(self) -> "StorageConfig":
        normalized = os.path.normpath(self.sqlite_db_path)
        parts = normalized.replace("\\", "/").split("/")
        if ".." in parts:
            raise ValueError(
                f"sqlite_db_path must not contain '..' components: "
                f"{self.sqlite_db_path!r}"
            )
        self.sqlite_db_path = normalized
        return self


class EmbeddingConfig(BaseModel):
    """Embedding model and index configuration."""

    provider: str = "sentence_transformers"
    model: str = "sentence-transformers/all-MiniLM-L6-v2"
    dimension: int = 384
    trust_remote_code: bool = False
    cache_capacity: int = Field(default=1000, ge=1)
    coalesce_window_ms: int = Field(default=100, ge=0)
    max_batch_size: int = Field(default=64, ge=1)
    max_concurrent_calls: int = Field(default=4, ge=1)


class ConfidenceConfig(BaseModel):
    """Initial confidence, decay and contradiction penalties."""

    explicit_initial: float = 0.95
    intuited_initial: float = 0.75
    merged_initial: float = 0.8
    min_confidence: float = 0.1
    decay_grace_days: int = 7
    explicit_decay_rate: float = 0.001
    intuited_decay_rate: float = 0.01
    decay_min_change: float = 0.01
    first_contradiction_factor: float = 0.7
    repeat_contradiction_factor: float = 0.5
    corroborate_on_create: bool = True
    corroboration_similarity: float = 0.85
    corroboration_limit: int = Field(default=5, ge=1)
    corroboration_boost: float = 0.1
    explicit_corroboration_boost: float = 0.05


class VerificationConfig(BaseModel):
    """Verification candidate selection and response thresholds."""

    candidate_min_confidence: float = 0.4
    candidate_max_confidence: float = 0.8
    batch_size: int = 3
    confirm_similarity: float = 0.7
    deny_similarity: float = 0.3
    verified_confidence: float = 1.0
    verified_floor: float = 0.9
    correction_confidence: float = 0.95
    # Unanswered questions become candidates again after this long.
    reask_after_hours: float = Field(default=24.0, gt=0)


class GraphConfig(BaseModel):
    """Relationship discovery and graph-expanded retrieval."""

    discovery_similarity_threshold: float = 0.7
    discovery_candidates: int = Field(default=5, ge=1)
    discovery_batch_size: int = Field(default=10, ge=1)
    relationship_min_confidence: float = 0.5
    expansion_min_confidence: float = 0.75
    expansion_per_memory: int = Field(default=2, ge=1)


class TemporalConfig(BaseModel):
    """Temporal analysis configuration."""

    complexity_threshold: float = 0.5
    batch_size: int = 50


class CurationConfig(BaseModel):
    """Maintenance pipeline configuration."""

    merge_similarity_threshold: float = 0.9
    rewrite_min_similarity: float = 0.8
    rewrite_max_length_ratio: float = 2.0
    oracle_top_owners: int = 5
    oracle_min_category_size: int = 5
    oracle_batch_size: int = 50


class OracleConfig(BaseModel):
    """Judge oracle configuration."""

    max_concurrent_calls: int = Field(default=2, ge=1)


class MemoryConfig(BaseModel):
    """Top-level memory subsystem configuration."""

    storage: StorageConfig = Field(default_factory=StorageConfig)
    embedding: EmbeddingConfig = Field(default_factory=EmbeddingConfig)
    confidence: ConfidenceConfig = Field(default_factory=ConfidenceConfig)
    verification: VerificationConfig = Field(default_factory=VerificationConfig)
    graph: GraphConfig = Field(default_factory=GraphConfig)
    temporal: TemporalConfig = Field(default_factory=TemporalConfig)
    curation: CurationConfig = Field(default_factory=CurationConfig)
    oracle: OracleConfig = Field(default_factory=OracleConfig)

    @model_validator(mode="after")
    def _validate_thresholds(self) -> "MemoryConfig":
        v = self.verification
        if v.deny_similarity >= v.confirm_similarity:
            raise ValueError(
                "verification.deny_similarity must be below confirm_similarity"
            )
        if v.candidate_min_confidence > v.candidate_max_confidence:
            raise ValueError(
                "verification.candidate_min_confidence must not exceed "
                "candidate_max_confidence"
            )
        if v.verified_confidence < v.verified_floor:
            raise ValueError(
                "verification.verified_confidence must be at least verified_floor"
            )
        return self
