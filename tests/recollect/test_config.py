import pytest
from pydantic import ValidationError

from recollect.config import (
    CurationConfig, EmbeddingConfig, GraphConfig, MemoryConfig, StorageConfig,
    VerificationConfig,
)

def test_embedding_config_defaults():
    cfg = EmbeddingConfig()
    assert cfg.cache_capacity == 1000
    assert cfg.coalesce_window_ms == 100
    assert cfg.max_concurrent_calls >= 1

def test_verification_config_defaults():
    cfg = VerificationConfig()
    assert cfg.candidate_min_confidence == 0.4
    assert cfg.candidate_max_confidence == 0.8
    assert cfg.batch_size == 3
    assert cfg.deny_similarity < cfg.confirm_similarity
    assert cfg.verified_confidence >= cfg.verified_floor
    assert cfg.reask_after_hours == 24.0

def test_curation_config_defaults():
    cfg = CurationConfig()
    assert cfg.merge_similarity_threshold == 0.9
    assert cfg.oracle_top_owners == 5

def test_graph_config_defaults():
    cfg = GraphConfig()
    assert cfg.discovery_similarity_threshold == 0.7
    assert cfg.relationship_min_confidence == 0.5
    assert cfg.expansion_min_confidence == 0.75
    assert MemoryConfig().graph == cfg

def test_reask_window_must_be_positive():
    with pytest.raises(ValidationError):
        VerificationConfig(reask_after_hours=0)

def test_memory_config_aggregates_sections():
    cfg = MemoryConfig()
    assert isinstance(cfg.storage, StorageConfig)
    assert isinstance(cfg.embedding, EmbeddingConfig)
    assert cfg.temporal.complexity_threshold == 0.5

def test_storage_path_rejects_parent_components():
    with pytest.raises(ValidationError):
        StorageConfig(sqlite_db_path="../outside/memory.db")

def test_thresholds_must_be_ordered():
    with pytest.raises(ValidationError):
        MemoryConfig(verification={"confirm_similarity": 0.3, "deny_similarity": 0.7})

def test_candidate_band_must_be_ordered():
    with pytest.raises(ValidationError):
        MemoryConfig(
            verification={"candidate_min_confidence": 0.9, "candidate_max_confidence": 0.5}
        )

def test_cache_capacity_must_be_positive():
    with pytest.raises(ValidationError):
        EmbeddingConfig(cache_capacity=0)
