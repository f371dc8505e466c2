"""Confidence scoring: initial values, access boost, decay and penalties."""

from __future__ import annotations

import math
import re
from datetime import datetime

from .config import ConfidenceConfig
from .models import Memory, MemoryCategory, MemoryType, utcnow

_HEDGE_RE = re.compile(
    r"\b(might|maybe|possibly|sometimes|occasionally)\b", re.IGNORECASE
)

_CATEGORY_ADJUSTMENT = {
    MemoryCategory.PERSONAL: 0.05,
    MemoryCategory.CONTACT: 0.05,
    MemoryCategory.PREFERENCES: -0.05,
}


def clamp(value: float, low: float = 0.0, high: float = 1.0) -> float:
    if math.isnan(value):
        return low
    return max(low, min(high, value))


def initial_confidence(
    memory_type: MemoryType,
    category: MemoryCategory,
    text: str,
    source: str = "conversation",
    config: ConfidenceConfig | None = None,
) -> float:
    """Starting confidence for a new memory.

    Args:
        memory_type: How the memory was obtained
        category: Memory category
        text: Memory text (hedge words lower the score)
        source: Source tag
        config: Confidence configuration

    Returns:
        Confidence in [min_confidence, 1.0]
    """
    cfg = config or ConfidenceConfig()
    if source == "memory_command":
        return 1.0

    base = {
        MemoryType.EXPLICIT: cfg.explicit_initial,
        MemoryType.CORRECTED: cfg.explicit_initial,
        MemoryType.MERGED: cfg.merged_initial,
    }.get(memory_type, cfg.intuited_initial)

    if source in ("merged", "curation"):
        base += 0.05
    base += _CATEGORY_ADJUSTMENT.get(category, 0.0)
    base -= 0.1 * len(_HEDGE_RE.findall(text))
    return clamp(base, cfg.min_confidence, 1.0)


def decayed_confidence(
    memory: Memory,
    now: datetime | None = None,
    config: ConfidenceConfig | None = None,
) -> float | None:
    """Return the decayed confidence, or None when no update is warranted.

    Verified memories and memories inside the grace period never decay.
    """
    cfg = config or ConfidenceConfig()
    if memory.verified:
        return None

    now = now or utcnow()
    age_days = (now - memory.created_at).total_seconds() / 86400
    if age_days < cfg.decay_grace_days:
        return None

    rate = (
        cfg.explicit_decay_rate
        if memory.memory_type == MemoryType.EXPLICIT
        else cfg.intuited_decay_rate
    )
    decay = math.log10(age_days - cfg.decay_grace_days + 1) * rate
    decay -= min(0.05, memory.access_count * 0.005)
    decay = max(0.0, decay)

    new_value = max(cfg.min_confidence, memory.confidence - decay)
    if abs(memory.confidence - new_value) <= cfg.decay_min_change:
        return None
    return new_value


def contradicted_confidence(
    confidence: float,
    contradiction_count: int,
    config: ConfidenceConfig | None = None,
) -> float:
    """Confidence after one more contradiction.

    ``contradiction_count`` is the number of contradictions recorded before
    this one.
    """
    cfg = config or ConfidenceConfig()
    factor = (
        cfg.first_contradiction_factor
        if contradiction_count == 0
        else cfg.repeat_contradiction_factor
    )
    return max(cfg.min_confidence, confidence * factor)
