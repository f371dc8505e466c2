"""Tests for text helpers, categorization and confidence scoring."""

from __future__ import annotations

from datetime import timedelta

import pytest

from recollect.categorizer import categorize
from recollect.confidence import (
    clamp,
    contradicted_confidence,
    decayed_confidence,
    initial_confidence,
)
from recollect.models import Memory, MemoryCategory, MemoryType, OwnerKey, utcnow
from recollect.text import (
    extract_key_terms,
    lexical_similarity,
    normalize_text,
    terms_related,
)


# ---------------------------------------------------------------------------
# Text
# ---------------------------------------------------------------------------


def test_normalize_collapses_whitespace_and_case():
    assert normalize_text("  User   LIKES\tPizza ") == "user likes pizza"


def test_key_terms_drop_stopwords_and_short_words():
    assert extract_key_terms("User is a big fan of the Lakers") == {"big", "fan", "lakers"}


def test_terms_related_rules():
    assert terms_related({"eats", "meat"}, {"eats", "meat", "always"})
    assert terms_related({"guitar"}, {"guitar", "plays"})  # one long shared term
    assert not terms_related({"eats"}, {"eats", "fish"})  # one short shared term
    assert not terms_related({"pizza"}, {"hiking"})


def test_lexical_similarity_is_symmetric():
    a, b = "User likes pizza", "User likes pizzas"
    assert lexical_similarity(a, b) == lexical_similarity(b, a)
    assert lexical_similarity(a, a.upper()) == 1.0
    assert lexical_similarity("User likes pizza", "Owns a red bicycle") < 0.5


# ---------------------------------------------------------------------------
# Categorizer
# ---------------------------------------------------------------------------


@pytest.mark.parametrize(
    "text,expected",
    [
        ("User likes pizza", MemoryCategory.PREFERENCES),
        ("User works as a nurse", MemoryCategory.PROFESSIONAL),
        ("User's email is alice@example.com", MemoryCategory.CONTACT),
        ("User plays basketball on weekends", MemoryCategory.HOBBIES),
        ("User has two brothers", MemoryCategory.PERSONAL),
        ("User believes in ghosts", MemoryCategory.PREFERENCES),
        ("Sky was cloudy", MemoryCategory.OTHER),
    ],
)
def test_categorize(text, expected):
    assert categorize(text) == expected


# ---------------------------------------------------------------------------
# Confidence
# ---------------------------------------------------------------------------


def _memory(**overrides) -> Memory:
    fields = dict(
        owner=OwnerKey(user_id="u"),
        text="User likes tea",
        confidence=0.7,
        embedding=[1.0],
    )
    fields.update(overrides)
    return Memory(**fields)


def test_clamp_bounds_any_magnitude():
    assert clamp(5.0) == 1.0
    assert clamp(-3.0) == 0.0
    assert clamp(float("nan")) == 0.0
    assert clamp(0.42) == 0.42


def test_initial_confidence_by_type():
    explicit = initial_confidence(MemoryType.EXPLICIT, MemoryCategory.OTHER, "User is tall")
    intuited = initial_confidence(MemoryType.INTUITED, MemoryCategory.OTHER, "User is tall")
    assert explicit == pytest.approx(0.95)
    assert intuited == pytest.approx(0.75)


def test_initial_confidence_adjustments():
    personal = initial_confidence(MemoryType.INTUITED, MemoryCategory.PERSONAL, "User is tall")
    hedged = initial_confidence(
        MemoryType.INTUITED, MemoryCategory.OTHER, "User might maybe be tall"
    )
    command = initial_confidence(
        MemoryType.INTUITED, MemoryCategory.OTHER, "x", source="memory_command"
    )
    assert personal == pytest.approx(0.80)
    assert hedged == pytest.approx(0.55)
    assert command == 1.0


def test_initial_confidence_never_below_floor():
    text = "might maybe possibly sometimes occasionally might maybe possibly"
    assert initial_confidence(MemoryType.INTUITED, MemoryCategory.PREFERENCES, text) == 0.1


def test_decay_skips_grace_period_and_verified():
    now = utcnow()
    young = _memory(created_at=now - timedelta(days=3))
    old_verified = _memory(created_at=now - timedelta(days=400), verified=True)
    assert decayed_confidence(young, now) is None
    assert decayed_confidence(old_verified, now) is None


def test_decay_lowers_old_intuited_memory():
    now = utcnow()
    old = _memory(created_at=now - timedelta(days=200))
    new_value = decayed_confidence(old, now)
    assert new_value is not None
    assert 0.1 <= new_value < old.confidence


def test_decay_offset_by_access():
    now = utcnow()
    busy = _memory(created_at=now - timedelta(days=200), access_count=20)
    assert decayed_confidence(busy, now) is None


def test_contradiction_penalty():
    assert contradicted_confidence(0.8, 0) == pytest.approx(0.56)
    assert contradicted_confidence(0.8, 1) == pytest.approx(0.4)
    assert contradicted_confidence(0.12, 3) == pytest.approx(0.1)
