"""Tests for temporal annotation and contradiction detection."""

from __future__ import annotations

from datetime import timedelta

import pytest

from recollect.exceptions import OracleUnavailableError
from recollect.models import (
    Frequency,
    Memory,
    OwnerKey,
    RelationshipType,
    Stability,
    TemporalAnnotation,
    Tense,
    utcnow,
)
from recollect.temporal import (
    TemporalAnalyzer,
    TimePeriod,
    contradiction_rule,
    local_analysis,
    time_period,
)


@pytest.fixture
def analyzer(memories, graph, judge, config):
    return TemporalAnalyzer(memories, graph, judge, config.temporal)


# ---------------------------------------------------------------------------
# Local heuristics
# ---------------------------------------------------------------------------


def test_plain_statement_defaults_to_present():
    annotation, complexity = local_analysis("User likes pizza")
    assert annotation.tense == Tense.PRESENT
    assert annotation.is_current is True
    assert annotation.stability == Stability.MEDIUM
    assert complexity == 0.0


def test_past_marker_marks_not_current():
    annotation, _ = local_analysis("User used to live in Paris")
    assert annotation.tense == Tense.PAST
    assert annotation.is_current is False
    assert "used to" in annotation.time_references


def test_change_marker_is_low_stability():
    annotation, _ = local_analysis("User no longer eats meat")
    assert annotation.tense == Tense.CHANGE
    assert annotation.stability == Stability.LOW
    assert annotation.likely_to_change is True


def test_always_is_constant_and_stable():
    annotation, _ = local_analysis("User always eats meat")
    assert annotation.frequency == Frequency.CONSTANT
    assert annotation.stability == Stability.HIGH


def test_complexity_grows_with_marker_count_and_mix():
    _, one = local_analysis("User currently works from home")
    _, mixed = local_analysis("User used to work nights but now always works days")
    assert one == pytest.approx(0.5)
    assert mixed == 1.0


def test_time_period_buckets():
    now = utcnow()

    def aged(days):
        return Memory(
            owner=OwnerKey(user_id="u"), text="x", embedding=[1.0],
            created_at=now - timedelta(days=days),
        )

    assert time_period(aged(0.5), now) == TimePeriod.RECENT
    assert time_period(aged(3), now) == TimePeriod.THIS_WEEK
    assert time_period(aged(20), now) == TimePeriod.THIS_MONTH
    assert time_period(aged(200), now) == TimePeriod.THIS_YEAR
    assert time_period(aged(800), now) == TimePeriod.OLDER


# ---------------------------------------------------------------------------
# Rule table
# ---------------------------------------------------------------------------


def test_rule_stability_change():
    older = TemporalAnnotation(stability=Stability.HIGH, is_current=True)
    newer = TemporalAnnotation(tense=Tense.CHANGE, stability=Stability.LOW)
    assert contradiction_rule(newer, older) == ("stability_change", 0.85)


def test_rule_tense_mismatch():
    older = TemporalAnnotation(tense=Tense.PRESENT, is_current=False)
    newer = TemporalAnnotation(is_current=True)
    assert contradiction_rule(newer, older) == ("tense_mismatch", 0.8)


def test_rule_frequency_mismatch():
    older = TemporalAnnotation(frequency=Frequency.NEVER)
    newer = TemporalAnnotation(frequency=Frequency.CONSTANT)
    assert contradiction_rule(newer, older) == ("frequency_mismatch", 0.75)


def test_no_rule_for_compatible_annotations():
    assert contradiction_rule(TemporalAnnotation(), TemporalAnnotation()) is None


# ---------------------------------------------------------------------------
# Analyzer
# ---------------------------------------------------------------------------


async def test_simple_text_never_calls_oracle(analyzer, judge):
    await analyzer.analyze("User likes pizza")
    await analyzer.analyze("User currently works from home")
    assert judge.temporal_calls == []


async def test_complex_text_uses_oracle(analyzer, judge):
    text = "User used to work nights but now always works days"
    judge.temporal[text] = TemporalAnnotation(
        tense=Tense.CHANGE, stability=Stability.LOW, time_references=["nights"]
    )
    annotation = await analyzer.analyze(text)

    assert judge.temporal_calls == [text]
    assert annotation.tense == Tense.CHANGE
    assert annotation.analyzed_by == "oracle"
    assert "used to" in annotation.time_references
    assert "nights" in annotation.time_references


async def test_annotate_fails_closed_when_oracle_down(analyzer, memories, judge, owner):
    text = "User used to work nights but now always works days"
    memory = await memories.create(owner, text, "professional")
    judge.fail = True

    with pytest.raises(OracleUnavailableError):
        await analyzer.annotate(memory.id)
    assert (await memories.get(memory.id)).temporal is None


async def test_annotate_persists(analyzer, memories, owner):
    memory = await memories.create(owner, "User used to live in Paris", "personal")
    await analyzer.annotate(memory.id)
    loaded = await memories.get(memory.id)
    assert loaded.temporal.tense == Tense.PAST


async def test_find_contradictions_links_newer_to_older(analyzer, memories, graph, owner):
    older = await memories.create(owner, "User always eats meat", "preferences")
    newer = await memories.create(owner, "User no longer eats meat", "preferences")
    await memories.create(owner, "User likes hiking", "hobbies")

    found = await analyzer.find_contradictions(owner)

    assert len(found) == 1
    assert found[0].newer_id == newer.id
    assert found[0].older_id == older.id
    assert found[0].rule == "stability_change"
    edges = await graph.edges_of(newer.id)
    assert [(e.source_id, e.target_id, e.edge_type) for e in edges] == [
        (newer.id, older.id, RelationshipType.CONTRADICTS)
    ]
    assert edges[0].confidence == pytest.approx(0.85)


async def test_unrelated_memories_are_not_compared(analyzer, memories, owner):
    await memories.create(owner, "User always drinks tea", "preferences")
    await memories.create(owner, "User no longer plays chess", "hobbies")
    assert await analyzer.find_contradictions(owner) == []


async def test_analyze_once_annotates_and_reports(analyzer, memories, judge, owner):
    await memories.create(owner, "User always eats meat", "preferences")
    await memories.create(owner, "User no longer eats meat", "preferences")
    complex_memory = await memories.create(
        owner, "User used to work nights but now always works days", "professional"
    )
    judge.fail = True

    report = await analyzer.analyze_once()

    assert report.annotated == 2
    assert report.errors == 1
    assert len(report.contradictions) == 1
    assert (await memories.get(complex_memory.id)).temporal is None
