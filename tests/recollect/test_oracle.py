"""Tests for the LLM-backed judge."""

from __future__ import annotations

import json

import pytest

from recollect.exceptions import OracleUnavailableError
from recollect.models import CurationItem, Frequency, RelationshipType, Stability, Tense
from recollect.oracle import (
    CURATION_SYSTEM_PROMPT,
    RELATIONSHIP_SYSTEM_PROMPT,
    REWRITE_SYSTEM_PROMPT,
    LLMJudge,
    strip_code_fences,
)


def test_strip_code_fences():
    assert strip_code_fences('```json\n{"a": 1}\n```') == '{"a": 1}'
    assert strip_code_fences('  {"a": 1}  ') == '{"a": 1}'


async def test_classify_temporal_parses_chunked_reply(make_llm):
    reply = json.dumps(
        {
            "tense": "Mixed",
            "time_references": ["now"],
            "is_current": True,
            "stability": "low",
            "frequency": "regular",
            "likely_to_change": True,
        }
    )
    judge = LLMJudge(make_llm(reply))

    annotation = await judge.classify_temporal("User now works days")

    assert annotation.tense == Tense.CHANGE
    assert annotation.stability == Stability.LOW
    assert annotation.frequency == Frequency.REGULAR
    assert annotation.analyzed_by == "oracle"


async def test_classify_temporal_accepts_fenced_json(make_llm):
    llm = make_llm('```json\n{"tense": "past", "is_current": false}\n```', chunked=False)
    annotation = await LLMJudge(llm).classify_temporal("User used to live in Paris")
    assert annotation.tense == Tense.PAST
    assert annotation.is_current is False


async def test_invalid_json_is_oracle_failure(make_llm):
    judge = LLMJudge(make_llm("I think this is in the past tense."))
    with pytest.raises(OracleUnavailableError):
        await judge.classify_temporal("User used to live in Paris")


async def test_bad_enum_is_oracle_failure(make_llm):
    judge = LLMJudge(make_llm('{"tense": "sometime"}'))
    with pytest.raises(OracleUnavailableError):
        await judge.classify_temporal("whatever")


async def test_transport_error_is_oracle_failure(make_llm):
    llm = make_llm("{}")
    llm.error = ConnectionError("connection reset")
    with pytest.raises(OracleUnavailableError) as excinfo:
        await LLMJudge(llm).curate([])
    assert excinfo.value.oracle == "judge"


async def test_curate_sends_listing_and_parses_proposal(make_llm):
    reply = json.dumps(
        {
            "keep": [0],
            "remove": [2],
            "merge": [{"indices": [1, 3], "new_text": "User loves pizza"}],
            "reasoning": "1 and 3 repeat each other",
        }
    )
    llm = make_llm(reply)
    items = [
        CurationItem(index=0, text="User likes sushi", confidence=0.7),
        CurationItem(index=1, text="User likes pizza", confidence=0.6),
        CurationItem(index=2, text="User's age is unknown", confidence=0.5),
        CurationItem(index=3, text="User loves pizza", confidence=0.8),
    ]

    proposal = await LLMJudge(llm).curate(items)

    assert proposal.keep == [0]
    assert proposal.remove == [2]
    assert proposal.merge[0].indices == [1, 3]
    assert proposal.merge[0].new_text == "User loves pizza"
    assert llm.calls[0]["system"] == CURATION_SYSTEM_PROMPT
    assert "2. User's age is unknown (confidence 0.50)" in llm.calls[0]["messages"][0]["content"]


async def test_rewrite_strips_quotes_and_falls_back(make_llm):
    llm = make_llm('"User likes pizza"')
    judge = LLMJudge(llm)
    assert await judge.rewrite("User might like pizza") == "User likes pizza"
    assert llm.calls[0]["system"] == REWRITE_SYSTEM_PROMPT

    empty = LLMJudge(make_llm(""))
    assert await empty.rewrite("User might like pizza") == "User might like pizza"


async def test_classify_relationships_normalizes_types(make_llm):
    reply = json.dumps(
        {
            "relationships": [
                {"relationship_type": "Elaborates", "confidence": 0.9, "explanation": "detail"},
                {"relationship_type": "inspires", "explanation": "unknown type"},
                {"relationship_type": "supports", "confidence": 7},
                "not an object",
            ]
        }
    )
    llm = make_llm(reply)

    proposals = await LLMJudge(llm).classify_relationships(
        "User plays guitar in a band", "User plays guitar"
    )

    assert [(p.edge_type, p.confidence) for p in proposals] == [
        (RelationshipType.ELABORATES, 0.9),
        (RelationshipType.RELATED_TO, 0.6),
    ]
    assert proposals[0].explanation == "detail"
    assert llm.calls[0]["system"] == RELATIONSHIP_SYSTEM_PROMPT
    prompt = llm.calls[0]["messages"][0]["content"]
    assert 'Fact 1: "User plays guitar in a band"' in prompt


async def test_classify_relationships_requires_list(make_llm):
    judge = LLMJudge(make_llm('{"relationships": "none"}'))
    with pytest.raises(OracleUnavailableError):
        await judge.classify_relationships("User likes tea", "User likes coffee")


async def test_classify_relationships_empty_when_unrelated(make_llm):
    judge = LLMJudge(make_llm('{"relationships": []}'))
    assert await judge.classify_relationships("User likes tea", "User is a nurse") == []
