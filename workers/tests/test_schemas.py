"""Tests for the Tier 2 structured-output contracts."""

import json

import pytest
from pydantic import ValidationError

from mastery_workers.schemas import (
    ASSESSMENT_SCHEMA,
    SELECTION_SCHEMA,
    CandidateSelectionResult,
    SituationalAssessment,
)


def _objects(node):
    """Yield every object schema in a schema tree."""
    if isinstance(node, dict):
        if node.get("type") == "object":
            yield node
        for value in node.values():
            yield from _objects(value)
    elif isinstance(node, list):
        for item in node:
            yield from _objects(item)


@pytest.mark.parametrize("schema", [ASSESSMENT_SCHEMA, SELECTION_SCHEMA])
def test_schemas_are_strict(schema):
    objects = list(_objects(schema))
    assert objects
    for obj in objects:
        assert obj["additionalProperties"] is False
        assert sorted(obj["required"]) == sorted(obj["properties"])
    text = json.dumps(schema)
    assert "$ref" not in text
    assert "$defs" not in text
    assert '"default"' not in text


def test_schemas_use_wire_names():
    assert "capacityStatus" in ASSESSMENT_SCHEMA["properties"]
    assert ASSESSMENT_SCHEMA["properties"]["capacityStatus"]["enum"] == [
        "overloaded",
        "stretched",
        "balanced",
        "underloaded",
    ]
    risk = ASSESSMENT_SCHEMA["properties"]["keyRisks"]["items"]
    assert set(risk["properties"]) == {"area", "detail", "severity"}

    selection = SELECTION_SCHEMA["properties"]["selections"]["items"]
    assert set(selection["properties"]) == {
        "candidateIndex",
        "rationale",
        "priorityRank",
        "refinedActionSummary",
    }
    nullable = selection["properties"]["refinedActionSummary"]["anyOf"]
    assert {"type": "null"} in nullable


def test_missing_fields_are_rejected():
    with pytest.raises(ValidationError):
        SituationalAssessment.model_validate_json('{"capacityStatus": "balanced"}')


def test_unknown_fields_are_rejected():
    payload = {
        "selections": [],
        "overallStrategy": "Rest",
        "rejectedCandidatesReasoning": None,
        "confidence": 0.9,
    }
    with pytest.raises(ValidationError):
        CandidateSelectionResult.model_validate(payload)


def test_round_trip_by_alias():
    payload = {
        "selections": [
            {
                "candidateIndex": 0,
                "rationale": "Fits the morning",
                "priorityRank": 1,
                "refinedActionSummary": None,
            }
        ],
        "overallStrategy": "Protect focus",
        "rejectedCandidatesReasoning": None,
    }
    result = CandidateSelectionResult.model_validate(payload)
    assert result.selections[0].candidate_index == 0
    assert result.model_dump(by_alias=True) == payload
