"""ABOUTME: Tests for Pydantic council and schema models.
ABOUTME: Ensures validation, anonymized views and camelCase serialization."""

import pytest
from pydantic import ValidationError

from legal_council import models, schemas


def test_council_query_strips_whitespace():
    payload = models.CouncilQuery(query="  is the claim time-barred?  ")
    assert payload.query == "is the claim time-barred?"
    assert payload.query_type == "general-deliberation"


def test_council_query_requires_text():
    with pytest.raises(ValidationError):
        models.CouncilQuery(query="   ")


def test_council_query_accepts_camel_case_payload():
    payload = models.CouncilQuery.model_validate(
        {"query": "Assess risk", "queryType": "risk-assessment", "practiceArea": "employment"}
    )

    assert payload.query_type == "risk-assessment"
    assert payload.practice_area == "employment"


def test_council_query_rejects_unknown_fields():
    with pytest.raises(ValidationError):
        models.CouncilQuery(query="Assess risk", wallet="0xabc")


def test_council_member_is_immutable():
    member = models.assign_labels(["openai/gpt-4o", "x-ai/grok-2"])[1]

    assert member.session_label == "B"
    with pytest.raises(ValidationError):
        member.session_label = "Z"


def test_public_view_drops_internal_fields():
    analysis = models.IndividualAnalysis(
        label="A",
        content="{}",
        confidence="high",
        key_points=["point"],
        model_id="openai/gpt-4o",
        structured={"assessment": "x"},
    )

    public = analysis.to_public()
    dumped = public.model_dump(by_alias=True)

    assert type(public) is models.PublicAnalysis
    assert set(dumped) == {"label", "content", "confidence", "keyPoints"}
    assert "openai/gpt-4o" not in public.model_dump_json()


def test_evaluation_scores_are_bounded():
    with pytest.raises(ValidationError):
        schemas.AnalysisEvaluation(
            legal_accuracy=6, issue_identification=3, risk_calibration=3, practical_utility=3
        )


def test_stage1_analysis_validates_camel_case_json():
    analysis = schemas.Stage1Analysis.model_validate(
        {
            "assessment": "Claim is viable",
            "strengths": ["timely"],
            "weaknesses": ["thin damages"],
            "risks": [{"risk": "dismissal", "likelihood": "low", "impact": "high"}],
            "confidence": "medium",
            "confidenceRationale": "Facts are incomplete",
            "thresholdIssues": [{"issue": "standing", "status": "known"}],
        }
    )

    assert analysis.threshold_issues[0].issue == "standing"
    assert analysis.adversarial_argument is None


def test_json_schema_format_uses_aliases():
    envelope = schemas.json_schema_format(schemas.Stage2Review)

    assert envelope["type"] == "json_schema"
    assert envelope["json_schema"]["name"] == "Stage2Review"
    assert "rankingRationale" in envelope["json_schema"]["schema"]["properties"]
