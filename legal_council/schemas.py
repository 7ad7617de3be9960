"""ABOUTME: Pydantic shapes for structured council member output.
ABOUTME: Validates Stage 1, Stage 2 and Stage 3 JSON returned by models."""

from __future__ import annotations

from typing import Literal, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

Level = Literal["low", "medium", "high"]


class WireModel(BaseModel):
    """Base for payloads exchanged as camelCase JSON."""

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        protected_namespaces=(),
    )


# Stage 1


class RiskEntry(WireModel):
    risk: str
    likelihood: Level
    impact: Level


class ThresholdIssue(WireModel):
    issue: str
    status: Literal["known", "assumed", "unknown"]
    basis: Optional[str] = None


class Stage1Analysis(WireModel):
    """Independent analysis produced by one council member."""

    assessment: str = Field(..., description="Core assessment of the legal question")
    strengths: list[str]
    weaknesses: list[str]
    risks: list[RiskEntry]
    confidence: Level
    confidence_rationale: str
    threshold_issues: Optional[list[ThresholdIssue]] = Field(
        default=None, description="Threshold issues checked (jurisdiction, standing, timeliness)"
    )
    adversarial_argument: Optional[str] = Field(
        default=None, description="Strongest argument opposing counsel could make"
    )


# Stage 2


class AnalysisEvaluation(WireModel):
    legal_accuracy: float = Field(..., ge=1, le=5)
    issue_identification: float = Field(..., ge=1, le=5)
    risk_calibration: float = Field(..., ge=1, le=5)
    practical_utility: float = Field(..., ge=1, le=5)
    comment: Optional[str] = None


class Stage2Review(WireModel):
    """Peer review of the anonymized analyses."""

    evaluations: dict[str, AnalysisEvaluation] = Field(
        ..., description="Scores for each analysis, keyed by label (A, B, C, etc.)"
    )
    ranking: list[str] = Field(..., description="Ordered list of analysis labels, best first")
    ranking_rationale: str


# Stage 3


class ConsensusResult(WireModel):
    reached: bool
    position: str
    confidence: float = Field(..., ge=0, le=1)
    agreement_count: int
    total_members: int


class IdentifiedIssue(WireModel):
    issue: str
    severity: Literal["critical", "significant", "minor"]
    flagged_by_count: int = Field(..., ge=1)
    unanimous: bool
    explanation: Optional[str] = None


class RiskFactor(WireModel):
    risk: str
    likelihood: Literal["unlikely", "possible", "likely"]
    impact: Level
    council_agreement: Literal["unanimous", "majority", "split"]


class CalibratedRisk(WireModel):
    overall_level: Level
    factors: list[RiskFactor]
    catastrophizing_detected: bool
    understating_detected: bool
    calibration_notes: str


class DissentingView(WireModel):
    position: str
    reasoning: str
    supported_by_count: int = Field(..., ge=1)
    noteworthy: bool


class IdentifiedWeakness(WireModel):
    weakness: str
    location: Optional[str] = None
    exploitability: Literal["easily attacked", "vulnerable", "minor concern"]
    suggested_fix: Optional[str] = None


class ActionItem(WireModel):
    item: str
    priority: Level
    rationale: str
    blocking: bool


class SourceAttribution(WireModel):
    label: str
    relied_on_for: list[str]


class Stage3Synthesis(WireModel):
    """Chairman synthesis. Dissent is preserved, never merged into consensus."""

    consensus: ConsensusResult
    issues: list[IdentifiedIssue]
    risk: CalibratedRisk
    dissent: list[DissentingView]
    weaknesses: list[IdentifiedWeakness]
    open_questions: list[str]
    action_items: list[ActionItem]
    source_attribution: Optional[list[SourceAttribution]] = None


def json_schema_format(shape: type[BaseModel]) -> dict:
    """OpenAI-style ``response_format`` envelope for a shape."""
    return {
        "type": "json_schema",
        "json_schema": {
            "name": shape.__name__,
            "strict": False,
            "schema": shape.model_json_schema(by_alias=True),
        },
    }
