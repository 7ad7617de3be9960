"""ABOUTME: Pydantic models for council sessions, stage results and audits.
ABOUTME: Separates identity-free analysis views from internal records."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Literal, Optional, Union

from pydantic import ConfigDict, Field, field_validator

from legal_council.schemas import (
    ActionItem,
    AnalysisEvaluation,
    CalibratedRisk,
    ConsensusResult,
    DissentingView,
    IdentifiedIssue,
    IdentifiedWeakness,
    Level,
    SourceAttribution,
    Stage3Synthesis,
    WireModel,
)
from legal_council.usage import UsageSummary

QueryType = Literal[
    "issue-spotting",
    "risk-assessment",
    "weakness-identification",
    "strategy-evaluation",
    "stress-test",
    "devils-advocate",
    "settlement-evaluation",
    "brainstorm",
    "general-deliberation",
]
StageNumber = Literal[1, 2, 3]
SelectionMethod = Literal["user-specified", "algorithmic", "fallback"]
Severity = Literal["critical", "warning", "info"]
AnomalyType = Literal[
    "confidence-mismatch",
    "citation-consensus",
    "threshold-gap",
    "ranking-outlier",
    "synthesis-divergence",
    "latency-outlier",
    "retry-excessive",
    "dissent-suppression",
    "quorum-risk",
    "single-source-dominance",
    "model-failure",
]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class CouncilQuery(WireModel):
    """Incoming payload for council deliberations."""

    model_config = ConfigDict(extra="forbid")

    query: str = Field(..., description="Legal issue or work product to deliberate on")
    query_type: QueryType = "general-deliberation"
    jurisdiction: Optional[str] = None
    practice_area: Optional[str] = None
    context: Optional[dict[str, Any]] = None
    work_product: Optional[str] = None
    chairman: Optional[str] = Field(default=None, description="Optional chairman override")

    @field_validator("query")
    @classmethod
    def _validate_query(cls, value: str) -> str:
        stripped = value.strip()
        if not stripped:
            raise ValueError("Query must not be empty")
        return stripped


class CouncilMember(WireModel):
    """A council seat. Labels are positional and fixed for the session."""

    model_config = ConfigDict(frozen=True)

    model_id: str
    session_label: str
    role: Literal["member", "chairman"] = "member"


def assign_labels(model_ids: list[str]) -> list[CouncilMember]:
    """Label seats positionally: first model is "A", second "B" and so on."""
    return [
        CouncilMember(model_id=model_id, session_label=chr(ord("A") + index))
        for index, model_id in enumerate(model_ids)
    ]


class PublicAnalysis(WireModel):
    """Analysis view that is safe to show other council members."""

    label: str
    content: str
    confidence: Level
    key_points: list[str] = Field(default_factory=list)


class IndividualAnalysis(PublicAnalysis):
    """Stage 1 output including internal-only identity and payload."""

    model_id: str
    structured: Optional[dict[str, Any]] = None

    def to_public(self) -> PublicAnalysis:
        return PublicAnalysis(
            label=self.label,
            content=self.content,
            confidence=self.confidence,
            key_points=list(self.key_points),
        )


class StageError(WireModel):
    stage: StageNumber
    model_id: Optional[str] = None
    message: str
    recoverable: bool


class PeerReview(WireModel):
    reviewer_label: str
    evaluations: dict[str, AnalysisEvaluation] = Field(default_factory=dict)
    ranking: list[str]
    ranking_rationale: str
    reviewer_model_id: str


class AggregateRanking(WireModel):
    label: str
    average_rank: float
    ranking_consistency: float


class Stage1Result(WireModel):
    analyses: list[IndividualAnalysis] = Field(default_factory=list)
    complete: bool
    errors: list[StageError] = Field(default_factory=list)


class Stage2Result(WireModel):
    peer_reviews: list[PeerReview] = Field(default_factory=list)
    aggregate_rankings: list[AggregateRanking] = Field(default_factory=list)
    complete: bool
    errors: list[StageError] = Field(default_factory=list)


class Stage3Result(WireModel):
    synthesis: Stage3Synthesis
    chairman_model: str
    complete: bool
    errors: list[StageError] = Field(default_factory=list)


class AlternativeCandidate(WireModel):
    model: str
    average_rank: float


class ChairmanSelection(WireModel):
    model_config = ConfigDict(frozen=True)

    model: str
    method: SelectionMethod
    rationale: str
    alternatives_considered: Optional[list[AlternativeCandidate]] = None


class ProgressEvent(WireModel):
    stage: Literal[0, 1, 2, 3]
    type: Literal["start", "model-start", "model-complete", "model-error", "complete"]
    label: Optional[str] = None
    message: Optional[str] = None


# Audit trail


class AuditAnomaly(WireModel):
    stage: Union[StageNumber, Literal["cross-stage"]]
    severity: Severity
    type: AnomalyType
    description: str
    affected_models: Optional[list[str]] = None
    recommendation: Optional[str] = None


class Stage1ModelMetrics(WireModel):
    latency_ms: int
    tokens_used: int
    confidence_stated: Level
    threshold_issues_identified: int
    citations_used: int
    adversarial_argument_provided: bool
    retries: int


class Stage1Audit(WireModel):
    models_queried: list[str]
    models_responded: list[str]
    models_failed: list[str]
    per_model_metrics: dict[str, Stage1ModelMetrics]
    anomalies: list[AuditAnomaly]


class RankingStatistics(WireModel):
    average_rank: float
    rank_variance: float
    highest_rank: int
    lowest_rank: int


class AgreementEntry(WireModel):
    agreed_with: list[str] = Field(default_factory=list)
    disagreed_with: list[str] = Field(default_factory=list)


class OutlierReview(WireModel):
    reviewer_label: str
    deviation: str


class Stage2Audit(WireModel):
    reviews_completed: int
    ranking_consensus: Literal["strong", "moderate", "weak", "none"]
    agreement_matrix: dict[str, AgreementEntry]
    per_analysis_rankings: dict[str, RankingStatistics]
    outlier_reviews: list[OutlierReview]
    citations_across_analyses: dict[str, list[str]]
    anomalies: list[AuditAnomaly]


class RiskCalibrationAudit(WireModel):
    catastrophizing_detected: bool
    understating_detected: bool
    calibration_action: str


class Stage3Audit(WireModel):
    chairman_model: str
    consensus_reached: bool
    dissent_preserved: int
    dissent_suppressed: int
    risk_calibration: RiskCalibrationAudit
    citations_in_synthesis: int
    source_reliance: dict[str, int]
    anomalies: list[AuditAnomaly]


class ChairmanSelectionAudit(WireModel):
    method: SelectionMethod
    selected_model: str
    rationale: str
    alternatives_considered: Optional[list[AlternativeCandidate]] = None


class ProcessIntegrity(WireModel):
    score: Literal["high", "medium", "low"]
    flags: list[str]
    recommendations: list[str]


class CouncilAudit(WireModel):
    session_id: str
    timestamp: datetime
    duration_ms: int
    chairman_selection: Optional[ChairmanSelectionAudit] = None
    stage1: Stage1Audit
    stage2: Stage2Audit
    stage3: Stage3Audit
    cross_stage_anomalies: list[AuditAnomaly]
    process_integrity: ProcessIntegrity


# Final output


class DeliberationMetadata(WireModel):
    duration_ms: int
    participating_models: list[str]
    chairman_model: str
    chairman_selection_method: SelectionMethod
    estimated_tokens: int
    estimated_cost_usd: float
    debate_rounds: int = 1
    state_history: list[str] = Field(default_factory=list)


class StageResults(WireModel):
    stage1: Stage1Result
    stage2: Stage2Result
    stage3: Stage3Result


class CouncilDeliberation(WireModel):
    """Response object returned to callers."""

    query: str
    query_type: QueryType
    session_id: str
    timestamp: datetime = Field(default_factory=_utcnow)

    consensus: ConsensusResult
    issues_identified: list[IdentifiedIssue]
    risk_assessment: CalibratedRisk
    dissent: list[DissentingView]
    weaknesses_found: list[IdentifiedWeakness]
    open_questions: list[str]
    action_items: list[ActionItem]
    source_attribution: Optional[list[SourceAttribution]] = None

    synthesis_failed: bool = False
    errors: list[StageError] = Field(default_factory=list)
    metadata: DeliberationMetadata

    stage_results: StageResults = Field(..., alias="_stageResults")
    usage: UsageSummary = Field(..., alias="_usage")
    audit: CouncilAudit = Field(..., alias="_audit")
