"""ABOUTME: Audit trail collection and anomaly detection for deliberations.
ABOUTME: Gathers per-stage metrics and scores overall process integrity."""

from __future__ import annotations

import logging
import math
import re
from dataclasses import dataclass
from datetime import datetime, timezone
from time import perf_counter
from typing import Any, Optional

from legal_council.aggregation import calculate_ranking_statistics
from legal_council.config import MINIMUM_COUNCIL_SIZE
from legal_council.models import (
    AgreementEntry,
    AuditAnomaly,
    ChairmanSelection,
    ChairmanSelectionAudit,
    CouncilAudit,
    IndividualAnalysis,
    OutlierReview,
    ProcessIntegrity,
    RiskCalibrationAudit,
    Stage1Audit,
    Stage1ModelMetrics,
    Stage1Result,
    Stage2Audit,
    Stage2Result,
    Stage3Audit,
    Stage3Result,
)

logger = logging.getLogger(__name__)

LATENCY_OUTLIER_FACTOR = 2
EXCESSIVE_RETRIES = 2
CITATION_CONSENSUS_MIN = 3
DOMINANCE_THRESHOLD = 0.7
RELIANCE_SENTENCES = 3
RELIANCE_MIN_LENGTH = 20
RELIANCE_PREFIX = 30

_CASE_PATTERN = re.compile(r"(?:Matter of |In re )?[A-Z][a-zA-Z']+ v\. [A-Z][a-zA-Z']+")
_MATTER_PATTERN = re.compile(r"Matter of [A-Z][a-zA-Z']+")
_REPORTER_PATTERN = re.compile(
    r"\d{1,3}\s+(?:N\.Y\.\d*d?|A\.D\.\d*d?|F\.\d*d?|S\.Ct\.|U\.S\.)\s+\d+"
)
_SENTENCE_SPLIT = re.compile(r"[.!?]")


class AuditStateError(Exception):
    """Raised when the collector is used after its audit was built."""


def extract_citations(text: str) -> list[str]:
    """Citation-like strings in order of first appearance, without duplicates."""
    found = (
        _CASE_PATTERN.findall(text)
        + _MATTER_PATTERN.findall(text)
        + _REPORTER_PATTERN.findall(text)
    )
    return list(dict.fromkeys(found))


def count_citations(text: str) -> int:
    return len(extract_citations(text))


@dataclass
class _Stage1Metrics:
    model_id: str
    label: str
    start: float
    end: Optional[float] = None
    tokens_used: Optional[int] = None
    confidence_stated: Optional[str] = None
    threshold_issues_identified: int = 0
    citations_used: int = 0
    adversarial_argument_provided: bool = False
    retries: int = 0
    success: bool = False
    error: Optional[str] = None

    @property
    def latency_ms(self) -> int:
        end = self.end if self.end is not None else self.start
        return int((end - self.start) * 1000)


def _structured(analysis: IndividualAnalysis) -> dict[str, Any]:
    return analysis.structured if isinstance(analysis.structured, dict) else {}


def _threshold_issues(analysis: IndividualAnalysis) -> list[Any]:
    issues = _structured(analysis).get("thresholdIssues")
    return issues if isinstance(issues, list) else []


class AuditCollector:
    """Accumulates metrics during one deliberation and builds the audit once."""

    def __init__(self, session_id: str, minimum_quorum: int = MINIMUM_COUNCIL_SIZE) -> None:
        self.session_id = session_id
        self.minimum_quorum = minimum_quorum
        self.state = "collecting"
        self._start = perf_counter()
        self._stage1: dict[str, _Stage1Metrics] = {}
        self._chairman: Optional[ChairmanSelectionAudit] = None

    def _ensure_collecting(self) -> None:
        if self.state != "collecting":
            raise AuditStateError(f"Audit for session {self.session_id} has already been built")

    def _metrics_for(self, model_id: str) -> _Stage1Metrics:
        metrics = self._stage1.get(model_id)
        if metrics is None:
            metrics = _Stage1Metrics(model_id=model_id, label="?", start=perf_counter())
            self._stage1[model_id] = metrics
        return metrics

    def record_stage1_start(self, model_id: str, label: str) -> None:
        self._ensure_collecting()
        self._stage1[model_id] = _Stage1Metrics(model_id=model_id, label=label, start=perf_counter())

    def record_stage1_complete(
        self,
        model_id: str,
        analysis: IndividualAnalysis,
        tokens_used: Optional[int] = None,
    ) -> None:
        self._ensure_collecting()
        metrics = self._metrics_for(model_id)
        metrics.end = perf_counter()
        metrics.success = True
        metrics.tokens_used = tokens_used
        metrics.confidence_stated = analysis.confidence
        metrics.threshold_issues_identified = len(_threshold_issues(analysis))
        metrics.adversarial_argument_provided = bool(_structured(analysis).get("adversarialArgument"))
        metrics.citations_used = count_citations(analysis.content)

    def record_stage1_failure(self, model_id: str, error: str) -> None:
        self._ensure_collecting()
        metrics = self._metrics_for(model_id)
        metrics.end = perf_counter()
        metrics.success = False
        metrics.error = error

    def record_stage1_retry(self, model_id: str, count: int = 1) -> None:
        self._ensure_collecting()
        self._metrics_for(model_id).retries += count

    def record_chairman_selection(self, selection: ChairmanSelection) -> None:
        self._ensure_collecting()
        self._chairman = ChairmanSelectionAudit(
            method=selection.method,
            selected_model=selection.model,
            rationale=selection.rationale,
            alternatives_considered=selection.alternatives_considered,
        )

    def build_audit(
        self,
        stage1: Stage1Result,
        stage2: Stage2Result,
        stage3: Stage3Result,
        council_models: list[str],
    ) -> CouncilAudit:
        self._ensure_collecting()

        stage1_audit = self._build_stage1_audit(council_models)
        stage2_audit = self._build_stage2_audit(stage1, stage2)
        stage3_audit = self._build_stage3_audit(stage1, stage2, stage3)
        cross_stage = self._detect_cross_stage_anomalies(stage1, stage2)
        integrity = self._calculate_process_integrity(stage1_audit, stage2_audit, stage3_audit, cross_stage)

        logger.info(
            "Audit for session %s built: integrity=%s flags=%d",
            self.session_id,
            integrity.score,
            len(integrity.flags),
        )
        audit = CouncilAudit(
            session_id=self.session_id,
            timestamp=datetime.now(timezone.utc),
            duration_ms=int((perf_counter() - self._start) * 1000),
            chairman_selection=self._chairman,
            stage1=stage1_audit,
            stage2=stage2_audit,
            stage3=stage3_audit,
            cross_stage_anomalies=cross_stage,
            process_integrity=integrity,
        )
        self.state = "built"
        return audit

    # Stage 1

    def _build_stage1_audit(self, council_models: list[str]) -> Stage1Audit:
        anomalies: list[AuditAnomaly] = []
        per_model: dict[str, Stage1ModelMetrics] = {}
        responded: list[str] = []
        failed: list[str] = []

        for model_id in council_models:
            metrics = self._stage1.get(model_id)
            if metrics is not None and metrics.success:
                responded.append(model_id)
                per_model[model_id] = Stage1ModelMetrics(
                    latency_ms=metrics.latency_ms,
                    tokens_used=metrics.tokens_used or 0,
                    confidence_stated=metrics.confidence_stated or "medium",
                    threshold_issues_identified=metrics.threshold_issues_identified,
                    citations_used=metrics.citations_used,
                    adversarial_argument_provided=metrics.adversarial_argument_provided,
                    retries=metrics.retries,
                )
                continue

            failed.append(model_id)
            error = (metrics.error if metrics else None) or "Unknown error"
            anomalies.append(
                AuditAnomaly(
                    stage=1,
                    severity="warning",
                    type="model-failure",
                    description=f"Model {model_id} failed to respond: {error}",
                    affected_models=[model_id],
                    recommendation="Consider model availability or configuration",
                )
            )

        latencies = [per_model[model_id].latency_ms for model_id in responded]
        if len(latencies) >= 2:
            average = sum(latencies) / len(latencies)
            for model_id in responded:
                latency = per_model[model_id].latency_ms
                if latency > average * LATENCY_OUTLIER_FACTOR:
                    anomalies.append(
                        AuditAnomaly(
                            stage=1,
                            severity="info",
                            type="latency-outlier",
                            description=f"Model {model_id} took {latency}ms (avg: {round(average)}ms)",
                            affected_models=[model_id],
                        )
                    )

        for model_id, metrics in self._stage1.items():
            if metrics.retries >= EXCESSIVE_RETRIES:
                anomalies.append(
                    AuditAnomaly(
                        stage=1,
                        severity="warning",
                        type="retry-excessive",
                        description=f"Model {model_id} required {metrics.retries} retries",
                        affected_models=[model_id],
                        recommendation="Check model reliability or prompt compatibility",
                    )
                )

        if len(responded) == self.minimum_quorum:
            anomalies.append(
                AuditAnomaly(
                    stage=1,
                    severity="warning",
                    type="quorum-risk",
                    description=(
                        f"Bare minimum quorum ({self.minimum_quorum}) - deliberation quality may be reduced"
                    ),
                    recommendation="Consider adding council members for more robust deliberation",
                )
            )

        return Stage1Audit(
            models_queried=list(council_models),
            models_responded=responded,
            models_failed=failed,
            per_model_metrics=per_model,
            anomalies=anomalies,
        )

    # Stage 2

    def _build_stage2_audit(self, stage1: Stage1Result, stage2: Stage2Result) -> Stage2Audit:
        anomalies: list[AuditAnomaly] = []
        reviews = stage2.peer_reviews
        labels = [analysis.label for analysis in stage1.analyses]
        analysis_count = len(stage1.analyses)

        top_picks = {review.reviewer_label: (review.ranking[0] if review.ranking else None) for review in reviews}

        matrix: dict[str, AgreementEntry] = {}
        for review in reviews:
            entry = AgreementEntry()
            for other in reviews:
                if other.reviewer_label == review.reviewer_label:
                    continue
                if top_picks[review.reviewer_label] == top_picks[other.reviewer_label]:
                    entry.agreed_with.append(other.reviewer_label)
                else:
                    entry.disagreed_with.append(other.reviewer_label)
            matrix[review.reviewer_label] = entry

        unique_top = len(set(top_picks.values()))
        if not reviews:
            consensus = "none"
        elif unique_top == 1:
            consensus = "strong"
        elif unique_top <= math.ceil(len(reviews) / 2):
            consensus = "moderate"
        elif unique_top < len(reviews):
            consensus = "weak"
        else:
            consensus = "none"

        averages = {ranking.label: ranking.average_rank for ranking in stage2.aggregate_rankings}
        outliers: list[OutlierReview] = []
        for review in reviews:
            top = top_picks[review.reviewer_label]
            if top is not None and top in averages and averages[top] > analysis_count - 0.5:
                outliers.append(
                    OutlierReview(
                        reviewer_label=review.reviewer_label,
                        deviation=f"Ranked {top} first while aggregate ranked it last",
                    )
                )
                anomalies.append(
                    AuditAnomaly(
                        stage=2,
                        severity="info",
                        type="ranking-outlier",
                        description=(
                            f"Reviewer {review.reviewer_label} ranked analysis {top} first, "
                            "but aggregate ranked it last"
                        ),
                        affected_models=[review.reviewer_model_id or review.reviewer_label],
                    )
                )

        citations = {analysis.label: extract_citations(analysis.content) for analysis in stage1.analyses}
        citation_labels: dict[str, list[str]] = {}
        for label, found in citations.items():
            for citation in found:
                holders = citation_labels.setdefault(citation.lower().strip(), [])
                if label not in holders:
                    holders.append(label)
        for citation, holders in citation_labels.items():
            if len(holders) >= CITATION_CONSENSUS_MIN:
                anomalies.append(
                    AuditAnomaly(
                        stage=2,
                        severity="warning",
                        type="citation-consensus",
                        description=(
                            f'{len(holders)} analyses cited "{citation}" - '
                            "verify independently for shared hallucination"
                        ),
                        affected_models=holders,
                        recommendation="Run independent citation verification on shared authority",
                    )
                )

        return Stage2Audit(
            reviews_completed=len(reviews),
            ranking_consensus=consensus,
            agreement_matrix=matrix,
            per_analysis_rankings=calculate_ranking_statistics(reviews, labels),
            outlier_reviews=outliers,
            citations_across_analyses=citations,
            anomalies=anomalies,
        )

    # Stage 3

    def _build_stage3_audit(
        self, stage1: Stage1Result, stage2: Stage2Result, stage3: Stage3Result
    ) -> Stage3Audit:
        anomalies: list[AuditAnomaly] = []
        synthesis = stage3.synthesis
        analysis_count = len(stage1.analyses)

        preserved = len(synthesis.dissent)
        positions = set()
        for analysis in stage1.analyses:
            assessment = _structured(analysis).get("assessment")
            positions.add(assessment.strip().lower() if isinstance(assessment, str) else "")
        # One distinct position is expected to be the consensus itself.
        suppressed = max(0, len(positions) - 1 - preserved)
        if suppressed > 0:
            anomalies.append(
                AuditAnomaly(
                    stage=3,
                    severity="warning",
                    type="dissent-suppression",
                    description=f"{suppressed} potentially distinct position(s) not preserved in dissent",
                    recommendation="Review stage 1 analyses for suppressed minority views",
                )
            )

        synthesis_json = synthesis.model_dump_json(by_alias=True)
        synthesis_text = synthesis_json.lower()
        reliance: dict[str, int] = {analysis.label: 0 for analysis in stage1.analyses}
        for analysis in stage1.analyses:
            sentences = _SENTENCE_SPLIT.split(analysis.content.lower())[:RELIANCE_SENTENCES]
            for sentence in sentences:
                if len(sentence) > RELIANCE_MIN_LENGTH and sentence[:RELIANCE_PREFIX] in synthesis_text:
                    reliance[analysis.label] += 1

        total_reliance = sum(reliance.values())
        if total_reliance > 0:
            dominant = max(reliance, key=reliance.__getitem__)
            if reliance[dominant] / total_reliance > DOMINANCE_THRESHOLD:
                anomalies.append(
                    AuditAnomaly(
                        stage=3,
                        severity="warning",
                        type="single-source-dominance",
                        description=f"Synthesis appears to rely heavily on analysis {dominant}",
                        recommendation="Verify synthesis incorporates diverse council perspectives",
                    )
                )

            top_ranked = stage2.aggregate_rankings[0].label if stage2.aggregate_rankings else None
            averages = {ranking.label: ranking.average_rank for ranking in stage2.aggregate_rankings}
            if (
                top_ranked is not None
                and reliance.get(top_ranked) == 0
                and averages.get(dominant, 0) > analysis_count / 2
            ):
                anomalies.append(
                    AuditAnomaly(
                        stage=3,
                        severity="critical",
                        type="synthesis-divergence",
                        description=(
                            f"Synthesis relies on analysis {dominant} (low-ranked) "
                            f"while ignoring {top_ranked} (top-ranked)"
                        ),
                        recommendation="Review chairman synthesis for bias or error",
                    )
                )

        return Stage3Audit(
            chairman_model=stage3.chairman_model,
            consensus_reached=synthesis.consensus.reached,
            dissent_preserved=preserved,
            dissent_suppressed=suppressed,
            risk_calibration=RiskCalibrationAudit(
                catastrophizing_detected=synthesis.risk.catastrophizing_detected,
                understating_detected=synthesis.risk.understating_detected,
                calibration_action=synthesis.risk.calibration_notes or "None noted",
            ),
            citations_in_synthesis=count_citations(synthesis_json),
            source_reliance=reliance,
            anomalies=anomalies,
        )

    # Cross-stage

    def _detect_cross_stage_anomalies(
        self, stage1: Stage1Result, stage2: Stage2Result
    ) -> list[AuditAnomaly]:
        anomalies: list[AuditAnomaly] = []
        analysis_count = len(stage1.analyses)
        averages = {ranking.label: ranking.average_rank for ranking in stage2.aggregate_rankings}

        for analysis in stage1.analyses:
            average = averages.get(analysis.label)
            if analysis.confidence == "high" and average is not None and average >= analysis_count - 0.5:
                anomalies.append(
                    AuditAnomaly(
                        stage="cross-stage",
                        severity="warning",
                        type="confidence-mismatch",
                        description=(
                            f'Analysis {analysis.label} stated "high" confidence but was ranked last by peers'
                        ),
                        affected_models=[analysis.model_id],
                        recommendation="Review analysis for overconfidence or peer misunderstanding",
                    )
                )

        identifiers: dict[str, list[str]] = {}
        for analysis in stage1.analyses:
            for issue in _threshold_issues(analysis):
                name = issue.get("issue") if isinstance(issue, dict) else None
                if not isinstance(name, str) or not name.strip():
                    continue
                holders = identifiers.setdefault(name.strip().lower(), [])
                if analysis.label not in holders:
                    holders.append(analysis.label)

        majority = math.ceil(analysis_count / 2)
        for issue, holders in identifiers.items():
            if len(holders) < majority:
                continue
            missed = [analysis.label for analysis in stage1.analyses if analysis.label not in holders]
            if missed:
                anomalies.append(
                    AuditAnomaly(
                        stage="cross-stage",
                        severity="warning",
                        type="threshold-gap",
                        description=(
                            f'Threshold issue "{issue}" identified by {len(holders)} analyses '
                            f"but missed by {', '.join(missed)}"
                        ),
                        affected_models=missed,
                        recommendation="Review missed threshold issue for potential blind spot",
                    )
                )

        return anomalies

    # Integrity

    def _calculate_process_integrity(
        self,
        stage1_audit: Stage1Audit,
        stage2_audit: Stage2Audit,
        stage3_audit: Stage3Audit,
        cross_stage: list[AuditAnomaly],
    ) -> ProcessIntegrity:
        flags: list[str] = []
        recommendations: list[str] = []
        score = "high"

        anomalies = stage1_audit.anomalies + stage2_audit.anomalies + stage3_audit.anomalies + cross_stage
        critical = sum(1 for anomaly in anomalies if anomaly.severity == "critical")
        warnings = sum(1 for anomaly in anomalies if anomaly.severity == "warning")

        if critical:
            score = "low"
            flags.append(f"{critical} critical anomal{'ies' if critical > 1 else 'y'} detected")
            recommendations.append("Review critical anomalies before relying on synthesis")

        if warnings >= 3 and score != "low":
            score = "medium"
            flags.append(f"{warnings} warnings detected")

        if len(stage1_audit.models_responded) == self.minimum_quorum:
            flags.append("Bare minimum quorum achieved")
            if score == "high":
                score = "medium"

        if stage1_audit.models_failed:
            flags.append(f"{len(stage1_audit.models_failed)} model(s) failed to respond")

        if stage2_audit.ranking_consensus == "none":
            flags.append("No ranking consensus among reviewers")
            recommendations.append("Council disagreed significantly - review individual analyses")
            if score == "high":
                score = "medium"

        citation_anomalies = [anomaly for anomaly in anomalies if anomaly.type == "citation-consensus"]
        if citation_anomalies:
            flags.append(f"{len(citation_anomalies)} potential shared citation(s) - verify independently")
            recommendations.append("Run independent citation check on shared authorities")

        if stage3_audit.dissent_suppressed > 0:
            flags.append(f"{stage3_audit.dissent_suppressed} dissenting view(s) may not be preserved")
            recommendations.append("Review stage 1 analyses for important minority positions")

        return ProcessIntegrity(score=score, flags=flags, recommendations=recommendations)
