"""ABOUTME: Tests for the deliberation audit collector.
ABOUTME: Covers lifecycle, anomaly rules and process integrity scoring."""

import pytest

import legal_council.audit as audit_module
from legal_council.audit import AuditCollector, AuditStateError, extract_citations
from legal_council.models import (
    AggregateRanking,
    IndividualAnalysis,
    PeerReview,
    Stage1Result,
    Stage2Result,
    Stage3Result,
)
from legal_council.schemas import CalibratedRisk, ConsensusResult, DissentingView, Stage3Synthesis


def _analysis(label: str, model_id: str, content: str = "{}", confidence: str = "medium", structured=None):
    return IndividualAnalysis(
        label=label,
        content=content,
        confidence=confidence,
        model_id=model_id,
        structured=structured,
    )


def _review(reviewer: str, ranking: list[str]) -> PeerReview:
    return PeerReview(
        reviewer_label=reviewer,
        ranking=ranking,
        ranking_rationale="ranked on merit",
        reviewer_model_id=f"model-{reviewer.lower()}",
    )


def _synthesis(position: str = "Council agrees", dissent=None) -> Stage3Synthesis:
    return Stage3Synthesis(
        consensus=ConsensusResult(
            reached=True, position=position, confidence=0.8, agreement_count=2, total_members=3
        ),
        issues=[],
        risk=CalibratedRisk(
            overall_level="medium",
            factors=[],
            catastrophizing_detected=False,
            understating_detected=False,
            calibration_notes="",
        ),
        dissent=dissent or [],
        weaknesses=[],
        open_questions=[],
        action_items=[],
    )


def _stage3(synthesis: Stage3Synthesis, chairman: str = "model-a") -> Stage3Result:
    return Stage3Result(synthesis=synthesis, chairman_model=chairman, complete=True)


def _collect(collector: AuditCollector, analyses: list[IndividualAnalysis], failed: dict | None = None):
    for analysis in analyses:
        collector.record_stage1_start(analysis.model_id, analysis.label)
    for model_id, error in (failed or {}).items():
        collector.record_stage1_start(model_id, "?")
        collector.record_stage1_failure(model_id, error)
    for analysis in analyses:
        collector.record_stage1_complete(analysis.model_id, analysis, tokens_used=100)


class FakeClock:
    def __init__(self, values: list[float]):
        self.values = list(values)

    def __call__(self) -> float:
        if len(self.values) > 1:
            return self.values.pop(0)
        return self.values[0]


def test_bare_quorum_with_failed_member_scores_medium():
    analyses = [_analysis("A", "model-a"), _analysis("B", "model-b")]
    collector = AuditCollector("session-1", minimum_quorum=2)
    _collect(collector, analyses, failed={"model-c": "timed out"})
    stage2 = Stage2Result(
        peer_reviews=[_review("A", ["A", "B"]), _review("B", ["A", "B"])],
        aggregate_rankings=[
            AggregateRanking(label="A", average_rank=1, ranking_consistency=1),
            AggregateRanking(label="B", average_rank=2, ranking_consistency=1),
        ],
        complete=True,
    )

    audit = collector.build_audit(
        Stage1Result(analyses=analyses, complete=False),
        stage2,
        _stage3(_synthesis()),
        ["model-a", "model-b", "model-c"],
    )

    assert audit.stage1.models_failed == ["model-c"]
    assert audit.stage1.models_responded == ["model-a", "model-b"]
    types = {anomaly.type for anomaly in audit.stage1.anomalies}
    assert types == {"model-failure", "quorum-risk"}
    assert audit.stage2.ranking_consensus == "strong"
    assert audit.process_integrity.score == "medium"
    assert "Bare minimum quorum achieved" in audit.process_integrity.flags
    assert "1 model(s) failed to respond" in audit.process_integrity.flags
    assert audit.model_dump(by_alias=True)["stage1"]["modelsFailed"] == ["model-c"]


def test_collector_cannot_be_reused_after_build():
    collector = AuditCollector("session-2")
    analyses = [_analysis("A", "model-a"), _analysis("B", "model-b")]
    _collect(collector, analyses)
    args = (
        Stage1Result(analyses=analyses, complete=True),
        Stage2Result(complete=True),
        _stage3(_synthesis()),
        ["model-a", "model-b"],
    )

    collector.build_audit(*args)

    assert collector.state == "built"
    with pytest.raises(AuditStateError):
        collector.build_audit(*args)
    with pytest.raises(AuditStateError):
        collector.record_stage1_start("model-a", "A")


def test_distinct_positions_without_dissent_are_flagged():
    analyses = [
        _analysis("A", "model-a", structured={"assessment": "Claim is timely"}),
        _analysis("B", "model-b", structured={"assessment": "Claim is time-barred"}),
        _analysis("C", "model-c", structured={"assessment": "Tolling may apply"}),
    ]
    collector = AuditCollector("session-3")
    _collect(collector, analyses)

    audit = collector.build_audit(
        Stage1Result(analyses=analyses, complete=True),
        Stage2Result(complete=True),
        _stage3(_synthesis()),
        ["model-a", "model-b", "model-c"],
    )

    assert audit.stage3.dissent_suppressed == 2
    assert any(anomaly.type == "dissent-suppression" for anomaly in audit.stage3.anomalies)
    assert "2 dissenting view(s) may not be preserved" in audit.process_integrity.flags


def test_preserved_dissent_reduces_suppression_count():
    analyses = [
        _analysis("A", "model-a", structured={"assessment": "Claim is timely"}),
        _analysis("B", "model-b", structured={"assessment": " claim is TIMELY "}),
        _analysis("C", "model-c", structured={"assessment": "Tolling may apply"}),
    ]
    collector = AuditCollector("session-4")
    _collect(collector, analyses)
    dissent = [DissentingView(position="Tolling", reasoning="Discovery rule", supported_by_count=1, noteworthy=True)]

    audit = collector.build_audit(
        Stage1Result(analyses=analyses, complete=True),
        Stage2Result(complete=True),
        _stage3(_synthesis(dissent=dissent)),
        ["model-a", "model-b", "model-c"],
    )

    assert audit.stage3.dissent_preserved == 1
    assert audit.stage3.dissent_suppressed == 0


def test_latency_outlier_and_excessive_retries(monkeypatch):
    # init, three starts, three completions, then build
    monkeypatch.setattr(audit_module, "perf_counter", FakeClock([0, 0, 0, 0, 1.0, 1.0, 10.0, 11.0]))
    analyses = [_analysis("A", "model-a"), _analysis("B", "model-b"), _analysis("C", "model-c")]
    collector = AuditCollector("session-5")
    for analysis in analyses:
        collector.record_stage1_start(analysis.model_id, analysis.label)
    collector.record_stage1_retry("model-b", 2)
    for analysis in analyses:
        collector.record_stage1_complete(analysis.model_id, analysis)

    audit = collector.build_audit(
        Stage1Result(analyses=analyses, complete=True),
        Stage2Result(complete=True),
        _stage3(_synthesis()),
        ["model-a", "model-b", "model-c"],
    )

    outliers = [anomaly for anomaly in audit.stage1.anomalies if anomaly.type == "latency-outlier"]
    assert [anomaly.affected_models for anomaly in outliers] == [["model-c"]]
    assert outliers[0].severity == "info"
    retries = [anomaly for anomaly in audit.stage1.anomalies if anomaly.type == "retry-excessive"]
    assert retries[0].affected_models == ["model-b"]
    assert audit.stage1.per_model_metrics["model-c"].latency_ms == 10000


def test_shared_citation_across_three_analyses_is_flagged():
    content = "Under Smith v. Jones, 123 N.Y.2d 456, the claim fails."
    analyses = [_analysis(label, f"model-{label.lower()}", content=content) for label in "ABC"]
    collector = AuditCollector("session-6")
    _collect(collector, analyses)

    audit = collector.build_audit(
        Stage1Result(analyses=analyses, complete=True),
        Stage2Result(complete=True),
        _stage3(_synthesis()),
        ["model-a", "model-b", "model-c"],
    )

    citation_anomalies = [a for a in audit.stage2.anomalies if a.type == "citation-consensus"]
    assert len(citation_anomalies) == 2
    assert citation_anomalies[0].affected_models == ["A", "B", "C"]
    assert audit.stage2.citations_across_analyses["A"] == ["Smith v. Jones", "123 N.Y.2d 456"]
    assert audit.stage1.per_model_metrics["model-a"].citations_used == 2
    assert audit.process_integrity.score == "medium"


def test_synthesis_ignoring_top_ranked_analysis_is_critical():
    analyses = [
        _analysis("A", "model-a", content="alpha reasoning about contractual privity here. more"),
        _analysis("B", "model-b", content="the statute of limitations bars the claim entirely. other points"),
        _analysis("C", "model-c", content="gamma view on damages calculation approach here. more"),
    ]
    collector = AuditCollector("session-7")
    _collect(collector, analyses)
    stage2 = Stage2Result(
        peer_reviews=[_review("A", ["A", "C", "B"]), _review("C", ["A", "C", "B"])],
        aggregate_rankings=[
            AggregateRanking(label="A", average_rank=1, ranking_consistency=1),
            AggregateRanking(label="C", average_rank=2, ranking_consistency=1),
            AggregateRanking(label="B", average_rank=3, ranking_consistency=1),
        ],
        complete=True,
    )

    audit = collector.build_audit(
        Stage1Result(analyses=analyses, complete=True),
        stage2,
        _stage3(_synthesis(position="The statute of limitations bars the claim entirely")),
        ["model-a", "model-b", "model-c"],
    )

    assert audit.stage3.source_reliance == {"A": 0, "B": 1, "C": 0}
    types = [anomaly.type for anomaly in audit.stage3.anomalies]
    assert "single-source-dominance" in types
    assert "synthesis-divergence" in types
    assert audit.process_integrity.score == "low"


def test_cross_stage_confidence_mismatch_and_threshold_gap():
    analyses = [
        _analysis("A", "model-a", structured={"thresholdIssues": [{"issue": "Standing", "status": "known"}]}),
        _analysis("B", "model-b", structured={"thresholdIssues": [{"issue": "standing", "status": "assumed"}]}),
        _analysis("C", "model-c", confidence="high", structured={"thresholdIssues": []}),
    ]
    collector = AuditCollector("session-8")
    _collect(collector, analyses)
    stage2 = Stage2Result(
        peer_reviews=[
            _review("A", ["A", "B", "C"]),
            _review("B", ["B", "A", "C"]),
            _review("C", ["A", "B", "C"]),
        ],
        aggregate_rankings=[
            AggregateRanking(label="A", average_rank=1.5, ranking_consistency=0.9),
            AggregateRanking(label="B", average_rank=1.5, ranking_consistency=0.9),
            AggregateRanking(label="C", average_rank=3, ranking_consistency=1),
        ],
        complete=True,
    )

    audit = collector.build_audit(
        Stage1Result(analyses=analyses, complete=True),
        stage2,
        _stage3(_synthesis()),
        ["model-a", "model-b", "model-c"],
    )

    by_type = {anomaly.type: anomaly for anomaly in audit.cross_stage_anomalies}
    assert by_type["confidence-mismatch"].affected_models == ["model-c"]
    assert by_type["threshold-gap"].affected_models == ["C"]
    assert audit.stage1.per_model_metrics["model-a"].threshold_issues_identified == 1
    assert audit.stage2.ranking_consensus == "moderate"


def test_agreement_matrix_and_no_consensus():
    analyses = [_analysis("A", "model-a"), _analysis("B", "model-b")]
    collector = AuditCollector("session-9", minimum_quorum=1)
    _collect(collector, analyses)
    stage2 = Stage2Result(
        peer_reviews=[_review("A", ["A", "B"]), _review("B", ["B", "A"])],
        aggregate_rankings=[
            AggregateRanking(label="A", average_rank=1.5, ranking_consistency=0.75),
            AggregateRanking(label="B", average_rank=1.5, ranking_consistency=0.75),
        ],
        complete=True,
    )

    audit = collector.build_audit(
        Stage1Result(analyses=analyses, complete=True),
        stage2,
        _stage3(_synthesis()),
        ["model-a", "model-b"],
    )

    assert audit.stage2.ranking_consensus == "none"
    assert audit.stage2.agreement_matrix["A"].disagreed_with == ["B"]
    assert audit.stage2.outlier_reviews == []
    assert audit.process_integrity.score == "medium"
    assert "No ranking consensus among reviewers" in audit.process_integrity.flags


def test_reviewer_favoring_aggregate_last_place_is_an_outlier():
    analyses = [_analysis("A", "model-a"), _analysis("B", "model-b"), _analysis("C", "model-c")]
    collector = AuditCollector("session-10")
    _collect(collector, analyses)
    stage2 = Stage2Result(
        peer_reviews=[
            _review("A", ["C", "A", "B"]),
            _review("B", ["A", "B", "C"]),
            _review("C", ["A", "B", "C"]),
        ],
        aggregate_rankings=[
            AggregateRanking(label="A", average_rank=1.33, ranking_consistency=0.83),
            AggregateRanking(label="B", average_rank=2.33, ranking_consistency=0.83),
            AggregateRanking(label="C", average_rank=2.67, ranking_consistency=0.83),
        ],
        complete=True,
    )

    audit = collector.build_audit(
        Stage1Result(analyses=analyses, complete=True),
        stage2,
        _stage3(_synthesis()),
        ["model-a", "model-b", "model-c"],
    )

    assert [outlier.reviewer_label for outlier in audit.stage2.outlier_reviews] == ["A"]
    assert "Ranked C first" in audit.stage2.outlier_reviews[0].deviation
    outliers = [anomaly for anomaly in audit.stage2.anomalies if anomaly.type == "ranking-outlier"]
    assert len(outliers) == 1
    assert outliers[0].affected_models == ["model-a"]
    assert outliers[0].severity == "info"
    assert audit.stage2.ranking_consensus == "moderate"


def test_three_distinct_top_picks_among_four_reviewers_is_weak():
    labels = ["A", "B", "C", "D"]
    analyses = [_analysis(label, f"model-{label.lower()}") for label in labels]
    collector = AuditCollector("session-11")
    _collect(collector, analyses)
    stage2 = Stage2Result(
        peer_reviews=[
            _review("A", ["A", "B", "C", "D"]),
            _review("B", ["A", "C", "B", "D"]),
            _review("C", ["B", "A", "C", "D"]),
            _review("D", ["C", "A", "B", "D"]),
        ],
        aggregate_rankings=[
            AggregateRanking(label="A", average_rank=1.5, ranking_consistency=0.9),
            AggregateRanking(label="B", average_rank=2.25, ranking_consistency=0.9),
            AggregateRanking(label="C", average_rank=2.25, ranking_consistency=0.9),
            AggregateRanking(label="D", average_rank=4, ranking_consistency=1),
        ],
        complete=True,
    )

    audit = collector.build_audit(
        Stage1Result(analyses=analyses, complete=True),
        stage2,
        _stage3(_synthesis()),
        [analysis.model_id for analysis in analyses],
    )

    assert audit.stage2.ranking_consensus == "weak"
    assert audit.stage2.agreement_matrix["A"].agreed_with == ["B"]
    assert audit.stage2.outlier_reviews == []


def test_failed_build_leaves_collector_collecting(monkeypatch):
    analyses = [_analysis("A", "model-a"), _analysis("B", "model-b")]
    collector = AuditCollector("session-12")
    _collect(collector, analyses)
    args = (
        Stage1Result(analyses=analyses, complete=True),
        Stage2Result(complete=True),
        _stage3(_synthesis()),
        ["model-a", "model-b"],
    )

    def broken_integrity(*_args):
        raise RuntimeError("integrity scoring failed")

    monkeypatch.setattr(collector, "_calculate_process_integrity", broken_integrity)
    with pytest.raises(RuntimeError):
        collector.build_audit(*args)
    assert collector.state == "collecting"

    monkeypatch.undo()
    audit = collector.build_audit(*args)

    assert collector.state == "built"
    assert audit.session_id == "session-12"


def test_extract_citations_patterns():
    text = (
        "See Matter of Johnson v. Board, In re Gault, 387 U.S. 1, "
        "and 12 A.D.3d 45; also Smith v. Jones and Smith v. Jones again."
    )

    citations = extract_citations(text)

    assert "Matter of Johnson v. Board" in citations
    assert "Matter of Johnson" in citations
    assert "387 U.S. 1" in citations
    assert "12 A.D.3d 45" in citations
    assert citations.count("Smith v. Jones") == 1
