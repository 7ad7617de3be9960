"""ABOUTME: Executors for independent analysis, peer review and synthesis.
ABOUTME: Each stage tolerates per-member failure and salvages partial output."""

from __future__ import annotations

import json
import logging
import math
from dataclasses import dataclass
from functools import partial
from typing import Any, Callable, Optional, TypeVar

from pydantic import BaseModel, ValidationError

from legal_council.aggregation import calculate_aggregate_rankings, sanitize_ranking
from legal_council.audit import AuditCollector
from legal_council.config import Settings
from legal_council.dispatcher import run_bounded
from legal_council.models import (
    CouncilMember,
    CouncilQuery,
    IndividualAnalysis,
    PeerReview,
    ProgressEvent,
    Stage1Result,
    Stage2Result,
    Stage3Result,
    StageError,
)
from legal_council.prompts import build_stage1_messages, build_stage2_messages, build_stage3_messages
from legal_council.schemas import (
    ActionItem,
    AnalysisEvaluation,
    CalibratedRisk,
    ConsensusResult,
    DissentingView,
    IdentifiedIssue,
    IdentifiedWeakness,
    RiskFactor,
    SourceAttribution,
    Stage1Analysis,
    Stage2Review,
    Stage3Synthesis,
)
from legal_council.strategies import StrategyRouter
from legal_council.usage import UsageTracker

logger = logging.getLogger(__name__)

ModelT = TypeVar("ModelT", bound=BaseModel)

LEVELS = ("low", "medium", "high")
DEFAULT_CONFIDENCE = "medium"
KEY_POINTS_PER_LIST = 3
MISSING_RATIONALE = "Rationale not provided"
SYNTHESIS_FAILED = "Synthesis failed - see errors"
PARTIAL_SYNTHESIS = "Chairman response did not fully validate, using partial extraction"


@dataclass
class StageContext:
    """Per-session collaborators shared by the stage executors."""

    router: StrategyRouter
    settings: Settings
    audit: AuditCollector
    usage: UsageTracker
    emit: Callable[[ProgressEvent], None]


def _ordered_errors(errors: dict[int, StageError]) -> list[StageError]:
    return [errors[index] for index in sorted(errors)]


# Stage 1


def build_analysis(member: CouncilMember, data: dict[str, Any]) -> IndividualAnalysis:
    """Validate a Stage 1 payload, salvaging what is usable when it does not fit."""
    try:
        validated = Stage1Analysis.model_validate(data)
    except ValidationError as exc:
        logger.warning(
            "Analysis %s did not validate (%d errors); salvaging raw payload",
            member.session_label,
            exc.error_count(),
        )
        confidence = data.get("confidence")
        key_points: list[str] = []
        for field in ("strengths", "weaknesses"):
            values = data.get(field)
            if isinstance(values, list):
                key_points.extend(str(value) for value in values[:KEY_POINTS_PER_LIST])
        return IndividualAnalysis(
            label=member.session_label,
            content=json.dumps(data, indent=2, default=str),
            confidence=confidence if confidence in LEVELS else DEFAULT_CONFIDENCE,
            key_points=key_points,
            model_id=member.model_id,
            structured=data,
        )

    structured = validated.model_dump(by_alias=True, exclude_none=True)
    return IndividualAnalysis(
        label=member.session_label,
        content=json.dumps(structured, indent=2),
        confidence=validated.confidence,
        key_points=validated.strengths[:KEY_POINTS_PER_LIST] + validated.weaknesses[:KEY_POINTS_PER_LIST],
        model_id=member.model_id,
        structured=structured,
    )


async def run_stage1(query: CouncilQuery, members: list[CouncilMember], ctx: StageContext) -> Stage1Result:
    messages = build_stage1_messages(query)
    errors: dict[int, StageError] = {}

    async def _analyze(index: int, member: CouncilMember) -> Optional[IndividualAnalysis]:
        ctx.audit.record_stage1_start(member.model_id, member.session_label)
        ctx.emit(
            ProgressEvent(
                stage=1,
                type="model-start",
                label=member.session_label,
                message=f"Analyst {member.session_label} analyzing...",
            )
        )
        try:
            result = await ctx.router.query_structured(
                member.model_id,
                messages,
                Stage1Analysis,
                timeout=ctx.settings.request_timeout_seconds,
            )
        except Exception as exc:
            message = str(exc) or type(exc).__name__
            logger.warning("Stage 1 analyst %s failed: %s", member.session_label, message)
            ctx.audit.record_stage1_failure(member.model_id, message)
            ctx.emit(
                ProgressEvent(
                    stage=1,
                    type="model-error",
                    label=member.session_label,
                    message=f"Analyst {member.session_label} failed: {message}",
                )
            )
            errors[index] = StageError(stage=1, model_id=member.model_id, message=message, recoverable=True)
            return None

        response = result.response
        ctx.usage.record_usage(member.model_id, 1, response.usage)
        if response.attempts > 1:
            ctx.audit.record_stage1_retry(member.model_id, response.attempts - 1)

        analysis = build_analysis(member, result.data)
        ctx.audit.record_stage1_complete(
            member.model_id,
            analysis,
            tokens_used=response.usage.total_tokens if response.usage else None,
        )
        ctx.emit(
            ProgressEvent(
                stage=1,
                type="model-complete",
                label=member.session_label,
                message=f"Analyst {member.session_label} complete",
            )
        )
        return analysis

    tasks = [partial(_analyze, index, member) for index, member in enumerate(members)]
    results = await run_bounded(tasks, ctx.settings.council_concurrency_limit)
    analyses = [analysis for analysis in results if analysis is not None]

    return Stage1Result(
        analyses=analyses,
        complete=len(analyses) == len(members),
        errors=_ordered_errors(errors),
    )


# Stage 2


def _valid_evaluations(raw: Any, labels: list[str]) -> dict[str, AnalysisEvaluation]:
    if not isinstance(raw, dict):
        return {}
    evaluations: dict[str, AnalysisEvaluation] = {}
    for label, value in raw.items():
        if label not in labels:
            continue
        try:
            evaluations[label] = AnalysisEvaluation.model_validate(value)
        except ValidationError:
            continue
    return evaluations


def build_peer_review(reviewer: CouncilMember, data: dict[str, Any], labels: list[str]) -> PeerReview:
    """Validate a Stage 2 payload. Rankings are always sanitised against ``labels``."""
    try:
        validated = Stage2Review.model_validate(data)
    except ValidationError as exc:
        logger.warning(
            "Review by %s did not validate (%d errors); salvaging raw payload",
            reviewer.session_label,
            exc.error_count(),
        )
        evaluations = _valid_evaluations(data.get("evaluations"), labels)
        raw_ranking = data.get("ranking")
        rationale = data.get("rankingRationale")
        if not isinstance(rationale, str) or not rationale.strip():
            rationale = MISSING_RATIONALE
    else:
        evaluations = {label: value for label, value in validated.evaluations.items() if label in labels}
        raw_ranking = validated.ranking
        rationale = validated.ranking_rationale or MISSING_RATIONALE

    ranking = sanitize_ranking(raw_ranking, labels) or list(labels)
    return PeerReview(
        reviewer_label=reviewer.session_label,
        evaluations=evaluations,
        ranking=ranking,
        ranking_rationale=rationale,
        reviewer_model_id=reviewer.model_id,
    )


async def run_stage2(
    query: CouncilQuery,
    stage1: Stage1Result,
    members: list[CouncilMember],
    ctx: StageContext,
) -> Stage2Result:
    responders = {analysis.model_id for analysis in stage1.analyses}
    reviewers = [member for member in members if member.model_id in responders]
    labels = [analysis.label for analysis in stage1.analyses]
    messages = build_stage2_messages(query, [analysis.to_public() for analysis in stage1.analyses])
    errors: dict[int, StageError] = {}

    async def _review(index: int, reviewer: CouncilMember) -> Optional[PeerReview]:
        ctx.emit(
            ProgressEvent(
                stage=2,
                type="model-start",
                label=reviewer.session_label,
                message=f"Reviewer {reviewer.session_label} evaluating...",
            )
        )
        try:
            result = await ctx.router.query_structured(
                reviewer.model_id,
                messages,
                Stage2Review,
                timeout=ctx.settings.request_timeout_seconds,
            )
        except Exception as exc:
            message = str(exc) or type(exc).__name__
            logger.warning("Stage 2 reviewer %s failed: %s", reviewer.session_label, message)
            ctx.emit(
                ProgressEvent(
                    stage=2,
                    type="model-error",
                    label=reviewer.session_label,
                    message=f"Reviewer {reviewer.session_label} failed: {message}",
                )
            )
            errors[index] = StageError(stage=2, model_id=reviewer.model_id, message=message, recoverable=True)
            return None

        ctx.usage.record_usage(reviewer.model_id, 2, result.response.usage)
        ctx.emit(
            ProgressEvent(
                stage=2,
                type="model-complete",
                label=reviewer.session_label,
                message=f"Reviewer {reviewer.session_label} complete",
            )
        )
        return build_peer_review(reviewer, result.data, labels)

    tasks = [partial(_review, index, reviewer) for index, reviewer in enumerate(reviewers)]
    results = await run_bounded(tasks, ctx.settings.council_concurrency_limit)
    reviews = [review for review in results if review is not None]

    return Stage2Result(
        peer_reviews=reviews,
        aggregate_rankings=calculate_aggregate_rankings(reviews, labels),
        complete=len(reviews) == len(reviewers),
        errors=_ordered_errors(errors),
    )


# Stage 3


def empty_synthesis(total_members: int) -> Stage3Synthesis:
    return Stage3Synthesis(
        consensus=ConsensusResult(
            reached=False,
            position=SYNTHESIS_FAILED,
            confidence=0,
            agreement_count=0,
            total_members=total_members,
        ),
        issues=[],
        risk=CalibratedRisk(
            overall_level="medium",
            factors=[],
            catastrophizing_detected=False,
            understating_detected=False,
            calibration_notes="Unable to complete risk assessment",
        ),
        dissent=[],
        weaknesses=[],
        open_questions=[],
        action_items=[],
    )


def _valid_items(raw: Any, shape: type[ModelT]) -> list[ModelT]:
    if not isinstance(raw, list):
        return []
    items: list[ModelT] = []
    for value in raw:
        try:
            items.append(shape.model_validate(value))
        except ValidationError:
            continue
    return items


def _as_number(value: Any, default: float = 0) -> float:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return default
    if not math.isfinite(value):
        return default
    return value


def extract_partial_synthesis(raw: dict[str, Any], total_members: int) -> Stage3Synthesis:
    """Best-effort field-by-field recovery of a synthesis that failed validation."""
    consensus = raw.get("consensus") if isinstance(raw.get("consensus"), dict) else {}
    risk = raw.get("risk") if isinstance(raw.get("risk"), dict) else {}
    questions = raw.get("openQuestions")
    attribution = raw.get("sourceAttribution")

    return Stage3Synthesis(
        consensus=ConsensusResult(
            reached=bool(consensus.get("reached")),
            position=str(consensus.get("position") or ""),
            confidence=min(1.0, max(0.0, _as_number(consensus.get("confidence")))),
            agreement_count=int(_as_number(consensus.get("agreementCount"))),
            total_members=total_members,
        ),
        issues=_valid_items(raw.get("issues"), IdentifiedIssue),
        risk=CalibratedRisk(
            overall_level=risk.get("overallLevel") if risk.get("overallLevel") in LEVELS else "medium",
            factors=_valid_items(risk.get("factors"), RiskFactor),
            catastrophizing_detected=bool(risk.get("catastrophizingDetected")),
            understating_detected=bool(risk.get("understatingDetected")),
            calibration_notes=str(risk.get("calibrationNotes") or ""),
        ),
        dissent=_valid_items(raw.get("dissent"), DissentingView),
        weaknesses=_valid_items(raw.get("weaknesses"), IdentifiedWeakness),
        open_questions=[str(question) for question in questions] if isinstance(questions, list) else [],
        action_items=_valid_items(raw.get("actionItems"), ActionItem),
        source_attribution=_valid_items(attribution, SourceAttribution) if isinstance(attribution, list) else None,
    )


async def run_stage3(
    query: CouncilQuery,
    stage1: Stage1Result,
    stage2: Stage2Result,
    chairman_model: str,
    total_members: int,
    ctx: StageContext,
) -> Stage3Result:
    messages = build_stage3_messages(
        query,
        stage1.analyses,
        stage2.aggregate_rankings,
        stage2.peer_reviews,
        total_members,
    )
    ctx.emit(ProgressEvent(stage=3, type="model-start", message="Chairman synthesizing..."))

    try:
        result = await ctx.router.query_structured(
            chairman_model,
            messages,
            Stage3Synthesis,
            timeout=ctx.settings.chairman_timeout_seconds,
        )
    except Exception as exc:
        message = str(exc) or type(exc).__name__
        logger.error("Chairman %s failed to synthesize: %s", chairman_model, message)
        ctx.emit(ProgressEvent(stage=3, type="model-error", message=f"Chairman failed: {message}"))
        return Stage3Result(
            synthesis=empty_synthesis(total_members),
            chairman_model=chairman_model,
            complete=False,
            errors=[StageError(stage=3, model_id=chairman_model, message=message, recoverable=False)],
        )

    ctx.usage.record_usage(chairman_model, 3, result.response.usage)
    ctx.emit(ProgressEvent(stage=3, type="model-complete", message="Chairman synthesis complete"))

    try:
        synthesis = Stage3Synthesis.model_validate(result.data)
    except ValidationError as exc:
        logger.warning("Chairman synthesis did not validate (%d errors); extracting partial result", exc.error_count())
        try:
            partial_synthesis = extract_partial_synthesis(result.data, total_members)
        except Exception as extract_exc:
            logger.exception("Partial synthesis extraction failed for %s", chairman_model)
            return Stage3Result(
                synthesis=empty_synthesis(total_members),
                chairman_model=chairman_model,
                complete=False,
                errors=[
                    StageError(
                        stage=3,
                        model_id=chairman_model,
                        message=f"Partial synthesis extraction failed: {extract_exc}",
                        recoverable=True,
                    )
                ],
            )
        return Stage3Result(
            synthesis=partial_synthesis,
            chairman_model=chairman_model,
            complete=True,
            errors=[StageError(stage=3, model_id=chairman_model, message=PARTIAL_SYNTHESIS, recoverable=True)],
        )

    return Stage3Result(synthesis=synthesis, chairman_model=chairman_model, complete=True)
