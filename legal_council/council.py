"""ABOUTME: Deliberation controller driving the three council stages.
ABOUTME: Enforces quorum gates, selects the chairman and assembles results."""

from __future__ import annotations

import json
import logging
from enum import Enum
from time import perf_counter
from typing import Callable, Optional, Union
from uuid import uuid4

from legal_council.audit import AuditCollector
from legal_council.chairman import select_chairman
from legal_council.config import InappropriateQueryError, Settings, is_appropriate_for_council, settings as default_settings
from legal_council.models import (
    CouncilAudit,
    CouncilDeliberation,
    CouncilMember,
    CouncilQuery,
    ChairmanSelection,
    DeliberationMetadata,
    ProgressEvent,
    Stage1Result,
    Stage2Result,
    Stage3Result,
    StageError,
    StageResults,
    assign_labels,
)
from legal_council.openrouter_client import OpenRouterClient
from legal_council.stages import StageContext, run_stage1, run_stage2, run_stage3
from legal_council.strategies import StrategyRouter
from legal_council.usage import UsageSummary, UsageTracker

__all__ = [
    "DeliberationState",
    "DeliberationStateMachine",
    "LegalCouncil",
    "QuorumError",
    "assign_labels",
    "deliberate",
]

logger = logging.getLogger(__name__)

CHARS_PER_TOKEN = 4
FALLBACK_COST_PER_1K_TOKENS = 0.015

ProgressCallback = Callable[[ProgressEvent], None]


class DeliberationState(str, Enum):
    INIT = "init"
    STAGE1 = "stage1"
    QUORUM_CHECK_1 = "quorum-check-1"
    STAGE2 = "stage2"
    QUORUM_CHECK_2 = "quorum-check-2"
    SELECT_CHAIRMAN = "select-chairman"
    STAGE3 = "stage3"
    ASSEMBLE = "assemble"
    DONE = "done"
    ABORTED = "aborted"


_TRANSITIONS: dict[DeliberationState, set[DeliberationState]] = {
    DeliberationState.INIT: {DeliberationState.STAGE1, DeliberationState.ABORTED},
    DeliberationState.STAGE1: {DeliberationState.QUORUM_CHECK_1},
    DeliberationState.QUORUM_CHECK_1: {DeliberationState.STAGE2, DeliberationState.ABORTED},
    DeliberationState.STAGE2: {DeliberationState.QUORUM_CHECK_2},
    DeliberationState.QUORUM_CHECK_2: {DeliberationState.SELECT_CHAIRMAN, DeliberationState.ABORTED},
    DeliberationState.SELECT_CHAIRMAN: {DeliberationState.STAGE3},
    DeliberationState.STAGE3: {DeliberationState.ASSEMBLE},
    DeliberationState.ASSEMBLE: {DeliberationState.DONE},
    DeliberationState.DONE: set(),
    DeliberationState.ABORTED: set(),
}


class DeliberationStateMachine:
    """Tracks one deliberation's progress and rejects out-of-order steps."""

    def __init__(self, session_id: str) -> None:
        self.session_id = session_id
        self.state = DeliberationState.INIT
        self.history: list[str] = [self.state.value]

    def transition(self, target: DeliberationState) -> None:
        if target not in _TRANSITIONS[self.state]:
            raise RuntimeError(f"Illegal deliberation transition {self.state.value} -> {target.value}")
        logger.info("Session %s: %s -> %s", self.session_id, self.state.value, target.value)
        self.state = target
        self.history.append(target.value)


class QuorumError(Exception):
    """Raised when too few council members succeed at a stage."""

    def __init__(
        self,
        actual_count: int,
        required_count: int,
        errors: list[StageError],
        stage: int,
    ) -> None:
        super().__init__(
            f"Council quorum not met at stage {stage}: {actual_count} of {required_count} required members succeeded"
        )
        self.actual_count = actual_count
        self.required_count = required_count
        self.errors = errors
        self.stage = stage


def _estimate_tokens(stage1: Stage1Result, stage2: Stage2Result, stage3: Stage3Result) -> int:
    chars = sum(len(analysis.content) for analysis in stage1.analyses)
    chars += sum(
        len(json.dumps({label: value.model_dump() for label, value in review.evaluations.items()}))
        for review in stage2.peer_reviews
    )
    chars += len(stage3.synthesis.model_dump_json(by_alias=True))
    return chars // CHARS_PER_TOKEN


class LegalCouncil:
    """Coordinates the three-stage legal council deliberation."""

    def __init__(
        self,
        client: Optional[OpenRouterClient] = None,
        config: Optional[Settings] = None,
        on_progress: Optional[ProgressCallback] = None,
        router: Optional[StrategyRouter] = None,
    ) -> None:
        self.settings = config or default_settings
        # Raises ConfigurationError before any deliberation can start.
        self.members: list[CouncilMember] = self.settings.get_council_members()
        self.client = client or OpenRouterClient(self.settings)
        self.router = router or StrategyRouter(self.client, self.settings.get_json_fallback_models())
        self.on_progress = on_progress

    @property
    def model_ids(self) -> list[str]:
        return [member.model_id for member in self.members]

    def _emit(self, event: ProgressEvent) -> None:
        if self.on_progress is None:
            return
        try:
            self.on_progress(event)
        except Exception:
            logger.exception("Progress callback raised for %s event", event.type)

    def _check_quorum(
        self,
        machine: DeliberationStateMachine,
        actual: int,
        errors: list[StageError],
        stage: int,
    ) -> None:
        required = self.settings.minimum_quorum
        if actual >= required:
            return
        machine.transition(DeliberationState.ABORTED)
        logger.error("Session %s aborted: stage %d quorum %d/%d", machine.session_id, stage, actual, required)
        raise QuorumError(actual_count=actual, required_count=required, errors=errors, stage=stage)

    async def deliberate(self, query: Union[CouncilQuery, str]) -> CouncilDeliberation:
        if isinstance(query, str):
            query = CouncilQuery(query=query)

        session_id = str(uuid4())
        machine = DeliberationStateMachine(session_id)
        start = perf_counter()

        appropriate, reason = is_appropriate_for_council(query.query)
        if not appropriate:
            machine.transition(DeliberationState.ABORTED)
            raise InappropriateQueryError(reason)

        if not query.jurisdiction and self.settings.default_jurisdiction:
            query = query.model_copy(update={"jurisdiction": self.settings.default_jurisdiction})

        audit = AuditCollector(session_id, minimum_quorum=self.settings.minimum_quorum)
        usage = UsageTracker(session_id)
        ctx = StageContext(router=self.router, settings=self.settings, audit=audit, usage=usage, emit=self._emit)
        logger.debug(
            "Session %s label map: %s",
            session_id,
            {member.session_label: member.model_id for member in self.members},
        )
        self._emit(ProgressEvent(stage=0, type="start", message=f"Convening council of {len(self.members)}"))

        machine.transition(DeliberationState.STAGE1)
        self._emit(ProgressEvent(stage=1, type="start", message="Stage 1: independent analysis"))
        stage1 = await run_stage1(query, self.members, ctx)
        self._emit(ProgressEvent(stage=1, type="complete", message=f"{len(stage1.analyses)} analyses received"))

        machine.transition(DeliberationState.QUORUM_CHECK_1)
        self._check_quorum(machine, len(stage1.analyses), stage1.errors, stage=1)

        machine.transition(DeliberationState.STAGE2)
        self._emit(ProgressEvent(stage=2, type="start", message="Stage 2: anonymized peer review"))
        stage2 = await run_stage2(query, stage1, self.members, ctx)
        self._emit(ProgressEvent(stage=2, type="complete", message=f"{len(stage2.peer_reviews)} reviews received"))

        machine.transition(DeliberationState.QUORUM_CHECK_2)
        self._check_quorum(machine, len(stage2.peer_reviews), stage2.errors, stage=2)

        machine.transition(DeliberationState.SELECT_CHAIRMAN)
        override = query.chairman or self.settings.get_chairman_override()
        selection = select_chairman(stage1, stage2.aggregate_rankings, override=override)
        audit.record_chairman_selection(selection)
        logger.info("Session %s chairman: %s (%s)", session_id, selection.model, selection.method)

        machine.transition(DeliberationState.STAGE3)
        self._emit(ProgressEvent(stage=3, type="start", message="Stage 3: chairman synthesis"))
        stage3 = await run_stage3(query, stage1, stage2, selection.model, len(self.members), ctx)
        self._emit(ProgressEvent(stage=3, type="complete", message="Synthesis finished"))

        machine.transition(DeliberationState.ASSEMBLE)
        usage_summary = usage.get_summary()
        council_audit = audit.build_audit(stage1, stage2, stage3, self.model_ids)
        machine.transition(DeliberationState.DONE)

        deliberation = self._assemble(
            query,
            session_id,
            stage1,
            stage2,
            stage3,
            selection,
            usage_summary,
            council_audit,
            duration_ms=int((perf_counter() - start) * 1000),
            state_history=machine.history,
        )
        self._emit(ProgressEvent(stage=0, type="complete", message="Deliberation complete"))
        return deliberation

    def _assemble(
        self,
        query: CouncilQuery,
        session_id: str,
        stage1: Stage1Result,
        stage2: Stage2Result,
        stage3: Stage3Result,
        selection: ChairmanSelection,
        usage_summary: UsageSummary,
        council_audit: CouncilAudit,
        duration_ms: int,
        state_history: list[str],
    ) -> CouncilDeliberation:
        synthesis = stage3.synthesis
        responders = {analysis.model_id for analysis in stage1.analyses}

        estimated_tokens = usage_summary.total_tokens
        estimated_cost = usage_summary.total_cost
        if not estimated_tokens:
            estimated_tokens = _estimate_tokens(stage1, stage2, stage3)
            estimated_cost = estimated_tokens / 1000 * FALLBACK_COST_PER_1K_TOKENS

        return CouncilDeliberation(
            query=query.query,
            query_type=query.query_type,
            session_id=session_id,
            consensus=synthesis.consensus,
            issues_identified=synthesis.issues,
            risk_assessment=synthesis.risk,
            dissent=synthesis.dissent,
            weaknesses_found=synthesis.weaknesses,
            open_questions=synthesis.open_questions,
            action_items=synthesis.action_items,
            source_attribution=synthesis.source_attribution,
            synthesis_failed=not stage3.complete,
            errors=stage1.errors + stage2.errors + stage3.errors,
            metadata=DeliberationMetadata(
                duration_ms=duration_ms,
                participating_models=[member.model_id for member in self.members if member.model_id in responders],
                chairman_model=stage3.chairman_model,
                chairman_selection_method=selection.method,
                estimated_tokens=estimated_tokens,
                estimated_cost_usd=estimated_cost,
                state_history=list(state_history),
            ),
            stage_results=StageResults(stage1=stage1, stage2=stage2, stage3=stage3),
            usage=usage_summary,
            audit=council_audit,
        )


async def deliberate(
    query: Union[CouncilQuery, str],
    on_progress: Optional[ProgressCallback] = None,
) -> CouncilDeliberation:
    council = LegalCouncil(on_progress=on_progress)
    try:
        return await council.deliberate(query)
    finally:
        await council.client.aclose()
