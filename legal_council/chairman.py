"""ABOUTME: Chairman selection from Stage 1 responders and peer rankings.
ABOUTME: Honors a valid override, else picks the best-ranked analysis."""

from __future__ import annotations

import logging
from typing import Optional, Sequence

from legal_council.models import AggregateRanking, AlternativeCandidate, ChairmanSelection, Stage1Result

logger = logging.getLogger(__name__)

MAX_ALTERNATIVES = 3


def select_chairman(
    stage1: Stage1Result,
    aggregate_rankings: Sequence[AggregateRanking],
    override: Optional[str] = None,
) -> ChairmanSelection:
    responders = [analysis.model_id for analysis in stage1.analyses]

    if override:
        if override in responders:
            return ChairmanSelection(
                model=override,
                method="user-specified",
                rationale="Chairman specified by configuration",
            )
        logger.warning(
            "Chairman override %s did not produce a Stage 1 analysis; selecting algorithmically",
            override,
        )

    model_by_label = {analysis.label: analysis.model_id for analysis in stage1.analyses}
    ranked = [ranking for ranking in aggregate_rankings if ranking.label in model_by_label]
    if ranked:
        best = min(ranked, key=lambda ranking: ranking.average_rank)
        alternatives = [
            AlternativeCandidate(model=model_by_label[ranking.label], average_rank=ranking.average_rank)
            for ranking in sorted(ranked, key=lambda ranking: ranking.average_rank)[:MAX_ALTERNATIVES]
        ]
        return ChairmanSelection(
            model=model_by_label[best.label],
            method="algorithmic",
            rationale=f"Highest peer-ranked analysis (avg rank {best.average_rank:.2f})",
            alternatives_considered=alternatives,
        )

    if responders:
        return ChairmanSelection(
            model=responders[0],
            method="fallback",
            rationale="No peer rankings available; using first Stage 1 responder",
        )
    return ChairmanSelection(
        model="unknown",
        method="fallback",
        rationale="No Stage 1 analyses available",
    )
