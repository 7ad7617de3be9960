"""ABOUTME: Pure aggregation of peer-review rankings.
ABOUTME: Computes average rank, consistency and per-label statistics."""

from __future__ import annotations

from typing import Any, Sequence

from legal_council.models import AggregateRanking, PeerReview, RankingStatistics


def sanitize_ranking(raw: Any, labels: Sequence[str]) -> list[str]:
    """Keep known labels in order, dropping unknown entries and duplicates."""
    if not isinstance(raw, list):
        return []
    known = set(labels)
    ranking: list[str] = []
    for item in raw:
        label = str(item).strip()
        if label in known and label not in ranking:
            ranking.append(label)
    return ranking


def _positions_for(label: str, reviews: Sequence[PeerReview]) -> list[int]:
    return [review.ranking.index(label) + 1 for review in reviews if label in review.ranking]


def _population_variance(values: list[int], mean: float) -> float:
    return sum((value - mean) ** 2 for value in values) / len(values)


def calculate_aggregate_rankings(
    reviews: Sequence[PeerReview],
    labels: Sequence[str],
) -> list[AggregateRanking]:
    """Average 1-indexed position per label, best first.

    ``labels`` is the Stage 1 label order; ties keep that order and labels no
    reviewer ranked are omitted.
    """
    max_variance = (len(labels) - 1) ** 2
    rankings: list[AggregateRanking] = []

    for label in labels:
        positions = _positions_for(label, reviews)
        if not positions:
            continue
        average = sum(positions) / len(positions)
        variance = _population_variance(positions, average)
        consistency = 1 - variance / max_variance if max_variance > 0 else 1.0
        rankings.append(
            AggregateRanking(
                label=label,
                average_rank=average,
                ranking_consistency=max(0.0, consistency),
            )
        )

    # sorted() is stable, so equal averages stay in label order
    return sorted(rankings, key=lambda ranking: ranking.average_rank)


def calculate_ranking_statistics(
    reviews: Sequence[PeerReview],
    labels: Sequence[str],
) -> dict[str, RankingStatistics]:
    stats: dict[str, RankingStatistics] = {}
    for label in labels:
        positions = _positions_for(label, reviews)
        if not positions:
            continue
        average = sum(positions) / len(positions)
        stats[label] = RankingStatistics(
            average_rank=average,
            rank_variance=_population_variance(positions, average),
            highest_rank=min(positions),
            lowest_rank=max(positions),
        )
    return stats
