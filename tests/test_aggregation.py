"""ABOUTME: Tests for peer-review ranking aggregation.
ABOUTME: Verifies averages, consistency, sanitising and determinism."""

import pytest

from legal_council.aggregation import (
    calculate_aggregate_rankings,
    calculate_ranking_statistics,
    sanitize_ranking,
)
from legal_council.models import PeerReview

LABELS = ["A", "B", "C"]


def _review(reviewer: str, ranking: list[str]) -> PeerReview:
    return PeerReview(
        reviewer_label=reviewer,
        ranking=ranking,
        ranking_rationale="because",
        reviewer_model_id=f"model-{reviewer}",
    )


@pytest.fixture()
def reviews() -> list[PeerReview]:
    return [
        _review("A", ["A", "B", "C"]),
        _review("B", ["A", "C", "B"]),
        _review("C", ["B", "A", "C"]),
    ]


def test_average_rank_and_consistency(reviews):
    rankings = calculate_aggregate_rankings(reviews, LABELS)

    assert [ranking.label for ranking in rankings] == ["A", "B", "C"]
    by_label = {ranking.label: ranking for ranking in rankings}
    assert by_label["A"].average_rank == pytest.approx(4 / 3)
    assert by_label["A"].ranking_consistency == pytest.approx(1 - (2 / 9) / 4)
    assert by_label["B"].average_rank == pytest.approx(2.0)
    assert by_label["B"].ranking_consistency == pytest.approx(1 - (2 / 3) / 4)
    assert by_label["C"].average_rank == pytest.approx(8 / 3)


def test_aggregation_is_idempotent(reviews):
    first = calculate_aggregate_rankings(reviews, LABELS)
    second = calculate_aggregate_rankings(reviews, LABELS)

    assert first == second


def test_unranked_labels_are_omitted():
    rankings = calculate_aggregate_rankings([_review("A", ["B"])], LABELS)

    assert [ranking.label for ranking in rankings] == ["B"]
    assert rankings[0].average_rank == 1


def test_ties_keep_stage1_order():
    rankings = calculate_aggregate_rankings(
        [_review("A", ["C", "A"]), _review("B", ["A", "C"])],
        LABELS,
    )

    assert [ranking.label for ranking in rankings] == ["A", "C"]


def test_single_analysis_is_fully_consistent():
    rankings = calculate_aggregate_rankings([_review("A", ["A"])], ["A"])

    assert rankings[0].ranking_consistency == 1


def test_no_reviews_produce_no_rankings():
    assert calculate_aggregate_rankings([], LABELS) == []


def test_sanitize_drops_unknown_and_duplicate_labels():
    assert sanitize_ranking(["B", "Z", "B", " A "], LABELS) == ["B", "A"]
    assert sanitize_ranking("A,B", LABELS) == []


def test_ranking_statistics(reviews):
    stats = calculate_ranking_statistics(reviews, LABELS)

    assert stats["B"].highest_rank == 1
    assert stats["B"].lowest_rank == 3
    assert stats["B"].rank_variance == pytest.approx(2 / 3)
