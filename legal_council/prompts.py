"""ABOUTME: Prompt builders for the three deliberation stages.
ABOUTME: Stage 2 prompts are built from identity-free analysis views only."""

from __future__ import annotations

import json
from typing import Any, Optional

from legal_council.models import AggregateRanking, CouncilQuery, IndividualAnalysis, PeerReview, PublicAnalysis

WORK_PRODUCT_LIMIT = 4000
TRUNCATION_NOTICE = "\n[... truncated for token budget ...]"

STAGE1_SYSTEM_PROMPT = (
    "You are a member of a legal deliberation council. Analyze the issue independently. "
    "Do not fabricate citations; if you are unsure an authority exists, say so. "
    "You must respond with valid JSON matching the required schema."
)
STAGE2_SYSTEM_PROMPT = (
    "You are reviewing anonymized legal analyses. Judge only on merit. "
    "Do NOT try to guess authorship. Do not validate fabricated citations. "
    "You must respond with valid JSON."
)
STAGE3_SYSTEM_PROMPT = (
    "You are the Chairman of a Legal Deliberation Council. Your role is to SYNTHESIZE, not override. "
    "Preserve genuine disagreement: a split council is more useful than false consensus. "
    "Do not endorse fabricated citations; note whether cited authorities are consistent across analyses. "
    "You must respond with valid JSON."
)

QUERY_TYPE_DIRECTIVES: dict[str, str] = {
    "issue-spotting": (
        "TASK FOCUS: Issue Spotting\n"
        "Prioritize threshold blockers (jurisdiction, standing, timeliness, preclusion).\n"
        "Flag procedural defects before substantive analysis.\n"
        "For each issue state what is missing and what would cure it."
    ),
    "risk-assessment": (
        "TASK FOCUS: Risk Assessment\n"
        "Calibrate likelihood and impact for each identified risk.\n"
        "Distinguish catastrophic-but-unlikely from probable-but-manageable.\n"
        "Give probability ranges where possible."
    ),
    "weakness-identification": (
        "TASK FOCUS: Weakness Identification\n"
        "Identify specific vulnerabilities in the position or argument.\n"
        "For each weakness describe where it appears and how it could be exploited.\n"
        "Prioritize by severity and ease of exploitation."
    ),
    "strategy-evaluation": (
        "TASK FOCUS: Strategy Evaluation\n"
        "Assess the proposed strategy against alternatives.\n"
        "Identify the assumptions underlying the strategy.\n"
        "Consider resources, timing and likely opponent responses."
    ),
    "stress-test": (
        "TASK FOCUS: Stress Testing\n"
        "Assume opposing counsel is highly competent and well-resourced.\n"
        "Identify the single strongest attack on this position.\n"
        "Assess how easily each weakness could be weaponized."
    ),
    "devils-advocate": (
        "TASK FOCUS: Devil's Advocate\n"
        "Argue against the position as forcefully as possible.\n"
        "Identify assumptions that, if false, would collapse the argument.\n"
        "Find the facts that, if different, would flip the outcome."
    ),
    "settlement-evaluation": (
        "TASK FOCUS: Settlement Evaluation\n"
        "Weigh litigation risk against settlement value.\n"
        "Identify key uncertainties that affect valuation.\n"
        "Consider transaction costs, timing and non-monetary factors."
    ),
    "brainstorm": (
        "TASK FOCUS: Brainstorming\n"
        "Generate multiple approaches, including unconventional ones.\n"
        "Do not self-censor early.\n"
        "Tag each idea with its risk level and required resources."
    ),
}


def get_query_type_directive(query_type: Optional[str]) -> str:
    # general-deliberation has no directive
    return QUERY_TYPE_DIRECTIVES.get(query_type or "", "")


def truncate_work_product(work_product: str, limit: int = WORK_PRODUCT_LIMIT) -> str:
    if len(work_product) <= limit:
        return work_product
    return work_product[:limit] + TRUNCATION_NOTICE


def _messages(system_prompt: str, user_prompt: str) -> list[dict[str, str]]:
    return [
        {"role": "system", "content": system_prompt},
        {"role": "user", "content": user_prompt},
    ]


def build_stage1_messages(query: CouncilQuery) -> list[dict[str, str]]:
    """Shared Stage 1 prompt; every member receives the same messages."""
    sections = ["Analyze the following legal issue. Respond ONLY with a JSON object."]
    directive = get_query_type_directive(query.query_type)
    if directive:
        sections.append(directive)
    sections.append(f"ISSUE: {query.query}")
    if query.jurisdiction:
        sections.append(f"JURISDICTION: {query.jurisdiction}")
    if query.practice_area:
        sections.append(f"PRACTICE AREA: {query.practice_area}")
    if query.context:
        sections.append(f"CONTEXT:\n{json.dumps(query.context, indent=2, default=str)}")
    if query.work_product:
        sections.append(
            f"WORK PRODUCT TO REVIEW:\n---\n{truncate_work_product(query.work_product)}\n---"
        )
    sections.append(
        "Provide your analysis with: assessment, strengths, weaknesses, risks "
        "(each with risk, likelihood and impact), confidence, confidenceRationale, "
        "thresholdIssues and adversarialArgument.\n"
        "Be direct. Disagreement with other analysts is expected and valuable."
    )
    return _messages(STAGE1_SYSTEM_PROMPT, "\n\n".join(sections))


def _review_payload(analysis: PublicAnalysis) -> dict[str, Any]:
    try:
        body: Any = json.loads(analysis.content)
    except json.JSONDecodeError:
        body = analysis.content
    return {"label": analysis.label, "confidence": analysis.confidence, "analysis": body}


def build_stage2_messages(query: CouncilQuery, analyses: list[PublicAnalysis]) -> list[dict[str, str]]:
    """Peer review prompt. Accepts public views only, never internal analyses."""
    for analysis in analyses:
        if type(analysis) is not PublicAnalysis:
            raise TypeError("Stage 2 prompts accept PublicAnalysis views only")

    payload = [_review_payload(analysis) for analysis in analyses]
    user_prompt = (
        "Review these anonymized legal analyses. Do NOT try to guess which model produced each.\n\n"
        f"ORIGINAL ISSUE: {query.query}\n\n"
        f"ANALYSES:\n{json.dumps(payload, indent=2)}\n\n"
        "Respond with JSON containing:\n"
        "- evaluations: object keyed by analysis label, each with legalAccuracy, "
        "issueIdentification, riskCalibration and practicalUtility scored 1-5, plus an optional comment\n"
        '- ranking: analysis labels ordered best to worst (e.g. ["B", "A", "C"])\n'
        "- rankingRationale: brief explanation for your ranking"
    )
    return _messages(STAGE2_SYSTEM_PROMPT, user_prompt)


def build_stage3_messages(
    query: CouncilQuery,
    analyses: list[IndividualAnalysis],
    aggregate_rankings: list[AggregateRanking],
    peer_reviews: list[PeerReview],
    total_members: int,
) -> list[dict[str, str]]:
    analyses_payload = [
        {
            "label": analysis.label,
            "modelId": analysis.model_id,
            "confidence": analysis.confidence,
            "analysis": analysis.structured if analysis.structured is not None else analysis.content,
        }
        for analysis in analyses
    ]
    ranking_summary = [
        {
            "rank": position,
            "label": ranking.label,
            "averageRank": ranking.average_rank,
            "consistency": ranking.ranking_consistency,
        }
        for position, ranking in enumerate(aggregate_rankings, start=1)
    ]
    rationales = [
        {"reviewer": review.reviewer_label, "rationale": review.ranking_rationale}
        for review in peer_reviews
    ]

    sections = ["Synthesize the council deliberation on this issue.", f"ORIGINAL ISSUE: {query.query}"]
    if query.jurisdiction:
        sections.append(f"JURISDICTION: {query.jurisdiction}")
    sections.extend(
        [
            f"STAGE 1 ANALYSES:\n{json.dumps(analyses_payload, indent=2, default=str)}",
            f"STAGE 2 PEER RANKINGS:\n{json.dumps(ranking_summary, indent=2)}",
            f"REVIEWER RATIONALES:\n{json.dumps(rationales, indent=2)}",
            f"Total council members: {total_members}",
            "Do NOT manufacture false consensus. If analysts disagreed, preserve each position in "
            '"dissent". Use sourceAttribution to record which analysis labels contributed to each '
            "major conclusion. Every array may be empty if nothing applies.",
        ]
    )
    return _messages(STAGE3_SYSTEM_PROMPT, "\n\n".join(sections))
