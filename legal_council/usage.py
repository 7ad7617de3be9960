"""ABOUTME: Token usage and cost tracking for a single deliberation.
ABOUTME: Aggregates per-model and per-stage totals against reference pricing."""

from __future__ import annotations

from dataclasses import dataclass, field
from time import perf_counter
from typing import Literal, Optional

from pydantic import Field

from legal_council.schemas import WireModel

PricingSource = Literal["known", "estimated"]

# USD per 1K tokens. Reference values only; unknown models use DEFAULT_PRICING.
KNOWN_PRICING: dict[str, tuple[float, float]] = {
    "anthropic/claude-3-opus": (0.015, 0.075),
    "anthropic/claude-3.5-sonnet": (0.003, 0.015),
    "anthropic/claude-3-sonnet": (0.003, 0.015),
    "anthropic/claude-3-haiku": (0.00025, 0.00125),
    "anthropic/claude-sonnet-4": (0.003, 0.015),
    "openai/gpt-4o": (0.005, 0.015),
    "openai/gpt-4o-mini": (0.00015, 0.0006),
    "openai/gpt-4-turbo": (0.01, 0.03),
    "openai/o1-preview": (0.015, 0.06),
    "openai/o1-mini": (0.003, 0.012),
    "google/gemini-pro": (0.00025, 0.0005),
    "google/gemini-pro-1.5": (0.00125, 0.005),
    "google/gemini-2.0-flash": (0.001, 0.004),
    "x-ai/grok-2": (0.005, 0.01),
    "x-ai/grok-3": (0.005, 0.015),
    "meta-llama/llama-3.1-405b": (0.003, 0.003),
    "meta-llama/llama-3.1-70b": (0.0008, 0.0008),
    "mistralai/mistral-large": (0.004, 0.012),
    "mistralai/mixtral-8x7b": (0.0006, 0.0006),
}
DEFAULT_PRICING = (0.01, 0.03)

# Used when a provider omits usage data.
ESTIMATED_PROMPT_TOKENS = 500
ESTIMATED_COMPLETION_TOKENS = 1000


class TokenUsage(WireModel):
    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: int = 0

    @classmethod
    def from_response(cls, usage: Optional[dict]) -> Optional["TokenUsage"]:
        if not usage:
            return None
        prompt = int(usage.get("prompt_tokens") or 0)
        completion = int(usage.get("completion_tokens") or 0)
        total = int(usage.get("total_tokens") or prompt + completion)
        return cls(prompt_tokens=prompt, completion_tokens=completion, total_tokens=total)

    def add(self, other: "TokenUsage") -> None:
        self.prompt_tokens += other.prompt_tokens
        self.completion_tokens += other.completion_tokens
        self.total_tokens += other.total_tokens


class ModelUsageSummary(WireModel):
    model: str
    full_model_id: str
    calls: int
    tokens: int
    cost: float
    pricing_source: PricingSource


class StageTokens(WireModel):
    stage1: int = 0
    stage2: int = 0
    stage3: int = 0


class UsageSummary(WireModel):
    total_tokens: int = 0
    total_cost: float = 0.0
    has_estimated_costs: bool = False
    duration_ms: int = 0
    by_model: list[ModelUsageSummary] = Field(default_factory=list)
    by_stage: StageTokens = Field(default_factory=StageTokens)


def get_model_pricing(model_id: str) -> tuple[tuple[float, float], PricingSource]:
    if model_id in KNOWN_PRICING:
        return KNOWN_PRICING[model_id], "known"
    # Versioned ids such as "openai/gpt-4o-2024-08-06" match by prefix.
    for key, pricing in KNOWN_PRICING.items():
        if model_id.startswith(key):
            return pricing, "known"
    return DEFAULT_PRICING, "estimated"


def calculate_cost(model_id: str, usage: TokenUsage) -> tuple[float, PricingSource]:
    (input_price, output_price), source = get_model_pricing(model_id)
    cost = (usage.prompt_tokens / 1000) * input_price + (usage.completion_tokens / 1000) * output_price
    return cost, source


@dataclass
class _ModelUsage:
    calls: int = 0
    usage: TokenUsage = field(default_factory=TokenUsage)
    cost: float = 0.0
    pricing_source: PricingSource = "known"


class UsageTracker:
    """Per-session accumulator. Mutated from stage tasks on the event loop."""

    def __init__(self, session_id: str) -> None:
        self.session_id = session_id
        self._start = perf_counter()
        self._by_model: dict[str, _ModelUsage] = {}
        self._by_stage: dict[int, TokenUsage] = {1: TokenUsage(), 2: TokenUsage(), 3: TokenUsage()}
        self._totals = TokenUsage()
        self._total_cost = 0.0
        self._has_estimated_costs = False

    def record_usage(self, model_id: str, stage: int, usage: Optional[TokenUsage]) -> None:
        if usage is None:
            usage = TokenUsage(
                prompt_tokens=ESTIMATED_PROMPT_TOKENS,
                completion_tokens=ESTIMATED_COMPLETION_TOKENS,
                total_tokens=ESTIMATED_PROMPT_TOKENS + ESTIMATED_COMPLETION_TOKENS,
            )

        cost, source = calculate_cost(model_id, usage)
        if source == "estimated":
            self._has_estimated_costs = True

        entry = self._by_model.setdefault(model_id, _ModelUsage(pricing_source=source))
        entry.calls += 1
        entry.usage.add(usage)
        entry.cost += cost

        self._by_stage[stage].add(usage)
        self._totals.add(usage)
        self._total_cost += cost

    def get_summary(self) -> UsageSummary:
        by_model = [
            ModelUsageSummary(
                model=model_id.split("/", 1)[-1],
                full_model_id=model_id,
                calls=entry.calls,
                tokens=entry.usage.total_tokens,
                cost=entry.cost,
                pricing_source=entry.pricing_source,
            )
            for model_id, entry in self._by_model.items()
        ]
        by_model.sort(key=lambda item: item.cost, reverse=True)

        return UsageSummary(
            total_tokens=self._totals.total_tokens,
            total_cost=self._total_cost,
            has_estimated_costs=self._has_estimated_costs,
            duration_ms=int((perf_counter() - self._start) * 1000),
            by_model=by_model,
            by_stage=StageTokens(
                stage1=self._by_stage[1].total_tokens,
                stage2=self._by_stage[2].total_tokens,
                stage3=self._by_stage[3].total_tokens,
            ),
        )


def format_usage_compact(summary: UsageSummary) -> str:
    estimate = "~" if summary.has_estimated_costs else ""
    return (
        f"{summary.total_tokens:,} tokens | {estimate}${summary.total_cost:.4f} | "
        f"{summary.duration_ms / 1000:.1f}s"
    )
