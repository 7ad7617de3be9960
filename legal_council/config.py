"""ABOUTME: Configuration helpers for the Legal Council service.
ABOUTME: Loads council seats, limits and the query appropriateness gate."""

from __future__ import annotations

import re
from typing import Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from legal_council.models import CouncilMember, assign_labels

MINIMUM_COUNCIL_SIZE = 2
MAXIMUM_COUNCIL_SIZE = 10


class ConfigurationError(Exception):
    """Raised when the council cannot be assembled from configuration."""


class InappropriateQueryError(Exception):
    """Raised when a query asks the council to draft instead of deliberate."""


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    openrouter_api_key: Optional[str] = None
    openrouter_url: str = "https://openrouter.ai/api/v1/chat/completions"

    council_models: str = Field(default="", description="Comma-separated council seat models")
    chairman_model: Optional[str] = Field(default=None, description="Chairman override model")
    council_json_fallback_models: str = ""

    council_concurrency_limit: int = Field(default=3, ge=1)
    minimum_quorum: int = Field(default=2, ge=1)

    request_timeout_seconds: float = 120
    chairman_timeout_seconds: float = 180
    retry_attempts: int = Field(default=3, ge=0)
    retry_backoff_seconds: float = 1.0

    default_jurisdiction: str = "NY"
    log_level: str = "INFO"

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    def get_council_models(self) -> list[str]:
        models = _split_csv(self.council_models)
        if len(models) < MINIMUM_COUNCIL_SIZE:
            raise ConfigurationError(
                f"Council requires at least {MINIMUM_COUNCIL_SIZE} models. Found {len(models)}. "
                "Set COUNCIL_MODELS to a comma-separated list of model identifiers."
            )
        if len(models) > MAXIMUM_COUNCIL_SIZE:
            raise ConfigurationError(
                f"Council supports at most {MAXIMUM_COUNCIL_SIZE} models. Found {len(models)}."
            )
        if len(set(models)) != len(models):
            raise ConfigurationError("Council models must be unique")
        return models

    def get_council_members(self) -> list[CouncilMember]:
        return assign_labels(self.get_council_models())

    def get_json_fallback_models(self) -> set[str]:
        return set(_split_csv(self.council_json_fallback_models))

    def get_chairman_override(self) -> Optional[str]:
        if self.chairman_model and self.chairman_model.strip():
            return self.chairman_model.strip()
        return None


def _split_csv(raw: str) -> list[str]:
    return [item.strip() for item in raw.split(",") if item.strip()]


def validate_settings(config: Settings) -> dict[str, list[str]]:
    """Pre-flight check that reports problems instead of raising."""
    errors: list[str] = []
    warnings: list[str] = []

    if not config.openrouter_api_key:
        errors.append("OPENROUTER_API_KEY is required")

    models = _split_csv(config.council_models)
    if not models:
        errors.append("No council models defined. Set COUNCIL_MODELS.")
    elif len(models) == 1:
        errors.append("Only 1 council model defined. At least 2 required for deliberation.")
    elif len(models) == 2:
        warnings.append("Only 2 council models defined. Consider adding more for diverse perspectives.")

    if models and config.minimum_quorum > len(models):
        errors.append(
            f"MINIMUM_QUORUM ({config.minimum_quorum}) exceeds the number of council models ({len(models)})"
        )

    return {"errors": errors, "warnings": warnings}


_CRITIQUE_SIGNALS = re.compile(
    r"\b(review|critique|analy[sz]e|issue[- ]?spot|weakness|stress[- ]?test|risk[- ]?assess"
    r"|devil'?s[- ]?advocate|evaluate|assess|check|identify|find|spot|flag)\b"
)
_DRAFTING_INTENT = re.compile(
    r"\b(draft|write|prepare|compose|generate|create)\s+(a|an|the|my|our)?\s*"
    r"\b(motion|brief|complaint|answer|letter|memo|memorandum|contract|response|pleading|filing|document)\b"
)


def is_appropriate_for_council(query: str) -> tuple[bool, Optional[str]]:
    """Return (appropriate, reason). Critique requests pass even if they mention drafts."""
    lowered = query.lower()
    if _CRITIQUE_SIGNALS.search(lowered):
        return True, None
    if _DRAFTING_INTENT.search(lowered):
        return False, (
            "This appears to be a drafting request. The council is for critique and deliberation, "
            "not generating filings. If you meant to review an existing draft, use words like "
            '"review," "critique," "analyze," or "issue-spot."'
        )
    return True, None


settings = Settings()
