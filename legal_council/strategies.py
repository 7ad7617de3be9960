"""ABOUTME: Structured JSON query strategies for council models.
ABOUTME: Routes each model to native schema output or prompt-and-extract."""

from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass
from typing import Any, Optional

from pydantic import BaseModel

from legal_council.openrouter_client import LLMResponse, OpenRouterClient
from legal_council.schemas import json_schema_format

logger = logging.getLogger(__name__)

_FENCED_JSON = re.compile(r"```(?:json)?\s*(\{.*?\})\s*```", re.DOTALL)


class StructuredOutputError(Exception):
    """Raised when a model reply contains no usable JSON object."""


@dataclass
class StructuredResponse:
    """Parsed JSON payload plus the raw completion it came from."""

    data: dict[str, Any]
    response: LLMResponse


def extract_json_from_text(text: str) -> Optional[dict[str, Any]]:
    """Pull the first JSON object out of free text, fenced or bare."""
    candidates: list[str] = []
    stripped = text.strip()
    if stripped:
        candidates.append(stripped)
    candidates.extend(match.group(1) for match in _FENCED_JSON.finditer(text))
    start, end = text.find("{"), text.rfind("}")
    if start != -1 and end > start:
        candidates.append(text[start : end + 1])

    for candidate in candidates:
        try:
            parsed = json.loads(candidate)
        except json.JSONDecodeError:
            continue
        if isinstance(parsed, dict):
            return parsed
    return None


class NativeSchemaStrategy:
    """Asks the provider to enforce the JSON schema itself."""

    name = "native-schema"

    def __init__(self, client: OpenRouterClient) -> None:
        self.client = client

    async def query_structured(
        self,
        model_id: str,
        messages: list[dict[str, str]],
        shape: type[BaseModel],
        timeout: Optional[float] = None,
    ) -> StructuredResponse:
        response = await self.client.query_model(
            model_id,
            messages,
            response_format=json_schema_format(shape),
            timeout=timeout,
        )
        data = extract_json_from_text(response.content)
        if data is None:
            raise StructuredOutputError(f"{model_id} returned no JSON object")
        return StructuredResponse(data=data, response=response)


class PromptExtractStrategy:
    """For models without schema support: describe the schema, then parse the reply."""

    name = "prompt-extract"

    def __init__(self, client: OpenRouterClient) -> None:
        self.client = client

    def _with_schema_instruction(
        self, messages: list[dict[str, str]], shape: type[BaseModel]
    ) -> list[dict[str, str]]:
        schema = json.dumps(shape.model_json_schema(by_alias=True), indent=2)
        instruction = (
            "\n\nRespond with a single JSON object that matches this JSON schema. "
            "Do not include any text outside the JSON.\n"
            f"{schema}"
        )
        augmented = [dict(message) for message in messages]
        for message in reversed(augmented):
            if message["role"] == "user":
                message["content"] += instruction
                break
        else:
            augmented.append({"role": "user", "content": instruction.strip()})
        return augmented

    async def query_structured(
        self,
        model_id: str,
        messages: list[dict[str, str]],
        shape: type[BaseModel],
        timeout: Optional[float] = None,
    ) -> StructuredResponse:
        response = await self.client.query_model(
            model_id,
            self._with_schema_instruction(messages, shape),
            timeout=timeout,
        )
        data = extract_json_from_text(response.content)
        if data is None:
            raise StructuredOutputError(f"Could not extract JSON from {model_id} response")
        return StructuredResponse(data=data, response=response)


class StrategyRouter:
    """Picks a strategy per model from the JSON fallback capability list."""

    def __init__(self, client: OpenRouterClient, fallback_models: Optional[set[str]] = None) -> None:
        self.native = NativeSchemaStrategy(client)
        self.extract = PromptExtractStrategy(client)
        self.fallback_models = fallback_models or set()

    def strategy_for(self, model_id: str):
        if model_id in self.fallback_models:
            return self.extract
        return self.native

    async def query_structured(
        self,
        model_id: str,
        messages: list[dict[str, str]],
        shape: type[BaseModel],
        timeout: Optional[float] = None,
    ) -> StructuredResponse:
        strategy = self.strategy_for(model_id)
        logger.debug("Querying %s with %s strategy", model_id, strategy.name)
        return await strategy.query_structured(model_id, messages, shape, timeout)
