"""ABOUTME: Async client for querying council models through OpenRouter.
ABOUTME: Handles retries with exponential backoff and usage reporting."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Optional

import httpx

from legal_council.config import ConfigurationError, Settings, settings as default_settings
from legal_council.usage import TokenUsage

logger = logging.getLogger(__name__)

RETRYABLE_STATUS_CODES = {429, 500, 502, 503, 504}
DEFAULT_TEMPERATURE = 0.3
DEFAULT_MAX_TOKENS = 4096


@dataclass
class LLMResponse:
    """Normalized completion returned by a council model."""

    content: str
    model: str
    usage: Optional[TokenUsage] = None
    attempts: int = 1


class ProviderError(Exception):
    """Raised when the provider keeps failing or returns a non-retryable status."""

    def __init__(self, message: str, status_code: Optional[int] = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class OpenRouterClient:
    """Async helper around the OpenRouter chat completions endpoint."""

    def __init__(self, config: Optional[Settings] = None) -> None:
        self.settings = config or default_settings
        self.url = self.settings.openrouter_url
        self.timeout = self.settings.request_timeout_seconds
        self.retry_attempts = self.settings.retry_attempts
        self.backoff_seconds = self.settings.retry_backoff_seconds
        self._client: Optional[httpx.AsyncClient] = None

    def _get_headers(self) -> dict[str, str]:
        if not self.settings.openrouter_api_key:
            raise ConfigurationError("OPENROUTER_API_KEY is not set")
        return {
            "Authorization": f"Bearer {self.settings.openrouter_api_key}",
            "Content-Type": "application/json",
            "HTTP-Referer": "https://github.com/legal-council",
            "X-Title": "Legal Council",
        }

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self.timeout)
        return self._client

    async def aclose(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    def _build_payload(
        self,
        model_id: str,
        messages: list[dict[str, str]],
        response_format: Optional[dict[str, Any]] = None,
    ) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "model": model_id,
            "messages": messages,
            "temperature": DEFAULT_TEMPERATURE,
            "max_tokens": DEFAULT_MAX_TOKENS,
        }
        if response_format is not None:
            payload["response_format"] = response_format
        return payload

    def _parse_response(self, model_id: str, body: dict[str, Any], attempts: int) -> LLMResponse:
        choices = body.get("choices") or []
        if not choices:
            raise ProviderError(f"No choices returned for {model_id}")
        content = (choices[0].get("message") or {}).get("content") or ""
        return LLMResponse(
            content=content,
            model=body.get("model") or model_id,
            usage=TokenUsage.from_response(body.get("usage")),
            attempts=attempts,
        )

    async def query_model(
        self,
        model_id: str,
        messages: list[dict[str, str]],
        *,
        response_format: Optional[dict[str, Any]] = None,
        timeout: Optional[float] = None,
    ) -> LLMResponse:
        payload = self._build_payload(model_id, messages, response_format)
        headers = self._get_headers()
        request_timeout = timeout if timeout is not None else self.timeout

        last_error = ProviderError(f"{model_id} request was not attempted")
        for attempt in range(self.retry_attempts + 1):
            try:
                client = await self._get_client()
                response = await client.post(
                    self.url, headers=headers, json=payload, timeout=request_timeout
                )
            except (httpx.TimeoutException, httpx.TransportError) as exc:
                last_error = ProviderError(f"{model_id} request failed: {exc}")
            else:
                if response.status_code < 400:
                    return self._parse_response(model_id, response.json(), attempt + 1)
                last_error = ProviderError(
                    f"{model_id} returned HTTP {response.status_code}: {response.text[:200]}",
                    status_code=response.status_code,
                )
                if response.status_code not in RETRYABLE_STATUS_CODES:
                    raise last_error

            if attempt < self.retry_attempts:
                delay = self.backoff_seconds * (2**attempt)
                logger.warning(
                    "Attempt %d for %s failed (%s); retrying in %.1fs",
                    attempt + 1,
                    model_id,
                    last_error,
                    delay,
                )
                await asyncio.sleep(delay)

        raise last_error
