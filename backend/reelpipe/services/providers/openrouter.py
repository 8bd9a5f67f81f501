"""OpenRouter text provider (OpenAI-compatible chat completions).

Requests JSON output and parses the first choice. Transport failures, rate
limits and 5xx responses are retried with exponential backoff; anything else
surfaces as ProviderError.
"""

import json
import logging
from typing import Any, Optional

import httpx
from tenacity import (
    retry,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
)

from reelpipe.config import OpenRouterConfig
from reelpipe.errors import ProviderError
from reelpipe.services.providers.base import TextProvider

logger = logging.getLogger(__name__)


def is_transient(exc: BaseException) -> bool:
    """True for failures worth retrying at the HTTP level."""
    if isinstance(exc, httpx.TransportError):
        return True
    if isinstance(exc, httpx.HTTPStatusError):
        status = exc.response.status_code
        return status == 429 or status >= 500
    return False


def strip_code_fences(raw: str) -> str:
    """Some models wrap JSON in markdown code fences; strip them."""
    stripped = raw.strip()
    if stripped.startswith("```"):
        first_newline = stripped.find("\n")
        stripped = stripped[first_newline + 1:] if first_newline != -1 else ""
        if stripped.endswith("```"):
            stripped = stripped[:-3].rstrip()
    return stripped


class OpenRouterProvider(TextProvider):
    """Text provider backed by the OpenRouter chat completions API."""

    def __init__(self, config: OpenRouterConfig, max_retries: int = 3):
        self.config = config
        self.max_retries = max_retries
        self._client: Optional[httpx.AsyncClient] = None

    @property
    def client(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            headers = {"Content-Type": "application/json"}
            if self.config.api_key:
                headers["Authorization"] = f"Bearer {self.config.api_key}"
            self._client = httpx.AsyncClient(
                base_url=self.config.base_url,
                headers=headers,
                timeout=httpx.Timeout(self.config.timeout_seconds, connect=30.0),
            )
        return self._client

    async def complete_json(
        self,
        system_prompt: str,
        user_prompt: str,
        *,
        temperature: Optional[float] = None,
    ) -> dict[str, Any]:
        if not self.config.api_key:
            raise ProviderError("OpenRouter API key is not configured")

        payload = {
            "model": self.config.model,
            "messages": [
                {"role": "system", "content": system_prompt},
                {"role": "user", "content": user_prompt},
            ],
            "temperature": self.config.temperature if temperature is None else temperature,
            "response_format": {"type": "json_object"},
        }

        @retry(
            stop=stop_after_attempt(self.max_retries),
            wait=wait_exponential(multiplier=1, min=2, max=30),
            retry=retry_if_exception(is_transient),
            reraise=True,
        )
        async def _call() -> dict:
            response = await self.client.post("/chat/completions", json=payload)
            logger.debug(f"POST /chat/completions model={self.config.model} HTTP {response.status_code}")
            response.raise_for_status()
            return response.json()

        try:
            data = await _call()
        except httpx.HTTPStatusError as e:
            raise ProviderError(
                f"OpenRouter returned HTTP {e.response.status_code}",
                status_code=e.response.status_code,
            ) from e
        except httpx.HTTPError as e:
            raise ProviderError(f"OpenRouter request failed: {e}") from e

        try:
            content = data["choices"][0]["message"]["content"]
        except (KeyError, IndexError, TypeError) as e:
            raise ProviderError("OpenRouter response has no message content") from e

        try:
            parsed = json.loads(strip_code_fences(content or ""))
        except json.JSONDecodeError as e:
            raise ProviderError(f"Model did not return valid JSON: {e}") from e
        if not isinstance(parsed, dict):
            raise ProviderError("Model returned JSON that is not an object")
        return parsed

    async def close(self) -> None:
        """Close the underlying HTTP client."""
        if self._client and not self._client.is_closed:
            await self._client.aclose()
            self._client = None
