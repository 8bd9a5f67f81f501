"""kie.ai task provider for Suno music and Nano Banana image generation.

Every kie.ai response is wrapped as {"code": ..., "msg": ..., "data": ...};
a non-200 code is an error even on HTTP 200. Task state is translated into
the canonical completion payload shared with the webhook bridge.
"""

import json
import logging
from typing import Any, Optional

import httpx
from tenacity import retry, retry_if_exception, stop_after_attempt, wait_exponential

from reelpipe.config import KieConfig
from reelpipe.errors import ProviderError
from reelpipe.services.providers.base import (
    IMAGE,
    MUSIC,
    TASK_COMPLETED,
    TaskProvider,
    normalize_task_status,
)
from reelpipe.services.providers.openrouter import is_transient

logger = logging.getLogger(__name__)

_HTTP_ERRORS = {
    401: "Invalid API key",
    402: "Insufficient credits",
    422: "Invalid request data",
    429: "Rate limit exceeded",
    500: "kie.ai server error",
}

_STATUS_ENDPOINTS = {
    MUSIC: "/api/v1/generate/record-info",
    IMAGE: "/api/v1/jobs/getTask",
}


def _music_versions(data: dict) -> list[dict]:
    response = data.get("response") or {}
    clips = response.get("sunoData") or response.get("data") or []
    return [
        {
            "clip_id": clip.get("id"),
            "audio_url": clip.get("audioUrl") or clip.get("audio_url"),
            "duration": clip.get("duration"),
            "title": clip.get("title"),
        }
        for clip in clips
        if isinstance(clip, dict)
    ]


def _image_urls(data: dict) -> list[str]:
    raw = data.get("resultJson")
    if isinstance(raw, str) and raw:
        try:
            raw = json.loads(raw)
        except json.JSONDecodeError:
            logger.warning(f"Unparseable resultJson for task {data.get('taskId')}")
            raw = None
    if isinstance(raw, dict):
        return [u for u in raw.get("resultUrls") or [] if u]
    return []


def to_completion_payload(kind: str, task_id: str, data: dict) -> dict[str, Any]:
    """Translate kie.ai task data into the canonical completion payload."""
    raw_status = data.get("status") or data.get("state")
    status = normalize_task_status(raw_status)
    payload: dict[str, Any] = {"task_id": task_id, "status": status, "raw_status": raw_status}

    if kind == MUSIC:
        versions = _music_versions(data)
        payload["versions"] = versions
        payload["urls"] = [v["audio_url"] for v in versions if v["audio_url"]]
    else:
        payload["urls"] = _image_urls(data)

    if payload["urls"]:
        payload["url"] = payload["urls"][0]
    elif status == TASK_COMPLETED:
        # Finished but nothing to show for it
        payload["status"] = "failed"
        payload["error"] = "Task completed without output"

    error = data.get("errorMessage") or data.get("failMsg")
    if error:
        payload["error"] = error
    return payload


class KieProvider(TaskProvider):
    """Async client for the kie.ai task API."""

    def __init__(self, config: KieConfig, max_retries: int = 3):
        self.config = config
        self.max_retries = max_retries
        self._client: Optional[httpx.AsyncClient] = None

    @property
    def client(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            if not self.config.api_key:
                raise ProviderError("kie.ai API key is not configured")
            self._client = httpx.AsyncClient(
                base_url=self.config.base_url,
                headers={
                    "Authorization": f"Bearer {self.config.api_key}",
                    "Content-Type": "application/json",
                },
                timeout=httpx.Timeout(self.config.timeout_seconds, connect=30.0),
            )
        return self._client

    async def _request(self, method: str, path: str, **kwargs) -> dict:
        @retry(
            stop=stop_after_attempt(self.max_retries),
            wait=wait_exponential(multiplier=1, min=2, max=30),
            retry=retry_if_exception(is_transient),
            reraise=True,
        )
        async def _call() -> httpx.Response:
            response = await self.client.request(method, path, **kwargs)
            logger.debug(f"{method} {path} HTTP {response.status_code}")
            response.raise_for_status()
            return response

        try:
            response = await _call()
        except httpx.HTTPStatusError as e:
            status = e.response.status_code
            raise ProviderError(
                _HTTP_ERRORS.get(status, f"kie.ai returned HTTP {status}"), status_code=status
            ) from e
        except httpx.HTTPError as e:
            raise ProviderError(f"kie.ai request failed: {e}") from e

        body = response.json()
        code = body.get("code")
        if code is not None and code != 200:
            raise ProviderError(body.get("msg") or "kie.ai API error", status_code=code)
        return body.get("data") or {}

    def _with_callback(self, payload: dict) -> dict:
        if self.config.callback_url:
            payload["callBackUrl"] = self.config.callback_url
        return payload

    @staticmethod
    def _task_id(data: dict) -> str:
        task_id = data.get("taskId") or data.get("task_id")
        if not task_id:
            raise ProviderError("kie.ai did not return a task id")
        return str(task_id)

    async def submit_music(
        self,
        prompt: str,
        *,
        title: Optional[str] = None,
        style: Optional[str] = None,
        lyrics: Optional[str] = None,
        instrumental: bool = False,
    ) -> str:
        custom_mode = bool(style and title)
        payload: dict[str, Any] = {
            # In custom mode the prompt field carries the lyrics
            "prompt": (lyrics or prompt) if custom_mode else prompt,
            "model": self.config.music_model,
            "customMode": custom_mode,
            "instrumental": instrumental,
        }
        if style:
            payload["style"] = style
        if title:
            payload["title"] = title

        data = await self._request("POST", "/api/v1/generate", json=self._with_callback(payload))
        task_id = self._task_id(data)
        logger.info(f"Submitted music task {task_id} (title={title!r})")
        return task_id

    async def submit_image(
        self,
        prompt: str,
        *,
        aspect_ratio: str = "16:9",
        image_inputs: Optional[list[str]] = None,
    ) -> str:
        payload: dict[str, Any] = {
            "model": self.config.image_model,
            "input": {
                "prompt": prompt,
                "aspect_ratio": aspect_ratio,
                "output_format": "png",
            },
        }
        if image_inputs:
            payload["input"]["image_input"] = image_inputs[:8]

        data = await self._request("POST", "/api/v1/jobs/createTask", json=self._with_callback(payload))
        task_id = self._task_id(data)
        logger.info(f"Submitted image task {task_id}")
        return task_id

    async def get_task(self, kind: str, task_id: str) -> dict[str, Any]:
        endpoint = _STATUS_ENDPOINTS.get(kind)
        if endpoint is None:
            raise ProviderError(f"Unknown task kind '{kind}'")
        data = await self._request("GET", endpoint, params={"taskId": task_id})
        return to_completion_payload(kind, task_id, data)

    async def close(self) -> None:
        """Close the underlying HTTP client."""
        if self._client and not self._client.is_closed:
            await self._client.aclose()
            self._client = None
