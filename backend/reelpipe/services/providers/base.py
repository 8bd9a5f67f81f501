"""Abstract interfaces for external generation services.

Agents depend on these interfaces only, so tests can inject in-memory fakes
and deployments can swap providers without touching the engine.
"""

from abc import ABC, abstractmethod
from typing import Any, Optional

# Provider task kinds
MUSIC = "music"
IMAGE = "image"

# Canonical task statuses, shared with the completion bridge
TASK_COMPLETED = "completed"
TASK_FAILED = "failed"
TASK_RUNNING = "running"

_COMPLETED_ALIASES = {"completed", "success", "done", "succeeded"}
_FAILED_ALIASES = {"failed", "error", "fail"}


def normalize_task_status(raw: Optional[str]) -> str:
    """Map a provider's status vocabulary onto completed / failed / running.

    Anything not recognised as terminal (processing, pending, waiting,
    queued, missing) is treated as still running.
    """
    value = (raw or "").strip().lower()
    if value in _COMPLETED_ALIASES:
        return TASK_COMPLETED
    if value in _FAILED_ALIASES or value.endswith("_failed") or value.endswith("_error"):
        return TASK_FAILED
    return TASK_RUNNING


class TextProvider(ABC):
    """Chat-completion style text generation returning structured JSON."""

    @abstractmethod
    async def complete_json(
        self,
        system_prompt: str,
        user_prompt: str,
        *,
        temperature: Optional[float] = None,
    ) -> dict[str, Any]:
        """Generate a JSON object from a prompt.

        Raises:
            ProviderError: The service failed or did not return a JSON object.
        """
        ...

    async def close(self) -> None:
        return None


class TaskProvider(ABC):
    """Long-running generation tasks identified by a provider task id."""

    @abstractmethod
    async def submit_music(
        self,
        prompt: str,
        *,
        title: Optional[str] = None,
        style: Optional[str] = None,
        lyrics: Optional[str] = None,
        instrumental: bool = False,
    ) -> str:
        """Queue a song generation. Returns the provider task id."""
        ...

    @abstractmethod
    async def submit_image(
        self,
        prompt: str,
        *,
        aspect_ratio: str = "16:9",
        image_inputs: Optional[list[str]] = None,
    ) -> str:
        """Queue an image generation. Returns the provider task id."""
        ...

    @abstractmethod
    async def get_task(self, kind: str, task_id: str) -> dict[str, Any]:
        """Current state of a task as a canonical completion payload.

        The payload has the same shape the webhook delivers: task_id, status
        (completed / failed / running), url, urls and error where known.
        """
        ...

    async def close(self) -> None:
        return None
