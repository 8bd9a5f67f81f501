"""Agent interface.

An agent performs one step's work. Synchronous agents return their final
result. Async-submitting agents queue work with the task provider, record a
pending asset or generation job under the provider's task id, and either poll
it to completion or return at once with the token, depending on the
configured wait mode.
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from reelpipe.db.models import Asset, GenerationJob, Pipeline
from reelpipe.errors import AgentExecutionError
from reelpipe.orchestrator import bridge, state, store
from reelpipe.orchestrator.registry import StepId
from reelpipe.services.events import EventBus
from reelpipe.services.providers.base import (
    TASK_COMPLETED,
    TASK_FAILED,
    TaskProvider,
    TextProvider,
)

logger = logging.getLogger(__name__)


@dataclass
class AgentContext:
    """What an agent may touch while executing a step.

    The session is not safe for concurrent use: agents that fan out must do
    their database work before or after the concurrent section.
    """

    session: AsyncSession
    pipeline: Pipeline
    step: StepId
    events: EventBus
    wait_mode: str = "poll"

    async def log(self, log_type: str, message: str, data: Optional[dict] = None) -> None:
        store.append_log(self.session, self.pipeline.id, self.step, log_type, message, data)
        await self.session.commit()

    async def info(self, message: str, data: Optional[dict] = None) -> None:
        await self.log(state.LOG_INFO, message, data)

    async def thinking(self, message: str) -> None:
        await self.log(state.LOG_THINKING, message)

    async def progress(self, value: int, message: Optional[str] = None) -> None:
        """Report step progress (0-100) to the store, audit log and subscribers."""
        value = max(0, min(100, int(value)))
        # Another session may have cancelled the pipeline meanwhile
        await store.reload(self.session, self.pipeline)
        if state.is_terminal(self.pipeline.status):
            logger.debug(f"{self.step}: pipeline {self.pipeline.id} is {self.pipeline.status}; progress not recorded")
            return
        store.set_progress(self.pipeline, self.step, value)
        message = message or f"Progress: {value}%"
        store.append_log(
            self.session, self.pipeline.id, self.step, state.LOG_PROGRESS, message, {"progress": value}
        )
        await self.session.commit()
        self.events.progress(self.pipeline, message, step=self.step, progress=value)

    async def create_asset(
        self, asset_type: str, task_id: str, metadata: Optional[dict] = None
    ) -> Asset:
        asset = Asset(
            pipeline_id=self.pipeline.id,
            step=str(self.step),
            type=asset_type,
            url="",
            status=bridge.RECORD_PENDING,
            kie_task_id=task_id,
            metadata_json=metadata,
        )
        self.session.add(asset)
        await self.session.commit()
        return asset

    async def create_job(
        self, service: str, task_id: str, payload: Optional[dict] = None
    ) -> GenerationJob:
        job = GenerationJob(
            pipeline_id=self.pipeline.id,
            step=str(self.step),
            service=service,
            task_id=task_id,
            status=bridge.RECORD_PENDING,
            payload=payload,
        )
        self.session.add(job)
        await self.session.commit()
        return job


class Agent(ABC):
    """Performs the work of one step."""

    step: StepId
    system_prompt: str = "You are a creative assistant. Respond with a single JSON object."

    def __init__(self, text: TextProvider):
        self.text = text

    @abstractmethod
    async def execute(self, input: dict[str, Any], ctx: AgentContext) -> dict[str, Any]:
        """Run the step and return its result.

        Raises:
            AgentExecutionError: The step could not produce a result.
        """
        ...

    async def ask(self, ctx: AgentContext, prompt: str, *, temperature: Optional[float] = None) -> dict:
        """JSON completion from the text provider, logged as agent thinking."""
        await ctx.thinking(prompt.splitlines()[0][:200])
        return await self.text.complete_json(self.system_prompt, prompt, temperature=temperature)

    def fail(self, message: str) -> AgentExecutionError:
        return AgentExecutionError(str(self.step), message)


class SubmittingAgent(Agent):
    """Agent whose output is produced by a long-running provider task."""

    def __init__(
        self,
        text: TextProvider,
        tasks: TaskProvider,
        *,
        poll_interval: float = 5,
        poll_max_attempts: int = 60,
    ):
        super().__init__(text)
        self.tasks = tasks
        self.poll_interval = poll_interval
        self.poll_max_attempts = poll_max_attempts

    async def poll(self, kind: str, task_id: str) -> dict[str, Any]:
        """Poll the provider until the task settles or the attempt budget runs out.

        Touches no database state, so several polls may run concurrently.
        A timeout is reported as a failed payload rather than raised.
        """
        for attempt in range(self.poll_max_attempts):
            payload = await self.tasks.get_task(kind, task_id)
            if bridge.extract_status(payload) in (TASK_COMPLETED, TASK_FAILED):
                return payload
            if attempt and attempt % 6 == 0:
                logger.info(f"{self.step}: task {task_id} still running (poll {attempt})")
            await asyncio.sleep(self.poll_interval)

        waited = self.poll_interval * self.poll_max_attempts
        return {
            "task_id": task_id,
            "status": TASK_FAILED,
            "error": f"Timed out after {waited:.0f}s waiting for task",
        }

    async def settle(self, ctx: AgentContext, record, payload: dict) -> dict[str, Any]:
        """Apply a final payload to a pending record.

        If a webhook already settled the record, its stored outcome wins.
        Returns the payload describing the record's final state.
        """
        await ctx.session.refresh(record)
        if record.status == bridge.RECORD_PENDING:
            await bridge.apply_completion(ctx.session, record, payload)
            await ctx.session.refresh(record)

        if record.status == TASK_COMPLETED:
            if isinstance(record, Asset):
                stored = dict((record.metadata_json or {}).get("result") or payload)
                stored.setdefault("url", record.url)
                return stored
            return dict(record.result or payload)
        return {
            "task_id": bridge.record_token(record),
            "status": record.status,
            "error": record.error_message or bridge.extract_error(payload),
        }

    async def await_task(self, ctx: AgentContext, record, kind: str, task_id: str) -> dict[str, Any]:
        """Poll and settle one task, raising if it failed."""
        outcome = await self.settle(ctx, record, await self.poll(kind, task_id))
        if outcome.get("status") != TASK_COMPLETED:
            raise self.fail(f"Task {task_id} failed: {outcome.get('error', 'unknown error')}")
        return outcome


def pending_result(task_id: str, **extra) -> dict[str, Any]:
    """Result returned by a submitting agent that does not wait."""
    return {"task_id": task_id, "status": "pending", **extra}
