"""Step executor: runs exactly one step of a pipeline.

The executor is the only writer of step state. It never loops; the runner
(auto mode) or the work queue (manual mode) decides what runs next.
"""

import logging
import time
import traceback
from typing import Mapping, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from reelpipe.agents.base import Agent, AgentContext
from reelpipe.db.models import Pipeline, utcnow
from reelpipe.errors import AgentExecutionError, ConfigurationError
from reelpipe.orchestrator import state, store
from reelpipe.orchestrator.registry import (
    StepId,
    build_step_input,
    following_step,
    step_state,
    validate_step,
)
from reelpipe.services.events import EventBus

logger = logging.getLogger(__name__)


class StepExecutor:
    """Execute one step through its agent and record the outcome."""

    def __init__(
        self,
        agents: Mapping[StepId, Agent],
        events: EventBus,
        wait_mode: str = "poll",
    ):
        self.agents = agents
        self.events = events
        self.wait_mode = wait_mode

    def agent_for(self, step: StepId) -> Agent:
        agent = self.agents.get(step)
        if agent is None:
            raise ConfigurationError(f"No agent registered for step '{step}'")
        return agent

    async def run_step(
        self,
        session: AsyncSession,
        pipeline: Pipeline,
        step: str,
        extra_input: Optional[dict] = None,
    ) -> Optional[dict]:
        """Run one step and return its result.

        Returns None without doing anything if the pipeline is terminal, or
        if it became terminal while the agent was working (the result is
        then discarded and only an audit entry is written).

        Raises:
            ConfigurationError: Step not valid for the pipeline type, or no agent.
            AgentExecutionError: The agent failed; step state records the error.
        """
        await store.reload(session, pipeline)
        # Paused passes here; callers that must not run while paused (the
        # run_step handler and PipelineService.run_step) reject it themselves.
        if not state.is_active(pipeline.status):
            logger.info(f"Pipeline {pipeline.id} is {pipeline.status}; skipping step {step}")
            return None

        step_id = validate_step(pipeline.pipeline_type, str(step))
        agent = self.agent_for(step_id)

        now = utcnow()
        pipeline.status = state.RUNNING
        pipeline.current_step = step_id.value
        pipeline.current_step_progress = 0
        if pipeline.started_at is None:
            pipeline.started_at = now
        previous = step_state(pipeline, step_id.value)
        store.update_step_state(
            pipeline,
            step_id.value,
            status=state.STEP_RUNNING,
            progress=0,
            error=None,
            started_at=now,
            completed_at=None,
            failed_at=None,
            attempts=previous.attempts + 1,
        )
        store.append_log(
            session, pipeline.id, state.ORCHESTRATOR, state.LOG_INFO,
            f"Starting step: {step_id.value}", {"step": step_id.value, "attempt": previous.attempts + 1},
        )
        await session.commit()
        self.events.progress(pipeline, f"Starting {step_id.value}", step=step_id.value, progress=0)

        step_input = build_step_input(pipeline, step_id.value, extra_input)
        ctx = AgentContext(
            session=session,
            pipeline=pipeline,
            step=step_id,
            events=self.events,
            wait_mode=self.wait_mode,
        )

        step_start = time.monotonic()
        logger.info(f"Pipeline {pipeline.id}: running step {step_id.value}")
        try:
            result = await agent.execute(step_input, ctx)
        except Exception as e:
            await session.rollback()
            await self._record_failure(session, pipeline, step_id, e)
            if isinstance(e, (ConfigurationError, AgentExecutionError)):
                raise
            raise AgentExecutionError(step_id.value, f"{type(e).__name__}: {e}") from e

        step_duration = time.monotonic() - step_start
        await store.reload(session, pipeline)
        if state.is_terminal(pipeline.status):
            logger.info(
                f"Pipeline {pipeline.id} became {pipeline.status} during {step_id.value}; discarding result"
            )
            store.append_log(
                session, pipeline.id, state.ORCHESTRATOR, state.LOG_INFO,
                f"Discarded result of {step_id.value}: pipeline is {pipeline.status}",
            )
            await session.commit()
            return None

        store.update_step_state(
            pipeline,
            step_id.value,
            status=state.STEP_COMPLETED,
            progress=100,
            result=result,
            error=None,
            completed_at=utcnow(),
        )
        pipeline.current_step_progress = 100
        store.append_log(
            session, pipeline.id, step_id.value, state.LOG_RESULT,
            f"Step {step_id.value} completed in {step_duration:.2f}s", result,
        )
        await session.commit()

        upcoming = following_step(pipeline.pipeline_type, step_id.value)
        self.events.step_completed(pipeline, step_id.value, upcoming, result)
        logger.info(f"Pipeline {pipeline.id}: step {step_id.value} completed in {step_duration:.2f}s")
        return result

    async def _record_failure(
        self, session: AsyncSession, pipeline: Pipeline, step: StepId, error: Exception
    ) -> None:
        """Persist a step failure. The pipeline status is left to the caller."""
        message = str(error) or type(error).__name__
        # Re-read first: a rollback expired the instance
        await store.reload(session, pipeline)
        logger.error(f"Pipeline {pipeline.id}: step {step.value} failed: {type(error).__name__}: {message}")

        if not state.is_terminal(pipeline.status):
            store.update_step_state(
                pipeline, step.value, status=state.STEP_FAILED, error=message, failed_at=utcnow()
            )
        store.append_log(
            session, pipeline.id, step.value, state.LOG_ERROR,
            f"Step {step.value} failed: {message}",
            {
                "exception": type(error).__name__,
                "traceback": "".join(traceback.format_exception(error))[-4000:],
            },
        )
        await session.commit()
        self.events.progress(pipeline, f"Step {step.value} failed: {message}", step=step.value)
