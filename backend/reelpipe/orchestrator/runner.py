"""Auto-mode pipeline runner.

Drives a pipeline through its remaining steps in registry order. Pause and
cancel are cooperative: the runner re-reads the pipeline status before each
step and returns quietly when it is no longer running. A step failure
propagates to the caller (the work queue), which retries the unit or marks
the pipeline failed.

If the hosting process dies mid-loop, the pipeline stays running with a stale
current_step until an operator cancels it or the stale sweep
(PipelineService.cleanup_stale, `reelpipe cleanup-stale`) fails it once the
lease has expired.
"""

import logging
import time
import uuid
from typing import Dict

from sqlalchemy.ext.asyncio import AsyncSession

from reelpipe.db.models import Pipeline, utcnow
from reelpipe.orchestrator import state, store
from reelpipe.orchestrator.executor import StepExecutor
from reelpipe.orchestrator.registry import next_step, steps_for
from reelpipe.services.events import EventBus

logger = logging.getLogger(__name__)


async def start_pipeline(
    session: AsyncSession, pipeline: Pipeline, events: EventBus, message: str
) -> None:
    """pending -> running, positioned at the first step. Commits."""
    first = steps_for(pipeline.pipeline_type)[0]
    pipeline.status = state.RUNNING
    pipeline.current_step = first.value
    pipeline.current_step_progress = 0
    pipeline.started_at = pipeline.started_at or utcnow()
    store.append_log(session, pipeline.id, state.ORCHESTRATOR, state.LOG_INFO, message)
    await session.commit()
    events.progress(pipeline, message, progress=0)


async def complete_pipeline(session: AsyncSession, pipeline: Pipeline, events: EventBus) -> None:
    """running -> completed. Commits."""
    pipeline.status = state.COMPLETED
    pipeline.completed_at = utcnow()
    pipeline.current_step = None
    pipeline.current_step_progress = 100
    pipeline.error_message = None
    store.append_log(
        session, pipeline.id, state.ORCHESTRATOR, state.LOG_RESULT,
        "Pipeline completed successfully", {"steps": [s.value for s in steps_for(pipeline.pipeline_type)]},
    )
    await session.commit()
    events.progress(pipeline, "Pipeline completed", progress=100)
    logger.info(f"Pipeline {pipeline.id} completed")


class PipelineRunner:
    """Runs every remaining step of an auto-mode pipeline."""

    def __init__(self, executor: StepExecutor, events: EventBus):
        self.executor = executor
        self.events = events

    async def run(self, session: AsyncSession, pipeline_id: uuid.UUID) -> str:
        """Advance the pipeline until it completes, pauses or is cancelled.

        Returns the pipeline status the loop stopped at.

        Raises:
            PipelineNotFound: No such pipeline.
            AgentExecutionError: A step failed; the pipeline is left running
                for the queue layer to retry or fail.
        """
        pipeline = await store.get_pipeline(session, pipeline_id)
        logger.info(f"Starting auto run for pipeline {pipeline_id}, current status: {pipeline.status}")

        if pipeline.status == state.PENDING:
            await start_pipeline(session, pipeline, self.events, "Pipeline started in auto mode")

        step_log: Dict[str, float] = {}
        run_start = time.monotonic()

        while True:
            await store.reload(session, pipeline)
            if pipeline.status != state.RUNNING:
                logger.info(f"Pipeline {pipeline_id} is {pipeline.status}; auto run stops")
                break

            step = next_step(pipeline)
            if step is None:
                await complete_pipeline(session, pipeline, self.events)
                break

            step_start = time.monotonic()
            await self.executor.run_step(session, pipeline, step.value)
            step_log[step.value] = time.monotonic() - step_start

        logger.info(
            f"Auto run for pipeline {pipeline_id} ended as {pipeline.status} after "
            f"{time.monotonic() - run_start:.2f}s; step timings: "
            + ", ".join(f"{k}={v:.2f}s" for k, v in step_log.items())
        )
        return pipeline.status
