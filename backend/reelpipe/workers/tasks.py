"""Handlers for the queued units of work.

Each handler opens its own session, re-reads the pipeline and honours the
terminal and paused guards, so a unit that arrives late or is retried is
harmless.
"""

import logging
import uuid

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from reelpipe.config import PipelineConfig
from reelpipe.db.models import Asset, GenerationJob
from reelpipe.errors import PipelineNotFound
from reelpipe.orchestrator import state, store
from reelpipe.orchestrator.executor import StepExecutor
from reelpipe.orchestrator.registry import next_step
from reelpipe.orchestrator.runner import PipelineRunner, complete_pipeline
from reelpipe.orchestrator.service import FINALIZE_TASK, RUN_PIPELINE, RUN_STEP
from reelpipe.services.events import EventBus
from reelpipe.workers.queue import WorkQueue, WorkUnit

logger = logging.getLogger(__name__)

RECORD_MODELS = {"asset": Asset, "generation_job": GenerationJob}


class PipelineTasks:
    """Binds the runner, executor and event bus to queue handlers."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        runner: PipelineRunner,
        executor: StepExecutor,
        events: EventBus,
    ):
        self.session_factory = session_factory
        self.runner = runner
        self.executor = executor
        self.events = events

    async def run_pipeline(self, unit: WorkUnit) -> None:
        async with self.session_factory() as session:
            await self.runner.run(session, unit.pipeline_id)

    async def run_step(self, unit: WorkUnit) -> None:
        step = unit.payload["step"]
        async with self.session_factory() as session:
            pipeline = await store.get_pipeline(session, unit.pipeline_id)
            if pipeline.status == state.PAUSED or state.is_terminal(pipeline.status):
                logger.info(f"Pipeline {pipeline.id} is {pipeline.status}; skipping queued step {step}")
                return

            result = await self.executor.run_step(
                session, pipeline, step, unit.payload.get("extra_input")
            )
            if result is None:
                return

            # Manual mode completes once the last outstanding step is done
            await store.reload(session, pipeline)
            if pipeline.status == state.RUNNING and next_step(pipeline) is None:
                await complete_pipeline(session, pipeline, self.events)

    async def finalize_task(self, unit: WorkUnit) -> None:
        """Audit and announce a task outcome the completion bridge applied."""
        model = RECORD_MODELS[unit.payload["record_type"]]
        record_id = uuid.UUID(str(unit.payload["record_id"]))
        async with self.session_factory() as session:
            record = await session.get(model, record_id)
            if record is None:
                logger.warning(f"Finalize: {unit.payload['record_type']} {record_id} no longer exists")
                return

            token = record.kie_task_id if isinstance(record, Asset) else record.task_id
            failed = record.status == "failed"
            message = f"Task {token} {'failed' if failed else 'completed'}"
            data = {
                "task_id": token,
                "record_type": unit.payload["record_type"],
                "record_id": str(record.id),
                "status": record.status,
            }
            if failed:
                data["error"] = record.error_message
            elif isinstance(record, Asset):
                data["url"] = record.url

            store.append_log(
                session,
                record.pipeline_id,
                record.step,
                state.LOG_ERROR if failed else state.LOG_RESULT,
                message,
                data,
            )
            await session.commit()

        self.events.task(record.pipeline_id, record.status, message, step=record.step, data=data)
        logger.info(f"Finalized {message.lower()}")

    async def fail_pipeline(self, unit: WorkUnit, error: BaseException) -> None:
        """Terminal failure: the pipeline goes to failed with the last error."""
        if unit.pipeline_id is None:
            return
        message = str(error) or type(error).__name__
        async with self.session_factory() as session:
            try:
                pipeline = await store.get_pipeline(session, unit.pipeline_id)
            except PipelineNotFound:
                logger.warning(f"Cannot fail missing pipeline {unit.pipeline_id}")
                return
            changed = await store.mark_failed(session, pipeline, message)
        if changed:
            self.events.progress(pipeline, f"Pipeline failed: {message}", status=state.FAILED)
            logger.error(f"Pipeline {unit.pipeline_id} failed: {message}")

    async def log_finalize_failure(self, unit: WorkUnit, error: BaseException) -> None:
        # The record itself is already settled; only the audit entry is missing
        logger.error(
            f"Could not finalize {unit.payload.get('record_type')} {unit.payload.get('record_id')}: {error}",
            exc_info=error,
        )


def register_tasks(
    queue: WorkQueue,
    tasks: PipelineTasks,
    config: PipelineConfig,
) -> None:
    """Register the three unit kinds with their timeouts and retry budget."""
    queue.register(
        RUN_PIPELINE,
        tasks.run_pipeline,
        timeout=config.pipeline_timeout_seconds,
        max_attempts=config.retry_max_attempts,
        on_failure=tasks.fail_pipeline,
    )
    queue.register(
        RUN_STEP,
        tasks.run_step,
        timeout=config.step_timeout_seconds,
        max_attempts=config.retry_max_attempts,
        on_failure=tasks.fail_pipeline,
    )
    queue.register(
        FINALIZE_TASK,
        tasks.finalize_task,
        timeout=config.finalize_timeout_seconds,
        max_attempts=config.retry_max_attempts,
        on_failure=tasks.log_finalize_failure,
        single_flight=False,
    )
