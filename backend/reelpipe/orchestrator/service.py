"""Pipeline controls: the operations the API and CLI expose.

Every state transition an operator can request goes through PipelineService.
Illegal requests raise PreconditionError before anything is written; work is
handed to the queue rather than run inline.
"""

import logging
import uuid
from datetime import timedelta
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from reelpipe.db.models import Pipeline, PipelineLog
from reelpipe.errors import PreconditionError
from reelpipe.orchestrator import state, store
from reelpipe.orchestrator.registry import (
    config_as_dict,
    next_step,
    pipeline_type_of,
    step_state,
    steps_for,
    validate_config,
    validate_step,
)
from reelpipe.orchestrator.runner import complete_pipeline, start_pipeline
from reelpipe.schemas.pipeline import StepState
from reelpipe.services.events import EventBus

logger = logging.getLogger(__name__)

RUN_PIPELINE = "run_pipeline"
RUN_STEP = "run_step"
FINALIZE_TASK = "finalize_task"


class PipelineService:
    """Create pipelines and move them through their lifecycle."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession], queue, events: EventBus):
        self.session_factory = session_factory
        self.queue = queue
        self.events = events

    async def create(
        self,
        project_id: uuid.UUID,
        pipeline_type: str,
        mode: str = state.MODE_AUTO,
        config: Optional[dict] = None,
        user_id: Optional[str] = None,
    ) -> Pipeline:
        """Create a pending pipeline.

        Raises:
            ConfigurationError: Unknown pipeline type.
            PreconditionError: Bad mode, or the project already has an active pipeline.
            pydantic.ValidationError: Config does not fit the pipeline type.
        """
        pipeline_type = pipeline_type_of(pipeline_type).value
        if mode not in state.MODES:
            raise PreconditionError(f"Unknown mode '{mode}'; expected one of {list(state.MODES)}")
        typed = validate_config(pipeline_type, config)

        async with self.session_factory() as session:
            pipeline = await store.create_pipeline(
                session,
                project_id=project_id,
                pipeline_type=pipeline_type,
                mode=mode,
                config=config_as_dict(typed),
                user_id=user_id,
            )
            store.append_log(
                session, pipeline.id, state.ORCHESTRATOR, state.LOG_INFO,
                f"Pipeline created ({pipeline_type}, {mode} mode)",
                {"steps": [s.value for s in steps_for(pipeline_type)]},
            )
            await session.commit()
        logger.info(f"Created {pipeline_type} pipeline {pipeline.id} for project {project_id}")
        return pipeline

    async def get(self, pipeline_id: uuid.UUID) -> Pipeline:
        async with self.session_factory() as session:
            return await store.get_pipeline(session, pipeline_id)

    async def list_pipelines(self, project_id: Optional[uuid.UUID] = None, limit: int = 50) -> list[Pipeline]:
        async with self.session_factory() as session:
            return await store.list_pipelines(session, project_id, limit)

    async def start(self, pipeline_id: uuid.UUID) -> Pipeline:
        """Start a pending pipeline.

        Manual mode positions the pipeline at its first step and waits for
        step requests. Auto mode hands the whole run to the queue.
        """
        async with self.session_factory() as session:
            pipeline = await store.get_pipeline(session, pipeline_id)
            if not state.can_start(pipeline.status):
                raise PreconditionError(f"Pipeline cannot be started from status '{pipeline.status}'")

            if pipeline.mode == state.MODE_MANUAL:
                await start_pipeline(session, pipeline, self.events, "Pipeline started in manual mode")
                return pipeline

        await self.queue.enqueue(RUN_PIPELINE, pipeline_id=pipeline_id)
        logger.info(f"Queued auto run for pipeline {pipeline_id}")
        return pipeline

    async def pause(self, pipeline_id: uuid.UUID) -> Pipeline:
        """Stop starting new steps. An in-flight step and external tasks finish."""
        async with self.session_factory() as session:
            pipeline = await store.get_pipeline(session, pipeline_id)
            if not state.can_pause(pipeline.status):
                raise PreconditionError(f"Pipeline cannot be paused from status '{pipeline.status}'")

            pipeline.status = state.PAUSED
            store.append_log(
                session, pipeline.id, state.ORCHESTRATOR, state.LOG_INFO,
                "Pipeline paused", {"current_step": pipeline.current_step},
            )
            await session.commit()
        self.events.progress(pipeline, "Pipeline paused")
        logger.info(f"Pipeline {pipeline_id} paused at {pipeline.current_step}")
        return pipeline

    async def resume(self, pipeline_id: uuid.UUID) -> Pipeline:
        """Resume a paused pipeline at its first non-completed step.

        Auto mode re-enters the run loop. Manual mode queues that one step;
        completed steps are never re-run by a resume.
        """
        async with self.session_factory() as session:
            pipeline = await store.get_pipeline(session, pipeline_id)
            if not state.can_resume(pipeline.status):
                raise PreconditionError(f"Pipeline cannot be resumed from status '{pipeline.status}'")
            self._ensure_idle(pipeline)

            target = next_step(pipeline)
            pipeline.status = state.RUNNING
            if target is not None:
                pipeline.current_step = target.value
            store.append_log(
                session, pipeline.id, state.ORCHESTRATOR, state.LOG_INFO,
                "Pipeline resumed", {"resume_step": target.value if target else None},
            )
            await session.commit()
            self.events.progress(pipeline, "Pipeline resumed")

            if pipeline.mode == state.MODE_MANUAL:
                if target is None:
                    await complete_pipeline(session, pipeline, self.events)
                    return pipeline
                await self.queue.enqueue(RUN_STEP, pipeline_id=pipeline_id, step=target.value)
                return pipeline

        await self.queue.enqueue(RUN_PIPELINE, pipeline_id=pipeline_id)
        return pipeline

    async def cancel(self, pipeline_id: uuid.UUID) -> Pipeline:
        """Fail a non-terminal pipeline on operator request.

        Queued units for the pipeline no-op once they see the terminal status;
        external tasks already dispatched are not recalled.
        """
        async with self.session_factory() as session:
            pipeline = await store.get_pipeline(session, pipeline_id)
            if not state.can_cancel(pipeline.status):
                raise PreconditionError(f"Pipeline cannot be cancelled from status '{pipeline.status}'")

            await store.mark_failed(session, pipeline, state.CANCELLED_MESSAGE)
        self.events.progress(pipeline, state.CANCELLED_MESSAGE, status="cancelled")
        logger.info(f"Pipeline {pipeline_id} cancelled")
        return pipeline

    async def run_step(
        self, pipeline_id: uuid.UUID, step: str, extra_input: Optional[dict] = None
    ) -> Pipeline:
        """Queue one step of a manual-mode pipeline.

        Raises:
            PreconditionError: Not manual mode, status is paused or terminal,
                or another unit of work for the pipeline is queued or running.
            ConfigurationError: Step is not part of this pipeline type.
        """
        async with self.session_factory() as session:
            pipeline = await store.get_pipeline(session, pipeline_id)
            if pipeline.mode != state.MODE_MANUAL:
                raise PreconditionError("Individual steps can only be run in manual mode")
            step_id = validate_step(pipeline.pipeline_type, step)
            if not state.can_run_step(pipeline.status):
                raise PreconditionError(f"Cannot run a step while pipeline is '{pipeline.status}'")
            self._ensure_idle(pipeline)

        await self.queue.enqueue(RUN_STEP, pipeline_id=pipeline_id, step=step_id.value, extra_input=extra_input)
        logger.info(f"Queued step {step_id.value} for pipeline {pipeline_id}")
        return pipeline

    def _ensure_idle(self, pipeline: Pipeline) -> None:
        """Refuse new work while a unit for the pipeline would be dropped by the lease."""
        step = store.running_step(pipeline)
        if step is not None:
            raise PreconditionError(f"Step {step} is already running; retry once it finishes")
        if self.queue.is_busy(pipeline.id) or store.lease_held(pipeline):
            raise PreconditionError(
                f"Pipeline {pipeline.id} already has work in flight; retry once it finishes"
            )

    async def cleanup_stale(self, stale_minutes: float, dry_run: bool = False) -> list[tuple[Pipeline, str]]:
        """Fail running or paused pipelines that no worker is advancing.

        Returns the stale pipelines with the reason each was picked. With
        dry_run nothing is written.
        """
        async with self.session_factory() as session:
            stale = await store.find_stale_pipelines(session, timedelta(minutes=stale_minutes))
            if dry_run:
                return stale

            for pipeline, reason in stale:
                message = f"Stale pipeline: {reason}"
                if await store.mark_failed(session, pipeline, message):
                    self.events.progress(pipeline, message, status=state.FAILED)
                    logger.warning(f"Marked stale pipeline {pipeline.id} as failed: {reason}")
        logger.info(f"Stale pipeline cleanup failed {len(stale)} pipeline(s)")
        return stale

    async def get_step_result(self, pipeline_id: uuid.UUID, step: str) -> StepState:
        async with self.session_factory() as session:
            pipeline = await store.get_pipeline(session, pipeline_id)
            step_id = validate_step(pipeline.pipeline_type, step)
            return step_state(pipeline, step_id.value)

    async def steps(self, pipeline_id: uuid.UUID) -> list[tuple[str, StepState]]:
        """Every step of the pipeline's type in order, with its state."""
        async with self.session_factory() as session:
            pipeline = await store.get_pipeline(session, pipeline_id)
            return [(s.value, step_state(pipeline, s.value)) for s in steps_for(pipeline.pipeline_type)]

    async def logs(
        self,
        pipeline_id: uuid.UUID,
        agent_type: Optional[str] = None,
        log_type: Optional[str] = None,
        limit: int = 50,
    ) -> list[PipelineLog]:
        async with self.session_factory() as session:
            await store.get_pipeline(session, pipeline_id)
            return await store.list_logs(
                session, pipeline_id, agent_type=agent_type, log_type=log_type, limit=limit
            )


__all__ = ["PipelineService", "RUN_PIPELINE", "RUN_STEP", "FINALIZE_TASK"]
