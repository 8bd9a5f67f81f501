"""Pipeline state store.

Thin persistence helpers over the ORM models. All functions take the caller's
session; the caller decides when to commit unless the function says otherwise.
"""

import logging
import uuid
from datetime import datetime, timedelta
from typing import Optional

from sqlalchemy import or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from reelpipe.db.models import Pipeline, PipelineLog, utcnow
from reelpipe.errors import PipelineNotFound, PreconditionError
from reelpipe.orchestrator import state
from reelpipe.orchestrator.registry import step_state
from reelpipe.schemas.pipeline import StepState

logger = logging.getLogger(__name__)


async def get_pipeline(session: AsyncSession, pipeline_id: uuid.UUID) -> Pipeline:
    """Load a pipeline or raise PipelineNotFound."""
    pipeline = await session.get(Pipeline, pipeline_id)
    if pipeline is None:
        raise PipelineNotFound(pipeline_id)
    return pipeline


async def reload(session: AsyncSession, pipeline: Pipeline) -> Pipeline:
    """Re-read a pipeline from the database, picking up other writers' changes."""
    await session.refresh(pipeline)
    return pipeline


async def find_active_pipeline(
    session: AsyncSession, project_id: uuid.UUID
) -> Optional[Pipeline]:
    result = await session.execute(
        select(Pipeline).where(
            Pipeline.project_id == project_id,
            Pipeline.status.in_(state.ACTIVE_STATES),
        )
    )
    return result.scalars().first()


async def create_pipeline(
    session: AsyncSession,
    *,
    project_id: uuid.UUID,
    pipeline_type: str,
    mode: str,
    config: dict,
    user_id: Optional[str] = None,
) -> Pipeline:
    """Insert a pending pipeline and commit.

    Raises:
        PreconditionError: The project already has a non-terminal pipeline.
    """
    existing = await find_active_pipeline(session, project_id)
    if existing is not None:
        raise PreconditionError(
            f"Project {project_id} already has an active pipeline ({existing.id})"
        )

    pipeline = Pipeline(
        project_id=project_id,
        user_id=user_id,
        pipeline_type=pipeline_type,
        mode=mode,
        status=state.PENDING,
        config=config,
        steps_state={},
        current_step_progress=0,
    )
    session.add(pipeline)
    try:
        await session.commit()
    except IntegrityError as e:
        # Lost the race against a concurrent create for the same project
        await session.rollback()
        raise PreconditionError(
            f"Project {project_id} already has an active pipeline"
        ) from e
    return pipeline


async def list_pipelines(
    session: AsyncSession, project_id: Optional[uuid.UUID] = None, limit: int = 50
) -> list[Pipeline]:
    stmt = select(Pipeline).order_by(Pipeline.created_at.desc()).limit(limit)
    if project_id is not None:
        stmt = stmt.where(Pipeline.project_id == project_id)
    result = await session.execute(stmt)
    return list(result.scalars().all())


def put_step_state(pipeline: Pipeline, step: str, step_state_: StepState) -> None:
    """Replace one step's state. Assigns a new dict so the JSON column is flushed."""
    states = dict(pipeline.steps_state or {})
    states[str(step)] = step_state_.model_dump(mode="json")
    pipeline.steps_state = states


def update_step_state(pipeline: Pipeline, step: str, **changes) -> StepState:
    """Merge changes into a step's current state and store it."""
    updated = step_state(pipeline, step).model_copy(update=changes)
    put_step_state(pipeline, step, updated)
    return updated


def set_progress(pipeline: Pipeline, step: str, progress: int) -> None:
    """Progress of the running step, mirrored onto the pipeline."""
    pipeline.current_step_progress = progress
    update_step_state(pipeline, step, progress=progress)


def append_log(
    session: AsyncSession,
    pipeline_id: uuid.UUID,
    agent_type: str,
    log_type: str,
    message: str,
    data: Optional[dict] = None,
) -> PipelineLog:
    """Stage an audit entry. Committed with the caller's next commit."""
    entry = PipelineLog(
        pipeline_id=pipeline_id,
        agent_type=str(agent_type),
        log_type=log_type,
        message=message,
        data=data,
    )
    session.add(entry)
    return entry


async def list_logs(
    session: AsyncSession,
    pipeline_id: uuid.UUID,
    *,
    agent_type: Optional[str] = None,
    log_type: Optional[str] = None,
    limit: int = 50,
) -> list[PipelineLog]:
    """Most recent audit entries first."""
    stmt = (
        select(PipelineLog)
        .where(PipelineLog.pipeline_id == pipeline_id)
        .order_by(PipelineLog.id.desc())
        .limit(limit)
    )
    if agent_type:
        stmt = stmt.where(PipelineLog.agent_type == agent_type)
    if log_type:
        stmt = stmt.where(PipelineLog.log_type == log_type)
    result = await session.execute(stmt)
    return list(result.scalars().all())


async def mark_failed(
    session: AsyncSession, pipeline: Pipeline, message: str
) -> bool:
    """Move a non-terminal pipeline to failed, closing out a running step.

    Returns False (and changes nothing) if the pipeline is already terminal.
    Commits.
    """
    await reload(session, pipeline)
    if state.is_terminal(pipeline.status):
        return False

    step = pipeline.current_step
    if step and step_state(pipeline, step).status == state.STEP_RUNNING:
        update_step_state(
            pipeline, step, status=state.STEP_FAILED, error=message, failed_at=utcnow()
        )
    pipeline.status = state.FAILED
    pipeline.error_message = message
    pipeline.current_step = None
    append_log(
        session,
        pipeline.id,
        state.ORCHESTRATOR,
        state.LOG_ERROR,
        f"Pipeline failed: {message}",
        {"step": step},
    )
    await session.commit()
    return True


async def claim_lease(
    session: AsyncSession,
    pipeline_id: uuid.UUID,
    owner: str,
    ttl_seconds: float,
) -> bool:
    """Take the per-pipeline execution lease if free or expired. Commits.

    The conditional UPDATE is atomic, so two workers racing for the same
    pipeline cannot both see rowcount 1.
    """
    now = utcnow()
    result = await session.execute(
        update(Pipeline)
        .where(
            Pipeline.id == pipeline_id,
            or_(
                Pipeline.lease_owner.is_(None),
                Pipeline.lease_expires_at < now,
                Pipeline.lease_owner == owner,
            ),
        )
        .values(lease_owner=owner, lease_expires_at=now + timedelta(seconds=ttl_seconds))
        .execution_options(synchronize_session=False)
    )
    await session.commit()
    return result.rowcount == 1


def lease_held(pipeline: Pipeline, now: Optional[datetime] = None) -> bool:
    """Whether some worker holds an unexpired lease on the pipeline."""
    if pipeline.lease_owner is None or pipeline.lease_expires_at is None:
        return False
    return pipeline.lease_expires_at > (now or utcnow())


def running_step(pipeline: Pipeline) -> Optional[str]:
    """Name of a step recorded as running, if any."""
    for name in (pipeline.steps_state or {}):
        if step_state(pipeline, name).status == state.STEP_RUNNING:
            return name
    return None


def stale_reason(pipeline: Pipeline, now: datetime, cutoff: datetime) -> Optional[str]:
    """Why a running or paused pipeline looks abandoned, or None if it does not.

    An expired lease means the worker died mid-unit. Without a lease, a
    pipeline untouched since cutoff is stale when a step is still marked
    running, or when an auto run was queued but never picked up. Manual
    pipelines waiting for the next step request are left alone.
    """
    if pipeline.status not in (state.RUNNING, state.PAUSED):
        return None
    if pipeline.lease_owner is not None:
        if lease_held(pipeline, now):
            return None
        return f"Worker lease expired at {pipeline.lease_expires_at:%Y-%m-%d %H:%M:%S} without finishing"
    if pipeline.updated_at >= cutoff:
        return None
    step = running_step(pipeline)
    if step is not None:
        return f"Step {step} stuck in running state"
    if pipeline.status == state.RUNNING and pipeline.mode == state.MODE_AUTO:
        return "Auto run was never picked up by a worker"
    return None


async def find_stale_pipelines(
    session: AsyncSession, stale_after: timedelta, now: Optional[datetime] = None
) -> list[tuple[Pipeline, str]]:
    """Running or paused pipelines that no worker is advancing, with the reason."""
    now = now or utcnow()
    result = await session.execute(
        select(Pipeline)
        .where(Pipeline.status.in_((state.RUNNING, state.PAUSED)))
        .order_by(Pipeline.updated_at)
    )
    stale = []
    for pipeline in result.scalars():
        reason = stale_reason(pipeline, now, now - stale_after)
        if reason is not None:
            stale.append((pipeline, reason))
    return stale


async def release_lease(session: AsyncSession, pipeline_id: uuid.UUID, owner: str) -> None:
    await session.execute(
        update(Pipeline)
        .where(Pipeline.id == pipeline_id, Pipeline.lease_owner == owner)
        .values(lease_owner=None, lease_expires_at=None)
        .execution_options(synchronize_session=False)
    )
    await session.commit()
