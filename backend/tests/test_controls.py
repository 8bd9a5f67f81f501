"""Pipeline controls: legal transitions and preconditions."""

import uuid
from datetime import timedelta

import pytest
from pydantic import ValidationError
from sqlalchemy import update

from reelpipe.db.models import Pipeline, utcnow
from reelpipe.errors import ConfigurationError, PipelineNotFound, PreconditionError
from reelpipe.orchestrator import store
from reelpipe.orchestrator.registry import step_state
from reelpipe.schemas.pipeline import StepState

from conftest import MUSIC_CONFIG, VIDEO_CONFIG, drain


@pytest.mark.asyncio
async def test_create_validates_type_mode_and_config(runtime, project_id):
    with pytest.raises(ConfigurationError):
        await runtime.service.create(project_id, "podcast", config=VIDEO_CONFIG)
    with pytest.raises(PreconditionError, match="Unknown mode"):
        await runtime.service.create(project_id, "video", mode="turbo", config=VIDEO_CONFIG)
    with pytest.raises(ValidationError):
        await runtime.service.create(project_id, "video", config={"theme": "rain", "duration": 900})

    pipeline = await runtime.service.create(project_id, "music_video", config=MUSIC_CONFIG)
    assert pipeline.config["song_brief"] == MUSIC_CONFIG["theme"]
    assert pipeline.config["schema_version"] == 1


@pytest.mark.asyncio
async def test_one_active_pipeline_per_project(runtime, project_id):
    first = await runtime.service.create(project_id, "video", config=VIDEO_CONFIG)
    with pytest.raises(PreconditionError, match="active pipeline"):
        await runtime.service.create(project_id, "music_video", config=MUSIC_CONFIG)

    # A different project is unaffected
    await runtime.service.create(uuid.uuid4(), "video", config=VIDEO_CONFIG)

    # Once the first is terminal a new one may be created
    await runtime.service.cancel(first.id)
    second = await runtime.service.create(project_id, "video", config=VIDEO_CONFIG)
    assert second.status == "pending"


@pytest.mark.asyncio
async def test_start_only_from_pending(runtime, project_id):
    pipeline = await runtime.service.create(project_id, "video", mode="manual", config=VIDEO_CONFIG)
    started = await runtime.service.start(pipeline.id)
    assert started.status == "running"
    assert started.current_step == "theme_director"
    assert started.current_step_progress == 0
    assert started.started_at is not None

    with pytest.raises(PreconditionError, match="cannot be started"):
        await runtime.service.start(pipeline.id)


@pytest.mark.asyncio
async def test_pause_and_resume_preconditions(runtime, project_id):
    pipeline = await runtime.service.create(project_id, "video", mode="manual", config=VIDEO_CONFIG)
    with pytest.raises(PreconditionError, match="cannot be paused"):
        await runtime.service.pause(pipeline.id)
    with pytest.raises(PreconditionError, match="cannot be resumed"):
        await runtime.service.resume(pipeline.id)

    await runtime.service.start(pipeline.id)
    with pytest.raises(PreconditionError, match="cannot be resumed"):
        await runtime.service.resume(pipeline.id)

    paused = await runtime.service.pause(pipeline.id)
    assert paused.status == "paused"
    assert paused.current_step == "theme_director"
    with pytest.raises(PreconditionError, match="cannot be paused"):
        await runtime.service.pause(pipeline.id)

    resumed = await runtime.service.resume(pipeline.id)
    assert resumed.status == "running"
    await drain(runtime)


@pytest.mark.asyncio
async def test_manual_resume_targets_first_unfinished_step(runtime, project_id):
    pipeline = await runtime.service.create(project_id, "video", mode="manual", config=VIDEO_CONFIG)
    await runtime.service.start(pipeline.id)
    await runtime.service.run_step(pipeline.id, "theme_director")
    await drain(runtime)

    await runtime.service.pause(pipeline.id)
    resumed = await runtime.service.resume(pipeline.id)
    assert resumed.current_step == "music_composer"
    await drain(runtime)

    pipeline = await runtime.service.get(pipeline.id)
    assert step_state(pipeline, "music_composer").status == "completed"
    assert step_state(pipeline, "theme_director").attempts == 1


@pytest.mark.asyncio
async def test_cancel_from_every_non_terminal_status(runtime):
    for prepare in ("pending", "running", "paused"):
        pipeline = await runtime.service.create(uuid.uuid4(), "video", mode="manual", config=VIDEO_CONFIG)
        if prepare in ("running", "paused"):
            await runtime.service.start(pipeline.id)
        if prepare == "paused":
            await runtime.service.pause(pipeline.id)

        cancelled = await runtime.service.cancel(pipeline.id)
        assert cancelled.status == "failed", prepare
        assert cancelled.error_message == "Pipeline cancelled by user"
        assert cancelled.current_step is None

        with pytest.raises(PreconditionError, match="cannot be cancelled"):
            await runtime.service.cancel(pipeline.id)


@pytest.mark.asyncio
async def test_terminal_pipeline_rejects_everything(runtime, project_id):
    pipeline = await runtime.service.create(project_id, "video", mode="manual", config=VIDEO_CONFIG)
    await runtime.service.cancel(pipeline.id)

    for operation in (
        runtime.service.start,
        runtime.service.pause,
        runtime.service.resume,
        runtime.service.cancel,
    ):
        with pytest.raises(PreconditionError):
            await operation(pipeline.id)
    with pytest.raises(PreconditionError):
        await runtime.service.run_step(pipeline.id, "theme_director")


@pytest.mark.asyncio
async def test_run_step_requires_manual_mode(runtime, project_id):
    pipeline = await runtime.service.create(project_id, "video", mode="auto", config=VIDEO_CONFIG)
    with pytest.raises(PreconditionError, match="manual mode"):
        await runtime.service.run_step(pipeline.id, "theme_director")


@pytest.mark.asyncio
async def test_run_step_rejects_unknown_step(runtime, project_id):
    pipeline = await runtime.service.create(project_id, "video", mode="manual", config=VIDEO_CONFIG)
    with pytest.raises(ConfigurationError, match="Invalid step"):
        await runtime.service.run_step(pipeline.id, "song_selector")
    with pytest.raises(ConfigurationError):
        await runtime.service.get_step_result(pipeline.id, "nope")


@pytest.mark.asyncio
async def test_unknown_pipeline(runtime):
    missing = uuid.uuid4()
    with pytest.raises(PipelineNotFound):
        await runtime.service.get(missing)
    with pytest.raises(PipelineNotFound):
        await runtime.service.start(missing)
    with pytest.raises(PipelineNotFound):
        await runtime.service.logs(missing)


@pytest.mark.asyncio
async def test_steps_and_step_result(runtime, project_id):
    pipeline = await runtime.service.create(project_id, "music_video", mode="manual", config=MUSIC_CONFIG)
    await runtime.service.run_step(pipeline.id, "song_architect")
    await drain(runtime)

    steps = await runtime.service.steps(pipeline.id)
    assert [name for name, _ in steps] == ["song_architect", "suno_expert", "song_selector", "visual_designer"]
    assert [s.status for _, s in steps] == ["completed", "pending", "pending", "pending"]

    result = await runtime.service.get_step_result(pipeline.id, "song_architect")
    assert result.result["song_title"] == "Neon Rain"
    assert result.progress == 100
    assert result.started_at is not None and result.completed_at is not None


@pytest.mark.asyncio
async def test_list_pipelines_by_project(runtime, project_id):
    other = uuid.uuid4()
    mine = await runtime.service.create(project_id, "video", config=VIDEO_CONFIG)
    await runtime.service.create(other, "video", config=VIDEO_CONFIG)

    listed = await runtime.service.list_pipelines(project_id)
    assert [p.id for p in listed] == [mine.id]
    assert len(await runtime.service.list_pipelines()) == 2


@pytest.mark.asyncio
async def test_logs_filters(runtime, project_id):
    pipeline = await runtime.service.create(project_id, "video", mode="manual", config=VIDEO_CONFIG)
    await runtime.service.run_step(pipeline.id, "theme_director")
    await drain(runtime)

    thinking = await runtime.service.logs(pipeline.id, log_type="thinking")
    assert thinking and all(e.log_type == "thinking" for e in thinking)

    agent = await runtime.service.logs(pipeline.id, agent_type="theme_director")
    assert agent and all(e.agent_type == "theme_director" for e in agent)

    limited = await runtime.service.logs(pipeline.id, limit=2)
    assert len(limited) == 2
    # Newest first
    assert limited[0].id > limited[1].id


async def force(session_factory, pipeline_id, **values):
    """Write pipeline columns directly, as a crashed worker would have left them."""
    async with session_factory() as session:
        await session.execute(update(Pipeline).where(Pipeline.id == pipeline_id).values(**values))
        await session.commit()


@pytest.mark.asyncio
async def test_cleanup_stale_fails_pipeline_with_expired_lease(runtime, session_factory, project_id):
    pipeline = await runtime.service.create(project_id, "video", config=VIDEO_CONFIG)
    await force(session_factory, pipeline.id, status="running", current_step="theme_director")
    async with session_factory() as session:
        assert await store.claim_lease(session, pipeline.id, "crashed-worker", ttl_seconds=-1)

    preview = await runtime.service.cleanup_stale(30, dry_run=True)
    assert [p.id for p, _ in preview] == [pipeline.id]
    assert preview[0][1].startswith("Worker lease expired")
    assert (await runtime.service.get(pipeline.id)).status == "running"

    await runtime.service.cleanup_stale(30)

    pipeline = await runtime.service.get(pipeline.id)
    assert pipeline.status == "failed"
    assert pipeline.current_step is None
    assert pipeline.error_message.startswith("Stale pipeline: Worker lease expired")
    errors = await runtime.service.logs(pipeline.id, log_type="error")
    assert errors[0].message.startswith("Pipeline failed: Stale pipeline")
    assert await runtime.service.cleanup_stale(30) == []


@pytest.mark.asyncio
async def test_cleanup_stale_picks_only_abandoned_pipelines(runtime, session_factory):
    long_ago = utcnow() - timedelta(hours=2)
    stuck_step = StepState(status="running", attempts=1, started_at=long_ago).model_dump(mode="json")

    async def make(mode="auto", **values):
        pipeline = await runtime.service.create(uuid.uuid4(), "video", mode=mode, config=VIDEO_CONFIG)
        await force(session_factory, pipeline.id, **values)
        return pipeline.id

    never_picked_up = await make(status="running", updated_at=long_ago)
    stuck = await make(mode="manual", status="running", steps_state={"theme_director": stuck_step},
                       current_step="theme_director", updated_at=long_ago)
    waiting_manual = await make(mode="manual", status="running", current_step="theme_director", updated_at=long_ago)
    paused = await make(status="paused", updated_at=long_ago)
    recent = await make(status="running")
    leased = await make(status="running")
    async with session_factory() as session:
        assert await store.claim_lease(session, leased, "live-worker", ttl_seconds=300)
    await force(session_factory, leased, updated_at=long_ago)

    stale = dict((p.id, reason) for p, reason in await runtime.service.cleanup_stale(30))

    assert stale == {
        never_picked_up: "Auto run was never picked up by a worker",
        stuck: "Step theme_director stuck in running state",
    }
    assert (await runtime.service.get(stuck)).status == "failed"
    assert step_state(await runtime.service.get(stuck), "theme_director").status == "failed"
    for untouched in (waiting_manual, paused, recent, leased):
        assert (await runtime.service.get(untouched)).status in ("running", "paused")
