"""Work queue: retries, timeouts, failure callbacks and the pipeline lease."""

import asyncio
import uuid

import pytest
import pytest_asyncio

from reelpipe.db.models import Pipeline
from reelpipe.errors import AgentExecutionError, ConfigurationError, PreconditionError
from reelpipe.orchestrator import store
from reelpipe.orchestrator.registry import step_state
from reelpipe.workers.queue import WorkQueue, WorkUnit

from conftest import VIDEO_CONFIG, drain, wait_until


@pytest.fixture
def queue(session_factory):
    return WorkQueue(session_factory, concurrency=2, retry_base_delay=0, lease_margin_seconds=5, name="test")


@pytest_asyncio.fixture
async def pipeline_id(session_factory):
    async with session_factory() as session:
        pipeline = await store.create_pipeline(
            session,
            project_id=uuid.uuid4(),
            pipeline_type="video",
            mode="auto",
            config={"theme": "rain", "duration": 60},
        )
    return pipeline.id


class Recorder:
    """Handler that fails a set number of times before succeeding."""

    def __init__(self, failures: int = 0, error: Exception = None, delay: float = 0):
        self.failures = failures
        self.error = error or AgentExecutionError("theme_director", "model unavailable")
        self.delay = delay
        self.calls = 0
        self.failed: list[tuple[WorkUnit, BaseException]] = []

    async def __call__(self, unit: WorkUnit) -> None:
        self.calls += 1
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.calls <= self.failures:
            raise self.error

    async def on_failure(self, unit: WorkUnit, error: BaseException) -> None:
        self.failed.append((unit, error))


@pytest.mark.asyncio
async def test_retries_agent_errors_until_success(queue):
    handler = Recorder(failures=2)
    queue.register("job", handler, timeout=5, max_attempts=3, on_failure=handler.on_failure)

    await queue.process(WorkUnit("job"), owner="w1")

    assert handler.calls == 3
    assert handler.failed == []
    assert queue.processed == 1


@pytest.mark.asyncio
async def test_exhausted_retries_call_failure_handler(queue):
    handler = Recorder(failures=5)
    queue.register("job", handler, timeout=5, max_attempts=2, on_failure=handler.on_failure)

    await queue.process(WorkUnit("job"), owner="w1")

    assert handler.calls == 2
    (unit, error), = handler.failed
    assert unit.kind == "job"
    assert isinstance(error, AgentExecutionError)
    assert "model unavailable" in str(error)
    assert queue.processed == 0


@pytest.mark.asyncio
async def test_configuration_errors_are_not_retried(queue):
    handler = Recorder(failures=5, error=ConfigurationError("No agent registered"))
    queue.register("job", handler, timeout=5, max_attempts=3, on_failure=handler.on_failure)

    await queue.process(WorkUnit("job"), owner="w1")

    assert handler.calls == 1
    assert isinstance(handler.failed[0][1], ConfigurationError)


@pytest.mark.asyncio
async def test_timeout_is_retried_then_reported(queue):
    handler = Recorder(delay=1)
    queue.register("slow", handler, timeout=0.05, max_attempts=2, on_failure=handler.on_failure)

    await queue.process(WorkUnit("slow"), owner="w1")

    assert handler.calls == 2
    (_, error), = handler.failed
    assert isinstance(error, TimeoutError)
    assert str(error) == "slow exceeded 0.05s timeout"


@pytest.mark.asyncio
async def test_unit_dropped_while_pipeline_is_leased(queue, session_factory, pipeline_id):
    handler = Recorder()
    queue.register("run", handler, timeout=5)

    async with session_factory() as session:
        assert await store.claim_lease(session, pipeline_id, "someone-else", ttl_seconds=30)

    await queue.process(WorkUnit("run", pipeline_id=pipeline_id), owner="w1")

    assert handler.calls == 0
    assert queue.dropped == 1


@pytest.mark.asyncio
async def test_step_request_refused_while_another_step_runs(runtime, project_id, text):
    gate = asyncio.Event()
    text.hold["creative director"] = gate
    pipeline = await runtime.service.create(project_id, "video", mode="manual", config=VIDEO_CONFIG)
    await runtime.service.run_step(pipeline.id, "theme_director")
    await wait_until(lambda: "creative director" in text.calls)

    with pytest.raises(PreconditionError, match="theme_director is already running"):
        await runtime.service.run_step(pipeline.id, "visual_director")

    gate.set()
    await drain(runtime)
    assert runtime.queue.dropped == 0

    await runtime.service.run_step(pipeline.id, "music_composer")
    await drain(runtime)
    pipeline = await runtime.service.get(pipeline.id)
    assert step_state(pipeline, "music_composer").status == "completed"
    assert step_state(pipeline, "visual_director").status == "pending"
    assert runtime.queue.dropped == 0


@pytest.mark.asyncio
async def test_step_request_refused_while_lease_held_elsewhere(runtime, session_factory, project_id):
    pipeline = await runtime.service.create(project_id, "video", mode="manual", config=VIDEO_CONFIG)
    async with session_factory() as session:
        assert await store.claim_lease(session, pipeline.id, "other-process", ttl_seconds=30)

    with pytest.raises(PreconditionError, match="work in flight"):
        await runtime.service.run_step(pipeline.id, "theme_director")

    async with session_factory() as session:
        await store.release_lease(session, pipeline.id, "other-process")
    await runtime.service.run_step(pipeline.id, "theme_director")
    await drain(runtime)

    pipeline = await runtime.service.get(pipeline.id)
    assert step_state(pipeline, "theme_director").status == "completed"
    assert runtime.queue.dropped == 0


@pytest.mark.asyncio
async def test_resume_refused_until_paused_step_finishes(runtime, project_id, text):
    gate = asyncio.Event()
    text.hold["visual director"] = gate
    pipeline = await runtime.service.create(project_id, "video", config=VIDEO_CONFIG)
    await runtime.service.start(pipeline.id)
    await wait_until(lambda: "visual director" in text.calls)
    await runtime.service.pause(pipeline.id)

    with pytest.raises(PreconditionError, match="visual_director is already running"):
        await runtime.service.resume(pipeline.id)
    assert (await runtime.service.get(pipeline.id)).status == "paused"

    gate.set()
    await drain(runtime)
    await runtime.service.resume(pipeline.id)
    await drain(runtime)

    assert (await runtime.service.get(pipeline.id)).status == "completed"
    assert runtime.queue.dropped == 0


@pytest.mark.asyncio
async def test_queued_units_mark_pipeline_busy(queue, pipeline_id):
    queue.register("run", Recorder(), timeout=5)
    queue.register("finalize", Recorder(), timeout=5, single_flight=False)

    await queue.enqueue("finalize", pipeline_id=pipeline_id)
    assert not queue.is_busy(pipeline_id)

    await queue.enqueue("run", pipeline_id=pipeline_id)
    assert queue.is_busy(pipeline_id)

    await queue.start()
    try:
        await asyncio.wait_for(queue.join(), timeout=5)
    finally:
        await queue.stop()
    assert not queue.is_busy(pipeline_id)


@pytest.mark.asyncio
async def test_lease_released_after_unit(queue, session_factory, pipeline_id):
    handler = Recorder(failures=1)
    queue.register("run", handler, timeout=5, max_attempts=1, on_failure=handler.on_failure)

    await queue.process(WorkUnit("run", pipeline_id=pipeline_id), owner="w1")

    async with session_factory() as session:
        pipeline = await session.get(Pipeline, pipeline_id)
        assert pipeline.lease_owner is None
        assert pipeline.lease_expires_at is None
        # Free again for the next worker
        assert await store.claim_lease(session, pipeline_id, "w2", ttl_seconds=30)


@pytest.mark.asyncio
async def test_expired_lease_can_be_taken_over(session_factory, pipeline_id):
    async with session_factory() as session:
        assert await store.claim_lease(session, pipeline_id, "crashed-worker", ttl_seconds=-1)
        assert await store.claim_lease(session, pipeline_id, "w1", ttl_seconds=30)
        assert not await store.claim_lease(session, pipeline_id, "w2", ttl_seconds=30)


@pytest.mark.asyncio
async def test_non_exclusive_units_skip_the_lease(queue, session_factory, pipeline_id):
    handler = Recorder()
    queue.register("finalize", handler, timeout=5, single_flight=False)

    async with session_factory() as session:
        await store.claim_lease(session, pipeline_id, "runner", ttl_seconds=30)

    await queue.process(WorkUnit("finalize", pipeline_id=pipeline_id), owner="w1")

    assert handler.calls == 1
    assert queue.dropped == 0


@pytest.mark.asyncio
async def test_unknown_kind_rejected(queue):
    with pytest.raises(KeyError, match="nope"):
        await queue.enqueue("nope")


@pytest.mark.asyncio
async def test_workers_drain_concurrently(queue):
    started = 0
    release = asyncio.Event()

    async def handler(unit: WorkUnit) -> None:
        nonlocal started
        started += 1
        if started == 2:
            release.set()
        # Both units must be in flight at once for either to finish
        await asyncio.wait_for(release.wait(), timeout=2)

    queue.register("job", handler, timeout=5)
    await queue.start()
    try:
        await queue.enqueue("job")
        await queue.enqueue("job")
        await asyncio.wait_for(queue.join(), timeout=5)
    finally:
        await queue.stop()

    assert queue.processed == 2
    assert queue.depth == 0
    assert not queue.running
