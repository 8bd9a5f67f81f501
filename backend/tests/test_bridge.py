"""Completion bridge: signatures, correlation and idempotent application."""

import json

import pytest
from sqlalchemy import select

from reelpipe.db.models import Asset, GenerationJob, PipelineLog
from reelpipe.errors import SignatureError
from reelpipe.orchestrator.bridge import (
    compute_signature,
    extract_error,
    extract_output_url,
    extract_status,
    extract_token,
    verify_signature,
)
from reelpipe.orchestrator.registry import step_state

from conftest import MUSIC_CONFIG, VIDEO_CONFIG, drain, make_settings

SECRET = "whsec-test"


@pytest.fixture
def test_settings():
    return make_settings(pipeline={"async_wait_mode": "submit"}, webhook={"secret": SECRET})


def signed(payload: dict) -> tuple[bytes, str]:
    body = json.dumps(payload).encode()
    return body, compute_signature(body, SECRET)


async def deliver(runtime, payload: dict):
    body, signature = signed(payload)
    return await runtime.bridge.handle(body, signature)


async def pending_music_asset(runtime, project_id):
    """Manual video pipeline with music_composer submitted but not settled."""
    pipeline = await runtime.service.create(project_id, "video", mode="manual", config=VIDEO_CONFIG)
    await runtime.service.run_step(pipeline.id, "theme_director")
    await drain(runtime)
    await runtime.service.run_step(pipeline.id, "music_composer")
    await drain(runtime)
    async with runtime.session_factory() as session:
        asset = (await session.execute(select(Asset).where(Asset.pipeline_id == pipeline.id))).scalars().one()
    return pipeline, asset


async def load_asset(runtime, asset_id) -> Asset:
    async with runtime.session_factory() as session:
        return await session.get(Asset, asset_id)


# ---------------------------------------------------------------------------
# Signatures and payload parsing
# ---------------------------------------------------------------------------

def test_verify_signature():
    body = b'{"task_id": "abc"}'
    good = compute_signature(body, SECRET)

    verify_signature(body, good, SECRET)
    verify_signature(body, good.upper(), SECRET)
    with pytest.raises(SignatureError, match="Invalid"):
        verify_signature(body, "0" * 64, SECRET)
    with pytest.raises(SignatureError, match="Missing"):
        verify_signature(body, None, SECRET)
    with pytest.raises(SignatureError):
        verify_signature(b'{"task_id": "abd"}', good, SECRET)


def test_signature_not_required_without_secret():
    verify_signature(b"{}", None, None)
    verify_signature(b"{}", "garbage", "")


def test_extract_token_variants():
    assert extract_token({"task_id": "a"}) == "a"
    assert extract_token({"taskId": "b"}) == "b"
    assert extract_token({"data": {"task_id": "c"}}) == "c"
    assert extract_token({"data": {"taskId": 42}}) == "42"
    assert extract_token({"status": "success"}) is None


def test_extract_status_and_output():
    assert extract_status({"status": "SUCCESS"}) == "completed"
    assert extract_status({"data": {"state": "fail"}}) == "failed"
    assert extract_status({"status": "CREATE_TASK_FAILED"}) == "failed"
    assert extract_status({"status": "processing"}) == "running"
    assert extract_status({}) == "running"

    assert extract_output_url({"output_url": "https://o"}) == "https://o"
    assert extract_output_url({"data": {"audio_url": "https://a"}}) == "https://a"
    assert extract_output_url({"urls": ["https://first", "https://second"]}) == "https://first"
    assert extract_output_url({"status": "completed"}) is None

    assert extract_error({"error": "quota"}) == "quota"
    assert extract_error({"data": {"error": "nsfw"}}) == "nsfw"
    assert extract_error({}) == "Task failed"


# ---------------------------------------------------------------------------
# Webhook handling
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_bad_signature_rejected_before_lookup(runtime, project_id):
    _, asset = await pending_music_asset(runtime, project_id)
    body = json.dumps({"task_id": asset.kie_task_id, "status": "completed", "url": "https://x"}).encode()

    with pytest.raises(SignatureError):
        await runtime.bridge.handle(body, "deadbeef")
    with pytest.raises(SignatureError):
        await runtime.bridge.handle(body, None)

    assert (await load_asset(runtime, asset.id)).status == "pending"


@pytest.mark.asyncio
async def test_malformed_bodies(runtime):
    for body in (b"not json", b"[1, 2]", b'{"status": "completed"}'):
        with pytest.raises(ValueError):
            await runtime.bridge.handle(body, compute_signature(body, SECRET))


@pytest.mark.asyncio
async def test_unknown_token_acknowledged_without_changes(runtime, project_id):
    pipeline, asset = await pending_music_asset(runtime, project_id)
    before = await runtime.service.get(pipeline.id)

    ack = await deliver(runtime, {"task_id": "does-not-exist", "status": "completed", "url": "https://x"})

    assert ack.matched is False
    assert ack.applied is False
    assert ack.message == "No matching task found"
    assert runtime.queue.depth == 0
    assert (await load_asset(runtime, asset.id)).status == "pending"
    after = await runtime.service.get(pipeline.id)
    assert after.status == before.status
    assert after.steps_state == before.steps_state


@pytest.mark.asyncio
async def test_completion_settles_asset_and_finalizes(runtime, project_id):
    pipeline, asset = await pending_music_asset(runtime, project_id)
    result = step_state(await runtime.service.get(pipeline.id), "music_composer").result
    assert result["status"] == "pending"
    assert result["task_id"] == asset.kie_task_id

    ack = await deliver(runtime, {
        "task_id": asset.kie_task_id,
        "status": "SUCCESS",
        "data": {"audio_url": "https://cdn.test/song.mp3"},
    })
    assert (ack.matched, ack.applied) == (True, True)
    await drain(runtime)

    settled = await load_asset(runtime, asset.id)
    assert settled.status == "completed"
    assert settled.url == "https://cdn.test/song.mp3"
    assert settled.completed_at is not None
    assert settled.metadata_json["result"]["status"] == "SUCCESS"

    entries = await runtime.service.logs(pipeline.id, agent_type="music_composer", log_type="result")
    finalized = [e for e in entries if e.message == f"Task {asset.kie_task_id} completed"]
    assert len(finalized) == 1
    assert finalized[0].data["url"] == "https://cdn.test/song.mp3"

    task_events = [e for e in runtime.events.events_for(pipeline.id) if e.event == "pipeline.task"]
    assert len(task_events) == 1
    assert task_events[0].status == "completed"
    assert task_events[0].step == "music_composer"

    # The bridge never advances the pipeline
    pipeline = await runtime.service.get(pipeline.id)
    assert step_state(pipeline, "visual_director").status == "pending"


@pytest.mark.asyncio
async def test_repeat_delivery_is_a_no_op(runtime, project_id):
    pipeline, asset = await pending_music_asset(runtime, project_id)
    first = {"task_id": asset.kie_task_id, "status": "completed", "url": "https://cdn.test/one.mp3"}
    second = {"task_id": asset.kie_task_id, "status": "failed", "error": "late failure"}

    assert (await deliver(runtime, first)).applied is True
    await drain(runtime)
    repeat = await deliver(runtime, second)
    await drain(runtime)

    assert (repeat.matched, repeat.applied) == (True, False)
    settled = await load_asset(runtime, asset.id)
    assert settled.status == "completed"
    assert settled.url == "https://cdn.test/one.mp3"
    assert settled.error_message is None

    async with runtime.session_factory() as session:
        entries = (await session.execute(
            select(PipelineLog).where(
                PipelineLog.pipeline_id == pipeline.id,
                PipelineLog.message.like(f"Task {asset.kie_task_id}%"),
            )
        )).scalars().all()
    assert len(entries) == 1


@pytest.mark.asyncio
async def test_intermediate_status_leaves_record_pending(runtime, project_id):
    _, asset = await pending_music_asset(runtime, project_id)

    ack = await deliver(runtime, {"task_id": asset.kie_task_id, "status": "processing"})

    assert (ack.matched, ack.applied) == (True, False)
    assert runtime.queue.depth == 0
    assert (await load_asset(runtime, asset.id)).status == "pending"


@pytest.mark.asyncio
async def test_failure_signal_records_error(runtime, project_id):
    pipeline, asset = await pending_music_asset(runtime, project_id)

    ack = await deliver(runtime, {"data": {"taskId": asset.kie_task_id, "status": "error", "error": "quota exceeded"}})
    assert ack.applied is True
    await drain(runtime)

    settled = await load_asset(runtime, asset.id)
    assert settled.status == "failed"
    assert settled.error_message == "quota exceeded"

    errors = await runtime.service.logs(pipeline.id, log_type="error")
    assert any(e.message == f"Task {asset.kie_task_id} failed" for e in errors)
    # Task failure is recorded against the asset only
    assert (await runtime.service.get(pipeline.id)).status == "running"


@pytest.mark.asyncio
async def test_terminal_pipeline_is_not_applied(runtime, project_id):
    pipeline, asset = await pending_music_asset(runtime, project_id)
    await runtime.service.cancel(pipeline.id)

    ack = await deliver(runtime, {"task_id": asset.kie_task_id, "status": "completed", "url": "https://x"})

    assert (ack.matched, ack.applied) == (True, False)
    assert (await load_asset(runtime, asset.id)).status == "pending"
    assert (await runtime.service.get(pipeline.id)).status == "failed"


@pytest.mark.asyncio
async def test_manual_music_video_with_webhook_versions(runtime, project_id, tasks):
    pipeline = await runtime.service.create(project_id, "music_video", mode="manual", config=MUSIC_CONFIG)
    await runtime.service.run_step(pipeline.id, "song_architect")
    await drain(runtime)
    await runtime.service.run_step(pipeline.id, "suno_expert")
    await drain(runtime)

    (task_id,) = tasks.submitted_ids("music")
    async with runtime.session_factory() as session:
        job = (await session.execute(select(GenerationJob).where(GenerationJob.task_id == task_id))).scalars().one()
    assert job.status == "pending"
    assert job.service == "suno"

    versions = [
        {"clip_id": "c0", "audio_url": "https://cdn.test/v0.mp3", "duration": 58.0},
        {"clip_id": "c1", "audio_url": "https://cdn.test/v1.mp3", "duration": 61.0},
    ]
    ack = await deliver(runtime, {"task_id": task_id, "status": "completed", "versions": versions})
    assert ack.applied is True
    await drain(runtime)

    async with runtime.session_factory() as session:
        job = await session.get(GenerationJob, job.id)
    assert job.status == "completed"
    assert job.result["versions"] == versions

    # The operator feeds the settled versions to the selector
    await runtime.service.run_step(pipeline.id, "song_selector", {"suno_result": job.result})
    await drain(runtime)
    pipeline = await runtime.service.get(pipeline.id)
    selected = step_state(pipeline, "song_selector").result
    assert selected["selected_index"] == 1
    assert selected["selected_audio_url"] == "https://cdn.test/v1.mp3"

    await runtime.service.run_step(pipeline.id, "visual_designer")
    await drain(runtime)
    pipeline = await runtime.service.get(pipeline.id)
    design = step_state(pipeline, "visual_designer").result
    assert design["status"] == "pending"
    assert design["audio_url"] == "https://cdn.test/v1.mp3"
    assert pipeline.status == "completed"
