"""API route handlers and Pydantic response schemas."""

import asyncio
import logging
import uuid
from typing import Any, AsyncIterator, Optional

from fastapi import APIRouter, Depends, HTTPException, Request
from fastapi.responses import StreamingResponse
from pydantic import BaseModel, Field

from reelpipe import __version__
from reelpipe.db.models import Pipeline, PipelineLog
from reelpipe.errors import SignatureError
from reelpipe.orchestrator import state
from reelpipe.orchestrator.registry import steps_for
from reelpipe.runtime import Runtime
from reelpipe.schemas.pipeline import PipelineEvent, StepState
from reelpipe.services.events import EventBus

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api")

SSE_KEEPALIVE_SECONDS = 15.0


def get_runtime(request: Request) -> Runtime:
    return request.app.state.runtime


# ---------------------------------------------------------------------------
# Schemas
# ---------------------------------------------------------------------------

class CreatePipelineRequest(BaseModel):
    """Request schema for POST /api/projects/{id}/pipelines."""
    pipeline_type: str
    mode: str = state.MODE_AUTO
    config: dict[str, Any] = Field(default_factory=dict)
    user_id: Optional[str] = None


class RunStepRequest(BaseModel):
    """Request schema for POST /api/pipelines/{id}/steps/run."""
    step: str
    input: Optional[dict[str, Any]] = None


class PipelineResponse(BaseModel):
    """Pipeline snapshot returned by most endpoints."""
    pipeline_id: str
    project_id: str
    pipeline_type: str
    mode: str
    status: str
    current_step: Optional[str] = None
    current_step_progress: int = 0
    error_message: Optional[str] = None
    config: dict[str, Any]
    steps: list[str]
    created_at: str
    updated_at: str
    started_at: Optional[str] = None
    completed_at: Optional[str] = None


class ActionResponse(BaseModel):
    """Response schema for queued actions (start, resume, run step)."""
    pipeline_id: str
    status: str
    status_url: str
    step: Optional[str] = None


class StepResponse(BaseModel):
    """One step of a pipeline with its recorded state."""
    step: str
    status: str
    progress: int
    result: Optional[dict[str, Any]] = None
    error: Optional[str] = None
    attempts: int = 0
    started_at: Optional[str] = None
    completed_at: Optional[str] = None
    failed_at: Optional[str] = None


class LogResponse(BaseModel):
    """Audit log entry."""
    id: int
    agent_type: str
    log_type: str
    message: str
    data: Optional[dict[str, Any]] = None
    created_at: str


class WebhookResponse(BaseModel):
    """Acknowledgement for POST /api/webhooks/kie."""
    success: bool = True
    matched: bool
    applied: bool
    message: str
    task_id: Optional[str] = None


def _iso(value) -> Optional[str]:
    return value.isoformat() if value else None


def _pipeline_response(p: Pipeline) -> PipelineResponse:
    return PipelineResponse(
        pipeline_id=str(p.id),
        project_id=str(p.project_id),
        pipeline_type=p.pipeline_type,
        mode=p.mode,
        status=p.status,
        current_step=p.current_step,
        current_step_progress=p.current_step_progress or 0,
        error_message=p.error_message,
        config=p.config or {},
        steps=[s.value for s in steps_for(p.pipeline_type)],
        created_at=p.created_at.isoformat(),
        updated_at=p.updated_at.isoformat(),
        started_at=_iso(p.started_at),
        completed_at=_iso(p.completed_at),
    )


def _step_response(step: str, s: StepState) -> StepResponse:
    return StepResponse(
        step=step,
        status=s.status,
        progress=s.progress,
        result=s.result,
        error=s.error,
        attempts=s.attempts,
        started_at=_iso(s.started_at),
        completed_at=_iso(s.completed_at),
        failed_at=_iso(s.failed_at),
    )


def _log_response(entry: PipelineLog) -> LogResponse:
    return LogResponse(
        id=entry.id,
        agent_type=entry.agent_type,
        log_type=entry.log_type,
        message=entry.message,
        data=entry.data,
        created_at=entry.created_at.isoformat(),
    )


def _action_response(p: Pipeline, step: Optional[str] = None) -> ActionResponse:
    return ActionResponse(
        pipeline_id=str(p.id),
        status=p.status,
        status_url=f"/api/pipelines/{p.id}",
        step=step,
    )


# ---------------------------------------------------------------------------
# Pipelines
# ---------------------------------------------------------------------------

@router.post("/projects/{project_id}/pipelines", status_code=201, response_model=PipelineResponse)
async def create_pipeline(
    project_id: uuid.UUID,
    request: CreatePipelineRequest,
    runtime: Runtime = Depends(get_runtime),
):
    """Create a pending pipeline for a project.

    Returns 409 if the project already has a non-terminal pipeline and 422 if
    the config does not fit the pipeline type.
    """
    pipeline = await runtime.service.create(
        project_id,
        request.pipeline_type,
        mode=request.mode,
        config=request.config,
        user_id=request.user_id,
    )
    return _pipeline_response(pipeline)


@router.get("/pipelines", response_model=list[PipelineResponse])
async def list_pipelines(
    project_id: Optional[uuid.UUID] = None,
    limit: int = 50,
    runtime: Runtime = Depends(get_runtime),
):
    """List pipelines, newest first."""
    pipelines = await runtime.service.list_pipelines(project_id, limit=limit)
    return [_pipeline_response(p) for p in pipelines]


@router.get("/pipelines/{pipeline_id}", response_model=PipelineResponse)
async def get_pipeline(pipeline_id: uuid.UUID, runtime: Runtime = Depends(get_runtime)):
    pipeline = await runtime.service.get(pipeline_id)
    return _pipeline_response(pipeline)


@router.post("/pipelines/{pipeline_id}/start", status_code=202, response_model=ActionResponse)
async def start_pipeline(pipeline_id: uuid.UUID, runtime: Runtime = Depends(get_runtime)):
    """Start a pending pipeline. Auto mode runs in the background."""
    pipeline = await runtime.service.start(pipeline_id)
    return _action_response(pipeline)


@router.post("/pipelines/{pipeline_id}/pause", response_model=PipelineResponse)
async def pause_pipeline(pipeline_id: uuid.UUID, runtime: Runtime = Depends(get_runtime)):
    """Pause a running pipeline. A step already in progress finishes first."""
    pipeline = await runtime.service.pause(pipeline_id)
    return _pipeline_response(pipeline)


@router.post("/pipelines/{pipeline_id}/resume", status_code=202, response_model=ActionResponse)
async def resume_pipeline(pipeline_id: uuid.UUID, runtime: Runtime = Depends(get_runtime)):
    pipeline = await runtime.service.resume(pipeline_id)
    return _action_response(pipeline, step=pipeline.current_step)


@router.post("/pipelines/{pipeline_id}/cancel", response_model=PipelineResponse)
async def cancel_pipeline(pipeline_id: uuid.UUID, runtime: Runtime = Depends(get_runtime)):
    """Cancel a non-terminal pipeline. Returns 409 if it already finished."""
    pipeline = await runtime.service.cancel(pipeline_id)
    return _pipeline_response(pipeline)


@router.post("/pipelines/{pipeline_id}/steps/run", status_code=202, response_model=ActionResponse)
async def run_step(
    pipeline_id: uuid.UUID,
    request: RunStepRequest,
    runtime: Runtime = Depends(get_runtime),
):
    """Queue a single step of a manual-mode pipeline."""
    pipeline = await runtime.service.run_step(pipeline_id, request.step, request.input)
    return _action_response(pipeline, step=request.step)


@router.get("/pipelines/{pipeline_id}/steps", response_model=list[StepResponse])
async def list_steps(pipeline_id: uuid.UUID, runtime: Runtime = Depends(get_runtime)):
    steps = await runtime.service.steps(pipeline_id)
    return [_step_response(step, s) for step, s in steps]


@router.get("/pipelines/{pipeline_id}/steps/{step}", response_model=StepResponse)
async def get_step(pipeline_id: uuid.UUID, step: str, runtime: Runtime = Depends(get_runtime)):
    """Result of one step. Returns 400 for a step outside the pipeline type."""
    s = await runtime.service.get_step_result(pipeline_id, step)
    return _step_response(step, s)


@router.get("/pipelines/{pipeline_id}/logs", response_model=list[LogResponse])
async def get_logs(
    pipeline_id: uuid.UUID,
    agent_type: Optional[str] = None,
    log_type: Optional[str] = None,
    limit: int = 50,
    runtime: Runtime = Depends(get_runtime),
):
    entries = await runtime.service.logs(
        pipeline_id, agent_type=agent_type, log_type=log_type, limit=min(max(limit, 1), 500)
    )
    return [_log_response(e) for e in entries]


def _sse(event: PipelineEvent) -> str:
    return f"event: {event.event}\ndata: {event.model_dump_json()}\n\n"


async def event_stream(
    events: EventBus,
    pipeline: Pipeline,
    request: Optional[Request] = None,
    keepalive: float = SSE_KEEPALIVE_SECONDS,
) -> AsyncIterator[str]:
    """Server-sent events for one pipeline.

    Opens with a snapshot of the current status and closes once a terminal
    status is announced (or immediately if the pipeline already finished).
    """
    snapshot = PipelineEvent(
        event="pipeline.progress",
        pipeline_id=str(pipeline.id),
        status=pipeline.status,
        step=pipeline.current_step,
        progress=pipeline.current_step_progress,
        message="Current status",
    )
    yield _sse(snapshot)
    if state.is_terminal(pipeline.status):
        return

    async with events.subscribe(pipeline.id) as queue:
        while True:
            if request is not None and await request.is_disconnected():
                logger.debug(f"SSE client for pipeline {pipeline.id} disconnected")
                return
            try:
                event = await asyncio.wait_for(queue.get(), timeout=keepalive)
            except TimeoutError:
                yield ": keepalive\n\n"
                continue
            yield _sse(event)
            if event.event == "pipeline.progress" and (
                state.is_terminal(event.status) or event.status == "cancelled"
            ):
                return


@router.get("/pipelines/{pipeline_id}/events")
async def stream_events(
    pipeline_id: uuid.UUID,
    request: Request,
    runtime: Runtime = Depends(get_runtime),
):
    """Progress notifications as text/event-stream."""
    pipeline = await runtime.service.get(pipeline_id)
    return StreamingResponse(
        event_stream(runtime.events, pipeline, request),
        media_type="text/event-stream",
        headers={"Cache-Control": "no-cache", "X-Accel-Buffering": "no"},
    )


# ---------------------------------------------------------------------------
# Webhooks and health
# ---------------------------------------------------------------------------

@router.post("/webhooks/kie", response_model=WebhookResponse)
async def kie_webhook(request: Request, runtime: Runtime = Depends(get_runtime)):
    """Completion signal from the task provider.

    Unknown tasks and repeated deliveries are acknowledged with 200 so the
    provider stops retrying. A bad signature is rejected with 401.
    """
    body = await request.body()
    signature = request.headers.get(runtime.settings.webhook.signature_header)
    try:
        ack = await runtime.bridge.handle(body, signature)
    except SignatureError:
        raise HTTPException(status_code=401, detail="Invalid webhook signature")
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))

    return WebhookResponse(
        matched=ack.matched,
        applied=ack.applied,
        message=ack.message,
        task_id=ack.token,
    )


@router.get("/health")
async def health_check(runtime: Runtime = Depends(get_runtime)):
    """Health check endpoint."""
    return {
        "status": "ok",
        "version": __version__,
        "queue_depth": runtime.queue.depth,
        "workers_running": runtime.queue.running,
    }


__all__ = ["router", "event_stream"]
