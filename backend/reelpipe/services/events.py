"""In-process progress notifications.

Publishers (executor, runner, controls, bridge) push PipelineEvent objects;
subscribers (the SSE endpoint, tests) receive the events for one pipeline.
Delivery is best effort: a slow subscriber drops events rather than
blocking a worker.
"""

import asyncio
import logging
from collections import defaultdict
from contextlib import asynccontextmanager
from typing import AsyncIterator, Optional

from reelpipe.schemas.pipeline import PipelineEvent

logger = logging.getLogger(__name__)


class EventBus:
    """Fan-out of pipeline events to per-pipeline subscriber queues."""

    def __init__(self, max_queue_size: int = 100):
        self._max_queue_size = max_queue_size
        self._subscribers: dict[str, set[asyncio.Queue]] = defaultdict(set)
        self.history: list[PipelineEvent] = []
        self.history_limit = 500

    def publish(self, event: PipelineEvent) -> None:
        self.history.append(event)
        if len(self.history) > self.history_limit:
            del self.history[: len(self.history) - self.history_limit]

        for queue in list(self._subscribers.get(event.pipeline_id, ())):
            try:
                queue.put_nowait(event)
            except asyncio.QueueFull:
                logger.warning(
                    f"Dropping {event.event} for pipeline {event.pipeline_id}: subscriber queue full"
                )

    def progress(
        self,
        pipeline,
        message: str,
        *,
        step: Optional[str] = None,
        progress: Optional[int] = None,
        status: Optional[str] = None,
        data: Optional[dict] = None,
    ) -> None:
        self.publish(
            PipelineEvent(
                event="pipeline.progress",
                pipeline_id=str(pipeline.id),
                status=status or pipeline.status,
                step=str(step) if step else pipeline.current_step,
                progress=pipeline.current_step_progress if progress is None else progress,
                message=message,
                data=data,
            )
        )

    def step_completed(self, pipeline, step: str, next_step: Optional[str], result: Optional[dict]) -> None:
        self.publish(
            PipelineEvent(
                event="pipeline.step_completed",
                pipeline_id=str(pipeline.id),
                status=pipeline.status,
                step=str(step),
                progress=100,
                message=f"Step {step} completed",
                next_step=str(next_step) if next_step else None,
                data=result,
            )
        )

    def task(self, pipeline_id, status: str, message: str, *, step: Optional[str] = None, data: Optional[dict] = None) -> None:
        self.publish(
            PipelineEvent(
                event="pipeline.task",
                pipeline_id=str(pipeline_id),
                status=status,
                step=step,
                message=message,
                data=data,
            )
        )

    def events_for(self, pipeline_id) -> list[PipelineEvent]:
        """Published events for one pipeline still held in history."""
        key = str(pipeline_id)
        return [e for e in self.history if e.pipeline_id == key]

    @asynccontextmanager
    async def subscribe(self, pipeline_id) -> AsyncIterator[asyncio.Queue]:
        key = str(pipeline_id)
        queue: asyncio.Queue = asyncio.Queue(maxsize=self._max_queue_size)
        self._subscribers[key].add(queue)
        try:
            yield queue
        finally:
            self._subscribers[key].discard(queue)
            if not self._subscribers[key]:
                del self._subscribers[key]
