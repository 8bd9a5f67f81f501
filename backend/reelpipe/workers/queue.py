"""In-process work queue with retries, timeouts and per-pipeline single flight.

Units of work are consumed by a fixed pool of asyncio workers, so distinct
pipelines run concurrently. A unit tied to a pipeline first claims that
pipeline's database lease; if another unit holds it, the new unit is dropped.
The pipeline controls refuse requests while a pipeline is busy, so a drop
only happens when another process races for the same pipeline.
Handlers are retried with exponential backoff on agent errors and timeouts;
when attempts run out the handler's failure callback records the outcome.
"""

import asyncio
import logging
import uuid
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Optional

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from tenacity import (
    AsyncRetrying,
    before_sleep_log,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from reelpipe.errors import AgentExecutionError
from reelpipe.orchestrator import store

logger = logging.getLogger(__name__)

RETRYABLE_ERRORS = (AgentExecutionError, TimeoutError)


@dataclass
class WorkUnit:
    kind: str
    pipeline_id: Optional[uuid.UUID] = None
    payload: dict[str, Any] = field(default_factory=dict)
    id: str = field(default_factory=lambda: uuid.uuid4().hex[:12])


Handler = Callable[[WorkUnit], Awaitable[Any]]
FailureHandler = Callable[[WorkUnit, BaseException], Awaitable[None]]


@dataclass
class HandlerSpec:
    handler: Handler
    timeout: float
    max_attempts: int = 1
    on_failure: Optional[FailureHandler] = None
    single_flight: bool = True


class WorkQueue:
    """asyncio.Queue consumed by a pool of workers."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        *,
        concurrency: int = 4,
        retry_base_delay: float = 2,
        lease_margin_seconds: float = 60,
        name: str = "reelpipe",
    ):
        self.session_factory = session_factory
        self.concurrency = concurrency
        self.retry_base_delay = retry_base_delay
        self.lease_margin_seconds = lease_margin_seconds
        self.name = name
        self._queue: asyncio.Queue[WorkUnit] = asyncio.Queue()
        self._handlers: dict[str, HandlerSpec] = {}
        self._workers: list[asyncio.Task] = []
        # unit id -> pipeline id, for single-flight units queued or in flight
        self._claimed: dict[str, uuid.UUID] = {}
        self.processed = 0
        self.dropped = 0

    def register(
        self,
        kind: str,
        handler: Handler,
        *,
        timeout: float,
        max_attempts: int = 1,
        on_failure: Optional[FailureHandler] = None,
        single_flight: bool = True,
    ) -> None:
        self._handlers[kind] = HandlerSpec(handler, timeout, max_attempts, on_failure, single_flight)

    @property
    def depth(self) -> int:
        return self._queue.qsize()

    @property
    def running(self) -> bool:
        return any(not w.done() for w in self._workers)

    def is_busy(self, pipeline_id: uuid.UUID) -> bool:
        """Whether a single-flight unit for the pipeline is queued or running here."""
        return pipeline_id in self._claimed.values()

    async def enqueue(self, kind: str, pipeline_id: Optional[uuid.UUID] = None, **payload) -> WorkUnit:
        if kind not in self._handlers:
            raise KeyError(f"No handler registered for work kind '{kind}'")
        unit = WorkUnit(kind=kind, pipeline_id=pipeline_id, payload=payload)
        if self._handlers[kind].single_flight and pipeline_id is not None:
            self._claimed[unit.id] = pipeline_id
        await self._queue.put(unit)
        logger.debug(f"Enqueued {kind} unit {unit.id} (pipeline={pipeline_id})")
        return unit

    async def start(self) -> None:
        if self.running:
            return
        self._workers = [
            asyncio.create_task(self._worker(i), name=f"{self.name}-worker-{i}")
            for i in range(self.concurrency)
        ]
        logger.info(f"Started {self.concurrency} queue workers")

    async def join(self) -> None:
        """Wait until every queued unit, including ones queued meanwhile, is done."""
        await self._queue.join()

    async def stop(self) -> None:
        for worker in self._workers:
            worker.cancel()
        await asyncio.gather(*self._workers, return_exceptions=True)
        self._workers = []
        logger.info("Queue workers stopped")

    async def _worker(self, index: int) -> None:
        while True:
            unit = await self._queue.get()
            try:
                await self.process(unit, owner=f"{self.name}-{index}-{unit.id}")
            except Exception:
                # Keep the worker alive; the unit's own failure path already ran
                logger.exception(f"Unhandled error processing {unit.kind} unit {unit.id}")
            finally:
                self._claimed.pop(unit.id, None)
                self._queue.task_done()

    def _lease_ttl(self, spec: HandlerSpec) -> float:
        return spec.timeout * spec.max_attempts + self.lease_margin_seconds

    async def process(self, unit: WorkUnit, owner: str) -> None:
        """Run one unit under its lease with retries and a per-attempt timeout."""
        spec = self._handlers[unit.kind]
        leased = spec.single_flight and unit.pipeline_id is not None

        if leased:
            async with self.session_factory() as session:
                claimed = await store.claim_lease(session, unit.pipeline_id, owner, self._lease_ttl(spec))
            if not claimed:
                self.dropped += 1
                logger.warning(
                    f"Dropping {unit.kind} unit {unit.id}: pipeline {unit.pipeline_id} already has work in flight"
                )
                return

        try:
            async for attempt in AsyncRetrying(
                stop=stop_after_attempt(spec.max_attempts),
                wait=wait_exponential(multiplier=self.retry_base_delay, max=60),
                retry=retry_if_exception_type(RETRYABLE_ERRORS),
                before_sleep=before_sleep_log(logger, logging.WARNING),
                reraise=True,
            ):
                with attempt:
                    number = attempt.retry_state.attempt_number
                    logger.info(f"Running {unit.kind} unit {unit.id} (attempt {number}/{spec.max_attempts})")
                    await asyncio.wait_for(spec.handler(unit), timeout=spec.timeout)
        except Exception as e:
            if isinstance(e, TimeoutError) and not str(e):
                e = TimeoutError(f"{unit.kind} exceeded {spec.timeout:g}s timeout")
            logger.error(f"{unit.kind} unit {unit.id} failed: {type(e).__name__}: {e}")
            if spec.on_failure is not None:
                await spec.on_failure(unit, e)
        else:
            self.processed += 1
        finally:
            if leased:
                async with self.session_factory() as session:
                    await store.release_lease(session, unit.pipeline_id, owner)
