"""Wiring of the engine's long-lived components.

The API lifespan and the CLI both build one Runtime; tests build one over a
temporary database with fake providers.
"""

import logging
from dataclasses import dataclass
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from reelpipe.agents import build_agents
from reelpipe.config import Settings
from reelpipe.db.models import Asset
from reelpipe.orchestrator.bridge import CompletionBridge, PendingRecord
from reelpipe.orchestrator.executor import StepExecutor
from reelpipe.orchestrator.runner import PipelineRunner
from reelpipe.orchestrator.service import FINALIZE_TASK, PipelineService
from reelpipe.services.events import EventBus
from reelpipe.services.providers import build_providers
from reelpipe.services.providers.base import TaskProvider, TextProvider
from reelpipe.workers.queue import WorkQueue
from reelpipe.workers.tasks import PipelineTasks, register_tasks

logger = logging.getLogger(__name__)


@dataclass
class Runtime:
    settings: Settings
    session_factory: async_sessionmaker[AsyncSession]
    events: EventBus
    queue: WorkQueue
    service: PipelineService
    bridge: CompletionBridge
    runner: PipelineRunner
    executor: StepExecutor
    text: TextProvider
    tasks: TaskProvider

    async def start(self) -> None:
        await self.queue.start()

    async def stop(self) -> None:
        await self.queue.stop()
        await self.text.close()
        await self.tasks.close()


def build_runtime(
    settings: Settings,
    session_factory: Optional[async_sessionmaker[AsyncSession]] = None,
    text: Optional[TextProvider] = None,
    tasks: Optional[TaskProvider] = None,
) -> Runtime:
    """Assemble providers, agents, executor, queue, controls and bridge."""
    if session_factory is None:
        from reelpipe.db import async_session

        session_factory = async_session
    if text is None or tasks is None:
        default_text, default_tasks = build_providers(settings)
        text = text or default_text
        tasks = tasks or default_tasks

    config = settings.pipeline
    kie = settings.providers.kie
    events = EventBus()
    agents = build_agents(
        text,
        tasks,
        poll_interval=kie.poll_interval_seconds,
        poll_max_attempts=kie.poll_max_attempts,
    )
    executor = StepExecutor(agents, events, wait_mode=config.async_wait_mode)
    runner = PipelineRunner(executor, events)

    queue = WorkQueue(
        session_factory,
        concurrency=config.worker_concurrency,
        retry_base_delay=config.retry_base_delay,
        lease_margin_seconds=config.lease_margin_seconds,
    )
    register_tasks(queue, PipelineTasks(session_factory, runner, executor, events), config)

    async def enqueue_finalize(record: PendingRecord) -> None:
        record_type = "asset" if isinstance(record, Asset) else "generation_job"
        await queue.enqueue(
            FINALIZE_TASK, pipeline_id=record.pipeline_id, record_type=record_type, record_id=str(record.id)
        )

    bridge = CompletionBridge(session_factory, settings.webhook.secret, enqueue_finalize)
    service = PipelineService(session_factory, queue, events)

    logger.info(
        f"Runtime ready: {config.worker_concurrency} workers, wait mode {config.async_wait_mode}"
    )
    return Runtime(
        settings=settings,
        session_factory=session_factory,
        events=events,
        queue=queue,
        service=service,
        bridge=bridge,
        runner=runner,
        executor=executor,
        text=text,
        tasks=tasks,
    )
