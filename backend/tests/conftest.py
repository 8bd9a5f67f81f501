"""Shared fixtures: a throwaway SQLite database, fake providers and a runtime.

The fakes stand in for the text model and the task service; everything else
(executor, runner, queue, bridge, controls) is the real implementation.
"""

import asyncio
import itertools
import uuid
from typing import Any, Optional

import pytest
import pytest_asyncio

from reelpipe.config import Settings
from reelpipe.db import create_engine_for, create_session_factory, init_database
from reelpipe.errors import ProviderError
from reelpipe.runtime import build_runtime
from reelpipe.services.providers.base import IMAGE, MUSIC, TaskProvider, TextProvider


# ---------------------------------------------------------------------------
# Fake providers
# ---------------------------------------------------------------------------

# Keyed by a phrase unique to each agent's system prompt
TEXT_RESPONSES: dict[str, dict[str, Any]] = {
    "creative director": {
        "title": "Rain Over Neon",
        "description": "A quiet city night told through reflections",
        "mood": "melancholic",
        "style": "neo-noir",
        "target_audience": "young adults",
        "keywords": ["rain", "city", "neon"],
        "color_palette": ["#1B2A49", "#F25F5C"],
    },
    "music producer": {
        "title": "Reflections",
        "genre": "lofi",
        "bpm": 82,
        "lyrics": "Rain on the glass, lights in the street",
        "lyrics_segments": [{"section": "verse", "text": "Rain on the glass"}],
        "suno_prompt": "lofi hip hop, rainy night",
    },
    "visual director": {
        "scenes": [
            {"number": 1, "section": "intro", "description": "Wet street", "image_prompt": "Wet street at night", "duration": 30},
            {"number": 2, "section": "outro", "description": "Neon sign", "image_prompt": "Neon sign in rain", "duration": 30},
        ],
        "style_guide": {"art_style": "neo-noir", "lighting": "low key"},
    },
    "video editor": {
        "composition": [
            {"scene": 1, "duration": 30, "ken_burns": {"zoom": 1.1, "direction": "left"}},
            {"scene": 2, "duration": 30, "ken_burns": {"zoom": 9, "direction": "right"}},
        ],
    },
    "hit songwriter": {
        "song_title": "Neon Rain",
        "hook": "we dance until the rain stops",
        "mood": "uplifting",
        "genre": "synthpop",
        "bpm": 118,
        "structure": ["verse", "chorus", "verse", "chorus"],
        "lyrics": "[Verse]\nCity lights\n[Chorus]\nWe dance until the rain stops",
        "concept_summary": "Joy in bad weather",
    },
    "Suno prompt engineer": {
        "optimized_lyrics": "[Verse]\nCity lights\n[Chorus]\nWe dance",
        "suno_style": "synthpop, uplifting",
        "suno_title": "Neon Rain",
        "recommendations_applied": ["shorter chorus"],
    },
    "A&R executive": {
        "selected_index": 1,
        "evaluation": {"version_0": {"total_score": 70}, "version_1": {"total_score": 88}},
        "reasoning": "Version 1 has the stronger hook",
    },
    "art director": {
        "visual_concept": "Dancers under umbrellas",
        "image_prompt": "Dancers with umbrellas in neon rain",
        "color_palette": ["#FF00AA", "#00E5FF"],
    },
}


def marker_for(system_prompt: str) -> str:
    for marker in TEXT_RESPONSES:
        if marker in system_prompt:
            return marker
    raise KeyError(f"No canned response for prompt: {system_prompt[:60]}")


class FakeText(TextProvider):
    """Canned JSON per agent.

    fail: marker -> number of calls that raise before succeeding (-1: always).
    hold: marker -> event the call waits on before answering.
    """

    def __init__(self):
        self.calls: list[str] = []
        self.fail: dict[str, int] = {}
        self.hold: dict[str, asyncio.Event] = {}
        self.overrides: dict[str, dict] = {}

    def count(self, marker: str) -> int:
        return self.calls.count(marker)

    async def complete_json(self, system_prompt, user_prompt, *, temperature=None):
        marker = marker_for(system_prompt)
        self.calls.append(marker)
        if marker in self.hold:
            await self.hold[marker].wait()
        remaining = self.fail.get(marker, 0)
        if remaining:
            if remaining > 0:
                self.fail[marker] = remaining - 1
            raise ProviderError(f"{marker} model unavailable", status_code=503)
        return dict(self.overrides.get(marker, TEXT_RESPONSES[marker]))


class FakeTasks(TaskProvider):
    """In-memory task service.

    outcome is what get_task reports: "completed", "running" or "failed".
    """

    def __init__(self, outcome: str = "completed", versions: int = 2):
        self.outcome = outcome
        self.versions = versions
        self.submitted: list[tuple[str, str, str]] = []
        self.polls: list[str] = []
        self._ids = itertools.count(1)

    async def submit_music(self, prompt, *, title=None, style=None, lyrics=None, instrumental=False):
        task_id = f"music-{next(self._ids)}"
        self.submitted.append((MUSIC, task_id, prompt))
        return task_id

    async def submit_image(self, prompt, *, aspect_ratio="16:9", image_inputs=None):
        task_id = f"image-{next(self._ids)}"
        self.submitted.append((IMAGE, task_id, prompt))
        return task_id

    def submitted_ids(self, kind: Optional[str] = None) -> list[str]:
        return [t for k, t, _ in self.submitted if kind is None or k == kind]

    async def get_task(self, kind, task_id):
        self.polls.append(task_id)
        if self.outcome == "running":
            return {"task_id": task_id, "status": "running"}
        if self.outcome == "failed":
            return {"task_id": task_id, "status": "failed", "error": "content policy"}
        if kind == MUSIC:
            versions = [
                {"clip_id": f"{task_id}-{i}", "audio_url": f"https://cdn.test/{task_id}-{i}.mp3", "duration": 61.5, "title": "Neon Rain"}
                for i in range(self.versions)
            ]
            urls = [v["audio_url"] for v in versions]
            return {"task_id": task_id, "status": "completed", "versions": versions, "urls": urls, "url": urls[0]}
        url = f"https://cdn.test/{task_id}.png"
        return {"task_id": task_id, "status": "completed", "urls": [url], "url": url}


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------

def make_settings(**overrides) -> Settings:
    """Settings tuned for tests: no backoff, no poll delay, small budgets."""
    pipeline = {
        "retry_max_attempts": 2,
        "retry_base_delay": 0,
        "worker_concurrency": 4,
        "step_timeout_seconds": 10,
        "pipeline_timeout_seconds": 30,
        "finalize_timeout_seconds": 5,
        "async_wait_mode": "poll",
    }
    pipeline.update(overrides.pop("pipeline", {}))
    return Settings(
        storage={"database_url": "sqlite+aiosqlite://"},
        pipeline=pipeline,
        providers={"kie": {"poll_interval_seconds": 0, "poll_max_attempts": 3}},
        webhook=overrides.pop("webhook", {"secret": None}),
        **overrides,
    )


@pytest.fixture
def test_settings() -> Settings:
    return make_settings()


@pytest_asyncio.fixture
async def db_engine(tmp_path):
    engine = create_engine_for(f"sqlite+aiosqlite:///{tmp_path / 'reelpipe-test.db'}")
    await init_database(engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(db_engine):
    return create_session_factory(db_engine)


@pytest.fixture
def text() -> FakeText:
    return FakeText()


@pytest.fixture
def tasks() -> FakeTasks:
    return FakeTasks()


@pytest_asyncio.fixture
async def runtime(test_settings, session_factory, text, tasks):
    rt = build_runtime(test_settings, session_factory=session_factory, text=text, tasks=tasks)
    await rt.start()
    yield rt
    await rt.stop()


@pytest.fixture
def project_id() -> uuid.UUID:
    return uuid.uuid4()


async def drain(runtime, timeout: float = 15) -> None:
    """Wait until the runtime's queue has processed everything."""
    await asyncio.wait_for(runtime.queue.join(), timeout=timeout)


VIDEO_CONFIG = {"theme": "rain", "duration": 60}
MUSIC_CONFIG = {"theme": "dancing in the rain", "duration": 60, "platform": "tiktok"}


async def wait_until(predicate, timeout: float = 5, interval: float = 0.01) -> None:
    """Poll a zero-argument callable until it returns something truthy."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("Condition not met in time")
        await asyncio.sleep(interval)
