"""Step agents and the closed step -> agent mapping."""

import logging
from typing import Mapping

from reelpipe.agents.base import Agent, AgentContext, SubmittingAgent
from reelpipe.agents.music_video import (
    SongArchitectAgent,
    SongSelectorAgent,
    SunoExpertAgent,
    VisualDesignerAgent,
)
from reelpipe.agents.video import (
    ImageGeneratorAgent,
    MusicComposerAgent,
    ThemeDirectorAgent,
    VideoComposerAgent,
    VisualDirectorAgent,
)
from reelpipe.errors import ConfigurationError
from reelpipe.orchestrator.registry import PIPELINE_STEPS, StepId
from reelpipe.services.providers.base import TaskProvider, TextProvider

logger = logging.getLogger(__name__)

SYNC_AGENTS = (
    ThemeDirectorAgent,
    VisualDirectorAgent,
    VideoComposerAgent,
    SongArchitectAgent,
    SongSelectorAgent,
)
SUBMITTING_AGENTS = (
    MusicComposerAgent,
    ImageGeneratorAgent,
    SunoExpertAgent,
    VisualDesignerAgent,
)


def check_agents(agents: Mapping[StepId, Agent]) -> None:
    """Every registered step must map to exactly one agent for that step.

    Raises:
        ConfigurationError: A step is unmapped or mapped to the wrong agent.
    """
    registered = {step for steps in PIPELINE_STEPS.values() for step in steps}
    missing = sorted(str(s) for s in registered - set(agents))
    if missing:
        raise ConfigurationError(f"No agent registered for steps: {missing}")
    for step, agent in agents.items():
        if agent.step != step:
            raise ConfigurationError(f"Agent {type(agent).__name__} registered under '{step}'")


def build_agents(
    text: TextProvider,
    tasks: TaskProvider,
    *,
    poll_interval: float = 5,
    poll_max_attempts: int = 60,
) -> dict[StepId, Agent]:
    """Instantiate one agent per step and verify the mapping is complete."""
    agents: dict[StepId, Agent] = {}
    for cls in SYNC_AGENTS:
        agents[cls.step] = cls(text)
    for cls in SUBMITTING_AGENTS:
        agents[cls.step] = cls(
            text, tasks, poll_interval=poll_interval, poll_max_attempts=poll_max_attempts
        )
    check_agents(agents)
    logger.debug(f"Registered {len(agents)} agents")
    return agents


__all__ = [
    "Agent",
    "AgentContext",
    "SubmittingAgent",
    "build_agents",
    "check_agents",
]
