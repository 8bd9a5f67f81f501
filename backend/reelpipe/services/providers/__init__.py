"""External generation service clients.

Usage:
    from reelpipe.services.providers import build_providers

    text, tasks = build_providers(settings)
"""

from reelpipe.config import Settings
from reelpipe.services.providers.base import TaskProvider, TextProvider
from reelpipe.services.providers.kie import KieProvider
from reelpipe.services.providers.openrouter import OpenRouterProvider


def build_providers(settings: Settings) -> tuple[TextProvider, TaskProvider]:
    """Construct the configured text and task providers."""
    return (
        OpenRouterProvider(settings.providers.openrouter),
        KieProvider(settings.providers.kie),
    )


__all__ = [
    "TextProvider",
    "TaskProvider",
    "OpenRouterProvider",
    "KieProvider",
    "build_providers",
]
