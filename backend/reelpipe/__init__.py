"""reelpipe - pipeline execution engine for AI content generation.

Runs multi-step pipelines (video, music video) whose steps are performed by
agents that call a text model and an async media generation service.
"""

__version__ = "0.1.0"
