"""Typed pipeline configuration, step state and progress events.

The database stores these as JSON maps; code in the engine only handles the
models below and converts at the persistence edge.
"""

from datetime import datetime
from typing import Any, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator

CONFIG_SCHEMA_VERSION = 1


class VideoPipelineConfig(BaseModel):
    """Configuration for the video pipeline type.

    Extra keys are kept: agents may read them, the engine does not.
    """

    model_config = ConfigDict(extra="allow")

    schema_version: int = CONFIG_SCHEMA_VERSION
    theme: str = Field(min_length=1, max_length=500)
    duration: int = Field(default=60, ge=15, le=300)
    platform: Literal["youtube", "tiktok", "instagram"] = "youtube"


class MusicVideoPipelineConfig(VideoPipelineConfig):
    """Configuration for the music video pipeline type."""

    song_brief: Optional[str] = Field(default=None, max_length=2000)

    @model_validator(mode="after")
    def default_song_brief(self) -> "MusicVideoPipelineConfig":
        if not self.song_brief:
            self.song_brief = self.theme
        return self


class StepState(BaseModel):
    """Per-step execution record embedded in a pipeline."""

    status: Literal["pending", "running", "completed", "failed"] = "pending"
    progress: int = Field(default=0, ge=0, le=100)
    result: Optional[dict[str, Any]] = None
    error: Optional[str] = None
    attempts: int = 0
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    failed_at: Optional[datetime] = None


class PipelineEvent(BaseModel):
    """Progress notification published to subscribers of a pipeline."""

    event: Literal["pipeline.progress", "pipeline.step_completed", "pipeline.task"]
    pipeline_id: str
    status: str
    step: Optional[str] = None
    progress: Optional[int] = None
    message: Optional[str] = None
    next_step: Optional[str] = None
    data: Optional[dict[str, Any]] = None
    timestamp: datetime = Field(default_factory=datetime.now)
