"""SQLAlchemy 2.0 ORM models for the pipeline engine."""

import uuid
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import JSON, ForeignKey, Index, Integer, String, Text, text
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

# Non-terminal statuses, repeated here as literal SQL for the partial index
_ACTIVE_STATUS_SQL = "status IN ('pending', 'running', 'paused')"


def utcnow() -> datetime:
    """Naive UTC timestamp, matching how SQLite round-trips DateTime."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


class Base(DeclarativeBase):
    """Base class for all ORM models."""
    pass


class Pipeline(Base):
    """One execution of a pipeline type for a project.

    steps_state and config are JSON maps at rest. Code reads and writes them
    through the typed models in reelpipe.schemas.pipeline; always assign a
    new dict so the change is flushed.
    """
    __tablename__ = "pipelines"
    __table_args__ = (
        # At most one non-terminal pipeline per project, enforced race-safe
        Index(
            "uq_pipelines_active_project",
            "project_id",
            unique=True,
            sqlite_where=text(_ACTIVE_STATUS_SQL),
            postgresql_where=text(_ACTIVE_STATUS_SQL),
        ),
    )

    id: Mapped[uuid.UUID] = mapped_column(primary_key=True, default=uuid.uuid4)
    project_id: Mapped[uuid.UUID] = mapped_column(index=True)
    user_id: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    pipeline_type: Mapped[str] = mapped_column(String(30))
    mode: Mapped[str] = mapped_column(String(20), default="auto")
    status: Mapped[str] = mapped_column(String(20), default="pending", index=True)
    config: Mapped[dict] = mapped_column(JSON, default=dict)
    steps_state: Mapped[dict] = mapped_column(JSON, default=dict)
    current_step: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)
    current_step_progress: Mapped[int] = mapped_column(Integer, default=0)
    error_message: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    started_at: Mapped[Optional[datetime]] = mapped_column(nullable=True)
    completed_at: Mapped[Optional[datetime]] = mapped_column(nullable=True)
    lease_owner: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    lease_expires_at: Mapped[Optional[datetime]] = mapped_column(nullable=True)
    created_at: Mapped[datetime] = mapped_column(default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(default=utcnow, onupdate=utcnow)


class PipelineLog(Base):
    """Append-only audit entry for a pipeline.

    agent_type is a step id or "orchestrator". There is no update path.
    """
    __tablename__ = "pipeline_logs"

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    pipeline_id: Mapped[uuid.UUID] = mapped_column(
        ForeignKey("pipelines.id"), index=True
    )
    agent_type: Mapped[str] = mapped_column(String(50))
    log_type: Mapped[str] = mapped_column(String(20))  # info, progress, result, error, thinking
    message: Mapped[str] = mapped_column(Text)
    data: Mapped[Optional[dict]] = mapped_column(JSON, nullable=True)
    created_at: Mapped[datetime] = mapped_column(default=utcnow)


class Asset(Base):
    """Media produced by a step, resolved later by a provider callback."""
    __tablename__ = "assets"

    id: Mapped[uuid.UUID] = mapped_column(primary_key=True, default=uuid.uuid4)
    pipeline_id: Mapped[uuid.UUID] = mapped_column(
        ForeignKey("pipelines.id"), index=True
    )
    step: Mapped[str] = mapped_column(String(50))
    type: Mapped[str] = mapped_column(String(30))  # music, image, video_clip, final_video
    url: Mapped[str] = mapped_column(String(1000), default="")
    status: Mapped[str] = mapped_column(String(20), default="pending")
    kie_task_id: Mapped[Optional[str]] = mapped_column(
        String(100), nullable=True, unique=True, index=True
    )
    metadata_json: Mapped[Optional[dict]] = mapped_column("metadata", JSON, nullable=True)
    error_message: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    completed_at: Mapped[Optional[datetime]] = mapped_column(nullable=True)
    created_at: Mapped[datetime] = mapped_column(default=utcnow)


class GenerationJob(Base):
    """Provider job whose result is a payload rather than a single media file."""
    __tablename__ = "generation_jobs"

    id: Mapped[uuid.UUID] = mapped_column(primary_key=True, default=uuid.uuid4)
    pipeline_id: Mapped[uuid.UUID] = mapped_column(
        ForeignKey("pipelines.id"), index=True
    )
    step: Mapped[str] = mapped_column(String(50))
    service: Mapped[str] = mapped_column(String(30))  # suno, image, video
    task_id: Mapped[str] = mapped_column(String(100), unique=True, index=True)
    status: Mapped[str] = mapped_column(String(20), default="pending")
    payload: Mapped[Optional[dict]] = mapped_column(JSON, nullable=True)
    result: Mapped[Optional[dict]] = mapped_column(JSON, nullable=True)
    error_message: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    completed_at: Mapped[Optional[datetime]] = mapped_column(nullable=True)
    created_at: Mapped[datetime] = mapped_column(default=utcnow)
