import datetime as dt
import uuid
from datetime import datetime
from typing import Any

from sqlalchemy import CheckConstraint, Index
from sqlalchemy.dialects import postgresql
from sqlmodel import JSON, TEXT, Column, DateTime, Field, SQLModel

from mindscript.contracts import (
    PROGRESS_MAX,
    PROGRESS_MIN,
    TERMINAL_STATUSES,
    AudioJobPayload,
    JobPriority,
    JobStatus,
    JobType,
    RenderStage,
)

# NOTE: Forward annotations do not work with SQLModel


def utcnow() -> datetime:
    return datetime.now(tz=dt.UTC)


def _json_column(name: str | None = None, *, nullable: bool = True) -> Column:
    json_type = JSON().with_variant(postgresql.JSONB(), "postgresql")
    if name is None:
        return Column(json_type, nullable=nullable)
    return Column(name, json_type, nullable=nullable)


class RenderJob(SQLModel, table=True):
    """One queued render. Rows are never deleted; terminal jobs stay for history."""

    __tablename__ = "audio_job_queue"  # type: ignore[assignment]

    id: uuid.UUID = Field(default_factory=uuid.uuid4, primary_key=True)
    user_id: str = Field(index=True)
    project_id: str | None = Field(default=None)
    render_id: str | None = Field(default=None)

    job_type: JobType = Field(default=JobType.render)
    status: JobStatus = Field(default=JobStatus.pending, index=True)
    priority: JobPriority = Field(default=JobPriority.normal)

    payload: dict[str, Any] = Field(sa_column=_json_column(nullable=False))  # AudioJobPayload.model_dump()

    progress: int = Field(default=PROGRESS_MIN)
    stage: RenderStage | None = Field(default=None)
    progress_message: str | None = Field(default=None)

    retry_count: int = Field(default=0)
    max_retries: int = Field(default=3)
    next_attempt_at: datetime | None = Field(  # retry backoff gate, NULL = claimable now
        default=None,
        sa_column=Column(DateTime(timezone=True), nullable=True),
    )

    created_at: datetime = Field(
        default_factory=utcnow,
        sa_column=Column(DateTime(timezone=True), nullable=False),
    )
    started_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True), nullable=True))
    completed_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True), nullable=True))
    updated_at: datetime = Field(
        default_factory=utcnow,
        sa_column=Column(DateTime(timezone=True), nullable=False),
    )

    # claim ownership; locked_at doubles as the lease heartbeat
    locked_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True), nullable=True))
    locked_by: str | None = Field(default=None)

    error_message: str | None = Field(default=None, sa_column=Column(TEXT, nullable=True))
    error_details: dict[str, Any] | None = Field(default=None, sa_column=_json_column())
    output_url: str | None = Field(default=None)
    result: dict[str, Any] | None = Field(default=None, sa_column=_json_column())  # RenderOutput summary
    metadata_: dict[str, Any] = Field(  # name `metadata` reserved by SQLModel
        default_factory=dict,
        sa_column=_json_column("metadata", nullable=False),
    )

    version: int = Field(default=0)  # bumped on every write, orders progress notifications

    __table_args__ = (
        CheckConstraint(f"progress >= {PROGRESS_MIN} AND progress <= {PROGRESS_MAX}", name="progress_range"),
        Index("ix_audio_job_queue_claim", "status", "priority", "created_at"),
        Index("ix_audio_job_queue_user_created", "user_id", "created_at"),
    )

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def get_payload(self) -> AudioJobPayload:
        return AudioJobPayload.model_validate(self.payload)


class JobStatusHistory(SQLModel, table=True):
    """Audit log of job status changes."""

    __tablename__ = "job_status_history"  # type: ignore[assignment]

    id: int | None = Field(default=None, primary_key=True)
    job_id: uuid.UUID = Field(foreign_key="audio_job_queue.id", index=True)

    old_status: JobStatus | None = Field(default=None)
    new_status: JobStatus
    worker_id: str | None = Field(default=None)
    error: str | None = Field(default=None, sa_column=Column(TEXT, nullable=True))

    created_at: datetime = Field(
        default_factory=utcnow,
        sa_column=Column(DateTime(timezone=True), nullable=False),
    )
