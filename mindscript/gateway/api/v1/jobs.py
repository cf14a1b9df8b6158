import uuid
from datetime import datetime
from typing import Any

from fastapi import APIRouter, Depends, HTTPException, Query, status
from pydantic import BaseModel, Field

from mindscript.contracts import (
    LIST_LIMIT_DEFAULT,
    JobPriority,
    JobStatus,
    JobType,
    RenderProgress,
    RenderStage,
)
from mindscript.gateway.auth import authenticate
from mindscript.gateway.deps import AuthenticatedUser, IsAdmin, JobService
from mindscript.gateway.domain_models import JobStatusHistory, RenderJob
from mindscript.gateway.job_store import JobFilter

router = APIRouter(prefix="/v1/jobs", tags=["Jobs"], dependencies=[Depends(authenticate)])


class JobSubmitRequest(BaseModel):
    """Request to render a track.

    Args:
        payload: AudioJobPayload as JSON. Validated by the service so that every
            invalid field is reported in one response.
        priority: Queue priority, urgent jobs are claimed first.
    """

    payload: dict[str, Any]
    priority: JobPriority = JobPriority.normal
    project_id: str | None = None
    render_id: str | None = None
    metadata: dict[str, Any] | None = None


class JobSubmitResponse(BaseModel):
    job_id: uuid.UUID
    status: JobStatus
    progress: int


class JobCancelRequest(BaseModel):
    reason: str | None = Field(default=None, max_length=500)


class JobRead(BaseModel):
    id: uuid.UUID
    user_id: str
    project_id: str | None
    render_id: str | None
    job_type: JobType
    status: JobStatus
    priority: JobPriority
    progress: int
    stage: RenderStage | None
    progress_message: str | None
    retry_count: int
    max_retries: int
    error_message: str | None
    output_url: str | None
    result: dict[str, Any] | None
    payload: dict[str, Any]
    created_at: datetime
    started_at: datetime | None
    completed_at: datetime | None
    updated_at: datetime

    @classmethod
    def from_job(cls, job: RenderJob) -> "JobRead":
        return cls.model_validate(job, from_attributes=True)


class JobListResponse(BaseModel):
    jobs: list[JobRead]
    next_cursor: str | None


class JobHistoryRead(BaseModel):
    old_status: JobStatus | None
    new_status: JobStatus
    worker_id: str | None
    error: str | None
    created_at: datetime

    @classmethod
    def from_entry(cls, entry: JobStatusHistory) -> "JobHistoryRead":
        return cls.model_validate(entry, from_attributes=True)


@router.post("", response_model=JobSubmitResponse, status_code=status.HTTP_201_CREATED)
async def submit_job(
    body: JobSubmitRequest,
    user: AuthenticatedUser,
    service: JobService,
) -> JobSubmitResponse:
    job = await service.submit_job(
        user.id,
        body.payload,
        body.priority,
        project_id=body.project_id,
        render_id=body.render_id,
        metadata=body.metadata,
    )
    return JobSubmitResponse(job_id=job.id, status=job.status, progress=job.progress)


@router.get("", response_model=JobListResponse)
async def list_jobs(
    user: AuthenticatedUser,
    is_admin: IsAdmin,
    service: JobService,
    status_: JobStatus | None = Query(default=None, alias="status"),
    job_type: JobType | None = None,
    owner_id: str | None = None,
    created_from: datetime | None = None,
    created_to: datetime | None = None,
    cursor: str | None = None,
    limit: int = LIST_LIMIT_DEFAULT,
) -> JobListResponse:
    """List jobs newest first. Only admins may list another user's jobs."""
    if owner_id is not None and owner_id != user.id and not is_admin:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Cannot list jobs of another user")

    page = await service.list_jobs(
        JobFilter(
            user_id=owner_id or user.id,
            status=status_,
            job_type=job_type,
            created_from=created_from,
            created_to=created_to,
        ),
        cursor,
        limit,
    )
    return JobListResponse(jobs=[JobRead.from_job(job) for job in page.jobs], next_cursor=page.next_cursor)


@router.get("/{job_id}", response_model=JobRead)
async def get_job(job_id: uuid.UUID, user: AuthenticatedUser, is_admin: IsAdmin, service: JobService) -> JobRead:
    job = await service.get_job_status(job_id, user_id=None if is_admin else user.id)
    return JobRead.from_job(job)


@router.get("/{job_id}/progress", response_model=RenderProgress)
async def get_job_progress(
    job_id: uuid.UUID,
    user: AuthenticatedUser,
    is_admin: IsAdmin,
    service: JobService,
) -> RenderProgress:
    return await service.get_render_progress(job_id, user_id=None if is_admin else user.id)


@router.post("/{job_id}/cancel", response_model=JobRead)
async def cancel_job(
    job_id: uuid.UUID,
    user: AuthenticatedUser,
    is_admin: IsAdmin,
    service: JobService,
    body: JobCancelRequest | None = None,
) -> JobRead:
    job = await service.cancel_job(
        job_id,
        body.reason if body else None,
        user_id=None if is_admin else user.id,
    )
    return JobRead.from_job(job)


@router.get("/{job_id}/history", response_model=list[JobHistoryRead])
async def get_job_history(
    job_id: uuid.UUID,
    user: AuthenticatedUser,
    is_admin: IsAdmin,
    service: JobService,
) -> list[JobHistoryRead]:
    entries = await service.history(job_id, user_id=None if is_admin else user.id)
    return [JobHistoryRead.from_entry(entry) for entry in entries]
