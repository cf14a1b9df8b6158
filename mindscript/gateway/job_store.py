"""Job queue store: the render job state machine over the audio_job_queue table.

Every state change is a single conditional UPDATE whose WHERE clause restates
what the caller believes about the row (status, lock owner). When the belief
is stale the UPDATE matches zero rows and the caller is told it lost, so no
write ever lands on top of a state its author did not see.

    pending ──claim──> processing ──complete──> completed
       │                  │  │
       │                  │  └──fail (retries left)──> pending
       │                  └──fail (exhausted / fatal)──> failed
       └──────cancel──────┴──cancel──> cancelled

After each successful write the store bumps `version`, commits, and publishes
the new row to the progress channel.
"""

import base64
import binascii
import datetime as dt
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Final

from loguru import logger
from sqlalchemy import ColumnElement, and_, case, or_
from sqlalchemy.ext.asyncio import async_sessionmaker
from sqlmodel import col, select, update
from sqlmodel.ext.asyncio.session import AsyncSession

from mindscript.contracts import (
    LIST_LIMIT_MAX,
    LIST_LIMIT_MIN,
    PRIORITY_RANK,
    PROGRESS_MAX,
    PROGRESS_MIN,
    AudioJobPayload,
    JobPriority,
    JobStatus,
    JobType,
    RenderStage,
)
from mindscript.gateway.config import Settings
from mindscript.gateway.domain_models import JobStatusHistory, RenderJob, utcnow
from mindscript.gateway.exceptions import (
    IllegalTransitionError,
    JobStateError,
    LeaseLostError,
    ResourceNotFoundError,
    ValidationError,
)
from mindscript.gateway.metrics import log_event
from mindscript.gateway.progress import ProgressChannel, job_update

ALLOWED_TRANSITIONS: Final[dict[JobStatus, frozenset[JobStatus]]] = {
    JobStatus.pending: frozenset({JobStatus.processing, JobStatus.failed, JobStatus.cancelled}),
    JobStatus.processing: frozenset({JobStatus.completed, JobStatus.failed, JobStatus.cancelled, JobStatus.pending}),
    JobStatus.completed: frozenset(),
    JobStatus.failed: frozenset(),
    JobStatus.cancelled: frozenset(),
}

_PRIORITY_ORDER = case(PRIORITY_RANK, value=col(RenderJob.priority), else_=0)


def check_transition(old: JobStatus, new: JobStatus) -> None:
    if new not in ALLOWED_TRANSITIONS[old]:
        raise IllegalTransitionError(f"Illegal job transition {old} -> {new}")


@dataclass(frozen=True)
class RetryPolicy:
    """Exponential backoff between attempts: base * 2**retry_count, capped."""

    base_delay_seconds: float = 30.0
    max_delay_seconds: float = 900.0

    def delay(self, retry_count: int) -> timedelta:
        return timedelta(seconds=min(self.base_delay_seconds * 2**retry_count, self.max_delay_seconds))

    @classmethod
    def from_settings(cls, settings: Settings) -> "RetryPolicy":
        return cls(
            base_delay_seconds=settings.retry_base_delay_seconds,
            max_delay_seconds=settings.retry_max_delay_seconds,
        )


@dataclass(frozen=True)
class JobFilter:
    user_id: str | None = None
    status: JobStatus | None = None
    job_type: JobType | None = None
    created_from: datetime | None = None
    created_to: datetime | None = None


@dataclass
class JobPage:
    jobs: list[RenderJob] = field(default_factory=list)
    next_cursor: str | None = None


def encode_cursor(job: RenderJob) -> str:
    raw = f"{job.created_at.isoformat()}|{job.id}".encode()
    return base64.urlsafe_b64encode(raw).decode().rstrip("=")


def decode_cursor(cursor: str) -> tuple[datetime, uuid.UUID]:
    try:
        raw = base64.urlsafe_b64decode(cursor + "=" * (-len(cursor) % 4)).decode()
        created_at, job_id = raw.split("|", 1)
        return datetime.fromisoformat(created_at), uuid.UUID(job_id)
    except (binascii.Error, UnicodeDecodeError, ValueError) as e:
        raise ValidationError(f"Invalid cursor {cursor!r}") from e


def new_lease(worker_id: str) -> str:
    """A token unique to one claim, stored in `locked_by` and required by every write of that attempt."""
    return f"{worker_id}:{uuid.uuid4().hex}"


def lease_owner(lease: str) -> str:
    return lease.rpartition(":")[0] or lease


def _ms_since(ts: datetime | None) -> int | None:
    if ts is None:
        return None
    if ts.tzinfo is None:  # sqlite drops the offset, values are stored as UTC
        ts = ts.replace(tzinfo=dt.UTC)
    return int((utcnow() - ts).total_seconds() * 1000)


class JobStore:
    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        channel: ProgressChannel,
        retry_policy: RetryPolicy | None = None,
        default_max_retries: int = 3,
    ):
        self._session_factory = session_factory
        self._channel = channel
        self.retry_policy = retry_policy or RetryPolicy()
        self.default_max_retries = default_max_retries

    # Reads

    async def get_job(self, job_id: uuid.UUID) -> RenderJob | None:
        async with self._session_factory() as db:
            return await db.get(RenderJob, job_id)

    async def is_cancelled(self, job_id: uuid.UUID) -> bool:
        async with self._session_factory() as db:
            status = (await db.exec(select(RenderJob.status).where(RenderJob.id == job_id))).first()
        return status == JobStatus.cancelled

    async def history(self, job_id: uuid.UUID) -> list[JobStatusHistory]:
        async with self._session_factory() as db:
            result = await db.exec(
                select(JobStatusHistory).where(JobStatusHistory.job_id == job_id).order_by(col(JobStatusHistory.id))
            )
            return list(result.all())

    async def list_jobs(self, filter: JobFilter, cursor: str | None = None, limit: int = 20) -> JobPage:
        """Newest first, paged with an opaque keyset cursor over (created_at, id)."""
        if not LIST_LIMIT_MIN <= limit <= LIST_LIMIT_MAX:
            raise ValidationError(f"limit must be between {LIST_LIMIT_MIN} and {LIST_LIMIT_MAX}, got {limit}")

        query = select(RenderJob)
        if filter.user_id is not None:
            query = query.where(RenderJob.user_id == filter.user_id)
        if filter.status is not None:
            query = query.where(RenderJob.status == filter.status)
        if filter.job_type is not None:
            query = query.where(RenderJob.job_type == filter.job_type)
        if filter.created_from is not None:
            query = query.where(col(RenderJob.created_at) >= filter.created_from)
        if filter.created_to is not None:
            query = query.where(col(RenderJob.created_at) < filter.created_to)
        if cursor is not None:
            created_at, last_id = decode_cursor(cursor)
            query = query.where(
                or_(
                    col(RenderJob.created_at) < created_at,
                    and_(col(RenderJob.created_at) == created_at, col(RenderJob.id) < last_id),
                )
            )
        query = query.order_by(col(RenderJob.created_at).desc(), col(RenderJob.id).desc()).limit(limit + 1)

        async with self._session_factory() as db:
            jobs = list((await db.exec(query)).all())

        if len(jobs) > limit:
            jobs = jobs[:limit]
            return JobPage(jobs=jobs, next_cursor=encode_cursor(jobs[-1]))
        return JobPage(jobs=jobs)

    # Writes

    async def create_job(
        self,
        user_id: str,
        payload: AudioJobPayload,
        priority: JobPriority = JobPriority.normal,
        *,
        project_id: str | None = None,
        render_id: str | None = None,
        max_retries: int | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> RenderJob:
        job = RenderJob(
            user_id=user_id,
            project_id=project_id,
            render_id=render_id,
            job_type=payload.job_type,
            priority=priority,
            payload=payload.model_dump(mode="json"),
            max_retries=self.default_max_retries if max_retries is None else max_retries,
            metadata_=metadata or {},
        )
        async with self._session_factory() as db:
            db.add(job)
            await db.flush()
            db.add(JobStatusHistory(job_id=job.id, old_status=None, new_status=JobStatus.pending))
            await db.commit()

        logger.bind(job_id=str(job.id), user_id=user_id).info(f"Job {job.id} queued ({job.job_type}, {priority})")
        await log_event(
            "job_submitted",
            job_id=str(job.id),
            user_id=user_id,
            job_type=job.job_type,
            priority=priority,
            status=job.status,
        )
        await self._publish(job)
        return job

    async def claim_job(self, job_id: uuid.UUID, worker_id: str) -> RenderJob | None:
        """Take a pending job for `worker_id`. None when another worker got there first.

        The returned row carries a fresh lease in `locked_by`; later writes for this
        attempt must present it, so a reclaimed job rejects its previous executor
        even when both run under the same worker id.
        """
        now = utcnow()
        job = await self._apply(
            job_id,
            expected=JobStatus.pending,
            new_status=JobStatus.processing,
            guards=[col(RenderJob.locked_by).is_(None), self._attempt_due(now)],
            values=dict(
                locked_by=new_lease(worker_id),
                locked_at=now,
                started_at=now,
                stage=RenderStage.preparing,
                progress_message="Preparing render",
            ),
            worker_id=worker_id,
        )
        if job is None:
            logger.debug(f"Worker {worker_id} lost the claim on job {job_id}")
            return None

        logger.bind(job_id=str(job_id), worker_id=worker_id).info(
            f"Job {job_id} claimed by {worker_id} (attempt {job.retry_count + 1}/{job.max_retries + 1})"
        )
        await log_event(
            "job_claimed",
            job_id=str(job_id),
            user_id=job.user_id,
            worker_id=worker_id,
            job_type=job.job_type,
            priority=job.priority,
            retry_count=job.retry_count,
            queue_wait_ms=_ms_since(job.created_at),
        )
        return job

    async def claim_next(self, worker_id: str, *, candidates: int = 10) -> RenderJob | None:
        """Claim the most urgent due job, FIFO within a priority.

        Candidates are read without row locks; the conditional UPDATE in
        claim_job decides the winner, and a lost race moves on to the next id.
        """
        query = (
            select(RenderJob.id)
            .where(
                RenderJob.status == JobStatus.pending,
                col(RenderJob.locked_by).is_(None),
                self._attempt_due(utcnow()),
            )
            .order_by(_PRIORITY_ORDER.desc(), col(RenderJob.created_at).asc(), col(RenderJob.id).asc())
            .limit(candidates)
        )
        async with self._session_factory() as db:
            job_ids = list((await db.exec(query)).all())

        for job_id in job_ids:
            job = await self.claim_job(job_id, worker_id)
            if job is not None:
                return job
        return None

    async def report_progress(
        self,
        job_id: uuid.UUID,
        lease: str,
        progress: int,
        stage: RenderStage | None = None,
        message: str | None = None,
    ) -> RenderJob:
        """Record progress for the attempt holding `lease` and refresh it.

        Stored progress is max(current, new). Raises LeaseLostError when the job
        is no longer processing under this lease (cancelled, reaped, reclaimed).
        """
        if not PROGRESS_MIN <= progress <= PROGRESS_MAX:
            raise ValueError(f"progress must be within {PROGRESS_MIN}..{PROGRESS_MAX}, got {progress}")

        values: dict[str, Any] = dict(
            progress=case((col(RenderJob.progress) > progress, col(RenderJob.progress)), else_=progress),
            locked_at=utcnow(),
        )
        if stage is not None:
            values["stage"] = stage
        if message is not None:
            values["progress_message"] = message

        job = await self._apply(
            job_id,
            expected=JobStatus.processing,
            guards=[col(RenderJob.locked_by) == lease],
            values=values,
        )
        if job is None:
            raise LeaseLostError(job_id, lease_owner(lease))
        return job

    async def heartbeat(self, job_id: uuid.UUID, lease: str) -> bool:
        """Extend the lease without a visible change. False when the lease is gone."""
        stmt = (
            update(RenderJob)
            .where(
                col(RenderJob.id) == job_id,
                col(RenderJob.status) == JobStatus.processing,
                col(RenderJob.locked_by) == lease,
            )
            .values(locked_at=utcnow())
            .execution_options(synchronize_session=False)
        )
        async with self._session_factory() as db:
            result = await db.exec(stmt)
            await db.commit()
        return result.rowcount == 1

    async def complete_job(
        self,
        job_id: uuid.UUID,
        lease: str,
        output_url: str,
        result: dict[str, Any] | None = None,
    ) -> RenderJob:
        worker_id = lease_owner(lease)
        job = await self._apply(
            job_id,
            expected=JobStatus.processing,
            new_status=JobStatus.completed,
            guards=[col(RenderJob.locked_by) == lease],
            values=dict(
                progress=PROGRESS_MAX,
                stage=RenderStage.completed,
                progress_message="Render complete",
                output_url=output_url,
                result=result,
                error_message=None,
                error_details=None,
                completed_at=utcnow(),
                locked_by=None,
                locked_at=None,
            ),
            worker_id=worker_id,
        )
        if job is None:
            raise LeaseLostError(job_id, worker_id)

        logger.bind(job_id=str(job_id), worker_id=worker_id).info(f"Job {job_id} completed: {output_url}")
        await log_event(
            "job_completed",
            job_id=str(job_id),
            user_id=job.user_id,
            worker_id=worker_id,
            job_type=job.job_type,
            status=job.status,
            retry_count=job.retry_count,
            duration_ms=_ms_since(job.started_at),
        )
        return job

    async def fail_job(
        self,
        job_id: uuid.UUID,
        lease: str,
        message: str,
        details: dict[str, Any] | None = None,
        *,
        retryable: bool = True,
    ) -> RenderJob:
        """Record a failed attempt.

        Retryable failures with retries left go back to pending behind the
        backoff gate with retry_count + 1. Everything else is terminal.
        """
        worker_id = lease_owner(lease)
        current = await self.get_job(job_id)
        if current is None:
            raise ResourceNotFoundError(RenderJob.__name__, job_id)
        if current.status != JobStatus.processing or current.locked_by != lease:
            raise LeaseLostError(job_id, worker_id)

        now = utcnow()
        owner_guards = [col(RenderJob.locked_by) == lease, col(RenderJob.retry_count) == current.retry_count]
        retry = retryable and current.retry_count < current.max_retries
        log = logger.bind(job_id=str(job_id), worker_id=worker_id)

        if retry:
            delay = self.retry_policy.delay(current.retry_count)
            attempt = current.retry_count + 1
            job = await self._apply(
                job_id,
                expected=JobStatus.processing,
                new_status=JobStatus.pending,
                guards=owner_guards,
                values=dict(
                    retry_count=col(RenderJob.retry_count) + 1,
                    next_attempt_at=now + delay,
                    error_message=message,
                    error_details=details,
                    progress_message=f"Retry {attempt}/{current.max_retries} scheduled",
                    locked_by=None,
                    locked_at=None,
                ),
                worker_id=worker_id,
                error=message,
            )
        else:
            job = await self._apply(
                job_id,
                expected=JobStatus.processing,
                new_status=JobStatus.failed,
                guards=owner_guards,
                values=dict(
                    error_message=message,
                    error_details=details,
                    progress_message="Render failed",
                    completed_at=now,
                    locked_by=None,
                    locked_at=None,
                ),
                worker_id=worker_id,
                error=message,
            )
        if job is None:
            raise LeaseLostError(job_id, worker_id)

        if retry:
            log.warning(f"Job {job_id} attempt failed, retry {job.retry_count}/{job.max_retries} in {delay}: {message}")
            await log_event(
                "job_retry_scheduled",
                job_id=str(job_id),
                user_id=job.user_id,
                worker_id=worker_id,
                retry_count=job.retry_count,
                data={"error": message, "delay_s": delay.total_seconds()},
            )
        else:
            log.error(f"Job {job_id} failed after {job.retry_count} retries: {message}")
            await log_event(
                "job_failed",
                job_id=str(job_id),
                user_id=job.user_id,
                worker_id=worker_id,
                status=job.status,
                retry_count=job.retry_count,
                data={"error": message, "retryable": retryable},
            )
        return job

    async def cancel_job(
        self,
        job_id: uuid.UUID,
        reason: str | None = None,
        *,
        user_id: str | None = None,
    ) -> RenderJob:
        """Cancel a pending or processing job.

        With `user_id` the job must belong to that user (others see 404).
        Raises JobStateError when the job already reached a terminal status.
        """
        while True:
            current = await self.get_job(job_id)
            if current is None or (user_id is not None and current.user_id != user_id):
                raise ResourceNotFoundError(RenderJob.__name__, job_id)
            if current.is_terminal:
                raise JobStateError(job_id, current.status, message=f"Job {job_id} is already {current.status}")

            job = await self._apply(
                job_id,
                expected=current.status,
                new_status=JobStatus.cancelled,
                values=dict(
                    error_message=reason or "Cancelled by user",
                    progress_message="Cancelled",
                    completed_at=utcnow(),
                    locked_by=None,
                    locked_at=None,
                ),
                worker_id=lease_owner(current.locked_by) if current.locked_by else None,
                error=reason,
            )
            if job is not None:
                break
            # status moved under us (usually pending -> processing), re-evaluate

        logger.bind(job_id=str(job_id)).info(f"Job {job_id} cancelled (was {current.status})")
        await log_event(
            "job_cancelled",
            job_id=str(job_id),
            user_id=job.user_id,
            status=current.status,
            data={"reason": reason} if reason else None,
        )
        return job

    async def requeue_expired(self, lease_seconds: float) -> int:
        """Return processing jobs with an expired lease to the queue.

        A job is stale when its worker has not written for `lease_seconds`. Each
        requeue counts as a failed attempt; with no retries left the job fails.
        Returns the number of jobs touched.
        """
        cutoff = utcnow() - timedelta(seconds=lease_seconds)
        query = select(RenderJob).where(
            RenderJob.status == JobStatus.processing,
            col(RenderJob.locked_at) < cutoff,
        )
        async with self._session_factory() as db:
            stale = list((await db.exec(query)).all())

        touched = 0
        for job in stale:
            owner = lease_owner(job.locked_by) if job.locked_by else None
            message = f"Worker {owner} lease expired"
            # a heartbeat since the read moves locked_at past the cutoff and voids the guard
            guards = [col(RenderJob.locked_by) == job.locked_by, col(RenderJob.locked_at) < cutoff]
            if job.retry_count < job.max_retries:
                updated = await self._apply(
                    job.id,
                    expected=JobStatus.processing,
                    new_status=JobStatus.pending,
                    guards=guards,
                    values=dict(
                        retry_count=col(RenderJob.retry_count) + 1,
                        next_attempt_at=None,
                        error_message=message,
                        progress_message="Requeued after worker timeout",
                        locked_by=None,
                        locked_at=None,
                    ),
                    worker_id=owner,
                    error=message,
                )
            else:
                updated = await self._apply(
                    job.id,
                    expected=JobStatus.processing,
                    new_status=JobStatus.failed,
                    guards=guards,
                    values=dict(
                        error_message=f"{message}, retries exhausted",
                        progress_message="Render failed",
                        completed_at=utcnow(),
                        locked_by=None,
                        locked_at=None,
                    ),
                    worker_id=owner,
                    error=message,
                )
            if updated is None:
                continue

            touched += 1
            logger.bind(job_id=str(job.id), worker_id=owner).warning(
                f"Job {job.id} reclaimed from {owner}: now {updated.status}"
            )
            await log_event(
                "job_requeued" if updated.status == JobStatus.pending else "job_failed",
                job_id=str(job.id),
                user_id=job.user_id,
                worker_id=owner,
                status=updated.status,
                retry_count=updated.retry_count,
            )
        return touched

    # Internals

    @staticmethod
    def _attempt_due(now: datetime) -> ColumnElement[bool]:
        return or_(col(RenderJob.next_attempt_at).is_(None), col(RenderJob.next_attempt_at) <= now)

    async def _apply(
        self,
        job_id: uuid.UUID,
        *,
        expected: JobStatus,
        values: dict[str, Any],
        new_status: JobStatus | None = None,
        guards: list[ColumnElement[bool]] | None = None,
        worker_id: str | None = None,
        error: str | None = None,
    ) -> RenderJob | None:
        """Conditionally update one job. Returns the fresh row, or None when the guard failed."""
        if new_status is not None:
            check_transition(expected, new_status)
            values = {**values, "status": new_status}

        stmt = (
            update(RenderJob)
            .where(col(RenderJob.id) == job_id, col(RenderJob.status) == expected, *(guards or []))
            .values(**values, version=col(RenderJob.version) + 1, updated_at=utcnow())
            .execution_options(synchronize_session=False)
        )
        async with self._session_factory() as db:
            result = await db.exec(stmt)
            if result.rowcount != 1:
                await db.rollback()
                return None
            if new_status is not None:
                db.add(
                    JobStatusHistory(
                        job_id=job_id,
                        old_status=expected,
                        new_status=new_status,
                        worker_id=worker_id,
                        error=error,
                    )
                )
            await db.commit()
            job = await db.get(RenderJob, job_id, populate_existing=True)

        assert job is not None
        await self._publish(job)
        return job

    async def _publish(self, job: RenderJob) -> None:
        # the row is already committed; a lost notification is recovered by the next read
        try:
            await self._channel.publish(job_update(job))
        except Exception:
            logger.bind(job_id=str(job.id)).exception(f"Failed to publish update v{job.version} of job {job.id}")
