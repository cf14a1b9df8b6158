"""Pull-based render worker: claims jobs from the queue table and runs them through the pipeline."""

import asyncio
import time
import uuid
from dataclasses import dataclass, field

from loguru import logger

from mindscript.contracts import JobStatus
from mindscript.gateway.domain_models import RenderJob
from mindscript.gateway.exceptions import LeaseLostError
from mindscript.gateway.job_store import JobStore
from mindscript.workers.errors import FatalRenderError
from mindscript.workers.pipeline import ProgressReporter, RenderPipeline


@dataclass
class WorkerStats:
    started_at: float = field(default_factory=time.monotonic)
    total_processed: int = 0
    succeeded: int = 0
    failed: int = 0
    retried: int = 0
    cancelled: int = 0
    processing_time_s: float = 0.0
    in_flight: int = 0

    @property
    def average_processing_time_s(self) -> float:
        return self.processing_time_s / self.total_processed if self.total_processed else 0.0

    @property
    def uptime_s(self) -> float:
        return time.monotonic() - self.started_at

    def summary(self) -> str:
        return (
            f"processed={self.total_processed} ok={self.succeeded} failed={self.failed} "
            f"retried={self.retried} cancelled={self.cancelled} in_flight={self.in_flight} "
            f"avg={self.average_processing_time_s:.1f}s uptime={self.uptime_s:.0f}s"
        )


class RenderWorker:
    def __init__(
        self,
        store: JobStore,
        pipeline: RenderPipeline,
        worker_id: str,
        *,
        max_concurrent_jobs: int = 2,
        poll_interval_s: float = 2.0,
        lease_seconds: float = 300,
        stats_interval_s: float = 300,
    ):
        self._store = store
        self._pipeline = pipeline
        self.worker_id = worker_id
        self._max_concurrent_jobs = max_concurrent_jobs
        self._poll_interval_s = poll_interval_s
        self._heartbeat_interval_s = max(lease_seconds / 3, 0.05)
        self._stats_interval_s = stats_interval_s
        self.stats = WorkerStats()

    async def run(self) -> None:
        """Claim and process jobs until cancelled, at most `max_concurrent_jobs` at a time."""
        logger.info(f"Render worker {self.worker_id} starting (concurrency={self._max_concurrent_jobs})")
        slots = asyncio.Semaphore(self._max_concurrent_jobs)
        tasks: set[asyncio.Task] = set()
        last_stats = time.monotonic()

        try:
            while True:
                await slots.acquire()
                try:
                    job = await self._store.claim_next(self.worker_id)
                except Exception as e:
                    slots.release()
                    logger.exception(f"Worker {self.worker_id} failed to claim: {e}")
                    await asyncio.sleep(self._poll_interval_s)
                    continue

                if job is None:
                    slots.release()
                    await asyncio.sleep(self._poll_interval_s)
                else:
                    task = asyncio.create_task(self.process(job))
                    tasks.add(task)
                    task.add_done_callback(tasks.discard)
                    task.add_done_callback(lambda _: slots.release())

                if time.monotonic() - last_stats >= self._stats_interval_s:
                    logger.info(f"Worker {self.worker_id} stats: {self.stats.summary()}")
                    last_stats = time.monotonic()

        except asyncio.CancelledError:
            logger.info(f"Render worker {self.worker_id} shutting down, waiting for {len(tasks)} job(s)")
            if tasks:
                await asyncio.gather(*tasks, return_exceptions=True)
            logger.info(f"Worker {self.worker_id} final stats: {self.stats.summary()}")
            raise

    async def run_once(self) -> RenderJob | None:
        """Claim and process a single job. Returns its final row, or None when the queue is empty."""
        job = await self._store.claim_next(self.worker_id)
        if job is None:
            return None
        await self.process(job)
        return await self._store.get_job(job.id)

    async def process(self, job: RenderJob) -> None:
        assert job.locked_by is not None, "process() takes a claimed job"
        lease = job.locked_by
        job_log = logger.bind(job_id=str(job.id), user_id=job.user_id, worker_id=self.worker_id)
        reporter = ProgressReporter(self._store, job.id, lease)
        heartbeat = asyncio.create_task(self._heartbeat(job.id, lease))
        start_time = time.monotonic()
        self.stats.in_flight += 1

        try:
            output = await self._pipeline.execute(job, reporter)
            await self._store.complete_job(
                job.id, lease, output.output_url, output.model_dump(mode="json")
            )
            self.stats.succeeded += 1
            job_log.info(f"Job {job.id} rendered in {time.monotonic() - start_time:.1f}s")

        except LeaseLostError:
            self.stats.cancelled += 1
            job_log.info(f"Job {job.id} is no longer ours (cancelled or reclaimed), stopping")

        except FatalRenderError as e:
            job_log.error(f"Job {job.id} failed permanently: {e}")
            await self._fail(job, lease, e, retryable=False)

        except Exception as e:
            job_log.exception(f"Job {job.id} failed: {e}")
            await self._fail(job, lease, e, retryable=True)

        finally:
            heartbeat.cancel()
            self.stats.in_flight -= 1
            self.stats.total_processed += 1
            self.stats.processing_time_s += time.monotonic() - start_time

    async def _fail(self, job: RenderJob, lease: str, error: Exception, *, retryable: bool) -> None:
        try:
            updated = await self._store.fail_job(
                job.id,
                lease,
                str(error) or type(error).__name__,
                {"error_type": type(error).__name__},
                retryable=retryable,
            )
        except LeaseLostError:
            self.stats.cancelled += 1
            logger.bind(job_id=str(job.id)).info(f"Job {job.id} was cancelled while failing, leaving it")
            return

        if updated.status == JobStatus.pending:
            self.stats.retried += 1
        else:
            self.stats.failed += 1

    async def _heartbeat(self, job_id: uuid.UUID, lease: str) -> None:
        """Keep the lease alive during long stages. Stops once the lease is gone."""
        while True:
            await asyncio.sleep(self._heartbeat_interval_s)
            try:
                alive = await self._store.heartbeat(job_id, lease)
            except Exception as e:
                logger.bind(job_id=str(job_id)).warning(f"Heartbeat for job {job_id} failed: {e}")
                continue
            if not alive:
                logger.bind(job_id=str(job_id)).info(f"Lease on job {job_id} lost, heartbeat stopped")
                return
