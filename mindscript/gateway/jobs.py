"""Render job service: the operations exposed to API callers.

Ownership is enforced here. Methods taking `user_id` treat a job owned by
someone else exactly like a missing one; `user_id=None` is the admin view.
"""

import asyncio
import uuid
from collections.abc import AsyncGenerator, Awaitable, Callable, Sequence
from typing import Any, TypeAlias

from loguru import logger

from mindscript.contracts import LIST_LIMIT_DEFAULT, AudioJobPayload, JobPriority, JobUpdate, RenderProgress
from mindscript.gateway.composition import parse_payload
from mindscript.gateway.domain_models import JobStatusHistory, RenderJob
from mindscript.gateway.exceptions import ResourceNotFoundError
from mindscript.gateway.job_store import JobFilter, JobPage, JobStore
from mindscript.gateway.progress import ProgressChannel, job_update
from mindscript.gateway.stages import render_progress

UpdateCallback: TypeAlias = Callable[[JobUpdate], Awaitable[None]]


class RenderJobService:
    def __init__(self, store: JobStore, channel: ProgressChannel, asset_base_urls: Sequence[str] = ()):
        self._store = store
        self._channel = channel
        self._asset_base_urls = list(asset_base_urls)

    async def submit_job(
        self,
        user_id: str,
        payload: dict[str, Any] | AudioJobPayload,
        priority: JobPriority = JobPriority.normal,
        *,
        project_id: str | None = None,
        render_id: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> RenderJob:
        """Validate and enqueue a render. Invalid payloads raise before anything is stored."""
        parsed = parse_payload(payload, self._asset_base_urls)
        return await self._store.create_job(
            user_id,
            parsed,
            priority,
            project_id=project_id,
            render_id=render_id,
            metadata=metadata,
        )

    async def get_job_status(self, job_id: uuid.UUID, *, user_id: str | None = None) -> RenderJob:
        job = await self._store.get_job(job_id)
        if job is None or (user_id is not None and job.user_id != user_id):
            raise ResourceNotFoundError(RenderJob.__name__, job_id)
        return job

    async def get_render_progress(self, job_id: uuid.UUID, *, user_id: str | None = None) -> RenderProgress:
        return render_progress(await self.get_job_status(job_id, user_id=user_id))

    async def watch_job(self, job_id: uuid.UUID, *, user_id: str | None = None) -> AsyncGenerator[JobUpdate, None]:
        """Yield the current snapshot, then every newer update, ending after a terminal one.

        The subscription is registered before the snapshot is read, so an update
        committed in between is either in the snapshot or arrives on the
        subscription. Frames with a version at or below the last one yielded are dropped.
        """
        subscription = await self._channel.subscribe(job_id)
        try:
            last = job_update(await self.get_job_status(job_id, user_id=user_id))
            yield last
            while not last.is_terminal:
                update = await subscription.next_update()
                if update.version <= last.version:
                    continue
                last = update
                yield update
        finally:
            await subscription.close()

    async def subscribe_job_progress(
        self,
        job_id: uuid.UUID,
        on_update: UpdateCallback,
        *,
        user_id: str | None = None,
    ) -> asyncio.Task[None]:
        """Deliver the current snapshot to `on_update` now, then pushed updates in the background.

        Raises ResourceNotFoundError up front. Cancel the returned task to unsubscribe;
        it finishes by itself after a terminal update.
        """
        updates = self.watch_job(job_id, user_id=user_id)
        try:
            await on_update(await anext(updates))
        except BaseException:
            await updates.aclose()
            raise
        return asyncio.create_task(self._forward(updates, on_update), name=f"job-progress-{job_id}")

    async def cancel_job(
        self,
        job_id: uuid.UUID,
        reason: str | None = None,
        *,
        user_id: str | None = None,
    ) -> RenderJob:
        return await self._store.cancel_job(job_id, reason, user_id=user_id)

    async def list_jobs(
        self,
        filter: JobFilter,
        cursor: str | None = None,
        limit: int = LIST_LIMIT_DEFAULT,
    ) -> JobPage:
        return await self._store.list_jobs(filter, cursor, limit)

    async def history(self, job_id: uuid.UUID, *, user_id: str | None = None) -> list[JobStatusHistory]:
        await self.get_job_status(job_id, user_id=user_id)
        return await self._store.history(job_id)

    @staticmethod
    async def _forward(updates: AsyncGenerator[JobUpdate, None], on_update: UpdateCallback) -> None:
        try:
            async for update in updates:
                await on_update(update)
        except Exception:
            logger.exception("Progress subscriber failed")
            raise
        finally:
            await updates.aclose()
