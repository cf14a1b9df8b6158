"""Progress notification channel: pushes job snapshots to subscribers keyed by job id.

The channel supplements polling. A subscriber that attaches late must pair the
subscription with a point-in-time read of the job, see RenderJobService.subscribe_job_progress.
"""

import abc
import asyncio
import uuid
from collections import defaultdict

from loguru import logger
from redis.asyncio import Redis
from redis.asyncio.client import PubSub

from mindscript.contracts import JobUpdate, get_job_channel
from mindscript.gateway.domain_models import RenderJob


def job_update(job: RenderJob) -> JobUpdate:
    return JobUpdate(
        job_id=job.id,
        version=job.version,
        status=job.status,
        progress=job.progress,
        stage=job.stage,
        progress_message=job.progress_message,
        retry_count=job.retry_count,
        error_message=job.error_message,
        output_url=job.output_url,
        updated_at=job.updated_at,
    )


class Subscription(abc.ABC):
    """Listener for one job. Registered (receiving) by the time subscribe() returns."""

    def __init__(self, job_id: uuid.UUID | str):
        self.job_id = str(job_id)

    @abc.abstractmethod
    async def next_update(self) -> JobUpdate:
        """Block until the next update for this job arrives."""

    @abc.abstractmethod
    async def close(self) -> None: ...

    def __aiter__(self) -> "Subscription":
        return self

    async def __anext__(self) -> JobUpdate:
        return await self.next_update()


class ProgressChannel(abc.ABC):
    @abc.abstractmethod
    async def publish(self, update: JobUpdate) -> None:
        """Deliver `update` to every current subscriber of its job."""

    @abc.abstractmethod
    async def subscribe(self, job_id: uuid.UUID | str) -> Subscription:
        """Register for updates of `job_id`."""

    async def close(self) -> None:
        return None


class InMemorySubscription(Subscription):
    def __init__(self, job_id: uuid.UUID | str, channel: "InMemoryProgressChannel"):
        super().__init__(job_id)
        self._channel = channel
        self.queue: asyncio.Queue[JobUpdate] = asyncio.Queue()

    async def next_update(self) -> JobUpdate:
        return await self.queue.get()

    async def close(self) -> None:
        self._channel._detach(self)


class InMemoryProgressChannel(ProgressChannel):
    """Single-process channel for development and tests."""

    def __init__(self) -> None:
        self._subscribers: defaultdict[str, set[InMemorySubscription]] = defaultdict(set)

    async def publish(self, update: JobUpdate) -> None:
        for sub in list(self._subscribers.get(str(update.job_id), ())):
            sub.queue.put_nowait(update)

    async def subscribe(self, job_id: uuid.UUID | str) -> Subscription:
        sub = InMemorySubscription(job_id, self)
        self._subscribers[sub.job_id].add(sub)
        return sub

    def subscriber_count(self, job_id: uuid.UUID | str) -> int:
        return len(self._subscribers.get(str(job_id), ()))

    def _detach(self, sub: InMemorySubscription) -> None:
        subs = self._subscribers.get(sub.job_id)
        if subs is None:
            return
        subs.discard(sub)
        if not subs:
            del self._subscribers[sub.job_id]


class RedisSubscription(Subscription):
    def __init__(self, job_id: uuid.UUID | str, pubsub: PubSub):
        super().__init__(job_id)
        self._pubsub = pubsub
        self._channel = get_job_channel(job_id)

    async def next_update(self) -> JobUpdate:
        while True:
            message = await self._pubsub.get_message(ignore_subscribe_messages=True, timeout=None)
            if message is None or message["type"] != "message":
                continue
            return JobUpdate.model_validate_json(message["data"])

    async def close(self) -> None:
        try:
            await self._pubsub.unsubscribe(self._channel)
        finally:
            await self._pubsub.aclose()


class RedisProgressChannel(ProgressChannel):
    """Redis pub/sub, one channel per job (render:job:{job_id})."""

    def __init__(self, redis: Redis):
        self._redis = redis

    async def publish(self, update: JobUpdate) -> None:
        receivers = await self._redis.publish(get_job_channel(update.job_id), update.model_dump_json())
        logger.debug(f"Published v{update.version} of job {update.job_id} to {receivers} subscriber(s)")

    async def subscribe(self, job_id: uuid.UUID | str) -> Subscription:
        pubsub = self._redis.pubsub()
        await pubsub.subscribe(get_job_channel(job_id))
        return RedisSubscription(job_id, pubsub)
