"""Job store state machine, claim races, progress monotonicity, retries and leases."""

import asyncio
import uuid
from datetime import timedelta

import pytest

from mindscript.contracts import JobPriority, JobStatus, RenderStage
from mindscript.gateway.composition import parse_payload
from mindscript.gateway.exceptions import (
    IllegalTransitionError,
    JobStateError,
    LeaseLostError,
    ResourceNotFoundError,
    ValidationError,
)
from mindscript.gateway.job_store import (
    JobFilter,
    JobStore,
    RetryPolicy,
    check_transition,
    decode_cursor,
    encode_cursor,
)

USER = "test-user-123"


@pytest.fixture
def payload(make_payload):
    return parse_payload(make_payload())


async def _claimed(store: JobStore, payload, worker_id: str = "worker-1", **kwargs):
    job = await store.create_job(USER, payload, **kwargs)
    claimed = await store.claim_job(job.id, worker_id)
    assert claimed is not None
    return claimed


class TestTransitions:
    @pytest.mark.parametrize(
        "old, new",
        [
            (JobStatus.completed, JobStatus.pending),
            (JobStatus.cancelled, JobStatus.processing),
            (JobStatus.failed, JobStatus.completed),
            (JobStatus.pending, JobStatus.completed),
        ],
    )
    def test_illegal(self, old, new):
        with pytest.raises(IllegalTransitionError):
            check_transition(old, new)

    def test_retry_is_legal(self):
        check_transition(JobStatus.processing, JobStatus.pending)


class TestRetryPolicy:
    def test_exponential_and_capped(self):
        policy = RetryPolicy(base_delay_seconds=30, max_delay_seconds=900)
        assert policy.delay(0) == timedelta(seconds=30)
        assert policy.delay(2) == timedelta(seconds=120)
        assert policy.delay(5) == timedelta(seconds=900)


class TestCreateAndClaim:
    @pytest.mark.asyncio
    async def test_create_job_pending_at_zero(self, store, payload):
        job = await store.create_job(USER, payload, JobPriority.high, project_id="proj-1")

        stored = await store.get_job(job.id)
        assert stored.status == JobStatus.pending
        assert stored.progress == 0
        assert stored.priority == JobPriority.high
        assert stored.project_id == "proj-1"
        assert stored.max_retries == 3
        assert stored.get_payload() == payload

        history = await store.history(job.id)
        assert [(h.old_status, h.new_status) for h in history] == [(None, JobStatus.pending)]

    @pytest.mark.asyncio
    async def test_concurrent_claim_single_winner(self, store, payload):
        job = await store.create_job(USER, payload)

        results = await asyncio.gather(*(store.claim_job(job.id, f"worker-{i}") for i in range(4)))

        winners = [r for r in results if r is not None]
        assert len(winners) == 1
        stored = await store.get_job(job.id)
        assert stored.status == JobStatus.processing
        assert stored.locked_by == winners[0].locked_by
        assert stored.stage == RenderStage.preparing

    @pytest.mark.asyncio
    async def test_claim_next_priority_then_fifo(self, store, payload):
        low = await store.create_job(USER, payload, JobPriority.low)
        normal_first = await store.create_job(USER, payload, JobPriority.normal)
        urgent = await store.create_job(USER, payload, JobPriority.urgent)
        normal_second = await store.create_job(USER, payload, JobPriority.normal)

        order = []
        while (job := await store.claim_next("worker-1")) is not None:
            order.append(job.id)

        assert order == [urgent.id, normal_first.id, normal_second.id, low.id]

    @pytest.mark.asyncio
    async def test_concurrent_claim_next_hands_out_each_job_once(self, store, payload):
        jobs = [await store.create_job(USER, payload) for _ in range(2)]

        results = await asyncio.gather(*(store.claim_next(f"worker-{i}") for i in range(4)))

        claimed = sorted((r.id for r in results if r is not None), key=str)
        assert claimed == sorted((j.id for j in jobs), key=str)

    @pytest.mark.asyncio
    async def test_claim_next_empty_queue(self, store):
        assert await store.claim_next("worker-1") is None

    @pytest.mark.asyncio
    async def test_claim_next_respects_backoff(self, store, payload):
        store.retry_policy = RetryPolicy(base_delay_seconds=60)
        job = await _claimed(store, payload)
        await store.fail_job(job.id, job.locked_by, "provider timeout")

        assert await store.claim_next("worker-2") is None
        assert (await store.get_job(job.id)).status == JobStatus.pending


class TestProgress:
    @pytest.mark.asyncio
    async def test_progress_never_decreases(self, store, payload):
        job = await _claimed(store, payload)

        await store.report_progress(job.id, job.locked_by, 40, RenderStage.tts)
        updated = await store.report_progress(job.id, job.locked_by, 20, RenderStage.tts, "late write")

        assert updated.progress == 40
        assert updated.progress_message == "late write"

    @pytest.mark.asyncio
    async def test_progress_out_of_range(self, store, payload):
        job = await _claimed(store, payload)
        with pytest.raises(ValueError):
            await store.report_progress(job.id, job.locked_by, 101)
        with pytest.raises(ValueError):
            await store.report_progress(job.id, job.locked_by, -1)

    @pytest.mark.asyncio
    async def test_progress_from_non_owner(self, store, payload):
        job = await _claimed(store, payload)
        with pytest.raises(LeaseLostError):
            await store.report_progress(job.id, "worker-2", 50)

    @pytest.mark.asyncio
    async def test_progress_sequence_ends_at_100(self, store, payload):
        job = await _claimed(store, payload)
        seen = []
        for value in (10, 40, 65, 80, 95):
            seen.append((await store.report_progress(job.id, job.locked_by, value)).progress)
        completed = await store.complete_job(job.id, job.locked_by, "/renders/a.mp3", {"size_bytes": 3})
        seen.append(completed.progress)

        assert seen == sorted(seen)
        assert seen[-1] == 100
        assert completed.status == JobStatus.completed
        assert completed.stage == RenderStage.completed
        assert completed.locked_by is None
        assert completed.result == {"size_bytes": 3}

    @pytest.mark.asyncio
    async def test_every_write_bumps_version(self, store, payload):
        job = await store.create_job(USER, payload)
        claimed = await store.claim_job(job.id, "worker-1")
        progressed = await store.report_progress(job.id, claimed.locked_by, 10)
        assert job.version < claimed.version < progressed.version

    @pytest.mark.asyncio
    async def test_heartbeat(self, store, payload):
        job = await _claimed(store, payload)
        assert await store.heartbeat(job.id, job.locked_by)
        assert not await store.heartbeat(job.id, "worker-2")

        await store.cancel_job(job.id)
        assert not await store.heartbeat(job.id, job.locked_by)


class TestFailure:
    @pytest.mark.asyncio
    async def test_retryable_failure_requeues(self, store, payload):
        job = await _claimed(store, payload)

        failed = await store.fail_job(job.id, job.locked_by, "provider timeout", {"error_type": "Timeout"})

        assert failed.status == JobStatus.pending
        assert failed.retry_count == 1
        assert failed.locked_by is None
        assert failed.error_message == "provider timeout"
        assert failed.next_attempt_at is not None

    @pytest.mark.asyncio
    async def test_retries_exhausted(self, store, payload):
        job = await store.create_job(USER, payload, max_retries=1)
        for attempt in range(2):
            claimed = await store.claim_job(job.id, "worker-1")
            assert claimed is not None
            failed = await store.fail_job(job.id, claimed.locked_by, f"boom {attempt}")

        assert failed.status == JobStatus.failed
        assert failed.retry_count == 1
        assert failed.completed_at is not None

    @pytest.mark.asyncio
    async def test_fatal_failure_skips_retries(self, store, payload):
        job = await _claimed(store, payload)

        failed = await store.fail_job(job.id, job.locked_by, "corrupt asset", retryable=False)

        assert failed.status == JobStatus.failed
        assert failed.retry_count == 0

    @pytest.mark.asyncio
    async def test_fail_by_non_owner(self, store, payload):
        job = await _claimed(store, payload)
        with pytest.raises(LeaseLostError):
            await store.fail_job(job.id, "worker-2", "boom")

    @pytest.mark.asyncio
    async def test_fail_unknown_job(self, store):
        with pytest.raises(ResourceNotFoundError):
            await store.fail_job(uuid.uuid4(), "worker-1", "boom")


class TestCancel:
    @pytest.mark.asyncio
    async def test_cancel_pending(self, store, payload):
        job = await store.create_job(USER, payload)

        cancelled = await store.cancel_job(job.id, "changed my mind", user_id=USER)

        assert cancelled.status == JobStatus.cancelled
        assert cancelled.error_message == "changed my mind"
        assert await store.is_cancelled(job.id)

    @pytest.mark.asyncio
    async def test_cancel_processing_stops_worker_writes(self, store, payload):
        job = await _claimed(store, payload)

        await store.cancel_job(job.id)

        with pytest.raises(LeaseLostError):
            await store.report_progress(job.id, job.locked_by, 50)
        with pytest.raises(LeaseLostError):
            await store.complete_job(job.id, job.locked_by, "/renders/a.mp3")
        assert (await store.get_job(job.id)).status == JobStatus.cancelled

    @pytest.mark.asyncio
    async def test_cancel_completed_is_rejected(self, store, payload):
        job = await _claimed(store, payload)
        completed = await store.complete_job(job.id, job.locked_by, "/renders/a.mp3")

        with pytest.raises(JobStateError):
            await store.cancel_job(job.id)

        stored = await store.get_job(job.id)
        assert stored.status == JobStatus.completed
        assert stored.version == completed.version
        assert stored.output_url == "/renders/a.mp3"

    @pytest.mark.asyncio
    async def test_cancel_other_users_job(self, store, payload):
        job = await store.create_job(USER, payload)
        with pytest.raises(ResourceNotFoundError):
            await store.cancel_job(job.id, user_id="someone-else")
        assert (await store.get_job(job.id)).status == JobStatus.pending

    @pytest.mark.asyncio
    async def test_history_records_transitions(self, store, payload):
        job = await _claimed(store, payload)
        await store.cancel_job(job.id, "stop")

        history = await store.history(job.id)
        assert [h.new_status for h in history] == [JobStatus.pending, JobStatus.processing, JobStatus.cancelled]
        assert history[1].worker_id == "worker-1"
        assert history[2].error == "stop"


class TestLeaseExpiry:
    @pytest.mark.asyncio
    async def test_expired_lease_requeued(self, store, payload):
        job = await _claimed(store, payload)
        await asyncio.sleep(0.01)

        assert await store.requeue_expired(lease_seconds=0) == 1

        stored = await store.get_job(job.id)
        assert stored.status == JobStatus.pending
        assert stored.retry_count == 1
        assert stored.locked_by is None
        with pytest.raises(LeaseLostError):
            await store.report_progress(job.id, job.locked_by, 50)

    @pytest.mark.asyncio
    async def test_reclaim_by_same_worker_id_rejects_stale_attempt(self, store, payload):
        stale = await _claimed(store, payload, worker_id="host-render")
        await asyncio.sleep(0.01)
        assert await store.requeue_expired(lease_seconds=0) == 1

        fresh = await store.claim_job(stale.id, "host-render")
        assert fresh is not None
        assert fresh.locked_by != stale.locked_by

        with pytest.raises(LeaseLostError):
            await store.report_progress(stale.id, stale.locked_by, 40)
        with pytest.raises(LeaseLostError):
            await store.complete_job(stale.id, stale.locked_by, "/renders/stale.mp3")
        with pytest.raises(LeaseLostError):
            await store.fail_job(stale.id, stale.locked_by, "boom")
        assert not await store.heartbeat(stale.id, stale.locked_by)

        progressed = await store.report_progress(fresh.id, fresh.locked_by, 40)
        assert progressed.progress == 40
        assert progressed.output_url is None

    @pytest.mark.asyncio
    async def test_expired_lease_without_retries_fails(self, store, payload):
        job = await _claimed(store, payload, max_retries=0)
        await asyncio.sleep(0.01)

        assert await store.requeue_expired(lease_seconds=0) == 1
        assert (await store.get_job(job.id)).status == JobStatus.failed

    @pytest.mark.asyncio
    async def test_fresh_lease_untouched(self, store, payload):
        job = await _claimed(store, payload)

        assert await store.requeue_expired(lease_seconds=300) == 0
        assert (await store.get_job(job.id)).status == JobStatus.processing


class TestListJobs:
    @pytest.mark.asyncio
    async def test_cursor_pagination_newest_first(self, store, payload):
        created = [await store.create_job(USER, payload) for _ in range(5)]
        await store.create_job("someone-else", payload)

        pages = []
        cursor = None
        while True:
            page = await store.list_jobs(JobFilter(user_id=USER), cursor, limit=2)
            pages.append([job.id for job in page.jobs])
            cursor = page.next_cursor
            if cursor is None:
                break

        assert [len(p) for p in pages] == [2, 2, 1]
        assert [job_id for p in pages for job_id in p] == [job.id for job in reversed(created)]

    @pytest.mark.asyncio
    async def test_status_filter(self, store, payload):
        pending = await store.create_job(USER, payload)
        cancelled = await store.create_job(USER, payload)
        await store.cancel_job(cancelled.id)

        page = await store.list_jobs(JobFilter(user_id=USER, status=JobStatus.pending))
        assert [job.id for job in page.jobs] == [pending.id]
        assert page.next_cursor is None

    @pytest.mark.asyncio
    @pytest.mark.parametrize("limit", [0, 51])
    async def test_limit_bounds(self, store, limit):
        with pytest.raises(ValidationError):
            await store.list_jobs(JobFilter(), limit=limit)

    @pytest.mark.asyncio
    async def test_invalid_cursor(self, store):
        with pytest.raises(ValidationError):
            await store.list_jobs(JobFilter(), cursor="not-a-cursor")

    @pytest.mark.asyncio
    async def test_cursor_roundtrip(self, store, payload):
        job = await store.create_job(USER, payload)
        created_at, job_id = decode_cursor(encode_cursor(job))
        assert job_id == job.id
        assert created_at == job.created_at
