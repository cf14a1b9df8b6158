import asyncio

import pytest

from mindscript.contracts import JobPriority, JobStatus
from mindscript.gateway.composition import parse_payload
from mindscript.workers.errors import FatalRenderError, TransientRenderError
from mindscript.workers.render_loop import RenderWorker

USER = "test-user-123"


@pytest.fixture
def worker(store, pipeline) -> RenderWorker:
    return RenderWorker(store, pipeline, "worker-1", poll_interval_s=0.01, lease_seconds=30)


@pytest.mark.asyncio
async def test_run_once_completes_job(store, worker, make_payload):
    job = await store.create_job(USER, parse_payload(make_payload()))

    final = await worker.run_once()

    assert final.id == job.id
    assert final.status == JobStatus.completed
    assert final.progress == 100
    assert final.output_url.endswith(f"{job.id}.mp3")
    assert final.result["layers"] == ["voice", "background", "solfeggio"]
    assert final.locked_by is None
    assert worker.stats.succeeded == 1
    assert worker.stats.total_processed == 1


@pytest.mark.asyncio
async def test_run_once_empty_queue(worker):
    assert await worker.run_once() is None


@pytest.mark.asyncio
async def test_transient_error_retries(store, worker, adapter, make_payload):
    adapter.synthesize_voice.side_effect = TransientRenderError("openai unavailable after 4 attempts")
    await store.create_job(USER, parse_payload(make_payload()))

    final = await worker.run_once()

    assert final.status == JobStatus.pending
    assert final.retry_count == 1
    assert final.error_message == "openai unavailable after 4 attempts"
    assert final.error_details == {"error_type": "TransientRenderError"}
    assert worker.stats.retried == 1


@pytest.mark.asyncio
async def test_unexpected_error_treated_as_transient(store, worker, adapter, make_payload):
    adapter.mix.side_effect = RuntimeError("mixer crashed")
    await store.create_job(USER, parse_payload(make_payload()))

    final = await worker.run_once()

    assert final.status == JobStatus.pending
    assert final.retry_count == 1


@pytest.mark.asyncio
async def test_fatal_error_fails_without_retry(store, worker, adapter, make_payload):
    adapter.fetch_background.side_effect = FatalRenderError("Unreadable audio asset")
    await store.create_job(USER, parse_payload(make_payload()))

    final = await worker.run_once()

    assert final.status == JobStatus.failed
    assert final.retry_count == 0
    assert worker.stats.failed == 1


@pytest.mark.asyncio
async def test_retries_until_exhausted(store, worker, adapter, make_payload):
    adapter.encode.side_effect = TransientRenderError("storage hiccup")
    job = await store.create_job(USER, parse_payload(make_payload()), max_retries=2)

    statuses = []
    for _ in range(3):
        statuses.append((await worker.run_once()).status)

    assert statuses == [JobStatus.pending, JobStatus.pending, JobStatus.failed]
    assert (await store.get_job(job.id)).retry_count == 2
    assert await worker.run_once() is None


@pytest.mark.asyncio
async def test_cancelled_mid_run_stays_cancelled(store, worker, adapter, make_payload):
    job = await store.create_job(USER, parse_payload(make_payload()))

    async def cancel_then_mix(*args, **kwargs):
        await store.cancel_job(job.id, "user cancelled")
        return adapter.normalize.return_value

    adapter.mix.side_effect = cancel_then_mix

    final = await worker.run_once()

    assert final.status == JobStatus.cancelled
    assert final.output_url is None
    adapter.encode.assert_not_awaited()
    assert worker.stats.cancelled == 1


@pytest.mark.asyncio
async def test_run_processes_queue_by_priority(store, pipeline, adapter, make_payload):
    payload = parse_payload(make_payload())
    low = await store.create_job(USER, payload, JobPriority.low)
    urgent = await store.create_job(USER, payload, JobPriority.urgent)
    seen = []

    async def record(script, voice_ref):
        seen.append(voice_ref)
        return adapter.fetch_background.return_value

    adapter.synthesize_voice.side_effect = record
    worker = RenderWorker(store, pipeline, "worker-1", max_concurrent_jobs=1, poll_interval_s=0.01)

    task = asyncio.create_task(worker.run())
    for _ in range(200):
        if worker.stats.total_processed == 2:
            break
        await asyncio.sleep(0.02)
    task.cancel()
    with pytest.raises(asyncio.CancelledError):
        await task

    assert (await store.get_job(urgent.id)).status == JobStatus.completed
    assert (await store.get_job(low.id)).status == JobStatus.completed
    assert (await store.get_job(urgent.id)).started_at <= (await store.get_job(low.id)).started_at
    assert len(seen) == 2


@pytest.mark.asyncio
async def test_heartbeat_keeps_lease(store, pipeline, adapter, make_payload):
    job = await store.create_job(USER, parse_payload(make_payload()))
    worker = RenderWorker(store, pipeline, "worker-1", lease_seconds=0.3)

    async def slow_mix(*args, **kwargs):
        await asyncio.sleep(0.5)
        # lease is 0.3s but the heartbeat has refreshed it
        assert await store.requeue_expired(lease_seconds=0.3) == 0
        return adapter.normalize.return_value

    adapter.mix.side_effect = slow_mix

    final = await worker.run_once()

    assert final.id == job.id
    assert final.status == JobStatus.completed
