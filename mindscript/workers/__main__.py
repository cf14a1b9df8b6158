"""Render worker process.

    python -m mindscript.workers --worker-id render-1

Reads the same environment as the gateway (DATABASE_URL, REDIS_URL, ...).
"""

import argparse
import asyncio
import contextlib
import os
import signal
import socket

from loguru import logger

from mindscript.gateway.config import ProgressChannels, Settings
from mindscript.gateway.db import close_db, create_session_factory
from mindscript.gateway.job_store import JobStore, RetryPolicy
from mindscript.gateway.logging_config import configure_logging
from mindscript.gateway.metrics import init_metrics_db, start_metrics_writer, stop_metrics_writer
from mindscript.gateway.progress import InMemoryProgressChannel, ProgressChannel, RedisProgressChannel
from mindscript.gateway.redis_client import create_redis_client
from mindscript.gateway.storage import get_audio_storage
from mindscript.workers.adapters import create_render_adapter
from mindscript.workers.pipeline import RenderPipeline
from mindscript.workers.reaper import run_lease_reaper
from mindscript.workers.render_loop import RenderWorker


async def run_worker(settings: Settings, worker_id: str, *, once: bool = False, reaper: bool = True) -> None:
    configure_logging(settings.log_dir, name="worker")
    if settings.metrics_db_path is not None:
        init_metrics_db(settings.metrics_db_path)
        await start_metrics_writer()

    redis_client = None
    channel: ProgressChannel
    if settings.progress_channel == ProgressChannels.REDIS:
        redis_client = await create_redis_client(settings)
        channel = RedisProgressChannel(redis_client)
    else:
        channel = InMemoryProgressChannel()

    store = JobStore(
        create_session_factory(settings),
        channel,
        retry_policy=RetryPolicy.from_settings(settings),
        default_max_retries=settings.default_max_retries,
    )
    adapter = create_render_adapter(settings)
    await adapter.initialize()
    worker = RenderWorker(
        store,
        RenderPipeline(adapter, get_audio_storage(settings)),
        worker_id,
        max_concurrent_jobs=settings.worker_max_concurrent_jobs,
        poll_interval_s=settings.worker_poll_interval_seconds,
        lease_seconds=settings.lease_seconds,
    )

    reaper_task = None
    if reaper and not once:
        reaper_task = asyncio.create_task(
            run_lease_reaper(store, settings.lease_seconds, settings.reaper_interval_seconds)
        )

    try:
        if once:
            job = await worker.run_once()
            if job is None:
                logger.info("Queue is empty, nothing to render")
            else:
                logger.info(f"Job {job.id} finished as {job.status}")
        else:
            await worker.run()
    finally:
        if reaper_task is not None:
            reaper_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await reaper_task
        await adapter.close()
        await channel.close()
        if redis_client is not None:
            await redis_client.aclose()
        await close_db()
        await stop_metrics_writer()


async def serve(settings: Settings, worker_id: str, *, once: bool = False, reaper: bool = True) -> None:
    """Run the worker until it returns or SIGTERM/SIGINT cancels it, letting in-flight jobs drain."""
    task = asyncio.create_task(run_worker(settings, worker_id, once=once, reaper=reaper))
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(sig, task.cancel)
    try:
        await task
    except asyncio.CancelledError:
        logger.info(f"Render worker {worker_id} shutdown complete")
    finally:
        for sig in (signal.SIGTERM, signal.SIGINT):
            loop.remove_signal_handler(sig)


def main() -> None:
    parser = argparse.ArgumentParser(description="Render queued audio jobs")
    parser.add_argument(
        "--worker-id",
        default=f"{socket.gethostname()}-{os.getpid()}",
        help="Worker name recorded on claimed jobs",
    )
    parser.add_argument("--once", action="store_true", help="Render at most one job, then exit")
    parser.add_argument("--no-reaper", action="store_true", help="Leave expired leases to another process")
    args = parser.parse_args()

    settings = Settings()  # type: ignore
    asyncio.run(serve(settings, args.worker_id, once=args.once, reaper=not args.no_reaper))


if __name__ == "__main__":
    main()
