"""Returns jobs whose worker stopped writing back to the queue."""

import asyncio

from loguru import logger

from mindscript.gateway.job_store import JobStore


async def run_lease_reaper(
    store: JobStore,
    lease_seconds: float,
    interval_s: float,
    name: str = "lease",
) -> None:
    """Periodically requeue (or fail, when out of retries) processing jobs with an expired lease.

    Args:
        store: Job store
        lease_seconds: Seconds without a progress write or heartbeat before a job is considered abandoned
        interval_s: Seconds between scans
        name: Name for logging
    """
    logger.info(f"{name} reaper starting (lease={lease_seconds}s, interval={interval_s}s)")

    while True:
        try:
            touched = await store.requeue_expired(lease_seconds)
            if touched:
                logger.warning(f"{name} reaper reclaimed {touched} job(s)")
            await asyncio.sleep(interval_s)
        except asyncio.CancelledError:
            logger.info(f"{name} reaper shutting down")
            raise
        except Exception as e:
            logger.exception(f"Error in {name} reaper: {e}")
            await asyncio.sleep(interval_s)
