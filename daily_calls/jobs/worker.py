"""
Generic background worker runner.

Reads the desired job name from CLI args or the WORKER_JOB environment
variable and delegates to the appropriate entry point.
"""

import asyncio
import os
import signal
import sys
from collections.abc import Awaitable, Callable

from daily_calls.config import settings
from daily_calls.db.pool import db_pool
from daily_calls.infrastructure.observability.logging import get_logger, setup_logging
from daily_calls.jobs.daily_calls import daily_calls_processor, register_daily_calls_handlers
from daily_calls.providers.factory import (
    close_call_provider,
    get_call_provider,
    validate_call_provider_config,
)
from daily_calls.queue.client import job_queue
from daily_calls.scheduler.cron import call_schedule_trigger
from daily_calls.services.redis_client import fast_redis

logger = get_logger(__name__)

JobCoroutine = Callable[[], Awaitable[None]]


async def _wait_for_shutdown() -> None:
    """Block until SIGTERM or SIGINT."""
    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGTERM, signal.SIGINT):
        try:
            loop.add_signal_handler(sig, stop.set)
        except NotImplementedError:
            logger.warning("Signal handlers unsupported on this platform", signal=sig.name)
    await stop.wait()
    logger.info("Shutdown signal received")


async def start_daily_calls_worker() -> None:
    """
    Run the queue workers and the cron trigger until a shutdown signal.

    On shutdown the trigger stops first, then in-flight jobs drain before
    connections close.
    """
    await db_pool.initialize()
    await fast_redis.initialize()

    provider_config = validate_call_provider_config()
    if not provider_config["valid"]:
        logger.warning("Call provider configuration incomplete", **provider_config)
    get_call_provider()

    register_daily_calls_handlers(job_queue, daily_calls_processor)

    try:
        await job_queue.start()
        call_schedule_trigger.start()
        logger.info(
            "Daily calls worker running",
            queue=job_queue.name,
            concurrency=settings.QUEUE_CONCURRENCY,
            cron=call_schedule_trigger.pattern,
        )
        await _wait_for_shutdown()
    finally:
        await call_schedule_trigger.stop()
        await job_queue.close(drain=True)
        await close_call_provider()
        await fast_redis.close()
        await db_pool.close()
        logger.info("Daily calls worker stopped")


async def run_manual_trigger() -> None:
    """Enqueue one manual fan-out and exit."""
    await fast_redis.initialize()
    try:
        job_id = await call_schedule_trigger.fire(manual=True)
        logger.info("Manual daily calls trigger enqueued", job_id=job_id)
    finally:
        await fast_redis.close()


JOB_REGISTRY: dict[str, JobCoroutine] = {
    "daily_calls": start_daily_calls_worker,
    "trigger_daily_calls": run_manual_trigger,
}


def _resolve_job_name() -> str:
    """Pick the target job from CLI args or WORKER_JOB env variable."""
    if len(sys.argv) > 1:
        return sys.argv[1].strip().lower()
    return os.getenv("WORKER_JOB", "daily_calls").strip().lower()


async def run_worker(job_name: str | None = None) -> None:
    """Run the requested background job."""
    name = (job_name or _resolve_job_name()).strip().lower()
    if name not in JOB_REGISTRY:
        raise ValueError(
            f"Unknown worker job '{name}'. "
            f"Available jobs: {', '.join(sorted(JOB_REGISTRY.keys()))}"
        )

    logger.info("Starting background worker", job=name)
    await JOB_REGISTRY[name]()


def main() -> None:
    """CLI entrypoint."""
    setup_logging(log_level=settings.LOG_LEVEL)
    job_name = _resolve_job_name()
    asyncio.run(run_worker(job_name))


if __name__ == "__main__":
    main()
