"""
Recurring trigger for the daily calls fan-out.

Every worker process may run this loop. The trigger job id is derived from
the cron fire time, so all processes firing the same slot enqueue one job.
"""

import asyncio
from collections.abc import Awaitable, Callable
from datetime import UTC, datetime

from apscheduler.triggers.cron import CronTrigger

from daily_calls.config import settings
from daily_calls.infrastructure.observability.logging import get_logger
from daily_calls.queue.client import JobQueue, job_queue
from daily_calls.queue.store import QueueUnavailable
from daily_calls.queue.types import (
    MANUAL_TRIGGER_OPTIONS,
    SCHEDULED_TRIGGER_OPTIONS,
    JobName,
    ScheduleCallsJobData,
)

logger = get_logger(__name__)


def repeat_job_id(fire_time: datetime) -> str:
    return f"repeat:{JobName.SCHEDULE_CALLS.value}:{int(fire_time.timestamp() * 1000)}"


class CallScheduleTrigger:
    """Enqueues ``schedule-calls`` on a cron cadence or on demand."""

    def __init__(
        self,
        queue: JobQueue,
        pattern: str | None = None,
        now: Callable[[], datetime] | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.queue = queue
        self.pattern = pattern or settings.SCHEDULE_CRON
        self.trigger = CronTrigger.from_crontab(self.pattern, timezone=UTC)
        self._now = now or (lambda: datetime.now(UTC))
        self._sleep = sleep
        self._running = False
        self._task: asyncio.Task | None = None
        self.last_fire_time: datetime | None = None
        self.last_job_id: str | None = None

    def next_fire_time(self, now: datetime | None = None) -> datetime:
        """Next cron slot strictly after the last one fired."""
        return self.trigger.get_next_fire_time(self.last_fire_time, now or self._now())

    async def fire(self, manual: bool = False, fire_time: datetime | None = None) -> str:
        """
        Enqueue one trigger job.

        Manual triggers get a single attempt; cron triggers are deduplicated
        on their fire time.

        Raises:
            QueueUnavailable: the job could not be enqueued
        """
        triggered_at = fire_time or self._now()
        data = ScheduleCallsJobData(triggered_at=triggered_at.isoformat(), manual=manual)

        if manual:
            options = MANUAL_TRIGGER_OPTIONS
        else:
            options = SCHEDULED_TRIGGER_OPTIONS.with_job_id(repeat_job_id(triggered_at))

        job_id = await self.queue.enqueue(JobName.SCHEDULE_CALLS, data, options)
        logger.info(
            "Daily calls trigger enqueued",
            job_id=job_id,
            manual=manual,
            triggered_at=data.triggered_at,
        )
        return job_id

    async def run(self, max_runs: int | None = None) -> None:
        """Sleep until each cron slot and fire. Errors are logged, the loop continues."""
        self._running = True
        runs = 0
        logger.info("Daily calls scheduler started", pattern=self.pattern)

        while self._running:
            now = self._now()
            fire_time = self.next_fire_time(now)
            delay = (fire_time - now).total_seconds()
            if delay > 0:
                await self._sleep(delay)
            if not self._running:
                break

            try:
                self.last_job_id = await self.fire(manual=False, fire_time=fire_time)
            except QueueUnavailable as e:
                logger.error("Scheduled trigger could not be enqueued", error=str(e))
            except Exception as e:
                logger.error(
                    "Unexpected error firing scheduled trigger",
                    error=str(e),
                    error_type=type(e).__name__,
                )
            self.last_fire_time = fire_time

            runs += 1
            if max_runs is not None and runs >= max_runs:
                break

        self._running = False
        logger.info("Daily calls scheduler stopped")

    def start(self) -> asyncio.Task:
        if self._task is None or self._task.done():
            self._task = asyncio.create_task(self.run(), name="daily-calls-scheduler")
        return self._task

    async def stop(self) -> None:
        self._running = False
        if self._task is not None:
            self._task.cancel()
            await asyncio.gather(self._task, return_exceptions=True)
            self._task = None

    def get_status(self) -> dict:
        return {
            "pattern": self.pattern,
            "running": self._running,
            "next_run": self.next_fire_time().isoformat(),
            "last_run": self.last_fire_time.isoformat() if self.last_fire_time else None,
            "last_job_id": self.last_job_id,
        }


# Singleton instance for application use
call_schedule_trigger = CallScheduleTrigger(job_queue)
