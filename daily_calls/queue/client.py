"""
Job queue: enqueue, worker slots, retry/backoff, retention and stall recovery.

The queue owns every job envelope. Handlers receive a copy of the job and
report success by returning and failure by raising; the queue decides
whether that means a retry, a terminal failure or completion. An exception
with ``recoverable = False`` fails the job without further attempts.
"""

import asyncio
import copy
import time
import traceback
import uuid
from collections.abc import Awaitable, Callable
from typing import Any

from pydantic import BaseModel

from daily_calls.config import settings
from daily_calls.infrastructure.observability.logging import get_logger
from daily_calls.queue.backoff import compute_backoff_delay
from daily_calls.queue.store import QueueUnavailable, RedisJobStore
from daily_calls.queue.types import (
    DEFAULT_JOB_OPTIONS,
    Job,
    JobName,
    JobOptions,
    JobState,
    retention_limit,
)
from daily_calls.services.redis_client import fast_redis

logger = get_logger(__name__)

JobHandler = Callable[[Job], Awaitable[Any]]

STALLED_REASON = "job stalled more than allowable limit"
MAX_STACKTRACE_ENTRIES = 10


class JobNotFound(Exception):
    """Raised when an operator action names a job the queue no longer holds."""


class InvalidJobState(Exception):
    """Raised when an operator action does not apply to the job's current state."""


def _now_ms() -> int:
    return int(time.time() * 1000)


class JobQueue:
    """
    Durable at-least-once queue over a Redis job store.

    Lifecycle: register handlers with ``process()``, then ``start()`` spawns
    the worker slots plus a maintenance task (delayed promotion, stall
    recovery). ``close()`` stops accepting work and drains in-flight jobs.
    """

    def __init__(
        self,
        store: RedisJobStore,
        *,
        lock_duration_ms: int = 30_000,
        stalled_interval_ms: int = 30_000,
        poll_interval_s: float = 1.0,
        drain_timeout_s: float = 30.0,
        clock: Callable[[], int] = _now_ms,
    ):
        self.store = store
        self.lock_duration_ms = lock_duration_ms
        self.stalled_interval_ms = stalled_interval_ms
        self.poll_interval_s = poll_interval_s
        self.drain_timeout_s = drain_timeout_s
        self.clock = clock

        self._handlers: dict[str, JobHandler] = {}
        self._concurrency: dict[str, int] = {}
        self._slot_tasks: list[asyncio.Task] = []
        self._maintenance_task: asyncio.Task | None = None
        self._accepting = True
        self._stopping = False
        self._last_stall_check = 0

    @property
    def name(self) -> str:
        return self.store.queue_name

    @property
    def is_running(self) -> bool:
        return bool(self._slot_tasks) and not self._stopping

    # ------------------------------------------------------------------
    # Producer side
    # ------------------------------------------------------------------

    async def enqueue(
        self,
        name: JobName | str,
        data: BaseModel | dict[str, Any],
        options: JobOptions | None = None,
    ) -> str:
        """
        Add a job to the queue.

        A caller-chosen ``options.job_id`` that already exists is not added
        again; the existing id is returned.

        Raises:
            QueueUnavailable: Redis is unreachable or the queue is closed
        """
        if not self._accepting:
            raise QueueUnavailable("Queue is closed", operation="enqueue", recoverable=False)

        opts = options or DEFAULT_JOB_OPTIONS
        job_name = name.value if isinstance(name, JobName) else name
        payload = data.model_dump(mode="json") if isinstance(data, BaseModel) else dict(data)

        job_id = opts.job_id or await self.store.next_id()
        now = self.clock()
        delayed = opts.delay_ms > 0
        job = Job(
            id=job_id,
            name=job_name,
            data=payload,
            opts=opts,
            state=JobState.DELAYED if delayed else JobState.WAITING,
            timestamp=now,
            ready_at=now + opts.delay_ms if delayed else None,
        )

        added = await self.store.add(job)
        if added:
            logger.info(
                "Job added",
                queue=self.name,
                job_id=job_id,
                job_name=job_name,
                state=job.state.value,
                attempts=opts.attempts,
                delay_ms=opts.delay_ms,
            )
        else:
            logger.info(
                "Job already exists, duplicate not added",
                queue=self.name,
                job_id=job_id,
                job_name=job_name,
            )
        return job_id

    # ------------------------------------------------------------------
    # Consumer side
    # ------------------------------------------------------------------

    def process(self, name: JobName | str, handler: JobHandler, concurrency: int = 1) -> None:
        """Register the handler for a job name."""
        job_name = name.value if isinstance(name, JobName) else name
        if job_name in self._handlers:
            raise ValueError(f"Handler already registered for '{job_name}'")
        if concurrency < 1:
            raise ValueError("concurrency must be at least 1")
        self._handlers[job_name] = handler
        self._concurrency[job_name] = concurrency

    async def process_next(self, name: JobName | str) -> Job | None:
        """
        Claim and run one waiting job.

        Returns the job as the queue left it (completed, delayed, waiting or
        failed), or None if nothing was waiting.
        """
        job_name = name.value if isinstance(name, JobName) else name
        handler = self._handlers.get(job_name)
        if handler is None:
            raise ValueError(f"No handler registered for '{job_name}'")

        now = self.clock()
        job = await self.store.claim(
            job_name, now, now + self.lock_duration_ms, lock_token=uuid.uuid4().hex
        )
        if job is None:
            return None

        logger.info(
            "Job active",
            queue=self.name,
            job_id=job.id,
            job_name=job_name,
            attempt=job.attempts_made + 1,
            max_attempts=job.opts.attempts,
            delivery=job.deliveries,
        )

        heartbeat = asyncio.create_task(self._heartbeat(job))
        error: Exception | None = None
        result: Any = None
        try:
            result = await handler(copy.deepcopy(job))
        except Exception as e:
            error = e
        finally:
            heartbeat.cancel()

        if error is not None:
            return await self._handle_failure(job, error)
        return await self._handle_success(job, result)

    async def _heartbeat(self, job: Job) -> None:
        interval = self.lock_duration_ms / 2 / 1000
        while True:
            await asyncio.sleep(interval)
            try:
                extended = await self.store.extend_lock(job, self.clock() + self.lock_duration_ms)
            except QueueUnavailable:
                continue
            if not extended:
                logger.warning("Job lock lost while running", queue=self.name, job_id=job.id)
                return

    async def _handle_success(self, job: Job, result: Any) -> Job:
        job.attempts_made += 1
        job.state = JobState.COMPLETED
        job.finished_on = self.clock()
        job.return_value = result
        job.failed_reason = None

        moved = await self.store.finish(job, keep=retention_limit(job.opts.remove_on_complete))
        job.lock_token = None
        if not moved:
            logger.warning(
                "Job finished after its lock was lost, result ignored",
                queue=self.name,
                job_id=job.id,
            )
            return job

        logger.info(
            "Job completed",
            queue=self.name,
            job_id=job.id,
            job_name=job.name,
            attempts_made=job.attempts_made,
            duration_ms=job.finished_on - (job.processed_on or job.finished_on),
        )
        return job

    async def _handle_failure(self, job: Job, error: Exception) -> Job:
        job.attempts_made += 1
        job.failed_reason = str(error) or type(error).__name__
        formatted = "".join(traceback.format_exception(type(error), error, error.__traceback__))
        job.stacktrace = (job.stacktrace + [formatted])[-MAX_STACKTRACE_ENTRIES:]
        now = self.clock()

        retryable = getattr(error, "recoverable", True)
        if retryable and job.attempts_made < job.opts.attempts:
            delay = compute_backoff_delay(job.opts.backoff, job.attempts_made)
            job.state = JobState.DELAYED if delay > 0 else JobState.WAITING
            job.ready_at = now + delay
            moved = await self.store.requeue(job)
            if moved:
                logger.warning(
                    "Job failed, retry scheduled",
                    queue=self.name,
                    job_id=job.id,
                    job_name=job.name,
                    attempts_made=job.attempts_made,
                    max_attempts=job.opts.attempts,
                    delay_ms=delay,
                    error=job.failed_reason,
                    error_type=type(error).__name__,
                )
        else:
            job.state = JobState.FAILED
            job.finished_on = now
            moved = await self.store.finish(job, keep=retention_limit(job.opts.remove_on_fail))
            if moved:
                logger.error(
                    "Job failed permanently",
                    queue=self.name,
                    job_id=job.id,
                    job_name=job.name,
                    attempts_made=job.attempts_made,
                    retryable=retryable,
                    error=job.failed_reason,
                    error_type=type(error).__name__,
                )

        job.lock_token = None
        if not moved:
            logger.warning(
                "Job failed after its lock was lost, failure ignored",
                queue=self.name,
                job_id=job.id,
            )
        return job

    # ------------------------------------------------------------------
    # Maintenance
    # ------------------------------------------------------------------

    async def promote_delayed(self) -> int:
        """Move delayed jobs whose backoff has elapsed back to waiting."""
        now = self.clock()
        promoted = 0
        for job_name in self._known_names():
            promoted += await self.store.promote_delayed(job_name, now)
        if promoted:
            logger.debug("Delayed jobs promoted", queue=self.name, count=promoted)
        return promoted

    async def recover_stalled(self) -> list[str]:
        """
        Requeue active jobs whose lock expired (worker died mid-attempt).

        A stall counts as an attempt; a stall on the last attempt fails the job.
        """
        now = self.clock()
        recovered: list[str] = []
        for job_name in self._known_names():
            for job_id in await self.store.stalled_ids(job_name, now):
                job = await self.store.get_job(job_id)
                if job is None:
                    continue

                job.attempts_made += 1
                if job.attempts_made >= job.opts.attempts:
                    job.state = JobState.FAILED
                    job.finished_on = now
                    job.failed_reason = STALLED_REASON
                    moved = await self.store.finish(
                        job,
                        keep=retention_limit(job.opts.remove_on_fail),
                        lock_expired_before=now,
                    )
                else:
                    job.state = JobState.WAITING
                    job.ready_at = None
                    moved = await self.store.requeue(job, lock_expired_before=now)

                if moved:
                    recovered.append(job_id)
                    logger.warning(
                        "Stalled job recovered",
                        queue=self.name,
                        job_id=job_id,
                        job_name=job_name,
                        attempts_made=job.attempts_made,
                        state=job.state.value,
                    )
        self._last_stall_check = now
        return recovered

    def _known_names(self) -> list[str]:
        return list(self._handlers) or [name.value for name in JobName]

    # ------------------------------------------------------------------
    # Operator operations
    # ------------------------------------------------------------------

    async def get_job(self, job_id: str) -> Job | None:
        return await self.store.get_job(job_id)

    async def get_job_counts(self) -> dict[str, int]:
        return await self.store.counts()

    async def get_jobs(self, state: JobState, start: int = 0, end: int = -1) -> list[Job]:
        return await self.store.list_jobs(state, start, end)

    async def acquire_once(self, key: str, ttl_s: int) -> bool:
        """At-most-once marker for side effects performed by handlers."""
        return await self.store.acquire_once(key, ttl_s)

    async def retry_job(self, job_id: str) -> Job:
        """Move a failed job back to waiting with a fresh attempt budget."""
        job = await self.store.get_job(job_id)
        if job is None:
            raise JobNotFound(f"Job {job_id} not found")
        if job.state != JobState.FAILED:
            raise InvalidJobState(f"Job {job_id} is {job.state.value}, only failed jobs can be retried")

        job.attempts_made = 0
        job.state = JobState.WAITING
        job.failed_reason = None
        job.finished_on = None
        job.ready_at = None
        moved = await self.store.requeue(job, source=JobState.FAILED)
        if not moved:
            raise InvalidJobState(f"Job {job_id} is no longer in the failed set")

        logger.info("Failed job requeued by operator", queue=self.name, job_id=job_id)
        return job

    async def check_health(self) -> dict[str, Any]:
        try:
            redis_ok = await self.store.ping()
            counts = await self.store.counts() if redis_ok else None
            return {
                "healthy": redis_ok,
                "service": "job_queue",
                "queue": self.name,
                "accepting": self._accepting,
                "running": self.is_running,
                "counts": counts,
            }
        except Exception as e:
            logger.error("Job queue health check failed", error=str(e))
            return {"healthy": False, "service": "job_queue", "queue": self.name, "error": str(e)}

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> None:
        """Spawn worker slots for every registered handler plus maintenance."""
        if self._slot_tasks:
            logger.warning("Job queue already started", queue=self.name)
            return

        self._accepting = True
        self._stopping = False
        for job_name, concurrency in self._concurrency.items():
            for slot in range(concurrency):
                self._slot_tasks.append(
                    asyncio.create_task(self._slot_loop(job_name), name=f"{job_name}:{slot}")
                )
        self._maintenance_task = asyncio.create_task(self._maintenance_loop(), name="maintenance")

        logger.info(
            "Job queue started",
            queue=self.name,
            handlers={name: self._concurrency[name] for name in self._handlers},
        )

    async def _slot_loop(self, job_name: str) -> None:
        while not self._stopping:
            try:
                job = await self.process_next(job_name)
            except QueueUnavailable as e:
                logger.warning("Queue unavailable, backing off", queue=self.name, error=str(e))
                job = None
            except Exception as e:
                logger.error(
                    "Unexpected error in worker slot",
                    queue=self.name,
                    job_name=job_name,
                    error=str(e),
                    error_type=type(e).__name__,
                )
                job = None

            if job is None and not self._stopping:
                await asyncio.sleep(self.poll_interval_s)

    async def _maintenance_loop(self) -> None:
        while not self._stopping:
            try:
                await self.promote_delayed()
                if self.clock() - self._last_stall_check >= self.stalled_interval_ms:
                    await self.recover_stalled()
            except QueueUnavailable as e:
                logger.warning("Queue maintenance skipped", queue=self.name, error=str(e))
            except Exception as e:
                logger.error(
                    "Unexpected error in queue maintenance",
                    queue=self.name,
                    error=str(e),
                    error_type=type(e).__name__,
                )
            await asyncio.sleep(self.poll_interval_s)

    async def close(self, drain: bool = True) -> None:
        """
        Stop accepting jobs, let in-flight handlers finish, then cancel.

        Jobs still running after the drain timeout are cancelled and left
        active; stall recovery requeues them once their lock expires.
        """
        self._accepting = False
        self._stopping = True

        if self._maintenance_task:
            self._maintenance_task.cancel()
            await asyncio.gather(self._maintenance_task, return_exceptions=True)
            self._maintenance_task = None

        if self._slot_tasks:
            pending = {task for task in self._slot_tasks if not task.done()}
            if drain and pending:
                _, pending = await asyncio.wait(pending, timeout=self.drain_timeout_s)
            for task in pending:
                task.cancel()
            await asyncio.gather(*self._slot_tasks, return_exceptions=True)
            if pending:
                logger.warning(
                    "Job queue closed with jobs still running",
                    queue=self.name,
                    cancelled=len(pending),
                )
            self._slot_tasks = []

        logger.info("Job queue closed", queue=self.name)


# Process-wide queue bound to the shared Redis pool
job_queue = JobQueue(
    RedisJobStore(fast_redis, settings.QUEUE_NAME),
    lock_duration_ms=settings.QUEUE_LOCK_DURATION_MS,
    stalled_interval_ms=settings.QUEUE_STALLED_INTERVAL_MS,
    poll_interval_s=settings.QUEUE_POLL_INTERVAL_SECONDS,
    drain_timeout_s=settings.QUEUE_DRAIN_TIMEOUT_SECONDS,
)
