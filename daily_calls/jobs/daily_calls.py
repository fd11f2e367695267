"""
Daily calls job handlers.

``schedule-calls`` fans out one ``process-user-call`` job per due user;
``process-user-call`` asks the configured call provider to dial the user.
Both are safe to run more than once for the same job: fan-out relies on
per-user-per-day job ids, dispatch on a call id derived from the job id.
"""

import uuid
from collections.abc import Callable
from datetime import UTC, datetime
from typing import Any

from daily_calls.config import settings
from daily_calls.db.helpers import DatabaseError
from daily_calls.infrastructure.observability.logging import get_logger, mask_phone
from daily_calls.models.domain.call_domain import LIVE_CALL_STATUSES
from daily_calls.providers.base import (
    CallMetadata,
    CallProvider,
    InitiateCallRequest,
    ProviderInitiationFailed,
)
from daily_calls.providers.factory import get_call_provider
from daily_calls.queue.client import JobQueue, job_queue
from daily_calls.queue.types import (
    DEFAULT_JOB_OPTIONS,
    Job,
    JobName,
    ProcessUserCallJobData,
    ScheduleCallsJobData,
)
from daily_calls.repositories.call_repository import CallRepository

logger = get_logger(__name__)

# Namespace for call ids derived from dispatch job ids
CALL_ID_NAMESPACE = uuid.UUID("6f1c2a8e-4d3b-5e7a-9c1f-2b8d4e6a0c35")

# Dispatch guards outlive any realistic redelivery of the same attempt
DISPATCH_GUARD_TTL_SECONDS = 24 * 60 * 60


class LookupFailed(Exception):
    """The user store could not be queried during fan-out."""

    def __init__(self, message: str, operation: str = "find_users_due_for_call", recoverable: bool = True):
        super().__init__(message)
        self.operation = operation
        self.recoverable = recoverable


def call_id_for_job(job_id: str) -> str:
    """Stable call id for a dispatch job, identical across redeliveries."""
    return str(uuid.uuid5(CALL_ID_NAMESPACE, job_id))


def dispatch_job_id(user_id: str, call_date: str) -> str:
    return f"{user_id}:{call_date}"


class DailyCallsProcessor:
    """Handlers for the two daily-calls job kinds."""

    def __init__(
        self,
        queue: JobQueue,
        store=CallRepository,
        provider_factory: Callable[[], CallProvider] = get_call_provider,
        now: Callable[[], datetime] | None = None,
    ):
        self.queue = queue
        self.store = store
        self.provider_factory = provider_factory
        self._now = now or (lambda: datetime.now(UTC))

    async def schedule_calls(self, job: Job) -> dict[str, Any]:
        """
        Enqueue one dispatch job per user due for a call.

        Raises:
            LookupFailed: user store unavailable, the queue retries the fan-out
            QueueUnavailable: a dispatch job could not be enqueued
        """
        trigger = ScheduleCallsJobData.model_validate(job.data)
        now = self._now()

        logger.info(
            "Scheduling daily calls",
            job_id=job.id,
            manual=trigger.manual,
            triggered_at=trigger.triggered_at,
        )

        try:
            users = await self.store.find_users_due_for_call(now)
        except DatabaseError as e:
            logger.error("Failed to look up users due for call", job_id=job.id, error=str(e))
            raise LookupFailed(f"User lookup failed: {e}") from e

        if not users:
            logger.info("No users due for a call", job_id=job.id)
            return {"success": True, "users_scheduled": 0, "job_ids": []}

        job_ids: list[str] = []
        for user in users:
            data = ProcessUserCallJobData(
                user_id=user.user_id,
                phone=user.phone,
                name=user.name,
                scheduled_at=user.scheduled_at.isoformat(),
            )
            options = DEFAULT_JOB_OPTIONS.with_job_id(
                dispatch_job_id(user.user_id, user.call_date.isoformat())
            )
            job_ids.append(await self.queue.enqueue(JobName.PROCESS_USER_CALL, data, options))

        logger.info(
            "Daily calls scheduled",
            job_id=job.id,
            users_scheduled=len(job_ids),
            manual=trigger.manual,
        )
        return {"success": True, "users_scheduled": len(job_ids), "job_ids": job_ids}

    async def process_user_call(self, job: Job) -> dict[str, Any]:
        """
        Place the call for one user.

        Raises:
            ProviderInitiationFailed: the vendor rejected the call or the
                request failed; the queue retries with backoff
        """
        data = ProcessUserCallJobData.model_validate(job.data)
        provider = self.provider_factory()
        call_id = call_id_for_job(job.id)
        attempt = job.attempts_made + 1

        # A previous delivery already got the call placed. Vendors that answer
        # asynchronously leave vendor_call_id empty, so the status decides too.
        existing = await self.store.get_call(call_id)
        if existing is not None and (
            existing.vendor_call_id or existing.status in LIVE_CALL_STATUSES
        ):
            logger.info(
                "Call already placed for this job, not dialing again",
                job_id=job.id,
                call_id=call_id,
                vendor_call_id=existing.vendor_call_id,
                status=existing.status,
            )
            return {
                "success": True,
                "call_id": call_id,
                "vendor_call_id": existing.vendor_call_id,
                "skipped": True,
            }

        # One dial per delivery; deliveries keep counting across operator retries
        guard_key = f"dispatch:{call_id}:{job.deliveries}"
        if not await self.queue.acquire_once(guard_key, DISPATCH_GUARD_TTL_SECONDS):
            logger.warning(
                "Delivery already dispatched by another handler, not dialing",
                job_id=job.id,
                call_id=call_id,
                delivery=job.deliveries,
            )
            return {
                "success": False,
                "call_id": call_id,
                "skipped": True,
                "reason": "duplicate delivery",
            }

        agent_id = provider.default_agent_id
        if provider.requires_agent_id and not agent_id:
            raise ProviderInitiationFailed(
                f"{provider.name} requires an agent id but none is configured",
                provider=provider.name,
                recoverable=False,
            )

        retry_fields = (
            {"retry_count": data.retry_count, "original_call_id": data.original_call_id}
            if data.retry_count
            else {}
        )
        metadata = CallMetadata(call_id=call_id, user_id=data.user_id, name=data.name, **retry_fields)
        request = InitiateCallRequest(to_number=data.phone, agent_id=agent_id, metadata=metadata)
        scheduled_at = datetime.fromisoformat(data.scheduled_at)

        logger.info(
            "Initiating call",
            job_id=job.id,
            call_id=call_id,
            user_id=data.user_id,
            provider=provider.name,
            attempt=attempt,
            max_attempts=job.opts.attempts,
            retry_count=data.retry_count,
            to_number=mask_phone(data.phone),
        )

        try:
            response = await provider.initiate_call(request)
        except ProviderInitiationFailed as e:
            await self._record_failure(job, data, call_id, agent_id, scheduled_at, str(e))
            raise

        if not response.success:
            error = response.error or "call provider returned success=false"
            await self._record_failure(job, data, call_id, agent_id, scheduled_at, error)
            raise ProviderInitiationFailed(error, provider=provider.name)

        try:
            await self.store.record_call_initiated(
                call_id,
                response.vendor_call_id,
                data.user_id,
                to_number=data.phone,
                agent_id=agent_id,
                scheduled_at=scheduled_at,
                vendor_payload=response.model_dump(exclude_none=True),
            )
            recorded = True
        except DatabaseError as e:
            # Vendor accepted the call, the job completes regardless
            logger.error(
                "Call placed but could not be recorded",
                job_id=job.id,
                call_id=call_id,
                vendor_call_id=response.vendor_call_id,
                user_id=data.user_id,
                error=str(e),
            )
            recorded = False

        logger.info(
            "Call initiated",
            job_id=job.id,
            call_id=call_id,
            vendor_call_id=response.vendor_call_id,
            user_id=data.user_id,
            provider=provider.name,
        )
        return {
            "success": True,
            "call_id": call_id,
            "vendor_call_id": response.vendor_call_id,
            "status": response.status,
            "recorded": recorded,
        }

    async def _record_failure(
        self,
        job: Job,
        data: ProcessUserCallJobData,
        call_id: str,
        agent_id: str | None,
        scheduled_at: datetime,
        error: str,
    ) -> None:
        try:
            await self.store.record_call_failed(
                call_id,
                data.user_id,
                data.phone,
                error,
                agent_id=agent_id,
                scheduled_at=scheduled_at,
            )
        except DatabaseError as db_error:
            logger.error(
                "Failed to record call failure",
                job_id=job.id,
                call_id=call_id,
                error=str(db_error),
            )

        if job.attempts_made + 1 >= job.opts.attempts:
            logger.error(
                "Call dispatch failed on final attempt, user was not called",
                job_id=job.id,
                call_id=call_id,
                user_id=data.user_id,
                attempts=job.opts.attempts,
                error=error,
            )
        else:
            logger.warning(
                "Call dispatch attempt failed",
                job_id=job.id,
                call_id=call_id,
                user_id=data.user_id,
                attempt=job.attempts_made + 1,
                max_attempts=job.opts.attempts,
                error=error,
            )


def register_daily_calls_handlers(
    queue: JobQueue,
    processor: DailyCallsProcessor,
    concurrency: int | None = None,
) -> None:
    """Fan-out runs one at a time; dispatch runs QUEUE_CONCURRENCY slots."""
    queue.process(JobName.SCHEDULE_CALLS, processor.schedule_calls, concurrency=1)
    queue.process(
        JobName.PROCESS_USER_CALL,
        processor.process_user_call,
        concurrency=concurrency or settings.QUEUE_CONCURRENCY,
    )


# Singleton instance for application use
daily_calls_processor = DailyCallsProcessor(job_queue)
