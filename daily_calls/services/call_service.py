"""
Call status reconciliation.

Applies normalized webhook payloads to the calls table and schedules a
follow-up call when the user did not pick up.
"""

from dataclasses import replace
from datetime import UTC, datetime, timedelta
from typing import Any

from daily_calls.config import settings
from daily_calls.infrastructure.observability.logging import get_logger, mask_phone
from daily_calls.models.domain.call_domain import CallRecord, local_day_start, resolve_timezone
from daily_calls.providers.base import UNANSWERED_STATUSES, CallStatus, CallWebhookPayload
from daily_calls.queue.store import QueueUnavailable
from daily_calls.queue.types import DEFAULT_JOB_OPTIONS, JobName, ProcessUserCallJobData

logger = get_logger(__name__)

# A follow-up call is a single attempt; it must not be retried by the queue
RETRY_CALL_OPTIONS = replace(DEFAULT_JOB_OPTIONS, attempts=1)


async def schedule_retry_if_needed(
    call: CallRecord,
    status: CallStatus,
    *,
    store,
    queue,
    now: datetime | None = None,
) -> bool:
    """
    Queue another call for the user when ``status`` means nobody answered.

    The number of calls the user already had on their local date decides the
    retry number; after CALL_RETRY_MAX follow-ups no more are queued.

    Returns:
        True if a follow-up call job was enqueued
    """
    if status not in UNANSWERED_STATUSES:
        return False

    now = now or datetime.now(UTC)
    profile = await store.get_user_profile(call.user_id)
    tz = resolve_timezone(profile.local_tz if profile else None, settings.DEFAULT_TIMEZONE)

    calls_today = await store.count_calls_since(call.user_id, local_day_start(now, tz))
    retry_count = max(calls_today - 1, 0)

    if retry_count >= settings.CALL_RETRY_MAX:
        logger.info(
            "Max call retries reached, no follow-up scheduled",
            call_id=call.id,
            user_id=call.user_id,
            retry_count=retry_count,
            max_retries=settings.CALL_RETRY_MAX,
        )
        return False

    next_retry = retry_count + 1
    delay = timedelta(minutes=settings.CALL_RETRY_DELAY_MINUTES)
    local_date = now.astimezone(tz).date().isoformat()
    job_data = ProcessUserCallJobData(
        user_id=call.user_id,
        phone=call.to_number,
        name=profile.name if profile else None,
        scheduled_at=(now + delay).isoformat(),
        retry_count=next_retry,
        original_call_id=call.id,
    )
    options = RETRY_CALL_OPTIONS.with_job_id(f"{call.user_id}:{local_date}:retry-{next_retry}")

    try:
        job_id = await queue.enqueue(
            JobName.PROCESS_USER_CALL,
            job_data,
            options.with_delay(int(delay.total_seconds() * 1000)),
        )
    except QueueUnavailable as e:
        logger.error(
            "Failed to schedule follow-up call",
            call_id=call.id,
            user_id=call.user_id,
            error=str(e),
            error_type=type(e).__name__,
        )
        return False

    logger.info(
        "Follow-up call scheduled",
        call_id=call.id,
        user_id=call.user_id,
        job_id=job_id,
        retry=next_retry,
        max_retries=settings.CALL_RETRY_MAX,
        delay_minutes=settings.CALL_RETRY_DELAY_MINUTES,
        to_number=mask_phone(call.to_number),
    )
    return True


async def process_call_status_update(
    payload: CallWebhookPayload,
    raw_payload: dict[str, Any] | None,
    *,
    store,
    queue,
) -> dict[str, Any]:
    """
    Record a webhook status update and maybe schedule a follow-up call.

    Raises:
        DatabaseError: the status update could not be written
    """
    call = await store.record_call_status(
        payload.vendor_call_id,
        payload.status.value,
        transcript=payload.transcript,
        recording_url=payload.recording_url,
        duration=payload.duration,
        vendor_payload=raw_payload,
        call_id=payload.call_id,
    )

    if call is None:
        logger.warning(
            "Call not found for webhook",
            vendor_call_id=payload.vendor_call_id,
            call_id=payload.call_id,
            status=payload.status.value,
        )
        return {"success": False, "error": "Call not found"}

    logger.info(
        "Call status updated",
        call_id=call.id,
        user_id=call.user_id,
        status=payload.status.value,
        has_transcript=bool(payload.transcript),
        has_recording=bool(payload.recording_url),
    )

    retry_scheduled = await schedule_retry_if_needed(call, payload.status, store=store, queue=queue)

    return {
        "success": True,
        "call_id": call.id,
        "status": payload.status.value,
        "retry_scheduled": retry_scheduled,
    }
