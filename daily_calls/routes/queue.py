"""
Operator endpoints for the daily calls queue.

All routes require a valid Supabase session.
"""

from datetime import UTC, datetime

from fastapi import APIRouter, Depends, Query
from fastapi.responses import JSONResponse

from daily_calls.auth.verify import auth_dependency
from daily_calls.infrastructure.observability.logging import get_logger
from daily_calls.models.api.queue_response import (
    FailedJobsResponse,
    JobSummary,
    QueueErrorResponse,
    QueueStatusResponse,
    RetryJobResponse,
    SchedulerStatus,
    TriggerResponse,
)
from daily_calls.queue.client import InvalidJobState, JobNotFound, JobQueue
from daily_calls.queue.store import QueueUnavailable
from daily_calls.queue.types import JobState
from daily_calls.routes.deps import get_job_queue, get_schedule_trigger
from daily_calls.scheduler.cron import CallScheduleTrigger

logger = get_logger(__name__)

router = APIRouter(prefix="/queue", tags=["queue"])

ERROR_RESPONSES = {
    401: {"model": QueueErrorResponse, "description": "Not authenticated"},
    500: {"model": QueueErrorResponse, "description": "Queue unavailable"},
}


def _error(status_code: int, error: str, details: str | None = None) -> JSONResponse:
    body = {"error": error}
    if details is not None:
        body["details"] = details
    return JSONResponse(status_code=status_code, content=body)


@router.post("/trigger", response_model=TriggerResponse, responses=ERROR_RESPONSES)
async def trigger_daily_calls(
    user: dict = Depends(auth_dependency),
    trigger: CallScheduleTrigger = Depends(get_schedule_trigger),
):
    """Run the daily calls fan-out now (single attempt, no retries)."""
    try:
        job_id = await trigger.fire(manual=True)
    except Exception as e:
        logger.error(
            "Failed to trigger daily calls",
            user_id=user.get("sub"),
            error=str(e),
            error_type=type(e).__name__,
        )
        return _error(500, "Failed to trigger queue", str(e))

    logger.info("Daily calls triggered manually", user_id=user.get("sub"), job_id=job_id)
    return TriggerResponse(
        success=True,
        job_id=job_id,
        message="Daily calls scheduler triggered successfully",
    )


@router.get("/status", response_model=QueueStatusResponse, responses=ERROR_RESPONSES)
async def queue_status(
    user: dict = Depends(auth_dependency),
    queue: JobQueue = Depends(get_job_queue),
    trigger: CallScheduleTrigger = Depends(get_schedule_trigger),
):
    """Job counts per state plus the cron schedule."""
    try:
        counts = await queue.get_job_counts()
    except QueueUnavailable as e:
        return _error(500, "Failed to get queue status", str(e))

    return QueueStatusResponse(
        queue=queue.name,
        healthy=True,
        counts=counts,
        scheduler=SchedulerStatus(**trigger.get_status()),
        timestamp=datetime.now(UTC).isoformat(),
    )


@router.get("/failed", response_model=FailedJobsResponse, responses=ERROR_RESPONSES)
async def failed_jobs(
    start: int = Query(0, ge=0),
    limit: int = Query(50, ge=1, le=500),
    user: dict = Depends(auth_dependency),
    queue: JobQueue = Depends(get_job_queue),
):
    """Retained failed jobs, newest first. Users who were never called show up here."""
    try:
        jobs = await queue.get_jobs(JobState.FAILED, start, start + limit - 1)
        counts = await queue.get_job_counts()
    except QueueUnavailable as e:
        return _error(500, "Failed to list failed jobs", str(e))

    return FailedJobsResponse(
        jobs=[JobSummary(**job.to_summary()) for job in jobs],
        total=counts.get(JobState.FAILED.value, 0),
    )


@router.post("/jobs/{job_id}/retry", response_model=RetryJobResponse, responses=ERROR_RESPONSES)
async def retry_failed_job(
    job_id: str,
    user: dict = Depends(auth_dependency),
    queue: JobQueue = Depends(get_job_queue),
):
    """Requeue a failed job with a fresh attempt budget."""
    try:
        job = await queue.retry_job(job_id)
    except JobNotFound as e:
        return _error(404, "Job not found", str(e))
    except InvalidJobState as e:
        return _error(409, "Job cannot be retried", str(e))
    except QueueUnavailable as e:
        return _error(500, "Failed to retry job", str(e))

    logger.info("Failed job retried", user_id=user.get("sub"), job_id=job_id)
    return RetryJobResponse(success=True, job_id=job.id, state=job.state.value)
