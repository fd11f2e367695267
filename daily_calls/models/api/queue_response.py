# daily_calls/models/api/queue_response.py
"""
Queue API Response Models
Response bodies for the trigger, status and failed-jobs endpoints.
"""

from typing import Any

from pydantic import BaseModel, ConfigDict, Field


class TriggerResponse(BaseModel):
    """Response for POST /queue/trigger."""

    model_config = ConfigDict(populate_by_name=True)

    success: bool
    job_id: str = Field(serialization_alias="jobId")
    message: str


class QueueErrorResponse(BaseModel):
    error: str
    details: str | None = None


class SchedulerStatus(BaseModel):
    pattern: str
    next_run: str | None = None
    last_run: str | None = None
    last_job_id: str | None = None
    running: bool = False


class QueueStatusResponse(BaseModel):
    """Response for GET /queue/status."""

    queue: str
    healthy: bool
    counts: dict[str, int]
    scheduler: SchedulerStatus
    timestamp: str


class JobSummary(BaseModel):
    id: str
    name: str
    data: dict[str, Any]
    state: str
    attempts_made: int
    max_attempts: int
    timestamp: int
    processed_on: int | None = None
    finished_on: int | None = None
    failed_reason: str | None = None
    return_value: Any = None


class FailedJobsResponse(BaseModel):
    """Response for GET /queue/failed."""

    jobs: list[JobSummary]
    total: int


class RetryJobResponse(BaseModel):
    success: bool
    job_id: str = Field(serialization_alias="jobId")
    state: str
