"""
Job queue types: job names, states, per-job options and the job envelope.

The envelope is stored as a Redis hash, so every field round-trips through
``to_mapping`` / ``from_mapping`` as strings.
"""

import json
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any

from pydantic import BaseModel


class JobName(str, Enum):
    SCHEDULE_CALLS = "schedule-calls"
    PROCESS_USER_CALL = "process-user-call"


class JobState(str, Enum):
    WAITING = "waiting"
    DELAYED = "delayed"
    ACTIVE = "active"
    COMPLETED = "completed"
    FAILED = "failed"


class BackoffType(str, Enum):
    EXPONENTIAL = "exponential"
    FIXED = "fixed"


@dataclass(frozen=True, slots=True)
class BackoffPolicy:
    type: BackoffType = BackoffType.EXPONENTIAL
    delay_ms: int = 2000


@dataclass(frozen=True, slots=True)
class JobOptions:
    """
    Retry, backoff and retention policy for a single job.

    ``remove_on_complete`` / ``remove_on_fail`` accept a count (keep the newest
    N terminal jobs), ``True`` (drop the job as soon as it finishes) or
    ``False`` (keep every terminal job).
    """

    attempts: int = 3
    backoff: BackoffPolicy = field(default_factory=BackoffPolicy)
    remove_on_complete: int | bool = 100
    remove_on_fail: int | bool = 500
    job_id: str | None = None
    delay_ms: int = 0

    def __post_init__(self):
        if self.attempts < 1:
            raise ValueError("attempts must be at least 1")
        if self.delay_ms < 0:
            raise ValueError("delay_ms must not be negative")

    def with_job_id(self, job_id: str) -> "JobOptions":
        return replace(self, job_id=job_id)

    def with_delay(self, delay_ms: int) -> "JobOptions":
        return replace(self, delay_ms=delay_ms)

    def to_dict(self) -> dict[str, Any]:
        return {
            "attempts": self.attempts,
            "backoff": {"type": self.backoff.type.value, "delay_ms": self.backoff.delay_ms},
            "remove_on_complete": self.remove_on_complete,
            "remove_on_fail": self.remove_on_fail,
            "job_id": self.job_id,
            "delay_ms": self.delay_ms,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "JobOptions":
        backoff = data.get("backoff") or {}
        return cls(
            attempts=int(data.get("attempts", 3)),
            backoff=BackoffPolicy(
                type=BackoffType(backoff.get("type", BackoffType.EXPONENTIAL.value)),
                delay_ms=int(backoff.get("delay_ms", 2000)),
            ),
            remove_on_complete=data.get("remove_on_complete", 100),
            remove_on_fail=data.get("remove_on_fail", 500),
            job_id=data.get("job_id"),
            delay_ms=int(data.get("delay_ms", 0)),
        )


def retention_limit(remove: int | bool) -> int:
    """
    Translate a retention option into the store's keep count.

    -1 keeps everything, 0 drops the job immediately, N keeps the newest N.
    """
    if remove is True:
        return 0
    if remove is False:
        return -1
    return max(int(remove), 0)


# Per-user dispatch defaults (3 attempts, 2s exponential backoff)
DEFAULT_JOB_OPTIONS = JobOptions()

# Manual triggers run exactly once
MANUAL_TRIGGER_OPTIONS = JobOptions(attempts=1, remove_on_complete=10, remove_on_fail=50)

# Cron-fired triggers keep a short history
SCHEDULED_TRIGGER_OPTIONS = JobOptions(remove_on_complete=10, remove_on_fail=50)


class ScheduleCallsJobData(BaseModel):
    """Payload of the fan-out trigger job."""

    triggered_at: str
    manual: bool = False


class ProcessUserCallJobData(BaseModel):
    """Payload of a per-user dispatch job."""

    user_id: str
    phone: str
    name: str | None = None
    scheduled_at: str
    retry_count: int = 0
    original_call_id: str | None = None


def _dump(value: Any) -> str:
    return json.dumps(value, separators=(",", ":"), default=str)


def _optional_int(value: str | None) -> int | None:
    if value in (None, ""):
        return None
    return int(value)


@dataclass(slots=True)
class Job:
    """Job envelope. Only the queue mutates these fields."""

    id: str
    name: str
    data: dict[str, Any]
    opts: JobOptions = field(default_factory=JobOptions)
    attempts_made: int = 0
    state: JobState = JobState.WAITING
    timestamp: int = 0
    processed_on: int | None = None
    finished_on: int | None = None
    ready_at: int | None = None
    failed_reason: str | None = None
    stacktrace: list[str] = field(default_factory=list)
    return_value: Any = None
    # Claim counter, never reset; the token identifies the current claim
    deliveries: int = 0
    lock_token: str | None = None

    def to_mapping(self) -> dict[str, str]:
        """Flatten the envelope into Redis hash fields."""
        return {
            "id": self.id,
            "name": self.name,
            "data": _dump(self.data),
            "opts": _dump(self.opts.to_dict()),
            "attempts_made": str(self.attempts_made),
            "state": self.state.value,
            "timestamp": str(self.timestamp),
            "processed_on": "" if self.processed_on is None else str(self.processed_on),
            "finished_on": "" if self.finished_on is None else str(self.finished_on),
            "ready_at": "" if self.ready_at is None else str(self.ready_at),
            "failed_reason": self.failed_reason or "",
            "stacktrace": _dump(self.stacktrace),
            "return_value": _dump(self.return_value),
            "deliveries": str(self.deliveries),
            "lock_token": self.lock_token or "",
        }

    @classmethod
    def from_mapping(cls, mapping: dict[str, str]) -> "Job":
        return cls(
            id=mapping["id"],
            name=mapping["name"],
            data=json.loads(mapping.get("data") or "{}"),
            opts=JobOptions.from_dict(json.loads(mapping.get("opts") or "{}")),
            attempts_made=int(mapping.get("attempts_made") or 0),
            state=JobState(mapping.get("state") or JobState.WAITING.value),
            timestamp=int(mapping.get("timestamp") or 0),
            processed_on=_optional_int(mapping.get("processed_on")),
            finished_on=_optional_int(mapping.get("finished_on")),
            ready_at=_optional_int(mapping.get("ready_at")),
            failed_reason=mapping.get("failed_reason") or None,
            stacktrace=json.loads(mapping.get("stacktrace") or "[]"),
            return_value=json.loads(mapping.get("return_value") or "null"),
            deliveries=int(mapping.get("deliveries") or 0),
            lock_token=mapping.get("lock_token") or None,
        )

    def to_summary(self) -> dict[str, Any]:
        """JSON-friendly view for operator endpoints."""
        return {
            "id": self.id,
            "name": self.name,
            "data": self.data,
            "state": self.state.value,
            "attempts_made": self.attempts_made,
            "max_attempts": self.opts.attempts,
            "timestamp": self.timestamp,
            "processed_on": self.processed_on,
            "finished_on": self.finished_on,
            "failed_reason": self.failed_reason,
            "return_value": self.return_value,
        }
