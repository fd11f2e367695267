from collections import deque
from datetime import datetime

import pytest

from daily_calls.auth.verify import auth_dependency
from daily_calls.models.domain.call_domain import LIVE_CALL_STATUSES, CallRecord, DueUser, UserProfile
from daily_calls.queue.client import JobQueue
from daily_calls.queue.store import QueueUnavailable
from daily_calls.queue.types import Job, JobName, JobState

START_MS = 1_700_000_000_000


@pytest.fixture
def auth_override():
    def _override():
        return {"sub": "user-123"}

    return _override


@pytest.fixture
def apply_auth_override(auth_override):
    def _apply(app):
        app.dependency_overrides[auth_dependency] = auth_override

    return _apply


class FakeClock:
    """Millisecond clock that only moves when told to."""

    def __init__(self, start_ms: int = START_MS):
        self.now_ms = start_ms

    def __call__(self) -> int:
        return self.now_ms

    def advance(self, ms: int) -> None:
        self.now_ms += ms


def _released(job: Job) -> dict[str, str]:
    mapping = job.to_mapping()
    mapping["lock_token"] = ""
    return mapping


class InMemoryJobStore:
    """
    Same contract as RedisJobStore, kept in dicts.

    Jobs are stored as hash mappings so every read goes through
    Job.from_mapping like the Redis store does.
    """

    def __init__(self, queue_name: str = "daily-calls"):
        self.queue_name = queue_name
        self.jobs: dict[str, dict[str, str]] = {}
        self.wait: dict[str, deque] = {}
        self.delayed: dict[str, dict[str, int]] = {}
        self.active: dict[str, dict[str, int]] = {}
        self.completed: dict[str, int] = {}
        self.failed: dict[str, int] = {}
        self.guards: set[str] = set()
        self.available = True
        self._counter = 0

    def _check(self):
        if not self.available:
            raise QueueUnavailable("redis down", operation="test")

    def _source(self, name: str, state: JobState) -> dict[str, int]:
        if state == JobState.ACTIVE:
            return self.active.setdefault(name, {})
        if state == JobState.DELAYED:
            return self.delayed.setdefault(name, {})
        return self.completed if state == JobState.COMPLETED else self.failed

    async def next_id(self) -> str:
        self._check()
        self._counter += 1
        return str(self._counter)

    async def add(self, job: Job) -> bool:
        self._check()
        if job.id in self.jobs:
            return False
        self.jobs[job.id] = job.to_mapping()
        if job.state == JobState.DELAYED and job.ready_at:
            self.delayed.setdefault(job.name, {})[job.id] = job.ready_at
        else:
            self.wait.setdefault(job.name, deque()).appendleft(job.id)
        return True

    async def claim(self, name: str, now_ms: int, lock_deadline_ms: int, lock_token: str) -> Job | None:
        self._check()
        waiting = self.wait.setdefault(name, deque())
        while waiting:
            job_id = waiting.pop()
            if job_id in self.jobs:
                self.active.setdefault(name, {})[job_id] = lock_deadline_ms
                mapping = self.jobs[job_id]
                mapping.update({"state": "active", "processed_on": str(now_ms), "lock_token": lock_token})
                mapping["deliveries"] = str(int(mapping.get("deliveries") or 0) + 1)
                return Job.from_mapping(self.jobs[job_id])
        return None

    async def extend_lock(self, job: Job, lock_deadline_ms: int) -> bool:
        self._check()
        active = self.active.setdefault(job.name, {})
        if job.id not in active or not self._owns(job):
            return False
        active[job.id] = lock_deadline_ms
        return True

    def _owns(self, job: Job) -> bool:
        return self.jobs.get(job.id, {}).get("lock_token", "") == (job.lock_token or "")

    def _take(self, job: Job, source: JobState, lock_expired_before: int) -> bool:
        src = self._source(job.name, source)
        if job.id not in src:
            return False
        if lock_expired_before and src[job.id] > lock_expired_before:
            return False
        if job.lock_token and not self._owns(job):
            return False
        del src[job.id]
        return True

    async def finish(self, job, keep, source=JobState.ACTIVE, lock_expired_before=0) -> bool:
        self._check()
        if not self._take(job, source, lock_expired_before):
            return False
        if keep == 0:
            self.jobs.pop(job.id, None)
            return True
        self.jobs[job.id] = _released(job)
        target = self.completed if job.state == JobState.COMPLETED else self.failed
        target[job.id] = job.finished_on or 0
        if keep > 0:
            ordered = sorted(target.items(), key=lambda item: (item[1], item[0]))
            for evicted_id, _ in ordered[: max(len(ordered) - keep, 0)]:
                del target[evicted_id]
                self.jobs.pop(evicted_id, None)
        return True

    async def requeue(self, job, source=JobState.ACTIVE, lock_expired_before=0) -> bool:
        self._check()
        if not self._take(job, source, lock_expired_before):
            return False
        self.jobs[job.id] = _released(job)
        if job.state == JobState.DELAYED and job.ready_at:
            self.delayed.setdefault(job.name, {})[job.id] = job.ready_at
        else:
            self.wait.setdefault(job.name, deque()).appendleft(job.id)
        return True

    async def promote_delayed(self, name: str, now_ms: int, limit: int = 100) -> int:
        self._check()
        delayed = self.delayed.setdefault(name, {})
        ready = sorted((score, job_id) for job_id, score in delayed.items() if score <= now_ms)
        for _, job_id in ready[:limit]:
            del delayed[job_id]
            self.jobs[job_id]["state"] = "waiting"
            self.wait.setdefault(name, deque()).appendleft(job_id)
        return len(ready[:limit])

    async def stalled_ids(self, name: str, now_ms: int) -> list[str]:
        self._check()
        return [job_id for job_id, deadline in self.active.get(name, {}).items() if deadline <= now_ms]

    async def acquire_once(self, key: str, ttl_s: int) -> bool:
        self._check()
        if key in self.guards:
            return False
        self.guards.add(key)
        return True

    async def get_job(self, job_id: str) -> Job | None:
        self._check()
        mapping = self.jobs.get(job_id)
        return Job.from_mapping(dict(mapping)) if mapping else None

    async def counts(self) -> dict[str, int]:
        self._check()
        return {
            JobState.WAITING.value: sum(len(ids) for ids in self.wait.values()),
            JobState.DELAYED.value: sum(len(ids) for ids in self.delayed.values()),
            JobState.ACTIVE.value: sum(len(ids) for ids in self.active.values()),
            JobState.COMPLETED.value: len(self.completed),
            JobState.FAILED.value: len(self.failed),
        }

    async def list_jobs(self, state: JobState, start: int = 0, end: int = -1) -> list[Job]:
        self._check()
        if state in (JobState.COMPLETED, JobState.FAILED):
            source = self.completed if state == JobState.COMPLETED else self.failed
            ids = [job_id for job_id, _ in sorted(source.items(), key=lambda item: -item[1])]
        elif state == JobState.WAITING:
            ids = [job_id for name in JobName for job_id in self.wait.get(name.value, [])]
        else:
            ids = [job_id for name in JobName for job_id in self._source(name.value, state)]
        ids = ids[start : None if end == -1 else end + 1]
        return [Job.from_mapping(dict(self.jobs[job_id])) for job_id in ids if job_id in self.jobs]

    async def ping(self) -> bool:
        return self.available

    def jobs_named(self, name: JobName, state: JobState) -> list[Job]:
        source = self.completed if state == JobState.COMPLETED else self.failed
        return [
            Job.from_mapping(dict(self.jobs[job_id]))
            for job_id in source
            if self.jobs[job_id]["name"] == name.value
        ]


class FakeCallStore:
    """In-memory users/calls store with the CallRepository method set."""

    def __init__(self, due_users: list[DueUser] | None = None, profiles: dict | None = None):
        self.due_users = list(due_users or [])
        self.profiles: dict[str, UserProfile] = dict(profiles or {})
        self.calls: dict[str, CallRecord] = {}
        self.failed_calls: list[dict] = []
        self.status_updates: list[dict] = []
        self.calls_today: dict[str, int] = {}
        self.lookup_error: Exception | None = None
        self.update_error: Exception | None = None
        self.persist_initiated = True

    async def find_users_due_for_call(self, now: datetime) -> list[DueUser]:
        if self.lookup_error:
            raise self.lookup_error
        return list(self.due_users)

    async def get_call(self, call_id: str) -> CallRecord | None:
        return self.calls.get(call_id)

    async def record_call_initiated(
        self, call_id, vendor_call_id, user_id, to_number, agent_id=None, scheduled_at=None, vendor_payload=None
    ) -> CallRecord:
        record = CallRecord(
            id=call_id,
            user_id=user_id,
            to_number=to_number,
            status="ringing",
            vendor_call_id=vendor_call_id,
            agent_id=agent_id,
        )
        if self.persist_initiated:
            self.calls[call_id] = record
        return record

    async def record_call_failed(self, call_id, user_id, to_number, error, agent_id=None, scheduled_at=None):
        self.failed_calls.append({"call_id": call_id, "user_id": user_id, "error": error})
        existing = self.calls.get(call_id)
        if existing is not None and (existing.vendor_call_id or existing.status in LIVE_CALL_STATUSES):
            return
        self.calls[call_id] = CallRecord(
            id=call_id, user_id=user_id, to_number=to_number, status="failed", agent_id=agent_id
        )

    async def record_call_status(
        self,
        vendor_call_id,
        status,
        transcript=None,
        recording_url=None,
        duration=None,
        vendor_payload=None,
        call_id=None,
    ) -> CallRecord | None:
        if self.update_error:
            raise self.update_error
        match = next((c for c in self.calls.values() if vendor_call_id and c.vendor_call_id == vendor_call_id), None)
        if match is None and call_id:
            match = self.calls.get(call_id)
        if match is None:
            return None
        match.status = status
        self.status_updates.append(
            {"call_id": match.id, "status": status, "transcript": transcript, "duration": duration}
        )
        return match

    async def count_calls_since(self, user_id: str, since: datetime) -> int:
        return self.calls_today.get(user_id, 1)

    async def get_user_profile(self, user_id: str) -> UserProfile | None:
        return self.profiles.get(user_id)

    async def get_user_name(self, user_id: str) -> str | None:
        profile = self.profiles.get(user_id)
        return profile.name if profile else None


@pytest.fixture
def fake_clock():
    return FakeClock()


@pytest.fixture
def memory_store():
    return InMemoryJobStore()


@pytest.fixture
def job_queue(memory_store, fake_clock):
    return JobQueue(memory_store, clock=fake_clock, poll_interval_s=0.01, drain_timeout_s=1.0)


@pytest.fixture
def call_store():
    return FakeCallStore()
