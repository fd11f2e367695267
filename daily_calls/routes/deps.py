"""
FastAPI dependencies for the process-wide singletons.

Tests replace these through ``app.dependency_overrides``.
"""

from daily_calls.providers.base import CallProvider
from daily_calls.providers.factory import get_call_provider
from daily_calls.queue.client import JobQueue, job_queue
from daily_calls.repositories.call_repository import CallRepository
from daily_calls.scheduler.cron import CallScheduleTrigger, call_schedule_trigger


def get_job_queue() -> JobQueue:
    return job_queue


def get_schedule_trigger() -> CallScheduleTrigger:
    return call_schedule_trigger


def get_provider() -> CallProvider:
    return get_call_provider()


def get_call_store():
    return CallRepository
