"""
Tests for backoff delays and job option handling.
"""

import pytest

from daily_calls.queue.backoff import compute_backoff_delay
from daily_calls.queue.types import (
    DEFAULT_JOB_OPTIONS,
    MANUAL_TRIGGER_OPTIONS,
    BackoffPolicy,
    BackoffType,
    Job,
    JobOptions,
    JobState,
    retention_limit,
)


class TestComputeBackoffDelay:
    def test_exponential_doubles_per_attempt(self):
        policy = BackoffPolicy(type=BackoffType.EXPONENTIAL, delay_ms=2000)

        delays = [compute_backoff_delay(policy, n) for n in (1, 2, 3)]

        assert delays == [2000, 4000, 8000]

    def test_fixed_is_constant(self):
        policy = BackoffPolicy(type=BackoffType.FIXED, delay_ms=500)

        assert compute_backoff_delay(policy, 1) == 500
        assert compute_backoff_delay(policy, 4) == 500

    def test_no_delay_before_first_attempt(self):
        assert compute_backoff_delay(BackoffPolicy(), 0) == 0


class TestJobOptions:
    def test_defaults_match_daily_call_policy(self):
        assert DEFAULT_JOB_OPTIONS.attempts == 3
        assert DEFAULT_JOB_OPTIONS.backoff == BackoffPolicy(BackoffType.EXPONENTIAL, 2000)
        assert DEFAULT_JOB_OPTIONS.remove_on_complete == 100
        assert DEFAULT_JOB_OPTIONS.remove_on_fail == 500

    def test_manual_trigger_is_single_attempt(self):
        assert MANUAL_TRIGGER_OPTIONS.attempts == 1
        assert MANUAL_TRIGGER_OPTIONS.remove_on_complete == 10
        assert MANUAL_TRIGGER_OPTIONS.remove_on_fail == 50

    def test_attempts_must_be_positive(self):
        with pytest.raises(ValueError):
            JobOptions(attempts=0)

    def test_negative_delay_rejected(self):
        with pytest.raises(ValueError):
            JobOptions(delay_ms=-1)

    def test_with_job_id_leaves_original_untouched(self):
        opts = DEFAULT_JOB_OPTIONS.with_job_id("user-1:2024-05-01")

        assert opts.job_id == "user-1:2024-05-01"
        assert DEFAULT_JOB_OPTIONS.job_id is None

    def test_from_dict_restores_options(self):
        opts = JobOptions(
            attempts=5,
            backoff=BackoffPolicy(BackoffType.FIXED, 100),
            remove_on_complete=True,
            remove_on_fail=False,
            job_id="abc",
        )

        assert JobOptions.from_dict(opts.to_dict()) == opts


@pytest.mark.parametrize(
    "remove,expected",
    [(True, 0), (False, -1), (10, 10), (0, 0)],
)
def test_retention_limit(remove, expected):
    assert retention_limit(remove) == expected


def test_job_mapping_keeps_envelope_fields():
    job = Job(
        id="7",
        name="process-user-call",
        data={"user_id": "u1", "phone": "+15550001111"},
        attempts_made=2,
        state=JobState.DELAYED,
        timestamp=1000,
        ready_at=5000,
        failed_reason="boom",
        stacktrace=["trace"],
    )

    mapping = job.to_mapping()
    restored = Job.from_mapping(mapping)

    assert all(isinstance(value, str) for value in mapping.values())
    assert restored == job
