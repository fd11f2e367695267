from daily_calls.queue.types import BackoffPolicy, BackoffType


def compute_backoff_delay(policy: BackoffPolicy, attempts_made: int) -> int:
    """
    Delay in milliseconds before the next attempt.

    Args:
        policy: Backoff policy from the job options
        attempts_made: Failed attempts so far (1 after the first failure)

    Returns:
        ``delay_ms * 2^(n-1)`` for exponential backoff, ``delay_ms`` for fixed.
    """
    if attempts_made <= 0:
        return 0
    if policy.type == BackoffType.FIXED:
        return policy.delay_ms
    return policy.delay_ms * 2 ** (attempts_made - 1)
