"""
Redis-backed job store.

Key layout (prefix ``queue:<queue name>``):

    <prefix>:id                  INCR counter for generated job ids
    <prefix>:job:<id>            hash holding the job envelope
    <prefix>:wait:<job name>     list, LPUSH to add / RPOP to claim
    <prefix>:delayed:<job name>  zset scored by ready-at (ms)
    <prefix>:active:<job name>   zset scored by lock deadline (ms)
    <prefix>:completed           zset scored by finished-on (ms)
    <prefix>:failed              zset scored by finished-on (ms)
    <prefix>:guard:<key>         SET NX markers for at-most-once side effects

Every state transition runs as a single Lua script so a job id is never in
two state sets at once and a claim hands a job to exactly one caller.
"""

from collections.abc import Iterator
from contextlib import contextmanager

from redis.exceptions import RedisError

from daily_calls.infrastructure.observability.logging import get_logger
from daily_calls.queue.types import Job, JobName, JobState
from daily_calls.services.redis_client import FastRedisClient

logger = get_logger(__name__)


class QueueUnavailable(Exception):
    """Raised when the queue's backing store cannot be reached."""

    def __init__(self, message: str, operation: str = "unknown", recoverable: bool = True):
        super().__init__(message)
        self.operation = operation
        self.recoverable = recoverable


# KEYS: job hash, wait list, delayed zset
# ARGV: id, ready_at (0 = ready now), hash field/value pairs...
ADD_JOB_LUA = """
if redis.call('EXISTS', KEYS[1]) == 1 then
    return 0
end
redis.call('HSET', KEYS[1], unpack(ARGV, 3))
if tonumber(ARGV[2]) > 0 then
    redis.call('ZADD', KEYS[3], ARGV[2], ARGV[1])
else
    redis.call('LPUSH', KEYS[2], ARGV[1])
end
return 1
"""

# KEYS: wait list, active zset
# ARGV: job key prefix, now (ms), lock deadline (ms), lock token
# Returns {id, {field, value, ...}} or nil when nothing is waiting
CLAIM_JOB_LUA = """
while true do
    local id = redis.call('RPOP', KEYS[1])
    if not id then
        return nil
    end
    local job_key = ARGV[1] .. id
    -- Ids whose hash was evicted are dropped
    if redis.call('EXISTS', job_key) == 1 then
        redis.call('ZADD', KEYS[2], ARGV[3], id)
        redis.call('HSET', job_key, 'state', 'active', 'processed_on', ARGV[2], 'lock_token', ARGV[4])
        redis.call('HINCRBY', job_key, 'deliveries', 1)
        return {id, redis.call('HGETALL', job_key)}
    end
end
"""

# KEYS: active zset, job hash
# ARGV: id, lock deadline (ms), lock token
EXTEND_LOCK_LUA = """
if redis.call('HGET', KEYS[2], 'lock_token') ~= ARGV[3] then
    return 0
end
if not redis.call('ZSCORE', KEYS[1], ARGV[1]) then
    return 0
end
redis.call('ZADD', KEYS[1], ARGV[2], ARGV[1])
return 1
"""

# KEYS: source zset, target zset, job hash
# ARGV: id, finished_on (ms), keep (-1 all / 0 none / N newest),
#       job key prefix, lock expired before (ms, 0 = no check),
#       lock token ('' = no check), fields...
FINISH_JOB_LUA = """
local score = redis.call('ZSCORE', KEYS[1], ARGV[1])
if not score then
    return -1
end
local expired_before = tonumber(ARGV[5])
if expired_before > 0 and tonumber(score) > expired_before then
    return -1
end
if ARGV[6] ~= '' and redis.call('HGET', KEYS[3], 'lock_token') ~= ARGV[6] then
    return -1
end
redis.call('ZREM', KEYS[1], ARGV[1])
local keep = tonumber(ARGV[3])
if keep == 0 then
    redis.call('DEL', KEYS[3])
    return 1
end
redis.call('HSET', KEYS[3], unpack(ARGV, 7))
redis.call('ZADD', KEYS[2], ARGV[2], ARGV[1])
if keep > 0 then
    local excess = redis.call('ZCARD', KEYS[2]) - keep
    if excess > 0 then
        local evicted = redis.call('ZRANGE', KEYS[2], 0, excess - 1)
        for _, evicted_id in ipairs(evicted) do
            redis.call('DEL', ARGV[4] .. evicted_id)
        end
        redis.call('ZREMRANGEBYRANK', KEYS[2], 0, excess - 1)
    end
end
return 1
"""

# KEYS: source zset, delayed zset, wait list, job hash
# ARGV: id, ready_at (0 = ready now), lock expired before (ms, 0 = no check),
#       lock token ('' = no check), fields...
REQUEUE_JOB_LUA = """
local score = redis.call('ZSCORE', KEYS[1], ARGV[1])
if not score then
    return -1
end
local expired_before = tonumber(ARGV[3])
if expired_before > 0 and tonumber(score) > expired_before then
    return -1
end
if ARGV[4] ~= '' and redis.call('HGET', KEYS[4], 'lock_token') ~= ARGV[4] then
    return -1
end
redis.call('ZREM', KEYS[1], ARGV[1])
redis.call('HSET', KEYS[4], unpack(ARGV, 5))
if tonumber(ARGV[2]) > 0 then
    redis.call('ZADD', KEYS[2], ARGV[2], ARGV[1])
else
    redis.call('LPUSH', KEYS[3], ARGV[1])
end
return 1
"""

# KEYS: delayed zset, wait list
# ARGV: now (ms), job key prefix, batch limit
PROMOTE_DELAYED_LUA = """
local ids = redis.call('ZRANGEBYSCORE', KEYS[1], '-inf', ARGV[1], 'LIMIT', 0, tonumber(ARGV[3]))
for _, id in ipairs(ids) do
    redis.call('ZREM', KEYS[1], id)
    redis.call('HSET', ARGV[2] .. id, 'state', 'waiting')
    redis.call('LPUSH', KEYS[2], id)
end
return #ids
"""


def _pairs(mapping: dict[str, str]) -> list[str]:
    flat: list[str] = []
    for key, value in mapping.items():
        flat.extend((key, value))
    return flat


def _to_mapping(flat: list[str]) -> dict[str, str]:
    return dict(zip(flat[::2], flat[1::2], strict=True))


def _released(job: Job) -> dict[str, str]:
    """Hash fields for a job leaving its claim."""
    mapping = job.to_mapping()
    mapping["lock_token"] = ""
    return mapping


@contextmanager
def _translate_errors(operation: str) -> Iterator[None]:
    try:
        yield
    except (RedisError, ConnectionError, RuntimeError) as e:
        logger.error(
            "Job store operation failed",
            operation=operation,
            error=str(e),
            error_type=type(e).__name__,
        )
        raise QueueUnavailable(f"Queue backing store unavailable: {e}", operation=operation) from e


class RedisJobStore:
    """Atomic job state transitions over the shared Redis connection pool."""

    def __init__(self, redis_client: FastRedisClient, queue_name: str):
        self.redis = redis_client
        self.queue_name = queue_name
        self.prefix = f"queue:{queue_name}"

    # ------------------------------------------------------------------
    # Keys
    # ------------------------------------------------------------------

    def job_key(self, job_id: str) -> str:
        return f"{self.prefix}:job:{job_id}"

    def _job_key_prefix(self) -> str:
        return f"{self.prefix}:job:"

    def _wait_key(self, name: str) -> str:
        return f"{self.prefix}:wait:{name}"

    def _delayed_key(self, name: str) -> str:
        return f"{self.prefix}:delayed:{name}"

    def _active_key(self, name: str) -> str:
        return f"{self.prefix}:active:{name}"

    def _terminal_key(self, state: JobState) -> str:
        return f"{self.prefix}:{state.value}"

    def _source_key(self, name: str, state: JobState) -> str:
        if state == JobState.ACTIVE:
            return self._active_key(name)
        if state == JobState.DELAYED:
            return self._delayed_key(name)
        return self._terminal_key(state)

    async def _client(self):
        await self.redis._ensure_initialized()
        if self.redis.client is None:
            raise ConnectionError("Redis client not available")
        return self.redis.client

    # ------------------------------------------------------------------
    # Transitions
    # ------------------------------------------------------------------

    async def next_id(self) -> str:
        with _translate_errors("next_id"):
            client = await self._client()
            return str(await client.incr(f"{self.prefix}:id"))

    async def add(self, job: Job) -> bool:
        """Store a new job. Returns False if a job with this id already exists."""
        ready_at = job.ready_at if job.state == JobState.DELAYED and job.ready_at else 0
        with _translate_errors("add"):
            client = await self._client()
            added = await client.eval(
                ADD_JOB_LUA,
                3,
                self.job_key(job.id),
                self._wait_key(job.name),
                self._delayed_key(job.name),
                job.id,
                ready_at,
                *_pairs(job.to_mapping()),
            )
        return bool(added)

    async def claim(
        self, name: str, now_ms: int, lock_deadline_ms: int, lock_token: str
    ) -> Job | None:
        """Atomically move the oldest waiting job to active under ``lock_token``."""
        with _translate_errors("claim"):
            client = await self._client()
            result = await client.eval(
                CLAIM_JOB_LUA,
                2,
                self._wait_key(name),
                self._active_key(name),
                self._job_key_prefix(),
                now_ms,
                lock_deadline_ms,
                lock_token,
            )
        if not result:
            return None
        return Job.from_mapping(_to_mapping(result[1]))

    async def extend_lock(self, job: Job, lock_deadline_ms: int) -> bool:
        """Push the lock deadline forward. False when the job's claim is no longer current."""
        with _translate_errors("extend_lock"):
            client = await self._client()
            extended = await client.eval(
                EXTEND_LOCK_LUA,
                2,
                self._active_key(job.name),
                self.job_key(job.id),
                job.id,
                lock_deadline_ms,
                job.lock_token or "",
            )
        return int(extended) == 1

    async def finish(
        self,
        job: Job,
        keep: int,
        source: JobState = JobState.ACTIVE,
        lock_expired_before: int = 0,
    ) -> bool:
        """
        Move a job into its terminal set (``job.state``) and apply retention.

        Returns False when the job was not in ``source`` or ``job.lock_token``
        no longer matches the stored claim (lock lost). Nothing is written then.
        """
        with _translate_errors("finish"):
            client = await self._client()
            result = await client.eval(
                FINISH_JOB_LUA,
                3,
                self._source_key(job.name, source),
                self._terminal_key(job.state),
                self.job_key(job.id),
                job.id,
                job.finished_on or 0,
                keep,
                self._job_key_prefix(),
                lock_expired_before,
                job.lock_token or "",
                *_pairs(_released(job)),
            )
        return int(result) == 1

    async def requeue(
        self,
        job: Job,
        source: JobState = JobState.ACTIVE,
        lock_expired_before: int = 0,
    ) -> bool:
        """
        Move a job back to delayed (``job.ready_at`` set) or waiting.

        Returns False when the job was not in ``source`` or its claim is stale.
        """
        ready_at = job.ready_at if job.state == JobState.DELAYED and job.ready_at else 0
        with _translate_errors("requeue"):
            client = await self._client()
            result = await client.eval(
                REQUEUE_JOB_LUA,
                4,
                self._source_key(job.name, source),
                self._delayed_key(job.name),
                self._wait_key(job.name),
                self.job_key(job.id),
                job.id,
                ready_at,
                lock_expired_before,
                job.lock_token or "",
                *_pairs(_released(job)),
            )
        return int(result) == 1

    async def promote_delayed(self, name: str, now_ms: int, limit: int = 100) -> int:
        with _translate_errors("promote_delayed"):
            client = await self._client()
            promoted = await client.eval(
                PROMOTE_DELAYED_LUA,
                2,
                self._delayed_key(name),
                self._wait_key(name),
                now_ms,
                self._job_key_prefix(),
                limit,
            )
        return int(promoted)

    async def stalled_ids(self, name: str, now_ms: int) -> list[str]:
        """Ids of active jobs whose lock deadline has passed."""
        with _translate_errors("stalled_ids"):
            client = await self._client()
            return list(await client.zrangebyscore(self._active_key(name), "-inf", now_ms))

    async def acquire_once(self, key: str, ttl_s: int) -> bool:
        """True only for the first caller to claim ``key`` within ``ttl_s``."""
        with _translate_errors("acquire_once"):
            return await self.redis.set_if_absent(f"{self.prefix}:guard:{key}", "1", ttl_s)

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def get_job(self, job_id: str) -> Job | None:
        with _translate_errors("get_job"):
            client = await self._client()
            mapping = await client.hgetall(self.job_key(job_id))
        if not mapping:
            return None
        return Job.from_mapping(mapping)

    async def counts(self) -> dict[str, int]:
        with _translate_errors("counts"):
            client = await self._client()
            async with client.pipeline(transaction=False) as pipe:
                for name in JobName:
                    pipe.llen(self._wait_key(name.value))
                    pipe.zcard(self._delayed_key(name.value))
                    pipe.zcard(self._active_key(name.value))
                pipe.zcard(self._terminal_key(JobState.COMPLETED))
                pipe.zcard(self._terminal_key(JobState.FAILED))
                results = await pipe.execute()

        counts = {state.value: 0 for state in JobState}
        per_name = results[: len(JobName) * 3]
        for offset in range(0, len(per_name), 3):
            counts[JobState.WAITING.value] += int(per_name[offset])
            counts[JobState.DELAYED.value] += int(per_name[offset + 1])
            counts[JobState.ACTIVE.value] += int(per_name[offset + 2])
        counts[JobState.COMPLETED.value] = int(results[-2])
        counts[JobState.FAILED.value] = int(results[-1])
        return counts

    async def list_jobs(self, state: JobState, start: int = 0, end: int = -1) -> list[Job]:
        """Jobs in a state, newest first for terminal states."""
        with _translate_errors("list_jobs"):
            client = await self._client()
            if state in (JobState.COMPLETED, JobState.FAILED):
                ids = await client.zrevrange(self._terminal_key(state), start, end)
            else:
                ids = []
                for name in JobName:
                    if state == JobState.WAITING:
                        ids.extend(await client.lrange(self._wait_key(name.value), 0, -1))
                    else:
                        ids.extend(await client.zrange(self._source_key(name.value, state), 0, -1))
                ids = ids[start : None if end == -1 else end + 1]

        jobs = []
        for job_id in ids:
            job = await self.get_job(job_id)
            if job is not None:
                jobs.append(job)
        return jobs

    async def ping(self) -> bool:
        return await self.redis.ping()
