"""
Redis-backed job queue.

A named queue with retryable jobs, exponential backoff, stalled-job recovery
and retention. Every state transition is a single Lua script, so any number
of consumers in any number of processes can share one queue.

Key layout (P = "<prefix>:<name>"):
    P:job:<id>    hash   job fields
    P:wait        list   ids ready to run (FIFO)
    P:delayed     zset   ids waiting out a backoff, score = ready at (ms)
    P:active      zset   ids being processed, score = lock deadline (ms)
    P:completed   zset   score = finished at (ms)
    P:failed      zset   score = finished at (ms)

Job lifecycle:
    waiting -> active -> completed
                      -> delayed -> waiting   (attempts left)
                      -> failed               (attempts exhausted)
"""
import json
import logging
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Dict, Optional

import redis.asyncio as redis

import config
from app.core.exceptions import DependencyUnavailableError

logger = logging.getLogger(__name__)


class JobState(Enum):
    WAITING = "waiting"
    ACTIVE = "active"
    DELAYED = "delayed"
    COMPLETED = "completed"
    FAILED = "failed"


@dataclass
class Job:
    id: str
    payload: Dict[str, Any]
    state: JobState
    attempts: int = 0
    max_attempts: int = 1
    failed_reason: Optional[str] = None
    result: Optional[Dict[str, Any]] = None
    created_at: Optional[int] = None
    processed_at: Optional[int] = None
    finished_at: Optional[int] = None

    @property
    def attempts_left(self) -> int:
        return max(0, self.max_attempts - self.attempts)


# KEYS: job, wait | ARGV: id, payload, max_attempts, now
ADD_SCRIPT = """
if redis.call('EXISTS', KEYS[1]) == 1 then
    return 0
end
redis.call('HSET', KEYS[1],
    'id', ARGV[1], 'payload', ARGV[2], 'state', 'waiting',
    'attempts', 0, 'max_attempts', ARGV[3], 'created_at', ARGV[4])
redis.call('RPUSH', KEYS[2], ARGV[1])
return 1
"""

# KEYS: wait, delayed, active | ARGV: now, lock_ms, job key prefix
CLAIM_SCRIPT = """
local now = tonumber(ARGV[1])
local due = redis.call('ZRANGEBYSCORE', KEYS[2], '-inf', now)
for _, id in ipairs(due) do
    redis.call('ZREM', KEYS[2], id)
    redis.call('HSET', ARGV[3] .. id, 'state', 'waiting')
    redis.call('RPUSH', KEYS[1], id)
end
while true do
    local id = redis.call('LPOP', KEYS[1])
    if not id then
        return false
    end
    local key = ARGV[3] .. id
    if redis.call('EXISTS', key) == 1 then
        redis.call('HINCRBY', key, 'attempts', 1)
        local deadline = now + tonumber(ARGV[2])
        redis.call('HSET', key, 'state', 'active', 'processed_at', now)
        redis.call('ZADD', KEYS[3], deadline, id)
        return id
    end
end
"""

# KEYS: job, active, completed | ARGV: id, result, now
COMPLETE_SCRIPT = """
if redis.call('HGET', KEYS[1], 'state') ~= 'active' then
    return 0
end
redis.call('ZREM', KEYS[2], ARGV[1])
redis.call('HSET', KEYS[1], 'state', 'completed', 'result', ARGV[2], 'finished_at', ARGV[3])
redis.call('HDEL', KEYS[1], 'failed_reason')
redis.call('ZADD', KEYS[3], ARGV[3], ARGV[1])
return 1
"""

# KEYS: job, active, delayed, failed | ARGV: id, reason, now, retry_at (-1 = terminal)
FAIL_SCRIPT = """
if redis.call('HGET', KEYS[1], 'state') ~= 'active' then
    return 0
end
redis.call('ZREM', KEYS[2], ARGV[1])
redis.call('HSET', KEYS[1], 'failed_reason', ARGV[2])
local retry_at = tonumber(ARGV[4])
if retry_at >= 0 then
    redis.call('HSET', KEYS[1], 'state', 'delayed')
    redis.call('ZADD', KEYS[3], retry_at, ARGV[1])
    return 1
end
redis.call('HSET', KEYS[1], 'state', 'failed', 'finished_at', ARGV[3])
redis.call('ZADD', KEYS[4], ARGV[3], ARGV[1])
return 2
"""

# KEYS: active, wait, failed | ARGV: now, job key prefix, reason
RECOVER_STALLED_SCRIPT = """
local stalled = redis.call('ZRANGEBYSCORE', KEYS[1], '-inf', tonumber(ARGV[1]))
local recovered = 0
for _, id in ipairs(stalled) do
    redis.call('ZREM', KEYS[1], id)
    local key = ARGV[2] .. id
    if redis.call('EXISTS', key) == 1 then
        local attempts = tonumber(redis.call('HGET', key, 'attempts') or '0')
        local max_attempts = tonumber(redis.call('HGET', key, 'max_attempts') or '1')
        if attempts >= max_attempts then
            redis.call('HSET', key, 'state', 'failed', 'failed_reason', ARGV[3], 'finished_at', ARGV[1])
            redis.call('ZADD', KEYS[3], ARGV[1], id)
        else
            redis.call('HSET', key, 'state', 'waiting')
            redis.call('RPUSH', KEYS[2], id)
        end
        recovered = recovered + 1
    end
end
return recovered
"""

# KEYS: completed, failed | ARGV: completed cutoff, completed keep count, failed cutoff, job key prefix
PURGE_SCRIPT = """
local removed = 0
local function drop(zset, ids)
    for _, id in ipairs(ids) do
        redis.call('ZREM', zset, id)
        redis.call('DEL', ARGV[4] .. id)
        removed = removed + 1
    end
end
drop(KEYS[1], redis.call('ZRANGEBYSCORE', KEYS[1], '-inf', ARGV[1]))
local keep = tonumber(ARGV[2])
local total = redis.call('ZCARD', KEYS[1])
if total > keep then
    drop(KEYS[1], redis.call('ZRANGE', KEYS[1], 0, total - keep - 1))
end
drop(KEYS[2], redis.call('ZRANGEBYSCORE', KEYS[2], '-inf', ARGV[3]))
return removed
"""

# KEYS: job, failed, wait | ARGV: id
RETRY_SCRIPT = """
if redis.call('HGET', KEYS[1], 'state') ~= 'failed' then
    return 0
end
redis.call('ZREM', KEYS[2], ARGV[1])
redis.call('HSET', KEYS[1], 'state', 'waiting', 'attempts', 0)
redis.call('HDEL', KEYS[1], 'failed_reason', 'finished_at')
redis.call('RPUSH', KEYS[3], ARGV[1])
return 1
"""


def _now_ms() -> int:
    return int(time.time() * 1000)


class RedisJobQueue:
    """
    Named job queue on Redis.

    Example:
        queue = RedisJobQueue(client, name="referral-creation", prefix="queue:stage")
        await queue.add("referral-123", {"identity": "123"})
        job = await queue.claim()
        ...
        await queue.complete(job, {"position": 812})
    """

    STALLED_REASON = "job stalled more than allowable limit"

    def __init__(
        self,
        redis_client: Optional[redis.Redis],
        name: str,
        prefix: str,
        max_attempts: int = 5,
        backoff_base_ms: int = 2000,
        lock_seconds: int = 60,
        clock: Callable[[], int] = _now_ms,
    ):
        self.redis_client = redis_client
        self.name = name
        self.prefix = prefix
        self.max_attempts = max_attempts
        self.backoff_base_ms = backoff_base_ms
        self.lock_ms = lock_seconds * 1000
        self._clock = clock
        self._scripts: Dict[str, Any] = {}

    # ------------------------------------------------------------------
    # keys & scripts
    # ------------------------------------------------------------------

    @property
    def _base(self) -> str:
        return f"{self.prefix}:{self.name}"

    def _job_key(self, job_id: str) -> str:
        return f"{self._base}:job:{job_id}"

    def _key(self, suffix: str) -> str:
        return f"{self._base}:{suffix}"

    def _client(self) -> redis.Redis:
        if self.redis_client is None:
            raise DependencyUnavailableError(f"queue {self.name}: Redis is not configured")
        return self.redis_client

    def _script(self, name: str, source: str):
        script = self._scripts.get(name)
        if script is None:
            script = self._client().register_script(source)
            self._scripts[name] = script
        return script

    def backoff_ms(self, attempt: int) -> int:
        """Delay before the retry that follows failed attempt number `attempt` (1-based)."""
        return self.backoff_base_ms * (2 ** max(0, attempt - 1))

    # ------------------------------------------------------------------
    # producer side
    # ------------------------------------------------------------------

    async def add(self, job_id: str, payload: Dict[str, Any]) -> bool:
        """
        Enqueue a job under a deterministic id.

        Returns:
            True if the job was added, False if a job with this id still exists.
        """
        added = await self._script("add", ADD_SCRIPT)(
            keys=[self._job_key(job_id), self._key("wait")],
            args=[job_id, json.dumps(payload), self.max_attempts, self._clock()],
        )
        return bool(int(added))

    async def retry(self, job_id: str) -> bool:
        """Move a terminally failed job back to waiting with a fresh attempt budget."""
        moved = await self._script("retry", RETRY_SCRIPT)(
            keys=[self._job_key(job_id), self._key("failed"), self._key("wait")],
            args=[job_id],
        )
        return bool(int(moved))

    # ------------------------------------------------------------------
    # consumer side
    # ------------------------------------------------------------------

    async def claim(self) -> Optional[Job]:
        """Take the next ready job (promoting due delayed jobs first), or None."""
        job_id = await self._script("claim", CLAIM_SCRIPT)(
            keys=[self._key("wait"), self._key("delayed"), self._key("active")],
            args=[self._clock(), self.lock_ms, f"{self._base}:job:"],
        )
        if not job_id:
            return None
        return await self.get_job(job_id)

    async def complete(self, job: Job, result: Optional[Dict[str, Any]] = None) -> bool:
        done = await self._script("complete", COMPLETE_SCRIPT)(
            keys=[self._job_key(job.id), self._key("active"), self._key("completed")],
            args=[job.id, json.dumps(result or {}), self._clock()],
        )
        return bool(int(done))

    async def fail(self, job: Job, reason: str) -> JobState:
        """
        Record a failed attempt.

        Returns:
            JobState.DELAYED when the job will be retried after backoff,
            JobState.FAILED when attempts are exhausted.
        """
        now = self._clock()
        terminal = job.attempts >= job.max_attempts
        retry_at = -1 if terminal else now + self.backoff_ms(job.attempts)
        await self._script("fail", FAIL_SCRIPT)(
            keys=[
                self._job_key(job.id),
                self._key("active"),
                self._key("delayed"),
                self._key("failed"),
            ],
            args=[job.id, reason[:500], now, retry_at],
        )
        return JobState.FAILED if terminal else JobState.DELAYED

    # ------------------------------------------------------------------
    # maintenance
    # ------------------------------------------------------------------

    async def recover_stalled(self) -> int:
        """Return active jobs whose lock deadline passed to waiting (or fail them)."""
        recovered = await self._script("recover", RECOVER_STALLED_SCRIPT)(
            keys=[self._key("active"), self._key("wait"), self._key("failed")],
            args=[self._clock(), f"{self._base}:job:", self.STALLED_REASON],
        )
        return int(recovered)

    async def purge(
        self,
        completed_age_seconds: int = 3600,
        completed_keep: int = 1000,
        failed_age_seconds: int = 86400,
    ) -> int:
        """Drop finished jobs past their retention. Returns the number removed."""
        now = self._clock()
        removed = await self._script("purge", PURGE_SCRIPT)(
            keys=[self._key("completed"), self._key("failed")],
            args=[
                now - completed_age_seconds * 1000,
                completed_keep,
                now - failed_age_seconds * 1000,
                f"{self._base}:job:",
            ],
        )
        return int(removed)

    # ------------------------------------------------------------------
    # inspection
    # ------------------------------------------------------------------

    async def get_job(self, job_id: str) -> Optional[Job]:
        data = await self._client().hgetall(self._job_key(job_id))
        if not data:
            return None
        return _job_from_hash(data)

    async def count_waiting(self) -> int:
        return int(await self._client().llen(self._key("wait")))


def _opt_int(value: Optional[str]) -> Optional[int]:
    return int(value) if value not in (None, "") else None


def _job_from_hash(data: Dict[str, str]) -> Job:
    result = data.get("result")
    return Job(
        id=data["id"],
        payload=json.loads(data.get("payload") or "{}"),
        state=JobState(data.get("state", "waiting")),
        attempts=int(data.get("attempts", 0)),
        max_attempts=int(data.get("max_attempts", 1)),
        failed_reason=data.get("failed_reason") or None,
        result=json.loads(result) if result else None,
        created_at=_opt_int(data.get("created_at")),
        processed_at=_opt_int(data.get("processed_at")),
        finished_at=_opt_int(data.get("finished_at")),
    )


def create_referral_queue(redis_client: Optional[redis.Redis]) -> RedisJobQueue:
    """The referral-creation queue, configured from config."""
    return RedisJobQueue(
        redis_client=redis_client,
        name=config.QUEUE_NAME,
        prefix=config.QUEUE_PREFIX,
        max_attempts=config.QUEUE_MAX_ATTEMPTS,
        backoff_base_ms=config.QUEUE_BACKOFF_BASE_MS,
        lock_seconds=config.QUEUE_LOCK_SECONDS,
    )
