"""Redis-backed dispatch queue.

Key layout for a queue named ``crm-webhook-queue``::

    dealhook:queue:crm-webhook-queue:job:<id>   hash  job fields
    dealhook:queue:crm-webhook-queue:wait       list  ready job ids
    dealhook:queue:crm-webhook-queue:active     list  leased job ids
    dealhook:queue:crm-webhook-queue:delayed    zset  id -> retry-at
    dealhook:queue:crm-webhook-queue:completed  zset  id -> finished-at
    dealhook:queue:crm-webhook-queue:failed     zset  id -> finished-at

The job hash doubles as the dedup marker: enqueue() creates it inside a
WATCH/MULTI transaction and coalesces onto it while it exists. Moving ids
between the delayed zset, the active list and the wait list happens in
Lua so that two workers can never promote or requeue the same job twice.
"""

from __future__ import annotations

import json
import logging
import time
from typing import Any

import redis

from dealhook.queue.jobs import (
    FailureOutcome,
    Job,
    JobHandle,
    JobOptions,
    JobState,
    QueueCounts,
    backoff_delay,
)

logger = logging.getLogger(__name__)

KEY_PREFIX = "dealhook:queue"

# KEYS: delayed zset, wait list.  ARGV: now, job key prefix
_PROMOTE_DELAYED = """
local due = redis.call('ZRANGEBYSCORE', KEYS[1], '-inf', ARGV[1])
for _, id in ipairs(due) do
  redis.call('ZREM', KEYS[1], id)
  redis.call('HSET', ARGV[2] .. id, 'state', 'waiting')
  redis.call('HDEL', ARGV[2] .. id, 'next_attempt_at')
  redis.call('RPUSH', KEYS[2], id)
end
return #due
"""

# KEYS: active list, wait list.  ARGV: now, job key prefix, lease seconds
# An id moved to active by a worker that died before writing its lease gets
# one lease from the first reaper pass that sees it.
_REQUEUE_STALLED = """
local ids = redis.call('LRANGE', KEYS[1], 0, -1)
local n = 0
for _, id in ipairs(ids) do
  local lease = redis.call('HGET', ARGV[2] .. id, 'lease_until')
  if not lease then
    lease = tonumber(ARGV[1]) + tonumber(ARGV[3])
    redis.call('HSET', ARGV[2] .. id, 'lease_until', lease)
  end
  if tonumber(lease) <= tonumber(ARGV[1]) then
    redis.call('LREM', KEYS[1], 1, id)
    redis.call('HSET', ARGV[2] .. id, 'state', 'waiting')
    redis.call('HDEL', ARGV[2] .. id, 'lease_until')
    redis.call('RPUSH', KEYS[2], id)
    n = n + 1
  end
end
return n
"""


def _opt_float(value: str | None) -> float | None:
    return float(value) if value not in (None, "") else None


class RedisDispatchQueue:
    """DispatchQueue stored in Redis. The client must use decode_responses=True."""

    def __init__(
        self,
        client: redis.Redis,
        name: str,
        *,
        lease_seconds: float = 300.0,
    ) -> None:
        self.name = name
        self._redis = client
        self._lease_seconds = lease_seconds
        base = f"{KEY_PREFIX}:{name}"
        self._job_prefix = f"{base}:job:"
        self._wait = f"{base}:wait"
        self._active = f"{base}:active"
        self._delayed = f"{base}:delayed"
        self._completed = f"{base}:completed"
        self._failed = f"{base}:failed"
        self._promote_script = client.register_script(_PROMOTE_DELAYED)
        self._requeue_script = client.register_script(_REQUEUE_STALLED)

    def _job_key(self, job_id: str) -> str:
        return f"{self._job_prefix}{job_id}"

    # ------------------------------------------------------------------
    # Producing
    # ------------------------------------------------------------------

    def enqueue(self, job_id: str, data: dict[str, Any], options: JobOptions) -> JobHandle:
        key = self._job_key(job_id)
        fields = {
            "id": job_id,
            "queue": self.name,
            "data": json.dumps(data, default=str),
            "state": JobState.WAITING.value,
            "attempts_made": 0,
            "attempts": options.attempts,
            "backoff_delay": options.backoff_delay,
            "keep_completed": options.keep_completed,
            "keep_failed": options.keep_failed,
            "created_at": time.time(),
        }
        with self._redis.pipeline() as pipe:
            while True:
                try:
                    pipe.watch(key)
                    if pipe.exists(key):
                        state = pipe.hget(key, "state") or JobState.WAITING.value
                        pipe.unwatch()
                        logger.info("Job %s already %s on %s — coalesced", job_id, state, self.name)
                        return JobHandle(job_id=job_id, created=False, state=JobState(state))
                    pipe.multi()
                    pipe.hset(key, mapping=fields)
                    pipe.rpush(self._wait, job_id)
                    pipe.execute()
                    return JobHandle(job_id=job_id, created=True, state=JobState.WAITING)
                except redis.WatchError:
                    # Someone created or touched the job between WATCH and EXEC; re-check.
                    continue

    # ------------------------------------------------------------------
    # Consuming
    # ------------------------------------------------------------------

    def _promote_delayed(self) -> int:
        return int(self._promote_script(keys=[self._delayed, self._wait], args=[time.time(), self._job_prefix]))

    def fetch(self, timeout: float = 0.0) -> Job | None:
        self._promote_delayed()
        if timeout > 0:
            job_id = self._redis.blmove(self._wait, self._active, timeout, "LEFT", "RIGHT")
        else:
            job_id = self._redis.lmove(self._wait, self._active, "LEFT", "RIGHT")
        if job_id is None:
            return None

        now = time.time()
        pipe = self._redis.pipeline()
        pipe.hset(
            self._job_key(job_id),
            mapping={
                "state": JobState.ACTIVE.value,
                "processed_at": now,
                "lease_until": now + self._lease_seconds,
            },
        )
        pipe.hgetall(self._job_key(job_id))
        _, fields = pipe.execute()
        return self._job_from_hash(fields)

    def _trim(self, zset: str, keep: int) -> None:
        stale = self._redis.zrange(zset, 0, -(keep + 1))
        if not stale:
            return
        pipe = self._redis.pipeline()
        pipe.zrem(zset, *stale)
        pipe.delete(*[self._job_key(jid) for jid in stale])
        pipe.execute()

    def complete(self, job: Job, result: Any = None) -> None:
        # LREM is the ownership check: only the current lease holder removes the id.
        if not self._redis.lrem(self._active, 1, job.id):
            logger.warning("Job %s completed but was no longer active on %s", job.id, self.name)
            return
        now = time.time()
        key = self._job_key(job.id)
        pipe = self._redis.pipeline()
        pipe.hset(
            key,
            mapping={
                "state": JobState.COMPLETED.value,
                "finished_at": now,
                "result": json.dumps(result, default=str),
            },
        )
        pipe.hdel(key, "lease_until")
        pipe.zadd(self._completed, {job.id: now})
        pipe.execute()
        self._trim(self._completed, job.options.keep_completed)

    def fail(self, job: Job, error: BaseException) -> FailureOutcome:
        if not self._redis.lrem(self._active, 1, job.id):
            logger.warning("Job %s failed but was no longer active on %s", job.id, self.name)
            return FailureOutcome(job_id=job.id, attempts_made=job.attempts_made, dead_lettered=False)

        key = self._job_key(job.id)
        now = time.time()
        attempts_made = int(self._redis.hincrby(key, "attempts_made", 1))
        reason = f"{type(error).__name__}: {error}"[:1000]

        pipe = self._redis.pipeline()
        pipe.hdel(key, "lease_until")
        if attempts_made < job.options.attempts:
            delay = backoff_delay(job.options, attempts_made)
            pipe.hset(
                key,
                mapping={
                    "state": JobState.DELAYED.value,
                    "failed_reason": reason,
                    "next_attempt_at": now + delay,
                },
            )
            pipe.zadd(self._delayed, {job.id: now + delay})
            pipe.execute()
            return FailureOutcome(
                job_id=job.id, attempts_made=attempts_made, dead_lettered=False, retry_delay=delay
            )

        pipe.hset(
            key,
            mapping={
                "state": JobState.FAILED.value,
                "failed_reason": reason,
                "finished_at": now,
            },
        )
        pipe.zadd(self._failed, {job.id: now})
        pipe.execute()
        self._trim(self._failed, job.options.keep_failed)
        return FailureOutcome(job_id=job.id, attempts_made=attempts_made, dead_lettered=True)

    def recover_stalled(self) -> int:
        """Requeue jobs whose worker lease expired (crashed or killed worker)."""
        n = int(
            self._requeue_script(
                keys=[self._active, self._wait],
                args=[time.time(), self._job_prefix, self._lease_seconds],
            )
        )
        if n:
            logger.warning("Requeued %d stalled jobs on %s", n, self.name)
        return n

    # ------------------------------------------------------------------
    # Inspection
    # ------------------------------------------------------------------

    def _job_from_hash(self, fields: dict[str, str]) -> Job:
        options = JobOptions(
            attempts=int(fields.get("attempts", 1)),
            backoff_delay=float(fields.get("backoff_delay", 0)),
            keep_completed=int(fields.get("keep_completed", 1000)),
            keep_failed=int(fields.get("keep_failed", 1000)),
        )
        result = fields.get("result")
        return Job(
            id=fields["id"],
            queue=fields.get("queue", self.name),
            data=json.loads(fields.get("data") or "{}"),
            options=options,
            state=JobState(fields.get("state", JobState.WAITING.value)),
            attempts_made=int(fields.get("attempts_made", 0)),
            created_at=float(fields.get("created_at", 0)),
            processed_at=_opt_float(fields.get("processed_at")),
            finished_at=_opt_float(fields.get("finished_at")),
            next_attempt_at=_opt_float(fields.get("next_attempt_at")),
            failed_reason=fields.get("failed_reason", ""),
            result=json.loads(result) if result else None,
        )

    def get_job(self, job_id: str) -> Job | None:
        fields = self._redis.hgetall(self._job_key(job_id))
        if not fields:
            return None
        return self._job_from_hash(fields)

    def counts(self) -> QueueCounts:
        pipe = self._redis.pipeline()
        pipe.llen(self._wait)
        pipe.llen(self._active)
        pipe.zcard(self._delayed)
        pipe.zcard(self._completed)
        pipe.zcard(self._failed)
        waiting, active, delayed, completed, failed = pipe.execute()
        return QueueCounts(
            waiting=waiting, active=active, delayed=delayed, completed=completed, failed=failed
        )

    def ping(self) -> bool:
        try:
            return bool(self._redis.ping())
        except redis.RedisError:
            logger.warning("Queue Redis ping failed", exc_info=True)
            return False

    def close(self) -> None:
        self._redis.close()
