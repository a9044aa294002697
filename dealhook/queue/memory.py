"""In-process dispatch queue.

Same dedup, retry and retention semantics as the Redis queue, held in
plain dicts behind one condition variable. Used by the test-suite and for
single-process development (``DEALHOOK_QUEUE_BACKEND=memory``); jobs do not
survive a restart.
"""

from __future__ import annotations

import copy
import logging
import threading
import time
from collections import OrderedDict, deque
from typing import Any

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

# Upper bound on a single condition wait so delayed jobs get promoted
_MAX_WAIT_SLICE = 0.5


class InMemoryDispatchQueue:
    """Thread-safe DispatchQueue kept in process memory."""

    def __init__(self, name: str, *, lease_seconds: float = 300.0) -> None:
        self.name = name
        self._lease_seconds = lease_seconds
        self._cond = threading.Condition()
        self._jobs: dict[str, Job] = {}
        self._waiting: deque[str] = deque()
        self._delayed: dict[str, float] = {}  # job id -> ready at
        self._active: dict[str, float] = {}  # job id -> lease expiry
        self._completed: OrderedDict[str, None] = OrderedDict()
        self._failed: OrderedDict[str, None] = OrderedDict()
        self._closed = False

    def enqueue(self, job_id: str, data: dict[str, Any], options: JobOptions) -> JobHandle:
        with self._cond:
            existing = self._jobs.get(job_id)
            if existing is not None:
                logger.info(
                    "Job %s already %s on %s — coalesced", job_id, existing.state.value, self.name
                )
                return JobHandle(job_id=job_id, created=False, state=existing.state)

            self._jobs[job_id] = Job(
                id=job_id,
                queue=self.name,
                data=copy.deepcopy(data),
                options=options,
                state=JobState.WAITING,
                created_at=time.time(),
            )
            self._waiting.append(job_id)
            self._cond.notify()
        return JobHandle(job_id=job_id, created=True, state=JobState.WAITING)

    def _promote_delayed(self, now: float) -> None:
        due = sorted((at, jid) for jid, at in self._delayed.items() if at <= now)
        for _, job_id in due:
            del self._delayed[job_id]
            job = self._jobs[job_id]
            job.state = JobState.WAITING
            job.next_attempt_at = None
            self._waiting.append(job_id)

    def fetch(self, timeout: float = 0.0) -> Job | None:
        deadline = time.monotonic() + timeout
        with self._cond:
            while True:
                now = time.time()
                self._promote_delayed(now)
                if self._waiting:
                    job_id = self._waiting.popleft()
                    job = self._jobs[job_id]
                    job.state = JobState.ACTIVE
                    job.processed_at = now
                    self._active[job_id] = now + self._lease_seconds
                    return copy.deepcopy(job)
                if self._closed:
                    return None
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    return None
                self._cond.wait(min(remaining, _MAX_WAIT_SLICE))

    def _trim(self, bucket: OrderedDict[str, None], keep: int) -> None:
        while len(bucket) > keep:
            old_id, _ = bucket.popitem(last=False)
            self._jobs.pop(old_id, None)

    def complete(self, job: Job, result: Any = None) -> None:
        with self._cond:
            if self._active.pop(job.id, None) is None:
                logger.warning("Job %s completed but was no longer active on %s", job.id, self.name)
                return
            stored = self._jobs[job.id]
            stored.state = JobState.COMPLETED
            stored.finished_at = time.time()
            stored.result = copy.deepcopy(result)
            self._completed[job.id] = None
            self._trim(self._completed, stored.options.keep_completed)

    def fail(self, job: Job, error: BaseException) -> FailureOutcome:
        with self._cond:
            if self._active.pop(job.id, None) is None:
                logger.warning("Job %s failed but was no longer active on %s", job.id, self.name)
                return FailureOutcome(job_id=job.id, attempts_made=job.attempts_made, dead_lettered=False)

            stored = self._jobs[job.id]
            stored.attempts_made += 1
            stored.failed_reason = f"{type(error).__name__}: {error}"
            now = time.time()

            if stored.attempts_made < stored.options.attempts:
                delay = backoff_delay(stored.options, stored.attempts_made)
                stored.state = JobState.DELAYED
                stored.next_attempt_at = now + delay
                self._delayed[job.id] = stored.next_attempt_at
                self._cond.notify()
                return FailureOutcome(
                    job_id=job.id,
                    attempts_made=stored.attempts_made,
                    dead_lettered=False,
                    retry_delay=delay,
                )

            stored.state = JobState.FAILED
            stored.finished_at = now
            self._failed[job.id] = None
            attempts_made = stored.attempts_made
            self._trim(self._failed, stored.options.keep_failed)
        return FailureOutcome(job_id=job.id, attempts_made=attempts_made, dead_lettered=True)

    def get_job(self, job_id: str) -> Job | None:
        with self._cond:
            job = self._jobs.get(job_id)
            return copy.deepcopy(job) if job is not None else None

    def counts(self) -> QueueCounts:
        with self._cond:
            return QueueCounts(
                waiting=len(self._waiting),
                active=len(self._active),
                delayed=len(self._delayed),
                completed=len(self._completed),
                failed=len(self._failed),
            )

    def recover_stalled(self) -> int:
        now = time.time()
        recovered = 0
        with self._cond:
            for job_id, lease_until in list(self._active.items()):
                if lease_until > now:
                    continue
                del self._active[job_id]
                job = self._jobs[job_id]
                job.state = JobState.WAITING
                self._waiting.append(job_id)
                recovered += 1
            if recovered:
                self._cond.notify_all()
        if recovered:
            logger.warning("Requeued %d stalled jobs on %s", recovered, self.name)
        return recovered

    def ping(self) -> bool:
        return not self._closed

    def close(self) -> None:
        with self._cond:
            self._closed = True
            self._cond.notify_all()
