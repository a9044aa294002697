"""Job model and the dispatch queue contract.

A job's id is supplied by the caller and is its dedup key: while a job
with that id exists in any state (waiting, delayed, active, or retained
as completed/failed) enqueue() returns the existing job instead of adding
a second one. Retained jobs are evicted oldest-first once the queue holds
more than ``keep_completed`` / ``keep_failed`` of them, after which the id
can be submitted again.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Protocol, runtime_checkable


class JobState(str, Enum):
    WAITING = "waiting"
    DELAYED = "delayed"
    ACTIVE = "active"
    COMPLETED = "completed"
    FAILED = "failed"


@dataclass(frozen=True)
class JobOptions:
    """Retry and retention policy attached to a job at enqueue time."""

    attempts: int = 3
    backoff_delay: float = 2.0  # seconds, doubled after each failed attempt
    keep_completed: int = 1000
    keep_failed: int = 1000

    def __post_init__(self) -> None:
        if self.attempts < 1:
            raise ValueError("attempts must be >= 1")
        if self.backoff_delay < 0:
            raise ValueError("backoff_delay must be >= 0")


def backoff_delay(options: JobOptions, attempts_made: int) -> float:
    """Exponential backoff: base * 2^(attempts_made - 1).

    With base 5s a job is retried after 5s, 10s, 20s, ...
    """
    return options.backoff_delay * (2 ** max(attempts_made - 1, 0))


@dataclass
class Job:
    """One unit of queued work."""

    id: str
    queue: str
    data: dict[str, Any]
    options: JobOptions = field(default_factory=JobOptions)
    state: JobState = JobState.WAITING
    attempts_made: int = 0
    created_at: float = 0.0
    processed_at: float | None = None
    finished_at: float | None = None
    next_attempt_at: float | None = None
    failed_reason: str = ""
    result: Any = None


@dataclass(frozen=True)
class JobHandle:
    """Returned by enqueue(). ``created`` is False when the id was coalesced."""

    job_id: str
    created: bool
    state: JobState


@dataclass(frozen=True)
class FailureOutcome:
    """What the queue did with a job whose attempt raised."""

    job_id: str
    attempts_made: int
    dead_lettered: bool
    retry_delay: float | None = None


@dataclass(frozen=True)
class QueueCounts:
    waiting: int = 0
    active: int = 0
    delayed: int = 0
    completed: int = 0
    failed: int = 0

    @property
    def pending(self) -> int:
        """Jobs not yet finished (waiting + delayed + active)."""
        return self.waiting + self.delayed + self.active

    def as_dict(self) -> dict[str, int]:
        return {
            "waiting": self.waiting,
            "active": self.active,
            "delayed": self.delayed,
            "completed": self.completed,
            "failed": self.failed,
        }


@runtime_checkable
class DispatchQueue(Protocol):
    """Durable, deduplicating work queue consumed by the worker pool."""

    name: str

    def enqueue(self, job_id: str, data: dict[str, Any], options: JobOptions) -> JobHandle:
        ...

    def fetch(self, timeout: float = 0.0) -> Job | None:
        """Lease the next ready job, or None if nothing is ready in time."""
        ...

    def complete(self, job: Job, result: Any = None) -> None:
        ...

    def fail(self, job: Job, error: BaseException) -> FailureOutcome:
        ...

    def get_job(self, job_id: str) -> Job | None:
        ...

    def counts(self) -> QueueCounts:
        ...

    def recover_stalled(self) -> int:
        """Return jobs whose lease expired to waiting. Returns the count."""
        ...

    def ping(self) -> bool:
        ...

    def close(self) -> None:
        ...
