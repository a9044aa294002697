"""Deduplicating dispatch queue with retry, backoff and bounded retention."""

from dealhook.queue.jobs import (
    DispatchQueue,
    FailureOutcome,
    Job,
    JobHandle,
    JobOptions,
    JobState,
    QueueCounts,
    backoff_delay,
)
from dealhook.queue.memory import InMemoryDispatchQueue

__all__ = [
    "DispatchQueue",
    "FailureOutcome",
    "InMemoryDispatchQueue",
    "Job",
    "JobHandle",
    "JobOptions",
    "JobState",
    "QueueCounts",
    "backoff_delay",
]
