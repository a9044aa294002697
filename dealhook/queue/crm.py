"""The CRM webhook queue: its name, job-id derivation and retry policy."""

from __future__ import annotations

from typing import Any

from dealhook.config import Settings
from dealhook.queue.jobs import DispatchQueue, JobHandle, JobOptions

CRM_WEBHOOK_QUEUE = "crm-webhook-queue"


def normalize_event(event: str) -> str:
    """``deal_created`` / ``Created`` -> ``created``."""
    name = event.strip().lower()
    if name.startswith("deal_"):
        name = name[len("deal_"):]
    return name


def normalize_status(status: str) -> str:
    """``Qualified`` / `` QUALIFIED `` -> ``qualified``."""
    return status.strip().casefold()


def crm_job_id(event: str, reference: str, status: str) -> str:
    """Deterministic job id for one business-state transition.

    Pure function of the snapshot taken at enqueue time, never of the clock.
    Event and status are compared in canonical form, so a redelivery that
    only differs in casing or in the ``deal_`` prefix maps onto the same
    job, while a later status for the same deal gets a new one.

    >>> crm_job_id("deal_created", "D-1", "Qualified")
    'created:D-1:qualified'
    """
    return f"{normalize_event(event)}:{reference}:{normalize_status(status)}"


def crm_job_options(settings: Settings) -> JobOptions:
    return JobOptions(
        attempts=settings.queue_attempts,
        backoff_delay=settings.queue_backoff_delay,
        keep_completed=settings.queue_keep_completed,
        keep_failed=settings.queue_keep_failed,
    )


def enqueue_crm_job(
    queue: DispatchQueue,
    options: JobOptions,
    *,
    source: str,
    event: str,
    reference: str,
    status: str,
    payload: Any,
) -> JobHandle:
    """Enqueue a CRM event, coalescing onto an existing job with the same id."""
    data = {
        "source": source,
        "reference": reference,
        "event": normalize_event(event),
        "status": normalize_status(status),
        "payload": payload,
    }
    return queue.enqueue(crm_job_id(event, reference, status), data, options)
