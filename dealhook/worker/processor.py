"""CRM event processor — maps a deal's business status to downstream actions.

Only the status decides what fires; ``created`` and ``updated`` events are
treated alike:

    qualified  -> track conversion "Lead"
    committed  -> track conversion "Purchase" + property details email

Any other status, and any event type we do not know, is logged and
completes as a no-op so the job is not retried for a state we simply do
not act on.
"""

from __future__ import annotations

import logging
from typing import Any

from dealhook.downstream.models import ActionKind, DealSnapshot, DispatchReport, DownstreamAction
from dealhook.downstream.protocol import DispatcherDock
from dealhook.errors import ProcessingError
from dealhook.queue.crm import normalize_event, normalize_status
from dealhook.queue.jobs import Job

logger = logging.getLogger(__name__)

KNOWN_EVENTS = frozenset({"created", "updated"})

STATUS_ACTIONS: dict[str, tuple[tuple[ActionKind, str], ...]] = {
    "qualified": ((ActionKind.TRACK_CONVERSION, "Lead"),),
    "committed": (
        (ActionKind.TRACK_CONVERSION, "Purchase"),
        (ActionKind.NOTIFY_CUSTOMER, "property_details"),
    ),
}


def planned_actions(event: str, status: str) -> tuple[tuple[ActionKind, str], ...]:
    if normalize_event(event) not in KNOWN_EVENTS:
        return ()
    return STATUS_ACTIONS.get(normalize_status(status), ())


def _require_str(data: dict[str, Any], key: str, job_id: str) -> str:
    value = data.get(key)
    if not isinstance(value, str) or not value.strip():
        raise ProcessingError(f"Job {job_id} has no {key}")
    return value


class CRMEventProcessor:
    """Turns a CRM job into downstream actions and runs them through the dock."""

    def __init__(self, dock: DispatcherDock) -> None:
        self._dock = dock

    def plan(self, job: Job) -> list[DownstreamAction]:
        """Actions for a job. Raises ProcessingError on a malformed payload."""
        data = job.data
        event = _require_str(data, "event", job.id)
        # The status is the snapshot the job id was derived from; never re-read it
        # from the payload.
        status = _require_str(data, "status", job.id)

        plan = planned_actions(event, status)
        if not plan:
            if normalize_event(event) not in KNOWN_EVENTS:
                logger.info("Unrecognized CRM event %r for job %s — skipping", event, job.id)
            else:
                logger.info("No actions for status %r (job %s)", status, job.id)
            return []

        deal = DealSnapshot.from_payload(data.get("payload"))
        return [
            DownstreamAction(kind=kind, name=name, deal=deal, job_id=job.id)
            for kind, name in plan
        ]

    def process(self, job: Job) -> DispatchReport:
        actions = self.plan(job)
        report = self._dock.dispatch(job.id, actions)
        if actions:
            logger.info("Job %s dispatched %d actions: %s", job.id, len(actions), report.summary())
        return report
