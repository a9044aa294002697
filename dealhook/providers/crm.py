"""CRM deal webhooks.

The CRM posts deal lifecycle events::

    POST /v1/webhooks/crm
    x-api-key: <shared secret>
    x-event: deal_created | deal_updated

    {"data": {"dealId": "D-1",
              "customer": {...},
              "dealDetails": {"dealName": ..., "status": "Qualified", ...},
              "propertyInformation": {...}}}
"""

from __future__ import annotations

import logging
from typing import Any

from dealhook.errors import BadRequestError, ProcessingError
from dealhook.providers.base import InboundRequest
from dealhook.queue.crm import enqueue_crm_job
from dealhook.queue.jobs import DispatchQueue, JobOptions
from dealhook.receipts.models import Receipt

logger = logging.getLogger(__name__)

EVENT_HEADER = "x-event"


def _deal_data(body: Any) -> dict[str, Any]:
    if isinstance(body, dict) and isinstance(body.get("data"), dict):
        return body["data"]
    return {}


def deal_status(body: Any) -> str | None:
    """Business status of the deal carried in a CRM payload, if any."""
    details = _deal_data(body).get("dealDetails")
    if not isinstance(details, dict):
        return None
    status = details.get("status")
    if status is None or str(status).strip() == "":
        return None
    return str(status).strip()


class CRMProvider:
    """Provider for the CRM's deal webhooks."""

    def __init__(self, queue: DispatchQueue, options: JobOptions, source: str = "crm") -> None:
        self._queue = queue
        self._options = options
        self._source = source

    @property
    def source(self) -> str:
        return self._source

    def validate(self, request: InboundRequest) -> bool:
        return isinstance(request.body, dict)

    def extract_event(self, request: InboundRequest) -> str:
        event = (request.header(EVENT_HEADER) or "").strip()
        if not event:
            raise BadRequestError("Missing event type.")
        return event

    def extract_reference(self, request: InboundRequest) -> str:
        deal_id = _deal_data(request.body).get("dealId")
        if deal_id is None or str(deal_id).strip() == "":
            raise BadRequestError("Missing deal reference.")
        return str(deal_id).strip()

    def handle(self, receipt: Receipt) -> None:
        body = receipt.payload.body
        status = deal_status(body)
        if status is None:
            raise ProcessingError(f"Deal {receipt.reference} has no status")

        handle = enqueue_crm_job(
            self._queue,
            self._options,
            source=receipt.source,
            event=receipt.event,
            reference=receipt.reference,
            status=status,
            payload=body,
        )
        if handle.created:
            logger.info("Enqueued job %s for %s/%s", handle.job_id, receipt.source, receipt.reference)
        else:
            logger.info(
                "Delivery for %s/%s coalesced onto %s job %s",
                receipt.source,
                receipt.reference,
                handle.state.value,
                handle.job_id,
            )
