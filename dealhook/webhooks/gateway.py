"""Webhook gateway — the synchronous half of the pipeline.

receive() answers one of three ways:

- 202 accepted, not processed: bad shared secret or the provider's
  validate() said no. Nothing is persisted and the caller gets no hint
  which check failed.
- 400: the source is unknown or event/reference are missing
  (BadRequestError propagates to the HTTP layer). Nothing is persisted.
- 200 recorded: the receipt exists. Whatever happens in handle() after
  that is reported through receipt status and logs, never to the caller.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from typing import Any

from dealhook.errors import BadRequestError
from dealhook.providers.base import InboundRequest
from dealhook.providers.registry import ProviderRegistry
from dealhook.receipts.models import Receipt, ReceiptStatus
from dealhook.receipts.store import ReceiptStore
from dealhook.webhooks.verification import API_KEY_HEADER, verify_shared_secret

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class GatewayAck:
    status_code: int
    status: str
    receipt: Receipt | None = None

    def to_body(self) -> dict[str, Any]:
        body: dict[str, Any] = {"status": self.status}
        if self.receipt is not None:
            body["reference"] = self.receipt.reference
        return body


ACCEPTED = GatewayAck(status_code=202, status="accepted")


class WebhookGateway:
    """Authenticates, records and hands off inbound deliveries."""

    def __init__(self, registry: ProviderRegistry, receipts: ReceiptStore, api_key: str) -> None:
        self._registry = registry
        self._receipts = receipts
        self._api_key = api_key
        self._counts: dict[str, int] = {}
        self._counts_lock = threading.Lock()

    def _log_webhook(self, source: str, event: str, reference: str, status: str) -> None:
        """Audit log for webhook activity. Only registered sources are counted."""
        count = 0
        if source in self._registry:
            with self._counts_lock:
                self._counts[source] = self._counts.get(source, 0) + 1
                count = self._counts[source]
        logger.info(
            "WEBHOOK_AUDIT source=%s event=%s reference=%s status=%s count=%d",
            source,
            event,
            reference,
            status,
            count,
        )

    def counts(self) -> dict[str, int]:
        with self._counts_lock:
            return dict(self._counts)

    def receive(self, source: str, request: InboundRequest) -> GatewayAck:
        if not verify_shared_secret(request.header(API_KEY_HEADER), self._api_key):
            self._log_webhook(source, "unknown", "unknown", "auth_rejected")
            return ACCEPTED

        try:
            provider = self._registry.get(source)
        except BadRequestError:
            self._log_webhook(source, "unknown", "unknown", "unknown_source")
            raise

        if not provider.validate(request):
            self._log_webhook(source, "unknown", "unknown", "invalid")
            return ACCEPTED

        try:
            event = provider.extract_event(request)
            reference = provider.extract_reference(request)
        except BadRequestError:
            self._log_webhook(source, "unknown", "unknown", "missing_fields")
            raise

        receipt, created = self._receipts.upsert(
            source, event, reference, request.to_payload(redact=(API_KEY_HEADER,))
        )

        try:
            provider.handle(receipt)
            outcome = "recorded" if created else "duplicate"
        except Exception:
            logger.exception("Webhook handle failed for %s/%s", source, reference)
            receipt = self._receipts.set_status(source, reference, ReceiptStatus.FAILED) or receipt
            outcome = "handle_failed"

        self._log_webhook(source, event, reference, outcome)
        return GatewayAck(status_code=200, status="recorded", receipt=receipt)
