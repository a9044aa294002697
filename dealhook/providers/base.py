"""Provider contract: one adapter per upstream webhook source.

validate/extract_* are cheap and side-effect free so the gateway can answer
the caller before anything is persisted. handle() is the only hook with
side effects; it decides how the recorded receipt is enqueued.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Iterable, Protocol, runtime_checkable

from dealhook.receipts.models import Receipt, WebhookPayload

REDACTED = "[redacted]"


@dataclass
class InboundRequest:
    """One webhook delivery as the gateway received it.

    Header names are lower-cased on construction. ``body`` is the decoded
    JSON document, or None when the body was empty or not valid JSON.
    """

    headers: dict[str, str] = field(default_factory=dict)
    body: Any = None
    params: dict[str, str] = field(default_factory=dict)
    query: dict[str, str] = field(default_factory=dict)

    def __post_init__(self) -> None:
        self.headers = {k.lower(): v for k, v in self.headers.items()}

    def header(self, name: str) -> str | None:
        return self.headers.get(name.lower())

    def to_payload(self, redact: Iterable[str] = ()) -> WebhookPayload:
        """Snapshot for the receipt, with credential headers masked."""
        masked = {h.lower() for h in redact}
        headers = {k: (REDACTED if k in masked else v) for k, v in self.headers.items()}
        params = {**self.query, **self.params}
        return WebhookPayload(headers=headers, body=self.body, params=params)


@runtime_checkable
class Provider(Protocol):
    """Adapter for one upstream webhook source."""

    @property
    def source(self) -> str:
        """Path identifier, e.g. ``crm`` for POST /v1/webhooks/crm."""
        ...

    def validate(self, request: InboundRequest) -> bool:
        """Source-specific shape check. False means accept but ignore."""
        ...

    def extract_event(self, request: InboundRequest) -> str:
        """Event tag. Raises BadRequestError when missing."""
        ...

    def extract_reference(self, request: InboundRequest) -> str:
        """Stable reference id. Raises BadRequestError when missing."""
        ...

    def handle(self, receipt: Receipt) -> None:
        """Enqueue work for a recorded receipt."""
        ...
