"""Receipt data model."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any


class ReceiptStatus(str, Enum):
    """Processing status of a receipt."""

    PENDING = "pending"
    PROCESSED = "processed"
    FAILED = "failed"


@dataclass
class WebhookPayload:
    """Snapshot of the inbound request as it was received."""

    headers: dict[str, str] = field(default_factory=dict)
    body: Any = None
    params: dict[str, str] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {"headers": dict(self.headers), "body": self.body, "params": dict(self.params)}

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> WebhookPayload:
        data = data or {}
        return cls(
            headers=dict(data.get("headers") or {}),
            body=data.get("body"),
            params=dict(data.get("params") or {}),
        )


@dataclass
class Receipt:
    """Durable record of one logical inbound notification."""

    source: str
    event: str
    reference: str
    payload: WebhookPayload
    status: ReceiptStatus = ReceiptStatus.PENDING
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    updated_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    id: int | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "source": self.source,
            "event": self.event,
            "reference": self.reference,
            "payload": self.payload.to_dict(),
            "status": self.status.value,
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
        }
