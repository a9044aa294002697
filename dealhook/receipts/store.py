"""Receipt store protocol and the in-process implementation.

Every write is keyed by (source, reference) and applied atomically, so a
late duplicate delivery from the gateway and a worker's status transition
can interleave without losing either update:

- upsert() creates the record PENDING or refreshes event/payload on an
  existing one; it never touches status.
- set_status() changes only status (and updated_at).
"""

from __future__ import annotations

import copy
import threading
from datetime import datetime, timezone
from typing import Protocol, runtime_checkable

from dealhook.receipts.models import Receipt, ReceiptStatus, WebhookPayload


@runtime_checkable
class ReceiptStore(Protocol):
    """Persistence contract for webhook receipts."""

    def upsert(
        self, source: str, event: str, reference: str, payload: WebhookPayload
    ) -> tuple[Receipt, bool]:
        """Create or refresh the receipt. Returns (receipt, created)."""
        ...

    def set_status(self, source: str, reference: str, status: ReceiptStatus) -> Receipt | None:
        """Set the status of an existing receipt. Returns None if absent."""
        ...

    def get(self, source: str, reference: str) -> Receipt | None:
        ...

    def count_by_status(self) -> dict[str, int]:
        ...

    def ping(self) -> bool:
        ...

    def close(self) -> None:
        ...


class InMemoryReceiptStore:
    """Thread-safe in-memory ReceiptStore for development and tests.

    Callers always receive copies; the stored records are only mutated
    under the lock.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._records: dict[tuple[str, str], Receipt] = {}
        self._next_id = 1

    def upsert(
        self, source: str, event: str, reference: str, payload: WebhookPayload
    ) -> tuple[Receipt, bool]:
        now = datetime.now(timezone.utc)
        with self._lock:
            existing = self._records.get((source, reference))
            if existing is not None:
                existing.event = event
                existing.payload = copy.deepcopy(payload)
                existing.updated_at = now
                return copy.deepcopy(existing), False

            receipt = Receipt(
                id=self._next_id,
                source=source,
                event=event,
                reference=reference,
                payload=copy.deepcopy(payload),
                status=ReceiptStatus.PENDING,
                created_at=now,
                updated_at=now,
            )
            self._next_id += 1
            self._records[(source, reference)] = receipt
            return copy.deepcopy(receipt), True

    def set_status(self, source: str, reference: str, status: ReceiptStatus) -> Receipt | None:
        with self._lock:
            existing = self._records.get((source, reference))
            if existing is None:
                return None
            existing.status = status
            existing.updated_at = datetime.now(timezone.utc)
            return copy.deepcopy(existing)

    def get(self, source: str, reference: str) -> Receipt | None:
        with self._lock:
            existing = self._records.get((source, reference))
            return copy.deepcopy(existing) if existing is not None else None

    def count_by_status(self) -> dict[str, int]:
        counts = {s.value: 0 for s in ReceiptStatus}
        with self._lock:
            for receipt in self._records.values():
                counts[receipt.status.value] += 1
        return counts

    def __len__(self) -> int:
        with self._lock:
            return len(self._records)

    def ping(self) -> bool:
        return True

    def close(self) -> None:
        pass
