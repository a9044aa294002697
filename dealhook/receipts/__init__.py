"""Webhook receipts — one durable record per (source, reference)."""

from dealhook.receipts.models import Receipt, ReceiptStatus, WebhookPayload
from dealhook.receipts.store import InMemoryReceiptStore, ReceiptStore

__all__ = [
    "InMemoryReceiptStore",
    "Receipt",
    "ReceiptStatus",
    "ReceiptStore",
    "WebhookPayload",
]
