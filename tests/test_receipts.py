"""Tests for receipt stores: idempotent upsert keyed by (source, reference)."""

from __future__ import annotations

import threading
from datetime import datetime, timezone
from unittest.mock import MagicMock, patch

import psycopg
import pytest

from dealhook.receipts.models import Receipt, ReceiptStatus, WebhookPayload
from dealhook.receipts.postgres import PostgresReceiptStore
from dealhook.receipts.store import InMemoryReceiptStore, ReceiptStore


def _payload(n: int = 1) -> WebhookPayload:
    return WebhookPayload(headers={"x-event": "created"}, body={"n": n}, params={"source": "crm"})


class TestInMemoryReceiptStore:
    def test_satisfies_protocol(self):
        assert isinstance(InMemoryReceiptStore(), ReceiptStore)

    def test_first_upsert_creates_pending(self, receipts):
        receipt, created = receipts.upsert("crm", "created", "D-1", _payload())

        assert created is True
        assert receipt.status == ReceiptStatus.PENDING
        assert receipt.id == 1
        assert len(receipts) == 1

    def test_repeat_upsert_updates_in_place(self, receipts):
        first, _ = receipts.upsert("crm", "created", "D-1", _payload(1))
        second, created = receipts.upsert("crm", "updated", "D-1", _payload(2))

        assert created is False
        assert len(receipts) == 1
        assert second.id == first.id
        assert second.event == "updated"
        assert second.payload.body == {"n": 2}
        assert second.created_at == first.created_at
        assert second.updated_at >= first.updated_at

    def test_upsert_never_resets_status(self, receipts):
        receipts.upsert("crm", "created", "D-1", _payload())
        receipts.set_status("crm", "D-1", ReceiptStatus.PROCESSED)
        receipt, created = receipts.upsert("crm", "updated", "D-1", _payload(2))

        assert created is False
        assert receipt.status == ReceiptStatus.PROCESSED

    def test_same_reference_different_source_is_separate(self, receipts):
        receipts.upsert("crm", "created", "D-1", _payload())
        receipts.upsert("other", "created", "D-1", _payload())
        assert len(receipts) == 2

    def test_set_status_missing_returns_none(self, receipts):
        assert receipts.set_status("crm", "nope", ReceiptStatus.FAILED) is None

    def test_returned_receipts_are_copies(self, receipts):
        receipt, _ = receipts.upsert("crm", "created", "D-1", _payload())
        receipt.status = ReceiptStatus.FAILED
        receipt.payload.body["n"] = 99

        stored = receipts.get("crm", "D-1")
        assert stored.status == ReceiptStatus.PENDING
        assert stored.payload.body == {"n": 1}

    def test_count_by_status(self, receipts):
        receipts.upsert("crm", "created", "D-1", _payload())
        receipts.upsert("crm", "created", "D-2", _payload())
        receipts.set_status("crm", "D-2", ReceiptStatus.FAILED)

        assert receipts.count_by_status() == {"pending": 1, "processed": 0, "failed": 1}

    def test_concurrent_deliveries_produce_one_record(self, receipts):
        barrier = threading.Barrier(8)
        created_flags = []

        def deliver(n: int) -> None:
            barrier.wait()
            _, created = receipts.upsert("crm", "created", "D-1", _payload(n))
            created_flags.append(created)

        threads = [threading.Thread(target=deliver, args=(i,)) for i in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert len(receipts) == 1
        assert created_flags.count(True) == 1


class TestReceiptModel:
    def test_to_dict(self):
        ts = datetime(2026, 1, 1, tzinfo=timezone.utc)
        receipt = Receipt(
            source="crm",
            event="created",
            reference="D-1",
            payload=_payload(),
            created_at=ts,
            updated_at=ts,
            id=7,
        )
        d = receipt.to_dict()
        assert d["status"] == "pending"
        assert d["payload"]["body"] == {"n": 1}
        assert d["created_at"] == "2026-01-01T00:00:00+00:00"

    def test_payload_from_dict_tolerates_none(self):
        payload = WebhookPayload.from_dict(None)
        assert payload.headers == {}
        assert payload.body is None


# ── Postgres store (psycopg mocked) ───────────────────────────────────────


def _row(**overrides):
    now = datetime(2026, 1, 1, tzinfo=timezone.utc)
    row = {
        "id": 1,
        "source": "crm",
        "event": "created",
        "reference": "D-1",
        "payload": _payload().to_dict(),
        "status": "pending",
        "created_at": now,
        "updated_at": now,
    }
    row.update(overrides)
    return row


@pytest.fixture
def pg_conn():
    with patch("dealhook.receipts.postgres.psycopg.connect") as mock_connect:
        conn = MagicMock()
        mock_connect.return_value.__enter__.return_value = conn
        yield conn


class TestPostgresReceiptStore:
    def test_upsert_uses_on_conflict(self, pg_conn):
        pg_conn.execute.return_value.fetchone.return_value = _row(inserted=True)
        store = PostgresReceiptStore("postgresql://test")

        receipt, created = store.upsert("crm", "created", "D-1", _payload())

        sql, params = pg_conn.execute.call_args[0]
        assert "ON CONFLICT (source, reference) DO UPDATE" in sql
        assert "status" not in sql.split("DO UPDATE")[1]
        assert params[:3] == ("crm", "created", "D-1")
        assert created is True
        assert receipt.reference == "D-1"
        assert receipt.status == ReceiptStatus.PENDING

    def test_upsert_existing_row(self, pg_conn):
        pg_conn.execute.return_value.fetchone.return_value = _row(inserted=False, status="processed")
        store = PostgresReceiptStore("postgresql://test")

        receipt, created = store.upsert("crm", "updated", "D-1", _payload())

        assert created is False
        assert receipt.status == ReceiptStatus.PROCESSED

    def test_set_status(self, pg_conn):
        pg_conn.execute.return_value.fetchone.return_value = _row(status="failed")
        store = PostgresReceiptStore("postgresql://test")

        receipt = store.set_status("crm", "D-1", ReceiptStatus.FAILED)

        sql, params = pg_conn.execute.call_args[0]
        assert sql.strip().startswith("UPDATE")
        assert params == ("failed", "crm", "D-1")
        assert receipt.status == ReceiptStatus.FAILED

    def test_set_status_missing_row(self, pg_conn):
        pg_conn.execute.return_value.fetchone.return_value = None
        store = PostgresReceiptStore("postgresql://test")
        assert store.set_status("crm", "nope", ReceiptStatus.FAILED) is None

    def test_count_by_status(self, pg_conn):
        pg_conn.execute.return_value.fetchall.return_value = [
            {"status": "pending", "n": 3},
            {"status": "processed", "n": 5},
        ]
        store = PostgresReceiptStore("postgresql://test")
        assert store.count_by_status() == {"pending": 3, "processed": 5, "failed": 0}

    def test_init_schema_is_idempotent_ddl(self, pg_conn):
        PostgresReceiptStore("postgresql://test").init_schema()
        sql = pg_conn.execute.call_args[0][0]
        assert "CREATE TABLE IF NOT EXISTS webhook_receipts" in sql
        assert "UNIQUE (source, reference)" in sql

    def test_ping_false_when_unreachable(self):
        with patch(
            "dealhook.receipts.postgres.psycopg.connect",
            side_effect=psycopg.OperationalError("connection refused"),
        ):
            assert PostgresReceiptStore("postgresql://test").ping() is False
