"""Postgres-backed receipt store (psycopg 3).

Uniqueness of (source, reference) is enforced by the table constraint and
all writes are single statements, so concurrent gateway and worker writes
never produce duplicate rows or lost updates.
"""

from __future__ import annotations

import logging
from typing import Any

import psycopg
from psycopg.rows import dict_row
from psycopg.types.json import Jsonb

from dealhook.receipts.models import Receipt, ReceiptStatus, WebhookPayload

logger = logging.getLogger(__name__)

_TABLE = "webhook_receipts"


def _row_to_receipt(row: dict[str, Any]) -> Receipt:
    return Receipt(
        id=row["id"],
        source=row["source"],
        event=row["event"],
        reference=row["reference"],
        payload=WebhookPayload.from_dict(row.get("payload")),
        status=ReceiptStatus(row["status"]),
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )


class PostgresReceiptStore:
    """ReceiptStore backed by the ``webhook_receipts`` table."""

    def __init__(self, database_url: str) -> None:
        self._database_url = database_url

    def _get_conn(self) -> psycopg.Connection:
        return psycopg.connect(self._database_url, autocommit=True, row_factory=dict_row)

    def init_schema(self) -> None:
        """Create the receipts table if it doesn't exist.  Idempotent."""
        with self._get_conn() as conn:
            conn.execute(f"""
                CREATE TABLE IF NOT EXISTS {_TABLE} (
                    id          BIGSERIAL PRIMARY KEY,
                    source      TEXT NOT NULL,
                    event       TEXT NOT NULL,
                    reference   TEXT NOT NULL,
                    payload     JSONB NOT NULL DEFAULT '{{}}',
                    status      TEXT NOT NULL DEFAULT 'pending',
                    created_at  TIMESTAMPTZ NOT NULL DEFAULT now(),
                    updated_at  TIMESTAMPTZ NOT NULL DEFAULT now(),
                    UNIQUE (source, reference)
                )
            """)
        logger.info("Receipt table initialized")

    def upsert(
        self, source: str, event: str, reference: str, payload: WebhookPayload
    ) -> tuple[Receipt, bool]:
        # xmax = 0 only for a freshly inserted row version
        with self._get_conn() as conn:
            row = conn.execute(
                f"""INSERT INTO {_TABLE} (source, event, reference, payload, status)
                    VALUES (%s, %s, %s, %s, %s)
                    ON CONFLICT (source, reference) DO UPDATE
                        SET event = EXCLUDED.event,
                            payload = EXCLUDED.payload,
                            updated_at = now()
                    RETURNING *, (xmax = 0) AS inserted""",
                (source, event, reference, Jsonb(payload.to_dict()), ReceiptStatus.PENDING.value),
            ).fetchone()
        return _row_to_receipt(row), bool(row["inserted"])

    def set_status(self, source: str, reference: str, status: ReceiptStatus) -> Receipt | None:
        with self._get_conn() as conn:
            row = conn.execute(
                f"""UPDATE {_TABLE}
                    SET status = %s, updated_at = now()
                    WHERE source = %s AND reference = %s
                    RETURNING *""",
                (status.value, source, reference),
            ).fetchone()
        return _row_to_receipt(row) if row else None

    def get(self, source: str, reference: str) -> Receipt | None:
        with self._get_conn() as conn:
            row = conn.execute(
                f"SELECT * FROM {_TABLE} WHERE source = %s AND reference = %s",
                (source, reference),
            ).fetchone()
        return _row_to_receipt(row) if row else None

    def count_by_status(self) -> dict[str, int]:
        counts = {s.value: 0 for s in ReceiptStatus}
        with self._get_conn() as conn:
            rows = conn.execute(
                f"SELECT status, count(*) AS n FROM {_TABLE} GROUP BY status"
            ).fetchall()
        for row in rows:
            counts[row["status"]] = row["n"]
        return counts

    def ping(self) -> bool:
        try:
            with self._get_conn() as conn:
                conn.execute("SELECT 1")
            return True
        except psycopg.Error:
            logger.warning("Receipt store ping failed", exc_info=True)
            return False

    def close(self) -> None:
        # Connections are per-call; nothing to release.
        pass
