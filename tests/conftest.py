"""Shared fixtures for the dealhook test suite.

Everything here runs on the in-memory receipt store and queue, with fake
dispatchers standing in for Meta and Brevo. Redis- and Postgres-specific
tests live in their own modules.
"""

from __future__ import annotations

import threading
from typing import Any

import pytest
from fastapi.testclient import TestClient

from dealhook.config import Settings
from dealhook.downstream.models import ActionKind, DispatchResult, DownstreamAction
from dealhook.downstream.protocol import DispatcherDock
from dealhook.queue.crm import CRM_WEBHOOK_QUEUE
from dealhook.queue.memory import InMemoryDispatchQueue
from dealhook.receipts.store import InMemoryReceiptStore
from dealhook.serve import create_app
from dealhook.services import build_services

API_KEY = "test-secret"


class FakeDispatcher:
    """Records every action; optionally raises or reports failure."""

    def __init__(
        self,
        dispatcher_id: str,
        action_kind: ActionKind,
        *,
        raises: Exception | None = None,
        succeed: bool = True,
        configured: bool = True,
    ) -> None:
        self._dispatcher_id = dispatcher_id
        self._action_kind = action_kind
        self.raises = raises
        self.succeed = succeed
        self.configured = configured
        self.calls: list[DownstreamAction] = []
        self._lock = threading.Lock()

    @property
    def dispatcher_id(self) -> str:
        return self._dispatcher_id

    @property
    def action_kind(self) -> ActionKind:
        return self._action_kind

    @property
    def is_configured(self) -> bool:
        return self.configured

    def send(self, action: DownstreamAction) -> DispatchResult:
        with self._lock:
            self.calls.append(action)
        if self.raises is not None:
            raise self.raises
        return DispatchResult(
            success=self.succeed,
            dispatcher_id=self._dispatcher_id,
            action=action.name,
            error="" if self.succeed else "rejected",
        )


def make_deal_body(
    deal_id: Any = "D-1",
    status: str | None = "Qualified",
    **details: Any,
) -> dict[str, Any]:
    """A CRM deal webhook body."""
    deal_details: dict[str, Any] = {
        "dealName": "Maple Street",
        "dealValue": 450000,
        "currency": "USD",
        "closingDate": "2026-12-01",
        **details,
    }
    if status is not None:
        deal_details["status"] = status
    data: dict[str, Any] = {
        "customer": {
            "contactId": "C-9",
            "firstName": "Ada",
            "lastName": "Lovelace",
            "email": "Ada@Example.com ",
            "phoneNumber": "+15550100",
        },
        "dealDetails": deal_details,
        "propertyInformation": {
            "propertyId": "P-3",
            "address": "12 Maple Street",
            "city": "Springfield",
            "state": "IL",
            "zipCode": "62701",
            "propertyType": "Single Family",
            "squareFootage": 2100,
        },
    }
    if deal_id is not None:
        data["dealId"] = deal_id
    return {"data": data}


def crm_headers(event: str | None = "created", api_key: str | None = API_KEY) -> dict[str, str]:
    headers = {}
    if event is not None:
        headers["x-event"] = event
    if api_key is not None:
        headers["x-api-key"] = api_key
    return headers


@pytest.fixture
def settings() -> Settings:
    return Settings(
        _env_file=None,
        api_key=API_KEY,
        receipt_backend="memory",
        queue_backend="memory",
        rate_limit="",
        queue_attempts=3,
        queue_backoff_delay=5.0,
    )


@pytest.fixture
def receipts() -> InMemoryReceiptStore:
    return InMemoryReceiptStore()


@pytest.fixture
def queue():
    q = InMemoryDispatchQueue(CRM_WEBHOOK_QUEUE)
    yield q
    q.close()


@pytest.fixture
def tracker() -> FakeDispatcher:
    return FakeDispatcher("fake-tracker", ActionKind.TRACK_CONVERSION)


@pytest.fixture
def mailer() -> FakeDispatcher:
    return FakeDispatcher("fake-mailer", ActionKind.NOTIFY_CUSTOMER)


@pytest.fixture
def dock(tracker, mailer) -> DispatcherDock:
    d = DispatcherDock()
    d.register(tracker)
    d.register(mailer)
    return d


@pytest.fixture
def services(settings, receipts, queue, dock):
    return build_services(settings, receipts=receipts, queue=queue, dock=dock)


@pytest.fixture
def app(settings, services):
    return create_app(settings, services)


@pytest.fixture
def client(app):
    with TestClient(app, raise_server_exceptions=False) as c:
        yield c


@pytest.fixture
def deal_body():
    """Factory for CRM deal bodies: deal_body(deal_id="D-1", status="Qualified")."""
    return make_deal_body


@pytest.fixture
def webhook_headers():
    """Factory for CRM headers: webhook_headers(event="created", api_key=...)."""
    return crm_headers


@pytest.fixture
def make_dispatcher():
    """Factory for FakeDispatcher instances."""
    return FakeDispatcher
