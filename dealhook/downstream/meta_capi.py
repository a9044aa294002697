"""Meta Conversions API dispatcher — server-side conversion tracking.

Sends one event per TRACK_CONVERSION action to
``{base_url}/{api_version}/{pixel_id}/events``. Customer identifiers are
normalised (trimmed, lower-cased) and SHA-256 hashed before they leave the
process; the raw values are never logged.

``event_id`` is derived from the deal and event name so Meta deduplicates
a conversion that is sent twice by a retried job.
"""

from __future__ import annotations

import hashlib
import logging
import time
from typing import Any

import httpx

from dealhook.downstream.models import ActionKind, DispatchResult, DownstreamAction
from dealhook.downstream.retry import RetryPolicy, send_with_retry
from dealhook.errors import DownstreamError

logger = logging.getLogger(__name__)


def hash_identifier(value: str) -> str:
    """SHA-256 of the trimmed, lower-cased value; '' stays ''."""
    normalised = value.strip().lower()
    if not normalised:
        return ""
    return hashlib.sha256(normalised.encode("utf-8")).hexdigest()


class MetaConversionsDispatcher:
    """TRACK_CONVERSION dispatcher backed by the Meta Conversions API."""

    def __init__(
        self,
        access_token: str,
        pixel_id: str,
        api_version: str = "v21.0",
        base_url: str = "https://graph.facebook.com",
        event_source_url: str = "",
        timeout: float = 10.0,
        client: httpx.Client | None = None,
        dispatcher_id: str = "meta-capi",
        retry: RetryPolicy | None = None,
    ) -> None:
        self._access_token = access_token
        self._pixel_id = pixel_id
        self._api_version = api_version
        self._event_source_url = event_source_url
        self._dispatcher_id = dispatcher_id
        self._retry = retry or RetryPolicy()
        self._client = client or httpx.Client(base_url=base_url.rstrip("/"), timeout=timeout)

    @property
    def dispatcher_id(self) -> str:
        return self._dispatcher_id

    @property
    def action_kind(self) -> ActionKind:
        return ActionKind.TRACK_CONVERSION

    @property
    def is_configured(self) -> bool:
        return bool(self._access_token and self._pixel_id)

    def build_event(self, action: DownstreamAction) -> dict[str, Any]:
        deal = action.deal
        customer = deal.customer
        user_data: dict[str, list[str]] = {}
        for key, raw in (
            ("em", customer.email),
            ("fn", customer.first_name),
            ("ln", customer.last_name),
            ("ph", customer.phone_number),
            ("external_id", customer.contact_id),
        ):
            hashed = hash_identifier(raw)
            if hashed:
                user_data[key] = [hashed]

        custom_data: dict[str, Any] = {"deal_id": deal.deal_id}
        if deal.deal_value is not None:
            custom_data["value"] = deal.deal_value
        if deal.currency:
            custom_data["currency"] = deal.currency

        return {
            "event_name": action.name,
            "event_time": int(time.time()),
            "event_id": f"{deal.deal_id}:{action.name}",
            "event_source_url": self._event_source_url,
            "action_source": "website",
            "user_data": user_data,
            "custom_data": custom_data,
        }

    def _post(self, body: dict[str, Any]) -> httpx.Response:
        path = f"/{self._api_version}/{self._pixel_id}/events"
        return send_with_retry(
            self._retry, self._dispatcher_id, lambda: self._client.post(path, json=body)
        )

    def _request(self, body: dict[str, Any]) -> dict[str, Any]:
        try:
            response = self._post(body)
        except httpx.HTTPStatusError as e:
            raise DownstreamError(
                self._dispatcher_id, f"Meta CAPI returned HTTP {e.response.status_code}"
            ) from e
        except httpx.HTTPError as e:
            raise DownstreamError(
                self._dispatcher_id, f"Meta CAPI unreachable: {type(e).__name__}"
            ) from e
        try:
            return response.json()
        except ValueError:
            return {}

    def send(self, action: DownstreamAction) -> DispatchResult:
        if not self.is_configured:
            return DispatchResult(
                success=False,
                dispatcher_id=self._dispatcher_id,
                action=action.name,
                error="Meta CAPI not configured (missing access token or pixel id)",
            )
        body = {"data": [self.build_event(action)], "access_token": self._access_token}
        try:
            data = self._request(body)
        except DownstreamError as e:
            return DispatchResult(
                success=False, dispatcher_id=self._dispatcher_id, action=action.name, error=e.message
            )
        logger.info(
            "Meta CAPI %s sent for deal %s (events_received=%s)",
            action.name,
            action.deal.deal_id,
            data.get("events_received"),
        )
        return DispatchResult(
            success=True,
            dispatcher_id=self._dispatcher_id,
            action=action.name,
            response_id=str(data.get("fbtrace_id", "")),
        )

    def close(self) -> None:
        self._client.close()
