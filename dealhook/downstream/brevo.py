"""Brevo transactional email dispatcher — property details for committed deals.

POST {base_url}/v3/smtp/email with the ``api-key`` header. All deal and
customer text is HTML-escaped before it goes into the message body.
"""

from __future__ import annotations

import html
import logging
from typing import Any

import httpx

from dealhook.downstream.models import ActionKind, DealSnapshot, DispatchResult, DownstreamAction
from dealhook.downstream.retry import RetryPolicy, send_with_retry
from dealhook.errors import DownstreamError

logger = logging.getLogger(__name__)


def _fmt_value(deal: DealSnapshot) -> str:
    if deal.deal_value is None:
        return "-"
    return f"{deal.deal_value:,.2f} {deal.currency}".strip()


def _fmt_sqft(value: float | None) -> str:
    if value is None:
        return "-"
    return f"{value:,.0f}"


def property_rows(deal: DealSnapshot) -> list[tuple[str, str]]:
    """(label, value) rows shown in the property details email."""
    prop = deal.property
    location = ", ".join(p for p in (prop.city, prop.state) if p)
    if prop.zip_code:
        location = f"{location} {prop.zip_code}".strip()
    return [
        ("Deal", deal.deal_name or deal.deal_id),
        ("Property ID", prop.property_id or "-"),
        ("Address", prop.address or "-"),
        ("Location", location or "-"),
        ("Property type", prop.property_type or "-"),
        ("Square footage", _fmt_sqft(prop.square_footage)),
        ("Deal value", _fmt_value(deal)),
        ("Closing date", deal.closing_date or "-"),
    ]


class BrevoEmailDispatcher:
    """NOTIFY_CUSTOMER dispatcher backed by Brevo's SMTP API."""

    def __init__(
        self,
        api_key: str,
        sender_email: str,
        sender_name: str = "dealhook",
        base_url: str = "https://api.brevo.com",
        timeout: float = 10.0,
        client: httpx.Client | None = None,
        dispatcher_id: str = "brevo-email",
        retry: RetryPolicy | None = None,
    ) -> None:
        self._api_key = api_key
        self._sender_email = sender_email
        self._sender_name = sender_name
        self._dispatcher_id = dispatcher_id
        self._retry = retry or RetryPolicy()
        self._client = client or httpx.Client(base_url=base_url.rstrip("/"), timeout=timeout)

    @property
    def dispatcher_id(self) -> str:
        return self._dispatcher_id

    @property
    def action_kind(self) -> ActionKind:
        return ActionKind.NOTIFY_CUSTOMER

    @property
    def is_configured(self) -> bool:
        return bool(self._api_key and self._sender_email)

    def format_email(self, deal: DealSnapshot) -> dict[str, Any]:
        customer = deal.customer
        greeting_name = customer.first_name or customer.full_name or "there"
        subject = f"Your Property Details - {deal.deal_name or deal.deal_id}"
        rows = property_rows(deal)

        text_lines = [f"Hi {greeting_name},", "", "Here are the details of your property:", ""]
        text_lines += [f"{label}: {value}" for label, value in rows]
        text_lines += ["", "Thank you for your business."]

        row_html = "".join(
            f'<tr><td style="padding: 4px 12px 4px 0; color: #666;">{html.escape(label)}</td>'
            f'<td style="padding: 4px 0;">{html.escape(value)}</td></tr>'
            for label, value in rows
        )
        html_body = f"""
        <div style="font-family: Arial, sans-serif; max-width: 600px;">
            <p>Hi {html.escape(greeting_name)},</p>
            <p>Here are the details of your property:</p>
            <table style="border-collapse: collapse;">{row_html}</table>
            <p style="margin-top: 16px;">Thank you for your business.</p>
        </div>
        """

        return {
            "sender": {"name": self._sender_name, "email": self._sender_email},
            "to": [{"email": customer.email, "name": customer.full_name or customer.email}],
            "subject": subject,
            "htmlContent": html_body,
            "textContent": "\n".join(text_lines),
            "params": {
                "dealId": deal.deal_id,
                "dealName": deal.deal_name,
                "firstName": customer.first_name,
            },
        }

    def _post(self, body: dict[str, Any]) -> httpx.Response:
        headers = {"api-key": self._api_key, "accept": "application/json"}
        return send_with_retry(
            self._retry,
            self._dispatcher_id,
            lambda: self._client.post("/v3/smtp/email", json=body, headers=headers),
        )

    def _request(self, body: dict[str, Any]) -> dict[str, Any]:
        try:
            response = self._post(body)
        except httpx.HTTPStatusError as e:
            raise DownstreamError(
                self._dispatcher_id, f"Brevo returned HTTP {e.response.status_code}"
            ) from e
        except httpx.HTTPError as e:
            raise DownstreamError(
                self._dispatcher_id, f"Brevo unreachable: {type(e).__name__}"
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
                error="Brevo not configured (missing api key or sender)",
            )
        if not action.deal.customer.email:
            return DispatchResult(
                success=False,
                dispatcher_id=self._dispatcher_id,
                action=action.name,
                error="Customer has no email address",
            )
        try:
            data = self._request(self.format_email(action.deal))
        except DownstreamError as e:
            return DispatchResult(
                success=False, dispatcher_id=self._dispatcher_id, action=action.name, error=e.message
            )
        logger.info("Property details email sent for deal %s", action.deal.deal_id)
        return DispatchResult(
            success=True,
            dispatcher_id=self._dispatcher_id,
            action=action.name,
            response_id=str(data.get("messageId", "")),
        )

    def close(self) -> None:
        self._client.close()
