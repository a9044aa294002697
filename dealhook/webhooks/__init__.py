"""Inbound webhook gateway and its HTTP routes."""

from dealhook.webhooks.gateway import GatewayAck, WebhookGateway
from dealhook.webhooks.verification import verify_shared_secret

__all__ = ["GatewayAck", "WebhookGateway", "verify_shared_secret"]
